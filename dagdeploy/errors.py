"""Exception classes for dagdeploy."""

from typing import Sequence


class DeploymentError(Exception):
    """Base exception for deployment-related errors."""


class ParameterError(DeploymentError, ValueError):
    """Raised when a deployment parameters file is malformed."""


#
# Planning (fatal, raised before any transaction is submitted)
#


class PlanningError(DeploymentError):
    """Raised when the declared contracts do not form a valid deployment plan."""


class DuplicateNameError(PlanningError, ValueError):
    """Raised when a contract name is declared more than once."""


class DanglingReferenceError(PlanningError, ValueError):
    """Raised when a reference names an undeclared or not-yet-deployed contract."""


class CycleDetectedError(PlanningError):
    """Raised when contract dependencies contain a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


#
# Per-contract failures (collected into the run report)
#


class ContractError(DeploymentError):
    """Base exception for failures that affect a single contract."""


class MissingAccountError(ContractError):
    """Raised when a named account cannot be resolved."""


class SubmissionError(ContractError):
    """Raised when a transaction is rejected before it is broadcast."""

    def __init__(self, message: str, retriable: bool = False):
        super().__init__(message)
        self.retriable = retriable


class ConfirmationTimeoutError(ContractError):
    """
    Raised when a broadcast transaction was not confirmed in time.
    The transaction may still be mined; the outcome is unknown.
    """


class FeeUnavailableError(ContractError):
    """Raised when fees are required but the fee provider cannot supply them."""


class RunCancelledError(ContractError):
    """Raised when the overall run timeout expires before work could complete."""


class UpgradeError(ContractError):
    """Raised when a contract cannot be upgraded in place, e.g. it is not proxied."""


class SetupStepError(DeploymentError):
    """Raised when a post-deploy setup call fails."""


class FeeProviderError(DeploymentError):
    """Raised by fee providers when current fees cannot be obtained."""


#
# Run errors (fatal during execution)
#


class RunError(DeploymentError):
    """Raised when execution cannot continue safely."""


class RegistryError(RunError):
    """Raised when the deployment registry cannot be read or written."""


class UnresolvedDependencyError(RunError):
    """
    Raised when a dependency has no deployment record at resolution time.
    This indicates a planning bug, not a user error.
    """
