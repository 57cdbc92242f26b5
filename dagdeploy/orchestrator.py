import time
import typing
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

from dagdeploy.confirm import _confirm_resolution, _confirm_setup
from dagdeploy.constants import DEFAULT_RUN_TIMEOUT
from dagdeploy.errors import (
    ConfirmationTimeoutError,
    ContractError,
    RunCancelledError,
    SetupStepError,
    SubmissionError,
    UnresolvedDependencyError,
    UpgradeError,
)
from dagdeploy.fees import FeeProvider, fetch_fees
from dagdeploy.graph import DeploymentPlan, PlanStep
from dagdeploy.graph import plan as build_plan
from dagdeploy.ledger import (
    CallRequest,
    DeployRequest,
    LedgerClient,
    NamedAccounts,
    ResolvedProxy,
    UpgradeRequest,
)
from dagdeploy.params import (
    ContractSpec,
    ResolutionContext,
    SetupStep,
    _param_references,
    _resolve_param,
    _resolve_params,
)
from dagdeploy.registry import DeploymentRecord, DeploymentRegistry
from dagdeploy.retry import Deadline, RetryPolicy
from dagdeploy.utils import digest_arguments


class ContractStatus(str, Enum):
    DEPLOYED = "deployed"
    EXISTING = "existing"
    PLANNED = "planned"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    UPGRADED = "upgraded"
    PREPARED = "prepared"


# dependents may proceed when their dependency ended in one of these
USABLE_STATUSES = {
    ContractStatus.DEPLOYED,
    ContractStatus.EXISTING,
    ContractStatus.PLANNED,
    ContractStatus.UPGRADED,
    ContractStatus.PREPARED,
}


class SetupStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    PLANNED = "planned"


class SetupResult(NamedTuple):
    step: SetupStep
    status: SetupStatus
    error: Optional[Exception] = None


class ContractResult:
    """Outcome of one contract within a run."""

    def __init__(
        self,
        name: str,
        status: ContractStatus,
        address: Optional[str] = None,
        newly_deployed: bool = False,
        implementation_address: Optional[str] = None,
        error: Optional[Exception] = None,
    ):
        self.name = name
        self.status = status
        self.address = address
        self.newly_deployed = newly_deployed
        self.implementation_address = implementation_address
        self.error = error
        self.setup_status: List[SetupResult] = list()
        self.warnings: List[str] = list()

    @classmethod
    def from_record(cls, record: DeploymentRecord, status: ContractStatus) -> "ContractResult":
        return cls(
            name=record.name,
            status=status,
            address=record.address,
            newly_deployed=record.newly_deployed,
            implementation_address=record.implementation_address,
        )

    @property
    def usable(self) -> bool:
        return self.status in USABLE_STATUSES

    @property
    def setup_complete(self) -> bool:
        return all(result.status != SetupStatus.FAILED for result in self.setup_status)

    @property
    def ok(self) -> bool:
        return self.usable and self.setup_complete

    def __repr__(self):
        return f"<ContractResult {self.name} {self.status.value} {self.address}>"


class RunReport:
    """Per-contract outcomes of a run; partial success is an expected result."""

    def __init__(self, results: Iterable[ContractResult], dry_run: bool = False):
        self.results = OrderedDict((result.name, result) for result in results)
        self.dry_run = dry_run

    def __getitem__(self, name: str) -> ContractResult:
        return self.results[name]

    def __iter__(self):
        return iter(self.results.values())

    def __len__(self):
        return len(self.results)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self)

    @property
    def failures(self) -> List[ContractResult]:
        return [result for result in self if not result.ok]

    @property
    def newly_deployed(self) -> List[ContractResult]:
        return [result for result in self if result.newly_deployed]

    def format(self) -> str:
        lines = list()
        for result in self:
            address = result.address or "-"
            lines.append(f"{result.name}: {result.status.value} {address}")
            if result.implementation_address:
                lines.append(f"\timplementation {result.implementation_address}")
            if result.error is not None:
                lines.append(f"\terror: {type(result.error).__name__}: {result.error}")
            for warning in result.warnings:
                lines.append(f"\twarning: {warning}")
            for setup in result.setup_status:
                line = f"\tsetup {setup.step.method}: {setup.status.value}"
                if setup.error is not None:
                    line += f" ({setup.error})"
                lines.append(line)
        return "\n".join(lines)


def plan(specs: Iterable[ContractSpec], setup_steps: Iterable[SetupStep] = ()) -> DeploymentPlan:
    """Resolves the deployment order; raises PlanningError for an invalid graph."""
    return build_plan(specs, setup_steps)


class Orchestrator:
    """
    Executes a deployment plan against a ledger, one transaction at a time.

    The registry is the only mutable shared resource; running two orchestrators
    against the same registry at once is not supported.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        registry: DeploymentRegistry,
        accounts: NamedAccounts,
        fee_provider: Optional[FeeProvider] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = DEFAULT_RUN_TIMEOUT,
        autosign: bool = True,
        require_fees: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.registry = registry
        self.accounts = accounts
        self.fee_provider = fee_provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.autosign = autosign
        self.require_fees = require_fees
        self.clock = clock

    plan = staticmethod(plan)

    def execute(
        self,
        plan: DeploymentPlan,
        dry_run: bool = False,
        retry_pending_setup: bool = False,
    ) -> RunReport:
        run = _Run(self, plan, dry_run=dry_run)
        for step in plan:
            run.deploy_or_skip(step.spec)
        for step in plan:
            run.setup(step, retry_pending=retry_pending_setup)

        report = RunReport((run.results[step.name] for step in plan), dry_run=dry_run)
        print(f"\n{'Dry run' if dry_run else 'Run'} complete: {len(report)} contract(s), "
              f"{len(report.newly_deployed)} newly deployed, {len(report.failures)} failed.")
        return report

    def upgrade(
        self,
        plan: DeploymentPlan,
        name: str,
        call_method: Optional[str] = None,
        call_args: typing.Sequence[Any] = (),
        prepare_only: bool = False,
    ) -> ContractResult:
        """
        Deploys a fresh implementation of a proxied contract and points its proxy at it.
        The proxy address, and with it every dependent, stays unchanged. With
        prepare_only the implementation is deployed but the proxy and registry are
        left for the proxy owner to update.
        """
        if name not in plan:
            raise UpgradeError(f"Contract '{name}' is not part of the plan")
        run = _Run(self, plan, dry_run=False)
        return run.upgrade(
            plan.get(name).spec,
            call_method=call_method,
            call_args=tuple(call_args),
            prepare_only=prepare_only,
        )


class _Run:
    """State of a single execution of a plan."""

    def __init__(self, orchestrator: Orchestrator, plan: DeploymentPlan, dry_run: bool):
        self.orchestrator = orchestrator
        self.plan = plan
        self.dry_run = dry_run
        self.registry = orchestrator.registry
        self.ledger = orchestrator.ledger
        self.deadline = Deadline(orchestrator.timeout, clock=orchestrator.clock)
        self.results: Dict[str, ContractResult] = OrderedDict()
        self.context = ResolutionContext(accounts=orchestrator.accounts, addresses=dict())
        self.registry.begin_run()

    #
    # Deployment
    #

    def deploy_or_skip(self, spec: ContractSpec) -> ContractResult:
        if spec.name in self.results:
            return self.results[spec.name]

        # linked libraries are deployed (or skipped) before the contract that links them
        for library in spec.libraries:
            self.deploy_or_skip(self.plan.get(library).spec)

        result = self._deploy_or_skip(spec)
        self.results[spec.name] = result
        if result.usable and result.address:
            self.context.addresses[spec.name] = result.address
        return result

    def _unusable(self, names: typing.Set[str]) -> List[str]:
        unusable = list()
        for name in sorted(names):
            result = self.results.get(name)
            if result is None:
                raise UnresolvedDependencyError(f"{name} has not been processed in this run")
            if not result.usable:
                unusable.append(name)
        return unusable

    def _deploy_or_skip(self, spec: ContractSpec) -> ContractResult:
        unusable = self._unusable(spec.references())
        if unusable:
            print(f"(i) Skipping {spec.name}; unavailable dependencies: {', '.join(unusable)}")
            return ContractResult(
                name=spec.name,
                status=ContractStatus.BLOCKED,
                error=ContractError(f"Dependencies not deployed: {', '.join(unusable)}"),
            )

        record = self.registry.lookup(spec.name)
        if record is not None:
            print(f"(i) Reusing {spec.name} at {record.address}")
            result = ContractResult.from_record(record, status=ContractStatus.EXISTING)
            self._check_drift(spec, record, result)
            if record.pending_setup:
                result.warnings.append(
                    f"setup incomplete from a previous run: {', '.join(record.pending_setup)}"
                )
            return result

        if self.dry_run:
            print(f"(i) Would deploy {spec.name}")
            self.context.addresses[spec.name] = f"<{spec.name}>"
            return ContractResult(name=spec.name, status=ContractStatus.PLANNED)

        if self.deadline.expired:
            return ContractResult(
                name=spec.name,
                status=ContractStatus.CANCELLED,
                error=RunCancelledError(f"Run timed out before {spec.name} was deployed"),
            )

        try:
            return self._deploy(spec)
        except ConfirmationTimeoutError as e:
            print(f"WARNING: {spec.name} deployment unconfirmed; reconcile manually. {e}")
            return ContractResult(name=spec.name, status=ContractStatus.UNCONFIRMED, error=e)
        except RunCancelledError as e:
            print(f"(i) {spec.name} cancelled: {e}")
            return ContractResult(name=spec.name, status=ContractStatus.CANCELLED, error=e)
        except ContractError as e:
            print(f"ERROR: {spec.name} deployment failed: {e}")
            return ContractResult(name=spec.name, status=ContractStatus.FAILED, error=e)

    def _resolve_deployment(
        self, spec: ContractSpec
    ) -> typing.Tuple[OrderedDict, Dict[str, str], Optional[ResolvedProxy]]:
        resolved_args = _resolve_params(spec.constructor_args, self.context)
        libraries = OrderedDict(
            (self.plan.get(library).spec.contract_type, self.context.address_of(library))
            for library in spec.libraries
        )
        proxy = None
        if spec.proxy is not None:
            proxy = ResolvedProxy(
                kind=spec.proxy.kind,
                owner=_resolve_param(spec.proxy.owner, self.context),
                init_method=spec.proxy.init_method,
                init_args=tuple(_resolve_param(list(spec.proxy.init_args), self.context)),
            )
        return resolved_args, libraries, proxy

    def _check_drift(
        self, spec: ContractSpec, record: DeploymentRecord, result: ContractResult
    ) -> None:
        if record.args_digest is None:
            return
        try:
            resolved_args, libraries, proxy = self._resolve_deployment(spec)
        except ContractError:
            return
        digest = digest_arguments(spec.contract_type, resolved_args, libraries, proxy)
        if digest != record.args_digest:
            result.warnings.append(
                "declared parameters differ from the recorded deployment; "
                "force a redeploy to apply them"
            )

    def _deploy(self, spec: ContractSpec) -> ContractResult:
        resolved_args, libraries, proxy = self._resolve_deployment(spec)
        if not self.orchestrator.autosign:
            _confirm_resolution(resolved_args, spec.name)

        print(f"\nDeploying {spec.name}...")
        deployment = self._submit(
            lambda fees: self.ledger.deploy(
                DeployRequest(
                    name=spec.name,
                    contract=spec.contract_type,
                    args=tuple(resolved_args.values()),
                    libraries=libraries,
                    proxy=proxy,
                    fees=fees,
                ),
                timeout=self.deadline.remaining(),
            )
        )
        if not deployment.confirmed:
            raise ConfirmationTimeoutError(f"Deployment of {spec.name} was not confirmed")

        # only confirmed deployments are ever written
        record = self.registry.record_deploy(
            spec.name,
            deployment.address,
            implementation_address=deployment.implementation_address,
            contract=spec.contract_type,
            tx_hash=deployment.tx_hash,
            block_number=deployment.block_number,
            deployer=self.orchestrator.accounts.deployer,
            args_digest=digest_arguments(spec.contract_type, resolved_args, libraries, proxy),
        )
        status = ContractStatus.DEPLOYED if record.newly_deployed else ContractStatus.EXISTING
        print(f"(i) {spec.name} at {record.address}")
        return ContractResult.from_record(record, status=status)

    def _submit(self, send: typing.Callable[[Any], Any]) -> Any:
        """Sends a transaction with fresh fees, retrying retriable rejections."""
        orchestrator = self.orchestrator

        def attempt():
            if self.deadline.expired:
                raise RunCancelledError("Run timed out before the transaction was submitted")
            fees = fetch_fees(
                orchestrator.fee_provider,
                retry_policy=orchestrator.retry_policy,
                required=orchestrator.require_fees,
            )
            return send(fees)

        return orchestrator.retry_policy.run(
            attempt,
            retry_on=(SubmissionError,),
            should_retry=lambda e: e.retriable,
            deadline=self.deadline,
        )

    #
    # Setup
    #

    def setup(self, step: PlanStep, retry_pending: bool = False) -> None:
        result = self.results[step.name]
        if not step.setup_steps:
            return

        if result.status == ContractStatus.PLANNED:
            result.setup_status = [SetupResult(s, SetupStatus.PLANNED) for s in step.setup_steps]
            return

        if result.status == ContractStatus.DEPLOYED and result.newly_deployed:
            steps = list(step.setup_steps)
            previously_pending = ()
        elif retry_pending and result.status == ContractStatus.EXISTING:
            record = self.registry.lookup(step.name)
            previously_pending = record.pending_setup if record else ()
            steps = [s for s in step.setup_steps if str(s) in previously_pending]
        else:
            return

        if not steps:
            return

        if self.dry_run:
            result.setup_status = [SetupResult(s, SetupStatus.PLANNED) for s in steps]
            return

        result.setup_status = [self._run_setup_step(s, result) for s in steps]
        pending = [str(r.step) for r in result.setup_status if r.status == SetupStatus.FAILED]
        if pending or previously_pending:
            self.registry.mark_setup(step.name, pending)

    def _run_setup_step(self, step: SetupStep, target: ContractResult) -> SetupResult:
        unusable = self._unusable(step.references())
        if unusable:
            error = SetupStepError(f"{step}: dependencies not deployed: {', '.join(unusable)}")
            return SetupResult(step, SetupStatus.FAILED, error)

        try:
            if self.deadline.expired:
                raise RunCancelledError("Run timed out before setup")
            args = tuple(_resolve_param(list(step.args), self.context))
            if not self.orchestrator.autosign:
                _confirm_setup(f"{step.target}[{target.address[:10]}].{step.method}{args}")

            print(f"\nTransacting {step.target}.{step.method}")
            outcome = self._submit(
                lambda fees: self.ledger.call(
                    CallRequest(
                        contract_name=step.target,
                        contract=self.plan.get(step.target).spec.contract_type,
                        address=target.address,
                        method=step.method,
                        args=args,
                        fees=fees,
                    ),
                    timeout=self.deadline.remaining(),
                )
            )
            if not outcome.confirmed:
                raise ConfirmationTimeoutError(f"{step} was not confirmed")
        except ContractError as e:
            print(f"ERROR: setup {step} failed: {e}")
            error = SetupStepError(f"{step}: {e}")
            error.__cause__ = e
            return SetupResult(step, SetupStatus.FAILED, error)

        return SetupResult(step, SetupStatus.OK)

    #
    # Upgrades
    #

    def upgrade(
        self,
        spec: ContractSpec,
        call_method: Optional[str] = None,
        call_args: typing.Tuple[Any, ...] = (),
        prepare_only: bool = False,
    ) -> ContractResult:
        if spec.proxy is None:
            raise UpgradeError(f"{spec.name} is not deployed behind a proxy")
        record = self.registry.lookup(spec.name)
        if record is None:
            raise UpgradeError(f"{spec.name} has no deployment record to upgrade")

        for dependency in sorted(spec.references() | _param_references(list(call_args))):
            dependency_record = self.registry.lookup(dependency)
            if dependency_record is None:
                raise UpgradeError(f"{spec.name} depends on undeployed contract '{dependency}'")
            self.context.addresses[dependency] = dependency_record.address

        try:
            resolved_args, libraries, proxy = self._resolve_deployment(spec)
            resolved_call_args = tuple(_resolve_param(list(call_args), self.context))
            if not self.orchestrator.autosign:
                _confirm_resolution(resolved_args, f"{spec.name} implementation")

            print(f"\nUpgrading {spec.name} at {record.address}...")
            upgrade = self._submit(
                lambda fees: self.ledger.upgrade(
                    UpgradeRequest(
                        name=spec.name,
                        contract=spec.contract_type,
                        proxy_address=record.address,
                        kind=spec.proxy.kind,
                        args=tuple(resolved_args.values()),
                        libraries=libraries,
                        call_method=call_method,
                        call_args=resolved_call_args,
                        execute=not prepare_only,
                        fees=fees,
                    ),
                    timeout=self.deadline.remaining(),
                )
            )
            if not upgrade.confirmed:
                raise ConfirmationTimeoutError(f"Upgrade of {spec.name} was not confirmed")
        except ConfirmationTimeoutError as e:
            print(f"WARNING: {spec.name} upgrade unconfirmed; reconcile manually. {e}")
            return ContractResult(name=spec.name, status=ContractStatus.UNCONFIRMED, error=e)
        except RunCancelledError as e:
            return ContractResult(name=spec.name, status=ContractStatus.CANCELLED, error=e)
        except ContractError as e:
            print(f"ERROR: {spec.name} upgrade failed: {e}")
            return ContractResult(name=spec.name, status=ContractStatus.FAILED, error=e)

        if prepare_only:
            print(
                f"(i) New {spec.name} implementation at {upgrade.implementation_address}; "
                f"the proxy owner must point {record.address} at it."
            )
            return ContractResult(
                name=spec.name,
                status=ContractStatus.PREPARED,
                address=record.address,
                implementation_address=upgrade.implementation_address,
            )

        record = self.registry.record_upgrade(
            spec.name,
            upgrade.implementation_address,
            tx_hash=upgrade.tx_hash,
            block_number=upgrade.block_number,
            args_digest=digest_arguments(spec.contract_type, resolved_args, libraries, proxy),
        )
        print(f"(i) {spec.name} at {record.address} now runs {record.implementation_address}")
        return ContractResult.from_record(record, status=ContractStatus.UPGRADED)
