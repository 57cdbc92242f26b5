from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from ape.api import AccountAPI

from dagdeploy.confirm import _continue
from dagdeploy.fees import fee_provider_from_settings
from dagdeploy.graph import DeploymentPlan
from dagdeploy.ledger import NamedAccounts
from dagdeploy.networks import check_plugins, print_network_info, validate_config
from dagdeploy.orchestrator import ContractResult, Orchestrator, RunReport, plan
from dagdeploy.params import DeploymentConfig
from dagdeploy.provider import ApeFeeProvider, ApeLedgerClient
from dagdeploy.registry import DeploymentRegistry, JSONRegistryStore
from dagdeploy.retry import RetryPolicy


class Deployer:
    """
    Represents an ape account plus the declared contract graph
    of a parameters file, wired to its registry.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        verify: bool = False,
        account: Optional[AccountAPI] = None,
        autosign: bool = False,
        registry_filepath: Optional[Path] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ):
        check_plugins(verify)
        self.config = config
        self.verify = verify
        self.autosign = autosign
        self.chain_id = validate_config(config)
        self.registry_filepath = registry_filepath or config.registry_filepath

        self.ledger = ApeLedgerClient(account=account, autosign=autosign, publish=verify)
        self.registry = DeploymentRegistry(
            JSONRegistryStore(filepath=self.registry_filepath, chain_id=self.chain_id)
        )
        self.accounts = NamedAccounts(
            deployer=self.ledger.deployer_address,
            accounts=config.accounts,
            default=config.default_account,
        )

        settings = config.settings
        fee_provider = fee_provider_from_settings(config.fees, chain_id=self.chain_id)
        self.orchestrator = Orchestrator(
            ledger=self.ledger,
            registry=self.registry,
            accounts=self.accounts,
            fee_provider=fee_provider or ApeFeeProvider(),
            retry_policy=RetryPolicy(
                attempts=retries or settings.retries,
                delay=settings.retry_delay,
                backoff=settings.retry_backoff,
            ),
            timeout=timeout or settings.timeout,
            autosign=autosign,
            require_fees=config.fees.required,
        )
        self._print_deployment_info()

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "Deployer":
        config = DeploymentConfig.from_yaml(filepath)
        return cls(config, *args, **kwargs)

    def plan(self, only: Iterable[str] = ()) -> DeploymentPlan:
        deployment_plan = plan(self.config.specs, self.config.setup_steps)
        only = list(only)
        if only:
            deployment_plan = deployment_plan.subset(only)
        return deployment_plan

    def deploy(
        self,
        only: Iterable[str] = (),
        dry_run: bool = False,
        retry_pending_setup: bool = False,
    ) -> RunReport:
        deployment_plan = self.plan(only)
        print(f"\nDeployment plan:\n{deployment_plan.describe()}")
        if not self.autosign and not dry_run:
            # Confirms the start of the deployment.
            _continue()
        return self.orchestrator.execute(
            deployment_plan, dry_run=dry_run, retry_pending_setup=retry_pending_setup
        )

    def upgrade(
        self,
        name: str,
        call_method: Optional[str] = None,
        call_args: Sequence[Any] = (),
        prepare_only: bool = False,
    ) -> ContractResult:
        deployment_plan = self.plan()
        action = "Preparing an upgrade of" if prepare_only else "Upgrading"
        print(f"\n{action} {name}")
        if not self.autosign:
            _continue()
        return self.orchestrator.upgrade(
            deployment_plan,
            name,
            call_method=call_method,
            call_args=call_args,
            prepare_only=prepare_only,
        )

    def _print_deployment_info(self):
        print(
            f"Account: {self.ledger.deployer_address}",
            f"Config: {self.config.path}",
            f"Registry: {self.registry_filepath}",
            f"Verify: {self.verify}",
            f"Fees: {self.config.fees.provider}",
            sep="\n",
        )
        print_network_info()
