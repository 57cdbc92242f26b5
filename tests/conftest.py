import itertools
from collections import defaultdict

import pytest
import yaml
from eth_utils import to_checksum_address

from dagdeploy.fees import FeeParams, StaticFeeProvider
from dagdeploy.ledger import CallResult, DeployResult, LedgerClient, NamedAccounts
from dagdeploy.orchestrator import Orchestrator
from dagdeploy.params import DeploymentConfig
from dagdeploy.registry import DeploymentRegistry, MemoryRegistryStore
from dagdeploy.retry import RetryPolicy

DEPLOYER = to_checksum_address("0x00000000000000000000000000000000000000d1")
OWNER = to_checksum_address("0x00000000000000000000000000000000000000a1")
VAULT = to_checksum_address("0x00000000000000000000000000000000000000a2")

FEES = FeeParams(max_fee=50 * 10**9, max_priority_fee=2 * 10**9)


def address(n: int) -> str:
    return to_checksum_address("0x" + f"{n:040x}")


class FakeLedgerClient(LedgerClient):
    """
    In-memory ledger. Deployments get sequential addresses starting at 0x...1000.
    Failures are injected per contract name or per (contract name, method).
    """

    def __init__(self, deployer: str = DEPLOYER):
        self._deployer = to_checksum_address(deployer)
        self._addresses = itertools.count(0x1000)
        self.deploy_requests = list()
        self.call_requests = list()
        self.upgrade_requests = list()
        self.timeouts = list()
        self.unconfirmed = set()
        self._failures = defaultdict(list)
        self._permanent_failures = dict()

    @property
    def deployer_address(self):
        return self._deployer

    def fail(self, key, *errors):
        """Raises the given errors, once each, on the next attempts for key."""
        self._failures[key].extend(errors)

    def fail_always(self, key, error):
        self._permanent_failures[key] = error

    def _maybe_fail(self, key):
        if key in self._permanent_failures:
            raise self._permanent_failures[key]
        if self._failures[key]:
            raise self._failures[key].pop(0)

    @property
    def deployed(self):
        return [request.name for request in self.deploy_requests]

    @property
    def called(self):
        return [f"{r.contract_name}.{r.method}" for r in self.call_requests]

    def deploy(self, request, timeout=None):
        self.deploy_requests.append(request)
        self.timeouts.append(timeout)
        self._maybe_fail(request.name)

        implementation_address = None
        if request.proxy is not None:
            implementation_address = address(next(self._addresses))
        contract_address = address(next(self._addresses))
        return DeployResult(
            address=contract_address,
            confirmed=request.name not in self.unconfirmed,
            implementation_address=implementation_address,
            tx_hash="0x" + f"{len(self.deploy_requests):064x}",
            block_number=len(self.deploy_requests),
        )

    def call(self, request, timeout=None):
        self.call_requests.append(request)
        self.timeouts.append(timeout)
        self._maybe_fail((request.contract_name, request.method))
        return CallResult(confirmed=True, tx_hash="0x" + f"{len(self.call_requests):064x}")

    def upgrade(self, request, timeout=None):
        self.upgrade_requests.append(request)
        self.timeouts.append(timeout)
        self._maybe_fail(request.name)
        return DeployResult(
            address=request.proxy_address,
            confirmed=request.name not in self.unconfirmed,
            implementation_address=address(next(self._addresses)),
            tx_hash="0x" + f"{len(self.upgrade_requests):064x}",
            block_number=1000 + len(self.upgrade_requests),
        )


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CountingFeeProvider(StaticFeeProvider):
    def __init__(self, fees=FEES):
        super().__init__(fees)
        self.requests = 0

    def get_current_fees(self):
        self.requests += 1
        return super().get_current_fees()


@pytest.fixture()
def ledger():
    return FakeLedgerClient()


@pytest.fixture()
def registry():
    return DeploymentRegistry(MemoryRegistryStore())


@pytest.fixture()
def accounts():
    return NamedAccounts(
        deployer=DEPLOYER,
        accounts={"contractsOwner": OWNER, "rewardsVault": VAULT},
        environ={},
    )


@pytest.fixture()
def fee_provider():
    return CountingFeeProvider()


@pytest.fixture()
def retry_policy():
    return RetryPolicy(attempts=3, delay=1.0, backoff=2.0, sleep=lambda seconds: None)


@pytest.fixture()
def orchestrator(ledger, registry, accounts, fee_provider, retry_policy):
    return Orchestrator(
        ledger=ledger,
        registry=registry,
        accounts=accounts,
        fee_provider=fee_provider,
        retry_policy=retry_policy,
    )


@pytest.fixture()
def load_config():
    def _load(text: str) -> DeploymentConfig:
        config = yaml.safe_load(text)
        config.setdefault("deployment", {"name": "test", "chain_id": 1337})
        config.setdefault("artifacts", {"filename": "test.json"})
        return DeploymentConfig(config)

    return _load


@pytest.fixture()
def load_plan(load_config):
    def _plan(text: str):
        config = load_config(text)
        return Orchestrator.plan(config.specs, config.setup_steps)

    return _plan
