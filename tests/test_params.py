from pathlib import Path

import pytest

from dagdeploy.constants import CONSTRUCTOR_PARAMS_DIR, ERC1967_PROXY, TRANSPARENT_PROXY
from dagdeploy.errors import DanglingReferenceError, MissingAccountError, ParameterError
from dagdeploy.graph import plan
from dagdeploy.ledger import NamedAccounts
from dagdeploy.params import (
    AccountRef,
    ContractAddressRef,
    DeploymentConfig,
    Literal,
    ResolutionContext,
    _resolve_params,
)

from tests.conftest import DEPLOYER, OWNER, VAULT

PARAMS = """
deployment:
  name: test
  chain_id: 80002
artifacts:
  dir: ./artifacts/
  filename: test.json
settings:
  timeout: 60
  retries: 5
fees:
  provider: static
  max_fee: 100
  max_priority_fee: 2
  required: true
accounts:
  contractsOwner: "0x00000000000000000000000000000000000000a1"
  default: $deployer
constants:
  INITIAL_FEE: 30
  BATCH_IDS: [1, 2]
contracts:
  - Token
  - EmissionManager:
      contract: Emissions
  - Manager:
      constructor:
        token: $Token
        fee: $INITIAL_FEE
        batches: $BATCH_IDS
        recipients: [$deployer, $account:contractsOwner, $Token]
      libraries: [Token]
      proxy:
        kind: ERC1967Proxy
        owner: $account:contractsOwner
        init:
          method: initialize
          args: [$EmissionManager, 500]
      setup:
        - method: transferOwnership
          args: [$account:contractsOwner]
        - renounceMinter
"""


@pytest.fixture()
def config(load_config):
    return load_config(PARAMS)


def test_deployment_section(config):
    assert config.name == "test"
    assert config.chain_id == 80002
    assert config.registry_filepath == Path("./artifacts/") / "test.json"


def test_settings_and_fees(config):
    assert config.settings.timeout == 60
    assert config.settings.retries == 5
    assert config.settings.retry_delay == 1.0
    assert config.fees.provider == "static"
    assert config.fees.max_fee == 100
    assert config.fees.required is True


def test_accounts(config):
    assert config.accounts == {"contractsOwner": "0x00000000000000000000000000000000000000a1"}
    assert config.default_account == "$deployer"


def test_contract_specs(config):
    token, emissions, manager = config.specs
    assert token.name == "Token"
    assert token.constructor_args == {}
    assert emissions.contract_type == "Emissions"
    assert emissions.name == "EmissionManager"

    assert list(manager.constructor_args) == ["token", "fee", "batches", "recipients"]
    assert manager.constructor_args["token"] == ContractAddressRef("Token")
    assert manager.constructor_args["fee"] == Literal(30)
    assert manager.constructor_args["batches"] == Literal([1, 2])
    assert manager.constructor_args["recipients"] == [
        AccountRef("deployer"),
        AccountRef("contractsOwner"),
        ContractAddressRef("Token"),
    ]
    assert manager.libraries == ("Token",)
    assert manager.references() == {"Token", "EmissionManager"}


def test_proxy(config):
    proxy = config.specs[2].proxy
    assert proxy.kind == ERC1967_PROXY
    assert proxy.owner == AccountRef("contractsOwner")
    assert proxy.init_method == "initialize"
    assert proxy.init_args == (ContractAddressRef("EmissionManager"), Literal(500))


def test_proxy_defaults(load_config):
    config = load_config("contracts:\n  - Manager:\n      proxy:\n")
    proxy = config.specs[0].proxy
    assert proxy.kind == TRANSPARENT_PROXY
    assert proxy.owner == AccountRef("deployer")
    assert proxy.init_method is None


def test_setup_steps(config):
    first, second = config.setup_steps
    assert first.target == "Manager"
    assert first.method == "transferOwnership"
    assert first.args == (AccountRef("contractsOwner"),)
    assert second.method == "renounceMinter"
    assert str(first) == "Manager.transferOwnership($account:contractsOwner)"


def test_resolve_params(config):
    accounts = NamedAccounts(deployer=DEPLOYER, accounts=config.accounts, environ={})
    token_address = "0x0000000000000000000000000000000000001000"
    context = ResolutionContext(accounts=accounts, addresses={"Token": token_address})
    resolved = _resolve_params(config.specs[2].constructor_args, context)
    assert resolved["token"] == token_address
    assert resolved["fee"] == 30
    assert resolved["recipients"][1] == OWNER


def test_unknown_constant(load_config):
    with pytest.raises(ParameterError, match="MISSING_FEE"):
        load_config("contracts:\n  - Token:\n      constructor:\n        fee: $MISSING_FEE\n")


def test_unknown_contract_key(load_config):
    with pytest.raises(ParameterError, match="constructr"):
        load_config("contracts:\n  - Token:\n      constructr:\n        fee: 1\n")


def test_missing_contracts(load_config):
    with pytest.raises(ParameterError):
        load_config("constants:\n  FEE: 1\n")


def test_unsupported_proxy_kind(load_config):
    with pytest.raises(ParameterError, match="BeaconProxy"):
        load_config("contracts:\n  - Manager:\n      proxy:\n        kind: BeaconProxy\n")


def test_unsupported_fee_provider(load_config):
    with pytest.raises(ParameterError, match="oracle"):
        load_config("fees:\n  provider: oracle\ncontracts:\n  - Token\n")


def test_undeclared_contract_reference_fails_planning(load_config):
    config = load_config("contracts:\n  - Manager:\n      constructor:\n        token: $Tokn\n")
    with pytest.raises(DanglingReferenceError, match="Tokn"):
        plan(config.specs, config.setup_steps)


def test_bundled_example():
    config = DeploymentConfig.from_yaml(CONSTRUCTOR_PARAMS_DIR / "example" / "carbon.yml")
    deployment_plan = plan(config.specs, config.setup_steps)
    assert deployment_plan.names == [
        "ForwardContractBatchToken",
        "SolidStaking",
        "EmissionManager",
        "WeeklyCarbonRewards",
        "SolidWorldManager",
        "RewardsController",
    ]
    manager = deployment_plan.get("SolidWorldManager")
    assert manager.spec.proxy.init_args[1] == Literal(30)
    assert [s.method for s in deployment_plan.get("RewardsController").setup_steps] == ["setup"]


def test_named_accounts():
    accounts = NamedAccounts(
        deployer=DEPLOYER,
        accounts={"contractsOwner": OWNER, "rewardsVault": "$account:contractsOwner"},
        environ={"DAGDEPLOY_ACCOUNT_TREASURY": VAULT},
    )
    assert accounts.resolve("deployer") == accounts.deployer == DEPLOYER
    assert accounts.resolve("rewardsVault") == OWNER
    assert accounts.resolve("treasury") == VAULT
    assert "treasury" in accounts
    assert "auditor" not in accounts
    with pytest.raises(MissingAccountError, match="auditor"):
        accounts.resolve("auditor")


def test_named_accounts_default_and_errors():
    accounts = NamedAccounts(
        deployer=DEPLOYER,
        accounts={"loop": "$account:loop", "broken": "not-an-address"},
        default="$deployer",
        environ={},
    )
    assert accounts.resolve("auditor") == accounts.deployer
    with pytest.raises(MissingAccountError, match="aliases itself"):
        accounts.resolve("loop")
    with pytest.raises(MissingAccountError, match="not a valid address"):
        accounts.resolve("broken")
