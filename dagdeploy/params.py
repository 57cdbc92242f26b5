import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Set

from eth_typing import ChecksumAddress

from dagdeploy.constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_RETRY_DELAY,
    DEFAULT_RUN_TIMEOUT,
    DEPLOYER_ACCOUNT,
    FEE_PROVIDER_NETWORK,
    SUPPORTED_FEE_PROVIDERS,
    SUPPORTED_PROXY_KINDS,
    TRANSPARENT_PROXY,
)
from dagdeploy.errors import ParameterError, UnresolvedDependencyError
from dagdeploy.utils import _load_yaml, get_artifact_filepath

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_PROXY_PARAMETER_KEY = "proxy"
CONTRACT_LIBRARIES_PARAMETER_KEY = "libraries"
CONTRACT_SETUP_PARAMETER_KEY = "setup"
CONTRACT_ARTIFACT_PARAMETER_KEY = "contract"

KNOWN_CONTRACT_KEYS = {
    CONTRACT_CONSTRUCTOR_PARAMETER_KEY,
    CONTRACT_PROXY_PARAMETER_KEY,
    CONTRACT_LIBRARIES_PARAMETER_KEY,
    CONTRACT_SETUP_PARAMETER_KEY,
    CONTRACT_ARTIFACT_PARAMETER_KEY,
}


class ResolutionContext:
    """Everything a variable may need at execution time."""

    def __init__(self, accounts, addresses: typing.Dict[str, ChecksumAddress]):
        self.accounts = accounts
        self.addresses = addresses

    def address_of(self, contract_name: str) -> ChecksumAddress:
        try:
            return self.addresses[contract_name]
        except KeyError:
            raise UnresolvedDependencyError(
                f"No deployment record for '{contract_name}' at resolution time"
            )


class VariableContext:
    def __init__(
        self,
        contract_names: List[str],
        contract_name: str,
        constants: typing.Dict[str, Any] = None,
    ):
        self.contract_names = contract_names or list()
        self.contract_name = contract_name
        self.constants = constants or dict()


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    def references(self) -> Set[str]:
        """Names of the contracts this variable depends on."""
        return set()

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result

    def __eq__(self, other):
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __hash__(self):
        return hash((type(self).__name__, repr(self)))


class Literal(Variable):
    def __init__(self, value: Any):
        self.value = value

    def resolve(self, context: ResolutionContext) -> Any:
        return self.value

    def __repr__(self):
        return f"{self.value!r}"


class AccountRef(Variable):
    ACCOUNT_PREFIX = "account:"

    def __init__(self, key: str):
        self.key = key

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is the special deployer variable."""
        return value == DEPLOYER_ACCOUNT

    @classmethod
    def is_account(cls, value: str) -> bool:
        return value.startswith(cls.ACCOUNT_PREFIX)

    def resolve(self, context: ResolutionContext) -> Any:
        return context.accounts.resolve(self.key)

    def __repr__(self):
        if self.is_deployer(self.key):
            return f"${self.key}"
        return f"${self.ACCOUNT_PREFIX}{self.key}"


class ContractAddressRef(Variable):
    def __init__(self, contract_name: str):
        self.contract_name = contract_name

    def references(self) -> Set[str]:
        return {self.contract_name}

    def resolve(self, context: ResolutionContext) -> Any:
        """Resolves a contract address."""
        return context.address_of(self.contract_name)

    def __repr__(self):
        return f"${self.contract_name}"


def _resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, (list, tuple)):
        return [_resolve_param(v, context) for v in value]

    if isinstance(value, Variable):
        return value.resolve(context)

    return value  # literally a value


def _resolve_params(parameters: typing.Mapping, context: ResolutionContext) -> OrderedDict:
    resolved_parameters = OrderedDict()
    for name, value in parameters.items():
        resolved_parameters[name] = _resolve_param(value, context)

    return resolved_parameters


def _param_references(value: Any) -> Set[str]:
    if isinstance(value, (list, tuple)):
        names = set()
        for v in value:
            names |= _param_references(v)
        return names
    if isinstance(value, Variable):
        return value.references()
    return set()


def _variable_from_value(variable: str, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if AccountRef.is_deployer(variable):
        return AccountRef(DEPLOYER_ACCOUNT)
    elif AccountRef.is_account(variable):
        key = variable[len(AccountRef.ACCOUNT_PREFIX) :]
        if not key:
            raise ParameterError(f"Empty account name in {context.contract_name} parameters.")
        return AccountRef(key)
    elif variable in context.constants:
        return Literal(context.constants[variable])
    elif variable.isupper() and variable not in context.contract_names:
        raise ParameterError(f"Constant '{variable}' not found in deployment file.")
    else:
        return ContractAddressRef(variable)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        return _variable_from_value(value, variable_context)

    return Literal(value)


def _process_raw_values(values: typing.Mapping, variable_context: VariableContext) -> OrderedDict:
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = _process_raw_value(value, variable_context)

    return processed_parameters


# Declarations


class ProxyConfig(NamedTuple):
    """Upgradeable proxy wrapping a contract; the proxy address is the logical address."""

    kind: str = TRANSPARENT_PROXY
    init_method: Optional[str] = None
    init_args: typing.Tuple[Any, ...] = ()
    owner: Any = AccountRef(DEPLOYER_ACCOUNT)

    def references(self) -> Set[str]:
        return _param_references(self.init_args) | _param_references(self.owner)


class ContractSpec(NamedTuple):
    name: str
    constructor_args: typing.Mapping[str, Any] = OrderedDict()
    libraries: typing.Tuple[str, ...] = ()
    proxy: Optional[ProxyConfig] = None
    contract: Optional[str] = None

    @property
    def contract_type(self) -> str:
        """Name of the artifact to deploy; defaults to the deployment name."""
        return self.contract or self.name

    def references(self) -> Set[str]:
        names = _param_references(list(self.constructor_args.values()))
        names |= set(self.libraries)
        if self.proxy is not None:
            names |= self.proxy.references()
        return names


class SetupStep(NamedTuple):
    """Post-deploy call, executed only when the target is newly deployed in a run."""

    target: str
    method: str
    args: typing.Tuple[Any, ...] = ()

    def references(self) -> Set[str]:
        return _param_references(self.args)

    def __str__(self):
        return f"{self.target}.{self.method}({', '.join(map(repr, self.args))})"


class Settings(NamedTuple):
    timeout: float = DEFAULT_RUN_TIMEOUT
    retries: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    retry_backoff: float = DEFAULT_RETRY_BACKOFF


class FeeSettings(NamedTuple):
    provider: str = FEE_PROVIDER_NETWORK
    url: Optional[str] = None
    speed: str = "fast"
    max_fee: Optional[int] = None
    max_priority_fee: Optional[int] = None
    required: bool = False


# Parsing


def _get_contract_names(config: typing.Dict) -> List[str]:
    contract_names = list()
    for contract_info in config["contracts"]:
        if isinstance(contract_info, str):
            contract_names.append(contract_info)
        elif isinstance(contract_info, dict):
            contract_names.extend(list(contract_info.keys()))
        else:
            raise ParameterError("Malformed contracts section in parameters YAML.")

    return contract_names


def _parse_proxy(proxy_data: Optional[Dict], variable_context: VariableContext) -> ProxyConfig:
    proxy_data = proxy_data or dict()
    kind = proxy_data.get("kind", TRANSPARENT_PROXY)
    if kind not in SUPPORTED_PROXY_KINDS:
        raise ParameterError(
            f"Unsupported proxy kind '{kind}' for {variable_context.contract_name}; "
            f"expected one of {', '.join(SUPPORTED_PROXY_KINDS)}"
        )

    init_data = proxy_data.get("init") or dict()
    init_method = init_data.get("method")
    init_args = init_data.get("args", [])
    if init_args and not init_method:
        raise ParameterError(
            f"Proxy init args given without an init method for {variable_context.contract_name}."
        )

    owner = _process_raw_value(proxy_data.get("owner", "$deployer"), variable_context)
    return ProxyConfig(
        kind=kind,
        init_method=init_method,
        init_args=tuple(_process_raw_value(arg, variable_context) for arg in init_args),
        owner=owner,
    )


def _parse_setup_steps(
    setup_data: List, variable_context: VariableContext
) -> List[SetupStep]:
    steps = list()
    for step_data in setup_data or []:
        if isinstance(step_data, str):
            step_data = {"method": step_data}
        if not isinstance(step_data, dict) or "method" not in step_data:
            raise ParameterError(
                f"Malformed setup step for {variable_context.contract_name}: {step_data}"
            )
        args = [_process_raw_value(arg, variable_context) for arg in step_data.get("args", [])]
        steps.append(
            SetupStep(
                target=variable_context.contract_name,
                method=step_data["method"],
                args=tuple(args),
            )
        )
    return steps


def _parse_contract(
    contract_name: str, contract_data: Optional[Dict], variable_context: VariableContext
) -> typing.Tuple[ContractSpec, List[SetupStep]]:
    contract_data = contract_data or dict()
    if not isinstance(contract_data, dict):
        raise ParameterError(f"Malformed parameters for {contract_name}.")

    unknown_keys = set(contract_data) - KNOWN_CONTRACT_KEYS
    if unknown_keys:
        raise ParameterError(
            f"Unknown keys for {contract_name}: {', '.join(sorted(unknown_keys))}"
        )

    constructor_args = _process_raw_values(
        contract_data.get(CONTRACT_CONSTRUCTOR_PARAMETER_KEY) or OrderedDict(), variable_context
    )

    proxy = None
    if CONTRACT_PROXY_PARAMETER_KEY in contract_data:
        proxy_data = contract_data[CONTRACT_PROXY_PARAMETER_KEY]
        proxy = _parse_proxy(proxy_data, variable_context)

    libraries = contract_data.get(CONTRACT_LIBRARIES_PARAMETER_KEY) or []
    if not isinstance(libraries, list):
        raise ParameterError(f"Libraries of {contract_name} must be a list of contract names.")

    spec = ContractSpec(
        name=contract_name,
        constructor_args=constructor_args,
        libraries=tuple(libraries),
        proxy=proxy,
        contract=contract_data.get(CONTRACT_ARTIFACT_PARAMETER_KEY),
    )
    setup_steps = _parse_setup_steps(
        contract_data.get(CONTRACT_SETUP_PARAMETER_KEY), variable_context
    )
    return spec, setup_steps


def _parse_settings(config: typing.Dict) -> Settings:
    settings = config.get("settings") or dict()
    try:
        return Settings(
            timeout=float(settings.get("timeout", DEFAULT_RUN_TIMEOUT)),
            retries=int(settings.get("retries", DEFAULT_RETRY_ATTEMPTS)),
            retry_delay=float(settings.get("retry_delay", DEFAULT_RETRY_DELAY)),
            retry_backoff=float(settings.get("retry_backoff", DEFAULT_RETRY_BACKOFF)),
        )
    except (TypeError, ValueError) as e:
        raise ParameterError(f"Malformed settings section: {e}")


def _parse_fee_settings(config: typing.Dict) -> FeeSettings:
    fees = config.get("fees") or dict()
    provider = fees.get("provider", FEE_PROVIDER_NETWORK)
    if provider not in SUPPORTED_FEE_PROVIDERS:
        raise ParameterError(
            f"Unsupported fee provider '{provider}'; "
            f"expected one of {', '.join(SUPPORTED_FEE_PROVIDERS)}"
        )
    max_fee = fees.get("max_fee")
    max_priority_fee = fees.get("max_priority_fee")
    return FeeSettings(
        provider=provider,
        url=fees.get("url"),
        speed=fees.get("speed", "fast"),
        max_fee=int(max_fee) if max_fee is not None else None,
        max_priority_fee=int(max_priority_fee) if max_priority_fee is not None else None,
        required=bool(fees.get("required", False)),
    )


class DeploymentConfig:
    """Contracts, setup steps, accounts and settings declared in a parameters YAML file."""

    def __init__(self, config: typing.Dict, path: Optional[Path] = None):
        if not isinstance(config, dict):
            raise ParameterError("Malformed parameters YAML.")

        self.path = path
        self.config = config

        deployment = config.get("deployment") or dict()
        self.name = deployment.get("name")
        chain_id = deployment.get("chain_id")
        self.chain_id = int(chain_id) if chain_id is not None else None

        if not config.get("contracts"):
            raise ParameterError("Parameters file missing 'contracts' field.")

        self.constants = config.get("constants") or dict()
        self.accounts = OrderedDict(config.get("accounts") or dict())
        self.default_account = self.accounts.pop("default", None)
        self.settings = _parse_settings(config)
        self.fees = _parse_fee_settings(config)
        self.specs, self.setup_steps = self._process_contracts(config)

    @classmethod
    def from_yaml(cls, filepath: Path) -> "DeploymentConfig":
        config = _load_yaml(filepath)
        return cls(config=config, path=filepath)

    @property
    def registry_filepath(self) -> Path:
        return get_artifact_filepath(config=self.config)

    def _process_contracts(
        self, config: typing.Dict
    ) -> typing.Tuple[List[ContractSpec], List[SetupStep]]:
        print("Processing contract parameters...")
        contract_names = _get_contract_names(config)
        specs, setup_steps = list(), list()
        for contract_info in config["contracts"]:
            if isinstance(contract_info, str):
                contract_name, contract_data = contract_info, None
            else:
                if len(contract_info) != 1:
                    raise ParameterError("Malformed contracts section in parameters YAML.")
                contract_name = list(contract_info.keys())[0]  # only one entry
                contract_data = contract_info[contract_name]

            variable_context = VariableContext(
                contract_names=contract_names,
                contract_name=contract_name,
                constants=self.constants,
            )
            spec, steps = _parse_contract(contract_name, contract_data, variable_context)
            specs.append(spec)
            setup_steps.extend(steps)

        return specs, setup_steps

    def process_values(self, contract_name: str, values: typing.Sequence[Any]) -> List[Any]:
        """Turns raw values given outside the file, e.g. on the command line, into variables."""
        variable_context = VariableContext(
            contract_names=_get_contract_names(self.config),
            contract_name=contract_name,
            constants=self.constants,
        )
        return [_process_raw_value(value, variable_context) for value in values]
