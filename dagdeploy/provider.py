import math
import typing
from contextlib import contextmanager
from typing import Any, List, Optional

from ape import compilers, networks, project
from ape.api import AccountAPI
from ape.cli.choices import select_account
from ape.contracts.base import ContractContainer, ContractInstance
from ape.exceptions import ApeException, TransactionNotFoundError
from ape.utils import EMPTY_BYTES32
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from ethpm_types import MethodABI
from web3.auto import w3

from dagdeploy.constants import (
    EIP1967_ADMIN_SLOT,
    OZ_DEPENDENCY_NAME,
    OZ_DEPENDENCY_VERSION,
    RETRIABLE_SUBMISSION_MESSAGES,
    TRANSPARENT_PROXY,
)
from dagdeploy.errors import ConfirmationTimeoutError, FeeProviderError, SubmissionError
from dagdeploy.fees import FeeParams, FeeProvider
from dagdeploy.ledger import (
    CallRequest,
    CallResult,
    DeployRequest,
    DeployResult,
    LedgerClient,
    ResolvedProxy,
    UpgradeRequest,
)


def _get_dependency_contract_container(contract: str) -> ContractContainer:
    for dependency_name, dependency_versions in project.dependencies.items():
        if len(dependency_versions) > 1:
            raise ValueError(f"Ambiguous {dependency_name} dependency for {contract}")
        try:
            dependency_api = list(dependency_versions.values())[0]
            contract_container = getattr(dependency_api, contract)
            return contract_container
        except AttributeError:
            continue
    raise ValueError(f"No contract found with name '{contract}'.")


def get_contract_container(contract: str) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check dependencies
        contract_container = _get_dependency_contract_container(contract)

    return contract_container


def _oz_dependency():
    return project.dependencies[OZ_DEPENDENCY_NAME][OZ_DEPENDENCY_VERSION]


def _validate_method_args(method_abis: List[MethodABI], args: typing.Sequence[Any]) -> None:
    """Validates the transaction arguments against the function ABI."""
    if len(method_abis) == 0:
        raise SubmissionError("No method abis provided for validation of args")

    abis_matching_args_length = [abi for abi in method_abis if len(abi.inputs) == len(args)]
    for abi in abis_matching_args_length:
        if all(w3.is_encodable(abi_input.type, arg) for arg, abi_input in zip(args, abi.inputs)):
            return
    raise SubmissionError(
        f"Could not find ABI for '{method_abis[0].name}' with {len(args)} arg(s) and given type(s)"
    )


def _validate_constructor_args(container: ContractContainer, args: typing.Sequence[Any]) -> None:
    """Validates the constructor arguments against the constructor ABI."""
    contract_name = container.contract_type.name
    abi_inputs = container.constructor.abi.inputs
    if len(args) != len(abi_inputs):
        raise SubmissionError(
            f"Constructor parameters length mismatch - "
            f"{contract_name} ABI requires {len(abi_inputs)}, Got {len(args)}."
        )

    for position, (abi_input, value) in enumerate(zip(abi_inputs, args)):
        if not w3.is_encodable(abi_input.type, value):
            raise SubmissionError(
                f"{contract_name} constructor param '{abi_input.name}' at position {position} "
                f"has a value '{value}' whose type does not match expected ABI type "
                f"'{abi_input.type}'"
            )


@contextmanager
def _translate_errors(description: str):
    """Maps ape failures onto the ledger error taxonomy."""
    try:
        yield
    except TransactionNotFoundError as e:
        # broadcast, but no receipt within the acceptance timeout
        raise ConfirmationTimeoutError(f"{description}: {e}") from e
    except ApeException as e:
        message = str(e)
        retriable = any(m in message.lower() for m in RETRIABLE_SUBMISSION_MESSAGES)
        raise SubmissionError(f"{description}: {message}", retriable=retriable) from e
    except ValueError as e:
        # unknown artifact or malformed arguments
        raise SubmissionError(f"{description}: {e}") from e


@contextmanager
def _acceptance_timeout(timeout: Optional[float]):
    """Bounds ape's receipt wait by `timeout` seconds, restoring the network setting after."""
    if timeout is None:
        yield
        return

    network = networks.provider.network
    previous = network.transaction_acceptance_timeout
    network.config.transaction_acceptance_timeout = max(1, min(previous, math.ceil(timeout)))
    try:
        yield
    finally:
        network.config.transaction_acceptance_timeout = previous


class ApeFeeProvider(FeeProvider):
    """Current EIP-1559 fees as reported by the connected provider."""

    def __init__(self, base_fee_multiplier: int = 2):
        self.base_fee_multiplier = base_fee_multiplier

    def get_current_fees(self) -> Optional[FeeParams]:
        try:
            base_fee = networks.provider.base_fee
            priority_fee = networks.provider.priority_fee
        except (ApeException, NotImplementedError) as e:
            raise FeeProviderError(f"Network fees unavailable: {e}")
        return FeeParams(
            max_fee=base_fee * self.base_fee_multiplier + priority_fee,
            max_priority_fee=priority_fee,
        )


class ApeLedgerClient(LedgerClient):
    """
    Deploys and transacts with an ape account.

    Receipt waits are bounded by the network's transaction acceptance timeout,
    lowered to the caller's `timeout` when that is shorter. A receipt that never
    arrives surfaces as ConfirmationTimeoutError; a reverted one as SubmissionError.
    """

    def __init__(
        self,
        account: Optional[AccountAPI] = None,
        autosign: bool = False,
        publish: bool = False,
    ):
        if account is None:
            account = select_account()
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        if hasattr(account, "set_autosign"):
            account.set_autosign(autosign)
        self._account = account
        self.publish = publish

    @property
    def deployer_address(self) -> ChecksumAddress:
        return self._account.address

    @staticmethod
    def _fee_kwargs(fees: Optional[FeeParams]) -> typing.Dict[str, Any]:
        return fees.as_kwargs() if fees is not None else dict()

    def _link_libraries(self, libraries: typing.Mapping[str, ChecksumAddress]) -> None:
        if not libraries:
            return
        instances = [
            get_contract_container(contract).at(address)
            for contract, address in libraries.items()
        ]
        compilers.solidity.add_library(*instances)

    def _deploy_contract(self, container: ContractContainer, args, fee_kwargs) -> ContractInstance:
        _validate_constructor_args(container, args)
        instance = self._account.deploy(container, *args, publish=self.publish, **fee_kwargs)
        if instance.receipt.failed:
            raise SubmissionError(
                f"Deployment of {container.contract_type.name} reverted "
                f"in transaction {instance.receipt.txn_hash}"
            )
        return instance

    def _deploy_proxy(
        self, implementation: ContractInstance, proxy: ResolvedProxy, fee_kwargs
    ) -> ContractInstance:
        proxy_container = getattr(_oz_dependency(), proxy.kind)
        data = b""
        if proxy.init_method:
            init_method = getattr(implementation, proxy.init_method)
            data = init_method.encode_input(*proxy.init_args)

        if proxy.kind == TRANSPARENT_PROXY:
            args = (implementation.address, proxy.owner, data)
        else:
            args = (implementation.address, data)

        print(
            f"\nDeploying {proxy.kind} contract to proxy "
            f"{implementation.contract_type.name} at {implementation.address}."
        )
        return self._deploy_contract(proxy_container, args, fee_kwargs)

    def deploy(self, request: DeployRequest, timeout: Optional[float] = None) -> DeployResult:
        fee_kwargs = self._fee_kwargs(request.fees)
        with _translate_errors(f"Deployment of {request.name}"), _acceptance_timeout(timeout):
            # linking recompiles the project, so the container is fetched afterwards
            self._link_libraries(request.libraries)
            container = get_contract_container(request.contract)
            instance = self._deploy_contract(container, request.args, fee_kwargs)
            implementation_address = None
            if request.proxy is not None:
                implementation_address = instance.address
                instance = self._deploy_proxy(instance, request.proxy, fee_kwargs)

        receipt = instance.receipt
        return DeployResult(
            address=instance.address,
            implementation_address=implementation_address,
            tx_hash=receipt.txn_hash,
            block_number=receipt.block_number,
        )

    def call(self, request: CallRequest, timeout: Optional[float] = None) -> CallResult:
        fee_kwargs = self._fee_kwargs(request.fees)
        with _translate_errors(f"{request.contract_name}.{request.method}"), _acceptance_timeout(
            timeout
        ):
            container = get_contract_container(request.contract)
            instance = container.at(request.address)
            method = getattr(instance, request.method)
            _validate_method_args(method_abis=method.abis, args=request.args)
            receipt = method(*request.args, sender=self._account, **fee_kwargs)

        if receipt.failed:
            raise SubmissionError(f"{request.contract_name}.{request.method} reverted")
        return CallResult(confirmed=True, tx_hash=receipt.txn_hash)

    #
    # Upgrades
    #

    @staticmethod
    def _proxy_admin(proxy_address: ChecksumAddress) -> ContractInstance:
        """The ProxyAdmin a TransparentUpgradeableProxy created for itself."""
        slot = networks.provider.get_storage(proxy_address, EIP1967_ADMIN_SLOT)
        if bytes(slot) == EMPTY_BYTES32:
            raise SubmissionError(f"No proxy admin recorded for proxy at {proxy_address}")
        admin_address = to_checksum_address(bytes(slot)[-20:])
        return _oz_dependency().ProxyAdmin.at(admin_address)

    def _upgrade_proxy(
        self, request: UpgradeRequest, implementation: ContractInstance, data: bytes, fee_kwargs
    ):
        if request.kind == TRANSPARENT_PROXY:
            admin = self._proxy_admin(request.proxy_address)
            print(f"\nUpgrading {request.proxy_address} through ProxyAdmin at {admin.address}.")
            receipt = admin.upgradeAndCall(
                request.proxy_address,
                implementation.address,
                data,
                sender=self._account,
                **fee_kwargs,
            )
        else:
            # UUPS: the upgrade entrypoint lives on the implementation, called through the proxy
            proxied = implementation.contract_type.name
            proxy = get_contract_container(proxied).at(request.proxy_address)
            print(f"\nUpgrading {request.proxy_address} through upgradeToAndCall.")
            receipt = proxy.upgradeToAndCall(
                implementation.address, data, sender=self._account, **fee_kwargs
            )

        if receipt.failed:
            raise SubmissionError(f"Upgrade of {request.name} reverted")
        return receipt

    def upgrade(self, request: UpgradeRequest, timeout: Optional[float] = None) -> DeployResult:
        fee_kwargs = self._fee_kwargs(request.fees)
        with _translate_errors(f"Upgrade of {request.name}"), _acceptance_timeout(timeout):
            self._link_libraries(request.libraries)
            container = get_contract_container(request.contract)
            implementation = self._deploy_contract(container, request.args, fee_kwargs)
            data = b""
            if request.call_method:
                method = getattr(implementation, request.call_method)
                data = method.encode_input(*request.call_args)

            receipt = implementation.receipt
            if request.execute:
                receipt = self._upgrade_proxy(request, implementation, data, fee_kwargs)

        return DeployResult(
            address=request.proxy_address,
            implementation_address=implementation.address,
            tx_hash=receipt.txn_hash,
            block_number=receipt.block_number,
        )
