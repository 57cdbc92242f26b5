import os
import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address

from dagdeploy.constants import ACCOUNT_ENVVAR_PREFIX, DEPLOYER_ACCOUNT
from dagdeploy.errors import MissingAccountError
from dagdeploy.fees import FeeParams


class ResolvedProxy(NamedTuple):
    kind: str
    owner: ChecksumAddress
    init_method: Optional[str] = None
    init_args: typing.Tuple[Any, ...] = ()


class DeployRequest(NamedTuple):
    name: str
    contract: str
    args: typing.Tuple[Any, ...] = ()
    libraries: typing.Mapping[str, ChecksumAddress] = OrderedDict()
    proxy: Optional[ResolvedProxy] = None
    fees: Optional[FeeParams] = None


class DeployResult(NamedTuple):
    address: ChecksumAddress
    confirmed: bool = True
    implementation_address: Optional[ChecksumAddress] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None


class CallRequest(NamedTuple):
    contract_name: str
    contract: str
    address: ChecksumAddress
    method: str
    args: typing.Tuple[Any, ...] = ()
    fees: Optional[FeeParams] = None


class UpgradeRequest(NamedTuple):
    """New implementation behind an existing proxy; `execute=False` only deploys it."""

    name: str
    contract: str
    proxy_address: ChecksumAddress
    kind: str
    args: typing.Tuple[Any, ...] = ()
    libraries: typing.Mapping[str, ChecksumAddress] = OrderedDict()
    call_method: Optional[str] = None
    call_args: typing.Tuple[Any, ...] = ()
    execute: bool = True
    fees: Optional[FeeParams] = None


class CallResult(NamedTuple):
    confirmed: bool = True
    tx_hash: Optional[str] = None


class LedgerClient(ABC):
    """
    Submits transactions and waits for their confirmation.

    Implementations raise SubmissionError when a transaction is rejected before
    broadcast, and ConfirmationTimeoutError when a broadcast transaction could
    not be confirmed within `timeout` seconds.
    """

    @property
    @abstractmethod
    def deployer_address(self) -> ChecksumAddress:
        raise NotImplementedError

    @abstractmethod
    def deploy(self, request: DeployRequest, timeout: Optional[float] = None) -> DeployResult:
        raise NotImplementedError

    @abstractmethod
    def call(self, request: CallRequest, timeout: Optional[float] = None) -> CallResult:
        raise NotImplementedError

    @abstractmethod
    def upgrade(self, request: UpgradeRequest, timeout: Optional[float] = None) -> DeployResult:
        """Returns the proxy address together with the new implementation address."""
        raise NotImplementedError


class NamedAccounts:
    """Role-based addresses (owner, vault, ...) resolved from configuration."""

    def __init__(
        self,
        deployer: str,
        accounts: Optional[Dict[str, str]] = None,
        default: Optional[str] = None,
        environ: Optional[typing.Mapping[str, str]] = None,
    ):
        self.deployer = to_checksum_address(deployer)
        self.accounts = OrderedDict(accounts or {})
        self.default = default
        self.environ = os.environ if environ is None else environ

    def _from_environment(self, key: str) -> Optional[str]:
        return self.environ.get(f"{ACCOUNT_ENVVAR_PREFIX}{key.upper()}")

    def _to_address(self, key: str, value: str, seen: List[str]) -> ChecksumAddress:
        # accounts may alias each other, e.g. "owner: $deployer"
        if isinstance(value, str) and value.startswith("$"):
            alias = value[1:]
            if alias.startswith("account:"):
                alias = alias[len("account:") :]
            if alias in seen:
                raise MissingAccountError(f"Account '{key}' aliases itself")
            return self._resolve(alias, seen + [alias])
        if not is_address(value):
            raise MissingAccountError(f"Account '{key}' is not a valid address: {value}")
        return to_checksum_address(value)

    def _resolve(self, key: str, seen: List[str]) -> ChecksumAddress:
        if key == DEPLOYER_ACCOUNT:
            return self.deployer

        value = self._from_environment(key) or self.accounts.get(key)
        if value is None:
            if self.default is None:
                raise MissingAccountError(f"Named account '{key}' is not configured")
            print(f"(i) Account '{key}' not configured; using default {self.default}")
            value = self.default
        return self._to_address(key, value, seen)

    def resolve(self, key: str) -> ChecksumAddress:
        return self._resolve(key, [key])

    def __contains__(self, key: str) -> bool:
        return key == DEPLOYER_ACCOUNT or key in self.accounts or bool(self._from_environment(key))
