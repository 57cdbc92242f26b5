import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Tuple

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from dagdeploy.errors import RegistryError

ChainId = int
ContractName = str


STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}

RECORD_FIELDS = (
    "address",
    "implementation_address",
    "contract",
    "tx_hash",
    "block_number",
    "deployer",
    "args_digest",
    "pending_setup",
)


class DeploymentRecord(NamedTuple):
    """Represents a single deployed contract on one chain."""

    name: ContractName
    address: ChecksumAddress
    newly_deployed: bool = False
    implementation_address: Optional[ChecksumAddress] = None
    contract: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    deployer: Optional[str] = None
    args_digest: Optional[str] = None
    pending_setup: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = OrderedDict()
        for field in RECORD_FIELDS:
            value = getattr(self, field)
            if field == "pending_setup":
                value = list(value)
            if value is None or value == []:
                continue
            data[field] = value
        return data

    @classmethod
    def from_dict(cls, name: ContractName, data: Dict[str, Any]) -> "DeploymentRecord":
        try:
            address = data["address"]
        except KeyError:
            raise RegistryError(f"Registry entry for {name} has no address")
        block_number = data.get("block_number")
        return cls(
            name=name,
            address=address,
            implementation_address=data.get("implementation_address"),
            contract=data.get("contract"),
            tx_hash=data.get("tx_hash"),
            block_number=int(block_number) if block_number is not None else None,
            deployer=data.get("deployer"),
            args_digest=data.get("args_digest"),
            pending_setup=tuple(data.get("pending_setup", ())),
        )


#
# Storage
#


class RegistryStore(ABC):
    """Persistent name -> record mapping supporting atomic single-record upserts."""

    @abstractmethod
    def get(self, name: ContractName) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def put(self, name: ContractName, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, name: ContractName) -> bool:
        raise NotImplementedError

    @abstractmethod
    def items(self) -> Iterator[Tuple[ContractName, Dict[str, Any]]]:
        raise NotImplementedError


class MemoryRegistryStore(RegistryStore):
    def __init__(self, data: Optional[Dict[ContractName, Dict[str, Any]]] = None):
        self._data = OrderedDict(data or {})

    def get(self, name: ContractName) -> Optional[Dict[str, Any]]:
        data = self._data.get(name)
        return dict(data) if data is not None else None

    def put(self, name: ContractName, data: Dict[str, Any]) -> None:
        self._data[name] = dict(data)

    def delete(self, name: ContractName) -> bool:
        return self._data.pop(name, None) is not None

    def items(self) -> Iterator[Tuple[ContractName, Dict[str, Any]]]:
        return iter(list(self._data.items()))


class JSONRegistryStore(RegistryStore):
    """
    Chain-scoped view of a multi-chain registry file: {chain_id: {name: {...}}}.
    Entries for other chains in the same file are left untouched.
    """

    def __init__(self, filepath: Path, chain_id: ChainId):
        self.filepath = Path(filepath)
        self.chain_id = int(chain_id)

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.filepath.exists():
            return dict()
        try:
            with open(self.filepath, "r") as file:
                data = json.load(file)
        except (OSError, ValueError) as e:
            raise RegistryError(f"Cannot read registry at {self.filepath}: {e}")
        if not isinstance(data, dict):
            raise RegistryError(f"Malformed registry at {self.filepath}")
        return data

    def _write(self, data: Dict[str, Dict[str, Any]]) -> None:
        # Sort registry entries to enforce common order
        normalized = OrderedDict()
        for chain_id in sorted(data, key=str):
            entries = data[chain_id]
            normalized[str(chain_id)] = OrderedDict(
                (name, entries[name]) for name in sorted(entries)
            )

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.filepath.parent, prefix=f".{self.filepath.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as file:
                json.dump(normalized, file, **STANDARD_REGISTRY_JSON_FORMAT)
                file.flush()
                os.fsync(file.fileno())
            os.replace(temp_path, self.filepath)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise RegistryError(f"Cannot write registry at {self.filepath}: {e}")

    def _chain_entries(self, data: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        return data.get(str(self.chain_id), dict())

    def get(self, name: ContractName) -> Optional[Dict[str, Any]]:
        return self._chain_entries(self._read()).get(name)

    def put(self, name: ContractName, data: Dict[str, Any]) -> None:
        registry = self._read()
        registry.setdefault(str(self.chain_id), dict())[name] = data
        self._write(registry)

    def delete(self, name: ContractName) -> bool:
        registry = self._read()
        entries = self._chain_entries(registry)
        if name not in entries:
            return False
        del entries[name]
        if not entries:
            registry.pop(str(self.chain_id), None)
        self._write(registry)
        return True

    def items(self) -> Iterator[Tuple[ContractName, Dict[str, Any]]]:
        entries = self._chain_entries(self._read())
        return iter(sorted(entries.items()))


#
# Registry
#


class DeploymentRegistry:
    """
    Idempotence ledger: what has been deployed, and what was deployed during this run.
    Records are only ever replaced through an explicit force_redeploy.
    """

    def __init__(self, store: RegistryStore):
        self.store = store
        self._newly_deployed = set()

    def begin_run(self) -> None:
        """Forgets which contracts were deployed by a previous run of this instance."""
        self._newly_deployed.clear()

    def _record(self, name: ContractName, data: Dict[str, Any]) -> DeploymentRecord:
        record = DeploymentRecord.from_dict(name, data)
        return record._replace(newly_deployed=name in self._newly_deployed)

    def lookup(self, name: ContractName) -> Optional[DeploymentRecord]:
        data = self.store.get(name)
        if data is None:
            return None
        return self._record(name, data)

    def records(self) -> List[DeploymentRecord]:
        return [self._record(name, data) for name, data in self.store.items()]

    def record_deploy(
        self,
        name: ContractName,
        address: str,
        implementation_address: Optional[str] = None,
        **metadata,
    ) -> DeploymentRecord:
        """
        Records a confirmed deployment. When the same address is already on record
        the deployment was a no-op and the contract is not considered newly deployed.
        A different address may only be recorded after force_redeploy.
        """
        address = to_checksum_address(address)
        if implementation_address is not None:
            implementation_address = to_checksum_address(implementation_address)

        existing = self.lookup(name)
        if existing is not None:
            if to_checksum_address(existing.address) == address:
                return existing._replace(newly_deployed=False)
            raise RegistryError(
                f"{name} is already recorded at {existing.address}; "
                f"force a redeploy before recording {address}"
            )

        record = DeploymentRecord(
            name=name,
            address=address,
            newly_deployed=True,
            implementation_address=implementation_address,
            **metadata,
        )
        self.store.put(name, record.to_dict())
        self._newly_deployed.add(name)
        return record

    def record_upgrade(
        self, name: ContractName, implementation_address: str, **metadata
    ) -> DeploymentRecord:
        """
        Records a confirmed implementation upgrade. The logical (proxy) address is kept;
        an upgraded contract is not newly deployed.
        """
        record = self.lookup(name)
        if record is None:
            raise RegistryError(f"Cannot record upgrade of unrecorded contract '{name}'")
        if record.implementation_address is None:
            raise RegistryError(f"{name} is not recorded behind a proxy")
        record = record._replace(
            implementation_address=to_checksum_address(implementation_address), **metadata
        )
        self.store.put(name, record.to_dict())
        return record._replace(newly_deployed=False)

    def mark_setup(self, name: ContractName, pending: List[str]) -> DeploymentRecord:
        """Persists which setup methods of a contract are still outstanding."""
        record = self.lookup(name)
        if record is None:
            raise RegistryError(f"Cannot mark setup for unrecorded contract '{name}'")
        record = record._replace(pending_setup=tuple(pending))
        self.store.put(name, record.to_dict())
        return record

    def force_redeploy(self, name: ContractName) -> bool:
        """Clears the record so the next run deploys the contract afresh."""
        removed = self.store.delete(name)
        self._newly_deployed.discard(name)
        if removed:
            print(f"(i) Cleared registry record for {name}")
        return removed
