import json
import os

import pytest

from dagdeploy.errors import RegistryError
from dagdeploy.registry import (
    DeploymentRecord,
    DeploymentRegistry,
    JSONRegistryStore,
    MemoryRegistryStore,
)
from tests.conftest import DEPLOYER, address

TOKEN = address(0x1000)
MANAGER = address(0x1001)
IMPLEMENTATION = address(0x1002)


@pytest.fixture()
def registry_filepath(tmp_path):
    return tmp_path / "registry.json"


@pytest.fixture()
def json_registry(registry_filepath):
    return DeploymentRegistry(JSONRegistryStore(registry_filepath, chain_id=80002))


def test_lookup_missing(json_registry):
    assert json_registry.lookup("Token") is None
    assert json_registry.records() == []


def test_record_and_lookup(json_registry):
    record = json_registry.record_deploy(
        "Token", TOKEN.lower(), contract="Token", tx_hash="0xabc", block_number=7, deployer=DEPLOYER
    )
    assert record.address == TOKEN
    assert record.newly_deployed

    found = json_registry.lookup("Token")
    assert found.address == TOKEN
    assert found.newly_deployed
    assert found.block_number == 7
    assert found.deployer == DEPLOYER


def test_newly_deployed_is_per_run(registry_filepath, json_registry):
    json_registry.record_deploy("Token", TOKEN)
    json_registry.begin_run()
    assert not json_registry.lookup("Token").newly_deployed

    # a fresh process sees the record, never as newly deployed
    reopened = DeploymentRegistry(JSONRegistryStore(registry_filepath, chain_id=80002))
    assert reopened.lookup("Token").address == TOKEN
    assert not reopened.lookup("Token").newly_deployed


def test_file_format(registry_filepath, json_registry):
    json_registry.record_deploy("Token", TOKEN)
    json_registry.record_deploy("Manager", MANAGER, implementation_address=IMPLEMENTATION)

    with open(registry_filepath) as file:
        data = json.load(file)
    assert list(data) == ["80002"]
    assert list(data["80002"]) == ["Manager", "Token"]
    assert data["80002"]["Manager"] == {
        "address": MANAGER,
        "implementation_address": IMPLEMENTATION,
    }
    assert registry_filepath.read_text().startswith('{\n    "80002": {')


def test_other_chains_are_preserved(registry_filepath, json_registry):
    mainnet = DeploymentRegistry(JSONRegistryStore(registry_filepath, chain_id=1))
    mainnet.record_deploy("Token", MANAGER)
    json_registry.record_deploy("Token", TOKEN)

    assert mainnet.lookup("Token").address == MANAGER
    assert json_registry.lookup("Token").address == TOKEN

    json_registry.force_redeploy("Token")
    assert mainnet.lookup("Token").address == MANAGER
    with open(registry_filepath) as file:
        assert list(json.load(file)) == ["1"]


def test_same_address_is_not_newly_deployed(json_registry):
    json_registry.record_deploy("Token", TOKEN)
    json_registry.begin_run()
    record = json_registry.record_deploy("Token", TOKEN.lower())
    assert record.address == TOKEN
    assert not record.newly_deployed


def test_address_change_requires_force_redeploy(json_registry):
    json_registry.record_deploy("Token", TOKEN)
    with pytest.raises(RegistryError, match="force a redeploy"):
        json_registry.record_deploy("Token", MANAGER)
    assert json_registry.lookup("Token").address == TOKEN

    assert json_registry.force_redeploy("Token")
    assert json_registry.lookup("Token") is None
    assert json_registry.record_deploy("Token", MANAGER).newly_deployed
    assert not json_registry.force_redeploy("Missing")


def test_record_upgrade(registry_filepath, json_registry):
    json_registry.record_deploy("Token", TOKEN)
    json_registry.record_deploy(
        "Manager", MANAGER, implementation_address=IMPLEMENTATION, tx_hash="0xabc", block_number=7
    )
    new_implementation = address(0x1003)

    record = json_registry.record_upgrade(
        "Manager", new_implementation.lower(), tx_hash="0xdef", block_number=9
    )
    assert record.address == MANAGER
    assert record.implementation_address == new_implementation
    assert not record.newly_deployed

    data = json.loads(registry_filepath.read_text())["80002"]["Manager"]
    assert data["address"] == MANAGER
    assert data["implementation_address"] == new_implementation
    assert data["tx_hash"] == "0xdef"
    assert data["block_number"] == 9

    with pytest.raises(RegistryError, match="not recorded behind a proxy"):
        json_registry.record_upgrade("Token", new_implementation)
    with pytest.raises(RegistryError, match="unrecorded"):
        json_registry.record_upgrade("Vault", new_implementation)


def test_mark_setup(json_registry):
    json_registry.record_deploy("Manager", MANAGER)
    json_registry.mark_setup("Manager", ["Manager.setup($Token)"])
    assert json_registry.lookup("Manager").pending_setup == ("Manager.setup($Token)",)

    json_registry.mark_setup("Manager", [])
    assert json_registry.lookup("Manager").pending_setup == ()

    with pytest.raises(RegistryError):
        json_registry.mark_setup("Token", [])


def test_failed_write_keeps_previous_registry(monkeypatch, registry_filepath, json_registry):
    json_registry.record_deploy("Token", TOKEN)
    before = registry_filepath.read_text()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(RegistryError, match="disk full"):
        json_registry.record_deploy("Manager", MANAGER)

    assert registry_filepath.read_text() == before
    assert os.listdir(registry_filepath.parent) == [registry_filepath.name]


def test_malformed_registry(registry_filepath, json_registry):
    registry_filepath.write_text("not json")
    with pytest.raises(RegistryError):
        json_registry.lookup("Token")


def test_record_round_trip():
    record = DeploymentRecord(
        name="Manager",
        address=MANAGER,
        implementation_address=IMPLEMENTATION,
        args_digest="0x01",
        pending_setup=("Manager.setup()",),
    )
    assert DeploymentRecord.from_dict("Manager", record.to_dict()) == record


def test_memory_store():
    registry = DeploymentRegistry(MemoryRegistryStore())
    registry.record_deploy("Token", TOKEN)
    assert [r.name for r in registry.records()] == ["Token"]
