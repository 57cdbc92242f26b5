import json
import typing
from pathlib import Path
from typing import Any, Dict

import yaml
from eth_utils import keccak

from dagdeploy.constants import ARTIFACTS_DIR
from dagdeploy.errors import ParameterError


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def get_artifact_filepath(config: Dict) -> Path:
    """Returns the filepath of the artifact file."""
    artifact_config = config.get("artifacts", {})
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename")
    if not filename:
        raise ParameterError("artifact filename is not set in params file.")
    return artifact_dir / filename


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


def digest_arguments(*resolved: typing.Any) -> str:
    """Stable fingerprint of resolved deployment arguments."""
    encoded = json.dumps(resolved, sort_keys=True, default=_json_default)
    return "0x" + keccak(text=encoded).hex()
