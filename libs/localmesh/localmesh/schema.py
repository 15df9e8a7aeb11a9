"""
Loading and validation of services.yaml and mock configs.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
import yaml

from .errors import ConfigError
from .types import MeshConfig, MockConfig

DEFAULT_CONFIG_NAME = "services.yaml"
SCHEMA_PATH = Path(__file__).parent / "config-schema.json"


def load_schema() -> Dict[str, Any]:
    """Load the packaged JSON schema for services.yaml."""
    with open(SCHEMA_PATH) as f:
        return json.load(f)


def validate_config_schema(data: Any) -> List[str]:
    """
    Validate services.yaml data against the JSON schema.

    Returns list of validation errors (empty if valid).
    """
    validator = jsonschema.Draft202012Validator(load_schema())
    errors = []
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]):
        path = ".".join(str(p) for p in error.absolute_path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors


def _read_yaml(path: str, what: str) -> Any:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"{what} not found at {path}")
    try:
        with open(config_path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {path}: {e}") from e


def load_raw_config(path: str) -> Any:
    """Read services.yaml without interpreting it."""
    return _read_yaml(path, "config file")


def parse_config(data: Any) -> MeshConfig:
    """
    Build and validate a MeshConfig from parsed YAML.

    Raises:
        ConfigError: If the document shape or any service entry is invalid
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("config must be a mapping")
    config = MeshConfig.from_dict(data)
    config.validate()
    return config


def load_config(path: str = DEFAULT_CONFIG_NAME) -> MeshConfig:
    """
    Load and validate services.yaml.

    Args:
        path: Path to the config file

    Returns:
        Validated MeshConfig

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    return parse_config(load_raw_config(path))


def load_mock_config(path: str) -> MockConfig:
    """
    Load the dry-run table of mocked remote ports.

    Raises:
        ConfigError: If the file is missing or unparsable
    """
    data = _read_yaml(path, "mock config")
    if data is not None and not isinstance(data, dict):
        raise ConfigError("mock config must be a mapping")
    return MockConfig.from_dict(data)


def find_config() -> Optional[Path]:
    """
    Find services.yaml by searching up from current directory.

    Returns:
        Path to services.yaml or None if not found
    """
    current = Path.cwd()
    for parent in [current] + list(current.parents):
        candidate = parent / DEFAULT_CONFIG_NAME
        if candidate.exists():
            return candidate
    return None
