"""Configuration management for stmgr."""

import json
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import StmgrError
from .fileio import DEFAULT_PACKAGE_NAME


class KeygenConfig(BaseModel):
    """Certificate issuance defaults."""

    validity_hours: int = Field(default=72, gt=0)
    root_cert_name: str = "rootcert.pem"
    root_key_name: str = "rootkey.pem"
    cert_name: str = "cert.pem"
    key_name: str = "key.pem"


class OSPkgConfig(BaseModel):
    """OS package defaults."""

    default_name: str = DEFAULT_PACKAGE_NAME


class TrustConfig(BaseModel):
    """Trust pool and signature threshold for verification."""

    root_certs: list[str] = []
    threshold: int = Field(default=1, ge=0)


class StmgrConfig(BaseModel):
    """Complete stmgr configuration."""

    keygen: KeygenConfig = KeygenConfig()
    ospkg: OSPkgConfig = OSPkgConfig()
    trust: TrustConfig = TrustConfig()


def load_config(config_path: Path) -> StmgrConfig:
    """Load configuration from file.

    Supports YAML and JSON formats. Relative paths in trust.root_certs
    are resolved against the directory holding the file.

    Args:
        config_path: Path to configuration file

    Returns:
        StmgrConfig object

    Raises:
        StmgrError: If the file cannot be parsed or holds invalid values
    """
    config_path = Path(config_path)
    with open(config_path) as f:
        try:
            if config_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif config_path.suffix == ".json":
                data = json.load(f)
            else:
                raise StmgrError(f"Unsupported config format: {config_path.suffix}")
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise StmgrError(f"cannot parse configuration {config_path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise StmgrError(f"configuration {config_path} must be a mapping")

    try:
        config = StmgrConfig(**(data or {}))
    except ValidationError as e:
        raise StmgrError(f"invalid configuration {config_path}: {e}") from e

    # Relative trust pool paths are relative to the configuration file
    config.trust.root_certs = [str(config_path.parent / p) for p in config.trust.root_certs]
    return config


_DUMPERS = {
    "yaml": lambda data: yaml.safe_dump(data, default_flow_style=False, sort_keys=False),
    "json": lambda data: json.dumps(data, indent=2) + "\n",
}


def generate_default_config(fmt: str = "yaml") -> str:
    """Render the default configuration as YAML or JSON text."""
    try:
        dump = _DUMPERS[fmt]
    except KeyError:
        raise StmgrError(f"Unsupported format: {fmt}") from None
    return dump(StmgrConfig().model_dump())
