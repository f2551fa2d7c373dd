"""Configuration loading and Pydantic models for fsgate."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

_DEFAULT_MAX_REQUEST_SIZE = 100 * 1024 * 1024  # 100 MiB


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 9000
    max_request_size: int = _DEFAULT_MAX_REQUEST_SIZE
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30


class AuthConfig(BaseModel):
    """Access gate configuration.

    Only the access key named in the ``Credential=`` field of the
    Authorization header is checked; signatures are never verified.
    """

    enabled: bool = True
    allowed_access_keys: list[str] = Field(default_factory=list)


class StorageConfig(BaseModel):
    """Filesystem storage configuration."""

    root_dir: str = "./data"


class MultipartConfig(BaseModel):
    """Multipart upload configuration."""

    # None disables reaping of abandoned sessions.
    stale_upload_seconds: int | None = None


class ObservabilityConfig(BaseModel):
    """Metrics and health check configuration."""

    metrics: bool = True
    health_check: bool = True


class FsgateConfig(BaseModel):
    """Top-level fsgate configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    multipart: MultipartConfig = Field(default_factory=MultipartConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "host": data.get("host", "0.0.0.0"),
        "port": data.get("port", 9000),
        "max_request_size": data.get("max_request_size", _DEFAULT_MAX_REQUEST_SIZE),
        "log_level": data.get("log_level", "INFO"),
        "log_format": data.get("log_format", "text"),
        "shutdown_timeout": data.get("shutdown_timeout", 30),
    }


def _parse_auth(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the auth section from YAML data.

    Accepts a single ``access_key`` string as shorthand for a one-entry
    ``allowed_access_keys`` list.
    """
    if data is None:
        return {}
    keys = data.get("allowed_access_keys")
    if keys is None:
        single = data.get("access_key")
        keys = [single] if single else []
    return {
        "enabled": data.get("enabled", True),
        "allowed_access_keys": [str(k) for k in keys],
    }


def _parse_storage(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the storage section from YAML data.

    Handles the nested form ``storage.local.root_dir`` as well as the flat
    ``storage.root_dir``.
    """
    if data is None:
        return {}
    result: dict[str, Any] = {}
    local_section = data.get("local")
    if isinstance(local_section, dict) and "root_dir" in local_section:
        result["root_dir"] = local_section["root_dir"]
    elif "root_dir" in data:
        result["root_dir"] = data["root_dir"]
    return result


def _parse_multipart(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the multipart section from YAML data."""
    if data is None:
        return {}
    return {"stale_upload_seconds": data.get("stale_upload_seconds")}


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", True),
        "health_check": data.get("health_check", True),
    }


def load_config(path: Path) -> FsgateConfig:
    """Load an FsgateConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated FsgateConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return FsgateConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        auth=AuthConfig(**_parse_auth(raw.get("auth"))),
        storage=StorageConfig(**_parse_storage(raw.get("storage"))),
        multipart=MultipartConfig(**_parse_multipart(raw.get("multipart"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
