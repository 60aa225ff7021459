"""Loading of the optional installer configuration file."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, cast

import structlog
from pydantic import ValidationError

from medulla_installer.core.exceptions import ConfigError
from medulla_installer.core.models import InstallerConfig

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/medulla/installer.toml")


def load_config(path: Path | None) -> InstallerConfig:
    """Load the TOML configuration file.

    An explicit path must exist. Without one, ``DEFAULT_CONFIG_PATH`` is read
    when present and built-in defaults are used otherwise.
    """
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return InstallerConfig()
        path = DEFAULT_CONFIG_PATH
    try:
        with path.open("rb") as handle:
            data: dict[str, Any] = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file '{path}' was not found") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Configuration file '{path}' is invalid: {exc}") from exc

    for table in ("install", "vm"):
        if table in data and not isinstance(data[table], dict):
            raise ConfigError(f"[{table}] must be a table")
    unknown = sorted(set(data) - {"install", "vm"})
    if unknown:
        raise ConfigError(f"Unknown configuration table(s): {', '.join(unknown)}")

    try:
        config = InstallerConfig.model_validate(cast(dict[str, Any], data))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in '{path}': {exc}") from exc
    logger.debug("config-loaded", path=str(path))
    return config


__all__ = ["DEFAULT_CONFIG_PATH", "load_config"]
