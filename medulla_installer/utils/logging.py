"""structlog + Logfire setup for the installer, with credential masking."""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

import logfire
import structlog
import structlog.contextvars
from pydantic import SecretStr

from medulla_installer.utils.process import REDACTED

SENSITIVE_KEYS = frozenset({"vault_key", "root_password", "medulla_root_pw", "guest_root_password", "password"})
SENSITIVE_SUFFIXES = ("PASSWORD", "PASSWD", "_KEY", "TOKEN")

_logfire_ready = False


def is_sensitive_key(key: str) -> bool:
    """Whether a log field named ``key`` carries a credential (``ROOT_PASSWORD``, ``GLPI_DBPASSWD``...)."""
    return key.lower() in SENSITIVE_KEYS or key.upper().endswith(SENSITIVE_SUFFIXES)


def _scrub(key: str, value: Any) -> Any:
    if isinstance(value, SecretStr):
        return REDACTED
    if isinstance(value, dict):
        return {inner: _scrub(str(inner), item) for inner, item in value.items()}
    if value is not None and is_sensitive_key(key):
        return REDACTED
    return value


def redact_secrets(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credentials before any renderer or Logfire sees the event."""
    for key, value in event_dict.items():
        if key != "event":
            event_dict[key] = _scrub(key, value)
    return event_dict


def _ensure_logfire() -> None:
    global _logfire_ready
    if _logfire_ready:
        return
    logfire.configure(send_to_logfire="if-token-present", console=False)
    logfire.instrument_pydantic()
    _logfire_ready = True


def configure_logging(verbose: bool = False) -> None:
    """Route installer events to stderr and Logfire; ``--verbose`` adds command traces."""

    _ensure_logfire()

    level = logging.DEBUG if verbose else logging.INFO
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    logging.basicConfig(level=level, handlers=[stream_handler], force=True)

    renderer: structlog.types.Processor
    if verbose:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "logger", "event", "stage", "command"],
            drop_missing=True,
        )

    structlog.configure(
        processors=installer_processors() + [renderer],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def installer_processors() -> list[structlog.types.Processor]:
    """The processor chain shared by every renderer, credential masking before Logfire."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
        logfire.StructlogProcessor(),
    ]


__all__ = ["configure_logging", "installer_processors", "is_sensitive_key", "redact_secrets"]
