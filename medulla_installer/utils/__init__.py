"""Utility modules for the Medulla installer."""

from medulla_installer.utils.logging import configure_logging
from medulla_installer.utils.process import (
    CommandExecutionError,
    CommandResult,
    CommandRunner,
    LocalRunner,
    shlex_join,
)
from medulla_installer.utils.ssh import SSHSession

__all__ = [
    "CommandExecutionError",
    "CommandResult",
    "CommandRunner",
    "LocalRunner",
    "SSHSession",
    "configure_logging",
    "shlex_join",
]
