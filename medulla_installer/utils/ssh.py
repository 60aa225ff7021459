"""SSH/SCP helpers for driving a freshly installed guest."""

from __future__ import annotations

from pathlib import Path

import structlog

from medulla_installer.utils.process import (
    REDACTED,
    CommandResult,
    CommandRunner,
    LocalRunner,
)

logger = structlog.get_logger(__name__)


DEFAULT_SSH_OPTIONS: tuple[str, ...] = (
    "-o",
    "BatchMode=yes",
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "ConnectTimeout=15",
)


class SSHSession:
    """Executes commands on a remote host over ssh with a dedicated key."""

    def __init__(
        self,
        host: str,
        user: str,
        *,
        identity_file: Path | None = None,
        runner: CommandRunner | None = None,
        description: str = "remote",
    ) -> None:
        self.host = host
        self.user = user
        self.identity_file = identity_file
        self.runner = runner or LocalRunner()
        self.description = description

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def _options(self) -> list[str]:
        options = list(DEFAULT_SSH_OPTIONS)
        if self.identity_file:
            options.extend(["-i", str(self.identity_file)])
        return options

    async def run(
        self,
        remote_cmd: str,
        *,
        check: bool = True,
        capture_output: bool = True,
        input_text: str | None = None,
        timeout_seconds: float | None = None,
        sensitive: bool = False,
    ) -> CommandResult:
        argv = ["ssh", *self._options(), self.target, remote_cmd]
        shown = f"ssh {self.target} {REDACTED}" if sensitive else None
        logger.debug(
            "ssh-exec",
            session=self.description,
            command=REDACTED if sensitive else remote_cmd,
        )
        return await self.runner.run(
            argv,
            check=check,
            capture_output=capture_output,
            input_text=input_text,
            timeout_seconds=timeout_seconds,
            display=shown,
        )

    async def copy_to(self, local_path: Path, remote_path: str) -> CommandResult:
        argv = ["scp", *self._options(), str(local_path), f"{self.target}:{remote_path}"]
        logger.debug("scp-copy", session=self.description, source=str(local_path), target=remote_path)
        return await self.runner.run(argv)


__all__ = ["DEFAULT_SSH_OPTIONS", "SSHSession"]
