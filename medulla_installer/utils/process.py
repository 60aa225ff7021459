"""Async helpers for running local commands."""

from __future__ import annotations

import asyncio
import os
import shlex
from asyncio.subprocess import PIPE
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import BaseModel, ConfigDict

logger = structlog.get_logger(__name__)

REDACTED = "<redacted>"


class CommandExecutionError(RuntimeError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({returncode}): {command}"
        if stderr.strip():
            message = f"{message}\n{stderr.strip()}"
        super().__init__(message)


class _ProcessModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class CommandResult(_ProcessModel):
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def shlex_join(parts: Sequence[str]) -> str:
    return " ".join(shlex.quote(part) for part in parts)


class CommandRunner(Protocol):
    async def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        input_text: str | None = None,
        timeout_seconds: float | None = None,
        display: str | None = None,
    ) -> CommandResult: ...

    async def run_shell(
        self,
        command: str,
        *,
        check: bool = True,
        capture_output: bool = True,
        cwd: Path | None = None,
    ) -> CommandResult: ...


class LocalRunner:
    """Runs commands on the local machine through asyncio subprocesses.

    ``display`` replaces the command text in logs and error messages; callers
    pass it whenever the argv carries a secret.
    """

    async def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        input_text: str | None = None,
        timeout_seconds: float | None = None,
        display: str | None = None,
    ) -> CommandResult:
        command_text = display or shlex_join(argv)
        logger.debug("exec", command=command_text, cwd=str(cwd) if cwd else None)
        process_env = None
        if env:
            process_env = {**os.environ, **env}
        pipe = PIPE if capture_output else None
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=PIPE if input_text is not None else None,
                stdout=pipe,
                stderr=pipe,
                env=process_env,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise CommandExecutionError(command_text, 127, str(exc)) from exc
        return await self._communicate(process, command_text, check, input_text, timeout_seconds)

    async def run_shell(
        self,
        command: str,
        *,
        check: bool = True,
        capture_output: bool = True,
        cwd: Path | None = None,
    ) -> CommandResult:
        logger.debug("exec-shell", command=command, cwd=str(cwd) if cwd else None)
        pipe = PIPE if capture_output else None
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=pipe,
            stderr=pipe,
            cwd=cwd,
            executable="/bin/bash",
        )
        return await self._communicate(process, command, check, None, None)

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        command_text: str,
        check: bool,
        input_text: str | None,
        timeout_seconds: float | None,
    ) -> CommandResult:
        payload = input_text.encode() if input_text is not None else None
        try:
            if timeout_seconds is not None:
                async with asyncio.timeout(timeout_seconds):
                    stdout_bytes, stderr_bytes = await process.communicate(payload)
            else:
                stdout_bytes, stderr_bytes = await process.communicate(payload)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise CommandExecutionError(command_text, -1, "timed out") from exc
        stdout_text = stdout_bytes.decode() if stdout_bytes else ""
        stderr_text = stderr_bytes.decode() if stderr_bytes else ""
        return_code = process.returncode if process.returncode is not None else -1
        if check and return_code != 0:
            raise CommandExecutionError(command_text, return_code, stderr_text)
        return CommandResult(stdout=stdout_text, stderr=stderr_text, returncode=return_code)


__all__ = [
    "REDACTED",
    "CommandExecutionError",
    "CommandResult",
    "CommandRunner",
    "LocalRunner",
    "shlex_join",
]
