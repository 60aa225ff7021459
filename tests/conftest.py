from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import questionary
from _pytest.monkeypatch import MonkeyPatch

from medulla_installer.utils.process import CommandExecutionError, CommandResult, shlex_join


@dataclass
class Call:
    argv: list[str]
    options: dict[str, Any] = field(default_factory=dict)


def result(stdout: str = "", returncode: int = 0, stderr: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, stderr=stderr, returncode=returncode)


class FakeRunner:
    """Records every command and replays scripted results.

    A script key is a tuple of argv tokens that must appear in order; the
    key with the most tokens wins. Scripted results are consumed one per
    call and the last one keeps being replayed.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.shell_calls: list[str] = []
        self._scripts: dict[tuple[str, ...], list[CommandResult | Exception]] = {}

    def script(self, key: tuple[str, ...], *results: CommandResult | Exception) -> None:
        self._scripts[key] = list(results)

    def commands(self, program: str) -> list[list[str]]:
        return [call.argv for call in self.calls if call.argv[0] == program]

    def _lookup(self, argv: Sequence[str]) -> CommandResult | Exception:
        best: tuple[str, ...] | None = None
        for key in self._scripts:
            if _is_subsequence(key, argv) and (best is None or len(key) > len(best)):
                best = key
        if best is None:
            return result()
        queue = self._scripts[best]
        return queue.pop(0) if len(queue) > 1 else queue[0]

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
        self.calls.append(
            Call(
                list(argv),
                {
                    "check": check,
                    "capture_output": capture_output,
                    "env": env,
                    "cwd": cwd,
                    "input_text": input_text,
                    "timeout_seconds": timeout_seconds,
                    "display": display,
                },
            )
        )
        outcome = self._lookup(argv)
        if isinstance(outcome, Exception):
            raise outcome
        if check and not outcome.ok:
            raise CommandExecutionError(display or shlex_join(argv), outcome.returncode, outcome.stderr)
        return outcome

    async def run_shell(
        self,
        command: str,
        *,
        check: bool = True,
        capture_output: bool = True,
        cwd: Path | None = None,
    ) -> CommandResult:
        self.shell_calls.append(command)
        return result()


def _is_subsequence(key: Sequence[str], argv: Sequence[str]) -> bool:
    remaining = iter(argv)
    return all(any(token == item for item in remaining) for token in key)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture(autouse=True)
def echoes(monkeypatch: MonkeyPatch) -> list[tuple[str, str]]:
    printed: list[tuple[str, str]] = []

    def fake_print(text: str, style: str | None = None, **_: Any) -> None:
        printed.append((text, style or ""))

    monkeypatch.setattr(questionary, "print", fake_print)
    return printed
