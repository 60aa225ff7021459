"""Sequential stage runner shared by the bootstrap and VM flows."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

import structlog

from medulla_installer.core import report
from medulla_installer.core.exceptions import (
    FatalExternalCommandError,
    InstallerError,
    WizardAbort,
)
from medulla_installer.core.models import InstallSession
from medulla_installer.utils.process import CommandExecutionError

logger = structlog.get_logger(__name__)

StageAction = Callable[[InstallSession], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    delay: float = 0.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")


@dataclass(frozen=True)
class Stage:
    """One barrier of an install flow.

    ``failure`` is the operator-facing sentence shown when the stage aborts;
    ``announce`` controls the blue/green progress lines.
    """

    name: str
    description: str
    action: StageAction
    failure: str = ""
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    best_effort: bool = False
    enabled: Callable[[InstallSession], bool] | None = None
    announce: bool = True

    @property
    def failure_text(self) -> str:
        return self.failure or f"{self.description} failed"


class StageRunner:
    """Runs stages one after another; the first fatal failure stops the flow."""

    def __init__(self, *, sleep: SleepFn = asyncio.sleep) -> None:
        self.sleep = sleep
        self.completed: list[str] = []

    async def run(self, stages: Sequence[Stage], session: InstallSession) -> int:
        for stage in stages:
            if stage.enabled is not None and not stage.enabled(session):
                logger.debug("stage-skipped", stage=stage.name)
                continue
            try:
                await self.run_stage(stage, session)
            except WizardAbort:
                logger.warning("stage-aborted", stage=stage.name)
                report.display_error_message("Installation aborted by user")
                return 1
            except FatalExternalCommandError as exc:
                if stage.best_effort:
                    self._continue_after(stage, exc)
                    continue
                logger.error("stage-failed", stage=stage.name, command=exc.command, error=str(exc))
                report.display_error_message(exc.description, exc.command)
                return 1
            except InstallerError as exc:
                if stage.best_effort:
                    self._continue_after(stage, exc)
                    continue
                logger.error("stage-failed", stage=stage.name, error=str(exc))
                report.display_error_message(str(exc))
                return 1
            self.completed.append(stage.name)
        return 0

    async def run_stage(self, stage: Stage, session: InstallSession) -> None:
        logger.info("stage-start", stage=stage.name)
        if stage.announce:
            report.colored_echo("blue", f"{stage.description}...")
        policy = stage.retry
        for attempt in range(1, policy.attempts + 1):
            try:
                await stage.action(session)
                break
            except WizardAbort:
                raise
            except (CommandExecutionError, OSError, InstallerError) as exc:
                error = self._as_installer_error(stage, exc)
                if attempt >= policy.attempts:
                    if error is exc:
                        raise
                    raise error from exc
                logger.warning(
                    "stage-retry",
                    stage=stage.name,
                    attempt=attempt,
                    max_attempts=policy.attempts,
                    error=str(exc),
                )
                await self.sleep(policy.delay)
        if stage.announce:
            report.colored_echo("green", f"{stage.description}... DONE")
        logger.info("stage-done", stage=stage.name)

    def _as_installer_error(self, stage: Stage, exc: Exception) -> InstallerError:
        if isinstance(exc, InstallerError):
            return exc
        if isinstance(exc, CommandExecutionError):
            return FatalExternalCommandError(stage.failure_text, exc.command)
        return FatalExternalCommandError(f"{stage.failure_text}: {exc}")

    def _continue_after(self, stage: Stage, exc: InstallerError) -> None:
        logger.warning("stage-best-effort-failed", stage=stage.name, error=str(exc))
        report.colored_echo("yellow", f"{stage.description}... FAILED (continuing): {exc}")


__all__ = ["RetryPolicy", "SleepFn", "Stage", "StageAction", "StageRunner"]
