"""Thin wrapper around ansible-playbook and ansible-galaxy."""

from __future__ import annotations

from pathlib import Path

import structlog

from medulla_installer.core.packages import PackageDriver
from medulla_installer.utils.process import CommandResult, CommandRunner

logger = structlog.get_logger(__name__)

CLEANUP_PLAYBOOK = "playbook_cleanup.yml"
APPLY_PLAYBOOK = "playbook_pulsemain.yml"
DEFAULT_LIMIT = "medulla"
INVENTORY_NAME = "ansible_hosts"

ENGINE_PACKAGES = ("ansible",)
ENGINE_COLLECTIONS = ("community.general",)
ENGINE_PYTHON_PACKAGES = (
    "python3-passlib",
    "python3-bcrypt",
    "python3-pymysql",
    "xmlstarlet",
    "python3-lxml",
    "python3-selinux",
    "python3-pyldap",
    "python3-openssl",
)


class AnsibleEngine:
    """Runs playbooks from ``<workdir>/ansible`` against the rendered inventory."""

    def __init__(
        self,
        runner: CommandRunner,
        ansible_directory: Path,
        vault_password_file: Path,
        *,
        limit: str = DEFAULT_LIMIT,
    ) -> None:
        self.runner = runner
        self.ansible_directory = ansible_directory
        self.vault_password_file = vault_password_file
        self.limit = limit

    def playbook_command(self, playbook: str, inventory: Path | None = None) -> list[str]:
        return [
            "ansible-playbook",
            playbook,
            "--vault-password-file",
            str(self.vault_password_file),
            "-i",
            str(inventory) if inventory is not None else INVENTORY_NAME,
            f"--limit={self.limit}",
        ]

    @property
    def inventory_path(self) -> Path:
        return self.ansible_directory / INVENTORY_NAME

    async def cleanup(self, inventory: Path | None = None) -> CommandResult:
        """Tear down what the given (by default the local) inventory deployed."""
        logger.info(
            "engine-cleanup",
            directory=str(self.ansible_directory),
            inventory=str(inventory or self.inventory_path),
            limit=self.limit,
        )
        return await self._run_playbook(CLEANUP_PLAYBOOK, inventory)

    async def apply(self) -> CommandResult:
        logger.info("engine-apply", directory=str(self.ansible_directory), limit=self.limit)
        return await self._run_playbook(APPLY_PLAYBOOK)

    async def _run_playbook(self, playbook: str, inventory: Path | None = None) -> CommandResult:
        return await self.runner.run(
            self.playbook_command(playbook, inventory),
            cwd=self.ansible_directory,
            capture_output=False,
        )


async def install_engine(runner: CommandRunner, driver: PackageDriver) -> None:
    await driver.install(ENGINE_PACKAGES)
    for collection in ENGINE_COLLECTIONS:
        await runner.run(["ansible-galaxy", "collection", "install", collection])
    await driver.install(ENGINE_PYTHON_PACKAGES)


__all__ = [
    "APPLY_PLAYBOOK",
    "CLEANUP_PLAYBOOK",
    "AnsibleEngine",
    "install_engine",
]
