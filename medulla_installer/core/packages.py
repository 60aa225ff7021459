"""OS family detection and package manager drivers."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import ClassVar, Protocol, cast

import structlog

from medulla_installer.core.exceptions import UnsupportedDistroError
from medulla_installer.utils.process import CommandRunner

logger = structlog.get_logger(__name__)

OS_RELEASE = Path("/etc/os-release")

# Legacy and rebuild vendor IDs mapped onto their canonical family.
DISTRO_ALIASES: dict[str, str] = {
    "centos": "rhel",
    "rocky": "rhel",
    "almalinux": "rhel",
}
SUPPORTED_FAMILIES = ("debian", "rhel", "mageia")


def parse_os_release(content: str) -> Mapping[str, str]:
    data: dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip().strip('"').strip("'")
        data[key] = value
    return data


def normalize_distro(os_release: Mapping[str, str]) -> str:
    os_id = os_release.get("ID", "").lower()
    family = DISTRO_ALIASES.get(os_id, os_id)
    if family not in SUPPORTED_FAMILIES:
        raise UnsupportedDistroError("We only support Debian, Mageia, and rhel")
    return family


def detect_distro(path: Path = OS_RELEASE) -> str:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise UnsupportedDistroError(f"Cannot read {path}: {exc}") from exc
    os_release = parse_os_release(content)
    family = normalize_distro(os_release)
    logger.info("distro-detected", id=os_release.get("ID"), family=family, version=os_release.get("VERSION_ID"))
    return family


class PackageDriver(Protocol):
    family: ClassVar[str]

    async def update(self) -> None: ...

    async def install(self, packages: Sequence[str]) -> None: ...


class _BaseDriver:
    family: ClassVar[str] = ""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner


class DebianDriver(_BaseDriver):
    family = "debian"
    _ENV: ClassVar[dict[str, str]] = {"DEBIAN_FRONTEND": "noninteractive"}

    async def update(self) -> None:
        await self.runner.run(["apt", "update"], capture_output=False)
        await self.runner.run(["apt", "-yq", "upgrade"], env=self._ENV, capture_output=False)

    async def install(self, packages: Sequence[str]) -> None:
        await self.runner.run(["apt", "-yq", "install", *packages], env=self._ENV)


class EnterpriseLinuxDriver(_BaseDriver):
    family = "rhel"

    async def update(self) -> None:
        await self.runner.run(["dnf", "update", "-y"], capture_output=False)

    async def install(self, packages: Sequence[str]) -> None:
        await self.runner.run(["dnf", "-y", "install", *packages])


class MageiaDriver(_BaseDriver):
    family = "mageia"

    async def update(self) -> None:
        await self.runner.run(["urpmi", "--auto-update", "--auto"], capture_output=False)

    async def install(self, packages: Sequence[str]) -> None:
        await self.runner.run(["urpmi", "--auto", *packages])


_DRIVERS: dict[str, type[_BaseDriver]] = {
    DebianDriver.family: DebianDriver,
    EnterpriseLinuxDriver.family: EnterpriseLinuxDriver,
    MageiaDriver.family: MageiaDriver,
}


def driver_for(family: str, runner: CommandRunner) -> PackageDriver:
    try:
        driver_cls = _DRIVERS[family]
    except KeyError as exc:
        raise UnsupportedDistroError(f"No package driver for {family}") from exc
    return cast(PackageDriver, driver_cls(runner))


__all__ = [
    "DebianDriver",
    "EnterpriseLinuxDriver",
    "MageiaDriver",
    "PackageDriver",
    "detect_distro",
    "driver_for",
    "normalize_distro",
    "parse_os_release",
]
