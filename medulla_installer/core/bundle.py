"""Packaging of the installer into an archive a freshly installed guest can run."""

from __future__ import annotations

import importlib.metadata
import shutil
import tempfile
import zipapp
from pathlib import Path

import structlog

import medulla_installer
from medulla_installer.core.exceptions import ConfigError

logger = structlog.get_logger(__name__)

DISTRIBUTION = "medulla-installer"
BUNDLE_NAME = "medulla-install.pyz"
BUNDLE_MAIN = "medulla_installer.app:main"
PACKAGE_DIR = Path(medulla_installer.__file__).resolve().parent


def runtime_requirements(distribution: str = DISTRIBUTION) -> list[str]:
    """Requirement strings of the installed distribution, test extras left out."""
    try:
        requirements = importlib.metadata.requires(distribution) or []
    except importlib.metadata.PackageNotFoundError as exc:
        raise ConfigError(f"{distribution} must be installed to provision a guest") from exc
    return [item for item in requirements if "extra" not in item.partition(";")[2]]


def build_bundle(target: Path, package_dir: Path = PACKAGE_DIR) -> Path:
    """Write an executable zipapp holding the ``medulla_installer`` sources.

    The archive carries no third-party code; the guest installs the
    ``runtime_requirements()`` into a virtualenv and runs the archive with it.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory() as staging:
        shutil.copytree(
            package_dir,
            Path(staging) / package_dir.name,
            ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
        )
        zipapp.create_archive(staging, target, interpreter="/usr/bin/env python3", main=BUNDLE_MAIN)
    logger.info("bundle-built", path=str(target), source=str(package_dir))
    return target


__all__ = ["BUNDLE_NAME", "DISTRIBUTION", "build_bundle", "runtime_requirements"]
