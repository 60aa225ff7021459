from __future__ import annotations

import importlib.metadata
import zipfile
from pathlib import Path

import pytest
from _pytest.monkeypatch import MonkeyPatch

from medulla_installer.core import bundle
from medulla_installer.core.exceptions import ConfigError


def test_runtime_requirements_skip_test_extra(monkeypatch: MonkeyPatch) -> None:
    monkeypatch.setattr(
        importlib.metadata,
        "requires",
        lambda name: ["pydantic>=2.6", "PyYAML>=6.0", 'pytest>=8.0; extra == "test"'],
    )

    assert bundle.runtime_requirements() == ["pydantic>=2.6", "PyYAML>=6.0"]


def test_runtime_requirements_need_an_installed_distribution(monkeypatch: MonkeyPatch) -> None:
    def missing(name: str) -> list[str]:
        raise importlib.metadata.PackageNotFoundError(name)

    monkeypatch.setattr(importlib.metadata, "requires", missing)

    with pytest.raises(ConfigError, match="must be installed"):
        bundle.runtime_requirements()


def test_build_bundle_packs_only_sources(tmp_path: Path) -> None:
    package = tmp_path / "src" / "medulla_installer"
    (package / "__pycache__").mkdir(parents=True)
    (package / "__init__.py").write_text('__version__ = "0.1.0"\n')
    (package / "app.py").write_text("def main() -> None:\n    pass\n")
    (package / "__pycache__" / "app.cpython-311.pyc").write_bytes(b"\x00")

    target = bundle.build_bundle(tmp_path / "out" / bundle.BUNDLE_NAME, package_dir=package)

    with zipfile.ZipFile(target) as archive:
        files = sorted(name for name in archive.namelist() if not name.endswith("/"))
    assert files == [
        "__main__.py",
        "medulla_installer/__init__.py",
        "medulla_installer/app.py",
    ]
