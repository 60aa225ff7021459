from __future__ import annotations

import sys
from pathlib import Path
from typing import cast

from _pytest.monkeypatch import MonkeyPatch
from typer.testing import CliRunner

from medulla_installer.app import app
from medulla_installer.core.exceptions import ConfigError
from medulla_installer.core.models import InstallerConfig, InstallSession, SessionOverrides

cli_module = sys.modules["medulla_installer.app"]


def _patch_run(monkeypatch: MonkeyPatch, exit_code: int = 0) -> dict[str, object]:
    captured: dict[str, object] = {}

    async def fake_run_bootstrap(
        session: InstallSession, overrides: SessionOverrides, *, config: InstallerConfig
    ) -> int:
        captured["session"] = session
        captured["overrides"] = overrides
        captured["config"] = config
        return exit_code

    monkeypatch.setattr(cli_module, "run_bootstrap", fake_run_bootstrap)
    monkeypatch.setattr(cli_module, "configure_logging", lambda verbose: captured.setdefault("verbose", verbose))
    monkeypatch.setattr(cli_module, "load_config", lambda path: InstallerConfig())
    return captured


def test_unknown_flag_shows_usage(monkeypatch: MonkeyPatch) -> None:
    captured = _patch_run(monkeypatch)

    result = CliRunner().invoke(app, ["--bogus"])

    assert result.exit_code == 0
    assert "Usage" in result.output
    assert "--server-fqdn" in result.output
    assert "overrides" not in captured


def test_flags_become_overrides(monkeypatch: MonkeyPatch) -> None:
    captured = _patch_run(monkeypatch)

    result = CliRunner().invoke(
        app,
        [
            "--nostandalone",
            "--interactive",
            "--timezone",
            "UTC",
            "--medulla-root-pw",
            "S3cretPass",
            "--public-ip",
            "203.0.113.7",
            "--interface",
            "eth1",
            "--server-fqdn",
            "medulla.example.com",
            "--verbose",
        ],
    )

    assert result.exit_code == 0
    overrides = cast(SessionOverrides, captured["overrides"])
    assert overrides.standalone is False
    assert overrides.interactive is True
    assert overrides.create_vm is False
    assert overrides.timezone == "UTC"
    assert overrides.root_password is not None
    assert overrides.root_password.get_secret_value() == "S3cretPass"
    assert overrides.public_ip == "203.0.113.7"
    assert overrides.interface == "eth1"
    assert overrides.server_fqdn == "medulla.example.com"
    assert captured["verbose"] is True
    assert cast(InstallSession, captured["session"]).timezone == "Europe/Paris"


def test_exit_code_comes_from_the_run(monkeypatch: MonkeyPatch) -> None:
    _patch_run(monkeypatch, exit_code=1)

    result = CliRunner().invoke(app, ["--create-vm", "--server-fqdn", "medulla.example.com"])

    assert result.exit_code == 1


def test_invalid_public_ip_is_rejected(monkeypatch: MonkeyPatch) -> None:
    captured = _patch_run(monkeypatch)

    result = CliRunner().invoke(app, ["--public-ip", "not-an-ip"])

    assert result.exit_code == 1
    assert "overrides" not in captured


def test_config_error_exits_with_failure(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    captured = _patch_run(monkeypatch)
    seen: list[Path | None] = []

    def failing_load(path: Path | None) -> InstallerConfig:
        seen.append(path)
        raise ConfigError("Configuration file is invalid")

    monkeypatch.setattr(cli_module, "load_config", failing_load)
    result = CliRunner().invoke(app, ["--config", str(tmp_path / "installer.toml")])

    assert result.exit_code == 1
    assert seen == [tmp_path / "installer.toml"]
    assert "overrides" not in captured
