"""Pydantic model for the Typer CLI options."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, SecretStr, field_validator

from medulla_installer.core.models import SessionOverrides


def _expand_config(value: str | Path | None) -> Path | None:
    if value is None or value == "":
        return None
    return Path(value).expanduser()


class CLIOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    nostandalone: bool = False
    interactive: bool = False
    timezone: str | None = None
    playbook_url: str | None = None
    medulla_root_pw: SecretStr | None = None
    public_ip: str | None = None
    interface: str | None = None
    server_fqdn: str | None = None
    create_vm: bool = False
    config: Path | None = None
    verbose: bool = False

    _validate_config = field_validator("config", mode="before")(_expand_config)

    def to_overrides(self) -> SessionOverrides:
        return SessionOverrides(
            standalone=not self.nostandalone,
            interactive=self.interactive,
            create_vm=self.create_vm,
            timezone=self.timezone,
            playbook_url=self.playbook_url,
            root_password=self.medulla_root_pw,
            public_ip=self.public_ip,
            interface=self.interface,
            server_fqdn=self.server_fqdn,
        )
