"""Unified Pydantic models for the Medulla installer."""

from __future__ import annotations

import ipaddress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

DEFAULT_TIMEZONE = "Europe/Paris"
DEFAULT_VAULT_PASSWORD_FILE = Path("~/.vp")
DEFAULT_CONNECTIVITY_URL = "http://google.com"
DEFAULT_RELEASE_API_URL = "https://api.github.com/repos/medulla-tech/integration/releases/latest"
DEFAULT_PROVISIONING_KEY = Path("~/.ssh/medulla_provisioning")


def _expand_path(value: str | Path | None) -> Path | None:
    """Expand user paths like ~/."""
    if value is None:
        return None
    return Path(value).expanduser()


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _check_ip(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        ipaddress.ip_address(value)
    except ValueError as exc:
        raise ValueError(f"'{value}' is not a valid IP address") from exc
    return value


class _BaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")


# Configuration file models


class InstallSettings(_BaseModel):
    """Defaults for a bootstrap run, read from the [install] table."""

    timezone: str = DEFAULT_TIMEZONE
    playbook_url: str | None = None
    vault_password_file: Path = Field(default=DEFAULT_VAULT_PASSWORD_FILE, validate_default=True)
    summary_delay: float = Field(default=10.0, ge=0)
    apply_attempts: int = Field(default=1, ge=1)
    apply_retry_delay: float = Field(default=30.0, ge=0)
    connectivity_url: str = DEFAULT_CONNECTIVITY_URL
    release_api_url: str = DEFAULT_RELEASE_API_URL

    @field_validator("vault_password_file", mode="before")
    @classmethod
    def _expand_vault_file(cls, value: str | Path) -> Path | None:
        return _expand_path(value)


class VMSettings(_BaseModel):
    """VirtualBox guest settings, read from the [vm] table."""

    name: str = "medulla"
    ostype: str = "Debian_64"
    cpus: int = Field(default=2, ge=1)
    memory_mb: int = Field(default=8192, ge=1024)
    disk_mb: int = Field(default=40960, ge=8192)
    bridge_interface: str | None = None
    iso_url: str | None = None
    iso_checksum: str | None = None
    iso_path: Path | None = None
    answer_file: Path | None = None
    entry_script: Path | None = None
    provisioning_key: Path = Field(default=DEFAULT_PROVISIONING_KEY, validate_default=True)
    poll_attempts: int = Field(default=60, ge=1)
    poll_delay: float = Field(default=10.0, ge=0)
    static_address: str | None = None
    netmask: str | None = None
    gateway: str | None = None
    dns_servers: list[str] = Field(default_factory=list)

    @field_validator("iso_path", "answer_file", "entry_script", "provisioning_key", mode="before")
    @classmethod
    def _expand_paths(cls, value: str | Path | None) -> Path | None:
        return _expand_path(value)

    @field_validator("static_address", "gateway")
    @classmethod
    def _validate_address(cls, value: str | None) -> str | None:
        return _check_ip(value)

    @field_validator("iso_checksum")
    @classmethod
    def _normalize_checksum(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        if value.startswith("sha256:"):
            value = value.removeprefix("sha256:")
        return value


class InstallerConfig(_BaseModel):
    """Complete configuration file contents."""

    install: InstallSettings = Field(default_factory=InstallSettings)
    vm: VMSettings = Field(default_factory=VMSettings)


# Session models


class SessionOverrides(_BaseModel):
    """Values given on the command line, applied over discovered defaults."""

    standalone: bool = True
    interactive: bool = False
    create_vm: bool = False
    timezone: str | None = None
    playbook_url: str | None = None
    root_password: SecretStr | None = None
    public_ip: str | None = None
    interface: str | None = None
    server_fqdn: str | None = None

    @field_validator("timezone", "playbook_url", "interface", "server_fqdn", "public_ip", mode="before")
    @classmethod
    def _strip_blank(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @field_validator("public_ip")
    @classmethod
    def _validate_public_ip(cls, value: str | None) -> str | None:
        return _check_ip(value)


class NetworkFacts(_BaseModel):
    """Machine identity discovered on the host."""

    interface: str | None = None
    address: str | None = None
    netmask: str | None = None
    gateway: str | None = None
    dns_servers: list[str] = Field(default_factory=list)
    public_ip: str | None = None
    local_fqdn: str | None = None


class InstallSession(_BaseModel):
    """State of one provisioning run, threaded through every stage."""

    timezone: str = DEFAULT_TIMEZONE
    interface: str | None = None
    public_ip: str | None = None
    server_fqdn: str | None = None
    local_fqdn: str | None = None
    root_password: SecretStr | None = None
    working_directory: Path | None = None
    playbook_url: str | None = None
    vault_password_file: Path = Field(default=DEFAULT_VAULT_PASSWORD_FILE, validate_default=True)
    vault_key: SecretStr | None = None
    interactive: bool = False
    standalone: bool = True
    create_vm: bool = False
    distro: str | None = None
    facts: NetworkFacts | None = None
    prior_cleanup_attempted: bool = False

    @field_validator("public_ip", mode="before")
    @classmethod
    def _blank_public_ip(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @field_validator("vault_password_file", mode="before")
    @classmethod
    def _expand_vault_file(cls, value: str | Path) -> Path | None:
        return _expand_path(value)

    @classmethod
    def from_settings(cls, settings: InstallSettings) -> InstallSession:
        return cls(
            timezone=settings.timezone,
            playbook_url=settings.playbook_url,
            vault_password_file=settings.vault_password_file,
        )

    @property
    def ansible_directory(self) -> Path:
        if self.working_directory is None:
            raise ValueError("working directory is not defined yet")
        return self.working_directory / "ansible"

    @property
    def inventory_path(self) -> Path:
        return self.ansible_directory / "ansible_hosts"


class VMDescriptor(_BaseModel):
    """A VirtualBox guest created by the provisioner."""

    name: str
    uuid: str | None = None
    iso_url: str | None = None
    iso_checksum: str | None = None
    iso_path: Path | None = None
    cpus: int
    memory_mb: int
    disk_mb: int
    bridge_interface: str
    guest_root_password: SecretStr
    guest_ip: str | None = None

    @property
    def reference(self) -> str:
        return self.uuid or self.name


__all__ = [
    "DEFAULT_PROVISIONING_KEY",
    "DEFAULT_TIMEZONE",
    "InstallSession",
    "InstallSettings",
    "InstallerConfig",
    "NetworkFacts",
    "SessionOverrides",
    "VMDescriptor",
    "VMSettings",
]
