"""Rendering of the Ansible inventory consumed by ansible-playbook."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from medulla_installer.core.credentials import SecretSet
from medulla_installer.core.exceptions import RenderError
from medulla_installer.core.models import InstallSession, NetworkFacts
from medulla_installer.core.vault import VaultedValue

logger = structlog.get_logger(__name__)

PULSE4REPO_URL = "https://apt.siveo.net/stable.sources"
ANSIBLE_SSH_COMMON_ARGS = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"

# group -> vaulted variables placed in that group's vars
GROUP_SECRETS: dict[str, tuple[str, ...]] = {
    "medulla": ("ROOT_PASSWORD",),
    "mmc": ("AES_KEY", "DRIVERS_PASSWORD", "GLPI_DBPASSWD", "ITSMNG_DBPASSWD", "MASTER_TOKEN"),
    "all": ("XMPP_MASTER_PASSWORD", "DBPASSWORD", "ITSM_DBPASSWD", "GUACDBPASSWD", "GUACAMOLE_ROOT_PASSWORD"),
}


class _InventoryDumper(yaml.SafeDumper):
    pass


def _represent_vaulted(dumper: yaml.SafeDumper, value: VaultedValue) -> yaml.ScalarNode:
    return dumper.represent_scalar("!vault", value.text + "\n", style="|")


_InventoryDumper.add_representer(VaultedValue, _represent_vaulted)


class ConfigurationDocument:
    """Ordered groups of hosts and variables.

    Secret variables can only be added as ``VaultedValue`` tokens and plain
    variables refuse them, so clear text never reaches the serialized output
    through the secret path. ``None`` values are dropped instead of being
    written as blanks.
    """

    def __init__(self) -> None:
        self._groups: dict[str, dict[str, Any]] = {}

    def group(self, name: str) -> dict[str, Any]:
        return self._groups.setdefault(name, {})

    def add_host(self, group: str, host: str, **host_vars: Any) -> None:
        hosts = self.group(group).setdefault("hosts", {})
        kept = {key: value for key, value in host_vars.items() if value is not None}
        hosts[host] = kept or None

    def set_var(self, group: str, name: str, value: Any) -> None:
        if isinstance(value, VaultedValue):
            raise RenderError(f"Use add_secret for vaulted variable '{name}'")
        if value is None:
            return
        self.group(group).setdefault("vars", {})[name] = value

    def add_secret(self, group: str, name: str, token: VaultedValue) -> None:
        if not isinstance(token, VaultedValue):
            raise RenderError(f"Secret '{name}' must be vaulted before rendering")
        self.group(group).setdefault("vars", {})[name] = token

    @property
    def groups(self) -> list[str]:
        return list(self._groups)

    def to_dict(self) -> dict[str, Any]:
        return {name: dict(body) for name, body in self._groups.items()}

    def dump(self) -> str:
        return yaml.dump(
            self.to_dict(),
            Dumper=_InventoryDumper,
            sort_keys=False,
            default_flow_style=False,
            width=200,
        )

    def write(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.dump(), encoding="utf-8")
        except OSError as exc:
            raise RenderError(f"ansible_hosts file could not be generated at {path}: {exc}") from exc
        logger.info("inventory-written", path=str(path), groups=self.groups)


def render(facts: NetworkFacts, secrets: SecretSet, session: InstallSession) -> ConfigurationDocument:
    required = [name for names in GROUP_SECRETS.values() for name in names]
    missing = secrets.missing(required)
    if missing:
        raise RenderError(f"Secrets missing before rendering: {', '.join(missing)}")
    host = session.local_fqdn or facts.local_fqdn or session.server_fqdn
    if not host:
        raise RenderError("The local FQDN is unknown")

    document = ConfigurationDocument()
    document.add_host(
        "medulla",
        host,
        PUBLIC_IP=session.public_ip,
        SERVER_FQDN=session.server_fqdn,
        INTERFACE=session.interface,
    )
    for name in GROUP_SECRETS["medulla"]:
        document.add_secret("medulla", name, secrets.vaulted(name))

    document.add_host("mmc", host)
    for name in GROUP_SECRETS["mmc"]:
        document.add_secret("mmc", name, secrets.vaulted(name))
    document.set_var("mmc", "XMPP_DOMAIN", "pulse")
    document.set_var("mmc", "ENTITY", "Public")

    document.set_var("all", "ansible_ssh_common_args", ANSIBLE_SSH_COMMON_ARGS)
    document.set_var("all", "ansible_python_interpreter", "/usr/bin/python3")
    document.set_var("all", "ansible_user", "root")
    document.set_var("all", "PULSE4REPO_URL", PULSE4REPO_URL)
    for name in GROUP_SECRETS["all"]:
        document.add_secret("all", name, secrets.vaulted(name))
    return document


__all__ = ["GROUP_SECRETS", "ConfigurationDocument", "render"]
