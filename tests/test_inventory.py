from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import SecretStr

from medulla_installer.core import inventory
from medulla_installer.core.credentials import SecretGenerator, SecretSet
from medulla_installer.core.exceptions import RenderError
from medulla_installer.core.models import InstallSession, NetworkFacts
from medulla_installer.core.vault import decrypt, encrypt

VAULT_KEY = "inventoryKey7"


class _VaultLoader(yaml.SafeLoader):
    pass


def _construct_vault(loader: yaml.SafeLoader, node: yaml.ScalarNode) -> dict[str, str]:
    return {"vault": loader.construct_scalar(node)}


_VaultLoader.add_constructor("!vault", _construct_vault)


def _vaulted_set(root_password: str = "RootPassw0rd") -> SecretSet:
    secret_set = SecretSet.generate(SecretGenerator(), root_password=SecretStr(root_password))
    for name in secret_set:
        secret_set.set_vaulted(name, encrypt(secret_set.clear_text(name), VAULT_KEY))
    return secret_set


def _session(**overrides: Any) -> InstallSession:
    values: dict[str, Any] = {
        "interface": "eth1",
        "public_ip": "",
        "server_fqdn": "medulla.example.com",
        "local_fqdn": "medulla.example.com",
    }
    values.update(overrides)
    return InstallSession(**values)


def _load(text: str) -> dict[str, Any]:
    return yaml.load(text, Loader=_VaultLoader)


def test_render_without_public_ip_omits_the_key() -> None:
    document = inventory.render(NetworkFacts(interface="eth1"), _vaulted_set(), _session())
    text = document.dump()
    data = _load(text)

    assert list(data) == ["medulla", "mmc", "all"]
    assert data["medulla"]["hosts"] == {
        "medulla.example.com": {"SERVER_FQDN": "medulla.example.com", "INTERFACE": "eth1"}
    }
    assert "PUBLIC_IP" not in text
    assert data["mmc"]["hosts"] == {"medulla.example.com": None}
    assert data["mmc"]["vars"]["XMPP_DOMAIN"] == "pulse"
    assert data["mmc"]["vars"]["ENTITY"] == "Public"
    assert data["all"]["vars"]["ansible_user"] == "root"
    assert data["all"]["vars"]["PULSE4REPO_URL"] == "https://apt.siveo.net/stable.sources"
    assert "ROOT_PASSWORD: !vault |" in text


def test_render_places_every_vaulted_secret_in_its_group() -> None:
    document = inventory.render(NetworkFacts(), _vaulted_set(), _session(public_ip="203.0.113.7"))
    data = _load(document.dump())

    assert data["medulla"]["hosts"]["medulla.example.com"]["PUBLIC_IP"] == "203.0.113.7"
    for group, names in inventory.GROUP_SECRETS.items():
        for name in names:
            assert "vault" in data[group]["vars"][name], name
    token = data["medulla"]["vars"]["ROOT_PASSWORD"]["vault"]
    assert decrypt(VAULT_KEY, token) == "RootPassw0rd"


def test_render_requires_every_secret() -> None:
    secret_set = SecretSet()
    secret_set.add("ROOT_PASSWORD", "RootPassw0rd")
    secret_set.set_vaulted("ROOT_PASSWORD", encrypt("RootPassw0rd", VAULT_KEY))

    with pytest.raises(RenderError, match="AES_KEY"):
        inventory.render(NetworkFacts(), secret_set, _session())


def test_document_refuses_clear_text_secrets() -> None:
    document = inventory.ConfigurationDocument()

    with pytest.raises(RenderError):
        document.add_secret("all", "DBPASSWORD", "plain")  # type: ignore[arg-type]
    with pytest.raises(RenderError):
        document.set_var("all", "DBPASSWORD", encrypt("plain", VAULT_KEY))


def test_write_creates_parent_directories(tmp_path: Path) -> None:
    document = inventory.render(NetworkFacts(), _vaulted_set(), _session())
    target = tmp_path / "work" / "ansible" / "ansible_hosts"

    document.write(target)

    assert _load(target.read_text())["medulla"]["hosts"]


def test_write_reports_os_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "ansible"
    blocker.write_text("not a directory")
    document = inventory.ConfigurationDocument()
    document.set_var("all", "ansible_user", "root")

    with pytest.raises(RenderError):
        document.write(blocker / "ansible_hosts")
