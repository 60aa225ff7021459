from __future__ import annotations

import hashlib
import zipfile
from pathlib import Path

import pytest
from _pytest.monkeypatch import MonkeyPatch
from pydantic import SecretStr

from conftest import FakeRunner, SleepRecorder, result
from medulla_installer.core import provisioner
from medulla_installer.core.exceptions import ConfigError
from medulla_installer.core.models import InstallSession, NetworkFacts, VMSettings
from medulla_installer.core.stages import StageRunner

TEMPLATE = "#!/bin/sh\necho '@@MEDULLA_PROVISIONING_PUBKEY@@' >> /root/.ssh/authorized_keys\n"

LEASES = """\
lease {
  interface "enp0s3";
  fixed-address 192.168.1.40;
  option subnet-mask 255.255.255.0;
  option routers 192.168.1.1;
  option domain-name-servers 192.168.1.1;
}
lease {
  interface "enp0s3";
  fixed-address 192.168.1.50;
  option subnet-mask 255.255.255.0;
  option routers 192.168.1.254;
  option domain-name-servers 9.9.9.9, 1.1.1.1;
  renew 4 2026/10/15 10:00:00;
}
"""

INTERFACES = """\
source /etc/network/interfaces.d/*

auto lo
iface lo inet loopback

allow-hotplug enp0s3
iface enp0s3 inet dhcp
    hostname medulla

"""

CREATEVM_OUTPUT = (
    "Virtual machine 'medulla' is created and registered.\n"
    "UUID: 5f2a9c1e-0d3b-4c57-9a8e-2b1f6d7e8c90\n"
    "Settings file: '/root/VirtualBox VMs/medulla/medulla.vbox'\n"
)
VM_UUID = "5f2a9c1e-0d3b-4c57-9a8e-2b1f6d7e8c90"


@pytest.fixture
def vm_settings(tmp_path: Path) -> VMSettings:
    iso = tmp_path / "debian.iso"
    iso.write_bytes(b"debian-netinst")
    answer = tmp_path / "debian_postinstall.sh"
    answer.write_text(TEMPLATE)
    key = tmp_path / "medulla_provisioning"
    key.write_text("PRIVATE")
    key.with_name("medulla_provisioning.pub").write_text("ssh-ed25519 AAAAC3Nza provisioning\n")
    entry = tmp_path / "medulla-install.pyz"
    entry.write_bytes(b"PK")
    return VMSettings(
        bridge_interface="eno1",
        iso_path=iso,
        iso_checksum="sha256:" + hashlib.sha256(b"debian-netinst").hexdigest().upper(),
        answer_file=answer,
        entry_script=entry,
        provisioning_key=key,
        poll_attempts=3,
        poll_delay=10.0,
    )


def _session() -> InstallSession:
    return InstallSession(
        server_fqdn="medulla.example.com",
        root_password=SecretStr("RootPassw0rd"),
        create_vm=True,
        facts=NetworkFacts(interface="eno1"),
    )


def test_guest_property_parsing() -> None:
    assert provisioner.parse_property_value("Value: 192.168.1.50\n") == "192.168.1.50"
    assert provisioner.parse_property_value("No value set!") is None
    assert provisioner.parse_createvm_uuid(CREATEVM_OUTPUT) == VM_UUID
    assert provisioner.is_ip_literal("192.168.1.50")
    assert not provisioner.is_ip_literal("pending")
    assert not provisioner.is_ip_literal(None)


def test_parse_dhcp_lease_takes_last_block() -> None:
    lease = provisioner.parse_dhcp_lease(LEASES)

    assert lease is not None
    assert lease.interface == "enp0s3"
    assert lease.address == "192.168.1.50"
    assert lease.netmask == "255.255.255.0"
    assert lease.routers == ["192.168.1.254"]
    assert lease.dns_servers == ["9.9.9.9", "1.1.1.1"]
    assert provisioner.parse_dhcp_lease("") is None


def test_rewrite_interfaces_replaces_dhcp_stanza() -> None:
    network = provisioner.StaticNetwork("enp0s3", "192.168.1.50", "255.255.255.0", "192.168.1.254", ("9.9.9.9",))

    rewritten = provisioner.rewrite_interfaces(INTERFACES, network)

    assert "inet dhcp" not in rewritten
    assert "    hostname medulla" not in rewritten
    assert "iface lo inet loopback" in rewritten
    assert (
        "iface enp0s3 inet static\n    address 192.168.1.50\n    netmask 255.255.255.0\n"
        "    gateway 192.168.1.254\n    dns-nameservers 9.9.9.9\n"
    ) in rewritten


def test_rewrite_interfaces_appends_missing_stanza() -> None:
    network = provisioner.StaticNetwork("ens18", "10.0.0.9", "255.255.255.0", None, ())

    rewritten = provisioner.rewrite_interfaces("auto lo\niface lo inet loopback\n", network)

    assert rewritten.endswith("allow-hotplug ens18\niface ens18 inet static\n    address 10.0.0.9\n    netmask 255.255.255.0\n")


def test_answer_file_restores_original_bytes(tmp_path: Path) -> None:
    path = tmp_path / "template.sh"
    path.write_bytes(TEMPLATE.encode())
    answer = provisioner.AnswerFile(path)

    answer.mutate({provisioner.ANSWER_FILE_PUBKEY_TOKEN: "ssh-ed25519 KEY"})
    answer.mutate({provisioner.ANSWER_FILE_PUBKEY_TOKEN: "ssh-ed25519 OTHER"})

    assert "ssh-ed25519 OTHER" in path.read_text()
    assert "KEY" not in path.read_text().replace("OTHER", "")
    answer.restore()
    assert path.read_bytes() == TEMPLATE.encode()
    assert not answer.backup.exists()


@pytest.mark.asyncio
async def test_guest_ip_poll_succeeds_on_third_query(
    runner: FakeRunner, sleeper: SleepRecorder, vm_settings: VMSettings
) -> None:
    runner.script(("VBoxManage", "createvm"), result(CREATEVM_OUTPUT))
    runner.script(
        ("VBoxManage", "guestproperty", "get"),
        result("No value set!"),
        result("Value: 169.254.3.1 pending"),
        result("Value: 192.168.1.50"),
    )
    machine = provisioner.VMProvisioner(vm_settings.model_copy(update={"poll_attempts": 5}), runner, sleep=sleeper)
    await machine.create(_session())

    outcome = await machine.wait_for_guest_ip()

    assert outcome is provisioner.PollOutcome.READY
    assert machine.vm().guest_ip == "192.168.1.50"
    assert sleeper.delays == [10.0, 10.0]
    queries = [argv for argv in runner.commands("VBoxManage") if argv[1] == "guestproperty"]
    assert queries[0] == ["VBoxManage", "guestproperty", "get", VM_UUID, provisioner.GUEST_IP_PROPERTY]
    assert len(queries) == 3


@pytest.mark.asyncio
async def test_exhausted_poll_gives_cleanup_advice_and_exits_zero(
    runner: FakeRunner,
    sleeper: SleepRecorder,
    vm_settings: VMSettings,
    echoes: list[tuple[str, str]],
) -> None:
    runner.script(("VBoxManage", "createvm"), result(CREATEVM_OUTPUT))
    runner.script(("VBoxManage", "guestproperty", "get"), result("No value set!"))
    machine = provisioner.VMProvisioner(vm_settings, runner, sleep=sleeper)

    code = await machine.run(_session(), StageRunner(sleep=sleeper))

    assert code == 0
    assert machine.poll_outcome is provisioner.PollOutcome.EXHAUSTED
    assert sleeper.delays == [10.0, 10.0]
    assert runner.commands("ssh") == []
    assert vm_settings.answer_file is not None
    assert vm_settings.answer_file.read_text() == TEMPLATE
    assert (f"#   VBoxManage unregistervm {VM_UUID} --delete", "bold yellow") in echoes
    assert any("Max retries reached" in text for text, _ in echoes)


@pytest.mark.asyncio
async def test_unattended_install_uses_mutated_template(
    runner: FakeRunner, sleeper: SleepRecorder, vm_settings: VMSettings
) -> None:
    runner.script(("VBoxManage", "createvm"), result(CREATEVM_OUTPUT))
    machine = provisioner.VMProvisioner(vm_settings, runner, sleep=sleeper)
    session = _session()
    await machine.create(session)

    await machine.start_unattended_install(session)

    assert vm_settings.answer_file is not None
    assert "ssh-ed25519 AAAAC3Nza provisioning" in vm_settings.answer_file.read_text()
    command = runner.calls[-1]
    assert command.argv[:4] == ["VBoxManage", "unattended", "install", VM_UUID]
    assert "--password=" + machine.vm().guest_root_password.get_secret_value() in command.argv
    assert "--hostname=medulla.example.com" in command.argv
    assert "--start-vm=headless" in command.argv
    assert "--password=<redacted>" in command.options["display"]
    assert machine.answer_file is not None
    machine.answer_file.restore()
    assert vm_settings.answer_file.read_text() == TEMPLATE


@pytest.mark.asyncio
async def test_failed_unattended_install_restores_answer_file(
    runner: FakeRunner, sleeper: SleepRecorder, vm_settings: VMSettings, echoes: list[tuple[str, str]]
) -> None:
    runner.script(("VBoxManage", "createvm"), result(CREATEVM_OUTPUT))
    runner.script(("VBoxManage", "unattended"), result(returncode=1, stderr="VERR_ALREADY_EXISTS"))
    machine = provisioner.VMProvisioner(vm_settings, runner, sleep=sleeper)

    code = await machine.run(_session(), StageRunner(sleep=sleeper))

    assert code == 1
    assert vm_settings.answer_file is not None
    assert vm_settings.answer_file.read_text() == TEMPLATE
    assert not Path(str(vm_settings.answer_file) + ".orig").exists()
    assert ("### The unattended installation could not be started. Exiting", "bold red") in echoes


@pytest.mark.asyncio
async def test_checksum_mismatch_is_fatal(runner: FakeRunner, sleeper: SleepRecorder, vm_settings: VMSettings) -> None:
    runner.script(("VBoxManage", "createvm"), result(CREATEVM_OUTPUT))
    settings = vm_settings.model_copy(update={"iso_checksum": "0" * 64})
    machine = provisioner.VMProvisioner(settings, runner, sleep=sleeper)

    code = await machine.run(_session(), StageRunner(sleep=sleeper))

    assert code == 1
    assert not [argv for argv in runner.commands("VBoxManage") if argv[1] == "unattended"]


@pytest.mark.asyncio
async def test_ready_guest_is_reconfigured_and_installed(
    runner: FakeRunner, sleeper: SleepRecorder, vm_settings: VMSettings, monkeypatch: MonkeyPatch
) -> None:
    monkeypatch.setattr(provisioner, "runtime_requirements", lambda: ["pydantic>=2.6", "typer>=0.12"])
    runner.script(("VBoxManage", "createvm"), result(CREATEVM_OUTPUT))
    runner.script(("VBoxManage", "guestproperty", "get"), result("Value: 192.168.1.50"))
    runner.script(("ssh", f"cat {provisioner.LEASE_FILES}"), result(LEASES))
    runner.script(("ssh", f"cat {provisioner.INTERFACES_FILE}"), result(INTERFACES))
    machine = provisioner.VMProvisioner(vm_settings, runner, sleep=sleeper)

    code = await machine.run(_session(), StageRunner(sleep=sleeper))

    assert code == 0
    assert sleeper.delays == []
    ssh_calls = [call for call in runner.calls if call.argv[0] == "ssh"]
    assert all("root@192.168.1.50" in call.argv for call in ssh_calls)
    assert all(str(vm_settings.provisioning_key) in call.argv for call in ssh_calls)
    write = next(call for call in ssh_calls if call.argv[-1] == f"cat > {provisioner.INTERFACES_FILE}")
    assert "iface enp0s3 inet static" in write.options["input_text"]
    assert "    address 192.168.1.50" in write.options["input_text"]
    restart = next(call for call in ssh_calls if call.argv[-1] == "systemctl restart networking")
    assert restart.options["check"] is False
    assert restart.options["timeout_seconds"] == provisioner.NETWORK_RESTART_TIMEOUT

    scp = runner.commands("scp")
    assert scp[0][-2:] == [str(vm_settings.entry_script), f"root@192.168.1.50:{provisioner.REMOTE_BUNDLE}"]
    prepare, handoff = ssh_calls[-2:]
    assert "python3 -m venv /root/medulla-venv" in prepare.argv[-1]
    assert prepare.argv[-1].endswith("/root/medulla-venv/bin/pip install --quiet 'pydantic>=2.6' 'typer>=0.12'")
    assert handoff.argv[-1].startswith(f"/root/medulla-venv/bin/python {provisioner.REMOTE_BUNDLE} ")
    assert "--no-create-vm" in handoff.argv[-1]
    assert "--interface=enp0s3" in handoff.argv[-1]
    assert "--medulla-root-pw=RootPassw0rd" in handoff.argv[-1]
    assert handoff.options["display"] == "ssh root@192.168.1.50 <redacted>"
    assert handoff.options["timeout_seconds"] is None
    assert vm_settings.answer_file is not None
    assert vm_settings.answer_file.read_text() == TEMPLATE


@pytest.mark.asyncio
async def test_handoff_copies_a_runnable_installer_archive(
    runner: FakeRunner, sleeper: SleepRecorder, vm_settings: VMSettings, monkeypatch: MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(provisioner, "runtime_requirements", lambda: ["pydantic>=2.6"])
    runner.script(("VBoxManage", "createvm"), result(CREATEVM_OUTPUT))
    settings = vm_settings.model_copy(update={"entry_script": None})
    machine = provisioner.VMProvisioner(settings, runner, sleep=sleeper, cache_dir=tmp_path / "cache")
    session = _session()
    await machine.create(session)
    machine.vm().guest_ip = "192.168.1.50"

    await machine.handoff_install(session)

    bundle = tmp_path / "cache" / "medulla-install.pyz"
    assert runner.commands("scp")[0][-2:] == [str(bundle), f"root@192.168.1.50:{provisioner.REMOTE_BUNDLE}"]
    with zipfile.ZipFile(bundle) as archive:
        names = archive.namelist()
        main = archive.read("__main__.py").decode()
    assert "medulla_installer/app.py" in names
    assert "medulla_installer/core/bootstrap.py" in names
    assert not any("__pycache__" in name for name in names)
    assert "medulla_installer.app" in main
    assert bundle.read_bytes().startswith(b"#!/usr/bin/env python3\n")


def test_missing_installer_archive_is_a_config_error(vm_settings: VMSettings, runner: FakeRunner, tmp_path: Path) -> None:
    settings = vm_settings.model_copy(update={"entry_script": tmp_path / "missing.pyz"})
    machine = provisioner.VMProvisioner(settings, runner)

    with pytest.raises(ConfigError):
        machine.installer_bundle()


def test_answer_file_context_restores_on_error(tmp_path: Path) -> None:
    path = tmp_path / "template.sh"
    path.write_text(TEMPLATE)

    with pytest.raises(RuntimeError):
        with provisioner.AnswerFile(path) as answer:
            answer.mutate({provisioner.ANSWER_FILE_PUBKEY_TOKEN: "ssh-ed25519 KEY"})
            assert "ssh-ed25519 KEY" in path.read_text()
            raise RuntimeError("stage crashed")

    assert path.read_text() == TEMPLATE
    assert not path.with_name("template.sh.orig").exists()
