"""VirtualBox guest creation and hand-off of the install to the guest."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import hashlib
import ipaddress
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from pydantic import SecretStr

from medulla_installer.core import report
from medulla_installer.core.bundle import BUNDLE_NAME, build_bundle, runtime_requirements
from medulla_installer.core.credentials import ROOT_PASSWORD_LENGTH, SecretGenerator
from medulla_installer.core.exceptions import (
    ConfigError,
    FatalExternalCommandError,
)
from medulla_installer.core.models import InstallSession, VMDescriptor, VMSettings
from medulla_installer.core.stages import SleepFn, Stage, StageRunner
from medulla_installer.utils.process import CommandExecutionError, CommandRunner, shlex_join
from medulla_installer.utils.ssh import SSHSession

logger = structlog.get_logger(__name__)

VBOXMANAGE = "VBoxManage"
GUEST_IP_PROPERTY = "/VirtualBox/GuestInfo/Net/0/V4/IP"
ANSWER_FILE_PUBKEY_TOKEN = "@@MEDULLA_PROVISIONING_PUBKEY@@"
REMOTE_BUNDLE = "/root/medulla-install.pyz"
GUEST_VENV = "/root/medulla-venv"
GUEST_PYTHON_PACKAGES = ("python3-venv", "python3-pip")
LEASE_FILES = "/var/lib/dhcp/dhclient*.leases"
INTERFACES_FILE = "/etc/network/interfaces"
CACHE_DIR = Path("~/.cache/medulla")
VM_BASE_DIR = Path("~/VirtualBox VMs")
NETWORK_RESTART_TIMEOUT = 60.0


class PollOutcome(enum.Enum):
    READY = "ready"
    EXHAUSTED = "exhausted"


def parse_property_value(output: str) -> str | None:
    """Return the text after the first colon of a ``key: value`` answer."""
    _, separator, value = output.partition(":")
    if not separator:
        return None
    return value.strip() or None


def parse_createvm_uuid(output: str) -> str | None:
    for line in output.splitlines():
        key, separator, value = line.partition(":")
        if separator and key.strip() == "UUID":
            return value.strip()
    return None


def is_ip_literal(value: str | None) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


@dataclass
class DHCPLease:
    interface: str | None = None
    address: str | None = None
    netmask: str | None = None
    routers: list[str] = field(default_factory=list)
    dns_servers: list[str] = field(default_factory=list)


def parse_dhcp_lease(content: str) -> DHCPLease | None:
    """Parse the most recent ``lease { ... }`` block of a dhclient lease file."""
    lease: DHCPLease | None = None
    current: DHCPLease | None = None
    for raw_line in content.splitlines():
        line = raw_line.strip().rstrip(";").strip()
        if line.startswith("lease") and line.endswith("{"):
            current = DHCPLease()
            continue
        if line == "}":
            if current is not None:
                lease = current
            current = None
            continue
        if current is None:
            continue
        if line.startswith("interface "):
            current.interface = line.split(None, 1)[1].strip('"')
        elif line.startswith("fixed-address "):
            current.address = line.split(None, 1)[1]
        elif line.startswith("option subnet-mask "):
            current.netmask = line.split()[2]
        elif line.startswith("option routers "):
            current.routers = [item.strip() for item in line.split(None, 2)[2].split(",") if item.strip()]
        elif line.startswith("option domain-name-servers "):
            current.dns_servers = [item.strip() for item in line.split(None, 2)[2].split(",") if item.strip()]
    return lease


@dataclass(frozen=True)
class StaticNetwork:
    interface: str
    address: str
    netmask: str
    gateway: str | None
    dns_servers: tuple[str, ...]

    def stanza(self) -> list[str]:
        lines = [f"iface {self.interface} inet static", f"    address {self.address}", f"    netmask {self.netmask}"]
        if self.gateway:
            lines.append(f"    gateway {self.gateway}")
        if self.dns_servers:
            lines.append(f"    dns-nameservers {' '.join(self.dns_servers)}")
        return lines


def rewrite_interfaces(content: str, network: StaticNetwork) -> str:
    """Turn the ``iface <if> inet dhcp`` stanza of an ifupdown file into a static one."""
    output: list[str] = []
    replaced = False
    skipping = False
    for line in content.splitlines():
        fields = line.split()
        if skipping:
            if line.startswith((" ", "\t")) and fields:
                continue
            skipping = False
        if fields[:4] == ["iface", network.interface, "inet", "dhcp"]:
            output.extend(network.stanza())
            replaced = True
            skipping = True
            continue
        output.append(line)
    if not replaced:
        output.extend(["", f"allow-hotplug {network.interface}", *network.stanza()])
    return "\n".join(output) + "\n"


class AnswerFile:
    """Unattended-install template, mutated in place and restored from a backup."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.backup = path.with_name(path.name + ".orig")

    def __enter__(self) -> AnswerFile:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.restore()

    @property
    def mutated(self) -> bool:
        return self.backup.exists()

    def mutate(self, replacements: dict[str, str]) -> None:
        if not self.mutated:
            shutil.copy2(self.path, self.backup)
        content = self.backup.read_text(encoding="utf-8")
        for token, value in replacements.items():
            content = content.replace(token, value)
        self.path.write_text(content, encoding="utf-8")
        logger.info("answer-file-mutated", path=str(self.path), backup=str(self.backup))

    def restore(self) -> None:
        if not self.mutated:
            return
        os.replace(self.backup, self.path)
        logger.info("answer-file-restored", path=str(self.path))


class VBoxManage:
    """The subset of the VirtualBox CLI used to build the Medulla guest."""

    def __init__(self, runner: CommandRunner, executable: str = VBOXMANAGE) -> None:
        self.runner = runner
        self.executable = executable

    async def _run(self, *args: str, check: bool = True, display: str | None = None) -> str:
        result = await self.runner.run([self.executable, *args], check=check, display=display)
        return result.stdout

    async def version(self) -> str:
        return (await self._run("--version")).strip()

    async def create_vm(self, name: str, ostype: str) -> str:
        output = await self._run("createvm", "--name", name, "--ostype", ostype, "--register")
        uuid = parse_createvm_uuid(output)
        if not uuid:
            raise FatalExternalCommandError(f"The UUID of the new virtual machine {name} could not be read")
        return uuid

    async def configure(self, vm: VMDescriptor) -> None:
        await self._run(
            "modifyvm",
            vm.reference,
            "--cpus",
            str(vm.cpus),
            "--memory",
            str(vm.memory_mb),
            "--nic1",
            "bridged",
            "--bridgeadapter1",
            vm.bridge_interface,
        )

    async def attach_disk(self, vm: VMDescriptor, disk: Path) -> None:
        await self._run("createmedium", "disk", "--filename", str(disk), "--size", str(vm.disk_mb))
        await self._run("storagectl", vm.reference, "--name", "SATA", "--add", "sata")
        await self._run(
            "storageattach",
            vm.reference,
            "--storagectl",
            "SATA",
            "--port",
            "0",
            "--device",
            "0",
            "--type",
            "hdd",
            "--medium",
            str(disk),
        )

    async def unattended_install(
        self,
        vm: VMDescriptor,
        *,
        iso: Path,
        hostname: str,
        timezone: str,
        script_template: Path,
    ) -> None:
        args = [
            "unattended",
            "install",
            vm.reference,
            f"--iso={iso}",
            "--user=root",
            f"--password={vm.guest_root_password.get_secret_value()}",
            f"--hostname={hostname}",
            f"--time-zone={timezone}",
            f"--script-template={script_template}",
            "--install-additions",
            "--start-vm=headless",
        ]
        shown = shlex_join([self.executable, *args[:5], "--password=<redacted>", *args[6:]])
        await self._run(*args, display=shown)

    async def guest_property(self, reference: str, key: str) -> str | None:
        result = await self.runner.run([self.executable, "guestproperty", "get", reference, key], check=False)
        if not result.ok:
            return None
        return parse_property_value(result.stdout)


class VMProvisioner:
    """Creates the guest, waits for it, then runs the installer inside it."""

    def __init__(
        self,
        settings: VMSettings,
        runner: CommandRunner,
        *,
        generator: SecretGenerator | None = None,
        vbox: VBoxManage | None = None,
        sleep: SleepFn = asyncio.sleep,
        cache_dir: Path = CACHE_DIR,
    ) -> None:
        self.settings = settings
        self.cache_dir = cache_dir.expanduser()
        self.runner = runner
        self.generator = generator or SecretGenerator()
        self.vbox = vbox or VBoxManage(runner)
        self.descriptor: VMDescriptor | None = None
        self.answer_file = AnswerFile(settings.answer_file) if settings.answer_file else None
        self.network: StaticNetwork | None = None
        self.guest_interface: str | None = None
        self.poll_outcome: PollOutcome | None = None
        self.sleep = sleep

    @property
    def key_path(self) -> Path:
        return self.settings.provisioning_key

    @property
    def iso_path(self) -> Path:
        if self.settings.iso_path:
            return self.settings.iso_path
        if not self.settings.iso_url:
            raise ConfigError("VM mode needs [vm].iso_url or [vm].iso_path")
        name = self.settings.iso_url.rstrip("/").rsplit("/", 1)[-1]
        return self.cache_dir / name

    def vm(self) -> VMDescriptor:
        if self.descriptor is None:
            raise FatalExternalCommandError("The virtual machine has not been created")
        return self.descriptor

    def guest_ready(self, _session: InstallSession) -> bool:
        return self.descriptor is not None and self.descriptor.guest_ip is not None

    def stages(self) -> list[Stage]:
        return [
            Stage("ProvisioningKey", "Generating provisioning SSH key", self.ensure_keypair,
                  failure="The provisioning SSH key could not be generated"),
            Stage("HypervisorCheck", "Checking VirtualBox", self.check_hypervisor,
                  failure="VBoxManage is not available on this machine"),
            Stage("Create", "Creating virtual machine", self.create,
                  failure="The virtual machine could not be created"),
            Stage("AttachMedia", "Attaching installation media", self.attach_media,
                  failure="The installation media could not be attached"),
            Stage("StartUnattendedInstall", "Starting unattended OS installation", self.start_unattended_install,
                  failure="The unattended installation could not be started"),
            Stage("PollGuestIP", "Waiting for the guest IP address", self.poll_guest_ip),
            Stage("ReconfigureNetwork", "Configuring a static address in the guest", self.reconfigure_network,
                  failure="The guest network could not be reconfigured", enabled=self.guest_ready),
            Stage("RestartNetworking", "Restarting guest networking", self.restart_networking,
                  enabled=self.guest_ready),
            Stage("HandoffInstall", "Installing Medulla inside the guest", self.handoff_install,
                  failure="Error installing Medulla in the virtual machine", enabled=self.guest_ready),
            Stage("CleanupAdvice", "Cleanup advice", self.cleanup_advice, announce=False),
        ]

    async def run(self, session: InstallSession, stage_runner: StageRunner) -> int:
        with self.answer_file if self.answer_file is not None else contextlib.nullcontext():
            return await stage_runner.run(self.stages(), session)

    async def check_hypervisor(self, _session: InstallSession) -> None:
        version = await self.vbox.version()
        logger.info("hypervisor-version", version=version)

    async def ensure_keypair(self, _session: InstallSession) -> None:
        if self.key_path.exists():
            logger.info("provisioning-key-present", path=str(self.key_path))
            return
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        await self.runner.run(["ssh-keygen", "-t", "ed25519", "-N", "", "-q", "-f", str(self.key_path)])

    async def create(self, session: InstallSession) -> None:
        if not session.server_fqdn:
            raise ConfigError("VM mode needs the guest FQDN (--server-fqdn)")
        bridge = self.settings.bridge_interface or (session.facts.interface if session.facts else None)
        if not bridge:
            raise ConfigError("VM mode needs a host interface to bridge ([vm].bridge_interface)")
        descriptor = VMDescriptor(
            name=self.settings.name,
            iso_url=self.settings.iso_url,
            iso_checksum=self.settings.iso_checksum,
            iso_path=self.iso_path,
            cpus=self.settings.cpus,
            memory_mb=self.settings.memory_mb,
            disk_mb=self.settings.disk_mb,
            bridge_interface=bridge,
            guest_root_password=SecretStr(self.generator.generate("alphanumeric", ROOT_PASSWORD_LENGTH)),
        )
        descriptor.uuid = await self.vbox.create_vm(descriptor.name, self.settings.ostype)
        self.descriptor = descriptor
        logger.info("vm-created", name=descriptor.name, uuid=descriptor.uuid)
        await self.vbox.configure(descriptor)
        disk = VM_BASE_DIR.expanduser() / descriptor.name / f"{descriptor.name}.vdi"
        await self.vbox.attach_disk(descriptor, disk)

    async def attach_media(self, _session: InstallSession) -> None:
        vm = self.vm()
        iso = self.iso_path
        if not iso.exists():
            if not vm.iso_url:
                raise ConfigError(f"Installation image {iso} does not exist and no [vm].iso_url is set")
            iso.parent.mkdir(parents=True, exist_ok=True)
            await self.runner.run(["curl", "-sSfL", "-o", str(iso), vm.iso_url], capture_output=False)
        if vm.iso_checksum:
            digest = sha256sum(iso)
            if digest != vm.iso_checksum:
                raise FatalExternalCommandError(
                    f"Checksum mismatch for {iso}: expected {vm.iso_checksum}, got {digest}"
                )
        else:
            logger.warning("iso-checksum-missing", path=str(iso))

    async def start_unattended_install(self, session: InstallSession) -> None:
        vm = self.vm()
        if self.answer_file is None:
            raise ConfigError("VM mode needs an answer file template ([vm].answer_file)")
        public_key = self.key_path.with_name(self.key_path.name + ".pub").read_text(encoding="utf-8").strip()
        self.answer_file.mutate({ANSWER_FILE_PUBKEY_TOKEN: public_key})
        await self.vbox.unattended_install(
            vm,
            iso=self.iso_path,
            hostname=session.server_fqdn or vm.name,
            timezone=session.timezone,
            script_template=self.answer_file.path,
        )

    async def wait_for_guest_ip(self) -> PollOutcome:
        """Query the guest IP property until it holds an address.

        At most ``poll_attempts`` queries are made, sleeping ``poll_delay``
        between two consecutive ones.
        """
        vm = self.vm()
        attempts = self.settings.poll_attempts
        for attempt in range(1, attempts + 1):
            value = await self.vbox.guest_property(vm.reference, GUEST_IP_PROPERTY)
            if is_ip_literal(value):
                vm.guest_ip = value
                logger.info("guest-ip", name=vm.name, address=value, attempt=attempt)
                return PollOutcome.READY
            logger.debug("guest-ip-pending", name=vm.name, attempt=attempt, max_attempts=attempts)
            if attempt < attempts:
                await self.sleep(self.settings.poll_delay)
        logger.error("guest-ip-max-retries-reached", name=vm.name, attempts=attempts)
        return PollOutcome.EXHAUSTED

    async def poll_guest_ip(self, _session: InstallSession) -> None:
        self.poll_outcome = await self.wait_for_guest_ip()
        if self.poll_outcome is PollOutcome.EXHAUSTED:
            report.colored_echo(
                "yellow",
                f"Max retries reached: the guest {self.vm().name} did not report an IP address "
                f"after {self.settings.poll_attempts} attempts",
            )

    def _guest_session(self, host: str) -> SSHSession:
        return SSHSession(
            host=host,
            user="root",
            identity_file=self.key_path,
            runner=self.runner,
            description=f"vm-{self.vm().name}",
        )

    async def reconfigure_network(self, session: InstallSession) -> None:
        vm = self.vm()
        guest_ip = vm.guest_ip or ""
        ssh = self._guest_session(guest_ip)
        leases = await ssh.run(f"cat {LEASE_FILES}", check=False)
        lease = parse_dhcp_lease(leases.stdout) or DHCPLease()
        interface = session.interface or lease.interface
        netmask = self.settings.netmask or lease.netmask
        if not interface or not netmask:
            raise FatalExternalCommandError(
                "The guest interface or netmask could not be determined from its DHCP lease",
                f"cat {LEASE_FILES}",
            )
        network = StaticNetwork(
            interface=interface,
            address=self.settings.static_address or guest_ip,
            netmask=netmask,
            gateway=self.settings.gateway or (lease.routers[0] if lease.routers else None),
            dns_servers=tuple(self.settings.dns_servers or lease.dns_servers),
        )
        current = await ssh.run(f"cat {INTERFACES_FILE}")
        await ssh.run(f"cat > {INTERFACES_FILE}", input_text=rewrite_interfaces(current.stdout, network))
        self.network = network
        self.guest_interface = interface
        logger.info("guest-network-static", interface=interface, address=network.address)

    async def restart_networking(self, _session: InstallSession) -> None:
        vm = self.vm()
        ssh = self._guest_session(vm.guest_ip or "")
        try:
            await ssh.run("systemctl restart networking", check=False, timeout_seconds=NETWORK_RESTART_TIMEOUT)
        except CommandExecutionError as exc:
            logger.warning("guest-network-restart-dropped", error=str(exc))
        if self.network is not None:
            vm.guest_ip = self.network.address

    def handoff_arguments(self, session: InstallSession) -> list[str]:
        args = [
            f"{GUEST_VENV}/bin/python",
            REMOTE_BUNDLE,
            "--no-create-vm",
            f"--timezone={session.timezone}",
            f"--server-fqdn={session.server_fqdn}",
        ]
        interface = self.guest_interface or session.interface
        if interface:
            args.append(f"--interface={interface}")
        if session.root_password is not None:
            args.append(f"--medulla-root-pw={session.root_password.get_secret_value()}")
        if session.public_ip:
            args.append(f"--public-ip={session.public_ip}")
        if session.playbook_url:
            args.append(f"--playbook-url={session.playbook_url}")
        return args

    def installer_bundle(self) -> Path:
        """The archive copied to the guest: ``[vm].entry_script`` or a fresh build."""
        if self.settings.entry_script is not None:
            if not self.settings.entry_script.is_file():
                raise ConfigError(f"Installer bundle {self.settings.entry_script} was not found")
            return self.settings.entry_script
        return build_bundle(self.cache_dir / BUNDLE_NAME)

    def guest_runtime_command(self) -> str:
        """Shell command preparing the virtualenv the bundle runs with."""
        return " && ".join(
            [
                "apt-get -q update",
                "DEBIAN_FRONTEND=noninteractive " + shlex_join(["apt-get", "-yq", "install", *GUEST_PYTHON_PACKAGES]),
                shlex_join(["python3", "-m", "venv", GUEST_VENV]),
                shlex_join([f"{GUEST_VENV}/bin/pip", "install", "--quiet", *runtime_requirements()]),
            ]
        )

    async def handoff_install(self, session: InstallSession) -> None:
        vm = self.vm()
        bundle = self.installer_bundle()
        ssh = self._guest_session(vm.guest_ip or "")
        await ssh.copy_to(bundle, REMOTE_BUNDLE)
        await ssh.run(self.guest_runtime_command(), capture_output=False)
        await ssh.run(shlex_join(self.handoff_arguments(session)), capture_output=False, sensitive=True)

    async def cleanup_advice(self, _session: InstallSession) -> None:
        if self.descriptor is not None:
            report.display_cleanup_advice(self.descriptor)


def sha256sum(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "ANSWER_FILE_PUBKEY_TOKEN",
    "GUEST_IP_PROPERTY",
    "AnswerFile",
    "DHCPLease",
    "PollOutcome",
    "StaticNetwork",
    "VBoxManage",
    "VMProvisioner",
    "is_ip_literal",
    "parse_createvm_uuid",
    "parse_dhcp_lease",
    "parse_property_value",
    "rewrite_interfaces",
    "sha256sum",
]
