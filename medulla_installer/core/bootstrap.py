"""Stage lists for a local Medulla install and for the VM-creation flow."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError

from medulla_installer import prompts
from medulla_installer.core import report
from medulla_installer.core.credentials import ROOT_PASSWORD_LENGTH, SecretGenerator, SecretSet
from medulla_installer.core.engine import AnsibleEngine, install_engine
from medulla_installer.core.exceptions import (
    ConfigError,
    FatalExternalCommandError,
    NoInternetError,
)
from medulla_installer.core.facts import HOSTS_FILE, RESOLV_CONF, FactCollector
from medulla_installer.core.inventory import render
from medulla_installer.core.models import (
    InstallerConfig,
    InstallSession,
    NetworkFacts,
    SessionOverrides,
)
from medulla_installer.core.packages import OS_RELEASE, PackageDriver, detect_distro, driver_for
from medulla_installer.core.provisioner import VMProvisioner
from medulla_installer.core.stages import RetryPolicy, SleepFn, Stage, StageRunner
from medulla_installer.core.vault import VaultKeyFile, encrypt
from medulla_installer.utils.process import CommandExecutionError, CommandRunner, LocalRunner, shlex_join

logger = structlog.get_logger(__name__)

SCRIPT_DEPENDENCIES = ("curl", "tar")
SSH_DIR = Path("~/.ssh")
TEMP_ROOT = Path("/tmp")
KEPT_CLEAR_TEXT = frozenset({"ROOT_PASSWORD"})


class ReleaseInfo(BaseModel):
    """The part of the GitHub release payload the installer needs."""

    model_config = ConfigDict(extra="ignore")

    tarball_url: str


def apply_overrides(session: InstallSession, overrides: SessionOverrides) -> None:
    """Copy every value given on the command line onto the session."""
    session.standalone = overrides.standalone
    session.interactive = overrides.interactive
    session.create_vm = overrides.create_vm
    for name in ("timezone", "playbook_url", "root_password", "public_ip", "interface", "server_fqdn"):
        value = getattr(overrides, name)
        if value is not None:
            setattr(session, name, value)
    if not session.standalone:
        session.working_directory = Path.cwd()


class Bootstrap:
    """Drives one provisioning run, stage after stage."""

    def __init__(
        self,
        config: InstallerConfig,
        overrides: SessionOverrides,
        *,
        runner: CommandRunner | None = None,
        generator: SecretGenerator | None = None,
        sleep: SleepFn = asyncio.sleep,
        os_release: Path = OS_RELEASE,
        hosts_file: Path = HOSTS_FILE,
        resolv_conf: Path = RESOLV_CONF,
        ssh_dir: Path = SSH_DIR,
        temp_root: Path = TEMP_ROOT,
    ) -> None:
        self.config = config
        self.settings = config.install
        self.overrides = overrides
        self.runner = runner or LocalRunner()
        self.generator = generator or SecretGenerator()
        self.sleep = sleep
        self.os_release = os_release
        self.ssh_dir = ssh_dir.expanduser()
        self.temp_root = temp_root
        self.collector = FactCollector(self.runner, hosts_file=hosts_file, resolv_conf=resolv_conf)
        self.driver: PackageDriver | None = None
        self.secrets: SecretSet | None = None

    # Stage lists

    def install_stages(self) -> list[Stage]:
        return [
            Stage("DistroCheck", "Checking Linux distribution", self.check_distro,
                  failure="The Linux distribution could not be identified"),
            Stage("ConnectivityCheck", "Checking internet connection", self.check_connectivity),
            Stage("OSUpdate", "Updating the operating system", self.update_os,
                  failure="The machine's OS could not be updated"),
            Stage("ScriptDependencyInstall", "Installing dependencies required to run this script",
                  self.install_script_dependencies, failure="The dependencies could not be installed"),
            Stage("FactDefaulting", "Defining default values", self.default_facts,
                  failure="The default values could not be defined"),
            Stage("ArgumentParsing", "Checking arguments", self.parse_arguments, announce=False),
            Stage("OptionalWizard", "Running the installation wizard", self.run_wizard,
                  enabled=lambda session: session.interactive, announce=False),
            Stage("SummaryDisplay", "Displaying the installation parameters", self.display_summary,
                  announce=False),
            Stage("ResolutionCheck", "Checking if the machine is resolvable", self.check_resolution),
            Stage("DHCPCheck", "Checking if the interface is not configured by DHCP", self.check_dhcp),
            Stage("TimezoneApply", "Defining default timezone", self.apply_timezone,
                  failure="The timezone could not be defined"),
            Stage("EngineInstall", "Installing Ansible and dependencies", self.install_engine,
                  failure="Ansible could not be installed"),
            Stage("OptionalPlaybookFetch", "Downloading playbook", self.fetch_playbook,
                  failure="Playbook could not be downloaded", enabled=lambda session: session.standalone),
            Stage("PriorCleanup", "Cleaning up previous setup", self.cleanup_prior_install,
                  best_effort=True),
            Stage("VaultInit", "Creating vault password file", self.init_vault,
                  failure="Vault password file could not be generated"),
            Stage("SSHKeyProvision", "Generating SSH keys", self.provision_ssh_keys,
                  failure="SSH keys could not be generated"),
            Stage("ConfigurationDocumentRender", "Generating Ansible hosts file", self.render_inventory,
                  failure="ansible_hosts file could not be generated"),
            Stage("EngineApply", "Installing Medulla", self.apply,
                  failure="Error installing Medulla",
                  retry=RetryPolicy(attempts=self.settings.apply_attempts, delay=self.settings.apply_retry_delay)),
            Stage("Report", "Displaying final message", self.display_report, announce=False),
        ]

    def vm_stages(self) -> list[Stage]:
        """Host-side stages run before the provisioner takes over."""
        return [
            Stage("DistroCheck", "Checking Linux distribution", self.check_distro,
                  failure="The Linux distribution could not be identified"),
            Stage("ConnectivityCheck", "Checking internet connection", self.check_connectivity),
            Stage("FactDefaulting", "Defining default values", self.default_host_facts,
                  failure="The default values could not be defined"),
            Stage("ArgumentParsing", "Checking arguments", self.parse_arguments, announce=False),
            Stage("OptionalWizard", "Running the installation wizard", self.run_wizard,
                  enabled=lambda session: session.interactive, announce=False),
            Stage("SummaryDisplay", "Displaying the installation parameters", self.display_summary,
                  announce=False),
        ]

    async def run(self, session: InstallSession) -> int:
        stage_runner = StageRunner(sleep=self.sleep)
        if not self.overrides.create_vm:
            return await stage_runner.run(self.install_stages(), session)
        code = await stage_runner.run(self.vm_stages(), session)
        if code:
            return code
        provisioner = VMProvisioner(self.config.vm, self.runner, generator=self.generator, sleep=self.sleep)
        return await provisioner.run(session, stage_runner)

    # Stage actions

    def _driver(self) -> PackageDriver:
        if self.driver is None:
            raise FatalExternalCommandError("No package driver was selected")
        return self.driver

    async def check_distro(self, session: InstallSession) -> None:
        session.distro = detect_distro(self.os_release)
        self.driver = driver_for(session.distro, self.runner)

    async def check_connectivity(self, _session: InstallSession) -> None:
        argv = ["wget", "-q", "--spider", self.settings.connectivity_url]
        try:
            result = await self.runner.run(argv, check=False)
        except CommandExecutionError as exc:
            raise NoInternetError("The machine is not connected to the Internet") from exc
        if not result.ok:
            raise NoInternetError("The machine is not connected to the Internet")

    async def update_os(self, _session: InstallSession) -> None:
        await self._driver().update()

    async def install_script_dependencies(self, _session: InstallSession) -> None:
        await self._driver().install(SCRIPT_DEPENDENCIES)

    async def default_facts(self, session: InstallSession) -> None:
        session.root_password = SecretStr(self.generator.generate("alphanumeric", ROOT_PASSWORD_LENGTH))
        if self.overrides.interface:
            logger.info("interface-given", interface=self.overrides.interface)
        facts = await self.collector.collect(interface=self.overrides.interface)
        session.facts = facts
        session.interface = facts.interface
        session.public_ip = facts.public_ip
        session.server_fqdn = facts.local_fqdn
        if self.overrides.standalone:
            session.working_directory = Path(tempfile.mkdtemp(dir=self.temp_root))
        if self.overrides.standalone and not (self.overrides.playbook_url or session.playbook_url):
            session.playbook_url = await self.latest_playbook_url()
        logger.info(
            "facts-defaulted",
            interface=session.interface,
            public_ip=session.public_ip,
            server_fqdn=session.server_fqdn,
            working_directory=str(session.working_directory),
        )

    async def default_host_facts(self, session: InstallSession) -> None:
        """Host facts for VM mode: the interface only serves as the bridge."""
        bridge = self.config.vm.bridge_interface or await self.collector.default_interface()
        if bridge:
            session.facts = await self.collector.collect(interface=bridge)
        else:
            session.facts = NetworkFacts(local_fqdn=await self.collector.local_fqdn())
        session.root_password = SecretStr(self.generator.generate("alphanumeric", ROOT_PASSWORD_LENGTH))
        logger.info("host-facts", bridge=bridge)

    async def latest_playbook_url(self) -> str:
        argv = ["curl", "-s", self.settings.release_api_url]
        result = await self.runner.run(argv)
        try:
            release = ReleaseInfo.model_validate_json(result.stdout)
        except ValidationError as exc:
            raise FatalExternalCommandError(
                "The latest playbook URL could not be determined", shlex_join(argv)
            ) from exc
        logger.info("playbook-url-resolved", url=release.tarball_url)
        return release.tarball_url

    async def parse_arguments(self, session: InstallSession) -> None:
        apply_overrides(session, self.overrides)
        if session.create_vm:
            if not session.server_fqdn:
                raise ConfigError("Creating a virtual machine needs --server-fqdn")
            if self.config.vm.answer_file is None:
                raise ConfigError("Creating a virtual machine needs [vm].answer_file in the configuration file")

    async def run_wizard(self, session: InstallSession) -> None:
        await asyncio.to_thread(prompts.run_wizard, session)

    async def display_summary(self, session: InstallSession) -> None:
        report.display_summary(session)
        await self.sleep(self.settings.summary_delay)

    async def check_resolution(self, session: InstallSession) -> None:
        session.local_fqdn = await self.collector.check_resolution(session.server_fqdn or "")

    async def check_dhcp(self, session: InstallSession) -> None:
        if session.interface:
            await self.collector.check_dhcp(session.interface)

    async def apply_timezone(self, session: InstallSession) -> None:
        await self.runner.run(["timedatectl", "set-timezone", session.timezone])

    async def install_engine(self, _session: InstallSession) -> None:
        await install_engine(self.runner, self._driver())

    async def fetch_playbook(self, session: InstallSession) -> None:
        if not session.playbook_url or session.working_directory is None:
            raise FatalExternalCommandError("Playbook could not be downloaded: no URL or working directory")
        command = (
            f"curl -sSfL {shlex_join([session.playbook_url])} | "
            f"tar xz -C {shlex_join([str(session.working_directory)])} --strip-components=1"
        )
        await self.runner.run_shell(command)

    def engine(self, session: InstallSession) -> AnsibleEngine:
        return AnsibleEngine(self.runner, session.ansible_directory, session.vault_password_file)

    def previous_inventory(self, session: InstallSession) -> Path | None:
        """The inventory last encrypted with the current vault key, if one is known."""
        recorded = VaultKeyFile(session.vault_password_file).previous_inventory()
        if recorded is not None:
            return recorded
        if not session.standalone and session.inventory_path.exists():
            return session.inventory_path
        return None

    async def cleanup_prior_install(self, session: InstallSession) -> None:
        if not VaultKeyFile(session.vault_password_file).exists():
            logger.info("prior-cleanup-skipped", reason="no-vault-file")
            return
        previous = self.previous_inventory(session)
        if previous is None:
            logger.warning("prior-cleanup-skipped", reason="no-inventory", vault_file=str(session.vault_password_file))
            return
        session.prior_cleanup_attempted = True
        await self.engine(session).cleanup(inventory=previous)

    async def init_vault(self, session: InstallSession) -> None:
        key_file = VaultKeyFile(session.vault_password_file)
        # A key without any recorded inventory never protected a deployment.
        orphaned = key_file.exists() and self.previous_inventory(session) is None
        if orphaned:
            logger.warning("vault-key-orphaned", path=str(key_file.path))
        session.vault_key = key_file.initialize(
            self.generator,
            allow_replace=session.prior_cleanup_attempted or orphaned,
        )

    async def provision_ssh_keys(self, _session: InstallSession) -> None:
        self.ssh_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        private_key = self.ssh_dir / "id_rsa"
        if not private_key.exists():
            await self.runner.run(["ssh-keygen", "-f", str(private_key), "-N", "", "-b", "2048", "-t", "rsa", "-q"])
        public_key = private_key.with_name("id_rsa.pub").read_text(encoding="utf-8").strip()
        authorized_keys = self.ssh_dir / "authorized_keys"
        existing = authorized_keys.read_text(encoding="utf-8") if authorized_keys.exists() else ""
        if public_key not in existing.splitlines():
            with authorized_keys.open("a", encoding="utf-8") as handle:
                if existing and not existing.endswith("\n"):
                    handle.write("\n")
                handle.write(public_key + "\n")
            authorized_keys.chmod(0o600)
        hostname = (await self.runner.run(["hostname"])).stdout.strip()
        scan = await self.runner.run(["ssh-keyscan", "-t", "rsa", hostname], check=False)
        if not scan.stdout.strip():
            logger.warning("ssh-keyscan-empty", host=hostname, stderr=scan.stderr.strip())
            return
        with (self.ssh_dir / "known_hosts").open("a", encoding="utf-8") as handle:
            handle.write(scan.stdout if scan.stdout.endswith("\n") else scan.stdout + "\n")

    async def render_inventory(self, session: InstallSession) -> None:
        if session.vault_key is None:
            raise FatalExternalCommandError("The vault key is not available")
        secrets = SecretSet.generate(self.generator, root_password=session.root_password)
        for name in secrets:
            secrets.set_vaulted(name, encrypt(secrets.clear_text(name), session.vault_key))
        document = render(session.facts or NetworkFacts(), secrets, session)
        document.write(session.inventory_path)
        VaultKeyFile(session.vault_password_file).record_inventory(document.dump())
        secrets.discard_clear_text(keep=KEPT_CLEAR_TEXT)
        self.secrets = secrets
        logger.info("secrets-vaulted", count=len(secrets))

    async def apply(self, session: InstallSession) -> None:
        await self.engine(session).apply()

    async def display_report(self, session: InstallSession) -> None:
        report.display_final_message(session)


async def run_bootstrap(
    session: InstallSession,
    overrides: SessionOverrides,
    *,
    config: InstallerConfig | None = None,
    runner: CommandRunner | None = None,
    **options,
) -> int:
    """Run the whole install (or VM provisioning) and return the exit code."""
    bootstrap = Bootstrap(config or InstallerConfig(), overrides, runner=runner, **options)
    logger.info("bootstrap-start", create_vm=overrides.create_vm, standalone=overrides.standalone)
    code = await bootstrap.run(session)
    logger.info("bootstrap-finished", exit_code=code)
    return code


__all__ = ["Bootstrap", "ReleaseInfo", "apply_overrides", "run_bootstrap"]
