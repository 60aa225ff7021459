"""Discovery and validation of the machine's network identity."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict

from medulla_installer.core.exceptions import (
    AmbiguousInterfaceError,
    DHCPInterfaceError,
    NoStaticInterfaceError,
    UnresolvableError,
)
from medulla_installer.core.models import NetworkFacts
from medulla_installer.utils.process import CommandRunner

logger = structlog.get_logger(__name__)

HOSTS_FILE = Path("/etc/hosts")
RESOLV_CONF = Path("/etc/resolv.conf")

PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "169.254.0.0/16", "127.0.0.0/8")
)


class AddressRecord(BaseModel):
    """One line of ``ip -o addr``."""

    model_config = ConfigDict(frozen=True)

    interface: str
    family: str
    address: str
    prefixlen: int
    dynamic: bool


def is_private(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    return any(ip in network for network in PRIVATE_NETWORKS)


def parse_ip_addr(output: str) -> list[AddressRecord]:
    records: list[AddressRecord] = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 4 or fields[2] not in {"inet", "inet6"}:
            continue
        address, _, prefix = fields[3].partition("/")
        records.append(
            AddressRecord(
                interface=fields[1],
                family=fields[2],
                address=address,
                prefixlen=int(prefix) if prefix.isdigit() else (32 if fields[2] == "inet" else 128),
                dynamic="dynamic" in fields,
            )
        )
    return records


def classify_addresses(
    addresses: Iterable[str],
    records: list[AddressRecord],
) -> tuple[list[str], str | None]:
    """Split host addresses into static private interfaces and a public IP.

    Returns the de-duplicated list of interfaces owning a private, non-dynamic
    address, and the last non-private address seen.
    """
    static_interfaces: list[str] = []
    public_ip: str | None = None
    for address in addresses:
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            logger.debug("address-skipped", address=address)
            continue
        if ip.version != 4:
            continue
        if not is_private(address):
            public_ip = address
            continue
        for record in records:
            if record.address == address and not record.dynamic and record.interface not in static_interfaces:
                static_interfaces.append(record.interface)
    return static_interfaces, public_ip


def select_interface(static_interfaces: list[str]) -> str:
    if len(static_interfaces) == 1:
        return static_interfaces[0]
    if len(static_interfaces) > 1:
        raise AmbiguousInterfaceError(static_interfaces)
    raise NoStaticInterfaceError()


def prefix_to_netmask(prefixlen: int) -> str:
    return str(ipaddress.IPv4Network(f"0.0.0.0/{prefixlen}").netmask)


def parse_default_gateway(output: str) -> str | None:
    for line in output.splitlines():
        fields = line.split()
        if fields[:1] == ["default"] and "via" in fields:
            return fields[fields.index("via") + 1]
    return None


def parse_default_interface(output: str) -> str | None:
    for line in output.splitlines():
        fields = line.split()
        if fields[:1] == ["default"] and "dev" in fields:
            return fields[fields.index("dev") + 1]
    return None


def parse_nameservers(content: str) -> list[str]:
    servers: list[str] = []
    for line in content.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "nameserver":
            servers.append(fields[1])
    return servers


class FactCollector:
    """Reads the host's addressing through ``hostname`` and ``ip``."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        hosts_file: Path = HOSTS_FILE,
        resolv_conf: Path = RESOLV_CONF,
    ) -> None:
        self.runner = runner
        self.hosts_file = hosts_file
        self.resolv_conf = resolv_conf

    async def address_records(self) -> list[AddressRecord]:
        result = await self.runner.run(["ip", "-o", "addr"])
        return parse_ip_addr(result.stdout)

    async def collect(self, *, interface: str | None = None) -> NetworkFacts:
        """Discover the operational interface, public IP and local FQDN.

        When ``interface`` is given it is used as-is; otherwise exactly one
        static private interface must be found.
        """
        addresses = (await self.runner.run(["hostname", "-I"])).stdout.split()
        records = await self.address_records()
        static_interfaces, public_ip = classify_addresses(addresses, records)
        logger.debug("static-interfaces", interfaces=static_interfaces, public_ip=public_ip)
        if interface is None:
            interface = select_interface(static_interfaces)

        facts = NetworkFacts(interface=interface, public_ip=public_ip)
        for record in records:
            if record.interface == interface and record.family == "inet":
                facts.address = record.address
                facts.netmask = prefix_to_netmask(record.prefixlen)
                break
        route = await self.runner.run(["ip", "route", "show", "default"], check=False)
        facts.gateway = parse_default_gateway(route.stdout)
        try:
            facts.dns_servers = parse_nameservers(self.resolv_conf.read_text(encoding="utf-8"))
        except OSError:
            logger.warning("resolv-conf-unreadable", path=str(self.resolv_conf))
        facts.local_fqdn = await self.local_fqdn()
        return facts

    async def default_interface(self) -> str | None:
        """Interface carrying the default route, used when no static one is required."""
        route = await self.runner.run(["ip", "route", "show", "default"], check=False)
        return parse_default_interface(route.stdout)

    async def local_fqdn(self) -> str:
        return (await self.runner.run(["hostname", "-f"])).stdout.strip()

    async def check_resolution(self, server_fqdn: str) -> str:
        """Make sure the machine name is resolvable on the machine itself."""
        domain = (await self.runner.run(["hostname", "-d"], check=False)).stdout.strip()
        if not domain:
            raise UnresolvableError(
                "The machine's domain name is not defined. Consider setting it using "
                "hostnamectl hostname <fqdn_of_server> and adding it to /etc/hosts file"
            )
        local_fqdn = await self.local_fqdn()
        if not self._in_hosts_file(local_fqdn):
            raise UnresolvableError(
                f"The machine's name {local_fqdn} is not in {self.hosts_file}. "
                f"Consider defining it using echo {local_fqdn} >> {self.hosts_file}"
            )
        ping = await self.runner.run(["ping", "-c", "1", server_fqdn], check=False)
        if not ping.ok:
            raise UnresolvableError(
                f"The name {server_fqdn} is not resolvable. Make sure your DNS is configured properly "
                f"(/etc/resolv.conf) and the local hosts file ({self.hosts_file}) is correct"
            )
        return local_fqdn

    def _in_hosts_file(self, name: str) -> bool:
        try:
            content = self.hosts_file.read_text(encoding="utf-8")
        except OSError:
            return False
        for line in content.splitlines():
            entry = line.split("#", 1)[0].split()
            if name in entry[1:]:
                return True
        return False

    async def check_dhcp(self, interface: str) -> None:
        """Make sure the interface used is not configured by DHCP."""
        for record in await self.address_records():
            if record.interface == interface and record.dynamic:
                raise DHCPInterfaceError(interface)


__all__ = [
    "AddressRecord",
    "FactCollector",
    "classify_addresses",
    "is_private",
    "parse_default_gateway",
    "parse_default_interface",
    "parse_ip_addr",
    "parse_nameservers",
    "prefix_to_netmask",
    "select_interface",
]
