"""Centralized exception hierarchy for the Medulla installer."""

from __future__ import annotations


class InstallerError(Exception):
    """Base exception for all installer errors."""


class FatalPrerequisiteError(InstallerError):
    """Raised when the machine does not meet an install prerequisite."""


class UnsupportedDistroError(FatalPrerequisiteError):
    """Raised when the OS family has no package driver."""


class NoInternetError(FatalPrerequisiteError):
    """Raised when the machine cannot reach the Internet."""


class UnresolvableError(FatalPrerequisiteError):
    """Raised when the server FQDN does not resolve locally."""


class AmbiguousInterfaceError(FatalPrerequisiteError):
    """Raised when more than one interface carries a static private address."""

    def __init__(self, interfaces: list[str]) -> None:
        self.interfaces = interfaces
        super().__init__(
            "The server has more than one interface with a static IP address: "
            f"{' '.join(interfaces)}. The installer cannot figure out which one to use"
        )


class NoStaticInterfaceError(FatalPrerequisiteError):
    """Raised when no interface carries a static private address."""

    def __init__(self) -> None:
        super().__init__(
            "No interface with a static IP address was found. "
            "Medulla needs a static interface for connecting to its clients"
        )


class DHCPInterfaceError(FatalPrerequisiteError):
    """Raised when the chosen interface is configured by DHCP."""

    def __init__(self, interface: str) -> None:
        self.interface = interface
        super().__init__(
            f"The interface {interface} is configured by DHCP. "
            "Medulla needs a static interface for connecting to its clients"
        )


class FatalExternalCommandError(InstallerError):
    """Raised when an external command required by a stage fails."""

    def __init__(self, description: str, command: str | None = None) -> None:
        self.description = description
        self.command = command
        super().__init__(description)


class VaultError(InstallerError):
    """Raised when vault key handling, encryption or decryption fails."""


class RenderError(InstallerError):
    """Raised when the inventory cannot be built or written."""


class ConfigError(InstallerError):
    """Raised when the installer configuration file is invalid."""


class WizardAbort(InstallerError):
    """Raised when the operator aborts a wizard prompt."""


__all__ = [
    "AmbiguousInterfaceError",
    "ConfigError",
    "DHCPInterfaceError",
    "FatalExternalCommandError",
    "FatalPrerequisiteError",
    "InstallerError",
    "NoInternetError",
    "NoStaticInterfaceError",
    "RenderError",
    "UnresolvableError",
    "UnsupportedDistroError",
    "VaultError",
    "WizardAbort",
]
