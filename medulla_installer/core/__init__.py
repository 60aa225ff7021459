"""Core install logic for the Medulla installer."""

from medulla_installer.core.exceptions import (
    AmbiguousInterfaceError,
    ConfigError,
    DHCPInterfaceError,
    FatalExternalCommandError,
    FatalPrerequisiteError,
    InstallerError,
    NoInternetError,
    NoStaticInterfaceError,
    RenderError,
    UnresolvableError,
    UnsupportedDistroError,
    VaultError,
    WizardAbort,
)
from medulla_installer.core.models import (
    InstallerConfig,
    InstallSession,
    InstallSettings,
    NetworkFacts,
    SessionOverrides,
    VMDescriptor,
    VMSettings,
)

__all__ = [
    "AmbiguousInterfaceError",
    "ConfigError",
    "DHCPInterfaceError",
    "FatalExternalCommandError",
    "FatalPrerequisiteError",
    "InstallSession",
    "InstallSettings",
    "InstallerConfig",
    "InstallerError",
    "NetworkFacts",
    "NoInternetError",
    "NoStaticInterfaceError",
    "RenderError",
    "SessionOverrides",
    "UnresolvableError",
    "UnsupportedDistroError",
    "VMDescriptor",
    "VMSettings",
    "VaultError",
    "WizardAbort",
]
