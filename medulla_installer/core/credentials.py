"""Generation of install credentials and the per-session secret set."""

from __future__ import annotations

import secrets
import string
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from pydantic import SecretStr

if TYPE_CHECKING:
    from medulla_installer.core.vault import VaultedValue

SecretKind = Literal["alphanumeric"]

AMBIGUOUS_CHARACTERS = frozenset("0O1lI")
NUMERALS = "".join(c for c in string.digits if c not in AMBIGUOUS_CHARACTERS)
CAPITALS = "".join(c for c in string.ascii_uppercase if c not in AMBIGUOUS_CHARACTERS)
LOWERCASE = "".join(c for c in string.ascii_lowercase if c not in AMBIGUOUS_CHARACTERS)
ALPHANUMERIC = NUMERALS + CAPITALS + LOWERCASE
_REQUIRED_CLASSES = (NUMERALS, CAPITALS, LOWERCASE)


@dataclass(frozen=True)
class SecretPolicy:
    min_length: int
    max_length: int

    def __post_init__(self) -> None:
        if self.min_length < len(_REQUIRED_CLASSES):
            raise ValueError(f"secrets must be at least {len(_REQUIRED_CLASSES)} characters long")
        if self.max_length < self.min_length:
            raise ValueError("max_length must not be smaller than min_length")

    @classmethod
    def fixed(cls, length: int) -> SecretPolicy:
        return cls(min_length=length, max_length=length)


@dataclass(frozen=True)
class CredentialRule:
    name: str
    length: int


# Ordered as they appear in the rendered inventory.
CREDENTIAL_PROFILE: tuple[CredentialRule, ...] = (
    CredentialRule("ROOT_PASSWORD", 12),
    CredentialRule("AES_KEY", 32),
    CredentialRule("DRIVERS_PASSWORD", 12),
    CredentialRule("GLPI_DBPASSWD", 12),
    CredentialRule("ITSMNG_DBPASSWD", 12),
    CredentialRule("MASTER_TOKEN", 32),
    CredentialRule("XMPP_MASTER_PASSWORD", 12),
    CredentialRule("DBPASSWORD", 12),
    CredentialRule("ITSM_DBPASSWD", 12),
    CredentialRule("GUACDBPASSWD", 12),
    CredentialRule("GUACAMOLE_ROOT_PASSWORD", 40),
)
VAULT_KEY_LENGTH = 12
ROOT_PASSWORD_LENGTH = 12


class SecretGenerator:
    """Draws passwords from the OS CSPRNG.

    Every character class (numeral, capital, lowercase) is present in each
    output; candidates missing one are discarded and redrawn.
    """

    def __init__(self, rng: secrets.SystemRandom | None = None) -> None:
        self._rng = rng or secrets.SystemRandom()

    def generate(self, kind: SecretKind = "alphanumeric", length: int | SecretPolicy = 12) -> str:
        if kind != "alphanumeric":
            raise ValueError(f"Unsupported secret kind: {kind}")
        policy = length if isinstance(length, SecretPolicy) else SecretPolicy.fixed(length)
        size = self._rng.randint(policy.min_length, policy.max_length)
        while True:
            candidate = "".join(self._rng.choice(ALPHANUMERIC) for _ in range(size))
            if all(any(c in group for c in candidate) for group in _REQUIRED_CLASSES):
                return candidate


@dataclass
class SecretEntry:
    clear: SecretStr | None
    vaulted: VaultedValue | None = None


class SecretSet:
    """Credentials of one session, keyed by inventory variable name."""

    def __init__(self) -> None:
        self._entries: dict[str, SecretEntry] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, name: str, clear: str | SecretStr) -> None:
        if name in self._entries:
            raise ValueError(f"Secret '{name}' was already generated for this session")
        value = clear if isinstance(clear, SecretStr) else SecretStr(clear)
        self._entries[name] = SecretEntry(clear=value)

    def clear_text(self, name: str) -> str:
        entry = self._entries[name]
        if entry.clear is None:
            raise KeyError(f"Clear text of '{name}' was already discarded")
        return entry.clear.get_secret_value()

    def vaulted(self, name: str) -> VaultedValue:
        entry = self._entries.get(name)
        if entry is None or entry.vaulted is None:
            raise KeyError(name)
        return entry.vaulted

    def set_vaulted(self, name: str, token: VaultedValue) -> None:
        self._entries[name].vaulted = token

    def discard_clear_text(self, *, keep: frozenset[str] = frozenset()) -> None:
        for name, entry in self._entries.items():
            if name not in keep:
                entry.clear = None

    def missing(self, names: list[str]) -> list[str]:
        return [name for name in names if name not in self._entries or self._entries[name].vaulted is None]

    @classmethod
    def generate(
        cls,
        generator: SecretGenerator,
        *,
        root_password: SecretStr | None = None,
        profile: tuple[CredentialRule, ...] = CREDENTIAL_PROFILE,
    ) -> SecretSet:
        secret_set = cls()
        for rule in profile:
            if rule.name == "ROOT_PASSWORD" and root_password is not None:
                secret_set.add(rule.name, root_password)
                continue
            secret_set.add(rule.name, generator.generate("alphanumeric", rule.length))
        return secret_set


__all__ = [
    "ALPHANUMERIC",
    "AMBIGUOUS_CHARACTERS",
    "CREDENTIAL_PROFILE",
    "ROOT_PASSWORD_LENGTH",
    "VAULT_KEY_LENGTH",
    "CredentialRule",
    "SecretEntry",
    "SecretGenerator",
    "SecretPolicy",
    "SecretSet",
]
