"""Session vault: key file handling and Ansible Vault 1.1 encryption.

Tokens produced here use the ``$ANSIBLE_VAULT;1.1;AES256`` envelope so that
``ansible-playbook --vault-password-file`` can decrypt them at apply time:

* a random 32 byte salt feeds PBKDF2-HMAC-SHA256 (10000 rounds) which
  yields 80 bytes split into an AES-256 key, an HMAC key and a CTR counter;
* the PKCS7 padded clear text is encrypted with AES-256-CTR;
* an HMAC-SHA256 over the ciphertext authenticates the payload;
* ``hex(salt) \\n hex(hmac) \\n hex(ciphertext)`` is hexlified again and
  wrapped at 80 columns under the header line.
"""

from __future__ import annotations

import os
from binascii import Error as BinasciiError
from binascii import hexlify, unhexlify
from dataclasses import dataclass
from pathlib import Path

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import SecretStr

from medulla_installer.core.credentials import VAULT_KEY_LENGTH, SecretGenerator
from medulla_installer.core.exceptions import VaultError

logger = structlog.get_logger(__name__)

VAULT_HEADER = "$ANSIBLE_VAULT;1.1;AES256"
_SALT_SIZE = 32
_KEY_SIZE = 32
_IV_SIZE = 16
_ITERATIONS = 10000
_LINE_WIDTH = 80


@dataclass(frozen=True)
class VaultedValue:
    """Ciphertext token safe to persist in the inventory."""

    text: str

    def __post_init__(self) -> None:
        if not self.text.startswith(VAULT_HEADER):
            raise VaultError("Vaulted values must carry the Ansible Vault header")

    def __str__(self) -> str:
        return self.text


def _derive_keys(password: bytes, salt: bytes) -> tuple[bytes, bytes, bytes]:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=2 * _KEY_SIZE + _IV_SIZE,
        salt=salt,
        iterations=_ITERATIONS,
    )
    derived = kdf.derive(password)
    return derived[:_KEY_SIZE], derived[_KEY_SIZE : 2 * _KEY_SIZE], derived[2 * _KEY_SIZE :]


def _key_bytes(vault_key: SecretStr | str) -> bytes:
    raw = vault_key.get_secret_value() if isinstance(vault_key, SecretStr) else vault_key
    if not raw:
        raise VaultError("Vault key is empty")
    return raw.encode()


def encrypt(clear_text: str, vault_key: SecretStr | str) -> VaultedValue:
    salt = os.urandom(_SALT_SIZE)
    cipher_key, hmac_key, iv = _derive_keys(_key_bytes(vault_key), salt)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(clear_text.encode()) + padder.finalize()
    encryptor = Cipher(algorithms.AES(cipher_key), modes.CTR(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    signer = hmac.HMAC(hmac_key, hashes.SHA256())
    signer.update(ciphertext)
    signature = signer.finalize()

    body = b"\n".join([hexlify(salt), hexlify(signature), hexlify(ciphertext)])
    payload = hexlify(body).decode()
    lines = [payload[i : i + _LINE_WIDTH] for i in range(0, len(payload), _LINE_WIDTH)]
    return VaultedValue("\n".join([VAULT_HEADER, *lines]))


def decrypt(vault_key: SecretStr | str, token: VaultedValue | str) -> str:
    text = token.text if isinstance(token, VaultedValue) else token
    header, _, payload = text.strip().partition("\n")
    if header.strip() != VAULT_HEADER:
        raise VaultError(f"Unsupported vault header: {header.strip()}")
    try:
        body = unhexlify("".join(payload.split()))
        salt_hex, signature_hex, ciphertext_hex = body.split(b"\n", 2)
        salt = unhexlify(salt_hex)
        signature = unhexlify(signature_hex)
        ciphertext = unhexlify(ciphertext_hex)
    except (BinasciiError, ValueError) as exc:
        raise VaultError("Vaulted value is malformed") from exc

    cipher_key, hmac_key, iv = _derive_keys(_key_bytes(vault_key), salt)
    verifier = hmac.HMAC(hmac_key, hashes.SHA256())
    verifier.update(ciphertext)
    try:
        verifier.verify(signature)
    except InvalidSignature as exc:
        raise VaultError("HMAC verification failed: wrong vault key or corrupted value") from exc

    decryptor = Cipher(algorithms.AES(cipher_key), modes.CTR(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        clear = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise VaultError("Vaulted value has invalid padding") from exc
    return clear.decode()


class VaultKeyFile:
    """The on-disk vault password shared with ansible-playbook."""

    def __init__(self, path: Path) -> None:
        self.path = path.expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def initialize(self, generator: SecretGenerator, *, allow_replace: bool = False) -> SecretStr:
        if self.path.exists() and not allow_replace:
            raise VaultError(
                f"Vault password file {self.path} already exists and the previous setup was not cleaned up"
            )
        key = generator.generate("alphanumeric", VAULT_KEY_LENGTH)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(key + "\n")
            self.path.chmod(0o600)
        except OSError as exc:
            raise VaultError(f"Vault password file {self.path} could not be written: {exc}") from exc
        logger.info("vault-key-created", path=str(self.path))
        return SecretStr(key)

    @property
    def inventory_record(self) -> Path:
        """Copy of the last inventory encrypted with this key, kept for teardown."""
        return self.path.with_name(f"{self.path.name}.ansible_hosts")

    def previous_inventory(self) -> Path | None:
        return self.inventory_record if self.inventory_record.is_file() else None

    def record_inventory(self, text: str) -> Path:
        record = self.inventory_record
        try:
            fd = os.open(record, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            record.chmod(0o600)
        except OSError as exc:
            raise VaultError(f"Inventory record {record} could not be written: {exc}") from exc
        logger.info("inventory-recorded", path=str(record))
        return record

    def read(self) -> SecretStr:
        try:
            return SecretStr(self.path.read_text(encoding="utf-8").strip())
        except OSError as exc:
            raise VaultError(f"Vault password file {self.path} could not be read: {exc}") from exc


__all__ = [
    "VAULT_HEADER",
    "VaultKeyFile",
    "VaultedValue",
    "decrypt",
    "encrypt",
]
