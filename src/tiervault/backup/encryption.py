"""
Optional at-rest encryption of backup artifacts.

Artifacts are encrypted with AES-256-GCM in a streaming fashion, so a
multi-gigabyte dump is never held in memory. An encrypted artifact is the
original file name plus ``.enc`` and has the layout::

    MAGIC (6 bytes) | nonce (12 bytes) | ciphertext | GCM tag (16 bytes)

The key file holds 32 random bytes, base64 encoded; create one with
``generate_key()``. Keep the key somewhere other than the backups.

Example:
    >>> encryptor = ArtifactEncryptor.from_key_file("/etc/tiervault/backup.key")
    >>> encrypted = await encryptor.encrypt(Path("/var/backups/full/db_full.dump"))
    >>> encrypted.name
    'db_full.dump.enc'
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from tiervault.backup.checksum import CHUNK_SIZE
from tiervault.exceptions import ConfigurationError, EncryptionError

logger = logging.getLogger(__name__)

ENCRYPTED_SUFFIX = ".enc"
MAGIC = b"TVENC1"
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


def is_encrypted(path: str | Path) -> bool:
    return Path(path).name.endswith(ENCRYPTED_SUFFIX)


def generate_key() -> str:
    """New random key in key file format."""
    return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")


def load_key(path: str | Path) -> bytes:
    """
    Read a key file.

    Raises:
        ConfigurationError: If the file is missing or does not hold a 256-bit key
    """
    try:
        text = Path(path).read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"cannot read encryption key: {e}", field="encryption_key_file") from e
    try:
        key = base64.b64decode(text, validate=True)
    except ValueError as e:
        raise ConfigurationError("encryption key is not valid base64", field="encryption_key_file") from e
    if len(key) != KEY_SIZE:
        raise ConfigurationError(
            f"encryption key must be {KEY_SIZE} bytes, got {len(key)}",
            field="encryption_key_file",
        )
    return key


class ArtifactEncryptor:
    """Encrypts and decrypts backup artifacts with one AES-256-GCM key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
        self._key = key

    @classmethod
    def from_key_file(cls, path: str | Path) -> ArtifactEncryptor:
        return cls(load_key(path))

    def encrypt_file(self, source: Path, destination: Path) -> None:
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce)).encryptor()
        encryptor.authenticate_additional_data(MAGIC)
        with open(source, "rb") as src, open(destination, "wb") as dst:
            dst.write(MAGIC)
            dst.write(nonce)
            for block in iter(lambda: src.read(CHUNK_SIZE), b""):
                dst.write(encryptor.update(block))
            dst.write(encryptor.finalize())
            dst.write(encryptor.tag)

    def decrypt_file(self, source: Path, destination: Path) -> None:
        """
        Decrypt an artifact written by encrypt_file.

        Raises:
            EncryptionError: If the file is not an artifact or fails authentication;
                nothing is left at `destination`
        """
        size = source.stat().st_size
        header = len(MAGIC) + NONCE_SIZE
        if size < header + TAG_SIZE:
            raise EncryptionError(f"{source.name} is too short to be an encrypted artifact")

        with open(source, "rb") as src:
            if src.read(len(MAGIC)) != MAGIC:
                raise EncryptionError(f"{source.name} is not an encrypted artifact")
            nonce = src.read(NONCE_SIZE)
            src.seek(size - TAG_SIZE)
            tag = src.read(TAG_SIZE)
            src.seek(header)

            decryptor = Cipher(algorithms.AES(self._key), modes.GCM(nonce, tag)).decryptor()
            decryptor.authenticate_additional_data(MAGIC)
            remaining = size - header - TAG_SIZE
            try:
                with open(destination, "wb") as dst:
                    while remaining:
                        block = src.read(min(CHUNK_SIZE, remaining))
                        remaining -= len(block)
                        dst.write(decryptor.update(block))
                    dst.write(decryptor.finalize())
            except InvalidTag as e:
                destination.unlink(missing_ok=True)
                raise EncryptionError(f"{source.name} failed authentication (wrong key or corrupted)") from e

    async def encrypt(self, source: Path) -> Path:
        """
        Encrypt `source` next to itself and remove the plaintext.

        Returns:
            Path of the encrypted artifact

        Raises:
            EncryptionError: If the artifact could not be encrypted; the
                plaintext is left in place
        """
        destination = source.with_name(source.name + ENCRYPTED_SUFFIX)
        try:
            await asyncio.to_thread(self.encrypt_file, source, destination)
        except OSError as e:
            destination.unlink(missing_ok=True)
            raise EncryptionError(f"cannot encrypt {source.name}: {e}") from e
        source.unlink()
        logger.debug("Encrypted %s to %s", source.name, destination.name)
        return destination

    async def decrypt(self, source: Path, destination: Path) -> Path:
        await asyncio.to_thread(self.decrypt_file, source, destination)
        return destination

    def __repr__(self) -> str:
        return "ArtifactEncryptor(key=<hidden>)"


__all__ = [
    "ENCRYPTED_SUFFIX",
    "ArtifactEncryptor",
    "generate_key",
    "is_encrypted",
    "load_key",
]
