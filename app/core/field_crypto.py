"""
Field-level encryption at rest.

Encrypted values are stored as ``enc:v1:<fernet token>``. Anything without
that prefix is a legacy plain value written before encryption was enabled and
is returned unchanged on read.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:v1:"


class DecryptError(Exception):
    """Stored ciphertext could not be decrypted with the configured key"""


@dataclass(frozen=True)
class Plain:
    value: str


@dataclass(frozen=True)
class Encrypted:
    token: str


FieldValue = Union[Plain, Encrypted]


def classify(stored: str) -> FieldValue:
    """Decide how a stored value must be read, based on its prefix only."""
    if stored.startswith(ENCRYPTED_PREFIX):
        return Encrypted(stored[len(ENCRYPTED_PREFIX):])
    return Plain(stored)


class FieldCodec:
    """Symmetric encrypt/decrypt of individual string fields and file blobs"""

    def __init__(self, key: Union[str, bytes]):
        if isinstance(key, str):
            key = key.encode("utf-8")
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if plaintext is None:
            return None
        token = self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")
        return f"{ENCRYPTED_PREFIX}{token}"

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        """Return the plaintext. Raises DecryptError for unreadable ciphertext."""
        if stored is None:
            return None
        field = classify(stored)
        if isinstance(field, Plain):
            return field.value
        try:
            return self._fernet.decrypt(field.token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError, ValueError) as e:
            raise DecryptError("Could not decrypt field value") from e

    def decrypt_or_raw(self, stored: Optional[str], field_name: str = "field") -> Optional[str]:
        """Tolerant read used for display fields: falls back to the stored value."""
        try:
            return self.decrypt(stored)
        except DecryptError:
            logger.warning(f"Falling back to raw stored value for {field_name}: decryption failed")
            return stored

    def encrypt_bytes(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt_bytes(self, token: bytes) -> bytes:
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as e:
            raise DecryptError("Could not decrypt stored file") from e


def build_codec(key: Optional[str], environment: str = "development") -> FieldCodec:
    """Codec from configuration; a missing key is only tolerated outside production."""
    if not key:
        if environment == "production":
            raise RuntimeError("FIELD_ENCRYPTION_KEY must be set in production")
        logger.warning("FIELD_ENCRYPTION_KEY not set, generating an ephemeral key")
        key = FieldCodec.generate_key()
    return FieldCodec(key)
