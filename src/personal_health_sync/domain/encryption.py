"""
Encryption domain models.

Defines the serialized envelope layout and the encryption lifecycle state.
"""

import base64
import binascii
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from personal_health_sync.utils.exceptions import DecryptionError

SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16


class EncryptionState(str, Enum):
    """Positions of the key material state machine."""

    UNINITIALIZED = "uninitialized"
    DISABLED = "disabled"
    ENABLED_LOCKED = "enabled-locked"
    ENABLED_UNLOCKED = "enabled-unlocked"


class EncryptionStatus(BaseModel):
    """Read-only projection of the encryption lifecycle."""

    available: bool
    enabled: bool
    unlocked: bool


class EncryptionEnvelope(BaseModel):
    """
    Authenticated ciphertext together with its per-call salt and IV.

    Serialized as base64 of ``salt || iv || ciphertext``, where the
    ciphertext carries the GCM tag at its end.
    """

    salt: bytes = Field(min_length=SALT_LENGTH, max_length=SALT_LENGTH)
    iv: bytes = Field(min_length=IV_LENGTH, max_length=IV_LENGTH)
    ciphertext: bytes = Field(min_length=TAG_LENGTH)

    model_config = ConfigDict(frozen=True)

    def to_bytes(self) -> bytes:
        """Concatenate salt, IV and ciphertext."""
        return self.salt + self.iv + self.ciphertext

    def to_base64(self) -> str:
        """Serialize for storage."""
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptionEnvelope":
        """
        Split raw envelope bytes.

        Raises:
            DecryptionError: If the data is too short to be an envelope.
        """
        if len(data) < SALT_LENGTH + IV_LENGTH + TAG_LENGTH:
            raise DecryptionError("Decryption failed")
        return cls(
            salt=data[:SALT_LENGTH],
            iv=data[SALT_LENGTH : SALT_LENGTH + IV_LENGTH],
            ciphertext=data[SALT_LENGTH + IV_LENGTH :],
        )

    @classmethod
    def from_base64(cls, token: str | bytes) -> "EncryptionEnvelope":
        """
        Parse a stored envelope.

        Raises:
            DecryptionError: If the token is not ASCII base64 or is too short.
        """
        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise DecryptionError("Decryption failed") from e
        return cls.from_bytes(raw)
