"""
Key material manager.

Owns the encryption lifecycle: enabling and disabling encryption, checking
passphrases against the stored verification hash, and holding the session
passphrase in memory while the session is unlocked.
"""

import logging
from typing import Protocol

from personal_health_sync.domain.encryption import EncryptionState, EncryptionStatus
from personal_health_sync.infrastructure.crypto.envelope_cipher import EnvelopeCipher
from personal_health_sync.infrastructure.storage.key_value_store import KeyValueStore
from personal_health_sync.utils.exceptions import (
    EncryptionStateError,
    EncryptionUnavailableError,
    LockedError,
    PersonalHealthSyncError,
    WrongPassphraseError,
)
from personal_health_sync.utils.hashing import hash_passphrase, needs_rehash, passphrase_matches

logger = logging.getLogger(__name__)

ENCRYPTION_ENABLED_KEY = "encryption_enabled"
ENCRYPTION_HASH_KEY = "encryption_hash"


class RecordMigrator(Protocol):
    """Re-encodes persisted records when encryption is switched on or off."""

    def encrypt_existing(self, passphrase: str) -> list[str]: ...

    def decrypt_all(self, passphrase: str) -> list[str]: ...


class KeyMaterialManager:
    """
    State machine over uninitialized, disabled, enabled-locked and
    enabled-unlocked.

    The enabled flag and the verification hash are persisted; the passphrase
    itself only ever lives in this object's memory.
    """

    def __init__(self, storage: KeyValueStore, cipher: EnvelopeCipher) -> None:
        """
        Initialize key material manager.

        Args:
            storage: Durable store holding the flag and verification hash.
            cipher: Envelope cipher, used to probe availability. Its iteration
                count also applies to the passphrase verifier.
        """
        self.storage = storage
        self.cipher = cipher
        self._passphrase: str | None = None
        self._disabled = False
        self._available: bool | None = None
        self._record_store: RecordMigrator | None = None

    def attach_record_store(self, record_store: RecordMigrator) -> None:
        """Register the store whose records follow the encryption state."""
        self._record_store = record_store

    def is_available(self) -> bool:
        if self._available is None:
            self._available = self.cipher.is_available()
        return self._available

    def is_enabled(self) -> bool:
        """Whether encryption is switched on in durable storage."""
        return self.storage.get_text(ENCRYPTION_ENABLED_KEY) == "true"

    def is_unlocked(self) -> bool:
        return self._passphrase is not None and self.is_enabled()

    def current_passphrase(self) -> str | None:
        """Session passphrase, or None while locked or disabled."""
        if self._passphrase is None or not self.is_enabled():
            return None
        return self._passphrase

    @property
    def state(self) -> EncryptionState:
        if self.is_enabled():
            if self._passphrase is not None:
                return EncryptionState.ENABLED_UNLOCKED
            return EncryptionState.ENABLED_LOCKED
        if self._disabled:
            return EncryptionState.DISABLED
        return EncryptionState.UNINITIALIZED

    def enable_encryption(self, passphrase: str) -> list[str]:
        """
        Turn on encryption and migrate existing plaintext records.

        Args:
            passphrase: New passphrase.

        Returns:
            Names of the records that were encrypted.

        Raises:
            EncryptionUnavailableError: If AES-GCM cannot be used.
            EncryptionStateError: If encryption is already enabled.
        """
        if not passphrase:
            raise ValueError("Passphrase must not be empty")
        if not self.is_available():
            raise EncryptionUnavailableError("Encryption is not supported by this runtime")
        if self.is_enabled():
            raise EncryptionStateError("Encryption is already enabled")

        self.storage.set_text(
            ENCRYPTION_HASH_KEY, hash_passphrase(passphrase, self.cipher.iterations)
        )
        self.storage.set_text(ENCRYPTION_ENABLED_KEY, "true")
        self._passphrase = passphrase
        self._disabled = False

        migrated: list[str] = []
        if self._record_store is not None:
            migrated = self._record_store.encrypt_existing(passphrase)

        logger.info(f"Encryption enabled, {len(migrated)} records encrypted")
        return migrated

    def verify_password(self, candidate: str) -> bool:
        """
        Check a candidate passphrase against the stored hash.

        Args:
            candidate: Passphrase to check.

        Returns:
            True if it matches; False if it does not or no hash is stored.
        """
        stored_hash = self.storage.get_text(ENCRYPTION_HASH_KEY)
        if not stored_hash:
            return False
        return passphrase_matches(candidate, stored_hash)

    def unlock(self, passphrase: str) -> None:
        """
        Start an unlocked session.

        Raises:
            EncryptionStateError: If encryption is not enabled.
            WrongPassphraseError: If the passphrase does not verify.
        """
        if not self.is_enabled():
            raise EncryptionStateError("Encryption is not enabled")
        if not self.verify_password(passphrase):
            logger.warning("Unlock rejected: wrong passphrase")
            raise WrongPassphraseError("Wrong passphrase")

        self._passphrase = passphrase
        stored_hash = self.storage.get_text(ENCRYPTION_HASH_KEY) or ""
        if needs_rehash(stored_hash):
            self.storage.set_text(
                ENCRYPTION_HASH_KEY, hash_passphrase(passphrase, self.cipher.iterations)
            )
            logger.info("Upgraded passphrase verifier to salted PBKDF2")
        logger.info("Encryption session unlocked")

    def lock(self) -> None:
        """Forget the session passphrase."""
        self._passphrase = None

    def disable_encryption(self, passphrase: str | None = None) -> list[str]:
        """
        Turn off encryption and restore all records to plaintext.

        Every record is decrypted before any is rewritten, so a single
        failure leaves storage and state untouched.

        Args:
            passphrase: Passphrase to confirm with. Defaults to the session
                passphrase.

        Returns:
            Names of the records that were decrypted.

        Raises:
            EncryptionStateError: If encryption is not enabled.
            LockedError: If no passphrase is given and the session is locked.
            WrongPassphraseError: If the passphrase does not verify.
            DecryptionError: If any record fails to decrypt.
        """
        if not self.is_enabled():
            raise EncryptionStateError("Encryption is not enabled")
        if passphrase is None:
            passphrase = self._passphrase
            if passphrase is None:
                raise LockedError("Data is encrypted - unlock first")
        if not self.verify_password(passphrase):
            logger.warning("Disable rejected: wrong passphrase")
            raise WrongPassphraseError("Wrong passphrase")

        restored: list[str] = []
        if self._record_store is not None:
            restored = self._record_store.decrypt_all(passphrase)

        self.storage.remove(ENCRYPTION_ENABLED_KEY)
        self.storage.remove(ENCRYPTION_HASH_KEY)
        self._passphrase = None
        self._disabled = True

        logger.info(f"Encryption disabled, {len(restored)} records decrypted")
        return restored

    def get_status(self) -> EncryptionStatus:
        """Project the lifecycle onto available, enabled and unlocked."""
        try:
            available = self.is_available()
            enabled = self.is_enabled()
        except PersonalHealthSyncError as e:
            logger.error(f"Could not read encryption status: {e}")
            return EncryptionStatus(available=False, enabled=False, unlocked=False)

        return EncryptionStatus(
            available=available,
            enabled=enabled,
            unlocked=enabled and self._passphrase is not None,
        )
