"""
Encrypted record store.

Persists named JSON records, sealing them in an envelope whenever the
encryption session is unlocked and falling back to plaintext when
encryption is off.
"""

import json
import logging
from typing import Any

from personal_health_sync.infrastructure.crypto.envelope_cipher import EnvelopeCipher
from personal_health_sync.infrastructure.storage.key_value_store import KeyValueStore
from personal_health_sync.services.key_manager import KeyMaterialManager
from personal_health_sync.utils.exceptions import DecryptionError, LockedError

logger = logging.getLogger(__name__)

ENCRYPTED_SUFFIX = "_encrypted"


def encrypted_key(key: str) -> str:
    """Storage key of the encrypted copy of a record."""
    return key + ENCRYPTED_SUFFIX


class EncryptedRecordStore:
    """
    Key-value facade over durable storage with transparent encryption.

    Only one representation of a record exists after a successful save:
    either ``<key>`` holding JSON or ``<key>_encrypted`` holding an envelope.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        cipher: EnvelopeCipher,
        key_manager: KeyMaterialManager,
        record_names: list[str] | None = None,
    ) -> None:
        """
        Initialize encrypted record store.

        Args:
            storage: Durable key-value store.
            cipher: Envelope cipher.
            key_manager: Source of the encryption state and session passphrase.
            record_names: Records migrated when encryption is enabled.
        """
        self.storage = storage
        self.cipher = cipher
        self.key_manager = key_manager
        self.record_names = list(record_names or [])

    def _check_key(self, key: str) -> None:
        if not key or key.endswith(ENCRYPTED_SUFFIX):
            raise ValueError(f"Invalid record key: {key!r}")

    def save(self, key: str, value: Any) -> None:
        """
        Persist a record.

        Args:
            key: Record name.
            value: JSON-serializable value.

        Raises:
            LockedError: If encryption is enabled but the session is locked.
        """
        self._check_key(key)
        passphrase = self.key_manager.current_passphrase()

        if passphrase is not None:
            token = self.cipher.encrypt_value(value, passphrase)
            self.storage.set_text(encrypted_key(key), token)
            self.storage.remove(key)
            logger.debug(f"Saved encrypted record {key}")
            return

        if self.key_manager.is_enabled():
            raise LockedError("Data is encrypted - unlock first")

        self.storage.set_text(key, json.dumps(value, ensure_ascii=False))
        self.storage.remove(encrypted_key(key))
        logger.debug(f"Saved plaintext record {key}")

    def load(self, key: str) -> Any | None:
        """
        Read a record.

        Args:
            key: Record name.

        Returns:
            Decoded value, or None if the record does not exist.

        Raises:
            LockedError: If the record is encrypted and the session is locked.
            DecryptionError: If the envelope does not authenticate.
        """
        self._check_key(key)
        token = self.storage.get(encrypted_key(key))

        if token is not None:
            passphrase = self.key_manager.current_passphrase()
            if passphrase is None:
                raise LockedError("Data is encrypted - unlock first")
            return self.cipher.decrypt_value(token, passphrase)

        plaintext = self.storage.get_text(key)
        if plaintext is None:
            return None

        try:
            return json.loads(plaintext)
        except json.JSONDecodeError:
            logger.warning(f"Record {key} is not valid JSON, ignoring")
            return None

    def delete(self, key: str) -> None:
        """Remove both representations of a record."""
        self._check_key(key)
        self.storage.remove(encrypted_key(key))
        self.storage.remove(key)

    def encrypt_existing(self, passphrase: str) -> list[str]:
        """
        Encrypt every managed record that is still stored as plaintext.

        Each record is migrated on its own: the envelope is written before
        the plaintext copy is removed.

        Args:
            passphrase: Passphrase to encrypt under.

        Returns:
            Names of the migrated records.
        """
        migrated: list[str] = []

        for key in self.record_names:
            plaintext = self.storage.get_text(key)
            if plaintext is None:
                continue

            try:
                value = json.loads(plaintext)
            except json.JSONDecodeError:
                logger.error(f"Failed to encrypt {key}: stored value is not valid JSON")
                continue

            if self.storage.contains(encrypted_key(key)):
                logger.warning(f"Replacing stale encrypted copy of {key}")

            self.storage.set_text(encrypted_key(key), self.cipher.encrypt_value(value, passphrase))
            self.storage.remove(key)
            migrated.append(key)

        return migrated

    def _encrypted_record_names(self) -> list[str]:
        names = list(self.record_names)
        for stored_key in self.storage.keys():
            if stored_key.endswith(ENCRYPTED_SUFFIX):
                name = stored_key[: -len(ENCRYPTED_SUFFIX)]
                if name and name not in names:
                    names.append(name)
        return names

    def decrypt_all(self, passphrase: str) -> list[str]:
        """
        Restore every encrypted record to plaintext.

        All envelopes are decrypted in memory first; nothing is written
        unless every one of them authenticates.

        Args:
            passphrase: Passphrase the records are encrypted under.

        Returns:
            Names of the restored records.

        Raises:
            DecryptionError: If any record fails to decrypt.
        """
        decrypted: dict[str, Any] = {}

        for key in self._encrypted_record_names():
            token = self.storage.get(encrypted_key(key))
            if token is None:
                continue
            try:
                decrypted[key] = self.cipher.decrypt_value(token, passphrase)
            except DecryptionError:
                logger.error(f"Failed to decrypt {key}, aborting")
                raise

        for key, value in decrypted.items():
            self.storage.set_text(key, json.dumps(value, ensure_ascii=False))
            self.storage.remove(encrypted_key(key))

        return list(decrypted)
