"""Unit tests for the key material manager."""

import base64
import hashlib

import pytest

from personal_health_sync.domain.encryption import EncryptionState
from personal_health_sync.infrastructure.crypto.envelope_cipher import EnvelopeCipher
from personal_health_sync.infrastructure.storage.key_value_store import MemoryKeyValueStore
from personal_health_sync.services.key_manager import (
    ENCRYPTION_ENABLED_KEY,
    ENCRYPTION_HASH_KEY,
    KeyMaterialManager,
)
from personal_health_sync.services.record_store import EncryptedRecordStore
from personal_health_sync.utils.exceptions import (
    DecryptionError,
    EncryptionStateError,
    EncryptionUnavailableError,
    LockedError,
    WrongPassphraseError,
)
from personal_health_sync.utils.hashing import needs_rehash, passphrase_matches

FAST_ITERATIONS = 1000
RECORDS = ["measurements", "context_factors"]


def build(
    storage: MemoryKeyValueStore | None = None,
) -> tuple[MemoryKeyValueStore, KeyMaterialManager, EncryptedRecordStore]:
    storage = storage or MemoryKeyValueStore()
    cipher = EnvelopeCipher(FAST_ITERATIONS)
    manager = KeyMaterialManager(storage, cipher)
    record_store = EncryptedRecordStore(storage, cipher, manager, RECORDS)
    manager.attach_record_store(record_store)
    return storage, manager, record_store


class UnavailableCipher(EnvelopeCipher):
    def is_available(self) -> bool:
        return False


def test_initial_state() -> None:
    """Test a fresh manager is uninitialized and reports everything off."""
    _, manager, _ = build()

    if manager.state != EncryptionState.UNINITIALIZED:
        raise AssertionError(f"Expected uninitialized, got {manager.state}")

    status = manager.get_status()
    if not status.available or status.enabled or status.unlocked:
        raise AssertionError(f"Unexpected status: {status}")


def test_enable_persists_flag_and_hash() -> None:
    """Test enabling writes the flag and the verification hash."""
    storage, manager, _ = build()

    manager.enable_encryption("CorrectHorse1!")

    if storage.get_text(ENCRYPTION_ENABLED_KEY) != "true":
        raise AssertionError("Enabled flag was not persisted")
    stored_hash = storage.get_text(ENCRYPTION_HASH_KEY) or ""
    if not passphrase_matches("CorrectHorse1!", stored_hash):
        raise AssertionError("Verification hash was not persisted")
    if needs_rehash(stored_hash) or f"${FAST_ITERATIONS}$" not in stored_hash:
        raise AssertionError(f"Expected a salted verifier, got {stored_hash}")
    if manager.state != EncryptionState.ENABLED_UNLOCKED:
        raise AssertionError(f"Expected enabled-unlocked, got {manager.state}")


def test_passphrase_never_persisted() -> None:
    """Test the passphrase itself is not written to storage."""
    storage, manager, record_store = build()
    manager.enable_encryption("CorrectHorse1!")
    record_store.save("measurements", [{"id": "m1"}])

    for key in storage.keys():
        value = storage.get(key) or b""
        if b"CorrectHorse1!" in value:
            raise AssertionError(f"Passphrase found in stored key {key}")


def test_enable_twice_rejected() -> None:
    """Test enabling an already enabled manager fails."""
    _, manager, _ = build()
    manager.enable_encryption("pw")

    with pytest.raises(EncryptionStateError):
        manager.enable_encryption("other")


def test_enable_empty_passphrase_rejected() -> None:
    """Test an empty passphrase is refused."""
    _, manager, _ = build()

    with pytest.raises(ValueError):
        manager.enable_encryption("")


def test_enable_when_unavailable() -> None:
    """Test enabling without AES-GCM support fails and changes nothing."""
    storage = MemoryKeyValueStore()
    manager = KeyMaterialManager(storage, UnavailableCipher(FAST_ITERATIONS))

    with pytest.raises(EncryptionUnavailableError):
        manager.enable_encryption("pw")

    if storage.keys():
        raise AssertionError(f"Storage should be untouched, got {storage.keys()}")
    if manager.get_status().available:
        raise AssertionError("Status should report encryption as unavailable")


def test_unlock_and_lock() -> None:
    """Test the locked/unlocked transitions of a new session."""
    storage, manager, _ = build()
    manager.enable_encryption("pw")

    _, restarted, _ = build(storage)
    if restarted.state != EncryptionState.ENABLED_LOCKED:
        raise AssertionError(f"Expected enabled-locked after restart, got {restarted.state}")

    with pytest.raises(WrongPassphraseError):
        restarted.unlock("nope")
    if restarted.is_unlocked():
        raise AssertionError("Wrong passphrase must not unlock")

    restarted.unlock("pw")
    if restarted.current_passphrase() != "pw":
        raise AssertionError("Session passphrase not held after unlock")

    restarted.lock()
    if restarted.state != EncryptionState.ENABLED_LOCKED:
        raise AssertionError(f"Expected enabled-locked after lock, got {restarted.state}")


def test_unlock_when_not_enabled() -> None:
    """Test unlocking without encryption enabled is an invalid transition."""
    _, manager, _ = build()

    with pytest.raises(EncryptionStateError):
        manager.unlock("pw")


def test_verify_password() -> None:
    """Test verification against the stored hash."""
    _, manager, _ = build()

    if manager.verify_password("pw"):
        raise AssertionError("No hash stored, verification must fail")

    manager.enable_encryption("pw")
    if not manager.verify_password("pw"):
        raise AssertionError("Correct passphrase should verify")
    if manager.verify_password("PW"):
        raise AssertionError("Different passphrase should not verify")


def test_disable_restores_plaintext() -> None:
    """Test disabling decrypts records and clears the encryption keys."""
    storage, manager, record_store = build()
    record_store.save("measurements", [{"id": "m1", "sys": 120}])
    manager.enable_encryption("pw")

    restored = manager.disable_encryption("pw")

    if restored != ["measurements"]:
        raise AssertionError(f"Expected measurements restored, got {restored}")
    if storage.contains(ENCRYPTION_ENABLED_KEY) or storage.contains(ENCRYPTION_HASH_KEY):
        raise AssertionError("Encryption keys should be removed")
    if storage.contains("measurements_encrypted"):
        raise AssertionError("Encrypted copy should be removed")
    if record_store.load("measurements") != [{"id": "m1", "sys": 120}]:
        raise AssertionError("Record not restored to plaintext")
    if manager.state != EncryptionState.DISABLED:
        raise AssertionError(f"Expected disabled, got {manager.state}")


def test_disable_requires_unlock_or_passphrase() -> None:
    """Test disabling a locked session without a passphrase fails."""
    storage, manager, _ = build()
    manager.enable_encryption("pw")
    manager.lock()

    with pytest.raises(LockedError):
        manager.disable_encryption()
    with pytest.raises(WrongPassphraseError):
        manager.disable_encryption("wrong")

    if storage.get_text(ENCRYPTION_ENABLED_KEY) != "true":
        raise AssertionError("Encryption should still be enabled")


def test_disable_is_all_or_nothing() -> None:
    """Test one undecryptable record leaves every record and the flag intact."""
    storage, manager, record_store = build()
    record_store.save("measurements", [{"id": "m1"}])
    record_store.save("context_factors", [{"id": "c1"}])
    manager.enable_encryption("pw")

    # A record sealed under another passphrase cannot be restored.
    foreign = EnvelopeCipher(FAST_ITERATIONS).encrypt_value([{"id": "x"}], "other")
    storage.set_text("context_factors_encrypted", foreign)
    before = {key: storage.get(key) for key in storage.keys()}

    with pytest.raises(DecryptionError):
        manager.disable_encryption("pw")

    after = {key: storage.get(key) for key in storage.keys()}
    if after != before:
        raise AssertionError("Storage changed after a failed disable")
    if manager.state != EncryptionState.ENABLED_UNLOCKED:
        raise AssertionError(f"Expected state unchanged, got {manager.state}")


def test_legacy_verifier_upgraded_on_unlock() -> None:
    """Test an unsalted verifier from older installs still unlocks and is replaced."""
    storage, manager, _ = build()
    manager.enable_encryption("pw")
    legacy = base64.b64encode(hashlib.sha256(b"pw").digest()).decode("ascii")
    storage.set_text(ENCRYPTION_HASH_KEY, legacy)

    _, restarted, _ = build(storage)
    with pytest.raises(WrongPassphraseError):
        restarted.unlock("nope")
    if storage.get_text(ENCRYPTION_HASH_KEY) != legacy:
        raise AssertionError("A failed unlock must not rewrite the verifier")

    restarted.unlock("pw")
    upgraded = storage.get_text(ENCRYPTION_HASH_KEY) or ""

    if needs_rehash(upgraded):
        raise AssertionError(f"Verifier was not upgraded: {upgraded}")
    if not restarted.verify_password("pw") or restarted.verify_password("nope"):
        raise AssertionError("Upgraded verifier does not verify correctly")
