"""Custom exceptions for personal health sync."""


class PersonalHealthSyncError(Exception):
    """Base exception for all personal health sync errors."""

    pass


class ConfigurationError(PersonalHealthSyncError):
    """Raised when there is a configuration error."""

    pass


class StorageError(PersonalHealthSyncError):
    """Raised when the durable key-value store cannot be read or written."""

    pass


class DecryptionError(PersonalHealthSyncError):
    """Raised when an envelope fails authentication or cannot be decoded."""

    pass


class WrongPassphraseError(PersonalHealthSyncError):
    """Raised when a passphrase does not match the stored verification hash."""

    pass


class LockedError(PersonalHealthSyncError):
    """Raised when encrypted data is accessed without an unlocked session."""

    pass


class EncryptionStateError(PersonalHealthSyncError):
    """Raised when an encryption operation is invalid in the current state."""

    pass


class EncryptionUnavailableError(PersonalHealthSyncError):
    """Raised when the runtime cannot provide the required cryptography."""

    pass


class DeliveryError(PersonalHealthSyncError):
    """Raised when a single sync item cannot be delivered."""

    pass
