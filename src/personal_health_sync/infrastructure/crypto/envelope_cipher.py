"""
Passphrase-based envelope cipher.

Derives a 256-bit key with PBKDF2-HMAC-SHA256 from the passphrase and a
fresh salt, then seals the plaintext with AES-GCM under a fresh nonce.
"""

import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from personal_health_sync.domain.encryption import IV_LENGTH, SALT_LENGTH, EncryptionEnvelope
from personal_health_sync.utils.exceptions import DecryptionError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
DEFAULT_ITERATIONS = 100_000


class EnvelopeCipher:
    """
    Stateless authenticated encryption under a passphrase.

    Every call draws a new salt and IV, so the same plaintext and passphrase
    never produce the same envelope twice.
    """

    def __init__(self, iterations: int = DEFAULT_ITERATIONS) -> None:
        """
        Initialize the cipher.

        Args:
            iterations: PBKDF2 iteration count.
        """
        if iterations < 1:
            raise ValueError("PBKDF2 iteration count must be positive")
        self.iterations = iterations

    def _derive_key(self, passphrase: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    def is_available(self) -> bool:
        """Check whether AES-GCM is usable in this runtime."""
        try:
            AESGCM(bytes(KEY_LENGTH)).encrypt(bytes(IV_LENGTH), b"", None)
        except (UnsupportedAlgorithm, ValueError) as e:
            logger.warning(f"AES-GCM is not available: {e}")
            return False
        return True

    def encrypt(self, plaintext: bytes, passphrase: str) -> EncryptionEnvelope:
        """
        Encrypt bytes under a passphrase.

        Args:
            plaintext: Data to seal.
            passphrase: User passphrase.

        Returns:
            Envelope with fresh salt, IV and authenticated ciphertext.
        """
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(passphrase, salt)
        ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
        return EncryptionEnvelope(salt=salt, iv=iv, ciphertext=ciphertext)

    def decrypt(self, envelope: EncryptionEnvelope, passphrase: str) -> bytes:
        """
        Decrypt an envelope.

        Args:
            envelope: Envelope produced by encrypt.
            passphrase: User passphrase.

        Returns:
            Original plaintext bytes.

        Raises:
            DecryptionError: If the tag does not verify (wrong passphrase or
                corrupted data). The cause is deliberately not reported.
        """
        key = self._derive_key(passphrase, envelope.salt)
        try:
            return AESGCM(key).decrypt(envelope.iv, envelope.ciphertext, None)
        except InvalidTag as e:
            raise DecryptionError("Decryption failed") from e

    def encrypt_value(self, value: Any, passphrase: str) -> str:
        """
        Serialize a JSON value and encrypt it.

        Returns:
            Base64 envelope ready for storage.
        """
        plaintext = json.dumps(value, ensure_ascii=False).encode("utf-8")
        return self.encrypt(plaintext, passphrase).to_base64()

    def decrypt_value(self, token: str | bytes, passphrase: str) -> Any:
        """
        Decrypt a stored base64 envelope and parse its JSON content.

        Raises:
            DecryptionError: If the envelope cannot be decoded or authenticated.
        """
        envelope = EncryptionEnvelope.from_base64(token)
        plaintext = self.decrypt(envelope, passphrase)
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionError("Decryption failed") from e
