"""
Hashing and identifier generation utilities.

Provides passphrase verifiers, sync item IDs and random passphrases.

Verifiers are salted PBKDF2-HMAC-SHA256 digests stored as
``pbkdf2_sha256$<iterations>$<salt>$<digest>`` (salt and digest in base64).
Verifiers written before salting was introduced are a bare base64 SHA-256
digest; they still verify, and ``needs_rehash`` reports them so callers can
replace them.
"""

import base64
import binascii
import hashlib
import hmac
import os
import secrets

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from personal_health_sync.utils.timezone_utils import now_millis

PASSPHRASE_CHARSET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!@#$%^&*"

VERIFIER_SCHEME = "pbkdf2_sha256"
VERIFIER_ITERATIONS = 100_000
VERIFIER_SALT_LENGTH = 16
VERIFIER_DIGEST_LENGTH = 32


def _pbkdf2(salt: bytes, iterations: int, length: int = VERIFIER_DIGEST_LENGTH) -> PBKDF2HMAC:
    return PBKDF2HMAC(algorithm=hashes.SHA256(), length=length, salt=salt, iterations=iterations)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def hash_passphrase(passphrase: str, iterations: int = VERIFIER_ITERATIONS) -> str:
    """
    Compute a salted verifier for a passphrase.

    The verifier only answers "is this the passphrase?"; encryption keys are
    derived separately, with their own salt per envelope.

    Args:
        passphrase: Passphrase to hash.
        iterations: PBKDF2 iteration count.

    Returns:
        Encoded verifier. Two calls with the same passphrase differ.
    """
    if iterations < 1:
        raise ValueError("Iteration count must be positive")
    salt = os.urandom(VERIFIER_SALT_LENGTH)
    digest = _pbkdf2(salt, iterations).derive(passphrase.encode("utf-8"))
    return f"{VERIFIER_SCHEME}${iterations}${_b64(salt)}${_b64(digest)}"


def needs_rehash(stored_hash: str) -> bool:
    """Whether a stored verifier predates salted hashing."""
    return not stored_hash.startswith(f"{VERIFIER_SCHEME}$")


def passphrase_matches(passphrase: str, stored_hash: str) -> bool:
    """
    Check a passphrase against a stored verifier.

    Args:
        passphrase: Candidate passphrase.
        stored_hash: Verifier produced by hash_passphrase, or a legacy
            unsalted SHA-256 digest.

    Returns:
        True if the passphrase matches. Malformed verifiers never match.
    """
    secret = passphrase.encode("utf-8")

    if needs_rehash(stored_hash):
        legacy = _b64(hashlib.sha256(secret).digest())
        return hmac.compare_digest(legacy, stored_hash)

    try:
        _, iterations_text, salt_text, digest_text = stored_hash.split("$")
        iterations = int(iterations_text)
        salt = base64.b64decode(salt_text, validate=True)
        expected = base64.b64decode(digest_text, validate=True)
    except (binascii.Error, ValueError):
        return False
    if iterations < 1 or not salt or not expected:
        return False

    try:
        _pbkdf2(salt, iterations, len(expected)).verify(secret, expected)
    except InvalidKey:
        return False
    return True


def generate_item_id(kind: str) -> str:
    """
    Generate a sync item identifier.

    Args:
        kind: Mutation kind the item belongs to.

    Returns:
        Identifier of the form ``<kind>_<epoch ms>_<random hex>``.
    """
    return f"{kind}_{now_millis()}_{secrets.token_hex(6)}"


def generate_passphrase(length: int = 16) -> str:
    """
    Generate a random passphrase.

    Args:
        length: Number of characters.

    Returns:
        Passphrase drawn from letters, digits and symbols.
    """
    if length < 1:
        raise ValueError("Passphrase length must be positive")
    return "".join(secrets.choice(PASSPHRASE_CHARSET) for _ in range(length))
