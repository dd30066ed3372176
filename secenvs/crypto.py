"""
secenvs Crypto Core — age X25519 identities, recipients and envelopes.

The age-encryption.org/v1 format is provided by ``pyrage``; this module
maps its key objects to the string forms stored on disk and its errors to
the secenvs taxonomy:
- identities are ``AGE-SECRET-KEY-1…`` strings
- recipients are ``age1…`` strings
- stored values are the binary age envelope, standard base64 encoded

Security Note:
    Never log plaintext, identities or the underlying pyrage error text
    for a decryption failure. Public keys are fine.
"""
import base64
import binascii
import logging

import pyrage
from pyrage import x25519

from .exceptions import DecryptionError, EncryptionError, RecipientError, ValidationError

logger = logging.getLogger("secenvs.crypto")

SECRET_KEY_PREFIX = "AGE-SECRET-KEY-1"
PUBLIC_KEY_PREFIX = "age1"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def _parse_identity(identity: str) -> x25519.Identity:
    text = identity.strip()
    if not text.startswith(SECRET_KEY_PREFIX):
        raise ValueError("not an age secret key")
    try:
        return x25519.Identity.from_str(text)
    except pyrage.IdentityError as err:
        raise ValueError("malformed age secret key") from err


def _parse_recipient(pubkey: str) -> x25519.Recipient:
    if not pubkey.startswith(PUBLIC_KEY_PREFIX):
        raise ValueError("not an age X25519 public key")
    try:
        return x25519.Recipient.from_str(pubkey)
    except pyrage.RecipientError as err:
        raise ValueError("malformed age public key") from err


def generate_identity() -> str:
    """Generate a new X25519 identity (``AGE-SECRET-KEY-1…``)."""
    return str(x25519.Identity.generate())


def identity_to_public_key(identity: str) -> str:
    """Derive the ``age1…`` recipient for an identity.

    Raises:
        ValidationError: If the identity is malformed.
    """
    try:
        key = _parse_identity(identity)
    except ValueError as err:
        raise ValidationError("Invalid identity key format") from err
    return str(key.to_public())


def is_valid_identity(identity: str) -> bool:
    try:
        _parse_identity(identity)
    except ValueError:
        return False
    return True


def validate_public_key(pubkey: str) -> None:
    """Check an ``age1…`` X25519 recipient string.

    Raises:
        RecipientError: If the key is empty or not a valid age public key.
    """
    if not pubkey or not pubkey.startswith(PUBLIC_KEY_PREFIX):
        raise RecipientError(
            f"Invalid public key '{pubkey}'. Expected an age X25519 key starting with 'age1'."
        )
    try:
        _parse_recipient(pubkey)
    except ValueError as err:
        raise RecipientError(f"Invalid public key '{pubkey}': {err}") from err


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

def encrypt_bytes(recipients: list[str], plaintext: bytes) -> bytes:
    """Encrypt to every recipient; returns the binary age envelope.

    Raises:
        EncryptionError: If there are no recipients or one is malformed.
    """
    if not recipients:
        raise EncryptionError("No recipients to encrypt to.")
    try:
        parsed = [_parse_recipient(r) for r in recipients]
    except ValueError as err:
        raise EncryptionError(f"Invalid recipient: {err}") from err
    try:
        return pyrage.encrypt(plaintext, parsed)
    except pyrage.EncryptError as err:
        raise EncryptionError(f"Failed to encrypt value: {type(err).__name__}") from None


def decrypt_bytes(identity: str, data: bytes) -> bytes:
    """Decrypt a binary age envelope with one identity.

    Raises:
        DecryptionError: On a malformed identity, wrong key, tampering or
            truncation.
    """
    try:
        key = _parse_identity(identity)
    except ValueError:
        raise DecryptionError("Failed to decrypt value: invalid identity") from None
    try:
        return pyrage.decrypt(data, [key])
    except pyrage.DecryptError as err:
        logger.debug("age decryption failed: %s", type(err).__name__)
        raise DecryptionError() from None


def encrypt(recipients: list[str], plaintext: str) -> str:
    """Encrypt a text value; returns base64 of the age envelope."""
    return base64.b64encode(encrypt_bytes(recipients, plaintext.encode("utf-8"))).decode("ascii")


def decrypt(identity: str, ciphertext: str) -> str:
    """Decrypt a base64 age envelope produced by :func:`encrypt`.

    Raises:
        DecryptionError: If the value cannot be decoded or decrypted.
    """
    try:
        data = base64.b64decode(ciphertext.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise DecryptionError("Failed to decrypt value: invalid base64 payload") from None
    plain = decrypt_bytes(identity, data)
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError:
        raise DecryptionError("Failed to decrypt value: payload is not UTF-8 text") from None
