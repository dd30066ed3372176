"""Syntactic validation of secret keys and values."""
import re

from .conf import METADATA_PREFIX
from .exceptions import ValidationError

KEY_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
BASE64_PATTERN = re.compile(
    r"^(?:[A-Za-z0-9+/]{4})*(?:[A-Za-z0-9+/]{2}==|[A-Za-z0-9+/]{3}=)?$"
)
MAX_KEY_LENGTH = 64
MAX_VALUE_SIZE = 5 * 1024 * 1024  # 5MB

WINDOWS_RESERVED_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)


def validate_key(key: str) -> None:
    """Validate a key name as it may appear in a secret file.

    Raises:
        ValidationError: If the key is empty, malformed, too long or a
            reserved system name.
    """
    if not key:
        raise ValidationError("Key cannot be empty")
    if not KEY_PATTERN.match(key):
        raise ValidationError(
            f"Invalid key: '{key}'. Keys must start with an uppercase letter or "
            "underscore and only contain uppercase letters, numbers, and "
            "underscores (^[A-Z_][A-Z0-9_]*$)."
        )
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Key '{key}' exceeds maximum length of {MAX_KEY_LENGTH} characters"
        )
    if key in WINDOWS_RESERVED_NAMES:
        raise ValidationError(f"Invalid key: '{key}' is a reserved system name.")


def validate_user_key(key: str) -> None:
    """Validate a key supplied by a caller; metadata keys are not writable."""
    validate_key(key)
    if key.startswith(METADATA_PREFIX):
        raise ValidationError(
            f"Invalid key: '{key}'. Keys starting with '{METADATA_PREFIX}' "
            "are reserved for metadata."
        )


def is_canonical_base64(value: str) -> bool:
    return bool(BASE64_PATTERN.match(value))


def validate_value(value: str, is_base64: bool = False) -> None:
    """Validate a value before it is written.

    Args:
        value: Value to check (plaintext or already-encoded).
        is_base64: Require canonical base64 instead of a single text line.

    Raises:
        ValidationError: If the value is empty, larger than 5MB, multiline
            or (with ``is_base64``) not canonical base64.
    """
    if value is None:
        return
    if value == "":
        raise ValidationError("Value cannot be empty")
    if len(value.encode("utf-8")) > MAX_VALUE_SIZE:
        raise ValidationError("Value size exceeds maximum limit of 5MB")
    if is_base64:
        if not is_canonical_base64(value):
            raise ValidationError("Invalid base64 value")
    elif "\n" in value or "\r" in value:
        raise ValidationError(
            "Multiline values are not allowed. Use base64 for binary data."
        )
