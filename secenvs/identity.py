"""
Identity storage — the local private key and its CI override.

The identity lives at ``$SECENV_HOME/.secenvs/keys/default.key`` with
owner-only permissions. Non-interactive environments may instead supply
``SECENV_ENCODED_IDENTITY``: the identity text, standard base64 encoded.

Security Note:
    Never log identity material. Only log the key path or the derived
    public key.
"""
import os
import base64
import binascii
import logging
from pathlib import Path
from typing import Optional

from .conf import ENCODED_IDENTITY_ENV, SecenvConfig, get_config
from .crypto import generate_identity, identity_to_public_key, is_valid_identity
from .exceptions import FileError, IdentityNotFoundError, SecenvError
from .filesystem import ensure_safe_dir, safe_read_file, sanitize_path
from .validators import is_canonical_base64

logger = logging.getLogger("secenvs.identity")


def get_default_key_path(config: Optional[SecenvConfig] = None) -> Path:
    return (config or get_config()).identity_path


def identity_exists(config: Optional[SecenvConfig] = None) -> bool:
    return get_default_key_path(config).exists()


def save_identity(identity: str, config: Optional[SecenvConfig] = None) -> Path:
    """Write the identity with mode 0600; returns the key path.

    Raises:
        FileError: If the keys directory is a symlink or the write fails.
    """
    cfg = config or get_config()
    ensure_safe_dir(cfg.secenv_dir)
    ensure_safe_dir(cfg.keys_dir)
    key_path = sanitize_path(cfg.identity_path, base_dir=cfg.keys_dir)
    try:
        fd = os.open(key_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(identity)
        os.chmod(key_path, 0o600)
    except OSError as err:
        raise FileError(f"Failed to save identity to {key_path}: {err}") from err
    logger.info("Identity saved at %s", key_path)
    return key_path


def load_identity(config: Optional[SecenvConfig] = None) -> str:
    """Read the on-disk identity.

    Raises:
        IdentityNotFoundError: If the key file is missing or unusable.
        FileError: If the key file is a symlink or unreadable.
    """
    key_path = get_default_key_path(config)
    if not key_path.exists() and not key_path.is_symlink():
        raise IdentityNotFoundError(str(key_path))
    identity = safe_read_file(key_path).strip()
    if not is_valid_identity(identity):
        raise IdentityNotFoundError(str(key_path))
    return identity


def decode_encoded_identity(encoded: str) -> str:
    """Decode a ``SECENV_ENCODED_IDENTITY`` value under strict rules.

    Rejects URL-safe alphabets, embedded whitespace and non-canonical
    base64 before attempting to use the decoded identity.

    Raises:
        IdentityNotFoundError: If the value does not carry a valid identity.
    """
    value = encoded.strip()
    if any(c in value for c in "-_ \t\r\n") or not is_canonical_base64(value):
        raise IdentityNotFoundError(ENCODED_IDENTITY_ENV)
    try:
        identity = base64.b64decode(value, validate=True).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError):
        raise IdentityNotFoundError(ENCODED_IDENTITY_ENV) from None
    if not is_valid_identity(identity):
        raise IdentityNotFoundError(ENCODED_IDENTITY_ENV)
    return identity


def resolve_identity(config: Optional[SecenvConfig] = None) -> str:
    """Return the usable identity: the environment override, else the key file."""
    encoded = os.environ.get(ENCODED_IDENTITY_ENV)
    if encoded:
        return decode_encoded_identity(encoded)
    return load_identity(config)


def has_identity(config: Optional[SecenvConfig] = None) -> bool:
    return bool(os.environ.get(ENCODED_IDENTITY_ENV)) or identity_exists(config)


def resolve_public_key(config: Optional[SecenvConfig] = None) -> Optional[str]:
    """Public key of the local identity, or None when none is usable."""
    if not has_identity(config):
        return None
    try:
        return identity_to_public_key(resolve_identity(config))
    except SecenvError as err:
        logger.warning("Local identity unusable: %s", err.code)
        return None


def create_identity(config: Optional[SecenvConfig] = None) -> tuple[str, Path, bool]:
    """Load the existing identity or generate and save a new one.

    Returns:
        (identity, key path, created flag).
    """
    cfg = config or get_config()
    if identity_exists(cfg):
        return load_identity(cfg), cfg.identity_path, False
    identity = generate_identity()
    return identity, save_identity(identity, cfg), True
