"""secenvs — encrypted per-project secrets in one plain-looking file.

Security Note (Threat Model):
    Values are encrypted at rest to every trusted age recipient. Decrypted
    values live in process memory while cached by the SDK; a memory dump
    of the process exposes them. This is an accepted limitation.
"""
from .version import __version__
from .exceptions import (
    SecenvError,
    ValidationError,
    IdentityNotFoundError,
    DecryptionError,
    SecretNotFoundError,
    ParseError,
    FileError,
    EncryptionError,
    RecipientError,
    VaultError,
)
from .conf import SecenvConfig, get_config, get_env_path
from .envfile import parse_env_file, find_key, set_key, delete_key
from .audit import AuditEntry, append_audit_log, read_audit_log, verify_audit_log
from .recipients import RotationResult, load_recipients, trust, untrust
from .identity import load_identity, identity_exists, get_default_key_path
from .sdk import SecenvSDK, create_secenv, create_env, env
from .project import init_project, set_secret, rotate_secret, delete_secret

__all__ = [
    "__version__",
    "SecenvError",
    "ValidationError",
    "IdentityNotFoundError",
    "DecryptionError",
    "SecretNotFoundError",
    "ParseError",
    "FileError",
    "EncryptionError",
    "RecipientError",
    "VaultError",
    "SecenvConfig",
    "get_config",
    "get_env_path",
    "parse_env_file",
    "find_key",
    "set_key",
    "delete_key",
    "AuditEntry",
    "append_audit_log",
    "read_audit_log",
    "verify_audit_log",
    "RotationResult",
    "load_recipients",
    "trust",
    "untrust",
    "load_identity",
    "identity_exists",
    "get_default_key_path",
    "SecenvSDK",
    "create_secenv",
    "create_env",
    "env",
    "init_project",
    "set_secret",
    "rotate_secret",
    "delete_secret",
]
