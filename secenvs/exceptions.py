"""
secenvs Exceptions.

Every error carries a stable ``code`` so callers (CLIs, CI wrappers) can
branch on the kind of failure without parsing messages.

Security Note:
    Messages must never contain secret values; only key names, paths and
    structural details.
"""
from typing import Optional


IDENTITY_NOT_FOUND = "IDENTITY_NOT_FOUND"
DECRYPTION_FAILED = "DECRYPTION_FAILED"
SECRET_NOT_FOUND = "SECRET_NOT_FOUND"
PARSE_ERROR = "PARSE_ERROR"
FILE_ERROR = "FILE_ERROR"
ENCRYPTION_FAILED = "ENCRYPTION_FAILED"
VALIDATION_ERROR = "VALIDATION_ERROR"
RECIPIENT_ERROR = "RECIPIENT_ERROR"
VAULT_ERROR = "VAULT_ERROR"


class SecenvError(Exception):
    """Base class for all secenvs errors."""

    code: str = "SECENV_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(SecenvError):
    code = VALIDATION_ERROR


class IdentityNotFoundError(SecenvError):
    """No usable decryption identity."""

    code = IDENTITY_NOT_FOUND

    def __init__(self, path: str):
        super().__init__(
            f"Identity key not found at {path}. Run 'secenvs init' to create one."
        )
        self.path = str(path)


class DecryptionError(SecenvError):
    code = DECRYPTION_FAILED

    def __init__(self, message: str = "Failed to decrypt value. Check identity key."):
        super().__init__(message)


class SecretNotFoundError(SecenvError, KeyError):
    """Key absent from both the process environment and the secret file."""

    code = SECRET_NOT_FOUND

    def __init__(self, key: str):
        super().__init__(f"Secret '{key}' not found in .secenvs or process environment.")
        self.key = key

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.message


class ParseError(SecenvError):
    """Malformed secret file syntax."""

    code = PARSE_ERROR

    def __init__(self, line: int, raw: str, message: str):
        super().__init__(message)
        self.line = line
        self.raw = raw


class FileError(SecenvError):
    code = FILE_ERROR


class EncryptionError(SecenvError):
    code = ENCRYPTION_FAILED

    def __init__(self, message: str = "Failed to encrypt value."):
        super().__init__(message)


class RecipientError(SecenvError):
    code = RECIPIENT_ERROR


class VaultError(SecenvError):
    code = VAULT_ERROR
