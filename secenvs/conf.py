"""
secenvs Configuration — Constants and validated settings.

Reads settings from environment variables:
    SECENV_HOME = <directory holding .secenvs/> (defaults to the user's home)
    SECENV_FILE = <explicit project secret file> (defaults to ./.secenvs)
    SECENV_ENCODED_IDENTITY = <base64 private identity> (CI override)

Security Note:
    Never log identity material. Only log paths and public keys.
"""
import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import FileError

# ---------------------------------------------------------------------------
# File layout
# ---------------------------------------------------------------------------

SECENV_DIR = ".secenvs"
KEYS_DIR = "keys"
DEFAULT_KEY_FILE = "default.key"
VAULT_FILE = "vault.age"
PROJECT_FILE = ".secenvs"
LOCK_SUFFIX = ".lock"

# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------

HOME_ENV = "SECENV_HOME"
FILE_ENV = "SECENV_FILE"
ENCODED_IDENTITY_ENV = "SECENV_ENCODED_IDENTITY"

# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

ENCRYPTED_PREFIX = "enc:age:"
VAULT_PREFIX = "vault:"
METADATA_PREFIX = "_"
RECIPIENT_METADATA_KEY = "_RECIPIENT"
AUDIT_METADATA_KEY = "_AUDIT"


class SecenvConfig(BaseModel):
    """Validated secenvs settings."""

    home: Path
    lock_retries: int = Field(default=500, ge=1)
    lock_initial_delay: float = Field(default=0.010, gt=0)
    lock_backoff_factor: float = Field(default=1.5, ge=1.0)
    lock_max_jitter: float = Field(default=0.050, ge=0)
    lock_max_delay: float = Field(default=5.0, gt=0)

    @field_validator("home")
    @classmethod
    def validate_home(cls, v: Path) -> Path:
        """Reject a symlinked home directory and make the path absolute."""
        if v.is_symlink():
            raise ValueError(
                f"Symlink detected at {v}. Security policy prohibits following symlinks."
            )
        return v.absolute()

    @property
    def secenv_dir(self) -> Path:
        return self.home / SECENV_DIR

    @property
    def keys_dir(self) -> Path:
        return self.secenv_dir / KEYS_DIR

    @property
    def identity_path(self) -> Path:
        return self.keys_dir / DEFAULT_KEY_FILE

    @property
    def vault_path(self) -> Path:
        return self.secenv_dir / VAULT_FILE

    @classmethod
    def from_env(cls) -> "SecenvConfig":
        """Create SecenvConfig from the current environment.

        Returns:
            Populated SecenvConfig instance.
        """
        home = os.environ.get(HOME_ENV) or str(Path.home())
        return cls(home=Path(home))


def get_config() -> SecenvConfig:
    """Return settings for the current environment.

    Settings are re-read on every call; tests and long-lived processes
    may change ``SECENV_HOME`` between operations.

    Raises:
        FileError: If the configured home directory is a symlink.
    """
    try:
        return SecenvConfig.from_env()
    except PydanticValidationError as err:
        raise FileError(
            f"Invalid secenvs home directory: {err.errors()[0]['msg']}"
        ) from err


def get_env_path() -> Path:
    """Absolute path of the project secret file for the current directory."""
    explicit = os.environ.get(FILE_ENV)
    if explicit:
        return Path(explicit).absolute()
    return Path.cwd() / PROJECT_FILE
