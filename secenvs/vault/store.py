"""
VaultStore — Per-user encrypted key-value store shared across projects.

Provides the public API for the global vault:
- ``get(key)`` — value from the decrypted snapshot, or None
- ``set(key, value)`` / ``delete(key)`` — locked read-modify-write
- ``list_keys()`` — enumerate vault keys

The vault is one age envelope at ``$SECENV_HOME/.secenvs/vault.age``,
encrypted to the local identity only and decrypting to ``KEY=VALUE`` lines.
The decrypted snapshot is reused while the file's (mtime, size) pair is
unchanged. Mutations drop the snapshot and reload it under the lock, so a
writer always starts from the newest file on disk.

Security Note:
    Never log vault values. Only log key names, counts and paths.
"""
import os
import logging
from pathlib import Path
from typing import Optional

from ..atomic import write_atomic_raw
from ..conf import SecenvConfig, get_config
from ..crypto import decrypt, encrypt, identity_to_public_key
from ..exceptions import IdentityNotFoundError, SecenvError, VaultError
from ..filesystem import ensure_safe_dir, safe_read_file
from ..identity import resolve_identity
from ..locking import acquire_lock
from ..validators import validate_key, validate_value

logger = logging.getLogger("secenvs.vault")


def parse_vault_content(content: str) -> dict[str, str]:
    """Parse decrypted vault text; lenient, later duplicates win."""
    data: dict[str, str] = {}
    for line in content.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        key = key.strip()
        if sep and key:
            data[key] = value.strip()
    return data


def render_vault_content(data: dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in data.items())


class VaultStore:
    """Global vault with a staleness-aware in-memory snapshot.

    The snapshot is keyed on (path, mtime, size) of the vault file; any
    change to the three forces a reload on the next access.
    """

    def __init__(self, config: Optional[SecenvConfig] = None):
        self._config = config
        self._cache: Optional[dict[str, str]] = None
        self._stamp: Optional[tuple[str, int, int]] = None

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    @property
    def config(self) -> SecenvConfig:
        return self._config or get_config()

    @property
    def path(self) -> Path:
        return self.config.vault_path

    def _stat(self, path: Path) -> Optional[tuple[str, int, int]]:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        except OSError as err:
            raise VaultError(f"Failed to stat vault {path}: {err}") from err
        return (str(path), st.st_mtime_ns, st.st_size)

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> dict[str, str]:
        """Return the decrypted snapshot, reloading it if the file changed.

        Raises:
            IdentityNotFoundError: If the vault exists but no identity is usable.
            VaultError: If the vault cannot be read or decrypted.
        """
        cfg = self.config
        path = cfg.vault_path
        stamp = self._stat(path)
        if stamp is None:
            self._cache = {}
            self._stamp = None
            return self._cache
        if self._cache is not None and stamp == self._stamp:
            logger.debug("Vault snapshot hit (%d keys)", len(self._cache))
            return self._cache

        identity = resolve_identity(cfg)
        try:
            data = parse_vault_content(decrypt(identity, safe_read_file(path)))
        except SecenvError as err:
            raise VaultError(f"Failed to load vault: {err}") from err
        self._cache = data
        self._stamp = stamp
        logger.debug("Vault loaded from %s: %d key(s)", path, len(data))
        return data

    def _save(self, data: dict[str, str]) -> None:
        cfg = self.config
        path = cfg.vault_path
        ensure_safe_dir(cfg.secenv_dir)
        identity = resolve_identity(cfg)
        try:
            encrypted = encrypt([identity_to_public_key(identity)], render_vault_content(data))
            write_atomic_raw(path, encrypted, mode=0o600)
        except IdentityNotFoundError:
            raise
        except SecenvError as err:
            raise VaultError(f"Failed to save vault: {err}") from err
        self._cache = data
        self._stamp = self._stat(path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        return self.load().get(key)

    def list_keys(self) -> list[str]:
        return list(self.load().keys())

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``.

        Raises:
            ValidationError: If the key or value is invalid.
            VaultError: If the vault cannot be loaded or saved.
        """
        validate_key(key)
        validate_value(value)
        path = self.path
        ensure_safe_dir(path.parent)
        with acquire_lock(path, self.config):
            self.clear_cache()
            latest = dict(self.load())
            latest[key] = value
            self._save(latest)
        logger.info("Vault set: key=%s", key)

    def delete(self, key: str) -> bool:
        """Remove ``key``; returns False when it was not in the vault."""
        validate_key(key)
        path = self.path
        ensure_safe_dir(path.parent)
        with acquire_lock(path, self.config):
            self.clear_cache()
            latest = dict(self.load())
            if key not in latest:
                return False
            del latest[key]
            self._save(latest)
        logger.info("Vault delete: key=%s", key)
        return True

    def clear_cache(self) -> None:
        self._cache = None
        self._stamp = None


# ---------------------------------------------------------------------------
# Process-wide default vault
# ---------------------------------------------------------------------------

default_vault = VaultStore()


def get_vault_path() -> Path:
    return default_vault.path


def vault_get(key: str) -> Optional[str]:
    return default_vault.get(key)


def vault_set(key: str, value: str) -> None:
    default_vault.set(key, value)


def vault_delete(key: str) -> bool:
    return default_vault.delete(key)


def list_vault_keys() -> list[str]:
    return default_vault.list_keys()


def clear_vault_cache() -> None:
    default_vault.clear_cache()
