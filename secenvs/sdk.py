"""
SecenvSDK — Read-side resolution of secrets for library consumers.

Lookup order for ``get()``:
1. process environment (always wins)
2. project secret file (plaintext returned, ciphertext decrypted); both cached
3. ``vault:<key>`` values resolved through the global vault, never cached
   here since the vault governs their lifetime

The snapshot of the parsed file and the value cache are keyed on the
file's (path, mtime, size); every access re-stats the file and drops both
when any of the three changed.

Security Note:
    Decrypted values stay in process memory for the life of the SDK
    instance. Never log them; ``repr()`` shows only counts and the path.
"""
import os
import time
import hmac
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .conf import ENCRYPTED_PREFIX, SecenvConfig, get_config, get_env_path
from .crypto import decrypt
from .envfile import ParsedEnv, find_key, is_vault_reference, parse_env_file, vault_key_of
from .exceptions import SecretNotFoundError, ValidationError, VaultError
from .filesystem import PathLike, sanitize_path
from .identity import resolve_identity
from .vault import VaultStore, default_vault

logger = logging.getLogger("secenvs.sdk")


@dataclass
class CacheEntry:
    value: str
    decrypted_at: float


class SecenvSDK:
    """Resolve secrets from the environment, the project file and the vault.

    Not thread-safe; one instance per thread or guarded by the caller.
    """

    def __init__(
        self,
        path: Optional[PathLike] = None,
        vault: Optional[VaultStore] = None,
        config: Optional[SecenvConfig] = None,
    ):
        self._path = path
        self._vault = vault or default_vault
        self._config = config
        self._identity: Optional[str] = None
        self._cache: dict[str, CacheEntry] = {}
        self._parsed: Optional[ParsedEnv] = None
        self._stamp: Optional[tuple[int, int]] = None
        self._last_path: Optional[Path] = None

    def __repr__(self) -> str:
        return f"<SecenvSDK path={self._last_path} cached={len(self._cache)}>"

    @property
    def env_path(self) -> Path:
        return sanitize_path(self._path or get_env_path())

    def _load_identity(self) -> str:
        if self._identity is None:
            self._identity = resolve_identity(self._config or get_config())
        return self._identity

    def _reload(self) -> None:
        current = self.env_path
        if current != self._last_path:
            self.clear_cache()
            self._last_path = current
        try:
            st = os.stat(current)
        except FileNotFoundError:
            self._parsed = None
            self._cache.clear()
            self._stamp = None
            return
        stamp = (st.st_mtime_ns, st.st_size)
        if self._parsed is None or stamp != self._stamp:
            logger.debug("Reloading %s", current)
            self._parsed = parse_env_file(current)
            self._stamp = stamp
            self._cache.clear()

    def _from_vault(self, key: str, reference: str) -> str:
        vault_key = vault_key_of(reference)
        value = self._vault.get(vault_key)
        if value is None:
            raise VaultError(
                f"Vault key '{vault_key}' referenced by '{key}' not found in global vault."
            )
        return value

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> str:
        """Resolve ``key``.

        Raises:
            SecretNotFoundError: If neither the environment nor the file has it.
            IdentityNotFoundError: If the value is encrypted and no identity is usable.
            DecryptionError: If the value cannot be decrypted.
            VaultError: If a vault reference cannot be resolved.
        """
        env_value = os.environ.get(key)
        if env_value is not None:
            return env_value

        self._reload()
        entry = self._cache.get(key)
        if entry is not None:
            return entry.value
        if self._parsed is None:
            raise SecretNotFoundError(key)

        line = find_key(self._parsed, key)
        if line is None:
            raise SecretNotFoundError(key)

        if line.encrypted:
            value = decrypt(self._load_identity(), line.value[len(ENCRYPTED_PREFIX):])
        else:
            value = line.value

        if is_vault_reference(value):
            return self._from_vault(key, value)

        self._cache[key] = CacheEntry(value, time.time())
        return value

    def has(self, key: str) -> bool:
        found = key in os.environ
        self._reload()
        if self._parsed is not None:
            target = key.encode("utf-8")
            for name in self._parsed.keys:
                if hmac.compare_digest(name.encode("utf-8"), target):
                    found = True
        return found

    def keys(self) -> set[str]:
        names = set(os.environ)
        self._reload()
        if self._parsed is not None:
            names.update(self._parsed.keys)
        return names

    def clear_cache(self) -> None:
        self._cache.clear()
        self._parsed = None
        self._stamp = None
        self._identity = None


def create_secenv(path: Optional[PathLike] = None) -> SecenvSDK:
    return SecenvSDK(path)


env = SecenvSDK()


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------

@dataclass
class SchemaIssue:
    field: str
    kind: str


@dataclass
class ValidationResult:
    value: Any = None
    issues: list[SchemaIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


@runtime_checkable
class EnvSchema(Protocol):
    """Anything that can validate the resolved secrets."""

    def validate(self, raw: Mapping[str, str]) -> ValidationResult:
        ...


class ResolvedView(Mapping[str, str]):
    """Read-only mapping that resolves keys through an SDK on access."""

    def __init__(self, sdk: SecenvSDK):
        self._sdk = sdk

    def __getitem__(self, key: str) -> str:
        return self._sdk.get(key)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._sdk.has(key)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._sdk.keys()))

    def __len__(self) -> int:
        return len(self._sdk.keys())


class PydanticSchema:
    """Adapter validating resolved secrets against a pydantic model."""

    def __init__(self, model: type[BaseModel]):
        self.model = model

    def validate(self, raw: Mapping[str, str]) -> ValidationResult:
        data = {}
        for name, info in self.model.model_fields.items():
            lookup = info.alias or name
            if lookup in raw:
                data[lookup] = raw[lookup]
        try:
            return ValidationResult(value=self.model.model_validate(data))
        except PydanticValidationError as err:
            return ValidationResult(issues=[
                SchemaIssue(".".join(str(p) for p in issue["loc"]), issue["type"])
                for issue in err.errors()
            ])


def create_env(schema: Any, sdk: Optional[SecenvSDK] = None) -> Any:
    """Validate resolved secrets against ``schema`` and return its value.

    ``schema`` is any :class:`EnvSchema`; a pydantic model class is
    wrapped in :class:`PydanticSchema`.

    Raises:
        ValidationError: Listing failing field names (never values).
    """
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        schema = PydanticSchema(schema)
    elif not isinstance(schema, EnvSchema):
        raise TypeError(f"Unsupported schema type: {type(schema).__name__}")
    result = schema.validate(ResolvedView(sdk or env))
    if not result.ok:
        detail = ", ".join(f"{issue.field} ({issue.kind})" for issue in result.issues)
        raise ValidationError(f"Environment validation failed: {detail}")
    return result.value
