"""Global Vault — per-user encrypted values shared across projects.

Project files point at vault entries with ``KEY=vault:<vault-key>``.

Security Note (Threat Model):
    The decrypted vault snapshot lives in process memory for the lifetime
    of the process. A memory dump of the process exposes it. This is an
    accepted limitation.
"""

from .store import (
    VaultStore,
    default_vault,
    get_vault_path,
    vault_get,
    vault_set,
    vault_delete,
    list_vault_keys,
    clear_vault_cache,
)

__all__ = [
    "VaultStore",
    "default_vault",
    "get_vault_path",
    "vault_get",
    "vault_set",
    "vault_delete",
    "list_vault_keys",
    "clear_vault_cache",
]
