"""
Project operations — the mutating workflows behind the command line.

Each operation validates its input, writes through the lock manager and
the atomic writer, then appends an audit entry.

Security Note:
    Never log secret values. Only log key names, paths and counts.
"""
import os
import stat
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .atomic import write_atomic
from .audit import append_audit_log, read_audit_log
from .conf import ENCRYPTED_PREFIX, PROJECT_FILE, SecenvConfig, get_config, get_env_path
from .crypto import decrypt, encrypt, identity_to_public_key
from .envfile import delete_key, find_key, parse_env_file, set_key
from .exceptions import DecryptionError, ParseError, SecenvError, SecretNotFoundError
from .filesystem import PathLike, safe_read_file
from .identity import create_identity, has_identity, resolve_identity
from .recipients import resolve_recipients
from .validators import validate_user_key, validate_value

logger = logging.getLogger("secenvs.project")

GITIGNORE_ENTRIES = (f"{PROJECT_FILE}.lock", f"{PROJECT_FILE}.tmp.*")


@dataclass
class InitResult:
    public_key: str
    key_path: Path
    env_path: Path
    identity_created: bool
    file_created: bool
    gitignore_updated: bool


@dataclass
class DoctorCheck:
    name: str
    ok: bool
    detail: str


@dataclass
class DoctorReport:
    checks: list[DoctorCheck] = field(default_factory=list)

    @property
    def passed(self) -> int:
        return sum(1 for check in self.checks if check.ok)

    @property
    def healthy(self) -> bool:
        return self.passed == len(self.checks)


def _ensure_gitignore(directory: Path) -> bool:
    gitignore = directory / ".gitignore"
    content = safe_read_file(gitignore) if gitignore.exists() else ""
    present = set(content.split("\n"))
    missing = [entry for entry in GITIGNORE_ENTRIES if entry not in present]
    if not missing:
        return False
    if content and not content.endswith("\n"):
        content += "\n"
    write_atomic(gitignore, content + "\n".join(missing) + "\n")
    return True


def init_project(
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> InitResult:
    """Create (or reuse) the local identity and the project secret file.

    A new project file starts with an ``INIT`` audit entry. The lock
    sidecar is added to the project's ``.gitignore``.
    """
    cfg = config or get_config()
    env_path = Path(path or get_env_path())
    identity, key_path, created = create_identity(cfg)
    file_created = not env_path.exists()
    if file_created:
        write_atomic(env_path, "", config=cfg)
        append_audit_log("INIT", path=env_path, config=cfg)
    gitignore_updated = _ensure_gitignore(env_path.parent)
    public_key = identity_to_public_key(identity)
    logger.info(
        "Initialised %s (identity %s)", env_path, "created" if created else "reused",
    )
    return InitResult(public_key, key_path, env_path, created, file_created, gitignore_updated)


def set_secret(
    key: str,
    value: str,
    path: Optional[PathLike] = None,
    base64: bool = False,
    config: Optional[SecenvConfig] = None,
) -> int:
    """Encrypt and store ``value`` under ``key``.

    Returns:
        Number of recipients the value was encrypted to.

    Raises:
        ValidationError: If the key or value is invalid.
        IdentityNotFoundError: If there is no local identity.
    """
    cfg = config or get_config()
    env_path = path or get_env_path()
    validate_user_key(key)
    validate_value(value, is_base64=base64)
    resolve_identity(cfg)
    recipients = resolve_recipients(env_path, cfg)
    set_key(env_path, key, ENCRYPTED_PREFIX + encrypt(recipients, value), cfg)
    append_audit_log("SET", key, env_path, cfg)
    return len(recipients)


def rotate_secret(
    key: str,
    value: str,
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> int:
    """Replace the value of an existing key.

    Raises:
        SecretNotFoundError: If ``key`` is not in the file.
    """
    cfg = config or get_config()
    env_path = path or get_env_path()
    if find_key(parse_env_file(env_path), key) is None:
        raise SecretNotFoundError(key)
    validate_value(value)
    recipients = resolve_recipients(env_path, cfg)
    set_key(env_path, key, ENCRYPTED_PREFIX + encrypt(recipients, value), cfg)
    append_audit_log("ROTATE", key, env_path, cfg)
    return len(recipients)


def delete_secret(
    key: str,
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> None:
    """Remove ``key`` from the file.

    Raises:
        SecretNotFoundError: If ``key`` is not in the file.
    """
    env_path = path or get_env_path()
    validate_user_key(key)
    if find_key(parse_env_file(env_path), key) is None:
        raise SecretNotFoundError(key)
    delete_key(env_path, key, config)
    append_audit_log("DELETE", key, env_path, config)


def export_secrets(
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> dict[str, str]:
    """Every user key with its plaintext value; vault references stay as-is."""
    parsed = parse_env_file(path or get_env_path())
    identity = resolve_identity(config) if parsed.encrypted_count else None
    exported = {}
    for line in parsed.entries():
        if line.encrypted:
            exported[line.key] = decrypt(identity, line.value[len(ENCRYPTED_PREFIX):])
        else:
            exported[line.key] = line.value
    return exported


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

def _check_identity(cfg: SecenvConfig) -> DoctorCheck:
    key_path = cfg.identity_path
    if not has_identity(cfg):
        return DoctorCheck("identity", False, f"{key_path} (not found)")
    try:
        identity_to_public_key(resolve_identity(cfg))
    except SecenvError as err:
        return DoctorCheck("identity", False, f"{key_path} (invalid: {err.code})")
    if key_path.exists() and os.name == "posix":
        mode = stat.S_IMODE(os.stat(key_path).st_mode)
        if mode != 0o600:
            return DoctorCheck(
                "identity", False, f"{key_path} (permissions should be 0600, found {mode:o})"
            )
    return DoctorCheck("identity", True, str(key_path))


def doctor(
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> DoctorReport:
    """Check identity, file syntax, decryptability and the audit chain."""
    cfg = config or get_config()
    env_path = Path(path or get_env_path())
    report = DoctorReport()
    report.checks.append(_check_identity(cfg))

    if not env_path.exists():
        report.checks.append(DoctorCheck("file", True, f"{env_path} (not found)"))
        return report
    report.checks.append(DoctorCheck("file", True, f"{env_path} (exists)"))

    try:
        parsed = parse_env_file(env_path)
    except ParseError as err:
        report.checks.append(DoctorCheck("syntax", False, f"Line {err.line}: {err.message}"))
        return report
    except SecenvError as err:
        report.checks.append(DoctorCheck("syntax", False, err.message))
        return report
    report.checks.append(DoctorCheck(
        "syntax", True,
        f"{len(parsed.lines)} lines, {parsed.encrypted_count} encrypted, "
        f"{parsed.plaintext_count} plaintext",
    ))

    if parsed.encrypted_count and has_identity(cfg):
        failed = 0
        try:
            identity = resolve_identity(cfg)
        except SecenvError:
            identity = None
        total = parsed.encrypted_count
        for line in parsed.entries():
            if not line.encrypted:
                continue
            if identity is None:
                failed = total
                break
            try:
                decrypt(identity, line.value[len(ENCRYPTED_PREFIX):])
            except DecryptionError:
                failed += 1
        report.checks.append(DoctorCheck(
            "decryption", failed == 0, f"{total - failed}/{total} keys verified",
        ))

    entries = read_audit_log(env_path)
    broken = sum(1 for entry in entries if not entry.verified)
    report.checks.append(DoctorCheck(
        "audit", broken == 0, f"{len(entries) - broken}/{len(entries)} entries verified",
    ))
    return report
