"""
Recipients — Trust management and re-encryption of a secret file.

The recipient set is stored in the secret file as ``_RECIPIENT=<age1…>``
lines. When it changes, every encrypted value is decrypted with the local
identity and re-encrypted to the full new set, so every trusted key can
read every value.

A rotation runs in one lock scope and ends in one atomic replacement: the
recipient lines and all re-encrypted values become visible together, and a
crash leaves the previous file intact. Re-running a rotation is idempotent.

Security Note:
    Plaintext exists in memory only while each value is re-encrypted.
    Never log plaintext or ciphertext values.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from .atomic import write_atomic_raw
from .audit import append_audit_log
from .conf import ENCRYPTED_PREFIX, RECIPIENT_METADATA_KEY, SecenvConfig, get_config, get_env_path
from .crypto import decrypt, encrypt, identity_to_public_key, validate_public_key
from .envfile import BOM, ParsedEnv, parse_env_content, parse_env_file, read_current, render_lines
from .exceptions import RecipientError
from .filesystem import PathLike
from .identity import resolve_identity
from .locking import acquire_lock

logger = logging.getLogger("secenvs.recipients")


@dataclass
class RotationResult:
    """Outcome of a trust/untrust call.

    ``changed`` is False when the key was already trusted (trust) or was
    not a recipient (untrust); nothing is written in that case.
    """

    pubkey: str
    changed: bool
    recipients: list[str] = field(default_factory=list)
    reencrypted: int = 0


def _unique(keys: list[str]) -> list[str]:
    return list(dict.fromkeys(keys))


def load_recipients(path: Optional[PathLike] = None) -> list[str]:
    """Recipients recorded in the secret file, in file order."""
    return _unique(parse_env_file(path or get_env_path()).recipients)


def _bootstrap(parsed: ParsedEnv, config: SecenvConfig) -> list[str]:
    recipients = _unique(parsed.recipients)
    if recipients:
        return recipients
    # first use: the file is encrypted to the local identity only
    return [identity_to_public_key(resolve_identity(config))]


def resolve_recipients(
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> list[str]:
    """Recipients to encrypt new values for, falling back to the local key.

    Raises:
        IdentityNotFoundError: If the file has no recipients and there is no
            local identity.
    """
    cfg = config or get_config()
    return _bootstrap(parse_env_file(path or get_env_path()), cfg)


def _render(content: str, parsed: ParsedEnv, recipients: list[str], values: dict[str, str]) -> str:
    """Rebuild content with a new recipient block and replaced values."""
    if content.startswith(BOM):
        content = content[1:]
    raw_lines = content.split("\n")
    by_number = {line.line_number: line for line in parsed.lines}
    recipient_lines = [f"{RECIPIENT_METADATA_KEY}={r}" for r in recipients]
    out = []
    inserted = False
    for number, raw in enumerate(raw_lines, start=1):
        line = by_number.get(number)
        if line is not None and line.key == RECIPIENT_METADATA_KEY:
            if not inserted:
                out.extend(recipient_lines)
                inserted = True
            continue
        if line is not None and line.key in values and line.is_entry:
            out.append(f"{line.key}={values[line.key]}")
            continue
        out.append(raw)
    if not inserted:
        # no recipient block yet: the file starts with one
        out = recipient_lines + out
    return render_lines(out)


def _reencrypt(parsed: ParsedEnv, recipients: list[str], identity: str) -> dict[str, str]:
    values = {}
    for line in parsed.entries():
        if not line.encrypted:
            continue
        plaintext = decrypt(identity, line.value[len(ENCRYPTED_PREFIX):])
        values[line.key] = ENCRYPTED_PREFIX + encrypt(recipients, plaintext)
    return values


def save_recipients(
    recipients: list[str],
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> int:
    """Persist ``recipients`` and re-encrypt every value to them.

    Returns:
        Number of re-encrypted values.

    Raises:
        RecipientError: If ``recipients`` is empty or contains a bad key.
        IdentityNotFoundError / DecryptionError: If existing values cannot
            be decrypted locally; the file is left unchanged.
    """
    cfg = config or get_config()
    env_path = path or get_env_path()
    with acquire_lock(env_path, cfg):
        return _rotate(env_path, _unique(recipients), cfg)


def _rotate(env_path: PathLike, recipients: list[str], config: SecenvConfig) -> int:
    if not recipients:
        raise RecipientError("Cannot save an empty recipient set.")
    for pubkey in recipients:
        validate_public_key(pubkey)
    content = read_current(env_path)
    parsed = parse_env_content(content)
    values = {}
    if parsed.encrypted_count:
        values = _reencrypt(parsed, recipients, resolve_identity(config))
    write_atomic_raw(env_path, _render(content, parsed, recipients, values))
    logger.info(
        "Recipients of %s now %d; re-encrypted %d value(s)",
        env_path, len(recipients), len(values),
    )
    return len(values)


def trust(
    pubkey: str,
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> RotationResult:
    """Add ``pubkey`` to the recipients and re-encrypt every value.

    Raises:
        RecipientError: If ``pubkey`` is not a valid age public key.
    """
    validate_public_key(pubkey)
    cfg = config or get_config()
    env_path = path or get_env_path()

    with acquire_lock(env_path, cfg):
        current = _bootstrap(parse_env_file(env_path), cfg)
        if pubkey in current:
            logger.info("Key %s is already trusted", pubkey)
            return RotationResult(pubkey, False, current, 0)
        updated = current + [pubkey]
        count = _rotate(env_path, updated, cfg)

    append_audit_log("TRUST", pubkey, env_path, cfg)
    return RotationResult(pubkey, True, updated, count)


def untrust(
    pubkey: str,
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> RotationResult:
    """Remove ``pubkey`` from the recipients and re-encrypt every value.

    Raises:
        RecipientError: If ``pubkey`` is invalid or is the last recipient;
            checked before anything is decrypted or written.
    """
    validate_public_key(pubkey)
    cfg = config or get_config()
    env_path = path or get_env_path()

    with acquire_lock(env_path, cfg):
        current = _bootstrap(parse_env_file(env_path), cfg)
        if pubkey not in current:
            logger.info("Key %s is not a recipient", pubkey)
            return RotationResult(pubkey, False, current, 0)
        updated = [k for k in current if k != pubkey]
        if not updated:
            raise RecipientError(
                "Cannot remove the last recipient. Encrypted values must stay "
                "decryptable by at least one key."
            )
        count = _rotate(env_path, updated, cfg)

    append_audit_log("UNTRUST", pubkey, env_path, cfg)
    return RotationResult(pubkey, True, updated, count)
