"""
Audit Log — Tamper-evident, hash-chained action records.

Each mutation appends one ``_AUDIT=`` line to the secret file itself:

    _AUDIT=<hash>|<timestamp>|<ACTION>|<key-or-dash>|<actor>

    hash = SHA256(prev_hash|timestamp|action|key|actor)

The first entry chains from ``GENESIS_HASH``. On read, every entry is
re-hashed against the previous entry *as read*. The first mismatch (an
edited entry, or the entry after a removed one) and every entry after it
verify as False; entries before it stay verified.
"""
import os
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .atomic import write_atomic_raw
from .conf import AUDIT_METADATA_KEY, SecenvConfig, get_env_path
from .envfile import BOM, read_current
from .exceptions import SecenvError
from .filesystem import PathLike, safe_read_file
from .identity import resolve_public_key
from .locking import acquire_lock

logger = logging.getLogger("secenvs.audit")

GENESIS_HASH = "0" * 64
UNKNOWN_ACTOR = "unknown"
NO_KEY = "-"


@dataclass
class AuditEntry:
    hash: str
    timestamp: str
    action: str
    key: str
    actor: str
    verified: bool = False

    def to_line(self) -> str:
        return (
            f"{AUDIT_METADATA_KEY}={self.hash}|{self.timestamp}|"
            f"{self.action}|{self.key}|{self.actor}"
        )


def compute_hash(prev_hash: str, timestamp: str, action: str, key: str, actor: str) -> str:
    data = f"{prev_hash}|{timestamp}|{action}|{key}|{actor}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def parse_audit_entries(content: str) -> list[AuditEntry]:
    """Extract audit entries from file content and verify the chain."""
    if content.startswith(BOM):
        content = content[1:]
    prefix = f"{AUDIT_METADATA_KEY}="
    entries = []
    for line in content.split("\n"):
        stripped = line.strip()
        if not stripped.startswith(prefix):
            continue
        fields = stripped[len(prefix):].split("|")
        if len(fields) < 5 or not all(fields[:5]):
            logger.warning("Skipping malformed audit line")
            continue
        entries.append(AuditEntry(*fields[:5]))

    prev_hash = GENESIS_HASH
    intact = True
    for entry in entries:
        expected = compute_hash(prev_hash, entry.timestamp, entry.action, entry.key, entry.actor)
        # once broken, nothing after the break is trusted
        intact = intact and entry.hash == expected
        entry.verified = intact
        prev_hash = entry.hash
    return entries


def read_audit_log(path: Optional[PathLike] = None) -> list[AuditEntry]:
    """Read and verify the audit chain; a missing file has no entries."""
    env_path = path or get_env_path()
    if not os.path.lexists(env_path):
        return []
    entries = parse_audit_entries(safe_read_file(env_path))
    broken = sum(1 for entry in entries if not entry.verified)
    if broken:
        logger.warning("Audit chain in %s has %d unverified entries", env_path, broken)
    return entries


def verify_audit_log(path: Optional[PathLike] = None) -> bool:
    return all(entry.verified for entry in read_audit_log(path))


def resolve_actor(config: Optional[SecenvConfig] = None) -> str:
    """Public key of the local identity, ``"unknown"`` when unavailable."""
    try:
        actor = resolve_public_key(config)
    except SecenvError as err:
        logger.warning("Audit actor unresolved: %s", type(err).__name__)
        actor = None
    return actor or UNKNOWN_ACTOR


def append_audit_log(
    action: str,
    key: str = NO_KEY,
    path: Optional[PathLike] = None,
    config: Optional[SecenvConfig] = None,
) -> AuditEntry:
    """Append one chained entry to the secret file.

    Without an explicit ``path``, nothing is written when the project file
    does not exist yet.

    Returns:
        The appended entry (or an unwritten entry when skipped).
    """
    actor = resolve_actor(config)
    timestamp = _timestamp()
    env_path = path or get_env_path()
    if path is None and not os.path.lexists(env_path):
        return AuditEntry(GENESIS_HASH, timestamp, action, key or NO_KEY, actor)

    with acquire_lock(env_path, config):
        content = read_current(env_path)
        entries = parse_audit_entries(content)
        prev_hash = entries[-1].hash if entries else GENESIS_HASH
        entry = AuditEntry(
            compute_hash(prev_hash, timestamp, action, key or NO_KEY, actor),
            timestamp, action, key or NO_KEY, actor, verified=True,
        )
        if content and not content.endswith("\n"):
            content += "\n"
        write_atomic_raw(env_path, f"{content}{entry.to_line()}\n")

    logger.debug("Audit %s %s appended to %s", action, entry.key, env_path)
    return entry
