"""
Secret file — parser and mutation primitives for ``.secenvs`` files.

File format (UTF-8, optional BOM):

    KEY=value
    KEY2=enc:age:<base64 ciphertext>
    KEY3=vault:<vault-key>
    _RECIPIENT=<public-key>
    _AUDIT=<hash>|<timestamp>|<ACTION>|<key-or-dash>|<actor>

Blank and ``#`` lines are kept but inert. Keys starting with ``_`` are
metadata: repeatable, never part of the user key set.

Mutations lock the file, re-read it under the lock, rewrite it and replace
it atomically, so concurrent writers on different keys are serialized and
none is lost.
"""
import os
import hmac
import logging
from dataclasses import dataclass, field
from typing import Optional

from .conf import (
    ENCRYPTED_PREFIX,
    METADATA_PREFIX,
    RECIPIENT_METADATA_KEY,
    AUDIT_METADATA_KEY,
    VAULT_PREFIX,
    SecenvConfig,
    get_env_path,
)
from .atomic import write_atomic_raw
from .exceptions import ParseError
from .filesystem import PathLike, safe_read_file
from .locking import acquire_lock
from .validators import validate_key, validate_user_key, validate_value

logger = logging.getLogger("secenvs.envfile")

BOM = "\ufeff"

__all__ = [
    "ParsedLine",
    "ParsedEnv",
    "get_env_path",
    "is_encrypted_value",
    "is_vault_reference",
    "vault_key_of",
    "parse_env_content",
    "parse_env_file",
    "read_current",
    "find_key",
    "render_lines",
    "set_key",
    "delete_key",
]


@dataclass
class ParsedLine:
    key: str
    value: str
    encrypted: bool
    line_number: int
    raw: str
    metadata: bool = False

    @property
    def is_entry(self) -> bool:
        """A user-visible KEY=VALUE line."""
        return bool(self.key) and not self.metadata


@dataclass
class ParsedEnv:
    lines: list[ParsedLine] = field(default_factory=list)
    keys: set[str] = field(default_factory=set)
    encrypted_count: int = 0
    plaintext_count: int = 0
    recipients: list[str] = field(default_factory=list)
    audit_lines: list[str] = field(default_factory=list)

    def entries(self) -> list[ParsedLine]:
        return [line for line in self.lines if line.is_entry]


def is_encrypted_value(value: str) -> bool:
    return value.startswith(ENCRYPTED_PREFIX)


def is_vault_reference(value: str) -> bool:
    return value.startswith(VAULT_PREFIX)


def vault_key_of(value: str) -> str:
    return value[len(VAULT_PREFIX):]


def is_metadata_key(key: str) -> bool:
    return key.startswith(METADATA_PREFIX)


def _split_entry(stripped: str) -> Optional[tuple[str, str]]:
    index = stripped.find("=")
    if index == -1:
        return None
    return stripped[:index], stripped[index + 1:]


def parse_env_content(content: str) -> ParsedEnv:
    """Parse secret file text.

    Pure function of its input; safe to call speculatively.

    Raises:
        ParseError: On a line without ``=``, an empty key or a duplicate key.
        ValidationError: If a key fails syntactic validation.
    """
    if content.startswith(BOM):
        content = content[1:]
    parsed = ParsedEnv()

    for index, raw in enumerate(content.split("\n")):
        line_number = index + 1
        raw = raw.rstrip("\r")
        stripped = raw.strip()
        if not stripped or stripped.startswith("#"):
            parsed.lines.append(ParsedLine("", stripped, False, line_number, raw))
            continue

        split = _split_entry(stripped)
        if split is None:
            raise ParseError(line_number, raw, "Invalid line: missing '=' separator")
        key, value = split
        if not key:
            raise ParseError(line_number, raw, "Invalid line: missing key before '='")
        validate_key(key)

        if is_metadata_key(key):
            parsed.lines.append(
                ParsedLine(key, value, False, line_number, raw, metadata=True)
            )
            if key == RECIPIENT_METADATA_KEY:
                parsed.recipients.append(value)
            elif key == AUDIT_METADATA_KEY:
                parsed.audit_lines.append(value)
            continue

        if key in parsed.keys:
            raise ParseError(line_number, raw, f"Duplicate key '{key}'")
        encrypted = is_encrypted_value(value)
        parsed.lines.append(ParsedLine(key, value, encrypted, line_number, raw))
        parsed.keys.add(key)
        if encrypted:
            parsed.encrypted_count += 1
        else:
            parsed.plaintext_count += 1

    return parsed


def parse_env_file(path: PathLike) -> ParsedEnv:
    """Parse the secret file at ``path``; a missing file parses as empty.

    Raises:
        ParseError: On malformed content.
        FileError: If the file is a symlink or unreadable.
    """
    if not os.path.lexists(path):
        return ParsedEnv()
    return parse_env_content(safe_read_file(path))


def read_current(path: PathLike) -> str:
    """Current raw content, empty when the file does not exist yet."""
    if not os.path.lexists(path):
        return ""
    return safe_read_file(path)


def find_key(parsed: ParsedEnv, key: str) -> Optional[ParsedLine]:
    """Locate a user key with a constant-time scan over every line."""
    result = None
    target = key.encode("utf-8")
    for line in parsed.lines:
        if hmac.compare_digest(line.key.encode("utf-8"), target) and line.is_entry:
            result = line
    return result


def render_lines(lines: list[str]) -> str:
    """Join lines, collapsing trailing blanks to a single final newline."""
    return "\n".join(lines).strip() + "\n"


def _rewrite(content: str, key: str, replacement: Optional[str]) -> str:
    if content.startswith(BOM):
        content = content[1:]
    new_lines = []
    found = False
    for line in content.split("\n"):
        split = _split_entry(line.strip())
        if split is not None and split[0] == key:
            found = True
            if replacement is not None:
                new_lines.append(replacement)
            continue
        new_lines.append(line)
    if not found and replacement is not None:
        new_lines = _append_before_blank_tail(new_lines, replacement)
    return render_lines(new_lines)


def _append_before_blank_tail(lines: list[str], new_line: str) -> list[str]:
    while lines and not lines[-1].strip():
        lines.pop()
    lines.append(new_line)
    return lines


def set_key(
    path: PathLike,
    key: str,
    value: str,
    config: Optional[SecenvConfig] = None,
) -> None:
    """Insert or replace ``key`` with an already-encoded ``value``.

    Raises:
        ValidationError: If the key or value is invalid.
        FileError: On lock timeout or write failure.
    """
    validate_user_key(key)
    validate_value(value)
    with acquire_lock(path, config):
        content = _rewrite(read_current(path), key, f"{key}={value}")
        write_atomic_raw(path, content)
    logger.debug("Set %s in %s", key, path)


def delete_key(
    path: PathLike,
    key: str,
    config: Optional[SecenvConfig] = None,
) -> None:
    """Remove ``key``'s line; untouched lines keep their order."""
    validate_user_key(key)
    with acquire_lock(path, config):
        content = _rewrite(read_current(path), key, None)
        write_atomic_raw(path, content)
    logger.debug("Deleted %s from %s", key, path)
