"""
Filesystem helpers that refuse to follow symlinks.

A symlinked secret file, key directory or home directory is rejected
outright; following it would open a swap window between check and use.
"""
import os
from pathlib import Path
from typing import Optional, Union

from .exceptions import FileError

PathLike = Union[str, os.PathLike]


def _symlink_error(path: PathLike, kind: str = "") -> FileError:
    where = f"{kind} {path}" if kind else str(path)
    return FileError(
        f"Symlink detected at {where}. Security policy prohibits following symlinks."
    )


def safe_read_file(path: PathLike) -> str:
    """Read a UTF-8 file, rejecting symlinks.

    Raises:
        FileError: If the path is a symlink or cannot be read.
    """
    try:
        if os.path.islink(path):
            raise _symlink_error(path)
        with open(path, "r", encoding="utf-8", newline="") as fp:
            return fp.read()
    except FileError:
        raise
    except (OSError, UnicodeDecodeError) as err:
        raise FileError(f"Failed to read file {path}: {err}") from err


def sanitize_path(path: PathLike, base_dir: Optional[PathLike] = None) -> Path:
    """Return an absolute path, rejecting an existing symlink.

    A path that does not exist yet is accepted as-is. With ``base_dir`` the
    normalized path must also stay inside that directory.

    Raises:
        FileError: On a symlink or a path that escapes ``base_dir``.
    """
    if os.path.islink(path):
        raise _symlink_error(path)
    resolved = Path(os.path.abspath(path))
    if base_dir is not None:
        base = os.path.abspath(base_dir)
        if os.path.commonpath([str(resolved), base]) != base:
            raise FileError(f"Directory traversal detected: {path} is outside of {base_dir}")
    return resolved


def ensure_safe_dir(path: PathLike) -> Path:
    """Create ``path`` with mode 0700 if missing, reject it if it is a symlink.

    Raises:
        FileError: If the directory is a symlink or cannot be created.
    """
    try:
        if os.path.islink(path):
            raise _symlink_error(path, "directory")
        if not os.path.exists(path):
            os.makedirs(path, mode=0o700, exist_ok=True)
        return Path(path)
    except FileError:
        raise
    except OSError as err:
        raise FileError(f"Failed to ensure safe directory {path}: {err}") from err
