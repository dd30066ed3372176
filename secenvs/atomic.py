"""
Atomic Writer — All-or-nothing replacement of a file's contents.

Content goes to a uniquely named temp file in the target's directory, is
fsync'ed, then ``os.replace``'d onto the target. Readers see either the old
or the new complete file. The target is touched only by the final rename.

In-flight temp files are tracked so that an exiting or terminated process
can delete them synchronously; the lock itself is left to stale detection.
"""
import os
import time
import atexit
import signal
import secrets
import logging
import threading
from typing import Optional

from .conf import SecenvConfig
from .exceptions import FileError
from .filesystem import PathLike
from .locking import acquire_lock

logger = logging.getLogger("secenvs.atomic")

_active_temp_files: set[str] = set()
_registry_lock = threading.Lock()
_handlers_installed = False
_previous_handlers: dict[int, object] = {}

CLEANUP_SIGNALS = tuple(
    sig for sig in (getattr(signal, "SIGTERM", None), getattr(signal, "SIGHUP", None))
    if sig is not None
)


def _temp_name(path: str) -> str:
    stamp = int(time.time() * 1000)
    return f"{path}.tmp.{stamp}.{os.getpid()}.{secrets.randbelow(1_000_000)}"


def active_temp_files() -> frozenset[str]:
    with _registry_lock:
        return frozenset(_active_temp_files)


def cleanup_temp_files() -> None:
    """Synchronously delete every registered in-flight temp file."""
    with _registry_lock:
        pending = list(_active_temp_files)
        _active_temp_files.clear()
    for tmp_path in pending:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass


def _handle_termination(signum, frame) -> None:
    cleanup_temp_files()
    previous = _previous_handlers.get(signum, signal.SIG_DFL)
    if callable(previous):
        previous(signum, frame)
        return
    if previous == signal.SIG_IGN:
        return
    signal.signal(signum, signal.SIG_DFL)
    os.kill(os.getpid(), signum)


def install_cleanup_handlers() -> None:
    """Register atexit and termination-signal cleanup of temp files.

    Signal handlers can only be installed from the main thread; elsewhere
    only the atexit hook is registered.  Previously installed handlers are
    chained.
    """
    global _handlers_installed
    if _handlers_installed:
        return
    _handlers_installed = True
    atexit.register(cleanup_temp_files)
    if threading.current_thread() is not threading.main_thread():
        return
    for sig in CLEANUP_SIGNALS:
        try:
            _previous_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, _handle_termination)
        except (ValueError, OSError) as err:
            logger.debug("Cannot install handler for signal %s: %s", sig, err)


def write_atomic_raw(path: PathLike, content: str, mode: int = 0o644) -> None:
    """Replace ``path`` with ``content``; caller must hold the path's lock.

    Args:
        path: Target file.
        content: Full new contents (UTF-8).
        mode: Permission bits for the new file.

    Raises:
        FileError: On any I/O or permission failure; the target is untouched.
    """
    install_cleanup_handlers()
    target = os.fspath(path)
    if os.path.islink(target):
        raise FileError(
            f"Symlink detected at {target}. Security policy prohibits following symlinks."
        )
    tmp_path = _temp_name(target)
    with _registry_lock:
        _active_temp_files.add(tmp_path)
    try:
        fd = os.open(tmp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, mode)
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as fp:
            fp.write(content)
            fp.flush()
            os.fsync(fp.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, target)
    except OSError as err:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise FileError(f"Failed to write {target}: {err}") from err
    finally:
        with _registry_lock:
            _active_temp_files.discard(tmp_path)


def write_atomic(
    path: PathLike,
    content: str,
    mode: int = 0o644,
    config: Optional[SecenvConfig] = None,
) -> None:
    """Lock ``path`` and atomically replace its contents."""
    with acquire_lock(path, config):
        write_atomic_raw(path, content, mode)
