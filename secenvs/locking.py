"""
Lock Manager — Cross-process mutual exclusion over a file path.

The lock is a sidecar file ``<path>.lock`` created with O_CREAT|O_EXCL and
holding the owner's decimal PID. Its existence is the only exclusion signal.

Stale recovery:
- unparsable or out-of-range owner PID: stale, removed immediately (an
  empty lock younger than ``EMPTY_LOCK_GRACE`` is still being written and
  counts as held)
- owner PID not running (``os.kill(pid, 0)`` → ProcessLookupError): stale
- lock file unreadable: assumed held, never removed

Contention backs off exponentially with jitter and gives up after a bounded
number of retries with ``FileError("Timeout waiting for lock on <path>")``.
"""
import os
import time
import random
import logging
from contextlib import contextmanager
from collections.abc import Iterator
from typing import Optional

from .conf import LOCK_SUFFIX, SecenvConfig, get_config
from .exceptions import FileError
from .filesystem import PathLike

logger = logging.getLogger("secenvs.lock")

EMPTY_LOCK_GRACE = 1.0  # seconds
MAX_PID = 2 ** 31 - 1  # pid_t is a signed 32-bit int


def lock_path_for(path: PathLike) -> str:
    return f"{os.fspath(path)}{LOCK_SUFFIX}"


def pid_is_alive(pid: int) -> bool:
    """Zero-signal liveness check."""
    if pid <= 0 or pid > MAX_PID:
        return False
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, OverflowError):
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def is_lock_stale(lock_path: PathLike) -> Optional[bool]:
    """Inspect an existing lock file.

    Returns:
        True if the lock is stale, False if it is held by a live process,
        None if the lock file vanished before it could be read.

    Raises:
        PermissionError / OSError: If the lock exists but cannot be read;
            callers must treat that as a held lock.
    """
    try:
        with open(lock_path, "r", encoding="utf-8") as fp:
            raw = fp.read().strip()
        if not raw:
            # the owner may sit between create and write
            age = time.time() - os.stat(lock_path).st_mtime
            if age < EMPTY_LOCK_GRACE:
                return False
    except FileNotFoundError:
        return None
    if not raw.isdigit() or not raw.isascii() or int(raw) > MAX_PID:
        return True
    return not pid_is_alive(int(raw))


def _write_pid(fd: int) -> None:
    os.write(fd, str(os.getpid()).encode("ascii"))


def _try_create(lock_path: str) -> bool:
    """Attempt the exclusive create; False if the lock already exists."""
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    except OSError as err:
        raise FileError(f"Failed to acquire lock on {lock_path}: {err}") from err
    try:
        _write_pid(fd)
    except OSError as err:
        os.close(fd)
        _release(lock_path)
        raise FileError(f"Failed to acquire lock on {lock_path}: {err}") from err
    os.close(fd)
    return True


def _release(lock_path: str) -> None:
    try:
        os.unlink(lock_path)
    except FileNotFoundError:
        logger.debug("Lock %s already removed", lock_path)
    except OSError as err:
        # the next contender recovers it as stale
        logger.warning("Could not remove lock %s: %s", lock_path, err)


@contextmanager
def acquire_lock(
    path: PathLike,
    config: Optional[SecenvConfig] = None,
) -> Iterator[str]:
    """Hold the lock for ``path`` for the duration of the ``with`` block.

    Args:
        path: Target file the lock protects (the lock is ``path + ".lock"``).
        config: Backoff tuning; defaults to the environment configuration.

    Yields:
        The lock file path.

    Raises:
        FileError: On timeout or if the lock cannot be created.
    """
    cfg = config or get_config()
    lock_path = lock_path_for(path)
    retries = cfg.lock_retries
    delay = cfg.lock_initial_delay
    acquired = False

    while retries > 0:
        if _try_create(lock_path):
            acquired = True
            break
        try:
            stale = is_lock_stale(lock_path)
        except OSError as err:
            logger.debug("Lock %s unreadable (%s), assuming held", lock_path, err)
            stale = False
        if stale is None:
            continue
        if stale:
            logger.warning("Removing stale lock %s", lock_path)
            try:
                os.unlink(lock_path)
                continue
            except FileNotFoundError:
                continue
            except OSError as err:
                logger.debug("Could not remove stale lock %s: %s", lock_path, err)
        retries -= 1
        time.sleep(delay)
        delay = min(
            delay * cfg.lock_backoff_factor + random.random() * cfg.lock_max_jitter,
            cfg.lock_max_delay,
        )

    if not acquired:
        raise FileError(f"Timeout waiting for lock on {os.fspath(path)}")

    logger.debug("Lock acquired: %s", lock_path)
    try:
        yield lock_path
    finally:
        _release(lock_path)
