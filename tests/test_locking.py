"""
Tests for the lock manager and the atomic writer.

Tests cover:
- Exclusive acquisition and release (including on exceptions)
- Stale recovery for dead and unparsable owners
- Timeout on a live holder
- All-or-nothing replacement and temp file cleanup
- Writers killed mid-write and temp file cleanup on SIGTERM
"""
import os
import stat
import time
import random
import signal
import multiprocessing
import pytest

from secenvs import atomic, locking
from secenvs.conf import SecenvConfig
from secenvs.envfile import parse_env_file, set_key
from secenvs.atomic import cleanup_temp_files, write_atomic, write_atomic_raw
from secenvs.exceptions import FileError
from secenvs.locking import (
    EMPTY_LOCK_GRACE,
    acquire_lock,
    is_lock_stale,
    lock_path_for,
    pid_is_alive,
)

DEAD_PID = 2 ** 31 - 2


@pytest.fixture
def target(tmp_path):
    return tmp_path / "project" / ".secenvs"


class TestLockManager:
    """Tests for acquire_lock."""

    def test_lock_file_holds_pid(self, target, config):
        """Test the sidecar exists while held and records our PID."""
        with acquire_lock(target, config) as lock_path:
            assert lock_path == lock_path_for(target)
            with open(lock_path) as fp:
                assert fp.read() == str(os.getpid())
        assert not os.path.exists(lock_path_for(target))

    def test_released_on_exception(self, target, config):
        """Test the lock is removed when the body raises."""
        with pytest.raises(RuntimeError):
            with acquire_lock(target, config):
                raise RuntimeError("boom")
        assert not os.path.exists(lock_path_for(target))

    def test_timeout_on_live_holder(self, target, fast_lock_config):
        """Test a lock held by a running process times out."""
        lock_path = lock_path_for(target)
        with open(lock_path, "w") as fp:
            fp.write(str(os.getpid()))
        with pytest.raises(FileError, match="Timeout waiting for lock"):
            with acquire_lock(target, fast_lock_config):
                pass
        assert os.path.exists(lock_path)

    def test_dead_owner_is_recovered(self, target, fast_lock_config):
        """Test a lock left by a dead process is superseded."""
        lock_path = lock_path_for(target)
        with open(lock_path, "w") as fp:
            fp.write(str(DEAD_PID))
        with acquire_lock(target, fast_lock_config):
            with open(lock_path) as fp:
                assert fp.read() == str(os.getpid())

    @pytest.mark.parametrize("content", ["not-a-pid", "12ab", "-5"])
    def test_unparsable_owner_is_stale(self, target, content):
        """Test garbage lock content is stale immediately."""
        lock_path = lock_path_for(target)
        with open(lock_path, "w") as fp:
            fp.write(content)
        assert is_lock_stale(lock_path) is True

    @pytest.mark.parametrize("content", ["99999999999999999999999", str(2 ** 31), str(2 ** 64)])
    def test_out_of_range_owner_is_stale(self, target, fast_lock_config, content):
        """Test a PID no process can have is recovered like garbage."""
        lock_path = lock_path_for(target)
        with open(lock_path, "w") as fp:
            fp.write(content)
        assert is_lock_stale(lock_path) is True
        with acquire_lock(target, fast_lock_config):
            with open(lock_path) as fp:
                assert fp.read() == str(os.getpid())

    def test_failed_pid_write_removes_lock(self, target, config, monkeypatch):
        """Test a lock whose PID cannot be written is not left behind."""

        def disk_full(fd):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(locking, "_write_pid", disk_full)
        with pytest.raises(FileError, match="Failed to acquire lock"):
            with acquire_lock(target, config):
                pass
        assert not os.path.exists(lock_path_for(target))

    def test_fresh_empty_lock_is_held(self, target, fast_lock_config):
        """Test an empty lock within the grace window counts as held."""
        lock_path = lock_path_for(target)
        open(lock_path, "w").close()
        assert is_lock_stale(lock_path) is False
        with pytest.raises(FileError):
            with acquire_lock(target, fast_lock_config):
                pass

    def test_old_empty_lock_is_stale(self, target, fast_lock_config):
        """Test an empty lock older than the grace window is recovered."""
        lock_path = lock_path_for(target)
        open(lock_path, "w").close()
        past = time.time() - EMPTY_LOCK_GRACE - 5
        os.utime(lock_path, (past, past))
        assert is_lock_stale(lock_path) is True
        with acquire_lock(target, fast_lock_config):
            pass

    def test_vanished_lock(self, target):
        """Test a lock that disappeared reports None."""
        assert is_lock_stale(lock_path_for(target)) is None

    def test_pid_is_alive(self):
        assert pid_is_alive(os.getpid()) is True
        assert pid_is_alive(DEAD_PID) is False
        assert pid_is_alive(0) is False
        assert pid_is_alive(10 ** 30) is False


class TestAtomicWriter:
    """Tests for write_atomic / write_atomic_raw."""

    def _leftovers(self, directory):
        return [name for name in os.listdir(directory) if ".tmp." in name]

    def test_write_creates_file(self, target, config):
        """Test content lands and no temp or lock files remain."""
        write_atomic(target, "A=1\n", config=config)
        assert target.read_text() == "A=1\n"
        assert self._leftovers(target.parent) == []
        assert not os.path.exists(lock_path_for(target))

    def test_write_replaces_file(self, target, config):
        """Test an existing file is replaced whole."""
        target.write_text("OLD=value\nMORE=lines\n")
        write_atomic(target, "NEW=1\n", config=config)
        assert target.read_text() == "NEW=1\n"

    def test_mode_is_applied(self, target):
        """Test the requested permission bits are set."""
        write_atomic_raw(target, "X=1\n", mode=0o600)
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600

    def test_failure_leaves_nothing(self, tmp_path):
        """Test a failed write raises FileError and leaves no temp file."""
        missing_dir = tmp_path / "missing"
        with pytest.raises(FileError):
            write_atomic_raw(missing_dir / "file", "X=1\n")
        assert not missing_dir.exists()
        assert atomic.active_temp_files() == frozenset()

    def test_failed_rename_keeps_target(self, target, monkeypatch):
        """Test the target is untouched when the final rename fails."""
        target.write_text("KEEP=1\n")

        def broken_replace(src, dst):
            raise OSError("disk on fire")

        monkeypatch.setattr(atomic.os, "replace", broken_replace)
        with pytest.raises(FileError):
            write_atomic_raw(target, "LOST=1\n")
        assert target.read_text() == "KEEP=1\n"
        assert self._leftovers(target.parent) == []

    def test_symlink_target_rejected(self, target, tmp_path):
        """Test a symlinked target is refused."""
        real = tmp_path / "real"
        real.write_text("")
        target.symlink_to(real)
        with pytest.raises(FileError, match="Symlink"):
            write_atomic_raw(target, "X=1\n")
        assert real.read_text() == ""

    def test_cleanup_removes_registered_temp_files(self, tmp_path):
        """Test in-flight temp files are deleted on cleanup."""
        stray = tmp_path / "project" / ".secenvs.tmp.1.2.3"
        stray.write_text("partial")
        with atomic._registry_lock:
            atomic._active_temp_files.add(str(stray))
        cleanup_temp_files()
        assert not stray.exists()
        assert atomic.active_temp_files() == frozenset()


PAYLOADS = ("a" * 400_000, "b" * 400_000)


def _rewrite_forever(path: str, home: str) -> None:
    cfg = SecenvConfig(home=home)
    turn = 1
    while True:
        set_key(path, "PAYLOAD", PAYLOADS[turn % 2], cfg)
        turn += 1


def _hold_temp_file(tmp_path: str, ready) -> None:
    atomic.install_cleanup_handlers()
    with open(tmp_path, "w") as fp:
        fp.write("partial")
    with atomic._registry_lock:
        atomic._active_temp_files.add(tmp_path)
    ready.set()
    time.sleep(60)


@pytest.fixture
def fork_ctx():
    try:
        return multiprocessing.get_context("fork")
    except ValueError:
        pytest.skip("fork start method unavailable")


class TestTermination:
    """Writers that die or are told to stop mid-write."""

    TRIALS = 10

    def test_killed_writer_leaves_whole_file(self, env_file, config, fork_ctx):
        """Test SIGKILL at any point leaves the old or the new file, never a mix."""
        expected = {f"PAYLOAD={payload}\n" for payload in PAYLOADS}
        env_file.write_text(f"PAYLOAD={PAYLOADS[0]}\n")
        rng = random.Random(7)
        for _ in range(self.TRIALS):
            proc = fork_ctx.Process(
                target=_rewrite_forever, args=(str(env_file), str(config.home))
            )
            proc.start()
            time.sleep(rng.uniform(0.02, 0.25))
            os.kill(proc.pid, signal.SIGKILL)
            proc.join(10)
            assert proc.exitcode == -signal.SIGKILL
            assert env_file.read_text() in expected
            assert parse_env_file(env_file).keys == {"PAYLOAD"}

    def test_sigterm_removes_registered_temp_file(self, tmp_path, fork_ctx):
        """Test a terminated process deletes its in-flight temp files."""
        stray = tmp_path / "project" / ".secenvs.tmp.1.2.3"
        ready = fork_ctx.Event()
        proc = fork_ctx.Process(target=_hold_temp_file, args=(str(stray), ready))
        proc.start()
        try:
            assert ready.wait(10)
            assert stray.exists()
            os.kill(proc.pid, signal.SIGTERM)
            proc.join(10)
            assert proc.exitcode is not None
            assert not stray.exists()
        finally:
            if proc.is_alive():
                proc.kill()
                proc.join()
