"""
Coordinator lock - guarantees a single coordinator per data directory.

The coordinator is the only writer of the state file, so two processes
must never run one against the same data directory. Ownership is an OS
file lock on config.LOCK_FILE:
- Unix (macOS/Linux): fcntl.flock()
- Windows: msvcrt.locking()

The OS drops the lock when the process exits, even on a crash. The
owner's PID is written into the file so a second process can report it.
"""

import atexit
import logging
import os
import sys
from pathlib import Path
from typing import IO, Optional

import config

logger = logging.getLogger(__name__)

# Bytes locked on Windows; the file is padded to this size
_WIN_LOCK_BYTES = 32


class CoordinatorLock:
    """
    Exclusive, non-blocking lock on the coordinator lock file.

    Usage:
        with CoordinatorLock() as lock:
            if not lock.is_acquired():
                ...  # another coordinator owns the data directory
    """

    def __init__(self, lock_file: Optional[Path] = None):
        self.lock_file = Path(lock_file) if lock_file else config.LOCK_FILE
        self._handle: Optional[IO] = None

    def _lock_handle(self, handle: IO) -> None:
        """Lock an open handle; raises OSError if someone else holds it."""
        if sys.platform == 'win32':
            import msvcrt
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, _WIN_LOCK_BYTES)
        else:
            import fcntl
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _write_pid(self, handle: IO) -> None:
        handle.seek(0)
        handle.truncate()
        pid = str(os.getpid()).encode('utf-8')
        if sys.platform == 'win32':
            pid = pid.ljust(_WIN_LOCK_BYTES, b'\0')
        handle.write(pid)
        handle.flush()

    def acquire(self) -> bool:
        """
        Try to take the lock without waiting.

        Returns:
            True if this process now owns the data directory.
        """
        if self._handle is not None:
            return True

        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            # 'a+b' keeps the owner's PID readable while we try
            handle = open(self.lock_file, 'a+b')
        except OSError as e:
            logger.error(f"Cannot open coordinator lock {self.lock_file}: {e}")
            return False

        try:
            if sys.platform == 'win32' and self.lock_file.stat().st_size < _WIN_LOCK_BYTES:
                handle.write(b'\0' * _WIN_LOCK_BYTES)
                handle.flush()
            handle.seek(0)
            self._lock_handle(handle)
        except OSError:
            handle.close()
            logger.debug(f"Coordinator lock held by another process ({self.lock_file})")
            return False

        try:
            self._write_pid(handle)
        except OSError as e:
            # Lock is still ours; only the PID hint is missing
            logger.warning(f"Could not write PID to lock file: {e}")

        self._handle = handle
        logger.debug(f"Coordinator lock acquired (PID: {os.getpid()})")
        return True

    def release(self) -> None:
        """Drop the lock and remove the lock file."""
        if self._handle is None:
            return

        handle, self._handle = self._handle, None
        try:
            if sys.platform == 'win32':
                import msvcrt
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, _WIN_LOCK_BYTES)
        except OSError as e:
            logger.debug(f"Unlock failed (released on close): {e}")
        finally:
            handle.close()

        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Could not remove lock file: {e}")
        logger.debug("Coordinator lock released")

    def is_acquired(self) -> bool:
        return self._handle is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


# Process-wide lock used by the module-level helpers
_coordinator_lock: Optional[CoordinatorLock] = None


def check_single_instance(lock_file: Optional[Path] = None) -> bool:
    """
    Take the coordinator lock for this process.

    Call once at startup before starting a coordinator. The lock is
    released at exit.

    Returns:
        True if this is the only coordinator (safe to proceed),
        False if another process owns the data directory.
    """
    global _coordinator_lock

    if _coordinator_lock is not None:
        return _coordinator_lock.is_acquired()

    lock = CoordinatorLock(lock_file)
    if not lock.acquire():
        return False

    _coordinator_lock = lock
    atexit.register(release_instance_lock)
    return True


def release_instance_lock() -> None:
    global _coordinator_lock
    if _coordinator_lock is not None:
        _coordinator_lock.release()
        _coordinator_lock = None


def get_existing_pid(lock_file: Optional[Path] = None) -> Optional[int]:
    """
    PID written by the current lock owner, or None if unreadable.
    """
    path = Path(lock_file) if lock_file else config.LOCK_FILE
    try:
        content = path.read_bytes().rstrip(b'\0').strip()
    except OSError:
        return None
    return int(content) if content.isdigit() else None
