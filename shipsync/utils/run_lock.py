"""
Single-instance run lock.

Every pipeline run (incremental or backfill chunk) holds one named lock for
its whole duration. The lock is an advisory ``flock`` on a file under
``settings.lock_dir``; flock locks belong to the open file description, so
two attempts conflict whether they come from two processes or from two
coroutines in the same scheduler.
"""
import asyncio
import fcntl
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from shipsync.config import get_settings
from shipsync.utils.logger import log

settings = get_settings()

POLL_INTERVAL_SECONDS = 0.5


class RunLock:
    """A held lock. Release it exactly once via release()."""

    def __init__(self, name: str, path: str, handle):
        self.name = name
        self.path = path
        self._handle = handle
        self.acquired_at = time.time()

    @property
    def released(self) -> bool:
        return self._handle is None

    def release(self) -> bool:
        """Release the lock. Returns False if it was already released."""
        if self._handle is None:
            return False
        handle, self._handle = self._handle, None
        try:
            fcntl.flock(handle, fcntl.LOCK_UN)
        finally:
            handle.close()
        held = time.time() - self.acquired_at
        log.info(f"Lock released: {self.name} (held {held:.1f}s)")
        return True


def _lock_path(name: str, lock_dir: Optional[str] = None) -> str:
    directory = lock_dir or settings.lock_dir
    os.makedirs(directory, exist_ok=True)
    return os.path.join(directory, f"{name}.lock")


def _try_lock(path: str):
    """Take the lock without blocking; return the open handle or None."""
    handle = open(path, "a+", encoding="utf-8")
    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        return None
    except OSError:
        handle.close()
        raise
    return handle


def acquire(
    name: str,
    timeout_seconds: Optional[float] = None,
    lock_dir: Optional[str] = None,
) -> Optional[RunLock]:
    """
    Acquire a named lock, waiting at most timeout_seconds.

    Returns:
        RunLock on success, None if the lock is still held by another run
        when the wait expires (or cannot be taken at all).
    """
    timeout = settings.lock_timeout_seconds if timeout_seconds is None else timeout_seconds
    log.info(f"Attempting to acquire lock: {name}")

    try:
        path = _lock_path(name, lock_dir)
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            handle = _try_lock(path)
            if handle is not None:
                log.info(f"Lock acquired: {name}")
                return RunLock(name, path, handle)
            if time.monotonic() >= deadline:
                log.warning(f"Failed to acquire lock: {name} (waited {timeout}s)")
                return None
            time.sleep(POLL_INTERVAL_SECONDS)
    except OSError as e:
        log.error(f"Error acquiring lock: {name}: {e}")
        return None


async def acquire_async(
    name: str,
    timeout_seconds: Optional[float] = None,
    lock_dir: Optional[str] = None,
) -> Optional[RunLock]:
    """Same as acquire() but waits with asyncio.sleep so the event loop keeps running."""
    timeout = settings.lock_timeout_seconds if timeout_seconds is None else timeout_seconds
    log.info(f"Attempting to acquire lock: {name}")

    try:
        path = _lock_path(name, lock_dir)
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            handle = _try_lock(path)
            if handle is not None:
                log.info(f"Lock acquired: {name}")
                return RunLock(name, path, handle)
            if time.monotonic() >= deadline:
                log.warning(f"Failed to acquire lock: {name} (waited {timeout}s)")
                return None
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
    except OSError as e:
        log.error(f"Error acquiring lock: {name}: {e}")
        return None


def release(lock: Optional[RunLock]) -> None:
    """Release a lock returned by acquire(); None is ignored."""
    if lock is None:
        return
    try:
        lock.release()
    except OSError as e:
        log.warning(f"Error releasing lock: {lock.name}: {e}")


@asynccontextmanager
async def run_lock(
    name: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    lock_dir: Optional[str] = None,
) -> AsyncIterator[Optional[RunLock]]:
    """
    Hold the run lock for the body of the block.

    Yields None when the lock could not be acquired; the caller must then
    return without side effects. The lock is released on every exit path.

    Usage:
        async with run_lock() as lock:
            if lock is None:
                return
            ...
    """
    lock = await acquire_async(name or settings.lock_name, timeout_seconds, lock_dir)
    try:
        yield lock
    finally:
        release(lock)
