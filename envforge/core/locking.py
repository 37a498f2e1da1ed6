"""Per-hash exclusive claims spanning threads and processes.

A claim is a thread mutex (for callers in this process) stacked on an
``fcntl.flock`` of a lock file (for callers in other processes). Lock
files are left in place after release; unlinking them would let a waiter
lock an orphaned inode. ``ContentAddressedStore.collect_garbage`` only removes
abandoned staging directories, never lock files.

Thread mutexes are reference counted and dropped once no claim holds or
awaits them, so a long-lived process does not accumulate one per key.
"""

from __future__ import annotations

import fcntl
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path


class ClaimTimeoutError(TimeoutError):
    """Raised when a claim cannot be acquired within the timeout."""


class _SharedMutex:
    """A thread mutex plus the number of claims holding or awaiting it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


_THREAD_MUTEXES: dict[str, _SharedMutex] = {}
_THREAD_MUTEXES_GUARD = threading.Lock()


def _checkout(key: str) -> _SharedMutex:
    with _THREAD_MUTEXES_GUARD:
        shared = _THREAD_MUTEXES.get(key)
        if shared is None:
            shared = _THREAD_MUTEXES[key] = _SharedMutex()
        shared.users += 1
        return shared


def _checkin(key: str, shared: _SharedMutex) -> None:
    with _THREAD_MUTEXES_GUARD:
        shared.users -= 1
        if shared.users == 0:
            del _THREAD_MUTEXES[key]


@contextmanager
def exclusive_claim(
    lock_path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.05,
) -> Iterator[None]:
    """Hold an exclusive claim on *lock_path* for the duration of the block.

    Raises
    ------
    ClaimTimeoutError
        If the claim is still held elsewhere after *timeout* seconds.
    """
    if timeout <= 0:
        raise ValueError(f"timeout must be positive (got {timeout})")
    if poll_interval <= 0:
        raise ValueError(f"poll_interval must be positive (got {poll_interval})")

    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout

    key = str(lock_path.resolve())
    shared = _checkout(key)
    try:
        if not shared.lock.acquire(timeout=timeout):
            raise ClaimTimeoutError(f"Could not claim {lock_path} within {timeout}s")
        try:
            with open(lock_path, "a+") as fh:
                while True:
                    try:
                        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except OSError:
                        if time.monotonic() >= deadline:
                            raise ClaimTimeoutError(
                                f"Could not claim {lock_path} within {timeout}s"
                            ) from None
                        time.sleep(poll_interval)
                try:
                    yield
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            shared.lock.release()
    finally:
        _checkin(key, shared)
