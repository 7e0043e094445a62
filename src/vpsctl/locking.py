"""File based locking primitives.

Locks live under ``<runtime_dir>/instances/<key>.lock`` and are held with
``fcntl.flock``. Because ``flock`` locks belong to an open file description,
two threads of the same process contend exactly like two processes do, so one
lock manager guards every caller sharing the runtime directory on a host.

Lock files are left in place after release; their JSON payload records the
last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock could not be acquired before the timeout elapsed."""

    def __init__(self, path: Path, timeout: float) -> None:
        """Record the contended *path* and the *timeout* that elapsed."""
        self.path = path
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s waiting for lock {path}")


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockManager:
    """Acquire per-instance locks below *runtime_dir*."""

    runtime_dir: Path
    default_timeout: float = 30.0

    def lock_path(self, key: str) -> Path:
        """Return the lock file path for *key*."""
        safe = key.strip().replace("/", "-")
        if not safe:
            raise ValueError("Lock key must be a non-empty string.")
        return Path(self.runtime_dir).expanduser() / "instances" / f"{safe}.lock"

    @contextmanager
    def instance_lock(self, key: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for *key* for the duration of the block.

        A *timeout* of ``0`` performs a single non-blocking attempt.
        """
        effective = self.default_timeout if timeout is None else max(0.0, timeout)
        path = self.lock_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            wait_ms = _acquire(fd, path, effective)
            try:
                _write_metadata(fd, path)
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _acquire(fd: int, path: Path, timeout: float) -> int:
    start = time.monotonic()
    deadline = start + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            if time.monotonic() >= deadline:
                raise LockTimeoutError(path, timeout) from None
            time.sleep(_POLL_INTERVAL)
            continue
        return int((time.monotonic() - start) * 1000)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "thread": threading.current_thread().name,
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
