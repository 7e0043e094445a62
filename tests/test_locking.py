"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from vpsctl.locking import LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "instances" / "alpha.lock"
    with manager.instance_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert "acquired_at" in data

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("alpha", timeout=0.2):
        pass


def test_instance_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("alpha", timeout=0.1):
                pass


def test_zero_timeout_fails_immediately(tmp_path: Path) -> None:
    """A zero timeout performs a single attempt."""
    manager = LockManager(tmp_path / "run", default_timeout=5.0)

    with manager.instance_lock("alpha"):
        with pytest.raises(LockTimeoutError) as excinfo:
            with manager.instance_lock("alpha", timeout=0):
                pass
    assert excinfo.value.timeout == 0


def test_locks_are_independent_per_key(tmp_path: Path) -> None:
    """Holding one key does not block another."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with manager.instance_lock("beta", timeout=0) as handle:
            assert handle.path.name == "beta.lock"


def test_lock_contends_across_threads(tmp_path: Path) -> None:
    """Another thread waits until the holder releases the lock."""
    manager = LockManager(tmp_path / "run", default_timeout=2.0)
    held = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with manager.instance_lock("alpha"):
            held.set()
            release.wait(2.0)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert held.wait(2.0)
        with pytest.raises(LockTimeoutError):
            with manager.instance_lock("alpha", timeout=0):
                pass
    finally:
        release.set()
        thread.join()

    with manager.instance_lock("alpha", timeout=0.5) as handle:
        assert handle.wait_ms >= 0


def test_lock_path_rejects_empty_key(tmp_path: Path) -> None:
    """Blank keys cannot be locked."""
    manager = LockManager(tmp_path / "run")

    with pytest.raises(ValueError):
        manager.lock_path("  ")
