"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from vpsctl.locking import LockManager
from vpsctl.logging import StructuredLogger
from vpsctl.models import Node, Role, Subject
from vpsctl.state import StateRegistry


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Return an empty registry rooted in the temporary directory."""
    registry = StateRegistry(tmp_path / "registry")
    registry.ensure_root()
    return registry


@pytest.fixture
def locks(tmp_path: Path) -> LockManager:
    """Return a lock manager with a short default timeout."""
    return LockManager(tmp_path / "run", default_timeout=1.0)


@pytest.fixture
def logger(tmp_path: Path) -> StructuredLogger:
    """Return a structured logger writing below the temporary directory."""
    return StructuredLogger(tmp_path / "logs")


@pytest.fixture
def node(registry: StateRegistry) -> Node:
    """Register a single node instances can be placed on."""
    return registry.create_node(
        {
            "name": "node-1",
            "ip": "192.0.2.10",
            "capacity": {"cpu": 16, "ram_mib": 65536, "disk_gib": 1000},
        }
    )


@pytest.fixture
def admin() -> Subject:
    """Return an admin subject."""
    return Subject(id="root-admin", role=Role.ADMIN)


@pytest.fixture
def alice() -> Subject:
    """Return a regular user subject."""
    return Subject(id="alice", role=Role.USER)
