"""Helpers for interacting with the vpsctl state registry.

The registry directory (``/var/lib/vpsctl/registry`` by default) is the
system of record for VPS instances and nodes. It stores two YAML artifacts,
``instances.yml`` and ``nodes.yml``, written with atomic replace operations.

Read-modify-write cycles run inside :meth:`StateRegistry.transaction`, which
serialises threads with a re-entrant lock and processes with an ``flock`` on
``.registry.lock``. Individual field updates are last-writer-wins.
"""
from __future__ import annotations

import fcntl
import os
import tempfile
import threading
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage vpsctl state. Install with `pip install vpsctl`."
    ) from exc

from ..models import (
    InstanceRecord,
    InstanceStatus,
    Node,
    format_timestamp,
    utcnow,
)

INSTANCES_FILE = "instances.yml"
NODES_FILE = "nodes.yml"
LOCK_FILE = ".registry.lock"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


class DuplicateNameError(StateRegistryError):
    """Raised when an instance name is already registered."""


@dataclass
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path
    _mutex: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )
    _depth: int = field(default=0, init=False, repr=False, compare=False)
    _lock_fd: int | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = Path(self.root).expanduser()

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Raw file helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    def read_instances(self) -> Mapping[str, object]:
        """Return the contents of ``instances.yml`` (empty mapping if missing)."""
        value = self.read(INSTANCES_FILE, default={"instances": []})
        return value if isinstance(value, Mapping) else {"instances": []}

    def read_nodes(self) -> Mapping[str, object]:
        """Return the contents of ``nodes.yml`` (empty mapping if missing)."""
        value = self.read(NODES_FILE, default={"nodes": []})
        return value if isinstance(value, Mapping) else {"nodes": []}

    def write_instances(self, instances: Iterable[object]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write(INSTANCES_FILE, {"instances": list(instances)})

    def write_nodes(self, nodes: Iterable[object]) -> None:
        """Persist node entries to ``nodes.yml``."""
        self.write(NODES_FILE, {"nodes": list(nodes)})

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Serialise a read-modify-write cycle against other threads and processes."""
        with self._mutex:
            if self._depth == 0:
                self.ensure_root()
                fd = os.open(self.path_for(LOCK_FILE), os.O_RDWR | os.O_CREAT, 0o640)
                fcntl.flock(fd, fcntl.LOCK_EX)
                self._lock_fd = fd
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0 and self._lock_fd is not None:
                    fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
                    os.close(self._lock_fd)
                    self._lock_fd = None

    # ------------------------------------------------------------------
    # Instance records
    # ------------------------------------------------------------------
    def list_instances(self, owner_id: str | None = None) -> list[InstanceRecord]:
        """Return stored instances, optionally restricted to *owner_id*."""
        records = [InstanceRecord.from_mapping(entry) for entry in self._instance_entries()]
        if owner_id is not None:
            records = [record for record in records if record.owner_id == owner_id]
        return records

    def find_instance(self, instance_id: str) -> InstanceRecord | None:
        """Return the instance with *instance_id* if registered."""
        for entry in self._instance_entries():
            if str(entry.get("id")) == instance_id:
                return InstanceRecord.from_mapping(entry)
        return None

    def find_instance_by_name(self, name: str) -> InstanceRecord | None:
        """Return the instance called *name* if registered."""
        for entry in self._instance_entries():
            if entry.get("name") == name:
                return InstanceRecord.from_mapping(entry)
        return None

    def create_instance(self, fields: Mapping[str, object]) -> InstanceRecord:
        """Register a new instance and return the stored record.

        ``id``, ``created_at`` and ``updated_at`` are assigned here.
        """
        name = str(fields.get("name", "")).strip()
        if not name:
            raise StateRegistryError("Instance entry missing 'name'.")
        now = format_timestamp(utcnow())
        entry: dict[str, Any] = dict(fields)
        entry["id"] = uuid.uuid4().hex
        entry["name"] = name
        entry["created_at"] = now
        entry["updated_at"] = now
        entry.setdefault("status", InstanceStatus.CREATING.value)
        with self.transaction():
            entries = self._instance_entries()
            if any(existing.get("name") == name for existing in entries):
                raise DuplicateNameError(f"Instance name '{name}' is already registered.")
            record = InstanceRecord.from_mapping(entry)
            entries.append(record.to_dict())
            self.write_instances(entries)
        return record

    def update_instance_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        *,
        detail: str | None = None,
    ) -> InstanceRecord:
        """Set the declared status of *instance_id* and return the updated record."""
        with self.transaction():
            entries = self._instance_entries()
            updated: InstanceRecord | None = None
            for index, entry in enumerate(entries):
                if str(entry.get("id")) != instance_id:
                    continue
                merged = dict(entry)
                merged["status"] = InstanceStatus(status).value
                merged["status_detail"] = detail
                merged["updated_at"] = format_timestamp(utcnow())
                entries[index] = merged
                updated = InstanceRecord.from_mapping(merged)
                break
            if updated is None:
                raise StateRegistryError(f"Instance '{instance_id}' not found in registry")
            self.write_instances(entries)
        return updated

    def delete_instance(self, instance_id: str) -> None:
        """Remove the instance with *instance_id* from the registry."""
        with self.transaction():
            entries = self._instance_entries()
            remaining = [entry for entry in entries if str(entry.get("id")) != instance_id]
            if len(remaining) == len(entries):
                raise StateRegistryError(f"Instance '{instance_id}' not found in registry")
            self.write_instances(remaining)

    def find_instances_expired_before(
        self,
        timestamp: datetime,
        excluding_status: InstanceStatus = InstanceStatus.SUSPENDED,
    ) -> list[InstanceRecord]:
        """Return instances whose expiry lies before *timestamp*.

        Records already in *excluding_status* are skipped.
        """
        return [
            record
            for record in self.list_instances()
            if record.is_expired(timestamp) and record.status is not excluding_status
        ]

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def list_nodes(self) -> list[Node]:
        """Return all registered nodes."""
        return [Node.from_mapping(entry) for entry in self._node_entries()]

    def find_node(self, node_id: str) -> Node | None:
        """Return the node with *node_id* if registered."""
        for entry in self._node_entries():
            if str(entry.get("id")) == node_id:
                return Node.from_mapping(entry)
        return None

    def create_node(self, fields: Mapping[str, object]) -> Node:
        """Register a new node and return it."""
        entry: dict[str, Any] = dict(fields)
        entry["id"] = uuid.uuid4().hex
        entry["created_at"] = format_timestamp(utcnow())
        entry.setdefault("status", "active")
        node = Node.from_mapping(entry)
        with self.transaction():
            entries = self._node_entries()
            entries.append(node.to_dict())
            self.write_nodes(entries)
        return node

    def delete_node(self, node_id: str) -> None:
        """Remove the node with *node_id* from the registry."""
        with self.transaction():
            entries = self._node_entries()
            remaining = [entry for entry in entries if str(entry.get("id")) != node_id]
            if len(remaining) == len(entries):
                raise StateRegistryError(f"Node '{node_id}' not found in registry")
            self.write_nodes(remaining)

    # ------------------------------------------------------------------
    def _instance_entries(self) -> list[dict[str, Any]]:
        return _valid_entries(self.read_instances().get("instances", []), ("id", "name"))

    def _node_entries(self) -> list[dict[str, Any]]:
        return _valid_entries(self.read_nodes().get("nodes", []), ("id",))


def _valid_entries(raw: object, required: tuple[str, ...]) -> list[dict[str, Any]]:
    """Return mapping entries that carry every key in *required*."""
    entries: list[dict[str, Any]] = []
    if not isinstance(raw, list):
        return entries
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        if any(item.get(key) in (None, "") for key in required):
            continue
        entries.append(dict(item))
    return entries


__all__ = ["DuplicateNameError", "StateRegistry", "StateRegistryError"]
