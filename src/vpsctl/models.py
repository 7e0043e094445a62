"""Data models shared by the lifecycle components.

Records are stored as plain mappings in the YAML registry; the dataclasses in
this module are the typed view the orchestrator works with. Timestamps are
always timezone-aware UTC values and serialise to ISO 8601 strings.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

LIVE_STATUS_UNKNOWN = "unknown"


class InstanceStatus(str, Enum):
    """Declared (stored) state of an instance."""

    CREATING = "creating"
    STOPPED = "stopped"
    RUNNING = "running"
    SUSPENDED = "suspended"
    ERROR = "error"


class Role(str, Enum):
    """Role attached to a pre-validated subject."""

    ADMIN = "admin"
    USER = "user"


class Verb(str, Enum):
    """Lifecycle verbs accepted by the action orchestrator."""

    START = "start"
    STOP = "stop"
    RESTART = "restart"

    @property
    def past_tense(self) -> str:
        """Return the verb as used in success messages."""
        return "stopped" if self is Verb.STOP else f"{self.value}ed"


@dataclass(frozen=True)
class Subject:
    """Caller identity handed to the orchestrator by the identity layer."""

    id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        """Return ``True`` when the subject holds the admin role."""
        return self.role is Role.ADMIN

    def can_manage(self, owner_id: str) -> bool:
        """Return ``True`` when the subject may act on a record owned by *owner_id*."""
        return self.is_admin or self.id == owner_id


@dataclass(frozen=True)
class ResourceSpec:
    """Resources requested for an instance."""

    cpu_cores: int = 1
    ram_mib: int = 512
    disk_gib: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cpu_cores": self.cpu_cores,
            "ram_mib": self.ram_mib,
            "disk_gib": self.disk_gib,
        }

    @classmethod
    def from_mapping(cls, raw: object) -> ResourceSpec:
        """Build a spec from a registry mapping, falling back to defaults."""
        if not isinstance(raw, Mapping):
            return cls()
        defaults = cls()
        return cls(
            cpu_cores=_as_int(raw.get("cpu_cores"), defaults.cpu_cores),
            ram_mib=_as_int(raw.get("ram_mib"), defaults.ram_mib),
            disk_gib=_as_int(raw.get("disk_gib"), defaults.disk_gib),
        )


@dataclass(frozen=True)
class InstanceSpec:
    """Desired shape of a new instance, as submitted to provisioning."""

    name: str
    image_ref: str
    resources: ResourceSpec = field(default_factory=ResourceSpec)


@dataclass(frozen=True)
class InstanceRecord:
    """Stored, declared state of a VPS."""

    id: str
    name: str
    image_ref: str
    owner_id: str
    node_id: str
    resources: ResourceSpec
    status: InstanceStatus
    created_at: datetime
    updated_at: datetime
    expiry_at: datetime | None = None
    status_detail: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """Return ``True`` when the record's expiry lies before *now*."""
        return self.expiry_at is not None and self.expiry_at < now

    def to_dict(self) -> dict[str, object]:
        """Return the registry/JSON representation of the record."""
        return {
            "id": self.id,
            "name": self.name,
            "image_ref": self.image_ref,
            "owner_id": self.owner_id,
            "node_id": self.node_id,
            "resources": self.resources.to_dict(),
            "status": self.status.value,
            "status_detail": self.status_detail,
            "expiry_at": format_timestamp(self.expiry_at),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> InstanceRecord:
        """Build a record from a registry entry."""
        created_at = parse_timestamp(raw.get("created_at")) or utcnow()
        detail = raw.get("status_detail")
        return cls(
            id=str(raw["id"]),
            name=str(raw["name"]),
            image_ref=str(raw.get("image_ref", "")),
            owner_id=str(raw.get("owner_id", "")),
            node_id=str(raw.get("node_id", "")),
            resources=ResourceSpec.from_mapping(raw.get("resources")),
            status=_as_status(raw.get("status")),
            created_at=created_at,
            updated_at=parse_timestamp(raw.get("updated_at")) or created_at,
            expiry_at=parse_timestamp(raw.get("expiry_at")),
            status_detail=str(detail) if detail else None,
        )


@dataclass(frozen=True)
class NodeCapacity:
    """Advisory capacity of a physical node."""

    cpu: int
    ram_mib: int
    disk_gib: int

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"cpu": self.cpu, "ram_mib": self.ram_mib, "disk_gib": self.disk_gib}


@dataclass(frozen=True)
class Node:
    """Physical host that instances are placed on by the operator."""

    id: str
    name: str
    ip: str
    capacity: NodeCapacity
    status: str = "active"
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the registry/JSON representation of the node."""
        return {
            "id": self.id,
            "name": self.name,
            "ip": self.ip,
            "capacity": self.capacity.to_dict(),
            "status": self.status,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> Node:
        """Build a node from a registry entry."""
        capacity = raw.get("capacity")
        capacity_map = capacity if isinstance(capacity, Mapping) else {}
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            ip=str(raw.get("ip", "")),
            capacity=NodeCapacity(
                cpu=_as_int(capacity_map.get("cpu"), 0),
                ram_mib=_as_int(capacity_map.get("ram_mib"), 0),
                disk_gib=_as_int(capacity_map.get("disk_gib"), 0),
            ),
            status=str(raw.get("status", "active")),
            created_at=parse_timestamp(raw.get("created_at")),
        )


@dataclass(frozen=True)
class LiveDescriptor:
    """Point-in-time runtime view of an instance. Never persisted."""

    name: str
    runtime_status: str = LIVE_STATUS_UNKNOWN
    cpu_usage: float | None = None
    mem_usage_bytes: int | None = None
    addresses: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "runtime_status": self.runtime_status,
            "cpu_usage": self.cpu_usage,
            "mem_usage_bytes": self.mem_usage_bytes,
            "addresses": list(self.addresses),
        }


@dataclass(frozen=True)
class AggregatedView:
    """Stored record merged with the runtime's live view."""

    record: InstanceRecord
    live_status: str = LIVE_STATUS_UNKNOWN
    live: LiveDescriptor | None = None
    live_error: str | None = None

    @property
    def declared_status(self) -> InstanceStatus:
        """Return the stored status, which may lag the runtime."""
        return self.record.status

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = self.record.to_dict()
        payload["declared_status"] = self.record.status.value
        payload["live_status"] = self.live_status
        payload["live"] = self.live.to_dict() if self.live is not None else None
        if self.live_error:
            payload["live_error"] = self.live_error
        return payload


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a successful lifecycle action."""

    instance_id: str
    action: str
    message: str
    success: bool = True
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return the ``{success, message}`` response shape."""
        payload: dict[str, object] = {"success": self.success, "message": self.message}
        if self.detail:
            payload["details"] = self.detail
        return payload


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Return *value* as an ISO 8601 string (``None`` passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO timestamp (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _as_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


def _as_status(value: object) -> InstanceStatus:
    try:
        return InstanceStatus(str(value))
    except ValueError:
        return InstanceStatus.ERROR


__all__ = [
    "LIVE_STATUS_UNKNOWN",
    "ActionResult",
    "AggregatedView",
    "InstanceRecord",
    "InstanceSpec",
    "InstanceStatus",
    "LiveDescriptor",
    "Node",
    "NodeCapacity",
    "ResourceSpec",
    "Role",
    "Subject",
    "Verb",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
