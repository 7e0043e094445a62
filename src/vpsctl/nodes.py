"""Physical node management."""
from __future__ import annotations

import ipaddress
import logging

from .errors import ForbiddenError, NotFoundError, ValidationError
from .models import Node, Subject
from .state import StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)


class NodeRegistry:
    """Admin-facing operations on the nodes instances are placed on."""

    def __init__(self, registry: StateRegistry) -> None:
        """Bind to the shared state registry."""
        self._registry = registry

    def list_nodes(self) -> list[Node]:
        """Return every registered node."""
        return self._registry.list_nodes()

    def add_node(
        self,
        name: str,
        ip: str,
        cpu: int,
        ram_mib: int,
        disk_gib: int,
        subject: Subject,
    ) -> Node:
        """Register a node and return it."""
        _require_admin(subject)
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Node name is required.")
        try:
            address = ipaddress.ip_address((ip or "").strip())
        except ValueError as exc:
            raise ValidationError(f"Invalid node IP address '{ip}'.") from exc
        for label, value in (("cpu", cpu), ("ram_mib", ram_mib), ("disk_gib", disk_gib)):
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError(f"Node {label} must be a positive integer.")

        node = self._registry.create_node(
            {
                "name": clean_name,
                "ip": str(address),
                "capacity": {"cpu": cpu, "ram_mib": ram_mib, "disk_gib": disk_gib},
            }
        )
        LOGGER.info("Node %s (%s) added by %s", node.name, node.id, subject.id)
        return node

    def remove_node(self, node_id: str, subject: Subject) -> Node:
        """Remove a node that no instance references; return the removed node."""
        _require_admin(subject)
        with self._registry.transaction():
            node = self._registry.find_node(node_id)
            if node is None:
                raise NotFoundError(f"Node '{node_id}' not found")
            placed = [
                record.name
                for record in self._registry.list_instances()
                if record.node_id == node_id
            ]
            if placed:
                raise ValidationError(
                    f"Node '{node.name}' still hosts {len(placed)} VPS: {', '.join(placed)}."
                )
            try:
                self._registry.delete_node(node_id)
            except StateRegistryError as exc:  # pragma: no cover - guarded by find_node
                raise NotFoundError(str(exc)) from exc
        LOGGER.info("Node %s (%s) removed by %s", node.name, node.id, subject.id)
        return node


def _require_admin(subject: Subject) -> None:
    if not subject.is_admin:
        raise ForbiddenError("Access denied: Requires Admin privileges")


__all__ = ["NodeRegistry"]
