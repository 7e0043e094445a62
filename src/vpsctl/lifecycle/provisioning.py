"""Provisioning pipeline: record first, materialise in the background.

``provision`` persists a ``creating`` record and returns at storage latency.
The runtime ``create`` call then runs once on a worker thread and resolves
the record to ``stopped`` or ``error``; there is no retry. Callers observe the
outcome by reading the record again or by waiting on the returned ticket.
A record deleted while its job is still queued is skipped by the worker.
"""
from __future__ import annotations

import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import UTC, datetime

from ..errors import ForbiddenError, ValidationError
from ..locking import LockManager, LockTimeoutError
from ..logging import OperationScope, StructuredLogger
from ..models import (
    InstanceRecord,
    InstanceSpec,
    InstanceStatus,
    ResourceSpec,
    Subject,
    format_timestamp,
)
from ..providers.base import RuntimeProvider
from ..state import DuplicateNameError, StateRegistry

LOGGER = logging.getLogger(__name__)

# LXC instance names: letters, digits and hyphens, not starting with a digit
# or hyphen, not ending with a hyphen, at most 63 characters.
INSTANCE_NAME_PATTERN = re.compile(r"[a-z](?:[a-z0-9-]{0,61}[a-z0-9])?")


@dataclass(frozen=True)
class ProvisionTicket:
    """Handle returned by :meth:`ProvisioningPipeline.provision`."""

    record: InstanceRecord
    future: Future[InstanceRecord]

    def wait(self, timeout: float | None = None) -> InstanceRecord:
        """Block until materialisation finishes and return the final record."""
        return self.future.result(timeout=timeout)


class ProvisioningPipeline:
    """Create VPS records and materialise them through the runtime."""

    def __init__(
        self,
        registry: StateRegistry,
        runtime: RuntimeProvider,
        locks: LockManager,
        logger: StructuredLogger,
        *,
        max_workers: int = 4,
        defaults: ResourceSpec | None = None,
    ) -> None:
        """Wire the pipeline to its collaborators and start the worker pool."""
        self._registry = registry
        self._runtime = runtime
        self._locks = locks
        self._logger = logger
        self._defaults = defaults or ResourceSpec()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="vpsctl-provision",
        )

    @property
    def defaults(self) -> ResourceSpec:
        """Return the resources applied when a request omits them."""
        return self._defaults

    def provision(
        self,
        spec: InstanceSpec,
        owner_id: str | None,
        node_id: str | None,
        expiry_at: datetime | None,
        subject: Subject,
    ) -> ProvisionTicket:
        """Persist a ``creating`` record and schedule its materialisation."""
        if not subject.is_admin:
            raise ForbiddenError("Access denied: Requires Admin privileges")

        name = (spec.name or "").strip()
        image_ref = (spec.image_ref or "").strip()
        owner = (owner_id or "").strip()
        node = (node_id or "").strip()
        missing = [
            label
            for label, value in (
                ("name", name),
                ("image_ref", image_ref),
                ("owner_id", owner),
                ("node_id", node),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}.")
        if not INSTANCE_NAME_PATTERN.fullmatch(name):
            raise ValidationError(
                f"Invalid VPS name '{name}': use lowercase letters, digits and hyphens, "
                "start with a letter, at most 63 characters."
            )
        resources = spec.resources
        for label, value in resources.to_dict().items():
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError(f"{label} must be a positive integer.")
        if self._registry.find_node(node) is None:
            raise ValidationError(f"Node '{node}' not found.")
        if self._registry.find_instance_by_name(name) is not None:
            raise ValidationError(f"VPS name '{name}' is already in use.")

        if expiry_at is not None and expiry_at.tzinfo is None:
            expiry_at = expiry_at.replace(tzinfo=UTC)
        try:
            record = self._registry.create_instance(
                {
                    "name": name,
                    "image_ref": image_ref,
                    "owner_id": owner,
                    "node_id": node,
                    "resources": resources.to_dict(),
                    "status": InstanceStatus.CREATING.value,
                    "expiry_at": format_timestamp(expiry_at),
                }
            )
        except DuplicateNameError as exc:
            raise ValidationError(str(exc)) from exc
        LOGGER.info("VPS %s (%s) recorded as creating on node %s", name, record.id, node)

        future = self._executor.submit(self._materialize, record)
        return ProvisionTicket(record=record, future=future)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting work; with *wait* drain in-flight materialisation."""
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    def _materialize(self, record: InstanceRecord) -> InstanceRecord:
        with self._logger.operation(
            "vps provision",
            args={"name": record.name, "image_ref": record.image_ref},
            target={"kind": "instance", "id": record.id, "name": record.name},
        ) as op:
            stack = ExitStack()
            try:
                handle = stack.enter_context(self._locks.instance_lock(record.id))
            except LockTimeoutError as exc:
                LOGGER.error("Could not lock %s for creation: %s", record.name, exc)
                op.add_step("lock.acquire", status="error", detail=str(exc))
                return self._finalize(op, record, InstanceStatus.ERROR, str(exc))

            # Held until the terminal status is written.
            with stack:
                op.set_lock_wait_ms(handle.wait_ms)
                try:
                    if self._registry.find_instance(record.id) is None:
                        LOGGER.warning(
                            "VPS %s (%s) was removed before materialisation", record.name, record.id
                        )
                        op.add_step("registry.lookup", status="error", detail="record removed")
                        op.warning(
                            f"VPS '{record.name}' was removed before materialisation.",
                            warnings=["runtime create skipped"],
                        )
                        return record
                    self._runtime.create(record.name, record.image_ref, record.resources)
                except Exception as exc:  # any failure resolves the record to error
                    LOGGER.error("Runtime create failed for %s: %s", record.name, exc)
                    op.add_step("runtime.create", status="error", detail=str(exc))
                    return self._finalize(op, record, InstanceStatus.ERROR, str(exc))
                op.add_step("runtime.create", status="success")
                return self._finalize(op, record, InstanceStatus.STOPPED)

    def _finalize(
        self,
        op: OperationScope,
        record: InstanceRecord,
        status: InstanceStatus,
        detail: str | None = None,
    ) -> InstanceRecord:
        """Write the terminal status, falling back to ``error`` when that fails."""
        try:
            final = self._registry.update_instance_status(record.id, status, detail=detail)
        except Exception as exc:  # storage fault; the record must not stay creating
            LOGGER.error(
                "Failed to record status %s for %s: %s", status.value, record.name, exc
            )
            op.add_step("registry.update", status="error", detail=str(exc))
            reason = f"failed to record status {status.value}: {exc}"
            final = self._registry.update_instance_status(
                record.id,
                InstanceStatus.ERROR,
                detail=f"{detail}; {reason}" if detail else reason,
            )
            op.add_step("registry.update", status="success", detail="status=error")
            op.error(
                f"VPS '{record.name}' status could not be recorded.", errors=[str(exc)], rc=4
            )
            return final
        op.add_step("registry.update", status="success", detail=f"status={status.value}")
        if status is InstanceStatus.ERROR:
            op.error(f"VPS '{record.name}' creation failed.", errors=[detail or ""], rc=4)
        else:
            op.success(f"VPS '{record.name}' materialised.", changed=1)
        return final


__all__ = ["INSTANCE_NAME_PATTERN", "ProvisionTicket", "ProvisioningPipeline"]
