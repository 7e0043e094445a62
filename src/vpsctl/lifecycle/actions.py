"""Action orchestrator: authorised, serialised lifecycle verbs."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass

from ..errors import (
    ActionFailedError,
    ActionInProgressError,
    ForbiddenError,
    InvalidVerbError,
    NotFoundError,
    ValidationError,
)
from ..locking import LockManager, LockTimeoutError
from ..models import ActionResult, InstanceRecord, InstanceStatus, Subject, Verb
from ..providers.base import InstanceNotFoundError, RuntimeProvider, RuntimeProviderError
from ..state import StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ActionOrchestrator:
    """Apply start/stop/restart/delete to stored instances.

    At most one mutating action per instance reaches the runtime at a time;
    a concurrent request fails fast with :class:`ActionInProgressError`.
    """

    registry: StateRegistry
    runtime: RuntimeProvider
    locks: LockManager

    def apply_action(self, instance_id: str, verb: str, subject: Subject) -> ActionResult:
        """Run *verb* against the instance and return the outcome.

        The stored status is left untouched on success: the runtime is the
        source of truth for point-in-time state.
        """
        parsed = parse_verb(verb)
        self.authorize(instance_id, subject)
        with self.in_flight(instance_id):
            record = self._require(instance_id)
            if record.status is InstanceStatus.CREATING:
                raise ValidationError(f"VPS '{record.name}' is still being created.")
            operation = getattr(self.runtime, parsed.value)
            try:
                operation(record.name)
            except RuntimeProviderError as exc:
                LOGGER.warning("Runtime %s failed for %s: %s", parsed.value, record.name, exc)
                raise ActionFailedError(parsed.value, exc) from exc
        LOGGER.info("VPS %s (%s) %s by %s", record.name, record.id, parsed.past_tense, subject.id)
        return ActionResult(
            instance_id=record.id,
            action=parsed.value,
            message=f"VPS {parsed.past_tense} successfully",
        )

    def delete(self, instance_id: str, subject: Subject, *, force: bool = False) -> ActionResult:
        """Delete the runtime instance, then its record.

        A runtime failure keeps the record unless *force* is set. Records
        still being created are refused unless *force* is set; a queued
        provisioning job skips records removed this way.
        """
        self.authorize(instance_id, subject)
        detail = ""
        with self.in_flight(instance_id):
            record = self._require(instance_id)
            if record.status is InstanceStatus.CREATING and not force:
                raise ValidationError(
                    f"VPS '{record.name}' is still being created; retry later or use force."
                )
            try:
                self.runtime.delete(record.name)
            except InstanceNotFoundError:
                detail = "runtime instance already absent"
            except RuntimeProviderError as exc:
                if not force:
                    raise ActionFailedError("delete", exc) from exc
                LOGGER.warning("Forced delete of %s despite runtime failure: %s", record.name, exc)
                detail = f"runtime delete failed: {exc}"
            try:
                self.registry.delete_instance(record.id)
            except StateRegistryError as exc:
                raise NotFoundError(f"VPS '{instance_id}' not found") from exc
        LOGGER.info("VPS %s (%s) deleted by %s", record.name, record.id, subject.id)
        return ActionResult(
            instance_id=record.id,
            action="delete",
            message="VPS deleted successfully",
            detail=detail,
        )

    def authorize(self, instance_id: str, subject: Subject) -> InstanceRecord:
        """Return the record when *subject* may act on it."""
        record = self._require(instance_id)
        if not subject.can_manage(record.owner_id):
            raise ForbiddenError("Access denied")
        return record

    @contextmanager
    def in_flight(self, instance_id: str) -> Iterator[None]:
        """Hold the per-instance action guard, failing fast when it is taken."""
        stack = ExitStack()
        try:
            stack.enter_context(self.locks.instance_lock(instance_id, timeout=0))
        except LockTimeoutError as exc:
            raise ActionInProgressError(
                f"Another action is already in progress for VPS '{instance_id}'."
            ) from exc
        with stack:
            yield

    def _require(self, instance_id: str) -> InstanceRecord:
        record = self.registry.find_instance(instance_id)
        if record is None:
            raise NotFoundError(f"VPS '{instance_id}' not found")
        return record


def parse_verb(verb: str | Verb) -> Verb:
    """Return *verb* as a :class:`Verb`, rejecting anything else."""
    if isinstance(verb, Verb):
        return verb
    try:
        return Verb(str(verb).strip().lower())
    except ValueError:
        allowed = ", ".join(item.value for item in Verb)
        raise InvalidVerbError(f"Invalid action '{verb}'. Allowed: {allowed}.") from None


__all__ = ["ActionOrchestrator", "parse_verb"]
