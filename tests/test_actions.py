"""Tests for the action orchestrator."""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from vpsctl.errors import (
    ActionFailedError,
    ActionInProgressError,
    ForbiddenError,
    InvalidVerbError,
    NotFoundError,
    ValidationError,
)
from vpsctl.lifecycle import ActionOrchestrator, parse_verb
from vpsctl.locking import LockManager
from vpsctl.models import InstanceRecord, InstanceStatus, Subject, Verb
from vpsctl.providers import SimulatedProvider
from vpsctl.providers.base import RuntimeProviderError
from vpsctl.state import StateRegistry


def _record(
    registry: StateRegistry,
    name: str = "web-1",
    *,
    owner: str = "alice",
    status: InstanceStatus = InstanceStatus.STOPPED,
) -> InstanceRecord:
    return registry.create_instance(
        {
            "name": name,
            "image_ref": "ubuntu/22.04",
            "owner_id": owner,
            "node_id": "node-a",
            "status": status.value,
        }
    )


class BlockingRuntime(SimulatedProvider):
    """Simulator whose ``start`` blocks until released."""

    def __init__(self) -> None:
        """Prepare the synchronisation events."""
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def start(self, name: str) -> None:
        """Signal entry and wait for the test to release the call."""
        self.entered.set()
        assert self.release.wait(5.0)


@pytest.fixture
def runtime() -> SimulatedProvider:
    """Return a simulator with one stopped instance named web-1."""
    provider = SimulatedProvider(seed=0)
    provider.create("web-1", "ubuntu/22.04")
    provider.stop("web-1")
    return provider


def test_owner_can_start_own_instance(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
    alice: Subject,
) -> None:
    """The owner may act and the stored status is left untouched."""
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    result = orchestrator.apply_action(record.id, "start", alice)

    assert result.success is True
    assert result.message == "VPS started successfully"
    assert result.to_dict() == {"success": True, "message": "VPS started successfully"}
    assert runtime.describe("web-1").runtime_status == "running"
    assert registry.find_instance(record.id).status is InstanceStatus.STOPPED


def test_messages_for_each_verb(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
    admin: Subject,
) -> None:
    """Each verb reports its own past tense."""
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    assert orchestrator.apply_action(record.id, "start", admin).message == "VPS started successfully"
    assert (
        orchestrator.apply_action(record.id, Verb.RESTART, admin).message
        == "VPS restarted successfully"
    )
    assert orchestrator.apply_action(record.id, "STOP", admin).message == "VPS stopped successfully"


def test_other_user_is_forbidden(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
) -> None:
    """A non-admin who does not own the record is rejected without a runtime call."""
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(ForbiddenError, match="Access denied"):
        orchestrator.apply_action(record.id, "start", Subject(id="bob"))

    assert runtime.describe("web-1").runtime_status == "stopped"


def test_unknown_instance_is_not_found(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
    admin: Subject,
) -> None:
    """Unknown ids raise NotFoundError."""
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(NotFoundError):
        orchestrator.apply_action("missing", "start", admin)


def test_invalid_verb_is_rejected_before_lookup(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
    admin: Subject,
) -> None:
    """Verbs outside start/stop/restart fail even for unknown ids."""
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(InvalidVerbError, match="Allowed: start, stop, restart"):
        orchestrator.apply_action("missing", "suspend", admin)


def test_runtime_failure_leaves_record_untouched(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
    admin: Subject,
) -> None:
    """Runtime failures surface as ActionFailedError with the runtime detail."""
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(ActionFailedError) as excinfo:
        orchestrator.apply_action(record.id, "stop", admin)

    error = excinfo.value
    assert error.verb == "stop"
    assert "already stopped" in str(error)
    assert error.to_payload()["error"]["kind"] == "action_failed"
    assert registry.find_instance(record.id) == record


def test_creating_instance_cannot_be_acted_on(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
    admin: Subject,
) -> None:
    """Records still being provisioned reject lifecycle verbs."""
    record = _record(registry, status=InstanceStatus.CREATING)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(ValidationError, match="still being created"):
        orchestrator.apply_action(record.id, "start", admin)


def test_delete_refuses_creating_instance_unless_forced(
    registry: StateRegistry,
    locks: LockManager,
    admin: Subject,
) -> None:
    """Deleting a record that is still being created needs force."""
    record = _record(registry, status=InstanceStatus.CREATING)
    orchestrator = ActionOrchestrator(
        registry=registry, runtime=SimulatedProvider(), locks=locks
    )

    with pytest.raises(ValidationError, match="still being created"):
        orchestrator.delete(record.id, admin)
    assert registry.find_instance(record.id) is not None

    result = orchestrator.delete(record.id, admin, force=True)

    assert result.detail == "runtime instance already absent"
    assert registry.find_instance(record.id) is None


def test_concurrent_action_is_rejected(
    registry: StateRegistry,
    locks: LockManager,
    admin: Subject,
) -> None:
    """A second action while the first is in flight fails with ActionInProgressError."""
    runtime = BlockingRuntime()
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with ThreadPoolExecutor(max_workers=1) as executor:
        first = executor.submit(orchestrator.apply_action, record.id, "start", admin)
        assert runtime.entered.wait(5.0)
        try:
            with pytest.raises(ActionInProgressError):
                orchestrator.apply_action(record.id, "restart", admin)
            with pytest.raises(ActionInProgressError):
                orchestrator.delete(record.id, admin)
        finally:
            runtime.release.set()
        assert first.result(timeout=5.0).message == "VPS started successfully"

    # Once the first action finished the guard is free again.
    runtime.release.set()
    assert orchestrator.apply_action(record.id, "start", admin).success is True


def test_delete_removes_runtime_and_record(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
    alice: Subject,
) -> None:
    """Delete removes both the runtime instance and the record."""
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    result = orchestrator.delete(record.id, alice)

    assert result.message == "VPS deleted successfully"
    assert runtime.names() == []
    assert registry.find_instance(record.id) is None


def test_delete_tolerates_missing_runtime_instance(
    registry: StateRegistry,
    locks: LockManager,
    admin: Subject,
) -> None:
    """A runtime that never had the instance still lets the record go."""
    record = _record(registry, name="ghost")
    orchestrator = ActionOrchestrator(
        registry=registry, runtime=SimulatedProvider(), locks=locks
    )

    result = orchestrator.delete(record.id, admin)

    assert result.detail == "runtime instance already absent"
    assert registry.find_instance(record.id) is None


def test_delete_failure_keeps_record_unless_forced(
    registry: StateRegistry,
    locks: LockManager,
    admin: Subject,
) -> None:
    """Runtime delete failures keep the record; force removes it anyway."""
    runtime = SimulatedProvider(fail_verbs=["delete"])
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(ActionFailedError, match="Failed to delete VPS"):
        orchestrator.delete(record.id, admin)
    assert registry.find_instance(record.id) is not None

    result = orchestrator.delete(record.id, admin, force=True)

    assert "runtime delete failed" in result.detail
    assert registry.find_instance(record.id) is None


def test_delete_requires_ownership(
    registry: StateRegistry,
    runtime: SimulatedProvider,
    locks: LockManager,
) -> None:
    """Only owners and admins may delete."""
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(ForbiddenError):
        orchestrator.delete(record.id, Subject(id="mallory"))
    assert registry.find_instance(record.id) is not None


def test_parse_verb() -> None:
    """Verb parsing normalises case and whitespace."""
    assert parse_verb(" Restart ") is Verb.RESTART
    with pytest.raises(InvalidVerbError):
        parse_verb("delete")


def test_runtime_error_type_is_not_leaked(
    registry: StateRegistry,
    locks: LockManager,
    admin: Subject,
) -> None:
    """The orchestrator wraps provider errors instead of leaking them."""
    runtime = SimulatedProvider(fail_verbs=["restart"])
    runtime.create("web-1", "ubuntu/22.04")
    record = _record(registry)
    orchestrator = ActionOrchestrator(registry=registry, runtime=runtime, locks=locks)

    with pytest.raises(ActionFailedError) as excinfo:
        orchestrator.apply_action(record.id, "restart", admin)
    assert isinstance(excinfo.value.__cause__, RuntimeProviderError)
