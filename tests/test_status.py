"""Tests for the status aggregator."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from typing import Any

import pytest

from vpsctl.errors import ForbiddenError, NotFoundError
from vpsctl.lifecycle import StatusAggregator
from vpsctl.models import LIVE_STATUS_UNKNOWN, InstanceStatus, LiveDescriptor, Subject
from vpsctl.providers import LxcProvider, SimulatedProvider
from vpsctl.providers.base import RuntimeProviderError, RuntimeUnavailableError
from vpsctl.state import StateRegistry


class FlakyRuntime(SimulatedProvider):
    """Simulator that cannot reach the runtime for selected names."""

    def __init__(self, unreachable: set[str], broken: set[str] | None = None) -> None:
        """Record which names fail and how."""
        super().__init__(seed=5)
        self.unreachable = unreachable
        self.broken = broken or set()

    def describe(self, name: str) -> LiveDescriptor:
        """Fail for configured names, otherwise defer to the simulator."""
        if name in self.unreachable:
            raise RuntimeUnavailableError("lxd socket unreachable")
        if name in self.broken:
            raise RuntimeProviderError("garbled state")
        return super().describe(name)


def _create(registry: StateRegistry, name: str, owner: str = "alice") -> str:
    return registry.create_instance(
        {
            "name": name,
            "image_ref": "ubuntu/22.04",
            "owner_id": owner,
            "node_id": "node-a",
            "status": "stopped",
        }
    ).id


def test_unreachable_instance_degrades_to_unknown(registry: StateRegistry, admin: Subject) -> None:
    """One unreachable instance does not fail the listing."""
    runtime = FlakyRuntime(unreachable={"web-2"})
    runtime.create("web-1", "ubuntu/22.04")
    _create(registry, "web-1")
    _create(registry, "web-2")
    aggregator = StatusAggregator(registry, runtime, max_concurrency=4)

    views = aggregator.list_instances(admin)

    assert [view.record.name for view in views] == ["web-1", "web-2"]
    reachable, unreachable = views
    assert reachable.live_status == "running"
    assert reachable.declared_status is InstanceStatus.STOPPED
    assert reachable.live is not None
    assert reachable.live_error is None
    assert unreachable.live_status == LIVE_STATUS_UNKNOWN
    assert unreachable.live is None
    assert "unreachable" in (unreachable.live_error or "")


def test_missing_and_broken_instances_degrade(registry: StateRegistry, admin: Subject) -> None:
    """Not-found and generic provider errors also degrade to unknown."""
    runtime = FlakyRuntime(unreachable=set(), broken={"web-2"})
    runtime.create("web-2", "ubuntu/22.04")
    _create(registry, "web-1")
    _create(registry, "web-2")
    aggregator = StatusAggregator(registry, runtime, max_concurrency=1)

    views = aggregator.list_instances(admin)

    assert [view.live_status for view in views] == [LIVE_STATUS_UNKNOWN, LIVE_STATUS_UNKNOWN]
    assert views[0].live_error is not None and views[0].live_error.startswith("not found")
    assert views[1].live_error == "garbled state"


def test_user_only_sees_own_instances(registry: StateRegistry, alice: Subject) -> None:
    """Non-admin subjects see only the records they own."""
    runtime = SimulatedProvider()
    _create(registry, "mine", owner="alice")
    _create(registry, "theirs", owner="bob")
    aggregator = StatusAggregator(registry, runtime)

    views = aggregator.list_instances(alice)

    assert [view.record.name for view in views] == ["mine"]


def test_empty_registry_returns_empty_list(registry: StateRegistry, admin: Subject) -> None:
    """No records means no runtime calls and an empty result."""
    assert StatusAggregator(registry, SimulatedProvider()).list_instances(admin) == []


def test_aggregated_view_serialises_both_statuses(registry: StateRegistry, admin: Subject) -> None:
    """Serialised views keep declared and live status apart."""
    runtime = SimulatedProvider()
    runtime.create("web-1", "ubuntu/22.04")
    _create(registry, "web-1")

    (view,) = StatusAggregator(registry, runtime).list_instances(admin)
    data = view.to_dict()

    assert data["status"] == "stopped"
    assert data["declared_status"] == "stopped"
    assert data["live_status"] == "running"
    assert data["live"]["name"] == "web-1"
    assert "live_error" not in data


def test_get_instance_applies_authorization(registry: StateRegistry, alice: Subject) -> None:
    """Detail lookups follow the same rules as actions."""
    runtime = SimulatedProvider()
    mine = _create(registry, "mine", owner="alice")
    theirs = _create(registry, "theirs", owner="bob")
    aggregator = StatusAggregator(registry, runtime)

    assert aggregator.get_instance(mine, alice).record.name == "mine"
    with pytest.raises(ForbiddenError):
        aggregator.get_instance(theirs, alice)
    with pytest.raises(NotFoundError):
        aggregator.get_instance("missing", alice)
    assert aggregator.get_instance(theirs, Subject(id="bob")).live_status == LIVE_STATUS_UNKNOWN


def test_unexecutable_runtime_binary_degrades_listing(
    monkeypatch: pytest.MonkeyPatch,
    registry: StateRegistry,
    admin: Subject,
) -> None:
    """An lxc binary that cannot be executed yields unknown views, not a failure."""

    def fake_run(args: Sequence[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise PermissionError(13, "Permission denied", args[0])

    monkeypatch.setattr(subprocess, "run", fake_run)
    _create(registry, "web-1")
    _create(registry, "web-2")

    views = StatusAggregator(registry, LxcProvider()).list_instances(admin)

    assert [view.live_status for view in views] == [LIVE_STATUS_UNKNOWN, LIVE_STATUS_UNKNOWN]
    assert all((view.live_error or "").startswith("unavailable") for view in views)
