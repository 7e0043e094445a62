"""Tests for the simulated runtime provider."""
from __future__ import annotations

from pathlib import Path

import pytest

from vpsctl.config import RuntimeConfig, SimulationConfig
from vpsctl.models import ResourceSpec
from vpsctl.providers import (
    LxcProvider,
    RuntimeProvider,
    SimulatedProvider,
    build_runtime_provider,
)
from vpsctl.providers.base import InstanceNotFoundError, RuntimeProviderError


def test_create_then_describe_reports_same_name() -> None:
    """A created instance is described under the name it was created with."""
    provider = SimulatedProvider(seed=1)

    provider.create("web-1", "ubuntu/22.04", ResourceSpec(ram_mib=256))
    descriptor = provider.describe("web-1")

    assert descriptor.name == "web-1"
    assert descriptor.runtime_status == "running"
    assert descriptor.cpu_usage is not None
    assert 0 < (descriptor.mem_usage_bytes or 0) <= 256 * 1024 * 1024
    assert len(descriptor.addresses) == 1


def test_state_machine_transitions() -> None:
    """Stop, start and restart follow the runtime state machine."""
    provider = SimulatedProvider()
    provider.create("web-1", "ubuntu/22.04")

    provider.stop("web-1")
    assert provider.describe("web-1").runtime_status == "stopped"
    assert provider.describe("web-1").addresses == ()

    with pytest.raises(RuntimeProviderError, match="already stopped"):
        provider.stop("web-1")
    with pytest.raises(RuntimeProviderError):
        provider.restart("web-1")

    provider.start("web-1")
    provider.restart("web-1")
    assert provider.describe("web-1").runtime_status == "running"


def test_unknown_names_raise_not_found() -> None:
    """Operations on unknown instances raise InstanceNotFoundError."""
    provider = SimulatedProvider()

    for method in ("start", "stop", "restart", "delete", "describe"):
        with pytest.raises(InstanceNotFoundError):
            getattr(provider, method)("ghost")


def test_duplicate_create_fails() -> None:
    """Creating the same name twice fails."""
    provider = SimulatedProvider()
    provider.create("web-1", "ubuntu/22.04")

    with pytest.raises(RuntimeProviderError, match="already exists"):
        provider.create("web-1", "ubuntu/22.04")


def test_delete_forgets_instance() -> None:
    """Deleted instances disappear."""
    provider = SimulatedProvider()
    provider.create("web-1", "ubuntu/22.04")

    provider.delete("web-1")

    assert provider.names() == []


def test_fail_verbs_inject_failures() -> None:
    """Configured verbs raise provider errors."""
    provider = SimulatedProvider(fail_verbs=["Create"])

    with pytest.raises(RuntimeProviderError, match="Simulated create failure"):
        provider.create("web-1", "ubuntu/22.04")
    assert provider.names() == []


def test_seed_makes_usage_reproducible() -> None:
    """Two simulators with the same seed report the same usage."""
    first = SimulatedProvider(seed=42)
    second = SimulatedProvider(seed=42)
    for provider in (first, second):
        provider.create("web-1", "ubuntu/22.04")

    assert first.describe("web-1") == second.describe("web-1")


def test_state_file_is_shared_between_instances(tmp_path: Path) -> None:
    """With a state path, separate simulators see the same instances."""
    state = tmp_path / "sim" / "runtime.yml"
    first = SimulatedProvider(state_path=state)
    first.create("web-1", "ubuntu/22.04", ResourceSpec(cpu_cores=2))
    first.stop("web-1")

    second = SimulatedProvider(state_path=state)

    assert second.names() == ["web-1"]
    assert second.describe("web-1").runtime_status == "stopped"
    second.start("web-1")
    assert first.describe("web-1").runtime_status == "running"


def test_build_runtime_provider_modes(tmp_path: Path) -> None:
    """The factory honours explicit and automatic modes."""
    live = build_runtime_provider(RuntimeConfig(mode="live", lxc_bin="lxc"))
    assert isinstance(live, LxcProvider)

    simulated = build_runtime_provider(
        RuntimeConfig(mode="simulate", simulate=SimulationConfig(seed=3, delay=0.0))
    )
    assert isinstance(simulated, SimulatedProvider)
    assert simulated.seed == 3

    auto = build_runtime_provider(
        RuntimeConfig(mode="auto", lxc_bin=str(tmp_path / "missing-lxc")),
        simulate_state=tmp_path / "sim.yml",
    )
    assert isinstance(auto, SimulatedProvider)
    assert auto.state_path == tmp_path / "sim.yml"
    assert isinstance(auto, RuntimeProvider)


def test_build_runtime_provider_auto_prefers_binary(tmp_path: Path) -> None:
    """Auto mode selects the live adapter when the binary exists."""
    binary = tmp_path / "lxc"
    binary.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    binary.chmod(0o755)

    provider = build_runtime_provider(RuntimeConfig(mode="auto", lxc_bin=str(binary)))

    assert isinstance(provider, LxcProvider)
    assert provider.lxc_bin == str(binary)


def test_build_runtime_provider_mode_override() -> None:
    """An explicit mode argument wins over the config."""
    provider = build_runtime_provider(RuntimeConfig(mode="live"), mode="simulate")

    assert provider.mode == "simulate"
