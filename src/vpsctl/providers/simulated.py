"""In-memory runtime used where no ``lxc`` binary is available.

The simulator mirrors the state machine of the live client closely enough for
the orchestrator to be exercised end to end: ``launch`` leaves an instance
running, starting a running instance or stopping a stopped one fails, and
unknown names raise :class:`InstanceNotFoundError`. Usage figures are drawn
from a seeded :class:`random.Random` so runs can be made reproducible.

With ``state_path`` set the instance table is kept in a small YAML file, so
separate CLI invocations observe the same simulated host.
"""
from __future__ import annotations

import hashlib
import os
import random
import tempfile
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ..models import LiveDescriptor, ResourceSpec
from .base import InstanceNotFoundError, RuntimeProviderError

_RUNNING = "running"
_STOPPED = "stopped"


@dataclass
class SimulatedProvider:
    """Runtime adapter that keeps instances in process memory."""

    seed: int | None = None
    delay: float = 0.0
    fail_verbs: Iterable[str] = ()
    state_path: Path | None = None
    mode: str = field(default="simulate", init=False)
    _instances: dict[str, str] = field(default_factory=dict, init=False, repr=False)
    _resources: dict[str, ResourceSpec] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _random: random.Random = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Seed the usage generator and freeze the failure set."""
        self._random = random.Random(self.seed)
        self.fail_verbs = frozenset(verb.strip().lower() for verb in self.fail_verbs)
        if self.state_path is not None:
            self.state_path = Path(self.state_path).expanduser()

    def create(self, name: str, image_ref: str, resources: ResourceSpec | None = None) -> None:
        """Register *name* as a running instance."""
        self._simulate("create")
        with self._lock:
            self._load()
            if name in self._instances:
                raise RuntimeProviderError(f"Instance '{name}' already exists")
            self._instances[name] = _RUNNING
            self._resources[name] = resources or ResourceSpec()
            self._save()

    def start(self, name: str) -> None:
        """Mark the instance running."""
        self._transition("start", name, expect=_STOPPED, target=_RUNNING)

    def stop(self, name: str) -> None:
        """Mark the instance stopped."""
        self._transition("stop", name, expect=_RUNNING, target=_STOPPED)

    def restart(self, name: str) -> None:
        """Restart a running instance."""
        self._transition("restart", name, expect=_RUNNING, target=_RUNNING)

    def delete(self, name: str) -> None:
        """Forget the instance."""
        self._simulate("delete")
        with self._lock:
            self._load()
            if self._instances.pop(name, None) is None:
                raise InstanceNotFoundError(f"Instance '{name}' not found")
            self._resources.pop(name, None)
            self._save()

    def describe(self, name: str) -> LiveDescriptor:
        """Return a synthetic live descriptor for *name*."""
        self._simulate("describe")
        with self._lock:
            self._load()
            state = self._instances.get(name)
            if state is None:
                raise InstanceNotFoundError(f"Instance '{name}' not found")
            if state != _RUNNING:
                return LiveDescriptor(name=name, runtime_status=state)
            ram_bytes = self._resources[name].ram_mib * 1024 * 1024
            return LiveDescriptor(
                name=name,
                runtime_status=state,
                cpu_usage=round(self._random.uniform(0.5, 100.0), 2),
                mem_usage_bytes=self._random.randint(ram_bytes // 10, ram_bytes),
                addresses=(_address_for(name),),
            )

    def names(self) -> list[str]:
        """Return the names of all simulated instances."""
        with self._lock:
            self._load()
            return sorted(self._instances)

    # ------------------------------------------------------------------
    def _transition(self, verb: str, name: str, *, expect: str, target: str) -> None:
        self._simulate(verb)
        with self._lock:
            self._load()
            state = self._instances.get(name)
            if state is None:
                raise InstanceNotFoundError(f"Instance '{name}' not found")
            if state != expect:
                raise RuntimeProviderError(f"The instance is already {state}")
            self._instances[name] = target
            self._save()

    def _simulate(self, verb: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if verb in self.fail_verbs:
            raise RuntimeProviderError(f"Simulated {verb} failure")

    def _load(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        try:
            data = yaml.safe_load(self.state_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise RuntimeProviderError(
                f"Unreadable simulator state {self.state_path}: {exc}"
            ) from exc
        entries = data.get("instances") if isinstance(data, Mapping) else None
        self._instances.clear()
        self._resources.clear()
        if not isinstance(entries, Mapping):
            return
        for name, entry in entries.items():
            if not isinstance(entry, Mapping):
                continue
            self._instances[str(name)] = _RUNNING if entry.get("state") == _RUNNING else _STOPPED
            self._resources[str(name)] = ResourceSpec.from_mapping(entry.get("resources"))

    def _save(self) -> None:
        if self.state_path is None:
            return
        payload = {
            "instances": {
                name: {"state": state, "resources": self._resources[name].to_dict()}
                for name, state in sorted(self._instances.items())
            }
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=f".{self.state_path.name}."
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, self.state_path)
        finally:
            tmp_path.unlink(missing_ok=True)


def _address_for(name: str) -> str:
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return f"10.{digest[0]}.{digest[1]}.{max(2, digest[2] % 255)}"


__all__ = ["SimulatedProvider"]
