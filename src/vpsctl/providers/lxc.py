"""LXC provider driving the ``lxc`` client binary."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ..models import LIVE_STATUS_UNKNOWN, LiveDescriptor, ResourceSpec
from .base import InstanceNotFoundError, RuntimeProviderError, RuntimeUnavailableError

_NOT_FOUND_MARKERS = ("not found", "no such instance")
_UNAVAILABLE_MARKERS = (
    "unix.socket",
    "connection refused",
    "unable to connect",
    "no such file or directory",
    "daemon",
)


@dataclass(slots=True)
class LxcProvider:
    """Manage instances through the ``lxc`` command line client."""

    lxc_bin: str = "lxc"
    image_remote: str = "images"
    command_timeout: float = 120.0
    mode: str = field(default="live", init=False)

    def image_source(self, image_ref: str) -> str:
        """Return the ``remote:alias`` source for *image_ref*.

        References that already name a remote are passed through untouched.
        """
        image = image_ref.strip()
        if not self.image_remote or ":" in image:
            return image
        return f"{self.image_remote}:{image}"

    def create(self, name: str, image_ref: str, resources: ResourceSpec | None = None) -> None:
        """Launch a new instance from *image_ref*."""
        args = ["launch", self.image_source(image_ref), name]
        if resources is not None:
            args.extend(
                [
                    "-c",
                    f"limits.cpu={resources.cpu_cores}",
                    "-c",
                    f"limits.memory={resources.ram_mib}MiB",
                    "-d",
                    f"root,size={resources.disk_gib}GiB",
                ]
            )
        self._lxc(args)

    def start(self, name: str) -> None:
        """Start the instance."""
        self._lxc(["start", name])

    def stop(self, name: str) -> None:
        """Stop the instance without waiting for a clean shutdown."""
        self._lxc(["stop", name, "--force"])

    def restart(self, name: str) -> None:
        """Restart the instance."""
        self._lxc(["restart", name])

    def delete(self, name: str) -> None:
        """Delete the instance, stopping it first if needed."""
        self._lxc(["delete", name, "--force"])

    def describe(self, name: str) -> LiveDescriptor:
        """Query the runtime for the live state of *name*."""
        try:
            result = self._lxc(["query", f"/1.0/instances/{name}/state"])
        except (InstanceNotFoundError, RuntimeUnavailableError):
            raise
        except RuntimeProviderError as exc:
            raise RuntimeUnavailableError(str(exc)) from exc
        try:
            payload = json.loads(result.stdout or "")
        except json.JSONDecodeError as exc:
            raise RuntimeProviderError(f"Unparseable state for '{name}': {exc}") from exc
        return parse_instance_state(name, payload)

    # ------------------------------------------------------------------
    def _lxc(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.lxc_bin, *args]
        return self._run_command(command, error_prefix=" ".join(command[:2]))

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise RuntimeUnavailableError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RuntimeUnavailableError(
                f"{error_prefix} timed out after {self.command_timeout:g}s"
            ) from exc
        except OSError as exc:
            raise RuntimeUnavailableError(f"{args[0]} could not be executed: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise _classify_failure(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                message,
            )
        return result


def parse_instance_state(name: str, payload: object) -> LiveDescriptor:
    """Translate an LXC instance state document into a :class:`LiveDescriptor`."""
    if not isinstance(payload, Mapping):
        raise RuntimeProviderError(
            f"Unexpected state document for '{name}': {type(payload).__name__}"
        )
    status = payload.get("status")
    runtime_status = (
        status.strip().lower() if isinstance(status, str) and status.strip() else LIVE_STATUS_UNKNOWN
    )

    cpu_usage: float | None = None
    cpu = payload.get("cpu")
    if isinstance(cpu, Mapping):
        usage = cpu.get("usage")
        if isinstance(usage, (int, float)) and not isinstance(usage, bool):
            # LXC reports cumulative CPU time in nanoseconds.
            cpu_usage = usage / 1_000_000_000

    mem_usage: int | None = None
    memory = payload.get("memory")
    if isinstance(memory, Mapping):
        usage = memory.get("usage")
        if isinstance(usage, int) and not isinstance(usage, bool):
            mem_usage = usage

    return LiveDescriptor(
        name=name,
        runtime_status=runtime_status,
        cpu_usage=cpu_usage,
        mem_usage_bytes=mem_usage,
        addresses=_collect_addresses(payload.get("network")),
    )


def _collect_addresses(network: object) -> tuple[str, ...]:
    addresses: list[str] = []
    if not isinstance(network, Mapping):
        return ()
    for interface, details in network.items():
        if interface == "lo" or not isinstance(details, Mapping):
            continue
        entries = details.get("addresses")
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            address = entry.get("address")
            scope = entry.get("scope", "global")
            if isinstance(address, str) and address and scope == "global":
                addresses.append(address)
    return tuple(addresses)


def _classify_failure(detail: str, output: str) -> RuntimeProviderError:
    lowered = output.lower()
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return InstanceNotFoundError(detail)
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return RuntimeUnavailableError(detail)
    return RuntimeProviderError(detail)


__all__ = ["LxcProvider", "parse_instance_state"]
