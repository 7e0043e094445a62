"""Runtime provider contract shared by the live and simulated adapters."""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..errors import VpsError
from ..exit_codes import ExitCode
from ..models import LiveDescriptor, ResourceSpec


class RuntimeProviderError(RuntimeError):
    """Raised when the container runtime rejects or garbles an operation."""


class InstanceNotFoundError(RuntimeProviderError):
    """Raised when the runtime has no instance with the requested name."""


class RuntimeUnavailableError(RuntimeProviderError, VpsError):
    """Raised when the runtime cannot be reached or did not answer in time."""

    kind = "runtime_unavailable"
    exit_code = ExitCode.PROVIDER


@runtime_checkable
class RuntimeProvider(Protocol):
    """Lifecycle verbs understood by every runtime adapter.

    The instance ``name`` is the only key correlating a record with the
    runtime object. Implementations never touch the state registry.
    """

    mode: str

    def create(self, name: str, image_ref: str, resources: ResourceSpec | None = None) -> None:
        """Materialise a new instance from *image_ref*."""

    def start(self, name: str) -> None:
        """Start the instance."""

    def stop(self, name: str) -> None:
        """Stop the instance."""

    def restart(self, name: str) -> None:
        """Restart the instance."""

    def delete(self, name: str) -> None:
        """Delete the instance and its storage."""

    def describe(self, name: str) -> LiveDescriptor:
        """Return the live descriptor for the instance."""


__all__ = [
    "InstanceNotFoundError",
    "RuntimeProvider",
    "RuntimeProviderError",
    "RuntimeUnavailableError",
]
