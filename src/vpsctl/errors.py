"""Error taxonomy shared by the lifecycle components.

Every error carries a machine-readable ``kind`` and the CLI exit code used
when it escapes a command. ``RuntimeUnavailableError`` joins this taxonomy
from :mod:`vpsctl.providers.base` because the runtime adapter raises it.
"""
from __future__ import annotations

from typing import ClassVar

from .exit_codes import ExitCode


class VpsError(RuntimeError):
    """Base class for failures surfaced to callers of the orchestrator."""

    kind: ClassVar[str] = "error"
    exit_code: ClassVar[ExitCode] = ExitCode.PROVIDER

    @property
    def message(self) -> str:
        """Return the human readable message."""
        return str(self)

    def to_payload(self) -> dict[str, object]:
        """Return the error object shape used by ``--json`` output."""
        return {"error": {"kind": self.kind, "message": self.message}}


class ValidationError(VpsError):
    """Bad or missing input. The caller must correct it."""

    kind = "validation_error"
    exit_code = ExitCode.VALIDATION


class NotFoundError(VpsError):
    """A referenced instance or node does not exist."""

    kind = "not_found"
    exit_code = ExitCode.VALIDATION


class ForbiddenError(VpsError):
    """The subject is not allowed to perform the operation."""

    kind = "forbidden"
    exit_code = ExitCode.FORBIDDEN


class ActionInProgressError(VpsError):
    """Another mutating action for the same instance has not completed."""

    kind = "action_in_progress"
    exit_code = ExitCode.CONFLICT


class InvalidVerbError(VpsError):
    """The requested verb is not one of start, stop or restart."""

    kind = "invalid_verb"
    exit_code = ExitCode.VALIDATION


class ActionFailedError(VpsError):
    """The runtime rejected a lifecycle verb."""

    kind = "action_failed"
    exit_code = ExitCode.PROVIDER

    def __init__(self, verb: str, cause: object) -> None:
        """Record the failing *verb* and the runtime-provided *cause*."""
        self.verb = verb
        self.cause = cause
        super().__init__(f"Failed to {verb} VPS: {cause}")

    def to_payload(self) -> dict[str, object]:
        """Include the verb and runtime detail in the error object."""
        return {
            "error": {
                "kind": self.kind,
                "message": self.message,
                "verb": self.verb,
                "detail": str(self.cause),
            }
        }


__all__ = [
    "ActionFailedError",
    "ActionInProgressError",
    "ForbiddenError",
    "InvalidVerbError",
    "NotFoundError",
    "ValidationError",
    "VpsError",
]
