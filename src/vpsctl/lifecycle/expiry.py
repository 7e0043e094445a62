"""Expiry reconciliation: suspend records whose lease has lapsed.

Suspension is a record-level policy flag. The sweep never calls the runtime,
so an expired instance keeps running until an operator acts on it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import TracebackType

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..logging import StructuredLogger
from ..models import InstanceStatus, format_timestamp, utcnow
from ..state import StateRegistry

LOGGER = logging.getLogger(__name__)

SWEEP_JOB_ID = "vpsctl-expiry-sweep"


@dataclass
class SweepReport:
    """Outcome of one expiry sweep."""

    checked_at: datetime
    suspended: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when neither the query nor any update failed."""
        return self.error is None and not self.failures

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "checked_at": format_timestamp(self.checked_at),
            "suspended": list(self.suspended),
            "failures": dict(self.failures),
            "error": self.error,
        }


class ExpiryReconciler:
    """Transition expired, non-suspended records to ``suspended``."""

    def __init__(self, registry: StateRegistry, logger: StructuredLogger) -> None:
        """Bind the reconciler to its registry and operation log."""
        self._registry = registry
        self._logger = logger

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one pass. Never raises; problems are logged and reported."""
        checked_at = now or utcnow()
        if checked_at.tzinfo is None:
            checked_at = checked_at.replace(tzinfo=UTC)
        report = SweepReport(checked_at=checked_at)

        with self._logger.operation(
            "reconcile sweep", args={"now": format_timestamp(checked_at)}
        ) as op:
            try:
                expired = self._registry.find_instances_expired_before(
                    checked_at, InstanceStatus.SUSPENDED
                )
            except Exception as exc:  # scheduler thread must survive storage faults
                LOGGER.error("Expiry query failed: %s", exc)
                report.error = str(exc)
                op.error("Expiry query failed.", errors=[str(exc)])
                return report
            op.add_step("registry.query", detail=f"{len(expired)} expired")

            for record in expired:
                try:
                    self._registry.update_instance_status(record.id, InstanceStatus.SUSPENDED)
                except Exception as exc:  # one bad record must not stop the pass
                    LOGGER.warning("Failed to suspend %s (%s): %s", record.name, record.id, exc)
                    report.failures[record.id] = str(exc)
                    op.add_step(f"suspend.{record.id}", status="error", detail=str(exc))
                    continue
                LOGGER.info("Suspended expired VPS %s (%s)", record.name, record.id)
                report.suspended.append(record.id)

            message = f"Suspended {len(report.suspended)} expired VPS."
            context = {"suspended": report.suspended}
            if report.failures:
                op.warning(
                    message,
                    errors=[f"{key}: {value}" for key, value in report.failures.items()],
                    changed=len(report.suspended),
                    context=context,
                )
            else:
                op.success(message, changed=len(report.suspended), context=context)
        return report


class ExpiryScheduler:
    """Run :meth:`ExpiryReconciler.sweep` on a fixed interval in the background."""

    def __init__(
        self,
        reconciler: ExpiryReconciler,
        *,
        interval_seconds: float = 300.0,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        """Configure the scheduler; nothing runs until :meth:`start`."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._reconciler = reconciler
        self._interval = interval_seconds
        self._scheduler = scheduler or BackgroundScheduler(timezone=UTC)
        self._scheduler.add_job(
            self._run,
            IntervalTrigger(seconds=interval_seconds, timezone=UTC),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.last_report: SweepReport | None = None

    @property
    def interval_seconds(self) -> float:
        """Return the sweep interval."""
        return self._interval

    @property
    def running(self) -> bool:
        """Return ``True`` while the background scheduler is active."""
        return bool(self._scheduler.running)

    def start(self) -> None:
        """Start periodic sweeps. Calling it twice is harmless."""
        if self.running:
            return
        self._scheduler.start()
        LOGGER.info("Expiry scheduler started (every %gs)", self._interval)

    def stop(self, *, wait: bool = True) -> None:
        """Stop periodic sweeps; with *wait* let a running sweep finish."""
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        LOGGER.info("Expiry scheduler stopped")

    def run_now(self) -> SweepReport:
        """Run a sweep on the calling thread."""
        return self._run()

    def __enter__(self) -> ExpiryScheduler:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    def _run(self) -> SweepReport:
        report = self._reconciler.sweep()
        self.last_report = report
        return report


__all__ = ["SWEEP_JOB_ID", "ExpiryReconciler", "ExpiryScheduler", "SweepReport"]
