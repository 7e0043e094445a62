"""Lifecycle components: actions, provisioning, expiry and status."""
from __future__ import annotations

from .actions import ActionOrchestrator, parse_verb
from .expiry import ExpiryReconciler, ExpiryScheduler, SweepReport
from .provisioning import ProvisioningPipeline, ProvisionTicket
from .status import StatusAggregator

__all__ = [
    "ActionOrchestrator",
    "ExpiryReconciler",
    "ExpiryScheduler",
    "ProvisionTicket",
    "ProvisioningPipeline",
    "StatusAggregator",
    "SweepReport",
    "parse_verb",
]
