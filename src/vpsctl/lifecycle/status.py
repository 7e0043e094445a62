"""Status aggregation: merge stored records with live runtime state."""
from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Sequence

from ..errors import ForbiddenError, NotFoundError
from ..models import LIVE_STATUS_UNKNOWN, AggregatedView, InstanceRecord, Subject
from ..providers.base import (
    InstanceNotFoundError,
    RuntimeProvider,
    RuntimeProviderError,
    RuntimeUnavailableError,
)
from ..state import StateRegistry

LOGGER = logging.getLogger(__name__)


class StatusAggregator:
    """Build :class:`AggregatedView` objects for the records a subject may see.

    Every call queries the runtime afresh; nothing is cached. A runtime
    failure for one record degrades that record's live status to
    ``unknown`` and never fails the listing.
    """

    def __init__(
        self,
        registry: StateRegistry,
        runtime: RuntimeProvider,
        *,
        max_concurrency: int = 4,
    ) -> None:
        """Bind the aggregator to the registry and runtime adapter."""
        self._registry = registry
        self._runtime = runtime
        self._max_concurrency = max(1, max_concurrency)

    def list_instances(self, subject: Subject) -> list[AggregatedView]:
        """Return views for every record visible to *subject*, in storage order."""
        owner = None if subject.is_admin else subject.id
        records = self._registry.list_instances(owner_id=owner)
        return self._describe_all(records)

    def get_instance(self, instance_id: str, subject: Subject) -> AggregatedView:
        """Return the view of a single record *subject* may act on."""
        record = self._registry.find_instance(instance_id)
        if record is None:
            raise NotFoundError(f"VPS '{instance_id}' not found")
        if not subject.can_manage(record.owner_id):
            raise ForbiddenError("Access denied")
        return self.describe(record)

    def describe(self, record: InstanceRecord) -> AggregatedView:
        """Query the runtime for *record* and merge the answer."""
        try:
            live = self._runtime.describe(record.name)
        except InstanceNotFoundError as exc:
            return _degraded(record, f"not found: {exc}")
        except RuntimeUnavailableError as exc:
            return _degraded(record, f"unavailable: {exc}")
        except RuntimeProviderError as exc:
            return _degraded(record, str(exc))
        return AggregatedView(record=record, live_status=live.runtime_status, live=live)

    def _describe_all(self, records: Sequence[InstanceRecord]) -> list[AggregatedView]:
        if not records:
            return []
        if self._max_concurrency == 1 or len(records) == 1:
            return [self.describe(record) for record in records]

        results: list[AggregatedView | None] = [None] * len(records)
        workers = min(self._max_concurrency, len(records))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index: dict[concurrent.futures.Future[AggregatedView], int] = {}
            for index, record in enumerate(records):
                future = executor.submit(self.describe, record)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()

        return [view for view in results if view is not None]


def _degraded(record: InstanceRecord, reason: str) -> AggregatedView:
    LOGGER.debug("Live status for %s unavailable: %s", record.name, reason)
    return AggregatedView(record=record, live_status=LIVE_STATUS_UNKNOWN, live_error=reason)


__all__ = ["StatusAggregator"]
