"""Concurrent fan-out to source adapters and merge into the event store."""
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

from processor.errors import AdapterError, RefreshCancelled, ValidationError
from processor.geo import is_valid_radius
from processor.models import NormalizedEvent, Point, RefreshResult
from sources.base import SourceAdapter

logger = logging.getLogger(__name__)


class Aggregator:
    """Runs every adapter for a refresh and upserts their records."""

    # How often a waiting refresh wakes up to check for cancellation
    POLL_INTERVAL = 0.05

    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        store,
        notifier=None,
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize the aggregator.

        Args:
            adapters: Fixed list of source adapters
            store: Event store to merge into
            notifier: Optional ChangeNotifier signalled after a merge
            timeout_seconds: Deadline for each adapter call
        """
        self.adapters = list(adapters)
        self.store = store
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds

    def refresh(
        self,
        center: Point,
        radius_km: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> RefreshResult:
        """
        Fetch from every adapter concurrently and merge the results.

        Adapter failures and timeouts are recorded in failed_sources and
        never abort the refresh. Store failures propagate as StoreError.
        Upserts committed before a cancellation or store failure stay
        committed.

        Args:
            center: Search center
            radius_km: Search radius in kilometres
            cancel_event: Set by the caller to abandon the refresh

        Returns:
            RefreshResult with merged count and failed source names

        Raises:
            ValidationError: If center or radius are invalid
            RefreshCancelled: If cancel_event is set before merging completes
            StoreError: If an upsert fails
        """
        self._validate(center, radius_km)
        start_time = time.monotonic()

        records, failed_sources = self._fetch_all(center, radius_km, cancel_event)

        merged_count = 0
        for record in records:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    f"Refresh cancelled after merging {merged_count} of {len(records)} records"
                )
                raise RefreshCancelled(f"Refresh cancelled after {merged_count} upserts")
            self.store.upsert(record)
            merged_count += 1

        duration = time.monotonic() - start_time
        logger.info(
            f"Refresh merged {merged_count} records in {duration:.2f}s "
            f"({len(failed_sources)} failed sources)",
            extra={
                'merged_count': merged_count,
                'failed_sources': sorted(failed_sources),
            }
        )

        if merged_count > 0 and self.notifier is not None:
            self.notifier.publish(merged_count)

        return RefreshResult(merged_count=merged_count, failed_sources=failed_sources)

    def _validate(self, center: Point, radius_km: float) -> None:
        if center is None or center.latitude is None or center.longitude is None:
            raise ValidationError("Latitude and longitude are required")
        if not center.is_valid():
            raise ValidationError(
                f"Coordinates out of range: ({center.longitude}, {center.latitude})"
            )
        if not is_valid_radius(radius_km):
            raise ValidationError(f"Radius must be a positive finite number, got {radius_km}")

    def _fetch_all(self, center, radius_km, cancel_event):
        """
        Fan out to all adapters and join on a shared deadline.

        Returns:
            Tuple of (records from successful adapters in adapter order,
            set of failed adapter names)
        """
        failed_sources = set()
        if not self.adapters:
            return [], failed_sources

        executor = ThreadPoolExecutor(
            max_workers=len(self.adapters), thread_name_prefix='adapter'
        )
        futures: Dict[Future, SourceAdapter] = {
            executor.submit(adapter.fetch, center, radius_km): adapter
            for adapter in self.adapters
        }

        try:
            deadline = time.monotonic() + self.timeout_seconds
            pending = set(futures)
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(
                        f"Refresh cancelled with {len(pending)} adapters outstanding"
                    )
                    raise RefreshCancelled("Refresh cancelled while fetching")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                _, pending = wait(
                    pending,
                    timeout=min(remaining, self.POLL_INTERVAL),
                    return_when=FIRST_COMPLETED,
                )
        finally:
            # Stragglers are abandoned, not joined
            executor.shutdown(wait=False, cancel_futures=True)

        records: List[NormalizedEvent] = []
        for future, adapter in futures.items():
            if not future.done():
                future.cancel()
                logger.error(
                    f"Adapter {adapter.name} timed out after {self.timeout_seconds}s"
                )
                failed_sources.add(adapter.name)
                continue

            try:
                adapter_records = future.result()
            except AdapterError as e:
                logger.error(f"Adapter {adapter.name} failed: {e}")
                failed_sources.add(adapter.name)
                continue
            except Exception as e:
                logger.error(
                    f"Adapter {adapter.name} raised unexpectedly: {e}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
                failed_sources.add(adapter.name)
                continue

            logger.info(f"Adapter {adapter.name} returned {len(adapter_records)} records")
            records.extend(adapter_records)

        return records, failed_sources
