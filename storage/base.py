"""Event store contract and the filter pass shared by every backend."""
import hashlib
from typing import Iterable, List, Optional, Protocol, Tuple

from processor.geo import within_radius
from processor.models import EventFilter, NormalizedEvent, StoredEvent


class EventStore(Protocol):
    """De-duplicated, queryable set of events."""

    def upsert(self, record: NormalizedEvent) -> StoredEvent:
        """Insert or update by natural key; insert unconditionally without one."""
        ...

    def replace(self, event_id: str, record: NormalizedEvent) -> StoredEvent:
        """Replace an existing record addressed by its store id."""
        ...

    def get_by_id(self, event_id: str) -> StoredEvent:
        """Return the record with this id or raise NotFoundError."""
        ...

    def query(self, event_filter: EventFilter) -> Tuple[List[StoredEvent], int]:
        """Return the requested slice of matches and the total match count."""
        ...

    def count(self) -> int:
        ...


def make_event_id(source: str, source_id: str) -> str:
    """
    Derive the store id for a natural key.

    The same (source, source_id) pair always maps to the same id, which
    lets every backend resolve an upsert to a single record without a
    secondary lookup.

    Args:
        source: Source name
        source_id: Provider-assigned identifier

    Returns:
        32 character hex id
    """
    composite = f"{source}|{source_id}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()[:32]


def matches(event: StoredEvent, event_filter: EventFilter) -> bool:
    """Apply the category, temporal and distance predicates to one event."""
    record = event.record
    if event_filter.event_types and record.event_type not in event_filter.event_types:
        return False
    if event_filter.start_date is not None and record.start_time < event_filter.start_date:
        return False
    if event_filter.end_date is not None and record.start_time > event_filter.end_date:
        return False
    return within_radius(event_filter.center, record.location.point, event_filter.radius_km)


def sort_key(event: StoredEvent):
    return (event.record.start_time, event.event_id)


def select_events(
    events: Iterable[StoredEvent],
    event_filter: EventFilter,
) -> Tuple[List[StoredEvent], int]:
    """
    Filter, order and slice a set of candidate events.

    Ordering is by start time then id, and slicing happens only after the
    full pass so page boundaries are stable.

    Args:
        events: Candidate events (may be a superset of the matches)
        event_filter: Predicates and slice

    Returns:
        Tuple of (requested slice, total match count)
    """
    matching = sorted(
        (event for event in events if matches(event, event_filter)),
        key=sort_key,
    )
    total = len(matching)
    start = event_filter.offset
    end: Optional[int] = None
    if event_filter.limit is not None:
        end = start + event_filter.limit
    return matching[start:end], total
