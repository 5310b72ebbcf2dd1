"""In-process event store with per-key write locking."""
import logging
import threading
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from processor.errors import NotFoundError, ValidationError
from processor.models import EventFilter, NormalizedEvent, StoredEvent, utc_now
from storage.base import make_event_id, select_events

logger = logging.getLogger(__name__)


class MemoryEventStore:
    """
    Event store backed by a dictionary.

    Writers to the same event id serialize on a lock owned by that id;
    writers to different ids never contend. Stored records are immutable
    and swapped in with a single assignment, so readers always see either
    the previous or the new version of a record.
    """

    def __init__(self, clock: Optional[Callable] = None):
        """
        Initialize an empty store.

        Args:
            clock: Callable returning the current aware datetime
        """
        self._clock = clock or utc_now
        self._events: Dict[str, StoredEvent] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, event_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._key_locks.get(event_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[event_id] = lock
            return lock

    def upsert(self, record: NormalizedEvent) -> StoredEvent:
        """
        Insert or update an event by natural key.

        Args:
            record: Normalized event

        Returns:
            The stored version of the record
        """
        key = record.natural_key
        if key is None:
            return self._insert(record)

        event_id = make_event_id(*key)
        with self._lock_for(event_id):
            now = self._clock()
            existing = self._events.get(event_id)
            created_at = existing.created_at if existing else now
            stored = StoredEvent(
                event_id=event_id,
                record=record,
                created_at=created_at,
                updated_at=now,
            )
            self._events[event_id] = stored

        logger.debug(
            f"{'Updated' if existing else 'Inserted'} event {event_id} "
            f"({key[0]}/{key[1]})"
        )
        return stored

    def _insert(self, record: NormalizedEvent) -> StoredEvent:
        event_id = uuid.uuid4().hex
        now = self._clock()
        stored = StoredEvent(
            event_id=event_id, record=record, created_at=now, updated_at=now
        )
        self._events[event_id] = stored
        logger.debug(f"Inserted event {event_id} without natural key")
        return stored

    def replace(self, event_id: str, record: NormalizedEvent) -> StoredEvent:
        """
        Replace the record stored under an explicit id.

        Args:
            event_id: Store-assigned id
            record: New field values

        Returns:
            The stored version of the record

        Raises:
            NotFoundError: If no record has this id
            ValidationError: If the record's natural key belongs to another id
        """
        key = record.natural_key
        if key is not None and make_event_id(*key) != event_id:
            raise ValidationError(
                f"Record with key {key[0]}/{key[1]} cannot be stored under id {event_id}"
            )

        with self._lock_for(event_id):
            existing = self._events.get(event_id)
            if existing is None:
                raise NotFoundError(f"Event {event_id} not found")
            stored = StoredEvent(
                event_id=event_id,
                record=record,
                created_at=existing.created_at,
                updated_at=self._clock(),
            )
            self._events[event_id] = stored
        return stored

    def get_by_id(self, event_id: str) -> StoredEvent:
        """
        Look up an event by id.

        Raises:
            NotFoundError: If no record has this id
        """
        stored = self._events.get(event_id)
        if stored is None:
            raise NotFoundError(f"Event {event_id} not found")
        return stored

    def query(self, event_filter: EventFilter) -> Tuple[List[StoredEvent], int]:
        """Return the requested slice of matching events and the match count."""
        snapshot = list(self._events.values())
        return select_events(snapshot, event_filter)

    def count(self) -> int:
        return len(self._events)
