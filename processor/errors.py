"""Error types raised by the aggregation and query engine."""
from typing import Optional


class EventsError(Exception):
    """Base class for all engine errors."""


class ValidationError(EventsError):
    """Malformed query or refresh parameters, rejected before any I/O."""


class AdapterError(EventsError):
    """A single source adapter failed to produce its records."""

    def __init__(self, source: str, message: str, cause: Optional[Exception] = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.cause = cause


class StoreError(EventsError):
    """An upsert or query failed at the storage layer."""


class NotFoundError(EventsError):
    """Lookup by event id found no record."""


class RefreshCancelled(EventsError):
    """The caller cancelled a refresh before it finished merging."""
