"""Validated, paginated geospatial queries against the event store."""
import logging
import math
from datetime import datetime
from typing import Iterable, Optional, Union

from processor.errors import ValidationError
from processor.geo import is_valid_radius
from processor.models import EventFilter, EventPage, EventType, Point

logger = logging.getLogger(__name__)


class QueryEngine:
    """Translates location, filter and page requests into store queries."""

    def __init__(self, store):
        self.store = store

    def query(
        self,
        center: Optional[Point],
        radius_km: float,
        event_types: Optional[Iterable[Union[EventType, str]]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> EventPage:
        """
        Return one page of events near a point.

        Results are ordered by start time, ties broken by id, and sliced
        after filtering so every page of an unchanged store is stable.

        Args:
            center: Search center
            radius_km: Inclusive search radius in kilometres
            event_types: Allowed event types, empty or None for all
            start_date: Inclusive lower bound on start time
            end_date: Inclusive upper bound on start time
            page: 1-based page number
            page_size: Items per page

        Returns:
            EventPage for the requested page

        Raises:
            ValidationError: If any parameter is invalid
            StoreError: If the store query fails
        """
        self._validate(center, radius_km, start_date, end_date, page, page_size)
        types = self._parse_event_types(event_types)

        event_filter = EventFilter(
            center=center,
            radius_km=float(radius_km),
            event_types=types,
            start_date=start_date,
            end_date=end_date,
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        items, total_count = self.store.query(event_filter)

        total_pages = max(1, math.ceil(total_count / page_size))
        logger.debug(
            f"Query around ({center.latitude}, {center.longitude}) r={radius_km}km "
            f"matched {total_count} events, returning page {page}/{total_pages}"
        )
        return EventPage(
            items=items,
            total_count=total_count,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
        )

    def _validate(self, center, radius_km, start_date, end_date, page, page_size) -> None:
        if center is None or center.latitude is None or center.longitude is None:
            raise ValidationError("Latitude and longitude are required")
        if not center.is_valid():
            raise ValidationError(
                f"Coordinates out of range: ({center.longitude}, {center.latitude})"
            )
        if not is_valid_radius(radius_km):
            raise ValidationError(f"Radius must be a positive finite number, got {radius_km}")
        if not isinstance(page, int) or page < 1:
            raise ValidationError(f"Page must be at least 1, got {page}")
        if not isinstance(page_size, int) or page_size < 1:
            raise ValidationError(f"Page size must be at least 1, got {page_size}")
        for name, value in (('start_date', start_date), ('end_date', end_date)):
            if value is not None and (not isinstance(value, datetime) or value.tzinfo is None):
                raise ValidationError(f"{name} must be a timezone-aware datetime")
        if start_date is not None and end_date is not None and start_date > end_date:
            raise ValidationError("start_date must not be after end_date")

    def _parse_event_types(self, event_types) -> frozenset:
        if not event_types:
            return frozenset()
        types = set()
        for value in event_types:
            try:
                types.add(EventType(value))
            except ValueError:
                raise ValidationError(f"Unknown event type: {value}")
        return frozenset(types)
