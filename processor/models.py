"""Data models for event aggregation and querying."""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """
    Format an aware datetime as a fixed-width UTC string.

    The fixed width keeps lexicographic order equal to chronological order,
    which the storage layer relies on for range conditions.
    """
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a string produced by format_timestamp."""
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class EventType(str, Enum):
    """Fixed set of event categories."""
    MOVIE = 'movie'
    BAND = 'band'
    SPORT = 'sport'
    FESTIVAL = 'festival'
    THEATER = 'theater'
    ART = 'art'
    COMMUNITY = 'community'


class EventSource(str, Enum):
    """Provenance of an event record."""
    EVENTBRITE = 'eventbrite'
    TICKETMASTER = 'ticketmaster'
    MEETUP = 'meetup'
    MANUAL = 'manual'


@dataclass(frozen=True)
class Point:
    """Geographic point in decimal degrees."""
    longitude: float
    latitude: float

    def is_valid(self) -> bool:
        return (
            isinstance(self.longitude, (int, float))
            and isinstance(self.latitude, (int, float))
            and not math.isnan(self.longitude)
            and not math.isnan(self.latitude)
            and -180.0 <= self.longitude <= 180.0
            and -90.0 <= self.latitude <= 90.0
        )


@dataclass(frozen=True)
class Location:
    """Venue of an event."""
    name: str
    address: str
    point: Point


@dataclass
class RawEvent:
    """Provider event mapped to common field names but not yet validated."""
    source: str
    source_id: Optional[str]
    title: str
    description: str
    start_time: Any
    end_time: Any
    venue_name: str
    address: str
    latitude: Any
    longitude: Any
    category: str
    image_url: Optional[str] = None
    booking_link: Optional[str] = None


@dataclass(frozen=True)
class NormalizedEvent:
    """Validated event in the common shape, without store-managed fields."""
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    location: Location
    event_type: EventType
    source: EventSource
    source_id: Optional[str] = None
    image_url: Optional[str] = None
    booking_link: Optional[str] = None

    @property
    def natural_key(self) -> Optional[Tuple[str, str]]:
        """(source, source_id) when the record carries a provider id."""
        if not self.source_id:
            return None
        return (self.source.value, self.source_id)


@dataclass(frozen=True)
class StoredEvent:
    """Event record as held by the store."""
    event_id: str
    record: NormalizedEvent
    created_at: datetime
    updated_at: datetime

    @property
    def start_time(self) -> datetime:
        return self.record.start_time

    @property
    def point(self) -> Point:
        return self.record.location.point

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON shape exposed by the API."""
        record = self.record
        return {
            'id': self.event_id,
            'title': record.title,
            'description': record.description,
            'startTime': format_timestamp(record.start_time),
            'endTime': format_timestamp(record.end_time),
            'location': {
                'name': record.location.name,
                'address': record.location.address,
                'coordinates': [
                    record.location.point.longitude,
                    record.location.point.latitude,
                ],
            },
            'eventType': record.event_type.value,
            'imageUrl': record.image_url,
            'bookingLink': record.booking_link,
            'source': record.source.value,
            'sourceId': record.source_id,
            'createdAt': format_timestamp(self.created_at),
            'updatedAt': format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class EventFilter:
    """Store-level query: predicates plus the slice to return."""
    center: Point
    radius_km: float
    event_types: FrozenSet[EventType] = frozenset()
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    offset: int = 0
    limit: Optional[int] = None


@dataclass
class EventPage:
    """One page of query results."""
    items: List[StoredEvent]
    total_count: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': len(self.items),
            'total': self.total_count,
            'page': self.page,
            'pages': self.total_pages,
            'data': [item.to_dict() for item in self.items],
        }


@dataclass
class RefreshResult:
    """Outcome of a refresh pass."""
    merged_count: int
    failed_sources: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mergedCount': self.merged_count,
            'failedSources': sorted(self.failed_sources),
        }


@dataclass(frozen=True)
class GeocodingResult:
    """Forward geocoding answer from the external provider."""
    latitude: float
    longitude: float
    formatted_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'formattedAddress': self.formatted_address,
        }


@dataclass(frozen=True)
class ReverseGeocodingResult:
    """Reverse geocoding answer from the external provider."""
    address: str
    city: str
    state: str
    country: str
    postal_code: str
    formatted_address: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'city': self.city,
            'state': self.state,
            'country': self.country,
            'postalCode': self.postal_code,
            'formattedAddress': self.formatted_address,
        }
