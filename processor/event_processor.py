"""Event processor for validating and normalizing provider event data."""
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bs4 import BeautifulSoup

from processor.models import (
    EventSource,
    EventType,
    Location,
    NormalizedEvent,
    Point,
    RawEvent,
)

logger = logging.getLogger(__name__)


class EventProcessor:
    """Processor for validating and normalizing raw provider events."""

    MAX_TITLE_LENGTH = 200
    MAX_DESCRIPTION_LENGTH = 2000
    DEFAULT_DURATION = timedelta(hours=3)

    OPTIONAL_TEXT_FIELDS = (
        'description', 'venue_name', 'address', 'category', 'image_url', 'booking_link'
    )

    # First matching keyword wins, so more specific terms come first
    CATEGORY_KEYWORDS = [
        ('festival', EventType.FESTIVAL),
        ('fair', EventType.FESTIVAL),
        ('film', EventType.MOVIE),
        ('movie', EventType.MOVIE),
        ('cinema', EventType.MOVIE),
        ('theatre', EventType.THEATER),
        ('theater', EventType.THEATER),
        ('comedy', EventType.THEATER),
        ('dance', EventType.THEATER),
        ('music', EventType.BAND),
        ('concert', EventType.BAND),
        ('band', EventType.BAND),
        ('sport', EventType.SPORT),
        ('gallery', EventType.ART),
        ('museum', EventType.ART),
        ('art', EventType.ART),
    ]

    DATETIME_FORMATS = [
        '%Y-%m-%dT%H:%M:%S',
        '%Y-%m-%d %H:%M:%S',
        '%Y-%m-%dT%H:%M',
        '%Y-%m-%d %H:%M',
        '%m/%d/%Y %I:%M %p',
        '%B %d, %Y %I:%M %p',
    ]

    def process_events(self, raw_events: List[RawEvent]) -> List[NormalizedEvent]:
        """
        Process and validate raw event data.

        Args:
            raw_events: List of RawEvent objects from a source adapter

        Returns:
            List of validated NormalizedEvent objects
        """
        processed_events = []

        for event in raw_events:
            try:
                processed_event = self.normalize(event)
                if processed_event:
                    processed_events.append(processed_event)
            except Exception as e:
                logger.warning(
                    f"Failed to process event '{event.title}': {e}"
                )
                continue

        logger.info(
            f"Processed {len(processed_events)} valid events out of "
            f"{len(raw_events)} total events"
        )
        return processed_events

    def normalize(self, event: RawEvent) -> Optional[NormalizedEvent]:
        """
        Normalize a single event.

        Args:
            event: Raw event object

        Returns:
            NormalizedEvent object or None if validation fails
        """
        if not self._validate_required_fields(event):
            return None

        try:
            source = EventSource(event.source)
        except ValueError:
            logger.warning(
                f"Unknown source '{event.source}' for event '{event.title}'"
            )
            return None

        source_id = str(event.source_id).strip() if event.source_id else None
        if source is not EventSource.MANUAL and not source_id:
            logger.warning(
                f"Event '{event.title}' from {source.value} has no source id"
            )
            return None

        start_time = self.parse_datetime(event.start_time)
        if start_time is None:
            logger.warning(
                f"Invalid start time for event '{event.title}': {event.start_time}"
            )
            return None

        end_time = None
        if event.end_time:
            end_time = self.parse_datetime(event.end_time)
        if end_time is None:
            end_time = start_time + self.DEFAULT_DURATION

        if start_time >= end_time:
            logger.warning(
                f"Event '{event.title}' ends before it starts: "
                f"{start_time.isoformat()} >= {end_time.isoformat()}"
            )
            return None

        point = self._parse_point(event.longitude, event.latitude)
        if point is None:
            logger.warning(
                f"Invalid coordinates for event '{event.title}': "
                f"({event.longitude}, {event.latitude})"
            )
            return None

        title = event.title.strip()[:self.MAX_TITLE_LENGTH]
        description = self.clean_description(event.description)
        if not description:
            description = title

        return NormalizedEvent(
            title=title,
            description=description[:self.MAX_DESCRIPTION_LENGTH],
            start_time=start_time,
            end_time=end_time,
            location=Location(
                name=(event.venue_name or '').strip(),
                address=(event.address or '').strip(),
                point=point,
            ),
            event_type=self.map_event_type(event.category),
            source=source,
            source_id=source_id,
            image_url=event.image_url or None,
            booking_link=event.booking_link or None,
        )

    def _validate_required_fields(self, event: RawEvent) -> bool:
        """
        Validate that required fields are present and non-empty.

        Args:
            event: Raw event to validate

        Returns:
            True if valid, False otherwise
        """
        if not isinstance(event.title, str) or not event.title.strip():
            logger.warning("Event missing required field: title")
            return False

        for field_name in self.OPTIONAL_TEXT_FIELDS:
            value = getattr(event, field_name)
            if value is not None and not isinstance(value, str):
                logger.warning(
                    f"Event '{event.title}' has non-text {field_name}: {value!r}"
                )
                return False

        if event.start_time is None or event.start_time == '':
            logger.warning(
                f"Event '{event.title}' missing required field: start_time"
            )
            return False

        if event.latitude is None or event.longitude is None:
            logger.warning(
                f"Event '{event.title}' missing required field: coordinates"
            )
            return False

        return True

    def parse_datetime(self, value) -> Optional[datetime]:
        """
        Parse a timestamp into an aware UTC datetime.

        Accepts datetime objects, epoch milliseconds, ISO 8601 strings
        (with 'Z' or an offset) and a handful of common formats. Naive
        values are taken as UTC.

        Args:
            value: Timestamp in any supported representation

        Returns:
            Aware UTC datetime or None if parsing fails
        """
        parsed = None

        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        elif isinstance(value, str):
            text = value.strip()
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                for fmt in self.DATETIME_FORMATS:
                    try:
                        parsed = datetime.strptime(text, fmt)
                        break
                    except ValueError:
                        continue

        if parsed is None:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    def _parse_point(self, longitude, latitude) -> Optional[Point]:
        try:
            point = Point(longitude=float(longitude), latitude=float(latitude))
        except (TypeError, ValueError):
            return None
        return point if point.is_valid() else None

    def clean_description(self, description: Optional[str]) -> str:
        """
        Strip markup and collapse whitespace in a description.

        Args:
            description: Plain text or HTML description

        Returns:
            Plain text description
        """
        if not description:
            return ''
        text = BeautifulSoup(description, 'html.parser').get_text(separator=' ')
        return ' '.join(text.split())

    def map_event_type(self, category: Optional[str]) -> EventType:
        """
        Map a provider category onto the fixed EventType enumeration.

        Args:
            category: Free-form provider category

        Returns:
            Matching EventType, COMMUNITY when nothing matches
        """
        if not category:
            return EventType.COMMUNITY

        normalized = category.strip().lower()
        try:
            return EventType(normalized)
        except ValueError:
            pass

        # Match on word prefixes so "Arts" maps to art but "Party" does not
        words = re.findall(r'[a-z]+', normalized)
        for keyword, event_type in self.CATEGORY_KEYWORDS:
            if any(word.startswith(keyword) for word in words):
                return event_type
        return EventType.COMMUNITY
