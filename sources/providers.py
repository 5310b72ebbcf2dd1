"""Adapters for the Eventbrite, Ticketmaster and Meetup search APIs."""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from processor.errors import AdapterError
from processor.event_processor import EventProcessor
from processor.models import EventSource, NormalizedEvent, Point, RawEvent
from sources.base import SourceAdapter, fetch_json, normalize_items

logger = logging.getLogger(__name__)

KM_PER_MILE = 1.609344


class TicketmasterAdapter:
    """Ticketmaster Discovery API."""

    name = EventSource.TICKETMASTER.value
    BASE_URL = "https://app.ticketmaster.com/discovery/v2/events.json"
    PAGE_SIZE = 200

    def __init__(
        self,
        api_key: str,
        timeout: float = 30,
        base_delay: float = 1,
        processor: Optional[EventProcessor] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.base_delay = base_delay
        self.processor = processor or EventProcessor()

    def fetch(self, center: Point, radius_km: float) -> List[NormalizedEvent]:
        params = {
            'apikey': self.api_key,
            'latlong': f"{center.latitude},{center.longitude}",
            'radius': max(1, int(round(radius_km))),
            'unit': 'km',
            'size': self.PAGE_SIZE,
            'sort': 'date,asc',
        }
        payload = fetch_json(
            self.name, self.BASE_URL, params=params,
            timeout=self.timeout, base_delay=self.base_delay,
        )
        if not isinstance(payload, dict):
            raise AdapterError(self.name, "unexpected payload shape")

        # No '_embedded' key means no results
        items = payload.get('_embedded', {}).get('events', [])
        if not isinstance(items, list):
            raise AdapterError(self.name, "'events' is not a list")

        events = normalize_items(self.name, items, self._to_raw, self.processor)
        logger.info(f"Fetched {len(events)} events from {self.name}")
        return events

    def _to_raw(self, item: dict) -> RawEvent:
        venue = item.get('_embedded', {}).get('venues', [{}])[0]
        location = venue.get('location', {})
        address = ', '.join(
            part for part in [
                venue.get('address', {}).get('line1'),
                venue.get('city', {}).get('name'),
                venue.get('state', {}).get('stateCode'),
            ] if part
        )
        classifications = item.get('classifications') or [{}]
        category = classifications[0].get('segment', {}).get('name', '')
        images = item.get('images') or []

        return RawEvent(
            source=self.name,
            source_id=item['id'],
            title=item.get('name', ''),
            description=item.get('info') or item.get('pleaseNote') or '',
            start_time=item['dates']['start'].get('dateTime'),
            end_time=item['dates'].get('end', {}).get('dateTime'),
            venue_name=venue.get('name', ''),
            address=address,
            latitude=location.get('latitude'),
            longitude=location.get('longitude'),
            category=category,
            image_url=images[0].get('url') if images else None,
            booking_link=item.get('url'),
        )


class EventbriteAdapter:
    """Eventbrite event search API."""

    name = EventSource.EVENTBRITE.value
    BASE_URL = "https://www.eventbriteapi.com/v3/events/search/"

    def __init__(
        self,
        token: str,
        timeout: float = 30,
        base_delay: float = 1,
        processor: Optional[EventProcessor] = None,
    ):
        self.token = token
        self.timeout = timeout
        self.base_delay = base_delay
        self.processor = processor or EventProcessor()

    def fetch(self, center: Point, radius_km: float) -> List[NormalizedEvent]:
        params = {
            'location.latitude': center.latitude,
            'location.longitude': center.longitude,
            'location.within': f"{max(1, int(round(radius_km)))}km",
            'expand': 'venue,category',
        }
        headers = {'Authorization': f"Bearer {self.token}"}
        payload = fetch_json(
            self.name, self.BASE_URL, params=params, headers=headers,
            timeout=self.timeout, base_delay=self.base_delay,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get('events', []), list):
            raise AdapterError(self.name, "unexpected payload shape")

        events = normalize_items(
            self.name, payload.get('events', []), self._to_raw, self.processor
        )
        logger.info(f"Fetched {len(events)} events from {self.name}")
        return events

    def _to_raw(self, item: dict) -> RawEvent:
        venue = item.get('venue') or {}
        address = venue.get('address') or {}
        description = item.get('description') or {}
        category = item.get('category') or {}
        logo = item.get('logo') or {}

        return RawEvent(
            source=self.name,
            source_id=item['id'],
            title=(item.get('name') or {}).get('text', ''),
            description=description.get('html') or description.get('text') or '',
            start_time=item['start']['utc'],
            end_time=(item.get('end') or {}).get('utc'),
            venue_name=venue.get('name', ''),
            address=address.get('localized_address_display', ''),
            latitude=venue.get('latitude', address.get('latitude')),
            longitude=venue.get('longitude', address.get('longitude')),
            category=category.get('short_name') or category.get('name') or '',
            image_url=logo.get('url'),
            booking_link=item.get('url'),
        )


class MeetupAdapter:
    """Meetup upcoming events API."""

    name = EventSource.MEETUP.value
    BASE_URL = "https://api.meetup.com/find/upcoming_events"

    def __init__(
        self,
        token: str,
        timeout: float = 30,
        base_delay: float = 1,
        processor: Optional[EventProcessor] = None,
    ):
        self.token = token
        self.timeout = timeout
        self.base_delay = base_delay
        self.processor = processor or EventProcessor()

    def fetch(self, center: Point, radius_km: float) -> List[NormalizedEvent]:
        params = {
            'lat': center.latitude,
            'lon': center.longitude,
            # Meetup takes the radius in miles
            'radius': round(radius_km / KM_PER_MILE, 1),
            'page': 200,
        }
        headers = {'Authorization': f"Bearer {self.token}"}
        payload = fetch_json(
            self.name, self.BASE_URL, params=params, headers=headers,
            timeout=self.timeout, base_delay=self.base_delay,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get('events', []), list):
            raise AdapterError(self.name, "unexpected payload shape")

        events = normalize_items(
            self.name, payload.get('events', []), self._to_raw, self.processor
        )
        logger.info(f"Fetched {len(events)} events from {self.name}")
        return events

    def _to_raw(self, item: dict) -> RawEvent:
        venue = item.get('venue') or {}
        start = datetime.fromtimestamp(item['time'] / 1000.0, tz=timezone.utc)
        end = None
        if item.get('duration'):
            end = start + timedelta(milliseconds=item['duration'])
        address = ', '.join(
            part for part in [venue.get('address_1'), venue.get('city')] if part
        )
        photo = item.get('featured_photo') or {}

        return RawEvent(
            source=self.name,
            source_id=item['id'],
            title=item.get('name', ''),
            description=item.get('description', ''),
            start_time=start,
            end_time=end,
            venue_name=venue.get('name', ''),
            address=address,
            latitude=venue.get('lat'),
            longitude=venue.get('lon'),
            category='community',
            image_url=photo.get('photo_link'),
            booking_link=item.get('link'),
        )


def build_adapters(
    eventbrite_token: Optional[str] = None,
    ticketmaster_api_key: Optional[str] = None,
    meetup_token: Optional[str] = None,
    timeout: float = 30,
) -> List[SourceAdapter]:
    """
    Build the fixed adapter list for every provider with a credential.

    Args:
        eventbrite_token: Eventbrite OAuth token
        ticketmaster_api_key: Ticketmaster consumer key
        meetup_token: Meetup OAuth token
        timeout: HTTP timeout in seconds for each request

    Returns:
        List of configured adapters
    """
    processor = EventProcessor()
    adapters: List[SourceAdapter] = []

    if eventbrite_token:
        adapters.append(EventbriteAdapter(eventbrite_token, timeout=timeout, processor=processor))
    if ticketmaster_api_key:
        adapters.append(TicketmasterAdapter(ticketmaster_api_key, timeout=timeout, processor=processor))
    if meetup_token:
        adapters.append(MeetupAdapter(meetup_token, timeout=timeout, processor=processor))

    if not adapters:
        logger.warning("No event providers configured")
    else:
        logger.info(f"Configured providers: {', '.join(a.name for a in adapters)}")
    return adapters
