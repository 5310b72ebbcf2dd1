"""AWS Lambda handler for the local events aggregation service."""
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from geocoding.geocoder import Geocoder, to_center
from notifier.change_notifier import ChangeNotifier
from notifier.sns_transport import SnsChangeListener
from processor.aggregator import Aggregator
from processor.errors import (
    NotFoundError,
    RefreshCancelled,
    StoreError,
    ValidationError,
)
from processor.event_processor import EventProcessor
from processor.models import EventSource, NormalizedEvent, Point, RawEvent
from processor.query_engine import QueryEngine
from settings import Settings
from sources.providers import build_adapters
from storage.dynamodb_store import DynamoDBEventStore
from storage.memory_store import MemoryEventStore


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


logger = logging.getLogger(__name__)

# Seconds of Lambda time kept back when cancelling a refresh near the deadline
CANCEL_MARGIN_SECONDS = 2.0


@dataclass
class Components:
    """Wired service objects, reused across warm invocations."""
    settings: Settings
    store: Any
    notifier: ChangeNotifier
    aggregator: Aggregator
    query_engine: QueryEngine
    geocoder: Geocoder
    processor: EventProcessor


_components: Optional[Components] = None


def build_components(settings: Settings) -> Components:
    """
    Wire the store, adapters, aggregator, query engine and notifier.

    Args:
        settings: Runtime configuration

    Returns:
        Components bundle
    """
    if settings.store_backend == 'memory':
        store = MemoryEventStore()
    else:
        store = DynamoDBEventStore(settings.table_name, region_name=settings.region_name)

    notifier = ChangeNotifier()
    if settings.events_topic_arn:
        notifier.subscribe(
            SnsChangeListener(settings.events_topic_arn, region_name=settings.region_name)
        )

    adapters = build_adapters(
        eventbrite_token=settings.eventbrite_token,
        ticketmaster_api_key=settings.ticketmaster_api_key,
        meetup_token=settings.meetup_token,
        timeout=settings.timeout_seconds,
    )

    return Components(
        settings=settings,
        store=store,
        notifier=notifier,
        aggregator=Aggregator(
            adapters, store, notifier,
            timeout_seconds=settings.refresh_timeout_seconds,
        ),
        query_engine=QueryEngine(store),
        geocoder=Geocoder(
            base_url=settings.geocoder_url,
            user_agent=settings.geocoder_user_agent,
            timeout=settings.timeout_seconds,
        ),
        processor=EventProcessor(),
    )


def get_components(settings: Settings) -> Components:
    global _components
    if _components is None:
        _components = build_components(settings)
    return _components


def reset_components() -> None:
    """Drop cached components so the next invocation rebuilds them."""
    global _components
    _components = None


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*'
        },
        'body': json.dumps(body)
    }


def _error_response(status_code: int, message: str, error: Exception) -> Dict[str, Any]:
    return _response(status_code, {
        'success': False,
        'message': message,
        'error': str(error),
        'error_type': type(error).__name__
    })


def _parse_float(params: Dict[str, str], name: str, default: Optional[float] = None) -> Optional[float]:
    value = params.get(name)
    if value in (None, ''):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got '{value}'")


def _parse_int(params: Dict[str, str], name: str, default: int) -> int:
    value = params.get(name)
    if value in (None, ''):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got '{value}'")


def _parse_date(params: Dict[str, str], name: str) -> Optional[datetime]:
    value = params.get(name)
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO 8601 date, got '{value}'")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_body(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get('body')
    if not body:
        return {}
    if isinstance(body, dict):
        return body
    try:
        parsed = json.loads(body)
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(parsed, dict):
        raise ValidationError("Request body must be a JSON object")
    return parsed


def _center_from_params(components: Components, params: Dict[str, str]) -> Point:
    latitude = _parse_float(params, 'latitude')
    longitude = _parse_float(params, 'longitude')
    if latitude is not None and longitude is not None:
        return Point(longitude=longitude, latitude=latitude)

    address = params.get('address')
    if address:
        center = to_center(components.geocoder.forward_geocode(address))
        if center is None:
            raise ValidationError(f"Could not resolve address '{address}'")
        return center

    raise ValidationError("Latitude and longitude are required")


def _cancel_before_deadline(context: Any) -> tuple:
    """
    Arm a timer that cancels a refresh shortly before Lambda times out.

    Returns:
        Tuple of (cancel event, timer or None)
    """
    cancel_event = threading.Event()
    get_remaining = getattr(context, 'get_remaining_time_in_millis', None)
    if get_remaining is None:
        return cancel_event, None

    remaining_ms = get_remaining()
    if not isinstance(remaining_ms, (int, float)):
        return cancel_event, None

    delay = max(0.0, remaining_ms / 1000.0 - CANCEL_MARGIN_SECONDS)
    timer = threading.Timer(delay, cancel_event.set)
    timer.daemon = True
    timer.start()
    return cancel_event, timer


def _run_refresh(components: Components, center: Point, radius_km: float, context: Any) -> Dict[str, Any]:
    cancel_event, timer = _cancel_before_deadline(context)
    try:
        result = components.aggregator.refresh(center, radius_km, cancel_event=cancel_event)
    finally:
        if timer is not None:
            timer.cancel()
    return result.to_dict()


def handle_refresh(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """POST /events/refresh: fetch from all providers around a point."""
    params = event.get('queryStringParameters') or {}
    center = _center_from_params(components, params)
    radius_km = _parse_float(params, 'radius', components.settings.default_radius_km)

    summary = _run_refresh(components, center, radius_km, context)

    # Address enrichment is optional; a failed lookup yields None
    location = components.geocoder.reverse_geocode(center.latitude, center.longitude)

    return _response(200, {
        'success': True,
        'message': f"Successfully merged {summary['mergedCount']} events",
        'count': summary['mergedCount'],
        'failedSources': summary['failedSources'],
        'location': location.to_dict() if location else None
    })


def handle_query(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """GET /events: paginated events near a point."""
    params = event.get('queryStringParameters') or {}
    center = _center_from_params(components, params)
    radius_km = _parse_float(params, 'radius', components.settings.default_radius_km)

    event_types = None
    if params.get('eventTypes'):
        event_types = [t.strip() for t in params['eventTypes'].split(',') if t.strip()]

    page = components.query_engine.query(
        center,
        radius_km,
        event_types=event_types,
        start_date=_parse_date(params, 'startDate'),
        end_date=_parse_date(params, 'endDate'),
        page=_parse_int(params, 'page', 1),
        page_size=_parse_int(params, 'limit', components.settings.default_page_size),
    )
    body = {'success': True}
    body.update(page.to_dict())
    return _response(200, body)


def _manual_record(components: Components, body: Dict[str, Any]) -> NormalizedEvent:
    """Normalize a request body into a manual event record."""
    location = body.get('location') or {}
    if not isinstance(location, dict):
        raise ValidationError("location must be an object")
    coordinates = location.get('coordinates') or [None, None]
    if isinstance(coordinates, dict):
        coordinates = coordinates.get('coordinates') or [None, None]
    if not isinstance(coordinates, (list, tuple)) or len(coordinates) != 2:
        raise ValidationError("location.coordinates must be [longitude, latitude]")

    raw = RawEvent(
        source=EventSource.MANUAL.value,
        source_id=None,
        title=body.get('title', ''),
        description=body.get('description', ''),
        start_time=body.get('startTime'),
        end_time=body.get('endTime'),
        venue_name=location.get('name', ''),
        address=location.get('address', ''),
        longitude=coordinates[0],
        latitude=coordinates[1],
        category=body.get('eventType', ''),
        image_url=body.get('imageUrl'),
        booking_link=body.get('bookingLink'),
    )
    record = components.processor.normalize(raw)
    if record is None:
        raise ValidationError("Event is missing required fields or has invalid values")
    return record


def _event_id_from_path(event: Dict[str, Any]) -> str:
    event_id = (event.get('pathParameters') or {}).get('id')
    if not event_id:
        event_id = _route_path(event).rsplit('/', 1)[-1]
    return event_id


def handle_get_event(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """GET /events/{id}: a single event."""
    stored = components.store.get_by_id(_event_id_from_path(event))
    return _response(200, {'success': True, 'data': stored.to_dict()})


def handle_create_event(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """POST /events: add a manually entered event."""
    record = _manual_record(components, _parse_body(event))
    stored = components.store.upsert(record)
    components.notifier.publish(1)
    return _response(201, {'success': True, 'data': stored.to_dict()})


def handle_update_event(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """PUT /events/{id}: overwrite a manually entered event."""
    event_id = _event_id_from_path(event)
    record = _manual_record(components, _parse_body(event))
    stored = components.store.replace(event_id, record)
    components.notifier.publish(1)
    return _response(200, {'success': True, 'data': stored.to_dict()})


def handle_geocode(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """POST /locations/geocode: address to coordinates."""
    address = _parse_body(event).get('address')
    if not address:
        raise ValidationError("Address is required")
    result = components.geocoder.forward_geocode(address)
    if result is None:
        raise NotFoundError(f"No location found for '{address}'")
    return _response(200, {'success': True, 'data': result.to_dict()})


def handle_reverse_geocode(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """GET /locations/reverse-geocode: coordinates to address."""
    params = event.get('queryStringParameters') or {}
    latitude = _parse_float(params, 'latitude')
    longitude = _parse_float(params, 'longitude')
    if latitude is None or longitude is None:
        raise ValidationError("Latitude and longitude are required")
    result = components.geocoder.reverse_geocode(latitude, longitude)
    if result is None:
        raise NotFoundError(f"No address found for ({latitude}, {longitude})")
    return _response(200, {'success': True, 'data': result.to_dict()})


def _route_path(event: Dict[str, Any]) -> str:
    path = (event.get('path') or '/').rstrip('/')
    if path.startswith('/api/'):
        path = path[len('/api'):]
    return path or '/'


def _select_handler(method: str, path: str):
    if path == '/events':
        return {'GET': handle_query, 'POST': handle_create_event}.get(method)
    if path == '/events/refresh':
        return handle_refresh if method == 'POST' else None
    if path.startswith('/events/') and path.count('/') == 2:
        return {'GET': handle_get_event, 'PUT': handle_update_event}.get(method)
    if path == '/locations/geocode':
        return handle_geocode if method == 'POST' else None
    if path == '/locations/reverse-geocode':
        return handle_reverse_geocode if method == 'GET' else None
    return None


def handle_scheduled_refresh(components: Components, event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """EventBridge schedule: refresh around the configured default center."""
    settings = components.settings
    if settings.default_latitude is None or settings.default_longitude is None:
        raise ValidationError("DEFAULT_LATITUDE and DEFAULT_LONGITUDE must be set for scheduled refresh")

    center = Point(longitude=settings.default_longitude, latitude=settings.default_latitude)
    summary = _run_refresh(components, center, settings.default_radius_km, context)
    return _response(200, {
        'success': True,
        'message': 'Scheduled refresh completed',
        'statistics': summary
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    API Gateway proxy events are routed by method and path; any other
    event (an EventBridge schedule) runs a refresh around the default
    center.

    Args:
        event: API Gateway proxy event or EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode, headers and JSON body
    """
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    start_time = time.time()
    method = (event.get('httpMethod') or '').upper()
    path = _route_path(event)
    logger.info(f"Lambda execution started: {method or 'SCHEDULED'} {path if method else ''}".rstrip())

    try:
        components = get_components(settings)

        if method:
            handler = _select_handler(method, path)
            if handler is None:
                return _response(404, {
                    'success': False,
                    'message': f"Route not found: {method} {path}"
                })
        else:
            handler = handle_scheduled_refresh

        response = handler(components, event, context)

    except ValidationError as e:
        logger.warning(f"Rejected request: {e}")
        return _error_response(400, 'Invalid request', e)
    except NotFoundError as e:
        logger.info(f"Not found: {e}")
        return _error_response(404, 'Not found', e)
    except RefreshCancelled as e:
        logger.warning(f"Refresh cancelled: {e}")
        return _error_response(503, 'Refresh cancelled before completion', e)
    except StoreError as e:
        logger.error(
            f"Event store failure: {e}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(500, 'Event store unavailable', e)
    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        return _error_response(500, 'An error occurred', e)

    duration = time.time() - start_time
    logger.info(
        f"Lambda execution completed with status {response['statusCode']} "
        f"in {duration:.2f}s"
    )
    return response
