"""Integration tests for Lambda handler."""
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

import lambda_function
from lambda_function import lambda_handler, setup_logging
from processor.errors import AdapterError, StoreError
from storage.base import make_event_id
from processor.models import (
    EventSource,
    EventType,
    GeocodingResult,
    Location,
    NormalizedEvent,
    Point,
    ReverseGeocodingResult,
)

CENTER = Point(longitude=-122.4194, latitude=37.7749)
BASE_TIME = datetime(2026, 11, 1, 19, 0, tzinfo=timezone.utc)


MANUAL_EVENT = {
    'title': 'Book Club',
    'description': "Discuss this month's book selection.",
    'startTime': '2026-11-06T18:00:00Z',
    'endTime': '2026-11-06T20:00:00Z',
    'location': {
        'name': 'Community Library',
        'address': '303 Book St, San Francisco, CA',
        'coordinates': [-122.4294, 37.7649],
    },
    'eventType': 'community',
}


def make_record(source, source_id, hours=0):
    start = BASE_TIME + timedelta(hours=hours)
    return NormalizedEvent(
        title=f'Event {source_id}',
        description='Description',
        start_time=start,
        end_time=start + timedelta(hours=2),
        location=Location(name='Venue', address='Address', point=CENTER),
        event_type=EventType.COMMUNITY,
        source=source,
        source_id=source_id,
    )


class FakeAdapter:
    def __init__(self, name, records=None, error=None):
        self.name = name
        self.records = records or []
        self.error = error

    def fetch(self, center, radius_km):
        if self.error:
            raise self.error
        return list(self.records)


@pytest.fixture
def mock_env():
    """Set up environment variables for testing."""
    env_vars = {
        'STORE_BACKEND': 'memory',
        'LOG_LEVEL': 'INFO',
        'DEFAULT_LATITUDE': '37.7749',
        'DEFAULT_LONGITUDE': '-122.4194',
        'DEFAULT_RADIUS_KM': '10',
        'REFRESH_TIMEOUT_SECONDS': '5',
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.aws_request_id = 'test-request-id'
    context.get_remaining_time_in_millis.return_value = 30000
    return context


@pytest.fixture
def adapters():
    return [
        FakeAdapter('eventbrite', [make_record(EventSource.EVENTBRITE, 'eb-123', hours=24)]),
        FakeAdapter('ticketmaster', [make_record(EventSource.TICKETMASTER, 'tm-789', hours=1)]),
        FakeAdapter('meetup', error=AdapterError('meetup', 'HTTP 503')),
    ]


@pytest.fixture
def geocoder():
    geocoder = Mock()
    geocoder.reverse_geocode.return_value = ReverseGeocodingResult(
        address='123 Main St', city='San Francisco', state='CA',
        country='USA', postal_code='94105',
        formatted_address='123 Main St, San Francisco, CA 94105, USA',
    )
    geocoder.forward_geocode.return_value = GeocodingResult(
        latitude=37.7749, longitude=-122.4194,
        formatted_address='San Francisco, CA, USA',
    )
    return geocoder


@pytest.fixture(autouse=True)
def components(mock_env, adapters, geocoder):
    """Build fresh components with fake adapters and geocoder."""
    lambda_function.reset_components()
    with patch('lambda_function.build_adapters', return_value=adapters), \
            patch('lambda_function.Geocoder', return_value=geocoder):
        yield
    lambda_function.reset_components()


def api_event(method, path, params=None, body=None):
    return {
        'httpMethod': method,
        'path': path,
        'queryStringParameters': params,
        'body': json.dumps(body) if body is not None else None,
    }


class TestLambdaHandler:
    """Test cases for Lambda handler."""

    def test_refresh_then_query(self, mock_context):
        """Test refresh with a failing provider followed by a query."""
        response = lambda_handler(
            api_event('POST', '/api/events/refresh',
                      {'latitude': '37.7749', 'longitude': '-122.4194', 'radius': '10'}),
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['success'] is True
        assert body['count'] == 2
        assert body['failedSources'] == ['meetup']
        assert body['location']['city'] == 'San Francisco'

        response = lambda_handler(
            api_event('GET', '/api/events',
                      {'latitude': '37.7749', 'longitude': '-122.4194', 'radius': '10',
                       'page': '1', 'limit': '20'}),
            mock_context
        )

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['total'] == 2
        assert body['pages'] == 1
        assert [item['sourceId'] for item in body['data']] == ['tm-789', 'eb-123']

    def test_refresh_twice_does_not_duplicate(self, mock_context):
        params = {'latitude': '37.7749', 'longitude': '-122.4194', 'radius': '10'}
        for _ in range(2):
            response = lambda_handler(api_event('POST', '/events/refresh', params), mock_context)
            assert json.loads(response['body'])['count'] == 2

        store = lambda_function.get_components(lambda_function.Settings.from_env()).store
        assert store.count() == 2

    def test_refresh_without_address_enrichment(self, mock_context, geocoder):
        """Test a failed reverse lookup does not fail the refresh."""
        geocoder.reverse_geocode.return_value = None

        response = lambda_handler(
            api_event('POST', '/events/refresh', {'latitude': '37.7749', 'longitude': '-122.4194'}),
            mock_context
        )

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['location'] is None

    def test_query_with_filters(self, mock_context):
        lambda_handler(
            api_event('POST', '/events/refresh', {'latitude': '37.7749', 'longitude': '-122.4194'}),
            mock_context
        )

        response = lambda_handler(
            api_event('GET', '/events', {
                'latitude': '37.7749', 'longitude': '-122.4194',
                'eventTypes': 'community,art',
                'startDate': '2026-11-02T00:00:00Z',
            }),
            mock_context
        )

        body = json.loads(response['body'])
        assert body['total'] == 1
        assert body['data'][0]['sourceId'] == 'eb-123'

    def test_query_by_address(self, mock_context, geocoder):
        response = lambda_handler(
            api_event('GET', '/events', {'address': 'San Francisco'}),
            mock_context
        )

        assert response['statusCode'] == 200
        geocoder.forward_geocode.assert_called_once_with('San Francisco')

    def test_query_unresolvable_address(self, mock_context, geocoder):
        geocoder.forward_geocode.return_value = None

        response = lambda_handler(
            api_event('GET', '/events', {'address': 'Atlantis'}),
            mock_context
        )

        assert response['statusCode'] == 400

    @pytest.mark.parametrize('params', [
        None,
        {'latitude': '37.7749'},
        {'latitude': 'abc', 'longitude': '-122.4194'},
        {'latitude': '37.7749', 'longitude': '-122.4194', 'radius': '0'},
        {'latitude': '37.7749', 'longitude': '-122.4194', 'page': '0'},
        {'latitude': '37.7749', 'longitude': '-122.4194', 'eventTypes': 'opera'},
        {'latitude': '37.7749', 'longitude': '-122.4194', 'startDate': 'tomorrow'},
    ])
    def test_query_validation_errors(self, mock_context, params):
        response = lambda_handler(api_event('GET', '/events', params), mock_context)

        assert response['statusCode'] == 400
        body = json.loads(response['body'])
        assert body['success'] is False
        assert body['error_type'] == 'ValidationError'

    def test_get_event_by_id(self, mock_context):
        lambda_handler(
            api_event('POST', '/events/refresh', {'latitude': '37.7749', 'longitude': '-122.4194'}),
            mock_context
        )
        event_id = make_event_id('ticketmaster', 'tm-789')

        response = lambda_handler(api_event('GET', f'/api/events/{event_id}'), mock_context)

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['data']['id'] == event_id

    def test_get_event_not_found(self, mock_context):
        response = lambda_handler(api_event('GET', '/events/missing'), mock_context)

        assert response['statusCode'] == 404

    def test_create_manual_event(self, mock_context):
        notifier = lambda_function.get_components(lambda_function.Settings.from_env()).notifier
        subscription = notifier.subscribe()

        first = lambda_handler(api_event('POST', '/events', body=MANUAL_EVENT), mock_context)
        second = lambda_handler(api_event('POST', '/events', body=MANUAL_EVENT), mock_context)

        assert first['statusCode'] == 201
        created = json.loads(first['body'])['data']
        assert created['source'] == 'manual'
        assert created['sourceId'] is None
        assert json.loads(second['body'])['data']['id'] != created['id']
        assert subscription.next_signal(timeout=1).change_count == 1

    def test_create_manual_event_invalid(self, mock_context):
        response = lambda_handler(
            api_event('POST', '/events', body={'title': 'No time or place'}),
            mock_context
        )

        assert response['statusCode'] == 400

    @pytest.mark.parametrize('overrides', [
        {'title': 123},
        {'description': ['not', 'text']},
        {'eventType': 7},
        {'location': 'somewhere'},
        {'location': {'name': 'Library', 'coordinates': 5}},
        {'location': {'name': 'Library', 'coordinates': 'ab'}},
        {'location': {'name': 'Library', 'coordinates': [-122.4294]}},
    ])
    def test_create_manual_event_wrong_field_types(self, mock_context, overrides):
        """Test wrongly typed body fields are rejected as validation errors."""
        body = dict(MANUAL_EVENT, **overrides)

        response = lambda_handler(api_event('POST', '/events', body=body), mock_context)

        assert response['statusCode'] == 400
        assert json.loads(response['body'])['error_type'] == 'ValidationError'

    @pytest.mark.parametrize('radius', ['nan', 'inf', '-inf'])
    def test_non_finite_radius_rejected(self, mock_context, radius):
        params = {'latitude': '37.7749', 'longitude': '-122.4194', 'radius': radius}

        query = lambda_handler(api_event('GET', '/events', params), mock_context)
        refresh = lambda_handler(api_event('POST', '/events/refresh', params), mock_context)

        assert query['statusCode'] == 400
        assert refresh['statusCode'] == 400

    def test_update_manual_event(self, mock_context):
        created = json.loads(
            lambda_handler(api_event('POST', '/events', body=MANUAL_EVENT), mock_context)['body']
        )['data']
        notifier = lambda_function.get_components(lambda_function.Settings.from_env()).notifier
        subscription = notifier.subscribe()

        body = dict(MANUAL_EVENT, title='Book Club - Rescheduled', startTime='2026-11-07T18:00:00Z',
                    endTime='2026-11-07T20:00:00Z')
        response = lambda_handler(
            api_event('PUT', f"/api/events/{created['id']}", body=body), mock_context
        )

        assert response['statusCode'] == 200
        updated = json.loads(response['body'])['data']
        assert updated['id'] == created['id']
        assert updated['title'] == 'Book Club - Rescheduled'
        assert updated['createdAt'] == created['createdAt']
        assert subscription.next_signal(timeout=1).change_count == 1

        fetched = lambda_handler(api_event('GET', f"/events/{created['id']}"), mock_context)
        assert json.loads(fetched['body'])['data']['startTime'].startswith('2026-11-07T18:00:00')

    def test_update_missing_event(self, mock_context):
        response = lambda_handler(
            api_event('PUT', '/events/missing', body=MANUAL_EVENT), mock_context
        )

        assert response['statusCode'] == 404

    def test_update_invalid_body(self, mock_context):
        created = json.loads(
            lambda_handler(api_event('POST', '/events', body=MANUAL_EVENT), mock_context)['body']
        )['data']

        response = lambda_handler(
            api_event('PUT', f"/events/{created['id']}", body={'title': 'No time'}), mock_context
        )

        assert response['statusCode'] == 400


    def test_geocode(self, mock_context):
        response = lambda_handler(
            api_event('POST', '/locations/geocode', body={'address': 'San Francisco'}),
            mock_context
        )

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['data']['latitude'] == 37.7749

    def test_geocode_requires_address(self, mock_context):
        response = lambda_handler(api_event('POST', '/locations/geocode', body={}), mock_context)

        assert response['statusCode'] == 400

    def test_reverse_geocode(self, mock_context):
        response = lambda_handler(
            api_event('GET', '/locations/reverse-geocode',
                      {'latitude': '37.7749', 'longitude': '-122.4194'}),
            mock_context
        )

        assert response['statusCode'] == 200
        assert json.loads(response['body'])['data']['postalCode'] == '94105'

    def test_unknown_route(self, mock_context):
        response = lambda_handler(api_event('DELETE', '/events/abc'), mock_context)

        assert response['statusCode'] == 404

    def test_scheduled_refresh(self, mock_context):
        """Test an EventBridge event refreshes around the default center."""
        response = lambda_handler({'source': 'aws.events'}, mock_context)

        assert response['statusCode'] == 200
        body = json.loads(response['body'])
        assert body['statistics'] == {'mergedCount': 2, 'failedSources': ['meetup']}

    def test_scheduled_refresh_without_default_center(self, mock_context):
        with patch.dict(os.environ, {'DEFAULT_LATITUDE': '', 'DEFAULT_LONGITUDE': ''}):
            lambda_function.reset_components()
            response = lambda_handler({'source': 'aws.events'}, mock_context)

        assert response['statusCode'] == 400

    def test_store_failure_reported(self, mock_context):
        """Test a store outage fails the refresh outright."""
        store = lambda_function.get_components(lambda_function.Settings.from_env()).store
        with patch.object(store, 'upsert', side_effect=StoreError('table unavailable')):
            response = lambda_handler(
                api_event('POST', '/events/refresh',
                          {'latitude': '37.7749', 'longitude': '-122.4194'}),
                mock_context
            )

        assert response['statusCode'] == 500
        body = json.loads(response['body'])
        assert body['error_type'] == 'StoreError'

    def test_unexpected_error(self, mock_context):
        with patch('lambda_function.handle_query', side_effect=RuntimeError('boom')):
            response = lambda_handler(
                api_event('GET', '/events', {'latitude': '1', 'longitude': '1'}),
                mock_context
            )

        assert response['statusCode'] == 500
        assert json.loads(response['body'])['error'] == 'boom'


def test_setup_logging_installs_json_formatter():
    setup_logging('DEBUG')

    root_logger = logging.getLogger()
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, lambda_function.JsonFormatter)
    assert root_logger.level == logging.DEBUG
