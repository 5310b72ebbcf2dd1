"""DynamoDB-backed event store."""
import logging
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from processor.errors import NotFoundError, StoreError, ValidationError
from processor.geo import covering_cells, grid_cell
from processor.models import (
    EventFilter,
    EventSource,
    EventType,
    Location,
    NormalizedEvent,
    Point,
    StoredEvent,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from storage.base import make_event_id, select_events

logger = logging.getLogger(__name__)


class DynamoDBEventStore:
    """
    Event store on a DynamoDB table keyed by event_id.

    Provider records get an id derived from their natural key, so an
    upsert is one UpdateItem call: DynamoDB applies it atomically and
    serializes concurrent writes to the same item. Writes to different
    items never contend.
    """

    TYPE_INDEX = 'event-type-start-index'
    GEO_INDEX = 'geo-cell-start-index'
    START_INDEX = 'start-time-index'

    # Single partition of the start-time index
    RECORD_KIND = 'event'

    def __init__(
        self,
        table_name: str,
        region_name: Optional[str] = None,
        clock: Optional[Callable] = None,
    ):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region, defaults to the environment's
            clock: Callable returning the current aware datetime
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        self._clock = clock or utc_now
        logger.info(f"Initialized DynamoDBEventStore for table: {table_name}")

    def create_table(self) -> None:
        """Create the events table with its type, grid-cell and start-time indexes."""
        logger.info(f"Creating DynamoDB table: {self.table_name}")
        try:
            self.table = self.dynamodb.create_table(
                TableName=self.table_name,
                KeySchema=[
                    {'AttributeName': 'event_id', 'KeyType': 'HASH'}
                ],
                AttributeDefinitions=[
                    {'AttributeName': 'event_id', 'AttributeType': 'S'},
                    {'AttributeName': 'event_type', 'AttributeType': 'S'},
                    {'AttributeName': 'geo_cell', 'AttributeType': 'S'},
                    {'AttributeName': 'record_kind', 'AttributeType': 'S'},
                    {'AttributeName': 'start_time', 'AttributeType': 'S'}
                ],
                GlobalSecondaryIndexes=[
                    self._start_time_index(self.TYPE_INDEX, 'event_type'),
                    self._start_time_index(self.GEO_INDEX, 'geo_cell'),
                    self._start_time_index(self.START_INDEX, 'record_kind'),
                ],
                BillingMode='PAY_PER_REQUEST'
            )
            self.table.meta.client.get_waiter('table_exists').wait(
                TableName=self.table_name
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error creating DynamoDB table: {e}")
            raise StoreError(f"Could not create table {self.table_name}: {e}") from e

    @staticmethod
    def _start_time_index(index_name: str, partition_attribute: str) -> Dict[str, Any]:
        return {
            'IndexName': index_name,
            'KeySchema': [
                {'AttributeName': partition_attribute, 'KeyType': 'HASH'},
                {'AttributeName': 'start_time', 'KeyType': 'RANGE'}
            ],
            'Projection': {'ProjectionType': 'ALL'}
        }

    def upsert(self, record: NormalizedEvent) -> StoredEvent:
        """
        Insert or update an event by natural key.

        Args:
            record: Normalized event

        Returns:
            The stored version of the record

        Raises:
            StoreError: If the write fails
        """
        key = record.natural_key
        if key is None:
            return self._insert(record)

        event_id = make_event_id(*key)
        try:
            response = self.table.update_item(
                Key={'event_id': event_id},
                ReturnValues='ALL_NEW',
                **self._build_update(record, format_timestamp(self._clock()))
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error upserting event {key[0]}/{key[1]}: {e}")
            raise StoreError(f"Upsert failed for {key[0]}/{key[1]}: {e}") from e

        return self._item_to_stored_event(response['Attributes'])

    def _insert(self, record: NormalizedEvent) -> StoredEvent:
        now = format_timestamp(self._clock())
        item = self._record_to_item(record)
        item.update({
            'event_id': uuid.uuid4().hex,
            'created_at': now,
            'updated_at': now,
        })
        try:
            self.table.put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(event_id)'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error inserting event '{record.title}': {e}")
            raise StoreError(f"Insert failed for '{record.title}': {e}") from e
        return self._item_to_stored_event(item)

    def replace(self, event_id: str, record: NormalizedEvent) -> StoredEvent:
        """
        Replace the record stored under an explicit id.

        Raises:
            NotFoundError: If no record has this id
            ValidationError: If the record's natural key belongs to another id
            StoreError: If the write fails
        """
        key = record.natural_key
        if key is not None and make_event_id(*key) != event_id:
            raise ValidationError(
                f"Record with key {key[0]}/{key[1]} cannot be stored under id {event_id}"
            )

        try:
            response = self.table.update_item(
                Key={'event_id': event_id},
                ConditionExpression='attribute_exists(event_id)',
                ReturnValues='ALL_NEW',
                **self._build_update(record, format_timestamp(self._clock()))
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                raise NotFoundError(f"Event {event_id} not found") from e
            logger.error(f"Error replacing event {event_id}: {e}")
            raise StoreError(f"Replace failed for {event_id}: {e}") from e
        except BotoCoreError as e:
            logger.error(f"Error replacing event {event_id}: {e}")
            raise StoreError(f"Replace failed for {event_id}: {e}") from e

        return self._item_to_stored_event(response['Attributes'])

    def get_by_id(self, event_id: str) -> StoredEvent:
        """
        Look up an event by id.

        Raises:
            NotFoundError: If no record has this id
            StoreError: If the read fails
        """
        try:
            response = self.table.get_item(Key={'event_id': event_id})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading event {event_id}: {e}")
            raise StoreError(f"Lookup failed for {event_id}: {e}") from e

        item = response.get('Item')
        if item is None:
            raise NotFoundError(f"Event {event_id} not found")
        return self._item_to_stored_event(item)

    def query(self, event_filter: EventFilter) -> Tuple[List[StoredEvent], int]:
        """
        Return the requested slice of matching events and the match count.

        Candidates come from an index query, never a table scan: the type
        index when types are given, otherwise the grid cells covering the
        search circle, or the start-time index when the circle spans too
        many cells. Start-time bounds are part of every key condition.
        Distance, ordering and slicing run on the returned candidates.

        Raises:
            StoreError: If the read fails
        """
        try:
            if event_filter.event_types:
                partitions = [
                    (self.TYPE_INDEX, 'event_type', event_type.value)
                    for event_type in sorted(event_filter.event_types, key=lambda t: t.value)
                ]
            else:
                cells = covering_cells(event_filter.center, event_filter.radius_km)
                if cells is None:
                    partitions = [(self.START_INDEX, 'record_kind', self.RECORD_KIND)]
                else:
                    partitions = [(self.GEO_INDEX, 'geo_cell', cell) for cell in cells]

            items = []
            for index_name, attribute, value in partitions:
                items.extend(self._query_index(index_name, attribute, value, event_filter))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error querying DynamoDB table: {e}")
            raise StoreError(f"Query failed: {e}") from e

        candidates = [self._item_to_stored_event(item) for item in items]
        logger.debug(
            f"Query read {len(partitions)} index partitions, "
            f"{len(candidates)} candidates from DynamoDB"
        )
        return select_events(candidates, event_filter)

    def count(self) -> int:
        try:
            return len(self._paginate(self.table.scan, {'ProjectionExpression': 'event_id'}))
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Count failed: {e}") from e

    def _query_index(self, index_name: str, attribute: str, value: str,
                     event_filter: EventFilter) -> List[dict]:
        condition = Key(attribute).eq(value)
        start, end = self._time_bounds(event_filter)
        if start and end:
            condition = condition & Key('start_time').between(start, end)
        elif start:
            condition = condition & Key('start_time').gte(start)
        elif end:
            condition = condition & Key('start_time').lte(end)

        return self._paginate(self.table.query, {
            'IndexName': index_name,
            'KeyConditionExpression': condition,
        })

    def _time_bounds(self, event_filter: EventFilter) -> Tuple[Optional[str], Optional[str]]:
        start = format_timestamp(event_filter.start_date) if event_filter.start_date else None
        end = format_timestamp(event_filter.end_date) if event_filter.end_date else None
        return start, end

    def _paginate(self, operation: Callable, kwargs: Dict[str, Any]) -> List[dict]:
        response = operation(**kwargs)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = operation(
                ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
            )
            items.extend(response.get('Items', []))
        return items

    def _build_update(self, record: NormalizedEvent, now: str) -> Dict[str, Any]:
        """
        Build an UpdateItem expression that replaces every record field.

        Absent optional fields are removed so no value from an earlier
        write survives. created_at is only set on first write.
        """
        set_parts = []
        remove_parts = []
        names = {'#created_at': 'created_at', '#updated_at': 'updated_at'}
        values: Dict[str, Any] = {':now': now}

        for index, (name, value) in enumerate(sorted(self._record_attributes(record).items())):
            placeholder = f'#f{index}'
            names[placeholder] = name
            if value is None:
                remove_parts.append(placeholder)
            else:
                set_parts.append(f'{placeholder} = :v{index}')
                values[f':v{index}'] = value

        set_parts.append('#created_at = if_not_exists(#created_at, :now)')
        set_parts.append('#updated_at = :now')

        expression = 'SET ' + ', '.join(set_parts)
        if remove_parts:
            expression += ' REMOVE ' + ', '.join(remove_parts)

        return {
            'UpdateExpression': expression,
            'ExpressionAttributeNames': names,
            'ExpressionAttributeValues': values,
        }

    def _record_attributes(self, record: NormalizedEvent) -> Dict[str, Any]:
        point = record.location.point
        return {
            'title': record.title,
            'description': record.description,
            'start_time': format_timestamp(record.start_time),
            'end_time': format_timestamp(record.end_time),
            'location_name': record.location.name,
            'location_address': record.location.address,
            'longitude': Decimal(str(point.longitude)),
            'latitude': Decimal(str(point.latitude)),
            'event_type': record.event_type.value,
            'source': record.source.value,
            'source_id': record.source_id,
            'image_url': record.image_url,
            'booking_link': record.booking_link,
            'geo_cell': grid_cell(point),
            'record_kind': self.RECORD_KIND,
        }

    def _record_to_item(self, record: NormalizedEvent) -> dict:
        """
        Convert NormalizedEvent to a DynamoDB item.

        Args:
            record: Normalized event

        Returns:
            DynamoDB item dictionary without empty optional fields
        """
        return {
            name: value
            for name, value in self._record_attributes(record).items()
            if value is not None
        }

    def _item_to_stored_event(self, item: dict) -> StoredEvent:
        """
        Convert DynamoDB item to StoredEvent object.

        Raises:
            StoreError: If the item is missing fields or holds invalid values
        """
        try:
            record = NormalizedEvent(
                title=item['title'],
                description=item['description'],
                start_time=parse_timestamp(item['start_time']),
                end_time=parse_timestamp(item['end_time']),
                location=Location(
                    name=item.get('location_name', ''),
                    address=item.get('location_address', ''),
                    point=Point(
                        longitude=float(item['longitude']),
                        latitude=float(item['latitude']),
                    ),
                ),
                event_type=EventType(item['event_type']),
                source=EventSource(item['source']),
                source_id=item.get('source_id'),
                image_url=item.get('image_url'),
                booking_link=item.get('booking_link'),
            )
            return StoredEvent(
                event_id=item['event_id'],
                record=record,
                created_at=parse_timestamp(item['created_at']),
                updated_at=parse_timestamp(item['updated_at']),
            )
        except (KeyError, ValueError) as e:
            logger.error(f"Failed to convert item {item.get('event_id')} to StoredEvent: {e}")
            raise StoreError(f"Corrupt item {item.get('event_id')}: {e}") from e
