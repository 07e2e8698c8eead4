"""DynamoDB-backed local cache of calendar events and pending deletions."""
import logging
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import boto3
from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from processor.ical_codec import event_start, format_instant
from processor.models import (
    CREATION_SOURCE_CALDAV,
    LOCATION_FIELDS,
    PROVENANCE_FIELDS,
    SYNC_STATUS_SYNCED,
    CalendarEvent,
    DeletedEventRecord,
)

logger = logging.getLogger(__name__)

Bound = Union[date, datetime]

STRING_FIELDS = (
    'title', 'date', 'time', 'start', 'end', 'dtend', 'duration', 'timezone',
    'description', 'location', 'organizer', 'status', 'visibility',
    'transparency', 'url', 'rrule', 'created', 'last_modified',
)
LIST_FIELDS = ('attendees', 'categories', 'attachments')
INT_FIELDS = ('priority', 'sequence')
METADATA_ATTRIBUTES = LOCATION_FIELDS + PROVENANCE_FIELDS + (
    'sync_status', 'local_modified',
)


class CacheStoreError(Exception):
    """A cache read or write failed; the stored state is unchanged."""


def _to_instant(value: Bound, end_of_day: bool = False) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.max if end_of_day else time.min,
                            tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _condition_failed(error: ClientError) -> bool:
    reasons = error.response.get('CancellationReasons') or []
    if any(reason.get('Code') == 'ConditionalCheckFailed' for reason in reasons):
        return True
    code = error.response.get('Error', {}).get('Code', '')
    message = error.response.get('Error', {}).get('Message', '')
    return (code == 'ConditionalCheckFailedException'
            or 'ConditionalCheckFailed' in message)


class EventCacheStore:
    """Local cache of events plus the log of deletions awaiting CalDAV sync.

    Multi-item mutations run as DynamoDB transactions, so a failure leaves
    the previous state in place.
    """

    TRANSACTION_LIMIT = 100  # DynamoDB TransactWriteItems limit
    DELETED_RETENTION_DAYS = 30

    def __init__(
        self,
        events_table_name: str,
        deleted_table_name: str,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize DynamoDB clients and table references.

        Args:
            events_table_name: Table holding cached events, keyed by id
            deleted_table_name: Table holding deletion records, keyed by id
            region_name: AWS region (default: from the environment)
            endpoint_url: Endpoint override, e.g. a local DynamoDB
        """
        self.events_table_name = events_table_name
        self.deleted_table_name = deleted_table_name
        self.client = boto3.client(
            'dynamodb', region_name=region_name, endpoint_url=endpoint_url
        )
        self.dynamodb = boto3.resource(
            'dynamodb', region_name=region_name, endpoint_url=endpoint_url
        )
        self.events_table = self.dynamodb.Table(events_table_name)
        self.deleted_table = self.dynamodb.Table(deleted_table_name)
        self._serializer = TypeSerializer()
        logger.info(
            f"Initialized EventCacheStore for tables: {events_table_name}, "
            f"{deleted_table_name}"
        )

    def ensure_tables(self) -> None:
        """Create the events and deletions tables when they do not exist."""
        for table_name in (self.events_table_name, self.deleted_table_name):
            try:
                self.client.describe_table(TableName=table_name)
                continue
            except ClientError as e:
                if e.response['Error']['Code'] != 'ResourceNotFoundException':
                    raise CacheStoreError(
                        f"Cannot describe table {table_name}: {e}"
                    ) from e

            logger.info(f"Creating DynamoDB table: {table_name}")
            self.client.create_table(
                TableName=table_name,
                KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
                AttributeDefinitions=[
                    {'AttributeName': 'id', 'AttributeType': 'S'}
                ],
                BillingMode='PAY_PER_REQUEST'
            )
            self.client.get_waiter('table_exists').wait(TableName=table_name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_events(
        self,
        start: Optional[Bound] = None,
        end: Optional[Bound] = None,
        calendar: Optional[str] = None
    ) -> List[CalendarEvent]:
        """
        Return cached events, optionally bounded and filtered by calendar.

        Args:
            start: Inclusive lower bound on the event start (open if None)
            end: Inclusive upper bound on the event start (open if None)
            calendar: Calendar name to filter on

        Returns:
            Events ordered by start, without provenance fields
        """
        condition = None
        if start is not None:
            condition = Attr('start_ts').gte(int(_to_instant(start).timestamp()))
        if end is not None:
            upper = Attr('start_ts').lte(
                int(_to_instant(end, end_of_day=True).timestamp())
            )
            condition = upper if condition is None else condition & upper
        return self._query_events(condition, calendar, include_metadata=False)

    def get_events_with_metadata(
        self, calendar: Optional[str] = None
    ) -> List[CalendarEvent]:
        """Return cached events with their provenance and sync fields."""
        return self._query_events(None, calendar, include_metadata=True)

    def get_recurring_events(
        self, calendar: Optional[str] = None
    ) -> List[CalendarEvent]:
        """Return cached events that carry a recurrence rule."""
        return self._query_events(Attr('rrule').exists(), calendar,
                                  include_metadata=False)

    def get_event_metadata(self, event_id: str) -> Optional[CalendarEvent]:
        """Return one cached event with metadata, or None when absent."""
        item = self._get_item(self.events_table, event_id)
        if item is None:
            return None
        return self._item_to_event(item, include_metadata=True)

    def get_calendar_stats(self) -> List[Dict[str, Any]]:
        """
        Count cached events per calendar.

        Returns:
            List of {'name', 'count'} dicts ordered by count, descending
        """
        items = self._scan(
            self.events_table,
            ProjectionExpression='#calendar',
            ExpressionAttributeNames={'#calendar': 'calendar_name'}
        )
        counts = Counter(
            item['calendar_name'] for item in items if item.get('calendar_name')
        )
        return [
            {'name': name, 'count': count}
            for name, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        ]

    def _query_events(self, condition, calendar: Optional[str],
                      include_metadata: bool) -> List[CalendarEvent]:
        if calendar:
            by_calendar = Attr('calendar_name').eq(calendar)
            condition = by_calendar if condition is None else condition & by_calendar

        kwargs = {}
        if condition is not None:
            kwargs['FilterExpression'] = condition
        items = self._scan(self.events_table, **kwargs)
        items.sort(key=lambda item: (item.get('start_ts', 0), item['id']))

        events = []
        for item in items:
            event = self._item_to_event(item, include_metadata)
            if event:
                events.append(event)
        return events

    # ------------------------------------------------------------------
    # Event mutations
    # ------------------------------------------------------------------

    def save_events(self, events: List[CalendarEvent]) -> int:
        """
        Upsert events by id.

        Content fields always take the incoming value (absent values are
        removed). Provenance and calendar-location fields keep the stored
        value unless the incoming event supplies a non-empty one.

        Writes are committed in transactions of at most TRANSACTION_LIMIT
        rows. Each transaction is atomic, but a failure in a later one
        leaves the earlier ones committed; the error says how many.

        Args:
            events: Events to upsert; a repeated id keeps the last one

        Returns:
            Number of rows written

        Raises:
            CacheStoreError: If a transaction fails
        """
        if not events:
            return 0

        synced_at = format_instant(_now())
        latest = {event.id: event for event in events}
        actions = [
            {'Update': self._upsert_update(event, synced_at)}
            for event in latest.values()
        ]

        logger.info(f"Saving {len(actions)} events to cache")
        written = 0
        for chunk in _chunks(actions, self.TRANSACTION_LIMIT):
            try:
                self._transact(chunk, f"save {len(chunk)} events")
            except CacheStoreError as e:
                raise CacheStoreError(
                    f"{e} ({written} of {len(actions)} events already saved)"
                ) from e
            written += len(chunk)
        return written

    def delete_event(self, event_id: str) -> bool:
        """
        Remove an event and log its deletion for upstream propagation.

        Both writes commit together or not at all.

        Returns:
            True if the event was deleted, False if it was not cached

        Raises:
            CacheStoreError: If the transaction fails
        """
        return self._delete_and_track(event_id, synced_to_caldav=False)

    def track_remote_deletion(self, event_id: str) -> bool:
        """Remove an event that CalDAV no longer has, logging it as synced."""
        return self._delete_and_track(event_id, synced_to_caldav=True)

    def clear_old_events(self, cutoff: datetime) -> int:
        """
        Purge events last synced before ``cutoff``.

        Returns:
            Number of events removed
        """
        items = self._scan(
            self.events_table,
            FilterExpression=Attr('synced_at').lt(format_instant(cutoff)),
            ProjectionExpression='#id',
            ExpressionAttributeNames={'#id': 'id'}
        )
        removed = self._delete_items(self.events_table_name,
                                     [item['id'] for item in items])
        if removed:
            logger.info(f"Purged {removed} events synced before {cutoff.isoformat()}")
        return removed

    def _delete_and_track(self, event_id: str, synced_to_caldav: bool) -> bool:
        item = self._get_item(self.events_table, event_id)
        if item is None:
            logger.warning(f"Event {event_id} is not cached; nothing to delete")
            return False

        record = DeletedEventRecord(
            id=event_id,
            deleted_at=format_instant(_now()),
            synced_to_caldav=synced_to_caldav,
            caldav_filename=item.get('caldav_filename'),
            calendar_path=item.get('calendar_path'),
            calendar_name=item.get('calendar_name'),
        )
        actions = [
            {'Delete': {
                'TableName': self.events_table_name,
                'Key': {'id': {'S': event_id}},
                'ConditionExpression': 'attribute_exists(#id)',
                'ExpressionAttributeNames': {'#id': 'id'},
            }},
            {'Put': {
                'TableName': self.deleted_table_name,
                'Item': self._serialize_item(self._record_to_item(record)),
            }},
        ]

        try:
            self.client.transact_write_items(TransactItems=actions)
        except ClientError as e:
            if _condition_failed(e):
                logger.warning(f"Event {event_id} was removed concurrently")
                return False
            logger.error(f"Error deleting event {event_id}: {e}")
            raise CacheStoreError(f"Failed to delete event {event_id}: {e}") from e

        logger.info(
            f"Deleted event {event_id} from cache",
            extra={'synced_to_caldav': synced_to_caldav}
        )
        return True

    # ------------------------------------------------------------------
    # Deletion log
    # ------------------------------------------------------------------

    def get_deleted_events_to_sync(self) -> List[DeletedEventRecord]:
        """Return deletion records not yet propagated to CalDAV, oldest first."""
        items = self._scan(
            self.deleted_table,
            FilterExpression=Attr('synced_to_caldav').eq(False)
        )
        records = [self._item_to_record(item) for item in items]
        return sorted(records, key=lambda record: record.deleted_at)

    def get_deleted_event(self, event_id: str) -> Optional[DeletedEventRecord]:
        item = self._get_item(self.deleted_table, event_id)
        return self._item_to_record(item) if item else None

    def mark_deleted_event_synced(self, event_id: str) -> bool:
        """
        Mark a deletion record as propagated.

        Returns:
            False if no record exists for the id
        """
        try:
            self.deleted_table.update_item(
                Key={'id': event_id},
                UpdateExpression='SET synced_to_caldav = :synced',
                ConditionExpression='attribute_exists(#id)',
                ExpressionAttributeNames={'#id': 'id'},
                ExpressionAttributeValues={':synced': True}
            )
        except ClientError as e:
            if _condition_failed(e):
                logger.warning(f"No deletion record for event {event_id}")
                return False
            logger.error(f"Error marking deletion of {event_id} as synced: {e}")
            raise CacheStoreError(str(e)) from e
        return True

    def record_propagation_attempt(self, event_id: str) -> int:
        """Count one more propagation attempt; returns the new total."""
        try:
            response = self.deleted_table.update_item(
                Key={'id': event_id},
                UpdateExpression='ADD propagation_attempts :one',
                ExpressionAttributeValues={':one': 1},
                ReturnValues='UPDATED_NEW'
            )
        except ClientError as e:
            logger.error(f"Error recording attempt for {event_id}: {e}")
            raise CacheStoreError(str(e)) from e
        return int(response['Attributes']['propagation_attempts'])

    def cleanup_deleted_events(self, now: Optional[datetime] = None) -> int:
        """
        Drop synced deletion records older than the retention window.

        Returns:
            Number of records removed
        """
        cutoff = (now or _now()) - timedelta(days=self.DELETED_RETENTION_DAYS)
        items = self._scan(
            self.deleted_table,
            FilterExpression=(
                Attr('synced_to_caldav').eq(True)
                & Attr('deleted_at').lt(format_instant(cutoff))
            ),
            ProjectionExpression='#id',
            ExpressionAttributeNames={'#id': 'id'}
        )
        removed = self._delete_items(self.deleted_table_name,
                                     [item['id'] for item in items])
        if removed:
            logger.info(f"Removed {removed} synced deletion records")
        return removed

    # ------------------------------------------------------------------
    # DynamoDB plumbing
    # ------------------------------------------------------------------

    def _scan(self, table, **kwargs) -> List[dict]:
        try:
            response = table.scan(**kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
                )
                items.extend(response.get('Items', []))
            return items

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table {table.name}: {e}")
            raise CacheStoreError(str(e)) from e

    def _get_item(self, table, event_id: str) -> Optional[dict]:
        try:
            return table.get_item(Key={'id': event_id}).get('Item')
        except ClientError as e:
            logger.error(f"Error reading {event_id} from {table.name}: {e}")
            raise CacheStoreError(str(e)) from e

    def _transact(self, actions: List[dict], description: str) -> None:
        try:
            self.client.transact_write_items(TransactItems=actions)
        except ClientError as e:
            logger.error(f"Transaction failed ({description}): {e}")
            raise CacheStoreError(f"Transaction failed ({description}): {e}") from e

    def _delete_items(self, table_name: str, ids: List[str]) -> int:
        removed = 0
        for chunk in _chunks(ids, self.TRANSACTION_LIMIT):
            self._transact(
                [{'Delete': {'TableName': table_name, 'Key': {'id': {'S': i}}}}
                 for i in chunk],
                f"delete {len(chunk)} items from {table_name}"
            )
            removed += len(chunk)
        return removed

    def _serialize(self, value) -> dict:
        return self._serializer.serialize(value)

    def _serialize_item(self, item: dict) -> dict:
        return {key: self._serialize(value) for key, value in item.items()}

    def _upsert_update(self, event: CalendarEvent, synced_at: str) -> dict:
        names = {}
        values = {}
        assignments = []
        removals = []

        def name_of(attribute: str) -> str:
            placeholder = f"#a{len(names)}"
            names[placeholder] = attribute
            return placeholder

        def value_of(value) -> str:
            placeholder = f":v{len(values)}"
            values[placeholder] = self._serialize(value)
            return placeholder

        for attribute, value in self._content_attributes(event).items():
            if value is None:
                removals.append(name_of(attribute))
            else:
                assignments.append(f"{name_of(attribute)} = {value_of(value)}")

        for attribute in METADATA_ATTRIBUTES:
            value = getattr(event, attribute)
            if value:
                assignments.append(f"{name_of(attribute)} = {value_of(value)}")
            elif attribute in ('creation_source', 'sync_status'):
                default = (CREATION_SOURCE_CALDAV if attribute == 'creation_source'
                           else SYNC_STATUS_SYNCED)
                placeholder = name_of(attribute)
                assignments.append(
                    f"{placeholder} = if_not_exists({placeholder}, "
                    f"{value_of(default)})"
                )

        assignments.append(f"{name_of('synced_at')} = {value_of(synced_at)}")

        expression = 'SET ' + ', '.join(assignments)
        if removals:
            expression += ' REMOVE ' + ', '.join(removals)

        return {
            'TableName': self.events_table_name,
            'Key': {'id': {'S': event.id}},
            'UpdateExpression': expression,
            'ExpressionAttributeNames': names,
            'ExpressionAttributeValues': values,
        }

    @staticmethod
    def _content_attributes(event: CalendarEvent) -> Dict[str, Any]:
        """Map content fields to stored attributes; None means remove."""
        attributes = {name: getattr(event, name) or None for name in STRING_FIELDS}
        for name in LIST_FIELDS:
            attributes[name] = list(getattr(event, name)) or None
        for name in INT_FIELDS:
            value = getattr(event, name)
            attributes[name] = int(value) if value is not None else None

        if event.geo:
            attributes['geo_lat'] = Decimal(str(event.geo[0]))
            attributes['geo_lon'] = Decimal(str(event.geo[1]))
        else:
            attributes['geo_lat'] = attributes['geo_lon'] = None

        try:
            start = event_start(event)
            if not isinstance(start, datetime):
                start = datetime.combine(start, time.min, tzinfo=timezone.utc)
            attributes['start_ts'] = int(start.timestamp())
        except (ValueError, TypeError) as e:
            logger.warning(f"Event {event.id} has an unreadable start: {e}")
            attributes['start_ts'] = None
        return attributes

    @staticmethod
    def _item_to_event(item: dict,
                       include_metadata: bool) -> Optional[CalendarEvent]:
        """
        Convert a DynamoDB item to a CalendarEvent.

        Returns:
            CalendarEvent, or None if the item is incomplete
        """
        try:
            event = CalendarEvent(id=item['id'], title=item['title'],
                                  date=item['date'])
            for name in STRING_FIELDS:
                if name in item:
                    setattr(event, name, item[name])
            for name in LIST_FIELDS:
                setattr(event, name, list(item.get(name, [])))
            for name in INT_FIELDS:
                if item.get(name) is not None:
                    setattr(event, name, int(item[name]))
            if item.get('geo_lat') is not None and item.get('geo_lon') is not None:
                event.geo = (float(item['geo_lat']), float(item['geo_lon']))
            if include_metadata:
                for name in METADATA_ATTRIBUTES:
                    setattr(event, name, item.get(name))
            return event
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to convert item to CalendarEvent: {e}")
            return None

    @staticmethod
    def _record_to_item(record: DeletedEventRecord) -> dict:
        item = {
            'id': record.id,
            'deleted_at': record.deleted_at,
            'synced_to_caldav': record.synced_to_caldav,
            'propagation_attempts': record.propagation_attempts,
        }
        for name in ('caldav_filename', 'calendar_path', 'calendar_name'):
            value = getattr(record, name)
            if value:
                item[name] = value
        return item

    @staticmethod
    def _item_to_record(item: dict) -> DeletedEventRecord:
        return DeletedEventRecord(
            id=item['id'],
            deleted_at=item['deleted_at'],
            synced_to_caldav=bool(item.get('synced_to_caldav')),
            caldav_filename=item.get('caldav_filename'),
            calendar_path=item.get('calendar_path'),
            calendar_name=item.get('calendar_name'),
            propagation_attempts=int(item.get('propagation_attempts', 0)),
        )
