"""User-initiated create, update and delete applied to CalDAV and the cache."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from processor.ical_codec import event_start, format_instant, has_time_component, parse_instant
from processor.models import (
    CREATION_SOURCE_LOCAL,
    SYNC_STATUS_SYNCED,
    CalendarDescriptor,
    CalendarEvent,
    OperationResult,
    OperationStatus,
)
from processor.timezones import localize_time
from remote.caldav_client import CalDAVError
from remote.calendar_registry import UnknownCalendarError
from remote.multi_calendar import MultiCalendarAdapter
from storage.event_cache import CacheStoreError, EventCacheStore

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return format_instant(datetime.now(timezone.utc))


def validate_event(event: CalendarEvent) -> Optional[str]:
    """Return a description of what makes the event unusable, or None."""
    if not event.title or not event.title.strip():
        return 'Event title is required'
    if not event.date and not event.start:
        return 'Event date or start is required'
    try:
        event_start(event)
    except (ValueError, TypeError, AttributeError) as e:
        return f"Event start is not a valid date/time: {e}"
    return None


def local_time(event: CalendarEvent) -> Optional[str]:
    """
    Derive HH:MM from a timed ``start`` in the event's timezone.

    Falls back to UTC when the zone is unknown; keeps ``time`` as given when
    there is no timed start.
    """
    if event.is_all_day or not has_time_component(event.start):
        return event.time
    try:
        return localize_time(parse_instant(event.start), event.timezone, 'UTC')
    except ValueError as e:
        logger.warning(f"Could not localize start of {event.id}: {e}")
        return event.time


class UpdateCoordinator:
    """Applies one create/update/delete end to end.

    Creates and updates go to CalDAV first and reach the cache only on remote
    success. Deletes go to the cache first; the remote delete is best effort
    and otherwise left to the next sync cycle.
    """

    def __init__(self, adapter: MultiCalendarAdapter, store: EventCacheStore):
        self.adapter = adapter
        self.store = store

    def create_event(self, event: CalendarEvent,
                     calendar_name: Optional[str] = None) -> OperationResult:
        """
        Create an event remotely, then cache it.

        Args:
            event: Event to create; an empty id is replaced by a new UUID
            calendar_name: Target calendar (default calendar if omitted)

        Returns:
            OperationResult carrying the cached CalendarEvent on success
        """
        problem = validate_event(event)
        if problem:
            return OperationResult.failure(OperationStatus.VALIDATION_FAILED, problem)

        if not event.id:
            event = event.copy(id=str(uuid.uuid4()))

        try:
            descriptor = self.adapter.resolve_calendar(calendar_name)
        except UnknownCalendarError:
            return OperationResult.failure(
                OperationStatus.VALIDATION_FAILED,
                f"Unknown calendar '{calendar_name}'"
            )

        try:
            filename = self.adapter.create_event_in_calendar(event, descriptor.name)
        except CalDAVError as e:
            logger.error(f"Failed to create event {event.id} in {descriptor.name}: {e}")
            return OperationResult.failure(
                OperationStatus.REMOTE_FAILURE,
                f"Failed to create event in CalDAV: {e}"
            )

        stored = self._cached_copy(event, descriptor, filename).copy(
            original_date=event.date,
            original_time=event.time,
            original_duration=event.duration,
            creation_source=CREATION_SOURCE_LOCAL,
        )
        return self._save(stored, f"Created event {event.id}")

    def update_event(self, event: CalendarEvent) -> OperationResult:
        """
        Replace an event by deleting the remote item and creating it anew.

        If the remote create fails after the delete succeeded, the event is
        gone remotely; this is logged and the cached row is left untouched.

        Returns:
            OperationResult carrying the cached CalendarEvent on success
        """
        try:
            cached = self.store.get_event_metadata(event.id)
        except CacheStoreError as e:
            return OperationResult.failure(OperationStatus.STORAGE_FAILURE, str(e))

        if cached is None:
            return OperationResult.failure(
                OperationStatus.NOT_FOUND, f"Event {event.id} not found"
            )
        if not cached.caldav_filename or not cached.calendar_path:
            return OperationResult.failure(
                OperationStatus.MISSING_METADATA,
                f"Event {event.id} has no CalDAV location; cannot update"
            )

        problem = validate_event(event)
        if problem:
            return OperationResult.failure(OperationStatus.VALIDATION_FAILED, problem)

        descriptor = self.adapter.registry.find_by_path(cached.calendar_path)
        if descriptor is None:
            return OperationResult.failure(
                OperationStatus.MISSING_METADATA,
                f"Calendar path {cached.calendar_path} is not registered"
            )

        try:
            self.adapter.delete_event_from_calendar(
                cached.caldav_filename, cached.calendar_path
            )
        except CalDAVError as e:
            logger.error(f"Failed to delete old copy of {event.id}: {e}")
            return OperationResult.failure(
                OperationStatus.REMOTE_FAILURE,
                f"Failed to replace event in CalDAV: {e}"
            )

        try:
            filename = self.adapter.create_event_in_calendar(event, descriptor.name)
        except CalDAVError as e:
            logger.error(
                f"Event {event.id} was deleted from {descriptor.name} but could "
                f"not be recreated; it is lost remotely: {e}",
                extra={'caldav_filename': cached.caldav_filename}
            )
            return OperationResult.failure(
                OperationStatus.REMOTE_FAILURE,
                f"Event removed from CalDAV but recreate failed: {e}"
            )

        stored = self._cached_copy(event, descriptor, filename).copy(
            original_date=cached.original_date,
            original_time=cached.original_time,
            original_duration=cached.original_duration,
            creation_source=cached.creation_source,
        )
        return self._save(stored, f"Updated event {event.id}")

    def delete_event(self, event_id: str) -> OperationResult:
        """
        Delete an event locally, then try to delete it remotely.

        Succeeds once the local delete commits. A failed remote delete leaves
        the deletion record unsynced for the orchestrator to retry.
        """
        try:
            cached = self.store.get_event_metadata(event_id)
            deleted = self.store.delete_event(event_id)
        except CacheStoreError as e:
            return OperationResult.failure(OperationStatus.STORAGE_FAILURE, str(e))

        if not deleted:
            return OperationResult.failure(
                OperationStatus.NOT_FOUND, f"Event {event_id} not found"
            )

        if cached and cached.caldav_filename and cached.calendar_path:
            try:
                self.adapter.delete_event_from_calendar(
                    cached.caldav_filename, cached.calendar_path
                )
                self.store.mark_deleted_event_synced(event_id)
            except CalDAVError as e:
                logger.warning(
                    f"Remote delete of {event_id} failed; will retry on next sync: {e}"
                )
            except CacheStoreError as e:
                logger.error(f"Could not mark deletion of {event_id} as synced: {e}")
        else:
            logger.warning(f"Event {event_id} has no CalDAV location; deleted locally only")

        return OperationResult.ok(message=f"Deleted event {event_id}")

    @staticmethod
    def _cached_copy(event: CalendarEvent, descriptor: CalendarDescriptor,
                     filename: str) -> CalendarEvent:
        return event.copy(
            time=local_time(event),
            calendar_name=descriptor.name,
            calendar_path=descriptor.path,
            caldav_filename=filename,
            sync_status=SYNC_STATUS_SYNCED,
            local_modified=_now_iso(),
            is_recurring_instance=False,
            original_event_id=None,
        )

    def _save(self, event: CalendarEvent, message: str) -> OperationResult:
        try:
            self.store.save_events([event])
        except CacheStoreError as e:
            logger.error(
                f"Event {event.id} is in CalDAV but could not be cached: {e}"
            )
            return OperationResult.failure(
                OperationStatus.STORAGE_FAILURE,
                f"Saved to CalDAV but not to the local cache: {e}"
            )
        logger.info(message, extra={'calendar': event.calendar_name})
        return OperationResult.ok(data=event, message=message)
