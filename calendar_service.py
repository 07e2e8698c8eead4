"""Facade consumed by the web layer: queries, edits and sync control."""
import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta

from processor.ical_codec import ICalCodec
from processor.models import (
    CalendarEvent,
    CalendarInfo,
    OperationResult,
    OperationStatus,
)
from processor.recurrence import RecurrenceExpander
from processor.timezones import DEFAULT_TIMEZONE, get_zone
from remote.caldav_client import CalDAVError, build_session
from remote.multi_calendar import MultiCalendarAdapter
from settings import Settings
from storage.event_cache import CacheStoreError, EventCacheStore
from sync.orchestrator import SyncOrchestrator
from sync.update_coordinator import UpdateCoordinator

logger = logging.getLogger(__name__)

Bound = Union[date, datetime]


class CalendarService:
    """Entry point for callers; every method returns an OperationResult."""

    def __init__(
        self,
        adapter: MultiCalendarAdapter,
        store: EventCacheStore,
        orchestrator: SyncOrchestrator,
        coordinator: UpdateCoordinator,
        expander: Optional[RecurrenceExpander] = None,
        timezone_name: str = DEFAULT_TIMEZONE
    ):
        self.adapter = adapter
        self.store = store
        self.orchestrator = orchestrator
        self.coordinator = coordinator
        self.expander = expander or RecurrenceExpander()
        self.timezone_name = timezone_name

    @classmethod
    def from_settings(cls, settings: Settings) -> 'CalendarService':
        """
        Wire up the service from settings.

        Raises:
            ConfigurationError: If the calendar registry is invalid
        """
        registry = settings.build_registry()
        codec = ICalCodec(settings.default_timezone)
        adapter = MultiCalendarAdapter(
            registry,
            build_session(settings.username, settings.password),
            settings.base_url,
            codec,
            timeout=settings.timeout_seconds
        )
        store = EventCacheStore(
            settings.events_table_name,
            settings.deleted_events_table_name,
            region_name=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint_url
        )
        orchestrator = SyncOrchestrator(
            adapter,
            store,
            interval_minutes=settings.sync_interval_minutes,
            retention_months=settings.retention_months
        )
        return cls(adapter, store, orchestrator, UpdateCoordinator(adapter, store),
                   timezone_name=settings.default_timezone)

    def start(self) -> None:
        """Create the cache tables if needed and start periodic sync."""
        self.store.ensure_tables()
        self.orchestrator.start()

    def stop(self) -> None:
        self.orchestrator.stop()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_events(
        self,
        start: Optional[Bound] = None,
        end: Optional[Bound] = None,
        calendar: Optional[str] = None
    ) -> OperationResult:
        """
        Return cached events, expanding recurrences when both bounds are given.

        Args:
            start: Inclusive lower bound (open if None)
            end: Inclusive upper bound (open if None)
            calendar: Calendar name to filter on

        Returns:
            OperationResult whose data is a list of CalendarEvent
        """
        try:
            events = self.store.get_events(start, end, calendar)
            if start is not None and end is not None:
                events = self._with_occurrences(events, start, end, calendar)
        except CacheStoreError as e:
            logger.error(f"Failed to read events: {e}")
            return OperationResult.failure(
                OperationStatus.STORAGE_FAILURE, str(e), data=[]
            )
        return OperationResult.ok(data=events)

    def _with_occurrences(self, events: List[CalendarEvent], start: Bound,
                          end: Bound, calendar: Optional[str]) -> List[CalendarEvent]:
        # Recurring events anchored before the window still produce occurrences
        single = [event for event in events if not event.rrule]
        recurring = self.store.get_recurring_events(calendar)
        return single + self.expander.expand(recurring, start, end)

    def get_events_with_metadata(self, calendar: Optional[str] = None) -> OperationResult:
        try:
            events = self.store.get_events_with_metadata(calendar)
        except CacheStoreError as e:
            logger.error(f"Failed to read events with metadata: {e}")
            return OperationResult.failure(
                OperationStatus.STORAGE_FAILURE, str(e), data=[]
            )
        return OperationResult.ok(data=events)

    def get_calendars(self) -> OperationResult:
        """
        List calendars with their cached event counts.

        Falls back to the registered calendars with a count of 0 when the
        cache holds no events yet.
        """
        registry = self.adapter.registry
        try:
            stats = self.store.get_calendar_stats()
        except CacheStoreError as e:
            logger.error(f"Failed to read calendar stats: {e}")
            stats = []

        if not stats:
            calendars = [
                CalendarInfo(d.name, d.display_name, 0) for d in registry
            ]
            return OperationResult.ok(data=calendars)

        calendars = []
        for entry in stats:
            name = entry['name']
            display_name = registry.get(name).display_name if name in registry else name
            calendars.append(CalendarInfo(name, display_name, entry['count']))
        return OperationResult.ok(data=calendars)

    def today(self) -> date:
        return datetime.now(get_zone(self.timezone_name)).date()

    def local_bounds(self, start: Bound, end: Bound) -> Tuple[datetime, datetime]:
        """
        Resolve a range to aware instants in the service timezone.

        A date start means its local midnight and a date end means its last
        local instant. Naive datetimes are read as local time.
        """
        zone = get_zone(self.timezone_name)

        def resolve(value: Bound, clock: time) -> datetime:
            if not isinstance(value, datetime):
                value = datetime.combine(value, clock)
            return value if value.tzinfo else value.replace(tzinfo=zone)

        return resolve(start, time.min), resolve(end, time.max)

    def _local_days(self, first: date, last: date,
                    calendar: Optional[str]) -> OperationResult:
        start, end = self.local_bounds(first, last)
        return self.get_events(start, end, calendar)

    def get_todays_events(self, calendar: Optional[str] = None) -> OperationResult:
        today = self.today()
        return self._local_days(today, today, calendar)

    def get_this_weeks_events(self, calendar: Optional[str] = None) -> OperationResult:
        """Events from Monday through Sunday of the current week."""
        monday = self.today() - timedelta(days=self.today().weekday())
        return self._local_days(monday, monday + timedelta(days=6), calendar)

    def get_this_months_events(self, calendar: Optional[str] = None) -> OperationResult:
        first = self.today().replace(day=1)
        last = first + relativedelta(months=1) - timedelta(days=1)
        return self._local_days(first, last, calendar)

    def get_events_in_range(self, start: Bound, end: Bound,
                            calendar: Optional[str] = None) -> OperationResult:
        start, end = self.local_bounds(start, end)
        if end < start:
            return OperationResult.failure(
                OperationStatus.VALIDATION_FAILED,
                'Range end must not precede its start',
                data=[]
            )
        return self.get_events(start, end, calendar)

    # ------------------------------------------------------------------
    # Edits and sync
    # ------------------------------------------------------------------

    def create_event(self, event: CalendarEvent,
                     calendar_name: Optional[str] = None) -> OperationResult:
        return self.coordinator.create_event(event, calendar_name)

    def update_event(self, event: CalendarEvent) -> OperationResult:
        return self.coordinator.update_event(event)

    def delete_event(self, event_id: str) -> OperationResult:
        return self.coordinator.delete_event(event_id)

    def force_sync(self) -> OperationResult:
        """Run one reconciliation cycle now."""
        try:
            result = self.orchestrator.run_cycle()
        except CalDAVError as e:
            logger.error(f"Forced sync failed: {e}")
            return OperationResult.failure(OperationStatus.REMOTE_FAILURE, str(e))
        except CacheStoreError as e:
            logger.error(f"Forced sync failed: {e}")
            return OperationResult.failure(OperationStatus.STORAGE_FAILURE, str(e))
        return OperationResult.ok(data=result, message='Sync completed')
