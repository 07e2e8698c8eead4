"""Unit tests for the CalendarService facade."""
from datetime import date, datetime, time, timezone
from unittest.mock import Mock, patch
from zoneinfo import ZoneInfo

import pytest

from conftest import make_event
from processor.models import CalendarInfo, OperationResult, OperationStatus, SyncResult
from remote.caldav_client import CalDAVError
from remote.multi_calendar import MultiCalendarAdapter
from settings import Settings
from storage.event_cache import CacheStoreError, EventCacheStore
from sync.orchestrator import SyncOrchestrator
from sync.update_coordinator import UpdateCoordinator
from calendar_service import CalendarService

DENVER = ZoneInfo('America/Denver')


@pytest.fixture
def store():
    store = Mock(spec=EventCacheStore)
    store.get_recurring_events.return_value = []
    return store


@pytest.fixture
def orchestrator():
    return Mock(spec=SyncOrchestrator)


@pytest.fixture
def coordinator():
    return Mock(spec=UpdateCoordinator)


@pytest.fixture
def service(registry, store, orchestrator, coordinator):
    adapter = Mock(spec=MultiCalendarAdapter)
    adapter.registry = registry
    return CalendarService(adapter, store, orchestrator, coordinator)


class TestQueries:
    """Test cases for the query surface."""

    def test_get_events_without_bounds_is_not_expanded(self, service, store):
        store.get_events.return_value = [make_event('e1', rrule='FREQ=DAILY')]

        result = service.get_events()

        assert result.success
        assert [e.id for e in result.data] == ['e1']
        store.get_events.assert_called_once_with(None, None, None)
        store.get_recurring_events.assert_not_called()

    def test_get_events_expands_recurrences_in_range(self, service, store):
        """Test recurring events anchored before the window still show up."""
        weekly = make_event('weekly', date='2025-07-04T10:00:00Z', rrule='FREQ=WEEKLY')
        single = make_event('single', date='2025-08-12')
        store.get_events.return_value = [single]
        store.get_recurring_events.return_value = [weekly]

        result = service.get_events(date(2025, 8, 1), date(2025, 8, 10), 'work')

        ids = [e.id for e in result.data]
        assert ids[0] == 'single'
        assert len(ids) == 3
        assert all(e.original_event_id == 'weekly' for e in result.data[1:])
        store.get_recurring_events.assert_called_once_with('work')

    def test_get_events_storage_failure(self, service, store):
        """Test a cache failure becomes an empty, failed result."""
        store.get_events.side_effect = CacheStoreError('throttled')

        result = service.get_events()

        assert result.status is OperationStatus.STORAGE_FAILURE
        assert result.data == []

    def test_get_events_with_metadata(self, service, store):
        store.get_events_with_metadata.return_value = [make_event('e1')]

        assert service.get_events_with_metadata('work').data[0].id == 'e1'
        store.get_events_with_metadata.assert_called_once_with('work')

    def test_get_calendars_from_stats(self, service, store):
        store.get_calendar_stats.return_value = [
            {'name': 'work', 'count': 3}, {'name': 'retired', 'count': 1}
        ]

        result = service.get_calendars()

        assert result.data == [
            CalendarInfo('work', 'Work', 3), CalendarInfo('retired', 'retired', 1)
        ]

    def test_get_calendars_falls_back_to_registry(self, service, store):
        """Test an empty cache lists every registered calendar with count 0."""
        store.get_calendar_stats.return_value = []

        result = service.get_calendars()

        assert result.success
        assert [(c.name, c.count) for c in result.data] == [
            ('shared', 0), ('home', 0), ('work', 0)
        ]

    def test_get_this_months_events(self, service, store):
        store.get_events.return_value = []

        with patch.object(service, 'today', return_value=date(2025, 2, 10)):
            service.get_this_months_events()

        store.get_events.assert_called_once_with(
            datetime(2025, 2, 1, tzinfo=DENVER),
            datetime.combine(date(2025, 2, 28), time.max, tzinfo=DENVER),
            None
        )

    def test_get_this_weeks_events(self, service, store):
        store.get_events.return_value = []

        with patch.object(service, 'today', return_value=date(2025, 8, 21)):
            service.get_this_weeks_events('home')

        store.get_events.assert_called_once_with(
            datetime(2025, 8, 18, tzinfo=DENVER),
            datetime.combine(date(2025, 8, 24), time.max, tzinfo=DENVER),
            'home'
        )

    def test_get_todays_events(self, service, store):
        store.get_events.return_value = []

        with patch.object(service, 'today', return_value=date(2025, 8, 21)):
            service.get_todays_events()

        store.get_events.assert_called_once_with(
            datetime(2025, 8, 21, tzinfo=DENVER),
            datetime.combine(date(2025, 8, 21), time.max, tzinfo=DENVER),
            None
        )

    def test_get_events_in_range_rejects_reversed_range(self, service, store):
        result = service.get_events_in_range(date(2025, 8, 10), date(2025, 8, 1))

        assert result.status is OperationStatus.VALIDATION_FAILED
        store.get_events.assert_not_called()

    def test_get_events_in_range_accepts_mixed_bounds(self, service, store):
        """Test a date start with an aware datetime end is compared safely."""
        store.get_events.return_value = []
        store.get_recurring_events.return_value = []
        end = datetime(2025, 8, 2, 12, tzinfo=timezone.utc)

        result = service.get_events_in_range(date(2025, 8, 1), end)

        assert result.success
        store.get_events.assert_called_once_with(
            datetime(2025, 8, 1, tzinfo=DENVER), end, None
        )

    def test_get_events_in_range_rejects_mixed_reversed_range(self, service, store):
        result = service.get_events_in_range(
            datetime(2025, 8, 10, 9, 0), date(2025, 8, 1)
        )

        assert result.status is OperationStatus.VALIDATION_FAILED


class TestEditsAndSync:
    """Test cases for edits and sync control."""

    def test_edits_delegate_to_coordinator(self, service, coordinator):
        event = make_event('e1')
        coordinator.create_event.return_value = OperationResult.ok(data=event)

        assert service.create_event(event, 'work').data is event
        service.update_event(event)
        service.delete_event('e1')

        coordinator.create_event.assert_called_once_with(event, 'work')
        coordinator.update_event.assert_called_once_with(event)
        coordinator.delete_event.assert_called_once_with('e1')

    def test_force_sync(self, service, orchestrator):
        orchestrator.run_cycle.return_value = SyncResult(fetched=3, added=3)

        result = service.force_sync()

        assert result.success
        assert result.data.added == 3

    def test_force_sync_remote_failure(self, service, orchestrator):
        orchestrator.run_cycle.side_effect = CalDAVError('all calendars failed')

        result = service.force_sync()

        assert result.status is OperationStatus.REMOTE_FAILURE
        assert result.retryable

    def test_force_sync_storage_failure(self, service, orchestrator):
        orchestrator.run_cycle.side_effect = CacheStoreError('throttled')

        assert service.force_sync().status is OperationStatus.STORAGE_FAILURE

    def test_start_and_stop(self, service, store, orchestrator):
        service.start()
        service.stop()

        store.ensure_tables.assert_called_once()
        orchestrator.start.assert_called_once()
        orchestrator.stop.assert_called_once()



class TestLocalDayBoundaries:
    """Test cases for day helpers against the real cache."""

    @pytest.fixture
    def cached_service(self, registry, cache_store, orchestrator, coordinator):
        adapter = Mock(spec=MultiCalendarAdapter)
        adapter.registry = registry
        cache_store.save_events([
            make_event('breakfast', date='2025-08-22T14:00:00Z', time='08:00'),
            make_event('dinner', date='2025-08-23T01:00:00Z', time='19:00'),
            make_event('late_show', date='2025-08-22T03:00:00Z', time='21:00'),
        ])
        return CalendarService(adapter, cache_store, orchestrator, coordinator,
                               timezone_name='America/Denver')

    def test_todays_events_include_local_evening(self, cached_service):
        """Test an evening event past UTC midnight belongs to its local day."""
        with patch.object(cached_service, 'today', return_value=date(2025, 8, 22)):
            result = cached_service.get_todays_events()

        assert sorted(e.id for e in result.data) == ['breakfast', 'dinner']

    def test_previous_local_evening_is_excluded(self, cached_service):
        with patch.object(cached_service, 'today', return_value=date(2025, 8, 21)):
            result = cached_service.get_todays_events()

        assert [e.id for e in result.data] == ['late_show']

def test_from_settings_wires_components(aws_credentials):
    """Test the service is assembled from settings."""
    settings = Settings(username='user', password='secret', base_path='/123/calendars',
                        sync_interval_minutes=5, aws_region='us-east-1')

    service = CalendarService.from_settings(settings)

    assert service.adapter.base_url == 'https://p36-caldav.icloud.com/123/calendars'
    assert service.adapter.registry.default_calendar == 'shared'
    assert service.orchestrator.interval_seconds == 300
    assert service.store.events_table_name == 'calendar-events'
