"""Timer-driven reconciliation of the remote calendars into the local cache."""
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from dateutil.relativedelta import relativedelta

from processor.event_merger import merge_fetched_event
from processor.ical_codec import parse_instant
from processor.models import CalendarEvent, DeletedEventRecord, SyncResult
from remote.caldav_client import CalDAVError
from remote.multi_calendar import MultiCalendarAdapter
from storage.event_cache import EventCacheStore

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs reconciliation cycles, eagerly on start and then on an interval.

    Each instance owns its own timer thread, so several orchestrators (for
    example under test) never share schedule state.
    """

    # Deletion records that still lack a remote location after this many
    # cycles are marked synced and left for the retention purge.
    MAX_PROPAGATION_ATTEMPTS = 3

    def __init__(
        self,
        adapter: MultiCalendarAdapter,
        store: EventCacheStore,
        interval_minutes: int = 15,
        retention_months: int = 6
    ):
        """
        Initialize the orchestrator.

        Args:
            adapter: Multi-calendar CalDAV adapter
            store: Local cache store
            interval_minutes: Minutes between scheduled cycles (default: 15)
            retention_months: Age after which unsynced rows are purged
                (default: 6)
        """
        self.adapter = adapter
        self.store = store
        self.interval_seconds = interval_minutes * 60
        self.retention = relativedelta(months=retention_months)
        self.last_sync_time: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the timer thread; the first cycle runs immediately."""
        if self.running:
            logger.warning("Sync orchestrator already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name='calendar-sync', daemon=True
        )
        self._thread.start()
        logger.info(
            f"Sync orchestrator started",
            extra={'interval_seconds': self.interval_seconds}
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Prevent further cycles. A cycle already in flight runs to completion.

        Args:
            timeout: Seconds to wait for the timer thread to exit (None
                returns without waiting)
        """
        self._stop_event.set()
        if self._thread is not None and timeout is not None:
            self._thread.join(timeout)
        logger.info("Sync orchestrator stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                # The next tick is the retry
                logger.error(
                    f"Sync cycle failed: {str(e)}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
            if self._stop_event.wait(self.interval_seconds):
                break

    def run_cycle(self) -> SyncResult:
        """
        Run one reconciliation cycle.

        Steps: propagate pending deletions, fetch every calendar, merge the
        fetched events into the cache (detecting remote deletions), purge by
        retention, then record the completion time.

        Returns:
            SyncResult with the cycle's counts

        Raises:
            CalDAVError: If every calendar failed to fetch
            CacheStoreError: If the cache cannot be read or written
        """
        cycle_start = datetime.now(timezone.utc)
        result = SyncResult()
        logger.info("Starting sync cycle")

        result.deletions_propagated = self._propagate_deletions(result)

        fetch = self.adapter.fetch_all_events()
        result.fetched = len(fetch.events)
        result.failed_calendars = list(fetch.failed_calendars)

        self._merge(fetch.events, set(fetch.fetched_calendars), cycle_start, result)

        result.purged = self.store.clear_old_events(cycle_start - self.retention)
        self.store.cleanup_deleted_events(cycle_start)

        self.last_sync_time = datetime.now(timezone.utc)
        self.last_result = result
        logger.info(
            f"Sync cycle completed",
            extra={
                'events_fetched': result.fetched,
                'events_added': result.added,
                'events_updated': result.updated,
                'remote_deletions': result.remote_deletions,
                'deletions_propagated': result.deletions_propagated,
                'events_purged': result.purged,
                'failed_calendars': result.failed_calendars,
                'errors': result.errors
            }
        )
        return result

    def _propagate_deletions(self, result: SyncResult) -> int:
        propagated = 0
        for record in self.store.get_deleted_events_to_sync():
            filename, calendar_path = self._remote_location(record)

            if not filename or not calendar_path:
                attempts = self.store.record_propagation_attempt(record.id)
                if attempts >= self.MAX_PROPAGATION_ATTEMPTS:
                    logger.warning(
                        f"Dropping deletion of {record.id}: no remote location "
                        f"after {attempts} attempts"
                    )
                    self.store.mark_deleted_event_synced(record.id)
                else:
                    logger.warning(
                        f"Deletion of {record.id} has no remote location yet",
                        extra={'attempts': attempts}
                    )
                continue

            try:
                self.adapter.delete_event_from_calendar(filename, calendar_path)
            except CalDAVError as e:
                message = f"Failed to propagate deletion of {record.id}: {e}"
                logger.error(message)
                result.errors.append(message)
                continue

            self.store.mark_deleted_event_synced(record.id)
            propagated += 1
        return propagated

    def _remote_location(self, record: DeletedEventRecord):
        if record.caldav_filename and record.calendar_path:
            return record.caldav_filename, record.calendar_path

        cached = self.store.get_event_metadata(record.id)
        if cached is None:
            return None, None
        return cached.caldav_filename, cached.calendar_path

    def _merge(self, fetched_events, fetched_calendars: Set[str],
               cycle_start: datetime, result: SyncResult) -> None:
        existing: Dict[str, CalendarEvent] = {
            event.id: event for event in self.store.get_events_with_metadata()
        }
        pending_deletions = {
            record.id for record in self.store.get_deleted_events_to_sync()
        }

        merged = []
        seen_ids = set()
        for fetched in fetched_events:
            seen_ids.add(fetched.id)
            if fetched.id in pending_deletions:
                logger.debug(f"Skipping {fetched.id}: deletion pending upstream")
                continue

            current = existing.get(fetched.id)
            merged.append(merge_fetched_event(fetched, current))
            if current is None:
                result.added += 1
            else:
                result.updated += 1

        self.store.save_events(merged)

        for event_id, cached in existing.items():
            if event_id in seen_ids or cached.calendar_name not in fetched_calendars:
                continue
            if self._touched_since(cached, cycle_start):
                continue
            if self.store.track_remote_deletion(event_id):
                result.remote_deletions += 1

    @staticmethod
    def _touched_since(event: CalendarEvent, instant: datetime) -> bool:
        if not event.local_modified:
            return False
        try:
            return parse_instant(event.local_modified) >= instant
        except ValueError:
            return False
