"""Fan-out of CalDAV operations across the registered calendars."""
import logging
from typing import Callable, Dict, List, Optional

import requests

from processor.ical_codec import ICalCodec
from processor.models import (
    CalendarDescriptor,
    CalendarEvent,
    CalendarInfo,
    FetchResult,
)
from remote.caldav_client import CalDAVCalendarClient, CalDAVError
from remote.calendar_registry import CalendarRegistry

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], CalDAVCalendarClient]


class MultiCalendarAdapter:
    """Routes calendar operations to one CalDAVCalendarClient per calendar."""

    def __init__(
        self,
        registry: CalendarRegistry,
        session: requests.Session,
        base_url: str,
        codec: ICalCodec,
        timeout: int = 30,
        client_factory: Optional[ClientFactory] = None
    ):
        """
        Initialize the adapter.

        Args:
            registry: Registered calendars
            session: Authenticated HTTP session shared by all clients
            base_url: Scheme, host and base path the calendar paths hang off
            codec: iCalendar codec
            timeout: HTTP request timeout in seconds (default: 30)
            client_factory: Builds a client for a calendar path; defaults
                to a CalDAVCalendarClient on ``base_url``
        """
        self.registry = registry
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.codec = codec
        self.timeout = timeout
        self._client_factory = client_factory or self._default_client
        self._clients: Dict[str, CalDAVCalendarClient] = {}

    def _default_client(self, calendar_path: str) -> CalDAVCalendarClient:
        return CalDAVCalendarClient(
            self.session,
            f"{self.base_url}/{calendar_path.strip('/')}/",
            self.codec,
            timeout=self.timeout
        )

    def client_for_path(self, calendar_path: str) -> CalDAVCalendarClient:
        if calendar_path not in self._clients:
            self._clients[calendar_path] = self._client_factory(calendar_path)
        return self._clients[calendar_path]

    def resolve_calendar(self, calendar_name: Optional[str]) -> CalendarDescriptor:
        return self.registry.resolve(calendar_name)

    def get_all_calendars(self) -> List[CalendarInfo]:
        """
        Count the events of every registered calendar.

        Returns:
            One CalendarInfo per calendar; count is -1 where the query failed
        """
        calendars = []
        for descriptor in self.registry:
            try:
                count = len(self.client_for_path(descriptor.path).list_events())
            except CalDAVError as e:
                logger.error(f"Failed to fetch calendar '{descriptor.name}': {e}")
                count = -1
            calendars.append(CalendarInfo(
                name=descriptor.name,
                display_name=descriptor.display_name,
                count=count
            ))
        return calendars

    def fetch_all_events(self) -> FetchResult:
        """
        Fetch every calendar, tagging events with their calendar and filename.

        A calendar that fails is logged and skipped; events already fetched
        from other calendars are kept.

        Raises:
            CalDAVError: If every registered calendar failed
        """
        events = []
        fetched = []
        failed = []

        for descriptor in self.registry:
            try:
                items = self.client_for_path(descriptor.path).list_events()
            except CalDAVError as e:
                logger.error(
                    f"Failed to fetch events from {descriptor.name}: {e}",
                    extra={'calendar': descriptor.name,
                           'status_code': e.status_code}
                )
                failed.append(descriptor.name)
                continue

            for event, filename in items:
                event.calendar_name = descriptor.name
                event.calendar_path = descriptor.path
                event.caldav_filename = filename
                events.append(event)
            fetched.append(descriptor.name)

        if failed and not fetched:
            raise CalDAVError(
                f"All {len(failed)} calendars failed to fetch: {', '.join(failed)}"
            )

        logger.info(
            f"Fetched {len(events)} events from {len(fetched)} calendars",
            extra={'failed_calendars': failed}
        )
        return FetchResult(events=events, fetched_calendars=fetched,
                           failed_calendars=failed)

    def get_all_events_from_all_calendars(self) -> List[CalendarEvent]:
        return self.fetch_all_events().events

    def create_event_in_calendar(self, event: CalendarEvent,
                                 calendar_name: Optional[str] = None) -> str:
        """
        Create an event in a named calendar.

        Returns:
            Remote filename of the new item

        Raises:
            UnknownCalendarError: If the name is not registered
            CalDAVError: If the remote create fails
        """
        descriptor = self.resolve_calendar(calendar_name)
        return self.client_for_path(descriptor.path).create_event(event)

    def update_event_in_calendar(self, event: CalendarEvent, filename: str,
                                 calendar_path: str) -> None:
        self.client_for_path(calendar_path).update_event(event, filename)

    def delete_event_from_calendar(self, filename: str,
                                   calendar_path: str) -> None:
        self.client_for_path(calendar_path).delete_event(filename)
