"""CalDAV client for a single calendar collection."""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth

from processor.ical_codec import ICalCodec, ICalDecodeError
from processor.models import CalendarEvent

logger = logging.getLogger(__name__)

USER_AGENT = 'calendar-sync-cache/1.0'

CALENDAR_QUERY = """<?xml version="1.0" encoding="utf-8" ?>
<C:calendar-query xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:prop>
    <D:getetag />
    <C:calendar-data />
  </D:prop>
  <C:filter>
    <C:comp-filter name="VCALENDAR">
      <C:comp-filter name="VEVENT">{time_range}</C:comp-filter>
    </C:comp-filter>
  </C:filter>
</C:calendar-query>"""


class CalDAVError(Exception):
    """A CalDAV request failed in transport or returned an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def build_session(username: str, password: str) -> requests.Session:
    """Create an HTTP session carrying basic authentication."""
    session = requests.Session()
    session.auth = HTTPBasicAuth(username, password)
    session.headers['User-Agent'] = USER_AGENT
    return session


def _caldav_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')


class CalDAVCalendarClient:
    """List, create, update and delete events in one calendar collection.

    Failures raise CalDAVError; nothing is retried here.
    """

    def __init__(self, session: requests.Session, collection_url: str,
                 codec: ICalCodec, timeout: int = 30):
        """
        Initialize the client.

        Args:
            session: Authenticated HTTP session
            collection_url: Absolute URL of the calendar collection
            codec: iCalendar codec
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.session = session
        self.collection_url = collection_url.rstrip('/') + '/'
        self.codec = codec
        self.timeout = timeout
        self._suffix_lock = threading.Lock()
        self._last_suffix = 0

    def list_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Tuple[CalendarEvent, str]]:
        """
        Fetch and decode the events in this collection.

        Args:
            start: Optional lower bound for a time-range filter
            end: Optional upper bound for a time-range filter

        Returns:
            List of (event, remote filename) tuples; undecodable items are
            skipped

        Raises:
            CalDAVError: If the REPORT request fails
        """
        response = self._request(
            'REPORT',
            self.collection_url,
            ok_statuses=(200, 207),
            data=self._calendar_query(start, end).encode('utf-8'),
            headers={
                'Content-Type': 'application/xml; charset=utf-8',
                'Depth': '1',
            }
        )

        results = []
        for text, filename in self.codec.decode_envelope(response.text):
            try:
                event = self.codec.decode(text)
            except ICalDecodeError as e:
                logger.warning(
                    f"Skipping malformed calendar object {filename or '?'}: {e}"
                )
                continue
            results.append((event, filename or f"{quote(event.id, safe='')}.ics"))

        logger.info(f"Fetched {len(results)} events from {self.collection_url}")
        return results

    def create_event(self, event: CalendarEvent) -> str:
        """
        Store a new event under a freshly generated filename.

        Returns:
            Remote filename of the created item

        Raises:
            CalDAVError: If the PUT fails
        """
        filename = self._new_filename(event.id)
        self._request(
            'PUT',
            self.collection_url + filename,
            ok_statuses=(200, 201, 204),
            data=self.codec.encode(event).encode('utf-8'),
            headers={
                'Content-Type': 'text/calendar; charset=utf-8',
                'If-None-Match': '*',
            }
        )
        logger.info(f"Created event {event.id} as {filename}")
        return filename

    def update_event(self, event: CalendarEvent, filename: str) -> None:
        """
        Replace the item stored under ``filename``.

        Raises:
            CalDAVError: If the PUT fails
        """
        self._request(
            'PUT',
            self.collection_url + filename,
            ok_statuses=(200, 201, 204),
            data=self.codec.encode(event).encode('utf-8'),
            headers={'Content-Type': 'text/calendar; charset=utf-8'}
        )
        logger.info(f"Updated event {event.id} at {filename}")

    def delete_event(self, filename: str) -> None:
        """
        Remove the item stored under ``filename``; a missing item counts as deleted.

        Raises:
            CalDAVError: If the DELETE fails
        """
        self._request(
            'DELETE',
            self.collection_url + filename,
            ok_statuses=(200, 204, 404)
        )
        logger.info(f"Deleted {filename} from {self.collection_url}")

    def _new_filename(self, event_id: str) -> str:
        # Millisecond suffix, strictly increasing per client
        with self._suffix_lock:
            suffix = max(int(time.time() * 1000), self._last_suffix + 1)
            self._last_suffix = suffix
        return f"{quote(event_id, safe='')}-{suffix}.ics"

    def _calendar_query(self, start: Optional[datetime],
                        end: Optional[datetime]) -> str:
        attributes = []
        if start:
            attributes.append(f'start="{_caldav_timestamp(start)}"')
        if end:
            attributes.append(f'end="{_caldav_timestamp(end)}"')
        time_range = ''
        if attributes:
            time_range = f"<C:time-range {' '.join(attributes)} />"
        return CALENDAR_QUERY.format(time_range=time_range)

    def _request(self, method: str, url: str, ok_statuses: Tuple[int, ...],
                 **kwargs) -> requests.Response:
        try:
            response = self.session.request(
                method, url, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise CalDAVError(f"{method} {url} failed: {e}") from e

        if response.status_code not in ok_statuses:
            logger.error(f"{method} {url} returned HTTP {response.status_code}")
            raise CalDAVError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code
            )
        return response
