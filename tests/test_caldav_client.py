"""Unit tests for CalDAVCalendarClient."""
import re
from datetime import datetime, timezone

import pytest
import responses
from requests.exceptions import ConnectionError

from processor.ical_codec import ICalCodec
from processor.models import CalendarEvent
from remote.caldav_client import CalDAVCalendarClient, CalDAVError, build_session


COLLECTION_URL = 'https://caldav.example.com/123/calendars/work/'

CALENDAR_OBJECT = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//EN
BEGIN:VEVENT
UID:{uid}
DTSTAMP:20250801T000000Z
DTSTART:20250822T140000Z
DTEND:20250822T150000Z
SUMMARY:{summary}
END:VEVENT
END:VCALENDAR
"""


def _multistatus(*items):
    responses_xml = ''.join(
        f"<d:response><d:href>{href}</d:href><d:propstat><d:prop>"
        f"<cal:calendar-data>{data}</cal:calendar-data>"
        f"</d:prop></d:propstat></d:response>"
        for href, data in items
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<d:multistatus xmlns:d="DAV:" xmlns:cal="urn:ietf:params:xml:ns:caldav">'
        f"{responses_xml}</d:multistatus>"
    )


@pytest.fixture
def client():
    session = build_session('user@example.com', 'app-password')
    return CalDAVCalendarClient(session, COLLECTION_URL,
                                ICalCodec('America/Denver'), timeout=5)


class TestCalDAVCalendarClient:
    """Test cases for CalDAVCalendarClient class."""

    @responses.activate
    def test_list_events_success(self, client):
        """Test a REPORT response is decoded into events and filenames."""
        responses.add(
            'REPORT',
            COLLECTION_URL,
            body=_multistatus(
                ('/123/calendars/work/a.ics', CALENDAR_OBJECT.format(uid='a', summary='One')),
                ('/123/calendars/work/b.ics', CALENDAR_OBJECT.format(uid='b', summary='Two')),
            ),
            status=207
        )

        results = client.list_events()

        assert [(event.id, filename) for event, filename in results] == [
            ('a', 'a.ics'), ('b', 'b.ics')
        ]
        assert results[0][0].title == 'One'
        request = responses.calls[0].request
        assert request.headers['Depth'] == '1'
        assert request.headers['Authorization'].startswith('Basic ')
        assert b'calendar-query' in request.body
        assert b'time-range' not in request.body

    @responses.activate
    def test_list_events_skips_malformed_items(self, client):
        """Test one bad calendar object does not drop its siblings."""
        responses.add(
            'REPORT',
            COLLECTION_URL,
            body=_multistatus(
                ('/123/calendars/work/bad.ics', CALENDAR_OBJECT.format(uid='bad', summary='')),
                ('/123/calendars/work/good.ics', CALENDAR_OBJECT.format(uid='good', summary='Fine')),
            ),
            status=207
        )

        results = client.list_events()

        assert [event.id for event, _ in results] == ['good']

    @responses.activate
    def test_list_events_filename_falls_back_to_uid(self, client):
        """Test an href without an .ics name maps to <uid>.ics."""
        responses.add(
            'REPORT',
            COLLECTION_URL,
            body=_multistatus(
                ('/123/calendars/work/', CALENDAR_OBJECT.format(uid='abc', summary='One')),
            ),
            status=207
        )

        assert client.list_events()[0][1] == 'abc.ics'

    @responses.activate
    def test_list_events_with_time_range(self, client):
        """Test bounds add a UTC time-range filter to the query."""
        responses.add('REPORT', COLLECTION_URL, body=_multistatus(), status=207)

        client.list_events(
            start=datetime(2025, 8, 1, tzinfo=timezone.utc),
            end=datetime(2025, 9, 1, tzinfo=timezone.utc)
        )

        body = responses.calls[0].request.body
        assert b'start="20250801T000000Z"' in body
        assert b'end="20250901T000000Z"' in body

    @responses.activate
    def test_list_events_with_open_end(self, client):
        """Test a single bound leaves the other time-range attribute out."""
        responses.add('REPORT', COLLECTION_URL, body=_multistatus(), status=207)

        client.list_events(start=datetime(2025, 8, 1, tzinfo=timezone.utc))

        body = responses.calls[0].request.body
        assert b'<C:time-range start="20250801T000000Z" />' in body
        assert b'end=' not in body

    @responses.activate
    def test_list_events_http_error(self, client):
        """Test an error status surfaces as CalDAVError with the code."""
        responses.add('REPORT', COLLECTION_URL, status=500)

        with pytest.raises(CalDAVError) as exc_info:
            client.list_events()

        assert exc_info.value.status_code == 500
        assert len(responses.calls) == 1

    @responses.activate
    def test_list_events_network_error(self, client):
        """Test a transport failure surfaces as CalDAVError without a code."""
        responses.add(
            'REPORT', COLLECTION_URL,
            body=ConnectionError('connection refused')
        )

        with pytest.raises(CalDAVError) as exc_info:
            client.list_events()

        assert exc_info.value.status_code is None

    @responses.activate
    def test_create_event(self, client):
        """Test create PUTs to a new filename derived from the id."""
        responses.add(
            responses.PUT,
            re.compile(re.escape(COLLECTION_URL) + r'e1-\d+\.ics'),
            status=201
        )
        event = CalendarEvent(id='e1', title='Lunch', date='2025-08-22', time='14:00')

        filename = client.create_event(event)

        assert re.fullmatch(r'e1-\d+\.ics', filename)
        request = responses.calls[0].request
        assert request.url == COLLECTION_URL + filename
        assert request.headers['If-None-Match'] == '*'
        assert request.headers['Content-Type'].startswith('text/calendar')
        assert b'SUMMARY:Lunch' in request.body

    @responses.activate
    def test_create_event_never_reuses_filename(self, client):
        """Test a retry after a failed create uses a fresh filename."""
        pattern = re.compile(re.escape(COLLECTION_URL) + r'e1-\d+\.ics')
        responses.add(responses.PUT, pattern, status=503)
        responses.add(responses.PUT, pattern, status=201)
        event = CalendarEvent(id='e1', title='Lunch', date='2025-08-22', time='14:00')

        with pytest.raises(CalDAVError):
            client.create_event(event)
        filename = client.create_event(event)

        first_url = responses.calls[0].request.url
        assert first_url != COLLECTION_URL + filename

    @responses.activate
    def test_update_event(self, client):
        """Test update PUTs to the existing filename."""
        responses.add(responses.PUT, COLLECTION_URL + 'e1.ics', status=204)
        event = CalendarEvent(id='e1', title='Dinner', date='2025-08-22', time='18:00')

        client.update_event(event, 'e1.ics')

        assert b'SUMMARY:Dinner' in responses.calls[0].request.body

    @responses.activate
    def test_update_event_failure(self, client):
        responses.add(responses.PUT, COLLECTION_URL + 'e1.ics', status=412)
        event = CalendarEvent(id='e1', title='Dinner', date='2025-08-22', time='18:00')

        with pytest.raises(CalDAVError):
            client.update_event(event, 'e1.ics')

    @responses.activate
    def test_delete_event(self, client):
        responses.add(responses.DELETE, COLLECTION_URL + 'e1.ics', status=204)

        client.delete_event('e1.ics')

        assert len(responses.calls) == 1

    @responses.activate
    def test_delete_event_already_gone(self, client):
        """Test a 404 on delete counts as deleted."""
        responses.add(responses.DELETE, COLLECTION_URL + 'e1.ics', status=404)

        client.delete_event('e1.ics')

    @responses.activate
    def test_delete_event_failure(self, client):
        responses.add(responses.DELETE, COLLECTION_URL + 'e1.ics', status=500)

        with pytest.raises(CalDAVError):
            client.delete_event('e1.ics')
