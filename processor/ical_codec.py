"""iCalendar codec for CalDAV calendar objects and REPORT envelopes."""
import html
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from icalendar import Calendar, Event as ICalEvent, vRecur

from processor.models import (
    CalendarEvent,
    STATUS_VALUES,
    TRANSPARENCY_VALUES,
    VISIBILITY_VALUES,
)
from processor.timezones import DEFAULT_TIMEZONE, get_zone, localize_time

logger = logging.getLogger(__name__)

PRODID = '-//Calendar Sync Cache//EN'

RESPONSE_TAG = re.compile(r'(?:^|:)response$')
HREF_TAG = re.compile(r'(?:^|:)href$')
CALENDAR_DATA_TAG = re.compile(r'(?:^|:)calendar-data$')
CDATA_SECTION = re.compile(r'<!\[CDATA\[(.*?)\]\]>', re.DOTALL)

DateOrDateTime = Union[date, datetime]


class ICalDecodeError(ValueError):
    """Raised when a calendar object cannot be decoded into an event."""


# ----------------------------------------------------------------------------
# Instant helpers, shared with the cache store and recurrence expander
# ----------------------------------------------------------------------------


def format_instant(value: datetime) -> str:
    """Format an instant as ``YYYY-MM-DDTHH:MM:SSZ`` in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def has_time_component(value: Optional[str]) -> bool:
    return bool(value) and 'T' in value


def parse_instant(value: str) -> datetime:
    """
    Parse an ISO-8601 instant or date into an aware UTC datetime.

    Date-only values resolve to midnight UTC; naive date-times are
    treated as UTC.

    Raises:
        ValueError: If the value is not ISO-8601
    """
    text = value.strip()
    if not has_time_component(text):
        parsed_date = date.fromisoformat(text[:10])
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day,
                        tzinfo=timezone.utc)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_calendar_date(value: str) -> date:
    """Return the calendar date of an ISO-8601 instant or date (UTC)."""
    if has_time_component(value):
        return parse_instant(value).date()
    return date.fromisoformat(value.strip()[:10])


def event_start(event: CalendarEvent) -> DateOrDateTime:
    """
    Resolve an event's start as a date (all-day) or a UTC datetime.

    For timed events an explicit ``start`` instant wins, then a ``date``
    carrying a time of day; otherwise ``date`` and ``time`` are combined
    as UTC.
    """
    if event.is_all_day:
        return parse_calendar_date(event.start or event.date)
    if has_time_component(event.start):
        return parse_instant(event.start)
    if has_time_component(event.date):
        return parse_instant(event.date)
    day = parse_calendar_date(event.start or event.date)
    hours, minutes = (int(part) for part in event.time.strip().split(':')[:2])
    return datetime(day.year, day.month, day.day, hours, minutes,
                    tzinfo=timezone.utc)


def event_end(event: CalendarEvent, start: DateOrDateTime) -> DateOrDateTime:
    """Resolve the end: explicit end if usable, else one day / one hour later."""
    explicit = event.dtend or event.end
    if isinstance(start, datetime):
        if has_time_component(explicit):
            end = parse_instant(explicit).replace(second=0, microsecond=0)
            if end > start:
                return end
        return start + timedelta(hours=1)
    if explicit:
        end_day = parse_calendar_date(explicit)
        if end_day > start:
            return end_day
    return start + timedelta(days=1)


def format_duration(delta: timedelta) -> str:
    total_minutes = int(delta.total_seconds()) // 60
    return f"PT{total_minutes // 60}H{total_minutes % 60}M"


def _clean_text(value: str) -> str:
    return value.replace('\r', '')


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _choice(value, allowed: Tuple[str, ...]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().upper()
    return text if text in allowed else None


class ICalCodec:
    """Encoder/decoder between CalendarEvent and iCalendar text."""

    def __init__(self, default_timezone: str = DEFAULT_TIMEZONE):
        """
        Initialize the codec.

        Args:
            default_timezone: Zone used for localized HH:MM values when
                an event carries no TZID
        """
        self.default_timezone = default_timezone

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def encode(self, event: CalendarEvent) -> str:
        """
        Serialize an event as a VCALENDAR text block for a CalDAV PUT.

        Args:
            event: Event to serialize

        Returns:
            iCalendar text (CRLF line endings)
        """
        now = datetime.now(timezone.utc).replace(microsecond=0)
        start = event_start(event)
        if isinstance(start, datetime):
            start = start.replace(second=0, microsecond=0)
        end = event_end(event, start)

        vevent = ICalEvent()
        vevent.add('uid', event.id)
        vevent.add('dtstamp', now)
        vevent.add('dtstart', start)
        vevent.add('dtend', end)
        vevent.add('summary', _clean_text(event.title))

        if event.description:
            vevent.add('description', _clean_text(event.description))
        if event.location:
            vevent.add('location', _clean_text(event.location))
        if event.organizer:
            vevent.add('organizer', event.organizer)
        for attendee in event.attendees:
            vevent.add('attendee', attendee)
        if event.categories:
            vevent.add('categories', [_clean_text(c) for c in event.categories])
        if event.status:
            vevent.add('status', event.status)
        if event.visibility:
            vevent.add('class', event.visibility)
        if event.priority:
            vevent.add('priority', event.priority)
        if event.url:
            vevent.add('url', event.url)
        if event.transparency:
            vevent.add('transp', event.transparency)
        if event.geo:
            vevent.add('geo', (float(event.geo[0]), float(event.geo[1])))
        for attachment in event.attachments:
            vevent.add('attach', attachment)
        if event.rrule:
            vevent.add('rrule', vRecur.from_ical(self._rule_body(event.rrule)))
        vevent.add('sequence', event.sequence or 0)
        if event.created:
            vevent.add('created', parse_instant(event.created))
        vevent.add('last-modified', now)

        calendar = Calendar()
        calendar.add('prodid', PRODID)
        calendar.add('version', '2.0')
        calendar.add_component(vevent)
        return calendar.to_ical().decode('utf-8')

    @staticmethod
    def _rule_body(rule: str) -> str:
        """Strip DTSTART lines and the ``RRULE:`` prefix from a rule string."""
        for line in rule.replace('\r', '').split('\n'):
            line = line.strip()
            if line.upper().startswith('RRULE:'):
                return line[len('RRULE:'):]
            if line and not line.upper().startswith('DTSTART'):
                return line
        raise ValueError(f"No recurrence rule in '{rule}'")

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode(self, text: str) -> CalendarEvent:
        """
        Parse one calendar object into a CalendarEvent.

        The master VEVENT (the one without a RECURRENCE-ID) is used when the
        object carries overridden instances.

        Raises:
            ICalDecodeError: If the text is not iCalendar or lacks
                UID, SUMMARY or DTSTART
        """
        try:
            component = Calendar.from_ical(text)
        except (ValueError, IndexError, KeyError) as e:
            raise ICalDecodeError(f"Unparseable calendar object: {e}") from e

        vevents = component.walk('VEVENT')
        if not vevents:
            raise ICalDecodeError('Calendar object contains no VEVENT')
        vevent = next(
            (v for v in vevents if 'RECURRENCE-ID' not in v), vevents[0]
        )

        uid = str(vevent.get('UID', '')).strip()
        title = str(vevent.get('SUMMARY', '')).strip()
        if not uid:
            raise ICalDecodeError('VEVENT missing UID')
        if not title:
            raise ICalDecodeError(f"VEVENT {uid} missing SUMMARY")
        if 'DTSTART' not in vevent:
            raise ICalDecodeError(f"VEVENT {uid} missing DTSTART")

        try:
            return self._decode_vevent(vevent, uid, title)
        except (ValueError, TypeError, AttributeError) as e:
            raise ICalDecodeError(f"VEVENT {uid} is malformed: {e}") from e

    def _decode_vevent(self, vevent, uid: str, title: str) -> CalendarEvent:
        tzid = vevent['DTSTART'].params.get('TZID')
        dtstart = vevent.decoded('DTSTART')
        dtend = vevent.decoded('DTEND') if 'DTEND' in vevent else None
        if dtend is None and 'DURATION' in vevent:
            dtend = dtstart + vevent.decoded('DURATION')

        event = CalendarEvent(id=uid, title=title, date='', timezone=tzid)

        if isinstance(dtstart, datetime):
            start = self._to_utc(dtstart, tzid)
            event.date = event.start = format_instant(start)
            event.time = localize_time(start, tzid, self.default_timezone)
            if isinstance(dtend, datetime):
                end = self._to_utc(dtend, tzid)
                event.dtend = event.end = format_instant(end)
                event.duration = format_duration(end - start)
        else:
            event.date = event.start = dtstart.isoformat()
            if isinstance(dtend, date) and not isinstance(dtend, datetime):
                event.dtend = event.end = dtend.isoformat()
                event.duration = format_duration(dtend - dtstart)

        if vevent.get('DESCRIPTION'):
            event.description = str(vevent.get('DESCRIPTION'))
        if vevent.get('LOCATION'):
            event.location = str(vevent.get('LOCATION'))
        if vevent.get('ORGANIZER'):
            event.organizer = str(vevent.get('ORGANIZER'))
        event.attendees = [str(a) for a in _as_list(vevent.get('ATTENDEE'))]
        event.categories = self._decode_categories(vevent.get('CATEGORIES'))
        if vevent.get('PRIORITY') is not None:
            event.priority = int(vevent.get('PRIORITY'))
        event.status = _choice(vevent.get('STATUS'), STATUS_VALUES)
        event.visibility = _choice(vevent.get('CLASS'), VISIBILITY_VALUES)
        event.transparency = _choice(vevent.get('TRANSP'), TRANSPARENCY_VALUES)
        if vevent.get('GEO') is not None:
            geo = vevent.get('GEO')
            event.geo = (float(geo.latitude), float(geo.longitude))
        if vevent.get('URL'):
            event.url = str(vevent.get('URL'))
        event.attachments = [str(a) for a in _as_list(vevent.get('ATTACH'))]
        rrules = _as_list(vevent.get('RRULE'))
        if rrules:
            event.rrule = rrules[0].to_ical().decode('utf-8')
        if 'CREATED' in vevent:
            event.created = format_instant(vevent.decoded('CREATED'))
        if 'LAST-MODIFIED' in vevent:
            event.last_modified = format_instant(vevent.decoded('LAST-MODIFIED'))
        if vevent.get('SEQUENCE') is not None:
            event.sequence = int(vevent.get('SEQUENCE'))

        return event

    def _to_utc(self, value: datetime, tzid: Optional[str]) -> datetime:
        if value.tzinfo is None:
            # Floating time: interpret in the event's (or default) zone
            value = value.replace(tzinfo=get_zone(tzid, self.default_timezone))
        return value.astimezone(timezone.utc)

    @staticmethod
    def _decode_categories(value) -> List[str]:
        categories = []
        for item in _as_list(value):
            cats = getattr(item, 'cats', None)
            if cats is not None:
                categories.extend(str(c).strip() for c in cats)
            else:
                categories.extend(c.strip() for c in str(item).split(','))
        return [c for c in categories if c]

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def decode_envelope(self, xml: str) -> List[Tuple[str, str]]:
        """
        Extract calendar objects and remote filenames from a REPORT response.

        Args:
            xml: Multistatus XML body

        Returns:
            List of (calendar object text, remote filename) in document
            order; the filename is empty when the href does not name an
            ``.ics`` item
        """
        # html.parser does not reliably surface CDATA, so inline it escaped
        normalized = CDATA_SECTION.sub(
            lambda match: html.escape(match.group(1), quote=False), xml
        )
        soup = BeautifulSoup(normalized, 'html.parser')

        items = []
        for response in soup.find_all(RESPONSE_TAG):
            try:
                data = response.find(CALENDAR_DATA_TAG)
                if data is None:
                    continue
                text = data.get_text().strip()
                if not text:
                    continue
                href = response.find(HREF_TAG)
                filename = self._filename_from_href(
                    href.get_text(strip=True) if href else ''
                )
                items.append((text, filename))
            except Exception as e:
                logger.warning(f"Failed to parse response element: {e}")
                continue

        logger.debug(f"Extracted {len(items)} calendar objects from envelope")
        return items

    @staticmethod
    def _filename_from_href(href: str) -> str:
        path = urlsplit(href).path if href else ''
        filename = path.rstrip('/').split('/')[-1] if path else ''
        return filename if filename.endswith('.ics') else ''
