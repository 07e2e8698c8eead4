"""Expansion of recurring events into concrete occurrences."""
import logging
import re
from datetime import date, datetime, time, timezone
from typing import List, Optional, Union

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrulestr

from processor.ical_codec import event_start, format_instant
from processor.models import CalendarEvent
from processor.timezones import get_zone

logger = logging.getLogger(__name__)

WindowBound = Union[date, datetime]

UNTIL_PATTERN = re.compile(r"UNTIL=(\d{8})(T\d{6})?(Z?)", re.IGNORECASE)


def _window_start(value: WindowBound) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _window_end(value: WindowBound) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def _utc_until(rule_text: str) -> str:
    """Rewrite a date-only or floating UNTIL as a UTC instant.

    A date-only UNTIL covers that whole day.
    """
    def replace(match):
        day, clock, zulu = match.groups()
        if zulu:
            return match.group(0)
        return f"UNTIL={day}{clock or 'T235959'}Z"

    return UNTIL_PATTERN.sub(replace, rule_text)


class RecurrenceExpander:
    """Expands RRULE-bearing events within a bounded window."""

    LOOKAHEAD = relativedelta(months=3)

    def expand(self, events: List[CalendarEvent], window_start: WindowBound,
               window_end: WindowBound) -> List[CalendarEvent]:
        """
        Expand recurring events into occurrences inside a window.

        Non-recurring events pass through unchanged. For a recurring event,
        one occurrence is emitted per rule instant in the inclusive window,
        and the defining event itself is kept when its own start falls in
        the window. A rule that cannot be parsed leaves the event as-is.

        Args:
            events: Events to expand
            window_start: Inclusive lower bound (a date means its midnight)
            window_end: Inclusive upper bound (a date means its last instant)

        Returns:
            Expanded list of events
        """
        start = _window_start(window_start)
        end = _window_end(window_end)
        expanded = []

        for event in events:
            if not event.rrule:
                expanded.append(event)
                continue

            try:
                rule = self._parse_rule(event)
                occurrences = rule.between(start, end, inc=True)
                anchor = self._anchor(event)
            except Exception as e:
                logger.error(
                    f"Failed to expand recurring event '{event.title}' "
                    f"({event.id}): {e}"
                )
                expanded.append(event)
                continue

            for occurrence in occurrences:
                expanded.append(self._occurrence(event, occurrence))

            if start <= anchor <= end:
                expanded.append(event)

            logger.debug(
                f"Event '{event.title}' has {len(occurrences)} occurrences "
                f"in range"
            )

        logger.info(f"Expanded {len(events)} events to {len(expanded)} events")
        return expanded

    def is_visible(self, event: CalendarEvent,
                   reference: Optional[datetime] = None) -> bool:
        """
        Decide whether an event is still worth showing.

        Non-recurring events are visible from their start onward; recurring
        events are visible while an occurrence falls within three months of
        the reference instant.
        """
        reference = _window_start(reference or datetime.now(timezone.utc))

        if not event.rrule:
            try:
                return self._anchor(event) >= reference
            except ValueError as e:
                logger.warning(f"Event {event.id} has an unreadable date: {e}")
                return False

        try:
            rule = self._parse_rule(event)
            return bool(rule.between(reference, reference + self.LOOKAHEAD,
                                     inc=True))
        except Exception as e:
            logger.error(f"Error checking visibility of event {event.id}: {e}")
            return False

    def _parse_rule(self, event: CalendarEvent):
        rule_text = event.rrule.strip()
        if 'DTSTART' in rule_text.upper():
            rule = rrulestr(rule_text, forceset=True)
        else:
            if not rule_text.upper().startswith('RRULE:'):
                rule_text = f"RRULE:{rule_text}"
            rule = rrulestr(_utc_until(rule_text), dtstart=self._anchor(event),
                            forceset=True)
        return rule

    @staticmethod
    def _anchor(event: CalendarEvent) -> datetime:
        start = event_start(event)
        if isinstance(start, datetime):
            # Rule instants follow the event's wall clock
            if event.timezone:
                return start.astimezone(get_zone(event.timezone))
            return start
        return datetime.combine(start, time.min, tzinfo=timezone.utc)

    @staticmethod
    def _occurrence(event: CalendarEvent, instant: datetime) -> CalendarEvent:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        if event.is_all_day:
            when = instant.date().isoformat()
        else:
            when = format_instant(instant)
        epoch_millis = int(instant.timestamp() * 1000)
        return event.copy(
            id=f"{event.id}_recur_{epoch_millis}",
            date=when,
            start=when if event.start else None,
            is_recurring_instance=True,
            original_event_id=event.id,
        )
