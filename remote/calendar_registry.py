"""Immutable registry of the CalDAV calendars this service syncs."""
import logging
from types import MappingProxyType
from typing import Iterable, List, Optional

from processor.models import CalendarDescriptor

logger = logging.getLogger(__name__)


class UnknownCalendarError(KeyError):
    """Raised when a calendar name is not in the registry."""


class CalendarRegistry:
    """Fixed name -> CalendarDescriptor mapping, validated on construction."""

    def __init__(self, calendars: Iterable[CalendarDescriptor],
                 default_calendar: str):
        """
        Build and validate the registry.

        Args:
            calendars: Calendar descriptors, in display order
            default_calendar: Name used when a write names no calendar

        Raises:
            ValueError: If the registry is empty, a name repeats, a path is
                blank, or the default calendar is not registered
        """
        by_name = {}
        for descriptor in calendars:
            if not descriptor.name or not descriptor.name.strip():
                raise ValueError('Calendar name must not be empty')
            if not descriptor.path or not descriptor.path.strip():
                raise ValueError(f"Calendar '{descriptor.name}' has no path")
            if descriptor.name in by_name:
                raise ValueError(f"Duplicate calendar name '{descriptor.name}'")
            by_name[descriptor.name] = descriptor

        if not by_name:
            raise ValueError('At least one calendar must be registered')
        if default_calendar not in by_name:
            raise ValueError(
                f"Default calendar '{default_calendar}' is not registered "
                f"(known: {', '.join(by_name)})"
            )

        self._calendars = MappingProxyType(by_name)
        self.default_calendar = default_calendar
        logger.info(
            f"Calendar registry loaded with {len(by_name)} calendars",
            extra={'calendars': list(by_name), 'default': default_calendar}
        )

    def __iter__(self):
        return iter(self._calendars.values())

    def __len__(self) -> int:
        return len(self._calendars)

    def __contains__(self, name: str) -> bool:
        return name in self._calendars

    @property
    def names(self) -> List[str]:
        return list(self._calendars)

    def get(self, name: str) -> CalendarDescriptor:
        try:
            return self._calendars[name]
        except KeyError:
            raise UnknownCalendarError(name) from None

    def resolve(self, name: Optional[str]) -> CalendarDescriptor:
        """Resolve a write target; an omitted name means the default calendar."""
        if not name:
            return self._calendars[self.default_calendar]
        return self.get(name)

    def find_by_path(self, path: str) -> Optional[CalendarDescriptor]:
        for descriptor in self._calendars.values():
            if descriptor.path == path:
                return descriptor
        return None
