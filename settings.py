"""Environment-driven configuration."""
import json
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from processor.models import CalendarDescriptor
from processor.timezones import DEFAULT_TIMEZONE
from remote.calendar_registry import CalendarRegistry

DEFAULT_HOSTNAME = 'p36-caldav.icloud.com'

DEFAULT_CALENDARS = (
    CalendarDescriptor('shared', 'shared', 'Shared'),
    CalendarDescriptor('home', 'home', 'Home'),
    CalendarDescriptor('work', 'work', 'Work'),
    CalendarDescriptor('meals', 'meals', 'Meals'),
)


class ConfigurationError(Exception):
    """Configuration is missing or invalid; the process cannot start."""


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _calendars(raw: Optional[str]) -> List[CalendarDescriptor]:
    if not raw:
        return list(DEFAULT_CALENDARS)
    try:
        entries = json.loads(raw)
        return [
            CalendarDescriptor(
                name=entry['name'],
                path=entry['path'],
                display_name=entry.get('display_name') or entry['name']
            )
            for entry in entries
        ]
    except (ValueError, KeyError, TypeError) as e:
        raise ConfigurationError(f"CALDAV_CALENDARS is not valid: {e}") from e


@dataclass
class Settings:
    """Runtime settings for the sync service."""
    username: str
    password: str
    hostname: str = DEFAULT_HOSTNAME
    base_path: str = ''
    calendars: List[CalendarDescriptor] = field(
        default_factory=lambda: list(DEFAULT_CALENDARS)
    )
    default_calendar: str = 'shared'
    sync_interval_minutes: int = 15
    retention_months: int = 6
    default_timezone: str = DEFAULT_TIMEZONE
    timeout_seconds: int = 30
    events_table_name: str = 'calendar-events'
    deleted_events_table_name: str = 'calendar-deleted-events'
    dynamodb_endpoint_url: Optional[str] = None
    aws_region: Optional[str] = None
    log_level: str = 'INFO'

    @property
    def base_url(self) -> str:
        base_path = self.base_path.strip('/')
        url = f"https://{self.hostname}"
        return f"{url}/{base_path}" if base_path else url

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Load settings from environment variables.

        Args:
            env: Mapping to read instead of os.environ

        Raises:
            ConfigurationError: If credentials are missing or a value is invalid
        """
        env = os.environ if env is None else env

        username = env.get('CALDAV_USERNAME')
        password = env.get('CALDAV_PASSWORD')
        if not username or not password:
            raise ConfigurationError(
                'CALDAV_USERNAME and CALDAV_PASSWORD must be set'
            )

        return cls(
            username=username,
            password=password,
            hostname=env.get('CALDAV_HOSTNAME') or DEFAULT_HOSTNAME,
            base_path=env.get('CALDAV_BASE_PATH', ''),
            calendars=_calendars(env.get('CALDAV_CALENDARS')),
            default_calendar=env.get('DEFAULT_CALENDAR') or 'shared',
            sync_interval_minutes=_int(env, 'SYNC_INTERVAL_MINUTES', 15),
            retention_months=_int(env, 'RETENTION_MONTHS', 6),
            default_timezone=env.get('DEFAULT_TIMEZONE') or DEFAULT_TIMEZONE,
            timeout_seconds=_int(env, 'TIMEOUT_SECONDS', 30),
            events_table_name=env.get('EVENTS_TABLE_NAME') or 'calendar-events',
            deleted_events_table_name=(
                env.get('DELETED_EVENTS_TABLE_NAME') or 'calendar-deleted-events'
            ),
            dynamodb_endpoint_url=env.get('DYNAMODB_ENDPOINT_URL') or None,
            aws_region=env.get('AWS_REGION') or None,
            log_level=env.get('LOG_LEVEL') or 'INFO',
        )

    def build_registry(self) -> CalendarRegistry:
        """Build the calendar registry, failing fast on a bad definition."""
        try:
            return CalendarRegistry(self.calendars, self.default_calendar)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
