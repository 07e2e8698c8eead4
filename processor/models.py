"""Data models for calendar events and sync bookkeeping."""
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, List, Optional, Tuple


ALL_DAY_MARKERS = ('', 'all day')

STATUS_VALUES = ('CONFIRMED', 'TENTATIVE', 'CANCELLED')
VISIBILITY_VALUES = ('PUBLIC', 'PRIVATE', 'CONFIDENTIAL')
TRANSPARENCY_VALUES = ('OPAQUE', 'TRANSPARENT')

CREATION_SOURCE_CALDAV = 'caldav'
CREATION_SOURCE_LOCAL = 'local'
SYNC_STATUS_SYNCED = 'synced'
SYNC_STATUS_PENDING = 'pending'


@dataclass
class CalendarEvent:
    """Canonical calendar event, as cached locally and exchanged with CalDAV."""
    id: str
    title: str
    date: str
    time: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    dtend: Optional[str] = None
    duration: Optional[str] = None
    timezone: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    organizer: Optional[str] = None
    attendees: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    priority: Optional[int] = None
    status: Optional[str] = None
    visibility: Optional[str] = None
    transparency: Optional[str] = None
    geo: Optional[Tuple[float, float]] = None
    url: Optional[str] = None
    attachments: List[str] = field(default_factory=list)
    rrule: Optional[str] = None
    created: Optional[str] = None
    last_modified: Optional[str] = None
    sequence: Optional[int] = None

    # Provenance, owned by the local cache
    calendar_name: Optional[str] = None
    calendar_path: Optional[str] = None
    caldav_filename: Optional[str] = None
    original_date: Optional[str] = None
    original_time: Optional[str] = None
    original_duration: Optional[str] = None
    creation_source: Optional[str] = None
    sync_status: Optional[str] = None
    local_modified: Optional[str] = None

    # Set only on generated recurrence occurrences
    is_recurring_instance: bool = False
    original_event_id: Optional[str] = None

    @property
    def is_all_day(self) -> bool:
        return self.time is None or self.time.strip().lower() in ALL_DAY_MARKERS

    def copy(self, **changes: Any) -> 'CalendarEvent':
        return replace(self, **changes)


CONTENT_FIELDS = (
    'title', 'date', 'time', 'start', 'end', 'dtend', 'duration', 'timezone',
    'description', 'location', 'organizer', 'attendees', 'categories',
    'priority', 'status', 'visibility', 'transparency', 'geo', 'url',
    'attachments', 'rrule', 'created', 'last_modified', 'sequence',
)

LOCATION_FIELDS = ('calendar_name', 'calendar_path', 'caldav_filename')

PROVENANCE_FIELDS = (
    'original_date', 'original_time', 'original_duration', 'creation_source',
)

SYNC_FIELDS = ('sync_status', 'local_modified')

METADATA_FIELDS = LOCATION_FIELDS + PROVENANCE_FIELDS + SYNC_FIELDS

# Every persisted attribute; occurrence back-references are derived only
PERSISTED_FIELDS = tuple(
    f.name for f in fields(CalendarEvent)
    if f.name not in ('is_recurring_instance', 'original_event_id')
)


@dataclass
class DeletedEventRecord:
    """Locally-issued (or remotely-observed) deletion awaiting upstream sync."""
    id: str
    deleted_at: str
    synced_to_caldav: bool
    caldav_filename: Optional[str] = None
    calendar_path: Optional[str] = None
    calendar_name: Optional[str] = None
    propagation_attempts: int = 0


@dataclass(frozen=True)
class CalendarDescriptor:
    """Static registry entry for one remote calendar collection."""
    name: str
    path: str
    display_name: str


@dataclass
class CalendarInfo:
    """Per-calendar event count; count of -1 marks a failed query."""
    name: str
    display_name: str
    count: int


@dataclass
class FetchResult:
    """Events gathered across calendars plus the calendars that failed."""
    events: List[CalendarEvent]
    fetched_calendars: List[str]
    failed_calendars: List[str]


@dataclass
class SyncResult:
    """Result of one reconciliation cycle."""
    fetched: int = 0
    added: int = 0
    updated: int = 0
    remote_deletions: int = 0
    deletions_propagated: int = 0
    purged: int = 0
    failed_calendars: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class OperationStatus(Enum):
    OK = 'ok'
    NOT_FOUND = 'not_found'
    MISSING_METADATA = 'missing_metadata'
    VALIDATION_FAILED = 'validation_failed'
    REMOTE_FAILURE = 'remote_failure'
    STORAGE_FAILURE = 'storage_failure'


@dataclass
class OperationResult:
    """Outcome of a user-facing operation.

    ``NOT_FOUND`` and ``MISSING_METADATA`` are not worth retrying;
    ``REMOTE_FAILURE`` and ``STORAGE_FAILURE`` may succeed later.
    """
    status: OperationStatus
    message: str = ''
    data: Any = None

    @property
    def success(self) -> bool:
        return self.status is OperationStatus.OK

    @property
    def retryable(self) -> bool:
        return self.status in (
            OperationStatus.REMOTE_FAILURE, OperationStatus.STORAGE_FAILURE
        )

    @classmethod
    def ok(cls, data: Any = None, message: str = '') -> 'OperationResult':
        return cls(OperationStatus.OK, message, data)

    @classmethod
    def failure(cls, status: OperationStatus, message: str,
                data: Any = None) -> 'OperationResult':
        return cls(status, message, data)
