"""Field-by-field merge of fetched CalDAV events into cached rows."""
from typing import Optional

from processor.models import (
    CONTENT_FIELDS,
    CREATION_SOURCE_CALDAV,
    LOCATION_FIELDS,
    PROVENANCE_FIELDS,
    SYNC_STATUS_SYNCED,
    CalendarEvent,
)

REMOTE = 'remote'                  # fetched value, even when absent
REMOTE_UNLESS_EMPTY = 'remote_unless_empty'
LOCAL_UNLESS_EMPTY = 'local_unless_empty'
LOCAL = 'local'

# Precedence when a fetched event meets an existing cached row:
#   content     -> remote wins, absent remote values clear the field
#   location    -> remote wins when it names one, else keep the cached value
#   provenance  -> cached value wins unless empty; first sight records it
#   sync state  -> cached local_modified kept; sync_status becomes synced
FIELD_PRECEDENCE = {
    **{name: REMOTE for name in CONTENT_FIELDS},
    **{name: REMOTE_UNLESS_EMPTY for name in LOCATION_FIELDS},
    **{name: LOCAL_UNLESS_EMPTY for name in PROVENANCE_FIELDS},
    'local_modified': LOCAL,
}

# Values a row starts with the first time it is seen remotely
FIRST_SEEN_DEFAULTS = {
    'original_date': lambda fetched: fetched.date,
    'original_time': lambda fetched: fetched.time,
    'original_duration': lambda fetched: fetched.duration,
    'creation_source': lambda fetched: CREATION_SOURCE_CALDAV,
}


def _is_empty(value) -> bool:
    return value is None or value == '' or value == [] or value == ()


def merge_fetched_event(fetched: CalendarEvent,
                        existing: Optional[CalendarEvent]) -> CalendarEvent:
    """
    Build the row to store for a fetched event.

    Args:
        fetched: Event as decoded from CalDAV, stamped with its calendar
        existing: Cached row with metadata for the same id, if any

    Returns:
        Merged CalendarEvent following FIELD_PRECEDENCE
    """
    merged = fetched.copy(is_recurring_instance=False, original_event_id=None)

    for name, rule in FIELD_PRECEDENCE.items():
        remote_value = getattr(fetched, name)
        local_value = getattr(existing, name) if existing else None

        if rule == REMOTE:
            value = remote_value
        elif rule == REMOTE_UNLESS_EMPTY:
            value = local_value if _is_empty(remote_value) else remote_value
        elif rule == LOCAL_UNLESS_EMPTY:
            if not _is_empty(local_value):
                value = local_value
            elif not _is_empty(remote_value):
                value = remote_value
            else:
                value = FIRST_SEEN_DEFAULTS[name](fetched)
        else:
            value = local_value
        setattr(merged, name, value)

    merged.sync_status = SYNC_STATUS_SYNCED
    return merged
