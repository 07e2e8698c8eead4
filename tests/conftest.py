"""Shared fixtures."""
import os
from unittest.mock import patch

import pytest
from moto import mock_aws

from processor.models import CalendarDescriptor, CalendarEvent
from remote.calendar_registry import CalendarRegistry
from storage.event_cache import EventCacheStore


@pytest.fixture
def aws_credentials():
    """Fake AWS credentials so boto3 never reaches a real account."""
    env_vars = {
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_SECURITY_TOKEN': 'testing',
        'AWS_SESSION_TOKEN': 'testing',
        'AWS_DEFAULT_REGION': 'us-east-1'
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def cache_store(aws_credentials):
    """EventCacheStore on mocked DynamoDB tables."""
    with mock_aws():
        store = EventCacheStore(
            'test-calendar-events',
            'test-calendar-deleted-events',
            region_name='us-east-1'
        )
        store.ensure_tables()
        yield store


@pytest.fixture
def registry():
    return CalendarRegistry(
        [
            CalendarDescriptor('shared', 'shared', 'Shared'),
            CalendarDescriptor('home', 'home', 'Home'),
            CalendarDescriptor('work', 'work', 'Work'),
        ],
        default_calendar='shared'
    )


def make_event(event_id='e1', title='Lunch', date='2025-08-22', time='14:00',
               **fields) -> CalendarEvent:
    """Build a CalendarEvent with sensible defaults."""
    return CalendarEvent(id=event_id, title=title, date=date, time=time, **fields)


def remote_event(event_id, calendar='work', **fields) -> CalendarEvent:
    """Build an event the way the multi-calendar adapter hands it over."""
    fields.setdefault('calendar_name', calendar)
    fields.setdefault('calendar_path', calendar)
    fields.setdefault('caldav_filename', f"{event_id}.ics")
    return make_event(event_id, **fields)
