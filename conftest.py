from datetime import datetime, timedelta, timezone
import os
import tempfile

import pytest

from careiq_calendar.config.manager import ConfigManager
from careiq_calendar.database.connection import DatabaseManager
from careiq_calendar.database.models import CalendarEvent, CalendarIntegration
from careiq_calendar.exceptions import EventNotFound, ProviderRejected
from careiq_calendar.integrations.base import CalendarProviderClient
from careiq_calendar.models.events import CalendarDescriptor
from careiq_calendar.models.provider_events import GoogleEvent

USER_ID = 'user-1'

ENV_VARS = (
    'DATABASE_URL', 'TIMEZONE', 'HTTP_TIMEOUT', 'SYNC_PAST_DAYS', 'SYNC_FUTURE_DAYS',
    'SYNC_MAX_RESULTS', 'CONFLICT_POLICY', 'APPLE_CALDAV_URL', 'LOG_LEVEL', 'DEBUG',
)


@pytest.fixture
def db_manager():
    """DatabaseManager over a temporary SQLite file"""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as tmp:
        db_path = tmp.name
    manager = DatabaseManager(db_path)
    manager.init_database()
    yield manager
    manager.engine.dispose()
    os.unlink(db_path)


@pytest.fixture
def session(db_manager):
    session = db_manager.get_session()
    yield session
    session.close()


@pytest.fixture
def config(tmp_path, monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    # Client settings come from the environment so the keyring is never consulted
    monkeypatch.setenv('GOOGLE_CALENDAR_CLIENT_ID', 'google-client')
    monkeypatch.setenv('GOOGLE_CALENDAR_CLIENT_SECRET', 'google-secret')
    monkeypatch.setenv('GOOGLE_CALENDAR_REDIRECT_URI', 'http://localhost:8000/calendar/google/callback')
    monkeypatch.setenv('OUTLOOK_CALENDAR_CLIENT_ID', 'outlook-client')
    monkeypatch.setenv('OUTLOOK_CALENDAR_CLIENT_SECRET', 'outlook-secret')
    monkeypatch.setenv('OUTLOOK_CALENDAR_REDIRECT_URI', 'http://localhost:8000/calendar/outlook/callback')
    return ConfigManager(env_file=str(tmp_path / 'missing.env'))


class FakeCalendarClient(CalendarProviderClient):
    """In-memory Google-shaped provider used to drive the sync service"""

    provider = 'google'

    def __init__(self):
        super().__init__()
        self.events = {}
        self.fail_titles = set()
        self.created = []
        self.updated = []
        self.deleted = []
        self.calendars = [CalendarDescriptor(id='primary', name='Primary', primary=True, can_write=True)]
        self._next_id = 0

    def list_calendars(self):
        return self.calendars

    def create_event(self, calendar_ref, event):
        if event.summary in self.fail_titles:
            raise ProviderRejected('Invalid event payload', provider='google', status_code=400)
        self._next_id += 1
        external_id = f'g{self._next_id}'
        self.events[external_id] = event.model_copy(update={'id': external_id})
        self.created.append(external_id)
        return external_id

    def update_event(self, calendar_ref, external_id, event):
        if external_id not in self.events:
            raise EventNotFound(f'{external_id} not found', provider='google', status_code=404)
        # PATCH: fields missing from the body keep their stored value
        merged = {**self.events[external_id].to_wire(), **event.to_wire(), 'id': external_id}
        self.events[external_id] = GoogleEvent.model_validate(merged)
        self.updated.append(external_id)

    def delete_event(self, calendar_ref, external_id):
        self.events.pop(external_id, None)
        self.deleted.append(external_id)

    def list_events(self, calendar_ref, window):
        return list(self.events.values())

    def parse_event(self, item):
        return item

    def put(self, event):
        self.events[event.id] = event


@pytest.fixture
def fake_client():
    return FakeCalendarClient()


def add_integration(session, provider='google', user_id=USER_ID, **fields):
    values = {
        'access_token': 'access-token',
        'refresh_token': 'refresh-token',
        'expires_at': datetime.now(timezone.utc) + timedelta(hours=1),
    }
    if provider == 'apple_caldav':
        values = {'caldav_username': 'nurse@icloud.com', 'caldav_password': 'app-password'}
    values.update(fields)
    integration = CalendarIntegration(user_id=user_id, provider=provider, **values)
    session.add(integration)
    session.commit()
    return integration


def add_event(session, title='Care Plan Review', user_id=USER_ID, **fields):
    start = datetime(2030, 3, 4, 14, 0, tzinfo=timezone.utc)
    values = {
        'start_time': start,
        'end_time': start + timedelta(hours=1),
        'all_day': False,
        'category': 'care_plan',
        'sync_status': 'pending',
    }
    values.update(fields)
    event = CalendarEvent(user_id=user_id, title=title, **values)
    session.add(event)
    session.commit()
    return event
