from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from googleapiclient.errors import HttpError

from careiq_calendar.exceptions import EventNotFound, MappingError, ProviderRejected, ProviderUnavailable
from careiq_calendar.integrations.google_calendar import GoogleCalendarClient
from careiq_calendar.models.events import EventWindow
from careiq_calendar.models.provider_events import GoogleEvent, GoogleEventTime

WINDOW = EventWindow(
    start=datetime(2030, 3, 1, tzinfo=timezone.utc),
    end=datetime(2030, 4, 1, tzinfo=timezone.utc),
)


def http_error(status):
    return HttpError(httplib2.Response({'status': status}), b'{"error": {"message": "failure"}}')


@pytest.fixture
def service():
    with patch('careiq_calendar.integrations.google_calendar.build') as build:
        service = MagicMock()
        build.return_value = service
        yield service


@pytest.fixture
def client(service):
    return GoogleCalendarClient('access-token', client_id='id', client_secret='secret', max_results=500)


def event(summary='Care Plan Review'):
    return GoogleEvent(
        summary=summary,
        start=GoogleEventTime(date_time='2030-03-04T14:00:00+00:00', time_zone='UTC'),
        end=GoogleEventTime(date_time='2030-03-04T15:00:00+00:00', time_zone='UTC'),
    )


def test_create_event_sends_wire_body(service, client):
    service.events().insert().execute.return_value = {'id': 'g-123'}

    assert client.create_event('primary', event()) == 'g-123'
    service.events().insert.assert_called_with(
        calendarId='primary',
        body={
            'summary': 'Care Plan Review',
            'start': {'dateTime': '2030-03-04T14:00:00+00:00', 'timeZone': 'UTC'},
            'end': {'dateTime': '2030-03-04T15:00:00+00:00', 'timeZone': 'UTC'},
        },
    )


def test_update_uses_patch(service, client):
    client.update_event('primary', 'g-123', event('Moved'))
    _, kwargs = service.events().patch.call_args
    assert kwargs['eventId'] == 'g-123'
    assert kwargs['body']['summary'] == 'Moved'


def test_patch_body_carries_cleared_fields(service, client):
    client.update_event('primary', 'g-123', GoogleEvent(summary='Moved', location=None, recurrence=None))

    body = service.events().patch.call_args.kwargs['body']
    assert body['location'] is None
    assert body['recurrence'] is None
    assert 'description' not in body


@pytest.mark.parametrize('status, error', [
    (404, EventNotFound),
    (410, EventNotFound),
    (400, ProviderRejected),
    (403, ProviderRejected),
    (429, ProviderUnavailable),
    (503, ProviderUnavailable),
])
def test_http_errors_are_classified(service, client, status, error):
    service.events().patch().execute.side_effect = http_error(status)
    with pytest.raises(error) as excinfo:
        client.update_event('primary', 'g-123', event())
    assert excinfo.value.status_code == status
    assert excinfo.value.provider == 'google'


def test_transport_errors_are_unavailable(service, client):
    service.events().insert().execute.side_effect = httplib2.ServerNotFoundError('no route')
    with pytest.raises(ProviderUnavailable):
        client.create_event('primary', event())


def test_deleting_missing_event_succeeds(service, client):
    service.events().delete().execute.side_effect = http_error(410)
    client.delete_event('primary', 'g-123')


def test_delete_failure_propagates(service, client):
    service.events().delete().execute.side_effect = http_error(500)
    with pytest.raises(ProviderUnavailable):
        client.delete_event('primary', 'g-123')


def test_list_events_follows_pages(service, client):
    service.events().list().execute.side_effect = [
        {'items': [{'id': 'a', 'summary': 'One'}], 'nextPageToken': 'p2'},
        {'items': [{'id': 'b', 'summary': 'Two'}, {'id': 'c', 'summary': 'Three'}]},
    ]

    items = client.list_events('primary', WINDOW)

    assert [item['id'] for item in items] == ['a', 'b', 'c']
    _, kwargs = service.events().list.call_args
    assert kwargs['pageToken'] == 'p2'
    assert kwargs['singleEvents'] is False
    assert kwargs['timeMin'] == '2030-03-01T00:00:00+00:00'


def test_list_events_returns_series_masters_only(service, client):
    service.events().list().execute.return_value = {'items': [
        {'id': 'weekly', 'summary': 'Weekly Rounds', 'recurrence': ['RRULE:FREQ=WEEKLY']},
        {'id': 'weekly_20300311T140000Z', 'recurringEventId': 'weekly', 'summary': 'Weekly Rounds (moved)'},
        {'id': 'weekly_20300318T140000Z', 'recurringEventId': 'weekly', 'status': 'cancelled'},
        {'id': 'single', 'summary': 'Audit'},
    ]}

    assert [item['id'] for item in client.list_events('primary', WINDOW)] == ['weekly', 'single']


def test_list_events_is_capped(service, client):
    client.max_results = 2
    service.events().list().execute.return_value = {
        'items': [{'id': 'a'}, {'id': 'b'}, {'id': 'c'}],
        'nextPageToken': 'more',
    }

    assert [item['id'] for item in client.list_events('primary', WINDOW)] == ['a', 'b']


def test_parse_event(client):
    parsed = client.parse_event({
        'id': 'a',
        'summary': 'One',
        'start': {'dateTime': '2030-03-04T14:00:00Z'},
        'recurringEventId': None,
    })
    assert parsed.id == 'a'
    assert parsed.start.date_time == '2030-03-04T14:00:00Z'


def test_parse_malformed_event(client):
    with pytest.raises(MappingError, match='bad-1'):
        client.parse_event({'id': 'bad-1', 'start': '2030-03-04'})


def test_list_calendars(service, client):
    service.calendarList().list().execute.return_value = {'items': [
        {'id': 'primary-id', 'summary': 'Nurse', 'primary': True, 'accessRole': 'owner'},
        {'id': 'holidays', 'summary': 'Holidays', 'accessRole': 'reader'},
    ]}

    calendars = client.list_calendars()

    assert [(c.id, c.primary, c.can_write) for c in calendars] == [
        ('primary-id', True, True),
        ('holidays', False, False),
    ]
    assert client.default_calendar() == 'primary'
