from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from careiq_calendar.api.main import app, get_sync_service
from careiq_calendar.database.connection import get_db
from careiq_calendar.database.models import CalendarEvent, CalendarIntegration, SyncConflict, SyncLog
from careiq_calendar.services.calendar_sync_service import CalendarSyncService
from conftest import USER_ID, add_event, add_integration

HEADERS = {'X-User-Id': USER_ID}


@pytest.fixture
def api(db_manager, config, fake_client):
    def override_db():
        db = db_manager.get_session()
        try:
            yield db
        finally:
            db.close()

    def override_sync_service():
        return CalendarSyncService(db_manager, config, client_factory=lambda *args: fake_client)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_sync_service] = override_sync_service
    yield TestClient(app)
    app.dependency_overrides.clear()


def add_conflict(session, event, **fields):
    conflict = SyncConflict(
        user_id=event.user_id,
        event_id=event.id,
        provider='google',
        conflict_type='external_change',
        local_data=event.to_dict(),
        external_data={'user_id': event.user_id, 'title': 'Changed', 'start_time': '2030-03-04T16:00:00+00:00'},
        **fields,
    )
    session.add(conflict)
    session.commit()
    return conflict


def test_health(api):
    assert api.get('/health').json() == {'status': 'healthy'}


def test_requests_without_user_are_unauthorized(api):
    assert api.post('/calendar/sync', json={'provider': 'google'}).status_code == 401
    assert api.get('/calendar/conflicts').status_code == 401


def test_manual_sync(api, session, fake_client):
    add_integration(session)
    add_event(session, title='Care Plan Review')

    response = api.post('/calendar/sync', json={'provider': 'google', 'direction': 'push'}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body['ok'] is True
    assert body['result']['eventsCreated'] == 1
    assert body['result']['syncLogId']
    assert fake_client.created == ['g1']


def test_sync_rejects_unknown_provider(api):
    response = api.post('/calendar/sync', json={'provider': 'yahoo'}, headers=HEADERS)
    assert response.status_code == 422


def test_sync_without_integration_reports_failure(api):
    body = api.post('/calendar/sync', json={'provider': 'outlook'}, headers=HEADERS).json()

    assert body['ok'] is False
    assert 'No outlook calendar integration' in body['result']['errors'][0]


def test_concurrent_sync_is_conflict(api, session):
    add_integration(session)
    session.add(SyncLog(user_id=USER_ID, provider='google', sync_direction='bidirectional',
                        status='in_progress', started_at=datetime.now(timezone.utc)))
    session.commit()

    response = api.post('/calendar/sync', json={'provider': 'google'}, headers=HEADERS)

    assert response.status_code == 409
    assert response.json()['ok'] is False


def test_graph_validation_handshake(api):
    response = api.post('/calendar/webhooks/outlook?validationToken=abc%20123', headers=HEADERS)

    assert response.status_code == 200
    assert response.text == 'abc 123'
    assert response.headers['content-type'].startswith('text/plain')


def test_google_channel_sync_message(api):
    response = api.post('/calendar/webhooks/google', headers={**HEADERS, 'X-Goog-Resource-State': 'sync'})
    assert response.status_code == 200


def test_webhook_runs_pull(api, session):
    add_integration(session)
    add_event(session, title='Not pushed by a webhook')

    response = api.post('/calendar/webhooks/google', headers={**HEADERS, 'X-Goog-Resource-State': 'exists'})

    assert response.status_code == 202
    assert response.json()['result']['eventsCreated'] == 0
    log = session.query(SyncLog).one()
    assert log.sync_type == 'webhook'
    assert log.sync_direction == 'pull'


def test_integrations_lifecycle(api, session):
    add_integration(session, display_name='Google Calendar')
    add_integration(session, provider='outlook', user_id='someone-else')
    event = add_event(session, google_event_id='g9', sync_status='synced')

    listed = api.get('/calendar/integrations', headers=HEADERS).json()['integrations']
    assert [i['provider'] for i in listed] == ['google']
    assert 'access_token' not in listed[0]

    updated = api.put('/calendar/integrations/google', json={'syncEnabled': False}, headers=HEADERS)
    assert updated.json()['integration']['sync_enabled'] is False

    assert api.delete('/calendar/integrations/google', headers=HEADERS).json()['ok'] is True
    session.expire_all()
    assert not session.query(CalendarIntegration).filter_by(user_id=USER_ID).one().is_active
    assert session.get(CalendarEvent, event.id).google_event_id is None

    missing = api.delete('/calendar/integrations/outlook', headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json() == {'ok': False, 'error': f'No outlook calendar integration for user {USER_ID}'}


def test_list_and_resolve_conflict(api, session):
    event = add_event(session, sync_status='conflict')
    conflict = add_conflict(session, event)

    listed = api.get('/calendar/conflicts', headers=HEADERS).json()['conflicts']
    assert [c['id'] for c in listed] == [conflict.id]

    response = api.post(
        '/calendar/conflicts',
        json={'conflictId': conflict.id, 'resolution': 'resolved_external'},
        headers=HEADERS,
    )
    assert response.json() == {'ok': True, 'message': 'Conflict resolved successfully'}

    session.expire_all()
    assert session.get(CalendarEvent, event.id).title == 'Changed'
    assert session.get(SyncConflict, conflict.id).resolved_by == USER_ID
    assert api.get('/calendar/conflicts', headers=HEADERS).json()['conflicts'] == []
    assert len(api.get('/calendar/conflicts?status=all', headers=HEADERS).json()['conflicts']) == 1


def test_resolve_errors(api, session):
    conflict = add_conflict(session, add_event(session), resolution_status='ignored')

    invalid = api.post('/calendar/conflicts', json={'conflictId': conflict.id, 'resolution': 'shrug'}, headers=HEADERS)
    assert invalid.status_code == 400

    missing = api.post('/calendar/conflicts', json={'conflictId': 'nope', 'resolution': 'ignored'}, headers=HEADERS)
    assert missing.status_code == 404

    repeated = api.post('/calendar/conflicts', json={'conflictId': conflict.id, 'resolution': 'ignored'}, headers=HEADERS)
    assert repeated.status_code == 400


def test_batch_resolution(api, session):
    first = add_conflict(session, add_event(session, title='Rounds'))
    second = add_conflict(session, add_event(session, title='Audit'))

    response = api.put(
        '/calendar/conflicts/batch',
        json={'conflictIds': [first.id, second.id, 'nope'], 'resolution': 'resolved_local'},
        headers=HEADERS,
    )

    body = response.json()
    assert body['resolvedCount'] == 2
    assert body['errors'] == ['Conflict nope not found or already resolved']
    assert body['message'] == 'Resolved 2 of 3 conflicts'

    empty = api.put('/calendar/conflicts/batch', json={'conflictIds': [], 'resolution': 'ignored'}, headers=HEADERS)
    assert empty.status_code == 400


def test_sync_logs(api, session):
    add_integration(session)
    api.post('/calendar/sync', json={'provider': 'google'}, headers=HEADERS)

    logs = api.get('/calendar/sync-logs?provider=google', headers=HEADERS).json()['syncLogs']

    assert len(logs) == 1
    assert logs[0]['status'] == 'success'
    assert api.get('/calendar/sync-logs?provider=outlook', headers=HEADERS).json()['syncLogs'] == []
