from datetime import datetime, timedelta, timezone

import pytest

from careiq_calendar.database.models import CalendarEvent, SyncConflict
from careiq_calendar.exceptions import ConflictAlreadyResolved, ConflictNotFound, InvalidResolution
from careiq_calendar.services.conflict_service import ConflictService
from conftest import USER_ID, add_event

START = datetime(2030, 3, 4, 14, 0, tzinfo=timezone.utc)


def add_conflict(session, event, title='Staff Meeting (Moved)', user_id=USER_ID, **fields):
    conflict = SyncConflict(
        user_id=user_id,
        event_id=event.id,
        provider='google',
        conflict_type='external_change',
        local_data=event.to_dict(),
        external_data={
            'user_id': user_id,
            'title': title,
            'description': 'Moved by the unit manager',
            'location': 'Room 7',
            'start_time': (START + timedelta(hours=2)).isoformat(),
            'end_time': (START + timedelta(hours=3)).isoformat(),
            'all_day': False,
        },
        **fields,
    )
    session.add(conflict)
    session.commit()
    return conflict


@pytest.fixture
def service(session):
    return ConflictService(session)


def test_list_defaults_to_pending(session, service):
    event = add_event(session, sync_status='conflict')
    pending = add_conflict(session, event)
    add_conflict(session, event, resolution_status='resolved_external')
    add_conflict(session, add_event(session, user_id='someone-else'), user_id='someone-else')

    assert [c.id for c in service.list_conflicts(USER_ID)] == [pending.id]
    assert len(service.list_conflicts(USER_ID, status='all')) == 2
    assert len(service.list_conflicts(USER_ID, status='resolved_external')) == 1


def test_conflicts_of_other_users_are_not_found(session, service):
    conflict = add_conflict(session, add_event(session, user_id='someone-else'), user_id='someone-else')
    with pytest.raises(ConflictNotFound):
        service.get_conflict(USER_ID, conflict.id)


def test_resolve_local(session, service):
    event = add_event(session, title='Staff Meeting', sync_status='conflict')
    conflict = add_conflict(session, event)

    resolved = service.resolve_conflict(USER_ID, conflict.id, 'resolved_local')

    assert resolved.resolution_status == 'resolved_local'
    assert resolved.resolved_by == USER_ID
    assert resolved.resolved_at is not None
    stored = session.get(CalendarEvent, event.id)
    assert stored.title == 'Staff Meeting'
    assert stored.sync_status == 'synced'


def test_resolve_external_applies_snapshot(session, service):
    event = add_event(session, title='Staff Meeting', sync_status='conflict')
    conflict = add_conflict(session, event)

    service.resolve_conflict(USER_ID, conflict.id, 'resolved_external', resolved_by='charge-nurse')

    session.expire_all()
    stored = session.get(CalendarEvent, event.id)
    assert stored.title == 'Staff Meeting (Moved)'
    assert stored.location == 'Room 7'
    assert stored.start_time == START + timedelta(hours=2)
    assert stored.sync_status == 'synced'
    assert session.get(SyncConflict, conflict.id).resolved_by == 'charge-nurse'


def test_resolve_manual_uses_supplied_fields(session, service):
    event = add_event(session, title='Staff Meeting', location='Room 4', sync_status='conflict')
    conflict = add_conflict(session, event)

    service.resolve_conflict(
        USER_ID, conflict.id, 'resolved_manual',
        resolved_data={'title': 'Staff Meeting (Agreed)', 'startTime': '2030-03-04T15:00:00+00:00'},
    )

    session.expire_all()
    stored = session.get(CalendarEvent, event.id)
    assert stored.title == 'Staff Meeting (Agreed)'
    assert stored.start_time == START + timedelta(hours=1)
    assert stored.location == 'Room 4'
    assert stored.sync_status == 'synced'


def test_resolve_manual_requires_data(session, service):
    conflict = add_conflict(session, add_event(session))
    with pytest.raises(InvalidResolution):
        service.resolve_conflict(USER_ID, conflict.id, 'resolved_manual')


def test_resolve_manual_rejects_unknown_fields(session, service):
    conflict = add_conflict(session, add_event(session))
    with pytest.raises(InvalidResolution):
        service.resolve_conflict(USER_ID, conflict.id, 'resolved_manual', resolved_data={'googleEventId': 'x'})


def test_ignore_marks_event_errored(session, service):
    event = add_event(session, sync_status='conflict')
    conflict = add_conflict(session, event)

    service.resolve_conflict(USER_ID, conflict.id, 'ignored')

    stored = session.get(CalendarEvent, event.id)
    assert stored.sync_status == 'error'
    assert stored.sync_error == 'Conflict ignored by user'


def test_invalid_resolution(session, service):
    conflict = add_conflict(session, add_event(session))
    with pytest.raises(InvalidResolution):
        service.resolve_conflict(USER_ID, conflict.id, 'pending')


def test_resolving_twice_is_rejected(session, service):
    conflict = add_conflict(session, add_event(session))
    service.resolve_conflict(USER_ID, conflict.id, 'resolved_local')

    with pytest.raises(ConflictAlreadyResolved):
        service.resolve_conflict(USER_ID, conflict.id, 'resolved_external')


def test_batch_reports_per_conflict_errors(session, service):
    first = add_conflict(session, add_event(session, title='Rounds'))
    second = add_conflict(session, add_event(session, title='Training'))
    done = add_conflict(session, add_event(session, title='Audit'), resolution_status='resolved_local')

    outcome = service.resolve_conflicts_batch(USER_ID, [first.id, 'missing', second.id, done.id], 'resolved_external')

    assert outcome['resolved_count'] == 2
    assert outcome['errors'] == [
        'Conflict missing not found or already resolved',
        f'Conflict {done.id} not found or already resolved',
    ]
    session.expire_all()
    assert session.get(SyncConflict, first.id).resolution_status == 'resolved_external'
    assert session.get(SyncConflict, second.id).resolution_status == 'resolved_external'


def test_batch_does_not_allow_manual(session, service):
    conflict = add_conflict(session, add_event(session))
    with pytest.raises(InvalidResolution):
        service.resolve_conflicts_batch(USER_ID, [conflict.id], 'resolved_manual')
