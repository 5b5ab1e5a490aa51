from typing import Optional

from ..exceptions import MappingError
from ..models.events import EventDraft
from ..models.provider_events import GoogleEvent, GoogleEventTime, GoogleExtendedProperties
from .common import (
    describe_with_provenance, clean_description, to_utc, utc_date, date_to_utc,
    open_ended_end, parse_instant, parse_date, check_range,
)

# Private extended property keys written on every pushed event
EVENT_ID_PROPERTY = 'careiqEventId'
OPEN_ENDED_PROPERTY = 'careiqOpenEnded'


def _event_time(value, all_day: bool) -> GoogleEventTime:
    # The unused key is sent as null so a patch can switch between the two forms
    if all_day:
        return GoogleEventTime(date=utc_date(value).isoformat(), date_time=None)
    return GoogleEventTime(date_time=to_utc(value).isoformat(), time_zone='UTC', date=None)


def careiq_to_google_event(event) -> GoogleEvent:
    """Convert an internal event to Google Calendar event format"""
    private = {EVENT_ID_PROPERTY: str(event.id)} if getattr(event, 'id', None) else {}

    # Always written so a patch clears a stale marker
    if event.end_time is not None:
        end = event.end_time
        private[OPEN_ENDED_PROPERTY] = 'false'
    else:
        end = open_ended_end(event)
        private[OPEN_ENDED_PROPERTY] = 'true'

    recurrence = None
    if getattr(event, 'recurrence_rule', None):
        rule = event.recurrence_rule
        recurrence = [rule if rule.upper().startswith('RRULE:') else f'RRULE:{rule}']

    return GoogleEvent(
        summary=event.title,
        description=describe_with_provenance(event),
        location=event.location or None,
        start=_event_time(event.start_time, event.all_day),
        end=_event_time(end, event.all_day),
        recurrence=recurrence,
        extended_properties=GoogleExtendedProperties(private=private),
    )


def _parse_event_time(value: Optional[GoogleEventTime], field: str):
    """Returns (instant, all_day) for a Google start/end object"""
    if value is None:
        return None, False
    if value.date_time:
        return parse_instant(value.date_time, field), False
    if value.date:
        return date_to_utc(parse_date(value.date, field)), True
    return None, False


def google_to_careiq_event(google_event: GoogleEvent, user_id: str, calendar_type_id: str = None) -> EventDraft:
    """Convert a Google Calendar event to internal event format"""
    if not google_event.id:
        raise MappingError("Google event has no id")

    start_time, all_day = _parse_event_time(google_event.start, 'start')
    if start_time is None:
        raise MappingError(f"Google event {google_event.id} has no start time")

    private = google_event.extended_properties.private if google_event.extended_properties else {}
    if private.get(OPEN_ENDED_PROPERTY) == 'true':
        end_time = None
    else:
        end_time, _ = _parse_event_time(google_event.end, 'end')
    check_range(start_time, end_time)

    recurrence_rule = None
    for line in google_event.recurrence or []:
        if line.upper().startswith('RRULE:'):
            recurrence_rule = line[len('RRULE:'):]
            break

    return EventDraft(
        user_id=user_id,
        calendar_type_id=calendar_type_id,
        title=google_event.summary or 'Untitled Event',
        description=clean_description(google_event.description),
        location=google_event.location or None,
        start_time=start_time,
        end_time=end_time,
        all_day=all_day,
        category='custom',
        recurrence_rule=recurrence_rule,
        google_event_id=google_event.id,
        sync_status='synced',
    )


def google_event_id(google_event: GoogleEvent) -> str:
    if not google_event.id:
        raise MappingError("Google event has no id")
    return google_event.id
