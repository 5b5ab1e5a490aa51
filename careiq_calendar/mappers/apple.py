from datetime import date, datetime

from icalendar import vRecur

from ..exceptions import MappingError
from ..models.events import EventDraft
from ..models.provider_events import AppleEvent
from .common import (
    describe_with_provenance, categories_for, clean_description, to_utc, utc_date,
    date_to_utc, check_range,
)


def careiq_to_apple_event(event) -> AppleEvent:
    """Convert an internal event to a CalDAV VEVENT description.

    Open-ended events are written without DTEND, which iCalendar allows.
    """
    rrule = getattr(event, 'recurrence_rule', None)
    if rrule:
        try:
            vRecur.from_ical(rrule)
        except ValueError as e:
            raise MappingError(f"Invalid recurrence rule {rrule!r}: {e}")

    if event.all_day:
        dtstart = utc_date(event.start_time)
        dtend = utc_date(event.end_time) if event.end_time is not None else None
    else:
        dtstart = to_utc(event.start_time)
        dtend = to_utc(event.end_time) if event.end_time is not None else None

    return AppleEvent(
        uid=getattr(event, 'apple_event_uid', None),
        summary=event.title,
        description=describe_with_provenance(event),
        location=event.location or None,
        dtstart=dtstart,
        dtend=dtend,
        categories=categories_for(event),
        rrule=rrule or None,
        careiq_event_id=str(event.id) if getattr(event, 'id', None) else None,
        open_ended=event.end_time is None,
    )


def _to_instant(value):
    """Returns (instant, all_day) for a DTSTART/DTEND value"""
    if value is None:
        return None, False
    if isinstance(value, datetime):
        # Floating times are read as UTC
        return to_utc(value), False
    if isinstance(value, date):
        return date_to_utc(value), True
    raise MappingError(f"Unsupported iCalendar time value {value!r}")


def apple_to_careiq_event(apple_event: AppleEvent, user_id: str, calendar_type_id: str = None) -> EventDraft:
    if not apple_event.uid:
        raise MappingError("CalDAV event has no UID")

    start_time, all_day = _to_instant(apple_event.dtstart)
    if start_time is None:
        raise MappingError(f"CalDAV event {apple_event.uid} has no DTSTART")
    end_time, _ = _to_instant(apple_event.dtend)
    check_range(start_time, end_time)

    return EventDraft(
        user_id=user_id,
        calendar_type_id=calendar_type_id,
        title=apple_event.summary or 'Untitled Event',
        description=clean_description(apple_event.description),
        location=apple_event.location or None,
        start_time=start_time,
        end_time=end_time,
        all_day=all_day,
        category='custom',
        recurrence_rule=apple_event.rrule,
        apple_event_uid=apple_event.uid,
        sync_status='synced',
    )


def apple_event_uid(apple_event: AppleEvent) -> str:
    if not apple_event.uid:
        raise MappingError("CalDAV event has no UID")
    return apple_event.uid
