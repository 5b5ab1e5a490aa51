from datetime import datetime
import html
import re
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import vRecur

from ..exceptions import MappingError
from ..models.events import EventDraft
from ..models.provider_events import (
    OutlookEvent, OutlookBody, OutlookLocation, OutlookDateTime, OutlookExtendedProperty,
    OutlookRecurrence, OutlookRecurrencePattern, OutlookRecurrenceRange,
)
from .common import (
    PROVENANCE_MARK, provenance_text, categories_for, clean_description, to_utc, utc_date,
    date_to_utc, open_ended_end, parse_instant, parse_date, check_range,
)

# Named MAPI properties in the PS_PUBLIC_STRINGS property set
EVENT_ID_PROPERTY_ID = 'String {00020329-0000-0000-C000-000000000046} Name CareIQEventId'
OPEN_ENDED_PROPERTY_ID = 'String {00020329-0000-0000-C000-000000000046} Name CareIQOpenEnded'

GRAPH_DATETIME_FORMAT = '%Y-%m-%dT%H:%M:%S.%f'


def _body_html(event) -> str:
    parts = []
    if event.description:
        parts.append(html.escape(event.description).replace('\n', '<br>'))
    parts.append(f"{PROVENANCE_MARK} <i>{html.escape(provenance_text(event))}</i>")
    return '<br><br>'.join(parts)


def _graph_time(value: datetime, all_day: bool) -> OutlookDateTime:
    if all_day:
        return OutlookDateTime(date_time=f"{utc_date(value).isoformat()}T00:00:00", time_zone='UTC')
    return OutlookDateTime(date_time=to_utc(value).strftime(GRAPH_DATETIME_FORMAT), time_zone='UTC')


# Recurrence: iCalendar RRULE <-> Graph patternedRecurrence

_WEEKDAYS = {
    'MO': 'monday', 'TU': 'tuesday', 'WE': 'wednesday', 'TH': 'thursday',
    'FR': 'friday', 'SA': 'saturday', 'SU': 'sunday',
}
_WEEKDAY_CODES = {name: code for code, name in _WEEKDAYS.items()}
_WEEKDAY_ORDER = ['MO', 'TU', 'WE', 'TH', 'FR', 'SA', 'SU']
_INDEXES = {1: 'first', 2: 'second', 3: 'third', 4: 'fourth', -1: 'last'}
_INDEX_ORDINALS = {name: ordinal for ordinal, name in _INDEXES.items()}
_BYDAY_RE = re.compile(r'^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$')
_PATTERN_FREQUENCIES = {
    'daily': 'DAILY',
    'weekly': 'WEEKLY',
    'absoluteMonthly': 'MONTHLY',
    'relativeMonthly': 'MONTHLY',
    'absoluteYearly': 'YEARLY',
    'relativeYearly': 'YEARLY',
}


def _by_day(values, rule: str) -> List[Tuple[Optional[int], str]]:
    days = []
    for value in values:
        match = _BYDAY_RE.match(str(value).upper())
        if not match:
            raise MappingError(f"Unsupported BYDAY value {value!r} in {rule!r}")
        ordinal = int(match.group(1)) if match.group(1) else None
        days.append((ordinal, match.group(2)))
    return days


def _relative_index(days, parts, rule: str) -> str:
    ordinals = {ordinal for ordinal, _ in days if ordinal is not None}
    if not ordinals and parts.get('BYSETPOS'):
        ordinals = {int(parts['BYSETPOS'][0])}
    if len(ordinals) != 1 or next(iter(ordinals)) not in _INDEXES:
        raise MappingError(f"Outlook cannot represent recurrence {rule!r}")
    return _INDEXES[ordinals.pop()]


def rrule_to_graph(rule: str, start: datetime) -> OutlookRecurrence:
    """Graph patternedRecurrence for an RRULE anchored at the event start"""
    text = rule[len('RRULE:'):] if rule.upper().startswith('RRULE:') else rule
    try:
        parts = vRecur.from_ical(text)
    except ValueError as e:
        raise MappingError(f"Invalid recurrence rule {rule!r}: {e}")

    frequency = str(parts.get('FREQ', [''])[0]).upper()
    interval = int(parts.get('INTERVAL', [1])[0])
    first_day = utc_date(start)
    days = _by_day(parts.get('BYDAY', []), rule)
    day_names = [_WEEKDAYS[code] for _, code in days]

    if frequency == 'DAILY':
        pattern = OutlookRecurrencePattern(type='daily', interval=interval)
    elif frequency == 'WEEKLY':
        pattern = OutlookRecurrencePattern(
            type='weekly',
            interval=interval,
            days_of_week=day_names or [_WEEKDAYS[_WEEKDAY_ORDER[first_day.weekday()]]],
        )
    elif frequency in ('MONTHLY', 'YEARLY'):
        yearly = frequency == 'YEARLY'
        if days:
            pattern = OutlookRecurrencePattern(
                type='relativeYearly' if yearly else 'relativeMonthly',
                interval=interval,
                days_of_week=day_names,
                index=_relative_index(days, parts, rule),
            )
        else:
            day_of_month = int(parts.get('BYMONTHDAY', [first_day.day])[0])
            if day_of_month < 1:
                raise MappingError(f"Outlook cannot represent recurrence {rule!r}")
            pattern = OutlookRecurrencePattern(
                type='absoluteYearly' if yearly else 'absoluteMonthly',
                interval=interval,
                day_of_month=day_of_month,
            )
        if yearly:
            pattern.month = int(parts.get('BYMONTH', [first_day.month])[0])
    else:
        raise MappingError(f"Outlook does not support {frequency or 'unspecified'} recurrence in {rule!r}")

    recurrence_range = OutlookRecurrenceRange(type='noEnd', start_date=first_day.isoformat())
    if parts.get('COUNT'):
        recurrence_range.type = 'numbered'
        recurrence_range.number_of_occurrences = int(parts['COUNT'][0])
    elif parts.get('UNTIL'):
        until = parts['UNTIL'][0]
        recurrence_range.type = 'endDate'
        recurrence_range.end_date = (utc_date(until) if isinstance(until, datetime) else until).isoformat()
    return OutlookRecurrence(pattern=pattern, range=recurrence_range)


def graph_to_rrule(recurrence: Optional[OutlookRecurrence]) -> Optional[str]:
    """RRULE text for a Graph patternedRecurrence; None for a single event"""
    if recurrence is None or recurrence.pattern is None or not recurrence.pattern.type:
        return None
    pattern = recurrence.pattern
    frequency = _PATTERN_FREQUENCIES.get(pattern.type)
    if frequency is None:
        raise MappingError(f"Unsupported Outlook recurrence pattern {pattern.type!r}")

    parts = [f'FREQ={frequency}']
    if pattern.interval and pattern.interval > 1:
        parts.append(f'INTERVAL={pattern.interval}')
    codes = [_WEEKDAY_CODES[day.lower()] for day in pattern.days_of_week or [] if day.lower() in _WEEKDAY_CODES]
    if pattern.type == 'weekly' and codes:
        parts.append(f"BYDAY={','.join(codes)}")
    elif pattern.type.startswith('relative') and codes:
        ordinal = _INDEX_ORDINALS.get(pattern.index or 'first', 1)
        parts.append('BYDAY=' + ','.join(f'{ordinal}{code}' for code in codes))
    elif pattern.type.startswith('absolute') and pattern.day_of_month:
        parts.append(f'BYMONTHDAY={pattern.day_of_month}')
    if frequency == 'YEARLY' and pattern.month:
        parts.append(f'BYMONTH={pattern.month}')

    recurrence_range = recurrence.range
    if recurrence_range is not None:
        if recurrence_range.type == 'numbered' and recurrence_range.number_of_occurrences:
            parts.append(f'COUNT={recurrence_range.number_of_occurrences}')
        elif recurrence_range.type == 'endDate' and recurrence_range.end_date:
            parts.append(f"UNTIL={parse_date(recurrence_range.end_date, 'recurrence end').strftime('%Y%m%d')}")
    return ';'.join(parts)


def careiq_to_outlook_event(event) -> OutlookEvent:
    """Convert an internal event to a Microsoft Graph event"""
    rule = getattr(event, 'recurrence_rule', None)
    properties = []
    if getattr(event, 'id', None):
        properties.append(OutlookExtendedProperty(id=EVENT_ID_PROPERTY_ID, value=str(event.id)))

    end = event.end_time
    if end is None:
        end = open_ended_end(event)
    properties.append(OutlookExtendedProperty(
        id=OPEN_ENDED_PROPERTY_ID,
        value='true' if event.end_time is None else 'false',
    ))

    return OutlookEvent(
        subject=event.title,
        body=OutlookBody(content_type='HTML', content=_body_html(event)),
        # An empty display name clears the location on a PATCH
        location=OutlookLocation(display_name=event.location or ''),
        start=_graph_time(event.start_time, event.all_day),
        end=_graph_time(end, event.all_day),
        is_all_day=bool(event.all_day),
        categories=categories_for(event),
        recurrence=rrule_to_graph(rule, event.start_time) if rule else None,
        single_value_extended_properties=properties,
    )


def _parse_graph_time(value: Optional[OutlookDateTime], field: str) -> Optional[datetime]:
    if value is None or not value.date_time:
        return None
    parsed = parse_instant(value.date_time, field)
    zone = value.time_zone
    if not zone or zone.upper() in ('UTC', 'Z'):
        return parsed
    # Graph returns wall-clock time in the named zone
    try:
        tz = ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError):
        raise MappingError(f"Unsupported {field} time zone {zone!r}")
    return parsed.replace(tzinfo=tz).astimezone(ZoneInfo('UTC'))


def outlook_to_careiq_event(outlook_event: OutlookEvent, user_id: str, calendar_type_id: str = None) -> EventDraft:
    """Convert a Microsoft Graph event to internal event format"""
    if not outlook_event.id:
        raise MappingError("Outlook event has no id")

    start_time = _parse_graph_time(outlook_event.start, 'start')
    if start_time is None:
        raise MappingError(f"Outlook event {outlook_event.id} has no start time")

    all_day = bool(outlook_event.is_all_day)
    if all_day:
        start_time = date_to_utc(start_time.date())

    if outlook_event.extended_property(OPEN_ENDED_PROPERTY_ID) == 'true':
        end_time = None
    else:
        end_time = _parse_graph_time(outlook_event.end, 'end')
        if end_time is not None and all_day:
            end_time = date_to_utc(end_time.date())
    check_range(start_time, end_time)

    body = outlook_event.body.content if outlook_event.body else None
    location = outlook_event.location.display_name if outlook_event.location else None

    return EventDraft(
        user_id=user_id,
        calendar_type_id=calendar_type_id,
        title=outlook_event.subject or 'Untitled Event',
        description=clean_description(body),
        location=location or None,
        start_time=start_time,
        end_time=end_time,
        all_day=all_day,
        category='custom',
        recurrence_rule=graph_to_rrule(outlook_event.recurrence),
        outlook_event_id=outlook_event.id,
        sync_status='synced',
    )


def outlook_event_id(outlook_event: OutlookEvent) -> str:
    if not outlook_event.id:
        raise MappingError("Outlook event has no id")
    return outlook_event.id
