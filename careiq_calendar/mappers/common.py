"""Helpers shared by the provider mappers: provenance text, markup and time handling"""
from datetime import date, datetime, time, timedelta, timezone
import html
import re
from typing import List, Optional

from ..exceptions import MappingError

PROVENANCE_MARK = '\U0001F3E5'
PROVENANCE_LABEL = 'Created by CareIQ'

_PROVENANCE_RE = re.compile(
    r'\s*(?:' + PROVENANCE_MARK + r'\s*)?' + re.escape(PROVENANCE_LABEL)
    + r' - [\w ]+ event(?: \(Compliance Related\))?\s*$'
)
_BREAK_RE = re.compile(r'<\s*br\s*/?\s*>|</\s*p\s*>', re.IGNORECASE)
_TAG_RE = re.compile(r'<[^>]*>')
_STYLE_RE = re.compile(r'<(style|script)[^>]*>.*?</\1\s*>', re.IGNORECASE | re.DOTALL)
_BLANK_LINES_RE = re.compile(r'\n{3,}')


def provenance_text(event) -> str:
    category = getattr(event, 'category', None) or 'custom'
    text = f"{PROVENANCE_LABEL} - {category} event"
    if getattr(event, 'compliance_related', False):
        text += " (Compliance Related)"
    return text


def describe_with_provenance(event) -> str:
    """Plain-text description followed by the CareIQ provenance footer"""
    footer = f"{PROVENANCE_MARK} {provenance_text(event)}"
    if event.description:
        return f"{event.description}\n\n{footer}"
    return footer


def strip_markup(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = _STYLE_RE.sub('', text)
    text = _BREAK_RE.sub('\n', text)
    text = _TAG_RE.sub('', text)
    text = html.unescape(text).replace('\r\n', '\n').replace('\xa0', ' ')
    return _BLANK_LINES_RE.sub('\n\n', text)


def strip_provenance(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return _PROVENANCE_RE.sub('', text)


def clean_description(text: Optional[str]) -> Optional[str]:
    """External description text as stored internally"""
    text = strip_provenance(strip_markup(text))
    if text is None:
        return None
    text = text.strip()
    return text or None


def categories_for(event) -> List[str]:
    category = getattr(event, 'category', None) or 'custom'
    if getattr(event, 'compliance_related', False):
        return ['CareIQ', 'Compliance', category]
    return ['CareIQ', category]


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def date_to_utc(value: date) -> datetime:
    """All-day dates are held internally at 00:00 UTC"""
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def utc_date(value: datetime) -> date:
    return to_utc(value).date()


def open_ended_end(event) -> datetime:
    """Placeholder end for providers that require one"""
    if event.all_day:
        return to_utc(event.start_time) + timedelta(days=1)
    return to_utc(event.start_time)


_FRACTION_RE = re.compile(r'(\.\d{6})\d+')


def parse_instant(value: str, field: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    try:
        parsed = datetime.fromisoformat(_FRACTION_RE.sub(r'\1', value.replace('Z', '+00:00')))
    except (TypeError, ValueError) as e:
        raise MappingError(f"Invalid {field} timestamp {value!r}: {e}")
    return to_utc(parsed)


def parse_date(value: str, field: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise MappingError(f"Invalid {field} date {value!r}: {e}")


def check_range(start: datetime, end: Optional[datetime]):
    if end is not None and end < start:
        raise MappingError(f"Event ends ({end.isoformat()}) before it starts ({start.isoformat()})")
