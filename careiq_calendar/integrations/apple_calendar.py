from datetime import datetime, timezone
import logging
from typing import List, NamedTuple, Optional
import uuid

import caldav
import requests
from caldav.lib.error import AuthorizationError, DAVError, NotFoundError
from icalendar import Calendar, Event, vRecur, vText

from ..exceptions import EventNotFound, MappingError, ProviderRejected, ProviderUnavailable
from ..models.events import CalendarDescriptor, EventWindow
from ..models.provider_events import AppleEvent
from .base import CalendarProviderClient, DEFAULT_MAX_RESULTS, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

PROVIDER = 'apple_caldav'
PRODID = '-//CareIQ//Calendar Sync//EN'
EVENT_ID_PROPERTY = 'X-CAREIQ-EVENT-ID'


class CalDAVItem(NamedTuple):
    """One calendar object resource returned by a search"""
    url: str
    data: str


def build_ics(event: AppleEvent, uid: str) -> bytes:
    """Serialize an AppleEvent as a single-VEVENT iCalendar document"""
    cal = Calendar()
    cal.add('prodid', PRODID)
    cal.add('version', '2.0')
    cal.add('calscale', 'GREGORIAN')

    ev = Event()
    ev.add('uid', uid)
    ev.add('summary', vText(event.summary or ''))
    ev.add('dtstart', event.dtstart)
    if event.dtend is not None:
        ev.add('dtend', event.dtend)
    ev.add('dtstamp', datetime.now(timezone.utc))
    if event.description:
        ev.add('description', vText(event.description))
    if event.location:
        ev.add('location', vText(event.location))
    if event.categories:
        ev.add('categories', event.categories)
    if event.rrule:
        # e.g. "FREQ=WEEKLY;BYDAY=MO,WE,FR"
        try:
            ev.add('rrule', vRecur.from_ical(event.rrule))
        except ValueError as e:
            raise MappingError(f"Invalid recurrence rule {event.rrule!r}: {e}", provider=PROVIDER)
    if event.careiq_event_id:
        ev.add(EVENT_ID_PROPERTY, event.careiq_event_id)

    cal.add_component(ev)
    return cal.to_ical()


def _text(component, name: str) -> Optional[str]:
    value = component.get(name)
    return str(value) if value is not None else None


def _categories(component) -> List[str]:
    value = component.get('CATEGORIES')
    if value is None:
        return []
    values = value if isinstance(value, list) else [value]
    categories = []
    for item in values:
        categories.extend(str(cat) for cat in getattr(item, 'cats', [item]))
    return categories


def parse_vevent(component, url: str = None) -> AppleEvent:
    """Read the fields the mapper needs from an icalendar VEVENT"""
    dtstart = component.get('DTSTART')
    dtend = component.get('DTEND')
    start = dtstart.dt if dtstart is not None else None
    end = dtend.dt if dtend is not None else None
    if end is None and start is not None and component.get('DURATION') is not None:
        end = start + component.get('DURATION').dt

    rrule = component.get('RRULE')
    last_modified = component.get('LAST-MODIFIED')
    return AppleEvent(
        uid=_text(component, 'UID'),
        url=url,
        summary=_text(component, 'SUMMARY'),
        description=_text(component, 'DESCRIPTION'),
        location=_text(component, 'LOCATION'),
        dtstart=start,
        dtend=end,
        categories=_categories(component),
        rrule=rrule.to_ical().decode() if rrule is not None else None,
        careiq_event_id=_text(component, EVENT_ID_PROPERTY),
        open_ended=end is None,
        last_modified=last_modified.dt if last_modified is not None else None,
    )


class AppleCalendarClient(CalendarProviderClient):
    """iCloud (or any CalDAV server) client using HTTP Basic with an app-specific password.

    Calendars are addressed by their collection URL and events by iCalendar UID.
    """

    provider = PROVIDER

    def __init__(self, url: str, username: str, password: str,
                 timeout: float = DEFAULT_TIMEOUT, max_results: int = DEFAULT_MAX_RESULTS):
        super().__init__(timeout=timeout, max_results=max_results)
        self.url = url.rstrip('/')
        self.client = caldav.DAVClient(url=self.url, username=username, password=password, timeout=int(timeout))
        self._principal = None

    def _translate(self, e: Exception, action: str) -> Exception:
        message = f"CalDAV {action} failed: {e}"
        if isinstance(e, NotFoundError):
            return EventNotFound(message, provider=PROVIDER, status_code=404)
        if isinstance(e, AuthorizationError):
            return ProviderRejected(message, provider=PROVIDER, status_code=403)
        return ProviderUnavailable(message, provider=PROVIDER)

    def _principal_calendars(self):
        try:
            if self._principal is None:
                self._principal = self.client.principal()
            return self._principal.calendars()
        except (DAVError, requests.RequestException) as e:
            raise self._translate(e, 'calendar discovery')

    def _calendar(self, calendar_ref: str):
        return self.client.calendar(url=calendar_ref)

    def _supports_events(self, calendar) -> Optional[bool]:
        try:
            return 'VEVENT' in calendar.get_supported_components()
        except (DAVError, KeyError) as e:
            logger.debug(f"Could not read supported components of {calendar.url}: {e}")
            return None

    def list_calendars(self) -> List[CalendarDescriptor]:
        calendars = []
        for calendar in self._principal_calendars():
            calendars.append(CalendarDescriptor(
                id=str(calendar.url),
                name=getattr(calendar, 'name', None) or str(calendar.url),
                can_write=self._supports_events(calendar),
            ))
        return calendars

    def default_calendar(self) -> Optional[str]:
        """First calendar that accepts events"""
        for calendar in self.list_calendars():
            if calendar.can_write is not False:
                return calendar.id
        return None

    def _find_event(self, calendar_ref: str, uid: str):
        try:
            return self._calendar(calendar_ref).event_by_uid(uid)
        except (DAVError, requests.RequestException) as e:
            raise self._translate(e, f'lookup of {uid}')

    def create_event(self, calendar_ref: str, event: AppleEvent) -> str:
        uid = event.uid or str(uuid.uuid4())
        try:
            self._calendar(calendar_ref).save_event(build_ics(event, uid).decode())
        except (DAVError, requests.RequestException) as e:
            raise self._translate(e, 'event create')
        logger.info(f"Created CalDAV event {uid} in {calendar_ref}")
        return uid

    def update_event(self, calendar_ref: str, external_id: str, event: AppleEvent) -> None:
        existing = self._find_event(calendar_ref, external_id)
        existing.data = build_ics(event, external_id).decode()
        try:
            existing.save()
        except (DAVError, requests.RequestException) as e:
            raise self._translate(e, 'event update')

    def delete_event(self, calendar_ref: str, external_id: str) -> None:
        try:
            existing = self._find_event(calendar_ref, external_id)
        except EventNotFound:
            logger.info(f"CalDAV event {external_id} already deleted")
            return
        try:
            existing.delete()
        except NotFoundError:
            logger.info(f"CalDAV event {external_id} already deleted")
        except (DAVError, requests.RequestException) as e:
            raise self._translate(e, 'event delete')

    def list_events(self, calendar_ref: str, window: EventWindow) -> List[CalDAVItem]:
        """Time-range search over the calendar collection"""
        try:
            results = self._calendar(calendar_ref).search(start=window.start, end=window.end, event=True)
        except (DAVError, requests.RequestException) as e:
            raise self._translate(e, 'event search')
        return [CalDAVItem(url=str(result.url), data=result.data) for result in results[:self.max_results]]

    def parse_event(self, item: CalDAVItem) -> Optional[AppleEvent]:
        try:
            calendar = Calendar.from_ical(item.data)
            for component in calendar.walk('VEVENT'):
                # Overridden occurrences carry RECURRENCE-ID; the master is enough
                if component.get('RECURRENCE-ID') is None:
                    return parse_vevent(component, url=item.url)
        except ValueError as e:
            raise MappingError(f"CalDAV resource {item.url} is malformed: {e}", provider=PROVIDER)
        return None
