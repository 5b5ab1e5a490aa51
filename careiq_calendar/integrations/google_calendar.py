from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import ValidationError

from ..exceptions import EventNotFound, MappingError, ProviderRejected, ProviderUnavailable, RefreshFailed
from ..models.credentials import TokenSet
from ..models.events import CalendarDescriptor, EventWindow
from ..models.provider_events import GoogleEvent
from .base import CalendarProviderClient, DEFAULT_MAX_RESULTS, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

PROVIDER = 'google'
SCOPES = ['https://www.googleapis.com/auth/calendar']
AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
TOKEN_URI = 'https://oauth2.googleapis.com/token'

# Google caps events.list pages at 2500 items
PAGE_SIZE = 250


def _translate_http_error(e: HttpError, action: str):
    status = e.resp.status if e.resp is not None else None
    message = f"Google Calendar {action} failed ({status}): {e.reason if hasattr(e, 'reason') else e}"
    if status in (404, 410):
        return EventNotFound(message, provider=PROVIDER, status_code=status)
    if status is not None and 400 <= status < 500 and status != 429:
        return ProviderRejected(message, provider=PROVIDER, status_code=status)
    return ProviderUnavailable(message, provider=PROVIDER, status_code=status)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # google-auth reports expiry as naive UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GoogleCalendarClient(CalendarProviderClient):
    """Google Calendar v3 client acting with a user's OAuth access token"""

    provider = PROVIDER

    def __init__(self, access_token: str, client_id: str = None, client_secret: str = None,
                 timeout: float = DEFAULT_TIMEOUT, max_results: int = DEFAULT_MAX_RESULTS):
        super().__init__(timeout=timeout, max_results=max_results)
        credentials = Credentials(
            token=access_token,
            token_uri=TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=SCOPES,
        )
        http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
        self.service = build('calendar', 'v3', http=http, cache_discovery=False)

    def _execute(self, request, action: str):
        try:
            return request.execute()
        except HttpError as e:
            raise _translate_http_error(e, action)
        except (TransportError, httplib2.HttpLib2Error, OSError) as e:
            raise ProviderUnavailable(f"Google Calendar {action} failed: {e}", provider=PROVIDER)

    def list_calendars(self) -> List[CalendarDescriptor]:
        """Get list of calendars"""
        calendars = []
        page_token = None
        while True:
            response = self._execute(
                self.service.calendarList().list(pageToken=page_token),
                'calendar list',
            )
            for item in response.get('items', []):
                calendars.append(CalendarDescriptor(
                    id=item['id'],
                    name=item.get('summaryOverride') or item.get('summary', item['id']),
                    description=item.get('description'),
                    primary=bool(item.get('primary', False)),
                    can_write=item.get('accessRole') in ('owner', 'writer'),
                ))
            page_token = response.get('nextPageToken')
            if not page_token:
                return calendars

    def create_event(self, calendar_ref: str, event: GoogleEvent) -> str:
        """Create a new event in the calendar"""
        created = self._execute(
            self.service.events().insert(calendarId=calendar_ref, body=event.to_wire()),
            'event insert',
        )
        logger.info(f"Created Google event {created['id']} in calendar {calendar_ref}")
        return created['id']

    def update_event(self, calendar_ref: str, external_id: str, event: GoogleEvent) -> None:
        """Patch an existing event"""
        self._execute(
            self.service.events().patch(calendarId=calendar_ref, eventId=external_id, body=event.to_wire()),
            'event patch',
        )

    def delete_event(self, calendar_ref: str, external_id: str) -> None:
        """Delete an event from the calendar"""
        try:
            self._execute(
                self.service.events().delete(calendarId=calendar_ref, eventId=external_id),
                'event delete',
            )
        except EventNotFound:
            logger.info(f"Google event {external_id} already gone from calendar {calendar_ref}")

    def list_events(self, calendar_ref: str, window: EventWindow) -> List[Dict[str, Any]]:
        """Get events from a calendar, one item per recurring series"""
        logger.info(f"Fetching Google events for calendar {calendar_ref} "
                    f"from {window.start.isoformat()} to {window.end.isoformat()}")
        items = []
        page_token = None
        while len(items) < self.max_results:
            response = self._execute(
                self.service.events().list(
                    calendarId=calendar_ref,
                    timeMin=window.start.isoformat(),
                    timeMax=window.end.isoformat(),
                    singleEvents=False,
                    maxResults=min(PAGE_SIZE, self.max_results - len(items)),
                    pageToken=page_token,
                ),
                'event list',
            )
            for item in response.get('items', []):
                # Modified or cancelled occurrences; the series master carries the event
                if isinstance(item, dict) and item.get('recurringEventId'):
                    continue
                items.append(item)
            page_token = response.get('nextPageToken')
            if not page_token:
                break
        return items[:self.max_results]

    def parse_event(self, item: Dict[str, Any]) -> GoogleEvent:
        try:
            return GoogleEvent.model_validate(item)
        except ValidationError as e:
            item_id = item.get('id') if isinstance(item, dict) else None
            raise MappingError(f"Google event {item_id} is malformed: {e}", provider=PROVIDER)

    def watch_calendar(self, calendar_ref: str, webhook_url: str, channel_id: str,
                       ttl: int = 604800) -> Dict[str, Any]:
        """Open a push-notification channel for a calendar's events"""
        body = {
            'id': channel_id,
            'type': 'web_hook',
            'address': webhook_url,
            'params': {'ttl': str(ttl)},
        }
        return self._execute(self.service.events().watch(calendarId=calendar_ref, body=body), 'watch')

    def stop_watch(self, channel_id: str, resource_id: str) -> None:
        self._execute(
            self.service.channels().stop(body={'id': channel_id, 'resourceId': resource_id}),
            'channel stop',
        )


class GoogleOAuthFlow:
    """Authorization-code flow and token refresh for Google Calendar"""

    provider = PROVIDER

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

    def _flow(self, state: str = None) -> Flow:
        client_config = {
            'web': {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'auth_uri': AUTH_URI,
                'token_uri': TOKEN_URI,
                'redirect_uris': [self.redirect_uri] if self.redirect_uri else [],
            }
        }
        return Flow.from_client_config(client_config, scopes=SCOPES, state=state, redirect_uri=self.redirect_uri)

    def authorization_url(self, state: str = None) -> str:
        url, _ = self._flow(state).authorization_url(
            access_type='offline',
            prompt='consent',
            include_granted_scopes='true',
        )
        return url

    def exchange_code(self, code: str) -> TokenSet:
        flow = self._flow()
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            raise RefreshFailed(f"Google authorization code exchange failed: {e}", provider=PROVIDER)
        credentials = flow.credentials
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=_aware(credentials.expiry),
        )

    def refresh(self, refresh_token: str) -> TokenSet:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES,
        )
        try:
            credentials.refresh(Request())
        except (RefreshError, TransportError) as e:
            raise RefreshFailed(f"Google token refresh failed: {e}", provider=PROVIDER)
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expires_at=_aware(credentials.expiry),
        )
