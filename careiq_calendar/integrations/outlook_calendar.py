from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional

import requests
from msal import ConfidentialClientApplication
from pydantic import ValidationError

from ..exceptions import EventNotFound, MappingError, ProviderRejected, ProviderUnavailable, RefreshFailed
from ..mappers.outlook import EVENT_ID_PROPERTY_ID, OPEN_ENDED_PROPERTY_ID
from ..models.credentials import TokenSet
from ..models.events import CalendarDescriptor, EventWindow
from ..models.provider_events import OutlookEvent
from .base import CalendarProviderClient, DEFAULT_MAX_RESULTS, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

PROVIDER = 'outlook'
GRAPH_BASE_URL = 'https://graph.microsoft.com/v1.0'
DEFAULT_AUTHORITY = 'https://login.microsoftonline.com/common'
SCOPES = ['Calendars.ReadWrite', 'User.Read']

# Graph caps calendarView pages at 1000 items
PAGE_SIZE = 100


class OutlookCalendarClient(CalendarProviderClient):
    """Microsoft Graph calendar client acting with a user's bearer token"""

    provider = PROVIDER

    def __init__(self, access_token: str, timeout: float = DEFAULT_TIMEOUT,
                 max_results: int = DEFAULT_MAX_RESULTS, session: requests.Session = None):
        super().__init__(timeout=timeout, max_results=max_results)
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json',
            'Prefer': 'outlook.timezone="UTC"',
        })

    def _events_path(self, calendar_ref: str) -> str:
        if not calendar_ref or calendar_ref == 'primary':
            return '/me/events'
        return f'/me/calendars/{calendar_ref}/events'

    def _request(self, method: str, url: str, action: str, **kwargs) -> Optional[Dict[str, Any]]:
        if url.startswith('/'):
            url = GRAPH_BASE_URL + url
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderUnavailable(f"Outlook {action} failed: {e}", provider=PROVIDER)

        status = response.status_code
        if status >= 400:
            message = f"Outlook {action} failed ({status}): {response.text[:500]}"
            if status == 404:
                raise EventNotFound(message, provider=PROVIDER, status_code=status)
            if status == 429 or status >= 500:
                raise ProviderUnavailable(message, provider=PROVIDER, status_code=status)
            raise ProviderRejected(message, provider=PROVIDER, status_code=status)

        if status == 204 or not response.content:
            return None
        return response.json()

    def _paged(self, url: str, action: str, params: Dict[str, Any] = None, limit: int = None):
        items = []
        while url:
            data = self._request('GET', url, action, params=params)
            items.extend(data.get('value', []))
            if limit is not None and len(items) >= limit:
                return items[:limit]
            # nextLink already carries the query string
            url = data.get('@odata.nextLink')
            params = None
        return items

    def list_calendars(self) -> List[CalendarDescriptor]:
        return [
            CalendarDescriptor(
                id=item['id'],
                name=item.get('name', item['id']),
                primary=bool(item.get('isDefaultCalendar', False)),
                can_write=item.get('canEdit'),
            )
            for item in self._paged('/me/calendars', 'calendar list')
        ]

    def create_event(self, calendar_ref: str, event: OutlookEvent) -> str:
        created = self._request('POST', self._events_path(calendar_ref), 'event create', json=event.to_wire())
        logger.info(f"Created Outlook event {created['id']}")
        return created['id']

    def update_event(self, calendar_ref: str, external_id: str, event: OutlookEvent) -> None:
        # Event ids are unique across the mailbox
        self._request('PATCH', f'/me/events/{external_id}', 'event update', json=event.to_wire())

    def delete_event(self, calendar_ref: str, external_id: str) -> None:
        try:
            self._request('DELETE', f'/me/events/{external_id}', 'event delete')
        except EventNotFound:
            logger.info(f"Outlook event {external_id} already deleted")

    def _expand_params(self) -> Dict[str, str]:
        return {
            '$expand': (
                "singleValueExtendedProperties($filter=id eq '{0}' or id eq '{1}')"
                .format(EVENT_ID_PROPERTY_ID, OPEN_ENDED_PROPERTY_ID)
            ),
        }

    def list_events(self, calendar_ref: str, window: EventWindow) -> List[Dict[str, Any]]:
        """List events intersecting the window.

        calendarView expands recurring series into occurrences; those are
        replaced by their series master, fetched once per series.
        """
        if not calendar_ref or calendar_ref == 'primary':
            url = '/me/calendarView'
        else:
            url = f'/me/calendars/{calendar_ref}/calendarView'
        params = {
            'startDateTime': window.start.astimezone(timezone.utc).isoformat(),
            'endDateTime': window.end.astimezone(timezone.utc).isoformat(),
            '$top': min(PAGE_SIZE, self.max_results),
            '$orderby': 'start/dateTime',
            **self._expand_params(),
        }
        items = []
        masters = set()
        for item in self._paged(url, 'event list', params=params, limit=self.max_results):
            master_id = item.get('seriesMasterId') if isinstance(item, dict) else None
            if not master_id:
                items.append(item)
                continue
            if master_id in masters:
                continue
            masters.add(master_id)
            try:
                items.append(self._request('GET', f'/me/events/{master_id}', 'series lookup',
                                           params=self._expand_params()))
            except EventNotFound:
                logger.info(f"Outlook series master {master_id} no longer exists")
        return items

    def parse_event(self, item: Dict[str, Any]) -> OutlookEvent:
        try:
            return OutlookEvent.model_validate(item)
        except ValidationError as e:
            item_id = item.get('id') if isinstance(item, dict) else None
            raise MappingError(f"Outlook event {item_id} is malformed: {e}", provider=PROVIDER)

    def create_subscription(self, calendar_ref: str, webhook_url: str,
                            expiration: datetime = None, client_state: str = None) -> Dict[str, Any]:
        """Subscribe to change notifications for a calendar's events"""
        if expiration is None:
            # Graph allows just under three days for calendar resources
            expiration = datetime.now(timezone.utc) + timedelta(days=2)
        body = {
            'changeType': 'created,updated,deleted',
            'notificationUrl': webhook_url,
            'resource': self._events_path(calendar_ref).lstrip('/'),
            'expirationDateTime': expiration.astimezone(timezone.utc).isoformat(),
        }
        if client_state:
            body['clientState'] = client_state
        return self._request('POST', '/subscriptions', 'subscription create', json=body)

    def delete_subscription(self, subscription_id: str) -> None:
        try:
            self._request('DELETE', f'/subscriptions/{subscription_id}', 'subscription delete')
        except EventNotFound:
            logger.info(f"Outlook subscription {subscription_id} already removed")


class OutlookOAuthFlow:
    """Authorization-code flow and token refresh for Microsoft Graph"""

    provider = PROVIDER

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str = None,
                 authority: str = DEFAULT_AUTHORITY):
        self.redirect_uri = redirect_uri
        self.app = ConfidentialClientApplication(
            client_id,
            authority=authority or DEFAULT_AUTHORITY,
            client_credential=client_secret,
        )

    def authorization_url(self, state: str = None) -> str:
        return self.app.get_authorization_request_url(SCOPES, redirect_uri=self.redirect_uri, state=state)

    def exchange_code(self, code: str) -> TokenSet:
        result = self.app.acquire_token_by_authorization_code(code, scopes=SCOPES, redirect_uri=self.redirect_uri)
        return self._token_set(result, 'authorization code exchange')

    def refresh(self, refresh_token: str) -> TokenSet:
        result = self.app.acquire_token_by_refresh_token(refresh_token, scopes=SCOPES)
        return self._token_set(result, 'token refresh')

    def _token_set(self, result: Dict[str, Any], action: str) -> TokenSet:
        if not result or 'access_token' not in result:
            error = (result or {}).get('error_description') or (result or {}).get('error') or 'no token returned'
            raise RefreshFailed(f"Outlook {action} failed: {error}", provider=PROVIDER)
        expires_at = None
        if result.get('expires_in'):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(result['expires_in']))
        return TokenSet(
            access_token=result['access_token'],
            refresh_token=result.get('refresh_token'),
            expires_at=expires_at,
        )
