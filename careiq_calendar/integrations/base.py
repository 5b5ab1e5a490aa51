from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..models.events import CalendarDescriptor, EventWindow

DEFAULT_MAX_RESULTS = 500
DEFAULT_TIMEOUT = 30.0


class CalendarProviderClient(ABC):
    """Uniform access to one provider's calendars on behalf of a single user.

    Events crossing this interface are the provider's own wire models; the
    mappers are responsible for converting them. Listings return raw provider
    items that parse_event() validates one at a time, so one malformed item
    fails on its own.
    """

    provider: str = None

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, max_results: int = DEFAULT_MAX_RESULTS):
        self.timeout = timeout
        self.max_results = max_results

    @abstractmethod
    def list_calendars(self) -> List[CalendarDescriptor]:
        ...

    @abstractmethod
    def create_event(self, calendar_ref: str, event: Any) -> str:
        """Create an event and return its external id"""

    @abstractmethod
    def update_event(self, calendar_ref: str, external_id: str, event: Any) -> None:
        """Update an event; raises EventNotFound when it no longer exists"""

    @abstractmethod
    def delete_event(self, calendar_ref: str, external_id: str) -> None:
        """Delete an event; deleting a missing event succeeds"""

    @abstractmethod
    def list_events(self, calendar_ref: str, window: EventWindow) -> List[Any]:
        """Raw items for the events intersecting the window, one per series"""

    @abstractmethod
    def parse_event(self, item: Any) -> Optional[Any]:
        """Wire model for one listed item, or None when the item is not an event.

        Raises MappingError when the item is malformed.
        """

    def default_calendar(self) -> Optional[str]:
        """Calendar used when a run does not name one"""
        return 'primary'


def create_provider_client(provider: str, credentials, config=None) -> CalendarProviderClient:
    """Build the client for a provider from a resolved credential set"""
    from ..database.models import Provider
    from .google_calendar import GoogleCalendarClient
    from .outlook_calendar import OutlookCalendarClient
    from .apple_calendar import AppleCalendarClient

    timeout = DEFAULT_TIMEOUT
    max_results = DEFAULT_MAX_RESULTS
    if config is not None:
        timeout = config.get('app.http_timeout', DEFAULT_TIMEOUT)
        max_results = config.get('sync.max_results', DEFAULT_MAX_RESULTS)

    if provider == Provider.GOOGLE:
        google_config = config.get_oauth_config('google') if config is not None else {}
        return GoogleCalendarClient(
            credentials.access_token,
            client_id=google_config.get('client_id'),
            client_secret=google_config.get('client_secret'),
            timeout=timeout,
            max_results=max_results,
        )
    if provider == Provider.OUTLOOK:
        return OutlookCalendarClient(credentials.access_token, timeout=timeout, max_results=max_results)
    if provider == Provider.APPLE:
        return AppleCalendarClient(
            credentials.server_url,
            credentials.username,
            credentials.password,
            timeout=timeout,
            max_results=max_results,
        )
    raise ValueError(f"Unsupported calendar provider: {provider}")
