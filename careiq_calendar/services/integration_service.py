import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..database.models import CalendarEvent, CalendarIntegration, Provider, SyncStatus, PROVIDER_ID_FIELDS
from ..exceptions import IntegrationNotFound
from ..models.credentials import TokenSet

logger = logging.getLogger(__name__)

DISPLAY_NAMES = {
    Provider.GOOGLE: 'Google Calendar',
    Provider.OUTLOOK: 'Outlook Calendar',
    Provider.APPLE: 'iCloud Calendar',
}


class IntegrationService:
    """Connect, disconnect and configure a user's calendar providers.

    There is at most one integration per (user, provider); reconnecting
    reactivates the existing record.
    """

    def __init__(self, session: Session):
        self.session = session

    def _find(self, user_id: str, provider: str) -> Optional[CalendarIntegration]:
        return self.session.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.provider == provider,
        ).first()

    def _get_or_create(self, user_id: str, provider: str) -> CalendarIntegration:
        integration = self._find(user_id, provider)
        if integration is None:
            integration = CalendarIntegration(
                user_id=user_id,
                provider=provider,
                display_name=DISPLAY_NAMES.get(provider, provider),
            )
            self.session.add(integration)
        return integration

    def connect_oauth(self, user_id: str, provider: str, tokens: TokenSet,
                      display_name: Optional[str] = None) -> CalendarIntegration:
        if provider not in Provider.OAUTH:
            raise ValueError(f"Provider {provider} does not use OAuth")

        integration = self._get_or_create(user_id, provider)
        integration.access_token = tokens.access_token
        # Keep the stored refresh token when a re-consent omits one
        if tokens.refresh_token:
            integration.refresh_token = tokens.refresh_token
        integration.expires_at = tokens.expires_at
        integration.caldav_url = None
        integration.caldav_username = None
        integration.caldav_password = None
        integration.is_active = True
        integration.error_message = None
        if display_name:
            integration.display_name = display_name
        self.session.commit()
        logger.info(f"Connected {provider} calendar for user {user_id}")
        return integration

    def connect_caldav(self, user_id: str, username: str, password: str, url: str = None,
                       display_name: Optional[str] = None) -> CalendarIntegration:
        integration = self._get_or_create(user_id, Provider.APPLE)
        integration.caldav_url = url
        integration.caldav_username = username
        integration.caldav_password = password
        integration.access_token = None
        integration.refresh_token = None
        integration.expires_at = None
        integration.is_active = True
        integration.error_message = None
        if display_name:
            integration.display_name = display_name
        self.session.commit()
        logger.info(f"Connected CalDAV calendar for user {user_id}")
        return integration

    def disconnect(self, user_id: str, provider: str) -> CalendarIntegration:
        """Deactivate the integration and unlink every event from the provider"""
        integration = self._find(user_id, provider)
        if integration is None:
            raise IntegrationNotFound(f"No {provider} calendar integration for user {user_id}", provider=provider)

        integration.is_active = False
        integration.access_token = None
        integration.refresh_token = None
        integration.expires_at = None
        integration.caldav_password = None

        id_column = getattr(CalendarEvent, PROVIDER_ID_FIELDS[provider])
        unlinked = self.session.query(CalendarEvent).filter(
            CalendarEvent.user_id == user_id,
            id_column.isnot(None),
        ).update(
            {id_column: None, CalendarEvent.sync_status: SyncStatus.PENDING},
            synchronize_session=False,
        )
        self.session.commit()
        logger.info(f"Disconnected {provider} calendar for user {user_id}; {unlinked} events unlinked")
        return integration

    def list_integrations(self, user_id: str) -> List[CalendarIntegration]:
        return self.session.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == user_id,
        ).order_by(CalendarIntegration.created_at.desc()).all()

    def update_settings(self, user_id: str, provider: str, display_name: Optional[str] = None,
                        sync_enabled: Optional[bool] = None) -> CalendarIntegration:
        integration = self._find(user_id, provider)
        if integration is None:
            raise IntegrationNotFound(f"No {provider} calendar integration for user {user_id}", provider=provider)
        if display_name is not None:
            integration.display_name = display_name
        if sync_enabled is not None:
            integration.sync_enabled = sync_enabled
        self.session.commit()
        return integration
