from datetime import datetime, timezone
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from ..database.models import CalendarIntegration, Provider
from ..exceptions import IntegrationInactive, IntegrationNotFound, RefreshTokenMissing
from ..integrations import create_oauth_flow
from ..models.credentials import BasicAuthCredentials, OAuthCredentials

logger = logging.getLogger(__name__)

DEFAULT_CALDAV_URL = 'https://caldav.icloud.com'

# Stored tokens with no access token are refreshed before first use
_ALREADY_EXPIRED = datetime(1970, 1, 1, tzinfo=timezone.utc)


class CredentialManager:
    """Load a user's provider credentials and keep OAuth tokens fresh"""

    def __init__(self, session: Session, config=None, oauth_flows: Optional[Dict[str, object]] = None):
        self.session = session
        self.config = config
        self.oauth_flows = dict(oauth_flows or {})

    def _oauth_flow(self, provider: str):
        if provider not in self.oauth_flows:
            self.oauth_flows[provider] = create_oauth_flow(provider, self.config)
        return self.oauth_flows[provider]

    def get_integration(self, user_id: str, provider: str, require_active: bool = True) -> CalendarIntegration:
        integration = self.session.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.provider == provider,
        ).first()
        if integration is None:
            raise IntegrationNotFound(f"No {provider} calendar integration for user {user_id}", provider=provider)
        if require_active and not integration.is_active:
            raise IntegrationInactive(f"The {provider} calendar integration is disconnected", provider=provider)
        return integration

    def get_credentials(self, user_id: str, provider: str):
        integration = self.get_integration(user_id, provider)

        if provider == Provider.APPLE:
            if not integration.caldav_username or not integration.caldav_password:
                raise IntegrationInactive("CalDAV username and app-specific password are not set", provider=provider)
            default_url = self.config.get('apple.caldav_url', DEFAULT_CALDAV_URL) if self.config else DEFAULT_CALDAV_URL
            return BasicAuthCredentials(
                integration_id=integration.id,
                user_id=user_id,
                provider=provider,
                server_url=integration.caldav_url or default_url,
                username=integration.caldav_username,
                password=integration.caldav_password,
            )

        expires_at = integration.expires_at
        if not integration.access_token:
            if not integration.refresh_token:
                raise RefreshTokenMissing(f"The {provider} integration holds no tokens", provider=provider)
            expires_at = _ALREADY_EXPIRED

        return OAuthCredentials(
            integration_id=integration.id,
            user_id=user_id,
            provider=provider,
            access_token=integration.access_token or '',
            refresh_token=integration.refresh_token,
            expires_at=expires_at,
        )

    def ensure_fresh(self, credentials, now: Optional[datetime] = None):
        """Refresh expired OAuth credentials and persist the new tokens"""
        if not isinstance(credentials, OAuthCredentials) or not credentials.is_expired(now):
            return credentials

        if not credentials.refresh_token:
            raise RefreshTokenMissing(
                f"The {credentials.provider} access token expired and no refresh token is stored",
                provider=credentials.provider,
            )

        logger.info(f"Refreshing {credentials.provider} token for integration {credentials.integration_id}")
        tokens = self._oauth_flow(credentials.provider).refresh(credentials.refresh_token)

        refresh_token = tokens.refresh_token or credentials.refresh_token
        integration = self.session.get(CalendarIntegration, credentials.integration_id)
        if integration is not None:
            integration.access_token = tokens.access_token
            integration.refresh_token = refresh_token
            integration.expires_at = tokens.expires_at
            self.session.commit()

        return credentials.model_copy(update={
            'access_token': tokens.access_token,
            'refresh_token': refresh_token,
            'expires_at': tokens.expires_at,
        })
