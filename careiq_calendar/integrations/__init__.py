from .base import CalendarProviderClient, create_provider_client
from .google_calendar import GoogleCalendarClient, GoogleOAuthFlow
from .outlook_calendar import OutlookCalendarClient, OutlookOAuthFlow
from .apple_calendar import AppleCalendarClient


def create_oauth_flow(provider: str, config):
    """OAuth flow for an OAuth provider, configured from ConfigManager"""
    if provider == 'google':
        return GoogleOAuthFlow(
            config.get('google.client_id'),
            config.get('google.client_secret'),
            config.get('google.redirect_uri'),
        )
    if provider == 'outlook':
        return OutlookOAuthFlow(
            config.get('outlook.client_id'),
            config.get('outlook.client_secret'),
            config.get('outlook.redirect_uri'),
            authority=config.get('outlook.authority'),
        )
    raise ValueError(f"Provider {provider} does not use OAuth")


__all__ = [
    'CalendarProviderClient', 'create_provider_client', 'create_oauth_flow',
    'GoogleCalendarClient', 'GoogleOAuthFlow',
    'OutlookCalendarClient', 'OutlookOAuthFlow',
    'AppleCalendarClient',
]
