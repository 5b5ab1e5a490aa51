from careiq_calendar.models.sync import SyncOptions, SyncResult
from careiq_calendar.models.credentials import OAuthCredentials, BasicAuthCredentials, Credentials, TokenSet
from careiq_calendar.models.events import EventDraft, EventWindow, CalendarDescriptor
from careiq_calendar.models.provider_events import GoogleEvent, OutlookEvent, AppleEvent

# Data transfer objects shared by the integrations, mappers and services
__all__ = [
    'SyncOptions', 'SyncResult',
    'OAuthCredentials', 'BasicAuthCredentials', 'Credentials', 'TokenSet',
    'EventDraft', 'EventWindow', 'CalendarDescriptor',
    'GoogleEvent', 'OutlookEvent', 'AppleEvent',
]
