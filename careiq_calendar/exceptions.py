from typing import Optional


class CalendarSyncError(Exception):
    """Base class for every error raised by the sync core"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider

    def __str__(self):
        return self.message


# Run-level failures: no per-event work is attempted

class IntegrationNotFound(CalendarSyncError):
    pass


class IntegrationInactive(CalendarSyncError):
    pass


class RefreshTokenMissing(CalendarSyncError):
    pass


class RefreshFailed(CalendarSyncError):
    pass


class CalendarResolutionError(CalendarSyncError):
    """No usable external calendar could be determined for the run"""


class SyncAlreadyRunning(CalendarSyncError):
    pass


# Per-event failures: recorded and skipped

class ProviderError(CalendarSyncError):
    """Error reported by an external calendar API"""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, provider)
        self.status_code = status_code


class ProviderRejected(ProviderError):
    pass


class ProviderUnavailable(ProviderError):
    pass


class EventNotFound(ProviderError):
    pass


class MappingError(CalendarSyncError):
    pass


# Conflict management

class ConflictNotFound(CalendarSyncError):
    pass


class ConflictAlreadyResolved(CalendarSyncError):
    pass


class InvalidResolution(CalendarSyncError):
    pass
