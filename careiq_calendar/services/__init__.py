from .calendar_sync_service import CalendarSyncService
from .conflict_resolver import ConflictResolver, get_policy
from .conflict_service import ConflictService
from .credential_manager import CredentialManager
from .integration_service import IntegrationService
from .sync_log import SyncLogRecorder

__all__ = [
    'CalendarSyncService', 'ConflictResolver', 'get_policy', 'ConflictService',
    'CredentialManager', 'IntegrationService', 'SyncLogRecorder',
]
