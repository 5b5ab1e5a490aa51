from .base import Base
from .connection import DatabaseManager, get_db, get_db_manager
from .models import (
    CalendarEvent,
    CalendarIntegration,
    SyncLog,
    SyncConflict,
    Provider,
    SyncStatus,
    RunStatus,
    ConflictType,
    ResolutionStatus,
    EventCategory,
    PROVIDER_ID_FIELDS,
)

__all__ = [
    'Base', 'DatabaseManager', 'get_db', 'get_db_manager',
    'CalendarEvent', 'CalendarIntegration', 'SyncLog', 'SyncConflict',
    'Provider', 'SyncStatus', 'RunStatus', 'ConflictType', 'ResolutionStatus',
    'EventCategory', 'PROVIDER_ID_FIELDS',
]
