import uuid

from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, Index, UniqueConstraint, JSON, text
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, utcnow


class Provider:
    GOOGLE = 'google'
    OUTLOOK = 'outlook'
    APPLE = 'apple_caldav'

    ALL = (GOOGLE, OUTLOOK, APPLE)
    OAUTH = (GOOGLE, OUTLOOK)


# Internal event column holding each provider's foreign identifier
PROVIDER_ID_FIELDS = {
    Provider.GOOGLE: 'google_event_id',
    Provider.OUTLOOK: 'outlook_event_id',
    Provider.APPLE: 'apple_event_uid',
}


class SyncStatus:
    PENDING = 'pending'
    SYNCED = 'synced'
    ERROR = 'error'
    CONFLICT = 'conflict'


class EventCategory:
    CARE_PLAN = 'care_plan'
    DAILY_ROUNDS = 'daily_rounds'
    APPOINTMENTS = 'appointments'
    COMPLIANCE = 'compliance'
    TRAINING = 'training'
    MEETINGS = 'meetings'
    CUSTOM = 'custom'

    ALL = (CARE_PLAN, DAILY_ROUNDS, APPOINTMENTS, COMPLIANCE, TRAINING, MEETINGS, CUSTOM)


class RunStatus:
    IN_PROGRESS = 'in_progress'
    SUCCESS = 'success'
    PARTIAL_SUCCESS = 'partial_success'
    ERROR = 'error'


class ConflictType:
    TIME_OVERLAP = 'time_overlap'
    DATA_MISMATCH = 'data_mismatch'
    EXTERNAL_CHANGE = 'external_change'
    PERMISSION_ERROR = 'permission_error'


class ResolutionStatus:
    PENDING = 'pending'
    RESOLVED_LOCAL = 'resolved_local'
    RESOLVED_EXTERNAL = 'resolved_external'
    RESOLVED_MANUAL = 'resolved_manual'
    IGNORED = 'ignored'


def _new_id() -> str:
    return str(uuid.uuid4())


class CalendarEvent(Base):
    """Internal calendar event, the system of record"""
    __tablename__ = 'calendar_events'

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    calendar_type_id = Column(String, nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=True)
    all_day = Column(Boolean, nullable=False, default=False)
    category = Column(String, nullable=False, default=EventCategory.CUSTOM)
    compliance_related = Column(Boolean, nullable=False, default=False)
    recurrence_rule = Column(String, nullable=True)

    google_event_id = Column(String, nullable=True, index=True)
    outlook_event_id = Column(String, nullable=True, index=True)
    apple_event_uid = Column(String, nullable=True, index=True)

    sync_status = Column(String, nullable=False, default=SyncStatus.PENDING)
    sync_error = Column(Text, nullable=True)
    last_synced_at = Column(UTCDateTime, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    conflicts = relationship("SyncConflict", back_populates="event", cascade="all, delete-orphan")

    def provider_id(self, provider: str):
        return getattr(self, PROVIDER_ID_FIELDS[provider])

    def set_provider_id(self, provider: str, value):
        setattr(self, PROVIDER_ID_FIELDS[provider], value)

    def mark_edited(self):
        """Record a local edit so the next push carries it outward"""
        self.sync_status = SyncStatus.PENDING
        self.sync_error = None

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'calendar_type_id': self.calendar_type_id,
            'title': self.title,
            'description': self.description,
            'location': self.location,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'all_day': self.all_day,
            'category': self.category,
            'compliance_related': self.compliance_related,
            'recurrence_rule': self.recurrence_rule,
            'google_event_id': self.google_event_id,
            'outlook_event_id': self.outlook_event_id,
            'apple_event_uid': self.apple_event_uid,
            'sync_status': self.sync_status,
            'sync_error': self.sync_error,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'is_deleted': self.is_deleted,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class CalendarIntegration(Base):
    """Per-user, per-provider credentials and connection state"""
    __tablename__ = 'calendar_integrations'

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    display_name = Column(String, nullable=True)

    # OAuth providers
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)

    # Apple CalDAV (Basic auth with an app-specific password)
    caldav_url = Column(String, nullable=True)
    caldav_username = Column(String, nullable=True)
    caldav_password = Column(String, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(UTCDateTime, nullable=True)
    last_sync_status = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    sync_logs = relationship("SyncLog", back_populates="integration")

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_calendar_integration_user_provider'),
    )

    def to_dict(self):
        # Secrets never leave the storage layer
        return {
            'id': self.id,
            'provider': self.provider,
            'display_name': self.display_name,
            'is_active': self.is_active,
            'sync_enabled': self.sync_enabled,
            'caldav_url': self.caldav_url,
            'caldav_username': self.caldav_username,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'last_sync_status': self.last_sync_status,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


class SyncLog(Base):
    """One record per orchestrator invocation (a sync run)"""
    __tablename__ = 'calendar_sync_logs'

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    integration_id = Column(String, ForeignKey('calendar_integrations.id'), nullable=True)
    sync_type = Column(String, nullable=False, default='manual')
    sync_direction = Column(String, nullable=False)
    status = Column(String, nullable=False, default=RunStatus.IN_PROGRESS)

    events_processed = Column(Integer, nullable=False, default=0)
    events_created = Column(Integer, nullable=False, default=0)
    events_updated = Column(Integer, nullable=False, default=0)
    events_deleted = Column(Integer, nullable=False, default=0)
    conflicts_detected = Column(Integer, nullable=False, default=0)
    execution_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)

    integration = relationship("CalendarIntegration", back_populates="sync_logs")

    __table_args__ = (
        # At most one in-progress run per (user, provider)
        Index(
            'uq_calendar_sync_logs_in_progress',
            'user_id', 'provider',
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
        Index('idx_calendar_sync_logs_user_started', 'user_id', 'started_at'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'provider': self.provider,
            'integration_id': self.integration_id,
            'sync_type': self.sync_type,
            'sync_direction': self.sync_direction,
            'status': self.status,
            'events_processed': self.events_processed,
            'events_created': self.events_created,
            'events_updated': self.events_updated,
            'events_deleted': self.events_deleted,
            'conflicts_detected': self.conflicts_detected,
            'execution_time_ms': self.execution_time_ms,
            'error_message': self.error_message,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class SyncConflict(Base):
    """Audit record of a detected divergence between local and external data"""
    __tablename__ = 'calendar_sync_conflicts'

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    event_id = Column(String, ForeignKey('calendar_events.id'), nullable=False)
    provider = Column(String, nullable=True)
    conflict_type = Column(String, nullable=False)
    local_data = Column(JSON, nullable=True)
    external_data = Column(JSON, nullable=True)
    resolution_status = Column(String, nullable=False, default=ResolutionStatus.PENDING)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_by = Column(String, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    event = relationship("CalendarEvent", back_populates="conflicts")

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'event_id': self.event_id,
            'provider': self.provider,
            'conflict_type': self.conflict_type,
            'local_data': self.local_data,
            'external_data': self.external_data,
            'resolution_status': self.resolution_status,
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'resolved_by': self.resolved_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
