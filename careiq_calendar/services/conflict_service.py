from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from ..database.models import CalendarEvent, SyncConflict, SyncStatus, ResolutionStatus
from ..exceptions import ConflictAlreadyResolved, ConflictNotFound, InvalidResolution
from ..models.events import EventDraft

logger = logging.getLogger(__name__)

RESOLUTIONS = (
    ResolutionStatus.RESOLVED_LOCAL,
    ResolutionStatus.RESOLVED_EXTERNAL,
    ResolutionStatus.RESOLVED_MANUAL,
    ResolutionStatus.IGNORED,
)
BATCH_RESOLUTIONS = (
    ResolutionStatus.RESOLVED_LOCAL,
    ResolutionStatus.RESOLVED_EXTERNAL,
    ResolutionStatus.IGNORED,
)


class ResolvedEventData(BaseModel):
    """Event fields a user may set when resolving a conflict by hand"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='forbid')

    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    all_day: Optional[bool] = None
    category: Optional[str] = None
    compliance_related: Optional[bool] = None


class ConflictService:
    def __init__(self, session: Session):
        self.session = session

    def list_conflicts(self, user_id: str, status: str = ResolutionStatus.PENDING, limit: int = 50) -> List[SyncConflict]:
        """Newest first; status 'all' returns every resolution state"""
        query = self.session.query(SyncConflict).filter(SyncConflict.user_id == user_id)
        if status != 'all':
            query = query.filter(SyncConflict.resolution_status == status)
        return query.order_by(SyncConflict.created_at.desc()).limit(limit).all()

    def get_conflict(self, user_id: str, conflict_id: str) -> SyncConflict:
        conflict = self.session.query(SyncConflict).filter(
            SyncConflict.id == conflict_id,
            SyncConflict.user_id == user_id,
        ).first()
        if conflict is None:
            raise ConflictNotFound(f"Conflict {conflict_id} not found")
        return conflict

    def resolve_conflict(self, user_id: str, conflict_id: str, resolution: str,
                         resolved_data: Optional[Dict[str, Any]] = None,
                         resolved_by: Optional[str] = None) -> SyncConflict:
        if resolution not in RESOLUTIONS:
            raise InvalidResolution(f"Invalid resolution type: {resolution}")

        conflict = self.get_conflict(user_id, conflict_id)
        if conflict.resolution_status != ResolutionStatus.PENDING:
            raise ConflictAlreadyResolved(f"Conflict {conflict_id} has already been resolved")

        self._apply(conflict, resolution, resolved_data)

        conflict.resolution_status = resolution
        conflict.resolved_at = datetime.now(timezone.utc)
        conflict.resolved_by = resolved_by or user_id
        self.session.commit()
        logger.info(f"Conflict {conflict_id} resolved as {resolution}")
        return conflict

    def resolve_conflicts_batch(self, user_id: str, conflict_ids: List[str], resolution: str,
                                resolved_by: Optional[str] = None) -> Dict[str, Any]:
        """Resolve several conflicts the same way; failures are reported per id"""
        if resolution not in BATCH_RESOLUTIONS:
            raise InvalidResolution(f"Invalid resolution type for batch operation: {resolution}")

        resolved_count = 0
        errors = []
        for conflict_id in conflict_ids:
            try:
                self.resolve_conflict(user_id, conflict_id, resolution, resolved_by=resolved_by)
                resolved_count += 1
            except (ConflictNotFound, ConflictAlreadyResolved):
                self.session.rollback()
                errors.append(f"Conflict {conflict_id} not found or already resolved")
        return {'resolved_count': resolved_count, 'errors': errors}

    def _apply(self, conflict: SyncConflict, resolution: str, resolved_data: Optional[Dict[str, Any]]):
        event = self.session.get(CalendarEvent, conflict.event_id)
        if event is None:
            raise ConflictNotFound(f"Event {conflict.event_id} of conflict {conflict.id} no longer exists")
        now = datetime.now(timezone.utc)

        if resolution == ResolutionStatus.RESOLVED_LOCAL:
            event.sync_status = SyncStatus.SYNCED
            event.sync_error = None
            event.last_synced_at = now

        elif resolution == ResolutionStatus.RESOLVED_EXTERNAL:
            if conflict.external_data:
                draft = EventDraft.model_validate(conflict.external_data)
                for field, value in draft.mapped_fields().items():
                    setattr(event, field, value)
            event.sync_status = SyncStatus.SYNCED
            event.sync_error = None
            event.last_synced_at = now

        elif resolution == ResolutionStatus.RESOLVED_MANUAL:
            if not resolved_data:
                raise InvalidResolution("resolved_manual requires resolved data")
            try:
                fields = ResolvedEventData.model_validate(resolved_data).model_dump(exclude_unset=True)
            except ValidationError as e:
                raise InvalidResolution(f"Invalid resolved data: {e}")
            for field, value in fields.items():
                setattr(event, field, value)
            event.sync_status = SyncStatus.SYNCED
            event.sync_error = None
            event.last_synced_at = now

        elif resolution == ResolutionStatus.IGNORED:
            event.sync_status = SyncStatus.ERROR
            event.sync_error = 'Conflict ignored by user'
