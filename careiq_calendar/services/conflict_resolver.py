"""Divergence detection between a local event and its pulled external copy,
and the configurable policies that decide what happens next.

The conflict record is always written before a policy runs, so the audit
trail survives whichever side wins.
"""
from datetime import datetime, timezone
import logging
from typing import List, NamedTuple, Optional

from sqlalchemy.orm import Session

from ..database.models import (
    CalendarEvent, SyncConflict, SyncStatus, ConflictType, ResolutionStatus,
)
from ..models.events import EventDraft

logger = logging.getLogger(__name__)

COMPARED_FIELDS = ('title', 'description', 'location', 'start_time', 'all_day')

RESOLVED_BY_SYSTEM = 'system'


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Providers round to whole seconds
    return value.astimezone(timezone.utc).replace(microsecond=0)


def _normalize(value):
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, datetime):
        return _utc(value)
    return value


def diverging_fields(local: CalendarEvent, draft: EventDraft) -> List[str]:
    """Compared fields whose local and external values differ"""
    fields = []
    for field in COMPARED_FIELDS:
        local_value = _normalize(getattr(local, field))
        external_value = _normalize(getattr(draft, field))
        if field == 'start_time' and local.all_day and draft.all_day:
            local_value, external_value = local_value.date(), external_value.date()
        if field == 'all_day':
            local_value, external_value = bool(local_value), bool(external_value)
        if local_value != external_value:
            fields.append(field)
    return fields


def apply_draft(event: CalendarEvent, draft: EventDraft):
    for field, value in draft.mapped_fields().items():
        setattr(event, field, value)


class ConflictPolicy:
    """Decides the fate of a local event once a conflict has been recorded.

    apply() returns True when the local event's mapped data was changed.
    """

    name = None

    def apply(self, event: CalendarEvent, draft: EventDraft, conflict: SyncConflict, now: datetime) -> bool:
        raise NotImplementedError


class ExternalWinsPolicy(ConflictPolicy):
    name = 'external_wins'

    def apply(self, event, draft, conflict, now):
        apply_draft(event, draft)
        # Flags the row for UI review even though the conflict is closed
        event.sync_status = SyncStatus.CONFLICT
        event.last_synced_at = now
        conflict.resolution_status = ResolutionStatus.RESOLVED_EXTERNAL
        conflict.resolved_at = now
        conflict.resolved_by = RESOLVED_BY_SYSTEM
        return True


class LocalWinsPolicy(ConflictPolicy):
    name = 'local_wins'

    def apply(self, event, draft, conflict, now):
        # Next push overwrites the external copy
        event.sync_status = SyncStatus.PENDING
        conflict.resolution_status = ResolutionStatus.RESOLVED_LOCAL
        conflict.resolved_at = now
        conflict.resolved_by = RESOLVED_BY_SYSTEM
        return False


class ManualPolicy(ConflictPolicy):
    name = 'manual'

    def apply(self, event, draft, conflict, now):
        event.sync_status = SyncStatus.CONFLICT
        return False


POLICIES = {
    policy.name: policy
    for policy in (ExternalWinsPolicy, LocalWinsPolicy, ManualPolicy)
}


def get_policy(name: Optional[str]) -> ConflictPolicy:
    policy_class = POLICIES.get(name or ExternalWinsPolicy.name)
    if policy_class is None:
        raise ValueError(f"Unknown conflict policy: {name}")
    return policy_class()


class ConflictOutcome(NamedTuple):
    conflict: SyncConflict
    local_updated: bool


class ConflictResolver:
    def __init__(self, session: Session, policy: Optional[str] = None):
        self.session = session
        self.policy = get_policy(policy)

    def detect(self, local: CalendarEvent, draft: EventDraft) -> Optional[str]:
        """Conflict type for a divergent pair, or None when they agree"""
        fields = diverging_fields(local, draft)
        if not fields:
            return None
        logger.info(f"Event {local.id} diverges from external copy on {', '.join(fields)}")
        return ConflictType.EXTERNAL_CHANGE

    def resolve(self, local: CalendarEvent, draft: EventDraft, provider: str,
                conflict_type: str = ConflictType.EXTERNAL_CHANGE) -> ConflictOutcome:
        now = datetime.now(timezone.utc)
        conflict = SyncConflict(
            user_id=local.user_id,
            event_id=local.id,
            provider=provider,
            conflict_type=conflict_type,
            local_data=local.to_dict(),
            external_data=draft.snapshot(),
            resolution_status=ResolutionStatus.PENDING,
        )
        self.session.add(conflict)
        self.session.flush()

        local_updated = self.policy.apply(local, draft, conflict, now)
        logger.info(f"Conflict {conflict.id} on event {local.id} handled by {self.policy.name} policy")
        return ConflictOutcome(conflict, local_updated)
