from datetime import datetime, timedelta, timezone
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database.models import SyncLog, RunStatus
from ..exceptions import SyncAlreadyRunning
from ..models.sync import SyncOptions, SyncResult

logger = logging.getLogger(__name__)

# Runs left in progress longer than this are treated as crashed
STALE_RUN_AFTER = timedelta(hours=1)


class SyncLogRecorder:
    """Claims and finalizes sync run records"""

    def __init__(self, session: Session, stale_after: timedelta = STALE_RUN_AFTER):
        self.session = session
        self.stale_after = stale_after

    def _in_progress(self, user_id: str, provider: str) -> Optional[SyncLog]:
        return self.session.query(SyncLog).filter(
            SyncLog.user_id == user_id,
            SyncLog.provider == provider,
            SyncLog.status == RunStatus.IN_PROGRESS,
        ).first()

    def claim(self, options: SyncOptions) -> SyncLog:
        """Insert the in-progress record that makes this run the only one for (user, provider).

        The partial unique index on in-progress rows is the arbiter; the
        lookup beforehand only clears abandoned runs.
        """
        now = datetime.now(timezone.utc)
        running = self._in_progress(options.user_id, options.provider)
        if running is not None and running.started_at is not None and now - running.started_at > self.stale_after:
            logger.warning(f"Marking abandoned sync run {running.id} as failed")
            running.status = RunStatus.ERROR
            running.error_message = 'Sync run abandoned'
            running.completed_at = now
            self.session.commit()

        log = SyncLog(
            user_id=options.user_id,
            provider=options.provider,
            sync_type=options.sync_type,
            sync_direction=options.direction,
            status=RunStatus.IN_PROGRESS,
            started_at=now,
        )
        self.session.add(log)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise SyncAlreadyRunning(
                f"A {options.provider} sync is already running for user {options.user_id}",
                provider=options.provider,
            )
        return log

    def finalize(self, log: SyncLog, result: SyncResult, status: str, error_message: Optional[str] = None) -> SyncLog:
        log.status = status
        log.events_processed = result.events_processed
        log.events_created = result.events_created
        log.events_updated = result.events_updated
        log.events_deleted = result.events_deleted
        log.conflicts_detected = result.conflicts_detected
        log.execution_time_ms = result.execution_time_ms
        log.error_message = error_message
        log.completed_at = datetime.now(timezone.utc)
        self.session.commit()
        return log

    def recent(self, user_id: str, provider: Optional[str] = None, limit: int = 20) -> List[SyncLog]:
        query = self.session.query(SyncLog).filter(SyncLog.user_id == user_id)
        if provider:
            query = query.filter(SyncLog.provider == provider)
        return query.order_by(SyncLog.started_at.desc()).limit(limit).all()
