from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..config.manager import ConfigManager
from ..database.connection import DatabaseManager
from ..database.models import (
    CalendarEvent, CalendarIntegration, SyncLog, SyncStatus, RunStatus, PROVIDER_ID_FIELDS,
)
from ..exceptions import CalendarSyncError, CalendarResolutionError, EventNotFound, IntegrationInactive, SyncAlreadyRunning
from ..integrations.base import CalendarProviderClient, create_provider_client
from ..mappers import EventMapper, get_mapper
from ..models.events import EventWindow
from ..models.sync import SyncOptions, SyncResult
from .conflict_resolver import ConflictResolver, apply_draft
from .credential_manager import CredentialManager
from .sync_log import SyncLogRecorder

logger = logging.getLogger(__name__)


class _Run:
    """State carried through one sync run"""

    def __init__(self, session: Session, options: SyncOptions, client: CalendarProviderClient,
                 mapper: EventMapper, calendar_ref: str, result: SyncResult):
        self.session = session
        self.options = options
        self.client = client
        self.mapper = mapper
        self.calendar_ref = calendar_ref
        self.result = result
        self.id_column = getattr(CalendarEvent, PROVIDER_ID_FIELDS[options.provider])


class CalendarSyncService:
    """Bidirectional sync of a user's internal events with one external provider per run"""

    def __init__(self, database_manager: DatabaseManager, config: ConfigManager = None,
                 client_factory: Callable = create_provider_client,
                 oauth_flows: Optional[Dict[str, object]] = None):
        self.database_manager = database_manager
        self.config = config or ConfigManager()
        self.client_factory = client_factory
        self.oauth_flows = oauth_flows

    def sync_calendar(self, options: SyncOptions) -> SyncResult:
        """Run one push and/or pull pass and record it as a sync run"""
        started = time.monotonic()
        session = self.database_manager.get_session()
        try:
            recorder = SyncLogRecorder(session)
            try:
                log = recorder.claim(options)
            except SyncAlreadyRunning as e:
                logger.info(str(e))
                return SyncResult(
                    success=False,
                    errors=[str(e)],
                    execution_time_ms=int((time.monotonic() - started) * 1000),
                )

            logger.info(f"Sync run {log.id} started: {options.provider} {options.direction} for user {options.user_id}")
            result = SyncResult(sync_log_id=log.id)
            error_message = None
            try:
                self._execute(session, log, options, result)
                status = RunStatus.PARTIAL_SUCCESS if result.errors else RunStatus.SUCCESS
                if result.errors:
                    error_message = '; '.join(result.errors)
            except CalendarSyncError as e:
                session.rollback()
                logger.error(f"Sync run {log.id} failed: {e}")
                status = RunStatus.ERROR
                error_message = str(e)
                result.errors.append(error_message)
            except Exception as e:
                session.rollback()
                logger.exception(f"Unexpected error in sync run {log.id}")
                status = RunStatus.ERROR
                error_message = f"Unexpected error: {e}"
                result.errors.append(error_message)

            result.status = status
            result.success = status != RunStatus.ERROR
            result.execution_time_ms = int((time.monotonic() - started) * 1000)
            recorder.finalize(log, result, status, error_message)
            self._record_on_integration(session, log, status, error_message)

            logger.info(
                f"Sync run {log.id} finished with {status}: processed={result.events_processed} "
                f"created={result.events_created} updated={result.events_updated} "
                f"deleted={result.events_deleted} conflicts={result.conflicts_detected}"
            )
            return result
        finally:
            session.close()

    def _execute(self, session: Session, log: SyncLog, options: SyncOptions, result: SyncResult):
        credential_manager = CredentialManager(session, self.config, self.oauth_flows)
        integration = credential_manager.get_integration(options.user_id, options.provider, require_active=False)
        log.integration_id = integration.id
        session.commit()

        # Rejects inactive integrations
        credentials = credential_manager.get_credentials(options.user_id, options.provider)
        if not integration.sync_enabled and options.sync_type != 'manual':
            raise IntegrationInactive(f"Automatic sync is disabled for {options.provider}", provider=options.provider)

        credentials = credential_manager.ensure_fresh(credentials)

        client = self.client_factory(options.provider, credentials, self.config)
        calendar_ref = self._resolve_calendar(client, options)
        run = _Run(session, options, client, get_mapper(options.provider), calendar_ref, result)

        if options.pushes:
            self._push(run)
        if options.pulls:
            self._pull(run)

    def _resolve_calendar(self, client: CalendarProviderClient, options: SyncOptions) -> str:
        if options.external_calendar_id:
            return options.external_calendar_id
        calendar_ref = client.default_calendar()
        if not calendar_ref:
            raise CalendarResolutionError(
                f"No writable {options.provider} calendar found", provider=options.provider
            )
        return calendar_ref

    def _local_events(self, run: _Run):
        query = run.session.query(CalendarEvent).filter(CalendarEvent.user_id == run.options.user_id)
        if run.options.calendar_type_id:
            query = query.filter(CalendarEvent.calendar_type_id == run.options.calendar_type_id)
        return query

    # Push

    def _push(self, run: _Run):
        events = self._local_events(run)

        to_create = events.filter(
            CalendarEvent.is_deleted.is_(False),
            run.id_column.is_(None),
            CalendarEvent.sync_status.in_([SyncStatus.PENDING, SyncStatus.ERROR]),
        ).order_by(CalendarEvent.start_time).all()
        to_update = events.filter(
            CalendarEvent.is_deleted.is_(False),
            run.id_column.isnot(None),
            CalendarEvent.sync_status.in_([SyncStatus.PENDING, SyncStatus.ERROR]),
        ).order_by(CalendarEvent.start_time).all()
        to_delete = events.filter(
            CalendarEvent.is_deleted.is_(True),
            run.id_column.isnot(None),
        ).all()

        logger.info(f"Push pass: {len(to_create)} to create, {len(to_update)} to update, {len(to_delete)} to delete")

        for event in to_create:
            self._push_one(run, event, self._create_external)
        for event in to_update:
            self._push_one(run, event, self._update_external)
        for event in to_delete:
            self._push_one(run, event, self._delete_external)

    def _push_one(self, run: _Run, event: CalendarEvent, action: Callable):
        run.result.events_processed += 1
        event_id = event.id
        try:
            action(run, event)
            run.session.commit()
        except CalendarSyncError as e:
            run.session.rollback()
            logger.warning(f"Failed to push event {event_id} to {run.options.provider}: {e}")
            event.sync_status = SyncStatus.ERROR
            event.sync_error = str(e)
            run.session.commit()
            run.result.errors.append(f"Event {event_id}: {e}")

    def _mark_synced(self, event: CalendarEvent):
        event.sync_status = SyncStatus.SYNCED
        event.sync_error = None
        event.last_synced_at = datetime.now(timezone.utc)

    def _create_external(self, run: _Run, event: CalendarEvent):
        external_id = run.client.create_event(run.calendar_ref, run.mapper.to_external(event))
        event.set_provider_id(run.options.provider, external_id)
        self._mark_synced(event)
        run.result.events_created += 1

    def _update_external(self, run: _Run, event: CalendarEvent):
        external_id = event.provider_id(run.options.provider)
        try:
            run.client.update_event(run.calendar_ref, external_id, run.mapper.to_external(event))
        except EventNotFound:
            logger.info(f"External copy {external_id} of event {event.id} is gone, re-creating it")
            event.set_provider_id(run.options.provider, None)
            self._create_external(run, event)
            return
        self._mark_synced(event)
        run.result.events_updated += 1

    def _delete_external(self, run: _Run, event: CalendarEvent):
        run.client.delete_event(run.calendar_ref, event.provider_id(run.options.provider))
        event.set_provider_id(run.options.provider, None)
        event.last_synced_at = datetime.now(timezone.utc)
        run.result.events_deleted += 1

    # Pull

    def _sync_window(self) -> EventWindow:
        now = datetime.now(timezone.utc)
        return EventWindow(
            start=now - timedelta(days=self.config.get('sync.past_days', 30)),
            end=now + timedelta(days=self.config.get('sync.future_days', 180)),
        )

    def _pull(self, run: _Run):
        items = run.client.list_events(run.calendar_ref, self._sync_window())
        logger.info(f"Pull pass: {len(items)} items from {run.options.provider}")
        resolver = ConflictResolver(run.session, self.config.get('sync.conflict_policy'))

        for item in items:
            try:
                external_event = run.client.parse_event(item)
            except CalendarSyncError as e:
                run.result.events_processed += 1
                logger.warning(f"Skipping unreadable {run.options.provider} event: {e}")
                run.result.errors.append(str(e))
                continue
            if external_event is None:
                continue

            run.result.events_processed += 1
            try:
                self._pull_one(run, resolver, external_event)
                run.session.commit()
            except CalendarSyncError as e:
                run.session.rollback()
                external_id = getattr(external_event, 'id', None) or getattr(external_event, 'uid', None)
                logger.warning(f"Failed to pull {run.options.provider} event {external_id}: {e}")
                run.result.errors.append(f"External event {external_id}: {e}")

    def _pull_one(self, run: _Run, resolver: ConflictResolver, external_event):
        draft = run.mapper.to_internal(external_event, run.options.user_id, run.options.calendar_type_id)
        external_id = run.mapper.external_id(external_event)

        local = run.session.query(CalendarEvent).filter(
            CalendarEvent.user_id == run.options.user_id,
            run.id_column == external_id,
        ).first()
        now = datetime.now(timezone.utc)

        if local is None:
            run.session.add(CalendarEvent(**draft.model_dump(), last_synced_at=now))
            run.result.events_created += 1
            return
        if local.is_deleted:
            # Removed locally; the push pass deletes the external copy
            return

        conflict_type = resolver.detect(local, draft)
        if conflict_type is None:
            apply_draft(local, draft)
            self._mark_synced(local)
            run.result.events_updated += 1
            return

        outcome = resolver.resolve(local, draft, run.options.provider, conflict_type)
        run.result.conflicts_detected += 1
        if outcome.local_updated:
            run.result.events_updated += 1

    def _record_on_integration(self, session: Session, log: SyncLog, status: str, error_message: Optional[str]):
        if not log.integration_id:
            return
        integration = session.get(CalendarIntegration, log.integration_id)
        if integration is None:
            return
        integration.last_sync_at = log.completed_at
        integration.last_sync_status = status
        integration.error_message = error_message
        session.commit()
