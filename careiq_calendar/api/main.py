import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from ..config.manager import ConfigManager
from ..database.connection import get_db, get_db_manager
from ..exceptions import (
    CalendarSyncError, IntegrationNotFound, ConflictNotFound, ConflictAlreadyResolved,
    InvalidResolution, SyncAlreadyRunning,
)
from ..models.sync import SyncDirection, ProviderName, SyncOptions, SyncResult
from ..services.calendar_sync_service import CalendarSyncService
from ..services.conflict_service import ConflictService
from ..services.integration_service import IntegrationService
from ..services.sync_log import SyncLogRecorder

logger = logging.getLogger(__name__)

app = FastAPI(title="CareIQ Calendar Sync API")

origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    IntegrationNotFound: 404,
    ConflictNotFound: 404,
    ConflictAlreadyResolved: 400,
    InvalidResolution: 400,
    SyncAlreadyRunning: 409,
}


@app.exception_handler(CalendarSyncError)
async def calendar_sync_error_handler(request: Request, exc: CalendarSyncError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"ok": False, "error": exc.message})


@lru_cache()
def get_config() -> ConfigManager:
    return ConfigManager()


def get_sync_service() -> CalendarSyncService:
    return CalendarSyncService(get_db_manager(), get_config())


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, set by the authenticating proxy in front of this service"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


# Request models

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncRequest(_CamelModel):
    provider: ProviderName
    direction: SyncDirection = 'bidirectional'
    calendar_type_id: Optional[str] = None
    external_calendar_id: Optional[str] = None


class ResolveConflictRequest(_CamelModel):
    conflict_id: str
    resolution: str
    resolved_data: Optional[Dict[str, Any]] = None


class BatchResolveRequest(_CamelModel):
    conflict_ids: List[str]
    resolution: str


class IntegrationSettingsRequest(_CamelModel):
    display_name: Optional[str] = None
    sync_enabled: Optional[bool] = None


def _run_sync(service: CalendarSyncService, options: SyncOptions) -> SyncResult:
    result = service.sync_calendar(options)
    # Only a run that lost the claim has no sync log
    if result.sync_log_id is None and not result.success:
        raise SyncAlreadyRunning(result.errors[0] if result.errors else "Sync already running", options.provider)
    return result


# Routes

@app.post("/calendar/sync")
def trigger_sync(request: SyncRequest,
                 user_id: str = Depends(current_user_id),
                 service: CalendarSyncService = Depends(get_sync_service)):
    """Run a manual sync for the caller"""
    options = SyncOptions(
        provider=request.provider,
        user_id=user_id,
        direction=request.direction,
        calendar_type_id=request.calendar_type_id,
        external_calendar_id=request.external_calendar_id,
        sync_type='manual',
    )
    result = _run_sync(service, options)
    return {"ok": result.success, "result": result.model_dump(by_alias=True)}


@app.post("/calendar/webhooks/{provider}", status_code=202)
def provider_webhook(provider: ProviderName,
                     request: Request,
                     validation_token: Optional[str] = Query(None, alias="validationToken"),
                     user_id: str = Depends(current_user_id),
                     service: CalendarSyncService = Depends(get_sync_service)):
    """Change notification from a provider; triggers a pull of the caller's calendar"""
    if validation_token:
        # Graph subscription handshake
        return PlainTextResponse(validation_token, status_code=200)
    if request.headers.get("x-goog-resource-state") == "sync":
        return JSONResponse({"ok": True, "message": "Channel registered"}, status_code=200)

    options = SyncOptions(provider=provider, user_id=user_id, direction='pull', sync_type='webhook')
    result = _run_sync(service, options)
    return {"ok": result.success, "result": result.model_dump(by_alias=True)}


@app.get("/calendar/integrations")
def list_integrations(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    integrations = IntegrationService(db).list_integrations(user_id)
    return {"ok": True, "integrations": [integration.to_dict() for integration in integrations]}


@app.put("/calendar/integrations/{provider}")
def update_integration(provider: ProviderName,
                       request: IntegrationSettingsRequest,
                       user_id: str = Depends(current_user_id),
                       db: Session = Depends(get_db)):
    integration = IntegrationService(db).update_settings(
        user_id, provider, display_name=request.display_name, sync_enabled=request.sync_enabled,
    )
    return {"ok": True, "integration": integration.to_dict(), "message": "Integration updated successfully"}


@app.delete("/calendar/integrations/{provider}")
def disconnect_integration(provider: ProviderName,
                           user_id: str = Depends(current_user_id),
                           db: Session = Depends(get_db)):
    IntegrationService(db).disconnect(user_id, provider)
    return {"ok": True, "message": "Integration disconnected successfully"}


@app.get("/calendar/conflicts")
def list_conflicts(status: str = Query('pending'),
                   limit: int = Query(50, ge=1, le=500),
                   user_id: str = Depends(current_user_id),
                   db: Session = Depends(get_db)):
    conflicts = ConflictService(db).list_conflicts(user_id, status=status, limit=limit)
    return {"ok": True, "conflicts": [conflict.to_dict() for conflict in conflicts]}


@app.post("/calendar/conflicts")
def resolve_conflict(request: ResolveConflictRequest,
                     user_id: str = Depends(current_user_id),
                     db: Session = Depends(get_db)):
    ConflictService(db).resolve_conflict(
        user_id, request.conflict_id, request.resolution,
        resolved_data=request.resolved_data, resolved_by=user_id,
    )
    return {"ok": True, "message": "Conflict resolved successfully"}


@app.put("/calendar/conflicts/batch")
def resolve_conflicts_batch(request: BatchResolveRequest,
                            user_id: str = Depends(current_user_id),
                            db: Session = Depends(get_db)):
    if not request.conflict_ids:
        raise HTTPException(status_code=400, detail="Conflict IDs array and resolution are required")
    outcome = ConflictService(db).resolve_conflicts_batch(
        user_id, request.conflict_ids, request.resolution, resolved_by=user_id,
    )
    return {
        "ok": True,
        "resolvedCount": outcome['resolved_count'],
        "errors": outcome['errors'],
        "message": f"Resolved {outcome['resolved_count']} of {len(request.conflict_ids)} conflicts",
    }


@app.get("/calendar/sync-logs")
def list_sync_logs(provider: Optional[ProviderName] = None,
                   limit: int = Query(20, ge=1, le=200),
                   user_id: str = Depends(current_user_id),
                   db: Session = Depends(get_db)):
    logs = SyncLogRecorder(db).recent(user_id, provider=provider, limit=limit)
    return {"ok": True, "syncLogs": [log.to_dict() for log in logs]}


@app.get("/health")
def health_check():
    return {"status": "healthy"}


def main():
    import uvicorn
    config = get_config()
    logging.basicConfig(level=config.get('development.log_level', 'INFO'))
    logger.info("Starting CareIQ calendar sync API with uvicorn...")
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=config.get('development.log_level', 'INFO').lower())


if __name__ == "__main__":
    main()
