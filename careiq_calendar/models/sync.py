from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SyncDirection = Literal['push', 'pull', 'bidirectional']
SyncType = Literal['manual', 'scheduled', 'webhook']
ProviderName = Literal['google', 'outlook', 'apple_caldav']


class SyncOptions(BaseModel):
    """Parameters of one sync run"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    provider: ProviderName
    user_id: str
    direction: SyncDirection = 'bidirectional'
    calendar_type_id: Optional[str] = None
    external_calendar_id: Optional[str] = None
    sync_type: SyncType = 'manual'

    @property
    def pushes(self) -> bool:
        return self.direction in ('push', 'bidirectional')

    @property
    def pulls(self) -> bool:
        return self.direction in ('pull', 'bidirectional')


class SyncResult(BaseModel):
    """Outcome counters of one sync run"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = False
    status: Optional[str] = None
    sync_log_id: Optional[str] = None
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    conflicts_detected: int = 0
    execution_time_ms: int = 0
    errors: List[str] = Field(default_factory=list)
