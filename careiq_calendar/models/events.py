from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class EventWindow(BaseModel):
    """Half-open time range used for listing events"""
    start: datetime
    end: datetime


class CalendarDescriptor(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    primary: bool = False
    can_write: Optional[bool] = None


class EventDraft(BaseModel):
    """Internal event fields produced by mapping an external event"""
    user_id: str
    calendar_type_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    all_day: bool = False
    category: str = 'custom'
    recurrence_rule: Optional[str] = None
    google_event_id: Optional[str] = None
    outlook_event_id: Optional[str] = None
    apple_event_uid: Optional[str] = None
    sync_status: str = 'synced'

    def mapped_fields(self) -> dict:
        """Fields a pull pass copies onto an existing internal event"""
        return {
            'title': self.title,
            'description': self.description,
            'location': self.location,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'all_day': self.all_day,
        }

    def snapshot(self) -> dict:
        return self.model_dump(mode='json')
