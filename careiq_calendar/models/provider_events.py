"""Typed wire representations of each provider's calendar event.

Mappers are the only code that reads or builds these shapes; the sync service
handles them opaquely through the provider client and mapper interfaces.
Provider clients list raw items and validate them one at a time, so a
malformed item is reported as a single failed event instead of failing the
whole listing.
"""
from datetime import date, datetime
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')

    def to_wire(self) -> dict:
        # Explicit None becomes null, which clears the field on a PATCH
        return self.model_dump(by_alias=True, exclude_unset=True, mode='json')


# Google Calendar v3

class GoogleEventTime(_WireModel):
    date_time: Optional[str] = None
    date: Optional[str] = None
    time_zone: Optional[str] = None


class GoogleExtendedProperties(_WireModel):
    private: Dict[str, str] = Field(default_factory=dict)
    shared: Dict[str, str] = Field(default_factory=dict)


class GoogleEvent(_WireModel):
    id: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None
    updated: Optional[str] = None
    start: Optional[GoogleEventTime] = None
    end: Optional[GoogleEventTime] = None
    recurrence: Optional[List[str]] = None
    # Set on instances and exceptions of a recurring series
    recurring_event_id: Optional[str] = None
    extended_properties: Optional[GoogleExtendedProperties] = None


# Microsoft Graph v1.0

class OutlookBody(_WireModel):
    content_type: str = 'HTML'
    content: str = ''


class OutlookLocation(_WireModel):
    display_name: Optional[str] = None


class OutlookDateTime(_WireModel):
    date_time: Optional[str] = None
    time_zone: Optional[str] = None


class OutlookExtendedProperty(_WireModel):
    id: str
    value: Optional[str] = None


class OutlookRecurrencePattern(_WireModel):
    type: Optional[str] = None
    interval: int = 1
    days_of_week: Optional[List[str]] = None
    day_of_month: Optional[int] = None
    month: Optional[int] = None
    index: Optional[str] = None
    first_day_of_week: Optional[str] = None


class OutlookRecurrenceRange(_WireModel):
    type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    number_of_occurrences: Optional[int] = None


class OutlookRecurrence(_WireModel):
    pattern: Optional[OutlookRecurrencePattern] = None
    range: Optional[OutlookRecurrenceRange] = None


class OutlookEvent(_WireModel):
    id: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[OutlookBody] = None
    location: Optional[OutlookLocation] = None
    start: Optional[OutlookDateTime] = None
    end: Optional[OutlookDateTime] = None
    is_all_day: Optional[bool] = None
    is_cancelled: Optional[bool] = None
    categories: Optional[List[str]] = None
    recurrence: Optional[OutlookRecurrence] = None
    # singleInstance, occurrence, exception or seriesMaster
    type: Optional[str] = None
    series_master_id: Optional[str] = None
    last_modified_date_time: Optional[str] = None
    single_value_extended_properties: Optional[List[OutlookExtendedProperty]] = None

    def extended_property(self, property_id: str) -> Optional[str]:
        for prop in self.single_value_extended_properties or []:
            if prop.id.lower() == property_id.lower():
                return prop.value
        return None


# Apple iCloud (CalDAV / iCalendar VEVENT)

class AppleEvent(BaseModel):
    model_config = ConfigDict(extra='ignore')

    uid: Optional[str] = None
    url: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    dtstart: Optional[Union[datetime, date]] = None
    dtend: Optional[Union[datetime, date]] = None
    categories: List[str] = Field(default_factory=list)
    rrule: Optional[str] = None
    careiq_event_id: Optional[str] = None
    open_ended: bool = False
    last_modified: Optional[datetime] = None
