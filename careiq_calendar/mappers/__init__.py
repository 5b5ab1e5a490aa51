"""Pure conversions between internal events and each provider's event shape"""
from typing import Callable, NamedTuple

from ..database.models import Provider
from .google import careiq_to_google_event, google_to_careiq_event, google_event_id
from .outlook import careiq_to_outlook_event, outlook_to_careiq_event, outlook_event_id
from .apple import careiq_to_apple_event, apple_to_careiq_event, apple_event_uid


class EventMapper(NamedTuple):
    to_external: Callable
    to_internal: Callable
    external_id: Callable


MAPPERS = {
    Provider.GOOGLE: EventMapper(careiq_to_google_event, google_to_careiq_event, google_event_id),
    Provider.OUTLOOK: EventMapper(careiq_to_outlook_event, outlook_to_careiq_event, outlook_event_id),
    Provider.APPLE: EventMapper(careiq_to_apple_event, apple_to_careiq_event, apple_event_uid),
}


def get_mapper(provider: str) -> EventMapper:
    try:
        return MAPPERS[provider]
    except KeyError:
        raise ValueError(f"Unsupported calendar provider: {provider}")


__all__ = ['EventMapper', 'MAPPERS', 'get_mapper']
