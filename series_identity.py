"""
Series identity resolution.

Both producers (daily scan and transcript webhook) key meeting notes by the
same id: the recurring series id when the meeting recurs, else the event's
own id. The webhook only knows the instance id, so it looks the event up in
the calendar around its start time. Any failure falls back to the raw id.
"""

import logging
from datetime import datetime, timedelta
from typing import Protocol

from calendar_org import Event

logger = logging.getLogger(__name__)

LOOKUP_WINDOW = timedelta(days=1)


class CalendarSource(Protocol):
    def get_events(self, start: datetime, end: datetime) -> list[Event]: ...


def series_key(event: Event) -> str:
    """The filename-embedded id for an event."""
    return event.series_id or event.id


def resolve_series_id(event_id: str, start: datetime | None, calendar: CalendarSource,
                      known_series_id: str | None = None) -> str:
    """Find the series id for an event instance, falling back to event_id."""
    if known_series_id:
        return known_series_id

    if start is None:
        logger.warning(f"No start time for event {event_id}; using raw event id")
        return event_id

    try:
        events = calendar.get_events(start - LOOKUP_WINDOW, start + LOOKUP_WINDOW)
    except Exception as e:
        logger.warning(f"Calendar lookup failed for event {event_id}: {e}")
        return event_id

    for event in events:
        if event.id == event_id:
            return series_key(event)

    logger.warning(f"Event {event_id} not found in calendar around {start.isoformat()}; using raw event id")
    return event_id
