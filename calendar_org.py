"""
Calendar Source

Reads meeting entries from calendar.org (pushed to the daemon via POST /calendar)
and exposes them as Event objects for a time range.

Entry format:

    * Weekly 1-1 with Alex <2026-01-26 Mon 09:00-09:30>
    :PROPERTIES:
    :EVENT_ID: abc123_20260126T090000Z
    :RECURRING_ID: abc123
    :PARTICIPANTS: Alex Kim <alex@example.com>, Sam Lee <sam@example.com> [declined]
    :LOCATION: P9-2-2.05
    :END:
    [[https://meet.google.com/abc-defg-hij][📹 Join]]
    Free-text description...
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from attendee_filter import Attendee, RESPONSE_STATUSES

logger = logging.getLogger(__name__)

ENTRY_PATTERN = re.compile(
    r'^\* (.+?) <(\d{4}-\d{2}-\d{2}) \w{3}(?: (\d{2}:\d{2})-(\d{2}:\d{2}))?>[ \t]*\n?(.*?)(?=^\* |\Z)',
    re.MULTILINE | re.DOTALL
)
PROPERTY_PATTERN = re.compile(r'^:([A-Z_]+):[ \t]*(.*?)[ \t]*$', re.MULTILINE)
LINK_PATTERN = re.compile(r'\[\[(https://[^\]]+)\]\[[^\]]*\]\]')
PARTICIPANT_PATTERN = re.compile(r'^(.*?)\s*(?:<([^>]+)>)?\s*(?:\[([A-Za-z]+)\])?$')


@dataclass(frozen=True)
class Event:
    id: str
    title: str
    start: datetime | None
    end: datetime | None = None
    series_id: str | None = None
    attendees: tuple[Attendee, ...] = ()
    description: str = ''
    meet_url: str = ''
    location: str = ''

    @property
    def is_recurring(self) -> bool:
        return bool(self.series_id)


def _fallback_event_id(date_str: str, start_time: str | None, title: str) -> str:
    digest = hashlib.sha1(f"{date_str}|{start_time or ''}|{title}".encode('utf-8')).hexdigest()
    return f"org{digest[:16]}"


def parse_participants(raw: str) -> list[Attendee]:
    """Parse 'Name <email> [status], ...' into attendees."""
    attendees = []
    for part in raw.split(','):
        part = part.strip()
        if not part:
            continue
        match = PARTICIPANT_PATTERN.match(part)
        name, email, status = match.group(1), match.group(2), match.group(3)
        if status not in RESPONSE_STATUSES:
            status = 'unknown'
        email = (email or '').strip()
        if not email and '@' in name and ' ' not in name:
            # Bare email address
            name, email = '', name
        attendees.append(Attendee(
            email=email,
            display_name=name.strip() or None,
            response_status=status,
        ))
    return attendees


def parse_calendar_text(content: str) -> list[Event]:
    """Parse calendar.org content into events, in file order."""
    events = []

    for match in ENTRY_PATTERN.finditer(content):
        title = match.group(1).strip()
        date_str = match.group(2)
        start_time = match.group(3)  # None for all-day events
        end_time = match.group(4)
        body = match.group(5)

        properties = {key: value for key, value in PROPERTY_PATTERN.findall(body)}

        start = end = None
        if start_time:
            start = datetime.fromisoformat(f"{date_str}T{start_time}")
            end = datetime.fromisoformat(f"{date_str}T{end_time}")
            if end < start:
                # Crosses midnight
                end += timedelta(days=1)

        links = LINK_PATTERN.findall(body)

        # Description = body minus the property drawer and link lines
        description_lines = []
        for line in body.split('\n'):
            stripped = line.strip()
            if PROPERTY_PATTERN.match(stripped) or LINK_PATTERN.fullmatch(stripped):
                continue
            description_lines.append(line.rstrip())
        description = '\n'.join(description_lines).strip()

        events.append(Event(
            id=properties.get('EVENT_ID') or _fallback_event_id(date_str, start_time, title),
            title=title,
            start=start,
            end=end,
            series_id=properties.get('RECURRING_ID') or None,
            attendees=tuple(parse_participants(properties.get('PARTICIPANTS', ''))),
            description=description,
            meet_url=links[0] if links else '',
            location=properties.get('LOCATION', ''),
        ))

    return events


def parse_calendar_org(calendar_path: str) -> list[Event]:
    """Parse calendar.org and return its events."""
    with open(calendar_path, 'r', encoding='utf-8') as f:
        content = f.read()
    return parse_calendar_text(content)


def naive_local(dt: datetime) -> datetime:
    """Calendar times are local wall-clock; convert aware datetimes to match."""
    if dt.tzinfo is not None:
        return dt.astimezone().replace(tzinfo=None)
    return dt


class OrgCalendar:
    """Calendar collaborator backed by a calendar.org file.

    get_events() never raises: a missing or unreadable calendar degrades
    to an empty list so callers can fall back gracefully.
    """

    def __init__(self, calendar_path: str):
        self.calendar_path = calendar_path

    def get_events(self, start: datetime, end: datetime) -> list[Event]:
        """Timed events starting within [start, end)."""
        try:
            events = parse_calendar_org(self.calendar_path)
        except FileNotFoundError:
            logger.warning(f"Calendar not found: {self.calendar_path}")
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read calendar {self.calendar_path}: {e}")
            return []

        window_start = naive_local(start)
        window_end = naive_local(end)
        return [e for e in events
                if e.start is not None and window_start <= e.start < window_end]
