"""
Attendee Filter

Cleans calendar attendee lists before they reach meeting notes:
drops excluded people, resource calendars and meeting rooms, derives
display names, and deduplicates by email (or name when there is no email).

Everything here is pure - no I/O.
"""

import re
from dataclasses import dataclass

RESOURCE_CALENDAR_DOMAIN = 'resource.calendar.google.com'

# Office room names like "P9-2" or "P9-2-2.05"
DEFAULT_ROOM_NAME_PATTERN = r'^p\d+-\d+'

RESPONSE_STATUSES = ('accepted', 'declined', 'tentative', 'needsAction', 'unknown')


@dataclass(frozen=True)
class Attendee:
    email: str = ''
    display_name: str | None = None
    response_status: str = 'unknown'


@dataclass(frozen=True)
class AttendeeRules:
    """Exclusion rules applied by filter_attendees()."""
    exclude_emails: tuple[str, ...] = ()
    exclude_names: tuple[str, ...] = ()
    resource_domains: tuple[str, ...] = (RESOURCE_CALENDAR_DOMAIN,)
    room_name_pattern: str = DEFAULT_ROOM_NAME_PATTERN


def humanize_email(email: str) -> str:
    """Turn 'jane.doe@co.com' into 'Jane Doe'."""
    local = (email or '').split('@')[0]
    words = [w for w in re.split(r'[._\-]+', local) if w]
    return ' '.join(w[:1].upper() + w[1:] for w in words)


def display_name(attendee: Attendee) -> str:
    """Name shown for an attendee: displayName, else the humanized email."""
    name = (attendee.display_name or '').strip()
    if name:
        return name
    return humanize_email(attendee.email)


def dedup_key(attendee: Attendee) -> str:
    email = (attendee.email or '').strip().lower()
    if email:
        return f"e:{email}"
    return f"n:{' '.join(display_name(attendee).lower().split())}"


def is_likely_room_name(name: str, pattern: str = DEFAULT_ROOM_NAME_PATTERN) -> bool:
    n = (name or '').strip().lower()
    if not n:
        return False
    return re.search(pattern, n) is not None


def is_excluded(attendee: Attendee, rules: AttendeeRules) -> bool:
    """True for excluded people, resource calendars and rooms."""
    raw_name = display_name(attendee)
    name = raw_name.lower()
    email = (attendee.email or '').lower()

    for sub in rules.exclude_emails:
        s = sub.lower()
        if s and (s in name or s in email):
            return True
    for sub in rules.exclude_names:
        s = sub.lower()
        if s and s in name:
            return True

    if any(domain.lower() in email for domain in rules.resource_domains if domain):
        return True

    return is_likely_room_name(raw_name, rules.room_name_pattern)


def filter_attendees(attendees: list[Attendee], rules: AttendeeRules) -> list[Attendee]:
    """Drop excluded attendees and dedupe, keeping the first occurrence in order."""
    seen = set()
    cleaned = []
    for attendee in attendees or []:
        if is_excluded(attendee, rules):
            continue
        key = dedup_key(attendee)
        if key in ('e:', 'n:') or key in seen:
            continue
        seen.add(key)
        cleaned.append(attendee)
    return cleaned


def wikilink(attendee: Attendee, people_folder: str) -> str:
    name = display_name(attendee)
    return f"[[{people_folder}/{name}|{name}]]"


def parse_attendee(raw: dict) -> Attendee:
    """Build an Attendee from a calendar/webhook dict (camelCase or snake_case)."""
    status = raw.get('responseStatus') or raw.get('response_status') or 'unknown'
    if status not in RESPONSE_STATUSES:
        status = 'unknown'
    return Attendee(
        email=(raw.get('email') or '').strip(),
        display_name=raw.get('displayName') or raw.get('display_name') or None,
        response_status=status,
    )
