"""
Meeting Routing

Resolves where a meeting note lives and what it is called, from the event
title and an ordered rule table. First matching rule wins; unmatched
meetings go to the meetings root (recurring) or a YYYY-MM subfolder (one-off).

Routing must be deterministic: every instance of a recurring series has to
land on the same note.
"""

import re
from dataclasses import dataclass
from typing import Callable

from calendar_org import Event

NO_TITLE = '(No title)'

# Characters that are unsafe in note filenames and wikilinks
UNSAFE_FILENAME_CHARS = re.compile(r'[|/\\<>:"?*]')

SERIES_ID_DELIMITER = '~'


@dataclass(frozen=True)
class RoutingRule:
    pattern: str
    destination: str | Callable[[Event], str]
    title: str | Callable[[Event], str] | None = None
    participant_cap: int | None = None

    def matches(self, title: str) -> bool:
        return re.search(self.pattern, title, re.IGNORECASE) is not None


@dataclass(frozen=True)
class Route:
    destination: str
    title: str
    participant_cap: int


def base_title(event: Event) -> str:
    return (event.title or '').strip() or NO_TITLE


def _one_off_date(event: Event, fmt: str) -> str:
    # Date-based names only for one-off events, so a series keeps one note
    if event.is_recurring or event.start is None:
        return ''
    return event.start.strftime(fmt)


def _dated_title(event: Event) -> str:
    date = _one_off_date(event, '%Y-%m-%d')
    base = (event.title or '').strip() or 'Interview'
    return f"{date} – {base}" if date else base


def default_rules(meetings_folder: str) -> list[RoutingRule]:
    """The built-in routing table, in evaluation order."""
    return [
        RoutingRule(
            pattern=r'business performance review',
            destination=meetings_folder,
            title='Business Performance Review',
            participant_cap=0,
        ),
        RoutingRule(
            pattern=r'interview',
            destination=f"{meetings_folder}/Interviews",
            title=_dated_title,
            participant_cap=5,
        ),
        RoutingRule(
            pattern=r'standup|stand-up',
            destination=meetings_folder,
            participant_cap=0,
        ),
        RoutingRule(
            pattern=r'1-1|o3|one-on-one',
            destination=f"{meetings_folder}/O3s",
            participant_cap=3,
        ),
    ]


@dataclass(frozen=True)
class Template:
    """Rule callable from a config template like '{meetings}/Interviews'."""
    fmt: str
    meetings_folder: str

    def __call__(self, event: Event) -> str:
        rendered = self.fmt.format(
            meetings=self.meetings_folder,
            title=base_title(event),
            date=_one_off_date(event, '%Y-%m-%d'),
            month=_one_off_date(event, '%Y-%m'),
        )
        # Empty date placeholders leave dangling separators behind
        rendered = re.sub(r'/{2,}', '/', rendered)
        return rendered.strip(' -–/')


def rules_from_config(raw_rules: list[dict], meetings_folder: str) -> list[RoutingRule]:
    """Build routing rules from config entries.

    Each entry: {match: regex, folder: template, title: template, list_participants: int}.
    Templates may use {meetings}, {title}, {date} and {month}.
    """
    rules = []
    for raw in raw_rules or []:
        pattern = raw.get('match')
        if not pattern:
            raise ValueError(f"Routing rule is missing 'match': {raw}")
        re.compile(pattern)

        folder = raw.get('folder') or raw.get('to') or '{meetings}'
        title = raw.get('title')
        cap = raw.get('list_participants')
        if cap is False:
            cap = 0
        rules.append(RoutingRule(
            pattern=pattern,
            destination=Template(folder, meetings_folder),
            title=Template(title, meetings_folder) if title else None,
            participant_cap=int(cap) if cap is not None else None,
        ))
    return rules


def resolve_route(event: Event, rules: list[RoutingRule], meetings_folder: str,
                  default_cap: int) -> Route:
    """Resolve destination folder, note title and participant cap for an event."""
    title = (event.title or '').strip()
    rule = next((r for r in rules if r.matches(title)), None)

    if rule is None:
        if event.is_recurring or event.start is None:
            destination = meetings_folder
        else:
            destination = f"{meetings_folder}/{event.start.strftime('%Y-%m')}"
        return Route(destination=destination, title=base_title(event),
                     participant_cap=max(0, default_cap))

    destination = rule.destination(event) if callable(rule.destination) else rule.destination

    if rule.title is None:
        note_title = base_title(event)
    elif callable(rule.title):
        note_title = rule.title(event)
    else:
        note_title = rule.title

    cap = default_cap if rule.participant_cap is None else rule.participant_cap
    return Route(destination=destination, title=note_title or base_title(event),
                 participant_cap=max(0, cap))


def sanitize_title(title: str) -> str:
    """Make a title safe for use in a filename and a wikilink alias."""
    sanitized = UNSAFE_FILENAME_CHARS.sub('-', title or '')
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized or NO_TITLE


def note_filename(title: str, series_id: str) -> str:
    """Format: '<title> ~<seriesId>.md'"""
    safe_title = sanitize_title(title).replace(SERIES_ID_DELIMITER, '-')
    return f"{safe_title} {SERIES_ID_DELIMITER}{series_id}.md"


def note_path(route: Route, series_id: str) -> str:
    return f"{route.destination}/{note_filename(route.title, series_id)}"
