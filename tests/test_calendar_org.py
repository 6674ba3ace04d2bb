#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
# ]
# ///
"""
Tests for calendar_org.py

Covers:
- Parsing calendar.org entries (times, ids, participants, links, description)
- All-day entries and meetings that cross midnight
- OrgCalendar.get_events() range filtering and missing files

Run with: uv run pytest tests/test_calendar_org.py -v
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
from attendee_filter import Attendee
from calendar_org import OrgCalendar, naive_local, parse_calendar_org, parse_calendar_text, parse_participants

FIXTURE = Path(__file__).parent.parent / 'examples' / 'calendar.org'


def _by_id(events):
    return {e.id: e for e in events}


class TestParseCalendar:
    """Parsing the example calendar.org."""

    def test_entry_count(self):
        assert len(parse_calendar_org(str(FIXTURE))) == 8

    def test_recurring_entry(self):
        event = _by_id(parse_calendar_org(str(FIXTURE)))['abc123_20260126T170000Z']
        assert event.title == 'Weekly 1-1 with Alex'
        assert event.series_id == 'abc123'
        assert event.is_recurring
        assert event.start == datetime(2026, 1, 26, 9, 0)
        assert event.end == datetime(2026, 1, 26, 9, 30)
        assert event.meet_url == 'https://meet.google.com/abc-defg-hij'
        assert event.description == 'Career growth and Q1 goals.'
        assert event.attendees == (
            Attendee('alex.kim@example.com', 'Alex Kim', 'accepted'),
            Attendee('me@example.com', 'Me', 'accepted'),
        )

    def test_one_off_entry(self):
        event = _by_id(parse_calendar_org(str(FIXTURE)))['int789']
        assert event.series_id is None
        assert not event.is_recurring
        assert event.location == 'P9-2-2.05'
        assert event.description == ''

    def test_bare_email_participant(self):
        event = _by_id(parse_calendar_org(str(FIXTURE)))['int789']
        assert event.attendees[0] == Attendee('jordan.rivera@gmail.com', None, 'accepted')

    def test_participant_without_status(self):
        event = _by_id(parse_calendar_org(str(FIXTURE)))['standup_20260126T180000Z']
        assert event.attendees[1] == Attendee('sam.lee@example.com', 'Sam Lee', 'unknown')

    def test_all_day_entry_has_no_start(self):
        event = _by_id(parse_calendar_org(str(FIXTURE)))['allhands']
        assert event.start is None
        assert event.end is None

    def test_crossing_midnight(self):
        event = _by_id(parse_calendar_org(str(FIXTURE)))['deploy1']
        assert event.start == datetime(2026, 1, 26, 23, 30)
        assert event.end == datetime(2026, 1, 27, 0, 30)
        assert event.attendees == ()

    def test_missing_event_id_gets_stable_fallback(self):
        content = '* Coffee chat <2026-01-26 Mon 11:00-11:30>\n'
        first = parse_calendar_text(content)[0]
        second = parse_calendar_text(content)[0]
        assert first.id.startswith('org')
        assert first.id == second.id

    def test_empty_content(self):
        assert parse_calendar_text('') == []


class TestParseParticipants:
    """The :PARTICIPANTS: property."""

    def test_unknown_status(self):
        assert parse_participants('A <a@co.com> [maybe]') == [Attendee('a@co.com', 'A', 'unknown')]

    def test_name_only(self):
        assert parse_participants('Sam Lee') == [Attendee('', 'Sam Lee', 'unknown')]

    def test_blank_parts_skipped(self):
        assert parse_participants(' , ') == []


class TestOrgCalendar:
    """OrgCalendar.get_events()."""

    def test_day_range(self):
        calendar = OrgCalendar(str(FIXTURE))
        events = calendar.get_events(datetime(2026, 1, 26), datetime(2026, 1, 27))
        assert [e.id for e in events] == [
            'abc123_20260126T170000Z',
            'standup_20260126T180000Z',
            'int789',
            'partner42',
            'offsite1',
            'deploy1',
        ]

    def test_end_is_exclusive(self):
        calendar = OrgCalendar(str(FIXTURE))
        events = calendar.get_events(datetime(2026, 1, 27), datetime(2026, 1, 27, 9, 0))
        assert events == []

    def test_missing_file_returns_empty(self, tmp_path):
        calendar = OrgCalendar(str(tmp_path / 'missing.org'))
        assert calendar.get_events(datetime(2026, 1, 26), datetime(2026, 1, 27)) == []

    def test_aware_bounds_compared_as_local(self):
        start = datetime(2026, 1, 26, 12, 0, tzinfo=timezone.utc)
        assert naive_local(start) == start.astimezone().replace(tzinfo=None)
        assert naive_local(datetime(2026, 1, 26)) == datetime(2026, 1, 26)

    def test_reads_file_on_every_call(self, tmp_path):
        path = tmp_path / 'calendar.org'
        path.write_text('* A <2026-01-26 Mon 09:00-10:00>\n:PROPERTIES:\n:EVENT_ID: a\n:END:\n')
        calendar = OrgCalendar(str(path))
        window = (datetime(2026, 1, 26), datetime(2026, 1, 26) + timedelta(days=1))
        assert [e.id for e in calendar.get_events(*window)] == ['a']

        path.write_text('* B <2026-01-26 Mon 09:00-10:00>\n:PROPERTIES:\n:EVENT_ID: b\n:END:\n')
        assert [e.id for e in calendar.get_events(*window)] == ['b']
