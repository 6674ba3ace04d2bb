#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
# ]
# ///
"""
Tests for meeting_routing.py

Covers:
- resolve_route(): built-in rule table, fallbacks, caps
- Determinism across instances of a recurring series
- rules_from_config(): template rules from config.yaml
- sanitize_title() / note_filename() / note_path()

Run with: uv run pytest tests/test_meeting_routing.py -v
"""

import re
import sys
from datetime import datetime
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from attendee_filter import Attendee
from calendar_org import Event
from meeting_routing import (
    Route,
    RoutingRule,
    default_rules,
    note_filename,
    note_path,
    resolve_route,
    rules_from_config,
    sanitize_title,
)

MEETINGS = 'Meetings'
RULES = default_rules(MEETINGS)


def _event(title, series_id=None, start=datetime(2026, 1, 26, 9, 0), **kwargs):
    return Event(id=kwargs.pop('id', 'evt1'), title=title, start=start, series_id=series_id, **kwargs)


def _route(event, rules=RULES, default_cap=10):
    return resolve_route(event, rules, MEETINGS, default_cap)


# ============================================================================
# resolve_route()
# ============================================================================

class TestDefaultRules:
    """The built-in routing table."""

    def test_one_on_one_goes_to_o3s(self):
        """'Weekly 1-1 with Alex' routes to O3s with cap 3."""
        route = _route(_event('Weekly 1-1 with Alex', series_id='abc123'))
        assert route == Route(destination='Meetings/O3s', title='Weekly 1-1 with Alex', participant_cap=3)

    def test_match_is_case_insensitive(self):
        assert _route(_event('WEEKLY O3 - SAM')).destination == 'Meetings/O3s'

    def test_business_performance_review_fixed_title(self):
        route = _route(_event('Q1 Business Performance Review (EMEA)', series_id='bpr'))
        assert route.title == 'Business Performance Review'
        assert route.destination == MEETINGS
        assert route.participant_cap == 0

    def test_one_off_interview_gets_dated_title(self):
        route = _route(_event('Interview: Jordan Rivera'))
        assert route.destination == 'Meetings/Interviews'
        assert route.title == '2026-01-26 – Interview: Jordan Rivera'
        assert route.participant_cap == 5

    def test_recurring_interview_keeps_plain_title(self):
        route = _route(_event('Interview debrief', series_id='debrief'))
        assert route.title == 'Interview debrief'

    def test_standup_never_lists_participants(self):
        route = _route(_event('Engineering Stand-up', series_id='standup'))
        assert route.destination == MEETINGS
        assert route.participant_cap == 0

    def test_first_match_wins(self):
        """'interview' comes before 'standup' in the table."""
        route = _route(_event('Standup about interview loop'))
        assert route.destination == 'Meetings/Interviews'


class TestFallbacks:
    """Events no rule matches."""

    def test_one_off_goes_to_month_folder(self):
        assert _route(_event('Partner Roadmap Review')).destination == 'Meetings/2026-01'

    def test_recurring_goes_to_root(self):
        assert _route(_event('Partner Roadmap Review', series_id='prr')).destination == MEETINGS

    def test_missing_start_goes_to_root(self):
        assert _route(_event('Partner Roadmap Review', start=None)).destination == MEETINGS

    def test_default_cap(self):
        assert _route(_event('Partner Roadmap Review'), default_cap=7).participant_cap == 7

    def test_negative_cap_clamped(self):
        assert _route(_event('Partner Roadmap Review'), default_cap=-1).participant_cap == 0

    def test_blank_title_placeholder(self):
        assert _route(_event('   ')).title == '(No title)'

    def test_rule_without_cap_uses_default(self):
        rules = [RoutingRule(pattern='board', destination='Meetings/Board')]
        assert _route(_event('Board'), rules=rules, default_cap=4).participant_cap == 4

    def test_callable_destination(self):
        rules = [RoutingRule(pattern='board', destination=lambda e: f"Board/{e.start.year}")]
        assert _route(_event('Board'), rules=rules).destination == 'Board/2026'


class TestDeterminism:
    """Every instance of a series resolves identically."""

    def test_instances_with_different_times_and_attendees(self):
        first = _event('Weekly 1-1 with Alex', series_id='abc123', id='abc123_1',
                       attendees=(Attendee('alex@example.com'),))
        second = _event('Weekly 1-1 with Alex', series_id='abc123', id='abc123_2',
                        start=datetime(2026, 3, 2, 14, 0))
        assert _route(first) == _route(second)

    def test_recurring_interview_stable_across_dates(self):
        first = _event('Interview calibration', series_id='cal')
        second = _event('Interview calibration', series_id='cal', start=datetime(2026, 6, 1, 9, 0))
        assert _route(first) == _route(second)


# ============================================================================
# rules_from_config()
# ============================================================================

class TestRulesFromConfig:
    """Routing rules defined in config.yaml."""

    RAW = [{
        'match': 'board',
        'folder': '{meetings}/Board/{month}',
        'title': '{title} ({date})',
        'list_participants': 0,
    }]

    def test_templates_render_for_one_off(self):
        rules = rules_from_config(self.RAW, MEETINGS)
        route = _route(_event('Board Meeting'), rules=rules)
        assert route.destination == 'Meetings/Board/2026-01'
        assert route.title == 'Board Meeting (2026-01-26)'
        assert route.participant_cap == 0

    def test_date_placeholders_empty_for_recurring(self):
        rules = rules_from_config(self.RAW, MEETINGS)
        route = _route(_event('Board Meeting', series_id='board'), rules=rules)
        assert route.destination == 'Meetings/Board'

    def test_same_config_builds_equal_rules(self):
        assert rules_from_config(self.RAW, MEETINGS) == rules_from_config(self.RAW, MEETINGS)

    def test_missing_match_rejected(self):
        with pytest.raises(ValueError):
            rules_from_config([{'folder': 'x'}], MEETINGS)

    def test_invalid_regex_rejected(self):
        with pytest.raises(re.error):
            rules_from_config([{'match': '(unclosed'}], MEETINGS)


# ============================================================================
# Filenames
# ============================================================================

class TestFilenames:
    """Filename construction embeds the series id after '~'."""

    def test_note_path(self):
        route = Route(destination='Meetings/O3s', title='Weekly 1-1 with Alex', participant_cap=3)
        assert note_path(route, 'abc123') == 'Meetings/O3s/Weekly 1-1 with Alex ~abc123.md'

    def test_sanitize_title(self):
        assert sanitize_title('a/b: c?') == 'a-b- c-'
        assert sanitize_title('  lots   of   space ') == 'lots of space'
        assert sanitize_title('') == '(No title)'

    def test_tilde_in_title_replaced(self):
        assert note_filename('x ~y', 'id1') == 'x -y ~id1.md'
