#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Tests for sync_settings.py

Covers:
- Settings defaults and Settings.from_config()
- Routing rules from config compare equal across loads
- SettingsStore: update/subscribe/unsubscribe, reload from YAML

Run with: uv run pytest tests/test_sync_settings.py -v
"""

import sys
from dataclasses import replace
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))
from meeting_routing import default_rules
from sync_settings import Settings, SettingsStore, load_config

CONFIG = {
    'server': {'host': '0.0.0.0', 'port': 9000},
    'vault': {'dir': '~/vault', 'meetings_folder': '/Work/Meetings/', 'people_folder': 'Contacts'},
    'calendar': {'path': '/tmp/calendar.org'},
    'attendees': {
        'exclude_emails': ['me@example.com'],
        'exclude_names': 'Focus Bot',
        'your_domain': '@Example.com',
    },
    'meetings': {
        'exclude_titles': ['Lunch', 'Focus time'],
        'max_listed_participants': 6,
        'routing_rules': [{'match': 'board', 'folder': '{meetings}/Board'}],
    },
    'enrichment': {
        'copilot_path': '/opt/copilot',
        'parallel_briefings': 0,
        'api_delay_ms': 250,
        'prompts': {'filter': 'Filter {title}'},
    },
    'webhook': {'api_key': 'secret'},
}


class TestSettings:
    """Settings snapshots."""

    def test_defaults(self):
        settings = Settings()
        assert settings.port == 9876
        assert settings.meetings_folder == 'Meetings'
        assert settings.routing_rules == tuple(default_rules('Meetings'))
        assert settings.parallel_briefings == 3
        assert settings.webhook_api_key == ''

    def test_empty_config_uses_defaults(self):
        assert Settings.from_config({}) == Settings()
        assert Settings.from_config(None) == Settings()

    def test_from_config(self):
        settings = Settings.from_config(CONFIG)
        assert settings.host == '0.0.0.0'
        assert settings.port == 9000
        assert settings.vault_dir == str(Path('~/vault').expanduser())
        assert settings.meetings_folder == 'Work/Meetings'
        assert settings.people_folder == 'Contacts'
        assert settings.attendee_rules.exclude_emails == ('me@example.com',)
        assert settings.attendee_rules.exclude_names == ('Focus Bot',)
        assert settings.your_domain == 'example.com'
        assert settings.exclude_titles == ('Lunch', 'Focus time')
        assert settings.max_listed_participants == 6
        assert settings.copilot_path == '/opt/copilot'
        assert settings.parallel_briefings == 1
        assert settings.api_delay_ms == 250
        assert settings.filter_prompt == 'Filter {title}'
        assert settings.webhook_api_key == 'secret'

    def test_config_routing_rules_replace_defaults(self):
        settings = Settings.from_config(CONFIG)
        assert len(settings.routing_rules) == 1
        assert settings.routing_rules[0].pattern == 'board'

    def test_default_rules_use_configured_folder(self):
        settings = Settings.from_config({'vault': {'meetings_folder': 'Work'}})
        assert settings.routing_rules == tuple(default_rules('Work'))

    def test_same_config_same_settings(self):
        assert Settings.from_config(CONFIG) == Settings.from_config(CONFIG)


class TestSettingsStore:
    """Change notification and reload."""

    def test_update_notifies_on_change(self):
        store = SettingsStore()
        seen = []
        store.subscribe(seen.append)
        new = replace(store.get(), port=1234)
        assert store.update(new) is True
        assert seen == [new]
        assert store.get() is new

    def test_update_without_change_is_silent(self):
        store = SettingsStore()
        seen = []
        store.subscribe(seen.append)
        assert store.update(Settings()) is False
        assert seen == []

    def test_unsubscribe(self):
        store = SettingsStore()
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        store.update(replace(store.get(), port=1))
        assert seen == []

    def test_failing_subscriber_does_not_block_others(self):
        store = SettingsStore()
        seen = []

        def broken(settings):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(seen.append)
        store.update(replace(store.get(), port=1))
        assert len(seen) == 1

    def test_reload(self, tmp_path):
        config_file = tmp_path / 'config.yaml'
        config_file.write_text(yaml.safe_dump(CONFIG))
        store = SettingsStore.from_file(str(config_file))
        assert store.get().port == 9000
        assert store.reload() is False

        changed = dict(CONFIG, server={'host': '0.0.0.0', 'port': 9001})
        config_file.write_text(yaml.safe_dump(changed))
        assert store.reload() is True
        assert store.get().port == 9001

    def test_reload_without_file(self):
        with pytest.raises(RuntimeError):
            SettingsStore().reload()

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / 'missing.yaml'))

    def test_empty_config_file(self, tmp_path):
        config_file = tmp_path / 'config.yaml'
        config_file.write_text('')
        assert load_config(str(config_file)) == {}
