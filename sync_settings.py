"""
Settings

Loads config.yaml into an immutable Settings snapshot. SettingsStore holds the
current snapshot and notifies subscribers when a reload changes it.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import yaml

from attendee_filter import AttendeeRules, DEFAULT_ROOM_NAME_PATTERN, RESOURCE_CALENDAR_DOMAIN
from meeting_routing import RoutingRule, default_rules, rules_from_config

logger = logging.getLogger(__name__)

CONFIG_FILE = os.getenv('MEETINGSYNC_CONFIG', 'config.yaml')

DEFAULT_FILTER_PROMPT = """Decide whether this meeting needs a preparation briefing.
Answer YES for meetings with external people, customers, partners or candidates where context would help.
Answer NO for routine internal meetings.

Title: {title}
Attendees: {attendees}
Description: {description}

Answer with exactly one word: YES or NO."""

DEFAULT_BRIEFING_PROMPT = """Write a one-paragraph briefing for the meeting below.
Say who the external attendees are, what the meeting is most likely about and what to prepare.
Only use facts you can support; if something is unknown, say so.

Title: {title}
Time: {time}
Attendees: {attendees}
Description: {description}"""


def load_config(config_file: str = CONFIG_FILE) -> dict:
    """Load configuration from YAML file."""
    config_path = Path(config_file)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_file}")
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    with open(config_path, 'r') as f:
        return yaml.safe_load(f) or {}


def _get_nested(config: dict, keys: list[str], default=None):
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def _str_tuple(value) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class Settings:
    host: str = '127.0.0.1'
    port: int = 9876

    vault_dir: str = '.'
    meetings_folder: str = 'Meetings'
    people_folder: str = 'People'
    calendar_path: str = 'calendar.org'

    attendee_rules: AttendeeRules = field(default_factory=AttendeeRules)
    your_domain: str = ''

    exclude_titles: tuple[str, ...] = ()
    max_listed_participants: int = 10
    routing_rules: tuple[RoutingRule, ...] = field(default_factory=lambda: tuple(default_rules('Meetings')))

    copilot_path: str = 'copilot'
    filter_model: str = 'claude-haiku-4.5'
    briefing_model: str = 'claude-sonnet-4.5'
    parallel_briefings: int = 3
    api_delay_ms: int = 500
    call_timeout_seconds: float = 120
    task_timeout_seconds: float = 300
    filter_prompt: str = DEFAULT_FILTER_PROMPT
    briefing_prompt: str = DEFAULT_BRIEFING_PROMPT

    webhook_api_key: str = ''

    @classmethod
    def from_config(cls, config: dict) -> 'Settings':
        """Build a snapshot from a parsed config.yaml; missing keys take defaults."""
        config = config or {}
        meetings_folder = str(_get_nested(config, ['vault', 'meetings_folder'], cls.meetings_folder)).strip('/')

        raw_rules = _get_nested(config, ['meetings', 'routing_rules'])
        if raw_rules is None:
            routing_rules = default_rules(meetings_folder)
        else:
            routing_rules = rules_from_config(raw_rules, meetings_folder)

        attendee_rules = AttendeeRules(
            exclude_emails=_str_tuple(_get_nested(config, ['attendees', 'exclude_emails'])),
            exclude_names=_str_tuple(_get_nested(config, ['attendees', 'exclude_names'])),
            resource_domains=_str_tuple(_get_nested(
                config, ['attendees', 'resource_domains'], [RESOURCE_CALENDAR_DOMAIN])),
            room_name_pattern=_get_nested(
                config, ['attendees', 'room_name_pattern'], DEFAULT_ROOM_NAME_PATTERN),
        )

        return cls(
            host=_get_nested(config, ['server', 'host'], cls.host),
            port=int(_get_nested(config, ['server', 'port'], cls.port)),
            vault_dir=os.path.expanduser(str(_get_nested(config, ['vault', 'dir'], cls.vault_dir))),
            meetings_folder=meetings_folder,
            people_folder=str(_get_nested(config, ['vault', 'people_folder'], cls.people_folder)).strip('/'),
            calendar_path=os.path.expanduser(str(_get_nested(config, ['calendar', 'path'], cls.calendar_path))),
            attendee_rules=attendee_rules,
            your_domain=str(_get_nested(config, ['attendees', 'your_domain'], '') or '').lower().lstrip('@'),
            exclude_titles=_str_tuple(_get_nested(config, ['meetings', 'exclude_titles'])),
            max_listed_participants=max(0, int(_get_nested(
                config, ['meetings', 'max_listed_participants'], cls.max_listed_participants))),
            routing_rules=tuple(routing_rules),
            copilot_path=_get_nested(config, ['enrichment', 'copilot_path'], cls.copilot_path),
            filter_model=_get_nested(config, ['enrichment', 'filter_model'], cls.filter_model),
            briefing_model=_get_nested(config, ['enrichment', 'briefing_model'], cls.briefing_model),
            parallel_briefings=max(1, int(_get_nested(
                config, ['enrichment', 'parallel_briefings'], cls.parallel_briefings))),
            api_delay_ms=max(0, int(_get_nested(config, ['enrichment', 'api_delay_ms'], cls.api_delay_ms))),
            call_timeout_seconds=float(_get_nested(
                config, ['enrichment', 'call_timeout_seconds'], cls.call_timeout_seconds)),
            task_timeout_seconds=float(_get_nested(
                config, ['enrichment', 'task_timeout_seconds'], cls.task_timeout_seconds)),
            filter_prompt=_get_nested(config, ['enrichment', 'prompts', 'filter'], cls.filter_prompt),
            briefing_prompt=_get_nested(config, ['enrichment', 'prompts', 'briefing'], cls.briefing_prompt),
            webhook_api_key=str(_get_nested(config, ['webhook', 'api_key'], '') or ''),
        )


class SettingsStore:
    """Current Settings snapshot plus change notification."""

    def __init__(self, settings: Settings | None = None, config_file: str | None = None):
        self.config_file = config_file
        self._settings = settings or Settings()
        self._subscribers: list[Callable[[Settings], None]] = []

    @classmethod
    def from_file(cls, config_file: str = CONFIG_FILE) -> 'SettingsStore':
        return cls(Settings.from_config(load_config(config_file)), config_file=config_file)

    def get(self) -> Settings:
        return self._settings

    def subscribe(self, callback: Callable[[Settings], None]) -> Callable[[], None]:
        """Register callback(settings) for changes; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def update(self, settings: Settings) -> bool:
        """Swap in a new snapshot; subscribers are only told when it differs."""
        if settings == self._settings:
            return False
        self._settings = settings
        for callback in list(self._subscribers):
            try:
                callback(settings)
            except Exception as e:
                logger.error(f"Settings subscriber failed: {e}", exc_info=True)
        return True

    def reload(self) -> bool:
        """Re-read the config file; returns True if settings changed."""
        if not self.config_file:
            raise RuntimeError("SettingsStore has no config file to reload")
        changed = self.update(Settings.from_config(load_config(self.config_file)))
        logger.info(f"Reloaded {self.config_file} ({'changed' if changed else 'no changes'})")
        return changed
