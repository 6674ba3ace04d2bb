"""
Meeting Notes

The two producers that write meeting notes, plus the enrichment worker:

- scan_day(): reads the day's calendar, creates or fills in one note per
  meeting, creates People notes for small meetings, builds the agenda and
  returns enrichment tasks for meetings with participants.
- process_transcript(): handles a transcript webhook; merges recording
  metadata into the meeting's note and upserts its "## Transcript" section.
- enrich_meeting(): dispatcher worker; asks the LLM whether a meeting needs
  a briefing and writes it into the note as a "## Briefing" section.

Both producers address a note by the same series id, so a meeting scanned
in the morning and transcribed in the afternoon lands on one note.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from attendee_filter import Attendee, display_name, filter_attendees, parse_attendee, wikilink
from calendar_org import Event, naive_local
from copilot_enrich import EnrichmentError
from frontmatter_merge import PERSON_FIELD_ORDER, merge_note, read_frontmatter, upsert_section
from meeting_routing import Route, note_path, resolve_route, sanitize_title
from note_repository import AlreadyExistsError, NoteRepository, StoreError
from series_identity import resolve_series_id, series_key

logger = logging.getLogger(__name__)

TRANSCRIPT_HEADING = '## Transcript'
BRIEFING_HEADING = '## Briefing'

FILTER_SYSTEM_PROMPT = "You are a filter."
BRIEFING_SYSTEM_PROMPT = (
    "You are a chief of staff preparing meeting briefings. "
    "Never invent facts; say what is unknown. Write with extreme density."
)

# Title words too generic to show a briefing is about this meeting
GENERIC_TITLE_WORDS = {'sync', 'call', 'meeting', 'catch', 'catchup', 'update'}


# ============================================================================
# Webhook payload
# ============================================================================

class Guest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = ''
    display_name: str | None = Field(default=None, alias='displayName')
    response_status: str | None = Field(default=None, alias='responseStatus')


class TranscriptMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_calendar_event_id: str = Field(alias='providerCalendarEventId', min_length=1)
    recurring_event_id: str | None = Field(default=None, alias='recurringEventId')
    start_at: str | None = Field(default=None, alias='startAt')
    end_at: str | None = Field(default=None, alias='endAt')
    title: str = ''
    description: str = ''
    guests: list[Guest] = []


class TranscriptPayload(BaseModel):
    """Transcript webhook body (Amie field names or snake_case)."""
    model_config = ConfigDict(populate_by_name=True)

    recording_id: str | None = Field(default=None, alias='recordingId')
    recording_link: str | None = Field(default=None, alias='recordingLink')
    title: str = ''
    short_summary: str | None = Field(default=None, alias='shortSummary')
    transcript: str = Field(min_length=1)
    metadata: TranscriptMetadata


# ============================================================================
# Results
# ============================================================================

@dataclass(frozen=True)
class EnrichmentTask:
    event: Event
    series_id: str
    note_path: str
    participants: tuple[Attendee, ...]
    note_title: str


@dataclass
class DailyScan:
    day: date
    agenda: list[str] = field(default_factory=list)
    tasks: list[EnrichmentTask] = field(default_factory=list)
    notes: list[tuple[str, str]] = field(default_factory=list)  # (path, action)


@dataclass(frozen=True)
class TranscriptResult:
    note_path: str
    action: str


def describe_task(task: EnrichmentTask) -> str:
    return f"'{task.note_title}' ({task.series_id})"


# ============================================================================
# Helpers
# ============================================================================

def parse_time(value: str | None) -> datetime | None:
    """Parse an ISO timestamp from a payload into naive local time."""
    if not value:
        return None
    try:
        return naive_local(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except ValueError:
        logger.warning(f"Unparseable timestamp: {value}")
        return None


def fill_prompt(template: str, **values: str) -> str:
    # Plain replacement; user prompts may contain other braces
    for key, value in values.items():
        template = template.replace('{' + key + '}', value)
    return template


def clean_briefing(response: str) -> str:
    text = response.strip().replace('```json', '').replace('```', '')
    return ' '.join(line.strip() for line in text.split('\n') if line.strip())


def is_grounded(briefing: str, title: str, external: list[Attendee]) -> bool:
    """True if the briefing mentions a meaningful title word or an external attendee."""
    text = (briefing or '').lower()
    if not text:
        return False

    t = (title or '').strip().lower()
    if len(t) >= 3:
        tokens = [tok for tok in t.replace('-', ' ').replace(':', ' ').replace('(', ' ')
                  .replace(')', ' ').replace('/', ' ').split()
                  if len(tok) >= 3 and tok not in GENERIC_TITLE_WORDS]
        if any(tok in text for tok in tokens):
            return True

    for attendee in external:
        name = display_name(attendee).strip().lower()
        if len(name) >= 3 and name in text:
            return True
    return False


def fallback_briefing(title: str, attendees_text: str) -> str:
    safe_title = (title or '(no title)').strip()
    if attendees_text:
        return (f'I couldn\'t identify what "{safe_title}" refers to from the available context. '
                f'External attendees: {attendees_text}.')
    return f'I couldn\'t identify what "{safe_title}" refers to from the available context.'


def _new_note_body(title: str, description: str) -> str:
    body = f"\n# {title}\n"
    if description.strip():
        body += f"\n**Description:**\n{description.strip()}\n"
    return body


def _note_link(path: str, title: str) -> str:
    target = path[:-3] if path.endswith('.md') else path
    return f"[[{target}|{sanitize_title(title)}]]"


class MeetingNotes:
    """Writes meeting and People notes for the scan and webhook paths."""

    def __init__(self, settings_store, repository: NoteRepository, calendar, enricher,
                 notify: Callable[[str], None] | None = None):
        self.settings_store = settings_store
        self.repository = repository
        self.calendar = calendar
        self.enricher = enricher
        self.notify = notify

    @property
    def settings(self):
        return self.settings_store.get()

    def _report(self, message: str) -> None:
        """Store failures are the only user-facing notifications."""
        logger.error(message)
        if self.notify:
            self.notify(message)

    def _route(self, event: Event) -> Route:
        settings = self.settings
        return resolve_route(event, list(settings.routing_rules), settings.meetings_folder,
                             settings.max_listed_participants)

    def _listed(self, participants: list[Attendee], route: Route) -> list[Attendee]:
        if 0 < len(participants) <= route.participant_cap:
            return participants
        return []

    # ------------------------------------------------------------------------
    # Scan path
    # ------------------------------------------------------------------------

    def should_include(self, event: Event) -> bool:
        settings = self.settings
        if event.start is None:
            return False
        title = (event.title or '').strip().lower()
        if any(t.lower() == title for t in settings.exclude_titles):
            return False
        # Meetings the user declined
        for attendee in event.attendees:
            email = (attendee.email or '').lower()
            if attendee.response_status == 'declined' and email and any(
                    s.lower() in email for s in settings.attendee_rules.exclude_emails if s):
                return False
        return True

    def _render_scan_note(self, existing: str | None, event: Event, series_id: str,
                          route: Route, listed: list[Attendee]) -> str:
        defaults = {
            'date': event.start.strftime('%Y-%m-%d'),
            'event_id': series_id,
            'recurring_event_id': event.series_id,
            'title': route.title,
            'start': event.start.isoformat(),
            'end': event.end.isoformat() if event.end else None,
            'meet_url': event.meet_url,
        }
        links = [wikilink(a, self.settings.people_folder) for a in listed]
        return merge_note(existing, None, {'attendees': links}, defaults=defaults,
                          body=_new_note_body(route.title, event.description))

    async def scan_day(self, day: date) -> DailyScan:
        """Create or fill in the notes for one day's meetings and collect enrichment tasks."""
        start = datetime.combine(day, time.min)
        events = await asyncio.to_thread(self.calendar.get_events, start, start + timedelta(days=1))
        events = sorted((e for e in events if self.should_include(e)), key=lambda e: e.start)
        logger.info(f"Scanning {day.isoformat()}: {len(events)} meeting(s)")

        settings = self.settings
        scan = DailyScan(day=day)
        known_people = None

        for event in events:
            series_id = series_key(event)
            route = self._route(event)
            participants = filter_attendees(list(event.attendees), settings.attendee_rules)
            listed = self._listed(participants, route)

            try:
                path, action = await self.repository.upsert(
                    series_id,
                    lambda: note_path(route, series_id),
                    lambda existing: self._render_scan_note(existing, event, series_id, route, listed),
                )
            except StoreError as e:
                self._report(f"Failed to write note for '{event.title}': {e}")
                continue
            scan.notes.append((path, action))

            line = f"- {event.start.strftime('%H:%M')} – {_note_link(path, route.title)}"
            if listed:
                if known_people is None:
                    known_people = await asyncio.to_thread(self._people_emails)
                await self._ensure_people_notes(listed, known_people)
                line += " with " + ", ".join(wikilink(a, settings.people_folder) for a in listed)
            scan.agenda.append(line)

            if participants:
                scan.tasks.append(EnrichmentTask(
                    event=event,
                    series_id=series_id,
                    note_path=path,
                    participants=tuple(participants),
                    note_title=route.title,
                ))

        return scan

    # ------------------------------------------------------------------------
    # People notes
    # ------------------------------------------------------------------------

    def _people_emails(self) -> set[str]:
        """Emails already recorded in People notes."""
        store = self.repository.store
        prefix = self.settings.people_folder.rstrip('/') + '/'
        emails = set()
        for path in store.list_all():
            if not path.startswith(prefix):
                continue
            try:
                block = read_frontmatter(store.read(path))
            except StoreError as e:
                logger.warning(f"Skipping unreadable People note {path}: {e}")
                continue
            email = block.get('Email') if block else None
            if email:
                emails.add(email.strip().lower())
        return emails

    def _ensure_person(self, attendee: Attendee, known_emails: set[str]) -> str:
        store = self.repository.store
        name = sanitize_title(display_name(attendee))
        path = f"{self.settings.people_folder}/{name}.md"
        email = (attendee.email or '').strip()

        if store.exists(path):
            content = store.read(path)
            if email and email not in content:
                updated = merge_note(content, None, defaults={'Email': email}, order=PERSON_FIELD_ORDER)
                if updated != content:
                    store.modify(path, updated)
                    known_emails.add(email.lower())
                    return 'updated'
            return 'unchanged'

        if email and email.lower() in known_emails:
            return 'unchanged'

        text = merge_note(
            None,
            {
                'Title': '',
                'Organization': '[[]]',
                'Location': '[[]]',
                'Phone': '',
                'Email': email,
                'researched': 'false',
                'created': datetime.now().strftime('%Y-%m-%d %H:%M'),
            },
            {'tags': ['#person']},
            order=PERSON_FIELD_ORDER,
        )
        try:
            store.create(path, text)
        except AlreadyExistsError:
            return 'unchanged'
        if email:
            known_emails.add(email.lower())
        logger.info(f"Created People note for {name}")
        return 'created'

    async def _ensure_people_notes(self, attendees: list[Attendee], known_emails: set[str]) -> None:
        for attendee in attendees:
            try:
                await asyncio.to_thread(self._ensure_person, attendee, known_emails)
            except StoreError as e:
                self._report(f"Failed to write People note for {display_name(attendee)}: {e}")

    # ------------------------------------------------------------------------
    # Webhook path
    # ------------------------------------------------------------------------

    def event_from_payload(self, payload: TranscriptPayload, series_id: str) -> Event:
        meta = payload.metadata
        event_id = meta.provider_calendar_event_id
        return Event(
            id=event_id,
            title=meta.title or payload.title,
            start=parse_time(meta.start_at),
            end=parse_time(meta.end_at),
            series_id=series_id if series_id != event_id else None,
            attendees=tuple(parse_attendee(g.model_dump()) for g in meta.guests),
            description=meta.description or '',
        )

    async def process_transcript(self, payload: TranscriptPayload) -> TranscriptResult:
        """Merge a transcript into the meeting's note, creating the note if needed.

        Store failures are reported and re-raised.
        """
        settings = self.settings
        meta = payload.metadata
        series_id = await asyncio.to_thread(
            resolve_series_id,
            meta.provider_calendar_event_id,
            parse_time(meta.start_at),
            self.calendar,
            meta.recurring_event_id,
        )
        event = self.event_from_payload(payload, series_id)
        route = self._route(event)
        guests = filter_attendees(list(event.attendees), settings.attendee_rules)
        links = [wikilink(a, settings.people_folder) for a in self._listed(guests, route)]

        fields = {
            'recording_id': payload.recording_id,
            'recording_link': payload.recording_link,
            'short_summary': payload.short_summary,
        }
        defaults = {
            'date': event.start.strftime('%Y-%m-%d') if event.start else None,
            'event_id': series_id,
            'recurring_event_id': event.series_id,
            'title': route.title,
            'start': meta.start_at,
            'end': meta.end_at,
            'meet_url': '',
        }

        def render(existing: str | None) -> str:
            text = merge_note(existing, fields, {'attendees': links}, defaults=defaults,
                              body=_new_note_body(route.title, event.description))
            return upsert_section(text, TRANSCRIPT_HEADING, payload.transcript)

        try:
            path, action = await self.repository.upsert(series_id, lambda: note_path(route, series_id), render)
        except StoreError as e:
            self._report(f"Failed to write transcript for '{event.title}': {e}")
            raise

        logger.info(f"Transcript for {meta.provider_calendar_event_id} → {path} ({action})")
        return TranscriptResult(note_path=path, action=action)

    # ------------------------------------------------------------------------
    # Enrichment worker
    # ------------------------------------------------------------------------

    def external_participants(self, participants) -> list[Attendee]:
        domain = self.settings.your_domain
        if not domain:
            return list(participants)
        return [p for p in participants
                if not (p.email or '').lower().endswith('@' + domain)]

    async def enrich_meeting(self, task: EnrichmentTask) -> str:
        """Filter, brief and write one meeting. Returns what happened."""
        settings = self.settings
        external = self.external_participants(task.participants)
        if not external:
            logger.info(f"Skipping briefing for {describe_task(task)}: no external participants")
            return 'skipped'

        event = task.event
        attendees_text = ', '.join(display_name(p) for p in external)
        description = event.description or ''
        options = {'timeout': settings.call_timeout_seconds}

        filter_prompt = fill_prompt(
            settings.filter_prompt,
            title=event.title or '',
            attendees=attendees_text,
            description=description[:500].replace('\n', ' '),
        )
        try:
            verdict = await self.enricher.call(FILTER_SYSTEM_PROMPT, filter_prompt,
                                               settings.filter_model, options)
        except EnrichmentError as e:
            logger.warning(f"Meeting filter failed for {describe_task(task)}: {e}")
            verdict = None
        logger.info(f"Filter response for {describe_task(task)}: {verdict}")
        if not verdict or 'YES' not in verdict:
            return 'skipped'

        briefing_prompt = fill_prompt(
            settings.briefing_prompt,
            title=event.title or '',
            time=event.start.strftime('%H:%M') if event.start else '',
            attendees=attendees_text,
            description=description,
        )
        response = await self.enricher.call(BRIEFING_SYSTEM_PROMPT, briefing_prompt,
                                            settings.briefing_model, options)
        briefing = clean_briefing(response or '')
        if not briefing:
            logger.warning(f"No briefing produced for {describe_task(task)}")
            return 'empty'
        if not is_grounded(briefing, event.title, external):
            logger.info(f"Briefing for {describe_task(task)} looks ungrounded; using fallback")
            briefing = fallback_briefing(event.title, attendees_text)

        try:
            path, action = await self.repository.update(
                task.series_id, lambda existing: upsert_section(existing, BRIEFING_HEADING, briefing))
        except StoreError as e:
            self._report(f"Failed to write briefing for '{task.note_title}': {e}")
            raise
        if path is None:
            logger.warning(f"Note for {describe_task(task)} disappeared before briefing was written")
        return action
