#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "fastapi>=0.115.0",
#     "uvicorn>=0.34.0",
#     "pydantic>=2.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Meeting Sync Daemon (meetingsyncd)

Keeps one Markdown note per meeting in an Obsidian-style vault. A daily scan
of calendar.org creates the notes and queues LLM briefings; transcript
webhooks (Amie via QStash) are merged into the same notes later.
Configuration is loaded from config.yaml (override with MEETINGSYNC_CONFIG).

Run with: uv run meetingsyncd.py
One-off scan: uv run meetingsyncd.py --scan-once [YYYY-MM-DD]

Endpoints:
  GET  /status              - Health check, queue depth, recent notifications
  POST /webhook/transcript  - Receive a meeting transcript (Bearer token or ?api_key=)
  POST /calendar            - Update calendar.org
  POST /scan                - Scan a day: {"date": "2026-01-26"} (default: today)
  POST /config/reload       - Re-read config.yaml

Test transcript webhook:
curl -X POST http://localhost:9876/webhook/transcript \
  -H "Authorization: Bearer $API_KEY" \
  -H "Content-Type: application/json" \
  -d '{"transcript": "Hello.", "metadata": {"providerCalendarEventId": "abc123", "title": "Test"}}'

Test calendar upload (plain text):
curl -X POST http://localhost:9876/calendar \
  -H "Content-Type: text/plain" \
  --data-binary @calendar.org
"""

import argparse
import asyncio
import hmac
import json
import logging
import os
import tempfile
import time
from collections import deque
from dataclasses import asdict
from datetime import date, datetime
from pathlib import Path

import yaml
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from batch_dispatch import EnrichmentQueue
from calendar_org import OrgCalendar
from copilot_enrich import CopilotEnricher
from meeting_notes import MeetingNotes, TranscriptPayload, describe_task
from note_repository import NoteRepository, StoreError, VaultStore
from sync_settings import CONFIG_FILE, Settings, SettingsStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MAX_CALENDAR_SIZE = 1024 * 1024  # 1 MB
MAX_TRANSCRIPT_SIZE = 256 * 1024  # 256 KB
MESSAGE_ID_TTL_SECONDS = 24 * 3600
MAX_NOTIFICATIONS = 20

app = FastAPI(title="meetingsyncd", version="0.1.0")

# ---------------------------------------------------------------------------
# State (built on startup, or injected by tests)
# ---------------------------------------------------------------------------

settings_store: SettingsStore | None = None
repository: NoteRepository | None = None
calendar: OrgCalendar | None = None
enricher: CopilotEnricher | None = None
service: MeetingNotes | None = None
enrichment_queue: EnrichmentQueue | None = None

# Most recent store failures, newest first
notifications: deque = deque(maxlen=MAX_NOTIFICATIONS)
# Upstash-Message-Id -> time processed
_seen_messages: dict[str, float] = {}
_last_scan: dict | None = None


def _notify(message: str) -> None:
    notifications.appendleft({'time': datetime.now().isoformat(timespec='seconds'), 'message': message})


def _apply_settings(settings: Settings) -> None:
    """Push a reloaded snapshot into the collaborators that cache settings."""
    global repository
    calendar.calendar_path = settings.calendar_path
    enricher.copilot_path = settings.copilot_path
    enricher.timeout = settings.call_timeout_seconds
    if Path(settings.vault_dir) != repository.store.root:
        logger.info(f"Vault moved to {settings.vault_dir}; rebuilding repository")
        repository = NoteRepository(VaultStore(settings.vault_dir))
        service.repository = repository


def build_components(store: SettingsStore) -> None:
    """Wire up the repository, calendar, enricher, service and queue from settings."""
    global settings_store, repository, calendar, enricher, service, enrichment_queue

    settings = store.get()
    settings_store = store
    repository = NoteRepository(VaultStore(settings.vault_dir))
    calendar = OrgCalendar(settings.calendar_path)
    enricher = CopilotEnricher(settings.copilot_path, timeout=settings.call_timeout_seconds)
    service = MeetingNotes(store, repository, calendar, enricher, notify=_notify)
    enrichment_queue = EnrichmentQueue(service.enrich_meeting, store, describe=describe_task)
    store.subscribe(_apply_settings)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'status': 'error', 'message': message})


def _provided_api_key(request: Request) -> str | None:
    auth = request.headers.get('authorization', '')
    if auth.startswith('Bearer '):
        return auth[len('Bearer '):].strip()
    return request.query_params.get('api_key')


def _prune_seen_messages(now: float) -> None:
    expired = [mid for mid, seen in _seen_messages.items() if now - seen > MESSAGE_ID_TTL_SECONDS]
    for mid in expired:
        del _seen_messages[mid]


def _write_atomically(path: str, content: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=target.parent, prefix='.calendar-', suffix='.tmp')
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(content)
    os.replace(tmp, target)


def _parse_day(value) -> date:
    if not value:
        return date.today()
    return date.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/status")
async def status():
    """Health check with queue and vault info."""
    settings = settings_store.get()
    return {
        'status': 'ok',
        'service': 'meetingsyncd',
        'vault_dir': settings.vault_dir,
        'calendar_path': settings.calendar_path,
        'enrichment_queue': {
            'running': enrichment_queue.running,
            'depth': enrichment_queue.depth,
            'last_report': asdict(enrichment_queue.last_report) if enrichment_queue.last_report else None,
        },
        'last_scan': _last_scan,
        'notifications': list(notifications),
        'endpoints': {
            'status': '/status',
            'transcript': '/webhook/transcript',
            'calendar': '/calendar',
            'scan': '/scan',
            'reload': '/config/reload',
        },
    }


@app.post("/webhook/transcript")
async def webhook_transcript(request: Request):
    """
    Receive a meeting transcript and merge it into the meeting's note.

    Expected payload (Amie):
    {
        "recordingId": "rec_1",
        "recordingLink": "https://...",
        "shortSummary": "...",
        "transcript": "Full transcript text...",
        "metadata": {
            "providerCalendarEventId": "abc123_20260126T090000Z",
            "startAt": "2026-01-26T09:00:00Z",
            "endAt": "2026-01-26T09:30:00Z",
            "title": "Weekly 1-1 with Alex",
            "guests": [{"email": "alex@example.com", "displayName": "Alex Kim"}]
        }
    }
    """
    settings = settings_store.get()
    if not settings.webhook_api_key:
        logger.error("Rejecting webhook: webhook.api_key is not configured")
        return _error(503, 'Webhook API key not configured')

    provided = _provided_api_key(request) or ''
    if not hmac.compare_digest(provided.encode(), settings.webhook_api_key.encode()):
        logger.warning("Unauthorized webhook request")
        return _error(401, 'Unauthorized')

    now = time.time()
    _prune_seen_messages(now)
    message_id = request.headers.get('upstash-message-id')
    if message_id and message_id in _seen_messages:
        logger.info(f"Duplicate message ignored: {message_id}")
        return {'status': 'duplicate', 'messageId': message_id}

    raw = await request.body()
    if len(raw) > MAX_TRANSCRIPT_SIZE:
        logger.warning(f"Transcript too large ({len(raw)} bytes)")
        return _error(413, f'Payload too large ({len(raw)} bytes). Maximum size is {MAX_TRANSCRIPT_SIZE} bytes.')

    try:
        data = json.loads(raw)
    except ValueError:
        return _error(400, 'Invalid JSON body')

    try:
        payload = TranscriptPayload.model_validate(data)
    except ValidationError as e:
        fields = ', '.join('.'.join(str(p) for p in err['loc']) for err in e.errors())
        logger.warning(f"Invalid transcript payload: {fields}")
        return _error(400, f'Missing or invalid fields: {fields}')

    if message_id:
        _seen_messages[message_id] = now

    logger.info(f"Processing transcript for event: {payload.metadata.provider_calendar_event_id}")
    try:
        result = await service.process_transcript(payload)
    except StoreError as e:
        # Let the sender retry
        _seen_messages.pop(message_id, None)
        return _error(500, f'Failed to write note: {e}')
    except Exception as e:
        _seen_messages.pop(message_id, None)
        logger.error(f"Error processing transcript: {e}", exc_info=True)
        return _error(500, f'Internal server error: {e}')

    return {
        'status': 'success',
        'messageId': message_id,
        'notePath': result.note_path,
        'action': result.action,
    }


@app.post("/calendar")
async def upload_calendar(request: Request):
    """
    Receive calendar data (org-mode format) and overwrite calendar.org.

    Expected payload:
    {
        "calendar": "* Meeting 1 <2026-01-20 Mon 10:00-11:00>\n..."
    }

    Or plain text with Content-Type: text/plain
    """
    content_type = request.headers.get('content-type', '')
    raw = await request.body()

    if 'application/json' in content_type:
        try:
            data = json.loads(raw)
        except ValueError:
            return _error(400, 'Invalid JSON body')
        if not isinstance(data, dict) or 'calendar' not in data:
            return _error(400, "Missing required field: 'calendar'")
        calendar_content = data['calendar']
        if not isinstance(calendar_content, str):
            return _error(400, "'calendar' must be a string")
    elif 'text/plain' in content_type:
        calendar_content = raw.decode('utf-8', errors='replace')
    else:
        return _error(400, 'Content-Type must be application/json or text/plain')

    if not calendar_content.strip():
        return _error(400, 'Calendar content cannot be empty')

    content_size = len(calendar_content.encode('utf-8'))
    if content_size > MAX_CALENDAR_SIZE:
        return _error(413, f'Calendar too large ({content_size} bytes). '
                           f'Maximum size is {MAX_CALENDAR_SIZE} bytes.')

    calendar_path = settings_store.get().calendar_path
    try:
        await asyncio.to_thread(_write_atomically, calendar_path, calendar_content)
    except OSError as e:
        logger.error(f"Failed to write calendar {calendar_path}: {e}", exc_info=True)
        return _error(500, f'Failed to write calendar: {e}')

    logger.info(f"Updated calendar: {calendar_path} ({content_size} bytes)")
    return {'status': 'success', 'message': 'Calendar updated', 'size': content_size}


@app.post("/scan")
async def scan(request: Request):
    """Scan one day's calendar, write notes and queue briefings."""
    global _last_scan

    raw = await request.body()
    try:
        data = json.loads(raw) if raw.strip() else {}
        day = _parse_day(data.get('date') if isinstance(data, dict) else None)
    except ValueError:
        return _error(400, "Expected JSON body like {\"date\": \"YYYY-MM-DD\"}")

    result = await service.scan_day(day)
    queued = await enrichment_queue.submit(result.tasks)

    _last_scan = {
        'date': day.isoformat(),
        'finished_at': datetime.now().isoformat(timespec='seconds'),
        'notes': len(result.notes),
        'tasks': queued,
    }
    return {
        'status': 'success',
        'date': day.isoformat(),
        'agenda': result.agenda,
        'notes': [{'path': path, 'action': action} for path, action in result.notes],
        'tasks': queued,
    }


@app.post("/config/reload")
async def reload_config():
    """Re-read config.yaml; components pick up the new settings."""
    try:
        changed = settings_store.reload()
    except (OSError, RuntimeError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Config reload failed: {e}")
        return _error(500, f'Config reload failed: {e}')
    return {'status': 'success', 'changed': changed}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


@app.on_event("startup")
async def startup():
    """Build components (unless already wired) and start the enrichment worker."""
    if service is None:
        build_components(settings_store or SettingsStore.from_file(CONFIG_FILE))

    settings = settings_store.get()
    if not settings.webhook_api_key:
        logger.warning("webhook.api_key is not set; transcript webhooks will be rejected")
    if not Path(settings.vault_dir).exists():
        logger.warning(f"Vault directory not found: {settings.vault_dir}")

    enrichment_queue.start()

    logger.info(f"meetingsyncd starting on {settings.host}:{settings.port}")
    logger.info(f"  Vault:     {settings.vault_dir}")
    logger.info(f"  Calendar:  {settings.calendar_path}")
    logger.info(f"  Briefings: {settings.parallel_briefings} parallel, {settings.api_delay_ms}ms between batches")


@app.on_event("shutdown")
async def shutdown():
    """Finish queued briefings before exiting."""
    if enrichment_queue is not None:
        await enrichment_queue.stop()


async def scan_once(day: date):
    """Run one scan and wait for its briefings (CLI mode)."""
    enrichment_queue.start()
    try:
        result = await service.scan_day(day)
        await enrichment_queue.submit(result.tasks)
        await enrichment_queue.drain()
    finally:
        await enrichment_queue.stop()
    return result


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Meeting Sync Daemon (meetingsyncd)')
    parser.add_argument('--config', default=CONFIG_FILE, help='Path to config.yaml')
    parser.add_argument('--scan-once', nargs='?', const='', metavar='DATE',
                        help='Scan one day (default: today), wait for briefings, print the agenda and exit')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    # Configure logging based on --debug flag
    logging.getLogger().setLevel(logging.DEBUG if args.debug else logging.INFO)

    build_components(SettingsStore.from_file(args.config))

    if args.scan_once is not None:
        try:
            scan_day = _parse_day(args.scan_once)
        except ValueError:
            parser.error(f"Invalid date: {args.scan_once} (expected YYYY-MM-DD)")
        scan_result = asyncio.run(scan_once(scan_day))
        print('\n'.join(scan_result.agenda))
        raise SystemExit(0)

    import uvicorn
    settings = settings_store.get()
    uvicorn.run(app, host=settings.host, port=settings.port)
