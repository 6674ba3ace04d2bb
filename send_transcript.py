#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "requests>=2.31.0",
# ]
# ///
"""
Test script for the transcript webhook

Sends a transcript to meetingsyncd. The file is either a full JSON payload
(as Amie would send it) or plain transcript text, in which case --event-id
is required and the payload is built around it.

Usage:
    uv run send_transcript.py <payload.json>
    uv run send_transcript.py --event-id abc123 --title "Weekly 1-1" <transcript.txt>
    uv run send_transcript.py -h myhost:1234 --api-key SECRET <payload.json>

The API key defaults to the MEETINGSYNC_API_KEY environment variable.
"""

import argparse
import json
import os
import sys

import requests


def build_payload(filepath, event_id=None, title=None, start=None, end=None):
    """Load a JSON payload file, or wrap a plain transcript file into one."""
    with open(filepath, 'r', encoding='utf-8') as f:
        content = f.read()

    if filepath.endswith('.json'):
        return json.loads(content)

    if not event_id:
        raise ValueError("--event-id is required when sending a plain transcript")

    metadata = {
        'providerCalendarEventId': event_id,
        'title': title or os.path.splitext(os.path.basename(filepath))[0],
    }
    if start:
        metadata['startAt'] = start
    if end:
        metadata['endAt'] = end
    return {'transcript': content, 'metadata': metadata}


def send_to_webhook(payload, webhook_url, api_key, message_id=None):
    """Send a transcript payload to the webhook daemon."""
    headers = {'Authorization': f'Bearer {api_key}'}
    if message_id:
        headers['Upstash-Message-Id'] = message_id

    print(f"Sending to webhook: {webhook_url}")
    print(f"Event: {payload.get('metadata', {}).get('providerCalendarEventId')}")
    print(f"Transcript size: {len(payload.get('transcript', ''))} bytes")
    print()

    try:
        response = requests.post(webhook_url, json=payload, headers=headers, timeout=60)

        print(f"Response status: {response.status_code}")
        print(f"Response body:")
        print(json.dumps(response.json(), indent=2))

        return response.status_code == 200

    except requests.exceptions.ConnectionError:
        print("Error: Could not connect to webhook daemon.")
        print("Make sure it's running: uv run meetingsyncd.py")
        return False
    except (requests.exceptions.RequestException, ValueError) as e:
        print(f"Error sending request: {e}")
        return False


def main():
    parser = argparse.ArgumentParser(
        description="Send a transcript to meetingsyncd.",
        add_help=False  # Disable default -h so we can use it for host
    )
    parser.add_argument(
        '-h', '--host',
        metavar='HOST:PORT',
        default='localhost:9876',
        help='Host and port to send to (default: localhost:9876)'
    )
    parser.add_argument(
        '--help',
        action='help',
        help='Show this help message and exit'
    )
    parser.add_argument('--api-key', default=os.getenv('MEETINGSYNC_API_KEY'),
                        help='Webhook API key (default: $MEETINGSYNC_API_KEY)')
    parser.add_argument('--event-id', help='Calendar event id (plain transcripts only)')
    parser.add_argument('--title', help='Meeting title (plain transcripts only)')
    parser.add_argument('--start', help='Meeting start, ISO 8601 (plain transcripts only)')
    parser.add_argument('--end', help='Meeting end, ISO 8601 (plain transcripts only)')
    parser.add_argument('--message-id', help='Upstash-Message-Id header, to test deduplication')
    parser.add_argument(
        'transcript_file',
        help='Path to a JSON payload or a transcript text file'
    )

    args = parser.parse_args()

    if not args.api_key:
        print("Error: no API key (use --api-key or set MEETINGSYNC_API_KEY)")
        sys.exit(1)

    if not os.path.exists(args.transcript_file):
        print(f"Error: File not found: {args.transcript_file}")
        sys.exit(1)

    try:
        payload = build_payload(args.transcript_file, args.event_id, args.title, args.start, args.end)
    except (OSError, ValueError) as e:
        print(f"Error reading {args.transcript_file}: {e}")
        sys.exit(1)

    webhook_url = f"http://{args.host}/webhook/transcript"
    success = send_to_webhook(payload, webhook_url, args.api_key, args.message_id)
    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
