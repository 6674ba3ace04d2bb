"""
Frontmatter Merge

Minimal, hand-written frontmatter handling for meeting and People notes.
Only the subset we write is understood:

    ---
    date: 2026-01-26
    title: "Weekly 1-1 with Alex"
    attendees:
      - "[[People/Alex Kim|Alex Kim]]"
    ---

The block is kept as an ordered list of entries, each holding its raw lines.
Entries we don't touch are re-emitted verbatim, so user-added fields,
comments and nested values survive every merge. Known fields are written in
a fixed canonical order; everything else follows in its original order.

merge_note() is idempotent: the same merge applied twice yields identical text.
"""

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DELIMITER = '---'

MEETING_FIELD_ORDER = (
    'date', 'event_id', 'recurring_event_id', 'title', 'start', 'end',
    'meet_url', 'recording_id', 'recording_link', 'short_summary', 'attendees',
)

PERSON_FIELD_ORDER = (
    'Title', 'Organization', 'Location', 'Phone', 'Email', 'researched', 'tags', 'created',
)

# Raw values that count as an unset field
BLANK_VALUES = frozenset({'', '""', "''", '[]'})

# Always written quoted, whatever their content
ALWAYS_QUOTED = frozenset({'title', 'short_summary'})

KEY_LINE = re.compile(r'^([^\s#:\-][^:]*?):(?: (.*))?$')
ITEM_LINE = re.compile(r'^\s+-(?: (.*))?$')

# A leading character YAML would read as syntax
_INDICATORS = set('[]{}>|*&!%@,`\'"#?')


class MalformedFrontmatter(ValueError):
    """Opening delimiter without a closing one."""


# ============================================================================
# Scalar quoting
# ============================================================================

def _needs_quotes(value: str) -> bool:
    if value != value.strip():
        return True
    if any(c in value for c in ('"', '\\', '\n', '\r', '\t')):
        return True
    if ': ' in value or ' #' in value or value.endswith(':'):
        return True
    if value == '-' or value.startswith('- '):
        return True
    return bool(value) and value[0] in _INDICATORS


def quote(value: str) -> str:
    escaped = (value.replace('\\', '\\\\')
                    .replace('"', '\\"')
                    .replace('\n', '\\n')
                    .replace('\r', '\\r')
                    .replace('\t', '\\t'))
    return f'"{escaped}"'


def _unescape(inner: str) -> str:
    out = []
    escapes = {'n': '\n', 'r': '\r', 't': '\t', '"': '"', '\\': '\\'}
    i = 0
    while i < len(inner):
        c = inner[i]
        if c == '\\' and i + 1 < len(inner):
            nxt = inner[i + 1]
            out.append(escapes.get(nxt, '\\' + nxt))
            i += 2
            continue
        out.append(c)
        i += 1
    return ''.join(out)


def format_value(value, always_quote: bool = False) -> str:
    """Render a scalar for a frontmatter line (quoted only when needed)."""
    text = '' if value is None else str(value)
    if always_quote or _needs_quotes(text):
        return quote(text)
    return text


def parse_value(raw: str) -> str:
    """Inverse of format_value()."""
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        return _unescape(raw[1:-1])
    if len(raw) >= 2 and raw[0] == raw[-1] == "'":
        return raw[1:-1].replace("''", "'")
    return raw


# ============================================================================
# Metadata block model
# ============================================================================

@dataclass
class Entry:
    key: str | None  # None for lines that aren't a field (comments, blanks, stray text)
    lines: list[str] = field(default_factory=list)

    @property
    def raw_value(self) -> str:
        match = KEY_LINE.match(self.lines[0])
        return (match.group(2) or '').strip() if match else ''

    @property
    def items(self) -> list[str]:
        items = []
        for line in self.lines[1:]:
            match = ITEM_LINE.match(line)
            if match:
                items.append(parse_value(match.group(1) or ''))
        return items

    @property
    def is_blank(self) -> bool:
        return self.raw_value in BLANK_VALUES and not self.items


class MetadataBlock:
    """Ordered frontmatter entries with typed accessors."""

    def __init__(self, entries: list[Entry] | None = None):
        self.entries = entries or []

    @classmethod
    def parse(cls, lines: list[str]) -> 'MetadataBlock':
        entries = []
        seen = set()
        current = None
        for line in lines:
            key_match = KEY_LINE.match(line)
            if key_match:
                key = key_match.group(1).strip()
                if key in seen:
                    # Duplicate key: keep the line verbatim, never address it
                    current = Entry(None, [line])
                else:
                    seen.add(key)
                    current = Entry(key, [line])
                entries.append(current)
            elif line[:1].isspace() and line.strip() and current is not None:
                # List item or nested value belonging to the previous field
                current.lines.append(line)
            else:
                current = None
                entries.append(Entry(None, [line]))
        return cls(entries)

    def _find(self, key: str) -> Entry | None:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def keys(self) -> list[str]:
        return [e.key for e in self.entries if e.key is not None]

    def __contains__(self, key: str) -> bool:
        return self._find(key) is not None

    def get(self, key: str) -> str | None:
        entry = self._find(key)
        if entry is None:
            return None
        return parse_value(entry.raw_value)

    def get_list(self, key: str) -> list[str] | None:
        entry = self._find(key)
        if entry is None:
            return None
        return entry.items

    def _put(self, key: str, lines: list[str]) -> None:
        entry = self._find(key)
        if entry is None:
            self.entries.append(Entry(key, lines))
        else:
            entry.lines = lines

    def set(self, key: str, value) -> None:
        """Overwrite (or add) a scalar field."""
        rendered = format_value(value, always_quote=key in ALWAYS_QUOTED)
        self._put(key, [f"{key}: {rendered}" if rendered else f"{key}:"])

    def set_default(self, key: str, value) -> bool:
        """Set a scalar only if the field is absent or blank."""
        entry = self._find(key)
        if entry is not None and not entry.is_blank:
            return False
        self.set(key, value)
        return True

    def set_list_if_empty(self, key: str, items: list[str]) -> bool:
        """Set a list field only if it is absent or has no values."""
        entry = self._find(key)
        if entry is not None and not entry.is_blank:
            return False
        lines = [f"{key}:"]
        lines.extend(f"  - {format_value(item)}" for item in items)
        self._put(key, lines)
        return True

    def render(self, order: tuple[str, ...] = MEETING_FIELD_ORDER) -> list[str]:
        lines = []
        for key in order:
            entry = self._find(key)
            if entry is not None:
                lines.extend(entry.lines)
        for entry in self.entries:
            if entry.key is None or entry.key not in order:
                lines.extend(entry.lines)
        return lines


# ============================================================================
# Note text helpers
# ============================================================================

def _newline(text: str) -> str:
    """The note's line ending; CRLF notes are edited as LF and converted back."""
    return '\r\n' if '\r\n' in text else '\n'


def _restore_newlines(text: str, newline: str) -> str:
    return text if newline == '\n' else text.replace('\n', newline)

def _block_bounds(lines: list[str]) -> int | None:
    """Index of the closing delimiter, or None when there is no frontmatter."""
    if not lines or lines[0].rstrip() != DELIMITER:
        return None
    for i in range(1, len(lines)):
        if lines[i].rstrip() == DELIMITER:
            return i
    raise MalformedFrontmatter("frontmatter has no closing delimiter")


def split_note(text: str) -> tuple[list[str] | None, str]:
    """Split note text into (frontmatter lines, body).

    A body following frontmatter comes back with LF line endings.
    Raises MalformedFrontmatter if the block is opened but never closed.
    """
    lines = text.replace('\r\n', '\n').split('\n')
    end = _block_bounds(lines)
    if end is None:
        return None, text
    return lines[1:end], '\n'.join(lines[end + 1:])


def read_frontmatter(text: str) -> MetadataBlock | None:
    """Parse the frontmatter of a note, or None if it has none (or is malformed)."""
    try:
        block_lines, _ = split_note(text)
    except MalformedFrontmatter:
        return None
    if block_lines is None:
        return None
    return MetadataBlock.parse(block_lines)


def _apply(block: MetadataBlock, fields: dict | None, array_fields: dict | None,
           defaults: dict | None) -> None:
    for key, value in (fields or {}).items():
        if value is not None:
            block.set(key, value)
    for key, value in (defaults or {}).items():
        if value is not None:
            block.set_default(key, value)
    for key, items in (array_fields or {}).items():
        if items is not None:
            block.set_list_if_empty(key, list(items))


def _join(block_lines: list[str]) -> str:
    return '\n'.join([DELIMITER, *block_lines, DELIMITER])


def merge_note(existing: str | None, fields: dict | None, array_fields: dict | None = None, *,
               defaults: dict | None = None, body: str = '',
               order: tuple[str, ...] = MEETING_FIELD_ORDER) -> str:
    """Merge new metadata into a note's frontmatter and return the new text.

    - fields: scalars that overwrite unconditionally (added if absent)
    - defaults: scalars written only if absent or blank
    - array_fields: lists written only if absent or empty, never replacing a populated list
    - body: used only when creating a note (existing is None)

    A note whose frontmatter can't be located safely is returned unchanged.
    CRLF notes keep their line endings.
    """
    if existing is None:
        block = MetadataBlock()
        _apply(block, fields, array_fields, defaults)
        return _join(block.render(order)) + '\n' + body

    newline = _newline(existing)
    lines = existing.replace('\r\n', '\n').split('\n')
    try:
        end = _block_bounds(lines)
    except MalformedFrontmatter:
        logger.warning("Skipping merge: frontmatter has no closing delimiter")
        return existing

    if end is None:
        block = MetadataBlock()
        _apply(block, fields, array_fields, defaults)
        return _restore_newlines(_join(block.render(order)) + '\n' + '\n'.join(lines), newline)

    block = MetadataBlock.parse(lines[1:end])
    _apply(block, fields, array_fields, defaults)
    text = '\n'.join([DELIMITER, *block.render(order), DELIMITER, *lines[end + 1:]])
    return _restore_newlines(text, newline)


def _escape_headings(content: str) -> list[str]:
    """Content lines, with '## ' lines escaped so they can't end the section early."""
    return ['\\' + line if line.startswith('## ') else line
            for line in content.strip('\n').split('\n')]


def upsert_section(text: str, heading: str, content: str) -> str:
    """Replace the body section under `heading` (e.g. '## Transcript'), or append it.

    A section runs until the next '## ' heading, so '## ' lines inside
    content are written as '\\## ' (plain text in Markdown).
    Frontmatter is left alone; notes with malformed frontmatter are
    returned unchanged.
    """
    newline = _newline(text)
    lines = text.replace('\r\n', '\n').split('\n')
    try:
        end = _block_bounds(lines)
    except MalformedFrontmatter:
        logger.warning(f"Skipping section update '{heading}': malformed frontmatter")
        return text

    head = lines[:end + 1] if end is not None else []
    body = lines[end + 1:] if end is not None else lines
    section = [heading, '', *_escape_headings(content.replace('\r\n', '\n'))]

    start = next((i for i, line in enumerate(body) if line.rstrip() == heading), None)
    if start is None:
        body_text = '\n'.join(body).rstrip()
        new_body = (body_text + '\n\n' if body_text else '') + '\n'.join(section) + '\n'
    else:
        stop = next((i for i in range(start + 1, len(body)) if body[i].startswith('## ')), len(body))
        before, after = body[:start], body[stop:]
        new_body = '\n'.join(before + section)
        new_body += '\n\n' + '\n'.join(after) if after else '\n'

    if head:
        new_body = '\n'.join(head) + '\n' + new_body
    return _restore_newlines(new_body, newline)
