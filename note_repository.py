"""
Note Repository

Filesystem-backed document store for the vault, plus the repository that
addresses meeting notes by the series id embedded in their filename
("<title> ~<seriesId>.md").

All find-or-create-or-update work for one series id runs inside a per-id
asyncio lock, so the daily scan, enrichment workers and the transcript
webhook can never create two notes for the same meeting.
"""

import asyncio
import contextlib
import logging
import os
import posixpath
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from meeting_routing import SERIES_ID_DELIMITER

logger = logging.getLogger(__name__)

NOTE_SUFFIX = '.md'


class StoreError(Exception):
    """A document store operation failed."""


class AlreadyExistsError(StoreError):
    pass


class NotFoundError(StoreError):
    pass


class VaultStore:
    """Markdown files under a vault directory, addressed by vault-relative POSIX paths."""

    def __init__(self, vault_dir: str):
        self.root = Path(vault_dir)

    def _abs(self, path: str) -> Path:
        rel = posixpath.normpath(path).lstrip('/')
        if rel == '..' or rel.startswith('../'):
            raise StoreError(f"Path escapes the vault: {path}")
        return self.root / rel

    def list_all(self) -> list[str]:
        """Vault-relative paths of every note (hidden folders like .obsidian are skipped)."""
        if not self.root.exists():
            return []
        paths = []
        try:
            for dirpath, dirnames, filenames in os.walk(self.root):
                dirnames[:] = sorted(d for d in dirnames if not d.startswith('.'))
                for name in sorted(filenames):
                    if name.endswith(NOTE_SUFFIX):
                        full = Path(dirpath) / name
                        paths.append(full.relative_to(self.root).as_posix())
        except OSError as e:
            raise StoreError(f"Failed to list vault {self.root}: {e}") from e
        return paths

    def exists(self, path: str) -> bool:
        return self._abs(path).is_file()

    def read(self, path: str) -> str:
        try:
            return self._abs(path).read_text(encoding='utf-8')
        except FileNotFoundError as e:
            raise NotFoundError(f"Note not found: {path}") from e
        except OSError as e:
            raise StoreError(f"Failed to read {path}: {e}") from e

    def create(self, path: str, text: str) -> None:
        target = self._abs(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, 'x', encoding='utf-8') as f:
                f.write(text)
        except FileExistsError as e:
            raise AlreadyExistsError(f"Note already exists: {path}") from e
        except OSError as e:
            raise StoreError(f"Failed to create {path}: {e}") from e

    def modify(self, path: str, text: str) -> None:
        target = self._abs(path)
        if not target.is_file():
            raise NotFoundError(f"Note not found: {path}")
        try:
            # Write to a temp file and rename, so readers never see a partial note
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix='.', suffix='.tmp')
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
            os.replace(tmp, target)
        except OSError as e:
            raise StoreError(f"Failed to write {path}: {e}") from e

    def create_folder(self, path: str) -> None:
        try:
            self._abs(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create folder {path}: {e}") from e


def series_id_from_path(path: str) -> str | None:
    """Extract the id after the last '~' in a note filename, or None."""
    name = posixpath.basename(path)
    if not name.endswith(NOTE_SUFFIX):
        return None
    stem = name[:-len(NOTE_SUFFIX)]
    idx = stem.rfind(SERIES_ID_DELIMITER)
    if idx < 0:
        return None
    series_id = stem[idx + 1:].strip()
    return series_id or None


@dataclass
class _SeriesLock:
    lock: asyncio.Lock
    users: int = 0


class NoteRepository:
    """Finds and upserts meeting notes by series id."""

    def __init__(self, store: VaultStore):
        self.store = store
        self._index: dict[str, str] | None = None
        self._index_lock = threading.Lock()
        self._locks: dict[str, _SeriesLock] = {}

    def rebuild_index(self) -> dict[str, str]:
        index = {}
        for path in self.store.list_all():
            series_id = series_id_from_path(path)
            if series_id is None:
                continue
            if series_id in index:
                logger.warning(f"Duplicate notes for id {series_id}: {index[series_id]}, {path}")
                continue
            index[series_id] = path
        with self._index_lock:
            self._index = index
        logger.debug(f"Indexed {len(index)} meeting notes")
        return index

    def find(self, series_id: str) -> str | None:
        """Path of the note for series_id, rescanning the vault on a miss or stale entry."""
        with self._index_lock:
            index = self._index
        if index is not None:
            path = index.get(series_id)
            if path is not None and self.store.exists(path):
                return path
        return self.rebuild_index().get(series_id)

    def remember(self, series_id: str, path: str) -> None:
        with self._index_lock:
            if self._index is not None:
                self._index[series_id] = path

    @contextlib.asynccontextmanager
    async def lock(self, series_id: str):
        """The critical section guarding one series id.

        The lock is dropped once nobody holds or waits for it.
        """
        entry = self._locks.get(series_id)
        if entry is None:
            entry = self._locks[series_id] = _SeriesLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[series_id]

    async def _write(self, path: str, existing: str, render: Callable[[str | None], str]) -> str:
        text = render(existing)
        if text == existing:
            return 'unchanged'
        await asyncio.to_thread(self.store.modify, path, text)
        return 'updated'

    async def upsert(self, series_id: str, path_factory: Callable[[], str],
                     render: Callable[[str | None], str]) -> tuple[str, str]:
        """Find-or-create-or-update the note for series_id.

        render(None) produces a new note; render(text) produces the updated text.
        Returns (path, action) where action is 'created', 'updated' or 'unchanged'.
        """
        async with self.lock(series_id):
            path = await asyncio.to_thread(self.find, series_id)
            if path is None:
                path = path_factory()
                try:
                    await asyncio.to_thread(self.store.create, path, render(None))
                except AlreadyExistsError:
                    # Written behind our back since the index scan
                    logger.info(f"Note appeared while creating, merging instead: {path}")
                    existing = await asyncio.to_thread(self.store.read, path)
                    action = await self._write(path, existing, render)
                    self.remember(series_id, path)
                    return path, action
                self.remember(series_id, path)
                logger.info(f"Created note: {path}")
                return path, 'created'

            existing = await asyncio.to_thread(self.store.read, path)
            action = await self._write(path, existing, render)
            if action == 'updated':
                logger.info(f"Updated note: {path}")
            return path, action

    async def update(self, series_id: str, render: Callable[[str], str]) -> tuple[str | None, str]:
        """Update an existing note only; returns (None, 'missing') when there is none."""
        async with self.lock(series_id):
            path = await asyncio.to_thread(self.find, series_id)
            if path is None:
                return None, 'missing'
            existing = await asyncio.to_thread(self.store.read, path)
            return path, await self._write(path, existing, render)
