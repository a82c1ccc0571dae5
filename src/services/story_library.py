"""
Saved story library

Persists finished stories as one JSON list under a single key of a
key-value store. The store is the only I/O dependency; the library owns
the list format and reports failures to the error registry.
"""

import asyncio
import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from src.models import ErrorSeverity, ErrorType, SavedStory, Story
from src.services.errors import (
    AppError,
    ErrorHandler,
    ErrorRegistry,
    STAGE_STORAGE_LOAD,
    STAGE_STORAGE_SAVE,
    STAGE_STORY_LOAD,
)

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """get(key) -> str | None, set(key, value)"""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...


class InMemoryKeyValueStore:
    """Process-local store, used by tests and when no storage dir is configured"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value


def _sanitize_key(key: str) -> str:
    """Keys become file names; keep them to a safe character set."""
    return re.sub(r"[^A-Za-z0-9_.-]", "_", key)


class FileKeyValueStore:
    """One file per key under a directory"""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        # File I/O is synchronous; keep it off the event loop
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="kvstore")

    async def _run_sync(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args))

    def _path(self, key: str) -> Path:
        return self.directory / f"{_sanitize_key(key)}.json"

    def _read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _write(self, key: str, value: str):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(value, encoding="utf-8")
        tmp_path.replace(path)

    async def get(self, key: str) -> Optional[str]:
        return await self._run_sync(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await self._run_sync(self._write, key, value)

    def shutdown(self):
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None


def default_story_title(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"Story Created on {now.strftime('%m/%d/%Y')}"


class StoryLibrary:
    """
    Saved story list backed by a KeyValueStore.

    Failures are recorded in the registry under the storage stage keys and
    re-raised as AppError so the caller can decide what to show.
    """

    def __init__(self, store: KeyValueStore, registry: Optional[ErrorRegistry] = None,
                 key: str = "savedStories"):
        self.store = store
        self.registry = registry
        self.key = key
        self._stories: List[SavedStory] = []

    @property
    def saved_stories(self) -> List[SavedStory]:
        return list(self._stories)

    def _record(self, key: str, error: AppError) -> AppError:
        if self.registry is not None:
            self.registry.add_error(key, error)
        return error

    async def load_saved_stories(self) -> List[SavedStory]:
        """Read the persisted list; a missing key is an empty library."""
        try:
            stored = await self.store.get(self.key)
            if stored:
                raw = json.loads(stored)
                if not isinstance(raw, list):
                    raise ValueError(f"'{self.key}' does not hold a list")
                self._stories = [SavedStory.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            raise self._record(STAGE_STORAGE_LOAD, ErrorHandler.from_unknown(
                e, ErrorType.STORAGE, ErrorSeverity.LOW, {"action": "load_saved_stories"}
            )) from e

        if self.registry is not None:
            self.registry.remove_error(STAGE_STORAGE_LOAD)
        logger.info(f"📚 Loaded {len(self._stories)} saved stories")
        return self.saved_stories

    async def save_story(self, story: Optional[Story], title: Optional[str] = None) -> SavedStory:
        if story is None or not story.pages:
            raise self._record(STAGE_STORAGE_SAVE, ErrorHandler.create_error(
                ErrorType.VALIDATION,
                ErrorSeverity.LOW,
                "No story to save",
                "There is no story to save yet.",
                context={"action": "save_story"},
            ))

        created_at = int(time.time() * 1000)
        existing_ids = {item.id for item in self._stories}
        story_ms = created_at
        while str(story_ms) in existing_ids:
            story_ms += 1

        saved = SavedStory(
            id=str(story_ms),
            title=title or story.title or default_story_title(),
            pages=story.pages,
            created_at=created_at,
        )
        updated = self._stories + [saved]

        try:
            payload = json.dumps([item.model_dump(mode="json") for item in updated])
            await self.store.set(self.key, payload)
        except (OSError, TypeError, ValueError) as e:
            raise self._record(STAGE_STORAGE_SAVE, ErrorHandler.from_unknown(
                e, ErrorType.STORAGE, ErrorSeverity.MEDIUM,
                {"action": "save_story", "story_id": saved.id}
            )) from e

        self._stories = updated
        if self.registry is not None:
            self.registry.remove_error(STAGE_STORAGE_SAVE)
        logger.info(f"💾 Saved story '{saved.title}' ({saved.id})")
        return saved

    def load_story(self, story_id: str) -> Story:
        for saved in self._stories:
            if saved.id == story_id:
                if self.registry is not None:
                    self.registry.remove_error(STAGE_STORY_LOAD)
                return saved.to_story()

        raise self._record(STAGE_STORY_LOAD, ErrorHandler.create_error(
            ErrorType.VALIDATION,
            ErrorSeverity.LOW,
            f"Story with id {story_id} not found",
            "The requested story could not be found.",
            context={"story_id": story_id},
        ))
