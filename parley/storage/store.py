"""Conversation persistence between engine lifetimes.

Snapshot semantics only: ``save`` overwrites the whole transcript
(last write wins) and ``load`` returns whatever was saved last.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from parley.conversation.schemas import Turn, turns_from_api, turns_to_api

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def load(self) -> list[Turn]: ...

    async def save(self, turns: list[Turn]) -> None: ...


class JsonFileStore:
    """Stores the transcript as Messages API JSON in a single file.

    Writes go to a temp file in the same directory and are moved into
    place with os.replace, so a crash mid-write leaves the previous
    snapshot intact.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def load(self) -> list[Turn]:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, turns: list[Turn]) -> None:
        await asyncio.to_thread(self._save_sync, turns_to_api(turns))

    def _load_sync(self) -> list[Turn]:
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as f:
            data = json.load(f)
        turns = turns_from_api(data)
        logger.debug("Loaded %d turns from %s", len(turns), self.path)
        return turns

    def _save_sync(self, messages: list[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(messages, f, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved %d turns to %s", len(messages), self.path)
