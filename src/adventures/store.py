"""AdventureStore — aiosqlite CRUD for adventures, turns, memories and characters."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any

import aiosqlite

from src.adventures.models import Adventure, memory_from_row, turn_from_row
from src.config import settings
from src.memory.models import MemoryRecord, make_id, normalize_tags, utc_now

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from src.memory.models import ConversationTurn

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS adventures (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    player_count INTEGER NOT NULL DEFAULT 1,
    characters TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS turns (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    adventure_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS memories (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    adventure_id TEXT NOT NULL,
    text TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_turns_adventure ON turns (adventure_id, seq);
CREATE INDEX IF NOT EXISTS idx_memories_adventure ON memories (adventure_id, seq);
"""

_INSERT_TURN = """
INSERT INTO turns (id, adventure_id, role, content, timestamp)
VALUES (?, ?, ?, ?, ?)
"""

_INSERT_MEMORY = """
INSERT INTO memories (id, adventure_id, text, tags, created_at)
VALUES (?, ?, ?, ?, ?)
"""


def _turn_params(adventure_id: str, turn: ConversationTurn) -> tuple:
    return (turn.id, adventure_id, turn.role, turn.content, turn.timestamp)


def _memory_params(adventure_id: str, memory: MemoryRecord) -> tuple:
    return (memory.id, adventure_id, memory.text, json.dumps(memory.tags), memory.created_at)


def _with_id(character: dict[str, Any]) -> dict[str, Any]:
    if character.get("id"):
        return character
    return {**character, "id": make_id()}


class AdventureStore:
    """Persists adventures and their turns and memories in SQLite.

    Singleton accessed via ``AdventureStore.get()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    Every operation opens its own short-lived connection.
    """

    _instance: AdventureStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False

    @classmethod
    def get(cls) -> AdventureStore:
        """Return the shared AdventureStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.executescript(_SCHEMA)
            await db.commit()
            self._initialised = True
        return db

    async def _load_children(
        self, db: aiosqlite.Connection, adventure_id: str
    ) -> tuple[list[ConversationTurn], list[MemoryRecord]]:
        cursor = await db.execute(
            "SELECT id, role, content, timestamp FROM turns WHERE adventure_id = ? ORDER BY seq",
            (adventure_id,),
        )
        turns = [turn_from_row(row) for row in await cursor.fetchall()]
        return turns, await self._fetch_memories(db, adventure_id)

    @staticmethod
    async def _fetch_memories(db: aiosqlite.Connection, adventure_id: str) -> list[MemoryRecord]:
        cursor = await db.execute(
            "SELECT id, text, tags, created_at FROM memories WHERE adventure_id = ? ORDER BY seq",
            (adventure_id,),
        )
        return [memory_from_row(row) for row in await cursor.fetchall()]

    @staticmethod
    async def _touch(db: aiosqlite.Connection, adventure_id: str) -> None:
        await db.execute(
            "UPDATE adventures SET updated_at = ? WHERE id = ?", (utc_now(), adventure_id)
        )

    # -- Adventures ------------------------------------------------------------

    async def create_adventure(
        self,
        user_id: str,
        name: str,
        description: str = "",
        player_count: int = 1,
        characters: list[dict[str, Any]] | None = None,
    ) -> Adventure:
        """Insert a new, empty adventure and return it."""
        adventure = Adventure(
            user_id=user_id,
            name=name,
            description=description,
            player_count=player_count,
            characters=[_with_id(c) for c in characters or []],
        )
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO adventures
                    (id, user_id, name, description, player_count, characters,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                adventure.to_row(),
            )
            await db.commit()
            logger.info("Created adventure: %s (%s)", adventure.name, adventure.id)
            return adventure
        finally:
            await db.close()

    async def get_adventure(
        self, adventure_id: str, user_id: str | None = None
    ) -> Adventure | None:
        """Fetch an adventure with its turns and memories.

        Returns None if it does not exist or, when *user_id* is given,
        belongs to someone else.
        """
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT * FROM adventures WHERE id = ?", (adventure_id,))
            row = await cursor.fetchone()
            if not row or (user_id is not None and row[1] != user_id):
                return None
            turns, memories = await self._load_children(db, adventure_id)
            return Adventure.from_row(row, turns=turns, memories=memories)
        finally:
            await db.close()

    async def list_adventures(self, user_id: str) -> list[Adventure]:
        """Return all adventures owned by *user_id*, oldest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT * FROM adventures WHERE user_id = ? ORDER BY created_at", (user_id,)
            )
            rows = await cursor.fetchall()

            turns = defaultdict(list)
            cursor = await db.execute(
                """
                SELECT t.adventure_id, t.id, t.role, t.content, t.timestamp
                FROM turns t JOIN adventures a ON a.id = t.adventure_id
                WHERE a.user_id = ? ORDER BY t.seq
                """,
                (user_id,),
            )
            for row in await cursor.fetchall():
                turns[row[0]].append(turn_from_row(row[1:]))

            memories = defaultdict(list)
            cursor = await db.execute(
                """
                SELECT m.adventure_id, m.id, m.text, m.tags, m.created_at
                FROM memories m JOIN adventures a ON a.id = m.adventure_id
                WHERE a.user_id = ? ORDER BY m.seq
                """,
                (user_id,),
            )
            for row in await cursor.fetchall():
                memories[row[0]].append(memory_from_row(row[1:]))

            return [
                Adventure.from_row(row, turns=turns[row[0]], memories=memories[row[0]])
                for row in rows
            ]
        finally:
            await db.close()

    async def owns_adventure(self, adventure_id: str, user_id: str) -> bool:
        """Return True if the adventure exists and belongs to *user_id*."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT 1 FROM adventures WHERE id = ? AND user_id = ?", (adventure_id, user_id)
            )
            return await cursor.fetchone() is not None
        finally:
            await db.close()

    async def delete_adventure(self, adventure_id: str, user_id: str) -> bool:
        """Delete an adventure and everything in it. Returns True if it existed."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "DELETE FROM adventures WHERE id = ? AND user_id = ?", (adventure_id, user_id)
            )
            if cursor.rowcount == 0:
                return False
            await db.execute("DELETE FROM turns WHERE adventure_id = ?", (adventure_id,))
            await db.execute("DELETE FROM memories WHERE adventure_id = ?", (adventure_id,))
            await db.commit()
            logger.info("Deleted adventure: %s", adventure_id)
            return True
        finally:
            await db.close()

    # -- Turns -----------------------------------------------------------------

    async def append_turn(self, adventure_id: str, turn: ConversationTurn) -> None:
        db = await self._connect()
        try:
            await db.execute(_INSERT_TURN, _turn_params(adventure_id, turn))
            await self._touch(db, adventure_id)
            await db.commit()
        finally:
            await db.close()

    async def save_turn(
        self,
        adventure_id: str,
        turns: Sequence[ConversationTurn],
        memories: Sequence[MemoryRecord] = (),
    ) -> None:
        """Persist a finished turn's messages and new memories in one transaction."""
        db = await self._connect()
        try:
            await db.executemany(_INSERT_TURN, [_turn_params(adventure_id, t) for t in turns])
            await db.executemany(
                _INSERT_MEMORY, [_memory_params(adventure_id, m) for m in memories]
            )
            await self._touch(db, adventure_id)
            await db.commit()
        except aiosqlite.Error:
            await db.rollback()
            raise
        finally:
            await db.close()

    # -- Memories --------------------------------------------------------------

    async def append_memory(self, adventure_id: str, memory: MemoryRecord) -> MemoryRecord:
        """Insert a memory. Returns the same record."""
        db = await self._connect()
        try:
            await db.execute(_INSERT_MEMORY, _memory_params(adventure_id, memory))
            await self._touch(db, adventure_id)
            await db.commit()
            logger.info("Stored memory %s for adventure %s", memory.id, adventure_id)
            return memory
        finally:
            await db.close()

    async def list_memories(self, adventure_id: str) -> list[MemoryRecord]:
        """Return an adventure's memories in creation order."""
        db = await self._connect()
        try:
            return await self._fetch_memories(db, adventure_id)
        finally:
            await db.close()

    async def update_memory(
        self,
        adventure_id: str,
        memory_id: str,
        text: str | None = None,
        tags: list[str] | None = None,
    ) -> MemoryRecord | None:
        """Edit a memory's text and/or tags. Returns the updated record or None."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, text, tags, created_at FROM memories WHERE id = ? AND adventure_id = ?",
                (memory_id, adventure_id),
            )
            row = await cursor.fetchone()
            if not row:
                return None

            memory = memory_from_row(row)
            if text is not None:
                memory.text = text
            if tags is not None:
                memory.tags = normalize_tags(tags)

            await db.execute(
                "UPDATE memories SET text = ?, tags = ? WHERE id = ?",
                (memory.text, json.dumps(memory.tags), memory.id),
            )
            await self._touch(db, adventure_id)
            await db.commit()
            return memory
        finally:
            await db.close()

    async def delete_memory(self, adventure_id: str, memory_id: str) -> bool:
        """Delete a memory. Returns True if a row was removed."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "DELETE FROM memories WHERE id = ? AND adventure_id = ?",
                (memory_id, adventure_id),
            )
            await self._touch(db, adventure_id)
            await db.commit()
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info("Deleted memory: %s", memory_id)
            return deleted
        finally:
            await db.close()

    # -- Characters ------------------------------------------------------------

    @staticmethod
    async def _fetch_characters(
        db: aiosqlite.Connection, adventure_id: str
    ) -> list[dict[str, Any]] | None:
        cursor = await db.execute("SELECT characters FROM adventures WHERE id = ?", (adventure_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return json.loads(row[0] or "[]")

    @staticmethod
    async def _write_characters(
        db: aiosqlite.Connection, adventure_id: str, characters: list[dict[str, Any]]
    ) -> None:
        await db.execute(
            "UPDATE adventures SET characters = ?, updated_at = ? WHERE id = ?",
            (json.dumps(characters), utc_now(), adventure_id),
        )
        await db.commit()

    async def list_characters(self, adventure_id: str) -> list[dict[str, Any]]:
        db = await self._connect()
        try:
            return await self._fetch_characters(db, adventure_id) or []
        finally:
            await db.close()

    async def get_character(self, adventure_id: str, character_id: str) -> dict[str, Any] | None:
        for character in await self.list_characters(adventure_id):
            if character.get("id") == character_id:
                return character
        return None

    async def add_character(
        self, adventure_id: str, character: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Append a character to the party. Returns it with ``id`` and timestamps set.

        Returns None if the adventure does not exist.
        """
        db = await self._connect()
        try:
            characters = await self._fetch_characters(db, adventure_id)
            if characters is None:
                return None
            now = utc_now()
            created = {**character, "id": make_id(), "createdAt": now, "updatedAt": now}
            characters.append(created)
            await self._write_characters(db, adventure_id, characters)
            logger.info("Added character %s to adventure %s", created["id"], adventure_id)
            return created
        finally:
            await db.close()

    async def update_character(
        self, adventure_id: str, character_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Shallow-merge *changes* into a character. Returns it, or None if not found.

        ``id`` and ``createdAt`` cannot be changed.
        """
        changes = {k: v for k, v in changes.items() if k not in ("id", "createdAt")}
        db = await self._connect()
        try:
            characters = await self._fetch_characters(db, adventure_id) or []
            for index, character in enumerate(characters):
                if character.get("id") == character_id:
                    break
            else:
                return None

            updated = {**character, **changes, "updatedAt": utc_now()}
            characters[index] = updated
            await self._write_characters(db, adventure_id, characters)
            return updated
        finally:
            await db.close()

    async def delete_character(self, adventure_id: str, character_id: str) -> bool:
        """Remove a character from the party. Returns True if it was there."""
        db = await self._connect()
        try:
            characters = await self._fetch_characters(db, adventure_id) or []
            remaining = [c for c in characters if c.get("id") != character_id]
            if len(remaining) == len(characters):
                return False
            await self._write_characters(db, adventure_id, remaining)
            logger.info("Deleted character: %s", character_id)
            return True
        finally:
            await db.close()
