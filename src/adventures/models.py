"""Adventure record: one campaign with its turns, memories and party."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

from src.memory.models import ConversationTurn, MemoryRecord, make_id, utc_now


class Adventure(BaseModel):
    """A named campaign owned by one user.

    Attributes:
        id: Unique identifier (UUID hex).
        user_id: Owner. Reads and writes are scoped to it.
        name: Campaign name, shown to both models.
        description: Story context for the Dungeon Master.
        player_count: Number of players at the table.
        characters: Party sheets as opaque dicts (name, race, class, ...).
        turns: Conversation in chronological order.
        memories: Stored memories in creation order.
    """

    id: str = Field(default_factory=make_id)
    user_id: str
    name: str
    description: str = ""
    player_count: int = 1
    characters: list[dict[str, Any]] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    turns: list[ConversationTurn] = Field(default_factory=list)
    memories: list[MemoryRecord] = Field(default_factory=list)

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``adventures`` column order."""
        return (
            self.id,
            self.user_id,
            self.name,
            self.description,
            self.player_count,
            json.dumps(self.characters),
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(
        cls,
        row: tuple,
        turns: list[ConversationTurn] | None = None,
        memories: list[MemoryRecord] | None = None,
    ) -> Adventure:
        """Deserialize from an ``adventures`` row plus its child records."""
        return cls(
            id=row[0],
            user_id=row[1],
            name=row[2],
            description=row[3] or "",
            player_count=row[4],
            characters=json.loads(row[5] or "[]"),
            created_at=row[6],
            updated_at=row[7],
            turns=turns or [],
            memories=memories or [],
        )


def turn_from_row(row: tuple) -> ConversationTurn:
    """Deserialize a ``turns`` row (id, role, content, timestamp)."""
    return ConversationTurn(id=row[0], role=row[1], content=row[2], timestamp=row[3])


def memory_from_row(row: tuple) -> MemoryRecord:
    """Deserialize a ``memories`` row (id, text, tags, created_at)."""
    return MemoryRecord(id=row[0], text=row[1], tags=json.loads(row[2] or "[]"), created_at=row[3])
