"""Data models for narrative memories and conversation turns."""

import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field


def make_id() -> str:
    """Generate a new record ID."""
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class ConversationTurn(BaseModel):
    """A single message in an adventure. Never mutated once appended."""

    id: str = Field(default_factory=make_id)
    role: Literal["user", "assistant"]
    content: str
    timestamp: str = Field(default_factory=utc_now)

    def to_api_message(self) -> dict[str, str]:
        """Format for the Messages API."""
        return {"role": self.role, "content": self.content}


class MemoryRecord(BaseModel):
    """A durable narrative fact attached to one adventure."""

    id: str = Field(default_factory=make_id)
    text: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)

    def render(self) -> str:
        """Render for the extraction prompt's memory listing."""
        tags = ", ".join(self.tags) if self.tags else "none"
        return f"ID: {self.id}\nContent: {self.text}\nCreated: {self.created_at}\nTags: {tags}"


def normalize_tags(tags: list[str]) -> list[str]:
    """Strip, drop empties and de-duplicate tags, keeping first occurrence order."""
    seen: set[str] = set()
    result: list[str] = []
    for tag in tags:
        cleaned = tag.strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result
