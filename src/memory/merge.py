"""Merge extraction output into an adventure's memories and pick what to recall."""

import logging
from dataclasses import dataclass, field

from src.memory.models import MemoryRecord, make_id, normalize_tags, utc_now
from src.memory.parser import ExtractionResult
from src.memory.recall import RecallIndex

logger = logging.getLogger(__name__)

DEFAULT_RECALL_CAP = 5


@dataclass
class MergeOutcome:
    """Memories created this turn and memories chosen for the next prompt."""

    saved: list[MemoryRecord] = field(default_factory=list)
    recalled: list[MemoryRecord] = field(default_factory=list)

    @property
    def context_block(self) -> str:
        return format_memory_block(self.recalled)


def format_memory_block(memories: list[MemoryRecord]) -> str:
    """Join memory texts with blank lines. Empty string when nothing recalled."""
    return "\n\n".join(m.text for m in memories)


def create_memories(result: ExtractionResult, now: str | None = None) -> list[MemoryRecord]:
    """Build new records from an extraction result, pairing texts and tags by index."""
    timestamp = now or utc_now()
    records = []
    for i, text in enumerate(result.new_memory_texts):
        tags = result.new_memory_tags[i] if i < len(result.new_memory_tags) else []
        records.append(
            MemoryRecord(id=make_id(), text=text, tags=normalize_tags(tags), created_at=timestamp)
        )
    return records


def select_recalled(
    memories: list[MemoryRecord],
    result: ExtractionResult,
    cap: int = DEFAULT_RECALL_CAP,
) -> list[MemoryRecord]:
    """Keyword matches first, then explicit ids not already included, cut at *cap*."""
    index = RecallIndex(memories)
    selected = index.search(result.search_keywords)
    seen = {m.id for m in selected}
    for memory in index.by_ids(result.recall_ids):
        if memory.id not in seen:
            seen.add(memory.id)
            selected.append(memory)
    return selected[:cap]


class MemoryMergeEngine:
    """Applies one extraction result to the live memory list of an adventure."""

    def __init__(self, cap: int = DEFAULT_RECALL_CAP) -> None:
        self.cap = cap

    def merge(self, memories: list[MemoryRecord], result: ExtractionResult) -> MergeOutcome:
        """Append new memories to *memories* in place, then select recalls.

        New memories are appended before selection, so they are eligible
        for recall in the same turn. A failed result changes nothing.
        """
        if not result.succeeded:
            return MergeOutcome()

        saved = create_memories(result)
        memories.extend(saved)
        for memory in saved:
            logger.info("Added new memory: %s - %s", memory.id, memory.text[:50])

        recalled = select_recalled(memories, result, self.cap)
        if recalled:
            logger.info("Recalled %d memories for context", len(recalled))
        return MergeOutcome(saved=saved, recalled=recalled)
