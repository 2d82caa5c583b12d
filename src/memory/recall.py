"""Keyword recall over an adventure's memories.

Built per request from the live memory list; nothing is cached.
"""

from collections.abc import Iterable, Sequence

from src.memory.models import MemoryRecord


class RecallIndex:
    """Case-insensitive tag lookup over a list of memories.

    A memory matches when any of its tags contains any query keyword as a
    substring. Results keep store order (oldest first).
    """

    def __init__(self, memories: Sequence[MemoryRecord]) -> None:
        self._memories = memories
        self._tags = [[tag.lower() for tag in m.tags] for m in memories]

    def search(self, keywords: Iterable[str]) -> list[MemoryRecord]:
        terms = [k.strip().lower() for k in keywords if k.strip()]
        if not terms:
            return []
        return [
            memory
            for memory, tags in zip(self._memories, self._tags, strict=True)
            if any(term in tag for tag in tags for term in terms)
        ]

    def by_ids(self, ids: Iterable[str]) -> list[MemoryRecord]:
        """Return memories for *ids* in the order given, skipping unknown ids."""
        lookup = {m.id: m for m in self._memories}
        return [lookup[i] for i in dict.fromkeys(ids) if i in lookup]
