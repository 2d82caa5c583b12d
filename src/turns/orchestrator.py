"""Turn orchestration: user message in, Dungeon Master reply out.

One turn runs these stages in order::

    RECEIVED -> MEMORY_PROCESSED -> PROMPT_BUILT -> NARRATIVE_GENERATED
             -> PERSISTED -> RESPONDED

The memory stage never fails a turn; any error there means "no memory
augmentation this turn". Narrative and persistence errors propagate.
Nothing is written until the reply exists, so a failed turn leaves the
adventure untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from src.llm.prompt import build_system_prompt
from src.memory.merge import MemoryMergeEngine, MergeOutcome
from src.memory.models import ConversationTurn

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.adventures.models import Adventure
    from src.adventures.store import AdventureStore
    from src.llm.client import NarrativeClient
    from src.memory.extraction import ExtractionClient
    from src.memory.models import MemoryRecord

logger = logging.getLogger(__name__)


class AdventureNotFoundError(LookupError):
    """The adventure does not exist or belongs to another user."""


class TurnStage(Enum):
    RECEIVED = "received"
    MEMORY_PROCESSED = "memory_processed"
    PROMPT_BUILT = "prompt_built"
    NARRATIVE_GENERATED = "narrative_generated"
    PERSISTED = "persisted"
    RESPONDED = "responded"


@dataclass
class TurnResult:
    """The assistant's reply plus what the memory stage did."""

    assistant_turn: ConversationTurn
    saved: list[MemoryRecord] = field(default_factory=list)
    recalled: list[MemoryRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "message": self.assistant_turn.model_dump(),
            "memoryOperations": {
                "saved": [m.model_dump() for m in self.saved],
                "recalled": [m.model_dump() for m in self.recalled],
            },
        }


class TurnOrchestrator:
    """Runs turns against stored adventures.

    Turns on the same adventure are serialized with a per-adventure lock so
    the load-modify-save cycle never loses an update. Different adventures
    proceed concurrently.
    """

    def __init__(
        self,
        store: AdventureStore,
        extraction: ExtractionClient | None,
        narrative: NarrativeClient,
        merge_engine: MemoryMergeEngine | None = None,
    ) -> None:
        self.store = store
        self.extraction = extraction
        self.narrative = narrative
        self.merge_engine = merge_engine or MemoryMergeEngine()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _serialized(self, adventure_id: str) -> AsyncIterator[None]:
        """Hold the adventure's lock. It is dropped once no task holds or awaits it."""
        lock = self._locks.get(adventure_id)
        if lock is None:
            lock = self._locks[adventure_id] = asyncio.Lock()
        self._lock_users[adventure_id] = self._lock_users.get(adventure_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[adventure_id] -= 1
            if self._lock_users[adventure_id] == 0:
                del self._lock_users[adventure_id]
                del self._locks[adventure_id]

    @staticmethod
    def _advance(adventure_id: str, stage: TurnStage) -> None:
        logger.debug("Turn on %s: %s", adventure_id, stage.value)

    async def process_memories(self, adventure: Adventure, message: str) -> MergeOutcome:
        """Run extraction and merge. Returns an empty outcome on any failure."""
        if self.extraction is None:
            return MergeOutcome()

        try:
            result = await self.extraction.extract(
                message,
                adventure_name=adventure.name,
                adventure_description=adventure.description,
                history=list(adventure.turns),
                memories=list(adventure.memories),
            )
            if not result.succeeded:
                logger.info("Memory extraction skipped this turn: %s", result.error)
                return MergeOutcome()
            return self.merge_engine.merge(adventure.memories, result)
        except Exception:
            logger.exception("Memory processing failed (non-fatal)")
            return MergeOutcome()

    async def process_turn(self, adventure_id: str, user_id: str, message: str) -> TurnResult:
        """Handle one user message and return the Dungeon Master's reply.

        Raises:
            AdventureNotFoundError: No such adventure for this user.
            NarrativeError: The reply could not be generated.
        """
        async with self._serialized(adventure_id):
            adventure = await self.store.get_adventure(adventure_id, user_id)
            if adventure is None:
                raise AdventureNotFoundError(adventure_id)

            user_turn = ConversationTurn(role="user", content=message)
            adventure.turns.append(user_turn)
            self._advance(adventure_id, TurnStage.RECEIVED)

            outcome = await self.process_memories(adventure, message)
            self._advance(adventure_id, TurnStage.MEMORY_PROCESSED)

            system = build_system_prompt(adventure, outcome.context_block)
            self._advance(adventure_id, TurnStage.PROMPT_BUILT)

            reply = await self.narrative.generate(system, list(adventure.turns))
            assistant_turn = ConversationTurn(role="assistant", content=reply)
            adventure.turns.append(assistant_turn)
            self._advance(adventure_id, TurnStage.NARRATIVE_GENERATED)

            await self.store.save_turn(adventure_id, [user_turn, assistant_turn], outcome.saved)
            self._advance(adventure_id, TurnStage.PERSISTED)

        self._advance(adventure_id, TurnStage.RESPONDED)
        return TurnResult(
            assistant_turn=assistant_turn, saved=outcome.saved, recalled=outcome.recalled
        )
