"""Memory extraction ("what should the Dungeon Master remember?").

Before each narrative reply, the latest user message, a window of recent
turns and every stored memory are sent to a local text-generation model
(Ollama ``/api/generate``). It decides which new facts to save, how to tag
them, and which memories to recall for the reply.

Extraction is best-effort enrichment: every failure is logged and returned
as ``ExtractionResult.failed(...)``, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from src.memory.parser import ExtractionResult, parse_decision

if TYPE_CHECKING:
    from collections.abc import Sequence

    from src.config import Settings
    from src.memory.models import ConversationTurn, MemoryRecord

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 10


@dataclass(frozen=True)
class ExtractionConfig:
    """Connection and prompt settings for the extraction backend."""

    base_url: str = "http://localhost:11434"
    model: str = "qwen3:8b-q4_K_M"
    history_window: int = DEFAULT_HISTORY_WINDOW
    timeout: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ExtractionConfig:
        return cls(
            base_url=settings.get_ollama_base_url(),
            model=settings.ollama_model,
            history_window=settings.memory_history_window,
            timeout=settings.extraction_timeout,
        )


# -- Prompt building ---------------------------------------------------------


def build_extraction_prompt(
    user_message: str,
    adventure_name: str,
    adventure_description: str,
    recent_turns: Sequence[ConversationTurn],
    memories: Sequence[MemoryRecord],
) -> str:
    """Build the instruction prompt sent to the extraction model."""
    conversation = "\n\n".join(f"{t.role.upper()}: {t.content}" for t in recent_turns)
    existing = "\n\n".join(m.render() for m in memories)

    return f"""You are a dungeon master's memory manager for a fantasy RPG adventure called "{adventure_name}".

## CONTEXT:
{adventure_description or "No description provided."}

## RECENT CONVERSATION:
{conversation or "No conversation yet."}

## USER'S LATEST MESSAGE:
{user_message}

## CURRENT STORED MEMORIES:
{existing or "No memories stored yet."}

## TASK:
Analyze the conversation and answer FOUR questions:

1. Based on the user's latest message and conversation context, what important information (if any) should be saved as a new memory?
   - Focus on key plot points, character details, important decisions, quest objectives
   - Do NOT save trivial information or basic greetings
   - ONLY create memories for TRULY significant story information

2. For each new memory, which 3-5 short tags describe it (people, places, items, factions, themes)?

3. Which existing memories (if any) are relevant to the current conversation and should be recalled?
   - Only select memories that provide crucial context for responding to the user's latest message
   - Reference memories by their exact ID

4. Which 3-7 search keywords would help find relevant memories by their tags?

Respond with VALID JSON only, in this exact format:
{{
  "new_memories": ["memory text 1", "memory text 2"],
  "memory_tags": [["tag1", "tag2", "tag3"], ["tag1", "tag2", "tag3"]],
  "recall_memory_ids": ["memory-id-1", "memory-id-2"],
  "search_keywords": ["keyword1", "keyword2", "keyword3"]
}}

Notes:
- "new_memories" can be an empty array if nothing important to remember
- "memory_tags" must have one tag array per entry in "new_memories", in the same order
- "recall_memory_ids" can be an empty array if no existing memories are relevant
- Limit to 1-2 new memories maximum
- Be selective! Only truly important information should be memorized
"""


# -- Client ------------------------------------------------------------------


class ExtractionClient:
    """Single-shot, non-streaming calls to the extraction model.

    Pass *transport* to route requests through a custom httpx transport
    (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: ExtractionConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport

    async def complete(self, prompt: str) -> str | None:
        """Return the model's raw text, or None on any transport/status failure."""
        payload: dict[str, Any] = {
            "model": self.config.model,
            "prompt": prompt,
            "stream": False,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout, transport=self._transport
            ) as client:
                resp = await client.post(f"{self.config.base_url}/api/generate", json=payload)

            if resp.status_code != 200:
                logger.warning(
                    "Extraction backend returned %s: %s", resp.status_code, resp.text[:200]
                )
                return None

            data = resp.json()
        except httpx.HTTPError as exc:
            logger.warning("Failed to reach extraction backend: %s", exc)
            return None
        except ValueError:
            logger.warning("Extraction backend returned a non-JSON body")
            return None

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            logger.warning("Extraction backend response has no text")
            return None
        return text

    async def extract(
        self,
        user_message: str,
        *,
        adventure_name: str,
        adventure_description: str,
        history: Sequence[ConversationTurn],
        memories: Sequence[MemoryRecord],
    ) -> ExtractionResult:
        """Ask the model for memory decisions about the latest user message."""
        turns = list(history)
        recent = turns[max(len(turns) - self.config.history_window, 0) :]
        prompt = build_extraction_prompt(
            user_message, adventure_name, adventure_description, recent, memories
        )

        raw = await self.complete(prompt)
        if raw is None:
            return ExtractionResult.failed("extraction backend unavailable")

        result = parse_decision(raw)
        if result.succeeded:
            logger.debug(
                "Extraction: %d new, %d recall ids, %d keywords",
                len(result.new_memory_texts),
                len(result.recall_ids),
                len(result.search_keywords),
            )
        return result
