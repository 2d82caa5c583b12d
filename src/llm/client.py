"""Async Claude client for Dungeon Master narration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anthropic

if TYPE_CHECKING:
    from collections.abc import Sequence

    from src.config import Settings
    from src.memory.models import ConversationTurn

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I could not generate a response."


class NarrativeError(Exception):
    """Narrative generation failed; the turn cannot complete."""


class NarrativeConfigurationError(NarrativeError):
    """The narrative backend is not usable as configured (e.g. missing API key)."""


class NarrativeServiceError(NarrativeError):
    """The narrative backend was unreachable or returned an error. Usually retryable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class NarrativeConfig:
    api_key: str
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 2048

    @classmethod
    def from_settings(cls, settings: Settings) -> NarrativeConfig:
        return cls(
            api_key=settings.anthropic_api_key,
            model=settings.narrative_model,
            max_tokens=settings.narrative_max_tokens,
        )


class NarrativeClient:
    """Single-shot Claude calls: system prompt plus turn history in, reply text out."""

    def __init__(self, config: NarrativeConfig) -> None:
        self.config = config
        self._client: anthropic.AsyncAnthropic | None = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        """Lazily initialize the Anthropic client."""
        if not self.config.api_key:
            raise NarrativeConfigurationError(
                "Anthropic API key not configured. Cannot process chat messages."
            )
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
        return self._client

    async def generate(self, system: str, turns: Sequence[ConversationTurn]) -> str:
        """Generate the Dungeon Master's next reply.

        Raises:
            NarrativeConfigurationError: Missing or rejected credentials.
            NarrativeServiceError: Connection failures and API errors.
        """
        client = self._get_client()
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "system": system,
            "messages": [t.to_api_message() for t in turns],
        }

        try:
            response = await client.messages.create(**kwargs)
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as exc:
            logger.error("Narrative backend rejected credentials: %s", exc)
            raise NarrativeConfigurationError(str(exc)) from exc
        except anthropic.APIStatusError as exc:
            logger.error("Narrative backend returned %s: %s", exc.status_code, exc)
            raise NarrativeServiceError(str(exc), status_code=exc.status_code) from exc
        except anthropic.APIError as exc:
            logger.error("Narrative backend request failed: %s", exc)
            raise NarrativeServiceError(str(exc)) from exc

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        if not text.strip():
            logger.warning("Narrative backend returned no text")
            return FALLBACK_REPLY
        return text
