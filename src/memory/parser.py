"""Decision parsing for the memory extraction model.

The extraction model is asked for a single JSON object but routinely wraps
it in prose, markdown fences or reasoning output. Everything that tolerates
malformed model output lives here: callers always get a fully-populated
``ExtractionResult``.

Known fragility: the payload is sliced from the first ``{`` to the last
``}``. If the model emits two separate JSON objects the slice spans both
(and the text between them) and the parse fails.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from src.memory.models import normalize_tags

logger = logging.getLogger(__name__)

MAX_NEW_MEMORIES = 2

# Keys of the JSON object the extraction prompt asks for
NEW_MEMORIES_KEY = "new_memories"
MEMORY_TAGS_KEY = "memory_tags"
RECALL_IDS_KEY = "recall_memory_ids"
SEARCH_KEYWORDS_KEY = "search_keywords"


@dataclass
class ExtractionResult:
    """Outcome of one extraction call.

    ``succeeded`` is False when no structurally valid JSON object could be
    obtained; all other fields are then empty and ``error`` says why.
    ``new_memory_tags`` is always the same length as ``new_memory_texts``.
    """

    new_memory_texts: list[str] = field(default_factory=list)
    new_memory_tags: list[list[str]] = field(default_factory=list)
    recall_ids: list[str] = field(default_factory=list)
    search_keywords: list[str] = field(default_factory=list)
    succeeded: bool = True
    error: str | None = None

    @classmethod
    def failed(cls, reason: str) -> "ExtractionResult":
        return cls(succeeded=False, error=reason)

    @property
    def is_empty(self) -> bool:
        return not (
            self.new_memory_texts or self.recall_ids or self.search_keywords
        )


# -- Field coercion ----------------------------------------------------------


def _string_list(value: Any) -> list[str]:
    """Coerce to a list of stripped, non-empty strings; non-lists become []."""
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _aligned_memories(texts: Any, tags: Any) -> tuple[list[str], list[list[str]]]:
    """Pair each memory text with its tag set by index.

    Entries with a blank or non-string text are dropped together with their
    tag set, so alignment survives. Missing or malformed tag sets become [].
    """
    if not isinstance(texts, list):
        return [], []
    tag_sets = tags if isinstance(tags, list) else []

    kept_texts: list[str] = []
    kept_tags: list[list[str]] = []
    for i, text in enumerate(texts):
        if not isinstance(text, str) or not text.strip():
            continue
        raw_tags = tag_sets[i] if i < len(tag_sets) else []
        kept_texts.append(text.strip())
        kept_tags.append(normalize_tags(_string_list(raw_tags)))

    if len(kept_texts) > MAX_NEW_MEMORIES:
        logger.debug(
            "Extraction proposed %d memories, keeping the first %d",
            len(kept_texts),
            MAX_NEW_MEMORIES,
        )
    return kept_texts[:MAX_NEW_MEMORIES], kept_tags[:MAX_NEW_MEMORIES]


# -- Parsing -----------------------------------------------------------------


def extract_json_object(text: str) -> str | None:
    """Return the substring from the first ``{`` to the last ``}``, or None."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1:
        return None
    return text[start : end + 1]


def parse_decision(raw: str) -> ExtractionResult:
    """Parse the extraction model's raw response into an ``ExtractionResult``.

    Only a missing brace pair or a JSON syntax error fails the parse. A
    missing or wrongly typed field is replaced by an empty container.
    """
    text = raw.strip()
    payload = extract_json_object(text)
    if payload is None:
        logger.warning("No JSON object found in extraction response")
        return ExtractionResult.failed("no JSON object in response")

    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, RecursionError) as exc:
        logger.warning("Failed to parse extraction JSON: %s", exc)
        logger.debug("Raw extraction response: %s", text[:2000])
        return ExtractionResult.failed(f"invalid JSON: {exc}")

    texts, tags = _aligned_memories(data.get(NEW_MEMORIES_KEY), data.get(MEMORY_TAGS_KEY))
    return ExtractionResult(
        new_memory_texts=texts,
        new_memory_tags=tags,
        recall_ids=_unique(_string_list(data.get(RECALL_IDS_KEY))),
        search_keywords=_unique(_string_list(data.get(SEARCH_KEYWORDS_KEY))),
    )
