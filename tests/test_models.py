"""Tests for memory, turn and adventure models."""

import pytest
from pydantic import ValidationError

from src.adventures.models import Adventure, memory_from_row
from src.memory.models import ConversationTurn, MemoryRecord, normalize_tags


def test_normalize_tags_dedupes_case_insensitively() -> None:
    assert normalize_tags([" King ", "king", "", "death"]) == ["King", "death"]


def test_memory_requires_text() -> None:
    with pytest.raises(ValidationError):
        MemoryRecord(text="")


def test_memory_defaults() -> None:
    a = MemoryRecord(text="fact")
    b = MemoryRecord(text="fact")
    assert a.id != b.id
    assert a.tags == []
    assert a.created_at


def test_memory_render_without_tags() -> None:
    memory = MemoryRecord(id="m9", text="fact", created_at="2025-01-01")
    assert memory.render() == "ID: m9\nContent: fact\nCreated: 2025-01-01\nTags: none"


def test_turn_rejects_unknown_role() -> None:
    with pytest.raises(ValidationError):
        ConversationTurn(role="system", content="nope")


def test_turn_to_api_message() -> None:
    turn = ConversationTurn(role="assistant", content="Roll for initiative.")
    assert turn.to_api_message() == {"role": "assistant", "content": "Roll for initiative."}


def test_adventure_from_row_handles_empty_json() -> None:
    row = ("a1", "u1", "Quest", None, 1, None, "2025-01-01", "2025-01-02")
    adventure = Adventure.from_row(row)
    assert adventure.description == ""
    assert adventure.characters == []
    assert adventure.turns == []


def test_memory_from_row_decodes_tags() -> None:
    memory = memory_from_row(("m1", "fact", '["a", "b"]', "2025-01-01"))
    assert memory.tags == ["a", "b"]
