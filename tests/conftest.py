"""Shared test fixtures."""

from pathlib import Path

import pytest

from src.adventures.store import AdventureStore
from src.memory.models import MemoryRecord


@pytest.fixture
def store(tmp_path: Path) -> AdventureStore:
    """Create an AdventureStore backed by a temp database."""
    return AdventureStore(db_path=tmp_path / "test.db")


@pytest.fixture
def king_memory() -> MemoryRecord:
    return MemoryRecord(
        id="m1",
        text="The king is dead",
        tags=["king", "death"],
        created_at="2025-01-01T00:00:00+00:00",
    )
