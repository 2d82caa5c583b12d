"""Tests for application wiring."""

from src.adventures.store import AdventureStore
from src.config import Settings
from src.main import build_orchestrator
from src.memory.extraction import ExtractionClient


def test_build_orchestrator_from_settings(store: AdventureStore) -> None:
    config = Settings(
        anthropic_api_key="sk-test",
        narrative_model="claude-x",
        ollama_model="llama3",
        memory_recall_cap=3,
    )
    orchestrator = build_orchestrator(store, config)

    assert orchestrator.store is store
    assert isinstance(orchestrator.extraction, ExtractionClient)
    assert orchestrator.extraction.config.model == "llama3"
    assert orchestrator.narrative.config.model == "claude-x"
    assert orchestrator.merge_engine.cap == 3


def test_build_orchestrator_extraction_disabled(store: AdventureStore) -> None:
    orchestrator = build_orchestrator(store, Settings(memory_extraction_enabled=False))
    assert orchestrator.extraction is None
