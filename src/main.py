"""Scribe API entry point."""

import asyncio
import contextlib
import logging

from src.adventures.store import AdventureStore
from src.api.server import ApiServer
from src.config import Settings, settings
from src.llm.client import NarrativeClient, NarrativeConfig
from src.memory.extraction import ExtractionClient, ExtractionConfig
from src.memory.merge import MemoryMergeEngine
from src.turns.orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(store: AdventureStore, config: Settings = settings) -> TurnOrchestrator:
    """Wire the memory pipeline and narrative client from settings."""
    extraction = None
    if config.memory_extraction_enabled:
        extraction = ExtractionClient(ExtractionConfig.from_settings(config))
    else:
        logger.warning("Memory extraction disabled — turns run without memory augmentation")

    if not config.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is empty — every turn will fail until it is set")

    return TurnOrchestrator(
        store=store,
        extraction=extraction,
        narrative=NarrativeClient(NarrativeConfig.from_settings(config)),
        merge_engine=MemoryMergeEngine(cap=config.memory_recall_cap),
    )


async def _serve() -> None:
    store = AdventureStore.get()
    server = ApiServer(store, build_orchestrator(store))
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main() -> None:
    """Start the API server and run until interrupted."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    logger.info(
        "Starting Scribe (narrative=%s, extraction=%s via %s)",
        settings.narrative_model,
        settings.ollama_model,
        settings.get_ollama_base_url(),
    )
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_serve())


if __name__ == "__main__":
    main()
