"""Async HTTP API for adventures, memories and turns.

Uses aiohttp's AppRunner/TCPSite for non-blocking start/stop. Callers
identify themselves with ``X-User-Id``; when ``API_SECRET`` is set every
request must also carry a matching ``X-Api-Secret``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiosqlite
from aiohttp import web

from src.adventures.store import AdventureStore
from src.config import settings
from src.llm.client import NarrativeConfigurationError, NarrativeServiceError
from src.memory.models import MemoryRecord, make_id, normalize_tags
from src.turns.orchestrator import AdventureNotFoundError, TurnOrchestrator

logger = logging.getLogger(__name__)

STORE_KEY = web.AppKey("store", AdventureStore)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", TurnOrchestrator)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"msg": message}, status=status)


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(text=json.dumps({"msg": message}), content_type="application/json")


def _user_id(request: web.Request) -> str:
    """Authorize the request and return the caller's user ID."""
    if settings.api_secret and request.headers.get("X-Api-Secret", "") != settings.api_secret:
        logger.warning("API request rejected: invalid secret (%s)", request.path)
        raise web.HTTPUnauthorized(
            text=json.dumps({"msg": "unauthorized"}), content_type="application/json"
        )
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise _bad_request("User ID not found in request")
    return user_id


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise _bad_request("invalid JSON") from None
    if not isinstance(payload, dict):
        raise _bad_request("expected a JSON object")
    return payload


def _tags(value: Any) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
        raise _bad_request("tags must be a list of strings")
    return normalize_tags(value)


# -- Health -------------------------------------------------------------------


async def _health(request: web.Request) -> web.Response:
    """GET /health — basic liveness check."""
    return web.json_response({"status": "ok"})


# -- Adventures ---------------------------------------------------------------


async def _create_adventure(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    body = await _json_body(request)
    name = body.get("name")
    if not name or not isinstance(name, str):
        return _error("Adventure name is required", 400)

    characters = body.get("characters") or []
    if not isinstance(characters, list) or not all(isinstance(c, dict) for c in characters):
        return _error("characters must be a list of objects", 400)

    player_count = body.get("playerCount")
    if player_count is None:
        player_count = 1
    if isinstance(player_count, bool) or not isinstance(player_count, int) or player_count < 1:
        return _error("playerCount must be a positive integer", 400)

    adventure = await request.app[STORE_KEY].create_adventure(
        user_id=user_id,
        name=name,
        description=str(body.get("description") or ""),
        player_count=player_count,
        characters=characters,
    )
    return web.json_response(adventure.model_dump(), status=201)


async def _list_adventures(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    adventures = await request.app[STORE_KEY].list_adventures(user_id)
    return web.json_response([a.model_dump() for a in adventures])


async def _get_adventure(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    adventure = await request.app[STORE_KEY].get_adventure(
        request.match_info["adventure_id"], user_id
    )
    if adventure is None:
        return _error("Adventure not found or access denied", 404)
    return web.json_response(adventure.model_dump())


async def _delete_adventure(request: web.Request) -> web.Response:
    user_id = _user_id(request)
    adventure_id = request.match_info["adventure_id"]
    if not await request.app[STORE_KEY].delete_adventure(adventure_id, user_id):
        return _error("Adventure not found or access denied", 404)
    return web.json_response({"msg": "Adventure removed successfully", "adventureId": adventure_id})


# -- Ownership ----------------------------------------------------------------


async def _owned_adventure_id(request: web.Request) -> str | None:
    """Return the path's adventure ID if the caller owns it, else None."""
    user_id = _user_id(request)
    adventure_id = request.match_info["adventure_id"]
    if not await request.app[STORE_KEY].owns_adventure(adventure_id, user_id):
        return None
    return adventure_id


# -- Memories -----------------------------------------------------------------


async def _list_memories(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)
    memories = await request.app[STORE_KEY].list_memories(adventure_id)
    return web.json_response([m.model_dump() for m in memories])


async def _create_memory(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)

    body = await _json_body(request)
    text = body.get("text")
    if not isinstance(text, str) or not text.strip():
        return _error("Memory text is required", 400)

    memory = MemoryRecord(text=text.strip(), tags=_tags(body.get("tags")) or [])
    await request.app[STORE_KEY].append_memory(adventure_id, memory)
    return web.json_response(memory.model_dump(), status=201)


async def _update_memory(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)

    body = await _json_body(request)
    text = body.get("text")
    if text is not None and (not isinstance(text, str) or not text.strip()):
        return _error("Memory text must be a non-empty string", 400)
    tags = _tags(body.get("tags"))
    if text is None and tags is None:
        return _error("Nothing to update: provide text and/or tags", 400)

    store = request.app[STORE_KEY]
    memory = await store.update_memory(
        adventure_id,
        request.match_info["memory_id"],
        text=text.strip() if text is not None else None,
        tags=tags,
    )
    if memory is None:
        return _error("Memory not found in this adventure", 404)
    return web.json_response(
        {
            "msg": "Memory updated successfully",
            "memory": memory.model_dump(),
            "allMemories": [m.model_dump() for m in await store.list_memories(adventure_id)],
        }
    )


async def _delete_memory(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)

    store = request.app[STORE_KEY]
    memory_id = request.match_info["memory_id"]
    if not await store.delete_memory(adventure_id, memory_id):
        return _error("Memory not found in this adventure", 404)
    return web.json_response(
        {
            "msg": "Memory removed successfully",
            "memoryId": memory_id,
            "remainingMemories": [m.model_dump() for m in await store.list_memories(adventure_id)],
        }
    )


# -- Characters ---------------------------------------------------------------


def _traits(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(t, dict) for t in value):
        raise _bad_request("traits must be a list of objects")
    return [t if t.get("id") else {**t, "id": make_id()} for t in value]


async def _list_characters(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)
    return web.json_response(await request.app[STORE_KEY].list_characters(adventure_id))


async def _get_character(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)
    character = await request.app[STORE_KEY].get_character(
        adventure_id, request.match_info["character_id"]
    )
    if character is None:
        return _error("Character not found", 404)
    return web.json_response(character)


async def _create_character(request: web.Request) -> web.Response:
    """POST /adventures/{id}/characters — add a party member.

    Ability scores are stored as given; no derived stats are computed.
    """
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)

    body = await _json_body(request)
    character_class = body.pop("characterClass", None) or body.get("class")
    required = (body.get("name"), body.get("race"), character_class)
    if not all(isinstance(v, str) and v.strip() for v in required) or not isinstance(
        body.get("stats"), dict
    ):
        return _error("Character details are required (name, race, class, stats)", 400)

    level = body.get("level", 1)
    if isinstance(level, bool) or not isinstance(level, int) or level < 1:
        return _error("level must be a positive integer", 400)

    character = {
        **body,
        "class": character_class,
        "level": level,
        "traits": _traits(body.get("traits", [])),
    }
    created = await request.app[STORE_KEY].add_character(adventure_id, character)
    if created is None:
        return _error("Adventure not found or access denied", 404)
    return web.json_response(created, status=201)


async def _update_character(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)

    changes = await _json_body(request)
    if "characterClass" in changes:
        changes["class"] = changes.pop("characterClass")
    if "traits" in changes:
        changes["traits"] = _traits(changes["traits"])
    if not changes:
        return _error("Nothing to update", 400)

    character = await request.app[STORE_KEY].update_character(
        adventure_id, request.match_info["character_id"], changes
    )
    if character is None:
        return _error("Character not found", 404)
    return web.json_response(character)


async def _delete_character(request: web.Request) -> web.Response:
    adventure_id = await _owned_adventure_id(request)
    if adventure_id is None:
        return _error("Adventure not found or access denied", 404)

    character_id = request.match_info["character_id"]
    if not await request.app[STORE_KEY].delete_character(adventure_id, character_id):
        return _error("Character not found", 404)
    return web.json_response({"msg": "Character deleted successfully", "characterId": character_id})


# -- Turns --------------------------------------------------------------------


async def _post_message(request: web.Request) -> web.Response:
    """POST /adventures/{id}/messages — run one turn."""
    user_id = _user_id(request)
    body = await _json_body(request)
    content = body.get("messageContent")
    if not isinstance(content, str) or not content.strip():
        return _error("Message content is required", 400)

    adventure_id = request.match_info["adventure_id"]
    try:
        result = await request.app[ORCHESTRATOR_KEY].process_turn(adventure_id, user_id, content)
    except AdventureNotFoundError:
        return _error("Adventure not found or access denied", 404)
    except NarrativeConfigurationError as exc:
        logger.error("Narrative backend misconfigured: %s", exc)
        return _error(str(exc), 500)
    except NarrativeServiceError as exc:
        logger.exception("Narrative generation failed for adventure %s", adventure_id)
        return web.json_response(
            {"msg": "Error processing message with AI service", "statusCode": exc.status_code},
            status=502,
        )

    return web.json_response(result.to_dict())


@web.middleware
async def _storage_errors(request: web.Request, handler) -> web.StreamResponse:
    """Answer any database failure with a JSON 503."""
    try:
        return await handler(request)
    except aiosqlite.Error:
        logger.exception("Storage error on %s %s", request.method, request.path)
        return _error("Storage unavailable", 503)


def _create_web_app(store: AdventureStore, orchestrator: TurnOrchestrator) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application(middlewares=[_storage_errors])
    app[STORE_KEY] = store
    app[ORCHESTRATOR_KEY] = orchestrator

    app.router.add_get("/health", _health)
    app.router.add_post("/adventures", _create_adventure)
    app.router.add_get("/adventures", _list_adventures)
    app.router.add_get("/adventures/{adventure_id}", _get_adventure)
    app.router.add_delete("/adventures/{adventure_id}", _delete_adventure)
    app.router.add_get("/adventures/{adventure_id}/memories", _list_memories)
    app.router.add_post("/adventures/{adventure_id}/memories", _create_memory)
    app.router.add_put("/adventures/{adventure_id}/memories/{memory_id}", _update_memory)
    app.router.add_delete("/adventures/{adventure_id}/memories/{memory_id}", _delete_memory)
    app.router.add_get("/adventures/{adventure_id}/characters", _list_characters)
    app.router.add_post("/adventures/{adventure_id}/characters", _create_character)
    app.router.add_get("/adventures/{adventure_id}/characters/{character_id}", _get_character)
    app.router.add_put("/adventures/{adventure_id}/characters/{character_id}", _update_character)
    app.router.add_delete(
        "/adventures/{adventure_id}/characters/{character_id}", _delete_character
    )
    app.router.add_post("/adventures/{adventure_id}/messages", _post_message)
    return app


class ApiServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(
        self,
        store: AdventureStore,
        orchestrator: TurnOrchestrator,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.host = host or settings.api_host
        self.port = port or settings.api_port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start listening for API requests."""
        if not settings.api_secret:
            logger.warning("API_SECRET empty — requests are not authenticated")

        app = _create_web_app(self.store, self.orchestrator)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("API server listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")
