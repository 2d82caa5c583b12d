"""Tests for the HTTP API."""

from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite
from aiohttp.test_utils import TestClient, TestServer

from src.adventures.store import AdventureStore
from src.api.server import _create_web_app
from src.llm.client import NarrativeConfigurationError, NarrativeServiceError
from src.memory.models import ConversationTurn, MemoryRecord
from src.turns.orchestrator import AdventureNotFoundError, TurnResult

USER = {"X-User-Id": "user1"}
OTHER = {"X-User-Id": "user2"}
TEST_SECRET = "test-secret-123"


# -- Helpers -----------------------------------------------------------------


class _FakeSettings:
    def __init__(self, api_secret: str = "") -> None:
        self.api_secret = api_secret


def _orchestrator(**kwargs) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.process_turn = AsyncMock(**kwargs)
    return orchestrator


async def _make_client(store: AdventureStore, orchestrator=None) -> TestClient:
    app = _create_web_app(store, orchestrator or _orchestrator())
    client = TestClient(TestServer(app))
    await client.start_server()
    return client


# -- Health / auth -----------------------------------------------------------


async def test_health_check(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "ok"
    finally:
        await client.close()


async def test_missing_user_id_returns_400(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        resp = await client.get("/adventures")
        assert resp.status == 400
    finally:
        await client.close()


async def test_wrong_secret_returns_401(store: AdventureStore) -> None:
    with patch("src.api.server.settings", _FakeSettings(api_secret=TEST_SECRET)):
        client = await _make_client(store)
        try:
            resp = await client.get("/adventures", headers={**USER, "X-Api-Secret": "wrong"})
            assert resp.status == 401

            resp = await client.get(
                "/adventures", headers={**USER, "X-Api-Secret": TEST_SECRET}
            )
            assert resp.status == 200
        finally:
            await client.close()


# -- Adventures --------------------------------------------------------------


async def test_create_list_get_delete_adventure(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        resp = await client.post(
            "/adventures",
            json={"name": "Crown of Ash", "description": "A royal murder.", "playerCount": 2},
            headers=USER,
        )
        assert resp.status == 201
        created = await resp.json()
        assert created["name"] == "Crown of Ash"
        assert created["player_count"] == 2

        resp = await client.get("/adventures", headers=USER)
        assert [a["id"] for a in await resp.json()] == [created["id"]]

        resp = await client.get(f"/adventures/{created['id']}", headers=OTHER)
        assert resp.status == 404

        resp = await client.get(f"/adventures/{created['id']}", headers=USER)
        assert resp.status == 200

        resp = await client.delete(f"/adventures/{created['id']}", headers=USER)
        assert resp.status == 200
        resp = await client.get(f"/adventures/{created['id']}", headers=USER)
        assert resp.status == 404
    finally:
        await client.close()


async def test_create_adventure_requires_name(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        resp = await client.post("/adventures", json={"description": "x"}, headers=USER)
        assert resp.status == 400
    finally:
        await client.close()


async def test_create_adventure_invalid_json(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        resp = await client.post("/adventures", data="not json", headers=USER)
        assert resp.status == 400
    finally:
        await client.close()


# -- Memories ----------------------------------------------------------------


async def test_memory_crud(store: AdventureStore) -> None:
    adventure = await store.create_adventure("user1", "Quest")
    client = await _make_client(store)
    base = f"/adventures/{adventure.id}/memories"
    try:
        resp = await client.post(
            base, json={"text": "The king is dead", "tags": ["king", "king"]}, headers=USER
        )
        assert resp.status == 201
        memory = await resp.json()
        assert memory["tags"] == ["king"]

        resp = await client.get(base, headers=USER)
        assert [m["id"] for m in await resp.json()] == [memory["id"]]

        resp = await client.put(
            f"{base}/{memory['id']}", json={"text": "The king lives", "tags": ["twist"]},
            headers=USER,
        )
        assert resp.status == 200
        data = await resp.json()
        assert data["memory"]["text"] == "The king lives"
        assert data["memory"]["tags"] == ["twist"]
        assert len(data["allMemories"]) == 1

        resp = await client.delete(f"{base}/{memory['id']}", headers=USER)
        assert resp.status == 200
        assert (await resp.json())["remainingMemories"] == []

        resp = await client.delete(f"{base}/{memory['id']}", headers=USER)
        assert resp.status == 404
    finally:
        await client.close()


async def test_memory_validation(store: AdventureStore) -> None:
    adventure = await store.create_adventure("user1", "Quest")
    client = await _make_client(store)
    base = f"/adventures/{adventure.id}/memories"
    try:
        resp = await client.post(base, json={"text": "  "}, headers=USER)
        assert resp.status == 400

        resp = await client.post(base, json={"text": "ok", "tags": "king"}, headers=USER)
        assert resp.status == 400

        resp = await client.put(f"{base}/missing", json={"text": "x"}, headers=USER)
        assert resp.status == 404

        resp = await client.put(f"{base}/missing", json={}, headers=USER)
        assert resp.status == 400
    finally:
        await client.close()


async def test_memories_hidden_from_other_users(store: AdventureStore) -> None:
    adventure = await store.create_adventure("user1", "Quest")
    await store.append_memory(adventure.id, MemoryRecord(text="secret"))
    client = await _make_client(store)
    try:
        resp = await client.get(f"/adventures/{adventure.id}/memories", headers=OTHER)
        assert resp.status == 404
    finally:
        await client.close()


# -- Turns -------------------------------------------------------------------


async def test_post_message_returns_reply_and_memory_report(store: AdventureStore) -> None:
    reply = ConversationTurn(role="assistant", content="The torch flickers.")
    saved = MemoryRecord(text="A hidden dagger was found", tags=["dagger"])
    recalled = MemoryRecord(id="m1", text="The king is dead", tags=["king"])
    orchestrator = _orchestrator(
        return_value=TurnResult(assistant_turn=reply, saved=[saved], recalled=[recalled])
    )
    client = await _make_client(store, orchestrator)
    try:
        resp = await client.post(
            "/adventures/adv1/messages", json={"messageContent": "I search"}, headers=USER
        )
        assert resp.status == 200
        data = await resp.json()
        assert data["message"]["content"] == "The torch flickers."
        assert [m["text"] for m in data["memoryOperations"]["saved"]] == [
            "A hidden dagger was found"
        ]
        assert [m["id"] for m in data["memoryOperations"]["recalled"]] == ["m1"]
        orchestrator.process_turn.assert_awaited_once_with("adv1", "user1", "I search")
    finally:
        await client.close()


async def test_post_message_requires_content(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        resp = await client.post("/adventures/adv1/messages", json={}, headers=USER)
        assert resp.status == 400
    finally:
        await client.close()


async def test_post_message_error_mapping(store: AdventureStore) -> None:
    cases = [
        (AdventureNotFoundError("adv1"), 404),
        (NarrativeConfigurationError("Anthropic API key not configured."), 500),
        (NarrativeServiceError("overloaded", status_code=529), 502),
        (aiosqlite.OperationalError("database is locked"), 503),
    ]
    for exc, status in cases:
        client = await _make_client(store, _orchestrator(side_effect=exc))
        try:
            resp = await client.post(
                "/adventures/adv1/messages", json={"messageContent": "Hi"}, headers=USER
            )
            assert resp.status == status, type(exc).__name__
        finally:
            await client.close()


async def test_storage_error_on_memory_route_returns_json_503(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        with patch.object(
            store, "owns_adventure", AsyncMock(side_effect=aiosqlite.OperationalError("locked"))
        ):
            resp = await client.get("/adventures/a1/memories", headers=USER)
        assert resp.status == 503
        assert await resp.json() == {"msg": "Storage unavailable"}
    finally:
        await client.close()


async def test_storage_error_on_adventure_list_returns_503(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        with patch.object(
            store, "list_adventures", AsyncMock(side_effect=aiosqlite.DatabaseError("corrupt"))
        ):
            resp = await client.get("/adventures", headers=USER)
        assert resp.status == 503
        assert (await resp.json())["msg"] == "Storage unavailable"
    finally:
        await client.close()


async def test_create_adventure_player_count_validation(store: AdventureStore) -> None:
    client = await _make_client(store)
    try:
        for bad in (0, -2, True, "3"):
            resp = await client.post(
                "/adventures", json={"name": "Quest", "playerCount": bad}, headers=USER
            )
            assert resp.status == 400, bad

        resp = await client.post(
            "/adventures", json={"name": "Quest", "playerCount": None}, headers=USER
        )
        assert resp.status == 201
        assert (await resp.json())["player_count"] == 1
    finally:
        await client.close()


# -- Characters --------------------------------------------------------------

MIRA = {
    "name": "Mira",
    "race": "Elf",
    "characterClass": "Rogue",
    "stats": {"dexterity": 18, "constitution": 12},
    "traits": [{"name": "Darkvision"}],
}


async def test_character_crud(store: AdventureStore) -> None:
    adventure = await store.create_adventure("user1", "Quest")
    client = await _make_client(store)
    base = f"/adventures/{adventure.id}/characters"
    try:
        resp = await client.post(base, json=MIRA, headers=USER)
        assert resp.status == 201
        created = await resp.json()
        assert created["id"]
        assert created["class"] == "Rogue"
        assert "characterClass" not in created
        assert created["level"] == 1
        assert created["traits"][0]["name"] == "Darkvision"
        assert created["traits"][0]["id"]
        assert "hitPoints" not in created

        resp = await client.get(base, headers=USER)
        assert [c["id"] for c in await resp.json()] == [created["id"]]

        resp = await client.get(f"{base}/{created['id']}", headers=USER)
        assert (await resp.json())["name"] == "Mira"

        resp = await client.put(
            f"{base}/{created['id']}",
            json={"level": 2, "hitPoints": {"current": 9, "maximum": 14}, "id": "hijack"},
            headers=USER,
        )
        assert resp.status == 200
        updated = await resp.json()
        assert updated["id"] == created["id"]
        assert updated["level"] == 2
        assert updated["hitPoints"] == {"current": 9, "maximum": 14}
        assert updated["race"] == "Elf"

        resp = await client.delete(f"{base}/{created['id']}", headers=USER)
        assert resp.status == 200
        assert (await resp.json())["characterId"] == created["id"]

        resp = await client.get(f"{base}/{created['id']}", headers=USER)
        assert resp.status == 404
        resp = await client.delete(f"{base}/{created['id']}", headers=USER)
        assert resp.status == 404
    finally:
        await client.close()


async def test_character_validation(store: AdventureStore) -> None:
    adventure = await store.create_adventure("user1", "Quest")
    client = await _make_client(store)
    base = f"/adventures/{adventure.id}/characters"
    try:
        resp = await client.post(base, json={"name": "Mira", "race": "Elf"}, headers=USER)
        assert resp.status == 400

        resp = await client.post(base, json={**MIRA, "stats": "high"}, headers=USER)
        assert resp.status == 400

        resp = await client.post(base, json={**MIRA, "traits": "sneaky"}, headers=USER)
        assert resp.status == 400

        resp = await client.put(f"{base}/missing", json={"level": 3}, headers=USER)
        assert resp.status == 404

        resp = await client.post(base, json=MIRA, headers=OTHER)
        assert resp.status == 404
    finally:
        await client.close()


async def test_created_character_is_stored_on_adventure(store: AdventureStore) -> None:
    adventure = await store.create_adventure("user1", "Quest")
    client = await _make_client(store)
    try:
        await client.post(f"/adventures/{adventure.id}/characters", json=MIRA, headers=USER)
    finally:
        await client.close()

    stored = await store.get_adventure(adventure.id, "user1")
    assert [c["name"] for c in stored.characters] == ["Mira"]
