from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from relay_orchestrator.config import settings
from relay_orchestrator.services.errors import PersistenceFailure
from relay_orchestrator.services.interfaces import SessionState
from relay_orchestrator.services.registry import (
    USERS_KEY,
    KnowledgeBase,
    UserRegistry,
    repair_user_record,
)


class TestUserRegistry:

    @pytest.mark.asyncio
    async def test_ensure_creates_once(self, registry: UserRegistry) -> None:
        record, created = await registry.ensure(42, "Ada", "ada")
        assert created
        assert record["sessionStatus"] == SessionState.UNPAIRED.value
        assert record["interactionCount"] == 0

        again, created_again = await registry.ensure("42", "Ada Lovelace")
        assert not created_again
        assert again["displayName"] == "Ada"

    @pytest.mark.asyncio
    async def test_edit_unknown_user_raises(self, registry: UserRegistry) -> None:
        with pytest.raises(KeyError):
            async with registry.edit("nobody"):
                pass

    @pytest.mark.asyncio
    async def test_set_session_status_ignores_unknown_user(self, registry: UserRegistry) -> None:
        await registry.set_session_status("nobody", SessionState.ACTIVE)
        assert await registry.get("nobody") is None

    @pytest.mark.asyncio
    async def test_set_session_status_survives_write_failure(self, store, registry: UserRegistry) -> None:
        await registry.ensure(42, "Ada")
        with patch.object(store, "write", side_effect=PersistenceFailure(USERS_KEY, "disk full")):
            await registry.set_session_status(42, SessionState.ACTIVE)
        assert (await registry.get(42))["sessionStatus"] == SessionState.UNPAIRED.value

    @pytest.mark.asyncio
    async def test_count_interaction_is_idempotent_per_message_id(self, registry: UserRegistry) -> None:
        await registry.ensure(42, "Ada")
        assert await registry.count_interaction(42, message_id=100) == 1
        assert await registry.count_interaction(42, message_id=100) is None
        assert await registry.count_interaction(42, message_id=101) == 2
        assert (await registry.get(42))["interactionCount"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_counts_are_serialized(self, registry: UserRegistry) -> None:
        await registry.ensure(42, "Ada")
        await asyncio.gather(*(registry.count_interaction(42, message_id=i) for i in range(20)))
        assert (await registry.get(42))["interactionCount"] == 20

    @pytest.mark.asyncio
    async def test_claim_nudge_only_once(self, registry: UserRegistry) -> None:
        await registry.ensure(42, "Ada")
        results = await asyncio.gather(*(registry.claim_nudge(42) for _ in range(5)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_history_is_capped(self, registry: UserRegistry) -> None:
        await registry.ensure(42, "Ada")
        for n in range(settings.CONVERSATION_HISTORY_LIMIT):
            await registry.append_turns(42, f"q{n}", f"a{n}")

        history = (await registry.get(42))["conversationHistory"]
        assert len(history) == settings.CONVERSATION_HISTORY_LIMIT
        assert history[-1] == {"role": "assistant", "content": f"a{settings.CONVERSATION_HISTORY_LIMIT - 1}"}

    @pytest.mark.asyncio
    async def test_insights_are_appended(self, registry: UserRegistry) -> None:
        await registry.ensure(42, "Ada")
        await registry.append_insight(42, "first", 10)
        await registry.append_insight(42, "second", 20)
        insights = (await registry.get(42))["insights"]
        assert [i["insights"] for i in insights] == ["first", "second"]
        assert insights[1]["messageCount"] == 20

    @pytest.mark.asyncio
    async def test_repair_migrates_legacy_records(self, store, registry: UserRegistry) -> None:
        await store.save(USERS_KEY, {"users": {
            "7": {"firstName": "Bola", "messageCount": "4", "whatsappConnected": True},
            "8": "garbage",
            "9": {"displayName": "Chi"},
        }})

        assert await registry.repair() == 3

        users = await registry.all()
        assert users["7"]["displayName"] == "Bola"
        assert users["7"]["interactionCount"] == 4
        assert users["7"]["sessionStatus"] == SessionState.ACTIVE.value
        assert "firstName" not in users["7"]
        assert users["8"]["displayName"] == "Friend"
        assert users["9"]["insights"] == []

        assert await registry.repair() == 0


def test_repair_resets_unknown_status() -> None:
    record = {"displayName": "Ada", "sessionStatus": "connected"}
    assert repair_user_record("1", record)
    assert record["sessionStatus"] == SessionState.UNPAIRED.value


class TestKnowledgeBase:

    @pytest.mark.asyncio
    async def test_defaults_then_custom_info(self, knowledge: KnowledgeBase) -> None:
        loaded = await knowledge.load()
        assert loaded["groupName"] == settings.COMMUNITY_NAME
        assert loaded["customInfo"] == []

        await knowledge.add_info("Sunday service starts at 9am")
        assert (await knowledge.load())["customInfo"] == ["Sunday service starts at 9am"]
