from __future__ import annotations

import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from relay_orchestrator.config import messages, prompts
from relay_orchestrator.services.commands import CommandRouter, parse_command
from relay_orchestrator.services.interfaces import SessionState, SweepReport
from relay_orchestrator.services.triggers import TriggerDispatcher
from relay_orchestrator.tests.fakes import OPERATOR_ID, FakeSleep


def _update(user_id, text, *, message_id=1, first_name="Ada", username="ada"):
    return {
        "update_id": message_id,
        "message": {
            "message_id": message_id,
            "from": {"id": user_id, "first_name": first_name, "username": username},
            "chat": {"id": user_id},
            "text": text,
        },
    }


@pytest.fixture
def sessions():
    sessions = MagicMock()
    sessions.is_active.return_value = False
    sessions.start = AsyncMock()
    sessions.get.return_value = None
    sessions.machines.return_value = []
    return sessions


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock()
    dispatcher.on_interaction = AsyncMock(return_value=False)
    dispatcher.run_scripture_sweep = AsyncMock(return_value=SweepReport(delivered=["1"], skipped=["2"]))
    return dispatcher


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def router(store, registry, knowledge, llm, frontend, operator, dispatcher, sessions, sleep) -> CommandRouter:
    return CommandRouter(
        store=store,
        registry=registry,
        knowledge=knowledge,
        llm=llm,
        frontend=frontend,
        operator=operator,
        dispatcher=dispatcher,
        sessions=sessions,
        sleep=sleep,
        rng=random.Random(1),
        broadcast_spacing=0.5,
    )


def test_parse_command() -> None:
    assert parse_command("/addinfo@RelayBot Sunday at 9") == ("/addinfo", "Sunday at 9")
    assert parse_command("/STATS") == ("/stats", "")


class TestUserFlow:

    @pytest.mark.asyncio
    async def test_start_registers_and_greets(self, router, registry, frontend, llm) -> None:
        await router.handle_update(_update(42, "/start"))

        record = await registry.get(42)
        assert record["displayName"] == "Ada"
        assert record["interactionCount"] == 1
        assert frontend.texts_to(42) == [llm.reply]
        assert any("New User" in t for t in frontend.texts_to(OPERATOR_ID))
        system_prompt = llm.completions[0][0]
        assert prompts.FIRST_MEETING_INJECTION.format(name="Ada") in system_prompt

    @pytest.mark.asyncio
    async def test_second_start_is_not_a_new_user(self, router, frontend) -> None:
        await router.handle_update(_update(42, "/start", message_id=1))
        await router.handle_update(_update(42, "/start", message_id=2))
        assert sum("New User" in t for t in frontend.texts_to(OPERATOR_ID)) == 1

    @pytest.mark.asyncio
    async def test_text_before_start_is_refused(self, router, frontend, llm) -> None:
        await router.handle_update(_update(42, "hello"))
        assert frontend.texts_to(42) == [messages.PLEASE_START_FIRST]
        assert llm.completions == []

    @pytest.mark.asyncio
    async def test_chat_reply_counts_and_relays(self, router, registry, frontend, llm, dispatcher) -> None:
        await router.handle_update(_update(42, "/start", message_id=1))
        await router.handle_update(_update(42, "I feel anxious today", message_id=2))

        record = await registry.get(42)
        assert record["interactionCount"] == 2
        assert record["conversationHistory"][-2:] == [
            {"role": "user", "content": "I feel anxious today"},
            {"role": "assistant", "content": llm.reply},
        ]
        dispatcher.on_interaction.assert_awaited_once_with(42, "Ada", 2, SessionState.UNPAIRED.value)
        _, history, user_text = llm.completions[-1]
        assert user_text == "I feel anxious today"
        assert history == [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": llm.reply}]
        assert any("I feel anxious today" in t for t in frontend.texts_to(OPERATOR_ID))

    @pytest.mark.asyncio
    async def test_redelivered_update_is_counted_once(self, router, registry, frontend, dispatcher) -> None:
        await router.handle_update(_update(42, "/start", message_id=1))
        await router.handle_update(_update(42, "hello", message_id=2))
        await router.handle_update(_update(42, "hello", message_id=2))

        assert (await registry.get(42))["interactionCount"] == 2
        assert dispatcher.on_interaction.await_count == 1
        assert len(frontend.texts_to(42)) == 2

    @pytest.mark.asyncio
    async def test_llm_failure_uses_fallback_reply(self, router, frontend, llm) -> None:
        await router.handle_update(_update(42, "/start", message_id=1))
        llm.fail_complete = True
        await router.handle_update(_update(42, "are you there?", message_id=2))

        reply = frontend.texts_to(42)[-1]
        assert reply in [r.format(name="Ada") for r in prompts.FALLBACK_RESPONSES]

    @pytest.mark.asyncio
    async def test_connect_starts_pairing(self, router, frontend, sessions) -> None:
        await router.handle_update(_update(42, "/start", message_id=1))
        await router.handle_update(_update(42, "/connect", message_id=2))

        sessions.start.assert_awaited_once_with(42, "Ada")
        assert frontend.texts_to(42)[-1] == messages.PAIRING_SETUP

    @pytest.mark.asyncio
    async def test_connect_when_already_active(self, router, frontend, sessions) -> None:
        await router.handle_update(_update(42, "/start", message_id=1))
        sessions.is_active.return_value = True
        await router.handle_update(_update(42, "/connect", message_id=2))

        sessions.start.assert_not_awaited()
        assert frontend.texts_to(42)[-1] == messages.PAIRING_ALREADY_ACTIVE

    @pytest.mark.asyncio
    async def test_updates_without_text_are_ignored(self, router, frontend) -> None:
        await router.handle_update({"update_id": 1, "message": {"from": {"id": 42}, "sticker": {}}})
        await router.handle_update({"update_id": 2, "edited_message": {"text": "x"}})
        assert frontend.texts == []


class TestThirdMessageNudge:

    @pytest.mark.asyncio
    async def test_third_message_starts_pairing(
        self, store, registry, knowledge, llm, frontend, operator, sessions
    ) -> None:
        dispatcher = TriggerDispatcher(store, registry, llm, frontend, operator, sessions=sessions, nudge_at=3)
        router = CommandRouter(
            store=store, registry=registry, knowledge=knowledge, llm=llm, frontend=frontend,
            operator=operator, dispatcher=dispatcher, sessions=sessions,
        )

        await router.handle_update(_update(42, "/start", message_id=1))
        await router.handle_update(_update(42, "hello", message_id=2))
        sessions.start.assert_not_awaited()
        await router.handle_update(_update(42, "tell me more", message_id=3))
        await router.handle_update(_update(42, "tell me more", message_id=3))
        await router.handle_update(_update(42, "and more", message_id=4))

        sessions.start.assert_awaited_once_with(42, "Ada")
        assert frontend.texts_to(42).count(messages.PAIRING_SETUP) == 1


class TestOperatorCommands:

    @pytest.mark.asyncio
    async def test_plain_text_from_operator_is_ignored(self, router, frontend, llm) -> None:
        await router.handle_update(_update(OPERATOR_ID, "hello bot"))
        assert frontend.texts == []
        assert llm.completions == []

    @pytest.mark.asyncio
    async def test_start_and_unknown_show_panel(self, router, frontend) -> None:
        await router.handle_update(_update(OPERATOR_ID, "/start"))
        await router.handle_update(_update(OPERATOR_ID, "/whatever"))
        assert frontend.texts_to(OPERATOR_ID) == [messages.ADMIN_PANEL, messages.ADMIN_PANEL]

    @pytest.mark.asyncio
    async def test_addinfo_and_viewinfo(self, router, knowledge, frontend) -> None:
        await router.handle_update(_update(OPERATOR_ID, "/addinfo Sunday service at 9am"))
        await router.handle_update(_update(OPERATOR_ID, "/addinfo"))
        await router.handle_update(_update(OPERATOR_ID, "/viewinfo"))

        assert (await knowledge.load())["customInfo"] == ["Sunday service at 9am"]
        added, usage, view = frontend.texts_to(OPERATOR_ID)
        assert "Sunday service at 9am" in added
        assert usage == messages.ADMIN_USAGE_ADDINFO
        assert "1. Sunday service at 9am" in view

    @pytest.mark.asyncio
    async def test_stats_and_users(self, router, registry, frontend) -> None:
        await registry.ensure(1, "Ada", "ada")
        await registry.ensure(2, "Bola", "")
        await registry.set_session_status(1, SessionState.ACTIVE)

        await router.handle_update(_update(OPERATOR_ID, "/stats"))
        await router.handle_update(_update(OPERATOR_ID, "/users"))

        stats, users = frontend.texts_to(OPERATOR_ID)
        assert "Total: 2" in stats
        assert "WhatsApp Connected: 1" in stats
        assert "Ada (@ada)" in users
        assert "Bola (@no_username)" in users

    @pytest.mark.asyncio
    async def test_admin_dashboard(self, router, frontend) -> None:
        await router.handle_update(_update(OPERATOR_ID, "/admin"))
        (dashboard,) = frontend.texts_to(OPERATOR_ID)
        assert "Admin WhatsApp: off" in dashboard
        assert "not scheduled" in dashboard

    @pytest.mark.asyncio
    async def test_sendscripture_forces_a_sweep(self, router, dispatcher, frontend) -> None:
        await router.handle_update(_update(OPERATOR_ID, "/sendscripture"))

        dispatcher.run_scripture_sweep.assert_awaited_once_with(force=True)
        started, done = frontend.texts_to(OPERATOR_ID)
        assert started == messages.ADMIN_SCRIPTURE_STARTED
        assert done == messages.ADMIN_SCRIPTURE_DONE.format(delivered=1, skipped=1, failed=0)

    @pytest.mark.asyncio
    async def test_broadcast_is_spaced_and_survives_failures(self, router, registry, frontend, sleep) -> None:
        for uid in (1, 2, 3):
            await registry.ensure(uid, f"user{uid}")
        frontend.fail_text_for.add("2")

        await router.handle_update(_update(OPERATOR_ID, "/broadcast Service moved to 10am"))

        assert sleep.calls == [0.5, 0.5]
        assert "Service moved to 10am" in frontend.texts_to(1)[0]
        assert frontend.texts_to(3)
        assert frontend.texts_to(OPERATOR_ID)[-1] == messages.ADMIN_BROADCAST_DONE.format(sent=2, failed=1)

    @pytest.mark.asyncio
    async def test_failing_command_reports_instead_of_raising(self, router, dispatcher, frontend) -> None:
        dispatcher.run_scripture_sweep.side_effect = RuntimeError("store offline")
        await router.handle_update(_update(OPERATOR_ID, "/sendscripture"))
        assert "store offline" in frontend.texts_to(OPERATOR_ID)[-1]

    @pytest.mark.asyncio
    async def test_fixdata(self, router, frontend) -> None:
        await router.handle_update(_update(OPERATOR_ID, "/fixdata"))
        assert frontend.texts_to(OPERATOR_ID) == [messages.ADMIN_FIXED.format(fixed=0)]
