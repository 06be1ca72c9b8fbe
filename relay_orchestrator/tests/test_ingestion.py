from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from relay_orchestrator.services.errors import PersistenceFailure
from relay_orchestrator.services.ingestion import (
    SEEN_IDS_LIMIT,
    MessageIngestionPipeline,
    conversation_window,
    normalize_event,
)
from relay_orchestrator.tests.fakes import OPERATOR_ID, wa_message

NOW = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)


class TestNormalizeEvent:

    def test_plain_conversation(self) -> None:
        record = normalize_event(wa_message("hello", msg_id="X1"), now=NOW)
        assert record.text == "hello"
        assert record.direction == "inbound"
        assert record.counterpart == "2348012345678"
        assert record.chat_id == "2348012345678@s.whatsapp.net"
        assert record.timestamp == NOW.isoformat()
        assert record.message_id == "X1"

    def test_from_me_is_outbound(self) -> None:
        assert normalize_event(wa_message("on my way", from_me=True), now=NOW).direction == "outbound"

    @pytest.mark.parametrize(
        "message",
        [
            {"extendedTextMessage": {"text": "see https://example.org"}},
            {"imageMessage": {"caption": "see https://example.org", "mimetype": "image/jpeg"}},
            {"videoMessage": {"caption": "see https://example.org"}},
        ],
    )
    def test_text_from_other_message_kinds(self, message) -> None:
        payload = {"key": {"remoteJid": "1@s.whatsapp.net"}, "message": message}
        assert normalize_event(payload, now=NOW).text == "see https://example.org"

    @pytest.mark.parametrize(
        "payload",
        [
            {"key": {"remoteJid": "1@s.whatsapp.net"}},
            {"key": {"remoteJid": "1@s.whatsapp.net"}, "message": None},
            {"key": {"remoteJid": "1@s.whatsapp.net"}, "message": {"stickerMessage": {}}},
            {"key": {"remoteJid": "1@s.whatsapp.net"}, "message": {"conversation": "   "}},
            {"key": {}, "message": {"conversation": "orphan"}},
            wa_message("family chat", jid="120363012345@g.us"),
            wa_message("status", jid="status@broadcast"),
            wa_message("channel post", jid="1203630@newsletter"),
        ],
    )
    def test_noise_is_dropped(self, payload) -> None:
        assert normalize_event(payload, now=NOW) is None


class TestMessageIngestionPipeline:

    def _pipeline(self, store, operator, dispatcher=None) -> MessageIngestionPipeline:
        return MessageIngestionPipeline(store, operator, dispatcher, analysis_every=10, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_contact_aggregate_counts_and_group_is_ignored(self, store, operator) -> None:
        pipeline = self._pipeline(store, operator)
        for n in range(5):
            assert await pipeline.ingest(42, "Ada", wa_message(f"message {n}", msg_id=f"m{n}")) == n + 1

        before = await pipeline.load(42)
        assert before["contacts"]["2348012345678"]["messageCount"] == 5
        assert before["contacts"]["2348012345678"]["lastMessage"] == "message 4"

        assert await pipeline.ingest(42, "Ada", wa_message("group hello", jid="120363@g.us", msg_id="g1")) is None
        after = await pipeline.load(42)
        assert after["messages"] == before["messages"]
        assert after["contacts"] == before["contacts"]

    @pytest.mark.asyncio
    async def test_replay_is_append_only(self, store, operator) -> None:
        pipeline = self._pipeline(store, operator)
        events = [wa_message(f"m{n}", msg_id=f"id{n}") for n in range(4)]
        for event in events:
            await pipeline.ingest(42, "Ada", event)
        first = (await pipeline.load(42))["messages"]

        for event in reversed(events):
            assert await pipeline.ingest(42, "Ada", event) is None
        await pipeline.ingest(42, "Ada", wa_message("m4", msg_id="id4"))

        messages = (await pipeline.load(42))["messages"]
        assert messages[: len(first)] == first
        assert [m["text"] for m in messages] == ["m0", "m1", "m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_concurrent_ingests_lose_nothing(self, store, operator) -> None:
        pipeline = self._pipeline(store, operator)
        await asyncio.gather(
            *(pipeline.ingest(42, "Ada", wa_message(f"m{n}", msg_id=f"id{n}")) for n in range(25))
        )
        conv = await pipeline.load(42)
        assert len(conv["messages"]) == 25
        assert conv["contacts"]["2348012345678"]["messageCount"] == 25

    @pytest.mark.asyncio
    async def test_dispatcher_called_on_every_tenth_record(self, store, operator) -> None:
        dispatcher = MagicMock()
        pipeline = self._pipeline(store, operator, dispatcher)
        for n in range(21):
            await pipeline.ingest(42, "Ada", wa_message(f"m{n}", msg_id=f"id{n}"))

        counts = [c.args[2] for c in dispatcher.on_message_count.call_args_list]
        assert counts == [10, 20]

    @pytest.mark.asyncio
    async def test_dispatcher_error_does_not_fail_ingest(self, store, operator) -> None:
        dispatcher = MagicMock()
        dispatcher.on_message_count.side_effect = RuntimeError("boom")
        pipeline = MessageIngestionPipeline(store, operator, dispatcher, analysis_every=1, clock=lambda: NOW)
        assert await pipeline.ingest(42, "Ada", wa_message("hi")) == 1

    @pytest.mark.asyncio
    async def test_each_record_is_relayed_to_operator(self, store, operator, frontend) -> None:
        pipeline = self._pipeline(store, operator)
        await pipeline.ingest(42, "Ada", wa_message("are we still on for tonight?", from_me=True))

        relayed = frontend.texts_to(OPERATOR_ID)
        assert len(relayed) == 1
        assert "are we still on for tonight?" in relayed[0]
        assert "SENT" in relayed[0]

    @pytest.mark.asyncio
    async def test_persistence_failure_drops_the_event(self, store, operator, frontend) -> None:
        pipeline = self._pipeline(store, operator)
        with patch.object(store, "write", side_effect=PersistenceFailure("conversations/42", "disk full")):
            assert await pipeline.ingest(42, "Ada", wa_message("hi")) is None
        assert frontend.texts == []

    @pytest.mark.asyncio
    async def test_seen_ids_are_bounded(self, store, operator) -> None:
        pipeline = self._pipeline(store, operator)
        for n in range(SEEN_IDS_LIMIT + 5):
            await pipeline.ingest(42, "Ada", wa_message("x", msg_id=f"id{n}"))
        conv = await pipeline.load(42)
        assert len(conv["seenIds"]) == SEEN_IDS_LIMIT
        assert conv["seenIds"][0] == "id5"


def test_conversation_window_takes_most_recent() -> None:
    conv = {"messages": [{"text": str(n)} for n in range(30)]}
    window = conversation_window(conv, 20)
    assert [m["text"] for m in window] == [str(n) for n in range(10, 30)]
