"""Tests for the LLM delegate: failover order, output cleanup and the analysis helpers."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from relay_orchestrator.config import prompts_analyst_problem, settings
from relay_orchestrator.services.delegate import Delegate
from relay_orchestrator.services.errors import ExternalCallFailure, RateLimitError


@pytest.fixture
def chain(monkeypatch):
    monkeypatch.setattr(settings, "LLM_FAILOVER_CHAIN", ["openai", "anthropic"])


class TestFailover:

    def test_primary_first_then_explicit_chain(self, chain) -> None:
        assert Delegate("groq")._get_failover_chain() == ["groq", "openai", "anthropic"]
        assert Delegate("openai")._get_failover_chain() == ["openai", "anthropic"]

    def test_chain_derived_from_configured_keys(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "LLM_FAILOVER_CHAIN", [])
        monkeypatch.setattr(settings, "GROQ_API_KEY", None)
        monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
        monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", None)
        monkeypatch.setattr(settings, "GEMINI_API_KEY", "g-test")
        assert Delegate("groq")._get_failover_chain() == ["groq", "openai", "gemini"]

    def test_falls_over_to_next_provider(self, chain) -> None:
        calls = []

        def dispatch(provider, system_prompt, turns, **kw):
            calls.append(provider)
            if provider == "groq":
                raise RuntimeError("503 from groq")
            return "Peace to you."

        with patch.object(Delegate, "_dispatch", side_effect=dispatch):
            assert Delegate("groq")._generate("sys", [], temperature=0.5, max_tokens=10) == "Peace to you."
        assert calls == ["groq", "openai"]

    def test_empty_output_counts_as_failure(self, chain) -> None:
        outputs = {"groq": "<think>hmm</think>", "openai": "", "anthropic": "Amen."}
        with patch.object(Delegate, "_dispatch", side_effect=lambda p, *a, **k: outputs[p]):
            assert Delegate("groq")._generate("sys", [], temperature=0.5, max_tokens=10) == "Amen."

    def test_all_providers_failing_raises(self, chain) -> None:
        with patch.object(Delegate, "_dispatch", side_effect=RuntimeError("down")):
            with pytest.raises(ExternalCallFailure):
                Delegate("groq")._generate("sys", [], temperature=0.5, max_tokens=10)

    def test_rate_limit_is_not_failed_over(self, chain) -> None:
        error = RateLimitError(provider="groq", retry_after_seconds=12)
        with patch.object(Delegate, "_dispatch", side_effect=error) as dispatch:
            with pytest.raises(RateLimitError) as excinfo:
                Delegate("groq")._generate("sys", [], temperature=0.5, max_tokens=10)
        assert excinfo.value.retry_after_seconds == 12
        assert dispatch.call_count == 1

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError):
            Delegate("mystery")._dispatch("mystery", "sys", [], temperature=0.5, max_tokens=10)

    def test_missing_key_is_a_provider_failure(self, monkeypatch) -> None:
        monkeypatch.setattr(settings, "GROQ_API_KEY", None)
        with pytest.raises(RuntimeError):
            Delegate("groq")._groq_reply("sys", [], temperature=0.5, max_tokens=10)


@pytest.mark.parametrize(
    "raw,clean",
    [
        ("<think>plan the answer</think>Grace and peace.", "Grace and peace."),
        ("<reasoning>x</reasoning>\nHello", "Hello"),
        ("Response: Be still.", "Be still."),
        ("  plain  ", "plain"),
        (None, ""),
    ],
)
def test_clean_output(raw, clean) -> None:
    assert Delegate._clean_output(raw) == clean


class TestPublicApi:

    @pytest.mark.asyncio
    async def test_complete_keeps_only_chat_turns(self) -> None:
        history = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "system", "content": "ignored"},
            {"role": "user", "content": ""},
        ]
        with patch.object(Delegate, "_generate", return_value="ok") as generate:
            assert await Delegate("groq").complete("sys", history, "how are you?") == "ok"

        turns = generate.call_args.args[1]
        assert turns == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "how are you?"},
        ]

    @pytest.mark.asyncio
    async def test_summarize_labels_each_side(self) -> None:
        window = [
            {"text": "coming to church?", "direction": "inbound", "counterpart": "2348011111111"},
            {"text": "yes, see you there", "direction": "outbound", "counterpart": "2348011111111"},
        ]
        with patch.object(Delegate, "_generate", return_value="insight") as generate:
            assert await Delegate("groq").summarize(window, "Ada") == "insight"

        system_prompt, turns = generate.call_args.args
        assert "Ada" in system_prompt
        assert turns[0]["content"] == "2348011111111: coming to church?\nAda: yes, see you there"

    @pytest.mark.asyncio
    async def test_classify_problem_none_when_nothing_found(self) -> None:
        with patch.object(Delegate, "_generate", return_value=prompts_analyst_problem.NO_PROBLEM_MARKER):
            assert await Delegate("groq").classify_problem([{"text": "all good"}], "Ada") is None

    @pytest.mark.asyncio
    async def test_classify_problem_returns_text(self) -> None:
        found = "PROBLEM: Anxiety/Stress\nDETAILS: exams\nSEVERITY: medium"
        with patch.object(Delegate, "_generate", return_value=found):
            assert await Delegate("groq").classify_problem([{"text": "so stressed"}], "Ada") == found
