from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

from relay_orchestrator.config import prompts_analyst_insights, prompts_analyst_problem, settings
from relay_orchestrator.services.errors import ExternalCallFailure, RateLimitError

logger = logging.getLogger(__name__)


def _retry_after(exc: Exception, default: float) -> float:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    try:
        return float(headers.get("retry-after") or default)
    except (TypeError, ValueError):
        return default


class Delegate:
    """LLM calls for companion replies, behavioural summaries and problem detection.

    Provider SDKs are synchronous; every public coroutine runs the provider call in
    a worker thread so one slow completion never stalls other users' sessions.
    """

    def __init__(self, provider: str | None = None) -> None:
        self.provider = (provider or settings.LLM_PROVIDER).lower()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def complete(self, system_prompt: str, history: List[Dict[str, str]], user_text: str) -> str:
        turns = [h for h in history if h.get("role") in {"user", "assistant"} and h.get("content")]
        turns.append({"role": "user", "content": user_text})
        return await asyncio.to_thread(self._generate, system_prompt, turns, temperature=0.8, max_tokens=800)

    async def summarize(self, window: List[Dict[str, Any]], name: str) -> str:
        lines = []
        for record in window:
            sender = name if record.get("direction") == "outbound" else record.get("counterpart", "contact")
            lines.append(f"{sender}: {record.get('text', '')}")
        return await asyncio.to_thread(
            self._generate,
            prompts_analyst_insights.SYSTEM_PROMPT.format(name=name),
            [{"role": "user", "content": "\n".join(lines)}],
            temperature=prompts_analyst_insights.TEMPERATURE,
            max_tokens=prompts_analyst_insights.MAX_TOKENS,
        )

    async def classify_problem(self, window: List[Dict[str, Any]], name: str) -> Optional[str]:
        text = "\n".join(str(r.get("text", "")) for r in window)
        response = await asyncio.to_thread(
            self._generate,
            prompts_analyst_problem.SYSTEM_PROMPT.format(name=name),
            [{"role": "user", "content": text}],
            temperature=prompts_analyst_problem.TEMPERATURE,
            max_tokens=prompts_analyst_problem.MAX_TOKENS,
        )
        if prompts_analyst_problem.NO_PROBLEM_MARKER in response:
            return None
        return response

    # ------------------------------------------------------------------
    # Failover
    # ------------------------------------------------------------------

    def _get_failover_chain(self) -> list[str]:
        """Primary provider first, then the configured (or credentialed) fallbacks."""
        chain = [self.provider]
        explicit = settings.LLM_FAILOVER_CHAIN
        if explicit:
            chain.extend(p for p in explicit if p not in chain)
        else:
            candidates = []
            if settings.GROQ_API_KEY:
                candidates.append("groq")
            if settings.OPENAI_API_KEY:
                candidates.append("openai")
            if settings.ANTHROPIC_API_KEY:
                candidates.append("anthropic")
            if settings.GEMINI_API_KEY:
                candidates.append("gemini")
            chain.extend(p for p in candidates if p not in chain)
        return chain

    def _generate(
        self,
        system_prompt: str,
        turns: List[Dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        last_error: Exception | None = None
        for provider in self._get_failover_chain():
            try:
                cleaned = self._clean_output(
                    self._dispatch(provider, system_prompt, turns, temperature=temperature, max_tokens=max_tokens)
                )
                if cleaned:
                    if provider != self.provider:
                        logger.warning("[FAILOVER] Succeeded on fallback provider: %s", provider)
                    return cleaned
                logger.warning("[FAILOVER] Provider %s returned empty output", provider)
            except RateLimitError:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning("[FAILOVER] Provider %s failed: %s", provider, exc)

        if last_error is not None:
            raise ExternalCallFailure(f"All LLM providers failed: {last_error}") from last_error
        raise ExternalCallFailure("All LLM providers returned empty responses")

    def _dispatch(self, provider: str, system_prompt: str, turns: List[Dict[str, str]], **kw: Any) -> str:
        if provider == "groq":
            return self._groq_reply(system_prompt, turns, **kw)
        elif provider == "openai":
            return self._openai_reply(system_prompt, turns, **kw)
        elif provider == "anthropic":
            return self._anthropic_reply(system_prompt, turns, **kw)
        elif provider == "gemini":
            return self._gemini_reply(system_prompt, turns, **kw)
        else:
            raise ValueError(f"Unsupported LLM provider: {provider}")

    @staticmethod
    def _clean_output(text: str) -> str:
        """Strip reasoning blocks and reply scaffolding some models emit."""
        text = str(text or "")
        text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL | re.IGNORECASE)
        text = re.sub(r"<(thinking|reasoning)>.*?</\1>", "", text, flags=re.DOTALL | re.IGNORECASE)
        text = re.sub(r"^\s*(?:response|reply|message|assistant):\s*", "", text, flags=re.IGNORECASE)
        return text.strip()

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def _chat_completions(self, client: Any, model: str, provider: str, system_prompt: str,
                          turns: List[Dict[str, str]], *, temperature: float, max_tokens: int) -> str:
        import openai

        messages = [{"role": "system", "content": system_prompt}, *turns]
        try:
            resp = client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.RateLimitError as exc:
            raise RateLimitError(provider=provider, retry_after_seconds=_retry_after(exc, 30.0)) from exc
        return (resp.choices[0].message.content or "").strip()

    def _groq_reply(self, system_prompt: str, turns: List[Dict[str, str]], **kw: Any) -> str:
        if not settings.GROQ_API_KEY:
            raise RuntimeError("GROQ_API_KEY is not set")

        from openai import OpenAI

        client = OpenAI(
            api_key=settings.GROQ_API_KEY,
            base_url=settings.GROQ_BASE_URL,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )
        return self._chat_completions(client, settings.GROQ_MODEL, "groq", system_prompt, turns, **kw)

    def _openai_reply(self, system_prompt: str, turns: List[Dict[str, str]], **kw: Any) -> str:
        if not settings.OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY is not set")

        from openai import OpenAI

        client = OpenAI(api_key=settings.OPENAI_API_KEY, timeout=settings.LLM_TIMEOUT_SECONDS)
        return self._chat_completions(client, settings.OPENAI_MODEL, "openai", system_prompt, turns, **kw)

    def _anthropic_reply(self, system_prompt: str, turns: List[Dict[str, str]], *,
                         temperature: float, max_tokens: int) -> str:
        if not settings.ANTHROPIC_API_KEY:
            raise RuntimeError("ANTHROPIC_API_KEY is not set")

        import anthropic

        client = anthropic.Anthropic(api_key=settings.ANTHROPIC_API_KEY, timeout=settings.LLM_TIMEOUT_SECONDS)
        try:
            resp = client.messages.create(
                model=settings.ANTHROPIC_MODEL,
                system=system_prompt,
                messages=turns,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except anthropic.RateLimitError as exc:
            raise RateLimitError(provider="anthropic", retry_after_seconds=_retry_after(exc, 60.0)) from exc
        return "".join(getattr(block, "text", "") for block in resp.content).strip()

    def _gemini_reply(self, system_prompt: str, turns: List[Dict[str, str]], *,
                      temperature: float, max_tokens: int) -> str:
        if not settings.GEMINI_API_KEY:
            raise RuntimeError("GEMINI_API_KEY is not set")

        import google.generativeai as genai

        genai.configure(api_key=settings.GEMINI_API_KEY)
        model = genai.GenerativeModel(settings.GEMINI_MODEL, system_instruction=system_prompt)
        contents = [
            {"role": "model" if t["role"] == "assistant" else "user", "parts": [t["content"]]}
            for t in turns
        ]
        try:
            resp = model.generate_content(
                contents,
                generation_config={"temperature": temperature, "max_output_tokens": max_tokens},
            )
        except Exception as exc:
            msg = str(exc).lower()
            if "429" in msg or "quota" in msg or "rate" in msg:
                retry_after = 30.0
                m = re.search(r"retry in ([0-9]+\.?[0-9]*)s", str(exc), re.IGNORECASE)
                if m:
                    retry_after = float(m.group(1))
                raise RateLimitError(provider="gemini", retry_after_seconds=retry_after) from exc
            raise

        try:
            return (resp.text or "").strip()
        except ValueError:
            # Blocked or empty candidates raise on .text
            return ""
