"""Side-effecting workflows fired by ingestion, chat activity and the wall clock.

* Deep analysis: every Nth WhatsApp record (N=10, at least 10 records) the most
  recent window is summarized and stored as an insight, then relayed to the
  operator. One analysis in flight per user; each crossed boundary fires once.
* Morning scripture: a daily sweep over paired users with enough history. Each
  user gets a verse picked from what the problem classifier saw in their chats.
* Pairing nudge: the third Telegram message of an unpaired user starts a
  WhatsApp pairing attempt, once per user.

Failures inside a trigger are logged here and never reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import pytz

from relay_orchestrator.config import messages, scriptures, settings
from relay_orchestrator.services.errors import PersistenceFailure
from relay_orchestrator.services.ingestion import (
    conversation_key,
    conversation_window,
    empty_conversation,
)
from relay_orchestrator.services.interfaces import (
    ChatFrontend,
    LanguageModel,
    SessionState,
    SweepReport,
)
from relay_orchestrator.services.notifier import OperatorChannel, now_label
from relay_orchestrator.services.registry import UserRegistry
from relay_orchestrator.utils.document_store import DocumentStore

logger = logging.getLogger(__name__)

ANALYSIS = "analysis"
SCRIPTURE = "scripture"


def category_for_problem(problem: Optional[str]) -> str:
    """First category whose keyword occurs in *problem* (case-insensitive)."""
    text = (problem or "").lower()
    for category, keywords in scriptures.CATEGORY_KEYWORDS:
        if any(k in text for k in keywords):
            return category
    return scriptures.DEFAULT_CATEGORY


def select_scripture(category: str, rng: random.Random | None = None) -> Dict[str, str]:
    verses = scriptures.BIBLE_VERSES.get(category) or scriptures.BIBLE_VERSES[scriptures.DEFAULT_CATEGORY]
    return (rng or random).choice(verses)


class TriggerCooldown:
    """Per (user, trigger kind) bookkeeping: in-flight marker, last firing, high-water count."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._in_flight: Set[Tuple[str, str]] = set()
        self._last_fired: Dict[Tuple[str, str], float] = {}
        self._high_water: Dict[Tuple[str, str], int] = {}

    def try_acquire(self, user_id: int | str, kind: str) -> bool:
        key = (str(user_id), kind)
        if key in self._in_flight:
            return False
        self._in_flight.add(key)
        self._last_fired[key] = self._clock()
        return True

    def release(self, user_id: int | str, kind: str) -> None:
        self._in_flight.discard((str(user_id), kind))

    def in_flight(self, user_id: int | str, kind: str) -> bool:
        return (str(user_id), kind) in self._in_flight

    def last_fired(self, user_id: int | str, kind: str) -> Optional[float]:
        return self._last_fired.get((str(user_id), kind))

    def high_water(self, user_id: int | str, kind: str) -> int:
        return self._high_water.get((str(user_id), kind), 0)

    def raise_high_water(self, user_id: int | str, kind: str, value: int) -> None:
        key = (str(user_id), kind)
        self._high_water[key] = max(value, self._high_water.get(key, 0))


class TriggerDispatcher:
    def __init__(
        self,
        store: DocumentStore,
        registry: UserRegistry,
        llm: LanguageModel,
        frontend: ChatFrontend,
        operator: OperatorChannel,
        *,
        sessions: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        analysis_every: int = settings.ANALYSIS_EVERY_N_MESSAGES,
        min_analysis_messages: int = settings.MIN_ANALYSIS_MESSAGES,
        analysis_window: int = settings.ANALYSIS_WINDOW,
        scripture_min_messages: int = settings.SCRIPTURE_MIN_MESSAGES,
        scripture_spacing: float = settings.SCRIPTURE_USER_SPACING_SECONDS,
        scripture_timezone: str = settings.SCRIPTURE_TIMEZONE,
        nudge_at: int = settings.PAIRING_NUDGE_AT_MESSAGE,
    ) -> None:
        self._store = store
        self._registry = registry
        self._llm = llm
        self._frontend = frontend
        self._operator = operator
        # Session manager; attached after construction (it depends on ingestion, which depends on us).
        self.sessions = sessions
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._analysis_every = max(1, analysis_every)
        self._min_analysis = min_analysis_messages
        self._window = analysis_window
        self._scripture_min = scripture_min_messages
        self._spacing = scripture_spacing
        self._tz = pytz.timezone(scripture_timezone)
        self._nudge_at = nudge_at

        self.cooldown = TriggerCooldown()
        self._tasks: Set[asyncio.Task] = set()
        self._sweep_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Deep analysis
    # ------------------------------------------------------------------

    def on_message_count(self, user_id: int | str, display_name: str, count: int) -> Optional[asyncio.Task]:
        """Schedule an analysis if *count* crossed a fresh boundary. Returns the task."""
        if count < self._min_analysis or count % self._analysis_every != 0:
            return None
        if count <= self.cooldown.high_water(user_id, ANALYSIS):
            logger.debug("[TRIGGER] Analysis boundary %d already handled for %s", count, user_id)
            return None
        if not self.cooldown.try_acquire(user_id, ANALYSIS):
            logger.info("[TRIGGER] Analysis already running for %s; skipped at %d", user_id, count)
            return None
        self.cooldown.raise_high_water(user_id, ANALYSIS, count)

        logger.info("[TRIGGER] Analysis for %s at %d records", user_id, count)
        task = asyncio.create_task(self._run_analysis(user_id, display_name))
        self._track(task, lambda: self.cooldown.release(user_id, ANALYSIS))
        return task

    async def _run_analysis(self, user_id: int | str, display_name: str) -> None:
        try:
            conv = await self._store.load(conversation_key(user_id), empty_conversation(user_id, display_name))
            records = conv.get("messages") or []
            if len(records) < self._min_analysis:
                return
            window = conversation_window(conv, self._window)
            insight = (await self._llm.summarize(window, display_name) or "").strip()
            if not insight:
                logger.warning("[TRIGGER] Empty analysis for %s", user_id)
                return

            try:
                await self._registry.append_insight(user_id, insight, len(records))
            except KeyError:
                logger.warning("[TRIGGER] No user record for %s; insight not stored", user_id)

            await self._operator.notify(
                messages.OPERATOR_DEEP_INSIGHTS.format(
                    name=display_name,
                    user_id=user_id,
                    count=len(records),
                    contacts=len(conv.get("contacts") or {}),
                    insights=insight,
                )
            )
        except Exception as exc:
            logger.error("[TRIGGER] Analysis failed for %s: %s", user_id, exc)

    # ------------------------------------------------------------------
    # Morning scripture
    # ------------------------------------------------------------------

    def today(self) -> str:
        return datetime.now(self._tz).date().isoformat()

    async def run_scripture_sweep(self, *, force: bool = False) -> SweepReport:
        """Deliver one scripture to every eligible user, spaced apart."""
        report = SweepReport()
        if self._sweep_lock.locked():
            logger.warning("[SWEEP] A sweep is already running; skipped")
            return report

        async with self._sweep_lock:
            day = self.today()
            eligible = []
            for user_id, user in (await self._registry.all()).items():
                if user.get("sessionStatus") != SessionState.ACTIVE.value:
                    continue
                name = user.get("displayName") or "Friend"
                conv = await self._store.load(conversation_key(user_id), empty_conversation(user_id, name))
                if len(conv.get("messages") or []) < self._scripture_min:
                    report.skipped.append(user_id)
                    continue
                if not force and user.get("lastScriptureDate") == day:
                    report.skipped.append(user_id)
                    continue
                eligible.append((user_id, name, conv))

            logger.info("[SWEEP] %d eligible, %d skipped", len(eligible), len(report.skipped))
            for index, (user_id, name, conv) in enumerate(eligible):
                if index:
                    await self._sleep(self._spacing)
                if not self.cooldown.try_acquire(user_id, SCRIPTURE):
                    report.skipped.append(user_id)
                    continue
                try:
                    await self._deliver_scripture(user_id, name, conv, day)
                    report.delivered.append(user_id)
                except Exception as exc:
                    logger.error("[SWEEP] Delivery to %s failed: %s", user_id, exc)
                    report.failed.append(user_id)
                finally:
                    self.cooldown.release(user_id, SCRIPTURE)

        logger.info(
            "[SWEEP] Done: delivered=%d skipped=%d failed=%d",
            len(report.delivered),
            len(report.skipped),
            len(report.failed),
        )
        return report

    async def _deliver_scripture(self, user_id: str, name: str, conv: Dict[str, Any], day: str) -> None:
        window = conversation_window(conv, self._window)
        try:
            problem = await self._llm.classify_problem(window, name)
        except Exception as exc:
            logger.warning("[SWEEP] Problem detection failed for %s: %s", user_id, exc)
            problem = None

        if problem:
            scripture = select_scripture(category_for_problem(problem), self._rng)
            template, kind = messages.SCRIPTURE_PROBLEM, "Problem-specific"
        else:
            scripture = select_scripture(scriptures.DEFAULT_CATEGORY, self._rng)
            template, kind = messages.SCRIPTURE_GENERAL, "General encouragement"

        await self._frontend.send_text(
            user_id,
            template.format(name=name, verse=scripture["verse"], text=scripture["text"], community=settings.COMMUNITY_NAME),
            markdown=True,
        )
        try:
            await self._registry.mark_scripture_sent(user_id, day)
        except (KeyError, PersistenceFailure) as exc:
            logger.warning("[SWEEP] Could not record delivery for %s: %s", user_id, exc)

        await self._operator.notify(
            messages.OPERATOR_SCRIPTURE_SENT.format(
                name=name, user_id=user_id, kind=kind, verse=scripture["verse"], when=now_label()
            )
        )

    # ------------------------------------------------------------------
    # Pairing nudge
    # ------------------------------------------------------------------

    async def on_interaction(
        self, user_id: int | str, display_name: str, count: int, session_status: str
    ) -> bool:
        """Start pairing on the configured chat message. Returns True if it fired."""
        if count != self._nudge_at or session_status == SessionState.ACTIVE.value:
            return False
        if self.sessions is not None and self.sessions.is_active(user_id):
            return False
        try:
            if not await self._registry.claim_nudge(user_id):
                return False
        except (KeyError, PersistenceFailure) as exc:
            logger.error("[TRIGGER] Nudge claim failed for %s: %s", user_id, exc)
            return False

        logger.info("[TRIGGER] Pairing nudge for %s at message %d", user_id, count)
        try:
            await self._frontend.send_text(user_id, messages.PAIRING_SETUP)
            await self.sessions.start(user_id, display_name)
        except Exception as exc:
            logger.error("[TRIGGER] Pairing start failed for %s: %s", user_id, exc)
            try:
                await self._frontend.send_text(user_id, messages.PAIRING_START_FAILED)
            except Exception as send_exc:
                logger.warning("[TRIGGER] Could not report failure to %s: %s", user_id, send_exc)
            return True

        await self._operator.notify(
            messages.OPERATOR_QR_GENERATED.format(name=display_name, user_id=user_id, count=count)
        )
        return True

    # ------------------------------------------------------------------

    def _track(self, task: asyncio.Task, on_done: Callable[[], None]) -> None:
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            on_done()

        task.add_done_callback(_done)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()
