"""Per-user WhatsApp session lifecycle.

Each session is a small state machine::

    unpaired -> pairing -> active -> disconnected (retryable | terminal)

driven by a queue of typed events and a single consumer task, so transitions for
one session never interleave while different sessions run independently. The
connection handle, the event pump and the reconnect timer belong to the machine
and nothing else touches them.

Every call to ``start`` allocates a new attempt number. Events are stamped with
the attempt that produced them; anything stamped with an older attempt (a late
QR from a replaced socket, a reconnect timer that fired during a fresh start) is
discarded.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from relay_orchestrator.config import messages, settings
from relay_orchestrator.services.errors import PersistenceFailure, TerminalSessionFailure
from relay_orchestrator.services.interfaces import (
    LOGGED_OUT,
    ChallengeIssued,
    ChatFrontend,
    ConnectionClosed,
    ConnectionHandle,
    CredentialsUpdated,
    MessageReceived,
    Paired,
    ReconnectDue,
    SessionClass,
    SessionState,
    SessionTransport,
    StartRequested,
    StopRequested,
)
from relay_orchestrator.services.notifier import OperatorChannel, now_label
from relay_orchestrator.services.pairing import PairingCoordinator
from relay_orchestrator.services.registry import UserRegistry
from relay_orchestrator.utils.document_store import DocumentStore

logger = logging.getLogger(__name__)
audit = logging.getLogger("relay.audit")

OPERATOR_SESSION_ID = "operator"

_UNSET: Any = object()


def session_key(session_id: str) -> str:
    return f"sessions/{session_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclasses.dataclass(frozen=True)
class ReconnectPolicy:
    """Fixed-delay reconnect, with an optional retry cap and optional jitter.

    ``max_retries=None`` retries forever, which against a permanently dead
    network means a reconnect every ``delay_seconds`` for the life of the process.
    """

    delay_seconds: float
    max_retries: Optional[int] = None
    jitter_seconds: float = 0.0

    def next_delay(self, retry_count: int, rng: random.Random | None = None) -> Optional[float]:
        """Delay before retry number ``retry_count + 1``, or None when the cap is reached."""
        if self.max_retries is not None and retry_count >= self.max_retries:
            return None
        delay = self.delay_seconds
        if self.jitter_seconds > 0:
            delay += (rng or random).uniform(0, self.jitter_seconds)
        return delay

    @classmethod
    def for_class(cls, session_class: SessionClass) -> "ReconnectPolicy":
        delay = (
            settings.OPERATOR_RECONNECT_DELAY_SECONDS
            if session_class is SessionClass.OPERATOR
            else settings.USER_RECONNECT_DELAY_SECONDS
        )
        return cls(
            delay_seconds=delay,
            max_retries=settings.RECONNECT_MAX_RETRIES,
            jitter_seconds=settings.RECONNECT_JITTER_SECONDS,
        )


class SessionStateMachine:
    def __init__(
        self,
        session_id: int | str,
        display_name: str,
        *,
        session_class: SessionClass,
        transport: SessionTransport,
        pairing: PairingCoordinator,
        registry: UserRegistry,
        store: DocumentStore,
        operator: OperatorChannel,
        frontend: ChatFrontend,
        ingestion: Any = None,
        policy: ReconnectPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_id = str(session_id)
        self.display_name = display_name or self.session_id
        self.session_class = session_class
        self.policy = policy or ReconnectPolicy.for_class(session_class)

        self._transport = transport
        self._pairing = pairing
        self._registry = registry
        self._store = store
        self._operator = operator
        self._frontend = frontend
        self._ingestion = ingestion
        self._sleep = sleep

        self.state = SessionState.UNPAIRED
        self.terminal = False
        self.attempt = 0
        self.retry_count = 0
        self.last_activity: Optional[str] = None
        self.failure: Optional[TerminalSessionFailure] = None

        self._handle: Optional[ConnectionHandle] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._challenge_delivered = False

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def is_operator(self) -> bool:
        return self.session_class is SessionClass.OPERATOR

    @property
    def chat_id(self) -> int | str | None:
        """Telegram chat that receives this session's QR codes and notices."""
        return self._operator.operator_id if self.is_operator else self.session_id

    @property
    def has_live_handle(self) -> bool:
        return self._handle is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def submit(self, event: Any) -> None:
        self._queue.put_nowait(event)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"session-{self.session_id}")

    def start(self) -> None:
        self.submit(StartRequested())

    async def wait_idle(self) -> None:
        """Block until every queued event has been processed."""
        await self._queue.join()

    async def close(self) -> None:
        """Tear everything down and stop the consumer task."""
        self.submit(StopRequested())
        await self.wait_idle()
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._transition(event)
            except Exception:
                logger.exception("[SESSION] %s: transition on %s failed", self.session_id, type(event).__name__)
            finally:
                self._queue.task_done()

    async def _transition(self, event: Any) -> None:
        if isinstance(event, StartRequested):
            await self._on_start(reconnect=False)
            return
        if isinstance(event, StopRequested):
            await self._on_stop()
            return

        if event.attempt != self.attempt:
            logger.debug(
                "[SESSION] %s: dropped %s from attempt %d (current %d)",
                self.session_id,
                type(event).__name__,
                event.attempt,
                self.attempt,
            )
            return

        if isinstance(event, ReconnectDue):
            await self._on_start(reconnect=True)
        elif isinstance(event, ChallengeIssued):
            await self._on_challenge(event)
        elif isinstance(event, Paired):
            await self._on_paired()
        elif isinstance(event, CredentialsUpdated):
            await self._save_session(credentials=event.credentials)
        elif isinstance(event, ConnectionClosed):
            await self._on_closed(event)
        elif isinstance(event, MessageReceived):
            await self._on_message(event)
        else:
            logger.warning("[SESSION] %s: unknown event %r", self.session_id, event)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _on_start(self, *, reconnect: bool) -> None:
        await self._teardown()
        self.attempt += 1
        if not reconnect:
            self.retry_count = 0
            self.terminal = False
            self.failure = None
        self._challenge_delivered = False
        self.state = SessionState.PAIRING
        attempt = self.attempt

        stored = await self._store.load(session_key(self.session_id), {})
        credentials = stored.get("credentials")
        if not credentials and not self.is_operator:
            await self._record_status(SessionState.PAIRING)

        logger.info(
            "[SESSION] %s: opening attempt %d (%s, retry %d)",
            self.session_id,
            attempt,
            "resume" if credentials else "fresh",
            self.retry_count,
        )
        try:
            handle = await self._transport.open(self.session_id, credentials)
        except Exception as exc:
            logger.warning("[SESSION] %s: open failed: %s", self.session_id, exc)
            await self._retry_or_terminate(f"open failed: {exc}")
            return

        self._handle = handle
        self._pump_task = asyncio.create_task(self._pump(handle, attempt))

    async def _on_challenge(self, event: ChallengeIssued) -> None:
        if self.state is not SessionState.PAIRING:
            return
        if self._challenge_delivered:
            logger.debug("[SESSION] %s: repeat challenge suppressed (attempt %d)", self.session_id, self.attempt)
            return
        self._challenge_delivered = True

        caption = messages.OPERATOR_QR_CAPTION if self.is_operator else messages.PAIRING_QR_CAPTION
        delivered = await self._pairing.issue_challenge(
            self.chat_id,
            self.attempt,
            event.challenge,
            display_name=self.display_name,
            caption=caption,
        )
        if not delivered:
            await self._teardown()
            self.state = SessionState.UNPAIRED
            if not self.is_operator:
                await self._record_status(SessionState.UNPAIRED)
            logger.warning("[SESSION] %s: pairing failed, back to unpaired", self.session_id)

    async def _on_paired(self) -> None:
        if self.state is SessionState.ACTIVE:
            return
        fresh_pairing = self._challenge_delivered
        self.state = SessionState.ACTIVE
        self.retry_count = 0
        self.last_activity = _now_iso()
        self._pairing.resolve(self.chat_id)
        await self._save_session()
        logger.info("[SESSION] %s: active (attempt %d)", self.session_id, self.attempt)

        if self.is_operator:
            await self._operator.notify(messages.OPERATOR_SESSION_CONNECTED)
            return

        await self._record_status(SessionState.ACTIVE)
        if fresh_pairing:
            try:
                await self._frontend.send_text(self.session_id, messages.USER_CONNECTED)
            except Exception as exc:
                logger.warning("[SESSION] %s: could not confirm pairing: %s", self.session_id, exc)
        await self._operator.notify(
            messages.OPERATOR_USER_CONNECTED.format(name=self.display_name, user_id=self.session_id, when=now_label())
        )

    async def _on_closed(self, event: ConnectionClosed) -> None:
        if self.state not in (SessionState.PAIRING, SessionState.ACTIVE):
            return
        await self._teardown()
        if event.reason == LOGGED_OUT:
            await self._terminate(logged_out=True)
        else:
            logger.info("[SESSION] %s: connection closed (%s)", self.session_id, event.reason)
            await self._retry_or_terminate(event.reason)

    async def _on_message(self, event: MessageReceived) -> None:
        if self.state is not SessionState.ACTIVE or self.is_operator or self._ingestion is None:
            return
        self.last_activity = _now_iso()
        # Awaited inline so records are appended in the order the socket delivered them.
        await self._ingestion.ingest(self.session_id, self.display_name, event.payload)

    async def _on_stop(self) -> None:
        await self._teardown()
        self._pairing.resolve(self.chat_id)
        self.state = SessionState.UNPAIRED
        logger.info("[SESSION] %s: stopped", self.session_id)

    # ------------------------------------------------------------------
    # Reconnect supervision
    # ------------------------------------------------------------------

    async def _retry_or_terminate(self, reason: str) -> None:
        delay = self.policy.next_delay(self.retry_count)
        if delay is None:
            await self._terminate(logged_out=False)
            return

        self.retry_count += 1
        self.state = SessionState.DISCONNECTED
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay, self.attempt))
        logger.info(
            "[SESSION] %s: retry %d in %.1fs (%s)",
            self.session_id,
            self.retry_count,
            delay,
            reason,
        )
        await self._save_session()

    async def _reconnect_after(self, delay: float, attempt: int) -> None:
        await self._sleep(delay)
        self.submit(ReconnectDue(attempt=attempt))

    async def _terminate(self, *, logged_out: bool) -> None:
        self._cancel_reconnect()
        self.state = SessionState.DISCONNECTED
        self.terminal = True
        self._pairing.resolve(self.chat_id)

        if logged_out:
            self.failure = TerminalSessionFailure("logged out")
            await self._save_session(credentials=None)
            audit.warning("session_logged_out session=%s attempt=%d", self.session_id, self.attempt)
            logger.warning("[SESSION] %s: %s; no further reconnects", self.session_id, self.failure)
        else:
            self.failure = TerminalSessionFailure(f"gave up after {self.retry_count} retries")
            await self._save_session()
            audit.warning("session_retry_exhausted session=%s retries=%d", self.session_id, self.retry_count)
            logger.error("[SESSION] %s: %s", self.session_id, self.failure)

        if self.is_operator:
            await self._operator.notify(
                messages.OPERATOR_SESSION_LOGGED_OUT
                if logged_out
                else messages.OPERATOR_RETRY_EXHAUSTED.format(
                    name=self.display_name, user_id=self.session_id, retries=self.retry_count
                )
            )
            return

        await self._record_status(SessionState.DISCONNECTED)
        if logged_out:
            try:
                await self._frontend.send_text(self.session_id, messages.USER_LOGGED_OUT)
            except Exception as exc:
                logger.warning("[SESSION] %s: could not send logout notice: %s", self.session_id, exc)
            await self._operator.notify(
                messages.OPERATOR_USER_LOGGED_OUT.format(name=self.display_name, user_id=self.session_id)
            )
        else:
            await self._operator.notify(
                messages.OPERATOR_RETRY_EXHAUSTED.format(
                    name=self.display_name, user_id=self.session_id, retries=self.retry_count
                )
            )

    # ------------------------------------------------------------------
    # Handle ownership
    # ------------------------------------------------------------------

    async def _pump(self, handle: ConnectionHandle, attempt: int) -> None:
        """Forward protocol events into the queue, stamped with *attempt*."""
        reason = "stream_ended"
        try:
            async for event in handle.events():
                self.submit(dataclasses.replace(event, attempt=attempt))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[SESSION] %s: event stream failed: %s", self.session_id, exc)
            reason = f"transport_error: {exc}"
        # Ignored by the machine if a close for this attempt was already handled.
        self.submit(ConnectionClosed(reason=reason, attempt=attempt))

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    async def _teardown(self) -> None:
        self._cancel_reconnect()

        pump, self._pump_task = self._pump_task, None
        if pump is not None and not pump.done():
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                await handle.close()
            except Exception as exc:
                logger.warning("[SESSION] %s: close failed: %s", self.session_id, exc)

    async def _record_status(self, status: SessionState) -> None:
        try:
            await self._registry.set_session_status(self.session_id, status)
        except PersistenceFailure as exc:
            logger.error("[SESSION] %s: could not record status %s: %s", self.session_id, status.value, exc)

    async def _save_session(self, *, credentials: Any = _UNSET) -> None:
        try:
            async with self._store.mutate(session_key(self.session_id), {}) as doc:
                if credentials is not _UNSET:
                    doc["credentials"] = credentials
                doc["sessionClass"] = self.session_class.value
                doc["state"] = self.state.value
                doc["retryCount"] = self.retry_count
                doc["lastActivity"] = self.last_activity
                doc["failure"] = str(self.failure) if self.failure else None
        except PersistenceFailure as exc:
            logger.error("[SESSION] %s: could not persist session: %s", self.session_id, exc)


class SessionManager:
    """Owner of every session machine, addressed by session id."""

    def __init__(
        self,
        *,
        transport: SessionTransport,
        pairing: PairingCoordinator,
        registry: UserRegistry,
        store: DocumentStore,
        operator: OperatorChannel,
        frontend: ChatFrontend,
        ingestion: Any = None,
        policies: Dict[SessionClass, ReconnectPolicy] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._pairing = pairing
        self._registry = registry
        self._store = store
        self._operator = operator
        self._frontend = frontend
        self._ingestion = ingestion
        self._policies = policies or {}
        self._sleep = sleep
        self._machines: Dict[str, SessionStateMachine] = {}

    def get(self, session_id: int | str) -> Optional[SessionStateMachine]:
        return self._machines.get(str(session_id))

    def is_active(self, session_id: int | str) -> bool:
        machine = self.get(session_id)
        return machine is not None and machine.state is SessionState.ACTIVE

    def machines(self) -> List[SessionStateMachine]:
        return list(self._machines.values())

    async def start(
        self,
        session_id: int | str,
        display_name: str = "",
        session_class: SessionClass = SessionClass.USER,
    ) -> SessionStateMachine:
        """Begin a new attempt, replacing any live connection for this session."""
        key = str(session_id)
        machine = self._machines.get(key)
        if machine is None:
            machine = SessionStateMachine(
                key,
                display_name,
                session_class=session_class,
                transport=self._transport,
                pairing=self._pairing,
                registry=self._registry,
                store=self._store,
                operator=self._operator,
                frontend=self._frontend,
                ingestion=self._ingestion,
                policy=self._policies.get(session_class),
                sleep=self._sleep,
            )
            self._machines[key] = machine
        elif display_name:
            machine.display_name = display_name
        machine.start()
        return machine

    async def stop(self, session_id: int | str) -> None:
        machine = self._machines.pop(str(session_id), None)
        if machine is not None:
            await machine.close()

    async def restore(self) -> int:
        """Resume user sessions that were paired (or pairing) when the process stopped."""
        restored = 0
        for user_id, user in (await self._registry.all()).items():
            if user.get("sessionStatus") not in (SessionState.ACTIVE.value, SessionState.PAIRING.value):
                continue
            stored = await self._store.load(session_key(user_id), {})
            if not stored.get("credentials"):
                continue
            await self.start(user_id, user.get("displayName") or "")
            restored += 1
        logger.info("[SESSION] Restored %d user sessions", restored)
        return restored

    async def shutdown(self) -> None:
        machines, self._machines = list(self._machines.values()), {}
        await asyncio.gather(*(m.close() for m in machines), return_exceptions=True)
        logger.info("[SESSION] All sessions closed")
