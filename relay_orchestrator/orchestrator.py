from __future__ import annotations

import warnings
warnings.filterwarnings("ignore", category=FutureWarning, module="google.generativeai")

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Set

from relay_orchestrator.config import settings
from relay_orchestrator.services.commands import CommandRouter
from relay_orchestrator.services.delegate import Delegate
from relay_orchestrator.services.gateway_client import WhatsAppGatewayClient
from relay_orchestrator.services.ingestion import MessageIngestionPipeline
from relay_orchestrator.services.instance_lock import RelayAlreadyRunning, acquire_instance_lock
from relay_orchestrator.services.interfaces import SessionClass
from relay_orchestrator.services.notifier import OperatorChannel
from relay_orchestrator.services.pairing import PairingCoordinator
from relay_orchestrator.services.registry import KnowledgeBase, UserRegistry
from relay_orchestrator.services.scheduler import DailySchedule
from relay_orchestrator.services.session_machine import (
    OPERATOR_SESSION_ID,
    ReconnectPolicy,
    SessionManager,
)
from relay_orchestrator.services.telegram_client import TelegramClient
from relay_orchestrator.services.triggers import TriggerDispatcher
from relay_orchestrator.utils.document_store import DocumentStore

logger = logging.getLogger(__name__)

_PROVIDER_KEYS = {
    "groq": "GROQ_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def _configure_logging() -> None:
    settings.LOG_DIR.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    if any(isinstance(h, logging.FileHandler) for h in root_logger.handlers):
        return

    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(settings.LOG_FILE, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    # httpx logs every long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # Pairing delivery failures and terminal session endings, kept apart for post-mortems
    audit_logger = logging.getLogger("relay.audit")
    audit_logger.propagate = False
    audit_handler = logging.FileHandler(settings.AUDIT_LOG_FILE, encoding="utf-8")
    audit_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)


class RelayOrchestrator:
    """Wires the store, the front end, the gateway and the session machines together."""

    def __init__(self, *, telegram: TelegramClient, gateway: WhatsAppGatewayClient, llm: Delegate) -> None:
        self.telegram = telegram
        self.gateway = gateway
        self.llm = llm

        self.store = DocumentStore(settings.DATA_DIR)
        self.registry = UserRegistry(self.store)
        self.knowledge = KnowledgeBase(self.store)
        self.operator = OperatorChannel(telegram, settings.ADMIN_ID)
        self.pairing = PairingCoordinator(telegram, self.operator)

        self.dispatcher = TriggerDispatcher(self.store, self.registry, llm, telegram, self.operator)
        self.ingestion = MessageIngestionPipeline(self.store, self.operator, self.dispatcher)
        self.sessions = SessionManager(
            transport=gateway,
            pairing=self.pairing,
            registry=self.registry,
            store=self.store,
            operator=self.operator,
            frontend=telegram,
            ingestion=self.ingestion,
            policies={
                SessionClass.USER: ReconnectPolicy.for_class(SessionClass.USER),
                SessionClass.OPERATOR: ReconnectPolicy.for_class(SessionClass.OPERATOR),
            },
        )
        self.dispatcher.sessions = self.sessions

        self.schedule = DailySchedule(
            settings.SCRIPTURE_HOUR,
            settings.SCRIPTURE_TIMEZONE,
            self.dispatcher.run_scripture_sweep,
        )
        self.router = CommandRouter(
            store=self.store,
            registry=self.registry,
            knowledge=self.knowledge,
            llm=llm,
            frontend=telegram,
            operator=self.operator,
            dispatcher=self.dispatcher,
            sessions=self.sessions,
            schedule=self.schedule,
        )

        self._chat_locks: Dict[str, asyncio.Lock] = {}
        self._chat_pending: Dict[str, int] = {}
        self._update_tasks: Set[asyncio.Task] = set()

    async def dispatch_update(self, update: Dict[str, Any]) -> None:
        """Handle updates concurrently across chats, in order within one chat."""
        chat = str(((update.get("message") or {}).get("chat") or {}).get("id", ""))
        lock = self._chat_locks.setdefault(chat, asyncio.Lock())
        self._chat_pending[chat] = self._chat_pending.get(chat, 0) + 1

        async def _handle() -> None:
            async with lock:
                await self.router.handle_update(update)

        task = asyncio.create_task(_handle())
        self._update_tasks.add(task)
        task.add_done_callback(self._on_update_done)
        task.add_done_callback(lambda _: self._release_chat(chat))

    def _release_chat(self, chat: str) -> None:
        remaining = self._chat_pending.get(chat, 1) - 1
        if remaining > 0:
            self._chat_pending[chat] = remaining
            return
        # last queued update for this chat; a later one creates a fresh lock
        self._chat_pending.pop(chat, None)
        self._chat_locks.pop(chat, None)

    def _on_update_done(self, task: asyncio.Task) -> None:
        self._update_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("[TG] Update handling failed", exc_info=task.exception())

    async def run(self, stop_event: asyncio.Event) -> None:
        if settings.ENABLE_OPERATOR_SESSION and settings.ADMIN_ID is not None:
            await self.sessions.start(OPERATOR_SESSION_ID, "Admin", SessionClass.OPERATOR)
        await self.sessions.restore()

        background = [
            asyncio.create_task(self.schedule.run_forever(stop_event), name="scripture-schedule"),
            asyncio.create_task(self.telegram.poll(self.dispatch_update, stop_event), name="telegram-poll"),
        ]
        logger.info("Relay running. Next scripture sweep at %s", self.schedule.next_run().isoformat())

        await stop_event.wait()
        logger.info("Shutting down...")
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await self.shutdown()

    async def shutdown(self) -> None:
        for task in list(self._update_tasks):
            task.cancel()
        await asyncio.gather(*self._update_tasks, return_exceptions=True)
        await self.sessions.shutdown()
        await self.dispatcher.shutdown()
        await self.gateway.aclose()
        await self.telegram.aclose()


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error("[FATAL] Unhandled in event loop: %s", context.get("message"), exc_info=exc)


def _excepthook(exc_type, exc, tb) -> None:
    logger.critical("[FATAL] Uncaught exception", exc_info=(exc_type, exc, tb))


async def _main() -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_loop_exception_handler)

    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still reaches asyncio.run
            pass

    relay = RelayOrchestrator(
        telegram=TelegramClient(),
        gateway=WhatsAppGatewayClient(),
        llm=Delegate(),
    )
    await relay.run(stop_event)


def run() -> None:
    _configure_logging()
    sys.excepthook = _excepthook
    logger = logging.getLogger("relay_orchestrator")

    if not settings.TELEGRAM_TOKEN:
        logger.error("TELEGRAM_TOKEN is not set.")
        return
    if settings.ADMIN_ID is None:
        logger.warning("ADMIN_ID is not set; operator relays are disabled.")

    key_name = _PROVIDER_KEYS.get(settings.LLM_PROVIDER)
    if key_name is None:
        logger.error("Unsupported LLM_PROVIDER: %s", settings.LLM_PROVIDER)
        return
    if not getattr(settings, key_name):
        logger.error("%s is not set.", key_name)
        return

    try:
        with acquire_instance_lock():
            asyncio.run(_main())
    except RelayAlreadyRunning as exc:
        logger.error(str(exc))
    except KeyboardInterrupt:
        logger.info("Relay stopped by user.")


if __name__ == "__main__":
    run()
