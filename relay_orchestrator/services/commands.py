"""Telegram update routing: the companion chat for users, the admin surface for the operator."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List

from relay_orchestrator.config import messages, prompts, settings
from relay_orchestrator.services import reporting
from relay_orchestrator.services.interfaces import ChatFrontend, LanguageModel
from relay_orchestrator.services.notifier import OperatorChannel, now_label
from relay_orchestrator.services.registry import KnowledgeBase, UserRegistry
from relay_orchestrator.services.session_machine import OPERATOR_SESSION_ID, SessionManager
from relay_orchestrator.services.triggers import TriggerDispatcher
from relay_orchestrator.utils.document_store import DocumentStore

logger = logging.getLogger(__name__)


def parse_command(text: str) -> tuple[str, str]:
    """``"/addinfo@MyBot some text"`` -> ``("/addinfo", "some text")``."""
    head, _, rest = text.strip().partition(" ")
    return head.split("@", 1)[0].lower(), rest.strip()


class CommandRouter:
    def __init__(
        self,
        *,
        store: DocumentStore,
        registry: UserRegistry,
        knowledge: KnowledgeBase,
        llm: LanguageModel,
        frontend: ChatFrontend,
        operator: OperatorChannel,
        dispatcher: TriggerDispatcher,
        sessions: SessionManager,
        schedule: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        broadcast_spacing: float = settings.BROADCAST_SPACING_SECONDS,
    ) -> None:
        self._store = store
        self._registry = registry
        self._knowledge = knowledge
        self._llm = llm
        self._frontend = frontend
        self._operator = operator
        self._dispatcher = dispatcher
        self._sessions = sessions
        self._schedule = schedule
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._broadcast_spacing = broadcast_spacing
        self.started_at = datetime.now()

        self._admin_commands: Dict[str, Callable[[str], Awaitable[str]]] = {
            "/start": self._cmd_panel,
            "/admin": self._cmd_dashboard,
            "/addinfo": self._cmd_addinfo,
            "/viewinfo": self._cmd_viewinfo,
            "/users": self._cmd_users,
            "/stats": self._cmd_stats,
            "/sendscripture": self._cmd_sendscripture,
            "/fixdata": self._cmd_fixdata,
            "/broadcast": self._cmd_broadcast,
        }

    async def handle_update(self, update: Dict[str, Any]) -> None:
        message = update.get("message") or {}
        sender = message.get("from") or {}
        user_id = sender.get("id")
        text = message.get("text")
        if user_id is None or not text:
            return

        name = sender.get("first_name") or "Friend"
        is_operator = self._operator.is_operator(user_id)

        if text.startswith("/"):
            command, arg = parse_command(text)
            if is_operator:
                await self.on_admin_command(command, arg)
            elif command == "/start":
                await self.on_start(user_id, name, sender.get("username") or "no_username")
            elif command == "/connect":
                await self.on_connect(user_id, name)
            return

        if is_operator:
            return
        await self.on_text(user_id, name, text, message_id=message.get("message_id"))

    # ------------------------------------------------------------------
    # User flow
    # ------------------------------------------------------------------

    async def on_start(self, user_id: int | str, display_name: str, username: str = "") -> None:
        record, created = await self._registry.ensure(user_id, display_name, username)
        if created:
            await self._operator.notify(
                messages.OPERATOR_NEW_USER.format(name=display_name, username=username, user_id=user_id)
            )

        reply = await self._companion_reply(record, display_name, "Hi", [], first_message=True, count=0)
        await self._registry.append_turns(user_id, "Hi", reply)
        async with self._registry.edit(user_id) as live:
            live["interactionCount"] = max(int(live.get("interactionCount") or 0), 1)
        await self._frontend.send_text(user_id, reply)

    async def on_text(
        self, user_id: int | str, display_name: str, text: str, *, message_id: Any = None
    ) -> None:
        record = await self._registry.get(user_id)
        if record is None:
            await self._frontend.send_text(user_id, messages.PLEASE_START_FIRST)
            return

        count = await self._registry.count_interaction(user_id, message_id)
        if count is None:
            logger.info("[CHAT] Duplicate Telegram message %s from %s ignored", message_id, user_id)
            return

        history = (record.get("conversationHistory") or [])[-settings.REPLY_HISTORY_TURNS:]
        reply = await self._companion_reply(record, display_name, text, history, count=count)
        await self._registry.append_turns(user_id, text, reply)

        try:
            await self._frontend.send_text(user_id, reply)
        except Exception as exc:
            logger.error("[CHAT] Reply to %s failed: %s", user_id, exc)

        await self._dispatcher.on_interaction(
            user_id, display_name, count, record.get("sessionStatus", "")
        )

        await self._operator.notify(
            messages.OPERATOR_TELEGRAM_CHAT.format(
                name=display_name, user_id=user_id, count=count, text=text, reply=reply, when=now_label()
            )
        )

    async def on_connect(self, user_id: int | str, display_name: str) -> None:
        """Explicit (re-)pairing, e.g. after a WhatsApp logout."""
        if await self._registry.get(user_id) is None:
            await self._frontend.send_text(user_id, messages.PLEASE_START_FIRST)
            return
        if self._sessions.is_active(user_id):
            await self._frontend.send_text(user_id, messages.PAIRING_ALREADY_ACTIVE)
            return
        await self._frontend.send_text(user_id, messages.PAIRING_SETUP)
        try:
            await self._sessions.start(user_id, display_name)
        except Exception as exc:
            logger.error("[CHAT] /connect failed for %s: %s", user_id, exc)
            await self._frontend.send_text(user_id, messages.PAIRING_START_FAILED)

    async def _companion_reply(
        self,
        record: Dict[str, Any],
        display_name: str,
        text: str,
        history: List[Dict[str, str]],
        *,
        count: int,
        first_message: bool = False,
    ) -> str:
        insights = record.get("insights") or []
        system_prompt = prompts.build_companion_prompt(
            await self._knowledge.load(),
            display_name,
            latest_insight=insights[-1].get("insights") if insights else None,
            first_message=first_message,
            interaction_count=count,
            nudge_at=settings.PAIRING_NUDGE_AT_MESSAGE,
        )
        try:
            return await self._llm.complete(system_prompt, history, text)
        except Exception as exc:
            logger.warning("[CHAT] Companion reply failed for %s: %s", record.get("id"), exc)
            return self._rng.choice(prompts.FALLBACK_RESPONSES).format(name=display_name)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    async def on_admin_command(self, command: str, arg: str) -> None:
        handler = self._admin_commands.get(command, self._cmd_panel)
        try:
            reply = await handler(arg)
        except Exception as exc:
            logger.exception("[ADMIN] %s failed", command)
            reply = f"⚠️ {command} failed: {exc}"
        await self._operator.notify(reply)

    async def _snapshot(self) -> tuple[Dict[str, Any], Dict[str, Any], reporting.RelayStats]:
        users = await self._registry.all()
        conversations = await asyncio.to_thread(reporting.load_conversations, self._store)
        return users, conversations, reporting.compute_stats(users, conversations)

    async def _cmd_panel(self, arg: str) -> str:
        return messages.ADMIN_PANEL

    async def _cmd_dashboard(self, arg: str) -> str:
        _, _, stats = await self._snapshot()
        operator_session = self._sessions.get(OPERATOR_SESSION_ID)
        return messages.ADMIN_DASHBOARD.format(
            total_users=stats.total_users,
            connected_users=stats.connected_users,
            whatsapp_messages=stats.whatsapp_messages,
            operator_session=operator_session.state.value if operator_session else "off",
            live_sessions=sum(1 for m in self._sessions.machines() if m.has_live_handle),
            next_sweep=self._schedule.next_run().strftime("%Y-%m-%d %H:%M %Z") if self._schedule else "not scheduled",
        )

    async def _cmd_addinfo(self, arg: str) -> str:
        if not arg:
            return messages.ADMIN_USAGE_ADDINFO
        await self._knowledge.add_info(arg)
        return messages.ADMIN_INFO_ADDED.format(info=arg)

    async def _cmd_viewinfo(self, arg: str) -> str:
        return reporting.format_knowledge(await self._knowledge.load())

    async def _cmd_users(self, arg: str) -> str:
        users, conversations, _ = await self._snapshot()
        return reporting.format_user_list(users, conversations)

    async def _cmd_stats(self, arg: str) -> str:
        _, _, stats = await self._snapshot()
        return messages.ADMIN_STATS.format(
            total_users=stats.total_users,
            connected_users=stats.connected_users,
            telegram_messages=stats.telegram_messages,
            whatsapp_messages=stats.whatsapp_messages,
            insights=stats.insights,
            started=self.started_at.strftime("%Y-%m-%d %H:%M"),
        )

    async def _cmd_sendscripture(self, arg: str) -> str:
        await self._operator.notify(messages.ADMIN_SCRIPTURE_STARTED)
        report = await self._dispatcher.run_scripture_sweep(force=True)
        return messages.ADMIN_SCRIPTURE_DONE.format(
            delivered=len(report.delivered), skipped=len(report.skipped), failed=len(report.failed)
        )

    async def _cmd_fixdata(self, arg: str) -> str:
        return messages.ADMIN_FIXED.format(fixed=await self._registry.repair())

    async def _cmd_broadcast(self, arg: str) -> str:
        if not arg:
            return messages.ADMIN_USAGE_BROADCAST
        text = messages.BROADCAST_MESSAGE.format(community=settings.COMMUNITY_NAME, text=arg)
        sent = failed = 0
        for index, user_id in enumerate(await self._registry.all()):
            if index:
                await self._sleep(self._broadcast_spacing)
            try:
                await self._frontend.send_text(user_id, text)
                sent += 1
            except Exception as exc:
                logger.warning("[ADMIN] Broadcast to %s failed: %s", user_id, exc)
                failed += 1
        return messages.ADMIN_BROADCAST_DONE.format(sent=sent, failed=failed)
