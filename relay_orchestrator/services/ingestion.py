"""WhatsApp message ingestion.

Raw events arrive in the gateway's (Baileys) shape::

    {"key": {"remoteJid": "2348012345678@s.whatsapp.net", "fromMe": false, "id": "3EB0..."},
     "message": {"conversation": "hello"}}

Each accepted event becomes one immutable record appended to
``conversations/<user id>``; the per-counterpart aggregate is bumped in the same
locked load-modify-save, so concurrent ingests for one user cannot lose a record.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from relay_orchestrator.config import messages, settings
from relay_orchestrator.services.errors import PersistenceFailure
from relay_orchestrator.services.interfaces import MessageRecord
from relay_orchestrator.services.notifier import OperatorChannel, now_label
from relay_orchestrator.utils.document_store import DocumentStore

logger = logging.getLogger(__name__)

# Protocol message ids remembered per user for duplicate suppression.
SEEN_IDS_LIMIT = 500

_GROUP_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")


def conversation_key(user_id: int | str) -> str:
    return f"conversations/{user_id}"


def empty_conversation(user_id: int | str, display_name: str) -> Dict[str, Any]:
    return {
        "userId": str(user_id),
        "userName": display_name,
        "messages": [],
        "contacts": {},
        "lastActivity": None,
        "seenIds": [],
    }


def _extract_text(message: Dict[str, Any]) -> str:
    candidates = (
        message.get("conversation"),
        (message.get("extendedTextMessage") or {}).get("text"),
        (message.get("imageMessage") or {}).get("caption"),
        (message.get("videoMessage") or {}).get("caption"),
    )
    for text in candidates:
        if isinstance(text, str) and text.strip():
            return text
    return ""


def normalize_event(payload: Dict[str, Any], *, now: Optional[datetime] = None) -> Optional[MessageRecord]:
    """Turn a raw event into a record, or None for expected noise.

    Filters, in order: no message content, group/broadcast chat, no text.
    """
    message = payload.get("message")
    if not message or not isinstance(message, dict):
        return None

    key = payload.get("key") or {}
    chat_id = str(key.get("remoteJid") or "")
    if not chat_id or chat_id.endswith(_GROUP_SUFFIXES):
        return None

    text = _extract_text(message)
    if not text:
        return None

    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return MessageRecord(
        text=text,
        direction="outbound" if key.get("fromMe") else "inbound",
        counterpart=chat_id.split("@", 1)[0],
        chat_id=chat_id,
        timestamp=stamp,
        message_id=key.get("id"),
    )


def conversation_window(conversation: Dict[str, Any], size: int) -> List[Dict[str, Any]]:
    """Most recent *size* records, oldest first."""
    return list((conversation.get("messages") or [])[-size:])


class MessageIngestionPipeline:
    def __init__(
        self,
        store: DocumentStore,
        operator: OperatorChannel,
        dispatcher: Any = None,
        *,
        analysis_every: int = settings.ANALYSIS_EVERY_N_MESSAGES,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._operator = operator
        self.dispatcher = dispatcher
        self._analysis_every = max(1, analysis_every)
        self._clock = clock

    async def load(self, user_id: int | str, display_name: str = "") -> Dict[str, Any]:
        return await self._store.load(conversation_key(user_id), empty_conversation(user_id, display_name))

    async def ingest(self, user_id: int | str, display_name: str, payload: Dict[str, Any]) -> Optional[int]:
        """Append one event. Returns the new record count, or None if dropped."""
        record = normalize_event(payload, now=self._clock())
        if record is None:
            return None

        try:
            count = await self._append(user_id, display_name, record)
        except PersistenceFailure as exc:
            logger.error("[INGEST] Could not append for %s: %s", user_id, exc)
            return None
        if count is None:
            logger.debug("[INGEST] Duplicate message %s for %s", record.message_id, user_id)
            return None

        logger.info(
            "[INGEST] %s %s %s (#%d): %.50s",
            user_id,
            record.direction,
            record.counterpart,
            count,
            record.text,
        )

        await self._operator.notify(
            messages.OPERATOR_WHATSAPP_ACTIVITY.format(
                name=display_name,
                user_id=user_id,
                counterpart=record.counterpart,
                direction=messages.DIRECTION_LABELS[record.direction],
                text=record.text,
                count=count,
                when=now_label(),
            )
        )

        if self.dispatcher is not None and count % self._analysis_every == 0:
            try:
                self.dispatcher.on_message_count(user_id, display_name, count)
            except Exception as exc:
                logger.error("[INGEST] Trigger dispatch failed for %s: %s", user_id, exc)
        return count

    async def _append(self, user_id: int | str, display_name: str, record: MessageRecord) -> Optional[int]:
        async with self._store.mutate(
            conversation_key(user_id), empty_conversation(user_id, display_name)
        ) as conv:
            seen = conv.setdefault("seenIds", [])
            if record.message_id and record.message_id in seen:
                return None
            if record.message_id:
                seen.append(record.message_id)
                if len(seen) > SEEN_IDS_LIMIT:
                    del seen[: len(seen) - SEEN_IDS_LIMIT]

            conv["userName"] = display_name or conv.get("userName", "")
            conv.setdefault("messages", []).append(record.to_dict())
            contact = conv.setdefault("contacts", {}).setdefault(
                record.counterpart, {"messageCount": 0, "lastMessage": None}
            )
            contact["messageCount"] = int(contact.get("messageCount") or 0) + 1
            contact["lastMessage"] = record.text
            conv["lastActivity"] = record.timestamp
            return len(conv["messages"])
