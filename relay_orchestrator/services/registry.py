"""User registry and community knowledge, both backed by the document store.

Document ``users``::

    {"users": {"<telegram id>": {"displayName": ..., "sessionStatus": ...,
                                 "interactionCount": ..., "insights": [...], ...}}}

Every change is a load-modify-save under the ``users`` key lock, so a Telegram
message, an analysis insight and a session transition for the same (or another)
user never overwrite each other.
"""

from __future__ import annotations

import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from relay_orchestrator.config import settings
from relay_orchestrator.services.errors import PersistenceFailure
from relay_orchestrator.services.interfaces import SessionState
from relay_orchestrator.utils.document_store import DocumentStore

logger = logging.getLogger(__name__)

USERS_KEY = "users"
KNOWLEDGE_KEY = "knowledge"

_SESSION_STATES = {s.value for s in SessionState}

# Field names written by older deployments -> current names.
_LEGACY_FIELDS = {
    "firstName": "displayName",
    "messageCount": "interactionCount",
    "whatsappInsights": "insights",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _empty_users() -> Dict[str, Any]:
    return {"users": {}}


def new_user_record(user_id: int | str, display_name: str, username: str = "") -> Dict[str, Any]:
    return {
        "id": str(user_id),
        "displayName": display_name or "Friend",
        "username": username or "",
        "joinedAt": _now_iso(),
        "sessionStatus": SessionState.UNPAIRED.value,
        "interactionCount": 0,
        "insights": [],
        "conversationHistory": [],
        "pairingNudged": False,
        "lastMessageId": None,
        "lastScriptureDate": None,
    }


def repair_user_record(user_id: str, record: Dict[str, Any]) -> bool:
    """Bring one record up to the current shape. Returns True if anything changed."""
    changed = False

    for legacy, current in _LEGACY_FIELDS.items():
        if legacy in record:
            if current not in record:
                record[current] = record[legacy]
            del record[legacy]
            changed = True

    if "whatsappConnected" in record:
        if "sessionStatus" not in record:
            record["sessionStatus"] = (
                SessionState.ACTIVE.value if record["whatsappConnected"] else SessionState.UNPAIRED.value
            )
        del record["whatsappConnected"]
        changed = True

    template = new_user_record(user_id, record.get("displayName") or "Friend")
    for field, default in template.items():
        if field not in record:
            record[field] = default
            changed = True

    if record.get("sessionStatus") not in _SESSION_STATES:
        record["sessionStatus"] = SessionState.UNPAIRED.value
        changed = True
    for list_field in ("insights", "conversationHistory"):
        if not isinstance(record.get(list_field), list):
            record[list_field] = []
            changed = True
    if not isinstance(record.get("interactionCount"), int):
        try:
            record["interactionCount"] = int(record.get("interactionCount") or 0)
        except (TypeError, ValueError):
            record["interactionCount"] = 0
        changed = True

    return changed


class UserRegistry:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def all(self) -> Dict[str, Dict[str, Any]]:
        doc = await self._store.load(USERS_KEY, _empty_users())
        return doc.get("users") or {}

    async def get(self, user_id: int | str) -> Optional[Dict[str, Any]]:
        return (await self.all()).get(str(user_id))

    async def ensure(
        self, user_id: int | str, display_name: str, username: str = ""
    ) -> Tuple[Dict[str, Any], bool]:
        """Return ``(record, created)``; creates the record on first interaction."""
        key = str(user_id)
        async with self._store.mutate(USERS_KEY, _empty_users()) as doc:
            users = doc.setdefault("users", {})
            created = key not in users
            if created:
                users[key] = new_user_record(key, display_name, username)
                logger.info("[REGISTRY] New user %s (%s)", key, display_name)
            else:
                repair_user_record(key, users[key])
            return copy.deepcopy(users[key]), created

    @asynccontextmanager
    async def edit(self, user_id: int | str) -> AsyncIterator[Dict[str, Any]]:
        """Yield the live record for in-place changes; raises ``KeyError`` if unknown."""
        key = str(user_id)
        async with self._store.mutate(USERS_KEY, _empty_users()) as doc:
            users = doc.setdefault("users", {})
            if key not in users:
                raise KeyError(key)
            yield users[key]

    async def set_session_status(self, user_id: int | str, status: SessionState) -> None:
        try:
            async with self.edit(user_id) as record:
                record["sessionStatus"] = status.value
        except KeyError:
            logger.debug("[REGISTRY] No user record for %s; status %s not stored", user_id, status.value)
        except PersistenceFailure as exc:
            logger.error("[REGISTRY] Could not store status %s for %s: %s", status.value, user_id, exc)

    async def count_interaction(self, user_id: int | str, message_id: Any = None) -> Optional[int]:
        """Increment the chat counter once per Telegram message id.

        Returns the new count, or None when *message_id* was already counted.
        """
        async with self.edit(user_id) as record:
            if message_id is not None and record.get("lastMessageId") == message_id:
                return None
            record["lastMessageId"] = message_id
            record["interactionCount"] = int(record.get("interactionCount") or 0) + 1
            return record["interactionCount"]

    async def append_turns(self, user_id: int | str, user_text: str, reply: str) -> None:
        async with self.edit(user_id) as record:
            history = record.setdefault("conversationHistory", [])
            history.append({"role": "user", "content": user_text})
            history.append({"role": "assistant", "content": reply})
            if len(history) > settings.CONVERSATION_HISTORY_LIMIT:
                del history[: len(history) - settings.CONVERSATION_HISTORY_LIMIT]

    async def append_insight(self, user_id: int | str, insights: str, message_count: int) -> None:
        async with self.edit(user_id) as record:
            record.setdefault("insights", []).append(
                {"insights": insights, "messageCount": message_count, "timestamp": _now_iso()}
            )

    async def claim_nudge(self, user_id: int | str) -> bool:
        """Atomically flip ``pairingNudged``; only the first caller gets True."""
        async with self.edit(user_id) as record:
            if record.get("pairingNudged"):
                return False
            record["pairingNudged"] = True
            return True

    async def mark_scripture_sent(self, user_id: int | str, day: str) -> None:
        async with self.edit(user_id) as record:
            record["lastScriptureDate"] = day

    async def repair(self) -> int:
        """Repair every record in place; returns the number of records changed."""
        fixed = 0
        async with self._store.mutate(USERS_KEY, _empty_users()) as doc:
            users = doc.setdefault("users", {})
            for key, record in users.items():
                if not isinstance(record, dict):
                    users[key] = new_user_record(key, "Friend")
                    fixed += 1
                elif repair_user_record(key, record):
                    fixed += 1
        logger.info("[REGISTRY] Repaired %d user records", fixed)
        return fixed


def default_knowledge() -> Dict[str, Any]:
    return {
        "groupName": settings.COMMUNITY_NAME,
        "about": settings.COMMUNITY_ABOUT,
        "customInfo": [],
    }


class KnowledgeBase:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def load(self) -> Dict[str, Any]:
        knowledge = await self._store.load(KNOWLEDGE_KEY, default_knowledge())
        for field, value in default_knowledge().items():
            knowledge.setdefault(field, value)
        return knowledge

    async def add_info(self, info: str) -> None:
        async with self._store.mutate(KNOWLEDGE_KEY, default_knowledge()) as knowledge:
            knowledge.setdefault("customInfo", []).append(info)
