"""Read-only aggregates shared by the admin commands and the operator console."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from relay_orchestrator.services.interfaces import SessionState
from relay_orchestrator.utils.document_store import DocumentStore


@dataclass(frozen=True)
class RelayStats:
    total_users: int
    connected_users: int
    telegram_messages: int
    whatsapp_messages: int
    insights: int


def compute_stats(users: Dict[str, Dict[str, Any]], conversations: Dict[str, Dict[str, Any]]) -> RelayStats:
    return RelayStats(
        total_users=len(users),
        connected_users=sum(1 for u in users.values() if u.get("sessionStatus") == SessionState.ACTIVE.value),
        telegram_messages=sum(int(u.get("interactionCount") or 0) for u in users.values()),
        whatsapp_messages=sum(len(c.get("messages") or []) for c in conversations.values()),
        insights=sum(len(u.get("insights") or []) for u in users.values()),
    )


def load_conversations(store: DocumentStore, *, quarantine: bool = True) -> Dict[str, Dict[str, Any]]:
    """Every conversation log, keyed by user id (blocking; call from a thread or the console)."""
    out: Dict[str, Dict[str, Any]] = {}
    for key in store.keys("conversations"):
        user_id = key.split("/", 1)[1]
        out[user_id] = store.read(key, {"messages": [], "contacts": {}}, quarantine=quarantine)
    return out


_STATUS_ICONS = {
    SessionState.ACTIVE.value: "✅",
    SessionState.PAIRING.value: "⏳",
    SessionState.DISCONNECTED.value: "🔌",
    SessionState.UNPAIRED.value: "❌",
}


def _joined(value: Any) -> str:
    try:
        return datetime.fromisoformat(str(value)).date().isoformat()
    except ValueError:
        return "?"


def format_user_list(users: Dict[str, Dict[str, Any]], conversations: Dict[str, Dict[str, Any]]) -> str:
    if not users:
        return "👥 ALL USERS\n\nNo users yet."
    lines: List[str] = ["👥 ALL USERS", ""]
    for user_id, user in users.items():
        status = user.get("sessionStatus", SessionState.UNPAIRED.value)
        lines.append(f"👤 {user.get('displayName', '?')} (@{user.get('username') or 'no_username'})")
        lines.append(f"   ID: {user_id}")
        lines.append(f"   Telegram: {int(user.get('interactionCount') or 0)} msgs")
        wa = f"   WhatsApp: {_STATUS_ICONS.get(status, '?')} {status}"
        if status == SessionState.ACTIVE.value:
            records = len((conversations.get(user_id) or {}).get("messages") or [])
            wa += f" ({records} msgs, {len(user.get('insights') or [])} insights)"
        lines.append(wa)
        lines.append(f"   Joined: {_joined(user.get('joinedAt'))}")
        lines.append("")
    return "\n".join(lines).rstrip()


def format_knowledge(knowledge: Dict[str, Any]) -> str:
    lines = [
        "📚 COMPANION KNOWLEDGE",
        "",
        f"🏛️ {knowledge.get('groupName', '')}",
        f"📝 {knowledge.get('about', '')}",
        "",
        "Custom Info:",
        "",
    ]
    custom = knowledge.get("customInfo") or []
    if not custom:
        lines.append("None yet.\n\nUse: /addinfo [text]")
    else:
        lines.extend(f"{n}. {info}\n" for n, info in enumerate(custom, start=1))
    return "\n".join(lines).rstrip()
