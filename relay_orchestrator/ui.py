"""
Relay Operations Console
Read-only view over the relay's document store: users, WhatsApp logs, insights, sessions.

    streamlit run relay_orchestrator/ui.py
"""
import re
import sys
from collections import deque
from pathlib import Path

import streamlit as st

# Allow running via `streamlit run <path>/ui.py` from any CWD.
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from relay_orchestrator.config import settings
from relay_orchestrator.services import reporting
from relay_orchestrator.services.ingestion import conversation_key
from relay_orchestrator.services.registry import KNOWLEDGE_KEY, USERS_KEY, default_knowledge
from relay_orchestrator.utils.document_store import DocumentStore

st.set_page_config(page_title="Relay Console", layout="wide", page_icon="🕊️")


def _tail_text_file(path: Path, max_lines: int = 150) -> str:
    if not path.exists():
        return ""
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        return "".join(deque(fh, maxlen=max_lines))


store = DocumentStore(settings.DATA_DIR)
users = store.read(USERS_KEY, {"users": {}}, quarantine=False).get("users") or {}
conversations = reporting.load_conversations(store, quarantine=False)
stats = reporting.compute_stats(users, conversations)

st.title("🕊️ Relay | Operations Console")

m1, m2, m3, m4, m5 = st.columns(5)
with m1:
    st.metric("👥 Users", stats.total_users)
with m2:
    st.metric("📱 Paired", stats.connected_users)
with m3:
    st.metric("💬 WhatsApp msgs", stats.whatsapp_messages)
with m4:
    st.metric("🔍 Insights", stats.insights)
with m5:
    st.caption(f"Provider: **{settings.LLM_PROVIDER}**")
    if st.button("🔄 Refresh"):
        st.rerun()

st.markdown("---")

tab_users, tab_whatsapp, tab_sessions, tab_logs, tab_config = st.tabs([
    "👥 Users", "📱 WhatsApp Logs", "🔌 Sessions", "📜 Logs", "⚙️ Config",
])

# ============== TAB 1: USERS ==============
with tab_users:
    st.header("Users")
    if not users:
        st.info("No users yet.")
    else:
        rows = []
        for user_id, user in users.items():
            rows.append({
                "id": user_id,
                "name": user.get("displayName"),
                "username": user.get("username"),
                "status": user.get("sessionStatus"),
                "telegram msgs": user.get("interactionCount", 0),
                "whatsapp msgs": len((conversations.get(user_id) or {}).get("messages") or []),
                "insights": len(user.get("insights") or []),
                "joined": user.get("joinedAt"),
                "last scripture": user.get("lastScriptureDate"),
            })
        st.dataframe(rows, use_container_width=True)

        selected = st.selectbox("Insights for", list(users), format_func=lambda u: f"{users[u].get('displayName')} ({u})")
        for insight in reversed(users[selected].get("insights") or []):
            with st.expander(f"{insight.get('timestamp', '?')} | {insight.get('messageCount', '?')} messages"):
                st.markdown(insight.get("insights", ""))

# ============== TAB 2: WHATSAPP LOGS ==============
with tab_whatsapp:
    st.header("WhatsApp Conversation Logs")
    if not conversations:
        st.info("Nothing ingested yet.")
    else:
        user_id = st.selectbox("User", list(conversations), key="wa_user")
        conv = store.read(conversation_key(user_id), {"messages": [], "contacts": {}}, quarantine=False)
        col_contacts, col_messages = st.columns([1, 2])
        with col_contacts:
            st.subheader("Contacts")
            st.dataframe(
                [
                    {"contact": c, "messages": agg.get("messageCount", 0), "last": agg.get("lastMessage")}
                    for c, agg in sorted(
                        (conv.get("contacts") or {}).items(),
                        key=lambda kv: kv[1].get("messageCount", 0),
                        reverse=True,
                    )
                ],
                use_container_width=True,
            )
        with col_messages:
            st.subheader("Recent messages")
            limit = st.number_input("Show last", min_value=10, max_value=500, value=50)
            st.dataframe(list(reversed((conv.get("messages") or [])[-int(limit):])), use_container_width=True)

# ============== TAB 3: SESSIONS ==============
with tab_sessions:
    st.header("Persisted Session State")
    st.caption("Credentials are never shown; this is the last state the relay wrote.")
    rows = []
    for key in store.keys("sessions"):
        doc = store.read(key, {}, quarantine=False)
        rows.append({
            "session": key.split("/", 1)[1],
            "class": doc.get("sessionClass"),
            "state": doc.get("state"),
            "retries": doc.get("retryCount"),
            "last activity": doc.get("lastActivity"),
            "has credentials": bool(doc.get("credentials")),
            "ended": doc.get("failure"),
        })
    if rows:
        st.dataframe(rows, use_container_width=True)
    else:
        st.info("No sessions persisted yet.")

# ============== TAB 4: LOGS ==============
with tab_logs:
    st.header("System Logs")
    col_ctrl, col_filter = st.columns([1, 3])
    with col_ctrl:
        log_choice = st.radio("File", ["relay", "audit"], horizontal=True)
        log_lines = st.number_input("Lines to show", min_value=50, max_value=500, value=150)
    with col_filter:
        log_filter = st.text_input("Filter (regex)", placeholder="ERROR|WARNING|\\[SESSION\\]")

    log_path = settings.LOG_FILE if log_choice == "relay" else settings.AUDIT_LOG_FILE
    log_tail = _tail_text_file(log_path, max_lines=int(log_lines))
    if log_filter:
        try:
            pattern = re.compile(log_filter, re.IGNORECASE)
            log_tail = "\n".join(line for line in log_tail.split("\n") if pattern.search(line))
        except re.error:
            st.warning("Invalid regex pattern")

    if not log_tail:
        st.info(f"No log content at {log_path}")
    else:
        st.code(log_tail, language="text")

# ============== TAB 5: CONFIG ==============
with tab_config:
    st.header("Community Knowledge")
    st.markdown(reporting.format_knowledge(store.read(KNOWLEDGE_KEY, default_knowledge(), quarantine=False)))
    st.caption("Use /addinfo in Telegram to extend it.")

    st.divider()
    st.subheader("Runtime Settings")
    st.json({
        "LLM_PROVIDER": settings.LLM_PROVIDER,
        "LLM_FAILOVER_CHAIN": settings.LLM_FAILOVER_CHAIN,
        "WHATSAPP_GATEWAY_URL": settings.WHATSAPP_GATEWAY_URL,
        "ENABLE_OPERATOR_SESSION": settings.ENABLE_OPERATOR_SESSION,
        "USER_RECONNECT_DELAY_SECONDS": settings.USER_RECONNECT_DELAY_SECONDS,
        "OPERATOR_RECONNECT_DELAY_SECONDS": settings.OPERATOR_RECONNECT_DELAY_SECONDS,
        "RECONNECT_MAX_RETRIES": settings.RECONNECT_MAX_RETRIES,
        "SCRIPTURE_HOUR": settings.SCRIPTURE_HOUR,
        "SCRIPTURE_TIMEZONE": settings.SCRIPTURE_TIMEZONE,
        "DATA_DIR": str(settings.DATA_DIR),
    })
