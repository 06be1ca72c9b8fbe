from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int | None) -> int | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# Root for every persisted document (users, conversations, sessions, knowledge)
DATA_DIR: Path = Path(
    os.getenv("RELAY_DATA_DIR") or Path(__file__).resolve().parents[2] / "data"
)

# Logging
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "relay_orchestrator.log"
AUDIT_LOG_FILE: Path = LOG_DIR / "relay_audit.log"
LOG_LEVEL: str = os.getenv("RELAY_LOG_LEVEL", "INFO").upper()

# ---- Telegram front end ----
TELEGRAM_TOKEN: str | None = os.getenv("TELEGRAM_TOKEN")
TELEGRAM_API_URL: str = os.getenv("TELEGRAM_API_URL", "https://api.telegram.org")
TELEGRAM_POLL_TIMEOUT: int = _env_int("TELEGRAM_POLL_TIMEOUT", 30) or 30

# The operator (admin) Telegram chat id. Receives every relay and insight.
ADMIN_ID: int | None = _env_int("ADMIN_ID", None)

# ---- WhatsApp gateway sidecar ----
WHATSAPP_GATEWAY_URL: str = os.getenv("WHATSAPP_GATEWAY_URL", "http://localhost:3100")
WHATSAPP_GATEWAY_TIMEOUT: float = _env_float("WHATSAPP_GATEWAY_TIMEOUT", 60.0)
ENABLE_OPERATOR_SESSION: bool = _env_bool("ENABLE_OPERATOR_SESSION", True)

# ---- Reconnect policy ----
USER_RECONNECT_DELAY_SECONDS: float = _env_float("USER_RECONNECT_DELAY_SECONDS", 5.0)
OPERATOR_RECONNECT_DELAY_SECONDS: float = _env_float("OPERATOR_RECONNECT_DELAY_SECONDS", 10.0)
# Unset means retry forever against a dead network.
RECONNECT_MAX_RETRIES: int | None = _env_int("RECONNECT_MAX_RETRIES", None)
RECONNECT_JITTER_SECONDS: float = _env_float("RECONNECT_JITTER_SECONDS", 0.0)

# ---- Triggers ----
ANALYSIS_EVERY_N_MESSAGES: int = _env_int("ANALYSIS_EVERY_N_MESSAGES", 10) or 10
MIN_ANALYSIS_MESSAGES: int = _env_int("MIN_ANALYSIS_MESSAGES", 10) or 10
ANALYSIS_WINDOW: int = _env_int("ANALYSIS_WINDOW", 20) or 20

SCRIPTURE_HOUR: int = _env_int("SCRIPTURE_HOUR", 7) or 0
SCRIPTURE_TIMEZONE: str = os.getenv("SCRIPTURE_TIMEZONE", "Africa/Lagos")
SCRIPTURE_MIN_MESSAGES: int = _env_int("SCRIPTURE_MIN_MESSAGES", 5) or 5
SCRIPTURE_USER_SPACING_SECONDS: float = _env_float("SCRIPTURE_USER_SPACING_SECONDS", 2.0)

PAIRING_NUDGE_AT_MESSAGE: int = _env_int("PAIRING_NUDGE_AT_MESSAGE", 3) or 3
BROADCAST_SPACING_SECONDS: float = _env_float("BROADCAST_SPACING_SECONDS", 0.1)

# Chat turns kept per user for companion replies (FIFO eviction)
CONVERSATION_HISTORY_LIMIT: int = 50
REPLY_HISTORY_TURNS: int = 10

# ---- Community knowledge defaults ----
COMMUNITY_NAME: str = os.getenv("COMMUNITY_NAME", "Ensign of God's Glory")
COMMUNITY_ABOUT: str = os.getenv(
    "COMMUNITY_ABOUT",
    "A community of believers growing together in faith and purpose",
)

# ---- LLM providers ----
GROQ_API_KEY: str | None = os.getenv("GROQ_API_KEY")
GROQ_MODEL: str = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
GROQ_BASE_URL: str = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1")

OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")

ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest")

# IMPORTANT: Do not hardcode API keys in this repo. Set env var instead.
GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash-lite")

# Smart Default logic
# Priority:
# 1) Explicit env var always wins
# 2) Otherwise choose a provider that has credentials configured
_env_provider = (os.getenv("LLM_PROVIDER") or "").strip().lower()

if _env_provider:
    _default_provider = _env_provider
elif GROQ_API_KEY:
    _default_provider = "groq"
elif OPENAI_API_KEY:
    _default_provider = "openai"
elif ANTHROPIC_API_KEY:
    _default_provider = "anthropic"
elif GEMINI_API_KEY:
    _default_provider = "gemini"
else:
    _default_provider = "groq"

LLM_PROVIDER: str = _default_provider

# Provider failover order (csv).  First working provider wins.
_env_failover = (os.getenv("LLM_FAILOVER_CHAIN") or "").strip()
LLM_FAILOVER_CHAIN: list[str] = (
    [p.strip().lower() for p in _env_failover.split(",") if p.strip()]
    if _env_failover
    else []  # Empty = derive from whichever providers have keys
)
LLM_TIMEOUT_SECONDS: float = _env_float("LLM_TIMEOUT_SECONDS", 60.0)
