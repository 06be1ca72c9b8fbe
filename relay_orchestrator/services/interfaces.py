from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol


class SessionState(str, enum.Enum):
    UNPAIRED = "unpaired"
    PAIRING = "pairing"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class SessionClass(str, enum.Enum):
    USER = "user"
    OPERATOR = "operator"


# Closure reason that ends a session for good. Every other reason is retryable.
LOGGED_OUT = "logged_out"


# ---- Events consumed by the session state machine ----
# ``attempt`` is stamped by the machine when the event is queued; events whose
# attempt does not match the current one belong to a replaced connection.

@dataclass(frozen=True)
class ChallengeIssued:
    challenge: str
    attempt: int = 0


@dataclass(frozen=True)
class Paired:
    attempt: int = 0


@dataclass(frozen=True)
class CredentialsUpdated:
    credentials: Dict[str, Any]
    attempt: int = 0


@dataclass(frozen=True)
class ConnectionClosed:
    reason: str
    attempt: int = 0


@dataclass(frozen=True)
class MessageReceived:
    payload: Dict[str, Any]
    attempt: int = 0


@dataclass(frozen=True)
class StartRequested:
    attempt: int = 0


@dataclass(frozen=True)
class ReconnectDue:
    attempt: int = 0


@dataclass(frozen=True)
class StopRequested:
    attempt: int = 0


@dataclass(frozen=True)
class MessageRecord:
    text: str
    direction: str  # "inbound" | "outbound"
    counterpart: str
    chat_id: str
    timestamp: str
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "direction": self.direction,
            "counterpart": self.counterpart,
            "chatId": self.chat_id,
            "timestamp": self.timestamp,
        }


@dataclass
class SweepReport:
    delivered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ConnectionHandle(Protocol):
    def events(self) -> AsyncIterator[Any]:
        """Yield protocol events until the connection closes."""
        ...

    async def close(self) -> None:
        ...


class SessionTransport(Protocol):
    async def open(self, session_id: str, credentials: Optional[Dict[str, Any]]) -> ConnectionHandle:
        """Open (or resume) a protocol session; raises on failure."""
        ...


class ChatFrontend(Protocol):
    async def send_text(self, chat_id: int | str, text: str, *, markdown: bool = False) -> None:
        ...

    async def send_image(self, chat_id: int | str, image: bytes, caption: str = "") -> None:
        ...

    async def send_document(
        self, chat_id: int | str, data: bytes, filename: str, caption: str = ""
    ) -> None:
        ...


class LanguageModel(Protocol):
    async def complete(self, system_prompt: str, history: List[Dict[str, str]], user_text: str) -> str:
        ...

    async def summarize(self, window: List[Dict[str, Any]], name: str) -> str:
        ...

    async def classify_problem(self, window: List[Dict[str, Any]], name: str) -> Optional[str]:
        """Return the detected problem text, or None when nothing stands out."""
        ...
