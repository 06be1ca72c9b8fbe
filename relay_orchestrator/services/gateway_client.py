"""HTTP adapter for the WhatsApp gateway sidecar.

The sidecar wraps the WhatsApp Web protocol library and exposes each socket as
a session resource:

* ``POST /sessions`` ``{"sessionId": ..., "credentials": {...} | null}`` opens or
  resumes a socket.
* ``GET /sessions/{id}/events?cursor=N&timeout=S`` long-polls
  ``{"events": [...], "cursor": M}``.
* ``DELETE /sessions/{id}`` closes the socket without logging out.

Gateway events keep the library's names (``connection.update``, ``creds.update``,
``messages.upsert``) and are translated into the typed events the session
machine consumes.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from relay_orchestrator.config import settings
from relay_orchestrator.services.errors import TransientConnectionFailure
from relay_orchestrator.services.interfaces import (
    LOGGED_OUT,
    ChallengeIssued,
    ConnectionClosed,
    CredentialsUpdated,
    MessageReceived,
    Paired,
)

logger = logging.getLogger(__name__)

# DisconnectReason.loggedOut in the protocol library.
LOGGED_OUT_STATUS = 401
EVENTS_POLL_SECONDS = 25


def parse_gateway_event(raw: Dict[str, Any]) -> List[Any]:
    """Translate one gateway event into zero or more typed events."""
    kind = raw.get("type")

    if kind == "connection.update":
        events: List[Any] = []
        if raw.get("qr"):
            events.append(ChallengeIssued(challenge=str(raw["qr"])))
        connection = raw.get("connection")
        if connection == "open":
            events.append(Paired())
        elif connection == "close":
            status = raw.get("statusCode")
            reason = str(raw.get("reason") or "")
            if status == LOGGED_OUT_STATUS or reason == LOGGED_OUT:
                events.append(ConnectionClosed(reason=LOGGED_OUT))
            else:
                events.append(ConnectionClosed(reason=reason or f"status_{status}"))
        return events

    if kind == "creds.update":
        credentials = raw.get("credentials")
        return [CredentialsUpdated(credentials=credentials)] if credentials else []

    if kind == "messages.upsert":
        return [MessageReceived(payload=m) for m in raw.get("messages") or [] if isinstance(m, dict)]

    logger.debug("[GATEWAY] Ignored event type %r", kind)
    return []


class GatewayConnection:
    """One live gateway socket, owned by a single session machine."""

    def __init__(self, client: httpx.AsyncClient, session_id: str, *, poll_seconds: int = EVENTS_POLL_SECONDS) -> None:
        self._client = client
        self.session_id = session_id
        self._poll_seconds = poll_seconds
        self._cursor: Optional[int] = None
        self._closed = False

    async def events(self) -> AsyncIterator[Any]:
        while not self._closed:
            params: Dict[str, Any] = {"timeout": self._poll_seconds}
            if self._cursor is not None:
                params["cursor"] = self._cursor
            try:
                response = await self._client.get(f"/sessions/{self.session_id}/events", params=params)
            except httpx.HTTPError as exc:
                if self._closed:
                    return
                raise TransientConnectionFailure(f"event poll failed: {exc}") from exc

            if response.status_code == 404:
                yield ConnectionClosed(reason="session_not_found")
                return
            if response.status_code >= 400:
                raise TransientConnectionFailure(f"event poll returned HTTP {response.status_code}")

            body = response.json()
            self._cursor = body.get("cursor", self._cursor)
            for raw in body.get("events") or []:
                for event in parse_gateway_event(raw):
                    yield event
                    if isinstance(event, ConnectionClosed):
                        return

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            response = await self._client.delete(f"/sessions/{self.session_id}")
            if response.status_code not in (200, 204, 404):
                logger.warning("[GATEWAY] Close of %s returned HTTP %s", self.session_id, response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("[GATEWAY] Close of %s failed: %s", self.session_id, exc)


class WhatsAppGatewayClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        read_timeout = timeout if timeout is not None else settings.WHATSAPP_GATEWAY_TIMEOUT
        self._client = client or httpx.AsyncClient(
            base_url=(base_url or settings.WHATSAPP_GATEWAY_URL).rstrip("/"),
            timeout=httpx.Timeout(10.0, read=max(read_timeout, EVENTS_POLL_SECONDS + 5)),
        )

    async def open(self, session_id: str, credentials: Optional[Dict[str, Any]]) -> GatewayConnection:
        try:
            response = await self._client.post(
                "/sessions", json={"sessionId": session_id, "credentials": credentials}
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientConnectionFailure(f"could not open session {session_id}: {exc}") from exc
        logger.info("[GATEWAY] Opened session %s", session_id)
        return GatewayConnection(self._client, session_id)

    async def aclose(self) -> None:
        await self._client.aclose()
