"""Telegram Bot API front end over ``httpx.AsyncClient``.

Only the handful of methods the relay needs: text (split at Telegram's 4096
character limit), photo, document, and long-polled updates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from relay_orchestrator.config import settings
from relay_orchestrator.services.errors import DeliveryFailure

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4096
# A 429 asking for longer than this is surfaced instead of waited out.
MAX_RETRY_AFTER_SECONDS = 30.0


class TelegramError(DeliveryFailure):
    def __init__(self, method: str, description: str, *, error_code: int | None = None,
                 retry_after: float | None = None) -> None:
        super().__init__(f"{method}: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code
        self.retry_after = retry_after

    @property
    def is_parse_error(self) -> bool:
        return self.error_code == 400 and "parse entities" in self.description.lower()


def split_text(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on line boundaries where possible, hard-cut otherwise."""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    rest = text
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(rest[:cut])
        rest = rest[cut:].lstrip("\n")
    if rest:
        chunks.append(rest)
    return chunks


class TelegramClient:
    def __init__(
        self,
        token: str | None = None,
        *,
        api_url: str | None = None,
        poll_timeout: int | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        token = token or settings.TELEGRAM_TOKEN
        if not token:
            raise ValueError("TELEGRAM_TOKEN is not set")
        self.poll_timeout = poll_timeout if poll_timeout is not None else settings.TELEGRAM_POLL_TIMEOUT
        base = (api_url or settings.TELEGRAM_API_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=f"{base}/bot{token}/",
            timeout=httpx.Timeout(15.0, read=self.poll_timeout + 15.0),
        )
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(
        self,
        method: str,
        *,
        json: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        files: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> Any:
        for attempt in (1, 2):
            try:
                response = await self._client.post(method, json=json, data=data, files=files, params=params)
            except httpx.HTTPError as exc:
                raise TelegramError(method, f"transport error: {exc}") from exc

            try:
                body = response.json()
            except ValueError:
                body = {"ok": False, "description": response.text[:200], "error_code": response.status_code}

            if body.get("ok"):
                return body.get("result")

            retry_after = (body.get("parameters") or {}).get("retry_after")
            error = TelegramError(
                method,
                str(body.get("description") or f"HTTP {response.status_code}"),
                error_code=body.get("error_code") or response.status_code,
                retry_after=float(retry_after) if retry_after is not None else None,
            )
            if (
                attempt == 1
                and error.error_code == 429
                and error.retry_after is not None
                and error.retry_after <= MAX_RETRY_AFTER_SECONDS
            ):
                logger.warning("[TG] %s rate limited; retrying in %.0fs", method, error.retry_after)
                await self._sleep(error.retry_after)
                continue
            raise error
        raise AssertionError("unreachable")

    async def send_text(self, chat_id: int | str, text: str, *, markdown: bool = False) -> None:
        for chunk in split_text(text):
            payload: Dict[str, Any] = {"chat_id": chat_id, "text": chunk}
            if markdown:
                payload["parse_mode"] = "Markdown"
            try:
                await self._call("sendMessage", json=payload)
            except TelegramError as exc:
                if not (markdown and exc.is_parse_error):
                    raise
                # User-supplied text broke the Markdown entities; send it verbatim.
                logger.info("[TG] Markdown rejected for %s; resending as plain text", chat_id)
                await self._call("sendMessage", json={"chat_id": chat_id, "text": chunk})

    async def send_image(self, chat_id: int | str, image: bytes, caption: str = "") -> None:
        await self._call(
            "sendPhoto",
            data={"chat_id": str(chat_id), "caption": caption},
            files={"photo": ("qr.png", image, "image/png")},
        )

    async def send_document(self, chat_id: int | str, data: bytes, filename: str, caption: str = "") -> None:
        await self._call(
            "sendDocument",
            data={"chat_id": str(chat_id), "caption": caption},
            files={"document": (filename, data, "application/octet-stream")},
        )

    async def get_updates(self, offset: Optional[int] = None, timeout: Optional[int] = None) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "timeout": self.poll_timeout if timeout is None else timeout,
            "allowed_updates": ["message"],
        }
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", json=payload) or []

    async def poll(
        self,
        handler: Callable[[Dict[str, Any]], Awaitable[None]],
        stop_event: asyncio.Event,
        *,
        error_backoff: float = 3.0,
    ) -> None:
        """Long-poll updates and hand each to *handler* until *stop_event* is set."""
        offset: Optional[int] = None
        logger.info("[TG] Polling started")
        while not stop_event.is_set():
            try:
                updates = await self.get_updates(offset)
            except TelegramError as exc:
                logger.warning("[TG] getUpdates failed: %s", exc)
                await self._sleep(error_backoff)
                continue

            for update in updates:
                offset = int(update["update_id"]) + 1
                try:
                    await handler(update)
                except Exception:
                    logger.exception("[TG] Handler failed for update %s", update.get("update_id"))
        logger.info("[TG] Polling stopped")
