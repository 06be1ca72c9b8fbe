"""Pairing challenge delivery.

The gateway re-emits the QR string every ~20 seconds while nobody scans it, and
often two or three times in a row during a slow handshake. The user must still
receive exactly one image per pairing attempt, so every delivery is keyed by
``(chat, attempt)`` and a repeat for the same attempt is a no-op.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import qrcode

from relay_orchestrator.config import messages
from relay_orchestrator.services.errors import DeliveryFailure
from relay_orchestrator.services.interfaces import ChatFrontend
from relay_orchestrator.services.notifier import OperatorChannel

logger = logging.getLogger(__name__)
audit = logging.getLogger("relay.audit")


def render_qr_png(challenge: str) -> bytes:
    """Render the opaque pairing string as a PNG QR code."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(challenge)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


@dataclass
class PendingPairing:
    chat_id: str
    attempt: int
    issued_at: float = field(default_factory=time.time)
    delivered: bool = False


class PairingCoordinator:
    def __init__(
        self,
        frontend: ChatFrontend,
        operator: OperatorChannel,
        renderer: Callable[[str], bytes] = render_qr_png,
    ) -> None:
        self._frontend = frontend
        self._operator = operator
        self._render = renderer
        self._pending: Dict[str, PendingPairing] = {}

    def pending(self, chat_id: int | str) -> Optional[PendingPairing]:
        return self._pending.get(str(chat_id))

    async def issue_challenge(
        self,
        chat_id: int | str,
        attempt: int,
        challenge: str,
        *,
        display_name: str = "",
        caption: str = messages.PAIRING_QR_CAPTION,
    ) -> bool:
        """Deliver the challenge image for *attempt*. Returns False on hard failure."""
        key = str(chat_id)
        current = self._pending.get(key)
        if current is not None and current.attempt == attempt:
            logger.debug("[PAIRING] Challenge for %s attempt %d already issued", key, attempt)
            return current.delivered

        pending = PendingPairing(chat_id=key, attempt=attempt)
        self._pending[key] = pending

        try:
            await self._deliver(chat_id, challenge, caption)
        except DeliveryFailure as exc:
            self._pending.pop(key, None)
            logger.error("[PAIRING] Delivery failed for %s attempt %d: %s", key, attempt, exc)
            audit.warning("pairing_delivery_failed chat=%s attempt=%d", key, attempt)
            await self._report_failure(chat_id, display_name)
            return False

        pending.delivered = True
        logger.info("[PAIRING] Challenge delivered to %s (attempt %d)", key, attempt)
        return True

    def resolve(self, chat_id: int | str) -> Optional[PendingPairing]:
        """Forget the in-flight attempt (paired, failed or replaced)."""
        return self._pending.pop(str(chat_id), None)

    async def _deliver(self, chat_id: int | str, challenge: str, caption: str) -> None:
        try:
            image = self._render(challenge)
        except Exception as exc:
            raise DeliveryFailure(f"could not render challenge: {exc}") from exc

        try:
            await self._frontend.send_image(chat_id, image, caption)
            return
        except Exception as exc:
            logger.warning("[PAIRING] Photo send failed for %s, trying document: %s", chat_id, exc)

        try:
            await self._frontend.send_document(
                chat_id, image, messages.PAIRING_QR_FILENAME, messages.PAIRING_QR_DOCUMENT_CAPTION
            )
        except Exception as exc:
            raise DeliveryFailure(f"photo and document sends failed: {exc}") from exc

    async def _report_failure(self, chat_id: int | str, display_name: str) -> None:
        if self._operator.is_operator(chat_id):
            return
        try:
            await self._frontend.send_text(chat_id, messages.PAIRING_DELIVERY_FAILED)
        except Exception as exc:
            logger.warning("[PAIRING] Could not tell %s about the failure: %s", chat_id, exc)
        await self._operator.notify(
            messages.OPERATOR_PAIRING_DELIVERY_FAILED.format(name=display_name or chat_id, user_id=chat_id)
        )
