from __future__ import annotations

import logging
from datetime import datetime

from relay_orchestrator.services.interfaces import ChatFrontend

logger = logging.getLogger(__name__)


def now_label() -> str:
    """Local wall-clock stamp used in operator relays."""
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class OperatorChannel:
    """Real-time monitoring feed to the operator's chat.

    A failed relay is logged and swallowed: nothing upstream (ingestion, a session
    transition, a trigger) may fail because the operator could not be reached.
    """

    def __init__(self, frontend: ChatFrontend, operator_id: int | str | None) -> None:
        self._frontend = frontend
        self.operator_id = operator_id

    def is_operator(self, chat_id: int | str) -> bool:
        return self.operator_id is not None and str(chat_id) == str(self.operator_id)

    async def notify(self, text: str) -> bool:
        if self.operator_id is None:
            logger.debug("[NOTIFY] No operator configured; dropped: %s", text[:60])
            return False
        try:
            await self._frontend.send_text(self.operator_id, text)
            return True
        except Exception as exc:
            logger.warning("[NOTIFY] Operator relay failed: %s", exc)
            return False
