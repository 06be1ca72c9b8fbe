"""Failure taxonomy shared by the relay services.

None of these is allowed to take the process down: each one is caught at the
component boundary that owns the recovery (reconnect, fallback delivery, fallback
reply, in-memory default) and logged.
"""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for every relay-specific failure."""


class TransientConnectionFailure(RelayError):
    """The WhatsApp connection dropped or could not be opened; a reconnect follows."""


class TerminalSessionFailure(RelayError):
    """The session ended for good (explicit logout, retry cap reached)."""


class DeliveryFailure(RelayError):
    """A message, photo or document could not be delivered through the front end."""


class ExternalCallFailure(RelayError):
    """An LLM / analysis call errored; callers substitute a fallback."""


class RateLimitError(ExternalCallFailure):
    def __init__(self, *, provider: str, retry_after_seconds: float) -> None:
        super().__init__(f"Rate limited by {provider}; retry after {retry_after_seconds:.1f}s")
        self.provider = provider
        self.retry_after_seconds = retry_after_seconds


class PersistenceFailure(RelayError):
    """A document could not be written (or read back) from the store."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Document '{key}': {reason}")
        self.key = key
