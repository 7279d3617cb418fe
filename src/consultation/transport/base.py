"""Base signal channel abstraction.

The signal channel is an at-least-once broadcast topic per session: every
subscriber of a session eventually sees every envelope published to it,
possibly more than once, ordered per sender but not across senders.
Implementations also retain history so a late subscriber can catch up.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable

from consultation.errors import ChannelError
from consultation.models import SignalEnvelope, SignalKind

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[SignalEnvelope], Awaitable[None]]
LostCallback = Callable[[ChannelError], None]


class Subscription:
    """Handle for one live subscription.

    ``close()`` is idempotent so the resource manager can call it
    unconditionally during teardown.

    A backend that gives up on delivery marks the subscription lost; the
    owner hears about it through ``on_lost``.
    """

    def __init__(self, name: str, closer: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self._closer = closer
        self._closed = False
        self._lost_callbacks: list[LostCallback] = []
        self.error: ChannelError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._closer()
        logger.debug("Subscription closed", extra={"subscription": self.name})

    def on_lost(self, callback: LostCallback) -> None:
        """Call ``callback(error)`` once delivery has stopped for good."""
        if self.error is not None:
            callback(self.error)
            return
        self._lost_callbacks.append(callback)

    def mark_lost(self, error: ChannelError) -> None:
        if self._closed or self.error is not None:
            return
        self.error = error
        logger.warning("Subscription lost", extra={"subscription": self.name, "error": str(error)})
        for callback in self._lost_callbacks:
            callback(error)

    def __repr__(self) -> str:
        return f"Subscription(name={self.name!r}, closed={self._closed})"


class SignalChannel(ABC):
    """Broadcast channel carrying signaling and lobby envelopes."""

    @abstractmethod
    async def publish(self, envelope: SignalEnvelope) -> None:
        """Publish an envelope to every subscriber of its session.

        Raises:
            ChannelError: If the envelope could not be published
        """

    @abstractmethod
    async def subscribe(self, session_ref: str, handler: EnvelopeHandler) -> Subscription:
        """Deliver future envelopes of ``session_ref`` to ``handler``.

        Handlers are awaited one at a time per subscription, in delivery order.

        Raises:
            ChannelError: If the subscription could not be established
        """

    @abstractmethod
    async def history(
        self,
        session_ref: str,
        kinds: Iterable[SignalKind] | None = None,
        sender_ref: str | None = None,
    ) -> list[SignalEnvelope]:
        """Return retained envelopes of a session in publication order.

        Args:
            session_ref: Session to query
            kinds: Only return envelopes of these kinds
            sender_ref: Only return envelopes from this sender

        Raises:
            ChannelError: If history could not be read
        """

    async def close(self) -> None:
        """Release backend resources. Default is a no-op."""


def matches(
    envelope: SignalEnvelope,
    kinds: frozenset[SignalKind] | None,
    sender_ref: str | None,
) -> bool:
    """Whether an envelope passes a history filter."""
    if kinds is not None and envelope.kind not in kinds:
        return False
    if sender_ref is not None and envelope.sender_ref != sender_ref:
        return False
    return True
