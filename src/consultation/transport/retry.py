"""Retry with exponential backoff for channel operations."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from consultation.config import RetryConfig
from consultation.errors import ChannelError
from consultation.models import SignalEnvelope, SignalKind
from consultation.transport.base import SignalChannel

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_channel_operation(
    operation: Callable[[], Awaitable[T]],
    retry: RetryConfig,
    description: str = "channel operation",
) -> T:
    """Run ``operation`` until it succeeds or attempts are exhausted.

    Only ``ChannelError`` is retried; any other exception propagates at once.

    Args:
        operation: Zero-argument coroutine factory
        retry: Attempt count and backoff bounds
        description: Label used in log records

    Returns:
        The operation's result

    Raises:
        ChannelError: The last failure, once all attempts failed
    """
    backoff = retry.initial_backoff_s

    for attempt in range(retry.max_attempts):
        try:
            return await operation()
        except ChannelError as e:
            if attempt < retry.max_attempts - 1:
                logger.warning(
                    f"{description} failed, retrying...",
                    extra={
                        "attempt": attempt + 1,
                        "max_attempts": retry.max_attempts,
                        "backoff_s": backoff,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, retry.max_backoff_s)
            else:
                logger.error(
                    f"{description} failed after all retries",
                    extra={"attempts": retry.max_attempts, "error": str(e)},
                )
                raise

    raise ChannelError(f"{description} was not attempted")


class RetryingPublisher:
    """Publishes one participant's envelopes for one session, with retry.

    A retried publish reuses the same envelope, so a publish that reached the
    channel before failing is deduplicated by receivers.
    """

    def __init__(
        self,
        channel: SignalChannel,
        session_ref: str,
        sender_ref: str,
        retry: RetryConfig,
    ) -> None:
        self.channel = channel
        self.session_ref = session_ref
        self.sender_ref = sender_ref
        self.retry = retry

    async def publish(self, kind: SignalKind, payload: dict[str, Any] | None = None) -> SignalEnvelope:
        envelope = SignalEnvelope(
            session_ref=self.session_ref,
            sender_ref=self.sender_ref,
            kind=kind,
            payload=payload or {},
        )
        await retry_channel_operation(
            lambda: self.channel.publish(envelope),
            self.retry,
            description=f"publish {kind.value}",
        )
        return envelope
