"""In-process signal channel.

Used by tests and single-process demos. Each subscription owns a queue and a
dispatcher task so handlers run sequentially in delivery order, the way a
network subscriber would see them. ``redeliver`` and ``fail_next_publishes``
let callers exercise at-least-once delivery and transient failures.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from typing import Generic, TypeVar

from consultation.errors import ChannelError
from consultation.models import SignalEnvelope, SignalKind
from consultation.transport.base import EnvelopeHandler, SignalChannel, Subscription, matches

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueuedDispatcher(Generic[T]):
    """Feeds queued items to one async handler, one at a time."""

    def __init__(self, name: str, handler: Callable[[T], Awaitable[None]]) -> None:
        self.name = name
        self.handler = handler
        self.queue: asyncio.Queue[T] = asyncio.Queue()
        self.pending = 0
        self.stopped = False
        self.task: asyncio.Task[None] = asyncio.create_task(self._run(), name=name)

    def put(self, item: T) -> None:
        self.pending += 1
        self.queue.put_nowait(item)

    async def _run(self) -> None:
        while not self.stopped:
            item = await self.queue.get()
            try:
                await self.handler(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Handler failed: {e}",
                    exc_info=True,
                    extra={"subscription": self.name},
                )
            finally:
                self.pending -= 1
                self.queue.task_done()

    async def join(self) -> None:
        await self.queue.join()

    async def stop(self) -> None:
        self.stopped = True
        while not self.queue.empty():
            self.queue.get_nowait()
            self.pending -= 1
            self.queue.task_done()
        # A handler may close its own subscription; it then ends after returning.
        if self.task is asyncio.current_task() or self.task.done():
            return
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass


async def drain_dispatchers(get_dispatchers: Callable[[], list[QueuedDispatcher]]) -> None:
    """Wait until every dispatcher is idle at the same time.

    Handlers may enqueue further items, so this loops until nothing is pending.
    """
    while True:
        busy = [d for d in get_dispatchers() if d.pending and not d.stopped]
        if not busy:
            return
        await asyncio.gather(*(d.join() for d in busy))


class MemorySignalChannel(SignalChannel):
    """Signal channel backed by process memory."""

    def __init__(self) -> None:
        self._history: dict[str, list[SignalEnvelope]] = defaultdict(list)
        self._subscribers: dict[str, list[QueuedDispatcher[SignalEnvelope]]] = defaultdict(list)
        self._publish_failures = 0
        self._counter = 0

    def fail_next_publishes(self, count: int) -> None:
        """Make the next ``count`` publish calls raise ``ChannelError``."""
        self._publish_failures = count

    async def publish(self, envelope: SignalEnvelope) -> None:
        if self._publish_failures > 0:
            self._publish_failures -= 1
            raise ChannelError("Signal channel unavailable", {"envelope_id": envelope.id})

        self._history[envelope.session_ref].append(envelope)
        self._fan_out(envelope)
        logger.debug(
            "Envelope published",
            extra={
                "session_ref": envelope.session_ref,
                "kind": envelope.kind.value,
                "envelope_id": envelope.id,
            },
        )

    async def redeliver(self, envelope: SignalEnvelope) -> None:
        """Deliver an already-published envelope again."""
        self._fan_out(envelope)

    def _fan_out(self, envelope: SignalEnvelope) -> None:
        for subscriber in list(self._subscribers[envelope.session_ref]):
            subscriber.put(envelope)

    async def subscribe(self, session_ref: str, handler: EnvelopeHandler) -> Subscription:
        self._counter += 1
        subscriber = QueuedDispatcher(f"memory:{session_ref}:{self._counter}", handler)
        self._subscribers[session_ref].append(subscriber)

        async def closer() -> None:
            if subscriber in self._subscribers[session_ref]:
                self._subscribers[session_ref].remove(subscriber)
            await subscriber.stop()

        return Subscription(subscriber.name, closer)

    async def history(
        self,
        session_ref: str,
        kinds: Iterable[SignalKind] | None = None,
        sender_ref: str | None = None,
    ) -> list[SignalEnvelope]:
        kind_filter = frozenset(kinds) if kinds is not None else None
        return [e for e in self._history[session_ref] if matches(e, kind_filter, sender_ref)]

    def subscriber_count(self, session_ref: str) -> int:
        return len(self._subscribers[session_ref])

    async def drain(self) -> None:
        """Wait until every delivered envelope has been handled."""
        await drain_dispatchers(
            lambda: [s for subscribers in self._subscribers.values() for s in subscribers]
        )

    async def close(self) -> None:
        for subscribers in list(self._subscribers.values()):
            for subscriber in list(subscribers):
                await subscriber.stop()
        self._subscribers.clear()
