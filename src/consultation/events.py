"""Typed consultation events.

Each participant's coordinator owns one ``EventStream``. Events are recorded
in order and replayed to late subscribers, so a UI that attaches after the
remote stream arrived still learns about it.
"""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from consultation.errors import ConsultationError
from consultation.models import ChatMessage, Session, SessionState, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChanged:
    session_ref: str
    old_state: SessionState
    new_state: SessionState


@dataclass(frozen=True)
class PatientWaiting:
    """A patient is in the waiting room (provider side)."""

    patient_ref: str
    display_name: str
    since: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PatientLeftLobby:
    patient_ref: str


@dataclass(frozen=True)
class PatientAdmitted:
    patient_ref: str


@dataclass(frozen=True)
class AdmissionAcknowledged:
    """The admitted patient confirmed it is joining (provider side)."""

    patient_ref: str


@dataclass(frozen=True)
class AdmissionDeclined:
    patient_ref: str
    reason: str = ""


@dataclass(frozen=True)
class RemoteStreamReceived:
    """A remote media track arrived on the peer transport."""

    track: Any
    kind: str


@dataclass(frozen=True)
class Connected:
    session_ref: str


@dataclass(frozen=True)
class ConnectionStateChanged:
    session_ref: str
    state: str


@dataclass(frozen=True)
class MessageReceived:
    """A chat message entered the local history.

    ``path`` records which delivery produced it first: the sender's own
    echo, the authoritative store feed, the relay envelope or backfill.
    """

    message: ChatMessage
    path: Literal["local", "authoritative", "relay", "backfill"]


@dataclass(frozen=True)
class SessionEnded:
    session: Session
    remote: bool


@dataclass(frozen=True)
class ErrorOccurred:
    error: ConsultationError
    fatal: bool = False


ConsultationEvent = (
    StateChanged
    | PatientWaiting
    | PatientLeftLobby
    | PatientAdmitted
    | AdmissionAcknowledged
    | AdmissionDeclined
    | RemoteStreamReceived
    | Connected
    | ConnectionStateChanged
    | MessageReceived
    | SessionEnded
    | ErrorOccurred
)

EventCallback = Callable[[Any], Awaitable[None] | None]

_CLOSED = object()


class EventStream:
    """Ordered, replayable event channel for one participant."""

    def __init__(self) -> None:
        self._history: list[ConsultationEvent] = []
        self._queues: list[asyncio.Queue[Any]] = []
        self._callbacks: list[tuple[type | tuple[type, ...] | None, EventCallback]] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def history(self) -> list[ConsultationEvent]:
        return list(self._history)

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: ConsultationEvent) -> None:
        if self._closed:
            logger.debug("Dropping event after close", extra={"event": type(event).__name__})
            return

        self._history.append(event)
        for queue in self._queues:
            queue.put_nowait(event)
        for event_type, callback in list(self._callbacks):
            if event_type is None or isinstance(event, event_type):
                self._invoke(callback, event)

    def subscribe(
        self,
        callback: EventCallback,
        event_type: type | tuple[type, ...] | None = None,
        replay: bool = True,
    ) -> Callable[[], None]:
        """Register a sync or async callback.

        Args:
            callback: Called with each matching event
            event_type: Only deliver events of this type (or types)
            replay: Deliver matching past events first

        Returns:
            A function that removes the callback
        """
        entry = (event_type, callback)
        if replay:
            for event in self._history:
                if event_type is None or isinstance(event, event_type):
                    self._invoke(callback, event)
        self._callbacks.append(entry)

        def unsubscribe() -> None:
            if entry in self._callbacks:
                self._callbacks.remove(entry)

        return unsubscribe

    def _invoke(self, callback: EventCallback, event: ConsultationEvent) -> None:
        try:
            result = callback(event)
        except Exception as e:
            logger.error(
                f"Event callback failed: {e}",
                exc_info=True,
                extra={"event": type(event).__name__},
            )
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            logger.error("Async event callback failed", exc_info=error)

    async def events(self, replay: bool = True) -> AsyncIterator[ConsultationEvent]:
        """Iterate events until the stream is closed."""
        queue: asyncio.Queue[Any] = asyncio.Queue()
        if replay:
            for event in self._history:
                queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._queues.append(queue)

        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    async def wait_for(
        self,
        event_type: type,
        predicate: Callable[[Any], bool] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Return the first (past or future) event of ``event_type`` matching ``predicate``.

        Raises:
            TimeoutError: If no matching event arrives within ``timeout``
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()

        def on_event(event: Any) -> None:
            if not future.done() and (predicate is None or predicate(event)):
                future.set_result(event)

        unsubscribe = self.subscribe(on_event, event_type)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()

    async def wait_idle(self) -> None:
        """Wait for outstanding async callbacks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_CLOSED)
        await self.wait_idle()
        self._callbacks.clear()
