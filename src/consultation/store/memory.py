"""In-memory stores for tests and single-process demos."""

import asyncio
import logging
from collections import defaultdict

from consultation.errors import StoreUnavailableError
from consultation.models import Appointment, ChatMessage, ConsultationNote, Session
from consultation.store.base import (
    AppointmentDirectory,
    MessageHandler,
    MessageStore,
    NotesStore,
    SessionStore,
)
from consultation.transport.base import Subscription
from consultation.transport.memory import QueuedDispatcher, drain_dispatchers

logger = logging.getLogger(__name__)


class MemoryAppointmentDirectory(AppointmentDirectory):
    def __init__(self, appointments: list[Appointment] | None = None) -> None:
        self._appointments = {a.id: a for a in appointments or []}

    def add(self, appointment: Appointment) -> None:
        self._appointments[appointment.id] = appointment

    async def get_appointment(self, appointment_ref: str) -> Appointment | None:
        return self._appointments.get(appointment_ref)


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._by_appointment: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_if_absent(self, session: Session) -> Session:
        async with self._lock:
            existing_id = self._by_appointment.get(session.appointment_ref)
            if existing_id is not None:
                return self._sessions[existing_id]
            self._sessions[session.id] = session
            self._by_appointment[session.appointment_ref] = session.id
            logger.info(
                "Session created",
                extra={"session_ref": session.id, "appointment_ref": session.appointment_ref},
            )
            return session

    async def get_session(self, session_ref: str) -> Session | None:
        return self._sessions.get(session_ref)

    async def latest_for_appointment(self, appointment_ref: str) -> Session | None:
        session_id = self._by_appointment.get(appointment_ref)
        return self._sessions.get(session_id) if session_id else None

    async def save_session(self, session: Session) -> Session:
        async with self._lock:
            current = self._sessions.get(session.id)
            if current is not None and current.is_ended and not session.is_ended:
                return current
            self._sessions[session.id] = session
            return session

    async def list_for_participant(self, user_ref: str, limit: int = 20) -> list[Session]:
        sessions = [
            s for s in self._sessions.values() if user_ref in (s.provider_ref, s.patient_ref)
        ]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]


class MemoryMessageStore(MessageStore):
    """Message log with an in-process realtime feed.

    ``fail_next_appends`` makes the next appends raise ``StoreUnavailableError``
    so callers can exercise relay fallback.
    """

    def __init__(self) -> None:
        self._messages: dict[str, dict[str, ChatMessage]] = defaultdict(dict)
        self._subscribers: dict[str, list[QueuedDispatcher[ChatMessage]]] = defaultdict(list)
        self._append_failures = 0
        self._counter = 0

    def fail_next_appends(self, count: int) -> None:
        self._append_failures = count

    async def append_message(self, message: ChatMessage) -> ChatMessage:
        if self._append_failures > 0:
            self._append_failures -= 1
            raise StoreUnavailableError(
                "Message store unavailable", {"message_id": message.id}
            )

        stored = self._messages[message.session_ref]
        if message.id in stored:
            return stored[message.id]
        stored[message.id] = message
        for subscriber in list(self._subscribers[message.session_ref]):
            subscriber.put(message)
        return message

    async def list_messages(self, session_ref: str) -> list[ChatMessage]:
        return sorted(self._messages[session_ref].values(), key=lambda m: m.created_at)

    async def subscribe_messages(self, session_ref: str, handler: MessageHandler) -> Subscription:
        self._counter += 1
        subscriber = QueuedDispatcher(f"messages:{session_ref}:{self._counter}", handler)
        self._subscribers[session_ref].append(subscriber)

        async def closer() -> None:
            if subscriber in self._subscribers[session_ref]:
                self._subscribers[session_ref].remove(subscriber)
            await subscriber.stop()

        return Subscription(subscriber.name, closer)

    async def drain(self) -> None:
        await drain_dispatchers(
            lambda: [s for subscribers in self._subscribers.values() for s in subscribers]
        )


class MemoryNotesStore(NotesStore):
    def __init__(self) -> None:
        self._notes: dict[str, list[ConsultationNote]] = defaultdict(list)

    async def add_note(self, note: ConsultationNote) -> ConsultationNote:
        self._notes[note.session_ref].append(note)
        return note

    async def list_notes(self, session_ref: str) -> list[ConsultationNote]:
        return list(self._notes[session_ref])
