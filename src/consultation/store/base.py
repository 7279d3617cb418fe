"""Collaborator interfaces for persistent consultation state.

The core consumes appointments from the host application and persists
sessions, chat messages and clinical notes through these abstractions.
Every implementation raises ``StoreUnavailableError`` when its backend
cannot be reached.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from consultation.models import Appointment, ChatMessage, ConsultationNote, Session
from consultation.transport.base import Subscription

MessageHandler = Callable[[ChatMessage], Awaitable[None]]


class AppointmentDirectory(ABC):
    """Resolves appointment references."""

    @abstractmethod
    async def get_appointment(self, appointment_ref: str) -> Appointment | None:
        """Return the appointment, or None if it does not exist."""


class SessionStore(ABC):
    """Authoritative session records."""

    @abstractmethod
    async def create_if_absent(self, session: Session) -> Session:
        """Store ``session`` unless its appointment already has one.

        Concurrent callers for the same appointment all receive the same
        session; exactly one of them creates it.

        Returns:
            The stored session (either ``session`` or the existing one)
        """

    @abstractmethod
    async def get_session(self, session_ref: str) -> Session | None:
        """Return a session by id."""

    @abstractmethod
    async def latest_for_appointment(self, appointment_ref: str) -> Session | None:
        """Return the most recent session of an appointment."""

    @abstractmethod
    async def save_session(self, session: Session) -> Session:
        """Write a session snapshot.

        Last write wins, except that an ended session is never reopened.

        Returns:
            The snapshot now stored
        """

    @abstractmethod
    async def list_for_participant(self, user_ref: str, limit: int = 20) -> list[Session]:
        """Return a participant's sessions, newest first."""


class MessageStore(ABC):
    """Authoritative chat message log with a realtime feed."""

    @abstractmethod
    async def append_message(self, message: ChatMessage) -> ChatMessage:
        """Persist a message. Appending the same id twice is a no-op."""

    @abstractmethod
    async def list_messages(self, session_ref: str) -> list[ChatMessage]:
        """Return a session's messages ordered by creation time."""

    @abstractmethod
    async def subscribe_messages(self, session_ref: str, handler: MessageHandler) -> Subscription:
        """Deliver messages appended from now on to ``handler``."""


class NotesStore(ABC):
    """Clinical notes written by providers."""

    @abstractmethod
    async def add_note(self, note: ConsultationNote) -> ConsultationNote:
        """Persist a note."""

    @abstractmethod
    async def list_notes(self, session_ref: str) -> list[ConsultationNote]:
        """Return a session's notes, oldest first."""
