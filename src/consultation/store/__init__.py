"""Persistent consultation state: appointments, sessions, messages, notes."""

from consultation.store.base import (
    AppointmentDirectory,
    MessageHandler,
    MessageStore,
    NotesStore,
    SessionStore,
)
from consultation.store.memory import (
    MemoryAppointmentDirectory,
    MemoryMessageStore,
    MemoryNotesStore,
    MemorySessionStore,
)

__all__ = [
    "AppointmentDirectory",
    "MemoryAppointmentDirectory",
    "MemoryMessageStore",
    "MemoryNotesStore",
    "MemorySessionStore",
    "MessageHandler",
    "MessageStore",
    "NotesStore",
    "SessionStore",
]
