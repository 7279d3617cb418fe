"""Redis implementations of the consultation stores.

Key layout (all under the configured prefix):

- ``appointment:{id}``            appointment JSON (seeded by the host application)
- ``session:{id}``                session JSON
- ``appointment-session:{appt}``  session id, written with SET NX
- ``participant-sessions:{user}`` sorted set of session ids by creation time
- ``messages:{session}``          stream of message JSON
- ``message-ids:{session}``       set of stored message ids
- ``messages-live:{session}``     pub/sub feed of newly stored messages
- ``notes:{session}``             list of note JSON
"""

import logging

from pydantic import ValidationError
from redis.exceptions import RedisError

from consultation.errors import StoreUnavailableError
from consultation.models import Appointment, ChatMessage, ConsultationNote, Session
from consultation.redis_connection import RedisConnection
from consultation.store.base import (
    AppointmentDirectory,
    MessageHandler,
    MessageStore,
    NotesStore,
    SessionStore,
)
from consultation.transport.base import Subscription
from consultation.transport.protocol import decode_message, encode_message

logger = logging.getLogger(__name__)

# Overwrite a session unless the stored copy has already ended.
_SAVE_SESSION_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and ARGV[2] ~= 'ended' then
    local ok, decoded = pcall(cjson.decode, current)
    if ok and decoded['state'] == 'ended' then
        return current
    end
end
redis.call('SET', KEYS[1], ARGV[1])
return ARGV[1]
"""


class _RedisStore:
    def __init__(self, connection: RedisConnection) -> None:
        self.connection = connection

    def _unavailable(self, operation: str, error: Exception) -> StoreUnavailableError:
        logger.error(f"Redis store {operation} failed: {error}")
        return StoreUnavailableError(f"Store {operation} failed: {error}", {"operation": operation})


class RedisAppointmentDirectory(_RedisStore, AppointmentDirectory):
    async def put_appointment(self, appointment: Appointment) -> None:
        try:
            await self.connection.client.set(
                self.connection.key("appointment", appointment.id), appointment.model_dump_json()
            )
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("put_appointment", e) from e

    async def get_appointment(self, appointment_ref: str) -> Appointment | None:
        try:
            raw = await self.connection.client.get(self.connection.key("appointment", appointment_ref))
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("get_appointment", e) from e
        if raw is None:
            return None
        return Appointment.model_validate_json(raw)


class RedisSessionStore(_RedisStore, SessionStore):
    def _session_key(self, session_ref: str) -> str:
        return self.connection.key("session", session_ref)

    async def create_if_absent(self, session: Session) -> Session:
        client = self.connection.client
        index_key = self.connection.key("appointment-session", session.appointment_ref)
        try:
            existing = await self.latest_for_appointment(session.appointment_ref)
            if existing is not None:
                return existing

            # Record first, then claim the appointment; the loser removes its orphan.
            await client.set(self._session_key(session.id), session.model_dump_json())
            claimed = await client.set(index_key, session.id, nx=True)
            if not claimed:
                await client.delete(self._session_key(session.id))
                winner = await self.latest_for_appointment(session.appointment_ref)
                if winner is None:
                    raise StoreUnavailableError(
                        "Session index points at a missing session",
                        {"appointment_ref": session.appointment_ref},
                    )
                return winner

            score = session.created_at.timestamp()
            for user_ref in (session.provider_ref, session.patient_ref):
                await client.zadd(
                    self.connection.key("participant-sessions", user_ref), {session.id: score}
                )
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("create_if_absent", e) from e

        logger.info(
            "Session created",
            extra={"session_ref": session.id, "appointment_ref": session.appointment_ref},
        )
        return session

    async def get_session(self, session_ref: str) -> Session | None:
        try:
            raw = await self.connection.client.get(self._session_key(session_ref))
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("get_session", e) from e
        return Session.model_validate_json(raw) if raw is not None else None

    async def latest_for_appointment(self, appointment_ref: str) -> Session | None:
        try:
            session_id = await self.connection.client.get(
                self.connection.key("appointment-session", appointment_ref)
            )
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("latest_for_appointment", e) from e
        if session_id is None:
            return None
        return await self.get_session(session_id)

    async def save_session(self, session: Session) -> Session:
        try:
            stored = await self.connection.client.eval(
                _SAVE_SESSION_SCRIPT,
                1,
                self._session_key(session.id),
                session.model_dump_json(),
                session.state.value,
            )
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("save_session", e) from e
        return Session.model_validate_json(stored)

    async def list_for_participant(self, user_ref: str, limit: int = 20) -> list[Session]:
        try:
            session_ids = await self.connection.client.zrevrange(
                self.connection.key("participant-sessions", user_ref), 0, limit - 1
            )
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("list_for_participant", e) from e

        sessions = []
        for session_id in session_ids:
            session = await self.get_session(session_id)
            if session is not None:
                sessions.append(session)
        return sessions


class RedisMessageStore(_RedisStore, MessageStore):
    def __init__(self, connection: RedisConnection, history_maxlen: int = 10_000) -> None:
        super().__init__(connection)
        self.history_maxlen = history_maxlen

    async def append_message(self, message: ChatMessage) -> ChatMessage:
        data = encode_message(message)
        ids_key = self.connection.key("message-ids", message.session_ref)
        try:
            client = self.connection.client
            added = await client.sadd(ids_key, message.id)
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("append_message", e) from e
        if not added:
            return message

        try:
            await client.xadd(
                self.connection.key("messages", message.session_ref),
                {"message": data},
                maxlen=self.history_maxlen,
                approximate=True,
            )
        except (RedisError, ConnectionError) as e:
            # Release the id so a retry of the same message is not mistaken for a duplicate.
            try:
                await client.srem(ids_key, message.id)
            except (RedisError, ConnectionError) as cleanup_error:
                logger.warning(f"Failed to release message id {message.id}: {cleanup_error}")
            raise self._unavailable("append_message", e) from e

        try:
            await client.publish(self.connection.key("messages-live", message.session_ref), data)
        except (RedisError, ConnectionError) as e:
            # Stored; live subscribers catch up from history on their next backfill.
            logger.warning(f"Failed to publish message {message.id}: {e}")
        return message

    async def list_messages(self, session_ref: str) -> list[ChatMessage]:
        try:
            entries = await self.connection.client.xrange(self.connection.key("messages", session_ref))
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("list_messages", e) from e

        messages = []
        for _entry_id, fields in entries:
            try:
                messages.append(decode_message(fields["message"]))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed message entry: {e}", extra={"session_ref": session_ref})
        messages.sort(key=lambda m: m.created_at)
        return messages

    async def subscribe_messages(self, session_ref: str, handler: MessageHandler) -> Subscription:
        async def on_message(data: str) -> None:
            try:
                message = decode_message(data)
            except ValueError as e:
                logger.warning(f"Dropping malformed message: {e}", extra={"session_ref": session_ref})
                return
            await handler(message)

        async def catch_up() -> None:
            for message in await self.list_messages(session_ref):
                await handler(message)

        return await self.connection.listen(
            self.connection.key("messages-live", session_ref), on_message, on_resubscribed=catch_up
        )


class RedisNotesStore(_RedisStore, NotesStore):
    async def add_note(self, note: ConsultationNote) -> ConsultationNote:
        try:
            await self.connection.client.rpush(
                self.connection.key("notes", note.session_ref), note.model_dump_json()
            )
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("add_note", e) from e
        return note

    async def list_notes(self, session_ref: str) -> list[ConsultationNote]:
        try:
            raw_notes = await self.connection.client.lrange(
                self.connection.key("notes", session_ref), 0, -1
            )
        except (RedisError, ConnectionError) as e:
            raise self._unavailable("list_notes", e) from e

        notes = []
        for raw in raw_notes:
            try:
                notes.append(ConsultationNote.model_validate_json(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed note: {e}", extra={"session_ref": session_ref})
        return notes
