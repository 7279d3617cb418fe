"""Unit tests for the Redis signal channel and stores.

The Redis client is mocked; tests check the key layout, command arguments
and how Redis failures map to consultation errors.
"""

from typing import Any
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from consultation.config import RedisConfig
from consultation.errors import ChannelError, StoreUnavailableError
from consultation.models import (
    Appointment,
    ChatMessage,
    ConsultationNote,
    Session,
    SessionState,
    SignalEnvelope,
    SignalKind,
)
from consultation.redis_connection import RedisConnection
from consultation.store.redis_store import (
    RedisAppointmentDirectory,
    RedisMessageStore,
    RedisNotesStore,
    RedisSessionStore,
)
from consultation.transport.base import Subscription
from consultation.transport.protocol import encode_envelope, encode_message
from consultation.transport.redis_channel import RedisSignalChannel


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create mock Redis client."""
    redis_mock = AsyncMock()
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.publish = AsyncMock(return_value=1)
    redis_mock.xadd = AsyncMock(return_value="1-0")
    redis_mock.xrange = AsyncMock(return_value=[])
    return redis_mock


@pytest.fixture
def connection(mock_redis: AsyncMock) -> RedisConnection:
    conn = RedisConnection(RedisConfig(key_prefix="c:"))
    conn._redis = mock_redis
    conn._connected = True
    return conn


@pytest.fixture
def session() -> Session:
    return Session(appointment_ref="a1", provider_ref="d1", patient_ref="p1", modality="video")


class TestRedisSignalChannel:
    """Test stream history plus pub/sub fan-out."""

    async def test_publish_appends_then_broadcasts(
        self, connection: RedisConnection, mock_redis: AsyncMock
    ) -> None:
        channel = RedisSignalChannel(connection, history_maxlen=500)
        envelope = SignalEnvelope(session_ref="s1", sender_ref="d1", kind=SignalKind.OFFER)

        await channel.publish(envelope)

        mock_redis.xadd.assert_awaited_once_with(
            "c:signals:s1", {"envelope": encode_envelope(envelope)}, maxlen=500, approximate=True
        )
        mock_redis.publish.assert_awaited_once_with("c:signals-live:s1", encode_envelope(envelope))

    async def test_publish_failure_raises_channel_error(
        self, connection: RedisConnection, mock_redis: AsyncMock
    ) -> None:
        mock_redis.xadd.side_effect = RedisError("READONLY")
        channel = RedisSignalChannel(connection)

        with pytest.raises(ChannelError, match="Failed to publish offer"):
            await channel.publish(SignalEnvelope(session_ref="s1", sender_ref="d1", kind=SignalKind.OFFER))
        mock_redis.publish.assert_not_awaited()

    async def test_history_decodes_filters_and_skips_malformed(
        self, connection: RedisConnection, mock_redis: AsyncMock
    ) -> None:
        join = SignalEnvelope(session_ref="s1", sender_ref="p1", kind=SignalKind.JOIN_LOBBY)
        offer = SignalEnvelope(session_ref="s1", sender_ref="d1", kind=SignalKind.OFFER)
        mock_redis.xrange.return_value = [
            ("1-0", {"envelope": encode_envelope(join)}),
            ("2-0", {"envelope": "{broken"}),
            ("3-0", {"other": "field"}),
            ("4-0", {"envelope": encode_envelope(offer)}),
        ]
        channel = RedisSignalChannel(connection)

        assert await channel.history("s1") == [join, offer]
        assert await channel.history("s1", kinds=[SignalKind.JOIN_LOBBY]) == [join]
        assert await channel.history("s1", sender_ref="d1") == [offer]
        mock_redis.xrange.assert_awaited_with("c:signals:s1")

    async def test_history_failure_raises_channel_error(
        self, connection: RedisConnection, mock_redis: AsyncMock
    ) -> None:
        mock_redis.xrange.side_effect = ConnectionError("reset")

        with pytest.raises(ChannelError):
            await RedisSignalChannel(connection).history("s1")

    async def test_subscribe_decodes_live_payloads(self, connection: RedisConnection) -> None:
        captured = {}

        async def fake_listen(channel_name: str, callback: AsyncMock, on_resubscribed: Any = None) -> Subscription:
            captured["channel"] = channel_name
            captured["callback"] = callback
            return Subscription(channel_name, AsyncMock())

        connection.listen = fake_listen  # type: ignore[method-assign]
        handler = AsyncMock()
        channel = RedisSignalChannel(connection)

        await channel.subscribe("s1", handler)
        envelope = SignalEnvelope(session_ref="s1", sender_ref="d1", kind=SignalKind.ANSWER)
        await captured["callback"](encode_envelope(envelope))
        await captured["callback"]("not an envelope")

        assert captured["channel"] == "c:signals-live:s1"
        handler.assert_awaited_once_with(envelope)

    async def test_resubscribe_replays_history(self, connection: RedisConnection, mock_redis: AsyncMock) -> None:
        captured = {}

        async def fake_listen(channel_name: str, callback: Any, on_resubscribed: Any = None) -> Subscription:
            captured["catch_up"] = on_resubscribed
            return Subscription(channel_name, AsyncMock())

        connection.listen = fake_listen  # type: ignore[method-assign]
        handler = AsyncMock()
        offer = SignalEnvelope(session_ref="s1", sender_ref="d1", kind=SignalKind.OFFER)
        mock_redis.xrange.return_value = [("1-0", {"envelope": encode_envelope(offer)})]

        await RedisSignalChannel(connection).subscribe("s1", handler)
        await captured["catch_up"]()

        mock_redis.xrange.assert_awaited_once_with("c:signals:s1")
        handler.assert_awaited_once_with(offer)


class TestRedisSessionStore:
    """Test atomic creation and terminal ended state."""

    async def test_create_claims_appointment(
        self, connection: RedisConnection, mock_redis: AsyncMock, session: Session
    ) -> None:
        store = RedisSessionStore(connection)

        created = await store.create_if_absent(session)

        assert created == session
        mock_redis.set.assert_any_await(f"c:session:{session.id}", session.model_dump_json())
        mock_redis.set.assert_any_await("c:appointment-session:a1", session.id, nx=True)
        assert mock_redis.zadd.await_count == 2
        mock_redis.zadd.assert_any_await("c:participant-sessions:d1", {session.id: session.created_at.timestamp()})

    async def test_create_returns_existing(
        self, connection: RedisConnection, mock_redis: AsyncMock, session: Session
    ) -> None:
        existing = session.model_copy(update={"id": "existing"})
        mock_redis.get.side_effect = lambda key: {
            "c:appointment-session:a1": "existing",
            "c:session:existing": existing.model_dump_json(),
        }.get(key)
        store = RedisSessionStore(connection)

        assert await store.create_if_absent(session) == existing
        mock_redis.set.assert_not_awaited()

    async def test_create_race_loser_adopts_winner(
        self, connection: RedisConnection, mock_redis: AsyncMock, session: Session
    ) -> None:
        winner = session.model_copy(update={"id": "winner"})
        index: dict[str, str] = {}

        async def fake_get(key: str) -> str | None:
            if key == "c:appointment-session:a1":
                return index.get("claimed")
            if key == "c:session:winner":
                return winner.model_dump_json()
            return None

        async def fake_set(key: str, value: str, nx: bool = False) -> bool | None:
            if nx:
                # Another participant claimed the appointment first.
                index["claimed"] = "winner"
                return None
            return True

        mock_redis.get.side_effect = fake_get
        mock_redis.set.side_effect = fake_set
        store = RedisSessionStore(connection)

        assert await store.create_if_absent(session) == winner
        mock_redis.delete.assert_awaited_once_with(f"c:session:{session.id}")
        mock_redis.zadd.assert_not_awaited()

    async def test_save_uses_guarded_script(
        self, connection: RedisConnection, mock_redis: AsyncMock, session: Session
    ) -> None:
        ended = session.model_copy(update={"state": SessionState.ENDED})
        mock_redis.eval = AsyncMock(return_value=ended.model_dump_json())
        store = RedisSessionStore(connection)

        # The stored copy has ended, so an active snapshot does not reopen it.
        active = session.model_copy(update={"state": SessionState.ACTIVE})
        result = await store.save_session(active)

        assert result.state == SessionState.ENDED
        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, f"c:session:{session.id}", active.model_dump_json(), "active")

    async def test_list_for_participant_newest_first(
        self, connection: RedisConnection, mock_redis: AsyncMock, session: Session
    ) -> None:
        older = session.model_copy(update={"id": "older"})
        mock_redis.zrevrange = AsyncMock(return_value=[session.id, "older", "gone"])
        mock_redis.get.side_effect = lambda key: {
            f"c:session:{session.id}": session.model_dump_json(),
            "c:session:older": older.model_dump_json(),
        }.get(key)
        store = RedisSessionStore(connection)

        sessions = await store.list_for_participant("p1", limit=5)

        assert [s.id for s in sessions] == [session.id, "older"]
        mock_redis.zrevrange.assert_awaited_once_with("c:participant-sessions:p1", 0, 4)

    async def test_failures_raise_store_unavailable(
        self, connection: RedisConnection, mock_redis: AsyncMock
    ) -> None:
        mock_redis.get.side_effect = RedisError("down")

        with pytest.raises(StoreUnavailableError):
            await RedisSessionStore(connection).get_session("s1")


class TestRedisMessageStore:
    """Test idempotent appends and the live feed."""

    @pytest.fixture
    def message(self) -> ChatMessage:
        return ChatMessage(session_ref="s1", sender_ref="p1", sender_role="patient", content="hello")

    async def test_append_stores_and_publishes(
        self, connection: RedisConnection, mock_redis: AsyncMock, message: ChatMessage
    ) -> None:
        mock_redis.sadd = AsyncMock(return_value=1)
        store = RedisMessageStore(connection, history_maxlen=100)

        await store.append_message(message)

        mock_redis.sadd.assert_awaited_once_with("c:message-ids:s1", message.id)
        mock_redis.xadd.assert_awaited_once_with(
            "c:messages:s1", {"message": encode_message(message)}, maxlen=100, approximate=True
        )
        mock_redis.publish.assert_awaited_once_with("c:messages-live:s1", encode_message(message))

    async def test_append_duplicate_is_noop(
        self, connection: RedisConnection, mock_redis: AsyncMock, message: ChatMessage
    ) -> None:
        mock_redis.sadd = AsyncMock(return_value=0)

        await RedisMessageStore(connection).append_message(message)

        mock_redis.xadd.assert_not_awaited()
        mock_redis.publish.assert_not_awaited()

    async def test_append_failure_releases_id(
        self, connection: RedisConnection, mock_redis: AsyncMock, message: ChatMessage
    ) -> None:
        mock_redis.sadd = AsyncMock(return_value=1)
        mock_redis.srem = AsyncMock(return_value=1)
        mock_redis.xadd.side_effect = RedisError("OOM")

        with pytest.raises(StoreUnavailableError):
            await RedisMessageStore(connection).append_message(message)
        mock_redis.srem.assert_awaited_once_with("c:message-ids:s1", message.id)

    async def test_publish_failure_still_stored(
        self, connection: RedisConnection, mock_redis: AsyncMock, message: ChatMessage
    ) -> None:
        mock_redis.sadd = AsyncMock(return_value=1)
        mock_redis.publish.side_effect = RedisError("pubsub down")

        assert await RedisMessageStore(connection).append_message(message) == message
        mock_redis.xadd.assert_awaited_once()

    async def test_list_messages_sorted_by_creation(
        self, connection: RedisConnection, mock_redis: AsyncMock, message: ChatMessage
    ) -> None:
        earlier = message.model_copy(
            update={"id": "earlier", "created_at": message.created_at.replace(year=message.created_at.year - 1)}
        )
        mock_redis.xrange.return_value = [
            ("1-0", {"message": encode_message(message)}),
            ("2-0", {"message": "garbage"}),
            ("3-0", {"message": encode_message(earlier)}),
        ]

        messages = await RedisMessageStore(connection).list_messages("s1")

        assert [m.id for m in messages] == ["earlier", message.id]

    async def test_resubscribe_redelivers_stored_messages(
        self, connection: RedisConnection, mock_redis: AsyncMock, message: ChatMessage
    ) -> None:
        captured = {}

        async def fake_listen(channel_name: str, callback: Any, on_resubscribed: Any = None) -> Subscription:
            captured["channel"] = channel_name
            captured["catch_up"] = on_resubscribed
            return Subscription(channel_name, AsyncMock())

        connection.listen = fake_listen  # type: ignore[method-assign]
        handler = AsyncMock()
        mock_redis.xrange.return_value = [("1-0", {"message": encode_message(message)})]

        await RedisMessageStore(connection).subscribe_messages("s1", handler)
        await captured["catch_up"]()

        assert captured["channel"] == "c:messages-live:s1"
        handler.assert_awaited_once_with(message)


class TestRedisDirectoryAndNotes:
    async def test_appointment_roundtrip_keys(self, connection: RedisConnection, mock_redis: AsyncMock) -> None:
        appointment = Appointment(id="a1", patient_ref="p1", provider_ref="d1")
        directory = RedisAppointmentDirectory(connection)

        await directory.put_appointment(appointment)
        mock_redis.set.assert_awaited_once_with("c:appointment:a1", appointment.model_dump_json())

        mock_redis.get.return_value = appointment.model_dump_json()
        assert await directory.get_appointment("a1") == appointment

        mock_redis.get.return_value = None
        assert await directory.get_appointment("missing") is None

    async def test_notes_append_and_list(self, connection: RedisConnection, mock_redis: AsyncMock) -> None:
        note = ConsultationNote(session_ref="s1", provider_ref="d1", patient_ref="p1", diagnosis="flu")
        mock_redis.rpush = AsyncMock(return_value=1)
        mock_redis.lrange = AsyncMock(return_value=[note.model_dump_json(), "{bad"])
        store = RedisNotesStore(connection)

        await store.add_note(note)
        notes = await store.list_notes("s1")

        mock_redis.rpush.assert_awaited_once_with("c:notes:s1", note.model_dump_json())
        assert notes == [note]

    async def test_notes_failure(self, connection: RedisConnection, mock_redis: AsyncMock) -> None:
        mock_redis.rpush = AsyncMock(side_effect=RedisError("down"))
        note = ConsultationNote(session_ref="s1", provider_ref="d1", patient_ref="p1", diagnosis="flu")

        with pytest.raises(StoreUnavailableError, match="add_note"):
            await RedisNotesStore(connection).add_note(note)
