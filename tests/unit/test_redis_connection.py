"""Unit tests for the pooled Redis connection.

Tests connection lifecycle, health checks, key building and pub/sub
listener tasks against a mocked ``redis.asyncio`` client.
"""

import asyncio
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from consultation.config import RedisConfig, RetryConfig
from consultation.errors import ChannelError
from consultation.redis_connection import RedisConnection

FAST_RETRY = RetryConfig(max_attempts=3, initial_backoff_s=0.001, max_backoff_s=0.002)


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create mock Redis client."""
    redis_mock = AsyncMock()
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.aclose = AsyncMock()
    return redis_mock


@pytest.fixture
def mock_pool() -> AsyncMock:
    """Create mock connection pool."""
    pool_mock = AsyncMock()
    pool_mock.disconnect = AsyncMock()
    return pool_mock


@pytest.fixture
def connection() -> RedisConnection:
    return RedisConnection(RedisConfig(url="redis://localhost:6379", key_prefix="test:"))


class FakePubSub:
    """Pub/sub stand-in that yields queued raw messages and raises queued errors."""

    def __init__(self) -> None:
        self.subscribe = AsyncMock()
        self.unsubscribe = AsyncMock()
        self.aclose = AsyncMock()
        self.queue: asyncio.Queue[Any] = asyncio.Queue()

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self.queue.get()
            if isinstance(item, Exception):
                raise item
            yield item


def test_key_uses_prefix(connection: RedisConnection) -> None:
    """Test keys are namespaced by the configured prefix."""
    assert connection.key("session", "s1") == "test:session:s1"
    assert connection.key("signals-live", "s1") == "test:signals-live:s1"


def test_client_requires_connect(connection: RedisConnection) -> None:
    """Test the client is unavailable before connect()."""
    assert connection.is_connected is False
    with pytest.raises(ConnectionError, match="Call connect"):
        _ = connection.client


@patch("consultation.redis_connection.ConnectionPool")
@patch("consultation.redis_connection.aioredis.Redis")
async def test_connect_idempotent(
    mock_redis_class: MagicMock,
    mock_pool_class: MagicMock,
    connection: RedisConnection,
    mock_redis: AsyncMock,
    mock_pool: AsyncMock,
) -> None:
    """Test that connect() is idempotent."""
    mock_pool_class.from_url.return_value = mock_pool
    mock_redis_class.return_value = mock_redis

    await connection.connect()
    await connection.connect()

    assert connection.is_connected is True
    assert mock_redis.ping.await_count == 1
    mock_pool_class.from_url.assert_called_once_with(
        "redis://localhost:6379", db=0, max_connections=10, decode_responses=True
    )


@patch("consultation.redis_connection.ConnectionPool")
@patch("consultation.redis_connection.aioredis.Redis")
async def test_connect_failure(
    mock_redis_class: MagicMock,
    mock_pool_class: MagicMock,
    connection: RedisConnection,
    mock_redis: AsyncMock,
    mock_pool: AsyncMock,
) -> None:
    """Test connection failure is raised as ConnectionError."""
    mock_pool_class.from_url.return_value = mock_pool
    mock_redis_class.return_value = mock_redis
    mock_redis.ping.side_effect = RedisError("Connection refused")

    with pytest.raises(ConnectionError, match="Redis connection failed"):
        await connection.connect()
    assert connection.is_connected is False


@patch("consultation.redis_connection.ConnectionPool")
@patch("consultation.redis_connection.aioredis.Redis")
async def test_disconnect(
    mock_redis_class: MagicMock,
    mock_pool_class: MagicMock,
    connection: RedisConnection,
    mock_redis: AsyncMock,
    mock_pool: AsyncMock,
) -> None:
    """Test graceful disconnect is idempotent."""
    mock_pool_class.from_url.return_value = mock_pool
    mock_redis_class.return_value = mock_redis

    await connection.connect()
    await connection.disconnect()
    await connection.disconnect()

    assert connection.is_connected is False
    mock_redis.aclose.assert_awaited_once()
    mock_pool.disconnect.assert_awaited_once()


async def test_health_check(connection: RedisConnection, mock_redis: AsyncMock) -> None:
    """Test health check reflects ping results."""
    assert await connection.health_check() is False

    connection._redis = mock_redis
    connection._connected = True
    assert await connection.health_check() is True

    mock_redis.ping.side_effect = RedisError("timeout")
    assert await connection.health_check() is False


class TestListen:
    """Test pub/sub listener tasks."""

    @pytest.fixture
    def pubsub(self) -> FakePubSub:
        return FakePubSub()

    @pytest.fixture
    def connected(self, connection: RedisConnection, mock_redis: AsyncMock, pubsub: FakePubSub) -> RedisConnection:
        mock_redis.pubsub = MagicMock(return_value=pubsub)
        connection._redis = mock_redis
        connection._connected = True
        return connection

    async def test_delivers_message_payloads(self, connected: RedisConnection, pubsub: FakePubSub) -> None:
        received: list[str] = []
        delivered = asyncio.Event()

        async def callback(data: str) -> None:
            received.append(data)
            delivered.set()

        subscription = await connected.listen("test:chan", callback)
        pubsub.subscribe.assert_awaited_once_with("test:chan")

        await pubsub.queue.put({"type": "subscribe", "data": 1})
        await pubsub.queue.put({"type": "message", "data": b"hello"})
        await asyncio.wait_for(delivered.wait(), timeout=1.0)

        assert received == ["hello"]

        await subscription.close()
        pubsub.unsubscribe.assert_awaited_once_with("test:chan")
        pubsub.aclose.assert_awaited_once()

    async def test_callback_errors_keep_listening(self, connected: RedisConnection, pubsub: FakePubSub) -> None:
        received: list[str] = []
        second = asyncio.Event()

        async def callback(data: str) -> None:
            received.append(data)
            if data == "bad":
                raise RuntimeError("boom")
            second.set()

        subscription = await connected.listen("test:chan", callback)
        await pubsub.queue.put({"type": "message", "data": "bad"})
        await pubsub.queue.put({"type": "message", "data": "good"})
        await asyncio.wait_for(second.wait(), timeout=1.0)

        assert received == ["bad", "good"]
        await subscription.close()

    async def test_subscribe_failure_raises_channel_error(
        self, connected: RedisConnection, pubsub: FakePubSub
    ) -> None:
        pubsub.subscribe.side_effect = RedisError("no route")

        with pytest.raises(ChannelError, match="Failed to subscribe"):
            await connected.listen("test:chan", AsyncMock())

    async def test_callback_may_close_its_subscription(
        self, connected: RedisConnection, pubsub: FakePubSub
    ) -> None:
        holder: list[Any] = []
        done = asyncio.Event()

        async def callback(data: str) -> None:
            await holder[0].close()
            done.set()

        holder.append(await connected.listen("test:chan", callback))
        await pubsub.queue.put({"type": "message", "data": "end"})
        await asyncio.wait_for(done.wait(), timeout=1.0)

        assert holder[0].closed is True
        pubsub.unsubscribe.assert_awaited_once_with("test:chan")


class TestConnectionDrop:
    """Test listeners across a dropped pub/sub connection."""

    @pytest.fixture
    def connected(self, connection: RedisConnection, mock_redis: AsyncMock) -> RedisConnection:
        connection.retry = FAST_RETRY
        connection._redis = mock_redis
        connection._connected = True
        return connection

    async def test_resubscribes_and_catches_up(self, connected: RedisConnection, mock_redis: AsyncMock) -> None:
        first, second = FakePubSub(), FakePubSub()
        mock_redis.pubsub = MagicMock(side_effect=[first, second])
        received: list[str] = []
        caught_up = asyncio.Event()
        delivered = asyncio.Event()

        async def callback(data: str) -> None:
            received.append(data)
            delivered.set()

        async def catch_up() -> None:
            caught_up.set()

        subscription = await connected.listen("test:chan", callback, on_resubscribed=catch_up)
        await first.queue.put(RedisConnectionError("Connection reset by peer"))
        await asyncio.wait_for(caught_up.wait(), timeout=1.0)

        await second.queue.put({"type": "message", "data": "after the drop"})
        await asyncio.wait_for(delivered.wait(), timeout=1.0)

        assert received == ["after the drop"]
        first.aclose.assert_awaited_once()
        second.subscribe.assert_awaited_once_with("test:chan")
        assert subscription.error is None

        await subscription.close()
        second.unsubscribe.assert_awaited_once_with("test:chan")

    async def test_failed_catch_up_keeps_listening(self, connected: RedisConnection, mock_redis: AsyncMock) -> None:
        first, second = FakePubSub(), FakePubSub()
        mock_redis.pubsub = MagicMock(side_effect=[first, second])
        delivered = asyncio.Event()

        async def callback(data: str) -> None:
            delivered.set()

        catch_up = AsyncMock(side_effect=ChannelError("history unavailable"))
        subscription = await connected.listen("test:chan", callback, on_resubscribed=catch_up)
        await first.queue.put(OSError("network unreachable"))
        await second.queue.put({"type": "message", "data": "still here"})
        await asyncio.wait_for(delivered.wait(), timeout=1.0)

        catch_up.assert_awaited_once()
        assert subscription.error is None
        await subscription.close()

    async def test_exhausted_retries_mark_subscription_lost(
        self, connected: RedisConnection, mock_redis: AsyncMock
    ) -> None:
        first, refused = FakePubSub(), FakePubSub()
        refused.subscribe.side_effect = RedisConnectionError("Connection refused")
        mock_redis.pubsub = MagicMock(side_effect=[first, refused, refused, refused])
        catch_up = AsyncMock()
        lost = asyncio.Event()
        errors: list[ChannelError] = []

        def on_lost(error: ChannelError) -> None:
            errors.append(error)
            lost.set()

        subscription = await connected.listen("test:chan", AsyncMock(), on_resubscribed=catch_up)
        subscription.on_lost(on_lost)
        await first.queue.put(RedisConnectionError("Connection reset by peer"))
        await asyncio.wait_for(lost.wait(), timeout=1.0)

        assert len(errors) == 1
        assert "Failed to subscribe to test:chan" in str(errors[0])
        assert subscription.error is errors[0]
        assert refused.subscribe.await_count == FAST_RETRY.max_attempts
        catch_up.assert_not_awaited()

        late: list[ChannelError] = []
        subscription.on_lost(late.append)
        assert late == errors
        await subscription.close()

    async def test_close_during_drop_does_not_resubscribe(
        self, connected: RedisConnection, mock_redis: AsyncMock
    ) -> None:
        first = FakePubSub()
        mock_redis.pubsub = MagicMock(side_effect=[first])

        subscription = await connected.listen("test:chan", AsyncMock())
        await subscription.close()
        await first.queue.put(RedisConnectionError("Connection reset by peer"))
        await asyncio.sleep(0.01)

        assert mock_redis.pubsub.call_count == 1
        assert subscription.error is None
