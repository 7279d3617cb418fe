"""Pooled Redis connection shared by the signal channel and stores.

Wraps a ``redis.asyncio`` client behind idempotent connect/disconnect and a
health check, and runs pub/sub listeners as background tasks whose lifetime
is tied to a ``Subscription`` handle. Listeners resubscribe after a dropped
connection and mark their subscription lost once retries run out.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from consultation.config import RedisConfig, RetryConfig
from consultation.errors import ChannelError
from consultation.transport.base import Subscription
from consultation.transport.retry import retry_channel_operation

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], Awaitable[None]]


class RedisConnection:
    """Redis client lifecycle for one participant process."""

    def __init__(self, config: RedisConfig, retry: RetryConfig | None = None) -> None:
        """Initialize connection settings.

        Args:
            config: Redis URL, database, pool size and key prefix
            retry: Backoff used when a dropped subscription resubscribes
        """
        self.config = config
        self.retry = retry or RetryConfig()
        self.key_prefix = config.key_prefix

        # Connection pool (lazy initialization)
        self._pool: Any = None
        self._redis: Any = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def client(self) -> Any:
        """Connected ``redis.asyncio.Redis`` client.

        Raises:
            ConnectionError: If ``connect()`` has not succeeded
        """
        if not self._connected or self._redis is None:
            raise ConnectionError("Redis not connected. Call connect() first.")
        return self._redis

    def key(self, *parts: str) -> str:
        """Build a prefixed key, e.g. ``key("session", id)``."""
        return self.key_prefix + ":".join(parts)

    async def connect(self) -> None:
        """Establish Redis connection pool.

        This method is idempotent - safe to call multiple times.

        Raises:
            ConnectionError: If Redis connection fails
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.config.url,
                db=self.config.db,
                max_connections=self.config.connection_pool_size,
                decode_responses=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)

            await self._redis.ping()
            self._connected = True
            logger.info(
                f"Connected to Redis at {self.config.url} (db={self.config.db}, "
                f"pool_size={self.config.connection_pool_size})"
            )
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close Redis connection pool gracefully.

        This method is idempotent - safe to call multiple times.
        """
        if not self._connected:
            return

        try:
            if self._redis:
                await self._redis.aclose()
            if self._pool:
                await self._pool.disconnect()
            logger.info("Disconnected from Redis")
        except (RedisError, OSError) as e:
            logger.warning(f"Error during Redis disconnect: {e}")
        finally:
            self._connected = False

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy.

        Returns:
            True if Redis is reachable and responsive, False otherwise
        """
        if not self._connected or not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def _subscribe(self, channel: str) -> Any:
        try:
            pubsub = self.client.pubsub()
            await pubsub.subscribe(channel)
        except (RedisError, OSError, ConnectionError) as e:
            raise ChannelError(f"Failed to subscribe to {channel}: {e}", {"channel": channel}) from e
        return pubsub

    async def listen(
        self,
        channel: str,
        callback: MessageCallback,
        on_resubscribed: Callable[[], Awaitable[None]] | None = None,
    ) -> Subscription:
        """Subscribe to a pub/sub channel and feed each payload to ``callback``.

        The subscription is confirmed before this returns, so anything
        published afterwards is delivered. Callbacks run one at a time.

        If the connection drops, the listener resubscribes with the retry
        backoff and then awaits ``on_resubscribed`` so the owner can catch up
        on payloads published in the gap. Once retries are exhausted the
        subscription is marked lost with the last ``ChannelError``.

        Raises:
            ChannelError: If the subscription could not be established
        """
        pubsub = await self._subscribe(channel)
        logger.info("Subscribed to channel", extra={"channel": channel})

        stopping = False

        async def resubscribe() -> None:
            nonlocal pubsub
            try:
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Error closing dropped subscription to {channel}: {e}")
            pubsub = await self._subscribe(channel)

        async def deliver(raw_message: dict[str, Any]) -> None:
            if raw_message["type"] != "message":
                return
            data = raw_message["data"]
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                await callback(data)
            except Exception as e:
                logger.error(
                    f"Failed to handle message from {channel}: {e}",
                    extra={"channel": channel, "error": str(e)},
                    exc_info=True,
                )

        async def pump() -> None:
            while True:
                try:
                    async for raw_message in pubsub.listen():
                        await deliver(raw_message)
                        if stopping:
                            return
                    return
                except (RedisError, OSError) as e:
                    if stopping:
                        return
                    logger.warning(
                        f"Subscription to {channel} dropped, resubscribing: {e}",
                        extra={"channel": channel, "error": str(e)},
                    )

                try:
                    await retry_channel_operation(resubscribe, self.retry, description=f"resubscribe to {channel}")
                except ChannelError as e:
                    logger.error(
                        f"Subscription to {channel} lost: {e}",
                        extra={"channel": channel, "error": str(e)},
                    )
                    subscription.mark_lost(e)
                    return

                logger.info("Resubscribed to channel", extra={"channel": channel})
                if on_resubscribed is not None:
                    try:
                        await on_resubscribed()
                    except Exception as e:
                        logger.error(
                            f"Failed to catch up on {channel}: {e}",
                            extra={"channel": channel, "error": str(e)},
                            exc_info=True,
                        )

        async def closer() -> None:
            nonlocal stopping
            stopping = True
            # Closing from inside the callback lets the pump finish on its own.
            if task is not asyncio.current_task() and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing subscription to {channel}: {e}")
            logger.info("Unsubscribed from channel", extra={"channel": channel})

        subscription = Subscription(f"redis:{channel}", closer)
        task = asyncio.create_task(pump(), name=f"redis-listen:{channel}")
        return subscription
