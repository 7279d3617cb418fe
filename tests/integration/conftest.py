"""Integration test fixtures.

Provides:
- An in-memory consultation world shared by a provider and a patient
- Coordinator cleanup
- A disposable Redis container for the Redis-backed flow
"""

import logging
import socket
import subprocess
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator

import pytest
import pytest_asyncio
import redis

from consultation.config import RedisConfig
from consultation.coordinator import ConsultationCoordinator
from consultation.redis_connection import RedisConnection
from tests.helpers.world import ConsultationWorld

logger = logging.getLogger(__name__)


def get_free_port() -> int:
    """Get a free TCP port for binding."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


@pytest.fixture
def world() -> ConsultationWorld:
    return ConsultationWorld()


@pytest_asyncio.fixture
async def closing() -> AsyncIterator[Callable[[ConsultationCoordinator], ConsultationCoordinator]]:
    """Register coordinators to close after the test."""
    opened: list[ConsultationCoordinator] = []

    def register(coordinator: ConsultationCoordinator) -> ConsultationCoordinator:
        opened.append(coordinator)
        return coordinator

    yield register

    for coordinator in opened:
        await coordinator.close()


@pytest.fixture(scope="session")
def docker_available() -> bool:
    """Check if Docker is available on the system."""
    try:
        result = subprocess.run(  # noqa: S603, S607
            ["docker", "info"],
            capture_output=True,
            check=False,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError):
        return False


@pytest.fixture(scope="module")
def redis_container(docker_available: bool) -> Iterator[str]:
    """Start a Redis container and yield its URL.

    Skips the test if Docker is not available.
    """
    if not docker_available:
        pytest.skip("Docker not available")

    container_name = f"test-redis-{uuid.uuid4().hex[:8]}"
    redis_port = get_free_port()
    redis_url = f"redis://localhost:{redis_port}"

    logger.info(f"Starting Redis container: {container_name} on port {redis_port}")
    try:
        subprocess.run(  # noqa: S603, S607
            ["docker", "run", "-d", "--name", container_name, "-p", f"{redis_port}:6379", "redis:7-alpine"],
            check=True,
            capture_output=True,
        )
    except subprocess.CalledProcessError as e:
        logger.error(f"Failed to start Redis container: {e.stderr.decode()}")
        pytest.skip(f"Failed to start Redis container: {e}")

    client = redis.Redis.from_url(redis_url)
    for attempt in range(30):
        try:
            client.ping()
            logger.info(f"Redis ready at {redis_url}")
            break
        except Exception:
            if attempt == 29:
                raise RuntimeError("Redis failed to start") from None
            time.sleep(0.5)

    try:
        yield redis_url
    finally:
        client.close()
        logger.info(f"Stopping Redis container: {container_name}")
        subprocess.run(  # noqa: S603, S607
            ["docker", "rm", "-f", container_name],
            capture_output=True,
            check=True,
        )


@pytest_asyncio.fixture
async def redis_connection(redis_container: str) -> AsyncIterator[RedisConnection]:
    """Connected Redis client with a key prefix unique to the test."""
    connection = RedisConnection(
        RedisConfig(url=redis_container, key_prefix=f"test-{uuid.uuid4().hex[:8]}:")
    )
    await connection.connect()
    try:
        yield connection
    finally:
        await connection.disconnect()
