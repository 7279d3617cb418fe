"""Signal channel transports.

This package provides the broadcast channel the lobby, signaling relay and
chat relay publish envelopes on:
- SignalChannel: Base abstraction for channel backends
- MemorySignalChannel: Single-process channel for tests and demos
- RedisSignalChannel: Stream history plus pub/sub fan-out across processes
"""

from consultation.transport.base import EnvelopeHandler, SignalChannel, Subscription
from consultation.transport.memory import MemorySignalChannel
from consultation.transport.retry import RetryingPublisher, retry_channel_operation

__all__ = [
    "EnvelopeHandler",
    "MemorySignalChannel",
    "RetryingPublisher",
    "SignalChannel",
    "Subscription",
    "retry_channel_operation",
]
