"""Redis-backed signal channel.

Each envelope is appended to a per-session stream (history, trimmed to an
approximate maximum length) and then published on a per-session pub/sub
channel for live delivery. Subscribers therefore subscribe first and read
the stream second, and dedup the overlap by envelope id.
After a dropped connection the subscriber replays the stream the same way.
"""

import logging
from collections.abc import Iterable

from redis.exceptions import RedisError

from consultation.errors import ChannelError
from consultation.models import SignalEnvelope, SignalKind
from consultation.redis_connection import RedisConnection
from consultation.transport.base import EnvelopeHandler, SignalChannel, Subscription, matches
from consultation.transport.protocol import decode_envelope, encode_envelope

logger = logging.getLogger(__name__)


class RedisSignalChannel(SignalChannel):
    """Signal channel shared between processes through Redis."""

    def __init__(self, connection: RedisConnection, history_maxlen: int = 1000) -> None:
        self.connection = connection
        self.history_maxlen = history_maxlen

    def _stream_key(self, session_ref: str) -> str:
        return self.connection.key("signals", session_ref)

    def _live_channel(self, session_ref: str) -> str:
        return self.connection.key("signals-live", session_ref)

    async def publish(self, envelope: SignalEnvelope) -> None:
        data = encode_envelope(envelope)
        try:
            client = self.connection.client
            await client.xadd(
                self._stream_key(envelope.session_ref),
                {"envelope": data},
                maxlen=self.history_maxlen,
                approximate=True,
            )
            subscribers = await client.publish(self._live_channel(envelope.session_ref), data)
        except (RedisError, ConnectionError) as e:
            logger.error(
                f"Failed to publish envelope: {e}",
                extra={"session_ref": envelope.session_ref, "kind": envelope.kind.value},
            )
            raise ChannelError(
                f"Failed to publish {envelope.kind.value} envelope: {e}",
                {"session_ref": envelope.session_ref, "envelope_id": envelope.id},
            ) from e

        logger.debug(
            f"Published {envelope.kind.value} to session {envelope.session_ref}",
            extra={
                "session_ref": envelope.session_ref,
                "kind": envelope.kind.value,
                "subscribers": subscribers,
                "sender_ref": envelope.sender_ref,
            },
        )

    async def subscribe(self, session_ref: str, handler: EnvelopeHandler) -> Subscription:
        async def on_message(data: str) -> None:
            try:
                envelope = decode_envelope(data)
            except ValueError as e:
                logger.warning(
                    f"Dropping malformed envelope: {e}",
                    extra={"session_ref": session_ref},
                )
                return
            await handler(envelope)

        async def catch_up() -> None:
            # Replays the whole stream; handlers drop envelope ids they have already seen.
            for envelope in await self.history(session_ref):
                await handler(envelope)

        return await self.connection.listen(
            self._live_channel(session_ref), on_message, on_resubscribed=catch_up
        )

    async def history(
        self,
        session_ref: str,
        kinds: Iterable[SignalKind] | None = None,
        sender_ref: str | None = None,
    ) -> list[SignalEnvelope]:
        try:
            entries = await self.connection.client.xrange(self._stream_key(session_ref))
        except (RedisError, ConnectionError) as e:
            raise ChannelError(
                f"Failed to read signal history: {e}", {"session_ref": session_ref}
            ) from e

        kind_filter = frozenset(kinds) if kinds is not None else None
        envelopes: list[SignalEnvelope] = []
        for _entry_id, fields in entries:
            try:
                envelope = decode_envelope(fields["envelope"])
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed history entry: {e}", extra={"session_ref": session_ref})
                continue
            if matches(envelope, kind_filter, sender_ref):
                envelopes.append(envelope)
        return envelopes
