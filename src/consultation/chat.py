"""Consultation chat.

A message can reach the other participant on two paths: the authoritative
message store (and its realtime feed) and a ``chat-relay`` envelope on the
signal channel. Receivers merge both by message id, so each message appears
exactly once, ordered by creation time with ties broken by arrival.
"""

import bisect
import logging
from datetime import datetime
from typing import Literal

from consultation.config import ChatConfig, DeliveryPolicy
from consultation.errors import (
    ChannelError,
    InvalidStateError,
    PermissionDeniedError,
    StoreUnavailableError,
)
from consultation.events import EventStream, MessageReceived
from consultation.models import ChatMessage, Identity, ParticipantRole, Session, SessionState, SignalEnvelope, SignalKind
from consultation.session import SessionLifecycle
from consultation.store.base import MessageStore
from consultation.transport.base import SignalChannel, Subscription
from consultation.transport.retry import RetryingPublisher, retry_channel_operation

logger = logging.getLogger(__name__)

DeliveryPath = Literal["local", "authoritative", "relay", "backfill"]


class ChatHistory:
    """Messages of one session, unique by id, ordered by (created_at, arrival)."""

    def __init__(self) -> None:
        self._by_id: dict[str, ChatMessage] = {}
        self._order: list[tuple[datetime, int, str]] = []
        self._arrivals = 0

    def add(self, message: ChatMessage) -> bool:
        """Insert a message. Returns False if its id is already present."""
        if message.id in self._by_id:
            return False
        self._by_id[message.id] = message
        self._arrivals += 1
        bisect.insort(self._order, (message.created_at, self._arrivals, message.id))
        return True

    def discard(self, message_id: str) -> None:
        if self._by_id.pop(message_id, None) is None:
            return
        self._order = [entry for entry in self._order if entry[2] != message_id]

    @property
    def messages(self) -> list[ChatMessage]:
        return [self._by_id[message_id] for _, _, message_id in self._order]

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)


class MessageChannel:
    """Sends and merges chat messages for one participant."""

    def __init__(
        self,
        identity: Identity,
        session: Session,
        store: MessageStore,
        channel: SignalChannel,
        publisher: RetryingPublisher,
        lifecycle: SessionLifecycle,
        events: EventStream,
        config: ChatConfig,
    ) -> None:
        self.identity = identity
        self.session = session
        self.store = store
        self.channel = channel
        self.publisher = publisher
        self.lifecycle = lifecycle
        self.events = events
        self.config = config
        self.history = ChatHistory()

    @property
    def messages(self) -> list[ChatMessage]:
        return self.history.messages

    async def start(self) -> Subscription:
        """Subscribe to the store feed, then backfill from the store and relay history.

        Returns:
            The store feed subscription, for the caller to own
        """
        subscription = await self.store.subscribe_messages(self.session.id, self._on_store_message)

        try:
            stored = await self.store.list_messages(self.session.id)
        except StoreUnavailableError as e:
            logger.warning("Message backfill unavailable", extra={"session_ref": self.session.id, "error": str(e)})
            self.lifecycle.report_error(e)
            stored = []
        for message in stored:
            self._accept(message, "backfill")

        try:
            relayed = await retry_channel_operation(
                lambda: self.channel.history(self.session.id, kinds=[SignalKind.CHAT_RELAY]),
                self.publisher.retry,
                description="read chat relay history",
            )
        except ChannelError:
            await subscription.close()
            raise
        for envelope in relayed:
            message = self._decode_relay(envelope)
            if message is not None:
                self._accept(message, "backfill")

        logger.info(
            "Chat backfilled",
            extra={"session_ref": self.session.id, "messages": len(self.history)},
        )
        return subscription

    async def send(
        self,
        session_ref: str,
        sender_ref: str,
        role: ParticipantRole,
        name: str,
        content: str,
    ) -> ChatMessage:
        """Send a message, echoing it locally at once.

        Raises:
            PermissionDeniedError: If sending as someone other than the local participant
            InvalidStateError: If the session has ended
            ValueError: If the content is empty or too long
            StoreUnavailableError: Authoritative-only delivery and the store failed
            ChannelError: No delivery path succeeded
        """
        if session_ref != self.session.id:
            raise PermissionDeniedError("send message to another session", role.value)
        if sender_ref != self.identity.user_ref or role != self.identity.role:
            raise PermissionDeniedError("send message as another participant", role.value)
        if self.lifecycle.state == SessionState.ENDED:
            raise InvalidStateError("Session has ended", {"session_ref": session_ref})

        content = content.strip()
        if not content:
            raise ValueError("Message content must not be empty")
        if len(content) > self.config.max_message_length:
            raise ValueError(
                f"Message content exceeds {self.config.max_message_length} characters"
            )

        message = ChatMessage(
            session_ref=session_ref,
            sender_ref=sender_ref,
            sender_role=role,
            sender_name=name,
            content=content,
        )
        self._accept(message, "local")
        self.lifecycle.metrics.messages_sent += 1

        policy = self.config.delivery_policy
        if policy == DeliveryPolicy.AUTHORITATIVE_ONLY:
            try:
                await self.store.append_message(message)
            except StoreUnavailableError:
                self.history.discard(message.id)
                raise
            return message

        stored = await self._store(message)
        if stored and policy == DeliveryPolicy.RELAY_ON_FAILURE:
            return message

        if not stored:
            self.lifecycle.metrics.relay_fallbacks += 1
        try:
            await self.publisher.publish(
                SignalKind.CHAT_RELAY, {"message": message.model_dump(mode="json")}
            )
        except ChannelError:
            if not stored:
                raise
            logger.warning("Chat relay failed, stored copy delivered", extra={"message_id": message.id})
        return message

    async def send_message(self, content: str) -> ChatMessage:
        return await self.send(
            self.session.id,
            self.identity.user_ref,
            self.identity.role,
            self.identity.display_name,
            content,
        )

    async def _store(self, message: ChatMessage) -> bool:
        try:
            await self.store.append_message(message)
            return True
        except StoreUnavailableError as e:
            logger.warning(
                "Message store unavailable, relaying",
                extra={"session_ref": self.session.id, "message_id": message.id, "error": str(e)},
            )
            return False

    async def handle_relay(self, envelope: SignalEnvelope) -> None:
        if envelope.sender_ref == self.identity.user_ref:
            return
        message = self._decode_relay(envelope)
        if message is not None:
            self._accept(message, "relay")

    async def _on_store_message(self, message: ChatMessage) -> None:
        self._accept(message, "authoritative")

    def _decode_relay(self, envelope: SignalEnvelope) -> ChatMessage | None:
        try:
            message = ChatMessage.model_validate(envelope.payload["message"])
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring malformed chat relay: {e}", extra={"envelope_id": envelope.id})
            return None
        if message.session_ref != self.session.id or message.sender_ref != envelope.sender_ref:
            logger.warning("Ignoring chat relay with mismatched sender", extra={"envelope_id": envelope.id})
            return None
        return message

    def _accept(self, message: ChatMessage, path: DeliveryPath) -> None:
        if path not in ("local", "backfill") and self.lifecycle.state == SessionState.ENDED:
            logger.debug("Dropping message after session end", extra={"message_id": message.id})
            return
        if message.session_ref != self.session.id:
            return
        if not self.history.add(message):
            self.lifecycle.metrics.record_duplicate()
            return
        if message.sender_ref != self.identity.user_ref:
            self.lifecycle.metrics.messages_received += 1
        self.events.emit(MessageReceived(message, path))
