"""Signaling relay between the provider (offerer) and the patient (answerer).

Offers, answers and ICE candidates travel as envelopes over the signal
channel, which may duplicate them and does not order senders against each
other. The relay makes application order-independent:

- offer/answer are a single-writer register per negotiation id: reapplying
  one is a no-op;
- candidates are a grow-only set keyed by candidate identity, buffered until
  the remote description of their negotiation is applied;
- an offer carrying a new negotiation id (the offerer reconnected) replaces
  the answerer's peer link; envelopes of retired negotiations are ignored;
- a second, different answer to the live offer (the answerer rejoined)
  makes the offerer publish a fresh offer.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

from consultation.errors import InvalidStateError, PeerConnectionError
from consultation.events import (
    Connected,
    ConnectionStateChanged,
    EventStream,
    ErrorOccurred,
    RemoteStreamReceived,
)
from consultation.media import media_kinds
from consultation.models import (
    NEGOTIATION_KINDS,
    IceCandidate,
    Identity,
    Session,
    SessionDescription,
    SessionState,
    SignalEnvelope,
    SignalKind,
    new_id,
)
from consultation.peer.base import PeerLink, PeerLinkFactory
from consultation.resources import ResourceManager
from consultation.session import SessionLifecycle
from consultation.transport.base import SignalChannel
from consultation.transport.retry import RetryingPublisher, retry_channel_operation

logger = logging.getLogger(__name__)

CandidateKey = tuple[str, str | None, int | None]


class _PeerBinding:
    """Forwards one peer link's callbacks while it is the relay's live link."""

    def __init__(self, relay: "SignalingRelay", peer: PeerLink, negotiation_id: str) -> None:
        self.relay = relay
        self.peer = peer
        self.negotiation_id = negotiation_id

    @property
    def is_current(self) -> bool:
        return self.relay.peer is self.peer

    async def on_local_candidate(self, candidate: IceCandidate) -> None:
        if self.is_current:
            await self.relay._publish_candidate(self.negotiation_id, candidate)

    async def on_remote_track(self, track: Any, kind: str) -> None:
        if self.is_current:
            self.relay.events.emit(RemoteStreamReceived(track, kind))

    async def on_connection_state(self, state: str) -> None:
        if self.is_current:
            await self.relay._on_connection_state(state)


class SignalingRelay:
    """Drives one participant's peer link from relayed envelopes."""

    def __init__(
        self,
        identity: Identity,
        session: Session,
        channel: SignalChannel,
        publisher: RetryingPublisher,
        resources: ResourceManager,
        peer_factory: PeerLinkFactory,
        lifecycle: SessionLifecycle,
        events: EventStream,
    ) -> None:
        self.identity = identity
        self.session = session
        self.channel = channel
        self.publisher = publisher
        self.resources = resources
        self.peer_factory = peer_factory
        self.lifecycle = lifecycle
        self.events = events

        self.is_offerer = identity.is_provider
        self.peer: PeerLink | None = None
        self.negotiation_id: str | None = None
        self._remote_applied = False
        self._remote_sdp: str | None = None
        self._retired: set[str] = set()
        self._seen: set[str] = set()
        self._applied_candidates: set[tuple[str, CandidateKey]] = set()
        self._pending: dict[str, dict[CandidateKey, IceCandidate]] = defaultdict(dict)
        self._started = False
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def is_connected(self) -> bool:
        return self._connected

    def pending_candidate_count(self) -> int:
        return sum(len(c) for c in self._pending.values())

    async def start(self) -> None:
        """Begin negotiating.

        The offerer publishes a fresh offer; both sides then replay the
        negotiation history they may have missed.

        Raises:
            InvalidStateError: Without local media, or before the patient is admitted
            PeerConnectionError: If the peer link rejects a description
        """
        if not self.resources.has_media:
            raise InvalidStateError("Local media must be acquired before signaling")
        if not self.is_offerer and self.lifecycle.state not in (SessionState.ACTIVE, SessionState.PAUSED):
            raise InvalidStateError(
                "Patient must be admitted before signaling",
                {"state": self.lifecycle.state.value},
            )

        async with self._lock:
            if self._started:
                return
            self._started = True
            try:
                if self.is_offerer:
                    await self._offer()
                history = await retry_channel_operation(
                    lambda: self.channel.history(self.session.id, kinds=NEGOTIATION_KINDS),
                    self.publisher.retry,
                    description="read signaling history",
                )
                if not self.is_offerer:
                    # Only the latest offer matters; earlier ones were superseded.
                    offers = [
                        e for e in history
                        if e.kind == SignalKind.OFFER and e.sender_ref != self.identity.user_ref
                    ]
                    for stale in offers[:-1]:
                        self._retired.add(stale.payload.get("negotiation_id", ""))
                for envelope in history:
                    await self._apply(envelope)
            except PeerConnectionError as e:
                self.lifecycle.report_error(e)
                raise

        logger.info(
            "Signaling started",
            extra={"session_ref": self.session.id, "offerer": self.is_offerer},
        )

    async def handle(self, envelope: SignalEnvelope) -> None:
        """Apply a live negotiation envelope.

        Envelopes arriving before ``start()`` are picked up from history then.
        """
        if not self._started:
            return
        async with self._lock:
            try:
                await self._apply(envelope)
            except PeerConnectionError as e:
                self.lifecycle.report_error(e)

    async def _apply(self, envelope: SignalEnvelope) -> None:
        if envelope.sender_ref == self.identity.user_ref:
            return
        if envelope.id in self._seen:
            self.lifecycle.metrics.record_duplicate()
            return
        self._seen.add(envelope.id)

        negotiation_id = envelope.payload.get("negotiation_id")
        if not negotiation_id:
            logger.warning("Ignoring envelope without negotiation id", extra={"envelope_id": envelope.id})
            return

        try:
            if envelope.kind == SignalKind.ICE_CANDIDATE:
                candidate = IceCandidate.model_validate(envelope.payload["candidate"])
            else:
                description = SessionDescription.model_validate(envelope.payload["description"])
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring malformed {envelope.kind.value}: {e}", extra={"envelope_id": envelope.id})
            return

        if envelope.kind == SignalKind.OFFER and not self.is_offerer:
            await self._apply_offer(negotiation_id, description)
        elif envelope.kind == SignalKind.ANSWER and self.is_offerer:
            await self._apply_answer(negotiation_id, description)
        elif envelope.kind == SignalKind.ICE_CANDIDATE:
            await self._apply_candidate(negotiation_id, candidate)
        else:
            return
        self.lifecycle.metrics.record_envelope_applied()

    async def _new_peer(self, negotiation_id: str) -> PeerLink:
        if self.resources.released:
            raise InvalidStateError(
                "Session torn down during negotiation",
                {"session_ref": self.session.id, "negotiation_id": negotiation_id},
            )
        peer = self.peer_factory()
        peer.bind(_PeerBinding(self, peer, negotiation_id))
        # Current before the old link closes, so its final callbacks are ignored.
        previous, self.peer = self.peer, peer
        try:
            await self.resources.attach_peer(peer)
        except InvalidStateError:
            self.peer = previous
            await peer.close()
            raise
        self._connected = False
        media = self.resources.media
        if media is not None:
            if self.is_offerer:
                await peer.add_local_media(media, media_kinds(self.session.modality))
            else:
                # The offer creates the receiving transceivers.
                await peer.add_local_media(media, [track.kind for track in media.tracks])
        return peer

    async def _offer(self) -> None:
        if self.negotiation_id is not None:
            self._retired.add(self.negotiation_id)
            self._pending.pop(self.negotiation_id, None)
        negotiation_id = new_id()
        self.negotiation_id = negotiation_id
        self._remote_applied = False
        self._remote_sdp = None
        peer = await self._new_peer(negotiation_id)
        description = await peer.create_offer()
        await self.publisher.publish(
            SignalKind.OFFER,
            {"negotiation_id": negotiation_id, "description": description.model_dump()},
        )
        logger.info("Offer published", extra={"session_ref": self.session.id, "negotiation_id": negotiation_id})

    async def _apply_offer(self, negotiation_id: str, description: SessionDescription) -> None:
        if negotiation_id == self.negotiation_id or negotiation_id in self._retired:
            self.lifecycle.metrics.record_duplicate()
            return

        if self.negotiation_id is not None:
            logger.info(
                "Offerer renegotiated, replacing peer link",
                extra={"session_ref": self.session.id, "negotiation_id": negotiation_id},
            )
            self._retired.add(self.negotiation_id)
            self._pending.pop(self.negotiation_id, None)

        self.negotiation_id = negotiation_id
        self._remote_applied = False
        peer = await self._new_peer(negotiation_id)
        await peer.set_remote_description(description)
        self._remote_applied = True
        await self._flush_pending(negotiation_id)

        answer = await peer.create_answer()
        await self.publisher.publish(
            SignalKind.ANSWER,
            {"negotiation_id": negotiation_id, "description": answer.model_dump()},
        )
        logger.info("Answer published", extra={"session_ref": self.session.id, "negotiation_id": negotiation_id})

    async def _apply_answer(self, negotiation_id: str, description: SessionDescription) -> None:
        if negotiation_id != self.negotiation_id:
            logger.debug("Ignoring answer to a retired offer", extra={"negotiation_id": negotiation_id})
            return
        if self._remote_applied:
            if description.sdp == self._remote_sdp:
                self.lifecycle.metrics.record_duplicate()
                return
            # A different answer to the same offer: the answerer rejoined with a new link.
            logger.info(
                "Answerer restarted, renegotiating",
                extra={"session_ref": self.session.id, "negotiation_id": negotiation_id},
            )
            await self._offer()
            return
        if self.peer is None:
            return
        await self.peer.set_remote_description(description)
        self._remote_applied = True
        self._remote_sdp = description.sdp
        await self._flush_pending(negotiation_id)

    async def _apply_candidate(self, negotiation_id: str, candidate: IceCandidate) -> None:
        if negotiation_id in self._retired:
            return
        if self.is_offerer and negotiation_id != self.negotiation_id:
            # Only the offerer mints negotiation ids, so any other id belongs to an earlier offerer.
            self._retired.add(negotiation_id)
            logger.debug("Dropping ICE candidate of a retired negotiation", extra={"negotiation_id": negotiation_id})
            return
        key = (negotiation_id, candidate.key)
        if key in self._applied_candidates:
            self.lifecycle.metrics.record_duplicate()
            return
        if negotiation_id != self.negotiation_id or not self._remote_applied:
            self._pending[negotiation_id][candidate.key] = candidate
            logger.debug("Buffered ICE candidate", extra={"negotiation_id": negotiation_id})
            return
        if self.peer is None:
            return
        await self.peer.add_ice_candidate(candidate)
        self._applied_candidates.add(key)

    async def _flush_pending(self, negotiation_id: str) -> None:
        pending = self._pending.pop(negotiation_id, {})
        for candidate in pending.values():
            await self._apply_candidate(negotiation_id, candidate)
        if pending:
            logger.debug(
                "Flushed buffered ICE candidates",
                extra={"negotiation_id": negotiation_id, "count": len(pending)},
            )

    async def _publish_candidate(self, negotiation_id: str, candidate: IceCandidate) -> None:
        await self.publisher.publish(
            SignalKind.ICE_CANDIDATE,
            {"negotiation_id": negotiation_id, "candidate": candidate.model_dump()},
        )

    async def _on_connection_state(self, state: str) -> None:
        self.events.emit(ConnectionStateChanged(self.session.id, state))
        if self.lifecycle.state == SessionState.ENDED:
            return

        if state == "connected":
            self._connected = True
            self.lifecycle.metrics.record_connected()
            self.lifecycle.resume()
            self.events.emit(Connected(self.session.id))
        elif state in ("disconnected", "failed"):
            self._connected = False
            self.lifecycle.pause()
            if state == "failed":
                error = PeerConnectionError(
                    "Peer connection failed", {"session_ref": self.session.id}
                )
                self.events.emit(ErrorOccurred(error, fatal=False))
