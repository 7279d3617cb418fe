"""Per-session consultation coordinator.

Composes the session lifecycle, lobby, signaling relay, chat and resource
manager for one participant, and routes envelopes from the shared signal
channel to them. Each coordinator owns its own subscriptions; nothing is
process-global, so several coordinators can share a channel in one process.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from consultation.chat import MessageChannel
from consultation.config import ConsultationConfig
from consultation.errors import (
    ChannelError,
    ConsultationError,
    InvalidStateError,
    PeerConnectionError,
    PermissionDeniedError,
)
from consultation.events import (
    Connected,
    ConsultationEvent,
    ErrorOccurred,
    EventStream,
    RemoteStreamReceived,
)
from consultation.lobby import Lobby, WaitingPatient
from consultation.media import MediaDevices
from consultation.models import (
    LOBBY_KINDS,
    NEGOTIATION_KINDS,
    ChatMessage,
    ConsultationNote,
    Identity,
    Modality,
    Session,
    SessionState,
    SignalEnvelope,
    SignalKind,
)
from consultation.peer.base import PeerLinkFactory
from consultation.resources import ResourceManager, WakeLock
from consultation.session import SessionLifecycle
from consultation.signaling import SignalingRelay
from consultation.store.base import AppointmentDirectory, MessageStore, NotesStore, SessionStore
from consultation.transport.base import SignalChannel
from consultation.transport.retry import RetryingPublisher, retry_channel_operation
from consultation.utils.logging import log_event

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class ConsultationCoordinator:
    """One participant's handle on one consultation session.

    Typical provider flow::

        coordinator = ConsultationCoordinator(identity, appointments=..., ...)
        await coordinator.join("appt-1")
        coordinator.on_stream_received(show_remote)
        await coordinator.admit()
        ...
        await coordinator.end_session(notes="Follow up in two weeks")
        await coordinator.close()

    A patient calls ``join()`` and then ``wait_for_admission()``.
    """

    def __init__(
        self,
        identity: Identity,
        *,
        appointments: AppointmentDirectory,
        sessions: SessionStore,
        messages: MessageStore,
        notes: NotesStore,
        channel: SignalChannel,
        media_devices: MediaDevices,
        peer_factory: PeerLinkFactory,
        config: ConsultationConfig | None = None,
        wake_lock: WakeLock | None = None,
    ) -> None:
        self.identity = identity
        self.appointments = appointments
        self.sessions = sessions
        self.message_store = messages
        self.notes = notes
        self.channel = channel
        self.media_devices = media_devices
        self.peer_factory = peer_factory
        self.config = config or ConsultationConfig()
        self.wake_lock = wake_lock

        self.event_stream = EventStream()
        self.lifecycle = SessionLifecycle(identity, appointments, sessions, self.event_stream)
        self.resources: ResourceManager | None = None
        self.publisher: RetryingPublisher | None = None
        self.lobby: Lobby | None = None
        self.relay: SignalingRelay | None = None
        self.chat: MessageChannel | None = None
        self._closed = False

    # Read models

    @property
    def session(self) -> Session | None:
        return self.lifecycle.session

    @property
    def state(self) -> SessionState:
        return self.lifecycle.state

    @property
    def messages(self) -> list[ChatMessage]:
        return self.chat.messages if self.chat is not None else []

    @property
    def waiting_patients(self) -> list[WaitingPatient]:
        return self.lobby.waiting_patients if self.lobby is not None else []

    @property
    def is_joined(self) -> bool:
        return self.resources is not None and not self.resources.released

    # Session establishment

    async def create_or_resume_session(
        self, appointment_ref: str, modality: Modality | None = None
    ) -> Session:
        """Return the appointment's session, creating it if none exists.

        Raises:
            NotFoundError: If the appointment does not exist
            PermissionDeniedError: If the caller is not a party to the appointment
            InvalidStateError: If this coordinator is joined to another session
        """
        self._ensure_open()
        current = self.lifecycle.session
        if self.is_joined and current is not None and current.appointment_ref != appointment_ref:
            raise InvalidStateError(
                "Already joined another session",
                {"session_ref": current.id, "appointment_ref": appointment_ref},
            )
        return await self.lifecycle.create_or_resume_session(appointment_ref, modality)

    async def join(self, appointment_ref: str | None = None, display_name: str | None = None) -> Session:
        """Acquire resources and enter the session.

        The provider becomes active at once and starts watching the lobby;
        the patient enters the lobby and announces itself unless its
        admission is already in the channel history. Joining twice returns
        the same session.

        Args:
            appointment_ref: Appointment to join (optional after create_or_resume_session)
            display_name: Name shown in the provider's lobby (patient only)

        Raises:
            NotFoundError: If the appointment does not exist
            PermissionDeniedError: If the caller is not a party to the appointment
            InvalidStateError: If the session has ended
            MediaAccessDeniedError: If a device is denied and degradation is off
            ChannelError: If the signal channel stays unreachable after retries
        """
        self._ensure_open()
        session = self.lifecycle.session
        if appointment_ref is not None and (session is None or session.appointment_ref != appointment_ref):
            session = await self.create_or_resume_session(appointment_ref)
        if session is None:
            raise InvalidStateError("No session to join; pass an appointment_ref")
        if session.is_ended or self.lifecycle.state == SessionState.ENDED:
            raise InvalidStateError("Session has ended", {"session_ref": session.id})
        if self.is_joined:
            return session

        self.resources = ResourceManager(session.id, self.wake_lock)
        try:
            await self._establish(session, display_name)
        except (Exception, asyncio.CancelledError):
            logger.warning(
                "Join failed, releasing resources",
                extra={"session_ref": session.id, "role": self.identity.role.value},
            )
            await self._teardown()
            raise

        logger.info(
            "Joined session",
            extra={
                "session_ref": session.id,
                "role": self.identity.role.value,
                "state": self.lifecycle.state.value,
            },
        )
        return self.lifecycle.session or session

    async def _establish(self, session: Session, display_name: str | None) -> None:
        resources = self.resources
        if resources is None:
            raise InvalidStateError("Resources missing during join")

        if session.modality != Modality.CHAT:
            notices = await resources.acquire_media(
                self.media_devices, session.modality, self.config.media.allow_degraded
            )
            for notice in notices:
                self.event_stream.emit(ErrorOccurred(notice, fatal=False))
        await resources.acquire_wake_lock()

        self.publisher = RetryingPublisher(
            self.channel, session.id, self.identity.user_ref, self.config.retry
        )
        self.lobby = Lobby(
            self.identity,
            session,
            self.channel,
            self.publisher,
            self.lifecycle,
            self.event_stream,
            self.config.lobby,
            on_admitted=self._on_admitted,
        )
        self.relay = None
        if session.modality != Modality.CHAT:
            self.relay = SignalingRelay(
                self.identity,
                session,
                self.channel,
                self.publisher,
                resources,
                self.peer_factory,
                self.lifecycle,
                self.event_stream,
            )
        self.chat = MessageChannel(
            self.identity,
            session,
            self.message_store,
            self.channel,
            self.publisher,
            self.lifecycle,
            self.event_stream,
            self.config.chat,
        )

        # Subscribe before reading any history so nothing falls in between.
        subscription = await retry_channel_operation(
            lambda: self.channel.subscribe(session.id, self._dispatch),
            self.config.retry,
            description="subscribe to signal channel",
        )
        subscription.on_lost(self._on_subscription_lost)
        await resources.track(subscription)

        await self._replay_session_status(session)

        chat_subscription = await self.chat.start()
        chat_subscription.on_lost(self._on_subscription_lost)
        await resources.track(chat_subscription)

        if self.identity.is_provider:
            await self.lifecycle.activate()
            await self.lobby.start()
        else:
            self.lifecycle.enter_lobby()
            await self.lobby.start()
            if not self.lobby.is_admitted:
                await self.lobby.announce(display_name)

    async def _replay_session_status(self, session: Session) -> None:
        # The ended snapshot may only have reached the channel if the store write failed.
        statuses = await retry_channel_operation(
            lambda: self.channel.history(session.id, kinds=[SignalKind.SESSION_STATUS]),
            self.config.retry,
            description="read session status history",
        )
        for envelope in statuses:
            if self.lifecycle.apply_remote_status(envelope):
                raise InvalidStateError("Session has ended", {"session_ref": session.id})

    def _on_subscription_lost(self, error: ChannelError) -> None:
        if self._closed or self.lifecycle.state == SessionState.ENDED:
            return
        self.lifecycle.report_error(error)

    async def _on_admitted(self, patient_ref: str) -> None:
        if self.relay is None:
            return
        try:
            await self.relay.start()
        except PeerConnectionError as e:
            # Already surfaced by the relay.
            logger.warning(f"Peer negotiation failed: {e}", extra={"patient_ref": patient_ref})
        except ConsultationError as e:
            if self.resources is not None and self.resources.released:
                logger.info("Signaling stopped by teardown", extra={"patient_ref": patient_ref})
                return
            self.lifecycle.report_error(e)

    async def _dispatch(self, envelope: SignalEnvelope) -> None:
        if self._closed or self.lifecycle.state == SessionState.ENDED:
            logger.debug(
                "Dropping envelope after session end",
                extra={"envelope_id": envelope.id, "kind": envelope.kind.value},
            )
            return
        if envelope.sender_ref == self.identity.user_ref:
            return

        try:
            if envelope.kind == SignalKind.SESSION_STATUS:
                if self.lifecycle.apply_remote_status(envelope):
                    await self._teardown()
            elif envelope.kind in LOBBY_KINDS:
                if self.lobby is not None:
                    await self.lobby.handle(envelope)
            elif envelope.kind in NEGOTIATION_KINDS:
                if self.relay is not None:
                    await self.relay.handle(envelope)
            elif envelope.kind == SignalKind.CHAT_RELAY:
                if self.chat is not None:
                    await self.chat.handle_relay(envelope)
        except ConsultationError as e:
            self.lifecycle.report_error(e)

    # Lobby

    async def admit(self, patient_ref: str | None = None) -> None:
        """Provider: admit the waiting patient.

        Raises:
            PermissionDeniedError: If called by a patient
            InvalidStateError: If not joined, or the patient was declined
        """
        if not self.identity.is_provider:
            raise PermissionDeniedError("admit patient", self.identity.role.value)
        await self._require_lobby().admit(patient_ref)

    async def decline(self, patient_ref: str | None = None, reason: str = "") -> None:
        """Provider: refuse the waiting patient."""
        if not self.identity.is_provider:
            raise PermissionDeniedError("decline patient", self.identity.role.value)
        await self._require_lobby().decline(patient_ref, reason)

    async def wait_for_admission(self) -> None:
        """Patient: wait until the provider admits.

        Raises:
            PermissionDeniedError: If the provider declined
            AdmissionTimeoutError: If the configured admission timeout expires
            InvalidStateError: If the patient left or the session closed first
        """
        await self._require_lobby().wait_for_admission()

    async def leave(self) -> None:
        """Disconnect without ending the session.

        A waiting patient publishes ``leave-lobby``. Local resources are
        released; ``join()`` may be called again later.
        """
        if not self.is_joined:
            return
        if self.lobby is not None and not self.identity.is_provider:
            try:
                await self.lobby.leave()
            except ChannelError as e:
                self.lifecycle.report_error(e)
        await self._teardown()
        logger.info("Left session", extra={"session_ref": self.lifecycle.session_ref})

    def _require_lobby(self) -> Lobby:
        if self.lobby is None or not self.is_joined:
            raise InvalidStateError("Not joined to a session")
        return self.lobby

    # Ending

    async def end_session(self, notes: str | None = None) -> Session:
        """End the session for both participants.

        Persists the ended snapshot, broadcasts it as ``session-status`` and
        releases local resources. Idempotent: a second call returns the same
        session without broadcasting again.

        Raises:
            InvalidStateError: If no session has been created or resumed
        """
        if self.lifecycle.state == SessionState.ENDED and self.lifecycle.session is not None:
            return self.lifecycle.session

        ended = await self.lifecycle.end_session(notes)

        publisher = self.publisher or RetryingPublisher(
            self.channel, ended.id, self.identity.user_ref, self.config.retry
        )
        try:
            await publisher.publish(SignalKind.SESSION_STATUS, {"session": ended.model_dump(mode="json")})
        except ChannelError as e:
            logger.warning("Failed to broadcast session end", extra={"session_ref": ended.id})
            self.event_stream.emit(ErrorOccurred(e, fatal=False))

        log_event(
            "session_ended",
            {
                "session_ref": ended.id,
                "ended_by": self.identity.role.value,
                "duration_seconds": ended.duration_seconds,
            },
        )
        await self._teardown()
        return ended

    async def _teardown(self) -> None:
        if self.lobby is not None:
            self.lobby.close()
        if self.resources is not None:
            await self.resources.release()

    # Chat

    async def send_message(self, content: str) -> ChatMessage:
        """Send a chat message to the other participant.

        Raises:
            InvalidStateError: If not joined or the session has ended
            ValueError: If the content is empty or too long
        """
        if self.chat is None:
            raise InvalidStateError("Not joined to a session")
        return await self.chat.send_message(content)

    # Media

    def set_audio_enabled(self, enabled: bool) -> bool:
        """Mute or unmute the microphone. Returns False without an audio track."""
        return self.resources is not None and self.resources.set_audio_enabled(enabled)

    def set_video_enabled(self, enabled: bool) -> bool:
        """Turn the camera on or off. Returns False without a video track."""
        return self.resources is not None and self.resources.set_video_enabled(enabled)

    # Notes and history

    async def save_note(
        self,
        *,
        diagnosis: str | None = None,
        prescriptions: str | None = None,
        treatment_plan: str | None = None,
        follow_up_notes: str | None = None,
    ) -> ConsultationNote:
        """Provider: record clinical notes for the session.

        Raises:
            PermissionDeniedError: If called by a patient
            InvalidStateError: If there is no session
            ValueError: If every field is empty
            StoreUnavailableError: If the notes store is unreachable
        """
        if not self.identity.is_provider:
            raise PermissionDeniedError("save consultation notes", self.identity.role.value)
        session = self.lifecycle.session
        if session is None:
            raise InvalidStateError("No session to annotate")

        note = ConsultationNote(
            session_ref=session.id,
            provider_ref=session.provider_ref,
            patient_ref=session.patient_ref,
            diagnosis=diagnosis,
            prescriptions=prescriptions,
            treatment_plan=treatment_plan,
            follow_up_notes=follow_up_notes,
        )
        if note.is_empty:
            raise ValueError("Consultation note must have at least one field")
        return await self.notes.add_note(note)

    async def session_history(self, limit: int = 20) -> list[Session]:
        """The local participant's sessions, newest first."""
        return await self.sessions.list_for_participant(self.identity.user_ref, limit)

    # Events

    def on_stream_received(self, callback: Callable[[Any], Awaitable[None] | None]) -> Unsubscribe:
        """Call ``callback(track)`` for every remote track.

        Tracks already received are replayed unless the session has ended.
        """
        return self.event_stream.subscribe(
            lambda event: callback(event.track), RemoteStreamReceived, replay=self._replays_media()
        )

    def on_connected(self, callback: Callable[[], Awaitable[None] | None]) -> Unsubscribe:
        return self.event_stream.subscribe(lambda event: callback(), Connected, replay=self._replays_media())

    def _replays_media(self) -> bool:
        return self.lifecycle.state != SessionState.ENDED

    def on_error(self, callback: Callable[[ConsultationError], Awaitable[None] | None]) -> Unsubscribe:
        return self.event_stream.subscribe(lambda event: callback(event.error), ErrorOccurred)

    async def events(self, replay: bool = True) -> AsyncIterator[ConsultationEvent]:
        """Iterate this participant's events until ``close()``."""
        async for event in self.event_stream.events(replay=replay):
            yield event

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        return self.lifecycle.get_metrics_summary()

    # Shutdown

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvalidStateError("Coordinator is closed")

    async def close(self) -> None:
        """Release everything without ending the session."""
        if self._closed:
            return
        self._closed = True
        await self._teardown()
        await self.event_stream.close()
        logger.info(
            "Coordinator closed",
            extra=self.get_metrics_summary(),
        )
