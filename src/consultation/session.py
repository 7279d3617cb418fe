"""Session lifecycle management.

Tracks one participant's view of a consultation session, validates state
transitions, persists snapshots to the session store and records metrics.

State Transitions:
- UNINITIALIZED → WAITING (patient announces intent to join)
- UNINITIALIZED → ACTIVE (provider, as soon as the session exists)
- WAITING → ACTIVE (patient admitted)
- ACTIVE ⇄ PAUSED (peer transport lost / recovered)
- * → ENDED (local end, or remote end observed)
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime

from consultation.errors import (
    ConsultationError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    StoreUnavailableError,
)
from consultation.events import ErrorOccurred, EventStream, SessionEnded, StateChanged
from consultation.models import Identity, Modality, Session, SessionState, SignalEnvelope, utc_now
from consultation.store.base import AppointmentDirectory, SessionStore

logger = logging.getLogger(__name__)


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.UNINITIALIZED: {SessionState.WAITING, SessionState.ACTIVE, SessionState.ENDED},
    SessionState.WAITING: {SessionState.ACTIVE, SessionState.ENDED},
    SessionState.ACTIVE: {SessionState.PAUSED, SessionState.ENDED},
    SessionState.PAUSED: {SessionState.ACTIVE, SessionState.ENDED},
    SessionState.ENDED: set(),  # Terminal state
}


@dataclass
class SessionMetrics:
    """Session establishment and relay metrics."""

    session_start_ts: float = field(default_factory=time.monotonic)
    admitted_ts: float | None = None
    connected_ts: float | None = None
    ended_ts: float | None = None

    envelopes_applied: int = 0
    duplicates_dropped: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    relay_fallbacks: int = 0
    connection_losses: int = 0

    def record_admitted(self) -> None:
        if self.admitted_ts is None:
            self.admitted_ts = time.monotonic()

    def record_connected(self) -> None:
        if self.connected_ts is None:
            self.connected_ts = time.monotonic()

    def record_ended(self) -> None:
        if self.ended_ts is None:
            self.ended_ts = time.monotonic()

    def record_envelope_applied(self) -> None:
        self.envelopes_applied += 1

    def record_duplicate(self) -> None:
        self.duplicates_dropped += 1

    @property
    def time_to_admission_ms(self) -> float | None:
        if self.admitted_ts is None:
            return None
        return (self.admitted_ts - self.session_start_ts) * 1000.0

    @property
    def time_to_connect_ms(self) -> float | None:
        if self.connected_ts is None:
            return None
        return (self.connected_ts - self.session_start_ts) * 1000.0


def compute_duration_seconds(session: Session, ended_at: datetime) -> int:
    """Whole seconds between start and end, never negative."""
    return max(0, math.floor((ended_at - session.started_at).total_seconds()))


class SessionLifecycle:
    """One participant's session record and state machine."""

    def __init__(
        self,
        identity: Identity,
        appointments: AppointmentDirectory,
        sessions: SessionStore,
        events: EventStream,
    ) -> None:
        self.identity = identity
        self.appointments = appointments
        self.sessions = sessions
        self.events = events
        self.state = SessionState.UNINITIALIZED
        self.session: Session | None = None
        self.metrics = SessionMetrics()

    @property
    def session_ref(self) -> str | None:
        return self.session.id if self.session else None

    async def create_or_resume_session(
        self, appointment_ref: str, modality: Modality | None = None
    ) -> Session:
        """Return the appointment's session, creating it if none exists.

        An existing session is returned unchanged, including an ended one.
        Two participants calling this concurrently receive the same session.

        Args:
            appointment_ref: Appointment to open a session for
            modality: Session modality (defaults to the appointment's)

        Raises:
            NotFoundError: If the appointment does not exist
            PermissionDeniedError: If the caller is not a party to the appointment
        """
        appointment = await self.appointments.get_appointment(appointment_ref)
        if appointment is None:
            raise NotFoundError("Appointment", appointment_ref)

        role = appointment.role_of(self.identity.user_ref)
        if role is None or role != self.identity.role:
            raise PermissionDeniedError("join appointment", self.identity.role.value)

        existing = await self.sessions.latest_for_appointment(appointment_ref)
        if existing is not None:
            self.session = existing
            logger.info(
                "Resumed session",
                extra={"session_ref": existing.id, "appointment_ref": appointment_ref},
            )
            return existing

        candidate = Session(
            appointment_ref=appointment_ref,
            provider_ref=appointment.provider_ref,
            patient_ref=appointment.patient_ref,
            modality=modality or appointment.modality,
            state=SessionState.WAITING,
        )
        self.session = await self.sessions.create_if_absent(candidate)
        return self.session

    def transition_state(self, new_state: SessionState) -> None:
        """Transition session to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            InvalidStateError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise InvalidStateError(
                f"Invalid state transition: {self.state.value} → {new_state.value}",
                {"from_state": self.state.value, "to_state": new_state.value},
            )

        old_state = self.state
        self.state = new_state

        logger.info(
            "Session state transition",
            extra={
                "session_ref": self.session_ref,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
        self.events.emit(StateChanged(self.session_ref or "", old_state, new_state))

    def enter_lobby(self) -> None:
        """Patient side: announce intent to join."""
        if self.state == SessionState.UNINITIALIZED:
            self.transition_state(SessionState.WAITING)

    async def activate(self) -> None:
        """Enter ACTIVE (provider on join, patient on admission) and persist it."""
        if self.state in (SessionState.ACTIVE, SessionState.PAUSED):
            return
        self.transition_state(SessionState.ACTIVE)
        if not self.identity.is_provider:
            self.metrics.record_admitted()
        await self._persist_state(SessionState.ACTIVE)

    def pause(self) -> bool:
        """Peer transport lost. Returns whether the state changed."""
        if self.state != SessionState.ACTIVE:
            return False
        self.metrics.connection_losses += 1
        self.transition_state(SessionState.PAUSED)
        return True

    def resume(self) -> bool:
        """Peer transport recovered. Returns whether the state changed."""
        if self.state != SessionState.PAUSED:
            return False
        self.transition_state(SessionState.ACTIVE)
        return True

    async def end_session(self, notes: str | None = None) -> Session:
        """End the session locally and persist the ended snapshot.

        Idempotent: once ended, the same session is returned unchanged.

        Raises:
            InvalidStateError: If no session has been created or resumed
        """
        if self.session is None:
            raise InvalidStateError("No session to end")
        if self.state == SessionState.ENDED:
            return self.session

        ended_at = utc_now()
        ended = self.session.model_copy(
            update={
                "state": SessionState.ENDED,
                "ended_at": ended_at,
                "duration_seconds": compute_duration_seconds(self.session, ended_at),
                "notes": notes if notes is not None else self.session.notes,
            }
        )
        self.session = ended
        self.metrics.record_ended()
        self.transition_state(SessionState.ENDED)

        try:
            self.session = await self.sessions.save_session(ended)
        except StoreUnavailableError as e:
            logger.warning(
                "Failed to persist ended session",
                extra={"session_ref": ended.id, "error": str(e)},
            )
            self.events.emit(ErrorOccurred(e, fatal=False))

        logger.info(
            "Session ended",
            extra={"session_ref": ended.id, "duration_seconds": ended.duration_seconds},
        )
        self.events.emit(SessionEnded(self.session, remote=False))
        return self.session

    def apply_remote_status(self, envelope: SignalEnvelope) -> bool:
        """Apply a remote session-status snapshot.

        Only ended snapshots are applied; the snapshot is taken from the
        payload as-is rather than re-read from the store.

        Returns:
            Whether the local session ended because of this envelope
        """
        if self.state == SessionState.ENDED:
            return False

        try:
            snapshot = Session.model_validate(envelope.payload["session"])
        except (KeyError, ValueError) as e:
            logger.warning(f"Ignoring malformed session status: {e}", extra={"envelope_id": envelope.id})
            return False

        if not snapshot.is_ended or (self.session is not None and snapshot.id != self.session.id):
            return False

        self.session = snapshot
        self.metrics.record_ended()
        self.transition_state(SessionState.ENDED)
        logger.info(
            "Session ended remotely",
            extra={"session_ref": snapshot.id, "ended_by": envelope.sender_ref},
        )
        self.events.emit(SessionEnded(snapshot, remote=True))
        return True

    async def _persist_state(self, state: SessionState) -> None:
        if self.session is None:
            return
        snapshot = self.session.model_copy(update={"state": state})
        try:
            self.session = await self.sessions.save_session(snapshot)
        except StoreUnavailableError as e:
            logger.warning(
                "Failed to persist session state",
                extra={"session_ref": snapshot.id, "state": state.value, "error": str(e)},
            )
            self.session = snapshot
            self.events.emit(ErrorOccurred(e, fatal=False))

    def report_error(self, error: ConsultationError, fatal: bool = False) -> None:
        logger.error(
            f"Consultation error: {error.message}",
            extra={"session_ref": self.session_ref, "code": error.code.value},
        )
        self.events.emit(ErrorOccurred(error, fatal=fatal))

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get session metrics summary for logging/monitoring.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "session_ref": self.session_ref,
            "state": self.state.value,
            "time_to_admission_ms": self.metrics.time_to_admission_ms,
            "time_to_connect_ms": self.metrics.time_to_connect_ms,
            "envelopes_applied": self.metrics.envelopes_applied,
            "duplicates_dropped": self.metrics.duplicates_dropped,
            "messages_sent": self.metrics.messages_sent,
            "messages_received": self.metrics.messages_received,
            "relay_fallbacks": self.metrics.relay_fallbacks,
            "connection_losses": self.metrics.connection_losses,
            "session_duration_s": (
                (self.metrics.ended_ts or time.monotonic()) - self.metrics.session_start_ts
            ),
        }
