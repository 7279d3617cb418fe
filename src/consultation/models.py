"""Consultation data model.

Pydantic models for sessions, signaling envelopes, chat messages and the
collaborator records (appointments, identities, notes) this core consumes.
Envelopes and chat messages are append-only and therefore frozen.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Current wall-clock time in UTC."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a unique identifier."""
    return uuid.uuid4().hex


class Modality(str, Enum):
    """Consultation modality."""

    VIDEO = "video"
    AUDIO = "audio"
    CHAT = "chat"


class ParticipantRole(str, Enum):
    """Role of a participant in a consultation.

    The provider always offers the peer transport and decides admission;
    the patient always answers and waits in the lobby.
    """

    PROVIDER = "provider"
    PATIENT = "patient"


class SessionState(str, Enum):
    """Session state machine states.

    State Transitions:
    - UNINITIALIZED → WAITING (patient announces intent to join)
    - UNINITIALIZED → ACTIVE (provider, as soon as the session exists)
    - WAITING → ACTIVE (patient receives admission)
    - ACTIVE ⇄ PAUSED (peer transport lost / recovered)
    - * → ENDED (either side ends, or remote end observed)
    """

    UNINITIALIZED = "uninitialized"
    WAITING = "waiting"
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class SignalKind(str, Enum):
    """Envelope kinds carried on the signal channel."""

    # Peer transport negotiation
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"

    # Waiting room
    JOIN_LOBBY = "join-lobby"
    LEAVE_LOBBY = "leave-lobby"
    ADMIT_PATIENT = "admit-patient"
    ADMIT_ACK = "admit-ack"
    DECLINE_PATIENT = "decline-patient"

    # Chat relay fallback
    CHAT_RELAY = "chat-relay"

    # Session status broadcast
    SESSION_STATUS = "session-status"


NEGOTIATION_KINDS = frozenset({SignalKind.OFFER, SignalKind.ANSWER, SignalKind.ICE_CANDIDATE})
LOBBY_KINDS = frozenset(
    {
        SignalKind.JOIN_LOBBY,
        SignalKind.LEAVE_LOBBY,
        SignalKind.ADMIT_PATIENT,
        SignalKind.ADMIT_ACK,
        SignalKind.DECLINE_PATIENT,
    }
)


class Identity(BaseModel):
    """Authenticated participant identity supplied by the host application."""

    user_ref: str = Field(..., min_length=1, description="Authenticated user id")
    display_name: str = Field(default="", description="Name shown to the other party")
    role: ParticipantRole

    @property
    def is_provider(self) -> bool:
        return self.role == ParticipantRole.PROVIDER


class Appointment(BaseModel):
    """Appointment record resolved through the external appointment collaborator."""

    id: str
    patient_ref: str
    provider_ref: str
    modality: Modality = Modality.VIDEO

    def role_of(self, user_ref: str) -> ParticipantRole | None:
        """Return the role ``user_ref`` holds in this appointment, if any."""
        if user_ref == self.provider_ref:
            return ParticipantRole.PROVIDER
        if user_ref == self.patient_ref:
            return ParticipantRole.PATIENT
        return None


class Session(BaseModel):
    """Logical record of one consultation encounter."""

    id: str = Field(default_factory=new_id)
    appointment_ref: str
    provider_ref: str
    patient_ref: str
    modality: Modality
    state: SessionState = SessionState.WAITING
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    duration_seconds: int = Field(default=0, ge=0)
    notes: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_ended(self) -> bool:
        return self.state == SessionState.ENDED

    def role_of(self, user_ref: str) -> ParticipantRole | None:
        if user_ref == self.provider_ref:
            return ParticipantRole.PROVIDER
        if user_ref == self.patient_ref:
            return ParticipantRole.PATIENT
        return None


class SignalEnvelope(BaseModel):
    """One relayed signaling or lobby control message.

    Append-only: never mutated once published, applied at most once per
    receiver, and never applied by its own sender.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    session_ref: str
    sender_ref: str
    kind: SignalKind
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class ChatMessage(BaseModel):
    """Consultation chat message.

    The id is assigned by the sender at creation time and preserved by the
    authoritative store, so both delivery paths carry the same id.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    session_ref: str
    sender_ref: str
    sender_role: ParticipantRole
    sender_name: str = ""
    message_type: Literal["text", "system"] = "text"
    content: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)


class SessionDescription(BaseModel):
    """Session Description Protocol payload for offers and answers."""

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """ICE connectivity candidate."""

    model_config = ConfigDict(frozen=True)

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    @property
    def key(self) -> tuple[str, str | None, int | None]:
        """Identity of the candidate within a negotiation."""
        return (self.candidate, self.sdp_mid, self.sdp_mline_index)


class ConsultationNote(BaseModel):
    """Clinical notes recorded by the provider during a consultation."""

    id: str = Field(default_factory=new_id)
    session_ref: str
    provider_ref: str
    patient_ref: str
    diagnosis: str | None = None
    prescriptions: str | None = None
    treatment_plan: str | None = None
    follow_up_notes: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_empty(self) -> bool:
        return not any(
            (value or "").strip()
            for value in (self.diagnosis, self.prescriptions, self.treatment_plan, self.follow_up_notes)
        )
