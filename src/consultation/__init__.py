"""Consultation session core.

Coordinates a care provider and a patient through waiting-room admission,
relays WebRTC signaling over a broadcast channel, and keeps a deduplicated
chat stream for the duration of the encounter.
"""

from consultation.coordinator import ConsultationCoordinator
from consultation.errors import (
    AdmissionTimeoutError,
    ChannelError,
    ConsultationError,
    ErrorCode,
    InvalidStateError,
    MediaAccessDeniedError,
    NotFoundError,
    PeerConnectionError,
    PermissionDeniedError,
    StoreUnavailableError,
)
from consultation.models import (
    ChatMessage,
    Identity,
    Modality,
    ParticipantRole,
    Session,
    SessionState,
    SignalEnvelope,
    SignalKind,
)

__version__ = "0.1.0"

__all__ = [
    "AdmissionTimeoutError",
    "ChannelError",
    "ChatMessage",
    "ConsultationCoordinator",
    "ConsultationError",
    "ErrorCode",
    "Identity",
    "InvalidStateError",
    "MediaAccessDeniedError",
    "Modality",
    "NotFoundError",
    "ParticipantRole",
    "PeerConnectionError",
    "PermissionDeniedError",
    "Session",
    "SessionState",
    "SignalEnvelope",
    "SignalKind",
    "StoreUnavailableError",
]
