"""Error taxonomy for consultation sessions.

Every error carries a machine-readable code and a ``recoverable`` flag:

- Fatal to the current operation, raised immediately, never corrupt state:
  NotFoundError, PermissionDeniedError, InvalidStateError
- Recovered locally where possible, otherwise surfaced as non-fatal notices:
  MediaAccessDeniedError, PeerConnectionError
- Retried with backoff by the caller: ChannelError, StoreUnavailableError
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    MEDIA_ACCESS_DENIED = "media_access_denied"
    CONNECTION_FAILED = "connection_failed"
    CHANNEL_UNAVAILABLE = "channel_unavailable"
    STORE_UNAVAILABLE = "store_unavailable"
    INVALID_STATE = "invalid_state"
    ADMISSION_TIMEOUT = "admission_timeout"


class ConsultationError(Exception):
    """Base exception for consultation session errors."""

    code: ErrorCode = ErrorCode.INVALID_STATE
    recoverable: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class NotFoundError(ConsultationError):
    """Appointment or session does not exist."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            f"{resource} not found: {identifier}",
            {"resource": resource, "identifier": identifier},
        )


class PermissionDeniedError(ConsultationError):
    """Caller's role does not allow the action (e.g. a patient admitting)."""

    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, action: str, role: str | None = None) -> None:
        details: dict[str, Any] = {"action": action}
        if role is not None:
            details["role"] = role
        super().__init__(f"Permission denied: {action}", details)


class MediaAccessDeniedError(ConsultationError):
    """Camera or microphone access was refused."""

    code = ErrorCode.MEDIA_ACCESS_DENIED
    recoverable = True

    def __init__(self, device: str, reason: str) -> None:
        super().__init__(
            f"{device} access denied: {reason}",
            {"device": device, "reason": reason},
        )
        self.device = device


class PeerConnectionError(ConsultationError, ConnectionError):
    """Peer transport negotiation failed."""

    code = ErrorCode.CONNECTION_FAILED
    recoverable = True


class ChannelError(ConsultationError):
    """Broadcast channel publish or subscribe failed."""

    code = ErrorCode.CHANNEL_UNAVAILABLE
    recoverable = True


class StoreUnavailableError(ConsultationError):
    """Authoritative store could not be reached."""

    code = ErrorCode.STORE_UNAVAILABLE
    recoverable = True


class InvalidStateError(ConsultationError):
    """Operation is not allowed in the current lifecycle state."""

    code = ErrorCode.INVALID_STATE


class AdmissionTimeoutError(ConsultationError):
    """Patient was not admitted within the configured timeout."""

    code = ErrorCode.ADMISSION_TIMEOUT

    def __init__(self, session_ref: str, timeout_s: float) -> None:
        super().__init__(
            f"Not admitted to session {session_ref} within {timeout_s}s",
            {"session_ref": session_ref, "timeout_s": timeout_s},
        )
