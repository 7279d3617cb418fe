"""Waiting-room admission handshake.

1. Patient publishes ``join-lobby`` once its local media is ready.
2. Provider records a waiting entry from live and historical ``join-lobby``
   envelopes (the coordinator subscribes before history is read, and
   envelope ids dedupe the overlap).
3. Only the provider's ``admit-patient`` admits; ``decline-patient`` refuses.
4. The admitted patient activates and answers with ``admit-ack``, which
   clears the provider's waiting entry.

Exactly one decision is made per join, and both sides observe it. A
decline ends that join only: a later ``join-lobby`` from the same patient
puts it back in the waiting room.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from consultation.config import LobbyConfig
from consultation.errors import AdmissionTimeoutError, InvalidStateError, PermissionDeniedError
from consultation.events import (
    AdmissionAcknowledged,
    AdmissionDeclined,
    EventStream,
    PatientAdmitted,
    PatientLeftLobby,
    PatientWaiting,
)
from consultation.models import LOBBY_KINDS, Identity, Session, SignalEnvelope, SignalKind
from consultation.session import SessionLifecycle
from consultation.transport.base import SignalChannel
from consultation.transport.retry import RetryingPublisher, retry_channel_operation

logger = logging.getLogger(__name__)

AdmittedCallback = Callable[[str], Awaitable[None]]


@dataclass
class WaitingPatient:
    patient_ref: str
    display_name: str
    since: datetime
    admitted: bool = False


class Lobby:
    """Admission handshake for one participant."""

    def __init__(
        self,
        identity: Identity,
        session: Session,
        channel: SignalChannel,
        publisher: RetryingPublisher,
        lifecycle: SessionLifecycle,
        events: EventStream,
        config: LobbyConfig,
        on_admitted: AdmittedCallback | None = None,
    ) -> None:
        self.identity = identity
        self.session = session
        self.channel = channel
        self.publisher = publisher
        self.lifecycle = lifecycle
        self.events = events
        self.config = config
        self.on_admitted = on_admitted

        self._seen: set[str] = set()
        self._waiting: dict[str, WaitingPatient] = {}
        self._admitted: set[str] = set()
        self._declined: set[str] = set()
        self._acked = False
        self._admission: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    @property
    def waiting_patients(self) -> list[WaitingPatient]:
        return sorted(self._waiting.values(), key=lambda w: w.since)

    @property
    def is_admitted(self) -> bool:
        """Patient side: admission received. Provider side: the session's patient admitted."""
        if self.identity.is_provider:
            return self.session.patient_ref in self._admitted
        return self._admission.done() and self._admission.exception() is None

    async def start(self) -> None:
        """Recover lobby state from history.

        Must be called after the coordinator's live subscription exists.
        """
        history = await retry_channel_operation(
            lambda: self.channel.history(self.session.id, kinds=LOBBY_KINDS),
            self.publisher.retry,
            description="read lobby history",
        )
        if any(
            e.kind == SignalKind.ADMIT_ACK and e.sender_ref == self.identity.user_ref for e in history
        ):
            self._acked = True
        for envelope in history:
            if envelope.sender_ref == self.identity.user_ref:
                await self._recover_own(envelope)
            elif envelope.kind == SignalKind.DECLINE_PATIENT and not self.identity.is_provider:
                # Declines answered earlier joins; this lobby is a new one.
                self._seen.add(envelope.id)
            else:
                await self.handle(envelope)

    async def _recover_own(self, envelope: SignalEnvelope) -> None:
        # Our own earlier decisions, from before a reconnect.
        if envelope.id in self._seen:
            return
        self._seen.add(envelope.id)
        patient_ref = envelope.payload.get("patient_ref", self.session.patient_ref)
        if envelope.kind == SignalKind.ADMIT_PATIENT and self.identity.is_provider:
            self._declined.discard(patient_ref)
            await self._mark_admitted(patient_ref)
        elif envelope.kind == SignalKind.DECLINE_PATIENT and self.identity.is_provider:
            self._declined.add(patient_ref)
            self._waiting.pop(patient_ref, None)

    async def handle(self, envelope: SignalEnvelope) -> None:
        """Apply a foreign lobby envelope at most once."""
        if envelope.sender_ref == self.identity.user_ref:
            return
        if envelope.id in self._seen:
            self.lifecycle.metrics.record_duplicate()
            return
        self._seen.add(envelope.id)
        self.lifecycle.metrics.record_envelope_applied()

        if self.identity.is_provider:
            await self._handle_as_provider(envelope)
        else:
            await self._handle_as_patient(envelope)

    async def _handle_as_provider(self, envelope: SignalEnvelope) -> None:
        patient_ref = envelope.sender_ref
        if patient_ref != self.session.patient_ref:
            logger.warning(
                "Ignoring lobby envelope from a non-participant",
                extra={"session_ref": self.session.id, "sender_ref": patient_ref},
            )
            return

        if envelope.kind == SignalKind.JOIN_LOBBY:
            if patient_ref in self._admitted:
                logger.info("Admitted patient rejoined", extra={"patient_ref": patient_ref})
                return
            self._declined.discard(patient_ref)
            current = self._waiting.get(patient_ref)
            if current is not None and current.since >= envelope.created_at:
                return
            entry = WaitingPatient(
                patient_ref=patient_ref,
                display_name=envelope.payload.get("display_name", ""),
                since=envelope.created_at,
            )
            self._waiting[patient_ref] = entry
            logger.info(
                "Patient waiting",
                extra={"session_ref": self.session.id, "patient_ref": patient_ref},
            )
            self.events.emit(PatientWaiting(patient_ref, entry.display_name, entry.since))

        elif envelope.kind == SignalKind.LEAVE_LOBBY:
            if self._waiting.pop(patient_ref, None) is not None:
                logger.info("Patient left lobby", extra={"patient_ref": patient_ref})
                self.events.emit(PatientLeftLobby(patient_ref))

        elif envelope.kind == SignalKind.ADMIT_ACK:
            self._waiting.pop(patient_ref, None)
            self.events.emit(AdmissionAcknowledged(patient_ref))

    async def _handle_as_patient(self, envelope: SignalEnvelope) -> None:
        if envelope.sender_ref != self.session.provider_ref:
            return
        addressed_to = envelope.payload.get("patient_ref", self.session.patient_ref)
        if addressed_to != self.identity.user_ref:
            return

        if envelope.kind == SignalKind.ADMIT_PATIENT:
            if self._admission.done():
                return
            self._admission.set_result(None)
            logger.info("Admitted to session", extra={"session_ref": self.session.id})
            await self.lifecycle.activate()
            self.events.emit(PatientAdmitted(self.identity.user_ref))
            if self.config.send_admit_ack and not self._acked:
                self._acked = True
                await self.publisher.publish(SignalKind.ADMIT_ACK, {"patient_ref": self.identity.user_ref})
            if self.on_admitted is not None:
                await self.on_admitted(self.identity.user_ref)

        elif envelope.kind == SignalKind.DECLINE_PATIENT:
            if self._admission.done():
                return
            reason = envelope.payload.get("reason", "")
            self._fail_admission(PermissionDeniedError("join consultation", "patient"))
            logger.info("Admission declined", extra={"session_ref": self.session.id, "reason": reason})
            self.events.emit(AdmissionDeclined(self.identity.user_ref, reason))

    async def announce(self, display_name: str | None = None) -> SignalEnvelope | None:
        """Patient: publish ``join-lobby`` unless admission already happened."""
        if self.identity.is_provider:
            raise PermissionDeniedError("join lobby", self.identity.role.value)
        if self._admission.done():
            return None
        name = display_name if display_name is not None else self.identity.display_name
        return await self.publisher.publish(SignalKind.JOIN_LOBBY, {"display_name": name})

    async def admit(self, patient_ref: str | None = None) -> None:
        """Provider: admit the waiting patient.

        Raises:
            PermissionDeniedError: If called by a patient
            InvalidStateError: If the patient was already declined
        """
        if not self.identity.is_provider:
            raise PermissionDeniedError("admit patient", self.identity.role.value)
        patient_ref = patient_ref or self.session.patient_ref
        if patient_ref != self.session.patient_ref:
            raise PermissionDeniedError("admit a patient outside this session", self.identity.role.value)
        if patient_ref in self._admitted:
            return
        if patient_ref in self._declined:
            raise InvalidStateError("Patient was already declined", {"patient_ref": patient_ref})

        envelope = await self.publisher.publish(SignalKind.ADMIT_PATIENT, {"patient_ref": patient_ref})
        self._seen.add(envelope.id)
        logger.info("Patient admitted", extra={"session_ref": self.session.id, "patient_ref": patient_ref})
        await self._mark_admitted(patient_ref)

    async def _mark_admitted(self, patient_ref: str) -> None:
        if patient_ref in self._admitted:
            return
        self._admitted.add(patient_ref)
        if patient_ref in self._waiting:
            self._waiting[patient_ref].admitted = True
        self.lifecycle.metrics.record_admitted()
        self.events.emit(PatientAdmitted(patient_ref))
        if self.on_admitted is not None:
            await self.on_admitted(patient_ref)

    async def decline(self, patient_ref: str | None = None, reason: str = "") -> None:
        """Provider: refuse the waiting patient.

        Raises:
            PermissionDeniedError: If called by a patient
            InvalidStateError: If the patient was already admitted
        """
        if not self.identity.is_provider:
            raise PermissionDeniedError("decline patient", self.identity.role.value)
        patient_ref = patient_ref or self.session.patient_ref
        if patient_ref in self._admitted:
            raise InvalidStateError("Patient was already admitted", {"patient_ref": patient_ref})
        if patient_ref in self._declined:
            return

        await self.publisher.publish(
            SignalKind.DECLINE_PATIENT, {"patient_ref": patient_ref, "reason": reason}
        )
        self._declined.add(patient_ref)
        self._waiting.pop(patient_ref, None)
        logger.info("Patient declined", extra={"session_ref": self.session.id, "patient_ref": patient_ref})
        self.events.emit(AdmissionDeclined(patient_ref, reason))

    async def leave(self) -> None:
        """Patient: leave the waiting room before admission."""
        if self.identity.is_provider or self._admission.done():
            return
        await self.publisher.publish(SignalKind.LEAVE_LOBBY, {"patient_ref": self.identity.user_ref})
        self._fail_admission(InvalidStateError("Left the waiting room"))

    def close(self) -> None:
        """Fail a pending admission wait once the session is torn down."""
        self._fail_admission(InvalidStateError("Session closed before admission"))

    def _fail_admission(self, error: Exception) -> None:
        if self._admission.done():
            return
        self._admission.set_exception(error)
        # Retrieved so an unobserved failure is not reported as never retrieved.
        self._admission.exception()

    async def wait_for_admission(self) -> None:
        """Patient: wait until admitted.

        Raises:
            PermissionDeniedError: If the provider declined
            AdmissionTimeoutError: If ``admission_timeout_s`` is set and expires
            InvalidStateError: If the patient left the waiting room
        """
        timeout = self.config.admission_timeout_s
        try:
            await asyncio.wait_for(asyncio.shield(self._admission), timeout)
        except TimeoutError as e:
            raise AdmissionTimeoutError(self.session.id, timeout or 0.0) from e
