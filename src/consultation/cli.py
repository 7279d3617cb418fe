"""Command-line consultation participant.

Joins one consultation as a provider or a patient over the shared Redis
signal channel, with aiortc media, and exposes the session controls as
slash commands. Anything else typed is sent as a chat message.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from consultation.config import ConsultationConfig
from consultation.coordinator import ConsultationCoordinator
from consultation.errors import ConsultationError
from consultation.events import (
    AdmissionAcknowledged,
    AdmissionDeclined,
    Connected,
    ErrorOccurred,
    MessageReceived,
    PatientAdmitted,
    PatientLeftLobby,
    PatientWaiting,
    RemoteStreamReceived,
    SessionEnded,
    StateChanged,
)
from consultation.models import Appointment, Identity, Modality, ParticipantRole
from consultation.peer.aiortc_peer import AiortcMediaDevices, AiortcPeerLink
from consultation.redis_connection import RedisConnection
from consultation.store.memory import (
    MemoryAppointmentDirectory,
    MemoryMessageStore,
    MemoryNotesStore,
    MemorySessionStore,
)
from consultation.store.redis_store import (
    RedisAppointmentDirectory,
    RedisMessageStore,
    RedisNotesStore,
    RedisSessionStore,
)
from consultation.transport.memory import MemorySignalChannel
from consultation.transport.redis_channel import RedisSignalChannel
from consultation.utils.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /admit           - Admit the waiting patient (provider)
  /decline [why]   - Decline the waiting patient (provider)
  /mute            - Toggle the microphone
  /camera          - Toggle the camera
  /end [notes]     - End the consultation for both sides
  /quit            - Leave without ending the consultation
  /help            - Show this help
"""


def format_event(event: Any) -> str | None:
    """One console line for an event, or None to stay quiet."""
    if isinstance(event, PatientWaiting):
        return f"[lobby] {event.display_name or event.patient_ref} is waiting (/admit or /decline)"
    if isinstance(event, PatientLeftLobby):
        return f"[lobby] {event.patient_ref} left the waiting room"
    if isinstance(event, PatientAdmitted):
        return f"[lobby] {event.patient_ref} admitted"
    if isinstance(event, AdmissionAcknowledged):
        return f"[lobby] {event.patient_ref} is joining"
    if isinstance(event, AdmissionDeclined):
        suffix = f": {event.reason}" if event.reason else ""
        return f"[lobby] admission declined{suffix}"
    if isinstance(event, Connected):
        return "[call] connected"
    if isinstance(event, RemoteStreamReceived):
        return f"[call] receiving remote {event.kind}"
    if isinstance(event, StateChanged):
        return f"[session] {event.old_state.value} -> {event.new_state.value}"
    if isinstance(event, MessageReceived) and event.path != "local":
        message = event.message
        return f"{message.sender_name or message.sender_role.value}: {message.content}"
    if isinstance(event, SessionEnded):
        who = "the other participant" if event.remote else "you"
        return f"[session] ended by {who} after {event.session.duration_seconds}s"
    if isinstance(event, ErrorOccurred):
        return f"[error] {event.error.message}"
    return None


class ParticipantConsole:
    """Reads commands from stdin and drives a coordinator."""

    def __init__(self, coordinator: ConsultationCoordinator) -> None:
        self.coordinator = coordinator
        self.running = True
        self.audio_enabled = True
        self.video_enabled = True

    def on_event(self, event: Any) -> None:
        line = format_event(event)
        if line is not None:
            print(line)
        if isinstance(event, SessionEnded):
            self.running = False

    async def handle_command(self, text: str) -> None:
        command, _, argument = text[1:].partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == "quit":
            self.running = False
        elif command == "help":
            print(HELP_TEXT)
        elif command == "admit":
            await self.coordinator.admit()
        elif command == "decline":
            await self.coordinator.decline(reason=argument)
        elif command == "mute":
            self.audio_enabled = not self.audio_enabled
            if self.coordinator.set_audio_enabled(self.audio_enabled):
                print("[call] microphone " + ("on" if self.audio_enabled else "muted"))
            else:
                print("[call] no microphone")
        elif command == "camera":
            self.video_enabled = not self.video_enabled
            if self.coordinator.set_video_enabled(self.video_enabled):
                print("[call] camera " + ("on" if self.video_enabled else "off"))
            else:
                print("[call] no camera")
        elif command == "end":
            await self.coordinator.end_session(notes=argument or None)
            self.running = False
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        print(HELP_TEXT)
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "")
            except EOFError:
                self.running = False
                break

            text = text.strip()
            if not text or not self.running:
                continue
            try:
                if text.startswith("/"):
                    await self.handle_command(text)
                else:
                    await self.coordinator.send_message(text)
            except (ConsultationError, ValueError) as e:
                print(f"[error] {e}")


async def run_participant(args: argparse.Namespace, config: ConsultationConfig) -> int:
    """Join one consultation and run the console until quit or end.

    Returns:
        Process exit code
    """
    identity = Identity(
        user_ref=args.user,
        display_name=args.name or args.user,
        role=ParticipantRole(args.role),
    )

    connection: RedisConnection | None = None
    if config.transport.backend == "redis":
        connection = RedisConnection(config.redis, config.retry)
        try:
            await connection.connect()
        except ConnectionError as e:
            logger.error(f"Cannot reach Redis: {e}")
            return 1
        appointments: Any = RedisAppointmentDirectory(connection)
        sessions: Any = RedisSessionStore(connection)
        messages: Any = RedisMessageStore(connection)
        notes: Any = RedisNotesStore(connection)
        channel: Any = RedisSignalChannel(connection, config.redis.signal_history_maxlen)
    else:
        logger.warning("Memory transport selected; only this process can join the session")
        appointments = MemoryAppointmentDirectory()
        sessions = MemorySessionStore()
        messages = MemoryMessageStore()
        notes = MemoryNotesStore()
        channel = MemorySignalChannel()

    if args.patient and args.provider:
        appointment = Appointment(
            id=args.appointment,
            patient_ref=args.patient,
            provider_ref=args.provider,
            modality=Modality(args.modality),
        )
        if isinstance(appointments, RedisAppointmentDirectory):
            await appointments.put_appointment(appointment)
        else:
            appointments.add(appointment)

    coordinator = ConsultationCoordinator(
        identity,
        appointments=appointments,
        sessions=sessions,
        messages=messages,
        notes=notes,
        channel=channel,
        media_devices=AiortcMediaDevices(config.media),
        peer_factory=lambda: AiortcPeerLink(config.signaling.ice_servers),
        config=config,
    )
    console = ParticipantConsole(coordinator)
    coordinator.event_stream.subscribe(console.on_event)

    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        console.running = False

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        session = await coordinator.join(args.appointment)
        print(f"Joined session {session.id} ({session.modality.value}) as {identity.role.value}")
        if not identity.is_provider:
            print("Waiting for the provider to admit you...")
        await console.input_loop()
        return 0
    except ConsultationError as e:
        logger.error(f"Consultation failed: {e.message}", extra={"code": e.code.value, "details": e.details})
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await coordinator.close()
        await channel.close()
        if connection is not None:
            await connection.disconnect()


def main() -> None:
    """Main entry point for the consultation participant CLI."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Join a telemedicine consultation from the terminal")
    parser.add_argument("--config", type=Path, default=Path("configs/consultation.yaml"), help="YAML configuration file")
    parser.add_argument("--role", choices=[r.value for r in ParticipantRole], required=True, help="Participant role")
    parser.add_argument("--user", required=True, help="Authenticated user id")
    parser.add_argument("--name", default=None, help="Display name (default: user id)")
    parser.add_argument("--appointment", required=True, help="Appointment id")
    parser.add_argument("--patient", default=None, help="Register the appointment with this patient id")
    parser.add_argument("--provider", default=None, help="Register the appointment with this provider id")
    parser.add_argument(
        "--modality",
        choices=[m.value for m in Modality],
        default=Modality.VIDEO.value,
        help="Modality used when registering the appointment",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    try:
        config = ConsultationConfig.from_yaml_with_defaults(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging("DEBUG" if args.verbose else config.log_level, json_format=config.log_format == "json")

    try:
        sys.exit(asyncio.run(run_participant(args, config)))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
