"""aiortc-backed peer link and media devices.

aiortc gathers ICE candidates while applying the local description and
embeds them in the SDP, so ``AiortcPeerLink`` never trickles local
candidates; remote trickled candidates are still applied.
"""

import asyncio
import logging
from collections.abc import Sequence
from fractions import Fraction
from typing import Any

import av
from av.error import FFmpegError
from aiortc import (
    AudioStreamTrack,
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
    VideoStreamTrack,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.exceptions import InvalidAccessError
from aiortc.exceptions import InvalidStateError as RTCInvalidStateError
from aiortc.sdp import candidate_from_sdp

from consultation.config import IceServerConfig, MediaConfig
from consultation.errors import MediaAccessDeniedError, PeerConnectionError
from consultation.media import LocalMedia, LocalTrack, MediaDevices
from consultation.models import IceCandidate, SessionDescription
from consultation.peer.base import PeerLink

logger = logging.getLogger(__name__)

_NEGOTIATION_ERRORS = (ValueError, RuntimeError, InvalidAccessError, RTCInvalidStateError)

# Black in limited-range YUV.
_BLACK_Y = 16
_BLACK_UV = 128


class GatedTrack(MediaStreamTrack):
    """Relays a source track, substituting silence or black frames while disabled."""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self) -> Any:
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence_like(frame)
        return _black_like(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
    silent = av.AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base or Fraction(1, frame.sample_rate)
    return silent


def _black_like(frame: av.VideoFrame) -> av.VideoFrame:
    black = av.VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    for index, plane in enumerate(black.planes):
        value = _BLACK_Y if index == 0 else _BLACK_UV
        plane.update(bytes([value]) * plane.buffer_size)
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class AiortcMediaDevices(MediaDevices):
    """Capture devices opened through FFmpeg, or synthetic tracks when unconfigured."""

    def __init__(self, config: MediaConfig) -> None:
        self.config = config

    async def open_audio(self) -> LocalTrack:
        if not self.config.audio_device:
            return GatedTrack(AudioStreamTrack())
        track = self._open_player("microphone", self.config.audio_device, self.config.audio_format, {}).audio
        if track is None:
            raise MediaAccessDeniedError("microphone", f"no audio stream on {self.config.audio_device}")
        return GatedTrack(track)

    async def open_video(self) -> LocalTrack:
        if not self.config.video_device:
            return GatedTrack(VideoStreamTrack())
        player = self._open_player(
            "camera",
            self.config.video_device,
            self.config.video_format,
            {"video_size": self.config.video_size},
        )
        if player.video is None:
            raise MediaAccessDeniedError("camera", f"no video stream on {self.config.video_device}")
        return GatedTrack(player.video)

    def _open_player(
        self, device: str, source: str, fmt: str | None, options: dict[str, str]
    ) -> MediaPlayer:
        try:
            return MediaPlayer(source, format=fmt, options=options)
        except (OSError, FFmpegError) as e:
            logger.warning(f"Failed to open {device} {source}: {e}")
            raise MediaAccessDeniedError(device, str(e)) from e


class AiortcPeerLink(PeerLink):
    """PeerLink over ``aiortc.RTCPeerConnection``."""

    def __init__(self, ice_servers: list[IceServerConfig]) -> None:
        super().__init__()
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
                for server in ice_servers
            ]
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._closed = False
        self._tasks: set[asyncio.Task[Any]] = set()

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            logger.info("Remote track received", extra={"kind": track.kind})
            if self._observer is not None:
                self._spawn(self._observer.on_remote_track(track, track.kind))

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            state = self._pc.connectionState
            logger.info("Peer connection state changed", extra={"state": state})
            if self._observer is not None:
                await self._observer.on_connection_state(state)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    async def add_local_media(self, media: LocalMedia, kinds: Sequence[str]) -> None:
        tracks = {track.kind: track for track in media.tracks}
        for kind in kinds:
            if kind in tracks:
                self._pc.addTrack(tracks[kind])
            else:
                self._pc.addTransceiver(kind, direction="recvonly")

    async def create_offer(self) -> SessionDescription:
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except _NEGOTIATION_ERRORS as e:
            raise PeerConnectionError(f"Failed to create offer: {e}") from e
        local = self._pc.localDescription
        return SessionDescription(type="offer", sdp=local.sdp)

    async def create_answer(self) -> SessionDescription:
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except _NEGOTIATION_ERRORS as e:
            raise PeerConnectionError(f"Failed to create answer: {e}") from e
        local = self._pc.localDescription
        return SessionDescription(type="answer", sdp=local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except _NEGOTIATION_ERRORS as e:
            raise PeerConnectionError(
                f"Remote {description.type} rejected: {e}", {"type": description.type}
            ) from e

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if not sdp:
            # End-of-candidates marker.
            return
        if sdp.startswith("candidate:"):
            sdp = sdp.split(":", 1)[1]
        try:
            parsed = candidate_from_sdp(sdp)
        except (ValueError, IndexError) as e:
            logger.warning(f"Ignoring malformed ICE candidate: {e}")
            return
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(parsed)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        await self._pc.close()
        logger.info("Peer connection closed")
