"""Test doubles for peer links, capture devices and wake locks.

``FakePeerLink`` models just enough of a WebRTC connection for the relay:
descriptions must be applied in a valid order, candidates need a remote
description, and with ``auto_connect`` the link reports ``connected`` (and
mirrors a remote track per local kind) once both descriptions are in place.
"""

import itertools
from collections.abc import Sequence
from typing import Any

from consultation.errors import MediaAccessDeniedError, PeerConnectionError
from consultation.media import LocalMedia, MediaDevices
from consultation.models import IceCandidate, SessionDescription
from consultation.peer.base import PeerLink
from consultation.resources import WakeLock

_link_ids = itertools.count(1)


class FakeTrack:
    """Local or remote track stand-in."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeMediaDevices(MediaDevices):
    """Capture devices that can be told to refuse access."""

    def __init__(self, deny_audio: bool = False, deny_video: bool = False) -> None:
        self.deny_audio = deny_audio
        self.deny_video = deny_video
        self.opened: list[FakeTrack] = []

    async def open_audio(self) -> FakeTrack:
        if self.deny_audio:
            raise MediaAccessDeniedError("microphone", "permission denied")
        track = FakeTrack("audio")
        self.opened.append(track)
        return track

    async def open_video(self) -> FakeTrack:
        if self.deny_video:
            raise MediaAccessDeniedError("camera", "permission denied")
        track = FakeTrack("video")
        self.opened.append(track)
        return track


class FakePeerLink(PeerLink):
    """Scriptable PeerLink that records every call."""

    def __init__(
        self,
        auto_connect: bool = True,
        candidates: Sequence[str] = (),
        fail_remote_description: bool = False,
    ) -> None:
        super().__init__()
        self.link_id = next(_link_ids)
        self.auto_connect = auto_connect
        self.local_candidates = list(candidates)
        self.fail_remote_description = fail_remote_description

        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.remote_descriptions: list[SessionDescription] = []
        self.applied_candidates: list[IceCandidate] = []
        self.media_kinds: list[str] = []
        self.sent_tracks: list[Any] = []
        self.closed = False
        self._state = "new"

    @property
    def connection_state(self) -> str:
        return self._state

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    async def add_local_media(self, media: LocalMedia, kinds: Sequence[str]) -> None:
        self.media_kinds = list(kinds)
        self.sent_tracks = list(media.tracks)

    async def create_offer(self) -> SessionDescription:
        self.local_description = SessionDescription(type="offer", sdp=f"offer-{self.link_id}")
        await self._emit_candidates()
        return self.local_description

    async def create_answer(self) -> SessionDescription:
        if self.remote_description is None:
            raise PeerConnectionError("Cannot answer without a remote offer")
        self.local_description = SessionDescription(type="answer", sdp=f"answer-{self.link_id}")
        await self._emit_candidates()
        await self._maybe_connect()
        return self.local_description

    async def set_remote_description(self, description: SessionDescription) -> None:
        if self.fail_remote_description:
            raise PeerConnectionError("Remote description rejected", {"type": description.type})
        self.remote_description = description
        self.remote_descriptions.append(description)
        if description.type == "answer":
            await self._maybe_connect()

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if self.remote_description is None:
            raise PeerConnectionError("Candidate before remote description")
        self.applied_candidates.append(candidate)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._state = "closed"

    async def emit_state(self, state: str) -> None:
        self._state = state
        if self._observer is not None:
            await self._observer.on_connection_state(state)

    async def _emit_candidates(self) -> None:
        if self._observer is None:
            return
        for index, candidate in enumerate(self.local_candidates):
            await self._observer.on_local_candidate(
                IceCandidate(candidate=candidate, sdp_mid="0", sdp_mline_index=index)
            )

    async def _maybe_connect(self) -> None:
        if not self.auto_connect or self.local_description is None or self.remote_description is None:
            return
        await self.emit_state("connected")
        if self._observer is not None:
            for kind in self.media_kinds:
                await self._observer.on_remote_track(FakeTrack(kind), kind)


class PeerFactory:
    """Peer link factory that keeps every link it created."""

    def __init__(self, **link_options: Any) -> None:
        self.link_options = link_options
        self.links: list[FakePeerLink] = []

    def __call__(self) -> FakePeerLink:
        link = FakePeerLink(**self.link_options)
        self.links.append(link)
        return link

    @property
    def last(self) -> FakePeerLink:
        return self.links[-1]


class FakeWakeLock(WakeLock):
    def __init__(self, fail_release: bool = False) -> None:
        self.fail_release = fail_release
        self.held = False
        self.acquire_count = 0
        self.release_count = 0

    async def acquire(self) -> None:
        self.acquire_count += 1
        self.held = True

    async def release(self) -> None:
        self.release_count += 1
        if self.fail_release:
            raise RuntimeError("wake lock release failed")
        self.held = False
