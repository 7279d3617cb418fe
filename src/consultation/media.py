"""Local media acquisition.

Acquisition degrades instead of failing where possible: a denied camera
leaves an audio-only participant, a denied microphone leaves a receive-only
one. Each degradation is reported as a recoverable notice.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Protocol

from consultation.errors import MediaAccessDeniedError
from consultation.models import Modality

logger = logging.getLogger(__name__)


class LocalTrack(Protocol):
    """A captured local track that can be muted and stopped."""

    kind: str
    enabled: bool

    def stop(self) -> None: ...


class MediaDevices(ABC):
    """Opens capture devices."""

    @abstractmethod
    async def open_audio(self) -> LocalTrack:
        """Open the microphone.

        Raises:
            MediaAccessDeniedError: If the device is unavailable or refused
        """

    @abstractmethod
    async def open_video(self) -> LocalTrack:
        """Open the camera.

        Raises:
            MediaAccessDeniedError: If the device is unavailable or refused
        """


def media_kinds(modality: Modality) -> tuple[str, ...]:
    """Track kinds a consultation of ``modality`` carries."""
    if modality == Modality.VIDEO:
        return ("audio", "video")
    if modality == Modality.AUDIO:
        return ("audio",)
    return ()


@dataclass
class LocalMedia:
    """Tracks acquired for one participant."""

    audio: LocalTrack | None = None
    video: LocalTrack | None = None

    @property
    def tracks(self) -> list[LocalTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    @property
    def is_receive_only(self) -> bool:
        return not self.tracks

    def set_audio_enabled(self, enabled: bool) -> bool:
        """Mute or unmute. Returns False when there is no audio track."""
        if self.audio is None:
            return False
        self.audio.enabled = enabled
        return True

    def set_video_enabled(self, enabled: bool) -> bool:
        """Turn the camera on or off. Returns False when there is no video track."""
        if self.video is None:
            return False
        self.video.enabled = enabled
        return True

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


async def acquire_local_media(
    devices: MediaDevices,
    modality: Modality,
    allow_degraded: bool = True,
) -> tuple[LocalMedia, list[MediaAccessDeniedError]]:
    """Open the devices ``modality`` needs.

    Args:
        devices: Capture devices
        modality: Consultation modality; chat needs no media
        allow_degraded: Continue with fewer tracks when a device is denied

    Returns:
        The acquired media and the denials it degraded around

    Raises:
        MediaAccessDeniedError: If a device is denied and degradation is off
    """
    kinds = media_kinds(modality)
    media = LocalMedia()
    notices: list[MediaAccessDeniedError] = []

    if "video" in kinds:
        try:
            media.video = await devices.open_video()
        except MediaAccessDeniedError as e:
            if not allow_degraded:
                raise
            logger.warning("Camera unavailable, continuing audio-only", extra={"reason": str(e)})
            notices.append(e)

    if "audio" in kinds:
        try:
            media.audio = await devices.open_audio()
        except MediaAccessDeniedError as e:
            if not allow_degraded:
                media.stop()
                raise
            logger.warning("Microphone unavailable, continuing receive-only", extra={"reason": str(e)})
            notices.append(e)
            # Video without audio is not a usable consultation.
            media.stop()
            media.video = None

    logger.info(
        "Local media acquired",
        extra={
            "modality": modality.value,
            "audio": media.audio is not None,
            "video": media.video is not None,
        },
    )
    return media, notices
