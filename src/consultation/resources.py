"""Scoped ownership of a participant's session resources.

Everything a participant holds for a session (local media, the peer link,
a wake lock and every channel subscription) is registered here and released
in a fixed order: media tracks, peer link, wake lock, subscriptions.
Release is idempotent and a failing step never prevents the later ones.
"""

import logging
from abc import ABC, abstractmethod
from types import TracebackType

from consultation.errors import InvalidStateError, MediaAccessDeniedError
from consultation.media import LocalMedia, MediaDevices, acquire_local_media
from consultation.models import Modality
from consultation.peer.base import PeerLink
from consultation.transport.base import Subscription

logger = logging.getLogger(__name__)


class WakeLock(ABC):
    """Keeps the device awake during a call."""

    @abstractmethod
    async def acquire(self) -> None: ...

    @abstractmethod
    async def release(self) -> None: ...


class NullWakeLock(WakeLock):
    """Wake lock for hosts without one."""

    async def acquire(self) -> None:
        return None

    async def release(self) -> None:
        return None


class ResourceManager:
    """Owns and releases one participant's resources for one session."""

    def __init__(self, session_ref: str, wake_lock: WakeLock | None = None) -> None:
        self.session_ref = session_ref
        self.media: LocalMedia | None = None
        self.peer: PeerLink | None = None
        self.wake_lock = wake_lock or NullWakeLock()
        self.subscriptions: list[Subscription] = []
        self._wake_lock_held = False
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def has_media(self) -> bool:
        return self.media is not None

    async def __aenter__(self) -> "ResourceManager":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.release()

    def _ensure_open(self, action: str) -> None:
        if self._released:
            raise InvalidStateError(
                f"Cannot {action} after resources were released",
                {"session_ref": self.session_ref},
            )

    async def acquire_media(
        self,
        devices: MediaDevices,
        modality: Modality,
        allow_degraded: bool = True,
    ) -> list[MediaAccessDeniedError]:
        """Acquire local media once; later calls return no new notices.

        Returns:
            Device denials that acquisition degraded around
        """
        self._ensure_open("acquire media")
        if self.media is not None:
            return []
        media, notices = await acquire_local_media(devices, modality, allow_degraded)
        if self._released:
            media.stop()
            raise InvalidStateError("Resources released during media acquisition")
        self.media = media
        return notices

    async def attach_peer(self, peer: PeerLink) -> None:
        """Make ``peer`` the live link, closing any previous one."""
        self._ensure_open("attach a peer link")
        previous, self.peer = self.peer, peer
        if previous is not None and previous is not peer:
            await previous.close()
            logger.info("Replaced peer link", extra={"session_ref": self.session_ref})

    async def acquire_wake_lock(self) -> None:
        self._ensure_open("acquire the wake lock")
        if self._wake_lock_held:
            return
        await self.wake_lock.acquire()
        self._wake_lock_held = True

    async def track(self, subscription: Subscription) -> Subscription:
        """Take ownership of a subscription; closes it at once if already released."""
        if self._released:
            await subscription.close()
            return subscription
        self.subscriptions.append(subscription)
        return subscription

    def set_audio_enabled(self, enabled: bool) -> bool:
        return self.media is not None and self.media.set_audio_enabled(enabled)

    def set_video_enabled(self, enabled: bool) -> bool:
        return self.media is not None and self.media.set_video_enabled(enabled)

    async def release(self) -> None:
        """Release everything. Safe to call any number of times."""
        if self._released:
            return
        self._released = True

        if self.media is not None:
            try:
                self.media.stop()
            except Exception as e:
                logger.error(f"Failed to stop media tracks: {e}", extra={"session_ref": self.session_ref})
            self.media = None

        if self.peer is not None:
            try:
                await self.peer.close()
            except Exception as e:
                logger.error(f"Failed to close peer link: {e}", extra={"session_ref": self.session_ref})
            self.peer = None

        if self._wake_lock_held:
            try:
                await self.wake_lock.release()
            except Exception as e:
                logger.error(f"Failed to release wake lock: {e}", extra={"session_ref": self.session_ref})
            self._wake_lock_held = False

        subscriptions, self.subscriptions = self.subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.close()
            except Exception as e:
                logger.error(
                    f"Failed to close subscription {subscription.name}: {e}",
                    extra={"session_ref": self.session_ref},
                )

        logger.info("Session resources released", extra={"session_ref": self.session_ref})
