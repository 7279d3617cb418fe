"""Peer transport abstraction.

A ``PeerLink`` wraps one peer-to-peer media connection. The signaling relay
drives it (descriptions, candidates) and observes it through a
``PeerObserver``. At most one link is live per participant per session.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from consultation.media import LocalMedia
from consultation.models import IceCandidate, SessionDescription


class PeerObserver(Protocol):
    async def on_local_candidate(self, candidate: IceCandidate) -> None: ...

    async def on_remote_track(self, track: Any, kind: str) -> None: ...

    async def on_connection_state(self, state: str) -> None: ...


class PeerLink(ABC):
    """One peer-to-peer media connection.

    Connection states follow the WebRTC names: new, connecting, connected,
    disconnected, failed, closed.
    """

    def __init__(self) -> None:
        self._observer: PeerObserver | None = None

    def bind(self, observer: PeerObserver) -> None:
        """Route candidate, track and state callbacks to ``observer``."""
        self._observer = observer

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """Current connection state."""

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        """Whether a remote description has been applied."""

    @abstractmethod
    async def add_local_media(self, media: LocalMedia, kinds: Sequence[str]) -> None:
        """Send local tracks; receive-only for any of ``kinds`` without a track."""

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Create an offer and apply it as the local description.

        Raises:
            PeerConnectionError: If negotiation fails
        """

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Create an answer to the applied offer and apply it locally.

        Raises:
            PeerConnectionError: If negotiation fails
        """

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the remote party's description.

        Raises:
            PeerConnectionError: If the description is rejected
        """

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote candidate. Requires a remote description."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection. Safe to call more than once."""


PeerLinkFactory = Callable[[], PeerLink]
