"""Peer-to-peer media transport adapters."""

from consultation.peer.base import PeerLink, PeerLinkFactory, PeerObserver

__all__ = ["PeerLink", "PeerLinkFactory", "PeerObserver"]
