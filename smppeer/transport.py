from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .config import PeerServerConfig


class DataConnection(ABC):
    """One logical, ordered, reliable byte-message channel to a remote peer."""

    peer: str  # remote peer id

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Send one frame to the remote end."""
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> Optional[bytes]:
        """Next frame in arrival order; None once the connection is closed."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


ConnectionCallback = Callable[[DataConnection], None]
DisconnectedCallback = Callable[[], None]
ErrorCallback = Callable[[str], None]


class PeerLink(ABC):
    """
    A registration with a peer (discovery) server plus the ability to open
    data connections to other registered peers.
    """

    @abstractmethod
    async def open(self) -> str:
        """Register with the server; return the id the server confirmed."""
        raise NotImplementedError

    @abstractmethod
    async def connect(self, remote_peer_id: str) -> DataConnection:
        """Open a data connection to a peer; returns once it is ready."""
        raise NotImplementedError

    @abstractmethod
    def disconnect(self) -> None:
        """Close the server connection. `disconnected` is reported asynchronously."""
        raise NotImplementedError

    @abstractmethod
    def on_connection(self, cb: ConnectionCallback) -> None:
        """Called with each inbound data connection once it is ready."""
        raise NotImplementedError

    @abstractmethod
    def on_disconnected(self, cb: DisconnectedCallback) -> None:
        raise NotImplementedError

    @abstractmethod
    def on_error(self, cb: ErrorCallback) -> None:
        raise NotImplementedError


# (requested id, config) -> link, e.g. StreamPeerLink
LinkFactory = Callable[[Optional[str], PeerServerConfig], PeerLink]
