"""
smppeer — run the Socialist Millionaires' Protocol with peers found through a peer server.

- SMPPeer:        the session orchestrator (register, run_smp, incoming sessions, events)
- PeerServer:     the discovery + relay server peers register with
- StreamPeerLink: the default link from an SMPPeer to a PeerServer
- SMPPeerError:   the one error type; `err.kind` is an ErrorKind

Set SMPPEER_HMAC_KEY on ALL processes (server + peers) to sign every envelope.
"""

from .config import DEFAULT_PEER_SERVER_CONFIG, DEFAULT_TIMEOUT_MS, PeerServerConfig
from .engine import BytesCodec, MessageCodec, ProtocolEngine, SerializingCodec
from .errors import ErrorKind, SMPPeerError
from .events import EventDispatcher, EventKind
from .link import StreamDataConnection, StreamPeerLink
from .peer import RegistrationState, SMPPeer
from .server import PeerServer
from .session import ProtocolSession
from .transport import DataConnection, PeerLink

__all__ = [
    "SMPPeer",
    "RegistrationState",
    "PeerServerConfig",
    "DEFAULT_PEER_SERVER_CONFIG",
    "DEFAULT_TIMEOUT_MS",
    "SMPPeerError",
    "ErrorKind",
    "EventKind",
    "EventDispatcher",
    "ProtocolEngine",
    "MessageCodec",
    "BytesCodec",
    "SerializingCodec",
    "ProtocolSession",
    "DataConnection",
    "PeerLink",
    "StreamPeerLink",
    "StreamDataConnection",
    "PeerServer",
]

__version__ = "0.1.0"
