from enum import Enum

"""
errors.py — one exception type, tagged with what went wrong.

Callers match on `err.kind` instead of catching a family of subclasses:

    try:
        await peer.run_smp("bob")
    except SMPPeerError as err:
        if err.kind is ErrorKind.TIMEOUT:
            ...
"""


class ErrorKind(Enum):
    # Operation needs a successful registration with the peer server first.
    SERVER_UNCONNECTED = "server-unconnected"
    # The peer server misbehaved (wrong id handed back, rejected registration).
    SERVER_FAULT = "server-fault"
    # A session or registration did not finish in time.
    TIMEOUT = "timeout"
    # `on()`/`off()` called with an event name we don't know.
    EVENT_UNSUPPORTED = "event-unsupported"
    # The remote peer id is not registered with the peer server.
    PEER_UNAVAILABLE = "peer-unavailable"
    # The data connection closed before the state machine finished.
    CONNECTION_CLOSED = "connection-closed"
    # connect_to_peer_server() called while already registering/registered.
    ALREADY_CONNECTED = "already-connected"


class SMPPeerError(Exception):
    """The single error type raised by `SMPPeer` and its links."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        if self.message:
            return f"{self.kind.value}: {self.message}"
        return self.kind.value

    def __repr__(self) -> str:
        return f"SMPPeerError({self.kind.name}, {self.message!r})"
