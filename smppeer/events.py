import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Union

from .errors import ErrorKind, SMPPeerError

"""
events.py — the small notification surface `SMPPeer` exposes.

Four kinds, each with a fixed callback signature:
    "connected"     () -> None                        registered with the peer server
    "disconnected"  () -> None                        peer server connection closed
    "error"         (message: str) -> None            peer server reported an error
    "incoming"      (remote_peer_id: str, result: bool) -> None
                                                      an inbound SMP session finished

Each kind keeps an ordered list of subscribers, so one `on()` call behaves
like a single callback slot and more calls simply fan out.
"""

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SERVER_CONNECTED = "connected"
    SERVER_DISCONNECTED = "disconnected"
    ERROR = "error"
    INCOMING_SMP = "incoming"


Callback = Callable[..., Any]


class EventDispatcher:
    """Registers and invokes callbacks per `EventKind`."""

    def __init__(self) -> None:
        self._subscribers: Dict[EventKind, List[Callback]] = {kind: [] for kind in EventKind}

    @staticmethod
    def resolve(event: Union[str, EventKind]) -> EventKind:
        """Map an event name onto `EventKind`, or raise EVENT_UNSUPPORTED."""
        try:
            return EventKind(event)
        except ValueError:
            raise SMPPeerError(ErrorKind.EVENT_UNSUPPORTED, f"event unsupported: {event}") from None

    def on(self, event: Union[str, EventKind], cb: Callback) -> None:
        kind = self.resolve(event)
        subs = self._subscribers[kind]
        if cb not in subs:
            subs.append(cb)

    def off(self, event: Union[str, EventKind], cb: Callback) -> None:
        kind = self.resolve(event)
        subs = self._subscribers[kind]
        if cb in subs:
            subs.remove(cb)

    def subscribers(self, event: Union[str, EventKind]) -> List[Callback]:
        return list(self._subscribers[self.resolve(event)])

    def emit(self, kind: EventKind, *args: Any) -> None:
        """
        Call every subscriber of `kind` in registration order. A subscriber
        that raises is logged and does not stop the others.
        """
        for cb in list(self._subscribers[kind]):
            try:
                cb(*args)
            except Exception:
                logger.exception("callback for event %r raised", kind.value)
