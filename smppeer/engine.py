from __future__ import annotations

from typing import Any, Callable, Optional, Protocol as TypingProtocol


class ProtocolEngine(TypingProtocol):
    """
    The SMP state machine, seen from the outside.

    `transit(None)` on a fresh engine produces the initiator's first message.
    Every other call feeds one decoded message in and may hand one back.
    """
    def transit(self, msg: Optional[Any]) -> Optional[Any]: ...
    def is_finished(self) -> bool: ...
    def get_result(self) -> bool: ...


# secret -> fresh engine seeded with it
EngineFactory = Callable[[str], ProtocolEngine]


class MessageCodec(TypingProtocol):
    name: str
    def encode(self, msg: Any) -> bytes: ...
    def decode(self, data: bytes) -> Any: ...


class BytesCodec:
    """For engines whose messages already are bytes."""
    name = "bytes"

    def encode(self, msg: Any) -> bytes:
        if not isinstance(msg, (bytes, bytearray, memoryview)):
            raise TypeError(f"expected bytes-like message, got {type(msg).__name__}")
        return bytes(msg)

    def decode(self, data: bytes) -> Any:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"expected bytes-like frame, got {type(data).__name__}")
        return bytes(data)


class SerializingCodec:
    """
    For engine message types with `serialize()` and a `deserialize(bytes)`
    classmethod/staticmethod (TLV-style messages).
    """
    name = "serialize"

    def __init__(self, message_type: Any):
        self.message_type = message_type

    def encode(self, msg: Any) -> bytes:
        return bytes(msg.serialize())

    def decode(self, data: bytes) -> Any:
        return self.message_type.deserialize(data)
