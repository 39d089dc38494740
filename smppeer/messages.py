import time
import uuid
from typing import Any, Dict, Optional

from . import crypto

"""
messages.py — peer-server envelopes and their signatures.

What this module does:
- Builds the standard envelope every frame between a peer and the peer server uses.
- Signs/verifies envelopes with HMAC-SHA256 when a shared key is configured.

Flow between a peer and the server:
    REGISTER   -> REGISTERED | ERROR        (join, get an id)
    CONNECT    -> OPEN | ERROR              (open a data connection, relayed)
    DATA / CLOSE                            (relayed along an open connection)
    LEAVE                                   (graceful goodbye)
"""

VERSION = "1.0"

# -----------------------
# Public message type tags
# -----------------------
REGISTER = "REGISTER"
REGISTERED = "REGISTERED"
LEAVE = "LEAVE"
CONNECT = "CONNECT"
OPEN = "OPEN"
DATA = "DATA"
CLOSE = "CLOSE"
ERROR = "ERROR"

# Frames the server forwards to `to` instead of handling itself.
RELAYED = (CONNECT, OPEN, DATA, CLOSE)

# Error codes carried in ERROR bodies.
ERR_ID_TAKEN = "ID_TAKEN"
ERR_INVALID_PATH = "INVALID_PATH"
ERR_PEER_UNAVAILABLE = "PEER_UNAVAILABLE"
ERR_NOT_REGISTERED = "NOT_REGISTERED"
ERR_CONN_EXISTS = "CONN_EXISTS"


def now_ms() -> int:
    """Current time in milliseconds (used for timestamp_ms)."""
    return int(time.time() * 1000)


def new_envelope(
    msg_type: str,
    from_id: Optional[str],
    to_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a fresh envelope with a unique msg_id and a random nonce.
    'body' is an empty dict ready to fill; 'sig' stays None until signed.
    """
    return {
        "version": VERSION,
        "msg_type": msg_type,
        "msg_id": str(uuid.uuid4()),
        "timestamp_ms": now_ms(),
        "from": from_id,
        "to": to_id,
        "nonce": str(uuid.uuid4()),
        "body": {},
        "sig": None,
    }


def error_envelope(to_id: Optional[str], code: str, detail: str = "", conn_id: Optional[str] = None) -> Dict[str, Any]:
    env = new_envelope(ERROR, from_id=None, to_id=to_id)
    env["body"] = {"error": code, "detail": detail}
    if conn_id is not None:
        env["body"]["conn_id"] = conn_id
    return env


def canonical_bytes(env: Dict[str, Any]) -> bytes:
    """Deterministic JSON of the envelope without its own 'sig'."""
    return crypto.canonical_json_bytes({k: v for k, v in env.items() if k != "sig"})


def sign_envelope(env: Dict[str, Any], key: Optional[bytes]) -> Dict[str, Any]:
    """Store an HMAC over the whole envelope in env['sig']. No key, no signature."""
    if key is None:
        env["sig"] = None
        return env
    env["sig"] = crypto.hmac_sign(key, canonical_bytes(env))
    return env


def verify_envelope(env: Dict[str, Any], key: Optional[bytes]) -> bool:
    """
    True when `env` carries a valid signature for `key`.
    Without a key every envelope is accepted.
    """
    if key is None:
        return True
    sig = env.get("sig")
    if not isinstance(sig, str) or not sig:
        return False
    return crypto.hmac_verify(key, canonical_bytes(env), sig)


def encode_data(data: bytes) -> str:
    return crypto.b64url_encode(data)


def decode_data(data: str) -> bytes:
    return crypto.b64url_decode(data)
