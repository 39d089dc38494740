"""
crypto.py — tiny HMAC-SHA256 helpers for envelope signatures.

Why this exists:
- Keep the MAC bits in one place so the rest of the code can call
  `hmac_sign/hmac_verify` without touching `cryptography` directly.
- Use URL-safe Base64 without '=' padding so values drop cleanly into JSON.

Notes:
- Verification goes through `HMAC.verify()`, which compares in constant time.
- Functions return/accept bytes for raw data and str for Base64url strings.
"""

import base64
import json
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

KEY_SIZE = 32  # bytes of randomness in a generated key

# -----------------------------
# Base64 URL helpers (no padding)
# -----------------------------

def b64url_encode(data: bytes) -> str:
    """URL-safe Base64 without '=' padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode our URL-safe, no-padding Base64 back to bytes."""
    # Add the minimal padding back so Python's decoder is happy.
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len)


# -------------------------
# HMAC signing & verification
# -------------------------

def hmac_sign(key: bytes, data: bytes) -> str:
    """HMAC-SHA256 over `data`. Returns the full-length tag as Base64url."""
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    return b64url_encode(h.finalize())


def hmac_verify(key: bytes, data: bytes, sig_b64: str) -> bool:
    """
    Check a Base64url tag produced by `hmac_sign()`.
    Returns False on any mismatch or malformed tag.
    """
    try:
        tag = b64url_decode(sig_b64)
    except (ValueError, TypeError):
        return False
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    try:
        h.verify(tag)
        return True
    except InvalidSignature:
        return False


def canonical_json_bytes(obj: dict) -> bytes:
    """
    Canonical JSON: sort keys and remove whitespace variation.
    This makes signatures stable across platforms and Python versions.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def generate_key() -> str:
    """A fresh random key, Base64url-encoded, ready for SMPPEER_HMAC_KEY."""
    return b64url_encode(os.urandom(KEY_SIZE))
