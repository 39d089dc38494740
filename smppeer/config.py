import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

"""
config.py — where the peer server lives and how chatty we are.

Defaults point at a local peer server (`python -m smppeer.run_node --mode server`).
Every field can be overridden from the environment with `PeerServerConfig.from_env()`:

    SMPPEER_HOST, SMPPEER_PORT, SMPPEER_PATH, SMPPEER_SECURE,
    SMPPEER_DEBUG, SMPPEER_HMAC_KEY

Set SMPPEER_HMAC_KEY on ALL processes (server + peers) to turn on envelope signatures.
"""

DEFAULT_TIMEOUT_MS = 30000  # 30 seconds

_TRUTHY = {"1", "true", "yes", "on"}

# peerjs-style verbosity: 0 = nothing, 1 = errors, 2 = + warnings, 3 = everything.
_DEBUG_LEVELS = {
    0: logging.CRITICAL + 10,
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.DEBUG,
}


@dataclass(frozen=True)
class PeerServerConfig:
    """Connection details for the peer (discovery) server."""
    host: str = "127.0.0.1"
    port: int = 9000
    path: str = "/smp"
    secure: bool = False
    debug: Optional[int] = None
    auth_key: Optional[str] = None  # shared HMAC key; None disables signatures

    def auth_key_bytes(self) -> Optional[bytes]:
        if not self.auth_key:
            return None
        return self.auth_key.encode("utf-8")

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional["PeerServerConfig"] = None,
    ) -> "PeerServerConfig":
        """
        Build a config from SMPPEER_* variables, falling back to `base`
        (or the defaults) for anything not set.
        """
        env = os.environ if environ is None else environ
        cfg = base or DEFAULT_PEER_SERVER_CONFIG
        changes = {}
        if "SMPPEER_HOST" in env:
            changes["host"] = env["SMPPEER_HOST"]
        if "SMPPEER_PORT" in env:
            changes["port"] = int(env["SMPPEER_PORT"])
        if "SMPPEER_PATH" in env:
            changes["path"] = env["SMPPEER_PATH"]
        if "SMPPEER_SECURE" in env:
            changes["secure"] = env["SMPPEER_SECURE"].strip().lower() in _TRUTHY
        if "SMPPEER_DEBUG" in env:
            changes["debug"] = int(env["SMPPEER_DEBUG"])
        if env.get("SMPPEER_HMAC_KEY"):
            changes["auth_key"] = env["SMPPEER_HMAC_KEY"]
        return replace(cfg, **changes)


DEFAULT_PEER_SERVER_CONFIG = PeerServerConfig(debug=3)


def log_level_for(debug: int) -> int:
    """Translate a 0-3 verbosity into a `logging` level (clamped)."""
    return _DEBUG_LEVELS[max(0, min(3, int(debug)))]


def configure_logging(debug: Optional[int]) -> None:
    """Apply the verbosity to the whole `smppeer` logger tree. None leaves it alone."""
    if debug is None:
        return
    logging.getLogger("smppeer").setLevel(log_level_for(debug))
