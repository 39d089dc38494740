import logging

import pytest

from smppeer.config import (
    DEFAULT_PEER_SERVER_CONFIG,
    PeerServerConfig,
    configure_logging,
    log_level_for,
)


def test_defaults():
    cfg = PeerServerConfig()
    assert (cfg.host, cfg.port, cfg.path, cfg.secure) == ("127.0.0.1", 9000, "/smp", False)
    assert cfg.auth_key_bytes() is None
    assert DEFAULT_PEER_SERVER_CONFIG.debug == 3


def test_from_env_overrides():
    cfg = PeerServerConfig.from_env({
        "SMPPEER_HOST": "peers.example.org",
        "SMPPEER_PORT": "443",
        "SMPPEER_PATH": "/myapp",
        "SMPPEER_SECURE": "yes",
        "SMPPEER_DEBUG": "1",
        "SMPPEER_HMAC_KEY": "k",
    })
    assert cfg.host == "peers.example.org"
    assert cfg.port == 443
    assert cfg.path == "/myapp"
    assert cfg.secure is True
    assert cfg.debug == 1
    assert cfg.auth_key_bytes() == b"k"


def test_from_env_keeps_base_for_unset_values():
    base = PeerServerConfig(host="h", port=1, debug=None)
    cfg = PeerServerConfig.from_env({"SMPPEER_PORT": "2", "SMPPEER_HMAC_KEY": ""}, base=base)
    assert cfg == PeerServerConfig(host="h", port=2, debug=None)


def test_from_env_bad_port():
    with pytest.raises(ValueError):
        PeerServerConfig.from_env({"SMPPEER_PORT": "http"})


@pytest.mark.parametrize("debug, level", [
    (-1, logging.CRITICAL + 10),
    (0, logging.CRITICAL + 10),
    (1, logging.ERROR),
    (2, logging.WARNING),
    (3, logging.DEBUG),
    (9, logging.DEBUG),
])
def test_log_level_for(debug, level):
    assert log_level_for(debug) == level


def test_configure_logging():
    logger = logging.getLogger("smppeer")
    configure_logging(1)
    assert logger.level == logging.ERROR
    configure_logging(None)
    assert logger.level == logging.ERROR
