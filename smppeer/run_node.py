import argparse
import asyncio
import importlib
import logging
import os
import ssl
from dataclasses import replace
from typing import List, Optional

from .config import DEFAULT_TIMEOUT_MS, PeerServerConfig, configure_logging
from .engine import EngineFactory, MessageCodec
from .errors import SMPPeerError
from .peer import SMPPeer
from .server import PeerServer

"""
run_node.py — single entry point to run the peer server or an SMP peer.

What you can do here:
- Server:  the peer server that hands out ids and relays data connections
- Peer:    register, run SMP against some peers, and/or stay up answering
           incoming SMP requests

"""


# -------------------------
# Helpers
# -------------------------

def load_object(spec: str):
    """Import `package.module:attr` (attr may be dotted)."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise SystemExit(f"Expected 'module:attribute', got {spec!r}")
    obj = importlib.import_module(module_name)
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj


def parse_hostport(value: str) -> tuple:
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise SystemExit(f"Expected HOST:PORT, got {value!r}")
    return host, int(port)


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_server(
    host: str,
    port: int,
    path: str,
    auth_key: Optional[bytes],
    ssl_context: Optional[ssl.SSLContext],
) -> None:
    """Spin up the peer server and serve forever on host:port."""
    server = PeerServer(host, port, path=path, auth_key=auth_key, ssl_context=ssl_context)
    await server.start()
    print(f"Peer server listening on {host}:{server.port}{path}")
    await server.serve_forever()


async def run_peer(
    secret: str,
    peer_id: Optional[str],
    config: PeerServerConfig,
    timeout_ms: int,
    engine_factory: EngineFactory,
    codec: Optional[MessageCodec],
    remotes: List[str],
    stay: bool,
) -> int:
    """
    Register, run SMP with each remote in turn, then either exit or keep
    answering incoming SMP until the server connection drops.
    Returns a process exit code.
    """
    peer = SMPPeer(secret, peer_id, config, timeout_ms, engine_factory=engine_factory, codec=codec)
    gone = asyncio.Event()

    def on_disconnected() -> None:
        print("Disconnected from peer server")
        gone.set()

    peer.on("connected", lambda: print(f"Connected to peer server {config.host}:{config.port}"))
    peer.on("disconnected", on_disconnected)
    peer.on("error", lambda error: print(f"[error] {error}"))
    peer.on("incoming", lambda remote, result: print(f"[incoming] {remote}: {'match' if result else 'no match'}"))

    await peer.connect_to_peer_server()
    print(f"Our peer id: {peer.id}")

    failures = 0
    for remote in remotes:
        try:
            result = await peer.run_smp(remote)
        except SMPPeerError as err:
            print(f"[smp] {remote}: failed ({err})")
            failures += 1
            continue
        print(f"[smp] {remote}: {'match' if result else 'no match'}")

    if stay:
        await gone.wait()
    elif peer.is_connected:
        peer.disconnect()
    return 1 if failures else 0


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Quick examples:
      Server:  python -m smppeer.run_node --mode server --host 127.0.0.1 --port 9000
      Peer:    python -m smppeer.run_node --mode peer --id alice --server 127.0.0.1:9000 \
                   --engine mysmp:SMPStateMachine --secret hunter2 --stay
      Run SMP: python -m smppeer.run_node --mode peer --id bob --server 127.0.0.1:9000 \
                   --engine mysmp:SMPStateMachine --secret hunter2 --run alice
    """
    p = argparse.ArgumentParser(prog="smppeer")
    p.add_argument("--mode", choices=["server", "peer"], required=True)
    p.add_argument("--path", help="Peer server path (default from config)")
    p.add_argument("--debug", type=int, choices=[0, 1, 2, 3], help="Log verbosity")

    srv = p.add_argument_group("server mode")
    srv.add_argument("--host")
    srv.add_argument("--port", type=int)
    srv.add_argument("--certfile", help="Serve TLS with this certificate chain")
    srv.add_argument("--keyfile", help="Private key for --certfile")

    peer = p.add_argument_group("peer mode")
    peer.add_argument("--id", dest="ident", help="Peer id to request")
    peer.add_argument("--server", help="Peer server HOST:PORT")
    peer.add_argument("--secure", action="store_true", help="Connect with TLS")
    peer.add_argument("--secret", help="SMP secret (or SMPPEER_SECRET)")
    peer.add_argument("--engine", help="SMP engine factory as module:attribute")
    peer.add_argument("--codec", help="Message codec instance/factory as module:attribute")
    peer.add_argument("--run", nargs="*", default=[], metavar="PEER", help="Run SMP with these peers")
    peer.add_argument("--stay", action="store_true", help="Keep answering incoming SMP")
    peer.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
    return p.parse_args(argv)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    config = PeerServerConfig.from_env()
    if args.debug is not None:
        config = replace(config, debug=args.debug)
    if args.path:
        config = replace(config, path=args.path)

    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    configure_logging(config.debug)

    if args.mode == "server":
        ssl_context = None
        if args.certfile:
            ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
            ssl_context.load_cert_chain(args.certfile, args.keyfile)
        host = args.host or config.host
        port = config.port if args.port is None else args.port
        asyncio.run(run_server(host, port, config.path, config.auth_key_bytes(), ssl_context))
        return

    secret = args.secret or os.environ.get("SMPPEER_SECRET")
    if not secret:
        raise SystemExit("--secret or SMPPEER_SECRET is required for peer mode")
    if not args.engine:
        raise SystemExit("--engine is required for peer mode")
    if not args.run and not args.stay:
        raise SystemExit("nothing to do: pass --run PEER... and/or --stay")
    if args.server:
        host, port = parse_hostport(args.server)
        config = replace(config, host=host, port=port)
    if args.secure:
        config = replace(config, secure=True)

    engine_factory = load_object(args.engine)
    codec = None
    if args.codec:
        codec = load_object(args.codec)
        if isinstance(codec, type):
            codec = codec()

    code = asyncio.run(run_peer(
        secret, args.ident, config, args.timeout_ms, engine_factory, codec, args.run, args.stay,
    ))
    raise SystemExit(code)


if __name__ == "__main__":
    main()
