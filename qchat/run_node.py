"""
run_node.py — single entry point to run the relay or an interactive client.

Quick examples:
  Relay:   python -m qchat.run_node --mode server --host 127.0.0.1 --port 9000
  Client:  python -m qchat.run_node --mode client --connect 127.0.0.1:9000

Client commands (one per line on stdin):
  /group <text>    encrypt per peer and send addressed (default for plain lines)
  /legacy <text>   single-ciphertext broadcast
  /info            ask the relay for this session's security summary
  /peers           list peers with an established secret
  /quit
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional, Tuple

from .client import ClientNode
from .config import Settings, load_settings
from .errors import StateError
from .server import RelayServer

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """One stream handler on the root logger; leaves existing handlers alone."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_hostport(value: str) -> Tuple[str, int]:
    host, _, port = value.rpartition(":")
    if not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return host, int(port)


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_server(settings: Settings) -> None:
    """Spin up the relay and serve until cancelled."""
    server = RelayServer(settings)
    try:
        await server.serve_forever()
    finally:
        await server.shutdown()


async def run_client(host: str, port: int) -> None:
    """Connect, then read commands from stdin while printing deliveries."""
    client = ClientNode(host, port)
    await client.connect()
    print(f"Connected to relay {host}:{port}. Commands: /group /legacy /info /peers /quit")

    async def printer() -> None:
        while True:
            d = await client.inbox.get()
            who = (d.from_peer or "unknown")[:8]
            if d.verified:
                print(f"[{who}] {d.text}")
            elif d.unverified_text is not None:
                print(f"[{who}] <UNVERIFIED, possibly unencrypted> {d.unverified_text}")
            else:
                print(f"[{who}] <failed to decrypt: {d.error}>")

    async def events() -> None:
        while True:
            msg = await client.events.get()
            mt = msg.get("type")
            if mt == "error":
                print(f"[error] {msg.get('message')}")
            elif mt == "key_exchange_complete":
                print(f"[secure] channel established with {str(msg.get('peerId'))[:8]}")
            elif mt == "user_left":
                print("[system] a user left the chat")
            elif mt == "server_shutdown":
                print("[system] relay is shutting down")

    tasks = [asyncio.create_task(printer()), asyncio.create_task(events())]
    loop = asyncio.get_running_loop()
    try:
        while not client.closed.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line == "/quit":
                break
            try:
                if line == "/peers":
                    print(", ".join(client.secrets) or "(none)")
                elif line == "/info":
                    print(json.dumps(await client.request_security_info(), indent=2))
                elif line.startswith("/legacy "):
                    await client.send_legacy(line[len("/legacy "):])
                elif line.startswith("/group "):
                    await client.send_group(line[len("/group "):])
                else:
                    await client.send_group(line)
            except StateError as exc:
                print(f"[not ready] {exc}")
    finally:
        for t in tasks:
            t.cancel()
        await client.close()


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="qchat-node")
    p.add_argument("--mode", choices=["server", "client"], required=True)
    p.add_argument("--host", help="listen address (server mode)")
    p.add_argument("--port", type=int, help="listen port (server mode)")
    p.add_argument("--connect", type=parse_hostport, help="relay HOST:PORT (client mode)")
    p.add_argument("--keygen-delay", type=float, help="seconds before keys are generated")
    p.add_argument("--queue-size", type=int, help="per-session inbound queue size")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING, ...")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    try:
        settings = load_settings().override(
            host=args.host, port=args.port, keygen_delay=args.keygen_delay,
            queue_size=args.queue_size, log_level=args.log_level,
        ).validate()
    except ValueError as exc:
        raise SystemExit(str(exc))
    setup_logging(settings.log_level)

    try:
        if args.mode == "server":
            asyncio.run(run_server(settings))
        else:
            host, port = args.connect or (settings.host, settings.port)
            asyncio.run(run_client(host, port))
    except KeyboardInterrupt:
        log.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
