"""
client.py — the participant side of the relay protocol.

A ClientNode connects to a RelayServer, learns its id and public key,
answers every `peer_public_key` with its own derivation plus a
`public_key` message, and encrypts per peer before sending. The relay
never sees plaintext; everything here happens on the participant.

Decrypted deliveries land on `inbox`; every other server frame lands on
`events`.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from . import messages as m
from .cipher import decrypt, encrypt, guess_plaintext
from .errors import FormatError, ProtocolError, StateError
from .framing import read_frame, write_frame
from .keys import HashKeyProvider, KeyProvider, from_hex, to_hex

log = logging.getLogger(__name__)


@dataclass
class Delivery:
    """One received message, decrypted or not."""
    from_peer: Optional[str]
    text: Optional[str]
    verified: bool
    unverified_text: Optional[str] = None  # advisory guess, never trusted
    error: Optional[str] = None
    addressed: bool = True


class ClientNode:
    def __init__(self, host: str, port: int, provider: Optional[KeyProvider] = None) -> None:
        self.host = host
        self.port = port
        self.provider = provider or HashKeyProvider()

        self.client_id: Optional[str] = None
        self.public_key: Optional[bytes] = None
        self.algorithm: Optional[str] = None
        self.ready = False

        self.peer_keys: Dict[str, bytes] = {}
        self.secrets: Dict[str, bytes] = {}  # insertion order = order established
        self.completed: Set[str] = set()     # key_exchange_complete seen
        self.ready_peers: Set[str] = set()   # peer_ready seen
        self._pending: List[str] = []        # peer keys seen before our own

        self.inbox: asyncio.Queue = asyncio.Queue()
        self.events: asyncio.Queue = asyncio.Queue()
        self.closed = asyncio.Event()

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()  # reader task and callers both write

    # -------------------------
    # Connection
    # -------------------------

    async def connect(self) -> None:
        """Open the stream and start the background reader."""
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        self._task = asyncio.create_task(self._reader_loop())

    async def close(self) -> None:
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def send(self, obj: Dict[str, Any]) -> None:
        if self._writer is None:
            raise StateError("not connected")
        async with self._send_lock:
            await write_frame(self._writer, obj)

    async def _reader_loop(self) -> None:
        try:
            while True:
                try:
                    frame = await read_frame(self._reader)
                except ProtocolError as exc:
                    log.warning("Ignoring bad frame from relay: %s", exc)
                    continue
                try:
                    await self.process_incoming(frame)
                except (KeyError, TypeError, ValueError) as exc:
                    # Missing field or bad hex in one frame; the stream is still in sync.
                    log.warning("Ignoring malformed %s frame from relay: %r", frame.get("type"), exc)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self.closed.set()

    # -------------------------
    # Inbound
    # -------------------------

    async def process_incoming(self, msg: Dict[str, Any]) -> None:
        """Update local state from one server frame."""
        mt = msg.get("type")

        if mt == m.MessageType.CONNECTED.value:
            self.client_id = msg.get("clientId")
            log.info("Connected as %s", self.client_id)

        elif mt == m.MessageType.KEYS_GENERATED.value:
            self.public_key = from_hex(msg["publicKey"])
            self.algorithm = msg.get("algorithm")
            pending, self._pending = self._pending, []
            for peer_id in pending:
                await self._exchange(peer_id)

        elif mt == m.MessageType.PEER_PUBLIC_KEY.value:
            peer_id = msg.get("clientId")
            if peer_id and peer_id != self.client_id:
                self.peer_keys[peer_id] = from_hex(msg["publicKey"])
                if peer_id in self.secrets:
                    log.debug("Already have shared secret with %s, skipping key exchange", peer_id)
                elif self.public_key is None:
                    self._pending.append(peer_id)
                else:
                    await self._exchange(peer_id)

        elif mt == m.MessageType.KEY_EXCHANGE_COMPLETE.value:
            self.ready = True
            if msg.get("peerId"):
                self.completed.add(msg["peerId"])

        elif mt == m.MessageType.PEER_READY.value:
            if msg.get("peerId"):
                self.ready_peers.add(msg["peerId"])

        elif mt == m.MessageType.MESSAGE_RECEIVED.value:
            await self.inbox.put(self._open(msg))
            return

        await self.events.put(msg)

    async def _exchange(self, peer_id: str) -> None:
        """Derive our secret with `peer_id` and tell the relay about it."""
        peer_key = self.peer_keys[peer_id]
        self.secrets[peer_id] = self.provider.derive(self.public_key, peer_key)
        await self.send(m.public_key(peer_id, to_hex(peer_key)))

    def _open(self, msg: Dict[str, Any]) -> Delivery:
        addressed = "fromPeer" in msg
        sender = msg.get("fromPeer") or msg.get("from")
        data = msg.get("encryptedData")
        try:
            secret = self.secrets.get(sender)
            if secret is None:
                raise StateError(f"No shared secret with {sender}")
            text = decrypt(secret, data)
            return Delivery(sender, text, verified=True, addressed=addressed)
        except (FormatError, StateError) as exc:
            log.warning("Failed to decrypt message from %s: %s", sender, exc)
            return Delivery(sender, None, verified=False, unverified_text=guess_plaintext(data),
                            error=str(exc), addressed=addressed)

    # -------------------------
    # Outbound
    # -------------------------

    async def send_group(self, text: str) -> int:
        """Encrypt `text` once per peer we share a secret with; returns how many."""
        if not self.secrets:
            raise StateError("No peers with an established secret yet")
        items = [
            {"forPeer": peer_id, "data": encrypt(secret, text, peer_id, self.client_id).to_wire()}
            for peer_id, secret in self.secrets.items()
        ]
        await self.send(m.encrypted_group_message(items))
        return len(items)

    async def send_legacy(self, text: str, peer_id: Optional[str] = None) -> None:
        """Single ciphertext broadcast, under one peer's secret (latest by default)."""
        if peer_id is None:
            if not self.secrets:
                raise StateError("No shared secret available. Perform key exchange first.")
            peer_id = next(reversed(list(self.secrets)))
        secret = self.secrets.get(peer_id)
        if secret is None:
            raise StateError(f"No shared secret with {peer_id}")
        await self.send(m.encrypted_message(encrypt(secret, text, peer_id, self.client_id).to_wire()))

    async def request_security_info(self) -> Dict[str, Any]:
        await self.send(m.get_security_info())
        msg = await self.next_event(m.MessageType.SECURITY_INFO.value)
        return msg.get("securityInfo", {})

    # -------------------------
    # Waiting helpers
    # -------------------------

    async def next_event(self, msg_type: str, timeout: float = 5.0) -> Dict[str, Any]:
        """Pop events until one of `msg_type` shows up; others are discarded."""
        async def _wait() -> Dict[str, Any]:
            while True:
                msg = await self.events.get()
                if msg.get("type") == msg_type:
                    return msg
        return await asyncio.wait_for(_wait(), timeout)

    async def wait_until(self, cond: Callable[[], bool], timeout: float = 5.0,
                         interval: float = 0.01) -> None:
        """Poll `cond` until true; asyncio.TimeoutError after `timeout`."""
        async def _poll() -> None:
            while not cond():
                await asyncio.sleep(interval)
        await asyncio.wait_for(_poll(), timeout)
