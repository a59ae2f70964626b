"""
server.py — the relay process: accepts connections and runs one dispatcher each.

Per connection:
- a Session is registered under a fresh random id and told `connected`;
- key generation starts in the background (coordinator.start);
- a reader pushes frames into a bounded queue, a dispatcher pulls them
  and handles them one at a time, so a session's messages are processed
  in arrival order; on EOF the connection is marked gone (no more writes
  to it) and a final disconnect sentinel is queued;
- on disconnect the session leaves the registry, every pair with it is
  CLOSED, and everyone else gets `user_left`.

Nothing a client sends can close its connection. Errors are reported back
to that client as `error` frames.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from . import messages as m
from .config import Settings
from .coordinator import KeyExchangeCoordinator
from .errors import ProtocolError, QChatError
from .framing import read_frame, write_frame
from .keys import KeyProvider, generate_session_id
from .registry import Connection, Session, SessionRegistry
from .relay import RelayFanout

log = logging.getLogger(__name__)

_DISCONNECT = object()  # queue sentinel: the peer went away


class StreamConnection(Connection):
    """Connection handle over an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self._gone = False
        self._send_lock = asyncio.Lock()  # one frame at a time on the wire

    @property
    def is_open(self) -> bool:
        return not self._gone and not self.writer.is_closing()

    @property
    def peername(self) -> Any:
        return self.writer.get_extra_info("peername")

    async def send(self, obj: Dict[str, Any]) -> None:
        if not self.is_open:
            raise ConnectionError("connection is closed")
        async with self._send_lock:
            await write_frame(self.writer, obj)

    def mark_gone(self) -> None:
        """Peer stopped sending; nothing more gets written to it."""
        self._gone = True

    async def close(self) -> None:
        self._gone = True
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


class RelayServer:
    """Session registry + coordinator + fan-out behind a TCP listener."""

    def __init__(self, settings: Optional[Settings] = None,
                 provider: Optional[KeyProvider] = None) -> None:
        self.settings = settings or Settings()
        self.registry = SessionRegistry()
        self.coordinator = KeyExchangeCoordinator(self.registry, provider,
                                                  keygen_delay=self.settings.keygen_delay)
        self.relay = RelayFanout(self.registry)
        self._server: Optional[asyncio.AbstractServer] = None
        self._started_at = time.monotonic()

    # -------------------------
    # Listener lifecycle
    # -------------------------

    async def start(self) -> asyncio.AbstractServer:
        """Bind and start accepting; returns the asyncio server."""
        self._server = await asyncio.start_server(self.handle_conn, self.settings.host, self.settings.port)
        self._started_at = time.monotonic()
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        log.info("Relay listening on %s", addrs)
        return self._server

    @property
    def port(self) -> Optional[int]:
        """Actually bound port (useful when configured with port 0)."""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def serve_forever(self) -> None:
        server = await self.start()
        async with server:
            await server.serve_forever()

    async def shutdown(self) -> None:
        """Tell every client we're going, close them all, stop listening."""
        log.info("Shutting down relay (%d sessions)", len(self.registry))
        await self.registry.broadcast(m.server_shutdown())
        for session in self.registry.select():
            await session.connection.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running",
            "connectedClients": len(self.registry),
            "readyClients": self.registry.ready_count(),
            "uptime": round(time.monotonic() - self._started_at, 3),
            "algorithm": f"{self.coordinator.provider.algorithm} + XOR-Demo stream",
        }

    # -------------------------
    # Per-connection loop
    # -------------------------

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = StreamConnection(reader, writer)
        session_id = generate_session_id()
        self.registry.register(session_id, conn)
        log.info("New client connected: %s from %s", session_id, conn.peername)

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.settings.queue_size)
        dispatcher = asyncio.create_task(self._dispatch_loop(session_id, queue))
        keygen: Optional[asyncio.Task] = None
        try:
            await conn.send(m.connected(session_id))
            keygen = asyncio.create_task(self.coordinator.start(session_id))
            while True:
                try:
                    frame: Any = await read_frame(reader)
                except ProtocolError as exc:
                    # Queue it so the error reply keeps its place in line.
                    frame = exc
                await queue.put(frame)
        except (asyncio.IncompleteReadError, ConnectionError):
            # Peer went away (possibly mid-frame); the normal way out.
            pass
        except Exception:
            log.exception("Connection error for %s", session_id)
        finally:
            # Out of every fan-out from here on; frames it already sent still get handled.
            conn.mark_gone()
            await queue.put(_DISCONNECT)
            await dispatcher
            if keygen is not None and not keygen.done():
                keygen.cancel()
                await asyncio.gather(keygen, return_exceptions=True)
            await self._disconnect(session_id)
            await conn.close()

    async def _dispatch_loop(self, session_id: str, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            if item is _DISCONNECT:
                return
            await self.dispatch(session_id, item)

    async def dispatch(self, session_id: str, frame: Any) -> None:
        """Handle one inbound frame (or a ProtocolError from the framer)."""
        session = self.registry.get(session_id)
        if session is None:
            return
        try:
            if isinstance(frame, ProtocolError):
                raise frame
            msg = m.decode_message(frame)
            log.debug("Received %s from %s", frame.get("type"), session_id)

            if isinstance(msg, m.PublicKeyMessage):
                await self.coordinator.handle_public_key(session_id, msg)
            elif isinstance(msg, m.EncryptedMessage):
                await self.relay.broadcast(session_id, msg.encrypted_data)
            elif isinstance(msg, m.GroupMessage):
                await self.relay.send_group(session_id, msg.items)
            elif isinstance(msg, m.GenerateKeysRequest):
                await self.coordinator.generate_keys(session_id)
            elif isinstance(msg, m.SecurityInfoRequest):
                await session.send(m.security_info(self.coordinator.security_info(session_id)))
            elif isinstance(msg, m.UnrecognizedMessage):
                raise ProtocolError(f"Unknown message type: {msg.type}")
            else:
                raise ProtocolError(f"Unhandled message variant: {type(msg).__name__}")

        except QChatError as exc:
            log.warning("%s error from %s: %s", exc.kind, session_id, exc)
            await self._report(session, str(exc), kind=exc.kind)
        except (ConnectionError, OSError) as exc:
            log.warning("I/O error while handling message from %s: %s", session_id, exc)
        except Exception as exc:
            log.exception("Error handling message from %s", session_id)
            await self._report(session, "Failed to process message", detail=str(exc))

    async def _report(self, session: Session, message: str, detail: Optional[str] = None,
                      kind: Optional[str] = None) -> None:
        if not session.is_open:
            return
        try:
            await session.send(m.error(message, detail=detail, kind=kind))
        except (ConnectionError, OSError) as exc:
            log.debug("Could not report error to %s: %s", session.id, exc)

    async def _disconnect(self, session_id: str) -> None:
        if self.registry.remove(session_id) is None:
            return
        self.coordinator.handle_disconnect(session_id)
        log.info("Client %s disconnected", session_id)
        await self.registry.broadcast(m.user_left(session_id), exclude=session_id)
