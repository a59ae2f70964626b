"""Shared fixtures: in-memory connections and a wired-up registry/coordinator/relay."""

import pytest

from qchat.coordinator import KeyExchangeCoordinator
from qchat.messages import PublicKeyMessage
from qchat.registry import Connection, SessionRegistry
from qchat.relay import RelayFanout


class FakeConnection(Connection):
    """Records every frame sent to it instead of writing to a socket."""

    def __init__(self):
        self.sent = []
        self.open = True

    @property
    def is_open(self):
        return self.open

    async def send(self, obj):
        if not self.open:
            raise ConnectionError("closed")
        self.sent.append(obj)

    async def close(self):
        self.open = False

    def of_type(self, msg_type):
        return [f for f in self.sent if f["type"] == msg_type]


class BrokenConnection(FakeConnection):
    """Claims to be open but every write fails."""

    async def send(self, obj):
        raise ConnectionResetError("peer reset")


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def coordinator(registry):
    return KeyExchangeCoordinator(registry, keygen_delay=0)


@pytest.fixture
def relay(registry):
    return RelayFanout(registry)


@pytest.fixture
def connect(registry):
    """connect("A") registers a session on a FakeConnection and returns the connection."""
    def _connect(session_id, conn=None):
        conn = conn or FakeConnection()
        registry.register(session_id, conn)
        return conn
    return _connect


async def settle(coordinator, conns):
    """
    Play the client side of the handshake for every FakeConnection in
    `conns` (id -> connection): each unseen `peer_public_key` is answered
    with a `public_key` request, until no new announcements show up.
    """
    cursors = {sid: 0 for sid in conns}
    progressed = True
    while progressed:
        progressed = False
        for sid, conn in conns.items():
            while cursors[sid] < len(conn.sent):
                frame = conn.sent[cursors[sid]]
                cursors[sid] += 1
                if frame["type"] != "peer_public_key":
                    continue
                if coordinator.registry.has_secret(sid, frame["clientId"]):
                    continue
                await coordinator.handle_public_key(
                    sid, PublicKeyMessage(frame["clientId"], frame["publicKey"]))
                progressed = True


@pytest.fixture
def join(coordinator, connect):
    """await join("a", "b", ...) connects each id, generates keys and settles the handshake."""
    conns = {}

    async def _join(*session_ids):
        for sid in session_ids:
            conns[sid] = connect(sid)
            await coordinator.generate_keys(sid)
            await settle(coordinator, conns)
        return conns
    return _join
