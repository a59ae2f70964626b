"""
registry.py — the Session Registry: one Session per connected participant.

The registry is the only shared mutable structure in the relay. Every read
or write of a session's fields that comes from *another* session's handler
(announcement bookkeeping, pair states, cached secrets) goes through one of
the accessors below, which all take the registry lock. Iteration works on a
snapshot taken under the lock, so a register/remove that lands mid fan-out
never corrupts the loop; a removed session is simply gone from the next
snapshot.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Set

from .keys import KeyPair

log = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    """Per peer pair, seen from one session. Only ever moves forward."""
    NO_KEY = "NO_KEY"
    KEY_PUBLISHED = "KEY_PUBLISHED"
    EXCHANGING = "EXCHANGING"
    READY = "READY"
    CLOSED = "CLOSED"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {s: i for i, s in enumerate(HandshakeState)}


class Connection:
    """What the registry needs from a transport (see server.StreamConnection)."""

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def send(self, obj: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


@dataclass
class Session:
    """Server-side state for one participant. Owned by the registry."""
    id: str
    connection: Connection
    keypair: Optional[KeyPair] = None
    public_key: Optional[str] = None  # hex, set once keys exist
    ready: bool = False
    announced_to: Set[str] = field(default_factory=set)
    joined_at: float = field(default_factory=time.monotonic)
    peer_keys: Dict[str, bytes] = field(default_factory=dict)
    shared_secrets: Dict[str, bytes] = field(default_factory=dict)
    pair_states: Dict[str, HandshakeState] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.connection.is_open

    async def send(self, obj: Dict[str, Any]) -> None:
        await self.connection.send(obj)


class SessionRegistry:
    """id → Session map with thread-safe accessors."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._sessions: Dict[str, Session] = {}

    # --- membership -------------------------------------------------------

    def register(self, session_id: str, connection: Connection) -> Session:
        """Create and store a session. Ids must be unique."""
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"session id already registered: {session_id}")
            session = Session(id=session_id, connection=connection)
            self._sessions[session_id] = session
            return session

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if session_id is None:
            return None
        with self._lock:
            return self._sessions.get(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def ready_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.ready)

    # --- iteration --------------------------------------------------------

    def select(self, predicate: Optional[Callable[[Session], bool]] = None) -> List[Session]:
        """Snapshot of sessions matching `predicate`, in join order."""
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if predicate is None or predicate(s)]

    def for_each(self, predicate: Optional[Callable[[Session], bool]],
                 fn: Callable[[Session], Any]) -> int:
        """Call `fn` on every match from a snapshot; returns how many."""
        matched = self.select(predicate)
        for s in matched:
            fn(s)
        return len(matched)

    async def broadcast(self, obj: Dict[str, Any], exclude: Optional[str] = None,
                        predicate: Optional[Callable[[Session], bool]] = None) -> int:
        """
        Best-effort send to every open session except `exclude`.
        A failing peer is logged and skipped. Returns deliveries made.
        """
        sent = 0
        for s in self.select(lambda s: s.id != exclude and s.is_open
                             and (predicate is None or predicate(s))):
            try:
                await s.send(obj)
                sent += 1
            except (ConnectionError, OSError) as exc:
                log.warning("broadcast to %s failed: %s", s.id, exc)
        return sent

    # --- per-session mutation --------------------------------------------

    def set_keypair(self, session_id: str, keypair: KeyPair) -> bool:
        """Store a key pair once; False if the session is gone or already has one."""
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None or s.keypair is not None:
                return False
            s.keypair = keypair
            s.public_key = keypair.public_hex
            return True

    def mark_ready(self, session_id: str) -> None:
        with self._lock:
            s = self._sessions.get(session_id)
            if s is not None:
                s.ready = True

    def mark_announced(self, source_id: str, target_id: str) -> bool:
        """
        Atomic test-and-set on source.announced_to.
        True means the caller owns this announcement and should send it.
        """
        with self._lock:
            s = self._sessions.get(source_id)
            if s is None or target_id in s.announced_to:
                return False
            s.announced_to.add(target_id)
            return True

    def unmark_announced(self, source_id: str, target_id: str) -> None:
        """Undo mark_announced() after the send failed."""
        with self._lock:
            s = self._sessions.get(source_id)
            if s is not None:
                s.announced_to.discard(target_id)

    def has_secret(self, session_id: str, peer_id: str) -> bool:
        with self._lock:
            s = self._sessions.get(session_id)
            return s is not None and peer_id in s.shared_secrets

    def store_peer_key(self, session_id: str, peer_id: str, key: bytes) -> None:
        with self._lock:
            s = self._sessions.get(session_id)
            if s is not None:
                s.peer_keys[peer_id] = key

    def store_secret(self, session_id: str, peer_id: str, secret: bytes) -> bool:
        """
        Cache a derived secret. The first one wins; a later one for the same
        pair is the same value anyway. Returns True if this call stored it.
        """
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None or peer_id in s.shared_secrets:
                return False
            s.shared_secrets[peer_id] = secret
            return True

    def secret_for(self, session_id: str, peer_id: str) -> Optional[bytes]:
        with self._lock:
            s = self._sessions.get(session_id)
            return s.shared_secrets.get(peer_id) if s is not None else None

    def advance_pair(self, session_id: str, peer_id: str, state: HandshakeState) -> HandshakeState:
        """
        Move the (session, peer) pair forward to `state`. Backward moves are
        ignored. Returns the state the pair ends up in.
        """
        with self._lock:
            s = self._sessions.get(session_id)
            if s is None:
                return HandshakeState.CLOSED
            current = s.pair_states.get(peer_id)
            if current is None or state.rank > current.rank:
                s.pair_states[peer_id] = state
                return state
            return current

    def pair_state(self, session_id: str, peer_id: str) -> Optional[HandshakeState]:
        with self._lock:
            s = self._sessions.get(session_id)
            return s.pair_states.get(peer_id) if s is not None else None

    def close_peer(self, peer_id: str) -> int:
        """
        Peer left: every remaining session that knew it moves that pair to
        CLOSED and forgets its key and secret. Returns sessions touched.
        """
        touched = 0
        with self._lock:
            for s in self._sessions.values():
                known = (peer_id in s.pair_states or peer_id in s.shared_secrets
                         or peer_id in s.peer_keys)
                if not known:
                    continue
                s.pair_states[peer_id] = HandshakeState.CLOSED
                s.shared_secrets.pop(peer_id, None)
                s.peer_keys.pop(peer_id, None)
                s.announced_to.discard(peer_id)
                touched += 1
        return touched
