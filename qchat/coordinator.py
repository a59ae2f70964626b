"""
coordinator.py — drives every session through its key-exchange handshake.

Flow for a new session C joining A and B:

  1. start(C): `key_generation_start`, optional delay, generate_keys(C).
  2. generate_keys(C): key pair stored, `keys_generated` to C, then C's
     public key announced to A and B (`peer_public_key`).
  3. A's client derives its secret with C and sends `public_key{peerId: C}`.
     handle_public_key(A, C) derives the same secret server-side, marks A
     ready, tells A `key_exchange_complete`, tells C `peer_ready`, and
     announces A's key to C unless C already has it.
  4. C does the same towards A; the reverse announcement is suppressed
     because A already shares a secret with C.

Announcements only ever go out through announce(), which is where the
duplicate suppression lives.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from . import messages as m
from .errors import ProtocolError, StateError
from .keys import SIGNATURES_AUTHENTICATE_SENDER, HashKeyProvider, KeyPair, KeyProvider, from_hex
from .registry import HandshakeState, Session, SessionRegistry

log = logging.getLogger(__name__)

__all__ = ["HandshakeState", "KeyExchangeCoordinator"]


class KeyExchangeCoordinator:
    def __init__(self, registry: SessionRegistry, provider: Optional[KeyProvider] = None,
                 keygen_delay: float = 0.0) -> None:
        self.registry = registry
        self.provider = provider or HashKeyProvider()
        self.keygen_delay = keygen_delay

    # -------------------------
    # Key generation
    # -------------------------

    async def start(self, session_id: str) -> None:
        """Kick off key generation for a freshly connected session."""
        session = self.registry.get(session_id)
        if session is None:
            return
        log.info("Initiating key exchange for %s", session_id)
        await session.send(m.key_generation_start())
        if self.keygen_delay > 0:
            await asyncio.sleep(self.keygen_delay)
        await self.generate_keys(session_id)

    async def generate_keys(self, session_id: str) -> Optional[KeyPair]:
        """
        Give the session its key pair (once) and announce the public key to
        every other session currently registered.

        There is no re-keying: asking again re-sends `keys_generated` for
        the existing pair and announces nothing.
        """
        session = self.registry.get(session_id)
        if session is None:
            # Disconnected while we were waiting; nothing to do.
            return None

        if session.keypair is not None:
            await session.send(m.keys_generated(**session.keypair.describe()))
            return session.keypair

        keypair = self.provider.generate_keypair()
        if not self.registry.set_keypair(session_id, keypair):
            # Lost a race with a concurrent request, or the session left.
            current = self.registry.get(session_id)
            return current.keypair if current else None
        log.info("Generated %s key pair for %s", keypair.algorithm, session_id)

        await session.send(m.keys_generated(**keypair.describe()))

        for other in self.registry.select(lambda s: s.id != session_id):
            self.registry.advance_pair(session_id, other.id, HandshakeState.KEY_PUBLISHED)
            await self.announce(session, other)
        return keypair

    # -------------------------
    # Announcements
    # -------------------------

    async def announce(self, source: Session, target: Session) -> bool:
        """
        Send source's public key to target, at most once per pair.

        Skipped when target already holds a secret with source, when it was
        already announced, or when target's connection is closed.
        """
        if source.public_key is None or not target.is_open:
            return False
        if self.registry.has_secret(target.id, source.id):
            log.debug("Skipped sending %s's public key to %s: already exchanged", source.id, target.id)
            return False
        if not self.registry.mark_announced(source.id, target.id):
            log.debug("Skipped sending %s's public key to %s: already announced", source.id, target.id)
            return False
        try:
            await target.send(m.peer_public_key(source.id, source.public_key, self.provider.algorithm))
        except (ConnectionError, OSError) as exc:
            # Unclaim so a later announce() can try again.
            self.registry.unmark_announced(source.id, target.id)
            log.warning("Could not send %s's public key to %s: %s", source.id, target.id, exc)
            return False
        log.debug("Sent %s's public key to %s", source.id, target.id)
        return True

    # -------------------------
    # Pairwise exchange
    # -------------------------

    def _resolve_peer(self, session: Session, peer_id: Optional[str],
                      claimed_key: Optional[str]) -> Tuple[str, str]:
        """
        Work out (peer_id, peer_key_hex) for a `public_key` request.

        Only registered peers with a key pair qualify; the registered key is
        always the one used.
        """
        if peer_id is None:
            # No id given: the key has to belong to someone we know.
            match = self.registry.select(lambda s: s.public_key == claimed_key and s.id != session.id)
            if not match:
                raise ProtocolError("public_key without 'peerId' names no known peer")
            peer_id = match[0].id

        if peer_id == session.id:
            raise ProtocolError("cannot exchange keys with yourself")

        if self.registry.pair_state(session.id, peer_id) is HandshakeState.CLOSED:
            raise StateError(f"peer {peer_id} has disconnected")
        peer = self.registry.get(peer_id)
        if peer is None:
            raise StateError(f"peer {peer_id} is not connected")
        if peer.public_key is None:
            raise StateError(f"peer {peer_id} has no key pair yet")

        if claimed_key is not None and claimed_key != peer.public_key:
            log.warning("Key for %s sent by %s does not match the registered one; using registered key",
                        peer_id, session.id)
        return peer_id, peer.public_key

    async def handle_public_key(self, session_id: str, msg: m.PublicKeyMessage) -> bytes:
        """
        Derive and cache the secret between `session_id` and the named peer.

        Raises:
            StateError: either side has no key pair yet, the peer is not
                connected, or the pair is CLOSED.
            ProtocolError: the peer can't be identified.
        """
        session = self.registry.get(session_id)
        if session is None:
            raise StateError("session is gone")
        if session.keypair is None:
            raise StateError("No key pair available. Generate keys first.")

        peer_id, peer_key_hex = self._resolve_peer(session, msg.peer_id, msg.peer_public_key)

        log.info("Processing key exchange for %s with peer %s", session_id, peer_id)
        self.registry.advance_pair(session_id, peer_id, HandshakeState.KEY_PUBLISHED)
        self.registry.advance_pair(session_id, peer_id, HandshakeState.EXCHANGING)

        peer_key = from_hex(peer_key_hex)
        self.registry.store_peer_key(session_id, peer_id, peer_key)
        secret = self.provider.derive(session.keypair.public, peer_key)
        if not self.registry.store_secret(session_id, peer_id, secret):
            # Raced from the other direction or repeated; the value is identical.
            secret = self.registry.secret_for(session_id, peer_id) or secret

        self.registry.advance_pair(session_id, peer_id, HandshakeState.READY)
        self.registry.mark_ready(session_id)

        await session.send(m.key_exchange_complete(peer_id, self.security_info(session_id)))
        log.info("Client %s is ready for secure communication with peer %s", session_id, peer_id)

        peer = self.registry.get(peer_id)
        if peer is not None and peer.is_open:
            try:
                await peer.send(m.peer_ready(session_id))
            except (ConnectionError, OSError) as exc:
                log.warning("Could not tell %s that %s is ready: %s", peer_id, session_id, exc)
            await self.announce(session, peer)
        return secret

    def handle_disconnect(self, session_id: str) -> None:
        """Close every remaining session's pair with the departed one."""
        touched = self.registry.close_peer(session_id)
        log.debug("Closed %d pair(s) with %s", touched, session_id)

    # -------------------------
    # Introspection
    # -------------------------

    def pair_state(self, session_id: str, peer_id: str) -> HandshakeState:
        """Handshake state of (session, peer), as seen from `session_id`."""
        session = self.registry.get(session_id)
        if session is None:
            return HandshakeState.CLOSED
        state = self.registry.pair_state(session_id, peer_id)
        if state is not None:
            return state
        return HandshakeState.KEY_PUBLISHED if session.keypair else HandshakeState.NO_KEY

    def secret_of(self, session_id: str, peer_id: str) -> Optional[bytes]:
        return self.registry.secret_for(session_id, peer_id)

    def security_info(self, session_id: str) -> Dict[str, Any]:
        """Informational summary sent with `key_exchange_complete` / `security_info`."""
        session = self.registry.get(session_id)
        keypair = session.keypair if session else None
        ready_peers = len(session.shared_secrets) if session else 0
        ready = bool(session and keypair and session.ready)
        return {
            "algorithm": f"{self.provider.algorithm} + XOR-Demo stream",
            "keySize": self.provider.secret_size * 8,
            "keyPairGenerated": keypair is not None,
            "sharedSecretEstablished": ready_peers > 0,
            "readyPeers": ready_peers,
            "ready": ready,
            "status": "Ready" if ready else "Setting up...",
            "signaturesAuthenticateSender": SIGNATURES_AUTHENTICATE_SENDER,
        }
