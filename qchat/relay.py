"""
relay.py — the Relay Fan-out: routes ciphertext envelopes between sessions.

Two modes:
- Legacy broadcast (`encrypted_message`): one ciphertext to every ready,
  open session except the sender. O(n) over the registry.
- Addressed group (`encrypted_group_message`): a batch of
  `(forPeer, envelope)` pairs; each one goes to its named peer only, via a
  registry lookup. O(1) per recipient.

The relay never decrypts anything. It only reads `forPeer` for routing.
Recipients that vanished between encryption and delivery are dropped
quietly; the sender gets one `message_sent` either way.
"""

import logging
from typing import Sequence

from . import messages as m
from .errors import StateError
from .registry import HandshakeState, SessionRegistry

log = logging.getLogger(__name__)


class RelayFanout:
    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    def _require_ready(self, sender_id: str):
        sender = self.registry.get(sender_id)
        if sender is None or not sender.ready:
            raise StateError("Client not ready for secure communication")
        return sender

    async def broadcast(self, sender_id: str, encrypted_data: dict) -> int:
        """
        Legacy mode: relay one envelope to all other ready sessions.

        Raises StateError if the sender has not completed any exchange.
        Returns the number of sessions it reached.
        """
        sender = self._require_ready(sender_id)
        log.debug("Relaying encrypted message from %s", sender_id)
        frame = m.message_received(sender_id, encrypted_data, addressed=False)
        delivered = await self.registry.broadcast(frame, exclude=sender_id, predicate=lambda s: s.ready)
        await sender.send(m.message_sent(delivered=delivered))
        return delivered

    async def send_group(self, sender_id: str, items: Sequence[m.GroupItem]) -> int:
        """
        Addressed mode: deliver each item to its `forPeer` only.

        Items are skipped (not errors) when the recipient is gone, closed,
        not ready, or its pair with the sender is CLOSED. An item whose
        envelope names a different `forPeer` than the item itself is
        dropped so it can't leak to the wrong session.
        """
        sender = self._require_ready(sender_id)
        log.debug("Group message from %s for %d peers", sender_id, len(items))

        delivered = 0
        for item in items:
            env_peer = item.data.get("forPeer")
            if env_peer is not None and env_peer != item.for_peer:
                log.warning("Dropping envelope from %s: forPeer %s != item forPeer %s",
                            sender_id, env_peer, item.for_peer)
                continue
            if item.for_peer == sender_id:
                continue

            rcpt = self.registry.get(item.for_peer)
            if rcpt is None or not rcpt.is_open or not rcpt.ready:
                log.debug("Dropping envelope for %s: recipient unavailable", item.for_peer)
                continue
            if self.registry.pair_state(item.for_peer, sender_id) is HandshakeState.CLOSED:
                log.debug("Dropping envelope for %s: pair closed", item.for_peer)
                continue

            try:
                await rcpt.send(m.message_received(sender_id, item.data, addressed=True))
                delivered += 1
            except (ConnectionError, OSError) as exc:
                # One bad socket must not stall the rest of the batch.
                log.warning("Delivery to %s failed: %s", item.for_peer, exc)

        await sender.send(m.message_sent(delivered=delivered, requested=len(items)))
        return delivered
