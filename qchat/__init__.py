"""
qchat — group key-exchange relay with per-recipient encrypted fan-out.

Pieces, leaf to root:
- keys:        Key Provider (key pairs, session ids, order-independent derivation)
- cipher:      XOR stream cipher + Envelope wire format
- framing:     length-prefixed JSON frames over asyncio streams
- messages:    message types, client-message decoding, server builders
- registry:    Session Registry (the only shared mutable state)
- coordinator: Key Exchange Coordinator (per-pair handshake states)
- relay:       Relay Fan-out (legacy broadcast + addressed group)
- server:      per-connection dispatcher loop around all of the above
- client:      participant endpoint

SECURITY NOTE: the bundled key provider and cipher are demonstrations.
They protect against passive observers only; the relay sees every public
key, there is no integrity protection, and signatures do not authenticate
senders (see keys.SIGNATURES_AUTHENTICATE_SENDER).
"""
__all__ = [
    "cipher", "client", "config", "coordinator", "errors", "framing",
    "keys", "messages", "registry", "relay", "run_node", "server",
]

__version__ = "0.1.0"
