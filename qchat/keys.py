"""
keys.py — the Key Provider: key pairs, session ids, shared-secret derivation.

Why this exists:
- Keep every "where do keys come from" decision in one place so the
  coordinator and the client only ever call `generate_keypair()` and
  `derive()`.
- The default provider is a *simulation*: random bytes stand in for a
  lattice KEM. It only hides traffic from passive observers and the relay
  itself sees every public key. Swap in another `KeyProvider` if you need
  more than that.

Notes:
- Public keys travel as lowercase hex. For equal-length keys, sorting the
  hex strings gives the same order as sorting the bytes.
- `derive(a, b) == derive(b, a)` always: the two public keys are put in
  canonical (byte-wise) order before hashing, never arrival order.
"""

import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

# Signatures here do NOT authenticate anyone. Signing keys the HMAC with the
# private signing key; verification keys it with the *public* one, so a
# genuine signature only verifies if the caller hands in the private key.
SIGNATURES_AUTHENTICATE_SENDER = False

SESSION_ID_BYTES = 16  # 128-bit id space, collisions treated as impossible


# -----------------------------
# Hex helpers
# -----------------------------

def to_hex(data: bytes) -> str:
    """Lowercase hex, the only key encoding we put on the wire."""
    return data.hex()


def from_hex(data: str) -> bytes:
    """Inverse of to_hex(). Raises ValueError on odd length / non-hex."""
    return bytes.fromhex(data)


def generate_session_id() -> str:
    """Random 128-bit id rendered as 32 hex chars."""
    return os.urandom(SESSION_ID_BYTES).hex()


def sha256(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


# -------------
# Key material
# -------------

@dataclass(frozen=True)
class KeyPair:
    """Exchange key pair plus the (separate) signing key pair."""
    private: bytes
    public: bytes
    algorithm: str
    signing_private: bytes = b""
    signing_public: bytes = b""

    @property
    def public_hex(self) -> str:
        return to_hex(self.public)

    @property
    def key_size(self) -> str:
        return f"{len(self.public)} bytes"

    def describe(self) -> Dict[str, Any]:
        """Keyword arguments for messages.keys_generated()."""
        return {
            "public_key": self.public_hex,
            "algorithm": self.algorithm,
            "key_size": self.key_size,
        }


class KeyProvider:
    """
    Interface every provider follows.

    Subclasses must make `derive()` a pure function of the two public keys
    so both ends of a pair arrive at the same secret on their own.
    """
    algorithm = "abstract"
    secret_size = 32

    def generate_keypair(self) -> KeyPair:
        raise NotImplementedError

    def derive(self, own_public: bytes, peer_public: bytes) -> bytes:
        raise NotImplementedError


class HashKeyProvider(KeyProvider):
    """
    Simulated KEM: random 128-byte keys, SHA-256 over the sorted pair.

    Both keys are public, so anyone who saw both can compute the secret.
    That's the known limit of this demo provider, not a bug in the relay.
    """
    algorithm = "Kyber-1024-sim"
    signature_algorithm = "Dilithium-3-sim"
    key_size = 128
    signing_key_size = 64
    secret_size = 32

    def generate_keypair(self) -> KeyPair:
        return KeyPair(
            private=os.urandom(self.key_size),
            public=os.urandom(self.key_size),
            algorithm=self.algorithm,
            signing_private=os.urandom(self.signing_key_size),
            signing_public=os.urandom(self.signing_key_size),
        )

    def derive(self, own_public: bytes, peer_public: bytes) -> bytes:
        low, high = canonical_order(own_public, peer_public)
        return sha256(low + high)


def canonical_order(a: bytes, b: bytes) -> Tuple[bytes, bytes]:
    """Lexicographic byte order, so the pair hashes the same from either end."""
    return (a, b) if a <= b else (b, a)


# -------------------------
# Signing & "verification"
# -------------------------

def _keyed_hash(key: bytes, message: bytes) -> str:
    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(sha256(message))
    return mac.finalize().hex()


def sign_message(signing_private: bytes, message: bytes) -> Dict[str, Any]:
    """Keyed hash of SHA-256(message) under the signing *private* key."""
    if not signing_private:
        raise ValueError("no signing key available")
    return {
        "signature": _keyed_hash(signing_private, message),
        "algorithm": HashKeyProvider.signature_algorithm,
        "messageHash": sha256(message).hex(),
        "timestamp": int(time.time() * 1000),
    }


def verify_signature(message: bytes, signature: Dict[str, Any], signer_public: bytes) -> bool:
    """
    Recompute the keyed hash with the signer's *public* key and compare.

    Kept exactly as the protocol defines it, see SIGNATURES_AUTHENTICATE_SENDER:
    a real signature fails here unless `signer_public` is actually the
    private signing key. Returns False on any malformed input.
    """
    try:
        mac = hmac.HMAC(signer_public, hashes.SHA256())
        mac.update(sha256(message))
        mac.verify(from_hex(signature["signature"]))
        return True
    except (InvalidSignature, KeyError, TypeError, ValueError):
        # Callers only care about yes/no.
        return False
