"""
cipher.py — the XOR stream cipher and the envelope it travels in.

    ciphertext[i] = plaintext[i] XOR secret[i % len(secret)]

Same function both ways. There is no MAC: flip a byte on the wire and the
receiver just decrypts garbage. It exists so the relay protocol has
something to carry, not as a recommendation.

Wire form of an envelope (what clients put in `data` / `encryptedData`):

    {"encrypted": "<lowercase hex>", "algorithm": "XOR-Demo",
     "timestamp": <ms>, "forPeer": "<id>", "format": "hex"}
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .errors import FormatError, StateError

log = logging.getLogger(__name__)

ALGORITHM = "XOR-Demo"
FORMAT_HEX = "hex"

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
# Short printable strings might be a sender that forgot to encrypt.
_PRINTABLE_RE = re.compile(r"^[\x20-\x7E\s]+$")
GUESS_MAX_LEN = 100


def now_ms() -> int:
    return int(time.time() * 1000)


def xor_stream(secret: bytes, data: bytes) -> bytes:
    """Encrypt or decrypt; XOR with a repeating key is its own inverse."""
    if not secret:
        raise StateError("No shared secret available. Perform key exchange first.")
    n = len(secret)
    return bytes(b ^ secret[i % n] for i, b in enumerate(data))


@dataclass
class Envelope:
    """One addressed unit of ciphertext. Consumed once, never stored."""
    ciphertext: bytes
    for_peer: Optional[str]
    sender_peer: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    encoding: str = FORMAT_HEX
    algorithm: str = ALGORITHM

    def to_wire(self) -> Dict[str, Any]:
        wire = {
            "encrypted": self.ciphertext.hex(),
            "algorithm": self.algorithm,
            "timestamp": self.created_at,
            "forPeer": self.for_peer,
            "format": self.encoding,
        }
        if self.sender_peer:
            wire["senderPeer"] = self.sender_peer
        return wire

    @classmethod
    def from_wire(cls, wire: Dict[str, Any]) -> "Envelope":
        """Parse a wire dict. FormatError if the ciphertext can't be decoded."""
        if not isinstance(wire, dict) or "encrypted" not in wire:
            raise FormatError("Missing required encryption fields")
        decoded = decode_ciphertext(wire["encrypted"], wire.get("format"))
        if isinstance(decoded, Unrecognized):
            raise FormatError(f"Unsupported encrypted data format: {decoded.reason}")
        return cls(
            ciphertext=decoded.data,
            for_peer=wire.get("forPeer"),
            sender_peer=wire.get("senderPeer"),
            created_at=wire.get("timestamp") or now_ms(),
            encoding=decoded.encoding,
            algorithm=wire.get("algorithm", ALGORITHM),
        )


# ---------------------------
# Ciphertext decoding
# ---------------------------

@dataclass(frozen=True)
class Decoded:
    data: bytes
    encoding: str  # "hex" | "array" | "bytes"


@dataclass(frozen=True)
class Unrecognized:
    reason: str


DecodeResult = Union[Decoded, Unrecognized]


def decode_ciphertext(value: Any, fmt: Optional[str] = None) -> DecodeResult:
    """
    Turn whatever a client sent as `encrypted` into bytes, or say why not.

    Accepts hex strings, lists of byte values and raw bytes. Text that
    isn't hex is *not* coerced to bytes; it comes back Unrecognized.
    """
    if isinstance(value, (bytes, bytearray)):
        return Decoded(bytes(value), "bytes")

    if isinstance(value, list):
        if all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value):
            return Decoded(bytes(value), "array")
        return Unrecognized("array holds values outside 0..255")

    if isinstance(value, str):
        if fmt == FORMAT_HEX or _HEX_RE.match(value):
            try:
                return Decoded(bytes.fromhex(value), FORMAT_HEX)
            except ValueError:
                return Unrecognized("invalid hex string")
        return Unrecognized("string is not hex")

    return Unrecognized(f"unsupported type {type(value).__name__}")


# ---------------------------
# Encrypt / decrypt API
# ---------------------------

def encrypt(secret: bytes, plaintext: str, for_peer: Optional[str] = None,
            sender_peer: Optional[str] = None) -> Envelope:
    """UTF-8 encode, XOR under `secret`, wrap in an Envelope."""
    ct = xor_stream(secret, plaintext.encode("utf-8"))
    return Envelope(ciphertext=ct, for_peer=for_peer, sender_peer=sender_peer)


def decrypt(secret: bytes, wire: Union[Envelope, Dict[str, Any]]) -> str:
    """
    Reverse of encrypt(). Takes an Envelope or its wire dict.

    Raises:
        FormatError: unknown algorithm, undecodable ciphertext, or the
            result isn't UTF-8 (usually the wrong secret).
        StateError: empty secret.
    """
    env = wire if isinstance(wire, Envelope) else Envelope.from_wire(wire)
    if env.algorithm != ALGORITHM:
        raise FormatError(f"Unsupported encryption algorithm: {env.algorithm}")
    try:
        return xor_stream(secret, env.ciphertext).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError(f"Decrypted bytes are not UTF-8: {exc}") from exc


def guess_plaintext(wire: Any) -> Optional[str]:
    """
    Diagnostic only: maybe the sender never encrypted this at all.

    Returns the raw `encrypted` string when it's short printable text that
    isn't hex. Whatever comes back is UNVERIFIED and must never be treated
    as the decrypted message.
    """
    if not isinstance(wire, dict):
        return None
    raw = wire.get("encrypted")
    if not isinstance(raw, str) or len(raw) >= GUESS_MAX_LEN:
        return None
    if _HEX_RE.match(raw) or not _PRINTABLE_RE.match(raw):
        return None
    log.warning("Showing possibly unencrypted payload (%d chars); content is unverified", len(raw))
    return raw
