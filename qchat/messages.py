"""
messages.py — message types, client-message decoding and server-message builders.

What this module does:
- Names every `type` string that crosses the wire (MessageType).
- Decodes client→server dicts into one small dataclass per variant, so the
  dispatcher matches on classes instead of string switches. Anything we
  don't know becomes UnrecognizedMessage rather than an exception; the
  dispatcher decides what to do with it (ProtocolError path).
- Builds server→client dicts. Every builder stamps `type` and `timestamp`.
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import ProtocolError


class MessageType(str, Enum):
    # server -> client
    CONNECTED = "connected"
    KEY_GENERATION_START = "key_generation_start"
    KEYS_GENERATED = "keys_generated"
    PEER_PUBLIC_KEY = "peer_public_key"
    KEY_EXCHANGE_COMPLETE = "key_exchange_complete"
    PEER_READY = "peer_ready"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    SECURITY_INFO = "security_info"
    USER_LEFT = "user_left"
    ERROR = "error"
    SERVER_SHUTDOWN = "server_shutdown"
    # client -> server
    GENERATE_KEYS = "generate_keys"
    PUBLIC_KEY = "public_key"
    ENCRYPTED_MESSAGE = "encrypted_message"
    ENCRYPTED_GROUP_MESSAGE = "encrypted_group_message"
    GET_SECURITY_INFO = "get_security_info"


def iso_now() -> str:
    """UTC timestamp in ISO-8601, millisecond precision, 'Z' suffix."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


# -----------------------
# Client -> server variants
# -----------------------

@dataclass(frozen=True)
class PublicKeyMessage:
    peer_id: Optional[str]
    peer_public_key: Optional[str]  # lowercase hex


@dataclass(frozen=True)
class EncryptedMessage:
    encrypted_data: Dict[str, Any]


@dataclass(frozen=True)
class GroupItem:
    for_peer: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class GroupMessage:
    items: List[GroupItem] = field(default_factory=list)


@dataclass(frozen=True)
class GenerateKeysRequest:
    pass


@dataclass(frozen=True)
class SecurityInfoRequest:
    pass


@dataclass(frozen=True)
class UnrecognizedMessage:
    type: Optional[str]
    raw: Dict[str, Any]


ClientMessage = Union[
    PublicKeyMessage, EncryptedMessage, GroupMessage,
    GenerateKeysRequest, SecurityInfoRequest, UnrecognizedMessage,
]


def _is_hex(value: str) -> bool:
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return bool(value)


def _decode_public_key(obj: Dict[str, Any]) -> PublicKeyMessage:
    peer_id = obj.get("peerId")
    key = obj.get("peerPublicKey")
    if peer_id is not None and not isinstance(peer_id, str):
        raise ProtocolError("'peerId' must be a string")
    if key is not None and (not isinstance(key, str) or not _is_hex(key)):
        raise ProtocolError("'peerPublicKey' must be a hex string")
    if not peer_id and not key:
        raise ProtocolError("public_key needs 'peerId' or 'peerPublicKey'")
    return PublicKeyMessage(peer_id=peer_id or None, peer_public_key=key.lower() if key else None)


def _decode_encrypted(obj: Dict[str, Any]) -> EncryptedMessage:
    data = obj.get("encryptedData")
    if not isinstance(data, dict):
        raise ProtocolError("'encryptedData' must be an object")
    return EncryptedMessage(encrypted_data=data)


def _decode_group(obj: Dict[str, Any]) -> GroupMessage:
    raw_items = obj.get("encryptedMessages")
    if not isinstance(raw_items, list):
        raise ProtocolError("'encryptedMessages' must be a list")
    items = []
    for i, item in enumerate(raw_items):
        if not isinstance(item, dict):
            raise ProtocolError(f"encryptedMessages[{i}] must be an object")
        for_peer, data = item.get("forPeer"), item.get("data")
        if not isinstance(for_peer, str) or not for_peer:
            raise ProtocolError(f"encryptedMessages[{i}].forPeer must be a string")
        if not isinstance(data, dict):
            raise ProtocolError(f"encryptedMessages[{i}].data must be an object")
        items.append(GroupItem(for_peer=for_peer, data=data))
    return GroupMessage(items=items)


_DECODERS = {
    MessageType.PUBLIC_KEY.value: _decode_public_key,
    MessageType.ENCRYPTED_MESSAGE.value: _decode_encrypted,
    MessageType.ENCRYPTED_GROUP_MESSAGE.value: _decode_group,
    MessageType.GENERATE_KEYS.value: lambda obj: GenerateKeysRequest(),
    MessageType.GET_SECURITY_INFO.value: lambda obj: SecurityInfoRequest(),
}


def decode_message(obj: Dict[str, Any]) -> ClientMessage:
    """
    Map a client frame onto its variant.

    Raises ProtocolError when a *known* type has a malformed body. Unknown
    or missing types come back as UnrecognizedMessage.
    """
    msg_type = obj.get("type")
    decoder = _DECODERS.get(msg_type) if isinstance(msg_type, str) else None
    if decoder is None:
        return UnrecognizedMessage(type=msg_type if isinstance(msg_type, str) else None, raw=obj)
    return decoder(obj)


# -----------------------
# Server -> client builders
# -----------------------

def _msg(msg_type: MessageType, **fields: Any) -> Dict[str, Any]:
    out = {"type": msg_type.value}
    out.update({k: v for k, v in fields.items() if v is not None})
    out["timestamp"] = iso_now()
    return out


def connected(client_id: str) -> Dict[str, Any]:
    return _msg(MessageType.CONNECTED, clientId=client_id,
                message="Connected to relay server")


def key_generation_start() -> Dict[str, Any]:
    return _msg(MessageType.KEY_GENERATION_START, message="Generating key pair...")


def keys_generated(public_key: str, algorithm: str, key_size: Optional[str] = None) -> Dict[str, Any]:
    return _msg(MessageType.KEYS_GENERATED, publicKey=public_key, algorithm=algorithm,
                keySize=key_size, message="Keys generated successfully")


def peer_public_key(client_id: str, public_key: str, algorithm: str) -> Dict[str, Any]:
    return _msg(MessageType.PEER_PUBLIC_KEY, clientId=client_id,
                publicKey=public_key, algorithm=algorithm)


def key_exchange_complete(peer_id: Optional[str], security_info: Dict[str, Any]) -> Dict[str, Any]:
    return _msg(MessageType.KEY_EXCHANGE_COMPLETE, peerId=peer_id, securityInfo=security_info,
                message="Secure communication established")


def peer_ready(peer_id: str) -> Dict[str, Any]:
    return _msg(MessageType.PEER_READY, peerId=peer_id,
                message="Peer is ready for secure communication")


def message_received(sender_id: str, encrypted_data: Dict[str, Any], addressed: bool) -> Dict[str, Any]:
    """Addressed deliveries name the sender `fromPeer`; legacy broadcasts use `from`."""
    if addressed:
        return _msg(MessageType.MESSAGE_RECEIVED, fromPeer=sender_id, encryptedData=encrypted_data)
    out = _msg(MessageType.MESSAGE_RECEIVED, encryptedData=encrypted_data)
    out["from"] = sender_id
    return out


def message_sent(delivered: Optional[int] = None, requested: Optional[int] = None) -> Dict[str, Any]:
    return _msg(MessageType.MESSAGE_SENT, delivered=delivered, requested=requested,
                message="Message sent securely")


def security_info(info: Dict[str, Any]) -> Dict[str, Any]:
    return _msg(MessageType.SECURITY_INFO, securityInfo=info)


def user_left(client_id: Optional[str] = None) -> Dict[str, Any]:
    return _msg(MessageType.USER_LEFT, clientId=client_id, message="A user left the chat")


def error(message: str, detail: Optional[str] = None, kind: Optional[str] = None) -> Dict[str, Any]:
    return _msg(MessageType.ERROR, message=message, error=detail, kind=kind)


def server_shutdown() -> Dict[str, Any]:
    return _msg(MessageType.SERVER_SHUTDOWN, message="Server is shutting down")


# -----------------------
# Client -> server builders (used by ClientNode)
# -----------------------

def public_key(peer_id: str, peer_public_key_hex: str) -> Dict[str, Any]:
    return _msg(MessageType.PUBLIC_KEY, peerId=peer_id, peerPublicKey=peer_public_key_hex)


def encrypted_message(encrypted_data: Dict[str, Any]) -> Dict[str, Any]:
    return _msg(MessageType.ENCRYPTED_MESSAGE, encryptedData=encrypted_data)


def encrypted_group_message(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """`items` are already-wire-shaped `{forPeer, data}` dicts."""
    return _msg(MessageType.ENCRYPTED_GROUP_MESSAGE, encryptedMessages=items)


def get_security_info() -> Dict[str, Any]:
    return _msg(MessageType.GET_SECURITY_INFO)


def generate_keys() -> Dict[str, Any]:
    return _msg(MessageType.GENERATE_KEYS)
