"""
errors.py — the three ways a request can go wrong in the relay.

None of these ever closes a connection. The dispatcher catches them per
message, logs them and answers the requesting session with an `error`
frame whose `kind` field is the class's `kind`.
"""


class QChatError(Exception):
    """Base class; `kind` ends up in the `error` frame sent to the client."""
    kind = "internal"


class ProtocolError(QChatError):
    """Malformed frame body, missing field, or unknown message type."""
    kind = "protocol"


class StateError(QChatError):
    """Action asked for before its prerequisite (no key pair, not ready, ...)."""
    kind = "state"


class FormatError(QChatError):
    """Ciphertext in an encoding or algorithm we don't understand."""
    kind = "format"
