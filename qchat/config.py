"""
config.py — runtime settings.

Precedence: command-line flag > QCHAT_* environment variable > default.
run_node.py applies the flags on top of load_settings() and validates
the result once more.
"""

import os
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9000


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    keygen_delay: float = 1.0    # seconds before keys are generated for a new session
    queue_size: int = 64         # per-session inbound frame queue
    log_level: str = "INFO"

    def override(self, **changes: Any) -> "Settings":
        """Copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def validate(self) -> "Settings":
        """Raise ValueError on out-of-range values; returns self."""
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.queue_size < 1:
            raise ValueError("queue size must be at least 1")
        if self.keygen_delay < 0:
            raise ValueError("key generation delay must not be negative")
        return self


def _env(env: Mapping[str, str], name: str, cast: Callable[[str], Any], default: Any) -> Any:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} has an invalid value: {raw!r}") from exc


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from QCHAT_* variables (os.environ by default)."""
    env = os.environ if env is None else env
    return Settings(
        host=_env(env, "QCHAT_HOST", str, DEFAULT_HOST),
        port=_env(env, "QCHAT_PORT", int, DEFAULT_PORT),
        keygen_delay=_env(env, "QCHAT_KEYGEN_DELAY", float, 1.0),
        queue_size=_env(env, "QCHAT_QUEUE_SIZE", int, 64),
        log_level=_env(env, "QCHAT_LOG_LEVEL", str, "INFO").upper(),
    ).validate()
