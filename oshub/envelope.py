from __future__ import annotations

import os
import time

from .constants import K_BODY, K_ID, K_SRC, K_T, K_TS, K_V, PROTOCOL_VERSION

# Required header fields: key, accepted types, name used in errors.
_HEADER = (
    (K_V, (int,), "protocol version"),
    (K_T, (int,), "message type"),
    (K_ID, (bytes, bytearray), "message id"),
    (K_TS, (int,), "timestamp"),
    (K_SRC, (bytes, bytearray), "source identity"),
)


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    msg_type: int,
    *,
    src: bytes,
    body=None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    """Build a signaling envelope. ``body`` is omitted when None."""
    env: dict[int, object] = {
        K_V: PROTOCOL_VERSION,
        K_T: int(msg_type),
        K_ID: mid or msg_id(),
        K_TS: now_ms() if ts is None else int(ts),
        K_SRC: bytes(src),
    }
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    """Check the envelope header. Bodies are checked by each handler.

    Raises ``TypeError`` for wrong shapes and ``ValueError`` for missing keys
    or unsupported values. Unknown integer keys are allowed.
    """
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env:
        # bool is an int subclass but never a valid key.
        if not isinstance(k, int) or isinstance(k, bool):
            raise TypeError("envelope keys must be integers")
        if k < 0:
            raise ValueError("envelope keys must be unsigned integers")

    for key, types, name in _HEADER:
        if key not in env:
            raise ValueError(f"missing {name} (key {key})")
        value = env[key]
        if not isinstance(value, types) or isinstance(value, bool):
            raise TypeError(f"{name} has wrong type {type(value).__name__}")

    if env[K_V] != PROTOCOL_VERSION:
        raise ValueError(f"unsupported version {env[K_V]}")
    if env[K_TS] < 0:
        raise ValueError("timestamp must be unsigned")
