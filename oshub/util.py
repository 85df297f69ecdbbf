from __future__ import annotations

import os
import secrets

from .constants import ID_ALPHABET


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def random_token(length: int, alphabet: str = ID_ALPHABET) -> str:
    if length <= 0:
        raise ValueError("token length must be positive")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def fmt_conn(conn, *, prefix: int = 12) -> str:
    if isinstance(conn, (bytes, bytearray)):
        s = bytes(conn).hex()
        return s if prefix <= 0 else s[: min(prefix, len(s))]
    return "-"


def parse_conn_hex(text: str) -> bytes:
    s = str(text).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    try:
        b = bytes.fromhex(s)
    except ValueError as e:
        raise ValueError(f"invalid connection id {text!r}: {e}") from e
    if not b:
        raise ValueError("connection id must not be empty")
    return b
