from __future__ import annotations

from typing import Any

import cbor2

from .envelope import validate_envelope


def encode(obj: Any) -> bytes:
    # Canonical form keeps fan-out payloads byte-identical for every recipient.
    return cbor2.dumps(obj, canonical=True)


def decode(data: bytes | bytearray) -> Any:
    return cbor2.loads(bytes(data))


def decode_envelope(data: bytes | bytearray) -> dict:
    """Decode and validate one inbound envelope.

    Raises ``ValueError``/``TypeError`` from validation, or the CBOR decoder's
    own error for undecodable input.
    """
    env = decode(data)
    validate_envelope(env)
    return env
