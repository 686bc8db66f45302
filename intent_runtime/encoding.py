"""
MessagePack framing for gateway payloads.

The gateway only speaks binary frames: one MessagePack map per frame with
the keys ``op``, ``d`` and, on dispatches, ``t`` and ``s``.
"""

from __future__ import annotations

from typing import Any

import msgpack

from intent_runtime.errors import ProtocolError


def encode(payload: dict[str, Any]) -> bytes:
    """Encode a gateway payload to a binary frame."""
    return msgpack.packb(payload, use_bin_type=True)


def decode(data: bytes | bytearray | memoryview) -> dict[str, Any]:
    """Decode a binary frame from the gateway.

    Raises:
        ProtocolError: If the frame is not valid MessagePack or is not a
            map carrying an integer ``op``.
    """
    try:
        payload = msgpack.unpackb(bytes(data), raw=False)
    except (ValueError, TypeError) as e:
        raise ProtocolError(f"Undecodable gateway frame: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("op"), int):
        raise ProtocolError(f"Malformed gateway frame: {payload!r}")
    return payload
