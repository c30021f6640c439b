"""
Frame codecs for the push channel.

Clients may speak JSON over text frames or MessagePack over binary frames;
the server answers each connection in the format it last received. Both
decoders enforce the same size limits and require a top-level map.
"""

import json
from datetime import datetime
from enum import StrEnum
from typing import Any

import msgpack


class FrameFormat(StrEnum):
    JSON = "json"
    MSGPACK = "msgpack"


class DecodeError(Exception):
    """Error raised when an incoming frame cannot be decoded."""


# Size limits to prevent resource exhaustion from malicious payloads.
MAX_BUFFER_LEN = 256 * 1024  # 256KB total payload
MAX_STR_LEN = 64 * 1024  # 64KB per string
MAX_BIN_LEN = 64 * 1024  # 64KB per binary
MAX_ARRAY_LEN = 1024  # max array elements
MAX_MAP_LEN = 256  # max map entries
MAX_EXT_LEN = 1024  # max extension data


def _to_wire(obj: object) -> object:
    """
    Recursively normalise a payload for either codec.

    Integer dict keys become strings (MessagePack strict mode only allows
    string keys) and datetimes become ISO-8601 strings.
    """
    if isinstance(obj, dict):
        return {str(k) if isinstance(k, int) else k: _to_wire(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_wire(item) for item in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    return obj


def encode(data: dict[str, Any]) -> bytes:
    """
    Encode a dict to MessagePack bytes.
    """
    return msgpack.packb(_to_wire(data))


def encode_json(data: dict[str, Any]) -> str:
    return json.dumps(_to_wire(data), separators=(",", ":"))


def decode(data: bytes) -> dict[str, Any]:
    """
    Decode MessagePack bytes to a dict.

    Raises DecodeError if data is invalid, not a dict, or exceeds size limits.
    """
    if len(data) > MAX_BUFFER_LEN:
        raise DecodeError(f"payload too large: {len(data)} bytes (max {MAX_BUFFER_LEN})")
    try:
        result = msgpack.unpackb(
            data,
            raw=False,
            max_str_len=MAX_STR_LEN,
            max_bin_len=MAX_BIN_LEN,
            max_array_len=MAX_ARRAY_LEN,
            max_map_len=MAX_MAP_LEN,
            max_ext_len=MAX_EXT_LEN,
        )
    except (msgpack.UnpackException, ValueError) as e:
        raise DecodeError(f"failed to decode MessagePack data: {e}") from e

    return _require_map(result)


def decode_json(text: str) -> dict[str, Any]:
    """
    Decode a JSON text frame to a dict, with the same limits as ``decode``.
    """
    if len(text.encode()) > MAX_BUFFER_LEN:
        raise DecodeError(f"payload too large (max {MAX_BUFFER_LEN} bytes)")
    try:
        result = json.loads(text)
    except ValueError as e:
        raise DecodeError(f"failed to decode JSON data: {e}") from e

    return _require_map(result)


def _require_map(result: object) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise DecodeError(f"expected dict, got {type(result).__name__}")
    return result
