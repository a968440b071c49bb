# =============================================================================
# channels-api -- Serializers
# =============================================================================
#
# Encode envelopes to wire frames and decode inbound frames to structured
# values.  JSON text frames by default; MessagePack binary frames optional.
# =============================================================================

from __future__ import annotations

import json
from typing import Any, Protocol

from .constants import MAX_MESSAGE_SIZE
from .errors import ChannelsProtocolError

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


try:
    import msgpack

    _HAS_MSGPACK = True
except ImportError:
    _HAS_MSGPACK = False


class Serializer(Protocol):
    """Stateless codec between structured values and wire frames."""

    def encode(self, value: Any) -> str | bytes: ...

    def decode(self, data: str | bytes) -> Any: ...


def _check_size(data: str | bytes) -> None:
    size = len(data.encode("utf-8")) if isinstance(data, str) else len(data)
    if size > MAX_MESSAGE_SIZE:
        raise ChannelsProtocolError(
            f"Frame exceeds max size ({size} > {MAX_MESSAGE_SIZE} bytes)"
        )


class JsonSerializer:
    """JSON text frames. Uses ``orjson`` when installed."""

    def encode(self, value: Any) -> str:
        return _json_dumps(value)

    def decode(self, data: str | bytes) -> Any:
        _check_size(data)
        try:
            return _json_loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
            raise ChannelsProtocolError(f"Invalid JSON frame: {exc}") from exc


class MsgPackSerializer:
    """MessagePack binary frames.  Requires the ``msgpack`` package.

    Text frames are still accepted on decode and parsed as JSON, so a
    server that answers in JSON keeps working.
    """

    def __init__(self) -> None:
        if not _HAS_MSGPACK:
            raise ImportError(
                "msgpack package required: pip install channels-api[msgpack]"
            )

    @staticmethod
    def available() -> bool:
        return _HAS_MSGPACK

    def encode(self, value: Any) -> bytes:
        return msgpack.packb(value, use_bin_type=True)

    def decode(self, data: str | bytes) -> Any:
        _check_size(data)
        if isinstance(data, str):
            return JsonSerializer().decode(data)
        try:
            return msgpack.unpackb(data, raw=False)
        except ValueError as exc:
            raise ChannelsProtocolError(f"Invalid msgpack frame: {exc}") from exc
