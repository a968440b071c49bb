"""Streaming CRUD and subscription client over a single reconnecting WebSocket.

Async usage::

    from channels_api import connect

    async with connect("ws://localhost:8000/api/") as api:
        todo = await api.create("todos", {"text": "a"})
        ack, subscription = api.subscribe("todos", "update", print, pk=todo["id"])
        await ack
        ...
        subscription.cancel()

Sync usage::

    from channels_api import SyncChannelsApi

    api = SyncChannelsApi("ws://localhost:8000/api/")
    api.connect()
    todos = api.list("todos")
    api.close()

Optional extras::

    pip install channels-api[msgpack]   # MessagePack frames
    pip install channels-api[all]       # msgpack + orjson
"""

from ._version import __version__
from .client import ChannelsApi, Subscription
from .dispatcher import Dispatcher, Listener
from .errors import (
    ChannelsApiError,
    ChannelsConnectionError,
    ChannelsProtocolError,
    ChannelsTimeoutError,
    ChannelsUsageError,
    RequestError,
)
from .send_queue import SendQueue
from .serializer import JsonSerializer, MsgPackSerializer, Serializer
from .sync_client import SyncChannelsApi, SyncSubscription
from .transport import Transport, WebSocketTransport
from .types import (
    Action,
    ApiState,
    ChannelsApiOptions,
    Envelope,
    ReconnectConfig,
    Selector,
)


def connect(
    url: str,
    **kwargs,
) -> ChannelsApi:
    """Create a client for *url*.

    Use as an async context manager, which initializes, connects and
    closes it. Keyword arguments are forwarded to :class:`ChannelsApi`
    (``transport``, ``serializer``, ``options``).

    Args:
        url: WebSocket server URL, e.g. ``"ws://localhost:8000/api/"``.
        **kwargs: Passed to :class:`ChannelsApi`.

    Returns:
        A :class:`ChannelsApi` instance.

    Raises:
        ChannelsConnectionError: If the connection cannot be established
            (raised on entering the context).
    """
    return ChannelsApi(url, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "ChannelsApi",
    "SyncChannelsApi",
    "Subscription",
    "SyncSubscription",
    "Dispatcher",
    "Listener",
    "SendQueue",
    "Serializer",
    "JsonSerializer",
    "MsgPackSerializer",
    "Transport",
    "WebSocketTransport",
    "Action",
    "ApiState",
    "ChannelsApiOptions",
    "Envelope",
    "ReconnectConfig",
    "Selector",
    "ChannelsApiError",
    "ChannelsUsageError",
    "ChannelsConnectionError",
    "ChannelsTimeoutError",
    "ChannelsProtocolError",
    "RequestError",
]
