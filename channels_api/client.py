# =============================================================================
# channels-api -- Streaming API Client
# =============================================================================
#
# Primary public API.  Composes the transport, send queue and dispatcher to
# correlate requests with responses by request_id and to route push events
# to long-lived subscriptions.
# =============================================================================

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Callable
from uuid import uuid4

from ._logging import logger
from .constants import FIELD_ACTION, FIELD_DATA, FIELD_ERRORS, FIELD_PK, FIELD_STATUS
from .dispatcher import Dispatcher
from .errors import (
    ChannelsConnectionError,
    ChannelsProtocolError,
    ChannelsTimeoutError,
    ChannelsUsageError,
    RequestError,
)
from .send_queue import SendQueue
from .serializer import JsonSerializer, Serializer
from .transport import Transport, WebSocketTransport
from .types import (
    SUBSCRIBABLE_ACTIONS,
    Action,
    ApiState,
    ChannelsApiOptions,
    ConnectionStats,
    Envelope,
    Selector,
    TransportEvent,
)

# Type alias for subscription handlers (sync or async)
EventHandler = Callable[[Any], Any]


def is_success(response: Any, *, allow_empty: bool = False) -> bool:
    """Whether *response* is a successful answer to a request.

    A success has no non-empty ``errors``, a 2xx ``response_status`` when
    one is given, and a ``data`` field (optional when *allow_empty*).
    """
    if not isinstance(response, Mapping):
        return False
    if response.get(FIELD_ERRORS):
        return False
    status = response.get(FIELD_STATUS)
    if status is not None:
        if not isinstance(status, int) or not 200 <= status < 300:
            return False
    return FIELD_DATA in response or allow_empty


class Subscription:
    """Cancellation handle for a subscription.

    Returned next to the acknowledgement future by
    :meth:`ChannelsApi.subscribe`. The subscription stays live until
    :meth:`cancel` is called.
    """

    def __init__(
        self,
        api: ChannelsApi,
        stream: str,
        action: str,
        pk: Any,
        listener_id: int,
    ) -> None:
        self._api = api
        self.stream = stream
        self.action = action
        self.pk = pk
        self.listener_id = listener_id

    def __repr__(self) -> str:
        return (
            f"Subscription(stream={self.stream!r}, action={self.action!r}, "
            f"pk={self.pk!r}, active={self.active})"
        )

    @property
    def active(self) -> bool:
        return self.listener_id in self._api._dispatcher

    @property
    def selector(self) -> Selector:
        return Selector(stream=self.stream, action=self.action, pk=self.pk)

    def request_payload(self, action: Action) -> dict[str, Any]:
        data: dict[str, Any] = {FIELD_ACTION: self.action}
        if self.pk is not None:
            data[FIELD_PK] = self.pk
        return {FIELD_ACTION: action.value, FIELD_DATA: data}

    def cancel(self) -> bool:
        """Stop receiving events. Returns True only on the first call."""
        return self._api._cancel_subscription(self)


class ChannelsApi:
    """Request/response and subscription API over one multiplexed socket.

    Args:
        url: WebSocket server URL. Required unless *transport* is given.
        transport: A ready-made transport; defaults to
            :class:`~channels_api.transport.WebSocketTransport` on *url*.
        serializer: Frame codec; defaults to
            :class:`~channels_api.serializer.JsonSerializer`.
        options: Hooks, timeouts and transport tuning.

    Example::

        async with ChannelsApi("ws://localhost:8000/api/") as api:
            todo = await api.create("todos", {"text": "a"})
            ack, sub = api.subscribe("todos", "update", print, pk=todo["id"])
            await ack
            ...
            sub.cancel()
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        transport: Transport | None = None,
        serializer: Serializer | None = None,
        options: ChannelsApiOptions | None = None,
    ) -> None:
        self._options = options or ChannelsApiOptions()
        if transport is None:
            if url is None:
                raise ChannelsUsageError("Either url or transport is required")
            transport = WebSocketTransport(
                url,
                reconnect=self._options.reconnect,
                extra_headers=self._options.extra_headers,
                debug=self._options.debug,
            )
        self._transport = transport
        self._serializer = serializer or JsonSerializer()
        self._dispatcher = Dispatcher(on_error=self._options.on_handler_error)
        self._send_queue = SendQueue(max_size=self._options.max_queue_size)

        self._initialized = False
        self._opened = False
        self._closed = False

        # request_id -> (listener id, caller future)
        self._pending: dict[str, tuple[int, asyncio.Future[Any]]] = {}
        # listener id -> subscription
        self._subscriptions: dict[int, Subscription] = {}

        self._stats = ConnectionStats()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    # -- Lifecycle ------------------------------------------------------------

    def initialize(self) -> None:
        """Wire transport events to the send queue and dispatcher.

        Must be called exactly once before any request or subscription.
        """
        if self._initialized:
            raise ChannelsUsageError("ChannelsApi is already initialized")
        self._send_queue.initialize(self._transport.send, self._can_send)
        self._transport.on(TransportEvent.OPEN, self._on_open)
        self._transport.on(TransportEvent.CONNECT, self._on_connect)
        self._transport.on(TransportEvent.RECONNECT, self._on_reconnect)
        self._transport.on(TransportEvent.MESSAGE, self._on_message)
        self._transport.on(TransportEvent.CLOSE, self._on_close)
        self._initialized = True

    async def connect(self) -> None:
        """Open the transport. Requests made before this are queued."""
        self._require_initialized()
        self._closed = False
        await self._transport.connect()

    async def close(self) -> None:
        """Close the transport and reject every pending request."""
        self._closed = True
        for task in self._background_tasks:
            task.cancel()
        self._background_tasks.clear()
        self._send_queue.clear()

        pending = list(self._pending.values())
        self._pending.clear()
        for _, future in pending:
            if not future.done():
                future.set_exception(ChannelsConnectionError("Client closed"))
        await self._transport.close()

    async def __aenter__(self) -> ChannelsApi:
        if not self._initialized:
            self.initialize()
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ApiState:
        if not self._initialized:
            return ApiState.UNINITIALIZED
        if not self._opened:
            return ApiState.INITIALIZING
        return ApiState.CONNECTED if self._can_send() else ApiState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self.state == ApiState.CONNECTED

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    @property
    def options(self) -> ChannelsApiOptions:
        return self._options

    # -- Requests -------------------------------------------------------------

    def request(
        self,
        stream: str,
        payload: Any,
        request_id: str | None = None,
        *,
        timeout: float | None = None,
    ) -> asyncio.Future[Any]:
        """Send *payload* on *stream* and return a future for the response.

        The future resolves with the response ``data`` and is rejected with
        :class:`~channels_api.errors.RequestError` (carrying the whole
        response) when the server reports a failure. Without a *timeout*
        (or ``options.request_timeout``) it stays pending until answered.

        Raises:
            ChannelsUsageError: Before :meth:`initialize`, or when
                *request_id* is already pending.
        """
        return self._request(stream, payload, request_id, timeout=timeout)

    def list(self, stream: str, params: Any = None, **kwargs: Any) -> asyncio.Future[Any]:
        """List records on *stream*, optionally filtered by *params*."""
        payload: dict[str, Any] = {FIELD_ACTION: Action.LIST.value}
        if params is not None:
            payload[FIELD_DATA] = params
        return self._request(stream, payload, **kwargs)

    def create(self, stream: str, data: Any, **kwargs: Any) -> asyncio.Future[Any]:
        """Create a record; resolves with the stored record."""
        payload = {FIELD_ACTION: Action.CREATE.value, FIELD_DATA: data}
        return self._request(stream, payload, **kwargs)

    def retrieve(self, stream: str, pk: Any, **kwargs: Any) -> asyncio.Future[Any]:
        payload = {FIELD_ACTION: Action.RETRIEVE.value, FIELD_PK: pk}
        return self._request(stream, payload, **kwargs)

    def update(self, stream: str, pk: Any, data: Any, **kwargs: Any) -> asyncio.Future[Any]:
        payload = {FIELD_ACTION: Action.UPDATE.value, FIELD_PK: pk, FIELD_DATA: data}
        return self._request(stream, payload, **kwargs)

    def delete(self, stream: str, pk: Any, **kwargs: Any) -> asyncio.Future[Any]:
        """Delete a record; resolves with ``None`` or the server's empty data."""
        payload = {FIELD_ACTION: Action.DELETE.value, FIELD_PK: pk}
        return self._request(stream, payload, allow_empty=True, **kwargs)

    def _request(
        self,
        stream: str,
        payload: Any,
        request_id: str | None = None,
        *,
        timeout: float | None = None,
        allow_empty: bool = False,
    ) -> asyncio.Future[Any]:
        self._require_initialized()
        if request_id is None:
            request_id = uuid4().hex
        elif request_id in self._pending:
            raise ChannelsUsageError(f"Request id {request_id!r} is already pending")

        loop = asyncio.get_running_loop()
        encoded = self._encode(stream, payload, request_id)
        future: asyncio.Future[Any] = loop.create_future()

        def on_response(response: Any) -> None:
            self._pending.pop(request_id, None)
            if future.done():
                return
            if is_success(response, allow_empty=allow_empty):
                future.set_result(response.get(FIELD_DATA))
            else:
                future.set_exception(RequestError(response))

        listener_id = self._dispatcher.once(Selector(request_id=request_id), on_response)
        self._pending[request_id] = (listener_id, future)
        future.add_done_callback(
            lambda f: self._on_request_done(request_id, listener_id, f)
        )

        if timeout is None:
            timeout = self._options.request_timeout
        if timeout is not None:
            timer = loop.call_later(timeout, self._expire, future, request_id, timeout)
            future.add_done_callback(lambda _: timer.cancel())

        self._fire_task(self._send(encoded))
        return future

    def _encode(self, stream: str, payload: Any, request_id: str) -> str | bytes:
        """Run the preprocessing hooks and encode the envelope."""
        hook = self._options.preprocess_payload
        if hook is not None:
            replaced = hook(stream, payload, request_id)
            if replaced is not None:
                payload = replaced

        message: Any = Envelope(stream, payload, request_id).to_dict()
        message_hook = self._options.preprocess_message
        if message_hook is not None:
            replaced = message_hook(message)
            if replaced is not None:
                message = replaced
        return self._serializer.encode(message)

    def _on_request_done(
        self, request_id: str, listener_id: int, future: asyncio.Future[Any]
    ) -> None:
        # Covers caller cancellation, timeout and close
        self._dispatcher.cancel(listener_id)
        entry = self._pending.get(request_id)
        if entry is not None and entry[1] is future:
            del self._pending[request_id]

    def _expire(self, future: asyncio.Future[Any], request_id: str, timeout: float) -> None:
        if not future.done():
            logger.debug("Request %s timed out after %.1fs", request_id, timeout)
            future.set_exception(
                ChannelsTimeoutError(f"No response to {request_id} within {timeout}s")
            )

    async def _send(self, encoded: str | bytes) -> None:
        if not await self._send_queue.send(encoded):
            self._stats.messages_queued += 1
            logger.debug("Transport unavailable, frame queued (%d waiting)", self._send_queue.size)

    # -- Subscriptions --------------------------------------------------------

    def subscribe(
        self,
        stream: str,
        action: str | Action,
        handler: EventHandler,
        pk: Any = None,
        *,
        request_id: str | None = None,
        timeout: float | None = None,
    ) -> tuple[asyncio.Future[Any], Subscription]:
        """Subscribe to *action* events on *stream*, optionally for one *pk*.

        *handler* is called with every matching push event until the
        returned :class:`Subscription` is cancelled. Coroutine handlers are
        scheduled as tasks.

        Returns:
            ``(ack, subscription)``: a future settled by the server's
            acknowledgement exactly like :meth:`request`, and the
            cancellation handle.
        """
        self._require_initialized()
        try:
            action = Action(action)
        except ValueError:
            raise ChannelsUsageError(f"Unknown action {action!r}") from None
        if action not in SUBSCRIBABLE_ACTIONS:
            raise ChannelsUsageError(f"Cannot subscribe to {action.value!r} events")

        listener_id = self._dispatcher.listen(
            Selector(stream=stream, action=action.value, pk=pk),
            self._wrap_handler(handler),
        )
        subscription = Subscription(self, stream, action.value, pk, listener_id)
        try:
            ack = self._request(
                stream,
                subscription.request_payload(Action.SUBSCRIBE),
                request_id,
                timeout=timeout,
            )
        except BaseException:
            self._dispatcher.cancel(listener_id)
            raise
        self._subscriptions[listener_id] = subscription
        return ack, subscription

    def _cancel_subscription(self, subscription: Subscription) -> bool:
        if not self._dispatcher.cancel(subscription.listener_id):
            return False
        self._subscriptions.pop(subscription.listener_id, None)
        if self._options.unsubscribe_on_cancel and not self._closed:
            encoded = self._encode(
                subscription.stream,
                subscription.request_payload(Action.UNSUBSCRIBE),
                uuid4().hex,
            )
            self._fire_task(self._send(encoded))
        return True

    def _wrap_handler(self, handler: EventHandler) -> Callable[[Any], None]:
        def invoke(payload: Any) -> None:
            result = handler(payload)
            if asyncio.iscoroutine(result):
                self._fire_task(result)

        return invoke

    def _resubscribe(self) -> None:
        """Announce every live subscription again on a fresh connection."""
        subscriptions = list(self._subscriptions.values())
        if not subscriptions:
            return
        logger.info("Re-subscribing %d subscriptions", len(subscriptions))
        for subscription in subscriptions:
            encoded = self._encode(
                subscription.stream,
                subscription.request_payload(Action.SUBSCRIBE),
                uuid4().hex,
            )
            self._fire_task(self._send(encoded))

    # -- Transport events -----------------------------------------------------

    def _can_send(self) -> bool:
        return bool(self._transport.is_connected)

    def _on_open(self) -> None:
        self._opened = True
        self._fire_task(self._send_queue.process_queue())

    def _on_connect(self) -> None:
        logger.info("Connected")

    def _on_reconnect(self) -> None:
        self._stats.reconnect_count += 1
        logger.info("Reconnected (count=%d)", self._stats.reconnect_count)
        self._fire_task(self._send_queue.process_queue())
        if self._options.resubscribe_on_reconnect:
            self._resubscribe()

    def _on_close(self, code: int | None = None, reason: str = "") -> None:
        logger.debug("Transport closed (code=%s reason=%s)", code, reason)

    def _on_message(self, data: str | bytes) -> None:
        self._stats.messages_received += 1
        if isinstance(data, bytes):
            self._stats.bytes_received += len(data)
        else:
            self._stats.bytes_received += len(data.encode("utf-8"))

        try:
            decoded = self._serializer.decode(data)
        except ChannelsProtocolError as exc:
            self._stats.decode_errors += 1
            logger.warning("Dropping undecodable frame: %s", exc)
            return

        if not self._dispatcher.dispatch(decoded):
            logger.debug("No listener for frame: %r", decoded)

    # -- Internal -------------------------------------------------------------

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ChannelsUsageError("ChannelsApi.initialize() must be called first")

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed: %s", task.exception())

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return client statistics."""
        return {
            "state": self.state.value,
            "pending_requests": len(self._pending),
            "subscriptions": len(self._subscriptions),
            "messages_received": self._stats.messages_received,
            "messages_sent": self._send_queue.messages_sent,
            "messages_queued": self._stats.messages_queued,
            "bytes_received": self._stats.bytes_received,
            "bytes_sent": self._send_queue.bytes_sent,
            "decode_errors": self._stats.decode_errors,
            "reconnect_count": self._stats.reconnect_count,
            "dispatcher": self._dispatcher.get_stats(),
            "send_queue": self._send_queue.get_stats(),
        }
