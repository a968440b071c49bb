# =============================================================================
# channels-api -- Synchronous Wrapper
# =============================================================================
#
# Thread-based wrapper around ChannelsApi for blocking usage.
# =============================================================================

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import Any, Callable

from ._logging import logger
from .client import ChannelsApi, Subscription
from .errors import ChannelsConnectionError, ChannelsTimeoutError
from .types import Action, ApiState, ChannelsApiOptions

DEFAULT_TIMEOUT = 30.0


class SyncSubscription:
    """Thread-safe cancellation handle for a blocking subscription."""

    def __init__(self, loop: asyncio.AbstractEventLoop, subscription: Subscription) -> None:
        self._loop = loop
        self._subscription = subscription

    @property
    def active(self) -> bool:
        return self._subscription.active

    def cancel(self, timeout: float = 5.0) -> bool:
        """Cancel the subscription. Returns True only on the first call.

        Safe to call from a subscription handler, which runs on the loop
        thread; the cancel then happens in place.
        """
        if self._loop.is_closed():
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            return self._subscription.cancel()

        async def _cancel() -> bool:
            return self._subscription.cancel()

        future = asyncio.run_coroutine_threadsafe(_cancel(), self._loop)
        return future.result(timeout=timeout)


class SyncChannelsApi:
    """Blocking / thread-based client.

    Runs a :class:`~channels_api.client.ChannelsApi` on a background
    thread. Public methods are thread-safe and block until complete.
    Subscription handlers run on the background thread.

    Args:
        url: WebSocket server URL.
        options: Passed to :class:`ChannelsApi`.
        timeout: Default seconds to wait for a response.

    Example::

        api = SyncChannelsApi("ws://localhost:8000/api/")
        api.connect()
        todo = api.create("todos", {"text": "a"})
        api.close()
    """

    def __init__(
        self,
        url: str,
        *,
        options: ChannelsApiOptions | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._url = url
        self._options = options
        self._timeout = timeout

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._api: ChannelsApi | None = None
        self._stop: asyncio.Event | None = None
        self._running = False
        self._connected_event = threading.Event()
        self._connect_error: Exception | None = None

    # -- Lifecycle ------------------------------------------------------------

    def connect(self, timeout: float = 15.0) -> None:
        """Connect in a background thread.  Blocks until connected."""
        if self._running:
            return

        self._running = True
        self._connect_error = None
        self._connected_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="channels-api"
        )
        self._thread.start()

        if not self._connected_event.wait(timeout=timeout):
            self.close()
            raise ChannelsTimeoutError(f"Connection timed out after {timeout}s")

        if self._connect_error is not None:
            err = self._connect_error
            self.close()
            raise ChannelsConnectionError(f"Connection failed: {err}") from err

    def close(self) -> None:
        """Disconnect and stop the background thread."""
        self._running = False
        loop, stop = self._loop, self._stop
        if loop is not None and stop is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(stop.set)
            except RuntimeError:
                pass  # loop closed between the check and the call
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._thread = None

    def __enter__(self) -> SyncChannelsApi:
        self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -- Requests -------------------------------------------------------------

    def request(
        self,
        stream: str,
        payload: Any,
        request_id: str | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and block for its response data.

        Raises:
            RequestError: The server reported a failure.
            ChannelsTimeoutError: No response within *timeout*.
        """
        return self._call(
            lambda api: api.request(stream, payload, request_id), timeout
        )

    def list(self, stream: str, params: Any = None, *, timeout: float | None = None) -> Any:
        return self._call(lambda api: api.list(stream, params), timeout)

    def create(self, stream: str, data: Any, *, timeout: float | None = None) -> Any:
        return self._call(lambda api: api.create(stream, data), timeout)

    def retrieve(self, stream: str, pk: Any, *, timeout: float | None = None) -> Any:
        return self._call(lambda api: api.retrieve(stream, pk), timeout)

    def update(
        self, stream: str, pk: Any, data: Any, *, timeout: float | None = None
    ) -> Any:
        return self._call(lambda api: api.update(stream, pk, data), timeout)

    def delete(self, stream: str, pk: Any, *, timeout: float | None = None) -> Any:
        return self._call(lambda api: api.delete(stream, pk), timeout)

    def subscribe(
        self,
        stream: str,
        action: str | Action,
        handler: Callable[[Any], Any],
        pk: Any = None,
        *,
        timeout: float | None = None,
    ) -> SyncSubscription:
        """Subscribe and block until the server acknowledges.

        *handler* runs on the background thread.
        """
        loop = self._require_loop()
        holder: list[Subscription] = []

        def start(api: ChannelsApi) -> asyncio.Future[Any]:
            ack, subscription = api.subscribe(stream, action, handler, pk)
            holder.append(subscription)
            return ack

        try:
            self._call(start, timeout)
        except BaseException:
            if holder:
                SyncSubscription(loop, holder[0]).cancel()
            raise
        return SyncSubscription(loop, holder[0])

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ApiState:
        if self._api:
            return self._api.state
        return ApiState.UNINITIALIZED

    @property
    def is_connected(self) -> bool:
        return self._api is not None and self._api.is_connected

    def get_stats(self) -> dict[str, Any]:
        if self._api:
            return self._api.get_stats()
        return {}

    # -- Internal -------------------------------------------------------------

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if not self._running or self._loop is None or self._api is None:
            raise ChannelsConnectionError("Not connected; call connect() first")
        return self._loop

    def _call(
        self,
        start: Callable[[ChannelsApi], asyncio.Future[Any]],
        timeout: float | None,
    ) -> Any:
        """Run *start* on the loop thread and block for the future it returns."""
        loop = self._require_loop()
        api = self._api
        wait = self._timeout if timeout is None else timeout

        async def _run() -> Any:
            return await asyncio.wait_for(start(api), timeout=wait)

        future = asyncio.run_coroutine_threadsafe(_run(), loop)
        try:
            return future.result(timeout=wait + 1.0)
        except (asyncio.TimeoutError, concurrent.futures.TimeoutError):
            future.cancel()
            raise ChannelsTimeoutError(f"No response within {wait}s") from None

    def _run_loop(self) -> None:
        """Background thread: run the async event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._async_main())
        except Exception as exc:
            logger.error("Background loop error: %s", exc)
        finally:
            self._loop.close()
            self._loop = None

    async def _async_main(self) -> None:
        """Async entry point in the background thread."""
        self._stop = asyncio.Event()
        self._api = ChannelsApi(self._url, options=self._options)
        self._api.initialize()
        try:
            await self._api.connect()
        except Exception as exc:
            self._connect_error = exc
            logger.error("Client error: %s", exc)
            self._connected_event.set()  # Unblock connect()
            await self._api.close()
            return

        self._connected_event.set()
        try:
            await self._stop.wait()
        finally:
            await self._api.close()
