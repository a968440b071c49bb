# =============================================================================
# channels-api -- Reconnecting WebSocket Transport
# =============================================================================
#
# Owns one physical connection: connect, backoff, reconnect, and event
# emission (open / connect / reconnect / message / close).  The core only
# reacts to these events; it never drives backoff itself.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import random
from collections import defaultdict
from typing import Any, Callable, Protocol

import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed

from ._logging import logger
from .constants import (
    NO_RECONNECT_CLOSE_CODES,
    RECONNECT_JITTER,
    WS_CLOSE_NORMAL,
)
from .errors import ChannelsConnectionError, ChannelsTimeoutError
from .types import ReconnectConfig, TransportEvent

EventCallback = Callable[..., Any]


class Transport(Protocol):
    """What the façade needs from a connection."""

    @property
    def is_connected(self) -> bool: ...

    def on(self, event: str, callback: EventCallback) -> None: ...

    def off(self, event: str, callback: EventCallback) -> None: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send(self, data: str | bytes) -> int: ...


def _event_name(event: str | TransportEvent) -> str:
    return event.value if isinstance(event, TransportEvent) else event


class EventEmitter:
    """Minimal synchronous event registry shared by transports."""

    def __init__(self) -> None:
        self._callbacks: dict[str, list[EventCallback]] = defaultdict(list)

    def on(self, event: str, callback: EventCallback) -> None:
        self._callbacks[_event_name(event)].append(callback)

    def off(self, event: str, callback: EventCallback) -> None:
        callbacks = self._callbacks.get(_event_name(event), [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event: TransportEvent, *args: Any) -> None:
        for callback in list(self._callbacks.get(event.value, [])):
            try:
                callback(*args)
            except Exception:
                logger.exception("Transport '%s' callback failed", event.value)


class WebSocketTransport(EventEmitter):
    """Reconnecting WebSocket built on the ``websockets`` asyncio client.

    Event contract:

    * ``open`` fires on every successful (re)connection, before any
      ``message`` of that connection.
    * ``connect`` fires after the first successful connection only.
    * ``reconnect`` fires after every later successful connection.
    * ``message`` fires once per inbound frame with the raw ``str | bytes``.
    * ``close`` fires with ``(code, reason)`` when a connection ends.

    Args:
        url: WebSocket server URL, e.g. ``"ws://localhost:8000/api/"``.
        reconnect: Backoff tuning. Defaults to :class:`ReconnectConfig`.
        extra_headers: Additional HTTP headers for the handshake.
        debug: Log transport activity at DEBUG level.
    """

    def __init__(
        self,
        url: str,
        *,
        reconnect: ReconnectConfig | None = None,
        extra_headers: dict[str, str] | None = None,
        debug: bool = False,
    ) -> None:
        super().__init__()
        self._url = url
        self._cfg = reconnect or ReconnectConfig()
        self._extra_headers = extra_headers or {}
        if debug:
            logger.setLevel(logging.DEBUG)

        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._has_connected = False
        self._closing = False
        self._retry_count = 0

        self._recv_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    # -- Properties -----------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closing

    @property
    def retry_count(self) -> int:
        return self._retry_count

    # -- Connect / Close ------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection once.

        On failure a background reconnect is scheduled (subject to
        ``max_retries``) and the error is raised to the caller.

        Raises:
            ChannelsTimeoutError: If the handshake exceeds
                ``connection_timeout``.
            ChannelsConnectionError: For any other connect failure.
        """
        if self.is_connected:
            return
        self._closing = False
        try:
            await self._open()
        except (ChannelsConnectionError, ChannelsTimeoutError):
            self._schedule_reconnect()
            raise

    async def _open(self) -> None:
        timeout = self._cfg.connection_timeout
        try:
            ws = await asyncio.wait_for(
                websockets.asyncio.client.connect(
                    self._url,
                    additional_headers=self._extra_headers,
                    open_timeout=None,  # asyncio.wait_for handles timeout
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ChannelsTimeoutError(f"Connection timed out after {timeout}s")
        except Exception as exc:
            raise ChannelsConnectionError(f"Failed to connect: {exc}") from exc

        if self._closing:
            # close() ran while the handshake was in flight
            try:
                await ws.close(WS_CLOSE_NORMAL, "Client disconnect")
            except Exception as exc:
                logger.debug("Error while closing socket: %s", exc)
            raise ChannelsConnectionError("Transport closed during handshake")

        self._ws = ws
        self._retry_count = 0
        first = not self._has_connected
        self._has_connected = True
        logger.info("Connected to %s", self._url)

        # open must reach listeners before the first message is read
        self.emit(TransportEvent.OPEN)
        self.emit(TransportEvent.CONNECT if first else TransportEvent.RECONNECT)
        self._recv_task = asyncio.create_task(self._recv_loop(ws))

    async def close(self) -> None:
        """Close the connection and stop reconnecting."""
        self._closing = True
        if self._reconnect_task:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        recv_task, self._recv_task = self._recv_task, None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(WS_CLOSE_NORMAL, "Client disconnect")
            except Exception as exc:
                logger.debug("Error while closing socket: %s", exc)
        if recv_task is not None:
            recv_task.cancel()
            await asyncio.gather(recv_task, return_exceptions=True)

    # -- Send -----------------------------------------------------------------

    async def send(self, data: str | bytes) -> int:
        """Send one frame. Returns bytes sent, ``0`` on failure."""
        ws = self._ws
        if ws is None or self._closing:
            return 0
        try:
            await ws.send(data)
        except ConnectionClosed:
            logger.debug("Send failed: connection closed")
            return 0
        except Exception as exc:
            logger.debug("Send failed: %s", exc)
            return 0
        return len(data.encode("utf-8")) if isinstance(data, str) else len(data)

    # -- Internal: receive loop -----------------------------------------------

    async def _recv_loop(self, ws: websockets.asyncio.client.ClientConnection) -> None:
        code, reason = WS_CLOSE_NORMAL, ""
        try:
            async for frame in ws:
                self.emit(TransportEvent.MESSAGE, frame)
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                code, reason = exc.rcvd.code, exc.rcvd.reason
        except asyncio.CancelledError:
            return
        else:
            if ws.close_code is not None:
                code, reason = ws.close_code, ws.close_reason or ""

        if self._ws is ws:
            self._ws = None
        logger.info("Connection closed: code=%d reason=%s", code, reason)
        self.emit(TransportEvent.CLOSE, code, reason)

        if self._closing:
            return
        if code in NO_RECONNECT_CLOSE_CODES:
            logger.error("Server refused connection (code %d): %s", code, reason)
            return
        self._schedule_reconnect()

    # -- Internal: reconnection -----------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        cfg = self._cfg
        if cfg.max_retries >= 0 and self._retry_count >= cfg.max_retries:
            logger.error("Max reconnect attempts (%d) reached", cfg.max_retries)
            return

        delay = self.calculate_delay(self._retry_count)
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%s)",
            delay,
            self._retry_count + 1,
            cfg.max_retries if cfg.max_retries >= 0 else "inf",
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        # remains self._reconnect_task until the attempt ends; close() cancels it
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        self._retry_count += 1
        try:
            await self._open()
        except (ChannelsConnectionError, ChannelsTimeoutError) as exc:
            logger.debug("Reconnect attempt failed: %s", exc)
            self._reconnect_task = None
            self._schedule_reconnect()
            return
        self._reconnect_task = None

    def calculate_delay(self, attempt: int) -> float:
        """Backoff delay in seconds before retry number *attempt* (0-based)."""
        cfg = self._cfg
        delay = cfg.min_reconnection_delay * (cfg.reconnection_delay_grow_factor**attempt)
        delay = min(delay, cfg.max_reconnection_delay)
        if cfg.jitter:
            delay += delay * RECONNECT_JITTER * (random.random() * 2 - 1)
        return max(0.0, delay)
