"""Tests for the reconnecting WebSocket transport (socket mocked)."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from channels_api.errors import ChannelsConnectionError, ChannelsTimeoutError
from channels_api.transport import EventEmitter, WebSocketTransport
from channels_api.types import ReconnectConfig, TransportEvent

CONNECT = "channels_api.transport.websockets.asyncio.client.connect"


class FakeSocket:
    """Yields the given frames, then ends as if closed by the server."""

    def __init__(self, frames=(), close_code=1000):
        self.frames = list(frames)
        self.close_code = close_code
        self.close_reason = ""
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame

    async def send(self, data):
        self.sent.append(data)

    async def close(self, code=1000, reason=""):
        self.closed = True


def _no_retry() -> ReconnectConfig:
    return ReconnectConfig(max_retries=0, jitter=False)


def _record(transport):
    events = []
    transport.on("open", lambda: events.append("open"))
    transport.on("connect", lambda: events.append("connect"))
    transport.on("reconnect", lambda: events.append("reconnect"))
    transport.on("message", lambda frame: events.append(f"message:{frame}"))
    transport.on("close", lambda code, reason: events.append(f"close:{code}"))
    return events


class TestEventEmitter:
    def test_on_and_emit(self):
        emitter = EventEmitter()
        calls = []
        emitter.on("message", calls.append)
        emitter.emit(TransportEvent.MESSAGE, "frame")
        assert calls == ["frame"]

    def test_enum_and_string_names_are_equivalent(self):
        emitter = EventEmitter()
        calls = []
        emitter.on(TransportEvent.OPEN, lambda: calls.append(1))
        emitter.emit(TransportEvent.OPEN)
        assert calls == [1]

    def test_off(self):
        emitter = EventEmitter()
        calls = []
        emitter.on("open", calls.append)
        emitter.off("open", calls.append)
        emitter.emit(TransportEvent.OPEN)
        assert calls == []

    def test_failing_callback_does_not_stop_others(self):
        emitter = EventEmitter()
        calls = []
        emitter.on("open", lambda: 1 / 0)
        emitter.on("open", lambda: calls.append("ok"))
        emitter.emit(TransportEvent.OPEN)
        assert calls == ["ok"]


class TestBackoff:
    def test_delay_grows_and_caps(self):
        t = WebSocketTransport(
            "ws://localhost",
            reconnect=ReconnectConfig(
                min_reconnection_delay=1.0,
                max_reconnection_delay=5.0,
                reconnection_delay_grow_factor=2.0,
                jitter=False,
            ),
        )
        assert t.calculate_delay(0) == 1.0
        assert t.calculate_delay(1) == 2.0
        assert t.calculate_delay(2) == 4.0
        assert t.calculate_delay(3) == 5.0

    def test_jitter_stays_within_bounds(self):
        t = WebSocketTransport(
            "ws://localhost",
            reconnect=ReconnectConfig(min_reconnection_delay=2.0, jitter=True),
        )
        for _ in range(50):
            assert 1.8 <= t.calculate_delay(0) <= 2.2


class TestConnect:
    def test_not_connected_initially(self):
        t = WebSocketTransport("ws://localhost")
        assert t.is_connected is False
        assert t.url == "ws://localhost"

    @pytest.mark.asyncio
    async def test_send_while_disconnected_returns_zero(self):
        assert await WebSocketTransport("ws://localhost").send("x") == 0

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self):
        t = WebSocketTransport("ws://localhost", reconnect=_no_retry())
        with patch(CONNECT, side_effect=OSError("refused")):
            with pytest.raises(ChannelsConnectionError):
                await t.connect()
        assert t.is_connected is False
        assert t._reconnect_task is None

    @pytest.mark.asyncio
    async def test_connect_failure_schedules_reconnect(self):
        t = WebSocketTransport(
            "ws://localhost",
            reconnect=ReconnectConfig(min_reconnection_delay=60.0, jitter=False),
        )
        with patch(CONNECT, side_effect=OSError("refused")):
            with pytest.raises(ChannelsConnectionError):
                await t.connect()
        assert t._reconnect_task is not None
        await t.close()
        assert t._reconnect_task is None

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        t = WebSocketTransport(
            "ws://localhost",
            reconnect=ReconnectConfig(connection_timeout=0.01, max_retries=0),
        )
        with patch(CONNECT, side_effect=hang):
            with pytest.raises(ChannelsTimeoutError):
                await t.connect()

    @pytest.mark.asyncio
    async def test_event_order_on_first_connection(self):
        socket = FakeSocket(frames=["a", "b"])
        t = WebSocketTransport("ws://localhost", reconnect=_no_retry())
        events = _record(t)
        with patch(CONNECT, AsyncMock(return_value=socket)):
            await t.connect()
        assert events[:2] == ["open", "connect"]
        await t._recv_task
        assert events == ["open", "connect", "message:a", "message:b", "close:1000"]
        assert t.is_connected is False

    @pytest.mark.asyncio
    async def test_later_connection_emits_reconnect(self):
        t = WebSocketTransport("ws://localhost", reconnect=_no_retry())
        events = _record(t)
        with patch(CONNECT, AsyncMock(side_effect=[FakeSocket(), FakeSocket()])):
            await t.connect()
            await t._recv_task
            await t.connect()
        assert events.count("connect") == 1
        assert events[-2:] == ["open", "reconnect"]
        await t.close()

    @pytest.mark.asyncio
    async def test_send_returns_byte_count(self):
        socket = FakeSocket(frames=[])
        t = WebSocketTransport("ws://localhost", reconnect=_no_retry())
        with patch(CONNECT, AsyncMock(return_value=socket)):
            await t.connect()
        assert await t.send("héllo") == 6
        assert socket.sent == ["héllo"]
        await t.close()
        assert socket.closed is True

    @pytest.mark.asyncio
    async def test_auth_close_does_not_reconnect(self):
        socket = FakeSocket(frames=[], close_code=4401)
        t = WebSocketTransport(
            "ws://localhost", reconnect=ReconnectConfig(min_reconnection_delay=60.0)
        )
        with patch(CONNECT, AsyncMock(return_value=socket)):
            await t.connect()
            await t._recv_task
        assert t._reconnect_task is None

    @pytest.mark.asyncio
    async def test_dropped_connection_schedules_reconnect(self):
        socket = FakeSocket(frames=[], close_code=1006)
        t = WebSocketTransport(
            "ws://localhost", reconnect=ReconnectConfig(min_reconnection_delay=60.0)
        )
        with patch(CONNECT, AsyncMock(return_value=socket)):
            await t.connect()
            await t._recv_task
        assert t._reconnect_task is not None
        await t.close()


class TestCloseDuringHandshake:
    @pytest.mark.asyncio
    async def test_close_cancels_reconnect_in_progress(self):
        socket = FakeSocket()

        async def slow_connect(*args, **kwargs):
            await asyncio.sleep(0.05)
            return socket

        t = WebSocketTransport(
            "ws://localhost",
            reconnect=ReconnectConfig(min_reconnection_delay=0.0, jitter=False),
        )
        events = _record(t)
        with patch(CONNECT, side_effect=slow_connect):
            t._schedule_reconnect()
            await asyncio.sleep(0.01)
            await t.close()
            await asyncio.sleep(0.1)
        assert t._ws is None
        assert t._recv_task is None
        assert t._reconnect_task is None
        assert events == []

    @pytest.mark.asyncio
    async def test_socket_opened_after_close_is_discarded(self):
        socket = FakeSocket()

        async def slow_connect(*args, **kwargs):
            await asyncio.sleep(0.05)
            return socket

        t = WebSocketTransport("ws://localhost", reconnect=_no_retry())
        events = _record(t)
        with patch(CONNECT, side_effect=slow_connect):
            pending = asyncio.create_task(t.connect())
            await asyncio.sleep(0.01)
            await t.close()
            with pytest.raises(ChannelsConnectionError):
                await pending
        assert socket.closed is True
        assert t._ws is None
        assert t._recv_task is None
        assert events == []

    @pytest.mark.asyncio
    async def test_reconnect_task_cleared_after_success(self):
        t = WebSocketTransport(
            "ws://localhost",
            reconnect=ReconnectConfig(min_reconnection_delay=0.0, jitter=False),
        )
        with patch(CONNECT, AsyncMock(return_value=FakeSocket(close_code=4401))):
            t._schedule_reconnect()
            await asyncio.sleep(0.01)
        assert t._reconnect_task is None
        assert t.retry_count == 0
        await t.close()
