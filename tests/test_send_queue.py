"""Tests for the FIFO send queue."""

import asyncio

import pytest

from channels_api.errors import ChannelsUsageError
from channels_api.send_queue import SendQueue


class Wire:
    """Records frames; readiness and failures are controlled by the test."""

    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.frames: list[str] = []
        self.fail: set[str] = set()
        self.go_offline_after: int | None = None

    async def send(self, data):
        if data in self.fail:
            return 0
        self.frames.append(data)
        if self.go_offline_after is not None and len(self.frames) >= self.go_offline_after:
            self.ready = False
        return len(data)

    def can_send(self) -> bool:
        return self.ready


def _make_queue(wire: Wire, **kwargs) -> SendQueue:
    q = SendQueue(**kwargs)
    q.initialize(wire.send, wire.can_send)
    return q


class TestInitialization:
    def test_double_initialize_is_usage_error(self):
        wire = Wire()
        q = _make_queue(wire)
        with pytest.raises(ChannelsUsageError):
            q.initialize(wire.send, wire.can_send)

    def test_queue_message_before_initialize_returns_false(self):
        q = SendQueue()
        assert q.queue_message("a") is False
        assert q.size == 0

    @pytest.mark.asyncio
    async def test_send_before_initialize_is_usage_error(self):
        with pytest.raises(ChannelsUsageError):
            await SendQueue().send("a")

    @pytest.mark.asyncio
    async def test_process_before_initialize_is_usage_error(self):
        with pytest.raises(ChannelsUsageError):
            await SendQueue().process_queue()


class TestSend:
    @pytest.mark.asyncio
    async def test_empty_queue_and_ready_bypasses_queue(self):
        wire = Wire()
        q = _make_queue(wire)
        assert await q.send("hello") == 5
        assert wire.frames == ["hello"]
        assert q.size == 0

    @pytest.mark.asyncio
    async def test_not_ready_queues(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        assert await q.send("a") == 0
        assert wire.frames == []
        assert q.size == 1

    @pytest.mark.asyncio
    async def test_failed_direct_send_falls_back_to_queue(self):
        wire = Wire()
        wire.fail.add("a")
        q = _make_queue(wire)
        assert await q.send("a") == 0
        assert q.size == 1

    @pytest.mark.asyncio
    async def test_non_empty_queue_forces_enqueue(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        await q.send("first")
        wire.ready = True
        assert await q.send("second") == 0
        assert wire.frames == []
        assert q.size == 2

    @pytest.mark.asyncio
    async def test_send_now_ignores_readiness(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        assert await q.send_now("x") == 1
        assert wire.frames == ["x"]

    def test_max_size(self):
        q = _make_queue(Wire(), max_size=2)
        assert q.queue_message("a") is True
        assert q.queue_message("b") is True
        assert q.queue_message("c") is False
        assert q.size == 2


class TestProcessQueue:
    @pytest.mark.asyncio
    async def test_flushes_in_fifo_order(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        for frame in ["1", "2", "3", "4"]:
            q.queue_message(frame)
        wire.ready = True
        assert await q.process_queue() == 4
        assert wire.frames == ["1", "2", "3", "4"]
        assert q.size == 0

    @pytest.mark.asyncio
    async def test_stops_when_transport_goes_away(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        for frame in ["1", "2", "3", "4"]:
            q.queue_message(frame)
        wire.ready = True
        wire.go_offline_after = 2
        assert await q.process_queue() == 2
        assert q.size == 2

        # new traffic while offline lines up behind the remainder
        await q.send("5")
        wire.go_offline_after = None
        wire.ready = True
        assert await q.process_queue() == 3
        assert wire.frames == ["1", "2", "3", "4", "5"]

    @pytest.mark.asyncio
    async def test_failed_send_keeps_message_at_head(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        q.queue_message("a")
        q.queue_message("b")
        wire.ready = True
        wire.fail.add("a")
        assert await q.process_queue() == 0
        assert q.size == 2

        wire.fail.clear()
        assert await q.process_queue() == 2
        assert wire.frames == ["a", "b"]

    @pytest.mark.asyncio
    async def test_not_ready_sends_nothing(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        q.queue_message("a")
        assert await q.process_queue() == 0
        assert q.size == 1

    @pytest.mark.asyncio
    async def test_send_during_flush_queues_behind_in_flight_head(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        q.queue_message("old")
        wire.ready = True
        results = []

        original_send = wire.send

        async def send_and_interleave(data):
            sent = await original_send(data)
            if data == "old":
                results.append(await q.send("new"))
            return sent

        q._send = send_and_interleave
        await q.process_queue()
        assert results == [0]
        assert wire.frames == ["old", "new"]

    @pytest.mark.asyncio
    async def test_send_during_direct_send_waits_for_it(self):
        wire = Wire()
        q = _make_queue(wire)
        original_send = wire.send

        async def slow_send(data):
            if data == "a":
                await asyncio.sleep(0.01)
            return await original_send(data)

        q._send = slow_send
        results = await asyncio.gather(q.send("a"), q.send("b"))
        assert results == [1, 0]
        assert wire.frames == ["a", "b"]
        assert q.size == 0

    @pytest.mark.asyncio
    async def test_failed_direct_send_keeps_its_place(self):
        wire = Wire()
        q = _make_queue(wire)
        original_send = wire.send
        attempts = []

        async def slow_first_attempt_fails(data):
            attempts.append(data)
            if attempts == ["a"]:
                await asyncio.sleep(0.01)
                return 0
            return await original_send(data)

        q._send = slow_first_attempt_fails
        assert await asyncio.gather(q.send("a"), q.send("b")) == [0, 0]
        assert wire.frames == []
        assert q.size == 2

        assert await q.process_queue() == 2
        assert wire.frames == ["a", "b"]

    @pytest.mark.asyncio
    async def test_concurrent_flush_returns_zero(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        q.queue_message("a")
        wire.ready = True
        nested = []

        original_send = wire.send

        async def send_and_flush(data):
            nested.append(await q.process_queue())
            return await original_send(data)

        q._send = send_and_flush
        assert await q.process_queue() == 1
        assert nested == [0]


class TestStats:
    def test_get_stats(self):
        q = _make_queue(Wire(), max_size=10)
        q.queue_message("a")
        stats = q.get_stats()
        assert stats["size"] == 1
        assert stats["capacity"] == 10
        assert stats["initialized"] is True
        assert stats["oldest_age_seconds"] >= 0

    def test_clear(self):
        q = _make_queue(Wire())
        q.queue_message("a")
        q.clear()
        assert q.size == 0

    @pytest.mark.asyncio
    async def test_counts_bytes_for_direct_and_flushed_frames(self):
        wire = Wire(ready=False)
        q = _make_queue(wire)
        await q.send("abc")
        wire.ready = True
        await q.process_queue()
        await q.send("de")
        assert q.messages_sent == 2
        assert q.bytes_sent == 5
        assert q.get_stats()["bytes_sent"] == 5
