"""Shared fixtures: an in-memory transport standing in for the WebSocket."""

import asyncio
import json

import pytest

from channels_api.client import ChannelsApi
from channels_api.transport import EventEmitter
from channels_api.types import ChannelsApiOptions, TransportEvent


class FakeTransport(EventEmitter):
    """Transport double that records sent frames and emits events on demand."""

    def __init__(self, *, connected: bool = False) -> None:
        super().__init__()
        self.is_connected = connected
        self.sent: list[str | bytes] = []
        self.fail_next = 0
        self.closed = False
        self._has_connected = False

    async def connect(self) -> None:
        self.go_online()

    async def close(self) -> None:
        self.closed = True
        self.is_connected = False

    async def send(self, data):
        if not self.is_connected:
            return 0
        if self.fail_next:
            self.fail_next -= 1
            return 0
        self.sent.append(data)
        return len(data)

    def go_online(self) -> None:
        self.is_connected = True
        first = not self._has_connected
        self._has_connected = True
        self.emit(TransportEvent.OPEN)
        self.emit(TransportEvent.CONNECT if first else TransportEvent.RECONNECT)

    def go_offline(self) -> None:
        self.is_connected = False
        self.emit(TransportEvent.CLOSE, 1006, "")

    def receive(self, value) -> None:
        self.emit(TransportEvent.MESSAGE, json.dumps(value))

    def sent_json(self) -> list:
        return [json.loads(frame) for frame in self.sent]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def options():
    return ChannelsApiOptions()


@pytest.fixture
def api(transport, options):
    """An initialized client on the fake transport (not yet connected)."""
    client = ChannelsApi(transport=transport, options=options)
    client.initialize()
    return client


@pytest.fixture
def settle():
    """Let scheduled send/flush tasks run."""

    async def _settle(rounds: int = 10) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
