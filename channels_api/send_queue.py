# =============================================================================
# channels-api -- Send Queue
# =============================================================================
#
# Buffers outgoing frames while the transport cannot send and flushes them
# strictly in FIFO order when it recovers.  Once anything is queued, new
# frames queue behind it so traffic sent after a reconnect can never
# overtake traffic accumulated while offline.
#
# In-memory only; nothing survives a process restart.
# =============================================================================

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ._logging import logger
from .errors import ChannelsUsageError

SendFunc = Callable[[str | bytes], Awaitable[int]]
CanSendFunc = Callable[[], bool]


@dataclass(slots=True)
class QueuedMessage:
    """A frame waiting for the transport."""

    encoded: str | bytes
    enqueued_at: float


class SendQueue:
    """FIFO queue in front of a transport send function.

    Args:
        max_size: Maximum number of buffered frames. ``None`` (default)
            is unbounded.
    """

    def __init__(self, *, max_size: int | None = None) -> None:
        self._max_size = max_size
        self._queue: deque[QueuedMessage] = deque()
        self._send: SendFunc | None = None
        self._can_send: CanSendFunc | None = None
        self._draining = False
        self._sent_direct = 0
        self._sent_from_queue = 0
        self._bytes_sent = 0

    def initialize(self, send_now: SendFunc, can_send: CanSendFunc) -> None:
        """Bind the queue to a transport send function and readiness check."""
        if self._send is not None:
            raise ChannelsUsageError("SendQueue is already initialized")
        self._send = send_now
        self._can_send = can_send

    @property
    def is_initialized(self) -> bool:
        return self._send is not None

    @property
    def size(self) -> int:
        return len(self._queue)

    @property
    def messages_sent(self) -> int:
        """Frames delivered so far, direct and flushed."""
        return self._sent_direct + self._sent_from_queue

    @property
    def bytes_sent(self) -> int:
        return self._bytes_sent

    def _require_initialized(self) -> None:
        if self._send is None:
            raise ChannelsUsageError("SendQueue used before initialize()")

    async def send_now(self, data: str | bytes) -> int:
        """Send directly, bypassing the queue and the readiness check."""
        self._require_initialized()
        return await self._send(data)

    def queue_message(self, data: str | bytes) -> bool:
        """Append *data* to the tail of the queue.

        Returns False if the queue is not initialized or is full.
        """
        if self._send is None:
            logger.warning("Send queue not initialized, refusing message")
            return False
        if self._max_size is not None and len(self._queue) >= self._max_size:
            logger.warning("Send queue full (%d), refusing message", self._max_size)
            return False
        self._queue.append(QueuedMessage(encoded=data, enqueued_at=time.monotonic()))
        return True

    async def send(self, data: str | bytes) -> int:
        """Send now if nothing is waiting and the transport is ready, else queue.

        A direct send occupies the head of the queue until it succeeds, so
        frames sent meanwhile line up behind it and a failed frame keeps its
        place. Returns bytes sent, or ``0`` when the frame was queued instead.
        """
        self._require_initialized()
        if self._queue or self._draining or not self._can_send():
            self.queue_message(data)
            return 0

        message = QueuedMessage(encoded=data, enqueued_at=time.monotonic())
        self._queue.append(message)
        self._draining = True
        try:
            sent = await self.send_now(data)
            if not sent:
                logger.debug("Direct send failed, frame stays queued")
                return 0
            if self._queue and self._queue[0] is message:
                self._queue.popleft()
            self._sent_direct += 1
            self._bytes_sent += sent
        finally:
            self._draining = False

        if self._queue:
            # frames that arrived while the direct send was in flight
            await self.process_queue()
        return sent

    async def process_queue(self) -> int:
        """Drain queued frames while the transport can send.

        The head stays queued while its send is in flight and is dropped
        only after it succeeds. Returns the number of frames sent.
        """
        self._require_initialized()
        if self._draining:
            return 0

        self._draining = True
        sent = 0
        try:
            while self._queue and self._can_send():
                head = self._queue[0]
                nbytes = await self.send_now(head.encoded)
                if not nbytes:
                    logger.debug(
                        "Flush interrupted, %d frames remain queued", len(self._queue)
                    )
                    break
                if self._queue and self._queue[0] is head:
                    self._queue.popleft()
                sent += 1
                self._bytes_sent += nbytes
        finally:
            self._draining = False

        if sent:
            self._sent_from_queue += sent
            logger.info("Flushed %d queued frames", sent)
        return sent

    def clear(self) -> None:
        """Discard all queued frames."""
        self._queue.clear()

    def get_stats(self) -> dict[str, Any]:
        oldest = self._queue[0].enqueued_at if self._queue else None
        return {
            "size": len(self._queue),
            "capacity": self._max_size,
            "initialized": self.is_initialized,
            "sent_direct": self._sent_direct,
            "sent_from_queue": self._sent_from_queue,
            "bytes_sent": self._bytes_sent,
            "oldest_age_seconds": (
                time.monotonic() - oldest if oldest is not None else None
            ),
        }
