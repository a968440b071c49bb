# =============================================================================
# channels-api -- Type Definitions
# =============================================================================

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable

from .constants import (
    CONNECTION_TIMEOUT,
    FIELD_PAYLOAD,
    FIELD_REQUEST_ID,
    FIELD_STREAM,
    MAX_RECONNECTION_DELAY,
    MAX_RETRIES,
    MIN_RECONNECTION_DELAY,
    RECONNECTION_DELAY_GROW_FACTOR,
)
from .errors import ChannelsUsageError


class ApiState(str, Enum):
    """Lifecycle of a :class:`~channels_api.client.ChannelsApi`.

    Flow: UNINITIALIZED -> INITIALIZING -> CONNECTED <-> DISCONNECTED.
    CONNECTED is only reachable once the transport has opened.
    """

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class TransportEvent(str, Enum):
    """Events emitted by a transport."""

    OPEN = "open"
    CONNECT = "connect"
    RECONNECT = "reconnect"
    MESSAGE = "message"
    CLOSE = "close"


class Action(str, Enum):
    """Request actions understood by the server."""

    LIST = "list"
    CREATE = "create"
    RETRIEVE = "retrieve"
    UPDATE = "update"
    DELETE = "delete"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


# Actions a subscription can listen for
SUBSCRIBABLE_ACTIONS = frozenset({Action.CREATE, Action.UPDATE, Action.DELETE})


@dataclass(frozen=True, slots=True)
class Envelope:
    """The multiplexed wire unit.

    Attributes:
        stream: Logical stream name, e.g. ``"todos"``.
        payload: Request body for that stream.
        request_id: Correlation id linking the request to its response.
    """

    stream: str
    payload: Any
    request_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            FIELD_STREAM: self.stream,
            FIELD_PAYLOAD: self.payload,
            FIELD_REQUEST_ID: self.request_id,
        }


_MISSING = object()


@dataclass(frozen=True, slots=True)
class Selector:
    """Partial-match filter over a decoded payload.

    Only fields that are set take part in matching. A payload matches when
    it is a mapping holding every set field with an equal value. An empty
    selector matches any mapping.
    """

    stream: str | None = None
    action: str | None = None
    pk: Any = None
    request_id: str | None = None

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> Selector:
        """Build a selector from a plain mapping such as ``{"request_id": "r1"}``.

        Raises:
            ChannelsUsageError: If *mapping* is not a mapping or names a
                field a selector cannot match on.
        """
        if not isinstance(mapping, Mapping):
            raise ChannelsUsageError(
                f"Selector must be a mapping, got {type(mapping).__name__}"
            )
        known = {f.name for f in fields(cls)}
        unknown = set(mapping) - known
        if unknown:
            raise ChannelsUsageError(
                f"Unknown selector fields {sorted(unknown)}; expected a subset of {sorted(known)}"
            )
        return cls(**mapping)

    def items(self) -> list[tuple[str, Any]]:
        """Set fields as ``(name, value)`` pairs."""
        pairs = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                pairs.append((f.name, value))
        return pairs

    def matches(self, payload: Any) -> bool:
        if not isinstance(payload, Mapping):
            return False
        for key, expected in self.items():
            if payload.get(key, _MISSING) != expected:
                return False
        return True


@dataclass
class ReconnectConfig:
    """Transport tuning, passed through to the transport untouched.

    Attributes:
        min_reconnection_delay: Delay in seconds before the first retry.
        max_reconnection_delay: Cap on the delay between retries.
        reconnection_delay_grow_factor: Multiplier applied per attempt.
        connection_timeout: Seconds to wait for a handshake.
        max_retries: Max consecutive retries, ``-1`` for infinite.
        jitter: Randomize delays to avoid thundering herd.
    """

    min_reconnection_delay: float = MIN_RECONNECTION_DELAY
    max_reconnection_delay: float = MAX_RECONNECTION_DELAY
    reconnection_delay_grow_factor: float = RECONNECTION_DELAY_GROW_FACTOR
    connection_timeout: float = CONNECTION_TIMEOUT
    max_retries: int = MAX_RETRIES
    jitter: bool = True


PayloadHook = Callable[[str, Any, str], Any]
MessageHook = Callable[[dict[str, Any]], Any]
HandlerErrorHook = Callable[[BaseException, Any, Any], Any]


@dataclass
class ChannelsApiOptions:
    """Options for :class:`~channels_api.client.ChannelsApi`.

    Attributes:
        preprocess_payload: ``(stream, payload, request_id)`` hook; a
            non-``None`` return replaces the payload.
        preprocess_message: ``(message)`` hook run on the envelope dict; a
            non-``None`` return replaces the message.
        reconnect: Transport tuning.
        debug: Log transport activity at DEBUG level.
        request_timeout: Seconds before an unanswered request is rejected.
            ``None`` (default) waits forever.
        on_handler_error: Called with ``(exc, listener, payload)`` when a
            listener callback raises.
        unsubscribe_on_cancel: Send an unsubscribe request when a
            subscription is cancelled.
        resubscribe_on_reconnect: Re-send subscribe requests for active
            subscriptions after the transport reconnects.
        max_queue_size: Bound on messages buffered while offline.
            ``None`` is unbounded.
        extra_headers: Additional HTTP headers for the handshake.
    """

    preprocess_payload: PayloadHook | None = None
    preprocess_message: MessageHook | None = None
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    debug: bool = False
    request_timeout: float | None = None
    on_handler_error: HandlerErrorHook | None = None
    unsubscribe_on_cancel: bool = True
    resubscribe_on_reconnect: bool = True
    max_queue_size: int | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ConnectionStats:
    """Counters for a single client."""

    messages_received: int = 0
    messages_queued: int = 0
    bytes_received: int = 0
    decode_errors: int = 0
    reconnect_count: int = 0
