# =============================================================================
# channels-api -- Selector Dispatcher
# =============================================================================
#
# Routes decoded inbound payloads to every listener whose selector matches.
# Each dispatch pass iterates over a snapshot of the listeners active when
# it started, so handlers that register or cancel listeners only affect
# later passes.
# =============================================================================

from __future__ import annotations

import itertools
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable

from ._logging import logger
from .types import Selector

Handler = Callable[[Any], Any]
ErrorHandler = Callable[[BaseException, "Listener", Any], Any]


@dataclass(eq=False)
class Listener:
    """A registered interest in payloads matching *selector*."""

    id: int
    selector: Selector
    handler: Handler
    once: bool = False
    active: bool = True
    fired: bool = False


def _as_selector(selector: Selector | Mapping[str, Any]) -> Selector:
    if isinstance(selector, Selector):
        return selector
    return Selector.from_mapping(selector)


class Dispatcher:
    """Selector-based fan-out of payloads to listeners.

    Args:
        on_error: Called with ``(exc, listener, payload)`` when a handler
            raises. Errors are always logged and counted regardless.
    """

    def __init__(self, *, on_error: ErrorHandler | None = None) -> None:
        self._ids = itertools.count(1)
        # dicts keep insertion order, which is registration order
        self._listeners: dict[int, Listener] = {}
        self._on_error = on_error
        self._handler_errors = 0
        self._dispatched = 0

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener_id: object) -> bool:
        return listener_id in self._listeners

    @property
    def handler_errors(self) -> int:
        return self._handler_errors

    def listen(self, selector: Selector | Mapping[str, Any], handler: Handler) -> int:
        """Register a persistent listener. Returns its id."""
        return self._add(_as_selector(selector), handler, once=False)

    def once(self, selector: Selector | Mapping[str, Any], handler: Handler) -> int:
        """Register a listener that fires at most once. Returns its id."""
        return self._add(_as_selector(selector), handler, once=True)

    def _add(self, selector: Selector, handler: Handler, *, once: bool) -> int:
        listener = Listener(id=next(self._ids), selector=selector, handler=handler, once=once)
        self._listeners[listener.id] = listener
        return listener.id

    def cancel(self, listener_id: int) -> bool:
        """Deactivate a listener.

        Returns True the first time for a live listener, False afterwards
        and for unknown ids.
        """
        listener = self._listeners.pop(listener_id, None)
        if listener is None or not listener.active:
            return False
        listener.active = False
        return True

    def clear(self) -> None:
        """Deactivate every listener."""
        for listener in self._listeners.values():
            listener.active = False
        self._listeners.clear()

    def dispatch(self, payload: Any) -> int:
        """Invoke every matching listener. Returns how many were invoked."""
        snapshot = list(self._listeners.values())
        invoked = 0
        for listener in snapshot:
            if not listener.selector.matches(payload):
                continue
            if listener.once:
                # a re-entrant dispatch may already have consumed it
                if listener.fired:
                    continue
                listener.fired = True
                self.cancel(listener.id)
            invoked += 1
            try:
                listener.handler(payload)
            except Exception as exc:
                self._report(exc, listener, payload)
        self._dispatched += 1
        return invoked

    def _report(self, exc: Exception, listener: Listener, payload: Any) -> None:
        self._handler_errors += 1
        logger.error(
            "Handler error for listener %d (%s): %s",
            listener.id,
            dict(listener.selector.items()),
            exc,
            exc_info=exc,
        )
        if self._on_error is not None:
            try:
                self._on_error(exc, listener, payload)
            except Exception:
                logger.exception("on_error callback failed")

    def get_stats(self) -> dict[str, Any]:
        return {
            "listeners": len(self._listeners),
            "dispatched": self._dispatched,
            "handler_errors": self._handler_errors,
        }
