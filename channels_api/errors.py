# =============================================================================
# channels-api -- Error Types
# =============================================================================

from __future__ import annotations

from typing import Any

from .constants import FIELD_ERRORS, FIELD_STATUS


class ChannelsApiError(Exception):
    """Base exception for all channels-api errors."""


class ChannelsUsageError(ChannelsApiError):
    """API misuse: not initialized, initialized twice, bad selector."""


class ChannelsConnectionError(ChannelsApiError):
    """Connection-related errors (failed to connect, client closed)."""


class ChannelsTimeoutError(ChannelsApiError):
    """Operation timed out."""


class ChannelsProtocolError(ChannelsApiError):
    """Wire protocol errors (undecodable or oversized frames)."""


class RequestError(ChannelsApiError):
    """The server answered a request with an error or a malformed response.

    Attributes:
        response: The full decoded response.
    """

    def __init__(self, response: Any) -> None:
        self.response = response
        super().__init__(f"Request failed: {response!r}")

    @property
    def errors(self) -> Any:
        if isinstance(self.response, dict):
            return self.response.get(FIELD_ERRORS)
        return None

    @property
    def status(self) -> int | None:
        if isinstance(self.response, dict):
            return self.response.get(FIELD_STATUS)
        return None
