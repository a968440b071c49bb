# =============================================================================
# channels-api -- Constants
# =============================================================================

# -- Reconnection (seconds) ---------------------------------------------------

MIN_RECONNECTION_DELAY = 1.5
MAX_RECONNECTION_DELAY = 10.0
RECONNECTION_DELAY_GROW_FACTOR = 1.3
CONNECTION_TIMEOUT = 4.0
MAX_RETRIES = -1  # -1 = infinite
RECONNECT_JITTER = 0.1  # +/- fraction of the computed delay

# -- Messages ------------------------------------------------------------------

MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- Envelope and response fields ---------------------------------------------

FIELD_STREAM = "stream"
FIELD_PAYLOAD = "payload"
FIELD_REQUEST_ID = "request_id"
FIELD_ACTION = "action"
FIELD_PK = "pk"
FIELD_DATA = "data"
FIELD_ERRORS = "errors"
FIELD_STATUS = "response_status"

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000
WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_AUTH_FAILED = 4401
WS_CLOSE_AUTH_EXPIRED = 4403

NO_RECONNECT_CLOSE_CODES = frozenset(
    {WS_CLOSE_POLICY_VIOLATION, WS_CLOSE_AUTH_FAILED, WS_CLOSE_AUTH_EXPIRED}
)
