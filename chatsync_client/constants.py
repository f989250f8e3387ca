# =============================================================================
# ChatSync Client -- Constants
# =============================================================================
#
# Defaults for the realtime channel and the REST session layer.
# =============================================================================

from ._version import __version__ as CLIENT_VERSION

# -- Endpoints -----------------------------------------------------------------

DEFAULT_WS_URL = "ws://localhost:8080/ws"
DEFAULT_API_BASE_URL = "http://localhost:8080/api"

# -- Timing (seconds) --------------------------------------------------------

CONNECTION_TIMEOUT = 10.0
AUTH_TIMEOUT = 10.0
HEARTBEAT_INTERVAL = 15.0
IDLE_TIMEOUT = 40.0
REQUEST_TIMEOUT = 30.0
SWEEP_INTERVAL = 5.0

# -- Reconnection -------------------------------------------------------------

RECONNECT_MIN_DELAY = 1.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_FACTOR = 2.0

# -- Optimistic mutations ------------------------------------------------------

PENDING_MUTATION_TIMEOUT = 30.0

# -- Frame types ---------------------------------------------------------------

FRAME_AUTH = "auth"
FRAME_AUTHENTICATED = "authenticated"
FRAME_AUTH_FAILED = "auth_failed"
FRAME_SUBSCRIBE = "subscribe"
FRAME_UNSUBSCRIBE = "unsubscribe"

CONTROL_FRAMES = frozenset({FRAME_AUTHENTICATED, FRAME_AUTH_FAILED})

# -- Messages ------------------------------------------------------------------

MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- HTTP ----------------------------------------------------------------------

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
REFRESH_PATH = "/auth/refresh"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
HTTP_UNAUTHORIZED = 401
HTTP_NO_CONTENT = 204
DEFAULT_PAGE_SIZE = 50

# -- WebSocket close codes -----------------------------------------------------

WS_CLOSE_NORMAL = 1000

# -- Conversations -------------------------------------------------------------

MESSAGES_PATH = "/messages/conversations/{conversation_id}/messages"
MESSAGES_FETCH_LIMIT = 100
