# =============================================================================
# STOMP Client -- Protocol Constants
# =============================================================================
#
# Wire values and header names as defined by STOMP 1.2.
# =============================================================================

PROTOCOL_VERSION = "1.2"

# -- Wire bytes ----------------------------------------------------------------

EOL = b"\n"
CR = b"\r"
NULL = b"\x00"
HEARTBEAT_FRAME = EOL

# -- Defaults ------------------------------------------------------------------

DEFAULT_PORT = 61613
DEFAULT_HEARTBEAT = "0,0"

# -- Timing --------------------------------------------------------------------

HEARTBEAT_TIMEOUT_MARGIN = 1000  # ms, added to the negotiated incoming interval
CONNECTION_TIMEOUT = 10.0  # seconds
CLOSE_TIMEOUT = 5.0  # seconds

# -- Headers -------------------------------------------------------------------

HEADER_ACCEPT_VERSION = "accept-version"
HEADER_HOST = "host"
HEADER_HEART_BEAT = "heart-beat"
HEADER_LOGIN = "login"
HEADER_PASSCODE = "passcode"
HEADER_SESSION = "session"
HEADER_VERSION = "version"
HEADER_SERVER = "server"
HEADER_DESTINATION = "destination"
HEADER_CONTENT_LENGTH = "content-length"
HEADER_ID = "id"
HEADER_ACK = "ack"
HEADER_RECEIPT = "receipt"
HEADER_RECEIPT_ID = "receipt-id"
HEADER_MESSAGE = "message"

# -- Queues --------------------------------------------------------------------

MESSAGE_QUEUE_SIZE = 1000

# -- WebSocket -----------------------------------------------------------------

WS_SUBPROTOCOLS = ("v12.stomp",)
WS_MAX_SIZE = 2**20  # 1 MB
