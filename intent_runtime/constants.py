"""
Process-wide constants for the Intent runtime SDK.
"""

VERSION = "0.1.0"

DEFAULT_GATEWAY_URL = "wss://gateway.intent.chat"
DEFAULT_REST_URL = "https://api.intent.chat/v1"

USER_AGENT = f"intent-runtime/{VERSION} (python)"

# Gateway
MAX_MISSED_HEARTBEATS = 3
CLIENT_CLOSE_CODE = 1000
ABNORMAL_CLOSE_CODE = 1006
HEARTBEAT_TIMEOUT_CLOSE_CODE = 4000

# REST
DEFAULT_MAX_RETRIES = 3
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_RETRY_AFTER = 5.0
