"""
BlindJoin Constants

All protocol constants defined here for single source of truth.
"""

from typing import Final, Tuple

# ==============================================================================
# DENOMINATIONS
# ==============================================================================

# Fixed deposit buckets in base units (lamports), agreed with the
# transaction builder. Anything else is rejected at the gate.
DENOMINATION_1: Final[int] = 1_000_000_000
DENOMINATION_10: Final[int] = 10_000_000_000
DENOMINATION_100: Final[int] = 100_000_000_000

ALLOWED_DENOMINATIONS: Final[Tuple[int, ...]] = (
    DENOMINATION_1,
    DENOMINATION_10,
    DENOMINATION_100,
)

# ==============================================================================
# SESSION CONSTANTS
# ==============================================================================

DEFAULT_MIN_PARTICIPANTS: Final[int] = 5        # Smallest useful anonymity set
DEFAULT_MAX_PARTICIPANTS: Final[int] = 20
DEFAULT_SESSION_TTL_SEC: Final[float] = 300.0   # 5 minutes
COMPLETED_GRACE_SEC: Final[float] = 60.0        # Keep finished sessions visible
SWEEP_INTERVAL_SEC: Final[float] = 30.0

SESSION_ID_BYTES: Final[int] = 16
PARTICIPANT_ID_BYTES: Final[int] = 8

# ==============================================================================
# BLIND SIGNATURE CONSTANTS
# ==============================================================================

RSA_PUBLIC_EXPONENT: Final[int] = 65537
MIN_RSA_KEY_BITS: Final[int] = 2048
DEFAULT_RSA_KEY_BITS: Final[int] = 2048

# ==============================================================================
# THRESHOLD CONSTANTS
# ==============================================================================

DEFAULT_THRESHOLD: Final[int] = 3
DEFAULT_TOTAL_SHARES: Final[int] = 5
MIN_THRESHOLD: Final[int] = 2

# Mersenne prime 2^4423 - 1, large enough to share 4096-bit exponents
SHAMIR_FIELD_PRIME: Final[int] = 2 ** 4423 - 1

# Peer share holders
THRESHOLD_KEYS_PATH: Final[str] = "/threshold/keys"
PEER_TIMEOUT_SEC: Final[float] = 10.0
SHARE_TTL_SEC: Final[float] = 900.0            # Outlives any session plus grace
MAX_HELD_SHARES: Final[int] = 4096
KEY_ID_BYTES: Final[int] = 16

# ==============================================================================
# AUTHENTICATION CONSTANTS
# ==============================================================================

AUTH_MESSAGE_PREFIX: Final[str] = "StealthSol CoinJoin Auth:"
MAX_SIGNATURE_AGE_MS: Final[int] = 5 * 60 * 1000

ED25519_PUBLIC_KEY_HEX_LENGTH: Final[int] = 64    # 32 bytes
ED25519_SIGNATURE_HEX_LENGTH: Final[int] = 128    # 64 bytes

# ==============================================================================
# INPUT VALIDATION CONSTANTS
# ==============================================================================

MAX_HEX_LENGTH: Final[int] = 1024               # Fits a 4096-bit value
MAX_TX_SIGNATURE_HEX_LENGTH: Final[int] = 256
MAX_INPUT_ADDRESS_LENGTH: Final[int] = 64
MAX_MESSAGE_BYTES: Final[int] = 16 * 1024

# ==============================================================================
# RATE LIMITING CONSTANTS
# ==============================================================================

RATE_LIMIT_WINDOW_SEC: Final[float] = 60.0
RATE_LIMIT_MAX_REQUESTS: Final[int] = 30
RATE_LIMIT_MAX_CONNECTIONS: Final[int] = 5

# WebSocket close code used when refusing a connection (policy violation)
CONNECTION_LIMIT_CLOSE_CODE: Final[int] = 1008

# ==============================================================================
# NETWORK CONSTANTS
# ==============================================================================

PROTOCOL_VERSION: Final[int] = 1
DEFAULT_HOST: Final[str] = "0.0.0.0"
DEFAULT_PORT: Final[int] = 8080
WEBSOCKET_PATH: Final[str] = "/ws"
CHANNEL_MAX_PENDING: Final[int] = 256           # Outbound messages per connection
