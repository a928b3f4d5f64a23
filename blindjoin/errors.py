"""
BlindJoin Error Handling

All error codes and exception classes.
"""

from enum import IntEnum
from typing import Optional, Any


class ErrorCode(IntEnum):
    """Protocol error codes."""

    # 1xxx - Input errors
    VALIDATION_FAILED = 1001
    INVALID_PARAMETER = 1002

    # 2xxx - Authentication errors
    AUTHENTICATION_FAILED = 2001

    # 3xxx - Abuse limits
    RATE_LIMITED = 3001
    TOO_MANY_CONNECTIONS = 3002
    ONION_REQUIRED = 3003

    # 4xxx - Session errors
    INVALID_STATE = 4001
    SESSION_EXPIRED = 4002

    # 5xxx - Cryptography errors
    INVALID_KEY_SIZE = 5001
    MALFORMED_BLINDED_MESSAGE = 5002
    INSUFFICIENT_SHARES = 5003
    THRESHOLD_COMBINE_FAILED = 5004
    INVALID_SIGNATURE = 5005

    # 6xxx - External collaborator errors
    TRANSACTION_BUILDER_FAILED = 6001
    PEER_REQUEST_FAILED = 6002


class BlindJoinError(Exception):
    """Base exception for all BlindJoin errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Any] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict for API responses."""
        result = {
            "code": self.code.value,
            "name": self.code.name,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result


# ==============================================================================
# Input Errors (1xxx)
# ==============================================================================

class ValidationError(BlindJoinError):
    """Malformed, oversized or non-enumerated field. Connection stays open."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else None
        super().__init__(ErrorCode.VALIDATION_FAILED, message, details)


class InvalidParameterError(BlindJoinError):
    def __init__(self, param: str, message: str = ""):
        msg = f"Invalid parameter: {param}"
        if message:
            msg += f" - {message}"
        super().__init__(ErrorCode.INVALID_PARAMETER, msg, {"parameter": param})


# ==============================================================================
# Authentication Errors (2xxx)
# ==============================================================================

class AuthenticationError(BlindJoinError):
    """Bad JOIN signature or stale/future timestamp."""

    def __init__(self, reason: str):
        super().__init__(
            ErrorCode.AUTHENTICATION_FAILED,
            f"Authentication failed: {reason}",
            {"reason": reason}
        )


# ==============================================================================
# Abuse Limit Errors (3xxx)
# ==============================================================================

class RateLimitError(BlindJoinError):
    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            ErrorCode.RATE_LIMITED,
            f"Rate limited. Retry after {retry_after} seconds",
            {"retry_after": retry_after}
        )


class ConnectionPolicyError(BlindJoinError):
    """Connection refused at accept time, before any frame is read."""


class ConnectionLimitError(ConnectionPolicyError):
    def __init__(self, source: str, limit: int):
        super().__init__(
            ErrorCode.TOO_MANY_CONNECTIONS,
            "Too many connections",
            {"source": source, "limit": limit}
        )


class OnionRequiredError(ConnectionPolicyError):
    def __init__(self, host: str):
        super().__init__(
            ErrorCode.ONION_REQUIRED,
            "Connections must arrive through a Tor hidden service",
            {"host": host}
        )


# ==============================================================================
# Session Errors (4xxx)
# ==============================================================================

class ProtocolStateError(BlindJoinError):
    """
    Message does not match the session phase, or references an unknown
    session/participant. Dropped without a response.
    """

    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_STATE, message)


class SessionExpiredError(BlindJoinError):
    def __init__(self, session_id: str):
        super().__init__(
            ErrorCode.SESSION_EXPIRED,
            f"Session {session_id} expired",
            {"session_id": session_id}
        )


# ==============================================================================
# Cryptography Errors (5xxx)
# ==============================================================================

class CryptoError(BlindJoinError):
    """Base class for cryptographic failures."""


class InvalidKeySizeError(CryptoError):
    def __init__(self, bits: int, minimum: int):
        super().__init__(
            ErrorCode.INVALID_KEY_SIZE,
            f"Key size {bits} is below minimum {minimum} bits",
            {"bits": bits, "minimum": minimum}
        )


class MalformedBlindedMessageError(CryptoError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.MALFORMED_BLINDED_MESSAGE, message)


class InsufficientSharesError(CryptoError):
    def __init__(self, count: int, required: int):
        super().__init__(
            ErrorCode.INSUFFICIENT_SHARES,
            f"Insufficient shares: {count} < {required}",
            {"count": count, "required": required}
        )


class ThresholdCombineError(CryptoError):
    def __init__(self, message: str = "Combined signature does not verify"):
        super().__init__(ErrorCode.THRESHOLD_COMBINE_FAILED, message)


class InvalidSignatureError(CryptoError):
    def __init__(self, message: str = "Signature verification failed"):
        super().__init__(ErrorCode.INVALID_SIGNATURE, message)


# ==============================================================================
# External Collaborator Errors (6xxx)
# ==============================================================================

class TransactionBuilderError(BlindJoinError):
    def __init__(self, message: str, details: Any = None):
        super().__init__(ErrorCode.TRANSACTION_BUILDER_FAILED, message, details)


class PeerRequestError(BlindJoinError):
    """A peer share holder could not be reached or answered nonsense."""

    def __init__(self, peer: str, message: str):
        super().__init__(
            ErrorCode.PEER_REQUEST_FAILED,
            f"Peer {peer}: {message}",
            {"peer": peer}
        )
