"""
BlindJoin Protocol: message schema, JOIN authentication, abuse limits.
"""

from blindjoin.protocol.messages import (
    ClientMessage,
    ClientMessageType,
    ServerMessage,
    ServerMessageType,
    JoinMessage,
    ReadyMessage,
    SubmitBlindedMessage,
    SubmitUnblindedMessage,
    SubmitInputMessage,
    SubmitSignatureMessage,
    AbortMessage,
    ErrorMessage,
    parse_client_message,
)
from blindjoin.protocol.auth import JoinAuthenticator, canonical_auth_message, sign_join
from blindjoin.protocol.rate_limit import ConnectionLimiter, SlidingWindowRateLimiter
from blindjoin.protocol.gate import AntiAbuseGate, client_address, is_onion_host

__all__ = [
    "ClientMessage",
    "ClientMessageType",
    "ServerMessage",
    "ServerMessageType",
    "JoinMessage",
    "ReadyMessage",
    "SubmitBlindedMessage",
    "SubmitUnblindedMessage",
    "SubmitInputMessage",
    "SubmitSignatureMessage",
    "AbortMessage",
    "ErrorMessage",
    "parse_client_message",
    "JoinAuthenticator",
    "canonical_auth_message",
    "sign_join",
    "ConnectionLimiter",
    "SlidingWindowRateLimiter",
    "AntiAbuseGate",
    "client_address",
    "is_onion_host",
]
