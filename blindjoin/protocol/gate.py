"""
BlindJoin Anti-Abuse Gate

Everything between a raw frame and the coordinator: connection caps,
rate limiting, schema validation and JOIN authentication.
"""

from __future__ import annotations
import logging
from typing import Mapping, Optional, Union

from blindjoin.constants import MAX_MESSAGE_BYTES
from blindjoin.errors import ConnectionLimitError, OnionRequiredError
from blindjoin.protocol.auth import JoinAuthenticator
from blindjoin.protocol.messages import ClientMessage, JoinMessage, parse_client_message
from blindjoin.protocol.rate_limit import ConnectionLimiter, SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


def client_address(
    remote: Optional[str],
    headers: Optional[Mapping[str, str]] = None,
    trust_forwarded: bool = False
) -> str:
    """
    Resolve the source address used as limiter key.

    X-Forwarded-For is honoured only behind a trusted proxy; the
    first hop is the client.
    """
    if trust_forwarded and headers:
        forwarded = headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return remote or "unknown"


def is_onion_host(host: Optional[str]) -> bool:
    """True when a Host header names a .onion service, port ignored."""
    if not host:
        return False
    name = host.rsplit(":", 1)[0] if host.count(":") == 1 else host
    return name.lower().rstrip(".").endswith(".onion")


class AntiAbuseGate:
    """Stateless checks plus the shared per-source tables."""

    def __init__(
        self,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        connection_limiter: Optional[ConnectionLimiter] = None,
        authenticator: Optional[JoinAuthenticator] = None,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
        trust_forwarded: bool = False,
        require_onion: bool = False
    ):
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.connection_limiter = connection_limiter or ConnectionLimiter()
        self.authenticator = authenticator or JoinAuthenticator()
        self.max_message_bytes = max_message_bytes
        self.trust_forwarded = trust_forwarded
        self.require_onion = require_onion

    def resolve_source(self, remote: Optional[str], headers: Optional[Mapping[str, str]] = None) -> str:
        return client_address(remote, headers, self.trust_forwarded)

    # --- connections ---

    def admit(self, source: str, host: Optional[str] = None) -> None:
        """
        Reserve a connection slot for source.

        Raises:
            OnionRequiredError: require_onion is set and host is not a .onion name
            ConnectionLimitError: source is at its connection cap
        """
        if self.require_onion and not is_onion_host(host):
            logger.warning(f"Refusing connection from {source}: host {host!r} is not a hidden service")
            raise OnionRequiredError(host or "")

        try:
            self.connection_limiter.acquire(source)
        except ConnectionLimitError:
            logger.warning(f"Refusing connection from {source}: limit reached")
            raise

    def release(self, source: str):
        self.connection_limiter.release(source)

    # --- messages ---

    def inspect(self, source: str, raw: Union[str, bytes]) -> ClientMessage:
        """
        Rate-check and validate one inbound frame.

        Raises:
            RateLimitError: source exceeded its window
            ValidationError: frame does not match the schema
        """
        self.rate_limiter.check(source)
        return parse_client_message(raw, self.max_message_bytes)

    def authenticate(self, join: JoinMessage) -> None:
        """
        Raises:
            AuthenticationError: bad signature or stale timestamp
        """
        self.authenticator.verify(join)

    # --- housekeeping ---

    def prune(self) -> int:
        removed = self.rate_limiter.prune()
        if removed:
            logger.debug(f"Pruned {removed} idle rate-limit entries")
        return removed

    def clear(self):
        self.rate_limiter.clear()
        self.connection_limiter.clear()

    def get_stats(self) -> dict:
        return {
            "rate_limit": self.rate_limiter.get_stats(),
            "connections": self.connection_limiter.get_stats(),
        }
