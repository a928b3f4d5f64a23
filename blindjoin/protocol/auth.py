"""
BlindJoin JOIN Authentication

A JOIN carries an Ed25519 (RFC 8032) detached signature over

    "StealthSol CoinJoin Auth:<publicKey>:<timestamp>:<denomination>"

made with the declared key. The timestamp (unix ms) must be no older
than the freshness window and not in the future.
"""

from __future__ import annotations
import logging
import time
from typing import Callable

from Crypto.PublicKey import ECC
from Crypto.Signature import eddsa

from blindjoin.constants import AUTH_MESSAGE_PREFIX, MAX_SIGNATURE_AGE_MS
from blindjoin.errors import AuthenticationError
from blindjoin.protocol.messages import JoinMessage

logger = logging.getLogger(__name__)


def canonical_auth_message(public_key: str, timestamp: int, denomination: int) -> bytes:
    """Bytes a client signs to join."""
    return f"{AUTH_MESSAGE_PREFIX}{public_key}:{timestamp}:{int(denomination)}".encode()


def sign_join(private_key: ECC.EccKey, timestamp: int, denomination: int) -> dict:
    """
    Client-side helper: build a signed JOIN payload.

    Args:
        private_key: Ed25519 key (ECC.generate(curve="Ed25519"))
        timestamp: Unix time in milliseconds
        denomination: Requested bucket

    Returns:
        JOIN message as a JSON-ready dict
    """
    public_key = private_key.public_key().export_key(format="raw").hex()
    message = canonical_auth_message(public_key, timestamp, denomination)
    signature = eddsa.new(private_key, "rfc8032").sign(message)
    return {
        "type": "JOIN",
        "denomination": int(denomination),
        "publicKey": public_key,
        "timestamp": timestamp,
        "signature": signature.hex(),
    }


class JoinAuthenticator:
    """Verifies JOIN signatures and freshness."""

    def __init__(
        self,
        max_age_ms: int = MAX_SIGNATURE_AGE_MS,
        clock: Callable[[], float] = time.time
    ):
        self.max_age_ms = max_age_ms
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def verify(self, join: JoinMessage) -> None:
        """
        Raises:
            AuthenticationError: stale, future-dated or bad signature
        """
        now = self.now_ms()

        if join.timestamp > now:
            raise AuthenticationError("timestamp in the future")
        if now - join.timestamp > self.max_age_ms:
            raise AuthenticationError("timestamp expired")

        try:
            key = eddsa.import_public_key(bytes.fromhex(join.public_key))
        except ValueError:
            raise AuthenticationError("invalid public key")

        message = canonical_auth_message(join.public_key, join.timestamp, join.denomination)
        try:
            eddsa.new(key, "rfc8032").verify(message, bytes.fromhex(join.signature))
        except ValueError:
            raise AuthenticationError("invalid signature")
