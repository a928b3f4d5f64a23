"""
BlindJoin Core: sessions, participants, key material.
"""

from blindjoin.core.types import (
    Denomination,
    SessionState,
    RSAPublicKey,
    RSAPrivateKey,
    RSAKeyPair,
    Participant,
    Session,
)

__all__ = [
    "Denomination",
    "SessionState",
    "RSAPublicKey",
    "RSAPrivateKey",
    "RSAKeyPair",
    "Participant",
    "Session",
]
