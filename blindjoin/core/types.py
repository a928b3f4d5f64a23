"""
BlindJoin Core Types

Sessions, participants and RSA key material.
"""

from __future__ import annotations
import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional, TYPE_CHECKING

from blindjoin.constants import (
    DENOMINATION_1,
    DENOMINATION_10,
    DENOMINATION_100,
)

if TYPE_CHECKING:
    from blindjoin.builder.transaction import TransactionSkeleton
    from blindjoin.crypto.blind_rsa import SigningAuthority


class Denomination(IntEnum):
    """Fixed deposit buckets (base units)."""
    SOL_1 = DENOMINATION_1
    SOL_10 = DENOMINATION_10
    SOL_100 = DENOMINATION_100


class SessionState(Enum):
    """CoinJoin session phases."""
    WAITING_FOR_PARTICIPANTS = "waiting"
    COLLECTING_BLINDED_COMMITMENTS = "collecting"
    COLLECTING_UNBLINDED = "unblinded"
    BUILDING_TRANSACTION = "building"
    SIGNING_TRANSACTION = "signing_tx"
    BROADCASTING = "broadcasting"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ABORTED)


@dataclass(frozen=True, slots=True)
class RSAPublicKey:
    """RSA public key (n, e)."""
    n: int
    e: int

    @property
    def size_bytes(self) -> int:
        """Modulus length in bytes."""
        return (self.n.bit_length() + 7) // 8

    def to_dict(self) -> dict:
        """Wire form, decimal strings so JSON clients keep full precision."""
        return {"n": str(self.n), "e": str(self.e)}

    @classmethod
    def from_dict(cls, data: dict) -> RSAPublicKey:
        return cls(n=int(data["n"]), e=int(data["e"]))

    def __repr__(self) -> str:
        return f"RSAPublicKey(bits={self.n.bit_length()}, e={self.e})"


@dataclass(frozen=True, slots=True)
class RSAPrivateKey:
    """
    RSA private key.

    NOTE: Never transmitted over network.
    """
    n: int
    d: int
    p: int
    q: int

    def __repr__(self) -> str:
        # Never expose secret key data
        return f"RSAPrivateKey(bits={self.n.bit_length()}, d=<redacted>)"


@dataclass(frozen=True, slots=True)
class RSAKeyPair:
    """Per-session RSA key pair for blind signatures."""
    public: RSAPublicKey
    private: RSAPrivateKey

    def __post_init__(self):
        if self.public.n != self.private.n:
            raise ValueError("Public and private key must share the modulus")

    def __repr__(self) -> str:
        return f"KeyPair(public={self.public})"


@dataclass
class Participant:
    """
    Member of a session.

    The id is random per session and unrelated to the declared public key
    or any earlier session.
    """
    id: str
    public_key: str
    joined_at: float
    ready: bool = False
    blinded_commitment: Optional[str] = None
    input_address: Optional[str] = None


@dataclass
class Session:
    """
    One run of the protocol for one denomination.

    Only state, collections and the participant set change after creation,
    and only through the SessionCoordinator.
    """
    id: str
    denomination: Denomination
    authority: "SigningAuthority"
    created_at: float
    expires_at: float
    min_participants: int
    max_participants: int

    state: SessionState = SessionState.WAITING_FOR_PARTICIPANTS
    participants: "OrderedDict[str, Participant]" = field(default_factory=OrderedDict)
    blinded_commitments: List[str] = field(default_factory=list)
    unblinded_commitments: List[str] = field(default_factory=list)
    signatures: Dict[str, str] = field(default_factory=dict)

    transaction: Optional["TransactionSkeleton"] = None
    input_indices: Dict[str, int] = field(default_factory=dict)
    tx_reference: Optional[str] = None
    abort_reason: Optional[str] = None

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    @property
    def ready_count(self) -> int:
        return sum(1 for p in self.participants.values() if p.ready)

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.max_participants

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_open(self, now: float) -> bool:
        """Accepting new participants."""
        return (
            self.state == SessionState.WAITING_FOR_PARTICIPANTS
            and not self.is_full
            and not self.is_expired(now)
        )

    def to_dict(self) -> dict:
        """Export session summary (no commitments, no participant ids)."""
        return {
            "id": self.id,
            "denomination": int(self.denomination),
            "state": self.state.value,
            "participants": self.participant_count,
            "ready": self.ready_count,
            "min_participants": self.min_participants,
            "max_participants": self.max_participants,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }
