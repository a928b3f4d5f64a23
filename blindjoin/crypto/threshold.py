"""
BlindJoin Threshold Signing

Two schemes:

1. Shamir secret sharing over GF(p), p = 2^4423 - 1.
   Any t of n shares reconstruct the secret, fewer reveal nothing.

2. Threshold RSA with the private exponent shared modulo the group
   order. The dealer knows p and q, so it shares d over Z_L with
   L = lcm(p - 1, q - 1): share holder i owns s_i = f(i) mod L where
   f(0) = d and the other coefficients are uniform in Z_L. Partial
   signatures are m^s_i mod N. With Delta = n! the Lagrange coefficients
   Delta * lambda_i are integers, and since m^L = 1 mod N,

       w = prod(sigma_i ^ (Delta * lambda_i)) = m^(Delta * d)

   A Bezout pair (a, b) with Delta * a + e * b = 1 gives the ordinary
   RSA signature sigma = w^a * m^b = m^d. Fewer than t partials cannot be
   combined into anything that verifies.

Partials come from ShareHolder objects. A holder may live in this process
(LocalShareHolder) or on a peer coordinator reached over HTTP
(blindjoin.network.peers.RemoteShareHolder); ThresholdSigningAuthority
only ever sees their partials.
"""

from __future__ import annotations
import asyncio
import hashlib
import itertools
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from Crypto.Random import random as crandom

from blindjoin.constants import (
    DEFAULT_RSA_KEY_BITS,
    DEFAULT_THRESHOLD,
    DEFAULT_TOTAL_SHARES,
    MIN_THRESHOLD,
    SHAMIR_FIELD_PRIME,
)
from blindjoin.core.types import RSAPrivateKey, RSAPublicKey
from blindjoin.crypto.blind_rsa import generate_keypair, verify
from blindjoin.errors import (
    InsufficientSharesError,
    InvalidParameterError,
    MalformedBlindedMessageError,
    ThresholdCombineError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdParams:
    """t-of-n parameters."""
    threshold: int = DEFAULT_THRESHOLD
    total_shares: int = DEFAULT_TOTAL_SHARES

    def __post_init__(self):
        if self.threshold < MIN_THRESHOLD:
            raise InvalidParameterError(
                "threshold", f"must be at least {MIN_THRESHOLD}"
            )
        if self.threshold > self.total_shares:
            raise InvalidParameterError(
                "threshold", "cannot exceed total_shares"
            )

    @property
    def delta(self) -> int:
        return math.factorial(self.total_shares)


# ==============================================================================
# Shamir secret sharing
# ==============================================================================

@dataclass(frozen=True)
class SecretShare:
    """One Shamir share. Carries its threshold so undersized sets fail."""
    index: int
    value: int
    threshold: int

    def __repr__(self) -> str:
        return f"SecretShare(index={self.index}, threshold={self.threshold})"


def _eval_poly(coefficients: Sequence[int], x: int, modulus: Optional[int] = None) -> int:
    """Horner evaluation, lowest coefficient first."""
    result = 0
    for coefficient in reversed(coefficients):
        result = result * x + coefficient
        if modulus is not None:
            result %= modulus
    return result


def split_secret(
    secret: int,
    threshold: int,
    total_shares: int,
    prime: int = SHAMIR_FIELD_PRIME
) -> List[SecretShare]:
    """
    Split a secret into Shamir shares.

    Args:
        secret: Value in [0, prime)
        threshold: Shares needed to reconstruct (>= 2)
        total_shares: Shares produced

    Returns:
        Shares with indices 1..total_shares
    """
    params = ThresholdParams(threshold, total_shares)

    if secret < 0 or secret >= prime:
        raise InvalidParameterError("secret", "must lie in the share field")
    if total_shares >= prime:
        raise InvalidParameterError("total_shares", "too large for the field")

    coefficients = [secret] + [
        crandom.randint(0, prime - 1) for _ in range(params.threshold - 1)
    ]

    return [
        SecretShare(index=x, value=_eval_poly(coefficients, x, prime), threshold=threshold)
        for x in range(1, total_shares + 1)
    ]


def _check_indices(indices: Sequence[int]) -> None:
    if len(set(indices)) != len(indices):
        raise InvalidParameterError("shares", "duplicate share index")
    if any(i <= 0 for i in indices):
        raise InvalidParameterError("shares", "share index must be positive")


def reconstruct_secret(
    shares: Sequence[SecretShare],
    prime: int = SHAMIR_FIELD_PRIME
) -> int:
    """
    Lagrange interpolation at x = 0.

    Raises:
        InsufficientSharesError: fewer shares than their threshold
        InvalidParameterError: duplicate indices or mixed thresholds
    """
    if not shares:
        raise InsufficientSharesError(0, MIN_THRESHOLD)

    thresholds = {s.threshold for s in shares}
    if len(thresholds) != 1:
        raise InvalidParameterError("shares", "shares come from different splits")
    threshold = thresholds.pop()

    _check_indices([s.index for s in shares])

    if len(shares) < threshold:
        raise InsufficientSharesError(len(shares), threshold)

    subset = shares[:threshold]
    secret = 0
    for share in subset:
        numerator = 1
        denominator = 1
        for other in subset:
            if other.index == share.index:
                continue
            numerator = (numerator * -other.index) % prime
            denominator = (denominator * (share.index - other.index)) % prime
        lagrange = numerator * pow(denominator, -1, prime)
        secret = (secret + share.value * lagrange) % prime

    return secret


# ==============================================================================
# Threshold RSA
# ==============================================================================

@dataclass(frozen=True)
class ThresholdKeyShare:
    """
    Share of an RSA private exponent.

    NOTE: Only ever sent to its own holder, over the authenticated peer
    channel. Never logged.
    """
    index: int
    value: int
    public_key: RSAPublicKey
    verification_hash: str
    threshold: int
    total_shares: int

    @staticmethod
    def compute_hash(index: int, value: int) -> str:
        return hashlib.sha256(f"{index}:{value:x}".encode()).hexdigest()

    def is_intact(self) -> bool:
        return self.verification_hash == self.compute_hash(self.index, self.value)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "value": f"{self.value:x}",
            "publicKey": self.public_key.to_dict(),
            "verificationHash": self.verification_hash,
            "threshold": self.threshold,
            "totalShares": self.total_shares,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ThresholdKeyShare:
        """
        Raises:
            InvalidParameterError: missing fields, or the hash does not match
        """
        try:
            share = cls(
                index=int(data["index"]),
                value=int(data["value"], 16),
                public_key=RSAPublicKey.from_dict(data["publicKey"]),
                verification_hash=str(data["verificationHash"]),
                threshold=int(data["threshold"]),
                total_shares=int(data["totalShares"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidParameterError("share", f"malformed share: {e}")

        if share.index < 1 or share.index > share.total_shares:
            raise InvalidParameterError("share", "index out of range")
        if not share.is_intact():
            raise InvalidParameterError("share", f"share {share.index} failed integrity check")
        return share

    def __repr__(self) -> str:
        return (
            f"ThresholdKeyShare(index={self.index}, "
            f"{self.threshold}-of-{self.total_shares}, value=<redacted>)"
        )


@dataclass(frozen=True)
class ThresholdKeyBundle:
    """All shares of one key, plus the unchanged public key."""
    public_key: RSAPublicKey
    shares: Tuple[ThresholdKeyShare, ...]
    threshold: int
    total_shares: int

    def share(self, index: int) -> ThresholdKeyShare:
        for candidate in self.shares:
            if candidate.index == index:
                return candidate
        raise InvalidParameterError("index", f"no share {index}")


@dataclass(frozen=True)
class PartialSignature:
    """sigma_i = m^s_i mod N from share holder i."""
    index: int
    value: int
    public_key: RSAPublicKey
    message: int
    total_shares: int


def _group_order(private_key: RSAPrivateKey) -> int:
    """Carmichael function lambda(N) = lcm(p - 1, q - 1)."""
    p1, q1 = private_key.p - 1, private_key.q - 1
    return p1 * q1 // math.gcd(p1, q1)


def split_key_material(
    private_key: RSAPrivateKey,
    public_key: RSAPublicKey,
    params: ThresholdParams
) -> ThresholdKeyBundle:
    """
    Share the private exponent d among params.total_shares holders.

    Shares are reduced modulo lambda(N). Share i still agrees with d
    modulo gcd(i, lambda(N)), but there d equals e^-1, which anyone can
    compute from e alone. The caller should drop private_key afterwards.
    """
    if private_key.n != public_key.n:
        raise InvalidParameterError("private_key", "modulus mismatch")
    if private_key.p * private_key.q != private_key.n:
        raise InvalidParameterError("private_key", "factors do not match modulus")

    order = _group_order(private_key)
    coefficients = [private_key.d % order] + [
        crandom.randint(0, order - 1) for _ in range(params.threshold - 1)
    ]

    shares = []
    for index in range(1, params.total_shares + 1):
        value = _eval_poly(coefficients, index, order)
        shares.append(ThresholdKeyShare(
            index=index,
            value=value,
            public_key=public_key,
            verification_hash=ThresholdKeyShare.compute_hash(index, value),
            threshold=params.threshold,
            total_shares=params.total_shares,
        ))

    logger.debug(
        f"Split {public_key.n.bit_length()}-bit key into "
        f"{params.threshold}-of-{params.total_shares} shares"
    )

    return ThresholdKeyBundle(
        public_key=public_key,
        shares=tuple(shares),
        threshold=params.threshold,
        total_shares=params.total_shares,
    )


def generate_partial_signature(message: int, share: ThresholdKeyShare) -> PartialSignature:
    """Compute one holder's contribution."""
    n = share.public_key.n
    if message <= 0 or message >= n:
        raise InvalidParameterError("message", "out of range")
    if not share.is_intact():
        raise InvalidParameterError("share", f"share {share.index} failed integrity check")

    return PartialSignature(
        index=share.index,
        value=pow(message, share.value, n),
        public_key=share.public_key,
        message=message,
        total_shares=share.total_shares,
    )


def _integer_lagrange(indices: Sequence[int], delta: int) -> Dict[int, int]:
    """Delta * lambda_i evaluated at 0, exact over the integers."""
    coefficients = {}
    for i in indices:
        numerator = delta
        denominator = 1
        for j in indices:
            if j == i:
                continue
            numerator *= j
            denominator *= j - i
        coefficients[i] = numerator // denominator
    return coefficients


def _bezout(a: int, b: int) -> Tuple[int, int, int]:
    """Extended Euclid: returns (g, x, y) with a*x + b*y = g."""
    x0, x1, y0, y1 = 1, 0, 0, 1
    while b:
        q, a, b = a // b, b, a % b
        x0, x1 = x1, x0 - q * x1
        y0, y1 = y1, y0 - q * y1
    return a, x0, y0


def combine_partial_signatures(
    partials: Sequence[PartialSignature],
    threshold: int
) -> int:
    """
    Combine partial signatures into a standard RSA signature.

    Raises:
        InsufficientSharesError: fewer than threshold distinct indices
        InvalidParameterError: partials over different keys or messages
        ThresholdCombineError: combination does not verify
    """
    distinct: Dict[int, PartialSignature] = {}
    for partial in partials:
        distinct.setdefault(partial.index, partial)

    if len(distinct) < threshold:
        raise InsufficientSharesError(len(distinct), threshold)

    selected = list(distinct.values())[:threshold]
    first = selected[0]
    for partial in selected[1:]:
        if partial.public_key != first.public_key or partial.message != first.message:
            raise InvalidParameterError("partials", "partials do not match")

    public_key = first.public_key
    n, e = public_key.n, public_key.e
    total = max(max(p.total_shares for p in selected), max(distinct))
    delta = math.factorial(total)

    lagrange = _integer_lagrange([p.index for p in selected], delta)

    w = 1
    for partial in selected:
        # Negative exponents resolve to modular inverses
        try:
            w = (w * pow(partial.value, lagrange[partial.index], n)) % n
        except ValueError:
            raise ThresholdCombineError(f"Partial {partial.index} is not invertible")

    g, a, b = _bezout(delta, e)
    if g != 1:
        raise ThresholdCombineError("Public exponent shares a factor with n!")

    try:
        signature = (pow(w, a, n) * pow(first.message, b, n)) % n
    except ValueError:
        raise ThresholdCombineError("Combined value is not invertible")

    if not verify(first.message, signature, public_key):
        raise ThresholdCombineError()

    return signature


def combine_any_subset(partials: Sequence[PartialSignature], threshold: int) -> int:
    """
    Combine, trying every threshold-sized subset until one verifies.

    Tolerates holders that answered with garbage as long as `threshold`
    honest partials are present.
    """
    distinct: Dict[int, PartialSignature] = {}
    for partial in partials:
        distinct.setdefault(partial.index, partial)
    if len(distinct) < threshold:
        raise InsufficientSharesError(len(distinct), threshold)

    last_error: Optional[ThresholdCombineError] = None
    for subset in itertools.combinations(distinct.values(), threshold):
        try:
            return combine_partial_signatures(subset, threshold)
        except ThresholdCombineError as e:
            last_error = e
            logger.debug(f"Partials {[p.index for p in subset]} did not combine: {e.message}")
    raise last_error


# ==============================================================================
# Share holders
# ==============================================================================

class ShareHolder(ABC):
    """
    One party holding a single key share.

    Subclasses answer partial signature requests; the authority never
    sees the share itself.
    """

    index: int

    @abstractmethod
    async def partial_sign(self, message: int) -> PartialSignature:
        """
        Raises:
            BlindJoinError: the holder could not produce a partial
        """

    async def close(self) -> None:
        """Forget the share. Called once the session is over."""


class LocalShareHolder(ShareHolder):
    """Share held in this process; exponentiation runs on a worker thread."""

    def __init__(self, share: ThresholdKeyShare):
        self.index = share.index
        self._share: Optional[ThresholdKeyShare] = share

    async def partial_sign(self, message: int) -> PartialSignature:
        share = self._share
        if share is None:
            raise InvalidParameterError("share", f"share {self.index} was discarded")
        return await asyncio.to_thread(generate_partial_signature, message, share)

    async def close(self) -> None:
        self._share = None

    def __repr__(self) -> str:
        return f"LocalShareHolder(index={self.index})"


class ThresholdSigningAuthority:
    """
    Blind signing authority backed by t-of-n share holders.

    Interchangeable with BlindSignatureAuthority. Holds no private
    exponent: every signature is assembled from the partials that the
    holders return. Holders that fail or time out are skipped as long as
    `threshold` of them answer.
    """

    def __init__(
        self,
        public_key: RSAPublicKey,
        holders: Sequence[ShareHolder],
        threshold: int
    ):
        indices = {holder.index for holder in holders}
        if len(indices) != len(holders):
            raise InvalidParameterError("holders", "duplicate share index")
        if len(indices) < threshold:
            raise InsufficientSharesError(len(indices), threshold)

        self._public_key = public_key
        self._holders = list(holders)
        self.threshold = threshold

    @classmethod
    def from_bundle(
        cls,
        bundle: ThresholdKeyBundle,
        signers: Optional[Sequence[int]] = None
    ) -> ThresholdSigningAuthority:
        """All holders in-process. signers picks which shares take part."""
        indices = list(signers) if signers else [s.index for s in bundle.shares]
        holders = [LocalShareHolder(bundle.share(index)) for index in dict.fromkeys(indices)]
        return cls(bundle.public_key, holders, bundle.threshold)

    @classmethod
    def generate(
        cls,
        bits: int = DEFAULT_RSA_KEY_BITS,
        params: Optional[ThresholdParams] = None
    ) -> ThresholdSigningAuthority:
        keypair = generate_keypair(bits)
        return cls.from_private_key(keypair.private, keypair.public, params)

    @classmethod
    def from_private_key(
        cls,
        private_key: RSAPrivateKey,
        public_key: RSAPublicKey,
        params: Optional[ThresholdParams] = None
    ) -> ThresholdSigningAuthority:
        bundle = split_key_material(private_key, public_key, params or ThresholdParams())
        return cls.from_bundle(bundle)

    @property
    def public_key(self) -> RSAPublicKey:
        return self._public_key

    @property
    def holders(self) -> List[ShareHolder]:
        return list(self._holders)

    async def sign_blinded(self, blinded_message: int) -> int:
        """
        Ask every holder for a partial and combine the answers.

        Raises:
            MalformedBlindedMessageError: value outside [1, n)
            InsufficientSharesError: fewer than threshold holders answered
            ThresholdCombineError: no threshold subset verifies
        """
        if blinded_message <= 0 or blinded_message >= self._public_key.n:
            raise MalformedBlindedMessageError("Blinded value out of range")

        results = await asyncio.gather(
            *(holder.partial_sign(blinded_message) for holder in self._holders),
            return_exceptions=True,
        )

        partials = []
        for holder, result in zip(self._holders, results):
            if isinstance(result, PartialSignature):
                partials.append(result)
            else:
                logger.warning(f"Share holder {holder.index} gave no partial: {result}")

        if len(partials) < self.threshold:
            raise InsufficientSharesError(len(partials), self.threshold)

        return await asyncio.to_thread(combine_any_subset, partials, self.threshold)

    async def close(self) -> None:
        """Tell every holder to forget its share."""
        results = await asyncio.gather(
            *(holder.close() for holder in self._holders),
            return_exceptions=True,
        )
        for holder, result in zip(self._holders, results):
            if isinstance(result, Exception):
                logger.warning(f"Share holder {holder.index} did not release its share: {result}")

    def __repr__(self) -> str:
        return (
            f"ThresholdSigningAuthority({self.threshold}-of-"
            f"{len(self._holders)}, {self._public_key})"
        )
