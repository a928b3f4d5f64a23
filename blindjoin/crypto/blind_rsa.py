"""
BlindJoin RSA Blind Signatures

Lets the coordinator sign commitments without seeing them.

Protocol:
1. Coordinator generates a fresh RSA keypair per session, publishes (n, e)
2. Client hashes its commitment to m and blinds it: m' = m * r^e mod n
3. Coordinator signs the blinded value: s' = m'^d mod n
4. Client unblinds: s = s' * r^-1 mod n
5. Anyone verifies: s^e mod n == m

The coordinator only ever sees m', which is uniformly distributed for a
uniformly drawn r, so s' carries no information about m.
"""

from __future__ import annotations
import asyncio
import hmac
import logging
from dataclasses import dataclass
from typing import Protocol, Tuple

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Random import random as crandom
from Crypto.Util.number import GCD, inverse, long_to_bytes

from blindjoin.constants import (
    DEFAULT_RSA_KEY_BITS,
    MIN_RSA_KEY_BITS,
    RSA_PUBLIC_EXPONENT,
)
from blindjoin.core.types import RSAKeyPair, RSAPrivateKey, RSAPublicKey
from blindjoin.errors import InvalidKeySizeError, MalformedBlindedMessageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlindingResult:
    """Blinded message plus the factor needed to unblind (keep secret!)."""
    blinded_message: int
    blinding_factor: int


def generate_keypair(bits: int = DEFAULT_RSA_KEY_BITS) -> RSAKeyPair:
    """
    Generate a fresh RSA keypair for blind signing.

    Args:
        bits: Modulus size, at least MIN_RSA_KEY_BITS

    Returns:
        New key pair, never to be reused across sessions
    """
    if bits < MIN_RSA_KEY_BITS:
        raise InvalidKeySizeError(bits, MIN_RSA_KEY_BITS)

    key = RSA.generate(bits, e=RSA_PUBLIC_EXPONENT)

    return RSAKeyPair(
        public=RSAPublicKey(n=key.n, e=key.e),
        private=RSAPrivateKey(n=key.n, d=key.d, p=key.p, q=key.q),
    )


def hash_message(message: bytes, n: int) -> int:
    """Hash a message to an integer in Z_n."""
    digest = SHA256.new(message).digest()
    return int.from_bytes(digest, "big") % n


def blind(message: int, public_key: RSAPublicKey) -> BlindingResult:
    """
    Blind a message before sending it to the signer.

    Args:
        message: Message representative in [0, n)
        public_key: Signer's public key

    Returns:
        BlindingResult with blinded value and blinding factor
    """
    n, e = public_key.n, public_key.e

    # Random blinding factor coprime to n
    while True:
        r = crandom.randint(2, n - 1)
        if GCD(r, n) == 1:
            break

    blinded = (message * pow(r, e, n)) % n
    return BlindingResult(blinded_message=blinded, blinding_factor=r)


def sign(blinded_message: int, private_key: RSAPrivateKey) -> int:
    """
    Sign a blinded message (coordinator side).

    Raises:
        MalformedBlindedMessageError: value outside [1, n)
    """
    n = private_key.n
    if blinded_message <= 0 or blinded_message >= n:
        raise MalformedBlindedMessageError("Blinded value out of range")

    return pow(blinded_message, private_key.d, n)


def unblind(blind_signature: int, blinding_factor: int, public_key: RSAPublicKey) -> int:
    """Strip the blinding factor, giving a signature on the original message."""
    n = public_key.n
    return (blind_signature * inverse(blinding_factor, n)) % n


def verify(message: int, signature: int, public_key: RSAPublicKey) -> bool:
    """
    Verify a signature, comparing in constant time.

    Works for blinded and unblinded pairs alike.
    """
    n, e = public_key.n, public_key.e

    if signature <= 0 or signature >= n:
        return False

    size = public_key.size_bytes
    recovered = long_to_bytes(pow(signature, e, n), size)
    expected = long_to_bytes(message % n, size)
    return hmac.compare_digest(recovered, expected)


# ==============================================================================
# Hex codecs
# ==============================================================================

def int_to_hex(value: int, public_key: RSAPublicKey) -> str:
    """Encode an element of Z_n as fixed-width hex (modulus length)."""
    return long_to_bytes(value, public_key.size_bytes).hex()


def hex_to_int(value: str, public_key: RSAPublicKey) -> int:
    """
    Decode a hex element of Z_n.

    Raises:
        MalformedBlindedMessageError: not hex, longer than the modulus,
            or out of range
    """
    if len(value) > 2 * public_key.size_bytes:
        raise MalformedBlindedMessageError(
            f"Value longer than modulus ({len(value)} hex chars)"
        )

    try:
        number = int(value, 16)
    except ValueError:
        raise MalformedBlindedMessageError("Value is not hex")

    if number <= 0 or number >= public_key.n:
        raise MalformedBlindedMessageError("Value out of range")

    return number


def commitment_representative(commitment_hex: str, public_key: RSAPublicKey) -> int:
    """Message representative signed for a hex commitment."""
    return hash_message(bytes.fromhex(commitment_hex), public_key.n)


# ==============================================================================
# Signing authorities
# ==============================================================================

class SigningAuthority(Protocol):
    """Anything able to blind-sign for one session."""

    @property
    def public_key(self) -> RSAPublicKey: ...

    async def sign_blinded(self, blinded_message: int) -> int: ...

    async def close(self) -> None: ...


class BlindSignatureAuthority:
    """
    Single-key blind signing authority for one session.

    Holds the private exponent in memory for the lifetime of the session.
    """

    def __init__(self, keypair: RSAKeyPair):
        self._keypair = keypair

    @classmethod
    def generate(cls, bits: int = DEFAULT_RSA_KEY_BITS) -> BlindSignatureAuthority:
        return cls(generate_keypair(bits))

    @property
    def public_key(self) -> RSAPublicKey:
        return self._keypair.public

    @property
    def keypair(self) -> RSAKeyPair:
        return self._keypair

    async def sign_blinded(self, blinded_message: int) -> int:
        return await asyncio.to_thread(sign, blinded_message, self._keypair.private)

    async def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"BlindSignatureAuthority({self._keypair.public})"


async def sign_blinded_hex(authority: SigningAuthority, blinded_hex: str) -> str:
    """Decode, blind-sign and re-encode a hex value with any authority."""
    public_key = authority.public_key
    blinded = hex_to_int(blinded_hex, public_key)
    return int_to_hex(await authority.sign_blinded(blinded), public_key)


def verify_commitment(
    commitment_hex: str,
    signature_hex: str,
    public_key: RSAPublicKey
) -> bool:
    """Check an unblinded signature over a hex commitment."""
    try:
        signature = hex_to_int(signature_hex, public_key)
        message = commitment_representative(commitment_hex, public_key)
    except (MalformedBlindedMessageError, ValueError):
        return False

    return verify(message, signature, public_key)


def blind_commitment(
    commitment_hex: str,
    public_key: RSAPublicKey
) -> Tuple[str, int]:
    """
    Client-side helper: blind a hex commitment.

    Returns:
        (blinded value as hex, blinding factor)
    """
    message = commitment_representative(commitment_hex, public_key)
    result = blind(message, public_key)
    return int_to_hex(result.blinded_message, public_key), result.blinding_factor
