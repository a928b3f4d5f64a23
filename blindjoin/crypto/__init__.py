"""
BlindJoin Cryptography: RSA blind signatures and threshold signing.
"""

from blindjoin.crypto.blind_rsa import (
    BlindingResult,
    BlindSignatureAuthority,
    SigningAuthority,
    generate_keypair,
    hash_message,
    blind,
    sign,
    unblind,
    verify,
    int_to_hex,
    hex_to_int,
    sign_blinded_hex,
    verify_commitment,
    blind_commitment,
)
from blindjoin.crypto.threshold import (
    ThresholdParams,
    SecretShare,
    ThresholdKeyShare,
    ThresholdKeyBundle,
    PartialSignature,
    ThresholdSigningAuthority,
    ShareHolder,
    LocalShareHolder,
    split_secret,
    reconstruct_secret,
    split_key_material,
    generate_partial_signature,
    combine_partial_signatures,
    combine_any_subset,
)

__all__ = [
    "BlindingResult",
    "BlindSignatureAuthority",
    "SigningAuthority",
    "generate_keypair",
    "hash_message",
    "blind",
    "sign",
    "unblind",
    "verify",
    "int_to_hex",
    "hex_to_int",
    "sign_blinded_hex",
    "verify_commitment",
    "blind_commitment",
    "ThresholdParams",
    "SecretShare",
    "ThresholdKeyShare",
    "ThresholdKeyBundle",
    "PartialSignature",
    "ThresholdSigningAuthority",
    "ShareHolder",
    "LocalShareHolder",
    "split_secret",
    "reconstruct_secret",
    "split_key_material",
    "generate_partial_signature",
    "combine_partial_signatures",
    "combine_any_subset",
]
