"""
BlindJoin Test Fixtures
"""

import itertools
import time
from typing import List, Optional

import pytest
from Crypto.PublicKey import ECC
from Crypto.Random import get_random_bytes

from blindjoin.coordinator.channel import MessageChannel
from blindjoin.coordinator.coordinator import Membership, SessionCoordinator
from blindjoin.core.types import Denomination, RSAPublicKey
from blindjoin.crypto.blind_rsa import (
    BlindSignatureAuthority,
    blind_commitment,
    generate_keypair,
    hex_to_int,
    int_to_hex,
    unblind,
)
from blindjoin.crypto.threshold import ThresholdParams, ThresholdSigningAuthority
from blindjoin.protocol.auth import sign_join
from blindjoin.protocol.messages import parse_client_message


# ==============================================================================
# Key material
# ==============================================================================

@pytest.fixture(scope="session")
def rsa_pool():
    """A few 2048-bit keypairs, generated once per run."""
    return [generate_keypair(2048) for _ in range(3)]


@pytest.fixture
def rsa_keypair(rsa_pool):
    return rsa_pool[0]


@pytest.fixture
def key_factory(rsa_pool):
    """Session key factory drawing from the pool."""
    keys = itertools.cycle(rsa_pool)

    async def factory():
        return BlindSignatureAuthority(next(keys))
    return factory


@pytest.fixture
def threshold_key_factory(rsa_pool):
    """Session key factory producing 3-of-5 threshold authorities."""
    keys = itertools.cycle(rsa_pool)

    async def factory():
        keypair = next(keys)
        return ThresholdSigningAuthority.from_private_key(
            keypair.private, keypair.public, ThresholdParams(3, 5)
        )
    return factory


@pytest.fixture
def ed25519_key():
    return ECC.generate(curve="Ed25519")


def now_ms() -> int:
    return int(time.time() * 1000)


# ==============================================================================
# Coordinator
# ==============================================================================

@pytest.fixture
def coordinator(key_factory):
    """Coordinator with five-party sessions and pooled keys."""
    return SessionCoordinator(key_factory=key_factory, min_participants=5)


class FakeClient:
    """
    A depositor talking to the coordinator through dispatch().

    Does the client side of blinding so tests read like the protocol.
    """

    def __init__(self, coordinator: SessionCoordinator, label: str):
        self.coordinator = coordinator
        self.identity = ECC.generate(curve="Ed25519")
        self.channel = MessageChannel(label=label)
        self.membership = Membership()
        self.inbox: List[dict] = []

        self.commitment = get_random_bytes(32).hex()
        self.public_key: Optional[RSAPublicKey] = None
        self.blinding_factor: Optional[int] = None
        self.unblinded_signature: Optional[str] = None

    async def send(self, payload: dict):
        message = parse_client_message(payload)
        await self.coordinator.dispatch(self.membership, message, self.channel)

    async def join(self, denomination=Denomination.SOL_1, timestamp: Optional[int] = None):
        ts = now_ms() if timestamp is None else timestamp
        await self.send(sign_join(self.identity, ts, denomination))
        joined = self.last("JOINED")
        if joined is not None:
            self.public_key = RSAPublicKey.from_dict(joined["authorityPublicKey"])

    async def ready(self):
        await self.send({"type": "READY"})

    async def submit_blinded(self):
        blinded, self.blinding_factor = blind_commitment(self.commitment, self.public_key)
        await self.send({"type": "SUBMIT_BLINDED", "blindedCommitment": blinded})

    def unblind(self) -> str:
        blind_sig = hex_to_int(self.last("BLIND_SIGNATURE")["signature"], self.public_key)
        signature = unblind(blind_sig, self.blinding_factor, self.public_key)
        self.unblinded_signature = int_to_hex(signature, self.public_key)
        return self.unblinded_signature

    async def submit_unblinded(self):
        await self.send({
            "type": "SUBMIT_UNBLINDED",
            "unblindedCommitment": self.commitment,
            "blindSignature": self.unblind(),
        })

    async def submit_input(self, address: str):
        await self.send({"type": "SUBMIT_INPUT", "inputAddress": address})

    async def submit_signature(self):
        await self.send({"type": "SUBMIT_SIGNATURE", "signature": get_random_bytes(64).hex()})

    def received(self) -> List[dict]:
        self.inbox.extend(m.to_dict() for m in self.channel.drain())
        return self.inbox

    def types(self) -> List[str]:
        return [m["type"] for m in self.received()]

    def last(self, kind: str) -> Optional[dict]:
        for message in reversed(self.received()):
            if message["type"] == kind:
                return message
        return None

    @property
    def session(self):
        return self.coordinator.registry.get(self.membership.session_id)


@pytest.fixture
def make_clients(coordinator):
    """Factory: make_clients(n) -> list of FakeClient bound to `coordinator`."""
    counter = itertools.count()

    def factory(count: int, target: SessionCoordinator = None):
        return [
            FakeClient(target or coordinator, f"client-{next(counter)}")
            for _ in range(count)
        ]
    return factory
