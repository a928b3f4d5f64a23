"""
BlindJoin Peer Share Holders

Client side of the coordinator-to-coordinator share protocol. The
coordinator that creates a session key acts as dealer: it keeps share 1
and hands every other share to one peer, then asks peers for partial
signatures as blinded commitments arrive.

    PUT    {peer}/threshold/keys/{keyId}          share  -> 204
    POST   {peer}/threshold/keys/{keyId}/partial  {"blindedMessage"}
                                                  -> {"index", "signature"}
    DELETE {peer}/threshold/keys/{keyId}                 -> 204

Every request carries "Authorization: Bearer <peer token>".
"""

from __future__ import annotations
import asyncio
import logging
from typing import Callable, List, Optional, Sequence

import httpx
from Crypto.Random import get_random_bytes

from blindjoin.constants import KEY_ID_BYTES, PEER_TIMEOUT_SEC, THRESHOLD_KEYS_PATH
from blindjoin.core.types import RSAKeyPair, RSAPublicKey
from blindjoin.crypto.blind_rsa import generate_keypair, hex_to_int, int_to_hex
from blindjoin.crypto.threshold import (
    LocalShareHolder,
    PartialSignature,
    ShareHolder,
    ThresholdKeyShare,
    ThresholdParams,
    ThresholdSigningAuthority,
    split_key_material,
)
from blindjoin.errors import (
    InsufficientSharesError,
    MalformedBlindedMessageError,
    PeerRequestError,
)

logger = logging.getLogger(__name__)


async def _request(
    client: httpx.AsyncClient,
    peer: str,
    method: str,
    path: str,
    body: Optional[dict] = None
) -> Optional[dict]:
    """One call to a peer. Returns the JSON body, or None for 204."""
    try:
        response = await client.request(method, f"{peer}{path}", json=body)
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return None
        data = response.json()
    except httpx.HTTPStatusError as e:
        raise PeerRequestError(peer, f"returned {e.response.status_code}")
    except (httpx.HTTPError, ValueError) as e:
        raise PeerRequestError(peer, f"request failed: {e}")

    if not isinstance(data, dict):
        raise PeerRequestError(peer, "response is not an object")
    return data


class RemoteShareHolder(ShareHolder):
    """A share dealt to a peer coordinator."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        peer: str,
        key_id: str,
        index: int,
        public_key: RSAPublicKey,
        total_shares: int
    ):
        self.index = index
        self.peer = peer
        self.key_id = key_id
        self.public_key = public_key
        self.total_shares = total_shares
        self._client = client

    @property
    def path(self) -> str:
        return f"{THRESHOLD_KEYS_PATH}/{self.key_id}"

    async def partial_sign(self, message: int) -> PartialSignature:
        data = await _request(self._client, self.peer, "POST", f"{self.path}/partial", {
            "blindedMessage": int_to_hex(message, self.public_key),
        })
        if data is None or data.get("index") != self.index:
            raise PeerRequestError(self.peer, f"answered for the wrong share (wanted {self.index})")

        signature = data.get("signature")
        if not isinstance(signature, str):
            raise PeerRequestError(self.peer, "no signature in response")
        try:
            value = hex_to_int(signature, self.public_key)
        except MalformedBlindedMessageError as e:
            raise PeerRequestError(self.peer, e.message)

        return PartialSignature(
            index=self.index,
            value=value,
            public_key=self.public_key,
            message=message,
            total_shares=self.total_shares,
        )

    async def close(self) -> None:
        await _request(self._client, self.peer, "DELETE", self.path)

    def __repr__(self) -> str:
        return f"RemoteShareHolder(index={self.index}, peer={self.peer})"


class PeerNetwork:
    """
    The peer coordinators that hold this node's dealt shares.

    Peer i (0-based) receives share i + 2; share 1 stays local.
    """

    def __init__(
        self,
        peers: Sequence[str],
        token: str,
        timeout: float = PEER_TIMEOUT_SEC,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.peers = [peer.rstrip("/") for peer in peers]
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._client.headers["Authorization"] = f"Bearer {token}"

    async def _deal_one(self, peer: str, key_id: str, share: ThresholdKeyShare) -> RemoteShareHolder:
        await _request(
            self._client, peer, "PUT", f"{THRESHOLD_KEYS_PATH}/{key_id}", share.to_dict()
        )
        return RemoteShareHolder(
            self._client, peer, key_id, share.index, share.public_key, share.total_shares
        )

    async def deal(self, key_id: str, shares: Sequence[ThresholdKeyShare]) -> List[RemoteShareHolder]:
        """
        Hand one share to each peer.

        Peers that fail are logged and left out.
        """
        if len(shares) > len(self.peers):
            raise PeerRequestError("*", f"{len(shares)} shares for {len(self.peers)} peers")

        results = await asyncio.gather(
            *(self._deal_one(peer, key_id, share) for peer, share in zip(self.peers, shares)),
            return_exceptions=True,
        )

        holders = []
        for peer, result in zip(self.peers, results):
            if isinstance(result, RemoteShareHolder):
                holders.append(result)
            else:
                logger.warning(f"Could not deal share to {peer}: {result}")
        return holders

    async def close(self):
        await self._client.aclose()


def distributed_key_factory(
    bits: int,
    params: ThresholdParams,
    network: PeerNetwork,
    keygen: Callable[[int], RSAKeyPair] = generate_keypair
):
    """
    Session key factory for a coordinator network.

    Generates the key, splits it, keeps share 1 and deals the rest. The
    private exponent goes out of scope once the shares exist.
    """
    if len(network.peers) != params.total_shares - 1:
        raise PeerRequestError(
            "*", f"{params.total_shares}-share keys need {params.total_shares - 1} peers"
        )

    async def factory() -> ThresholdSigningAuthority:
        keypair = await asyncio.to_thread(keygen, bits)
        bundle = await asyncio.to_thread(
            split_key_material, keypair.private, keypair.public, params
        )
        del keypair

        key_id = get_random_bytes(KEY_ID_BYTES).hex()
        holders: List[ShareHolder] = [LocalShareHolder(bundle.share(1))]
        holders.extend(await network.deal(key_id, bundle.shares[1:]))

        if len(holders) < params.threshold:
            await asyncio.gather(*(h.close() for h in holders), return_exceptions=True)
            raise InsufficientSharesError(len(holders), params.threshold)

        logger.debug(f"Key {key_id[:8]}: {len(holders)}/{params.total_shares} holders online")
        return ThresholdSigningAuthority(bundle.public_key, holders, params.threshold)

    return factory
