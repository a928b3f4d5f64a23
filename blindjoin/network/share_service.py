"""
BlindJoin Share Holder Service

Routes a coordinator mounts when it holds shares for its peers. The
matching client is blindjoin.network.peers.
"""

from __future__ import annotations
import asyncio
import hmac
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from aiohttp import web

from blindjoin.constants import MAX_HELD_SHARES, SHARE_TTL_SEC, THRESHOLD_KEYS_PATH
from blindjoin.crypto.blind_rsa import hex_to_int, int_to_hex
from blindjoin.crypto.threshold import ThresholdKeyShare, generate_partial_signature
from blindjoin.errors import BlindJoinError

logger = logging.getLogger(__name__)

_KEY_ID_RE = re.compile(r"[0-9a-f]{32}")


@dataclass
class HeldShare:
    share: ThresholdKeyShare
    received_at: float


class ShareStore:
    """
    Shares dealt to this node, keyed by key id.

    Entries the dealer never deletes are dropped after `ttl` seconds.
    """

    def __init__(
        self,
        max_shares: int = MAX_HELD_SHARES,
        ttl: float = SHARE_TTL_SEC,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_shares = max_shares
        self.ttl = ttl
        self._clock = clock
        self._shares: Dict[str, HeldShare] = {}
        self._lock = threading.Lock()

    def put(self, key_id: str, share: ThresholdKeyShare) -> bool:
        """Store a share. False when the store is full or the id is taken."""
        self.prune()
        with self._lock:
            if key_id in self._shares or len(self._shares) >= self.max_shares:
                return False
            self._shares[key_id] = HeldShare(share=share, received_at=self._clock())
            return True

    def get(self, key_id: str) -> Optional[ThresholdKeyShare]:
        now = self._clock()
        with self._lock:
            held = self._shares.get(key_id)
            if held is None or now - held.received_at > self.ttl:
                return None
            return held.share

    def remove(self, key_id: str) -> bool:
        with self._lock:
            return self._shares.pop(key_id, None) is not None

    def prune(self) -> int:
        """Drop expired shares. Returns number removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, h in self._shares.items() if now - h.received_at > self.ttl]
            for key_id in stale:
                del self._shares[key_id]
            return len(stale)

    def clear(self):
        with self._lock:
            self._shares.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._shares)


class ShareHolderService:
    """Serves partial signatures for shares dealt by peer coordinators."""

    def __init__(self, token: str, store: Optional[ShareStore] = None):
        self._token = token.encode()
        self.store = store or ShareStore()
        self.partials_served = 0

    def register(self, app: web.Application) -> None:
        app.router.add_put(THRESHOLD_KEYS_PATH + "/{key_id}", self._handle_put)
        app.router.add_post(THRESHOLD_KEYS_PATH + "/{key_id}/partial", self._handle_partial)
        app.router.add_delete(THRESHOLD_KEYS_PATH + "/{key_id}", self._handle_delete)

    def _authorize(self, request: web.Request) -> str:
        """Check the bearer token and return the key id from the path."""
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme != "Bearer" or not hmac.compare_digest(token.encode(), self._token):
            logger.warning(f"Rejected share request from {request.remote}: bad token")
            raise web.HTTPUnauthorized()

        key_id = request.match_info["key_id"]
        if not _KEY_ID_RE.fullmatch(key_id):
            raise web.HTTPBadRequest(text="bad key id")
        return key_id

    @staticmethod
    async def _json(request: web.Request) -> dict:
        try:
            data = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(text="body is not JSON")
        if not isinstance(data, dict):
            raise web.HTTPBadRequest(text="body is not an object")
        return data

    async def _handle_put(self, request: web.Request) -> web.Response:
        key_id = self._authorize(request)
        try:
            share = ThresholdKeyShare.from_dict(await self._json(request))
        except BlindJoinError as e:
            raise web.HTTPBadRequest(text=e.message)

        if not self.store.put(key_id, share):
            raise web.HTTPConflict(text="key id taken or store full")

        logger.debug(f"Holding share {share.index} of key {key_id[:8]}")
        return web.Response(status=204)

    async def _handle_partial(self, request: web.Request) -> web.Response:
        key_id = self._authorize(request)
        share = self.store.get(key_id)
        if share is None:
            raise web.HTTPNotFound(text="unknown key")

        data = await self._json(request)
        blinded = data.get("blindedMessage")
        if not isinstance(blinded, str):
            raise web.HTTPBadRequest(text="blindedMessage missing")

        try:
            message = hex_to_int(blinded, share.public_key)
            partial = await asyncio.to_thread(generate_partial_signature, message, share)
        except BlindJoinError as e:
            raise web.HTTPBadRequest(text=e.message)

        self.partials_served += 1
        return web.json_response({
            "index": partial.index,
            "signature": int_to_hex(partial.value, share.public_key),
        })

    async def _handle_delete(self, request: web.Request) -> web.Response:
        key_id = self._authorize(request)
        if not self.store.remove(key_id):
            raise web.HTTPNotFound(text="unknown key")
        logger.debug(f"Released share of key {key_id[:8]}")
        return web.Response(status=204)

    def get_stats(self) -> dict:
        return {
            "held_shares": len(self.store),
            "partials_served": self.partials_served,
        }
