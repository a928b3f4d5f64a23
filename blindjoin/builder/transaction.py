"""
BlindJoin Transaction Builder

The coordinator hands the shuffled commitments and the input addresses to
a builder, gets back a skeleton every participant signs, and later passes
the collected signatures back for broadcast.

Builders:
- InMemoryTransactionBuilder: deterministic JSON skeleton, no ledger
- RelayerTransactionBuilder: delegates to a relayer over HTTP (httpx)
"""

from __future__ import annotations
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from blindjoin.errors import TransactionBuilderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionSkeleton:
    """Unsigned multi-input transaction."""
    denomination: int
    commitments: List[str]
    inputs: List[str]
    payload: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def input_count(self) -> int:
        return len(self.inputs)

    def to_dict(self) -> dict:
        return {
            "denomination": self.denomination,
            "commitments": list(self.commitments),
            "inputs": list(self.inputs),
            "payload": self.payload,
        }


class TransactionBuilder(ABC):
    """External collaborator that builds and broadcasts the joint transaction."""

    @abstractmethod
    async def build(
        self,
        denomination: int,
        commitments: Sequence[str],
        inputs: Sequence[str]
    ) -> TransactionSkeleton:
        """Build a skeleton; inputs[i] signs at input index i."""

    @abstractmethod
    async def broadcast(
        self,
        skeleton: TransactionSkeleton,
        signatures: Sequence[str]
    ) -> str:
        """Submit with signatures ordered by input index. Returns tx reference."""

    async def close(self):
        pass


class InMemoryTransactionBuilder(TransactionBuilder):
    """
    Builder without a ledger.

    The payload is the canonical JSON of the transaction and the reference
    is a SHA-256 over payload and signatures. Keeps every broadcast for
    inspection.
    """

    def __init__(self):
        self.broadcasts: List[Dict[str, Any]] = []

    async def build(self, denomination, commitments, inputs) -> TransactionSkeleton:
        if not commitments or not inputs:
            raise TransactionBuilderError("Nothing to build")

        payload = json.dumps(
            {
                "denomination": int(denomination),
                "commitments": list(commitments),
                "inputs": list(inputs),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return TransactionSkeleton(
            denomination=int(denomination),
            commitments=list(commitments),
            inputs=list(inputs),
            payload=payload,
        )

    async def broadcast(self, skeleton, signatures) -> str:
        if len(signatures) != skeleton.input_count:
            raise TransactionBuilderError(
                "Signature count does not match inputs",
                {"signatures": len(signatures), "inputs": skeleton.input_count},
            )

        digest = hashlib.sha256(skeleton.payload.encode())
        for signature in signatures:
            digest.update(bytes.fromhex(signature))
        reference = digest.hexdigest()

        self.broadcasts.append({"skeleton": skeleton, "signatures": list(signatures)})
        logger.info(f"Broadcast transaction {reference[:16]}...")
        return reference


class RelayerTransactionBuilder(TransactionBuilder):
    """
    Builder backed by a relayer service.

    POST {url}/coinjoin/build      -> {"transaction": "<payload>"}
    POST {url}/coinjoin/broadcast  -> {"txReference": "<reference>"}
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, path: str, body: dict) -> dict:
        try:
            response = await self._client.post(f"{self.url}{path}", json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise TransactionBuilderError(
                f"Relayer returned {e.response.status_code}",
                {"path": path},
            )
        except (httpx.HTTPError, ValueError) as e:
            raise TransactionBuilderError(f"Relayer request failed: {e}", {"path": path})

        if not isinstance(data, dict):
            raise TransactionBuilderError("Relayer response is not an object", {"path": path})
        return data

    async def build(self, denomination, commitments, inputs) -> TransactionSkeleton:
        data = await self._post("/coinjoin/build", {
            "denomination": int(denomination),
            "commitments": list(commitments),
            "inputs": list(inputs),
        })

        payload = data.get("transaction")
        if not isinstance(payload, str) or not payload:
            raise TransactionBuilderError("Relayer returned no transaction")

        return TransactionSkeleton(
            denomination=int(denomination),
            commitments=list(commitments),
            inputs=list(inputs),
            payload=payload,
            metadata={k: v for k, v in data.items() if k != "transaction"},
        )

    async def broadcast(self, skeleton, signatures) -> str:
        data = await self._post("/coinjoin/broadcast", {
            "transaction": skeleton.payload,
            "signatures": list(signatures),
        })

        reference = data.get("txReference")
        if not isinstance(reference, str) or not reference:
            raise TransactionBuilderError("Relayer returned no transaction reference")
        return reference

    async def close(self):
        await self._client.aclose()
