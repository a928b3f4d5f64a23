"""
BlindJoin WebSocket Server Integration Tests

Runs the aiohttp application in-process and talks to it over real
WebSocket connections.
"""

import asyncio
import time

import pytest
from aiohttp import WSMsgType, test_utils
from Crypto.PublicKey import ECC
from Crypto.Random import get_random_bytes

from blindjoin.coordinator.coordinator import SessionCoordinator
from blindjoin.core.types import Denomination, RSAPublicKey, SessionState
from blindjoin.crypto.blind_rsa import blind_commitment, hex_to_int, int_to_hex, unblind
from blindjoin.network.server import CoordinatorServer
from blindjoin.network.share_service import ShareHolderService
from blindjoin.protocol.auth import sign_join
from blindjoin.protocol.gate import AntiAbuseGate
from blindjoin.protocol.rate_limit import ConnectionLimiter, SlidingWindowRateLimiter


# =============================================================================
# Helpers
# =============================================================================

def make_server(key_factory, max_requests=30, max_connections=5, require_onion=False) -> CoordinatorServer:
    """Gate and coordinator wired the way the node wires them."""
    gate = AntiAbuseGate(
        rate_limiter=SlidingWindowRateLimiter(max_requests=max_requests, window_sec=60),
        connection_limiter=ConnectionLimiter(max_connections),
        require_onion=require_onion,
    )
    coordinator = SessionCoordinator(
        key_factory=key_factory,
        authenticate=gate.authenticate,
        min_participants=2,
    )
    return CoordinatorServer(coordinator=coordinator, gate=gate)


def signed_join(denomination=Denomination.SOL_1) -> dict:
    identity = ECC.generate(curve="Ed25519")
    return sign_join(identity, int(time.time() * 1000), denomination)


async def expect(ws, kind: str, timeout: float = 5.0) -> dict:
    """Read frames until one of the given type arrives."""
    while True:
        message = await asyncio.wait_for(ws.receive_json(), timeout)
        if message["type"] == kind:
            return message


async def wait_until(predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


@pytest.fixture
def server(key_factory):
    return make_server(key_factory)


# =============================================================================
# HTTP endpoints
# =============================================================================

class TestEndpoints:
    """Tests for /health and /stats."""

    @pytest.mark.asyncio
    async def test_health(self, server):
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            response = await client.get("/health")
            assert response.status == 200
            assert await response.json() == {"status": "ok", "version": 1, "sessions": 0}

    @pytest.mark.asyncio
    async def test_stats(self, server):
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            response = await client.get("/stats")
            data = await response.json()
            assert data["coordinator"]["live_sessions"] == 0
            assert data["gate"]["connections"]["refused"] == 0
            assert data["websockets"] == 0

    @pytest.mark.asyncio
    async def test_stats_with_share_service(self, key_factory):
        server = make_server(key_factory)
        server.share_service = ShareHolderService("peer-token")
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            data = await (await client.get("/stats")).json()
            assert data["shares"] == {"held_shares": 0, "partials_served": 0}

            response = await client.delete("/threshold/keys/" + "0" * 32)
            assert response.status == 401


# =============================================================================
# WebSocket protocol
# =============================================================================

class TestWebSocket:
    """Tests for the participant WebSocket."""

    @pytest.mark.asyncio
    async def test_join(self, server):
        """Test JOIN over the wire yields JOINED and a participant count."""
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            ws = await client.ws_connect("/ws")
            await ws.send_json(signed_join())

            joined = await expect(ws, "JOINED")
            assert len(joined["sessionId"]) == 32
            count = await expect(ws, "PARTICIPANT_COUNT")
            assert count == {"type": "PARTICIPANT_COUNT", "count": 1, "needed": 2}

            await ws.close()
            await wait_until(lambda: len(server.coordinator.registry) == 0)

    @pytest.mark.asyncio
    async def test_invalid_frame(self, server):
        """Test malformed frames get ERROR and the connection stays open."""
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            ws = await client.ws_connect("/ws")

            await ws.send_str("not json")
            error = await expect(ws, "ERROR")
            assert error["code"] == 1001

            await ws.send_json({"type": "JOIN", "denomination": 12345})
            error = await expect(ws, "ERROR")
            assert error["code"] == 1001

            await ws.send_json(signed_join())
            await expect(ws, "JOINED")
            await ws.close()

    @pytest.mark.asyncio
    async def test_rate_limited(self, key_factory):
        """Test a source over its window gets ERROR with retryAfter."""
        server = make_server(key_factory, max_requests=2)
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            ws = await client.ws_connect("/ws")
            for _ in range(3):
                await ws.send_json({"type": "READY"})

            error = await expect(ws, "ERROR")
            assert error["code"] == 3001
            assert 1 <= error["retryAfter"] <= 60
            await ws.close()

    @pytest.mark.asyncio
    async def test_connection_limit(self, key_factory):
        """Test a connection over the per-source cap is closed with 1008."""
        server = make_server(key_factory, max_connections=1)
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            first = await client.ws_connect("/ws")
            second = await client.ws_connect("/ws")

            message = await asyncio.wait_for(second.receive(), 5)
            assert message.type == WSMsgType.CLOSE
            assert second.close_code == 1008

            await first.send_json(signed_join())
            await expect(first, "JOINED")

            await first.close()
            await wait_until(lambda: server.gate.connection_limiter.count("127.0.0.1") == 0)

            third = await client.ws_connect("/ws")
            await third.send_json(signed_join())
            await expect(third, "JOINED")
            await third.close()

    @pytest.mark.asyncio
    async def test_onion_required(self, key_factory):
        """Test a non-onion Host is closed with 1008 when Tor is required."""
        server = make_server(key_factory, require_onion=True)
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            plain = await client.ws_connect("/ws")
            message = await asyncio.wait_for(plain.receive(), 5)
            assert message.type == WSMsgType.CLOSE
            assert plain.close_code == 1008

            hidden = await client.ws_connect("/ws", headers={"Host": "coordinatorexample.onion"})
            await hidden.send_json(signed_join())
            await expect(hidden, "JOINED")
            await hidden.close()

    @pytest.mark.asyncio
    async def test_join_rejected_by_gate(self, server):
        """Test a stale JOIN over the wire is refused by the gate's authenticator."""
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            ws = await client.ws_connect("/ws")
            identity = ECC.generate(curve="Ed25519")
            await ws.send_json(sign_join(identity, int(time.time() * 1000) - 10 * 60 * 1000, Denomination.SOL_1))

            error = await expect(ws, "ERROR")
            assert error["code"] == 2001
            assert len(server.coordinator.registry) == 0
            await ws.close()

    @pytest.mark.asyncio
    async def test_disconnect_after_start_aborts(self, server):
        """Test closing a socket mid-protocol aborts the session for the rest."""
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            a = await client.ws_connect("/ws")
            b = await client.ws_connect("/ws")
            for ws in (a, b):
                await ws.send_json(signed_join())
                await expect(ws, "JOINED")
            for ws in (a, b):
                await ws.send_json({"type": "READY"})
            await expect(b, "REQUEST_BLINDED_COMMITMENT")

            await a.close()
            aborted = await expect(b, "SESSION_ABORTED")
            assert aborted["reason"] == "participant disconnected"
            await b.close()


class TestFullSession:
    """Tests for a complete run over WebSockets."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_two_party_session(self, server):
        """Test two depositors complete a session over the wire."""
        coordinator = server.coordinator
        async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as client:
            sockets = [await client.ws_connect("/ws") for _ in range(2)]
            commitments = [get_random_bytes(32).hex() for _ in sockets]

            for ws in sockets:
                await ws.send_json(signed_join())
            joined = [await expect(ws, "JOINED") for ws in sockets]
            public_key = RSAPublicKey.from_dict(joined[0]["authorityPublicKey"])
            session = coordinator.registry.get(joined[0]["sessionId"])

            for ws in sockets:
                await ws.send_json({"type": "READY"})
            for ws in sockets:
                await expect(ws, "REQUEST_BLINDED_COMMITMENT")

            signatures = []
            for ws, commitment in zip(sockets, commitments):
                blinded, r = blind_commitment(commitment, public_key)
                await ws.send_json({"type": "SUBMIT_BLINDED", "blindedCommitment": blinded})
                blind_sig = hex_to_int((await expect(ws, "BLIND_SIGNATURE"))["signature"], public_key)
                signatures.append(int_to_hex(unblind(blind_sig, r, public_key), public_key))

            for ws in sockets:
                await expect(ws, "REQUEST_UNBLINDED_COMMITMENT")
            for ws, commitment, signature in zip(sockets, commitments, signatures):
                await ws.send_json({
                    "type": "SUBMIT_UNBLINDED",
                    "unblindedCommitment": commitment,
                    "blindSignature": signature,
                })

            for i, ws in enumerate(sockets):
                await expect(ws, "REQUEST_INPUT_ADDRESS")
                await ws.send_json({"type": "SUBMIT_INPUT", "inputAddress": f"Depositor{i}"})

            for ws in sockets:
                ready = await expect(ws, "TRANSACTION_READY")
                assert ready["inputIndex"] in (0, 1)
                await ws.send_json({"type": "SUBMIT_SIGNATURE", "signature": get_random_bytes(64).hex()})

            references = {(await expect(ws, "TRANSACTION_COMPLETE"))["txReference"] for ws in sockets}
            assert len(references) == 1
            assert session.state == SessionState.COMPLETED

            for ws in sockets:
                await ws.close()

        await coordinator.shutdown()
