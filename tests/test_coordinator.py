"""
BlindJoin Session Coordinator Tests
"""

import asyncio
import threading

import pytest
from Crypto.Random import get_random_bytes

from blindjoin.builder.transaction import InMemoryTransactionBuilder, TransactionBuilder
from blindjoin.coordinator.coordinator import SessionCoordinator
from blindjoin.coordinator.sweeper import ExpirySweeper
from blindjoin.core.types import Denomination, SessionState
from blindjoin.crypto.blind_rsa import BlindSignatureAuthority, verify_commitment
from blindjoin.crypto.threshold import ThresholdSigningAuthority
from blindjoin.errors import InsufficientSharesError, ProtocolStateError, TransactionBuilderError
from blindjoin.protocol.auth import JoinAuthenticator
from blindjoin.protocol.gate import AntiAbuseGate


# ==============================================================================
# Helpers
# ==============================================================================

async def join_all(clients, denomination=Denomination.SOL_1):
    for client in clients:
        await client.join(denomination)


async def start_session(clients):
    await join_all(clients)
    for client in clients:
        await client.ready()


async def run_blinded(clients):
    await start_session(clients)
    for client in clients:
        await client.submit_blinded()


async def run_unblinded(clients):
    await run_blinded(clients)
    for client in clients:
        await client.submit_unblinded()


async def run_full(clients):
    await run_unblinded(clients)
    for i, client in enumerate(clients):
        await client.submit_input(f"Depositor{i}Address")
    for client in clients:
        await client.submit_signature()


class ManualClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FailingBuilder(TransactionBuilder):
    async def build(self, denomination, commitments, inputs):
        raise TransactionBuilderError("relayer down")

    async def broadcast(self, skeleton, signatures):
        raise TransactionBuilderError("relayer down")


class GatedAuthority:
    """Authority whose signing blocks until released."""

    def __init__(self, inner: BlindSignatureAuthority):
        self.inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    @property
    def public_key(self):
        return self.inner.public_key

    async def sign_blinded(self, blinded_message):
        self.entered.set()
        await asyncio.to_thread(self.release.wait, 5)
        return await self.inner.sign_blinded(blinded_message)

    async def close(self):
        await self.inner.close()


# ==============================================================================
# Join
# ==============================================================================

class TestJoin:
    """Tests for session admission."""

    @pytest.mark.asyncio
    async def test_join_creates_session(self, coordinator, make_clients):
        """Test the first JOIN opens a session and answers JOINED."""
        (client,) = make_clients(1)
        await client.join()

        joined = client.last("JOINED")
        assert joined is not None
        assert len(joined["sessionId"]) == 32
        assert len(joined["participantId"]) == 16
        assert set(joined["authorityPublicKey"]) == {"n", "e"}

        assert client.last("PARTICIPANT_COUNT") == {
            "type": "PARTICIPANT_COUNT", "count": 1, "needed": 5,
        }
        assert client.session.state == SessionState.WAITING_FOR_PARTICIPANTS
        assert len(coordinator.registry) == 1

    @pytest.mark.asyncio
    async def test_joins_share_open_session(self, coordinator, make_clients):
        """Test later JOINs land in the same open session."""
        clients = make_clients(3)
        await join_all(clients)

        session_ids = {c.membership.session_id for c in clients}
        assert len(session_ids) == 1
        assert clients[0].last("PARTICIPANT_COUNT")["count"] == 3

        participant_ids = {c.membership.participant_id for c in clients}
        assert len(participant_ids) == 3

    @pytest.mark.asyncio
    async def test_participant_id_unlinked_to_key(self, make_clients):
        """Test participant ids are random, not derived from the public key."""
        (client,) = make_clients(1)
        await client.join()
        participant = client.session.participants[client.membership.participant_id]
        assert participant.id not in participant.public_key

    @pytest.mark.asyncio
    async def test_denominations_are_separate(self, coordinator, make_clients):
        """Test each denomination gets its own session."""
        small, large = make_clients(2)
        await small.join(Denomination.SOL_1)
        await large.join(Denomination.SOL_100)

        assert small.membership.session_id != large.membership.session_id
        assert small.session.denomination == Denomination.SOL_1
        assert large.session.denomination == Denomination.SOL_100

    @pytest.mark.asyncio
    async def test_full_session_spills_over(self, key_factory, make_clients):
        """Test a full session is skipped and a new one created."""
        coordinator = SessionCoordinator(key_factory=key_factory, min_participants=2, max_participants=2)
        clients = make_clients(3, coordinator)
        await join_all(clients)

        assert clients[0].membership.session_id == clients[1].membership.session_id
        assert clients[2].membership.session_id != clients[0].membership.session_id
        assert len(coordinator.registry) == 2

    @pytest.mark.asyncio
    async def test_fresh_key_per_session(self, key_factory, make_clients):
        """Test two sessions never share a signing key."""
        coordinator = SessionCoordinator(key_factory=key_factory, min_participants=2, max_participants=2)
        clients = make_clients(3, coordinator)
        await join_all(clients)
        assert clients[0].public_key != clients[2].public_key

    @pytest.mark.asyncio
    async def test_bad_authentication(self, coordinator, make_clients):
        """Test a stale JOIN is answered with ERROR and admits nobody."""
        (client,) = make_clients(1)
        await client.join(timestamp=1)

        error = client.last("ERROR")
        assert error["code"] == 2001
        assert not client.membership.joined
        assert len(coordinator.registry) == 0

    @pytest.mark.asyncio
    async def test_join_checked_by_gate(self, key_factory, make_clients):
        """Test JOIN authentication goes through the gate it was given."""
        # Gate clock sits at the epoch, so every real timestamp is in the future
        gate = AntiAbuseGate(authenticator=JoinAuthenticator(clock=lambda: 0.0))
        coordinator = SessionCoordinator(key_factory=key_factory, authenticate=gate.authenticate)
        (client,) = make_clients(1, coordinator)
        await client.join()

        assert client.last("ERROR")["code"] == 2001
        assert not client.membership.joined
        assert len(coordinator.registry) == 0

    @pytest.mark.asyncio
    async def test_second_join_dropped(self, coordinator, make_clients):
        """Test a connection cannot join twice."""
        (client,) = make_clients(1)
        await client.join()
        await client.join()

        assert client.types().count("JOINED") == 1
        assert client.session.participant_count == 1


# ==============================================================================
# Phase ordering
# ==============================================================================

class TestPhaseOrdering:
    """Tests for silently dropped out-of-phase messages."""

    @pytest.mark.asyncio
    async def test_unblinded_while_waiting_dropped(self, make_clients):
        """Test SUBMIT_UNBLINDED in WAITING changes nothing and gets no reply."""
        (client,) = make_clients(1)
        await client.join()
        before = len(client.received())

        await client.send({
            "type": "SUBMIT_UNBLINDED",
            "unblindedCommitment": get_random_bytes(32).hex(),
            "blindSignature": get_random_bytes(256).hex(),
        })

        assert len(client.received()) == before
        assert client.session.state == SessionState.WAITING_FOR_PARTICIPANTS
        assert client.session.unblinded_commitments == []

    @pytest.mark.asyncio
    async def test_not_joined_dropped(self, make_clients):
        """Test messages from a connection outside any session are ignored."""
        (client,) = make_clients(1)
        await client.ready()
        await client.submit_signature()
        assert client.received() == []

    @pytest.mark.asyncio
    async def test_ready_below_minimum(self, make_clients):
        """Test READY below the minimum rebroadcasts the ready count."""
        clients = make_clients(3)
        await start_session(clients)

        assert clients[0].last("PARTICIPANT_COUNT") == {
            "type": "PARTICIPANT_COUNT", "count": 3, "needed": 5,
        }
        assert clients[0].session.state == SessionState.WAITING_FOR_PARTICIPANTS

    @pytest.mark.asyncio
    async def test_second_blinded_dropped(self, make_clients):
        """Test a participant gets one blind signature only."""
        clients = make_clients(5)
        await start_session(clients)
        await clients[0].submit_blinded()
        await clients[0].submit_blinded()

        assert clients[0].types().count("BLIND_SIGNATURE") == 1
        assert len(clients[0].session.blinded_commitments) == 1

    @pytest.mark.asyncio
    async def test_direct_call_raises(self, coordinator, make_clients):
        """Test direct callers see ProtocolStateError."""
        (client,) = make_clients(1)
        await client.join()
        with pytest.raises(ProtocolStateError):
            await coordinator.submit_input(
                client.membership.session_id,
                client.membership.participant_id,
                "Address1",
            )
        with pytest.raises(ProtocolStateError):
            await coordinator.mark_ready("no-such-session", "x")

    @pytest.mark.asyncio
    async def test_malformed_blinded_value(self, make_clients):
        """Test an out-of-range blinded value is answered with ERROR."""
        clients = make_clients(5)
        await start_session(clients)
        await clients[0].send({"type": "SUBMIT_BLINDED", "blindedCommitment": "ff" * 256})

        assert clients[0].last("ERROR")["code"] == 5002
        assert clients[0].session.blinded_commitments == []


# ==============================================================================
# Full protocol
# ==============================================================================

class TestEndToEnd:
    """Tests for complete five-party runs."""

    @pytest.mark.asyncio
    async def test_five_party_session(self, coordinator, make_clients):
        """Test five depositors take a session from JOIN to COMPLETED."""
        clients = make_clients(5)
        await join_all(clients)
        session = clients[0].session

        for client in clients:
            await client.ready()
        assert session.state == SessionState.COLLECTING_BLINDED_COMMITMENTS
        assert clients[0].last("SESSION_STARTING")["participants"] == 5
        assert all("REQUEST_BLINDED_COMMITMENT" in c.types() for c in clients)

        for client in clients:
            await client.submit_blinded()
        assert session.state == SessionState.COLLECTING_UNBLINDED
        assert len(session.blinded_commitments) == 5

        signatures = set()
        for client in clients:
            assert client.types().count("BLIND_SIGNATURE") == 1
            signature = client.unblind()
            assert verify_commitment(client.commitment, signature, client.public_key)
            signatures.add(signature)
        assert len(signatures) == 5

        for client in clients:
            await client.submit_unblinded()
        assert session.state == SessionState.BUILDING_TRANSACTION
        assert len(session.unblinded_commitments) == 5
        assert clients[0].last("COMMITMENTS_COLLECTED")["count"] == 5

        for i, client in enumerate(clients):
            await client.submit_input(f"Depositor{i}Address")
        assert session.state == SessionState.SIGNING_TRANSACTION

        indices = sorted(c.last("TRANSACTION_READY")["inputIndex"] for c in clients)
        assert indices == [0, 1, 2, 3, 4]
        transaction = clients[0].last("TRANSACTION_READY")["transaction"]
        assert sorted(transaction["commitments"]) == sorted(c.commitment for c in clients)

        for client in clients:
            await client.submit_signature()
        assert session.state == SessionState.COMPLETED

        references = {c.last("TRANSACTION_COMPLETE")["txReference"] for c in clients}
        assert len(references) == 1
        assert session.tx_reference in references
        assert len(coordinator.builder.broadcasts) == 1

        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_input_indices_match_inputs(self, coordinator, make_clients):
        """Test each participant's index points at its own input."""
        clients = make_clients(5)
        await run_full(clients)

        skeleton = coordinator.builder.broadcasts[0]["skeleton"]
        for i, client in enumerate(clients):
            index = client.last("TRANSACTION_READY")["inputIndex"]
            assert skeleton.inputs[index] == f"Depositor{i}Address"

        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_completed_session_removed_after_grace(self, key_factory, make_clients):
        """Test COMPLETED sessions leave the registry after the grace delay."""
        coordinator = SessionCoordinator(key_factory=key_factory, min_participants=5, completed_grace=0.05)
        clients = make_clients(5, coordinator)
        await run_full(clients)
        assert len(coordinator.registry) == 1

        await asyncio.sleep(0.2)
        assert len(coordinator.registry) == 0

    @pytest.mark.asyncio
    async def test_threshold_mode(self, threshold_key_factory, make_clients):
        """Test a session signed by 3-of-5 shares completes like any other."""
        coordinator = SessionCoordinator(key_factory=threshold_key_factory, min_participants=5)
        clients = make_clients(5, coordinator)
        await join_all(clients)
        session = clients[0].session
        assert isinstance(session.authority, ThresholdSigningAuthority)

        for client in clients:
            await client.ready()
        for client in clients:
            await client.submit_blinded()
        for client in clients:
            assert verify_commitment(client.commitment, client.unblind(), client.public_key)
            await client.submit_unblinded()
        for i, client in enumerate(clients):
            await client.submit_input(f"Depositor{i}Address")
        for client in clients:
            await client.submit_signature()

        assert session.state == SessionState.COMPLETED
        await coordinator.shutdown()

    @pytest.mark.asyncio
    async def test_abort_releases_shares(self, threshold_key_factory, make_clients):
        """Test share holders forget their shares once the session is over."""
        coordinator = SessionCoordinator(key_factory=threshold_key_factory, min_participants=5)
        clients = make_clients(5, coordinator)
        await start_session(clients)
        authority = clients[0].session.authority

        await clients[0].send({"type": "ABORT"})
        await coordinator.shutdown()

        with pytest.raises(InsufficientSharesError):
            await authority.sign_blinded(2)


class TestPrivacy:
    """Tests for the unlinkability steps."""

    @pytest.mark.asyncio
    async def test_unblinded_list_is_shuffled(self, coordinator, make_clients):
        """Test collected commitments are a permutation not tied to arrival order."""
        reordered = []

        for _ in range(4):
            clients = make_clients(5)
            await run_blinded(clients)
            session = clients[0].session

            submitted = []
            for client in clients:
                await client.submit_unblinded()
                submitted.append(client.commitment)

            stored = list(session.unblinded_commitments)
            assert sorted(stored) == sorted(submitted)
            reordered.append(stored != submitted)

            # No participant record holds an unblinded commitment
            for participant in session.participants.values():
                values = [v for v in vars(participant).values() if isinstance(v, str)]
                assert not set(values) & set(stored)

            coordinator.abort(session, "test finished")

        assert any(reordered)

    @pytest.mark.asyncio
    async def test_unblinded_reveals_no_sender(self, make_clients):
        """Test the unblinded phase sends nothing back to the submitter alone."""
        clients = make_clients(5)
        await run_blinded(clients)

        before = [len(c.received()) for c in clients[:-1]]
        await clients[0].submit_unblinded()
        after = [len(c.received()) for c in clients[:-1]]
        assert before == after

    @pytest.mark.asyncio
    async def test_invalid_unblinded_signature(self, make_clients):
        """Test a commitment without a valid session signature is refused."""
        clients = make_clients(5)
        await run_blinded(clients)
        session = clients[0].session

        await clients[0].send({
            "type": "SUBMIT_UNBLINDED",
            "unblindedCommitment": get_random_bytes(32).hex(),
            "blindSignature": clients[0].unblind(),
        })

        assert clients[0].last("ERROR")["code"] == 5005
        assert session.unblinded_commitments == []
        assert session.state == SessionState.COLLECTING_UNBLINDED

    @pytest.mark.asyncio
    async def test_duplicate_commitment(self, make_clients):
        """Test the same commitment cannot be counted twice."""
        clients = make_clients(5)
        await run_blinded(clients)

        await clients[0].submit_unblinded()
        await clients[0].submit_unblinded()

        assert clients[0].last("ERROR")["code"] == 1001
        assert len(clients[0].session.unblinded_commitments) == 1


# ==============================================================================
# Disconnects and aborts
# ==============================================================================

class TestAbort:
    """Tests for disconnect, abort and failure handling."""

    @pytest.mark.asyncio
    async def test_pre_start_disconnect(self, coordinator, make_clients):
        """Test leaving before start only shrinks the session."""
        clients = make_clients(5)
        await start_session(clients[:3])
        session = clients[0].session

        leaver = clients[2]
        coordinator.disconnect(leaver.membership.session_id, leaver.membership.participant_id)

        assert session.state == SessionState.WAITING_FOR_PARTICIPANTS
        assert session.participant_count == 2
        assert clients[0].last("PARTICIPANT_COUNT")["count"] == 2

        await join_all(clients[3:])
        assert clients[3].membership.session_id == session.id
        assert session.participant_count == 4

    @pytest.mark.asyncio
    async def test_last_participant_leaving_drops_session(self, coordinator, make_clients):
        """Test an empty waiting session is forgotten."""
        (client,) = make_clients(1)
        await client.join()
        coordinator.disconnect(client.membership.session_id, client.membership.participant_id)
        assert len(coordinator.registry) == 0

    @pytest.mark.asyncio
    async def test_mid_protocol_disconnect(self, coordinator, make_clients):
        """Test a dropout after start aborts the whole session."""
        clients = make_clients(5)
        await start_session(clients)
        session = clients[0].session

        coordinator.disconnect(session.id, clients[0].membership.participant_id)

        assert session.state == SessionState.ABORTED
        assert session.abort_reason == "participant disconnected"
        for client in clients[1:]:
            assert client.last("SESSION_ABORTED") == {
                "type": "SESSION_ABORTED", "reason": "participant disconnected",
            }
        assert len(coordinator.registry) == 0

        before = len(clients[1].received())
        await clients[1].submit_blinded()
        assert len(clients[1].received()) == before

    @pytest.mark.asyncio
    async def test_abort_message(self, make_clients):
        """Test a participant ABORT ends a started session."""
        clients = make_clients(5)
        await run_blinded(clients)
        session = clients[0].session

        await clients[3].send({"type": "ABORT"})

        assert session.state == SessionState.ABORTED
        assert clients[0].last("SESSION_ABORTED")["reason"] == "participant aborted"
        assert not clients[3].membership.joined

    @pytest.mark.asyncio
    async def test_rejoin_after_abort(self, coordinator, make_clients):
        """Test members of an aborted session may join a fresh one."""
        clients = make_clients(5)
        await start_session(clients)
        old = clients[1].membership.session_id
        coordinator.disconnect(old, clients[0].membership.participant_id)

        await clients[1].join()
        assert clients[1].membership.session_id != old
        assert clients[1].session.state == SessionState.WAITING_FOR_PARTICIPANTS

    @pytest.mark.asyncio
    async def test_abort_discards_inflight_signature(self, rsa_pool, make_clients):
        """Test a signature finished after an abort is thrown away."""
        gated = GatedAuthority(BlindSignatureAuthority(rsa_pool[0]))

        async def factory():
            return gated

        coordinator = SessionCoordinator(key_factory=factory, min_participants=5)
        clients = make_clients(5, coordinator)
        await start_session(clients)
        session = clients[0].session

        task = asyncio.create_task(clients[0].submit_blinded())
        assert await asyncio.to_thread(gated.entered.wait, 5)

        coordinator.disconnect(session.id, clients[1].membership.participant_id)
        assert session.state == SessionState.ABORTED

        gated.release.set()
        await task

        assert session.blinded_commitments == []
        assert "BLIND_SIGNATURE" not in clients[0].types()
        assert clients[0].last("SESSION_ABORTED") is not None

    @pytest.mark.asyncio
    async def test_builder_failure_aborts(self, key_factory, make_clients):
        """Test a failed build aborts the session."""
        coordinator = SessionCoordinator(
            key_factory=key_factory, builder=FailingBuilder(), min_participants=5
        )
        clients = make_clients(5, coordinator)
        await run_unblinded(clients)
        session = clients[0].session

        for i, client in enumerate(clients):
            await client.submit_input(f"Depositor{i}Address")

        assert session.state == SessionState.ABORTED
        assert clients[0].last("SESSION_ABORTED")["reason"] == "transaction build failed"

    @pytest.mark.asyncio
    async def test_shutdown(self, coordinator, make_clients):
        """Test shutdown aborts every live session."""
        clients = make_clients(2)
        await clients[0].join(Denomination.SOL_1)
        await clients[1].join(Denomination.SOL_10)

        await coordinator.shutdown()

        assert len(coordinator.registry) == 0
        for client in clients:
            assert client.last("SESSION_ABORTED")["reason"] == "coordinator shutting down"


# ==============================================================================
# Expiry
# ==============================================================================

class TestExpiry:
    """Tests for TTL expiry."""

    @pytest.mark.asyncio
    async def test_expire_sweep(self, key_factory, make_clients):
        """Test the sweep aborts sessions past their TTL."""
        clock = ManualClock()
        coordinator = SessionCoordinator(key_factory=key_factory, session_ttl=1.0, clock=clock)
        clients = make_clients(2, coordinator)
        await join_all(clients)
        session = clients[0].session

        assert coordinator.expire() == 0
        clock.now += 1.5
        assert coordinator.expire() == 1

        assert session.state == SessionState.ABORTED
        assert session.abort_reason == "expired"
        assert clients[1].last("SESSION_ABORTED")["reason"] == "expired"
        assert len(coordinator.registry) == 0

    @pytest.mark.asyncio
    async def test_expired_session_not_joinable(self, key_factory, make_clients):
        """Test a JOIN after TTL opens a new session."""
        clock = ManualClock()
        coordinator = SessionCoordinator(key_factory=key_factory, session_ttl=1.0, clock=clock)
        first, second = make_clients(2, coordinator)
        await first.join()
        clock.now += 2
        await second.join()
        assert first.membership.session_id != second.membership.session_id

    @pytest.mark.asyncio
    async def test_message_after_ttl_aborts(self, key_factory, make_clients):
        """Test a late message finds the session expired."""
        clock = ManualClock()
        coordinator = SessionCoordinator(key_factory=key_factory, session_ttl=1.0, clock=clock)
        (client,) = make_clients(1, coordinator)
        await client.join()
        session = client.session

        clock.now += 2
        await client.ready()

        assert session.state == SessionState.ABORTED
        assert client.last("SESSION_ABORTED")["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_completed_not_expired(self, key_factory, make_clients):
        """Test COMPLETED sessions are left alone by the sweep."""
        clock = ManualClock()
        coordinator = SessionCoordinator(key_factory=key_factory, session_ttl=1.0, clock=clock)
        clients = make_clients(5, coordinator)
        await run_full(clients)
        session = clients[0].session

        clock.now += 10
        assert coordinator.expire() == 0
        assert session.state == SessionState.COMPLETED
        await coordinator.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_sweeper_expires_one_second_ttl(self, key_factory, make_clients):
        """Test a 1-second session is aborted by the background sweep."""
        coordinator = SessionCoordinator(key_factory=key_factory, session_ttl=1.0)
        sweeper = ExpirySweeper(coordinator, interval=0.2)
        clients = make_clients(2, coordinator)

        sweeper.start()
        try:
            await join_all(clients)
            session = clients[0].session
            await asyncio.sleep(1.6)
        finally:
            await sweeper.stop()

        assert session.state == SessionState.ABORTED
        assert session.abort_reason == "expired"
        assert len(coordinator.registry) == 0


class TestStatistics:
    """Tests for get_statistics."""

    @pytest.mark.asyncio
    async def test_statistics(self, coordinator, make_clients):
        """Test counts by state."""
        clients = make_clients(2)
        await join_all(clients)

        stats = coordinator.get_statistics()
        assert stats["live_sessions"] == 1
        assert stats["by_state"] == {"waiting": 1}
        assert stats["sessions_created"] == 1
        assert stats["participants_joined"] == 2
        assert stats["connected_participants"] == 2

    def test_rejects_bad_sizes(self, key_factory):
        """Test session bounds are checked at construction."""
        from blindjoin.errors import InvalidParameterError

        with pytest.raises(InvalidParameterError):
            SessionCoordinator(key_factory=key_factory, min_participants=1)
        with pytest.raises(InvalidParameterError):
            SessionCoordinator(key_factory=key_factory, min_participants=5, max_participants=3)

    def test_default_builder(self, key_factory):
        """Test the in-memory builder is the default."""
        coordinator = SessionCoordinator(key_factory=key_factory)
        assert isinstance(coordinator.builder, InMemoryTransactionBuilder)
