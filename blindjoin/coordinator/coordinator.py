"""
BlindJoin Session Coordinator

Protocol state machine:

    WAITING_FOR_PARTICIPANTS
        -> COLLECTING_BLINDED_COMMITMENTS
        -> COLLECTING_UNBLINDED
        -> BUILDING_TRANSACTION
        -> SIGNING_TRANSACTION
        -> BROADCASTING
        -> COMPLETED

ABORTED is reachable from every non-terminal state.

Concurrency rules:
- Every handler that mutates a session holds session.lock.
- abort(), disconnect() and expire() set session.state without awaiting,
  so they never wait behind a handler that is signing.
- After every await a handler re-checks session.state and drops its
  result if the session moved on.
"""

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set

from Crypto.Random import get_random_bytes
from Crypto.Random import random as crandom

from blindjoin.builder.transaction import InMemoryTransactionBuilder, TransactionBuilder
from blindjoin.constants import (
    COMPLETED_GRACE_SEC,
    DEFAULT_MAX_PARTICIPANTS,
    DEFAULT_MIN_PARTICIPANTS,
    DEFAULT_RSA_KEY_BITS,
    DEFAULT_SESSION_TTL_SEC,
    PARTICIPANT_ID_BYTES,
    SESSION_ID_BYTES,
)
from blindjoin.coordinator.channel import MessageChannel
from blindjoin.coordinator.registry import SessionRegistry
from blindjoin.core.types import Denomination, Participant, Session, SessionState
from blindjoin.crypto.blind_rsa import (
    BlindSignatureAuthority,
    SigningAuthority,
    hex_to_int,
    int_to_hex,
    verify_commitment,
)
from blindjoin.crypto.threshold import ThresholdParams, ThresholdSigningAuthority
from blindjoin.errors import (
    AuthenticationError,
    CryptoError,
    InvalidParameterError,
    InvalidSignatureError,
    ProtocolStateError,
    SessionExpiredError,
    TransactionBuilderError,
    ValidationError,
)
from blindjoin.protocol.auth import JoinAuthenticator
from blindjoin.protocol.messages import (
    AbortMessage,
    BlindSignature,
    ClientMessage,
    CommitmentsCollected,
    ErrorMessage,
    Joined,
    JoinMessage,
    ParticipantCount,
    ReadyMessage,
    RequestBlindedCommitment,
    RequestInputAddress,
    RequestUnblindedCommitment,
    ServerMessage,
    SessionAborted,
    SessionStarting,
    SubmitBlindedMessage,
    SubmitInputMessage,
    SubmitSignatureMessage,
    SubmitUnblindedMessage,
    TransactionComplete,
    TransactionReady,
)

logger = logging.getLogger(__name__)

KeyFactory = Callable[[], Awaitable[SigningAuthority]]
Authenticate = Callable[[JoinMessage], None]

REASON_EXPIRED = "expired"
REASON_DISCONNECTED = "participant disconnected"
REASON_PARTICIPANT_ABORT = "participant aborted"
REASON_BUILD_FAILED = "transaction build failed"
REASON_BROADCAST_FAILED = "broadcast failed"
REASON_SHUTDOWN = "coordinator shutting down"


@dataclass
class Membership:
    """Which session a connection belongs to."""
    session_id: Optional[str] = None
    participant_id: Optional[str] = None

    @property
    def joined(self) -> bool:
        return self.session_id is not None and self.participant_id is not None

    def clear(self):
        self.session_id = None
        self.participant_id = None


def default_key_factory(
    bits: int = DEFAULT_RSA_KEY_BITS,
    threshold: Optional[ThresholdParams] = None
) -> KeyFactory:
    """
    Authority factory for a standalone coordinator: single key, or t-of-n
    shares all held in this process when threshold is set.

    Key generation runs on a worker thread.
    """
    async def single() -> SigningAuthority:
        return await asyncio.to_thread(BlindSignatureAuthority.generate, bits)

    async def shared() -> SigningAuthority:
        return await asyncio.to_thread(ThresholdSigningAuthority.generate, bits, threshold)

    return single if threshold is None else shared


class SessionCoordinator:
    """
    Owns every session and the only code that mutates them.

    Args:
        registry: Live session registry (owned)
        builder: Transaction builder collaborator
        authenticate: JOIN check, normally AntiAbuseGate.authenticate;
            raises AuthenticationError
        key_factory: Creates the signing authority for a new session
        min_participants / max_participants: Session size bounds
        session_ttl: Seconds from creation until expiry
        completed_grace: Seconds a COMPLETED session stays registered
        clock: Wall clock in seconds
    """

    def __init__(
        self,
        registry: Optional[SessionRegistry] = None,
        builder: Optional[TransactionBuilder] = None,
        authenticate: Optional[Authenticate] = None,
        key_factory: Optional[KeyFactory] = None,
        min_participants: int = DEFAULT_MIN_PARTICIPANTS,
        max_participants: int = DEFAULT_MAX_PARTICIPANTS,
        session_ttl: float = DEFAULT_SESSION_TTL_SEC,
        completed_grace: float = COMPLETED_GRACE_SEC,
        clock: Callable[[], float] = time.time
    ):
        if min_participants < 2:
            raise InvalidParameterError("min_participants", "must be at least 2")
        if max_participants < min_participants:
            raise InvalidParameterError("max_participants", "below min_participants")

        self.registry = registry if registry is not None else SessionRegistry()
        self.builder = builder or InMemoryTransactionBuilder()
        self.authenticate = authenticate or JoinAuthenticator().verify
        self.key_factory = key_factory or default_key_factory()
        self.min_participants = min_participants
        self.max_participants = max_participants
        self.session_ttl = session_ttl
        self.completed_grace = completed_grace
        self._clock = clock

        self._channels: Dict[str, MessageChannel] = {}
        self._creation_locks: Dict[Denomination, asyncio.Lock] = {}
        self._cleanup_tasks: Dict[str, asyncio.Task] = {}
        self._release_tasks: Set[asyncio.Task] = set()

        self._stats = {
            "sessions_created": 0,
            "sessions_completed": 0,
            "sessions_aborted": 0,
            "participants_joined": 0,
        }

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _send(self, participant_id: str, message: ServerMessage):
        channel = self._channels.get(participant_id)
        if channel is not None:
            channel.send(message)

    def _broadcast(self, session: Session, message: ServerMessage):
        for participant_id in session.participants:
            self._send(participant_id, message)

    def _require_session(self, session_id: Optional[str]) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise ProtocolStateError("Unknown session")
        if session.is_terminal:
            raise ProtocolStateError(f"Session is {session.state.value}")
        if session.is_expired(self._clock()):
            self.abort(session, REASON_EXPIRED)
            raise SessionExpiredError(session.id)
        return session

    @staticmethod
    def _require_state(session: Session, expected: SessionState):
        if session.state != expected:
            raise ProtocolStateError(
                f"Expected {expected.value}, session is {session.state.value}"
            )

    @staticmethod
    def _require_participant(session: Session, participant_id: Optional[str]) -> Participant:
        participant = session.participants.get(participant_id)
        if participant is None:
            raise ProtocolStateError("Unknown participant")
        return participant

    def _discard(self, session: Session):
        """Forget a finished session, its participants' channels and its key."""
        self.registry.remove(session.id)
        self._release_authority(session)
        for participant_id in session.participants:
            self._channels.pop(participant_id, None)
        task = self._cleanup_tasks.pop(session.id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _release_authority(self, session: Session):
        """Let the session's share holders forget their shares, in the background."""
        task = asyncio.get_running_loop().create_task(session.authority.close())
        self._release_tasks.add(task)
        task.add_done_callback(self._release_tasks.discard)

    def _find_open_session(self, denomination: Denomination) -> Optional[Session]:
        now = self._clock()
        for session in self.registry.for_denomination(denomination):
            if session.is_open(now):
                return session
        return None

    async def _create_session(self, denomination: Denomination) -> Session:
        authority = await self.key_factory()
        now = self._clock()
        session = Session(
            id=get_random_bytes(SESSION_ID_BYTES).hex(),
            denomination=denomination,
            authority=authority,
            created_at=now,
            expires_at=now + self.session_ttl,
            min_participants=self.min_participants,
            max_participants=self.max_participants,
        )
        self.registry.add(session)
        self._stats["sessions_created"] += 1
        logger.info(f"Created session {session.id[:8]} for denomination {int(denomination)}")
        return session

    # ==========================================================================
    # Protocol operations
    # ==========================================================================

    async def join(self, message: JoinMessage, channel: MessageChannel) -> Membership:
        """
        Admit an authenticated depositor into an open session.

        Raises:
            AuthenticationError: JOIN signature or timestamp rejected
        """
        self.authenticate(message)

        lock = self._creation_locks.setdefault(message.denomination, asyncio.Lock())
        async with lock:
            session = self._find_open_session(message.denomination)
            if session is None:
                session = await self._create_session(message.denomination)

            participant = Participant(
                id=get_random_bytes(PARTICIPANT_ID_BYTES).hex(),
                public_key=message.public_key,
                joined_at=self._clock(),
            )
            session.participants[participant.id] = participant
            self._channels[participant.id] = channel

        self._stats["participants_joined"] += 1
        logger.info(
            f"Session {session.id[:8]}: participant joined "
            f"({session.participant_count}/{session.max_participants})"
        )

        channel.send(Joined(
            session_id=session.id,
            participant_id=participant.id,
            authority_public_key=session.authority.public_key,
        ))
        self._broadcast(session, ParticipantCount(
            count=session.participant_count,
            needed=session.min_participants,
        ))

        return Membership(session_id=session.id, participant_id=participant.id)

    async def mark_ready(self, session_id: str, participant_id: str):
        session = self._require_session(session_id)
        async with session.lock:
            self._require_state(session, SessionState.WAITING_FOR_PARTICIPANTS)
            participant = self._require_participant(session, participant_id)
            participant.ready = True

            if session.ready_count >= session.min_participants:
                session.state = SessionState.COLLECTING_BLINDED_COMMITMENTS
                logger.info(
                    f"Session {session.id[:8]}: starting with "
                    f"{session.participant_count} participants"
                )
                self._broadcast(session, SessionStarting(participants=session.participant_count))
                self._broadcast(session, RequestBlindedCommitment())
            else:
                self._broadcast(session, ParticipantCount(
                    count=session.ready_count,
                    needed=session.min_participants,
                ))

    async def submit_blinded(
        self,
        session_id: str,
        participant_id: str,
        blinded_commitment: str
    ) -> Optional[str]:
        """
        Blind-sign a participant's commitment.

        The signature goes to the submitter only.

        Returns:
            Blind signature hex, or None if the session moved on meanwhile
        """
        session = self._require_session(session_id)
        async with session.lock:
            self._require_state(session, SessionState.COLLECTING_BLINDED_COMMITMENTS)
            participant = self._require_participant(session, participant_id)
            if participant.blinded_commitment is not None:
                raise ProtocolStateError("Blinded commitment already submitted")

            public_key = session.authority.public_key
            blinded = hex_to_int(blinded_commitment, public_key)

            signature = await session.authority.sign_blinded(blinded)

            if session.state != SessionState.COLLECTING_BLINDED_COMMITMENTS:
                logger.debug(f"Session {session.id[:8]}: discarding signature, session {session.state.value}")
                return None

            participant.blinded_commitment = blinded_commitment
            session.blinded_commitments.append(blinded_commitment)
            signature_hex = int_to_hex(signature, public_key)
            self._send(participant.id, BlindSignature(signature=signature_hex))

            logger.debug(
                f"Session {session.id[:8]}: blinded "
                f"{len(session.blinded_commitments)}/{session.participant_count}"
            )

            if len(session.blinded_commitments) == session.participant_count:
                session.state = SessionState.COLLECTING_UNBLINDED
                self._broadcast(session, RequestUnblindedCommitment())

            return signature_hex

    async def submit_unblinded(
        self,
        session_id: str,
        unblinded_commitment: str,
        blind_signature: str
    ):
        """
        Accept an anonymous unblinded commitment.

        Nothing about the sender is recorded. Once every commitment is in,
        the list is shuffled before anyone sees it.

        Raises:
            InvalidSignatureError: signature is not from this session's key
            ValidationError: commitment already submitted
        """
        session = self._require_session(session_id)
        async with session.lock:
            self._require_state(session, SessionState.COLLECTING_UNBLINDED)

            if unblinded_commitment in session.unblinded_commitments:
                raise ValidationError("Duplicate commitment", field="unblindedCommitment")

            public_key = session.authority.public_key
            if not verify_commitment(unblinded_commitment, blind_signature, public_key):
                raise InvalidSignatureError("Commitment signature does not verify")

            session.unblinded_commitments.append(unblinded_commitment)

            if len(session.unblinded_commitments) == session.participant_count:
                crandom.shuffle(session.unblinded_commitments)
                session.state = SessionState.BUILDING_TRANSACTION
                logger.info(
                    f"Session {session.id[:8]}: collected "
                    f"{len(session.unblinded_commitments)} commitments"
                )
                self._broadcast(session, CommitmentsCollected(count=len(session.unblinded_commitments)))
                self._broadcast(session, RequestInputAddress())

    async def submit_input(self, session_id: str, participant_id: str, input_address: str):
        session = self._require_session(session_id)
        async with session.lock:
            self._require_state(session, SessionState.BUILDING_TRANSACTION)
            participant = self._require_participant(session, participant_id)
            if participant.input_address is not None:
                raise ProtocolStateError("Input already submitted")

            participant.input_address = input_address

            if any(p.input_address is None for p in session.participants.values()):
                return

            order = list(session.participants)
            crandom.shuffle(order)
            inputs = [session.participants[pid].input_address for pid in order]

            try:
                skeleton = await self.builder.build(
                    session.denomination,
                    list(session.unblinded_commitments),
                    inputs,
                )
            except TransactionBuilderError as e:
                logger.error(f"Session {session.id[:8]}: build failed: {e.message}")
                self.abort(session, REASON_BUILD_FAILED)
                return

            if session.state != SessionState.BUILDING_TRANSACTION:
                return

            session.transaction = skeleton
            session.input_indices = {pid: index for index, pid in enumerate(order)}
            session.state = SessionState.SIGNING_TRANSACTION

            for pid, index in session.input_indices.items():
                self._send(pid, TransactionReady(transaction=skeleton, input_index=index))

    async def submit_signature(self, session_id: str, participant_id: str, signature: str):
        session = self._require_session(session_id)
        async with session.lock:
            self._require_state(session, SessionState.SIGNING_TRANSACTION)
            self._require_participant(session, participant_id)
            if participant_id in session.signatures:
                raise ProtocolStateError("Signature already submitted")

            session.signatures[participant_id] = signature

            if len(session.signatures) < session.participant_count:
                return

            session.state = SessionState.BROADCASTING
            ordered = [
                session.signatures[pid]
                for pid in sorted(session.input_indices, key=session.input_indices.get)
            ]

            try:
                reference = await self.builder.broadcast(session.transaction, ordered)
            except TransactionBuilderError as e:
                logger.error(f"Session {session.id[:8]}: broadcast failed: {e.message}")
                self.abort(session, REASON_BROADCAST_FAILED)
                return

            if session.state != SessionState.BROADCASTING:
                return

            session.tx_reference = reference
            session.state = SessionState.COMPLETED
            self._stats["sessions_completed"] += 1
            logger.info(f"Session {session.id[:8]}: completed, tx {reference[:16]}")

            self._broadcast(session, TransactionComplete(tx_reference=reference))
            self._cleanup_tasks[session.id] = asyncio.create_task(
                self._remove_later(session, self.completed_grace)
            )

    # ==========================================================================
    # Lifecycle operations
    # ==========================================================================

    def abort(self, session: Session, reason: str) -> bool:
        """
        Move a session to ABORTED and tell every member why.

        Synchronous: a handler awaiting crypto on the same session sees the
        new state when it resumes.
        """
        if session.is_terminal:
            return False

        session.state = SessionState.ABORTED
        session.abort_reason = reason
        self._stats["sessions_aborted"] += 1
        logger.info(f"Session {session.id[:8]}: aborted ({reason})")

        self._broadcast(session, SessionAborted(reason=reason))
        self._discard(session)
        return True

    def expire(self) -> int:
        """Abort and drop every session past its TTL that has not completed."""
        now = self._clock()
        expired = 0
        for session in self.registry:
            if session.state == SessionState.COMPLETED:
                continue
            if session.is_expired(now):
                if not self.abort(session, REASON_EXPIRED):
                    self._discard(session)
                expired += 1
        if expired:
            logger.info(f"Expired {expired} session(s)")
        return expired

    def disconnect(self, session_id: Optional[str], participant_id: Optional[str], reason: str = REASON_DISCONNECTED):
        """
        A member went away.

        Before the session starts this only shrinks it; afterwards the
        whole session is aborted.
        """
        session = self.registry.get(session_id)
        if session is None or session.is_terminal or participant_id not in session.participants:
            self._channels.pop(participant_id, None)
            return

        if session.state != SessionState.WAITING_FOR_PARTICIPANTS:
            self.abort(session, reason)
            return

        del session.participants[participant_id]
        channel = self._channels.pop(participant_id, None)
        if channel is not None and reason == REASON_PARTICIPANT_ABORT:
            channel.send(SessionAborted(reason=reason))

        logger.info(
            f"Session {session.id[:8]}: participant left "
            f"({session.participant_count} remaining)"
        )
        if not session.participants:
            self._discard(session)
            return

        self._broadcast(session, ParticipantCount(
            count=session.participant_count,
            needed=session.min_participants,
        ))

    async def dispatch(self, membership: Membership, message: ClientMessage, channel: MessageChannel):
        """
        Route one validated client message.

        Out-of-phase and unknown-session messages are dropped silently.
        Input, authentication and crypto failures are answered with ERROR.
        """
        try:
            if isinstance(message, JoinMessage):
                current = self.registry.get(membership.session_id)
                if current is not None and not current.is_terminal:
                    raise ProtocolStateError("Connection already in a session")
                joined = await self.join(message, channel)
                membership.session_id = joined.session_id
                membership.participant_id = joined.participant_id
                return

            if not membership.joined:
                raise ProtocolStateError("Not joined")

            session_id = membership.session_id
            participant_id = membership.participant_id

            if isinstance(message, ReadyMessage):
                await self.mark_ready(session_id, participant_id)
            elif isinstance(message, SubmitBlindedMessage):
                await self.submit_blinded(session_id, participant_id, message.blinded_commitment)
            elif isinstance(message, SubmitUnblindedMessage):
                await self.submit_unblinded(
                    session_id,
                    message.unblinded_commitment,
                    message.blind_signature,
                )
            elif isinstance(message, SubmitInputMessage):
                await self.submit_input(session_id, participant_id, message.input_address)
            elif isinstance(message, SubmitSignatureMessage):
                await self.submit_signature(session_id, participant_id, message.signature)
            elif isinstance(message, AbortMessage):
                self.disconnect(session_id, participant_id, REASON_PARTICIPANT_ABORT)
                membership.clear()

        except ProtocolStateError as e:
            logger.debug(f"Dropped {message.TYPE.value}: {e.message}")
        except SessionExpiredError as e:
            logger.debug(e.message)
        except (ValidationError, AuthenticationError, CryptoError) as e:
            channel.send(ErrorMessage.from_error(e))

    async def _remove_later(self, session: Session, delay: float):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._discard(session)
        logger.debug(f"Session {session.id[:8]}: removed after grace period")

    async def shutdown(self):
        """Abort every live session and clear the registry."""
        for session in self.registry:
            if not self.abort(session, REASON_SHUTDOWN):
                self._discard(session)

        tasks = list(self._cleanup_tasks.values())
        self._cleanup_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        releases = list(self._release_tasks)
        if releases:
            await asyncio.gather(*releases, return_exceptions=True)

        self.registry.clear()
        self._channels.clear()

    def get_statistics(self) -> dict:
        """Get coordinator statistics."""
        return {
            "live_sessions": len(self.registry),
            "by_state": self.registry.count_by_state(),
            "connected_participants": len(self._channels),
            **self._stats,
        }
