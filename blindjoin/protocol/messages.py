"""
BlindJoin Protocol Messages

Closed set of client and server message kinds, JSON over WebSocket.

Client messages are validated once, here, into frozen dataclasses.
Nothing downstream sees raw payloads.
"""

from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional, Union

from blindjoin.constants import (
    ALLOWED_DENOMINATIONS,
    ED25519_PUBLIC_KEY_HEX_LENGTH,
    ED25519_SIGNATURE_HEX_LENGTH,
    MAX_HEX_LENGTH,
    MAX_INPUT_ADDRESS_LENGTH,
    MAX_MESSAGE_BYTES,
    MAX_TX_SIGNATURE_HEX_LENGTH,
)
from blindjoin.core.types import Denomination
from blindjoin.errors import ValidationError

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_ADDRESS_RE = re.compile(r"^[A-Za-z0-9]+$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")


class ClientMessageType(str, Enum):
    """Client to server message kinds."""
    JOIN = "JOIN"
    READY = "READY"
    SUBMIT_BLINDED = "SUBMIT_BLINDED"
    SUBMIT_UNBLINDED = "SUBMIT_UNBLINDED"
    SUBMIT_INPUT = "SUBMIT_INPUT"
    SUBMIT_SIGNATURE = "SUBMIT_SIGNATURE"
    ABORT = "ABORT"


class ServerMessageType(str, Enum):
    """Server to client message kinds."""
    JOINED = "JOINED"
    PARTICIPANT_COUNT = "PARTICIPANT_COUNT"
    SESSION_STARTING = "SESSION_STARTING"
    REQUEST_BLINDED_COMMITMENT = "REQUEST_BLINDED_COMMITMENT"
    BLIND_SIGNATURE = "BLIND_SIGNATURE"
    REQUEST_UNBLINDED_COMMITMENT = "REQUEST_UNBLINDED_COMMITMENT"
    COMMITMENTS_COLLECTED = "COMMITMENTS_COLLECTED"
    REQUEST_INPUT_ADDRESS = "REQUEST_INPUT_ADDRESS"
    TRANSACTION_READY = "TRANSACTION_READY"
    TRANSACTION_COMPLETE = "TRANSACTION_COMPLETE"
    SESSION_ABORTED = "SESSION_ABORTED"
    ERROR = "ERROR"


# ==============================================================================
# Client messages
# ==============================================================================

@dataclass(frozen=True)
class JoinMessage:
    TYPE: ClassVar[ClientMessageType] = ClientMessageType.JOIN
    denomination: Denomination
    public_key: str
    timestamp: int
    signature: str


@dataclass(frozen=True)
class ReadyMessage:
    TYPE: ClassVar[ClientMessageType] = ClientMessageType.READY


@dataclass(frozen=True)
class SubmitBlindedMessage:
    TYPE: ClassVar[ClientMessageType] = ClientMessageType.SUBMIT_BLINDED
    blinded_commitment: str


@dataclass(frozen=True)
class SubmitUnblindedMessage:
    """Carries no participant reference."""
    TYPE: ClassVar[ClientMessageType] = ClientMessageType.SUBMIT_UNBLINDED
    unblinded_commitment: str
    blind_signature: str


@dataclass(frozen=True)
class SubmitInputMessage:
    TYPE: ClassVar[ClientMessageType] = ClientMessageType.SUBMIT_INPUT
    input_address: str


@dataclass(frozen=True)
class SubmitSignatureMessage:
    TYPE: ClassVar[ClientMessageType] = ClientMessageType.SUBMIT_SIGNATURE
    signature: str


@dataclass(frozen=True)
class AbortMessage:
    TYPE: ClassVar[ClientMessageType] = ClientMessageType.ABORT


ClientMessage = Union[
    JoinMessage,
    ReadyMessage,
    SubmitBlindedMessage,
    SubmitUnblindedMessage,
    SubmitInputMessage,
    SubmitSignatureMessage,
    AbortMessage,
]


# ==============================================================================
# Field validators
# ==============================================================================

def _require(data: Dict[str, Any], name: str) -> Any:
    if name not in data:
        raise ValidationError(f"Missing field: {name}", field=name)
    return data[name]


def _hex_field(
    data: Dict[str, Any],
    name: str,
    max_length: int,
    exact: bool = False,
    normalize: bool = True
) -> str:
    value = _require(data, name)
    if not isinstance(value, str) or not _HEX_RE.fullmatch(value):
        raise ValidationError(f"{name} must be hex", field=name)
    if exact and len(value) != max_length:
        raise ValidationError(
            f"{name} must be exactly {max_length} hex characters", field=name
        )
    if len(value) > max_length:
        raise ValidationError(
            f"{name} exceeds {max_length} hex characters", field=name
        )
    if len(value) % 2:
        raise ValidationError(f"{name} must have even length", field=name)
    return value.lower() if normalize else value


def _denomination_field(data: Dict[str, Any]) -> Denomination:
    value = _require(data, "denomination")
    # bool is an int subclass
    if isinstance(value, bool):
        raise ValidationError("Invalid denomination", field="denomination")
    if isinstance(value, str) and _DECIMAL_RE.fullmatch(value):
        value = int(value)
    if not isinstance(value, int) or value not in ALLOWED_DENOMINATIONS:
        raise ValidationError("Invalid denomination", field="denomination")
    return Denomination(value)


def _timestamp_field(data: Dict[str, Any]) -> int:
    value = _require(data, "timestamp")
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("Invalid timestamp", field="timestamp")
    return value


def _address_field(data: Dict[str, Any]) -> str:
    value = _require(data, "inputAddress")
    if (
        not isinstance(value, str)
        or not value
        or len(value) > MAX_INPUT_ADDRESS_LENGTH
        or not _ADDRESS_RE.fullmatch(value)
    ):
        raise ValidationError("Invalid input address", field="inputAddress")
    return value


# ==============================================================================
# Parsing
# ==============================================================================

def _parse_join(data: Dict[str, Any]) -> JoinMessage:
    return JoinMessage(
        denomination=_denomination_field(data),
        public_key=_hex_field(
            data, "publicKey", ED25519_PUBLIC_KEY_HEX_LENGTH, exact=True, normalize=False
        ),
        timestamp=_timestamp_field(data),
        signature=_hex_field(data, "signature", ED25519_SIGNATURE_HEX_LENGTH, exact=True),
    )


def _parse_submit_blinded(data: Dict[str, Any]) -> SubmitBlindedMessage:
    return SubmitBlindedMessage(
        blinded_commitment=_hex_field(data, "blindedCommitment", MAX_HEX_LENGTH),
    )


def _parse_submit_unblinded(data: Dict[str, Any]) -> SubmitUnblindedMessage:
    return SubmitUnblindedMessage(
        unblinded_commitment=_hex_field(data, "unblindedCommitment", MAX_HEX_LENGTH),
        blind_signature=_hex_field(data, "blindSignature", MAX_HEX_LENGTH),
    )


def _parse_submit_input(data: Dict[str, Any]) -> SubmitInputMessage:
    return SubmitInputMessage(input_address=_address_field(data))


def _parse_submit_signature(data: Dict[str, Any]) -> SubmitSignatureMessage:
    return SubmitSignatureMessage(
        signature=_hex_field(data, "signature", MAX_TX_SIGNATURE_HEX_LENGTH),
    )


_PARSERS: Dict[ClientMessageType, Callable[[Dict[str, Any]], ClientMessage]] = {
    ClientMessageType.JOIN: _parse_join,
    ClientMessageType.READY: lambda data: ReadyMessage(),
    ClientMessageType.SUBMIT_BLINDED: _parse_submit_blinded,
    ClientMessageType.SUBMIT_UNBLINDED: _parse_submit_unblinded,
    ClientMessageType.SUBMIT_INPUT: _parse_submit_input,
    ClientMessageType.SUBMIT_SIGNATURE: _parse_submit_signature,
    ClientMessageType.ABORT: lambda data: AbortMessage(),
}


def parse_client_message(
    raw: Union[str, bytes, Dict[str, Any]],
    max_bytes: int = MAX_MESSAGE_BYTES
) -> ClientMessage:
    """
    Validate a raw frame into a typed client message.

    Args:
        raw: JSON text/bytes, or an already decoded object
        max_bytes: Frame size limit

    Raises:
        ValidationError: oversized, not JSON, unknown kind or bad field
    """
    if isinstance(raw, (str, bytes)):
        size = len(raw.encode() if isinstance(raw, str) else raw)
        if size > max_bytes:
            raise ValidationError(f"Message exceeds {max_bytes} bytes")
        try:
            data = json.loads(raw)
        except ValueError:
            raise ValidationError("Invalid JSON")
    else:
        data = raw

    if not isinstance(data, dict):
        raise ValidationError("Message must be an object")

    kind = data.get("type")
    try:
        message_type = ClientMessageType(kind)
    except (TypeError, ValueError):
        raise ValidationError("Unknown message type", field="type")

    return _PARSERS[message_type](data)


# ==============================================================================
# Server messages
# ==============================================================================

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _wire(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass(frozen=True)
class ServerMessage:
    """Base for outbound messages; fields serialize in camelCase."""
    TYPE: ClassVar[ServerMessageType]

    @property
    def type(self) -> ServerMessageType:
        return self.TYPE

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.TYPE.value}
        for f in fields(self):
            result[_camel(f.name)] = _wire(getattr(self, f.name))
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


@dataclass(frozen=True)
class Joined(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.JOINED
    session_id: str
    participant_id: str
    authority_public_key: Any


@dataclass(frozen=True)
class ParticipantCount(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.PARTICIPANT_COUNT
    count: int
    needed: int


@dataclass(frozen=True)
class SessionStarting(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.SESSION_STARTING
    participants: int


@dataclass(frozen=True)
class RequestBlindedCommitment(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.REQUEST_BLINDED_COMMITMENT


@dataclass(frozen=True)
class BlindSignature(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.BLIND_SIGNATURE
    signature: str


@dataclass(frozen=True)
class RequestUnblindedCommitment(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.REQUEST_UNBLINDED_COMMITMENT


@dataclass(frozen=True)
class CommitmentsCollected(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.COMMITMENTS_COLLECTED
    count: int


@dataclass(frozen=True)
class RequestInputAddress(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.REQUEST_INPUT_ADDRESS


@dataclass(frozen=True)
class TransactionReady(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.TRANSACTION_READY
    transaction: Any
    input_index: int


@dataclass(frozen=True)
class TransactionComplete(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.TRANSACTION_COMPLETE
    tx_reference: str


@dataclass(frozen=True)
class SessionAborted(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.SESSION_ABORTED
    reason: str


@dataclass(frozen=True)
class ErrorMessage(ServerMessage):
    TYPE: ClassVar[ServerMessageType] = ServerMessageType.ERROR
    message: str
    code: Optional[int] = None
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        # Optional fields only when set
        return {k: v for k, v in result.items() if v is not None}

    @classmethod
    def from_error(cls, error: Exception) -> ErrorMessage:
        code = getattr(error, "code", None)
        return cls(
            message=getattr(error, "message", str(error)),
            code=int(code) if code is not None else None,
            retry_after=getattr(error, "retry_after", None),
        )
