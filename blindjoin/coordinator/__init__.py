"""
BlindJoin Coordinator: session state machine, registry, expiry sweep.
"""

from blindjoin.coordinator.channel import MessageChannel
from blindjoin.coordinator.registry import SessionRegistry
from blindjoin.coordinator.coordinator import (
    KeyFactory,
    Membership,
    SessionCoordinator,
    default_key_factory,
)
from blindjoin.coordinator.sweeper import ExpirySweeper

__all__ = [
    "MessageChannel",
    "SessionRegistry",
    "KeyFactory",
    "Membership",
    "SessionCoordinator",
    "default_key_factory",
    "ExpirySweeper",
]
