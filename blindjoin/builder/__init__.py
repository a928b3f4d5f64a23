"""
BlindJoin transaction builder collaborators.
"""

from blindjoin.builder.transaction import (
    TransactionSkeleton,
    TransactionBuilder,
    InMemoryTransactionBuilder,
    RelayerTransactionBuilder,
)

__all__ = [
    "TransactionSkeleton",
    "TransactionBuilder",
    "InMemoryTransactionBuilder",
    "RelayerTransactionBuilder",
]
