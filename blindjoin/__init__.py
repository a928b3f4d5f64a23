"""
BlindJoin Coordinator
Chaumian blind-signature CoinJoin

The coordinator signs commitments it cannot read and only ever sees
them again as an anonymous, shuffled set.
"""

__version__ = "0.3.0"
__author__ = "BlindJoin Team"

from blindjoin.constants import PROTOCOL_VERSION, ALLOWED_DENOMINATIONS

__all__ = [
    "PROTOCOL_VERSION",
    "ALLOWED_DENOMINATIONS",
    "__version__",
]
