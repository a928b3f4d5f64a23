"""
BlindJoin Network: aiohttp WebSocket server and peer share exchange.
"""

from blindjoin.network.connection import ClientConnection
from blindjoin.network.peers import PeerNetwork, RemoteShareHolder, distributed_key_factory
from blindjoin.network.server import CoordinatorServer
from blindjoin.network.share_service import ShareHolderService, ShareStore

__all__ = [
    "ClientConnection",
    "CoordinatorServer",
    "PeerNetwork",
    "RemoteShareHolder",
    "distributed_key_factory",
    "ShareHolderService",
    "ShareStore",
]
