"""
BlindJoin Coordinator Node

Wires configuration, gate, coordinator, sweeper and server together and
owns their lifecycle.
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

from blindjoin import __version__
from blindjoin.builder.transaction import (
    InMemoryTransactionBuilder,
    RelayerTransactionBuilder,
    TransactionBuilder,
)
from blindjoin.coordinator.coordinator import SessionCoordinator, default_key_factory
from blindjoin.coordinator.registry import SessionRegistry
from blindjoin.coordinator.sweeper import ExpirySweeper
from blindjoin.network.peers import PeerNetwork, distributed_key_factory
from blindjoin.network.server import CoordinatorServer
from blindjoin.network.share_service import ShareHolderService, ShareStore
from blindjoin.node.config import CoordinatorConfig, setup_logging
from blindjoin.protocol.auth import JoinAuthenticator
from blindjoin.protocol.gate import AntiAbuseGate
from blindjoin.protocol.rate_limit import ConnectionLimiter, SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


def build_transaction_builder(config: CoordinatorConfig) -> TransactionBuilder:
    if config.builder.relayer_url:
        return RelayerTransactionBuilder(
            config.builder.relayer_url,
            timeout=config.builder.timeout_sec,
        )
    return InMemoryTransactionBuilder()


@dataclass
class CoordinatorNode:
    """
    A running coordinator process.

    All protocol state lives in memory and is gone after stop().
    """
    config: CoordinatorConfig

    gate: Optional[AntiAbuseGate] = None
    coordinator: Optional[SessionCoordinator] = None
    sweeper: Optional[ExpirySweeper] = None
    server: Optional[CoordinatorServer] = None
    peers: Optional[PeerNetwork] = None
    share_service: Optional[ShareHolderService] = None

    _running: bool = False
    _start_time: float = 0.0

    def __post_init__(self):
        errors = self.config.validate()
        if errors:
            raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

        cfg = self.config

        self.gate = AntiAbuseGate(
            rate_limiter=SlidingWindowRateLimiter(
                max_requests=cfg.rate_limit.max_requests,
                window_sec=cfg.rate_limit.window_sec,
            ),
            connection_limiter=ConnectionLimiter(cfg.rate_limit.max_connections),
            authenticator=JoinAuthenticator(max_age_ms=cfg.auth.max_signature_age_ms),
            max_message_bytes=cfg.server.max_message_bytes,
            trust_forwarded=cfg.server.trust_forwarded_for,
            require_onion=cfg.server.require_onion,
        )

        if cfg.threshold.peers:
            self.peers = PeerNetwork(
                cfg.threshold.peers,
                cfg.threshold.peer_token,
                timeout=cfg.threshold.peer_timeout_sec,
            )
            key_factory = distributed_key_factory(
                cfg.session.rsa_key_bits,
                cfg.threshold.params(),
                self.peers,
            )
        else:
            key_factory = default_key_factory(
                cfg.session.rsa_key_bits,
                cfg.threshold.params(),
            )

        if cfg.threshold.serve_shares:
            self.share_service = ShareHolderService(
                cfg.threshold.peer_token,
                ShareStore(
                    max_shares=cfg.threshold.max_held_shares,
                    ttl=cfg.threshold.share_ttl_sec,
                ),
            )

        self.coordinator = SessionCoordinator(
            registry=SessionRegistry(),
            builder=build_transaction_builder(cfg),
            authenticate=self.gate.authenticate,
            key_factory=key_factory,
            min_participants=cfg.session.min_participants,
            max_participants=cfg.session.max_participants,
            session_ttl=cfg.session.ttl_sec,
            completed_grace=cfg.session.completed_grace_sec,
        )

        self.sweeper = ExpirySweeper(
            self.coordinator,
            gate=self.gate,
            interval=cfg.session.sweep_interval_sec,
            share_store=self.share_service.store if self.share_service else None,
        )

        self.server = CoordinatorServer(
            coordinator=self.coordinator,
            gate=self.gate,
            host=cfg.server.host,
            port=cfg.server.port,
            max_message_bytes=cfg.server.max_message_bytes,
            share_service=self.share_service,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start sweeper and server."""
        if self._running:
            return

        logger.info(f"Starting {self.config.name} v{__version__}")
        if self.config.threshold.enabled:
            logger.info(
                f"Threshold signing enabled "
                f"({self.config.threshold.threshold}-of-{self.config.threshold.total_shares}, "
                f"{len(self.config.threshold.peers)} peer(s))"
            )
        if self.share_service is not None:
            logger.info("Holding key shares for peer coordinators")
        if self.config.server.require_onion:
            logger.info("Accepting hidden service connections only")

        self.sweeper.start()
        await self.server.start()

        self._running = True
        self._start_time = time.time()

    async def stop(self) -> None:
        """Abort live sessions and shut everything down."""
        if not self._running:
            return

        logger.info("Stopping coordinator...")
        self._running = False

        await self.sweeper.stop()
        await self.coordinator.shutdown()
        await self.server.stop()
        await self.coordinator.builder.close()
        if self.peers is not None:
            await self.peers.close()
        if self.share_service is not None:
            self.share_service.store.clear()
        self.gate.clear()

        logger.info("Coordinator stopped")

    def get_status(self) -> dict:
        return {
            "name": self.config.name,
            "version": __version__,
            "running": self._running,
            "uptime": time.time() - self._start_time if self._running else 0,
            "threshold_mode": self.config.threshold.enabled,
            "peers": len(self.config.threshold.peers),
            "serving_shares": self.share_service is not None,
            "coordinator": self.coordinator.get_statistics(),
        }


async def run_node(config: CoordinatorConfig) -> None:
    """Run until SIGINT/SIGTERM."""
    node = CoordinatorNode(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    await node.start()
    try:
        await stop_event.wait()
    finally:
        await node.stop()


def parse_threshold(value: str):
    """Parse 't/n' into (t, n)."""
    try:
        t, n = value.split("/")
        return int(t), int(n)
    except ValueError:
        raise argparse.ArgumentTypeError("threshold must look like 3/5")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blindjoin-coordinator",
        description="Blind-signature CoinJoin session coordinator",
    )
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--host", help="Listen address")
    parser.add_argument("--port", type=int, help="Listen port")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--threshold", type=parse_threshold, metavar="T/N",
                        help="Enable t-of-n threshold signing")
    parser.add_argument("--relayer-url", help="Relayer transaction builder URL")
    parser.add_argument("--peer", action="append", dest="peers", metavar="URL",
                        help="Peer coordinator holding a key share (repeat per peer)")
    parser.add_argument("--peer-token", help="Shared secret for peer share exchange")
    parser.add_argument("--serve-shares", action="store_true",
                        help="Hold key shares dealt by peer coordinators")
    parser.add_argument("--require-onion", action="store_true",
                        help="Refuse connections not made to a .onion host")
    parser.add_argument("--testnet", action="store_true", help="Use testnet defaults")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> CoordinatorConfig:
    if args.config:
        config = CoordinatorConfig.load(args.config)
    elif args.testnet:
        config = CoordinatorConfig.default_testnet()
    else:
        config = CoordinatorConfig()

    if args.host:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port
    if args.log_level:
        config.log.level = args.log_level
    if args.threshold:
        config.threshold.enabled = True
        config.threshold.threshold, config.threshold.total_shares = args.threshold
    if args.relayer_url:
        config.builder.relayer_url = args.relayer_url
    if args.peers:
        config.threshold.peers = args.peers
    if args.peer_token:
        config.threshold.peer_token = args.peer_token
    if args.serve_shares:
        config.threshold.serve_shares = True
    if args.require_onion:
        config.server.require_onion = True

    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args)

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"config error: {error}", file=sys.stderr)
        return 2

    setup_logging(config.log)

    try:
        asyncio.run(run_node(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
