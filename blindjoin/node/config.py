"""
BlindJoin Coordinator Configuration
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from blindjoin.constants import (
    COMPLETED_GRACE_SEC,
    DEFAULT_HOST,
    DEFAULT_MAX_PARTICIPANTS,
    DEFAULT_MIN_PARTICIPANTS,
    DEFAULT_PORT,
    DEFAULT_RSA_KEY_BITS,
    DEFAULT_SESSION_TTL_SEC,
    DEFAULT_THRESHOLD,
    DEFAULT_TOTAL_SHARES,
    MAX_HELD_SHARES,
    MAX_MESSAGE_BYTES,
    MAX_SIGNATURE_AGE_MS,
    MIN_RSA_KEY_BITS,
    MIN_THRESHOLD,
    PEER_TIMEOUT_SEC,
    RATE_LIMIT_MAX_CONNECTIONS,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SEC,
    SHARE_TTL_SEC,
    SWEEP_INTERVAL_SEC,
)
from blindjoin.crypto.threshold import ThresholdParams

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    """WebSocket server configuration."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_message_bytes: int = MAX_MESSAGE_BYTES
    trust_forwarded_for: bool = False
    require_onion: bool = False          # Only accept Host headers ending in .onion


@dataclass
class SessionConfig:
    """Session sizing and timing."""
    min_participants: int = DEFAULT_MIN_PARTICIPANTS
    max_participants: int = DEFAULT_MAX_PARTICIPANTS
    ttl_sec: float = DEFAULT_SESSION_TTL_SEC
    completed_grace_sec: float = COMPLETED_GRACE_SEC
    sweep_interval_sec: float = SWEEP_INTERVAL_SEC
    rsa_key_bits: int = DEFAULT_RSA_KEY_BITS


@dataclass
class RateLimitConfig:
    """Per-source abuse limits."""
    window_sec: float = RATE_LIMIT_WINDOW_SEC
    max_requests: int = RATE_LIMIT_MAX_REQUESTS
    max_connections: int = RATE_LIMIT_MAX_CONNECTIONS


@dataclass
class AuthConfig:
    """JOIN authentication."""
    max_signature_age_ms: int = MAX_SIGNATURE_AGE_MS


@dataclass
class ThresholdConfig:
    """
    Threshold signing mode.

    Off by default. When enabled every session key is split t-of-n and
    the private exponent is dropped after splitting.

    With `peers` set, this node keeps share 1 and deals one share to each
    peer coordinator, so total_shares - 1 peers are needed. A node with
    `serve_shares` holds shares dealt by its peers. Both use `peer_token`.
    """
    enabled: bool = False
    threshold: int = DEFAULT_THRESHOLD
    total_shares: int = DEFAULT_TOTAL_SHARES
    peers: List[str] = field(default_factory=list)
    peer_token: Optional[str] = None
    peer_timeout_sec: float = PEER_TIMEOUT_SEC
    require_tls: bool = True
    serve_shares: bool = False
    share_ttl_sec: float = SHARE_TTL_SEC
    max_held_shares: int = MAX_HELD_SHARES

    def params(self) -> Optional[ThresholdParams]:
        if not self.enabled:
            return None
        return ThresholdParams(self.threshold, self.total_shares)


@dataclass
class BuilderConfig:
    """Transaction builder collaborator."""
    relayer_url: Optional[str] = None
    timeout_sec: float = 30.0


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_size_mb: int = 100
    backup_count: int = 5


_SECTIONS = {
    "server": ServerConfig,
    "session": SessionConfig,
    "rate_limit": RateLimitConfig,
    "auth": AuthConfig,
    "threshold": ThresholdConfig,
    "builder": BuilderConfig,
    "log": LogConfig,
}


@dataclass
class CoordinatorConfig:
    """
    Complete coordinator configuration.

    All settings for running a BlindJoin coordinator.
    """
    name: str = "blindjoin-coordinator"
    testnet: bool = False

    server: ServerConfig = field(default_factory=ServerConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    threshold: ThresholdConfig = field(default_factory=ThresholdConfig)
    builder: BuilderConfig = field(default_factory=BuilderConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.server.port < 0 or self.server.port > 65535:
            errors.append(f"Invalid port: {self.server.port}")

        if self.server.max_message_bytes < 1024:
            errors.append("max_message_bytes must be at least 1024")

        # Session validation
        if self.session.min_participants < 2:
            errors.append("min_participants must be at least 2")

        if self.session.max_participants < self.session.min_participants:
            errors.append("max_participants cannot be below min_participants")

        if self.session.ttl_sec <= 0:
            errors.append("ttl_sec must be positive")

        if self.session.rsa_key_bits < MIN_RSA_KEY_BITS:
            errors.append(f"rsa_key_bits must be at least {MIN_RSA_KEY_BITS}")

        # Rate limit validation
        if self.rate_limit.window_sec <= 0:
            errors.append("window_sec must be positive")

        if self.rate_limit.max_requests < 1:
            errors.append("max_requests must be at least 1")

        if self.rate_limit.max_connections < 1:
            errors.append("max_connections must be at least 1")

        # Threshold validation
        if self.threshold.enabled:
            if self.threshold.threshold < MIN_THRESHOLD:
                errors.append(f"threshold must be at least {MIN_THRESHOLD}")
            if self.threshold.threshold > self.threshold.total_shares:
                errors.append("threshold cannot exceed total_shares")

        if self.threshold.peers:
            if not self.threshold.enabled:
                errors.append("peers require threshold mode")
            elif len(self.threshold.peers) != self.threshold.total_shares - 1:
                errors.append(
                    f"{self.threshold.total_shares} shares need "
                    f"{self.threshold.total_shares - 1} peers, got {len(self.threshold.peers)}"
                )
            if self.threshold.require_tls and any(
                not peer.startswith("https://") for peer in self.threshold.peers
            ):
                errors.append("peer URLs must use https (or set require_tls false)")

        if (self.threshold.peers or self.threshold.serve_shares) and not self.threshold.peer_token:
            errors.append("peer_token is required for peer share exchange")

        return errors

    def save(self, path: str) -> None:
        """Save configuration to file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: str) -> "CoordinatorConfig":
        """Load configuration from file."""
        with open(path, 'r') as f:
            data = json.load(f)

        config = cls(
            name=data.get("name", "blindjoin-coordinator"),
            testnet=data.get("testnet", False),
        )

        for name, section_cls in _SECTIONS.items():
            if name in data:
                setattr(config, name, section_cls(**data[name]))

        logger.info(f"Configuration loaded from {path}")
        return config

    @classmethod
    def default_testnet(cls) -> "CoordinatorConfig":
        """Create default testnet configuration."""
        config = cls(
            name="blindjoin-testnet-coordinator",
            testnet=True,
        )

        config.server.host = "127.0.0.1"
        config.server.port = DEFAULT_PORT + 1
        config.session.min_participants = 3
        config.session.ttl_sec = 120.0
        config.log.level = "DEBUG"

        return config

    def to_dict(self) -> dict:
        """Export configuration as dictionary."""
        result = {
            "name": self.name,
            "testnet": self.testnet,
        }
        for name in _SECTIONS:
            result[name] = asdict(getattr(self, name))
        return result


def setup_logging(config: LogConfig) -> None:
    """Configure logging based on config."""
    level = getattr(logging, config.level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]

    if config.file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format=config.format,
        handlers=handlers,
    )
