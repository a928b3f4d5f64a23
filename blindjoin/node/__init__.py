"""
BlindJoin Node: configuration and process lifecycle.
"""

from blindjoin.node.config import (
    CoordinatorConfig,
    ServerConfig,
    SessionConfig,
    RateLimitConfig,
    AuthConfig,
    ThresholdConfig,
    BuilderConfig,
    LogConfig,
    setup_logging,
)
from blindjoin.node.node import CoordinatorNode, main

__all__ = [
    "CoordinatorConfig",
    "ServerConfig",
    "SessionConfig",
    "RateLimitConfig",
    "AuthConfig",
    "ThresholdConfig",
    "BuilderConfig",
    "LogConfig",
    "setup_logging",
    "CoordinatorNode",
    "main",
]
