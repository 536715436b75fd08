#!/usr/bin/env python3
"""Configuration management for the GLIN explorer engine.

This module provides type-safe configuration dataclasses with validation
for the explorer engine. Configuration is loaded from environment variables
with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_RPC_ENDPOINT = "wss://glin-rpc-production.up.railway.app"
DEFAULT_BACKEND_URL = "http://localhost:8080"


def convert_to_websocket_url(url: str) -> str:
    """Convert an HTTP RPC URL to its WebSocket equivalent."""
    if url.startswith("https://"):
        return url.replace("https://", "wss://", 1)
    if url.startswith("http://"):
        return url.replace("http://", "ws://", 1)
    return url


@dataclass(frozen=True, slots=True)
class NodeConfig:
    """Configuration for the node connection.

    Attributes:
        rpc_url: WebSocket RPC endpoint of the node (http(s) is converted)
        connect_timeout: Seconds to wait for the node to become ready
    """

    rpc_url: str = DEFAULT_RPC_ENDPOINT
    connect_timeout: float = 30.0

    SUPPORTED_SCHEMES: ClassVar[set[str]] = {'http', 'https', 'ws', 'wss'}

    def __post_init__(self) -> None:
        """Validate node configuration."""
        if not self.rpc_url:
            raise ValueError("RPC endpoint is required (RPC_ENDPOINT)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in self.SUPPORTED_SCHEMES:
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected ws, wss, http, or https"
            )

        websocket_url = convert_to_websocket_url(self.rpc_url)
        if websocket_url != self.rpc_url:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'rpc_url', websocket_url)

        if self.connect_timeout <= 0:
            raise ValueError(f"Connect timeout must be positive, got {self.connect_timeout}")
        if self.connect_timeout > 300:
            raise ValueError(f"Connect timeout too long (max 300s), got {self.connect_timeout}")


@dataclass(frozen=True, slots=True)
class StreamConfig:
    """Configuration for live block ingestion and reconnection."""
    reorder_window: float = 6.0  # seconds a block waits for a slower predecessor
    max_reconnect_attempts: int = 10
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0

    def __post_init__(self) -> None:
        """Validate stream configuration."""
        if self.reorder_window < 0:
            raise ValueError(f"Reorder window must be non-negative, got {self.reorder_window}")
        if self.reorder_window > 60:
            raise ValueError(f"Reorder window too long (max 60s), got {self.reorder_window}")

        if self.max_reconnect_attempts < 0:
            raise ValueError(
                f"Max reconnect attempts must be non-negative, got {self.max_reconnect_attempts}"
            )
        if self.max_reconnect_attempts > 100:
            raise ValueError(
                f"Max reconnect attempts too high (max 100), got {self.max_reconnect_attempts}"
            )

        if self.reconnect_base_delay <= 0:
            raise ValueError(
                f"Reconnect base delay must be positive, got {self.reconnect_base_delay}"
            )
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError(
                "Reconnect max delay must not be below the base delay, "
                f"got {self.reconnect_max_delay} < {self.reconnect_base_delay}"
            )


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Configuration for the recent-block cache."""
    capacity: int = 15
    novelty_seconds: float = 10.0

    def __post_init__(self) -> None:
        """Validate cache configuration."""
        if self.capacity <= 0:
            raise ValueError(f"Cache size must be positive, got {self.capacity}")
        if self.capacity > 1000:
            raise ValueError(f"Cache size too high (max 1000), got {self.capacity}")

        if self.novelty_seconds < 0:
            raise ValueError(f"Novelty period must be non-negative, got {self.novelty_seconds}")


@dataclass(frozen=True, slots=True)
class BackendConfig:
    """Configuration for the enrichment backend.

    An empty ``base_url`` disables enrichment entirely.
    """

    base_url: str = DEFAULT_BACKEND_URL
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        """Validate backend configuration."""
        if self.base_url:
            parsed = urlparse(self.base_url)
            if parsed.scheme not in ('http', 'https'):
                raise ValueError(
                    f"Invalid backend URL scheme: {parsed.scheme}. "
                    "Expected http or https"
                )
            object.__setattr__(self, 'base_url', self.base_url.rstrip('/'))

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


@dataclass(frozen=True, slots=True)
class ExplorerConfig:
    """Main configuration for the explorer engine.

    Attributes:
        node: Node connection settings
        stream: Live ingestion and reconnection settings
        cache: Recent-block cache settings
        backend: Enrichment backend settings
    """

    node: NodeConfig = field(default_factory=NodeConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)

    @classmethod
    def from_env(cls) -> "ExplorerConfig":
        """Load configuration from environment variables.

        Returns:
            ExplorerConfig instance with loaded values

        Raises:
            ValueError: If environment variables are missing or invalid
        """
        node_config = NodeConfig(
            rpc_url=os.environ.get("RPC_ENDPOINT", DEFAULT_RPC_ENDPOINT),
            connect_timeout=float(os.environ.get("CONNECT_TIMEOUT", "30"))
        )

        stream_config = StreamConfig(
            reorder_window=float(os.environ.get("REORDER_WINDOW", "6")),
            max_reconnect_attempts=int(os.environ.get("MAX_RECONNECT_ATTEMPTS", "10"))
        )

        cache_config = CacheConfig(
            capacity=int(os.environ.get("CACHE_SIZE", "15")),
            novelty_seconds=float(os.environ.get("NOVELTY_SECONDS", "10"))
        )

        backend_config = BackendConfig(
            base_url=os.environ.get("BACKEND_API_URL", DEFAULT_BACKEND_URL),
            request_timeout=float(os.environ.get("REQUEST_TIMEOUT", "30"))
        )

        return cls(
            node=node_config,
            stream=stream_config,
            cache=cache_config,
            backend=backend_config
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("GLIN Explorer Configuration")
        logger.info("=" * 60)

        logger.info("Node:")
        logger.info(f"  RPC URL: {self.node.rpc_url}")
        logger.info(f"  Connect Timeout: {self.node.connect_timeout} seconds")

        logger.info("Live Stream:")
        logger.info(f"  Reorder Window: {self.stream.reorder_window} seconds")
        logger.info(f"  Max Reconnect Attempts: {self.stream.max_reconnect_attempts}")

        logger.info("Block Cache:")
        logger.info(f"  Capacity: {self.cache.capacity} blocks")
        logger.info(f"  Novelty Period: {self.cache.novelty_seconds} seconds")

        logger.info("Backend:")
        if self.backend.enabled:
            logger.info(f"  URL: {self.backend.base_url}")
            logger.info(f"  Request Timeout: {self.backend.request_timeout} seconds")
        else:
            logger.info("  Disabled")

        logger.info("=" * 60)
