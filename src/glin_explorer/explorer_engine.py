"""
GLIN explorer engine.

This module contains the facade that owns the node connection, runs live
block ingestion with automatic reconnection, and exposes the block cache,
lookups and search to calling code.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from substrateinterface.exceptions import SubstrateRequestException

from .block_cache import RecentBlockCache
from .block_fetcher import BlockFetcher
from .config import ExplorerConfig
from .entity_lookup import EntityLookup
from .errors import ChainConnectionError, ExplorerError, NotConnectedError
from .ingestion import LiveIngestionPipeline
from .models import (
    Account,
    AccountBalance,
    Block,
    ChainInfo,
    FaucetStats,
    LeaderboardEntry,
    NetworkSummary,
    ProviderDetails,
    ProviderStake,
    SearchResult,
    Task,
    TaskDetails,
    TestnetPoints,
    Transaction,
    UserPoints,
)
from .node_connection import ConnectionState, NodeConnection
from .search import SearchDispatcher
from .utils.backend_client import BackendClient
from .utils.header_listener import HeaderListener

logger = logging.getLogger(__name__)

T = TypeVar("T")

BlockCallback = Callable[[Block], Awaitable[None] | None]


class Subscription:
    """Handle returned by ``ExplorerEngine.subscribe``."""

    def __init__(self, callback: BlockCallback, registry: list["Subscription"]) -> None:
        self.callback = callback
        self._registry = registry
        self.active = True

    def cancel(self) -> None:
        """Stop receiving blocks. The callback is not called after this returns."""
        if not self.active:
            return
        self.active = False
        if self in self._registry:
            self._registry.remove(self)


class ExplorerEngine:
    """
    Facade over the live synchronization and lookup engine.

    This class focuses on lifecycle management: it opens and tears down the
    node connection, keeps the block stream alive across transport drops,
    and is the only writer of the recent-block cache.
    """

    def __init__(
        self,
        config: ExplorerConfig | None = None,
        node_factory: Callable[..., NodeConnection] = NodeConnection,
        listener_factory: Callable[[str, float], HeaderListener] = HeaderListener,
        backend: BackendClient | None = None
    ) -> None:
        """
        Initialize the explorer engine.

        Args:
            config: Engine configuration (defaults apply when omitted)
            node_factory: Creates the NodeConnection on connect, replaced in tests
            listener_factory: Creates header listeners for the live stream
            backend: Enrichment client; built from config when omitted
        """
        self.config = config or ExplorerConfig()
        self._node_factory = node_factory
        self._listener_factory = listener_factory

        if backend is None and self.config.backend.enabled:
            backend = BackendClient(
                base_url=self.config.backend.base_url,
                request_timeout=self.config.backend.request_timeout
            )
        self.backend = backend

        self.cache = RecentBlockCache(
            capacity=self.config.cache.capacity,
            novelty_seconds=self.config.cache.novelty_seconds
        )

        self.node: NodeConnection | None = None
        self.fetcher: BlockFetcher | None = None
        self.lookup: EntityLookup | None = None
        self.search_dispatcher: SearchDispatcher | None = None
        self.pipeline: LiveIngestionPipeline | None = None

        self._state = ConnectionState.DISCONNECTED
        self._subscribers: list[Subscription] = []
        self._channel: asyncio.Queue[Block] | None = None
        self._consumer_task: asyncio.Task | None = None
        self._supervisor_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._lifecycle_lock = asyncio.Lock()
        self.shutdown_event = asyncio.Event()

    async def __aenter__(self) -> "ExplorerEngine":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def chain_info(self) -> ChainInfo | None:
        return self.node.chain_info if self.node else None

    # ========== Lifecycle ==========

    async def connect(self) -> None:
        """
        Connect to the node, load the latest blocks and start streaming.

        Raises:
            ChainConnectionError: If the node cannot be reached; the engine
                is left disconnected with no partial data
        """
        async with self._lifecycle_lock:
            if self._state is not ConnectionState.DISCONNECTED:
                return

            self._state = ConnectionState.CONNECTING
            self.shutdown_event.clear()
            node = self._node_factory(self.config.node)

            try:
                await node.connect()
                self._attach(node)
                if node.chain_info is not None:
                    self.cache.chain_name = node.chain_info.name
                blocks = await self.fetcher.fetch_latest_blocks(self.config.cache.capacity)
                self.cache.replace_all(blocks)
                await self.load_network_summary()
            except BaseException as e:
                logger.error(f"Failed to connect: {e!r}")
                await node.disconnect()
                self._detach()
                self.cache.clear()
                self._state = ConnectionState.DISCONNECTED
                raise

            self._state = ConnectionState.CONNECTED
            self._start_streaming()
            logger.info(f"Explorer connected, {len(self.cache)} blocks cached")

    async def disconnect(self) -> None:
        """Stop streaming, close the node connection and empty the cache."""
        async with self._lifecycle_lock:
            await self._stop_streaming()
            if self.node is not None:
                await self.node.disconnect()
            self._detach()
            self.cache.clear()
            self._state = ConnectionState.DISCONNECTED
            self.shutdown_event.set()
            logger.info("Explorer disconnected")

    async def run(self) -> None:
        """Connect and keep streaming until cancelled or the connection is given up."""
        await self.connect()
        try:
            await self.shutdown_event.wait()
        finally:
            await self.disconnect()

    def _attach(self, node: NodeConnection) -> None:
        self.node = node
        self.fetcher = BlockFetcher(node)
        self.lookup = EntityLookup(node, self.fetcher)
        self.search_dispatcher = SearchDispatcher(node, self.fetcher, self.lookup)

    def _detach(self) -> None:
        self.node = None
        self.fetcher = None
        self.lookup = None
        self.search_dispatcher = None

    def _start_streaming(self) -> None:
        node = self.node
        self._channel = asyncio.Queue()
        self.pipeline = LiveIngestionPipeline(
            fetcher=self.fetcher,
            listener_factory=lambda: self._listener_factory(node.url, self.config.node.connect_timeout),
            channel=self._channel,
            reorder_window=self.config.stream.reorder_window
        )
        self._consumer_task = asyncio.create_task(self._consume(self._channel), name="block-consumer")
        self._supervisor_task = asyncio.create_task(self._supervise(), name="stream-supervisor")

    async def _stop_streaming(self) -> None:
        if self.pipeline is not None:
            await self.pipeline.stop()

        tasks = [self._supervisor_task, self._consumer_task]
        self._supervisor_task = None
        self._consumer_task = None
        for task in tasks:
            if task is None or task is asyncio.current_task() or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling

        self.pipeline = None
        self._channel = None

    # ========== Live stream ==========

    def _backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based): base, 2x base, ... capped."""
        stream_config = self.config.stream
        return min(
            stream_config.reconnect_base_delay * (2 ** (attempt - 1)),
            stream_config.reconnect_max_delay
        )

    def _on_streaming(self) -> None:
        self._reconnect_attempts = 0
        self._state = ConnectionState.CONNECTED

    async def _supervise(self) -> None:
        """Keep the block stream alive, reconnecting with exponential backoff."""
        stream_config = self.config.stream

        while True:
            try:
                await self.pipeline.stream(on_streaming=self._on_streaming)
                return  # stopped
            except ChainConnectionError as e:
                logger.warning(f"Live block stream lost: {e}")
            except Exception as e:
                logger.error(f"Unexpected error in live block stream: {e}", exc_info=True)

            self._state = ConnectionState.CONNECTING

            while True:
                self._reconnect_attempts += 1
                if self._reconnect_attempts > stream_config.max_reconnect_attempts:
                    logger.error("Max reconnect attempts reached, giving up")
                    self._supervisor_task = None
                    await self.disconnect()
                    return

                delay = self._backoff_delay(self._reconnect_attempts)
                logger.info(
                    f"Reconnecting in {delay} seconds "
                    f"(attempt {self._reconnect_attempts}/{stream_config.max_reconnect_attempts})..."
                )
                await asyncio.sleep(delay)

                try:
                    await self.node.reconnect()
                except ChainConnectionError as e:
                    logger.warning(f"Reconnect failed: {e}")
                    continue

                try:
                    await self.load_network_summary()
                except ExplorerError as e:
                    logger.warning(f"Session lost again after reconnect: {e}")
                    continue
                break

    async def _consume(self, channel: asyncio.Queue[Block]) -> None:
        """Single writer of the cache: apply delivered blocks in order."""
        while True:
            block = await channel.get()
            self.cache.insert(block)

            for subscription in list(self._subscribers):
                if not subscription.active:
                    continue
                try:
                    result = subscription.callback(block)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"Error in new block subscriber: {e}", exc_info=True)

    def subscribe(self, on_new_block: BlockCallback) -> Subscription:
        """
        Register a callback for every block delivered by the live stream.

        Args:
            on_new_block: Sync or async function receiving each new Block

        Returns:
            Subscription handle; call ``cancel()`` to unsubscribe
        """
        subscription = Subscription(on_new_block, self._subscribers)
        self._subscribers.append(subscription)
        return subscription

    # ========== Blocks & network ==========

    def get_recent_blocks(self) -> list[Block]:
        """Snapshot of the recent-block cache, newest first."""
        return self.cache.snapshot()

    def get_network_summary(self) -> NetworkSummary | None:
        return self.cache.summary

    async def get_block(self, id_or_height: int | str) -> Block:
        """
        Fetch a block by height or hash.

        Raises:
            NotConnectedError: If the engine is not connected
            BlockNotFoundError: If the block does not exist
            MalformedBlockError: If the block cannot be decoded
        """
        return await self._require(self.fetcher).fetch_block(id_or_height)

    async def load_network_summary(self) -> NetworkSummary | None:
        """
        Read chain name, node identity, head and validator set from the node.

        Failures are logged and leave the previous summary in place.
        """
        node = self._require(self.node)
        try:
            node_name = await node.rpc_request("system_name")
            node_version = await node.rpc_request("system_version")
            head_hash = await node.call(lambda substrate: substrate.get_chain_head())
            head_number = await node.call(lambda substrate: substrate.get_block_number(head_hash))
            validators = await self.lookup.get_validators()
        except (ChainConnectionError, SubstrateRequestException) as e:
            logger.error(f"Failed to load network stats: {e}")
            return None

        latest = self.cache.latest
        if latest is not None and latest.number > head_number:
            head_number, head_hash = latest.number, latest.hash

        summary = NetworkSummary(
            chain=node.chain_info.name if node.chain_info else "Unknown",
            node_name=str(node_name),
            node_version=str(node_version),
            block_number=head_number,
            block_hash=head_hash,
            validator_count=len(validators),
            validators=tuple(validators)
        )
        self.cache.set_summary(summary)
        return summary

    async def search(self, query: str) -> SearchResult | None:
        """Classify a query and return the single best match, or None."""
        return await self._require(self.search_dispatcher).search(query)

    # ========== Entity lookups ==========

    def _require(self, component: T | None) -> T:
        if component is None:
            raise NotConnectedError()
        return component

    async def get_account_info(self, address: str) -> Account | None:
        return await self._require(self.lookup).get_account_info(address)

    async def get_account_balance(self, address: str) -> AccountBalance | None:
        return await self._require(self.lookup).get_account_balance(address)

    async def get_task(self, task_id: str) -> Task | None:
        return await self._require(self.lookup).get_task(task_id)

    async def get_all_tasks(self) -> list[Task]:
        return await self._require(self.lookup).get_all_tasks()

    async def get_provider_stake(self, address: str) -> ProviderStake | None:
        return await self._require(self.lookup).get_provider_stake(address)

    async def get_all_providers(self) -> list[ProviderStake]:
        return await self._require(self.lookup).get_all_providers()

    async def get_validators(self) -> list[str]:
        return await self._require(self.lookup).get_validators()

    async def get_testnet_points(self, address: str) -> TestnetPoints | None:
        return await self._require(self.lookup).get_testnet_points(address)

    async def get_transaction(self, block_hash: str, index: int) -> Transaction | None:
        return await self._require(self.lookup).get_transaction(block_hash, index)

    # ========== Backend enrichment ==========

    async def _enrich(self, what: str, request: Callable[[BackendClient], Awaitable[T]]) -> T | None:
        """Call the backend best-effort; failures are logged, never raised."""
        if self.backend is None:
            return None
        try:
            return await request(self.backend)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Backend {what} unavailable: {e}")
            return None

    async def get_task_details(self, task_id: str) -> TaskDetails | None:
        """On-chain task merged with its backend description, when available."""
        task = await self.get_task(task_id)
        if task is None:
            return None

        extra = await self._enrich(f"task {task_id}", lambda backend: backend.get_task(task_id)) or {}
        created_at = extra.get("createdAt")
        return TaskDetails(
            task=task,
            description=extra.get("description"),
            created_at=created_at if isinstance(created_at, int) else None
        )

    async def get_provider_details(self, address: str) -> ProviderDetails | None:
        """On-chain provider stake merged with backend GPU specs, when available."""
        provider = await self.get_provider_stake(address)
        if provider is None:
            return None

        extra = await self._enrich(f"provider {address}", lambda backend: backend.get_provider(address)) or {}
        gpu_specs = extra.get("gpuSpecs")
        return ProviderDetails(
            provider=provider,
            gpu_specs=gpu_specs if isinstance(gpu_specs, dict) else None
        )

    async def get_leaderboard(self, limit: int = 100) -> list[LeaderboardEntry]:
        return await self._enrich("leaderboard", lambda backend: backend.get_leaderboard(limit)) or []

    async def get_user_points(self, address: str) -> UserPoints | None:
        return await self._enrich(f"points for {address}", lambda backend: backend.get_user_points(address))

    async def get_faucet_stats(self) -> FaucetStats | None:
        return await self._enrich("faucet stats", lambda backend: backend.get_faucet_stats())

    async def get_faucet_status(self, address: str) -> dict[str, Any] | None:
        """Faucet eligibility for an address as reported by the backend."""
        return await self._enrich(f"faucet status for {address}", lambda backend: backend.check_faucet_status(address))

    async def get_task_listing(self, status: str | None = None) -> list[dict[str, Any]]:
        """Backend task index, optionally filtered by status."""
        return await self._enrich("task listing", lambda backend: backend.get_tasks(status)) or []

    async def get_provider_listing(self) -> list[dict[str, Any]]:
        return await self._enrich("provider listing", lambda backend: backend.get_providers()) or []

    async def get_network_analytics(self) -> dict[str, Any] | None:
        return await self._enrich("network analytics", lambda backend: backend.get_network_analytics())
