"""Node connection management for the GLIN explorer.

Owns the RPC session to a Substrate node. py-substrate-interface is a
blocking client, so every call is run on a dedicated single-worker executor:
the event loop never blocks and requests over the shared websocket are
serialized.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, TypeVar

from substrateinterface import SubstrateInterface
from websocket import WebSocketException

from .config import NodeConfig
from .errors import ChainConnectionError, ExplorerError, NotConnectedError
from .models import ChainInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERRORS = (WebSocketException, ConnectionError, OSError)


class ConnectionState(Enum):
    """Connection state exposed by the explorer."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def parse_chain_info(name: str, properties: Mapping[str, Any] | None) -> ChainInfo:
    """
    Build ChainInfo from ``system_properties``.

    Nodes report token symbol and decimals either as scalars or as lists
    (one entry per token); the first entry is the native token.
    """
    properties = properties or {}

    def first(value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value

    token_symbol = first(properties.get("tokenSymbol"))
    token_decimals = first(properties.get("tokenDecimals"))
    ss58_format = properties.get("ss58Format")

    return ChainInfo(
        name=str(name) if name else "Unknown",
        token_symbol=token_symbol if isinstance(token_symbol, str) and token_symbol else "tGLIN",
        token_decimals=token_decimals if isinstance(token_decimals, int) and token_decimals else 18,
        ss58_format=ss58_format if isinstance(ss58_format, int) and ss58_format else 42
    )


class NodeConnection:
    """
    A single logical connection to a Substrate node.

    The header stream used by the live pipeline connects to the same
    ``url`` and is torn down together with this session by the engine.
    """

    def __init__(
        self,
        config: NodeConfig,
        substrate_factory: Callable[..., SubstrateInterface] = SubstrateInterface
    ) -> None:
        """
        Initialize the NodeConnection.

        Args:
            config: Node configuration (endpoint and connect timeout)
            substrate_factory: Callable creating the RPC client, replaced in tests
        """
        self.config = config
        self.url = config.rpc_url
        self._substrate_factory = substrate_factory

        self.state = ConnectionState.DISCONNECTED
        self.chain_info: ChainInfo | None = None

        self._substrate: SubstrateInterface | None = None
        self._executor: ThreadPoolExecutor | None = None

    @property
    def is_connected(self) -> bool:
        return self._substrate is not None and self.state is ConnectionState.CONNECTED

    def _open_session(self) -> tuple[SubstrateInterface, ChainInfo]:
        """Create the RPC client and read chain metadata (runs on the worker thread)."""
        substrate = self._substrate_factory(
            url=self.url,
            ws_options={"timeout": self.config.connect_timeout},
            auto_reconnect=True
        )
        try:
            chain_info = parse_chain_info(substrate.chain, substrate.properties)
        except Exception:
            substrate.close()
            raise
        return substrate, chain_info

    @staticmethod
    def _close_abandoned(future: Future) -> None:
        """Close a session that finished opening after connect() gave up on it."""
        if future.cancelled() or future.exception() is not None:
            return
        substrate, _ = future.result()
        logger.debug("Closing session that completed after connect timeout")
        substrate.close()

    async def connect(self) -> None:
        """
        Open the RPC session and wait until the node answers.

        Raises:
            ChainConnectionError: If the node is unreachable or not ready
                within ``connect_timeout`` seconds
        """
        if self.is_connected:
            return

        self.state = ConnectionState.CONNECTING
        logger.info(f"Connecting to node: {self.url}")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="substrate-rpc")
        future = executor.submit(self._open_session)

        try:
            substrate, chain_info = await asyncio.wait_for(
                asyncio.wrap_future(future),
                timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError as e:
            future.add_done_callback(self._close_abandoned)
            executor.shutdown(wait=False)
            self.state = ConnectionState.DISCONNECTED
            raise ChainConnectionError(
                f"Node at {self.url} not ready after {self.config.connect_timeout}s"
            ) from e
        except Exception as e:
            executor.shutdown(wait=False)
            self.state = ConnectionState.DISCONNECTED
            raise ChainConnectionError(f"Failed to connect to {self.url}: {e}") from e
        except BaseException:
            future.add_done_callback(self._close_abandoned)
            executor.shutdown(wait=False)
            self.state = ConnectionState.DISCONNECTED
            raise

        self._executor = executor
        self._substrate = substrate
        self.chain_info = chain_info
        self.state = ConnectionState.CONNECTED

        logger.info(
            f"Connected to chain: {chain_info.name} "
            f"({chain_info.token_symbol}, {chain_info.token_decimals} decimals, "
            f"ss58 {chain_info.ss58_format})"
        )

    async def disconnect(self) -> None:
        """Close the RPC session. Safe to call more than once."""
        substrate, self._substrate = self._substrate, None
        executor, self._executor = self._executor, None

        if substrate is not None and executor is not None:
            logger.info(f"Disconnecting from node: {self.url}")
            try:
                await asyncio.get_running_loop().run_in_executor(executor, substrate.close)
            except TRANSPORT_ERRORS as e:
                logger.warning(f"Error during disconnect: {e}")

        if executor is not None:
            executor.shutdown(wait=False)

        self.chain_info = None
        self.state = ConnectionState.DISCONNECTED

    async def reconnect(self) -> None:
        """Tear down the session completely and open a fresh one."""
        logger.info("Reconnecting to node...")
        await self.disconnect()
        await self.connect()

    async def call(self, fn: Callable[[SubstrateInterface], T]) -> T:
        """
        Run ``fn(substrate)`` on the RPC worker thread.

        Args:
            fn: Function receiving the live SubstrateInterface

        Returns:
            Whatever ``fn`` returns

        Raises:
            NotConnectedError: If no session is open
            ChainConnectionError: If the websocket fails during the call
        """
        substrate = self._substrate
        executor = self._executor
        if substrate is None or executor is None:
            raise NotConnectedError()

        try:
            return await asyncio.get_running_loop().run_in_executor(executor, fn, substrate)
        except ExplorerError:
            raise
        except TRANSPORT_ERRORS as e:
            logger.warning(f"RPC transport error: {e}")
            raise ChainConnectionError(f"RPC call failed: {e}") from e

    async def rpc_request(self, method: str, params: list[Any] | None = None) -> Any:
        """Send a raw JSON-RPC request and return its ``result`` field."""
        response = await self.call(lambda substrate: substrate.rpc_request(method, params or []))
        return response.get("result")
