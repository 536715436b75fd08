#!/usr/bin/env python3
"""Live block ingestion for the GLIN explorer.

This module turns new-head notifications into full blocks and delivers them
on a single ordered channel. Fetches run concurrently and may complete out of
order; deliveries are re-serialized by block number with a bounded wait.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from enum import Enum
from typing import Any

from .block_cache import current_millis
from .block_fetcher import BlockFetcher
from .errors import ExplorerError
from .models import Block
from .utils.header_listener import HeaderListener, parse_header_number

# Get logger for this module
logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Streaming state of the ingestion pipeline."""
    IDLE = "idle"
    STREAMING = "streaming"


class LiveIngestionPipeline:
    """Delivers freshly produced blocks in block-number order.

    This class is responsible for:
    - Running one header subscription session per ``stream()`` call
    - Fetching the full block for every announced header
    - Holding back blocks whose predecessors are still being fetched
    - Dropping every in-flight result once stopped
    """

    def __init__(
        self,
        fetcher: BlockFetcher,
        listener_factory: Callable[[], HeaderListener],
        channel: asyncio.Queue[Block],
        reorder_window: float = 6.0,
        clock: Callable[[], int] = current_millis
    ) -> None:
        """
        Initialize the LiveIngestionPipeline.

        Args:
            fetcher: Block fetcher for header-to-block resolution
            listener_factory: Creates a fresh HeaderListener per session
            channel: Queue delivered blocks are put on
            reorder_window: Seconds a block may wait for a slower predecessor
            clock: Millisecond wall clock used for ``received_at``
        """
        self._fetcher = fetcher
        self._listener_factory = listener_factory
        self._channel = channel
        self.reorder_window = reorder_window
        self._clock = clock

        self.state = PipelineState.IDLE
        self._listener: HeaderListener | None = None

        # Results of an older generation are discarded
        self._generation = 0
        self._in_flight: dict[asyncio.Task, int] = {}
        self._buffer: dict[str, tuple[Block, float]] = {}
        self._flush_handle: asyncio.TimerHandle | None = None
        self._last_delivered: int | None = None

        # Metrics tracking
        self.blocks_delivered = 0
        self.blocks_reordered = 0
        self.fetch_failures = 0

    @property
    def pending_count(self) -> int:
        return len(self._in_flight) + len(self._buffer)

    async def stream(self, on_streaming: Callable[[], None] | None = None) -> None:
        """
        Run one subscription session.

        Returns when ``stop()`` is called. In-flight fetches are dropped
        when the session ends.

        Args:
            on_streaming: Called once the node confirmed the subscription

        Raises:
            ChainConnectionError: If the header stream cannot be opened or drops
        """
        def subscribed() -> None:
            self.state = PipelineState.STREAMING
            logger.info("Live block ingestion streaming")
            if on_streaming:
                on_streaming()

        self._listener = self._listener_factory()
        try:
            await self._listener.listen(self.on_header, on_subscribed=subscribed)
        finally:
            self.state = PipelineState.IDLE
            self._listener = None
            self._reset()

    async def stop(self) -> None:
        """
        Stop streaming. Nothing is put on the channel after this returns.
        """
        self._reset()
        self._last_delivered = None
        if self._listener is not None:
            await self._listener.stop()
        self.state = PipelineState.IDLE
        logger.info(
            f"Ingestion stopped ({self.blocks_delivered} delivered, "
            f"{self.blocks_reordered} reordered, {self.fetch_failures} failed fetches)"
        )

    async def on_header(self, header: dict[str, Any]) -> None:
        """
        Start fetching the block announced by a header notification.

        Args:
            header: Raw header dict from the node
        """
        try:
            number = parse_header_number(header)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed header: {e}")
            return

        task = asyncio.create_task(
            self._fetch(number, self._generation),
            name=f"fetch-block-{number}"
        )
        self._in_flight[task] = number
        logger.debug(f"New head #{number}, {len(self._in_flight)} fetches in flight")

    async def _fetch(self, number: int, generation: int) -> None:
        block: Block | None = None
        try:
            block = await self._fetcher.fetch_block(number)
        except ExplorerError as e:
            if generation == self._generation:
                self.fetch_failures += 1
                logger.warning(f"Failed to fetch block #{number}: {e}")
        except Exception as e:
            if generation == self._generation:
                self.fetch_failures += 1
                logger.error(f"Unexpected error fetching block #{number}: {e}", exc_info=True)
        finally:
            if generation == self._generation:
                self._in_flight.pop(asyncio.current_task(), None)

        if generation != self._generation:
            logger.debug(f"Discarding block #{number} from a stopped session")
            return

        if block is not None:
            deadline = asyncio.get_running_loop().time() + self.reorder_window
            self._buffer[block.hash] = (block, deadline)
        self._release_ready()

    def _waiting_on_predecessor(self, block: Block) -> bool:
        """True while an earlier, not yet delivered block is still being fetched."""
        last = self._last_delivered
        return any(
            number < block.number and (last is None or number > last)
            for number in self._in_flight.values()
        )

    def _release_ready(self) -> None:
        while self._buffer:
            block, _ = min(self._buffer.values(), key=lambda entry: entry[0].number)
            if self._waiting_on_predecessor(block):
                break
            del self._buffer[block.hash]
            self._deliver(block)
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._buffer:
            return

        loop = asyncio.get_running_loop()
        earliest = min(deadline for _, deadline in self._buffer.values())
        self._flush_handle = loop.call_at(earliest, self._flush_expired)

    def _flush_expired(self) -> None:
        """Release blocks whose predecessor did not arrive within the window."""
        self._flush_handle = None
        now = asyncio.get_running_loop().time()
        expired = [block for block, deadline in self._buffer.values() if deadline <= now]
        if expired:
            cutoff = max(block.number for block in expired)
            for block, _ in sorted(self._buffer.values(), key=lambda entry: entry[0].number):
                if block.number > cutoff:
                    break
                logger.warning(f"Delivering block #{block.number} without its predecessor")
                del self._buffer[block.hash]
                self.blocks_reordered += 1
                self._deliver(block)
        self._release_ready()

    def _deliver(self, block: Block) -> None:
        delivered = replace(block, is_new=True, received_at=self._clock())
        if self._last_delivered is None or block.number > self._last_delivered:
            self._last_delivered = block.number
        self._channel.put_nowait(delivered)
        self.blocks_delivered += 1
        logger.info(f"New block #{block.number} ({block.hash[:10]}...)")

    def _reset(self) -> None:
        """Invalidate the current generation and drop all pending work."""
        self._generation += 1
        for task in self._in_flight:
            task.cancel()
        self._in_flight.clear()
        self._buffer.clear()
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
