#!/usr/bin/env python3
"""Recent-block cache for the GLIN explorer.

Keeps the last N blocks newest first, clears each block's ``is_new`` flag
a fixed time after it arrived, and mirrors the chain tip into the network
summary.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import replace

from .models import Block, NetworkSummary

logger = logging.getLogger(__name__)


def current_millis() -> int:
    """Wall clock in milliseconds since epoch."""
    return int(time.time() * 1000)


class RecentBlockCache:
    """Bounded, newest-first block store with per-block novelty timers.

    Eviction is by insertion position only: a late block inserted after a
    newer one still lands at the front, and whatever falls past
    ``capacity`` is dropped.
    """

    def __init__(
        self,
        capacity: int = 15,
        novelty_seconds: float = 10.0,
        clock: Callable[[], int] = current_millis,
        chain_name: str = "Unknown"
    ) -> None:
        """
        Initialize the RecentBlockCache.

        Args:
            capacity: Maximum number of blocks kept
            novelty_seconds: How long a delivered block stays flagged as new
            clock: Millisecond wall clock, replaced in tests
            chain_name: Chain name used when the tip is mirrored before a summary was loaded
        """
        self.capacity = capacity
        self.novelty_ms = int(novelty_seconds * 1000)
        self._clock = clock
        self.chain_name = chain_name

        self._blocks: list[Block] = []
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self.summary: NetworkSummary | None = None

    def __len__(self) -> int:
        return len(self._blocks)

    def __contains__(self, block_hash: object) -> bool:
        return any(block.hash == block_hash for block in self._blocks)

    @property
    def latest(self) -> Block | None:
        return self._blocks[0] if self._blocks else None

    def insert(self, block: Block) -> None:
        """
        Prepend a delivered block, replacing any entry with the same hash.

        Args:
            block: Block from the ingestion pipeline
        """
        self._cancel_timer(block.hash)
        self._blocks = [cached for cached in self._blocks if cached.hash != block.hash]
        self._blocks.insert(0, block)

        for evicted in self._blocks[self.capacity:]:
            self._cancel_timer(evicted.hash)
            logger.debug(f"Evicted block #{evicted.number}")
        del self._blocks[self.capacity:]

        if block.is_new:
            self._schedule_expiry(block)

        self._mirror_tip(block)

    def replace_all(self, blocks: Iterable[Block]) -> None:
        """Load an initial listing (newest first), dropping current entries."""
        self._cancel_all_timers()
        self._blocks = []
        seen: set[str] = set()
        for block in blocks:
            if block.hash in seen:
                continue
            seen.add(block.hash)
            self._blocks.append(block)
            if len(self._blocks) == self.capacity:
                break
        if self._blocks:
            self._mirror_tip(self._blocks[0])

    def _mirror_tip(self, block: Block) -> None:
        """Track the newest block in the summary, starting a bare one if none was loaded."""
        if self.summary is None:
            self.summary = NetworkSummary(
                chain=self.chain_name,
                node_name="",
                node_version="",
                block_number=block.number,
                block_hash=block.hash
            )
        else:
            self.summary = replace(self.summary, block_number=block.number, block_hash=block.hash)

    def set_summary(self, summary: NetworkSummary | None) -> None:
        self.summary = summary

    def clear(self) -> None:
        """Drop all blocks, pending novelty timers and the summary."""
        self._cancel_all_timers()
        self._blocks = []
        self.summary = None

    def snapshot(self) -> list[Block]:
        """
        Return the cached blocks newest first.

        Novelty is evaluated against the clock as well, so a late timer
        never lets an expired block appear new.
        """
        now = self._clock()
        return [
            replace(block, is_new=False) if block.is_new and self._expired(block, now) else block
            for block in self._blocks
        ]

    def expire_novelty(self, block_hash: str) -> None:
        """Clear ``is_new`` for one block. No-op if it was evicted."""
        self._timers.pop(block_hash, None)
        for index, block in enumerate(self._blocks):
            if block.hash == block_hash:
                if block.is_new:
                    self._blocks[index] = replace(block, is_new=False)
                return

    def _expired(self, block: Block, now: int) -> bool:
        return block.received_at is not None and now >= block.received_at + self.novelty_ms

    def _schedule_expiry(self, block: Block) -> None:
        received_at = block.received_at if block.received_at is not None else self._clock()
        delay = max(0.0, (received_at + self.novelty_ms - self._clock()) / 1000)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: snapshot() still applies the expiry rule
            return
        self._timers[block.hash] = loop.call_later(delay, self.expire_novelty, block.hash)

    def _cancel_timer(self, block_hash: str) -> None:
        if (handle := self._timers.pop(block_hash, None)) is not None:
            handle.cancel()

    def _cancel_all_timers(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
