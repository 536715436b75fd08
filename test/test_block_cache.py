#!/usr/bin/env python3
"""Tests for the recent-block cache."""

import asyncio
from dataclasses import replace

import pytest

from conftest import block_hash, make_block
from glin_explorer.block_cache import RecentBlockCache
from glin_explorer.models import NetworkSummary


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return RecentBlockCache(capacity=15, novelty_seconds=10.0, clock=clock)


def numbers(blocks):
    return [block.number for block in blocks]


class TestRecentBlockCache:
    """Tests for RecentBlockCache ordering, bounds and novelty."""

    def test_replace_all_caps_and_dedupes(self, cache):
        blocks = [make_block(n) for n in range(30, 10, -1)]
        cache.replace_all([blocks[0], blocks[0], *blocks[1:]])

        assert len(cache) == 15
        assert numbers(cache.snapshot()) == list(range(30, 15, -1))

    def test_new_block_evicts_oldest(self, cache, clock):
        """986-1000 cached, 1001 arrives: 987-1001 remain, 1001 is new."""
        cache.replace_all(make_block(n) for n in range(1000, 985, -1))

        cache.insert(make_block(1001, is_new=True, received_at=clock.now))

        snapshot = cache.snapshot()
        assert numbers(snapshot) == list(range(1001, 986, -1))
        assert snapshot[0].is_new
        assert not any(block.is_new for block in snapshot[1:])
        assert block_hash(986) not in cache

    def test_never_exceeds_capacity(self, cache, clock):
        for number in range(100):
            cache.insert(make_block(number, is_new=True, received_at=clock.now))
            assert len(cache) <= 15

    def test_reinsert_same_hash_replaces_entry(self, cache, clock):
        cache.insert(make_block(5))
        cache.insert(make_block(6))
        cache.insert(make_block(5, is_new=True, received_at=clock.now))

        snapshot = cache.snapshot()
        assert numbers(snapshot) == [5, 6]
        assert snapshot[0].is_new
        hashes = [block.hash for block in snapshot]
        assert len(hashes) == len(set(hashes))

    def test_fork_block_with_same_number_kept_by_hash(self, cache):
        cache.insert(make_block(7))
        cache.insert(make_block(7, fork="b"))

        assert numbers(cache.snapshot()) == [7, 7]

    def test_late_block_lands_at_front(self, cache):
        """Eviction follows insertion position, not block number."""
        cache.insert(make_block(10))
        cache.insert(make_block(9))

        assert numbers(cache.snapshot()) == [9, 10]
        assert cache.latest.number == 9

    def test_novelty_expires_on_clock(self, cache, clock):
        cache.insert(make_block(1, is_new=True, received_at=clock.now))

        clock.now += 9_999
        assert cache.snapshot()[0].is_new

        clock.now += 1
        assert not cache.snapshot()[0].is_new

    def test_expire_novelty(self, cache, clock):
        cache.insert(make_block(1, is_new=True, received_at=clock.now))
        cache.insert(make_block(2, is_new=True, received_at=clock.now))

        cache.expire_novelty(block_hash(1))

        snapshot = cache.snapshot()
        assert snapshot[0].is_new
        assert not snapshot[1].is_new

    def test_expire_after_eviction_is_noop(self, clock):
        cache = RecentBlockCache(capacity=2, clock=clock)
        for number in (1, 2, 3):
            cache.insert(make_block(number, is_new=True, received_at=clock.now))

        cache.expire_novelty(block_hash(1))

        snapshot = cache.snapshot()
        assert numbers(snapshot) == [3, 2]
        assert all(block.is_new for block in snapshot)

    def test_summary_mirrors_latest_block(self, cache):
        cache.set_summary(NetworkSummary(
            chain="GLIN Testnet",
            node_name="glin-node",
            node_version="0.1.0",
            block_number=10,
            block_hash=block_hash(10)
        ))

        cache.insert(make_block(11))

        assert cache.summary.block_number == 11
        assert cache.summary.block_hash == block_hash(11)
        assert cache.summary.node_name == "glin-node"

    def test_insert_without_summary_starts_bare_one(self, cache):
        cache.chain_name = "GLIN Testnet"

        cache.insert(make_block(11))

        assert cache.summary == NetworkSummary(
            chain="GLIN Testnet",
            node_name="",
            node_version="",
            block_number=11,
            block_hash=block_hash(11)
        )

    def test_replace_all_mirrors_tip(self, cache):
        cache.replace_all([make_block(number) for number in (10, 9, 8)])

        assert cache.summary.chain == "Unknown"
        assert cache.summary.block_number == 10

        cache.insert(make_block(11))
        assert cache.summary.block_number == 11

    def test_clear(self, cache, clock):
        cache.set_summary(NetworkSummary("c", "n", "v", 1, block_hash(1)))
        cache.insert(make_block(1, is_new=True, received_at=clock.now))

        cache.clear()

        assert cache.snapshot() == []
        assert cache.summary is None
        assert cache.latest is None


class TestNoveltyTimers:
    """Novelty timers running on the event loop."""

    @pytest.mark.asyncio
    async def test_timer_clears_flag(self):
        cache = RecentBlockCache(capacity=15, novelty_seconds=0.05)
        block = make_block(1)
        cache.insert(replace(block, is_new=True, received_at=cache._clock()))

        assert cache._blocks[0].is_new
        await asyncio.sleep(0.15)

        assert not cache._blocks[0].is_new
        assert cache._timers == {}

    @pytest.mark.asyncio
    async def test_clear_cancels_timers(self):
        cache = RecentBlockCache(capacity=15, novelty_seconds=0.05)
        cache.insert(make_block(1, is_new=True, received_at=cache._clock()))

        cache.clear()
        await asyncio.sleep(0.1)

        assert cache._timers == {}
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_eviction_cancels_timer(self):
        cache = RecentBlockCache(capacity=1, novelty_seconds=10)
        cache.insert(make_block(1, is_new=True, received_at=cache._clock()))
        cache.insert(make_block(2, is_new=True, received_at=cache._clock()))

        assert list(cache._timers) == [block_hash(2)]
