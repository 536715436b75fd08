#!/usr/bin/env python3
"""Tests for the search dispatcher."""

from unittest.mock import AsyncMock

import pytest

from conftest import block_hash
from glin_explorer.block_fetcher import BlockFetcher
from glin_explorer.entity_lookup import EntityLookup
from glin_explorer.errors import NotConnectedError
from glin_explorer.search import SearchDispatcher

ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"

TASK = {"creator": ALICE, "bounty": 1, "status": "Open", "providers": []}


@pytest.fixture
def dispatcher(node):
    fetcher = BlockFetcher(node)
    return SearchDispatcher(node, fetcher, EntityLookup(node, fetcher))


class TestSearchDispatcher:
    """Tests for query classification and priority."""

    @pytest.mark.asyncio
    async def test_height_wins_over_task(self, dispatcher, substrate):
        substrate.storage[("TaskRegistry", "Tasks", "12")] = TASK

        result = await dispatcher.search("12")

        assert result.kind == "block"
        assert result.data.number == 12

    @pytest.mark.asyncio
    async def test_digits_without_block_fall_through_to_task(self, dispatcher, substrate):
        substrate.storage[("TaskRegistry", "Tasks", "12345")] = TASK

        result = await dispatcher.search("12345")

        assert result.kind == "task"
        assert result.data.id == "12345"

    @pytest.mark.asyncio
    async def test_block_hash(self, dispatcher):
        result = await dispatcher.search(block_hash(3))
        assert result.kind == "block"
        assert result.data.number == 3

    @pytest.mark.asyncio
    async def test_unknown_block_hash_is_none(self, dispatcher, substrate):
        substrate.storage[("TaskRegistry", "Tasks", "0x" + "a" * 64)] = TASK

        assert await dispatcher.search("0x" + "a" * 64) is None

    @pytest.mark.asyncio
    async def test_address_without_record_is_zero_account(self, dispatcher):
        result = await dispatcher.search(ALICE)

        assert result.kind == "account"
        assert result.data.nonce == 0
        assert result.data.balance.free == "0"
        assert result.to_dict()["type"] == "account"

    @pytest.mark.asyncio
    async def test_task_id(self, dispatcher, substrate):
        substrate.storage[("TaskRegistry", "Tasks", "task-abc")] = TASK
        result = await dispatcher.search("  task-abc  ")
        assert result.kind == "task"

    @pytest.mark.asyncio
    async def test_no_match(self, dispatcher):
        assert await dispatcher.search("nothing-here") is None

    @pytest.mark.asyncio
    async def test_empty_query(self, dispatcher):
        assert await dispatcher.search("   ") is None

    @pytest.mark.asyncio
    async def test_lookup_error_counts_as_no_match(self, dispatcher):
        dispatcher.lookup.get_account_info = AsyncMock(side_effect=ValueError("bad key"))

        result = await dispatcher.search("x" * 47)

        assert result is None

    @pytest.mark.asyncio
    async def test_disconnected(self, dispatcher, node):
        node.is_connected = False
        with pytest.raises(NotConnectedError):
            await dispatcher.search("12")
