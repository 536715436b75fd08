"""Search dispatch for the GLIN explorer.

Classifies a free-form query and routes it to the matching lookup. Rules are
tried in a fixed order and the first hit wins:

1. all digits            -> block height
2. ``0x`` + 64 hex chars -> block hash (never reinterpreted)
3. 47-48 characters      -> account address
4. anything else         -> task id
"""

import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from substrateinterface.exceptions import SubstrateRequestException

from .block_fetcher import BlockFetcher
from .entity_lookup import EntityLookup
from .errors import ExplorerError, NotConnectedError
from .models import SearchResult
from .node_connection import NodeConnection

logger = logging.getLogger(__name__)

BLOCK_HASH_LENGTH = 66
ADDRESS_LENGTHS = range(47, 49)

_DIGITS = re.compile(r"[0-9]+")

_SEARCH_FAULTS = (ExplorerError, SubstrateRequestException, ValueError, TypeError, KeyError)


class SearchDispatcher:
    """Routes search queries to block, account or task lookups."""

    def __init__(self, node: NodeConnection, fetcher: BlockFetcher, lookup: EntityLookup) -> None:
        self.node = node
        self.fetcher = fetcher
        self.lookup = lookup

    async def _attempt(self, rule: str, lookup: Callable[[], Awaitable[Any]]) -> Any:
        """Run one interpretation; any failure counts as no match."""
        try:
            return await lookup()
        except NotConnectedError:
            raise
        except _SEARCH_FAULTS as e:
            logger.debug(f"Search as {rule} found nothing: {e}")
            return None

    async def search(self, query: str) -> SearchResult | None:
        """
        Find the single best match for a query.

        Args:
            query: Raw user input

        Returns:
            SearchResult for the first rule that matches, or None

        Raises:
            NotConnectedError: If the node session is closed
        """
        if not self.node.is_connected:
            raise NotConnectedError()

        query = query.strip()
        if not query:
            return None

        if _DIGITS.fullmatch(query):
            block = await self._attempt("block height", lambda: self.fetcher.fetch_block(int(query)))
            if block:
                return SearchResult(kind="block", data=block)

        if query.startswith("0x") and len(query) == BLOCK_HASH_LENGTH:
            block = await self._attempt("block hash", lambda: self.fetcher.fetch_block(query))
            return SearchResult(kind="block", data=block) if block else None

        if len(query) in ADDRESS_LENGTHS:
            account = await self._attempt("account", lambda: self.lookup.get_account_info(query))
            if account:
                return SearchResult(kind="account", data=account)

        task = await self._attempt("task id", lambda: self.lookup.get_task(query))
        if task:
            return SearchResult(kind="task", data=task)

        logger.debug(f"No match for search query {query!r}")
        return None
