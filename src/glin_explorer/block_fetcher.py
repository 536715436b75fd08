#!/usr/bin/env python3
"""Block fetching for the GLIN explorer.

This module resolves block heights or hashes to full blocks, decodes their
extrinsics into immutable models and derives the block timestamp from the
timestamp inherent.
"""

import hashlib
import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from substrateinterface.exceptions import SubstrateRequestException

from .errors import BlockNotFoundError, ExplorerError, MalformedBlockError
from .models import Block, Extrinsic
from .node_connection import NodeConnection

logger = logging.getLogger(__name__)

TIMESTAMP_SECTION = "timestamp"
TIMESTAMP_METHOD = "set"

_DIGITS = re.compile(r"[0-9]+")


def _scale_value(obj: Any) -> Any:
    """Unwrap a decoded ScaleType to its plain ``value``."""
    return getattr(obj, "value", obj)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Expected integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"Expected integer, got {value!r}")


def encode_arg(value: Any) -> str:
    """String-encode a decoded call argument."""
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return json.dumps(value, separators=(",", ":"), default=str)


def _extrinsic_hash(raw: Any) -> str:
    """Hash an extrinsic whose decoder did not provide one (blake2-256 of its encoding)."""
    data = getattr(getattr(raw, "data", None), "data", None)
    if isinstance(data, (bytes, bytearray)):
        return "0x" + hashlib.blake2b(bytes(data), digest_size=32).hexdigest()
    return ""


def _signer_address(address: Any) -> str | None:
    # MultiAddress values decode as {"Id": "5F..."} on some runtimes
    if isinstance(address, Mapping):
        address = next(iter(address.values()), None)
    return str(address) if address else None


def parse_extrinsic(raw: Any) -> Extrinsic:
    """
    Parse a decoded extrinsic into an Extrinsic model.

    Args:
        raw: GenericExtrinsic from py-substrate-interface or its ``value`` dict

    Returns:
        Parsed Extrinsic

    Raises:
        MalformedBlockError: If the call section or method is missing
    """
    value = _scale_value(raw)
    if not isinstance(value, Mapping):
        raise MalformedBlockError(f"Extrinsic is not a mapping: {value!r}")

    call = value.get("call")
    if not isinstance(call, Mapping):
        raise MalformedBlockError("Extrinsic has no call")

    section = call.get("call_module")
    method = call.get("call_function")
    if not isinstance(section, str) or not isinstance(method, str):
        raise MalformedBlockError(f"Extrinsic call is missing module or function: {call!r}")

    call_args = call.get("call_args") or []
    args = tuple(
        encode_arg(arg.get("value") if isinstance(arg, Mapping) else arg)
        for arg in call_args
    )

    return Extrinsic(
        hash=value.get("extrinsic_hash") or _extrinsic_hash(raw),
        section=section,
        method=method,
        args=args,
        signer=_signer_address(value.get("address"))
    )


def derive_timestamp(extrinsics: tuple[Extrinsic, ...]) -> int | None:
    """
    Find the block time set by the ``Timestamp.set`` inherent.

    Returns:
        Milliseconds since epoch, or None when the inherent is absent
        or its argument is not a number
    """
    for extrinsic in extrinsics:
        if not extrinsic.is_call(TIMESTAMP_SECTION, TIMESTAMP_METHOD):
            continue
        if len(extrinsic.args) != 1:
            logger.warning(f"Timestamp inherent has {len(extrinsic.args)} arguments, expected 1")
            return None
        try:
            return int(extrinsic.args[0])
        except ValueError:
            logger.warning(f"Unparsable timestamp argument: {extrinsic.args[0]!r}")
            return None
    return None


def build_block(raw: Mapping[str, Any], block_hash: str) -> Block:
    """
    Build a Block model from a decoded ``chain_getBlock`` result.

    Args:
        raw: Dict with ``header`` and ``extrinsics`` as returned by get_block
        block_hash: Hash the block was requested by

    Raises:
        MalformedBlockError: If the header or any extrinsic cannot be decoded
    """
    try:
        header = raw["header"]
        extrinsics = tuple(parse_extrinsic(ext) for ext in raw.get("extrinsics") or [])
        return Block(
            number=_as_int(header["number"]),
            hash=block_hash,
            parent_hash=str(header["parentHash"]),
            state_root=str(header["stateRoot"]),
            extrinsics_root=str(header["extrinsicsRoot"]),
            extrinsics=extrinsics,
            timestamp=derive_timestamp(extrinsics)
        )
    except MalformedBlockError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedBlockError(f"Cannot decode block {block_hash}: {e}") from e


class BlockFetcher:
    """Fetches full blocks by height or hash through a NodeConnection."""

    def __init__(self, node: NodeConnection) -> None:
        """
        Initialize the BlockFetcher.

        Args:
            node: Connected node session used for all RPC calls
        """
        self.node = node

    async def _resolve_hash(self, id_or_height: int | str) -> str:
        """Turn a height (int or all-digit string) into a block hash."""
        if isinstance(id_or_height, str) and not _DIGITS.fullmatch(id_or_height):
            return id_or_height

        height = int(id_or_height)
        if height < 0:
            raise BlockNotFoundError(height)

        try:
            block_hash = await self.node.call(lambda substrate: substrate.get_block_hash(height))
        except SubstrateRequestException as e:
            raise BlockNotFoundError(height) from e

        if not block_hash:
            raise BlockNotFoundError(height)
        return block_hash

    async def fetch_block(self, id_or_height: int | str) -> Block:
        """
        Fetch a full block by height or hash.

        Args:
            id_or_height: Block number, or block hash with 0x prefix

        Returns:
            The decoded Block

        Raises:
            NotConnectedError: If the node session is closed
            BlockNotFoundError: If the node has no such block
            MalformedBlockError: If the block cannot be decoded
        """
        block_hash = await self._resolve_hash(id_or_height)
        logger.debug(f"Fetching block {id_or_height} ({block_hash})")

        try:
            raw = await self.node.call(lambda substrate: substrate.get_block(block_hash=block_hash))
        except ExplorerError:
            raise
        except SubstrateRequestException as e:
            raise BlockNotFoundError(id_or_height) from e
        except Exception as e:
            raise MalformedBlockError(f"Cannot decode block {id_or_height}: {e}") from e

        if not raw:
            raise BlockNotFoundError(id_or_height)

        return build_block(raw, block_hash)

    async def fetch_latest_blocks(self, count: int = 15) -> list[Block]:
        """
        Fetch up to ``count`` blocks walking down from the chain head.

        Blocks that cannot be fetched are skipped.

        Returns:
            Blocks newest first
        """
        head_hash = await self.node.call(lambda substrate: substrate.get_chain_head())
        head = await self.fetch_block(head_hash)

        blocks = [head]
        for number in range(head.number - 1, max(head.number - count, -1), -1):
            try:
                blocks.append(await self.fetch_block(number))
            except (BlockNotFoundError, MalformedBlockError) as e:
                logger.warning(f"Skipping block {number}: {e}")

        logger.info(f"Loaded {len(blocks)} latest blocks (head #{head.number})")
        return blocks
