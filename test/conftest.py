"""Shared fixtures: an in-memory chain standing in for a Substrate node."""

from types import SimpleNamespace
from typing import Any

import pytest
from substrateinterface.exceptions import SubstrateRequestException

from glin_explorer.errors import NotConnectedError
from glin_explorer.models import Block, ChainInfo

GENESIS_TIME_MS = 1_700_000_000_000
BLOCK_TIME_MS = 6_000


def block_hash(number: int, fork: str = "") -> str:
    seed = f"{fork}{number}".encode().hex()
    return "0x" + seed.rjust(64, "0")[-64:]


def raw_block(number: int, fork: str = "", extra_extrinsics: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    """A decoded ``chain_getBlock`` result with a timestamp inherent."""
    extrinsics = [{
        "extrinsic_hash": f"0x{number:064x}",
        "call": {
            "call_module": "Timestamp",
            "call_function": "set",
            "call_args": [{"name": "now", "type": "Moment", "value": GENESIS_TIME_MS + number * BLOCK_TIME_MS}]
        }
    }]
    extrinsics.extend(extra_extrinsics or [])
    return {
        "header": {
            "number": number,
            "parentHash": block_hash(number - 1) if number > 0 else "0x" + "0" * 64,
            "stateRoot": f"0xstate{number}",
            "extrinsicsRoot": f"0xroot{number}"
        },
        "extrinsics": extrinsics
    }


class FakeSubstrate:
    """The slice of SubstrateInterface the engine uses, backed by dicts."""

    def __init__(self, head: int = 20) -> None:
        self.blocks: dict[str, dict[str, Any]] = {}
        self.canonical: dict[int, str] = {}
        self.storage: dict[tuple[str, str, str], Any] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.closed = False
        for number in range(head + 1):
            self.add_block(number)

    def add_block(self, number: int, fork: str = "", extra_extrinsics=None) -> str:
        hash_ = block_hash(number, fork)
        self.blocks[hash_] = raw_block(number, fork, extra_extrinsics)
        self.canonical[number] = hash_
        return hash_

    @property
    def head(self) -> int:
        return max(self.canonical)

    def get_block_hash(self, block_id: int) -> str | None:
        return self.canonical.get(block_id)

    def get_chain_head(self) -> str:
        return self.canonical[self.head]

    def get_block_number(self, block_hash: str) -> int:
        return self.blocks[block_hash]["header"]["number"]

    def get_block(self, block_hash: str | None = None) -> dict[str, Any] | None:
        if block_hash is not None and not block_hash.startswith("0x"):
            raise SubstrateRequestException(f"Invalid block hash {block_hash}")
        return self.blocks.get(block_hash)

    def query(self, module: str, storage_function: str, params: list[Any] | None = None) -> SimpleNamespace:
        key = str(params[0]) if params else ""
        return SimpleNamespace(value=self.storage.get((module, storage_function, key)))

    def query_map(self, module: str, storage_function: str, page_size: int = 100):
        for (stored_module, function, key), value in self.storage.items():
            if (stored_module, function) == (module, storage_function):
                yield SimpleNamespace(value=key), SimpleNamespace(value=value)

    def get_events(self, block_hash: str | None = None) -> list[dict[str, Any]]:
        return self.events.get(block_hash, [])

    def rpc_request(self, method: str, params: list[Any]) -> dict[str, Any]:
        results = {"system_name": "glin-node", "system_version": "0.1.0"}
        return {"jsonrpc": "2.0", "id": 1, "result": results.get(method)}

    def close(self) -> None:
        self.closed = True


class FakeNode:
    """In-process stand-in for NodeConnection."""

    def __init__(self, substrate: FakeSubstrate) -> None:
        self.substrate = substrate
        self.url = "ws://127.0.0.1:9944"
        self.is_connected = True
        self.chain_info = ChainInfo(name="GLIN Testnet")

    async def call(self, fn):
        if not self.is_connected:
            raise NotConnectedError()
        return fn(self.substrate)

    async def rpc_request(self, method: str, params: list[Any] | None = None) -> Any:
        response = await self.call(lambda substrate: substrate.rpc_request(method, params or []))
        return response.get("result")

    async def connect(self) -> None:
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False

    async def reconnect(self) -> None:
        await self.disconnect()
        await self.connect()


@pytest.fixture
def substrate():
    return FakeSubstrate(head=20)


@pytest.fixture
def node(substrate):
    return FakeNode(substrate)


def make_block(number: int, fork: str = "", is_new: bool = False, received_at: int | None = None) -> Block:
    return Block(
        number=number,
        hash=block_hash(number, fork),
        parent_hash=block_hash(number - 1),
        state_root=f"0xstate{number}",
        extrinsics_root=f"0xroot{number}",
        is_new=is_new,
        received_at=received_at
    )
