#!/usr/bin/env python3
"""Data models for the GLIN explorer engine.

This module provides immutable data classes for the chain entities the
engine fetches, caches and returns to its consumers.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal


@dataclass(frozen=True, slots=True)
class ChainInfo:
    """Static chain metadata read once per connection.

    Attributes:
        name: Runtime chain name (e.g. 'GLIN Testnet')
        token_symbol: Native token symbol
        token_decimals: Number of decimals of the native token
        ss58_format: Address format identifier
    """

    name: str
    token_symbol: str = "tGLIN"
    token_decimals: int = 18
    ss58_format: int = 42

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Extrinsic:
    """A single call included in a block.

    Attributes:
        hash: Extrinsic hash (with 0x prefix)
        section: Pallet name (e.g. 'Timestamp')
        method: Call name (e.g. 'set')
        args: Call arguments, string encoded
        signer: Signer address, None for unsigned inherents
    """

    hash: str
    section: str
    method: str
    args: tuple[str, ...] = ()
    signer: str | None = None

    def is_call(self, section: str, method: str) -> bool:
        """Check the pallet and call name, ignoring case."""
        return (
            self.section.lower() == section.lower()
            and self.method.lower() == method.lower()
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "hash": self.hash,
            "section": self.section,
            "method": self.method,
            "args": list(self.args),
            "signer": self.signer
        }


@dataclass(frozen=True, slots=True)
class Block:
    """A full block as seen by the explorer.

    The chain-derived fields never change once the block is fetched.
    ``is_new`` and ``received_at`` are client-side bookkeeping updated
    through ``dataclasses.replace`` by the ingestion pipeline and cache.

    Attributes:
        number: Block height
        hash: Block hash (with 0x prefix)
        parent_hash: Hash of the parent block
        state_root: State trie root
        extrinsics_root: Extrinsics trie root
        extrinsics: Extrinsics in block order
        timestamp: Milliseconds since epoch from the timestamp inherent, if found
        is_new: True while the block is freshly delivered by the live stream
        received_at: Client wall clock (ms) at live delivery
    """

    number: int
    hash: str
    parent_hash: str
    state_root: str
    extrinsics_root: str
    extrinsics: tuple[Extrinsic, ...] = ()
    timestamp: int | None = None
    is_new: bool = False
    received_at: int | None = None

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"Block(number={self.number}, "
            f"hash={self.hash[:10]}..., "
            f"extrinsics={len(self.extrinsics)})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "number": self.number,
            "hash": self.hash,
            "parent_hash": self.parent_hash,
            "state_root": self.state_root,
            "extrinsics_root": self.extrinsics_root,
            "extrinsics": [ext.to_dict() for ext in self.extrinsics],
            "timestamp": self.timestamp,
            "is_new": self.is_new,
            "received_at": self.received_at
        }


@dataclass(frozen=True, slots=True)
class Event:
    """A runtime event emitted while applying a block."""

    section: str
    method: str
    data: Any = None
    extrinsic_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "section": self.section,
            "method": self.method,
            "data": self.data,
            "extrinsic_index": self.extrinsic_index
        }


@dataclass(frozen=True, slots=True)
class Transaction:
    """An extrinsic together with the events it produced."""

    hash: str
    block_number: int
    block_hash: str
    index: int
    section: str
    method: str
    args: tuple[str, ...]
    signer: str | None
    success: bool
    events: tuple[Event, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "hash": self.hash,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "index": self.index,
            "section": self.section,
            "method": self.method,
            "args": list(self.args),
            "signer": self.signer,
            "success": self.success,
            "events": [event.to_dict() for event in self.events]
        }


@dataclass(frozen=True, slots=True)
class AccountBalance:
    """Balance triple, decimal strings since values exceed 64 bits."""

    free: str = "0"
    reserved: str = "0"
    frozen: str = "0"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass(frozen=True, slots=True)
class Account:
    """Account state from ``System.Account``."""

    address: str
    nonce: int = 0
    balance: AccountBalance = field(default_factory=AccountBalance)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "address": self.address,
            "nonce": self.nonce,
            "balance": self.balance.to_dict()
        }


@dataclass(frozen=True, slots=True)
class Task:
    """A compute task from the TaskRegistry pallet."""

    id: str
    creator: str
    bounty: str
    status: str
    model_type: str = "Unknown"
    providers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "creator": self.creator,
            "bounty": self.bounty,
            "status": self.status,
            "model_type": self.model_type,
            "providers": list(self.providers)
        }


@dataclass(frozen=True, slots=True)
class ProviderStake:
    """A compute provider from the ProviderStaking pallet."""

    address: str
    stake: str
    reputation: int = 0
    tasks_completed: int = 0
    is_active: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass(frozen=True, slots=True)
class TestnetPoints:
    """Testnet incentive points for an address."""

    __test__ = False

    address: str
    points: int = 0
    last_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass(frozen=True, slots=True)
class NetworkSummary:
    """Lightweight view of the network tip.

    Kept by the block cache so consumers that only need the head
    do not scan the full block list.
    """

    chain: str
    node_name: str
    node_version: str
    block_number: int
    block_hash: str
    validator_count: int = 0
    validators: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chain": self.chain,
            "node_name": self.node_name,
            "node_version": self.node_version,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "validator_count": self.validator_count,
            "validators": list(self.validators)
        }


SearchKind = Literal["block", "account", "task"]


@dataclass(frozen=True, slots=True)
class SearchResult:
    """Single best match returned by the search dispatcher."""

    kind: SearchKind
    data: Block | Account | Task

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"type": self.kind, "data": self.data.to_dict()}


# Enrichment records served by the GLIN backend API

@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    address: str
    points: int
    rank: int
    activities: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class UserPoints:
    address: str
    points: int
    rank: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class FaucetStats:
    total_claims: int
    total_distributed: str
    unique_users: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class TaskDetails:
    """On-chain task merged with backend-only descriptive fields."""

    task: Task
    description: str | None = None
    created_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            **self.task.to_dict(),
            "description": self.description,
            "created_at": self.created_at
        }


@dataclass(frozen=True, slots=True)
class ProviderDetails:
    """On-chain provider stake merged with backend hardware info."""

    provider: ProviderStake
    gpu_specs: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {**self.provider.to_dict(), "gpu_specs": self.gpu_specs}
