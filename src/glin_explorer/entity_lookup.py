#!/usr/bin/env python3
"""Pallet storage lookups for the GLIN explorer.

Each lookup is one storage read (or one table scan) through the node
connection. Stored values are decoded with explicit shape checks; a record
that does not match is logged and treated as absent so one malformed entry
never breaks a page.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from substrateinterface.exceptions import SubstrateRequestException

from .block_fetcher import BlockFetcher
from .errors import BlockNotFoundError, MalformedBlockError, StorageDecodeError
from .models import (
    Account,
    AccountBalance,
    Event,
    ProviderStake,
    Task,
    TestnetPoints,
    Transaction,
)
from .node_connection import NodeConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that mean "no usable record" rather than a broken connection.
# py-substrate-interface reports bad storage keys and SCALE decode problems
# as ValueError subclasses.
LOOKUP_FAULTS = (StorageDecodeError, SubstrateRequestException, ValueError, TypeError, KeyError)


def _value(obj: Any) -> Any:
    """Unwrap a decoded ScaleType to its plain ``value``."""
    return getattr(obj, "value", obj)


def _require_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise StorageDecodeError(f"{what}: expected a struct, got {type(value).__name__}")
    return value


def _pick(value: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    """First present field among snake_case / camelCase spellings."""
    for name in names:
        if name in value and value[name] is not None:
            return value[name]
    return default


def _as_uint(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise StorageDecodeError(f"{what}: expected an unsigned integer, got {value!r}")
    try:
        if isinstance(value, int):
            number = value
        elif isinstance(value, str):
            number = int(value, 16) if value.startswith("0x") else int(value)
        else:
            raise StorageDecodeError(f"{what}: expected an unsigned integer, got {value!r}")
    except ValueError as e:
        raise StorageDecodeError(f"{what}: {e}") from e
    if number < 0:
        raise StorageDecodeError(f"{what}: negative value {number}")
    return number


def _as_decimal(value: Any, what: str) -> str:
    """Balance-like values as decimal strings (u128 does not fit JSON numbers)."""
    return str(_as_uint(value, what))


def _as_bool(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise StorageDecodeError(f"{what}: expected a bool, got {value!r}")
    return value


def _as_address(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise StorageDecodeError(f"{what}: expected an address, got {value!r}")
    return value


def _enum_name(value: Any, what: str) -> str:
    # Unit enum variants decode as "Open"; variants with data as {"Open": {...}}
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping) and len(value) == 1:
        return str(next(iter(value)))
    raise StorageDecodeError(f"{what}: expected an enum, got {value!r}")


def decode_account(address: str, value: Any) -> Account:
    """
    Decode ``System.Account``.

    A missing record and an empty account are the same thing on chain,
    so None decodes to a zero account.
    """
    if value is None:
        return Account(address=address)

    value = _require_mapping(value, "System.Account")
    data = _require_mapping(value.get("data") or {}, "System.Account.data")

    return Account(
        address=address,
        nonce=_as_uint(value.get("nonce", 0), "nonce"),
        balance=AccountBalance(
            free=_as_decimal(data.get("free", 0), "free"),
            reserved=_as_decimal(data.get("reserved", 0), "reserved"),
            frozen=_as_decimal(_pick(data, "frozen", "misc_frozen", default=0), "frozen")
        )
    )


def decode_task(task_id: str, value: Any) -> Task | None:
    """Decode a ``TaskRegistry.Tasks`` entry."""
    if value is None:
        return None

    value = _require_mapping(value, "TaskRegistry.Tasks")
    providers = _pick(value, "providers", default=[])
    if not isinstance(providers, (list, tuple)):
        raise StorageDecodeError(f"providers: expected a list, got {providers!r}")

    model_type = _pick(value, "model_type", "modelType", default="Unknown")

    return Task(
        id=task_id,
        creator=_as_address(value.get("creator"), "creator"),
        bounty=_as_decimal(value.get("bounty"), "bounty"),
        status=_enum_name(value.get("status"), "status"),
        model_type=_enum_name(model_type, "model_type"),
        providers=tuple(_as_address(provider, "provider") for provider in providers)
    )


def decode_provider(address: str, value: Any) -> ProviderStake | None:
    """Decode a ``ProviderStaking.Providers`` entry."""
    if value is None:
        return None

    value = _require_mapping(value, "ProviderStaking.Providers")
    return ProviderStake(
        address=address,
        stake=_as_decimal(value.get("stake"), "stake"),
        reputation=_as_uint(_pick(value, "reputation", "reputation_score", default=0), "reputation"),
        tasks_completed=_as_uint(
            _pick(value, "tasks_completed", "tasksCompleted", default=0), "tasks_completed"
        ),
        is_active=_as_bool(_pick(value, "is_active", "isActive", default=False), "is_active")
    )


def decode_points(address: str, value: Any) -> TestnetPoints | None:
    """Decode a ``TestnetPoints.Points`` entry (a struct or a bare number)."""
    if value is None:
        return None
    if not isinstance(value, Mapping):
        return TestnetPoints(address=address, points=_as_uint(value, "points"))

    return TestnetPoints(
        address=address,
        points=_as_uint(_pick(value, "points", "total", default=0), "points"),
        last_updated=_as_uint(_pick(value, "last_updated", "lastUpdated", default=0), "last_updated")
    )


def decode_validators(value: Any) -> list[str]:
    """Decode ``Aura.Authorities`` into a list of addresses."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise StorageDecodeError(f"Aura.Authorities: expected a list, got {value!r}")
    return [_as_address(authority, "authority") for authority in value]


def decode_event(record: Any) -> Event:
    """Decode one ``System.Events`` record."""
    value = _require_mapping(_value(record), "System.Events")
    event = value.get("event") if isinstance(value.get("event"), Mapping) else value

    section = event.get("module_id")
    method = event.get("event_id")
    if not isinstance(section, str) or not isinstance(method, str):
        raise StorageDecodeError(f"Event record without module or event id: {value!r}")

    extrinsic_index = value.get("extrinsic_idx")
    return Event(
        section=section,
        method=method,
        data=event.get("attributes"),
        extrinsic_index=extrinsic_index if isinstance(extrinsic_index, int) else None
    )


class EntityLookup:
    """Point queries and table scans over the chain's pallets."""

    def __init__(self, node: NodeConnection, fetcher: BlockFetcher) -> None:
        """
        Initialize the EntityLookup.

        Args:
            node: Connected node session
            fetcher: Block fetcher used for transaction detail
        """
        self.node = node
        self.fetcher = fetcher

    async def _query(self, module: str, storage_function: str, params: list[Any] | None = None) -> Any:
        result = await self.node.call(
            lambda substrate: substrate.query(module, storage_function, params or [])
        )
        return _value(result)

    async def _query_map(self, module: str, storage_function: str) -> list[tuple[Any, Any]]:
        # query_map pages lazily over RPC, so the whole scan runs on the worker thread
        entries = await self.node.call(
            lambda substrate: [
                (_value(key), _value(value))
                for key, value in substrate.query_map(module, storage_function, page_size=100)
            ]
        )
        return entries

    async def _point(self, what: str, read: Callable[[], Any], decode: Callable[[Any], T]) -> T | None:
        """Run a point read; lookup faults are logged and become None."""
        try:
            return decode(await read())
        except LOOKUP_FAULTS as e:
            logger.warning(f"Failed to fetch {what}: {e}")
            return None

    async def _scan(self, what: str, module: str, storage_function: str, decode: Callable[[str, Any], T | None]) -> list[T]:
        """Run a table scan; malformed rows are skipped."""
        try:
            entries = await self._query_map(module, storage_function)
        except LOOKUP_FAULTS as e:
            logger.warning(f"Failed to fetch {what}: {e}")
            return []

        records: list[T] = []
        skipped = 0
        for key, value in entries:
            try:
                record = decode(str(key), value)
            except StorageDecodeError as e:
                skipped += 1
                logger.warning(f"Skipping malformed {what} entry {key}: {e}")
                continue
            if record is not None:
                records.append(record)

        logger.debug(f"Fetched {len(records)} {what} ({skipped} skipped)")
        return records

    async def get_account_info(self, address: str) -> Account | None:
        """Account nonce and balances; None if the address cannot be read."""
        return await self._point(
            f"account {address}",
            lambda: self._query("System", "Account", [address]),
            lambda value: decode_account(address, value)
        )

    async def get_account_balance(self, address: str) -> AccountBalance | None:
        account = await self.get_account_info(address)
        return account.balance if account else None

    async def get_task(self, task_id: str) -> Task | None:
        return await self._point(
            f"task {task_id}",
            lambda: self._query("TaskRegistry", "Tasks", [task_id]),
            lambda value: decode_task(task_id, value)
        )

    async def get_all_tasks(self) -> list[Task]:
        return await self._scan("tasks", "TaskRegistry", "Tasks", decode_task)

    async def get_provider_stake(self, address: str) -> ProviderStake | None:
        return await self._point(
            f"provider {address}",
            lambda: self._query("ProviderStaking", "Providers", [address]),
            lambda value: decode_provider(address, value)
        )

    async def get_all_providers(self) -> list[ProviderStake]:
        return await self._scan("providers", "ProviderStaking", "Providers", decode_provider)

    async def get_validators(self) -> list[str]:
        """Current Aura authority set (GLIN uses Aura rather than Session)."""
        validators = await self._point(
            "validators",
            lambda: self._query("Aura", "Authorities"),
            decode_validators
        )
        return validators or []

    async def get_testnet_points(self, address: str) -> TestnetPoints | None:
        return await self._point(
            f"testnet points for {address}",
            lambda: self._query("TestnetPoints", "Points", [address]),
            lambda value: decode_points(address, value)
        )

    async def get_transaction(self, block_hash: str, index: int) -> Transaction | None:
        """
        Fetch one extrinsic with the events it emitted.

        Args:
            block_hash: Hash of the containing block
            index: Position of the extrinsic in the block

        Returns:
            Transaction, or None if the block or index does not exist
        """
        try:
            block = await self.fetcher.fetch_block(block_hash)
        except (BlockNotFoundError, MalformedBlockError) as e:
            logger.warning(f"Failed to fetch transaction {block_hash}-{index}: {e}")
            return None

        if not 0 <= index < len(block.extrinsics):
            return None
        extrinsic = block.extrinsics[index]

        try:
            records = await self.node.call(lambda substrate: substrate.get_events(block_hash=block_hash))
        except LOOKUP_FAULTS as e:
            logger.warning(f"Failed to fetch events for block {block_hash}: {e}")
            records = []

        events: list[Event] = []
        for record in records:
            try:
                event = decode_event(record)
            except StorageDecodeError as e:
                logger.warning(f"Skipping malformed event in block {block_hash}: {e}")
                continue
            if event.extrinsic_index == index:
                events.append(event)

        success = any(
            event.section.lower() == "system" and event.method == "ExtrinsicSuccess"
            for event in events
        )

        return Transaction(
            hash=extrinsic.hash,
            block_number=block.number,
            block_hash=block.hash,
            index=index,
            section=extrinsic.section,
            method=extrinsic.method,
            args=extrinsic.args,
            signer=extrinsic.signer,
            success=success,
            events=tuple(events)
        )
