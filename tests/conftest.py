"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from xylkit_indexer.chain.client import RPCError
from xylkit_indexer.chain.models import ChainEvent, Transaction, normalize_address
from xylkit_indexer.indexer.identity import AccountIdentityResolver
from xylkit_indexer.indexer.reconciler import StateReconciler
from xylkit_indexer.indexer.tokens import METADATA_RESOURCE, TokenRegistry
from xylkit_indexer.storage.models import Base

GENESIS = datetime(2026, 1, 1, tzinfo=UTC)


class FakeChain:
    """In-memory stand-in for MovementClient.

    ``get_transactions`` serves a dense version range up to ``tip``: versions
    without a registered transaction come back as empty block metadata
    transactions. Method names listed in ``fail`` raise RPCError.
    """

    def __init__(self, tip: int = 0) -> None:
        self.tip = tip
        self.transactions: dict[int, Transaction] = {}
        self.account_transactions: dict[str, list[Transaction]] = {}
        self.accounts: dict[str, dict[str, Any]] = {}
        self.modules: set[tuple[str, str]] = set()
        self.resources: dict[tuple[str, str], dict[str, Any]] = {}
        self.nft_owners: dict[int, str] = {}
        self.fail: set[str] = set()
        self.calls: list[str] = []

    def _check(self, method: str) -> None:
        self.calls.append(method)
        if method in self.fail:
            raise RPCError(f"{method} unavailable")

    def add_transaction(
        self,
        version: int,
        events: Iterable[tuple[str, dict[str, Any]]] = (),
        *,
        sender: str | None = None,
        entry_function: str | None = None,
        sequence_number: int | None = None,
    ) -> Transaction:
        tx = Transaction(
            version=version,
            hash="0x" + format(version, "064x"),
            timestamp=GENESIS.replace(second=version % 60),
            type="user_transaction",
            sender=normalize_address(sender) if sender else None,
            sequence_number=sequence_number,
            entry_function=entry_function,
            events=tuple(
                ChainEvent(type=type_tag, data=data, sequence_number=0, index=i)
                for i, (type_tag, data) in enumerate(events)
            ),
        )
        self.transactions[version] = tx
        self.tip = max(self.tip, version)
        if tx.sender is not None:
            self.account_transactions.setdefault(tx.sender, []).append(tx)
            self.accounts[tx.sender] = {
                "sequence_number": str(len(self.account_transactions[tx.sender]))
            }
        return tx

    def publish_module(self, address: str, module: str = "drips") -> None:
        self.modules.add((normalize_address(address), module))

    def add_token(self, address: str, symbol: str, name: str, decimals: int) -> None:
        self.resources[(normalize_address(address), METADATA_RESOURCE)] = {
            "type": METADATA_RESOURCE,
            "data": {"symbol": symbol, "name": name, "decimals": decimals},
        }

    async def get_ledger_version(self) -> int:
        self._check("get_ledger_version")
        return self.tip

    async def get_transactions(self, *, start: int, limit: int) -> list[Transaction]:
        self._check("get_transactions")
        end = min(start + limit, self.tip + 1)
        return [
            self.transactions.get(version)
            or Transaction(
                version=version,
                hash="0x" + format(version, "064x"),
                timestamp=GENESIS,
                type="block_metadata_transaction",
            )
            for version in range(start, end)
        ]

    async def get_account(self, address: str) -> dict[str, Any] | None:
        self._check("get_account")
        return self.accounts.get(normalize_address(address))

    async def get_account_transactions(
        self, address: str, *, start: int, limit: int
    ) -> list[Transaction]:
        self._check("get_account_transactions")
        txs = self.account_transactions.get(normalize_address(address), [])
        return [tx for tx in txs if (tx.sequence_number or 0) >= start][:limit]

    async def has_module(self, address: str, module_name: str) -> bool:
        self._check("has_module")
        return (normalize_address(address), module_name) in self.modules

    async def get_resource(self, address: str, resource_type: str) -> dict[str, Any] | None:
        self._check("get_resource")
        return self.resources.get((normalize_address(address), resource_type))

    async def view(
        self, function: str, arguments: list[Any], *, type_arguments: Iterable[str] = ()
    ) -> list[Any]:
        self._check("view")
        owner = self.nft_owners.get(int(arguments[0]))
        if owner is None:
            raise RPCError("POST /view returned HTTP 400: token does not exist")
        return [owner]

    async def aclose(self) -> None:
        pass


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def reconciler(chain: FakeChain) -> StateReconciler:
    return StateReconciler(AccountIdentityResolver(chain), TokenRegistry(chain))
