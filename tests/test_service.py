"""Tests for the indexer service facade."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from xylkit_indexer.chain.models import normalize_address
from xylkit_indexer.config import DatabaseSettings, Settings, SyncSettings
from xylkit_indexer.indexer.identity import calc_account_id
from xylkit_indexer.indexer.scheduler import SyncTargetError, priority_cursor_key
from xylkit_indexer.service import IndexerService
from xylkit_indexer.storage.repos import (
    AccountRepository,
    DeploymentRepository,
    SyncCursorRepository,
)

DEPLOYMENT = normalize_address("0x1c5d")
USER = normalize_address("0x7")
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def user_event(version: int, chain, account_id: int | None = None) -> None:
    chain.add_transaction(
        version,
        [
            (
                f"{DEPLOYMENT}::drips::Given",
                {"account_id": str(account_id or calc_account_id(USER)), "receiver_id": "99", "amount": "1"},
            )
        ],
        sender=USER,
        sequence_number=len(chain.account_transactions.get(USER, [])),
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database=DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///:memory:"),
        sync=SyncSettings(SYNC_KNOWN_DEPLOYMENTS=f"0x1c5d, {DEPLOYMENT}"),
    )


@pytest.fixture
async def service(settings: Settings, chain):
    service = IndexerService(settings, client=chain, clock=lambda: T0)
    await service.init_db()
    yield service
    await service.close()


class TestSync:
    @pytest.mark.asyncio
    async def test_bootstrap_registers_known_deployments(self, service: IndexerService) -> None:
        assert await service.bootstrap() == [DEPLOYMENT]
        assert await service.bootstrap() == []

    @pytest.mark.asyncio
    async def test_sync_registers_explicit_deployment(self, service: IndexerService, chain) -> None:
        user_event(20, chain)
        chain.tip = 50

        result = await service.sync("0x1c5d")

        assert result.deployment == DEPLOYMENT
        assert result.events_processed == 1
        async with service.db.get_async_session() as session:
            assert await DeploymentRepository(session).get(DEPLOYMENT) is not None

    @pytest.mark.asyncio
    async def test_sync_without_target_raises(self, service: IndexerService) -> None:
        with pytest.raises(SyncTargetError):
            await service.sync()

    @pytest.mark.asyncio
    async def test_sync_rejects_malformed_address(self, service: IndexerService) -> None:
        with pytest.raises(SyncTargetError):
            await service.sync("not-an-address")

    @pytest.mark.asyncio
    async def test_user_without_deployments_raises(self, service: IndexerService) -> None:
        with pytest.raises(SyncTargetError):
            await service.sync(user=USER)

    @pytest.mark.asyncio
    async def test_user_sync_is_a_priority_run(self, service: IndexerService, chain) -> None:
        user_event(20, chain)
        chain.tip = 50
        await service.sync(DEPLOYMENT)

        user_event(60, chain)
        chain.tip = 80
        result = await service.sync(user=USER)

        assert result.deployment == DEPLOYMENT
        assert result.events_processed == 1
        async with service.db.get_async_session() as session:
            cursors = SyncCursorRepository(session)
            assert await cursors.get(priority_cursor_key(DEPLOYMENT, calc_account_id(USER))) == 80
            assert await cursors.get(DEPLOYMENT) == 50

        statuses = await service.status(DEPLOYMENT)
        assert statuses[0].events_processed == 1

        again = await service.sync(user=USER)
        assert again.skipped is True
        assert again.reason == "cooldown"

    @pytest.mark.asyncio
    async def test_sync_until_complete(self, service: IndexerService, chain) -> None:
        chain.tip = 250

        results = await service.sync_until_complete(DEPLOYMENT)

        assert [r.cursor for r in results] == ["100", "200", "250"]
        assert results[-1].has_more is False

    @pytest.mark.asyncio
    async def test_sync_until_complete_respects_max_rounds(self, service: IndexerService, chain) -> None:
        chain.tip = 1000
        results = await service.sync_until_complete(DEPLOYMENT, max_rounds=2)
        assert len(results) == 2
        assert results[-1].has_more is True

    @pytest.mark.asyncio
    async def test_sync_all(self, service: IndexerService, chain) -> None:
        other = normalize_address("0xbeef")
        chain.tip = 10
        await service.bootstrap()
        async with service.db.get_async_session() as session:
            await DeploymentRepository(session).register(other, "movement-testnet")

        results = await service.sync_all()

        assert {r.deployment for r in results} == {DEPLOYMENT, other}
        assert len(await service.status()) == 2


class TestSearch:
    @pytest.mark.asyncio
    async def test_known_deployment(self, service: IndexerService, chain) -> None:
        await service.bootstrap()
        result = await service.search("0x1c5d")
        assert result.to_dict() == {"type": "deployment", "address": DEPLOYMENT}
        assert "has_module" not in chain.calls

    @pytest.mark.asyncio
    async def test_unknown_deployment_is_registered(self, service: IndexerService, chain) -> None:
        other = normalize_address("0xbeef")
        chain.publish_module(other)
        chain.add_transaction(
            5, [(f"{other}::drips::Received", {"account_id": "7", "fa_metadata": "0xa", "amount": "1"})]
        )

        result = await service.search(other)

        assert result.type == "deployment"
        assert result.sync is not None
        assert result.sync.events_processed == 1
        assert result.to_dict()["sync"]["cursor"] == "5"
        async with service.db.get_async_session() as session:
            assert await DeploymentRepository(session).get(other) is not None

    @pytest.mark.asyncio
    async def test_user_runs_discovery(self, service: IndexerService, chain) -> None:
        chain.publish_module(DEPLOYMENT)
        user_event(20, chain)

        result = await service.search(USER)

        assert result.type == "user"
        assert result.discovery is not None
        assert result.discovery.deployments == [DEPLOYMENT]
        assert result.to_dict()["discovery"]["deployments_discovered"] == 1
        async with service.db.get_async_session() as session:
            account = await AccountRepository(session).get(DEPLOYMENT, str(calc_account_id(USER)))
            assert account.wallet_address == USER

    @pytest.mark.asyncio
    async def test_probe_failure_treats_address_as_user(self, service: IndexerService, chain) -> None:
        chain.fail.add("has_module")
        result = await service.search(USER)
        assert result.type == "user"


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_refresh_accounts(self, service: IndexerService) -> None:
        await service.bootstrap()
        assert await service.refresh_accounts() == {DEPLOYMENT: 0}
        assert await service.refresh_accounts(DEPLOYMENT) == {DEPLOYMENT: 0}

    @pytest.mark.asyncio
    async def test_token_decimals(self, service: IndexerService, chain) -> None:
        chain.add_token("0xc0ffee", "USDC", "USD Coin", 6)
        assert await service.get_token_decimals("0xc0ffee") == 6
        assert await service.get_token_decimals("0xa") == 8
