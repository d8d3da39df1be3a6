"""Tests for database session management."""

import pytest

from xylkit_indexer.storage.database import DatabaseManager, normalize_async_database_url
from xylkit_indexer.storage.repos import DeploymentRepository

DEPLOYMENT = "0x" + "1c5d".rjust(64, "0")


def test_normalize_async_database_url() -> None:
    assert normalize_async_database_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert normalize_async_database_url("sqlite:///x.db") == "sqlite+aiosqlite:///x.db"
    assert normalize_async_database_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


class TestDatabaseManager:
    @pytest.mark.asyncio
    async def test_session_commits(self) -> None:
        db = DatabaseManager("sqlite+aiosqlite:///:memory:")
        await db.init_schema_async()

        async with db.get_async_session() as session:
            await DeploymentRepository(session).register(DEPLOYMENT, "movement-testnet")

        async with db.get_async_session() as session:
            assert await DeploymentRepository(session).get(DEPLOYMENT) is not None
        await db.dispose_async()

    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self) -> None:
        db = DatabaseManager("sqlite+aiosqlite:///:memory:")
        await db.init_schema_async()

        with pytest.raises(RuntimeError):
            async with db.get_async_session() as session:
                await DeploymentRepository(session).register(DEPLOYMENT, "movement-testnet")
                raise RuntimeError("boom")

        async with db.get_async_session() as session:
            assert await DeploymentRepository(session).get(DEPLOYMENT) is None
        await db.dispose_async()
