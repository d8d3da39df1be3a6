"""Tests for configuration management."""

import logging

import pytest
from pydantic import ValidationError

from xylkit_indexer.config import (
    DatabaseSettings,
    MovementSettings,
    RedisSettings,
    Settings,
    SyncSettings,
    clear_settings_cache,
    get_settings,
)


@pytest.fixture(autouse=True)
def _clear_cache():
    clear_settings_cache()
    yield
    clear_settings_cache()


class TestSettings:
    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql://indexer:secret@db:5432/xylkit")
        monkeypatch.setenv("MOVEMENT_RPC_URL", "https://full.node/v1/")
        monkeypatch.setenv("SYNC_COOLDOWN_SECONDS", "60")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = get_settings()

        assert settings.database.url == "postgresql://indexer:secret@db:5432/xylkit"
        assert settings.movement.rpc_url == "https://full.node/v1"
        assert settings.sync.cooldown_seconds == 60
        assert settings.get_logging_level() == logging.DEBUG
        assert get_settings() is settings

    def test_redacted_summary_masks_password(self) -> None:
        settings = Settings(
            database=DatabaseSettings(DATABASE_URL="postgresql://indexer:secret@db:5432/xylkit"),
            redis=RedisSettings(REDIS_URL="redis://localhost:6379/0"),
        )
        summary = settings.redacted_summary()
        assert summary["database_url"] == "postgresql://indexer:***@db:5432/xylkit"
        assert "secret" not in str(summary)

    def test_known_deployments_list(self) -> None:
        sync = SyncSettings(SYNC_KNOWN_DEPLOYMENTS=" 0x1c5d, ,0xbeef ")
        assert sync.known_deployment_addresses == ["0x1c5d", "0xbeef"]

    def test_redis_is_optional(self) -> None:
        assert RedisSettings(REDIS_URL=None).enabled is False
        assert RedisSettings(REDIS_URL="redis://localhost:6379").enabled is True


class TestValidation:
    def test_rejects_unknown_database_scheme(self) -> None:
        with pytest.raises(ValidationError):
            DatabaseSettings(DATABASE_URL="mysql://localhost/db")

    def test_rejects_non_http_rpc(self) -> None:
        with pytest.raises(ValidationError):
            MovementSettings(MOVEMENT_RPC_URL="ws://node")

    def test_batch_size_is_capped(self) -> None:
        with pytest.raises(ValidationError):
            SyncSettings(SYNC_BATCH_SIZE=500)
