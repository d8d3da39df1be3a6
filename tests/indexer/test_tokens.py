"""Tests for the fungible asset metadata registry."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from xylkit_indexer.chain.models import normalize_address
from xylkit_indexer.indexer.tokens import TokenRegistry
from xylkit_indexer.storage.repos import TokenRepository

USDC = normalize_address("0xc0ffee")


class TestTokenRegistry:
    @pytest.mark.asyncio
    async def test_native_asset_needs_no_chain_call(self, async_session: AsyncSession, chain) -> None:
        token = await TokenRegistry(chain).ensure(async_session, "0xa")
        assert token is not None
        assert (token.symbol, token.name, token.decimals) == ("APT", "Aptos Coin", 8)
        assert chain.calls == []
        assert await TokenRepository(async_session).get(normalize_address("0xa")) is not None

    @pytest.mark.asyncio
    async def test_fetches_metadata_once(self, async_session: AsyncSession, chain) -> None:
        chain.add_token(USDC, "USDC", "USD Coin", 6)
        registry = TokenRegistry(chain)

        token = await registry.ensure(async_session, USDC)
        assert token.decimals == 6
        await registry.ensure(async_session, USDC)
        assert chain.calls.count("get_resource") == 1
        assert await registry.get_token_decimals(async_session, USDC) == 6

    @pytest.mark.asyncio
    async def test_failure_is_retried_later(self, async_session: AsyncSession, chain) -> None:
        registry = TokenRegistry(chain)
        chain.fail.add("get_resource")
        assert await registry.ensure(async_session, USDC) is None
        assert await TokenRepository(async_session).get(USDC) is None

        chain.fail.clear()
        chain.add_token(USDC, "USDC", "USD Coin", 6)
        token = await registry.ensure(async_session, USDC)
        assert token is not None
        assert token.symbol == "USDC"

    @pytest.mark.asyncio
    async def test_missing_metadata_defaults_decimals(self, async_session: AsyncSession, chain) -> None:
        registry = TokenRegistry(chain)
        assert await registry.get_token_decimals(async_session, USDC) == 8
        assert await registry.ensure(async_session, "not-an-address") is None
