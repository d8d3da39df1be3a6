"""Fungible asset metadata registry.

Token rows are written once per asset. Decimals cannot change on a
deployed asset, so lookups are also memoized in process.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from xylkit_indexer.chain.client import ChainClientError
from xylkit_indexer.chain.models import is_address, normalize_address
from xylkit_indexer.storage.repos import TokenDTO, TokenRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from xylkit_indexer.chain.client import MovementClient

logger = logging.getLogger(__name__)

METADATA_RESOURCE = "0x1::fungible_asset::Metadata"
NATIVE_ASSET = normalize_address("0xa")
DEFAULT_DECIMALS = 8


class TokenRegistry:
    """Ensures Token rows exist for assets referenced by events."""

    def __init__(self, client: MovementClient) -> None:
        self._client = client
        self._decimals: dict[str, int] = {NATIVE_ASSET: DEFAULT_DECIMALS}

    async def _fetch(self, address: str) -> TokenDTO | None:
        if address == NATIVE_ASSET:
            return TokenDTO(address=address, symbol="APT", name="Aptos Coin", decimals=DEFAULT_DECIMALS)

        try:
            resource = await self._client.get_resource(address, METADATA_RESOURCE)
        except ChainClientError as e:
            logger.warning("Token metadata fetch failed for %s: %s", address, e)
            return None
        if resource is None:
            logger.warning("No fungible asset metadata at %s", address)
            return None

        data: dict[str, Any] = resource.get("data") or {}
        try:
            decimals = int(data["decimals"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed fungible asset metadata at %s: %r", address, data)
            return None
        return TokenDTO(
            address=address,
            symbol=str(data.get("symbol") or "")[:32],
            name=str(data.get("name") or "")[:128],
            decimals=decimals,
        )

    async def ensure(self, session: AsyncSession, fa_metadata: str) -> TokenDTO | None:
        """Return the asset's Token row, creating it from chain metadata if needed.

        Failures are logged and return None; a later event retries.
        """
        if not is_address(fa_metadata):
            return None
        address = normalize_address(fa_metadata)

        repo = TokenRepository(session)
        existing = await repo.get(address)
        if existing is not None:
            self._decimals[address] = existing.decimals
            return existing

        dto = await self._fetch(address)
        if dto is None:
            return None
        if await repo.insert_if_absent(dto):
            logger.info("Registered token %s (%s, %d decimals)", address, dto.symbol, dto.decimals)
        self._decimals[address] = dto.decimals
        return dto

    async def get_token_decimals(self, session: AsyncSession, fa_metadata: str) -> int:
        """Decimals of an asset, defaulting to 8 when metadata is unavailable."""
        if is_address(fa_metadata):
            cached = self._decimals.get(normalize_address(fa_metadata))
            if cached is not None:
                return cached
        token = await self.ensure(session, fa_metadata)
        return token.decimals if token else DEFAULT_DECIMALS
