"""Indexer service - wires settings, storage, chain client and sync engine.

Every public operation runs in its own database session, so each sync run
or discovery batch commits as one transaction.

Example:
    ```python
    async with IndexerService() as service:
        await service.init_db()
        result = await service.sync("0x1c5d...", force=True)
        while result.has_more:
            result = await service.sync("0x1c5d...")
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from xylkit_indexer.chain.client import ChainClientError, MovementClient
from xylkit_indexer.chain.models import normalize_address
from xylkit_indexer.config import Settings, get_settings
from xylkit_indexer.indexer.discovery import DiscoveryEngine, DiscoveryResult
from xylkit_indexer.indexer.fetcher import IncrementalFetcher
from xylkit_indexer.indexer.identity import AccountIdentityResolver, calc_account_id
from xylkit_indexer.indexer.reconciler import StateReconciler
from xylkit_indexer.indexer.scheduler import SyncResult, SyncScheduler, SyncStatus, SyncTargetError
from xylkit_indexer.indexer.tokens import TokenRegistry
from xylkit_indexer.storage.database import DatabaseManager
from xylkit_indexer.storage.repos import AccountRepository, DeploymentRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 50


@dataclass
class SearchResult:
    type: str  # "deployment" or "user"
    address: str
    discovery: DiscoveryResult | None = None
    sync: SyncResult | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type, "address": self.address}
        if self.discovery is not None:
            result["discovery"] = self.discovery.to_dict()
        if self.sync is not None:
            result["sync"] = self.sync.to_dict()
        return result


def _target_address(value: str, label: str) -> str:
    try:
        return normalize_address(value)
    except ValueError as e:
        raise SyncTargetError(f"Invalid {label} address: {value!r}") from e


class IndexerService:
    """Entry point for sync, status, search and discovery operations."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        client: MovementClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Database manager; built from settings when omitted.
            client: Chain client; built from settings when omitted and then
                owned (closed) by the service.
            clock: Wall clock for cooldown decisions.
        """
        self._settings = settings or get_settings()
        self._db = db or DatabaseManager(self._settings.database.url)
        self._redis: Redis | None = None
        self._owns_client = client is None

        if client is None:
            if self._settings.redis.enabled and self._settings.redis.url:
                self._redis = Redis.from_url(self._settings.redis.url)
            movement = self._settings.movement
            client = MovementClient(
                movement.rpc_url,
                fallback_rpc_url=movement.fallback_rpc_url,
                redis=self._redis,
                max_requests_per_second=movement.max_requests_per_second,
                max_retries=movement.max_retries,
                timeout_seconds=movement.request_timeout_seconds,
            )
        self._client = client

        sync = self._settings.sync
        self.tokens = TokenRegistry(client)
        self.reconciler = StateReconciler(AccountIdentityResolver(client), self.tokens)
        self.scheduler = SyncScheduler(
            client,
            IncrementalFetcher(client),
            self.reconciler,
            cooldown_seconds=sync.cooldown_seconds,
            batch_size=sync.batch_size,
            clock=clock,
        )
        self.discovery = DiscoveryEngine(
            client,
            self.reconciler,
            network=self._settings.movement.network,
            batch_size=sync.discovery_batch_size,
            start_version_margin=sync.start_version_margin,
        )

    @property
    def db(self) -> DatabaseManager:
        return self._db

    async def init_db(self) -> None:
        """Create the schema (development and tests; production uses Alembic)."""
        await self._db.init_schema_async()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        await self._db.dispose_async()

    async def __aenter__(self) -> IndexerService:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def bootstrap(self) -> list[str]:
        """Register the configured known deployments.

        Returns:
            Addresses that were newly registered.
        """
        registered = []
        async with self._db.get_async_session() as session:
            for raw in self._settings.sync.known_deployment_addresses:
                address = normalize_address(raw)
                if await self.discovery.register_deployment(session, address):
                    registered.append(address)
        if registered:
            logger.info("Bootstrapped %d known deployments", len(registered))
        return registered

    async def _resolve_target(
        self,
        session: AsyncSession,
        deployment: str | None,
        user: str | None,
    ) -> tuple[str, int | None]:
        """Map a sync request to (deployment, account filter)."""
        deployments = DeploymentRepository(session)

        if deployment:
            address = _target_address(deployment, "deployment")
            if await deployments.get(address) is None:
                await self.discovery.register_deployment(session, address)
            account_id = calc_account_id(_target_address(user, "user")) if user else None
            return address, account_id

        if user:
            wallet = _target_address(user, "user")
            owned = await AccountRepository(session).deployments_for_wallet(wallet)
            if owned:
                return owned[0], calc_account_id(wallet)
            known = await deployments.list_all()
            if known:
                return known[0].address, calc_account_id(wallet)
            raise SyncTargetError(f"No known deployment for user {wallet}")

        raise SyncTargetError("No deployment specified")

    async def sync(
        self,
        deployment: str | None = None,
        *,
        user: str | None = None,
        force: bool = False,
        limit: int | None = None,
    ) -> SyncResult:
        """Run one sync batch for a deployment, or with priority for a user.

        Raises:
            SyncTargetError: If no deployment can be resolved for the request.
        """
        async with self._db.get_async_session() as session:
            target, account_id = await self._resolve_target(session, deployment, user)
            return await self.scheduler.run(
                session, target, force=force, limit=limit, account_id=account_id
            )

    async def sync_until_complete(
        self,
        deployment: str | None = None,
        *,
        user: str | None = None,
        force: bool = False,
        limit: int | None = None,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
    ) -> list[SyncResult]:
        """Re-run sync while more work is pending, up to ``max_rounds`` batches.

        Later rounds bypass the cooldown: the previous round reported
        outstanding work.
        """
        results: list[SyncResult] = []
        for round_number in range(max(1, max_rounds)):
            result = await self.sync(
                deployment,
                user=user,
                force=force or round_number > 0,
                limit=limit,
            )
            results.append(result)
            if result.skipped or result.degraded or not result.has_more:
                break
        return results

    async def sync_all(self, *, force: bool = False, limit: int | None = None) -> list[SyncResult]:
        """Run one sync batch for every known deployment, one after another."""
        async with self._db.get_async_session() as session:
            addresses = [d.address for d in await DeploymentRepository(session).list_all()]
        return [await self.sync(address, force=force, limit=limit) for address in addresses]

    async def status(self, deployment: str | None = None) -> list[SyncStatus]:
        address = _target_address(deployment, "deployment") if deployment else None
        async with self._db.get_async_session() as session:
            return await self.scheduler.status(session, address)

    async def search(self, address: str) -> SearchResult:
        """Classify an address as a deployment or a user.

        Unknown deployments are registered and synced for one batch; users
        get one discovery batch.
        """
        normalized = normalize_address(address)
        async with self._db.get_async_session() as session:
            if await DeploymentRepository(session).get(normalized) is not None:
                return SearchResult(type="deployment", address=normalized)

            try:
                is_deployment = await self.discovery.is_deployment(normalized)
            except ChainClientError as e:
                logger.warning("Module probe for %s failed, treating as user: %s", normalized, e)
                is_deployment = False

            if is_deployment:
                await self.discovery.register_deployment(session, normalized)
                sync = await self.scheduler.run(session, normalized)
                return SearchResult(type="deployment", address=normalized, sync=sync)

            discovery = await self.discovery.discover(session, normalized)
            return SearchResult(type="user", address=normalized, discovery=discovery)

    async def discover(self, user: str, batch_size: int | None = None) -> DiscoveryResult:
        async with self._db.get_async_session() as session:
            return await self.discovery.discover(session, user, batch_size)

    async def refresh_accounts(self, deployment: str | None = None) -> dict[str, int]:
        """Retry owner lookups of unresolved NFT-driver accounts.

        Returns:
            Accounts resolved per deployment.
        """
        async with self._db.get_async_session() as session:
            if deployment:
                addresses = [_target_address(deployment, "deployment")]
            else:
                addresses = [d.address for d in await DeploymentRepository(session).list_all()]
            return {
                address: await self.reconciler.refresh_unresolved(session, address)
                for address in addresses
            }

    async def get_token_decimals(self, fa_metadata: str) -> int:
        async with self._db.get_async_session() as session:
            return await self.tokens.get_token_decimals(session, fa_metadata)
