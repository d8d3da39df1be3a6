"""Deployment discovery from a user's own transaction history.

Discovery pages through the transactions a user has sent, looking for
events emitted by a ``drips`` module. Each candidate deployment is
confirmed by probing for the module before it is registered. Progress is
kept in a ``user_discovery`` cursor holding the last processed sequence
number, and callers continue while ``has_more`` is set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from xylkit_indexer.chain.client import ChainClientError
from xylkit_indexer.chain.models import normalize_address, type_tag_address
from xylkit_indexer.indexer.identity import calc_account_id
from xylkit_indexer.storage.repos import (
    STREAM_KIND_TRANSACTIONS,
    STREAM_KIND_USER_DISCOVERY,
    DeploymentRepository,
    SyncCursorRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from xylkit_indexer.chain.client import MovementClient
    from xylkit_indexer.indexer.reconciler import StateReconciler

logger = logging.getLogger(__name__)

CORE_MODULE = "drips"
DEFAULT_START_VERSION_MARGIN = 10
# Transactions read from a deployment account to find its first version.
DEPLOYMENT_HISTORY_LIMIT = 100


@dataclass
class DiscoveryResult:
    address: str
    processed: int | None
    has_more: bool
    deployments_discovered: int
    batch_size: int
    deployments: list[str] = field(default_factory=list)
    degraded_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "processed": self.processed,
            "has_more": self.has_more,
            "deployments_discovered": self.deployments_discovered,
            "batch_size": self.batch_size,
            "deployments": self.deployments,
            "degraded_reason": self.degraded_reason,
        }


class DiscoveryEngine:
    """Finds and registers deployments a user has interacted with."""

    def __init__(
        self,
        client: MovementClient,
        reconciler: StateReconciler,
        *,
        network: str,
        batch_size: int = 100,
        start_version_margin: int = DEFAULT_START_VERSION_MARGIN,
    ) -> None:
        self._client = client
        self._reconciler = reconciler
        self._network = network
        self._batch_size = batch_size
        self._margin = start_version_margin

    async def is_deployment(self, address: str) -> bool:
        """Probe whether ``address`` publishes the protocol's core module.

        Raises:
            ChainClientError: If the probe cannot be answered.
        """
        return await self._client.has_module(address, CORE_MODULE)

    async def find_start_version(self, address: str) -> int:
        """Cursor seed for a new deployment: a little before its oldest transaction.

        Falls back to 0 when the deployment's history cannot be read.
        """
        try:
            account = await self._client.get_account(address)
            total = int((account or {}).get("sequence_number") or 0)
            if total == 0:
                return 0
            txs = await self._client.get_account_transactions(
                address, start=0, limit=min(total, DEPLOYMENT_HISTORY_LIMIT)
            )
        except (ChainClientError, ValueError) as e:
            logger.warning("Could not read history of %s, seeding cursor at 0: %s", address, e)
            return 0
        if not txs:
            return 0
        oldest = min(tx.version for tx in txs)
        return max(0, oldest - self._margin)

    async def register_deployment(self, session: AsyncSession, address: str) -> bool:
        """Register a confirmed deployment and seed its transactions cursor.

        Returns:
            True if the deployment was not known before.
        """
        address = normalize_address(address)
        deployments = DeploymentRepository(session)
        if await deployments.get(address) is not None:
            return False

        start_version = await self.find_start_version(address)
        created = await deployments.register(address, self._network)
        await SyncCursorRepository(session).seed(address, STREAM_KIND_TRANSACTIONS, start_version)
        logger.info("Deployment %s cursor seeded at %d", address, start_version)
        return created

    async def discover(
        self,
        session: AsyncSession,
        user_address: str,
        batch_size: int | None = None,
    ) -> DiscoveryResult:
        """Scan one batch of the user's transactions for deployments.

        Chain failures return a degraded result without advancing the
        discovery cursor.
        """
        user = normalize_address(user_address)
        limit = max(1, min(batch_size or self._batch_size, 100))
        cursors = SyncCursorRepository(session)

        last_processed = await cursors.get(user, STREAM_KIND_USER_DISCOVERY)
        start = 0 if last_processed is None else last_processed + 1

        try:
            txs = await self._client.get_account_transactions(user, start=start, limit=limit)
        except ChainClientError as e:
            logger.warning("Discovery scan for %s failed: %s", user, e)
            return DiscoveryResult(
                address=user,
                processed=last_processed,
                has_more=False,
                deployments_discovered=0,
                batch_size=limit,
                degraded_reason=f"chain unavailable: {e}",
            )

        candidates: list[str] = []
        for tx in txs:
            for event in tx.events:
                if f"::{CORE_MODULE}::" not in event.type:
                    continue
                address = type_tag_address(event.type)
                if address is not None and address not in candidates:
                    candidates.append(address)

        discovered: list[str] = []
        degraded_reason: str | None = None
        for address in candidates:
            try:
                confirmed = await self.is_deployment(address)
            except ChainClientError as e:
                logger.warning("Module probe for %s failed: %s", address, e)
                degraded_reason = f"module probe failed: {e}"
                break
            if confirmed:
                await self.register_deployment(session, address)
                discovered.append(address)

        processed = last_processed
        if degraded_reason is None and txs:
            sequence_numbers = [tx.sequence_number for tx in txs if tx.sequence_number is not None]
            if sequence_numbers:
                processed = await cursors.advance(user, STREAM_KIND_USER_DISCOVERY, max(sequence_numbers))

        account_id = calc_account_id(user)
        for deployment in await DeploymentRepository(session).list_all():
            await self._reconciler.ensure_account(
                session, deployment.address, account_id, sender_hint=user
            )

        has_more = degraded_reason is None and len(txs) == limit
        logger.info(
            "Discovery for %s: %d transactions from %d, %d deployments confirmed, has_more=%s",
            user,
            len(txs),
            start,
            len(discovered),
            has_more,
        )
        return DiscoveryResult(
            address=user,
            processed=processed,
            has_more=has_more,
            deployments_discovered=len(discovered),
            batch_size=limit,
            deployments=discovered,
            degraded_reason=degraded_reason,
        )
