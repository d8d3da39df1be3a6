"""Sync scheduler and cooldown gate.

A sync run processes one batch: it checks the cooldown gate, reads the
chain tip and the persisted cursor, fetches and reconciles one batch of
transactions, advances the cursor and records run metadata. Callers
continue a backfill by invoking it again while ``has_more`` is set.

The cursor stores the version of the last scanned transaction; a run
resumes at the next version. All writes of a run go through the caller's
session, so they commit or roll back together.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from xylkit_indexer.chain.client import ChainClientError
from xylkit_indexer.indexer.events import (
    EventDecodeError,
    SplitsSet,
    StreamsSet,
    decode,
    involved_account_ids,
)
from xylkit_indexer.indexer.fetcher import clamp_batch_size
from xylkit_indexer.indexer.reconciler import EventContext
from xylkit_indexer.storage.repos import (
    STREAM_KIND_TRANSACTIONS,
    DeploymentRepository,
    SplitRepository,
    StreamRepository,
    SyncCursorRepository,
    SyncMetadataDTO,
    SyncMetadataRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from xylkit_indexer.chain.client import MovementClient
    from xylkit_indexer.indexer.events import EventPayload
    from xylkit_indexer.indexer.fetcher import IncrementalFetcher
    from xylkit_indexer.indexer.reconciler import StateReconciler

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 30
# Used when the chain tip is unavailable so the caught-up check never fires.
UNKNOWN_CHAIN_TIP = 2**63 - 1


class SyncTargetError(Exception):
    """Raised when a sync request does not resolve to a deployment."""


def priority_cursor_key(deployment_address: str, account_id: int) -> str:
    """Cursor key of account-priority runs within a deployment."""
    return f"{deployment_address}#{account_id}"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class CooldownDecision:
    allowed: bool
    last_synced_at: datetime | None
    next_available_at: datetime


@dataclass
class SyncResult:
    """Outcome of one sync run.

    ``skipped`` runs were refused by the cooldown gate. ``degraded`` carries
    the reason a run made no progress because the chain was unreachable.
    """

    deployment: str
    events_processed: int
    skipped: bool
    last_synced_at: datetime | None
    next_sync_available_at: datetime
    has_more: bool = False
    cursor: str | None = None
    reason: str | None = None
    degraded: str | None = None
    transactions_scanned: int = 0
    events_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment": self.deployment,
            "events_processed": self.events_processed,
            "skipped": self.skipped,
            "reason": self.reason,
            "last_synced_at": _iso(self.last_synced_at),
            "next_sync_available_at": _iso(self.next_sync_available_at),
            "has_more": self.has_more,
            "cursor": self.cursor,
            "degraded": self.degraded,
            "transactions_scanned": self.transactions_scanned,
            "events_failed": self.events_failed,
        }


@dataclass(frozen=True)
class SyncStatus:
    deployment: str
    last_synced_at: datetime
    age_ms: int
    events_processed: int
    sync_duration_ms: int
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment": self.deployment,
            "last_synced_at": _iso(self.last_synced_at),
            "age_ms": self.age_ms,
            "events_processed": self.events_processed,
            "sync_duration_ms": self.sync_duration_ms,
            "has_more": self.has_more,
        }


class SyncScheduler:
    """Gates and runs single-batch syncs of a deployment."""

    def __init__(
        self,
        client: MovementClient,
        fetcher: IncrementalFetcher,
        reconciler: StateReconciler,
        *,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        batch_size: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._fetcher = fetcher
        self._reconciler = reconciler
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._batch_size = clamp_batch_size(batch_size)
        self._clock = clock or (lambda: datetime.now(UTC))

    async def can_sync(
        self,
        session: AsyncSession,
        deployment_address: str,
        *,
        force: bool = False,
        account_id: int | None = None,
    ) -> CooldownDecision:
        """Decide whether a run may start now.

        Never-synced deployments and deployments with outstanding work are
        always allowed; otherwise the cooldown since the last run must have
        elapsed. ``force`` bypasses the gate. Account-priority runs are gated
        on their own run metadata.
        """
        now = self._clock()
        key = deployment_address
        if account_id is not None:
            key = priority_cursor_key(deployment_address, account_id)
        meta = await SyncMetadataRepository(session).get(key)
        if meta is None:
            return CooldownDecision(allowed=True, last_synced_at=None, next_available_at=now)
        if force or meta.has_more:
            return CooldownDecision(allowed=True, last_synced_at=meta.last_synced_at, next_available_at=now)

        next_available = meta.last_synced_at + self._cooldown
        return CooldownDecision(
            allowed=now >= next_available,
            last_synced_at=meta.last_synced_at,
            next_available_at=max(now, next_available),
        )

    async def _chain_tip(self) -> int:
        try:
            return await self._client.get_ledger_version()
        except ChainClientError as e:
            logger.warning("Chain tip unavailable, continuing without it: %s", e)
            return UNKNOWN_CHAIN_TIP

    async def run(
        self,
        session: AsyncSession,
        deployment_address: str,
        *,
        force: bool = False,
        limit: int | None = None,
        account_id: int | None = None,
    ) -> SyncResult:
        """Run one sync batch for a deployment.

        Args:
            session: Session the run's writes go through.
            deployment_address: Normalized deployment address.
            force: Bypass the cooldown gate.
            limit: Transactions to scan (clamped to 1..100).
            account_id: Only apply events touching this account. Such runs
                keep their own cursor and run metadata, and never start
                behind the deployment cursor.
        """
        decision = await self.can_sync(session, deployment_address, force=force, account_id=account_id)
        if not decision.allowed:
            logger.info(
                "Sync of %s skipped: cooldown until %s",
                deployment_address,
                decision.next_available_at.isoformat(),
            )
            return SyncResult(
                deployment=deployment_address,
                events_processed=0,
                skipped=True,
                reason="cooldown",
                last_synced_at=decision.last_synced_at,
                next_sync_available_at=decision.next_available_at,
            )

        started = time.monotonic()
        batch_size = clamp_batch_size(limit, default=self._batch_size)
        cursors = SyncCursorRepository(session)
        tip = await self._chain_tip()

        if account_id is None:
            cursor_key = deployment_address
            cursor = await cursors.get(cursor_key, STREAM_KIND_TRANSACTIONS)
        else:
            cursor_key = priority_cursor_key(deployment_address, account_id)
            cursor = await self._priority_cursor(cursors, deployment_address, cursor_key)

        if cursor is not None and cursor >= tip:
            now = self._clock()
            await SyncMetadataRepository(session).upsert(
                SyncMetadataDTO(
                    deployment_address=cursor_key,
                    last_synced_at=now,
                    events_processed=0,
                    sync_duration_ms=0,
                    has_more=False,
                )
            )
            logger.info("Sync of %s: cursor %d reached chain tip %d", deployment_address, cursor, tip)
            return SyncResult(
                deployment=deployment_address,
                events_processed=0,
                skipped=False,
                last_synced_at=now,
                next_sync_available_at=now + self._cooldown,
                has_more=False,
                cursor=str(cursor),
            )

        start = 0 if cursor is None else cursor + 1
        fetched = await self._fetcher.fetch(deployment_address, start, batch_size)

        processed = 0
        failed = 0
        last_event_version: int | None = None
        for candidate in fetched.events:
            try:
                payload = decode(candidate.name, candidate.data)
            except EventDecodeError as e:
                failed += 1
                logger.warning(
                    "Skipping undecodable %s event at version %d: %s",
                    candidate.name.value,
                    candidate.tx_version,
                    e,
                )
                continue
            if account_id is not None and not await self._touches_account(
                session, deployment_address, payload, account_id
            ):
                continue

            await self._reconciler.apply(
                session,
                payload,
                EventContext(
                    deployment_address=deployment_address,
                    tx_version=candidate.tx_version,
                    event_index=candidate.event_index,
                    timestamp=candidate.timestamp,
                    tx_hash=candidate.tx_hash,
                    sequence_number=candidate.sequence_number,
                    sender=candidate.sender,
                    entry_function=candidate.entry_function,
                ),
            )
            processed += 1
            last_event_version = candidate.tx_version

        if fetched.transactions_scanned > 0:
            new_cursor = await cursors.advance(cursor_key, STREAM_KIND_TRANSACTIONS, fetched.new_cursor)
        else:
            new_cursor = cursor if cursor is not None else 0
        if last_event_version is not None:
            await DeploymentRepository(session).record_tx_version(deployment_address, last_event_version)

        has_more = fetched.transactions_scanned == batch_size and new_cursor < tip
        duration_ms = int((time.monotonic() - started) * 1000)
        now = self._clock()

        await SyncMetadataRepository(session).upsert(
            SyncMetadataDTO(
                deployment_address=cursor_key,
                last_synced_at=now,
                events_processed=processed,
                sync_duration_ms=duration_ms,
                has_more=has_more,
            )
        )

        logger.info(
            "Sync of %s: scanned %d transactions, processed %d events, cursor %d, has_more=%s",
            deployment_address,
            fetched.transactions_scanned,
            processed,
            new_cursor,
            has_more,
        )
        return SyncResult(
            deployment=deployment_address,
            events_processed=processed,
            skipped=False,
            last_synced_at=now,
            next_sync_available_at=now + self._cooldown,
            has_more=has_more,
            cursor=str(new_cursor),
            degraded=fetched.degraded_reason,
            transactions_scanned=fetched.transactions_scanned,
            events_failed=failed,
        )

    async def _priority_cursor(
        self,
        cursors: SyncCursorRepository,
        deployment_address: str,
        cursor_key: str,
    ) -> int | None:
        # Versions at or below the deployment cursor are already reconciled.
        cursor = await cursors.get(cursor_key, STREAM_KIND_TRANSACTIONS)
        deployment_cursor = await cursors.get(deployment_address, STREAM_KIND_TRANSACTIONS)
        if deployment_cursor is None:
            return cursor
        if cursor is None or cursor < deployment_cursor:
            cursor = await cursors.advance(cursor_key, STREAM_KIND_TRANSACTIONS, deployment_cursor)
        return cursor

    async def _touches_account(
        self,
        session: AsyncSession,
        deployment_address: str,
        payload: EventPayload,
        account_id: int,
    ) -> bool:
        """Whether an account-priority run must apply ``payload``.

        Besides events naming the account, this includes configurations that
        replace a stream or split currently pointing at it.
        """
        if account_id in involved_account_ids(payload):
            return True
        target = str(account_id)
        setter = str(payload.account_id)
        if isinstance(payload, StreamsSet):
            streams = await StreamRepository(session).list_for_sender(
                deployment_address, setter, active_only=True
            )
            return any(s.receiver_id == target for s in streams)
        if isinstance(payload, SplitsSet):
            splits = await SplitRepository(session).list_for_account(deployment_address, setter)
            return any(s.receiver_id == target for s in splits)
        return False

    async def status(
        self,
        session: AsyncSession,
        deployment_address: str | None = None,
    ) -> list[SyncStatus]:
        """Sync metadata of one deployment, or of every synced deployment."""
        repo = SyncMetadataRepository(session)
        if deployment_address is not None:
            meta = await repo.get(deployment_address)
            rows = [meta] if meta else []
        else:
            rows = await repo.list_all()

        now = self._clock()
        return [
            SyncStatus(
                deployment=m.deployment_address,
                last_synced_at=m.last_synced_at,
                age_ms=max(0, int((now - m.last_synced_at).total_seconds() * 1000)),
                events_processed=m.events_processed,
                sync_duration_ms=m.sync_duration_ms,
                has_more=m.has_more,
            )
            for m in rows
        ]
