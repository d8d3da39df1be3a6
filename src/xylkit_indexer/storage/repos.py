"""Repository pattern implementations for data access.

This module provides data access abstractions for the protocol projection.
Every write is idempotent: upserts on unique keys, delete-then-insert of
total sets, or inserts that ignore conflicts.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from xylkit_indexer.storage.models import (
    AccountModel,
    Base,
    DeploymentModel,
    EventModel,
    SplitModel,
    StreamModel,
    SyncCursorModel,
    SyncMetadataModel,
    TokenModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

STREAM_KIND_TRANSACTIONS = "transactions"
STREAM_KIND_USER_DISCOVERY = "user_discovery"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _insert(session: AsyncSession, model: type[Base]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class DeploymentDTO:
    """Data transfer object for deployments."""

    address: str
    network: str
    first_seen_at: datetime | None = None
    last_tx_version: int | None = None

    @classmethod
    def from_model(cls, model: DeploymentModel) -> DeploymentDTO:
        return cls(
            address=model.address,
            network=model.network,
            first_seen_at=_as_utc(model.first_seen_at),
            last_tx_version=model.last_tx_version,
        )


@dataclass
class SyncMetadataDTO:
    """Data transfer object for per-deployment sync metadata."""

    deployment_address: str
    last_synced_at: datetime
    events_processed: int = 0
    sync_duration_ms: int = 0
    has_more: bool = False

    @classmethod
    def from_model(cls, model: SyncMetadataModel) -> SyncMetadataDTO:
        return cls(
            deployment_address=model.deployment_address,
            last_synced_at=_as_utc(model.last_synced_at),
            events_processed=model.events_processed,
            sync_duration_ms=model.sync_duration_ms,
            has_more=model.has_more,
        )


@dataclass
class AccountDTO:
    """Data transfer object for protocol accounts."""

    deployment_address: str
    account_id: str
    wallet_address: str | None = None
    driver_type: int = 0
    driver_name: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AccountModel) -> AccountDTO:
        return cls(
            deployment_address=model.deployment_address,
            account_id=model.account_id,
            wallet_address=model.wallet_address,
            driver_type=model.driver_type,
            driver_name=model.driver_name,
            created_at=_as_utc(model.created_at),
        )


@dataclass
class StreamDTO:
    """Data transfer object for streams."""

    deployment_address: str
    sender_id: str
    receiver_id: str
    stream_id: str
    fa_metadata: str
    amt_per_sec: str
    start_time: int = 0
    duration: int = 0
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: StreamModel) -> StreamDTO:
        return cls(
            deployment_address=model.deployment_address,
            sender_id=model.sender_id,
            receiver_id=model.receiver_id,
            stream_id=model.stream_id,
            fa_metadata=model.fa_metadata,
            amt_per_sec=model.amt_per_sec,
            start_time=model.start_time,
            duration=model.duration,
            active=model.active,
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class SplitDTO:
    """Data transfer object for split receivers."""

    deployment_address: str
    account_id: str
    receiver_id: str
    weight: int

    @classmethod
    def from_model(cls, model: SplitModel) -> SplitDTO:
        return cls(
            deployment_address=model.deployment_address,
            account_id=model.account_id,
            receiver_id=model.receiver_id,
            weight=model.weight,
        )


@dataclass
class EventDTO:
    """Data transfer object for the raw event log."""

    deployment_address: str
    event_type: str
    account_id: str
    tx_version: int
    event_index: int
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)
    tx_hash: str | None = None
    sequence_number: int = 0

    @classmethod
    def from_model(cls, model: EventModel) -> EventDTO:
        return cls(
            deployment_address=model.deployment_address,
            event_type=model.event_type,
            account_id=model.account_id,
            tx_version=model.tx_version,
            event_index=model.event_index,
            timestamp=_as_utc(model.timestamp),
            data=dict(model.data or {}),
            tx_hash=model.tx_hash,
            sequence_number=model.sequence_number,
        )


@dataclass
class TokenDTO:
    """Data transfer object for fungible asset metadata."""

    address: str
    symbol: str
    name: str
    decimals: int

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(
            address=model.address,
            symbol=model.symbol,
            name=model.name,
            decimals=model.decimals,
        )


class DeploymentRepository:
    """Repository for known deployments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> DeploymentDTO | None:
        model = await self.session.get(DeploymentModel, address, populate_existing=True)
        return DeploymentDTO.from_model(model) if model else None

    async def list_all(self) -> list[DeploymentDTO]:
        result = await self.session.execute(
            select(DeploymentModel)
            .order_by(DeploymentModel.first_seen_at, DeploymentModel.address)
            .execution_options(populate_existing=True)
        )
        return [DeploymentDTO.from_model(m) for m in result.scalars().all()]

    async def register(
        self,
        address: str,
        network: str,
        *,
        last_tx_version: int | None = None,
    ) -> bool:
        """Insert the deployment unless it is already known.

        Returns:
            True if a new row was created.
        """
        stmt = _insert(self.session, DeploymentModel).values(
            address=address,
            network=network,
            first_seen_at=datetime.now(UTC),
            last_tx_version=last_tx_version,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["address"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        created = bool(result.rowcount)
        if created:
            logger.info("Registered deployment %s on %s", address, network)
        return created

    async def record_tx_version(self, address: str, version: int) -> None:
        """Raise ``last_tx_version``; lower values are ignored."""
        await self.session.execute(
            update(DeploymentModel)
            .where(DeploymentModel.address == address)
            .where(
                (DeploymentModel.last_tx_version.is_(None))
                | (DeploymentModel.last_tx_version < version)
            )
            .values(last_tx_version=version)
        )
        await self.session.flush()


class SyncCursorRepository:
    """Repository for durable fetch cursors.

    A cursor never decreases within a (key, stream kind).
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: str, stream_kind: str = STREAM_KIND_TRANSACTIONS) -> int | None:
        model = await self.session.get(SyncCursorModel, (key, stream_kind))
        return int(model.last_sequence) if model else None

    async def seed(self, key: str, stream_kind: str, value: int) -> int:
        """Create the cursor at ``value`` if it does not exist yet.

        Returns:
            The cursor value now stored.
        """
        stmt = _insert(self.session, SyncCursorModel).values(
            key=key,
            stream_kind=stream_kind,
            last_sequence=str(max(0, value)),
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["key", "stream_kind"])
        await self.session.execute(stmt)
        await self.session.flush()
        stored = await self.get(key, stream_kind)
        return stored if stored is not None else max(0, value)

    async def advance(self, key: str, stream_kind: str, value: int) -> int:
        """Move the cursor forward to ``value``.

        Returns:
            The cursor value now stored (unchanged if ``value`` is behind it).
        """
        model = await self.session.get(SyncCursorModel, (key, stream_kind))
        now = datetime.now(UTC)
        if model is None:
            self.session.add(
                SyncCursorModel(
                    key=key,
                    stream_kind=stream_kind,
                    last_sequence=str(max(0, value)),
                    updated_at=now,
                )
            )
            await self.session.flush()
            return max(0, value)

        current = int(model.last_sequence)
        if value <= current:
            if value < current:
                logger.debug(
                    "Ignoring cursor regression for %s/%s: %d < %d", key, stream_kind, value, current
                )
            return current
        model.last_sequence = str(value)
        model.updated_at = now
        await self.session.flush()
        return value


class SyncMetadataRepository:
    """Repository for sync run metadata."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, deployment_address: str) -> SyncMetadataDTO | None:
        model = await self.session.get(
            SyncMetadataModel, deployment_address, populate_existing=True
        )
        return SyncMetadataDTO.from_model(model) if model else None

    async def list_all(self) -> list[SyncMetadataDTO]:
        """Metadata of every synced deployment, without account-priority rows."""
        result = await self.session.execute(
            select(SyncMetadataModel)
            .where(~SyncMetadataModel.deployment_address.contains("#"))
            .order_by(SyncMetadataModel.deployment_address)
            .execution_options(populate_existing=True)
        )
        return [SyncMetadataDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(self, dto: SyncMetadataDTO) -> SyncMetadataDTO:
        values = {
            "deployment_address": dto.deployment_address,
            "last_synced_at": dto.last_synced_at,
            "events_processed": dto.events_processed,
            "sync_duration_ms": dto.sync_duration_ms,
            "has_more": dto.has_more,
        }
        stmt = _insert(self.session, SyncMetadataModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["deployment_address"],
            set_={
                "last_synced_at": stmt.excluded.last_synced_at,
                "events_processed": stmt.excluded.events_processed,
                "sync_duration_ms": stmt.excluded.sync_duration_ms,
                "has_more": stmt.excluded.has_more,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto


class AccountRepository:
    """Repository for protocol accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, deployment_address: str, account_id: str) -> AccountDTO | None:
        result = await self.session.execute(
            select(AccountModel).where(
                AccountModel.deployment_address == deployment_address,
                AccountModel.account_id == account_id,
            )
        )
        model = result.scalar_one_or_none()
        return AccountDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: AccountDTO) -> bool:
        """Create the account row unless it exists.

        Returns:
            True if a new row was created.
        """
        stmt = _insert(self.session, AccountModel).values(
            deployment_address=dto.deployment_address,
            account_id=dto.account_id,
            wallet_address=dto.wallet_address,
            driver_type=dto.driver_type,
            driver_name=dto.driver_name,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["deployment_address", "account_id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def fill_identity(
        self,
        deployment_address: str,
        account_id: str,
        *,
        wallet_address: str | None,
        driver_type: int,
        driver_name: str | None,
    ) -> bool:
        """Fill in identity fields that are still unknown.

        A known wallet address or driver is never overwritten.

        Returns:
            True if the row changed.
        """
        result = await self.session.execute(
            select(AccountModel).where(
                AccountModel.deployment_address == deployment_address,
                AccountModel.account_id == account_id,
            )
        )
        model = result.scalar_one_or_none()
        if model is None:
            return False

        changed = False
        if model.wallet_address is None and wallet_address is not None:
            model.wallet_address = wallet_address
            changed = True
        if model.driver_type == 0 and driver_type != 0:
            model.driver_type = driver_type
            changed = True
        if model.driver_name is None and driver_name is not None:
            model.driver_name = driver_name
            changed = True
        if changed:
            await self.session.flush()
        return changed

    async def list_for_deployment(self, deployment_address: str) -> list[AccountDTO]:
        result = await self.session.execute(
            select(AccountModel)
            .where(AccountModel.deployment_address == deployment_address)
            .order_by(AccountModel.id)
            .execution_options(populate_existing=True)
        )
        return [AccountDTO.from_model(m) for m in result.scalars().all()]

    async def list_unresolved(self, deployment_address: str, driver_type: int) -> list[AccountDTO]:
        """Accounts of the given driver whose wallet address is still unknown."""
        result = await self.session.execute(
            select(AccountModel)
            .where(
                AccountModel.deployment_address == deployment_address,
                AccountModel.driver_type == driver_type,
                AccountModel.wallet_address.is_(None),
            )
            .order_by(AccountModel.id)
        )
        return [AccountDTO.from_model(m) for m in result.scalars().all()]

    async def deployments_for_wallet(self, wallet_address: str) -> list[str]:
        """Deployments in which ``wallet_address`` owns an account, oldest first."""
        result = await self.session.execute(
            select(AccountModel.deployment_address)
            .where(AccountModel.wallet_address == wallet_address)
            .group_by(AccountModel.deployment_address)
            .order_by(func.min(AccountModel.id))
        )
        return list(result.scalars().all())


class StreamRepository:
    """Repository for streams."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def deactivate_sender(self, deployment_address: str, sender_id: str) -> int:
        """Mark every active stream of ``sender_id`` inactive.

        Returns:
            Number of rows deactivated.
        """
        result = await self.session.execute(
            update(StreamModel)
            .where(
                StreamModel.deployment_address == deployment_address,
                StreamModel.sender_id == sender_id,
                StreamModel.active.is_(True),
            )
            .values(active=False, updated_at=datetime.now(UTC))
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def upsert(self, dto: StreamDTO) -> StreamDTO:
        """Insert the stream or update its terms and reactivate it."""
        now = datetime.now(UTC)
        values = {
            "deployment_address": dto.deployment_address,
            "sender_id": dto.sender_id,
            "receiver_id": dto.receiver_id,
            "stream_id": dto.stream_id,
            "fa_metadata": dto.fa_metadata,
            "amt_per_sec": dto.amt_per_sec,
            "start_time": dto.start_time,
            "duration": dto.duration,
            "active": dto.active,
        }
        stmt = _insert(self.session, StreamModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["deployment_address", "sender_id", "receiver_id", "stream_id"],
            set_={
                "fa_metadata": stmt.excluded.fa_metadata,
                "amt_per_sec": stmt.excluded.amt_per_sec,
                "start_time": stmt.excluded.start_time,
                "duration": stmt.excluded.duration,
                "active": stmt.excluded.active,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto

    async def list_for_sender(
        self,
        deployment_address: str,
        sender_id: str,
        *,
        active_only: bool = False,
    ) -> list[StreamDTO]:
        query = select(StreamModel).where(
            StreamModel.deployment_address == deployment_address,
            StreamModel.sender_id == sender_id,
        ).execution_options(populate_existing=True)
        if active_only:
            query = query.where(StreamModel.active.is_(True))
        result = await self.session.execute(query.order_by(StreamModel.id))
        return [StreamDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_deployment(self, deployment_address: str) -> list[StreamDTO]:
        result = await self.session.execute(
            select(StreamModel)
            .where(StreamModel.deployment_address == deployment_address)
            .order_by(StreamModel.id)
            .execution_options(populate_existing=True)
        )
        return [StreamDTO.from_model(m) for m in result.scalars().all()]


class SplitRepository:
    """Repository for split configurations (replace-entirely semantics)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def replace(
        self,
        deployment_address: str,
        account_id: str,
        receivers: Sequence[tuple[str, int]],
    ) -> int:
        """Replace the account's split configuration with ``receivers``.

        Repeated receivers collapse onto one row (the last weight wins).

        Returns:
            Number of split rows the account now has.
        """
        await self.session.execute(
            delete(SplitModel).where(
                SplitModel.deployment_address == deployment_address,
                SplitModel.account_id == account_id,
            )
        )
        now = datetime.now(UTC)
        for receiver_id, weight in receivers:
            stmt = _insert(self.session, SplitModel).values(
                deployment_address=deployment_address,
                account_id=account_id,
                receiver_id=receiver_id,
                weight=weight,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["deployment_address", "account_id", "receiver_id"],
                set_={"weight": stmt.excluded.weight, "updated_at": stmt.excluded.updated_at},
            )
            await self.session.execute(stmt)
        await self.session.flush()
        return len({receiver_id for receiver_id, _ in receivers})

    async def list_for_account(self, deployment_address: str, account_id: str) -> list[SplitDTO]:
        result = await self.session.execute(
            select(SplitModel)
            .where(
                SplitModel.deployment_address == deployment_address,
                SplitModel.account_id == account_id,
            )
            .order_by(SplitModel.receiver_id)
            .execution_options(populate_existing=True)
        )
        return [SplitDTO.from_model(m) for m in result.scalars().all()]


class EventRepository:
    """Repository for the append-only event log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: EventDTO) -> bool:
        """Append an event occurrence; replays of the same occurrence are ignored.

        Returns:
            True if a new row was written.
        """
        stmt = _insert(self.session, EventModel).values(
            deployment_address=dto.deployment_address,
            event_type=dto.event_type,
            account_id=dto.account_id,
            data=dto.data,
            tx_hash=dto.tx_hash,
            tx_version=dto.tx_version,
            event_index=dto.event_index,
            sequence_number=dto.sequence_number,
            timestamp=dto.timestamp,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=[
                "deployment_address",
                "event_type",
                "account_id",
                "tx_version",
                "event_index",
            ]
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def count(self, deployment_address: str, *, event_type: str | None = None) -> int:
        query = select(func.count(EventModel.id)).where(
            EventModel.deployment_address == deployment_address
        )
        if event_type is not None:
            query = query.where(EventModel.event_type == event_type)
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def list_for_account(
        self,
        deployment_address: str,
        account_id: str,
        *,
        limit: int = 100,
    ) -> list[EventDTO]:
        result = await self.session.execute(
            select(EventModel)
            .where(
                EventModel.deployment_address == deployment_address,
                EventModel.account_id == account_id,
            )
            .order_by(EventModel.tx_version.desc(), EventModel.event_index.desc())
            .limit(limit)
        )
        return [EventDTO.from_model(m) for m in result.scalars().all()]


class TokenRepository:
    """Repository for immutable token metadata."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> TokenDTO | None:
        model = await self.session.get(TokenModel, address)
        return TokenDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: TokenDTO) -> bool:
        stmt = _insert(self.session, TokenModel).values(
            address=dto.address,
            symbol=dto.symbol,
            name=dto.name,
            decimals=dto.decimals,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["address"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)
