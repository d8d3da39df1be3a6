"""SQLAlchemy models for persistent storage.

This module defines the database schema for the protocol projection:
deployments, sync progress, accounts, streams, splits, the raw event log
and token metadata.

Account ids, stream ids and amounts are unsigned integers of up to 256 bits
and are stored as decimal strings.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# "0x" + 64 hex digits
ADDRESS_LENGTH = 66
# Decimal digits of 2**256 - 1
U256_DIGITS = 78


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class DeploymentModel(Base):
    """A protocol deployment (the account publishing the Move modules)."""

    __tablename__ = "deployments"

    address: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), primary_key=True)
    network: Mapped[str] = mapped_column(String(64), nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    last_tx_version: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class SyncCursorModel(Base):
    """Durable fetch progress per (key, stream kind).

    ``key`` is a deployment address, a user address (``user_discovery``) or
    ``<deployment>#<account_id>`` for account-priority runs.
    """

    __tablename__ = "sync_cursors"

    key: Mapped[str] = mapped_column(String(160), primary_key=True)
    stream_kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_sequence: Mapped[str] = mapped_column(String(32), nullable=False, default="0")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class SyncMetadataModel(Base):
    """Outcome of the last sync run; drives the cooldown gate.

    Keyed like ``SyncCursorModel``: a deployment address, or
    ``<deployment>#<account_id>`` for account-priority runs.
    """

    __tablename__ = "sync_metadata"

    deployment_address: Mapped[str] = mapped_column(String(160), primary_key=True)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    events_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sync_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    has_more: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AccountModel(Base):
    """A protocol account, created the first time an event references it."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_address: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    account_id: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    wallet_address: Mapped[str | None] = mapped_column(String(ADDRESS_LENGTH), nullable=True)
    driver_type: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    driver_name: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("deployment_address", "account_id", name="uq_accounts_deployment_account"),
        Index("idx_accounts_wallet", "wallet_address"),
    )


class StreamModel(Base):
    """A stream from sender to receiver; inactive rows are kept as history."""

    __tablename__ = "streams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_address: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    stream_id: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    fa_metadata: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    amt_per_sec: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    duration: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "deployment_address",
            "sender_id",
            "receiver_id",
            "stream_id",
            name="uq_streams_key",
        ),
        Index("idx_streams_sender_active", "deployment_address", "sender_id", "active"),
        Index("idx_streams_receiver", "deployment_address", "receiver_id"),
    )


class SplitModel(Base):
    """One receiver of an account's split configuration (weight out of 1,000,000)."""

    __tablename__ = "splits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_address: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    account_id: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("deployment_address", "account_id", "receiver_id", name="uq_splits_key"),
        Index("idx_splits_receiver", "deployment_address", "receiver_id"),
    )


class EventModel(Base):
    """Append-only log of protocol events.

    Module events report ``sequence_number = 0``, so occurrences are keyed by
    transaction version and index within the transaction instead.
    """

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deployment_address: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[str] = mapped_column(String(U256_DIGITS), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(ADDRESS_LENGTH), nullable=True)
    tx_version: Mapped[int] = mapped_column(BigInteger, nullable=False)
    event_index: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "deployment_address",
            "event_type",
            "account_id",
            "tx_version",
            "event_index",
            name="uq_events_occurrence",
        ),
        Index("idx_events_account", "deployment_address", "account_id"),
        Index("idx_events_type_ts", "deployment_address", "event_type", "timestamp"),
    )


class TokenModel(Base):
    """Fungible asset metadata, fetched once per asset."""

    __tablename__ = "tokens"

    address: Mapped[str] = mapped_column(String(ADDRESS_LENGTH), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
