"""Initial schema for deployments, sync progress and protocol state.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Deployments
    op.create_table(
        "deployments",
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("network", sa.String(64), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_tx_version", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("address"),
    )

    # Sync progress
    op.create_table(
        "sync_cursors",
        sa.Column("key", sa.String(160), nullable=False),
        sa.Column("stream_kind", sa.String(32), nullable=False),
        sa.Column("last_sequence", sa.String(32), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", "stream_kind"),
    )
    op.create_table(
        "sync_metadata",
        sa.Column("deployment_address", sa.String(160), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("events_processed", sa.Integer(), nullable=False),
        sa.Column("sync_duration_ms", sa.Integer(), nullable=False),
        sa.Column("has_more", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("deployment_address"),
    )

    # Accounts
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deployment_address", sa.String(66), nullable=False),
        sa.Column("account_id", sa.String(78), nullable=False),
        sa.Column("wallet_address", sa.String(66), nullable=True),
        sa.Column("driver_type", sa.Integer(), nullable=False),
        sa.Column("driver_name", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "deployment_address", "account_id", name="uq_accounts_deployment_account"
        ),
    )
    op.create_index("idx_accounts_wallet", "accounts", ["wallet_address"])

    # Streams
    op.create_table(
        "streams",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deployment_address", sa.String(66), nullable=False),
        sa.Column("sender_id", sa.String(78), nullable=False),
        sa.Column("receiver_id", sa.String(78), nullable=False),
        sa.Column("stream_id", sa.String(78), nullable=False),
        sa.Column("fa_metadata", sa.String(66), nullable=False),
        sa.Column("amt_per_sec", sa.String(78), nullable=False),
        sa.Column("start_time", sa.BigInteger(), nullable=False),
        sa.Column("duration", sa.BigInteger(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "deployment_address",
            "sender_id",
            "receiver_id",
            "stream_id",
            name="uq_streams_key",
        ),
    )
    op.create_index(
        "idx_streams_sender_active", "streams", ["deployment_address", "sender_id", "active"]
    )
    op.create_index("idx_streams_receiver", "streams", ["deployment_address", "receiver_id"])

    # Splits
    op.create_table(
        "splits",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deployment_address", sa.String(66), nullable=False),
        sa.Column("account_id", sa.String(78), nullable=False),
        sa.Column("receiver_id", sa.String(78), nullable=False),
        sa.Column("weight", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "deployment_address", "account_id", "receiver_id", name="uq_splits_key"
        ),
    )
    op.create_index("idx_splits_receiver", "splits", ["deployment_address", "receiver_id"])

    # Event log
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deployment_address", sa.String(66), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("account_id", sa.String(78), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("tx_version", sa.BigInteger(), nullable=False),
        sa.Column("event_index", sa.Integer(), nullable=False),
        sa.Column("sequence_number", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "deployment_address",
            "event_type",
            "account_id",
            "tx_version",
            "event_index",
            name="uq_events_occurrence",
        ),
    )
    op.create_index("idx_events_account", "events", ["deployment_address", "account_id"])
    op.create_index(
        "idx_events_type_ts", "events", ["deployment_address", "event_type", "timestamp"]
    )

    # Token metadata
    op.create_table(
        "tokens",
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )


def downgrade() -> None:
    op.drop_table("tokens")
    op.drop_index("idx_events_type_ts", table_name="events")
    op.drop_index("idx_events_account", table_name="events")
    op.drop_table("events")
    op.drop_index("idx_splits_receiver", table_name="splits")
    op.drop_table("splits")
    op.drop_index("idx_streams_receiver", table_name="streams")
    op.drop_index("idx_streams_sender_active", table_name="streams")
    op.drop_table("streams")
    op.drop_index("idx_accounts_wallet", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("sync_metadata")
    op.drop_table("sync_cursors")
    op.drop_table("deployments")
