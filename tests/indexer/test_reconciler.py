"""Tests for applying decoded events to the projection."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from xylkit_indexer.chain.models import normalize_address
from xylkit_indexer.indexer.events import EventName, decode
from xylkit_indexer.indexer.identity import DriverType, calc_account_id
from xylkit_indexer.indexer.reconciler import EventContext, StateReconciler
from xylkit_indexer.storage.repos import (
    AccountRepository,
    EventRepository,
    SplitRepository,
    StreamRepository,
    TokenRepository,
)

DEPLOYMENT = normalize_address("0x1c5d")
SENDER = normalize_address("0x7")
MINTER = "0x" + "ab" * 32


def nft_account_id(salt: int) -> int:
    return ((calc_account_id(MINTER) & ((1 << 160) - 1)) << 64) | salt


def ctx(tx_version: int = 100, event_index: int = 0, **kwargs) -> EventContext:
    return EventContext(
        deployment_address=DEPLOYMENT,
        tx_version=tx_version,
        event_index=event_index,
        timestamp=datetime(2026, 1, 1, tzinfo=UTC),
        tx_hash="0x" + format(tx_version, "064x"),
        **kwargs,
    )


def streams_set(account_id: str, receivers: list[str], amt: str = "1000"):
    return decode(
        EventName.STREAMS_SET,
        {
            "account_id": account_id,
            "fa_metadata": {"inner": "0xa"},
            "receiver_account_ids": receivers,
            "receiver_stream_ids": ["1"] * len(receivers),
            "receiver_amt_per_secs": [amt] * len(receivers),
            "receiver_starts": ["0"] * len(receivers),
            "receiver_durations": ["0"] * len(receivers),
            "balance": "100",
            "max_end": "0",
        },
    )


def splits_set(account_id: str, receivers: list[tuple[str, str]]):
    return decode(
        EventName.SPLITS_SET,
        {
            "account_id": account_id,
            "receiver_account_ids": [r for r, _ in receivers],
            "receiver_weights": [w for _, w in receivers],
        },
    )


# ============================================================================
# Streams
# ============================================================================


class TestStreamsSet:
    @pytest.mark.asyncio
    async def test_creates_accounts_streams_and_log(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        assert await reconciler.apply(async_session, streams_set("7", ["8", "9"]), ctx(sender=SENDER))

        streams = await StreamRepository(async_session).list_for_sender(DEPLOYMENT, "7")
        assert [(s.receiver_id, s.active) for s in streams] == [("8", True), ("9", True)]
        assert streams[0].fa_metadata == normalize_address("0xa")

        accounts = await AccountRepository(async_session).list_for_deployment(DEPLOYMENT)
        assert {a.account_id for a in accounts} == {"7", "8", "9"}
        assert await EventRepository(async_session).count(DEPLOYMENT) == 1
        assert await TokenRepository(async_session).get(normalize_address("0xa")) is not None

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        payload = streams_set("7", ["8"])
        assert await reconciler.apply(async_session, payload, ctx()) is True
        assert await reconciler.apply(async_session, payload, ctx()) is False

        streams = await StreamRepository(async_session).list_for_deployment(DEPLOYMENT)
        assert len(streams) == 1
        assert streams[0].active is True
        assert await EventRepository(async_session).count(DEPLOYMENT) == 1
        assert len(await AccountRepository(async_session).list_for_deployment(DEPLOYMENT)) == 2

    @pytest.mark.asyncio
    async def test_new_configuration_deactivates_dropped_receivers(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        await reconciler.apply(async_session, streams_set("7", ["8", "9"]), ctx(100))
        await reconciler.apply(async_session, streams_set("7", ["9"], amt="3000"), ctx(101))

        repo = StreamRepository(async_session)
        active = await repo.list_for_sender(DEPLOYMENT, "7", active_only=True)
        assert [(s.receiver_id, s.amt_per_sec) for s in active] == [("9", "3000")]
        history = await repo.list_for_sender(DEPLOYMENT, "7")
        assert {(s.receiver_id, s.active) for s in history} == {("8", False), ("9", True)}

    @pytest.mark.asyncio
    async def test_empty_configuration_stops_all_streams(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        await reconciler.apply(async_session, streams_set("7", ["8", "9"]), ctx(100))
        await reconciler.apply(async_session, streams_set("7", []), ctx(101))

        repo = StreamRepository(async_session)
        assert await repo.list_for_sender(DEPLOYMENT, "7", active_only=True) == []
        assert len(await repo.list_for_sender(DEPLOYMENT, "7")) == 2


# ============================================================================
# Splits
# ============================================================================


class TestSplitsSet:
    @pytest.mark.asyncio
    async def test_configuration_is_replaced_entirely(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        await reconciler.apply(
            async_session, splits_set("7", [("8", "600000"), ("9", "400000")]), ctx(100)
        )
        await reconciler.apply(async_session, splits_set("7", [("10", "1000000")]), ctx(101))

        splits = await SplitRepository(async_session).list_for_account(DEPLOYMENT, "7")
        assert [(s.receiver_id, s.weight) for s in splits] == [("10", 1_000_000)]
        accounts = await AccountRepository(async_session).list_for_deployment(DEPLOYMENT)
        assert {a.account_id for a in accounts} == {"7", "8", "9", "10"}


# ============================================================================
# Other events
# ============================================================================


class TestOtherEvents:
    @pytest.mark.asyncio
    async def test_given_ensures_receiver(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        payload = decode(
            EventName.GIVEN,
            {"account_id": "7", "receiver_id": "8", "fa_metadata": "0xa", "amount": "5"},
        )
        await reconciler.apply(async_session, payload, ctx())

        repo = AccountRepository(async_session)
        assert await repo.get(DEPLOYMENT, "8") is not None
        events = await EventRepository(async_session).list_for_account(DEPLOYMENT, "7")
        assert events[0].event_type == "Given"
        assert events[0].data["receiver_id"] == "8"

    @pytest.mark.asyncio
    async def test_same_transaction_events_are_distinct(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        payload = decode(EventName.COLLECTED, {"account_id": "7", "fa_metadata": "0xa", "amount": "5"})
        assert await reconciler.apply(async_session, payload, ctx(100, 0)) is True
        assert await reconciler.apply(async_session, payload, ctx(100, 1)) is True
        assert await EventRepository(async_session).count(DEPLOYMENT) == 2


# ============================================================================
# Account identity
# ============================================================================


class TestAccountIdentity:
    @pytest.mark.asyncio
    async def test_sender_hint_resolves_primary_only(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        await reconciler.apply(async_session, streams_set("7", ["8"]), ctx(sender=SENDER))

        repo = AccountRepository(async_session)
        primary = await repo.get(DEPLOYMENT, "7")
        assert primary.wallet_address == SENDER
        assert primary.driver_type == DriverType.ADDRESS
        receiver = await repo.get(DEPLOYMENT, "8")
        assert receiver.wallet_address is None
        assert receiver.driver_type == DriverType.UNKNOWN

    @pytest.mark.asyncio
    async def test_entry_function_hint_not_applied_to_counterparts(
        self, async_session: AsyncSession, reconciler: StateReconciler, chain
    ) -> None:
        nft_id = nft_account_id(1)
        chain.nft_owners[nft_id] = "0x9"

        await reconciler.apply(
            async_session,
            streams_set(str(nft_id), ["8"]),
            ctx(entry_function=f"{DEPLOYMENT}::nft_driver::set_streams"),
        )

        repo = AccountRepository(async_session)
        owner = await repo.get(DEPLOYMENT, str(nft_id))
        assert owner.driver_type == DriverType.NFT
        assert owner.wallet_address == normalize_address("0x9")
        assert (await repo.get(DEPLOYMENT, "8")).driver_type == DriverType.UNKNOWN

    @pytest.mark.asyncio
    async def test_unknown_account_filled_by_later_evidence(
        self, async_session: AsyncSession, reconciler: StateReconciler
    ) -> None:
        await reconciler.apply(async_session, streams_set("8", ["7"]), ctx(100))
        repo = AccountRepository(async_session)
        assert (await repo.get(DEPLOYMENT, "7")).wallet_address is None

        given = decode(EventName.GIVEN, {"account_id": "7", "fa_metadata": "0xa", "amount": "1"})
        await reconciler.apply(async_session, given, ctx(101, sender=SENDER))

        account = await repo.get(DEPLOYMENT, "7")
        assert account.wallet_address == SENDER
        assert account.driver_name == "address_driver"

    @pytest.mark.asyncio
    async def test_refresh_unresolved_nft_owners(
        self, async_session: AsyncSession, reconciler: StateReconciler, chain
    ) -> None:
        nft_id = nft_account_id(2)
        payload = decode(EventName.COLLECTED, {"account_id": str(nft_id), "amount": "1"})
        await reconciler.apply(
            async_session, payload, ctx(entry_function=f"{DEPLOYMENT}::nft_driver::collect")
        )
        assert await reconciler.refresh_unresolved(async_session, DEPLOYMENT) == 0

        chain.nft_owners[nft_id] = "0x9"
        assert await reconciler.refresh_unresolved(async_session, DEPLOYMENT) == 1
        account = await AccountRepository(async_session).get(DEPLOYMENT, str(nft_id))
        assert account.wallet_address == normalize_address("0x9")
