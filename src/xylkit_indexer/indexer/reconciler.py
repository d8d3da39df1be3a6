"""State reconciler - applies decoded events to the relational projection.

Every write is replay-safe: accounts and tokens are created only when
absent, streams are upserted on their key, split configurations are
replaced as a whole, and event log rows are ignored when the same
occurrence was already logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from xylkit_indexer.indexer.events import (
    EventPayload,
    SplitsSet,
    StreamsSet,
    counterpart_account_ids,
    payload_fa_metadata,
    payload_to_json,
)
from xylkit_indexer.indexer.identity import (
    DRIVER_NAMES,
    AddressDriverAccount,
    DriverType,
    NftDriverAccount,
    classify_account,
)
from xylkit_indexer.storage.repos import (
    AccountDTO,
    AccountRepository,
    EventDTO,
    EventRepository,
    SplitRepository,
    StreamDTO,
    StreamRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from xylkit_indexer.indexer.identity import AccountIdentityResolver
    from xylkit_indexer.indexer.tokens import TokenRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventContext:
    """Where an event was observed.

    ``sender`` and ``entry_function`` describe the transaction and are hints
    for the event's primary (acting) account only.
    """

    deployment_address: str
    tx_version: int
    event_index: int
    timestamp: datetime
    tx_hash: str | None = None
    sequence_number: int = 0
    sender: str | None = None
    entry_function: str | None = None


class StateReconciler:
    """Sole writer of accounts, streams, splits and the event log."""

    def __init__(self, resolver: AccountIdentityResolver, tokens: TokenRegistry) -> None:
        self._resolver = resolver
        self._tokens = tokens

    async def apply(self, session: AsyncSession, payload: EventPayload, ctx: EventContext) -> bool:
        """Apply one decoded event.

        Returns:
            True if the event was newly written to the event log, False for a replay.
        """
        deployment = ctx.deployment_address

        fa_metadata = payload_fa_metadata(payload)
        if fa_metadata:
            await self._tokens.ensure(session, fa_metadata)

        await self.ensure_account(
            session,
            deployment,
            payload.account_id,
            sender_hint=ctx.sender,
            entry_function_hint=ctx.entry_function,
        )

        if isinstance(payload, StreamsSet):
            await self._apply_streams_set(session, payload, ctx)
        elif isinstance(payload, SplitsSet):
            await self._apply_splits_set(session, payload, ctx)
        else:
            for account_id in counterpart_account_ids(payload):
                await self.ensure_account(session, deployment, account_id, sender_hint=ctx.sender)

        logged = await EventRepository(session).insert(
            EventDTO(
                deployment_address=deployment,
                event_type=payload.name.value,
                account_id=str(payload.account_id),
                tx_version=ctx.tx_version,
                event_index=ctx.event_index,
                timestamp=ctx.timestamp,
                data=payload_to_json(payload),
                tx_hash=ctx.tx_hash,
                sequence_number=ctx.sequence_number,
            )
        )
        if not logged:
            logger.debug(
                "Event %s at %d/%d already logged", payload.name.value, ctx.tx_version, ctx.event_index
            )
        return logged

    async def _apply_streams_set(
        self,
        session: AsyncSession,
        payload: StreamsSet,
        ctx: EventContext,
    ) -> None:
        deployment = ctx.deployment_address
        sender_id = str(payload.account_id)
        streams = StreamRepository(session)

        deactivated = await streams.deactivate_sender(deployment, sender_id)
        for receiver in payload.receivers:
            await self.ensure_account(session, deployment, receiver.account_id, sender_hint=ctx.sender)
            await streams.upsert(
                StreamDTO(
                    deployment_address=deployment,
                    sender_id=sender_id,
                    receiver_id=str(receiver.account_id),
                    stream_id=str(receiver.stream_id),
                    fa_metadata=payload.fa_metadata,
                    amt_per_sec=str(receiver.amt_per_sec),
                    start_time=receiver.start,
                    duration=receiver.duration,
                    active=True,
                )
            )
        logger.debug(
            "Streams of %s: %d deactivated, %d set", sender_id, deactivated, len(payload.receivers)
        )

    async def _apply_splits_set(
        self,
        session: AsyncSession,
        payload: SplitsSet,
        ctx: EventContext,
    ) -> None:
        deployment = ctx.deployment_address
        for receiver in payload.receivers:
            await self.ensure_account(session, deployment, receiver.account_id, sender_hint=ctx.sender)
        await SplitRepository(session).replace(
            deployment,
            str(payload.account_id),
            [(str(r.account_id), r.weight) for r in payload.receivers],
        )

    async def ensure_account(
        self,
        session: AsyncSession,
        deployment_address: str,
        account_id: int,
        *,
        sender_hint: str | None = None,
        entry_function_hint: str | None = None,
    ) -> AccountDTO:
        """Create the account on first reference; fill missing identity from local evidence later."""
        repo = AccountRepository(session)
        existing = await repo.get(deployment_address, str(account_id))

        if existing is None:
            identity = await self._resolver.resolve(
                account_id,
                deployment_address,
                sender_hint=sender_hint,
                entry_function_hint=entry_function_hint,
            )
            dto = AccountDTO(
                deployment_address=deployment_address,
                account_id=str(account_id),
                wallet_address=identity.wallet_address,
                driver_type=int(identity.driver_type),
                driver_name=identity.driver_name,
            )
            await repo.insert_if_absent(dto)
            return dto

        if existing.wallet_address is None or existing.driver_name is None:
            ref = classify_account(
                account_id,
                sender_hint=sender_hint,
                entry_function_hint=entry_function_hint,
            )
            if isinstance(ref, AddressDriverAccount) and existing.driver_type != DriverType.NFT:
                await repo.fill_identity(
                    deployment_address,
                    str(account_id),
                    wallet_address=ref.wallet_address,
                    driver_type=int(DriverType.ADDRESS),
                    driver_name=DRIVER_NAMES[DriverType.ADDRESS],
                )
            elif isinstance(ref, NftDriverAccount) and existing.driver_type == DriverType.UNKNOWN:
                # Owner is resolved by refresh_unresolved, not inline.
                await repo.fill_identity(
                    deployment_address,
                    str(account_id),
                    wallet_address=None,
                    driver_type=int(DriverType.NFT),
                    driver_name=DRIVER_NAMES[DriverType.NFT],
                )
        return existing

    async def refresh_unresolved(self, session: AsyncSession, deployment_address: str) -> int:
        """Retry owner lookups for NFT-driver accounts without a wallet.

        Returns:
            Number of accounts resolved.
        """
        repo = AccountRepository(session)
        resolved = 0
        for account in await repo.list_unresolved(deployment_address, int(DriverType.NFT)):
            owner = await self._resolver.lookup_nft_owner(deployment_address, int(account.account_id))
            if owner is None:
                continue
            await repo.fill_identity(
                deployment_address,
                account.account_id,
                wallet_address=owner,
                driver_type=int(DriverType.NFT),
                driver_name=DRIVER_NAMES[DriverType.NFT],
            )
            resolved += 1
        if resolved:
            logger.info("Resolved %d NFT account owners in %s", resolved, deployment_address)
        return resolved
