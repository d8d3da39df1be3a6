"""Incremental fetcher - walks the global transaction log for protocol events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from xylkit_indexer.chain.client import ChainClientError
from xylkit_indexer.chain.models import normalize_address, type_tag_address
from xylkit_indexer.indexer.events import EventName, classify

if TYPE_CHECKING:
    from xylkit_indexer.chain.client import MovementClient

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 100


def clamp_batch_size(batch_size: int | None, default: int = MAX_BATCH_SIZE) -> int:
    if batch_size is None:
        batch_size = default
    return max(MIN_BATCH_SIZE, min(int(batch_size), MAX_BATCH_SIZE))


@dataclass(frozen=True)
class EventCandidate:
    """A protocol event together with the transaction it was emitted in."""

    name: EventName
    type_tag: str
    data: dict[str, Any]
    tx_version: int
    tx_hash: str
    timestamp: datetime
    event_index: int
    sequence_number: int = 0
    sender: str | None = None
    entry_function: str | None = None


@dataclass(frozen=True)
class FetchResult:
    """Outcome of scanning one batch of transactions.

    A degraded result carries the reason the scan failed and reports no
    progress and no events.
    """

    events: tuple[EventCandidate, ...]
    new_cursor: int
    transactions_scanned: int
    degraded_reason: str | None = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None


class IncrementalFetcher:
    """Scans ``GET /transactions`` pages and keeps one deployment's events."""

    def __init__(self, client: MovementClient) -> None:
        self._client = client

    async def fetch(self, deployment_address: str, start_cursor: int, batch_size: int) -> FetchResult:
        """Scan up to ``batch_size`` transactions starting at version ``start_cursor``.

        The returned cursor is the version of the last transaction scanned,
        whether or not it held relevant events, and never less than
        ``start_cursor``. Chain failures are reported as a degraded result.
        """
        deployment = normalize_address(deployment_address)
        start_cursor = max(0, start_cursor)
        limit = clamp_batch_size(batch_size)

        try:
            transactions = await self._client.get_transactions(start=start_cursor, limit=limit)
        except ChainClientError as e:
            logger.warning("Transaction scan from %d failed: %s", start_cursor, e)
            return FetchResult(
                events=(),
                new_cursor=start_cursor,
                transactions_scanned=0,
                degraded_reason=f"chain unavailable: {e}",
            )

        events: list[EventCandidate] = []
        new_cursor = start_cursor
        for tx in transactions:
            new_cursor = max(new_cursor, tx.version)
            for event in tx.events:
                if type_tag_address(event.type) != deployment:
                    continue
                name = classify(event.type)
                if name is None:
                    continue
                events.append(
                    EventCandidate(
                        name=name,
                        type_tag=event.type,
                        data=event.data,
                        tx_version=tx.version,
                        tx_hash=tx.hash,
                        timestamp=tx.timestamp,
                        event_index=event.index,
                        sequence_number=event.sequence_number,
                        sender=tx.sender,
                        entry_function=tx.entry_function,
                    )
                )

        logger.debug(
            "Scanned %d transactions from %d for %s: %d events",
            len(transactions),
            start_cursor,
            deployment,
            len(events),
        )
        return FetchResult(
            events=tuple(events),
            new_cursor=new_cursor,
            transactions_scanned=len(transactions),
        )
