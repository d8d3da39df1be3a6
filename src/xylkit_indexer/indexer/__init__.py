"""Sync engine - fetcher, decoder, reconciler, scheduler and discovery."""

from xylkit_indexer.indexer.discovery import DiscoveryEngine, DiscoveryResult
from xylkit_indexer.indexer.events import EventDecodeError, EventName, classify, decode
from xylkit_indexer.indexer.fetcher import EventCandidate, FetchResult, IncrementalFetcher
from xylkit_indexer.indexer.identity import (
    AccountIdentity,
    AccountIdentityResolver,
    DriverType,
    calc_account_id,
    classify_account,
)
from xylkit_indexer.indexer.reconciler import EventContext, StateReconciler
from xylkit_indexer.indexer.scheduler import (
    CooldownDecision,
    SyncResult,
    SyncScheduler,
    SyncStatus,
    SyncTargetError,
)
from xylkit_indexer.indexer.tokens import TokenRegistry

__all__ = [
    "AccountIdentity",
    "AccountIdentityResolver",
    "CooldownDecision",
    "DiscoveryEngine",
    "DiscoveryResult",
    "DriverType",
    "EventCandidate",
    "EventContext",
    "EventDecodeError",
    "EventName",
    "FetchResult",
    "IncrementalFetcher",
    "StateReconciler",
    "SyncResult",
    "SyncScheduler",
    "SyncStatus",
    "SyncTargetError",
    "TokenRegistry",
    "calc_account_id",
    "classify",
    "classify_account",
    "decode",
]
