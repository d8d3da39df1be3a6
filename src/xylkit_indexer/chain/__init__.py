"""Chain access layer - Movement REST client and response models."""

from xylkit_indexer.chain.client import (
    ChainClientError,
    MovementClient,
    RateLimiter,
    RPCError,
)
from xylkit_indexer.chain.models import (
    ChainEvent,
    LedgerInfo,
    Transaction,
    is_address,
    normalize_address,
    type_tag_address,
)

__all__ = [
    "ChainClientError",
    "ChainEvent",
    "LedgerInfo",
    "MovementClient",
    "RPCError",
    "RateLimiter",
    "Transaction",
    "is_address",
    "normalize_address",
    "type_tag_address",
]
