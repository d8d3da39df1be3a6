"""Movement full-node REST client with rate limiting, retries and caching.

This module provides the chain client used by the sync engine with:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff on transient failures
- Failover to a secondary REST endpoint
- Optional Redis caching of immutable lookups (module existence)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx
from redis.asyncio import Redis

from xylkit_indexer.chain.models import LedgerInfo, Transaction, normalize_address

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_REQUEST_TIMEOUT = 30.0

# The REST API rejects page sizes above this.
MAX_PAGE_SIZE = 100

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when a REST call fails after all retries."""


def _parse_transactions(data: Any) -> list[Transaction]:
    if not isinstance(data, list):
        raise RPCError("Transaction listing is not a JSON array")
    try:
        return [Transaction.from_dict(tx) for tx in data]
    except (KeyError, TypeError, ValueError) as e:
        raise RPCError(f"Malformed transaction in listing: {e}") from e


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class MovementClient:
    """Movement REST client with caching, rate limiting and failover.

    Example:
        ```python
        client = MovementClient("https://aptos.testnet.porto.movementlabs.xyz/v1")

        tip = await client.get_ledger_version()
        txs = await client.get_transactions(start=0, limit=100)

        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Movement client.

        Args:
            rpc_url: Primary REST endpoint URL (including ``/v1``).
            fallback_rpc_url: Optional fallback endpoint for failover.
            redis: Optional Redis client for caching.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for REST calls.
            max_retries: Maximum attempts per endpoint on transient failure.
            retry_delay_seconds: Initial delay between retries.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport (used by tests).
        """
        self._rpc_url = rpc_url.rstrip("/")
        self._fallback_rpc_url = fallback_rpc_url.rstrip("/") if fallback_rpc_url else None
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds

        self._http = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary endpoint health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "movement:"

    def _cache_key(self, key_type: str, *parts: str) -> str:
        return self._cache_prefix + key_type + ":" + ":".join(p.lower() for p in parts)

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _request_endpoint(
        self,
        base_url: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        label: str,
    ) -> httpx.Response:
        """Call one endpoint with retries; returns the first non-retryable response."""
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                response = await self._http.request(
                    method, f"{base_url}{path}", params=params, json=json_body
                )
                if response.status_code not in RETRY_STATUS_CODES:
                    return response
                last_error = RPCError(f"HTTP {response.status_code}")
            except httpx.TransportError as e:
                last_error = e
            logger.warning(
                "%s %s failed (attempt %d/%d): %s",
                label,
                path,
                attempt + 1,
                self._max_retries,
                last_error,
            )
            if attempt < self._max_retries - 1:
                await asyncio.sleep(delay)
                delay *= 2  # Exponential backoff
        raise RPCError(f"{method} {path} failed after {self._max_retries} attempts: {last_error}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Execute a REST call with retry and failover logic.

        Returns:
            Decoded JSON body, or None for a 404 when ``allow_not_found``.

        Raises:
            RPCError: If all retries and failover fail or the node rejects the call.
        """
        await self._rate_limiter.acquire()

        response: httpx.Response | None = None
        last_error: RPCError | None = None

        if self._should_try_primary():
            try:
                response = await self._request_endpoint(
                    self._rpc_url, method, path, params=params, json_body=json_body, label="Primary"
                )
                self._primary_healthy = True
            except RPCError as e:
                last_error = e
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        if response is None and self._fallback_rpc_url:
            try:
                response = await self._request_endpoint(
                    self._fallback_rpc_url,
                    method,
                    path,
                    params=params,
                    json_body=json_body,
                    label="Fallback",
                )
                logger.info("Fallback endpoint succeeded for %s", path)
            except RPCError as e:
                last_error = e

        if response is None:
            raise last_error or RPCError(f"{method} {path} failed: no endpoint available")

        if response.status_code == 404 and allow_not_found:
            return None
        if response.is_error:
            raise RPCError(f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise RPCError(f"{method} {path} returned invalid JSON") from e

    async def get_ledger_info(self) -> LedgerInfo:
        """Get the current chain head (``GET /``)."""
        data = await self._request("GET", "/")
        try:
            return LedgerInfo.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise RPCError(f"Malformed ledger info: {e}") from e

    async def get_ledger_version(self) -> int:
        """Get the latest committed transaction version."""
        return (await self.get_ledger_info()).ledger_version

    async def get_transactions(self, *, start: int, limit: int) -> list[Transaction]:
        """Page through the global transaction log starting at ``start`` (inclusive)."""
        if start < 0:
            raise ValueError("start must be >= 0")
        params = {"start": start, "limit": max(1, min(limit, MAX_PAGE_SIZE))}
        data = await self._request("GET", "/transactions", params=params)
        return _parse_transactions(data)

    async def get_account(self, address: str) -> dict[str, Any] | None:
        """Get account info (sequence number, auth key); None if the account does not exist."""
        return await self._request(
            "GET", f"/accounts/{normalize_address(address)}", allow_not_found=True
        )

    async def get_account_transactions(
        self,
        address: str,
        *,
        start: int,
        limit: int,
    ) -> list[Transaction]:
        """Page through transactions sent by ``address`` by sequence number."""
        if start < 0:
            raise ValueError("start must be >= 0")
        params = {"start": start, "limit": max(1, min(limit, MAX_PAGE_SIZE))}
        data = await self._request(
            "GET",
            f"/accounts/{normalize_address(address)}/transactions",
            params=params,
            allow_not_found=True,
        )
        if data is None:
            return []
        return _parse_transactions(data)

    async def has_module(self, address: str, module_name: str) -> bool:
        """Probe whether ``address`` publishes ``module_name``.

        Positive answers are cached: published modules cannot be removed.
        """
        normalized = normalize_address(address)
        cache_key = self._cache_key("module", normalized, module_name)
        if await self._get_cached(cache_key) == "1":
            return True

        data = await self._request(
            "GET", f"/accounts/{normalized}/module/{module_name}", allow_not_found=True
        )
        exists = data is not None
        if exists:
            await self._set_cached(cache_key, "1")
        return exists

    async def get_resource(self, address: str, resource_type: str) -> dict[str, Any] | None:
        """Read a Move resource; None if the account holds no such resource."""
        return await self._request(
            "GET",
            f"/accounts/{normalize_address(address)}/resource/{resource_type}",
            allow_not_found=True,
        )

    async def view(
        self,
        function: str,
        arguments: Sequence[Any],
        *,
        type_arguments: Sequence[str] = (),
    ) -> list[Any]:
        """Execute a view function (``POST /view``)."""
        body = {
            "function": function,
            "type_arguments": list(type_arguments),
            "arguments": list(arguments),
        }
        data = await self._request("POST", "/view", json_body=body)
        if not isinstance(data, list):
            raise RPCError(f"View {function} returned a non-list result")
        return data

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()
