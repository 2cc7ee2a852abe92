"""
Cached, rate-aware request gateways.

ExplorerGateway issues Etherscan-family REST calls (GET, query parameters,
`{status, message, result}` payloads). SolanaRPCGateway issues JSON-RPC
calls (POST, `{result}` / `{error}` payloads). Both share:

- a TTL response cache, checked before any network access;
- a token bucket per chain (calls/sec from the chain strategy);
- failure classification through ErrorClassifier;
- retry with exponential backoff (1s, 2s, 4s, capped at 8s) on throttling,
  degrading to an empty result once retries are exhausted.

Design decisions:
- Only successful (or validly empty) responses are cached; degraded
  payloads never are, so a later call gets a fresh chance.
- Requests without a cache key are never cached.
- The cache is an in-process dict guarded by an asyncio.Lock.
  Concurrent writers for one key are last-write-wins.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from ledgerscan.chains import SOLANA, ChainSpec, get_chain
from ledgerscan.classify import ErrorClassifier, ErrorKind, failure_text
from ledgerscan.config import APIConfig, GatewayConfig
from ledgerscan.exceptions import (
    ConfigurationError,
    ConnectionFailedError,
    NetworkError,
    NetworkTimeoutError,
    RateLimitedError,
    RemoteError,
)

USER_AGENT = "ledgerscan/0.1"

Sleep = Callable[[float], Awaitable[None]]


def make_cache_key(blockchain: str, action: str, /, **params: Any) -> str:
    """Cache key built from chain + action + sorted parameters."""
    parts = [f"{k}={params[k]}" for k in sorted(params) if params[k] is not None]
    return f"{blockchain}:{action}:" + "&".join(parts)


def mask_api_key(key: str) -> str:
    """Mask an API key for display: first 4 + last 4 chars visible."""
    if not key:
        return "(not set)"
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


# ──────────────────────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────────────────────


@dataclass
class CacheEntry:
    payload: Any
    stored_at: float


class ResponseCache:
    """Process-lifetime TTL cache for gateway responses."""

    def __init__(
        self,
        ttl_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._clock() - entry.stored_at >= self._ttl:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.payload

    async def set(self, key: str, payload: Any) -> None:
        async with self._lock:
            self._entries[key] = CacheEntry(payload=payload, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "entries": sorted(self._entries),
            "hits": self.hits,
            "misses": self.misses,
        }

    def __len__(self) -> int:
        return len(self._entries)


class _TokenBucket:
    """Simple token bucket rate limiter."""

    def __init__(self, calls: int, period: float = 1.0) -> None:
        self._calls = calls
        self._period = period
        self._tokens: float = float(calls)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_refill
            # Refill tokens proportional to elapsed time
            refill = (elapsed / self._period) * self._calls
            self._tokens = min(self._calls, self._tokens + refill)
            self._last_refill = now

            if self._tokens < 1:
                wait = (1 - self._tokens) * (self._period / self._calls)
                await asyncio.sleep(wait)
                self._tokens = 0
                self._last_refill = time.monotonic()
            else:
                self._tokens -= 1


# ──────────────────────────────────────────────────────────────
# Shared retry loop
# ──────────────────────────────────────────────────────────────


class _Gateway:
    """Retry, classification, caching and pacing shared by both gateways."""

    def __init__(
        self,
        api: APIConfig,
        settings: GatewayConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        cache: ResponseCache | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api = api
        self._settings = settings or GatewayConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self._settings.timeout, headers={"User-Agent": USER_AGENT}
        )
        self.cache = cache if cache is not None else ResponseCache(self._settings.cache_ttl_seconds)
        self.classifier = classifier if classifier is not None else ErrorClassifier.default(
            self._settings.extra_rate_limit_phrases
        )
        self._sleep = sleep
        self._buckets: dict[str, _TokenBucket] = {}

    @property
    def settings(self) -> GatewayConfig:
        return self._settings

    def credential(self, chain: ChainSpec) -> str:
        """
        Return the chain's API key.

        Raises:
            ConfigurationError: No credential passing the length check.
        """
        key = self._api.credential_for(chain.credential)
        if not key:
            raise ConfigurationError(
                f"{chain.name} API key not configured",
                details={"blockchain": chain.name, "credential": chain.credential},
            )
        return key

    def is_configured(self, chain: ChainSpec) -> bool:
        return bool(self._api.credential_for(chain.credential))

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based): base × 2^attempt, capped."""
        return min(self._settings.backoff_base * (2**attempt), self._settings.backoff_cap)

    async def pause(self, seconds: float) -> None:
        """Pacing delay between requests (uses the injected sleep)."""
        if seconds > 0:
            await self._sleep(seconds)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _throttle(self, chain: ChainSpec) -> None:
        calls = self._settings.calls_per_second or chain.calls_per_second
        bucket = self._buckets.get(chain.name)
        if bucket is None:
            bucket = self._buckets[chain.name] = _TokenBucket(calls)
        await bucket.acquire()

    async def _run(
        self,
        chain: ChainSpec,
        label: str,
        send: Callable[[], Awaitable[tuple[Any, ErrorKind | None]]],
        empty: Callable[[Any, bool], Any],
        cache_key: str | None,
    ) -> Any:
        """
        Drive one logical request through retries.

        `send` performs a single HTTP round trip and returns the decoded
        payload plus its classification (None for success).
        """
        max_retries = self._settings.max_retries
        last_payload: Any = None

        for attempt in range(max_retries + 1):
            await self._throttle(chain)
            payload, kind = await send()
            last_payload = payload

            if kind is None or kind is ErrorKind.EMPTY:
                if kind is ErrorKind.EMPTY:
                    payload = empty(payload, False)
                if cache_key:
                    await self.cache.set(cache_key, payload)
                if attempt:
                    logger.info(f"{chain.name} {label}: succeeded after {attempt} retr{'y' if attempt == 1 else 'ies'}")
                return payload

            if kind is ErrorKind.CONFIGURATION:
                logger.error(
                    f"{chain.name} {label}: credential rejected "
                    f"({failure_text(payload) if isinstance(payload, dict) else payload})"
                )
                return empty(payload, True)

            if kind is ErrorKind.REMOTE:
                text = failure_text(payload) if isinstance(payload, dict) else str(payload)
                raise RemoteError(
                    f"{chain.name} {label} failed: {text or 'unknown error'}",
                    details={"blockchain": chain.name, "request": label},
                )

            # ErrorKind.RATE_LIMITED
            if attempt < max_retries:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"{chain.name} {label}: rate limited, retry {attempt + 1}/{max_retries} in {delay:.1f}s"
                )
                await self._sleep(delay)

        if not self._settings.degrade_on_rate_limit:
            raise RateLimitedError(
                f"{chain.name} {label}: rate limited after {max_retries} retries",
                attempts=max_retries + 1,
            )
        logger.error(f"{chain.name} {label}: rate limit retries exhausted, returning empty result")
        return empty(last_payload, True)


# ──────────────────────────────────────────────────────────────
# Explorer REST gateway
# ──────────────────────────────────────────────────────────────


def _empty_explorer_payload(payload: Any, degraded: bool) -> dict[str, Any]:
    message = payload.get("message", "") if isinstance(payload, dict) else ""
    empty: dict[str, Any] = {"status": "0", "message": message, "result": []}
    if degraded:
        empty["degraded"] = True
    return empty


class ExplorerGateway(_Gateway):
    """
    Async Etherscan-family explorer client.

    One instance serves every explorer chain; the ChainSpec supplies the
    base URL, credential and (for the multi-chain endpoint) the chainid.
    """

    async def request(
        self,
        blockchain: str | ChainSpec,
        params: dict[str, Any],
        cache_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Issue one explorer call and return its JSON payload.

        Raises:
            ConfigurationError: No credential registered for the chain
            RateLimitedError: Throttled after all retries (only when
                degrade_on_rate_limit is off)
            RemoteError: Any other explorer-reported failure
            NetworkError: Any transport failure (NetworkTimeoutError and
                ConnectionFailedError are the specific cases)
        """
        chain = blockchain if isinstance(blockchain, ChainSpec) else get_chain(blockchain)

        if cache_key:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"cache hit {cache_key}")
                return cached

        api_key = self.credential(chain)
        query: dict[str, Any] = {**params, "apikey": api_key}
        if chain.chain_id is not None:
            query["chainid"] = chain.chain_id

        label = f"{params.get('module', '')}.{params.get('action', '')}"
        if "page" in params:
            label += f" page={params['page']}"

        async def send() -> tuple[Any, ErrorKind | None]:
            logger.debug(f"GET {chain.base_url} {label} key={mask_api_key(api_key)}")
            try:
                resp = await self._client.get(chain.base_url, params=query)
            except httpx.TimeoutException as e:
                raise NetworkTimeoutError(f"{chain.name} explorer timeout: {e}") from e
            except httpx.ConnectError as e:
                raise ConnectionFailedError(f"Cannot connect to {chain.name} explorer: {e}") from e
            except httpx.TransportError as e:
                raise NetworkError(f"{chain.name} explorer transport error: {e!r}") from e

            if resp.status_code == 429:
                return {"message": "HTTP 429 Too Many Requests"}, ErrorKind.RATE_LIMITED
            if resp.status_code != 200:
                raise RemoteError(
                    f"{chain.name} explorer HTTP {resp.status_code}",
                    details={"status_code": resp.status_code},
                )
            try:
                data = resp.json()
            except ValueError as e:
                raise RemoteError(f"{chain.name} explorer returned non-JSON body") from e
            return data, self._classify(data)

        return await self._run(chain, label, send, _empty_explorer_payload, cache_key)

    def _classify(self, data: Any) -> ErrorKind | None:
        if not isinstance(data, dict):
            return ErrorKind.REMOTE
        if "status" in data:
            if str(data["status"]) == "1":
                return None
            kind = self.classifier.classify_response(data)
            return ErrorKind.EMPTY if kind is ErrorKind.EMPTY else kind
        # Proxy module answers in JSON-RPC shape, without a status field.
        if data.get("error"):
            return self.classifier.classify_response(data)
        return None


# ──────────────────────────────────────────────────────────────
# Solana JSON-RPC gateway
# ──────────────────────────────────────────────────────────────


class SolanaRPCGateway(_Gateway):
    """
    Async JSON-RPC client for the Solana chain family.

    All methods go through a single POST endpoint; the API key is part of
    the URL path.
    """

    def __init__(self, *args: Any, chain: ChainSpec = SOLANA, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._chain = chain
        self._ids = itertools.count(1)

    @property
    def chain(self) -> ChainSpec:
        return self._chain

    async def call(
        self,
        method: str,
        params: list[Any],
        cache_key: str | None = None,
    ) -> Any:
        """
        Invoke `method` and return its `result` (None when degraded).

        Raises:
            ConfigurationError: No credential configured
            RateLimitedError: Throttled after all retries (only when
                degrade_on_rate_limit is off)
            RemoteError: Any other RPC error
            NetworkError: Any transport failure
        """
        chain = self._chain
        if cache_key:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"cache hit {cache_key}")
                return cached.get("result")

        api_key = self.credential(chain)
        url = f"{chain.base_url}/{api_key}"

        async def send() -> tuple[Any, ErrorKind | None]:
            body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
            logger.debug(f"POST {chain.base_url}/{mask_api_key(api_key)} {method}")
            try:
                resp = await self._client.post(url, json=body)
            except httpx.TimeoutException as e:
                raise NetworkTimeoutError(f"{chain.name} RPC timeout: {e}") from e
            except httpx.ConnectError as e:
                raise ConnectionFailedError(f"Cannot connect to {chain.name} RPC: {e}") from e
            except httpx.TransportError as e:
                raise NetworkError(f"{chain.name} RPC transport error: {e!r}") from e

            if resp.status_code == 429:
                return {"error": {"message": "Too many requests", "code": 429}}, ErrorKind.RATE_LIMITED
            if resp.status_code in (401, 403):
                return {"error": {"message": "Unauthorized", "code": resp.status_code}}, ErrorKind.CONFIGURATION
            if resp.status_code != 200:
                raise RemoteError(
                    f"{chain.name} RPC HTTP {resp.status_code}",
                    details={"status_code": resp.status_code},
                )
            try:
                data = resp.json()
            except ValueError as e:
                raise RemoteError(f"{chain.name} RPC returned non-JSON body") from e
            if not isinstance(data, dict):
                return data, ErrorKind.REMOTE
            if data.get("error"):
                kind = self.classifier.classify_response(data)
                return data, (ErrorKind.REMOTE if kind is ErrorKind.EMPTY else kind)
            return data, None

        payload = await self._run(chain, method, send, lambda _payload, _degraded: {"result": None}, cache_key)
        return payload.get("result") if isinstance(payload, dict) else None
