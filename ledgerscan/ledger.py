"""
Query façade: balances and reconciled transaction history.

LedgerClient is a constructed object carrying its own configuration,
response cache and HTTP client, so independently configured instances can
coexist in one process.

Usage:
    async with LedgerClient(load_config()) as client:
        snapshot = await client.get_balance(address, "ethereum")
        history = await client.get_history(address, "bsc", currency="USDT", limit=50)

Pipeline for history: fetch every source (all-settled) → filter by date and
currency → reconcile outgoing token fees → unify → truncate to `limit`.

Design decisions:
- Remote degradation never raises here. Balances come back with
  is_live=False and an error; histories come back with whatever sources
  succeeded, plus per-source diagnostics on the HistoryReport.
- Caller errors (unknown chain, malformed address, bad date range) raise.
- The explorer's block range is only used as a coarse pre-filter for
  ranges starting within the last year, widened by a slack factor.
"""

from __future__ import annotations

import asyncio
import time
from datetime import date, datetime, time as dtime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import httpx
from loguru import logger

from ledgerscan.chains import ChainSpec, get_chain
from ledgerscan.classify import ErrorClassifier
from ledgerscan.config import LedgerscanConfig
from ledgerscan.exceptions import (
    ConfigurationError,
    DataError,
    InvalidAddressError,
    LedgerscanError,
    PartialDataWarning,
)
from ledgerscan.fetchers import HistoryFetcher, get_fetcher
from ledgerscan.gateway import USER_AGENT, ExplorerGateway, ResponseCache, SolanaRPCGateway
from ledgerscan.models import (
    BalanceSnapshot,
    HistoryReport,
    NormalizedTransaction,
    TOKEN,
)
from ledgerscan.reconcile import GasFeeReconciler, index_by_hash
from ledgerscan.unify import unify
from ledgerscan.units import lookup_token_by_symbol

DEFAULT_LIMIT = 100

# Block pre-filter only for ranges starting this recently
PREFILTER_WINDOW = timedelta(days=365)

# Fraction of blocks-since-anchor subtracted from the estimated start block
PREFILTER_SLACK = 0.1


class LedgerClient:
    """Balance and history queries across every supported chain."""

    def __init__(
        self,
        config: LedgerscanConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or LedgerscanConfig()
        settings = self.config.gateway
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=settings.timeout, headers={"User-Agent": USER_AGENT}
        )
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(tz=timezone.utc))

        self.cache = ResponseCache(settings.cache_ttl_seconds, clock=clock)
        classifier = ErrorClassifier.default(settings.extra_rate_limit_phrases)
        shared = dict(client=self._client, cache=self.cache, classifier=classifier, sleep=sleep)
        self._explorer = ExplorerGateway(self.config.api, settings, **shared)
        self._rpc = SolanaRPCGateway(self.config.api, settings, **shared)

    async def __aenter__(self) -> LedgerClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ──────────────────────────────────────────────────────────────
    # Balances
    # ──────────────────────────────────────────────────────────────

    async def get_balance(
        self, address: str, blockchain: str, network: str = "mainnet"
    ) -> BalanceSnapshot:
        """
        Native balance of `address`.

        Never raises for remote or credential problems: the snapshot comes
        back with is_live=False and `error` set, and its zero amount means
        "unknown".

        Raises:
            UnsupportedChainError: Unknown chain
            InvalidAddressError: Address format invalid for the chain
        """
        chain = get_chain(blockchain)
        fetcher = self._fetcher_for(chain, address)
        snapshot = BalanceSnapshot(
            address=address,
            blockchain=chain.name,
            network=network,
            amount=Decimal(0),
            unit=chain.native_symbol,
            fetched_at=self._timestamp(),
        )
        try:
            snapshot.amount = await fetcher.get_native_balance(address)
        except LedgerscanError as e:
            self._mark_unavailable(snapshot, e)
        return snapshot

    async def get_token_balance(
        self, address: str, token_symbol: str, blockchain: str, network: str = "mainnet"
    ) -> BalanceSnapshot:
        """
        Balance of a known token (e.g. "USDT") held by `address`.

        Raises:
            UnsupportedChainError: Unknown chain
            InvalidAddressError: Address format invalid for the chain
            DataError: Token symbol not in the chain's known-token table
        """
        chain = get_chain(blockchain)
        fetcher = self._fetcher_for(chain, address)
        token = lookup_token_by_symbol(chain.name, token_symbol)
        if token is None:
            raise DataError(
                f"Unknown token {token_symbol!r} on {chain.name}",
                details={"token": token_symbol, "blockchain": chain.name},
            )
        snapshot = BalanceSnapshot(
            address=address,
            blockchain=chain.name,
            network=network,
            amount=Decimal(0),
            unit=token.symbol,
            fetched_at=self._timestamp(),
            token_contract=token.contract,
            token_type=chain.token_standard,
        )
        try:
            snapshot.amount = await fetcher.get_token_balance(address, token)
        except LedgerscanError as e:
            self._mark_unavailable(snapshot, e)
        return snapshot

    # ──────────────────────────────────────────────────────────────
    # History
    # ──────────────────────────────────────────────────────────────

    async def get_history(
        self,
        address: str,
        blockchain: str,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
        currency: str | None = None,
        limit: int | None = DEFAULT_LIMIT,
    ) -> list[NormalizedTransaction]:
        """The `limit` most recent de-duplicated records matching the filters."""
        report = await self.fetch_history(
            address, blockchain, start_date, end_date, currency, limit
        )
        return report.transactions

    async def fetch_history(
        self,
        address: str,
        blockchain: str,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
        currency: str | None = None,
        limit: int | None = DEFAULT_LIMIT,
    ) -> HistoryReport:
        """
        Same pipeline as get_history, returning per-source diagnostics.

        A plain `date` as end_date includes that whole day (UTC).
        `limit` of None or 0 returns every matching record.

        Raises:
            UnsupportedChainError: Unknown chain
            InvalidAddressError: Address format invalid for the chain
            DataError: start_date is after end_date
        """
        chain = get_chain(blockchain)
        fetcher = self._fetcher_for(chain, address)
        start = _as_utc(start_date, end_of_day=False)
        end = _as_utc(end_date, end_of_day=True)
        if start and end and start > end:
            raise DataError(
                f"start_date {start.isoformat()} is after end_date {end.isoformat()}"
            )

        report = HistoryReport(address=address, blockchain=chain.name, fetched_at=self._timestamp())
        start_block = self._prefilter_block(chain, start)

        try:
            results = await fetcher.fetch_sources(
                address, start_block, None, start_time=start, end_time=end
            )
        except ConfigurationError as e:
            logger.error(f"{chain.name} history unavailable: {e.message}")
            report.error = e.message
            return report

        streams: list[list[NormalizedTransaction]] = []
        natives: list[NormalizedTransaction] = []
        for result in results:
            if result.error is not None:
                report.source_errors[result.source] = result.error.message
                if isinstance(result.error, PartialDataWarning):
                    report.warnings.append(result.error)
            if result.source != TOKEN:
                natives.extend(r for r in result.records if not r.is_internal)
            streams.append(
                [r for r in result.records if _in_range(r, start, end) and _matches(r, currency)]
            )
        if results and all(not r.records and r.error is not None for r in results):
            report.error = "all sources failed"

        if chain.is_explorer:
            reconciler = GasFeeReconciler(
                chain,
                fetcher.lookup_gas,
                lookup_pause=self.config.gateway.lookup_pause,
                sleep=self._sleep,
            )
            siblings = index_by_hash(natives)
            for i, stream in enumerate(streams):
                if any(r.record_kind == TOKEN for r in stream):
                    streams[i] = await reconciler.reconcile(stream, siblings)
                    report.warnings.extend(reconciler.warnings)

        unified = unify(streams)
        report.transactions = unified[:limit] if limit else unified
        logger.info(
            f"{chain.name} history for {address}: {len(unified)} unified, "
            f"{len(report.transactions)} returned, {len(report.source_errors)} degraded sources"
        )
        return report

    # ──────────────────────────────────────────────────────────────
    # Cache
    # ──────────────────────────────────────────────────────────────

    def clear_cache(self) -> None:
        """Drop every cached response."""
        self.cache.clear()
        logger.info("response cache cleared")

    def cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    def _fetcher_for(self, chain: ChainSpec, address: str) -> HistoryFetcher:
        fetcher = get_fetcher(chain, explorer=self._explorer, rpc=self._rpc)
        if not fetcher.validate_address(address):
            raise InvalidAddressError(
                f"Invalid {chain.name} address: {address!r}",
                details={"address": address, "blockchain": chain.name},
            )
        return fetcher

    def _timestamp(self) -> str:
        return self._now().isoformat()

    def _mark_unavailable(self, snapshot: BalanceSnapshot, error: LedgerscanError) -> None:
        log = logger.error if isinstance(error, ConfigurationError) else logger.warning
        log(f"{snapshot.blockchain} {snapshot.unit} balance unavailable: {error.message}")
        snapshot.is_live = False
        snapshot.error = error.message

    def _prefilter_block(self, chain: ChainSpec, start: datetime | None) -> int:
        """Coarse explorer startblock; 0 unless the range began within the window."""
        if start is None or not chain.is_explorer:
            return 0
        if self._now() - start > PREFILTER_WINDOW:
            return 0
        estimate = chain.block_from_date(start)
        slack = int((estimate - chain.anchor_block) * PREFILTER_SLACK)
        return max(0, estimate - slack)


def _as_utc(value: date | datetime | None, end_of_day: bool) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.combine(value, dtime.max if end_of_day else dtime.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _in_range(record: NormalizedTransaction, start: datetime | None, end: datetime | None) -> bool:
    if start is not None and record.timestamp < start.timestamp() * 1000:
        return False
    if end is not None and record.timestamp > end.timestamp() * 1000:
        return False
    return True


def _matches(record: NormalizedTransaction, currency: str | None) -> bool:
    return not currency or record.currency.upper() == currency.upper()
