"""Base fetcher protocol shared by explorer and JSON-RPC chains."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ledgerscan.chains import ChainSpec
    from ledgerscan.models import GasLookup, SourceResult
    from ledgerscan.units import TokenInfo


@runtime_checkable
class HistoryFetcher(Protocol):
    """
    Protocol that all chain fetchers implement.

    Fetchers are responsible for:
    - Paging through every record kind the chain exposes
    - Normalizing rows into NormalizedTransaction
    - Isolating per-source failures (one SourceResult per source)
    - Secondary gas lookups used by the reconciler

    Fetchers are NOT responsible for:
    - Fee reconciliation (that's reconcile.py)
    - De-duplication (that's unify.py)
    - Date/currency filtering and truncation (that's ledger.py)
    """

    chain: ChainSpec

    def validate_address(self, address: str) -> bool:
        """
        Validate address format for this chain.

        Does NOT make any network calls. Pure validation only.
        """
        ...

    async def get_native_balance(self, address: str) -> Decimal:
        """Current native balance, in the chain's native unit."""
        ...

    async def get_token_balance(self, address: str, token: TokenInfo) -> Decimal:
        """Current balance of `token`, normalized by its decimals."""
        ...

    async def fetch_sources(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[SourceResult]:
        """
        Fetch every record kind for `address`, one SourceResult per source.

        A failing source is reported through SourceResult.error and never
        cancels its siblings.
        """
        ...

    async def lookup_gas(self, tx_hash: str, block_number: int) -> GasLookup | None:
        """Gas used and price for one transaction, or None if unavailable."""
        ...
