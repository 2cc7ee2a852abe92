"""
Gas-fee reconciliation for token transfer records.

The token-transfer endpoint reports the transfer event, not the enclosing
transaction's execution cost, so outgoing token records often arrive with
a zero fee. The cost lives on the native record sharing the hash, or has to
be looked up on the receipt.

Records are frozen; every repaired record is a copy (dataclasses.replace).
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Awaitable, Callable, Iterable, Mapping

from loguru import logger

from ledgerscan.chains import ChainSpec, wei_to_native
from ledgerscan.exceptions import LedgerscanError, PartialDataWarning
from ledgerscan.models import OUTGOING, GasLookup, NormalizedTransaction

GasLookupFn = Callable[[str, int], Awaitable["GasLookup | None"]]


def index_by_hash(records: Iterable[NormalizedTransaction]) -> dict[str, NormalizedTransaction]:
    """Native records keyed by lowercase hash; a record with a fee beats one without."""
    index: dict[str, NormalizedTransaction] = {}
    for record in records:
        key = record.hash.lower()
        current = index.get(key)
        if current is None or (record.has_fee and not current.has_fee):
            index[key] = record
    return index


class GasFeeReconciler:
    """
    Fill in missing gas fees on outgoing token records.

    Order per record: native sibling → secondary lookup (receipt, then
    transaction detail, then the chain's heuristic price) → keep zero fee,
    flag `needs_fee_lookup` and record a PartialDataWarning.

    Lookups run one at a time with `lookup_pause` between them.
    """

    def __init__(
        self,
        chain: ChainSpec,
        lookup: GasLookupFn | None = None,
        *,
        lookup_pause: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self._lookup = lookup
        self._lookup_pause = lookup_pause
        self._sleep = sleep
        self.warnings: list[PartialDataWarning] = []

    async def reconcile(
        self,
        token_records: Iterable[NormalizedTransaction],
        native_by_hash: Mapping[str, NormalizedTransaction],
    ) -> list[NormalizedTransaction]:
        """Return token records with fees filled in where possible."""
        self.warnings = []
        lookups: dict[str, GasLookup | None] = {}
        repaired: list[NormalizedTransaction] = []

        for record in token_records:
            if record.direction != OUTGOING or record.has_fee:
                repaired.append(record)
                continue

            sibling = native_by_hash.get(record.hash.lower())
            if sibling is not None and sibling.has_fee:
                repaired.append(
                    replace(
                        record,
                        gas_used=sibling.gas_used,
                        gas_fee=sibling.gas_fee,
                        fee_estimated=sibling.fee_estimated,
                        needs_fee_lookup=False,
                    )
                )
                continue

            key = record.hash.lower()
            if key not in lookups:
                lookups[key] = await self._secondary_lookup(record, first=not lookups)
            found = lookups[key]

            if found is not None:
                repaired.append(
                    replace(
                        record,
                        gas_used=found.gas_used,
                        gas_fee=wei_to_native(self.chain, found.gas_used * found.gas_price_wei),
                        fee_estimated=found.estimated,
                        needs_fee_lookup=False,
                    )
                )
                continue

            warning = PartialDataWarning(
                f"Gas fee unavailable for {record.currency} transfer {record.hash}",
                details={"hash": record.hash, "blockchain": record.blockchain},
            )
            self.warnings.append(warning)
            logger.warning(warning.message)
            repaired.append(replace(record, needs_fee_lookup=True))

        if lookups:
            logger.info(
                f"{self.chain.name}: {len(lookups)} gas lookups, {len(self.warnings)} records left without fee"
            )
        return repaired

    async def _secondary_lookup(
        self, record: NormalizedTransaction, first: bool
    ) -> GasLookup | None:
        if self._lookup is None:
            return None
        if not first and self._lookup_pause > 0:
            await self._sleep(self._lookup_pause)
        try:
            return await self._lookup(record.hash, record.block_number)
        except LedgerscanError as e:
            logger.warning(f"{self.chain.name} gas lookup for {record.hash} failed: {e.message}")
            return None
