"""
Shared data models for ledgerscan.

These dataclasses are the canonical data shapes used across all modules:
fetchers produce them, the reconciler and unifier transform them, the
ledger facade and output render them.

NormalizedTransaction is frozen. Reconciliation produces copies via
dataclasses.replace so that "before" and "after" versions can be compared.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from ledgerscan.exceptions import LedgerscanError, PartialDataWarning

INCOMING = "incoming"
OUTGOING = "outgoing"

SUCCESS = "success"
FAILED = "failed"

# record_kind values
NATIVE = "native"
INTERNAL = "internal"
TOKEN = "token"
MINING_REWARD = "mining-reward"
VALIDATOR_WITHDRAWAL = "validator-withdrawal"

RECORD_KINDS = (NATIVE, INTERNAL, TOKEN, MINING_REWARD, VALIDATOR_WITHDRAWAL)


def direction_for(address: str, to_addr: str) -> str:
    """incoming if `to_addr` is the queried address (case-insensitive), else outgoing."""
    return INCOMING if (to_addr or "").lower() == (address or "").lower() else OUTGOING


@dataclass(frozen=True)
class NormalizedTransaction:
    """A single value movement, normalised across chains and record kinds."""

    hash: str
    block_number: int
    timestamp: int              # epoch milliseconds
    from_addr: str
    to_addr: str
    amount: Decimal
    currency: str
    direction: str              # "incoming" | "outgoing"
    status: str                 # "success" | "failed"
    record_kind: str
    blockchain: str
    network: str = "mainnet"
    gas_used: int = 0
    gas_fee: Decimal = Decimal(0)
    contract_address: str | None = None
    is_internal: bool = False
    fee_estimated: bool = False
    needs_fee_lookup: bool = False
    token_name: str | None = None
    trace_id: str | None = None
    description: str = ""

    @property
    def occurred_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)

    @property
    def has_fee(self) -> bool:
        return self.gas_fee > 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "hash": self.hash,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "datetime": self.occurred_at.isoformat(),
            "from": self.from_addr,
            "to": self.to_addr,
            "amount": self.amount,
            "currency": self.currency,
            "direction": self.direction,
            "status": self.status,
            "record_kind": self.record_kind,
            "is_internal": self.is_internal,
            "gas_used": self.gas_used,
            "gas_fee": self.gas_fee,
            "fee_estimated": self.fee_estimated,
            "needs_fee_lookup": self.needs_fee_lookup,
            "contract_address": self.contract_address,
            "token_name": self.token_name,
            "blockchain": self.blockchain,
            "network": self.network,
            "description": self.description,
        }


@dataclass
class BalanceSnapshot:
    """
    Balance reading for one asset.

    is_live=False with `error` set means the balance is unknown; the zero
    in `amount` is a placeholder, not a reading.
    """

    address: str
    blockchain: str
    amount: Decimal
    unit: str
    network: str = "mainnet"
    fetched_at: str = ""        # ISO8601 UTC
    is_live: bool = True
    error: str | None = None
    token_contract: str | None = None
    token_type: str = "native"

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "blockchain": self.blockchain,
            "network": self.network,
            "amount": self.amount,
            "unit": self.unit,
            "fetched_at": self.fetched_at,
            "is_live": self.is_live,
            "error": self.error,
            "token_contract": self.token_contract,
            "token_type": self.token_type,
        }


@dataclass
class GasLookup:
    """Gas data recovered by a secondary lookup (receipt or transaction detail)."""

    gas_used: int
    gas_price_wei: int
    estimated: bool = False
    source: str = "receipt"     # "receipt" | "transaction" | "heuristic"


@dataclass
class SourceResult:
    """Outcome of one record-kind pass over the explorer."""

    source: str
    records: list[NormalizedTransaction] = field(default_factory=list)
    error: LedgerscanError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class HistoryReport:
    """History query result with per-source diagnostics."""

    address: str
    blockchain: str
    transactions: list[NormalizedTransaction] = field(default_factory=list)
    source_errors: dict[str, str] = field(default_factory=dict)
    warnings: list[PartialDataWarning] = field(default_factory=list)
    error: str | None = None    # set when nothing could be fetched at all
    fetched_at: str = ""

    @property
    def is_complete(self) -> bool:
        return self.error is None and not self.source_errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "blockchain": self.blockchain,
            "fetched_at": self.fetched_at,
            "count": len(self.transactions),
            "complete": self.is_complete,
            "error": self.error,
            "source_errors": dict(self.source_errors),
            "warnings": [w.to_dict() for w in self.warnings],
            "transactions": [t.to_dict() for t in self.transactions],
        }
