"""ledgerscan — blockchain transaction aggregation and reconciliation engine."""

from ledgerscan.ledger import LedgerClient
from ledgerscan.models import BalanceSnapshot, HistoryReport, NormalizedTransaction

__version__ = "0.1.0"

__all__ = [
    "BalanceSnapshot",
    "HistoryReport",
    "LedgerClient",
    "NormalizedTransaction",
    "__version__",
]
