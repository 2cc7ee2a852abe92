"""
Per-chain strategy objects.

One ChainSpec per supported blockchain carries everything that differs
between chains: endpoint, request shape (explorer REST vs JSON-RPC), native
unit exponent, page size, pacing, and the heuristics used when the chain's
own data is incomplete.

Design decisions:
- BSC is reached through the Etherscan v2 multi-chain endpoint, which needs
  an explicit `chainid` parameter; Ethereum uses the same host with chainid=1.
- BSC pages are 1 000 rows instead of 10 000; BSC keys throttle early.
- Date → block conversion is a linear approximation anchored on a known
  (block, timestamp) pair. It is only ever used as a coarse pre-filter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from ledgerscan.exceptions import UnsupportedChainError

ETHERSCAN_V2_BASE = "https://api.etherscan.io/v2/api"
ALCHEMY_SOLANA_BASE = "https://solana-mainnet.g.alchemy.com/v2"

EXPLORER = "explorer"
JSON_RPC = "json-rpc"

GWEI = 10**9


@dataclass(frozen=True)
class GasPriceBracket:
    """Typical gas price (wei) for blocks below `below_block`."""

    below_block: int
    gas_price_wei: int


@dataclass(frozen=True)
class ChainSpec:
    """Strategy object describing one blockchain."""

    name: str
    family: str                 # EXPLORER | JSON_RPC
    native_symbol: str
    native_decimals: int
    base_url: str
    credential: str             # attribute name on APIConfig
    chain_id: int | None = None
    page_size: int = 10_000
    # Explorer refuses page * offset beyond this; deeper history is reached
    # by lowering endblock.
    result_window: int = 10_000
    calls_per_second: int = 5
    token_standard: str = ""
    block_time_seconds: float = 12.0
    anchor_block: int = 0
    anchor_timestamp: int = 0
    # Fallback gas prices by block height, for chains whose explorer reports
    # a zero gas price on older blocks. Values are placeholders, not derived
    # from a historical dataset.
    gas_price_brackets: tuple[GasPriceBracket, ...] = field(default_factory=tuple)
    supports_mining_rewards: bool = False
    supports_withdrawals: bool = False

    @property
    def is_explorer(self) -> bool:
        return self.family == EXPLORER

    def estimate_gas_price(self, block_number: int) -> int | None:
        """Heuristic gas price in wei for `block_number`, or None if the chain has no table."""
        if not self.gas_price_brackets:
            return None
        for bracket in self.gas_price_brackets:
            if block_number < bracket.below_block:
                return bracket.gas_price_wei
        return self.gas_price_brackets[-1].gas_price_wei

    def block_from_date(self, when: datetime) -> int:
        """Approximate block height at `when` (linear from the anchor)."""
        ts = when.timestamp() if when.tzinfo else when.replace(tzinfo=timezone.utc).timestamp()
        elapsed = ts - self.anchor_timestamp
        return max(0, self.anchor_block + int(elapsed / self.block_time_seconds))


ETHEREUM = ChainSpec(
    name="ethereum",
    family=EXPLORER,
    native_symbol="ETH",
    native_decimals=18,
    base_url=ETHERSCAN_V2_BASE,
    credential="etherscan_api_key",
    chain_id=1,
    page_size=10_000,
    calls_per_second=5,
    token_standard="erc20",
    block_time_seconds=12.0,
    # The Merge: fixed 12 s slots from here on (missed slots make this overshoot).
    anchor_block=15_537_394,
    anchor_timestamp=1_663_224_179,
    supports_mining_rewards=True,
    supports_withdrawals=True,
)

BSC = ChainSpec(
    name="bsc",
    family=EXPLORER,
    native_symbol="BNB",
    native_decimals=18,
    base_url=ETHERSCAN_V2_BASE,
    credential="bscscan_api_key",
    chain_id=56,
    page_size=1_000,
    calls_per_second=3,
    token_standard="bep20",
    block_time_seconds=3.0,
    anchor_block=0,
    anchor_timestamp=1_598_671_449,
    gas_price_brackets=(
        GasPriceBracket(10_000_000, 20 * GWEI),
        GasPriceBracket(20_000_000, 10 * GWEI),
        GasPriceBracket(35_000_000, 5 * GWEI),
        GasPriceBracket(2**63, 3 * GWEI),
    ),
)

SOLANA = ChainSpec(
    name="solana",
    family=JSON_RPC,
    native_symbol="SOL",
    native_decimals=9,
    base_url=ALCHEMY_SOLANA_BASE,
    credential="alchemy_api_key",
    page_size=1_000,
    calls_per_second=10,
    token_standard="spl",
    block_time_seconds=0.4,
)

CHAINS: dict[str, ChainSpec] = {c.name: c for c in (ETHEREUM, BSC, SOLANA)}

ALIASES = {
    "eth": "ethereum",
    "binance-smart-chain": "bsc",
    "bnb": "bsc",
    "bnb-smart-chain": "bsc",
    "sol": "solana",
}


def get_chain(blockchain: str) -> ChainSpec:
    """
    Resolve a chain name or alias to its ChainSpec.

    Raises:
        UnsupportedChainError: Unknown chain identifier
    """
    key = (blockchain or "").strip().lower()
    key = ALIASES.get(key, key)
    spec = CHAINS.get(key)
    if spec is None:
        raise UnsupportedChainError(
            f"Unsupported chain: {blockchain!r}. Supported: {sorted(CHAINS)}",
            details={"blockchain": blockchain},
        )
    return spec


def wei_to_native(chain: ChainSpec, wei: int) -> Decimal:
    return Decimal(wei).scaleb(-chain.native_decimals)
