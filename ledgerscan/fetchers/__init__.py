"""
Fetcher layer for ledgerscan.

Provides a factory function `get_fetcher()` that returns the fetcher for a
chain's family. All fetchers implement HistoryFetcher.

Usage:
    from ledgerscan.fetchers import get_fetcher
    fetcher = get_fetcher("ethereum", explorer=explorer_gateway)
    results = await fetcher.fetch_sources(address)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ledgerscan.chains import JSON_RPC, ChainSpec, get_chain
from ledgerscan.fetchers.base import HistoryFetcher

if TYPE_CHECKING:
    from ledgerscan.gateway import ExplorerGateway, SolanaRPCGateway

__all__ = ["HistoryFetcher", "get_fetcher"]


def get_fetcher(
    blockchain: str | ChainSpec,
    *,
    explorer: ExplorerGateway | None = None,
    rpc: SolanaRPCGateway | None = None,
) -> HistoryFetcher:
    """
    Factory: return the correct fetcher for the given chain.

    Args:
        blockchain: Chain name or alias ("ethereum", "bsc", "solana", ...)
        explorer: Gateway used by explorer-family chains
        rpc: Gateway used by JSON-RPC chains

    Raises:
        UnsupportedChainError: Unknown chain identifier
        ValueError: The gateway the chain needs was not supplied
    """
    chain = blockchain if isinstance(blockchain, ChainSpec) else get_chain(blockchain)

    if chain.is_explorer:
        if explorer is None:
            raise ValueError(f"{chain.name} needs an ExplorerGateway")
        from ledgerscan.fetchers.explorer import ExplorerFetcher

        return ExplorerFetcher(explorer, chain)

    if chain.family == JSON_RPC:
        if rpc is None:
            raise ValueError(f"{chain.name} needs a SolanaRPCGateway")
        from ledgerscan.fetchers.solana import SolanaFetcher

        return SolanaFetcher(rpc, chain)

    raise ValueError(f"Unreachable: {chain.family}")  # pragma: no cover
