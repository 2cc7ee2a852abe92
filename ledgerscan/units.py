"""
Unit and token normalization.

Pure functions: no I/O, and malformed input yields 0 rather than raising.
Explorers hand back base units as decimal strings ("1000000000000000000"),
JSON-RPC proxies as hex quantities ("0x5208"); both are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

DEFAULT_TOKEN_DECIMALS = 18

SYNTHETIC_SYMBOL_PREFIX = "TOKEN_"


@dataclass(frozen=True)
class TokenInfo:
    """Symbol and decimals for a token contract (or SPL mint)."""

    symbol: str
    decimals: int
    name: str = ""
    contract: str = ""
    known: bool = True


# Known token contracts per chain, keyed by lowercase contract address.
# Solana mints are case-sensitive base58 and are keyed verbatim.
KNOWN_TOKENS: dict[str, dict[str, TokenInfo]] = {
    "ethereum": {
        "0xdac17f958d2ee523a2206206994597c13d831ec7": TokenInfo("USDT", 6, "Tether USD"),
        "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": TokenInfo("USDC", 6, "USD Coin"),
        "0x6b175474e89094c44da98b954eedeac495271d0f": TokenInfo("DAI", 18, "Dai Stablecoin"),
        "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2": TokenInfo("WETH", 18, "Wrapped Ether"),
        "0x2260fac5e5542a773aa44fbcfedf7c193bc2c599": TokenInfo("WBTC", 8, "Wrapped BTC"),
        "0x514910771af9ca656af840dff83e8264ecf986ca": TokenInfo("LINK", 18, "ChainLink Token"),
        "0x1f9840a85d5af5bf1d1762f925bdaddc4201f984": TokenInfo("UNI", 18, "Uniswap"),
        "0x4fabb145d64652a948d72533023f6e7a623c7c53": TokenInfo("BUSD", 18, "Binance USD"),
    },
    "bsc": {
        "0x55d398326f99059ff775485246999027b3197955": TokenInfo("USDT", 18, "Tether USD"),
        "0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d": TokenInfo("USDC", 18, "USD Coin"),
        "0xe9e7cea3dedca5984780bafc599bd69add087d56": TokenInfo("BUSD", 18, "Binance USD"),
        "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c": TokenInfo("WBNB", 18, "Wrapped BNB"),
        "0x0e09fabb73bd3ade0a17ecc321fd13a19e81ce82": TokenInfo("CAKE", 18, "PancakeSwap Token"),
        "0x2170ed0880ac9a755fd29b2688956bd959f933f8": TokenInfo("ETH", 18, "Binance-Peg Ethereum"),
        "0x7130d2a12b9bcbfae4f2634d864a1ee1ce3ead9c": TokenInfo("BTCB", 18, "Binance-Peg BTCB"),
    },
    "solana": {
        "So11111111111111111111111111111111111111112": TokenInfo("WSOL", 9, "Wrapped SOL"),
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB": TokenInfo("USDT", 6, "Tether USD"),
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v": TokenInfo("USDC", 6, "USD Coin"),
        "KMNo3nJsBXfcpJTVhZcXLW7RmTwTt4GVFE7suUBo9sS": TokenInfo("PYTH", 6, "Pyth Network"),
        "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN": TokenInfo("JUP", 6, "Jupiter"),
        "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R": TokenInfo("RAY", 6, "Raydium"),
    },
}


def parse_quantity(raw: Any) -> int:
    """
    Parse an integer quantity from an explorer or RPC field.

    Accepts ints, decimal strings and 0x-prefixed hex strings.
    Returns 0 for None, empty or malformed values.
    """
    if raw is None or isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if not text:
        return 0
    try:
        if text.lower().startswith("0x"):
            return int(text, 16) if len(text) > 2 else 0
        return int(Decimal(text))
    except (ValueError, InvalidOperation):
        return 0


def native_units_to_decimal(raw: Any, decimals: int = 18) -> Decimal:
    """Convert base units (wei, lamports) to the chain's native unit."""
    return Decimal(parse_quantity(raw)).scaleb(-decimals)


def token_units_to_decimal(
    raw: Any, decimals: Any = None, default: int = DEFAULT_TOKEN_DECIMALS
) -> Decimal:
    """
    Convert raw token units using the token's decimals.

    `decimals` may be missing or an empty string on some explorer rows;
    the chain's common default is used in that case.
    """
    places = default
    if decimals not in (None, ""):
        try:
            places = int(decimals)
        except (TypeError, ValueError):
            places = default
    return Decimal(parse_quantity(raw)).scaleb(-places)


def synthetic_symbol(contract: str) -> str:
    """Distinguishable placeholder symbol for an unknown token contract."""
    return f"{SYNTHETIC_SYMBOL_PREFIX}{contract[:8]}"


def lookup_token(blockchain: str, contract: str) -> TokenInfo | None:
    table = KNOWN_TOKENS.get(blockchain, {})
    info = table.get(contract) or table.get(contract.lower())
    if info is None:
        return None
    return TokenInfo(info.symbol, info.decimals, info.name, contract=contract, known=True)


def lookup_token_by_symbol(blockchain: str, symbol: str) -> TokenInfo | None:
    """Reverse lookup used for token balance queries ("USDT" → contract)."""
    symbol = symbol.upper()
    for contract, info in KNOWN_TOKENS.get(blockchain, {}).items():
        if info.symbol == symbol:
            return TokenInfo(info.symbol, info.decimals, info.name, contract=contract, known=True)
    return None


def resolve_token(
    blockchain: str,
    contract: str | None,
    reported_symbol: str | None = None,
    reported_decimals: Any = None,
) -> TokenInfo:
    """
    Resolve a token's identity.

    Known contracts come from KNOWN_TOKENS. Unknown contracts keep the
    explorer-reported decimals but get a synthetic symbol derived from the
    contract address; the explorer's own symbol is kept as the name, since
    copycat tokens routinely reuse symbols like "USDT".
    """
    contract = contract or ""
    known = lookup_token(blockchain, contract) if contract else None
    if known is not None:
        return known

    decimals = DEFAULT_TOKEN_DECIMALS
    if reported_decimals not in (None, ""):
        try:
            decimals = int(reported_decimals)
        except (TypeError, ValueError):
            decimals = DEFAULT_TOKEN_DECIMALS

    if contract:
        symbol = synthetic_symbol(contract)
    else:
        symbol = (reported_symbol or "").strip().upper() or f"{SYNTHETIC_SYMBOL_PREFIX}UNKNOWN"
    return TokenInfo(symbol, decimals, reported_symbol or "", contract=contract, known=False)
