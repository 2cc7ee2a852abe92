"""Tests for ledgerscan.ledger — the LedgerClient facade, end to end.

Every test drives the real gateways and fetchers against respx routes.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest
import respx
from factories import (
    ALCHEMY_KEY,
    ETH_ADDR,
    OTHER_ADDR,
    RATE_LIMITED,
    SMALL_PAGE_ETH,
    SOL_ADDR,
    SOL_OTHER,
    USDT_ETH,
    make_native_tx,
    make_token_tx,
    ok,
)

from ledgerscan import LedgerClient
from ledgerscan.chains import ALCHEMY_SOLANA_BASE, ETHEREUM, ETHERSCAN_V2_BASE
from ledgerscan.exceptions import (
    DataError,
    InvalidAddressError,
    PartialDataWarning,
    UnsupportedChainError,
)
from ledgerscan.models import NATIVE, TOKEN

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
QUERY_TIMEOUT = {"status": "0", "message": "NOTOK", "result": "Query Timeout occured"}


@pytest.fixture
def make_client(fake_sleep, clock):
    def _make(config) -> LedgerClient:
        return LedgerClient(config, sleep=fake_sleep, clock=clock, now=lambda: NOW)

    return _make


# ── History ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_token_fee_reconciled_from_native_sibling(sample_config, make_client, explorer_stub) -> None:
    native = make_native_tx(
        tx_hash="0xh1", to_addr=USDT_ETH, value="0", gas_used="20000", gas_price="10000000000"
    )
    token = make_token_tx(tx_hash="0xh1")
    explorer_stub.add("txlist", ok([native])).add("tokentx", ok([token]))
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        report = await client.fetch_history(ETH_ADDR, "ethereum")

    assert report.is_complete
    by_kind = {t.record_kind: t for t in report.transactions}
    assert set(by_kind) == {NATIVE, TOKEN}
    assert by_kind[NATIVE].gas_fee == Decimal("0.0002")
    assert by_kind[TOKEN].amount == Decimal("50")
    assert by_kind[TOKEN].gas_fee == Decimal("0.0002")
    assert by_kind[TOKEN].needs_fee_lookup is False
    assert explorer_stub.calls_for("eth_getTransactionReceipt") == []


@pytest.mark.asyncio
@respx.mock
async def test_currency_filter_keeps_sibling_fee(sample_config, make_client, explorer_stub) -> None:
    native = make_native_tx(tx_hash="0xh1", value="0", gas_used="20000", gas_price="10000000000")
    explorer_stub.add("txlist", ok([native])).add("tokentx", ok([make_token_tx(tx_hash="0xh1")]))
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        history = await client.get_history(ETH_ADDR, "ethereum", currency="usdt")

    (tx,) = history
    assert tx.currency == "USDT"
    assert tx.gas_fee == Decimal("0.0002")


@pytest.mark.asyncio
@respx.mock
async def test_token_fee_from_receipt_lookup(sample_config, make_client, explorer_stub) -> None:
    explorer_stub.add("tokentx", ok([make_token_tx(tx_hash="0xh2")]))
    explorer_stub.add(
        "eth_getTransactionReceipt",
        {"jsonrpc": "2.0", "id": 1, "result": {"gasUsed": "0xc350", "effectiveGasPrice": "0x2540be400"}},
    )
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        (tx,) = await client.get_history(ETH_ADDR, "ethereum")

    assert tx.gas_fee == Decimal("0.0005")
    assert tx.fee_estimated is False


@pytest.mark.asyncio
@respx.mock
async def test_unresolvable_fee_becomes_warning(sample_config, make_client, explorer_stub) -> None:
    explorer_stub.add("tokentx", ok([make_token_tx(tx_hash="0xh3")]))
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        report = await client.fetch_history(ETH_ADDR, "ethereum")

    (tx,) = report.transactions
    assert tx.needs_fee_lookup is True
    (warning,) = report.warnings
    assert warning.details["hash"] == "0xh3"
    assert report.error is None


@pytest.mark.asyncio
@respx.mock
async def test_receipt_lookup_connection_reset_keeps_history(sample_config, make_client, explorer_stub) -> None:
    explorer_stub.add("tokentx", ok([make_token_tx(tx_hash="0xh4")]))

    def reset_proxy(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("module") == "proxy":
            raise httpx.ReadError("connection reset")
        return explorer_stub(request)

    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=reset_proxy)

    async with make_client(sample_config) as client:
        report = await client.fetch_history(ETH_ADDR, "ethereum")

    (tx,) = report.transactions
    assert tx.needs_fee_lookup is True
    assert report.warnings[0].details["hash"] == "0xh4"


@pytest.mark.asyncio
@respx.mock
async def test_failed_source_degrades_gracefully(sample_config, make_client, explorer_stub) -> None:
    sample_config.gateway.max_retries = 0
    explorer_stub.add("txlist", ok([make_native_tx()]))
    explorer_stub.add("tokentx", QUERY_TIMEOUT)
    explorer_stub.add("txlistinternal", RATE_LIMITED)
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        report = await client.fetch_history(ETH_ADDR, "ethereum")

    assert len(report.transactions) == 1
    assert set(report.source_errors) == {"token", "internal"}
    assert "Query Timeout" in report.source_errors["token"]
    assert any(isinstance(w, PartialDataWarning) for w in report.warnings)
    assert report.error is None
    assert report.is_complete is False
    assert report.to_dict()["complete"] is False


@pytest.mark.asyncio
@respx.mock
async def test_all_sources_failed(sample_config, make_client, explorer_stub) -> None:
    for action in ("txlist", "txlistinternal", "tokentx", "txsBeaconWithdrawal"):
        explorer_stub.add(action, QUERY_TIMEOUT)
    explorer_stub.add("getminedblocks", QUERY_TIMEOUT, blocktype="blocks")
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        report = await client.fetch_history(ETH_ADDR, "ethereum")

    assert report.transactions == []
    assert report.error == "all sources failed"
    assert len(report.source_errors) == 5


@pytest.mark.asyncio
@respx.mock
async def test_rate_limited_page_recovers(
    sample_config, make_client, explorer_stub, sleeps, monkeypatch
) -> None:
    monkeypatch.setattr("ledgerscan.ledger.get_chain", lambda _name: SMALL_PAGE_ETH)
    page1 = [
        make_native_tx(tx_hash="0x1", ts=1_700_000_300),
        make_native_tx(tx_hash="0x2", ts=1_700_000_200),
    ]
    page2 = [make_native_tx(tx_hash="0x3", ts=1_700_000_100)]
    explorer_stub.add("txlist", ok(page1), page=1)
    explorer_stub.add("txlist", RATE_LIMITED, RATE_LIMITED, ok(page2), page=2)
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        report = await client.fetch_history(ETH_ADDR, "ethereum")

    assert [t.hash for t in report.transactions] == ["0x1", "0x2", "0x3"]
    assert report.is_complete
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
@respx.mock
async def test_limit_keeps_most_recent(sample_config, make_client, explorer_stub) -> None:
    rows = [make_native_tx(tx_hash=f"0x{i}", ts=1_700_000_000 + i) for i in range(5)]
    explorer_stub.add("txlist", ok(rows[::-1]))
    explorer_stub.add("txlistinternal", ok([]))
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        limited = await client.get_history(ETH_ADDR, "ethereum", limit=2)
        everything = await client.get_history(ETH_ADDR, "ethereum", limit=0)

    assert [t.hash for t in limited] == ["0x4", "0x3"]
    assert len(everything) == 5


@pytest.mark.asyncio
@respx.mock
async def test_date_filter_is_inclusive(sample_config, make_client, explorer_stub) -> None:
    # 1_700_000_000 = 2023-11-14 22:13:20 UTC
    rows = [
        make_native_tx(tx_hash="0xlate", ts=1_700_100_000),
        make_native_tx(tx_hash="0xin", ts=1_700_000_000),
        make_native_tx(tx_hash="0xearly", ts=1_699_800_000),
    ]
    explorer_stub.add("txlist", ok(rows))
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        history = await client.get_history(
            ETH_ADDR, "ethereum", start_date=date(2023, 11, 14), end_date=date(2023, 11, 14)
        )

    assert [t.hash for t in history] == ["0xin"]


@pytest.mark.asyncio
async def test_start_after_end_raises(sample_config, make_client) -> None:
    async with make_client(sample_config) as client:
        with pytest.raises(DataError):
            await client.fetch_history(
                ETH_ADDR, "ethereum", start_date=date(2024, 2, 1), end_date=date(2024, 1, 1)
            )


@pytest.mark.asyncio
@respx.mock
async def test_recent_start_sets_startblock(sample_config, make_client, explorer_stub) -> None:
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)
    start = datetime(2023, 12, 1, tzinfo=timezone.utc)

    async with make_client(sample_config) as client:
        await client.fetch_history(ETH_ADDR, "ethereum", start_date=start)
        await client.fetch_history(ETH_ADDR, "ethereum", start_date=date(2020, 1, 1))

    estimate = ETHEREUM.block_from_date(start)
    expected = estimate - int((estimate - ETHEREUM.anchor_block) * 0.1)
    recent, old = explorer_stub.calls_for("txlist")
    assert recent["startblock"] == str(expected)
    assert old["startblock"] == "0"


@pytest.mark.asyncio
async def test_history_without_credential_reports_error(empty_config, make_client) -> None:
    async with make_client(empty_config) as client:
        report = await client.fetch_history(ETH_ADDR, "ethereum")

    assert report.transactions == []
    assert "not configured" in report.error


@pytest.mark.asyncio
async def test_invalid_address_raises(sample_config, make_client) -> None:
    async with make_client(sample_config) as client:
        with pytest.raises(InvalidAddressError):
            await client.fetch_history("0x123", "ethereum")
        with pytest.raises(InvalidAddressError):
            await client.get_balance(SOL_ADDR, "bsc")


@pytest.mark.asyncio
async def test_unsupported_chain_raises(sample_config, make_client) -> None:
    async with make_client(sample_config) as client:
        with pytest.raises(UnsupportedChainError):
            await client.get_history(ETH_ADDR, "dogechain")


@pytest.mark.asyncio
@respx.mock
async def test_solana_history(sample_config, make_client, rpc_stub) -> None:
    tx = {
        "slot": 250_000_000,
        "blockTime": 1_700_000_000,
        "meta": {"err": None, "fee": 5_000, "preBalances": [1_000_000_000, 0], "postBalances": [899_995_000, 100_000_000]},
        "transaction": {
            "message": {
                "accountKeys": [{"pubkey": SOL_ADDR}, {"pubkey": SOL_OTHER}],
                "instructions": [
                    {
                        "program": "system",
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": SOL_ADDR, "destination": SOL_OTHER, "lamports": 100_000_000},
                        },
                    }
                ],
            }
        },
    }
    rpc_stub.add("getSignaturesForAddress", [{"signature": "sigA", "blockTime": 1_700_000_000}])
    rpc_stub.add("getTransaction", tx)
    respx.post(f"{ALCHEMY_SOLANA_BASE}/{ALCHEMY_KEY}").mock(side_effect=rpc_stub)

    async with make_client(sample_config) as client:
        report = await client.fetch_history(SOL_ADDR, "sol")

    assert report.blockchain == "solana"
    (record,) = report.transactions
    assert record.amount == Decimal("0.1")
    assert record.gas_fee == Decimal("0.000005")


# ── Balances ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_get_balance(sample_config, make_client, explorer_stub) -> None:
    explorer_stub.add("balance", ok("1500000000000000000"))
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        snapshot = await client.get_balance(ETH_ADDR, "eth")

    assert snapshot.is_live
    assert snapshot.amount == Decimal("1.5")
    assert snapshot.unit == "ETH"
    assert snapshot.blockchain == "ethereum"
    assert snapshot.fetched_at == NOW.isoformat()
    assert snapshot.token_type == "native"


@pytest.mark.asyncio
@respx.mock
async def test_get_token_balance(sample_config, make_client, explorer_stub) -> None:
    explorer_stub.add("tokenbalance", ok("50000000"))
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        snapshot = await client.get_token_balance(ETH_ADDR, "usdt", "ethereum")

    assert snapshot.amount == Decimal("50")
    assert snapshot.unit == "USDT"
    assert snapshot.token_contract == USDT_ETH
    assert snapshot.token_type == "erc20"


@pytest.mark.asyncio
async def test_unknown_token_raises(sample_config, make_client) -> None:
    async with make_client(sample_config) as client:
        with pytest.raises(DataError):
            await client.get_token_balance(ETH_ADDR, "NOPE", "ethereum")


@pytest.mark.asyncio
async def test_balance_without_credential_is_not_live(empty_config, make_client) -> None:
    async with make_client(empty_config) as client:
        snapshot = await client.get_balance(OTHER_ADDR, "bsc")

    assert snapshot.is_live is False
    assert snapshot.amount == Decimal(0)
    assert "not configured" in snapshot.error


@pytest.mark.asyncio
@respx.mock
async def test_degraded_balance_is_not_live(sample_config, make_client, explorer_stub) -> None:
    sample_config.gateway.max_retries = 0
    explorer_stub.add("balance", RATE_LIMITED)
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        snapshot = await client.get_balance(ETH_ADDR, "ethereum")

    assert snapshot.is_live is False
    assert snapshot.error


@pytest.mark.asyncio
@respx.mock
async def test_dropped_connection_balance_is_not_live(sample_config, make_client) -> None:
    respx.get(ETHERSCAN_V2_BASE).mock(side_effect=httpx.ReadError("connection reset"))

    async with make_client(sample_config) as client:
        snapshot = await client.get_balance(ETH_ADDR, "ethereum")

    assert snapshot.is_live is False
    assert "connection reset" in snapshot.error


# ── Cache ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_cache_stats_and_clear(sample_config, make_client, explorer_stub) -> None:
    explorer_stub.add("balance", ok("1"))
    route = respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        await client.get_balance(ETH_ADDR, "ethereum")
        await client.get_balance(ETH_ADDR, "ethereum")
        stats = client.cache_stats()
        client.clear_cache()
        await client.get_balance(ETH_ADDR, "ethereum")

    assert stats["size"] == 1
    assert stats["hits"] == 1
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_cache_follows_injected_clock(sample_config, make_client, explorer_stub, clock) -> None:
    explorer_stub.add("balance", ok("1"))
    route = respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as client:
        await client.get_balance(ETH_ADDR, "ethereum")
        size_after_first = client.cache_stats()["size"]
        clock.advance(sample_config.gateway.cache_ttl_seconds)
        await client.get_balance(ETH_ADDR, "ethereum")

    assert size_after_first == 1
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_clients_do_not_share_cache(sample_config, make_client, explorer_stub) -> None:
    explorer_stub.add("balance", ok("1"))
    route = respx.get(ETHERSCAN_V2_BASE).mock(side_effect=explorer_stub)

    async with make_client(sample_config) as first, make_client(sample_config) as second:
        await first.get_balance(ETH_ADDR, "ethereum")
        await second.get_balance(ETH_ADDR, "ethereum")

    assert route.call_count == 2
