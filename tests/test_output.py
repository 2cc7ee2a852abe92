"""Tests for ledgerscan/output.py — output formatting."""

from __future__ import annotations

import csv
import io
import json
from decimal import Decimal
from typing import Any

import pytest
from factories import ETH_ADDR, OTHER_ADDR

from ledgerscan.models import (
    OUTGOING,
    SUCCESS,
    TOKEN,
    BalanceSnapshot,
    HistoryReport,
    NormalizedTransaction,
)
from ledgerscan.output import (
    format_amount,
    format_csv,
    format_json,
    format_jsonl,
    format_output,
    format_table,
)

# ── Fixtures ──────────────────────────────────────────────────────────────────


def make_history() -> dict[str, Any]:
    """History report dict as produced by HistoryReport.to_dict()."""
    tx = NormalizedTransaction(
        hash="0xaaa1",
        block_number=18_500_000,
        timestamp=1_700_000_000_000,
        from_addr=ETH_ADDR,
        to_addr=OTHER_ADDR,
        amount=Decimal("50.000000"),
        currency="USDT",
        direction=OUTGOING,
        status=SUCCESS,
        record_kind=TOKEN,
        blockchain="ethereum",
        gas_used=20_000,
        gas_fee=Decimal("0.000200000000000000"),
        contract_address="0xdac17f958d2ee523a2206206994597c13d831ec7",
        token_name="Tether USD",
    )
    second = NormalizedTransaction(
        hash="0xaaa2",
        block_number=18_400_000,
        timestamp=1_699_000_000_000,
        from_addr=OTHER_ADDR,
        to_addr=ETH_ADDR,
        amount=Decimal("1"),
        currency="ETH",
        direction="incoming",
        status=SUCCESS,
        record_kind="native",
        blockchain="ethereum",
    )
    report = HistoryReport(address=ETH_ADDR, blockchain="ethereum", transactions=[tx, second])
    report.fetched_at = "2024-01-01T00:00:00+00:00"
    return report.to_dict()


def make_balance() -> dict[str, Any]:
    return BalanceSnapshot(
        address=ETH_ADDR,
        blockchain="ethereum",
        amount=Decimal("1.500000000000000000"),
        unit="ETH",
        fetched_at="2024-01-01T00:00:00+00:00",
    ).to_dict()


# ── format_amount ─────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "value, expected",
    [
        (Decimal("0"), "0"),
        (Decimal("0E-18"), "0"),
        (Decimal("1.500000"), "1.5"),
        (Decimal("1E+3"), "1000"),
        (Decimal("1E-18"), "0.000000000000000001"),
    ],
)
def test_format_amount(value: Decimal, expected: str) -> None:
    assert format_amount(value) == expected


# ── JSON ──────────────────────────────────────────────────────────────────────


def test_format_json_writes_decimals_as_strings() -> None:
    parsed = json.loads(format_json(make_history()))
    tx = parsed["transactions"][0]
    assert tx["amount"] == "50"
    assert tx["gas_fee"] == "0.0002"
    assert parsed["transactions"][1]["gas_fee"] == "0"
    assert parsed["count"] == 2
    assert parsed["complete"] is True


def test_format_json_balance() -> None:
    parsed = json.loads(format_output(make_balance(), "json"))
    assert parsed["amount"] == "1.5"
    assert parsed["is_live"] is True


def test_format_json_unknown_type_raises() -> None:
    with pytest.raises(TypeError):
        format_json({"value": object()})


# ── JSONL ─────────────────────────────────────────────────────────────────────


def test_format_jsonl_one_line_per_transaction() -> None:
    lines = format_jsonl(make_history()).splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["hash"] == "0xaaa1"
    assert json.loads(lines[1])["hash"] == "0xaaa2"


def test_format_jsonl_list_and_scalar() -> None:
    assert len(format_jsonl([{"a": 1}, {"a": 2}]).splitlines()) == 2
    assert json.loads(format_jsonl({"a": Decimal("2.50")})) == {"a": "2.5"}


# ── Table ─────────────────────────────────────────────────────────────────────


def test_format_table_history() -> None:
    out = format_table(make_history(), color=False)
    assert "History" in out
    assert "USDT" in out
    assert "0.0002" in out
    assert "Records: 2" in out


def test_format_table_history_shows_degraded_sources() -> None:
    data = make_history()
    data["source_errors"] = {"token": "rate limited"}
    out = format_table(data, color=False)
    assert "Degraded sources: token" in out


def test_format_table_balance() -> None:
    out = format_table(make_balance(), color=False)
    assert "Balance" in out
    assert "1.5" in out


def test_format_table_balance_not_live() -> None:
    data = make_balance()
    data.update(is_live=False, error="ethereum API key not configured")
    out = format_table(data, color=False)
    assert "unknown" in out
    assert "not configured" in out


def test_format_table_chains() -> None:
    data = {"chains": [{"name": "bsc", "family": "explorer", "native_symbol": "BNB", "page_size": 1000, "configured": True}]}
    out = format_table(data, color=False)
    assert "Supported Chains" in out
    assert "BNB" in out


def test_format_table_generic_dict() -> None:
    out = format_table({"status": "initialized"}, color=False)
    assert "initialized" in out


# ── CSV ───────────────────────────────────────────────────────────────────────


def test_format_csv_history_has_header_and_rows() -> None:
    rows = list(csv.reader(io.StringIO(format_csv(make_history()))))
    header, first, second = rows
    assert header[:3] == ["hash", "block_number", "timestamp"]
    record = dict(zip(header, first))
    assert record["amount"] == "50"
    assert record["gas_fee"] == "0.0002"
    assert record["token_name"] == "Tether USD"
    assert dict(zip(header, second))["contract_address"] == ""


def test_format_csv_single_dict_flattens_nested() -> None:
    rows = list(csv.reader(io.StringIO(format_csv({"api": {"key": "x"}, "n": 1}))))
    assert rows == [["api.key", "n"], ["x", "1"]]


def test_format_csv_non_dict_rows() -> None:
    rows = list(csv.reader(io.StringIO(format_csv([1, 2]))))
    assert rows[0] == ["value"]


# ── Routing ───────────────────────────────────────────────────────────────────


def test_format_output_invalid_format() -> None:
    with pytest.raises(ValueError):
        format_output({}, "xml")


def test_format_output_is_case_insensitive() -> None:
    assert json.loads(format_output({"a": 1}, "JSON")) == {"a": 1}
