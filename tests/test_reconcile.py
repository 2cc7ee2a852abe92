"""Tests for ledgerscan.reconcile — filling gas fees on token records."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest
from factories import ETH_ADDR, OTHER_ADDR

from ledgerscan.chains import ETHEREUM
from ledgerscan.exceptions import PartialDataWarning, RemoteError
from ledgerscan.models import INCOMING, NATIVE, OUTGOING, SUCCESS, TOKEN, GasLookup, NormalizedTransaction
from ledgerscan.reconcile import GasFeeReconciler, index_by_hash


def _token(tx_hash: str = "0xaaa1", direction: str = OUTGOING, fee: str = "0") -> NormalizedTransaction:
    return NormalizedTransaction(
        hash=tx_hash,
        block_number=18_500_000,
        timestamp=1_700_000_000_000,
        from_addr=ETH_ADDR,
        to_addr=OTHER_ADDR,
        amount=Decimal("50"),
        currency="USDT",
        direction=direction,
        status=SUCCESS,
        record_kind=TOKEN,
        blockchain="ethereum",
        gas_fee=Decimal(fee),
    )


def _native(tx_hash: str = "0xaaa1", fee: str = "0.0002", gas_used: int = 20_000) -> NormalizedTransaction:
    return NormalizedTransaction(
        hash=tx_hash,
        block_number=18_500_000,
        timestamp=1_700_000_000_000,
        from_addr=ETH_ADDR,
        to_addr=OTHER_ADDR,
        amount=Decimal(0),
        currency="ETH",
        direction=OUTGOING,
        status=SUCCESS,
        record_kind=NATIVE,
        blockchain="ethereum",
        gas_used=gas_used,
        gas_fee=Decimal(fee),
    )


class RecordingLookup:
    """Async gas lookup that records the hashes it was asked about."""

    def __init__(self, result: GasLookup | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[str, int]] = []

    async def __call__(self, tx_hash: str, block_number: int) -> GasLookup | None:
        self.calls.append((tx_hash, block_number))
        if self.error is not None:
            raise self.error
        return self.result


# ── index_by_hash ─────────────────────────────────────────────────────────────


def test_index_by_hash_is_case_insensitive() -> None:
    index = index_by_hash([_native("0xABC")])
    assert "0xabc" in index


def test_index_by_hash_prefers_record_with_fee() -> None:
    zero = _native("0x1", fee="0")
    paid = _native("0x1", fee="0.001")
    assert index_by_hash([zero, paid])["0x1"] is paid
    assert index_by_hash([paid, zero])["0x1"] is paid


# ── GasFeeReconciler ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fee_copied_from_native_sibling(fake_sleep) -> None:
    lookup = RecordingLookup()
    reconciler = GasFeeReconciler(ETHEREUM, lookup, sleep=fake_sleep)
    original = _token("0xAAA1")

    (repaired,) = await reconciler.reconcile([original], index_by_hash([_native("0xaaa1")]))

    assert repaired.gas_fee == Decimal("0.0002")
    assert repaired.gas_used == 20_000
    assert repaired.needs_fee_lookup is False
    assert original.gas_fee == Decimal(0)
    assert lookup.calls == []
    assert reconciler.warnings == []


@pytest.mark.asyncio
async def test_sibling_estimated_flag_is_copied(fake_sleep) -> None:
    sibling = replace(_native(), fee_estimated=True)
    reconciler = GasFeeReconciler(ETHEREUM, None, sleep=fake_sleep)

    (repaired,) = await reconciler.reconcile([_token()], index_by_hash([sibling]))

    assert repaired.fee_estimated is True


@pytest.mark.asyncio
async def test_incoming_and_paid_records_untouched(fake_sleep) -> None:
    lookup = RecordingLookup()
    reconciler = GasFeeReconciler(ETHEREUM, lookup, sleep=fake_sleep)
    incoming = _token("0x1", direction=INCOMING)
    paid = _token("0x2", fee="0.003")

    result = await reconciler.reconcile([incoming, paid], index_by_hash([_native("0x1"), _native("0x2")]))

    assert result[0] is incoming
    assert result[1] is paid
    assert lookup.calls == []


@pytest.mark.asyncio
async def test_secondary_lookup_is_memoized_and_paced(fake_sleep, sleeps) -> None:
    lookup = RecordingLookup(GasLookup(50_000, 10_000_000_000))
    reconciler = GasFeeReconciler(ETHEREUM, lookup, lookup_pause=0.05, sleep=fake_sleep)
    records = [_token("0x1"), _token("0x1"), _token("0x2")]

    result = await reconciler.reconcile(records, {})

    assert [r.gas_fee for r in result] == [Decimal("0.0005")] * 3
    assert all(r.fee_estimated is False for r in result)
    assert lookup.calls == [("0x1", 18_500_000), ("0x2", 18_500_000)]
    assert sleeps == [0.05]


@pytest.mark.asyncio
async def test_estimated_lookup_marks_record(fake_sleep) -> None:
    lookup = RecordingLookup(GasLookup(65_000, 3_000_000_000, estimated=True, source="heuristic"))
    reconciler = GasFeeReconciler(ETHEREUM, lookup, sleep=fake_sleep)

    (repaired,) = await reconciler.reconcile([_token()], {})

    assert repaired.gas_fee == Decimal("0.000195")
    assert repaired.fee_estimated is True


@pytest.mark.asyncio
async def test_unresolved_fee_is_flagged(fake_sleep) -> None:
    reconciler = GasFeeReconciler(ETHEREUM, RecordingLookup(None), sleep=fake_sleep)

    (repaired,) = await reconciler.reconcile([_token("0xdead")], {})

    assert repaired.gas_fee == Decimal(0)
    assert repaired.needs_fee_lookup is True
    (warning,) = reconciler.warnings
    assert isinstance(warning, PartialDataWarning)
    assert warning.details == {"hash": "0xdead", "blockchain": "ethereum"}
    assert "USDT" in warning.message


@pytest.mark.asyncio
async def test_lookup_error_is_treated_as_not_found(fake_sleep) -> None:
    lookup = RecordingLookup(error=RemoteError("receipt unavailable"))
    reconciler = GasFeeReconciler(ETHEREUM, lookup, sleep=fake_sleep)

    (repaired,) = await reconciler.reconcile([_token()], {})

    assert repaired.needs_fee_lookup is True
    assert len(reconciler.warnings) == 1


@pytest.mark.asyncio
async def test_warnings_reset_between_runs(fake_sleep) -> None:
    reconciler = GasFeeReconciler(ETHEREUM, None, sleep=fake_sleep)
    await reconciler.reconcile([_token()], {})
    await reconciler.reconcile([], {})
    assert reconciler.warnings == []
