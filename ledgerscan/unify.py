"""Merge fetched record streams into one de-duplicated, time-ordered ledger."""

from __future__ import annotations

from typing import Hashable, Iterable, Union

from ledgerscan.models import NormalizedTransaction

Stream = Union[Iterable[NormalizedTransaction], NormalizedTransaction]


def identity_key(record: NormalizedTransaction) -> tuple[Hashable, ...]:
    """
    (hash, currency, direction), case-insensitive.

    Internal transfers get their own namespace plus a discriminator, so they
    never merge with the transaction that triggered them or with each other.
    """
    key: tuple[Hashable, ...] = (record.hash.lower(), record.currency.upper(), record.direction)
    if record.is_internal:
        discriminator = record.trace_id or (
            f"{record.from_addr.lower()}:{record.to_addr.lower()}:{record.amount}"
        )
        key += ("internal", discriminator)
    return key


def unify(streams: Iterable[Stream]) -> list[NormalizedTransaction]:
    """
    Merge record streams, newest first.

    A record with a non-zero fee replaces a zero-fee record with the same
    key; otherwise the first one seen is kept. Idempotent: items may be
    streams or records, so unify(unify(x)) == unify(x).
    """
    merged: dict[tuple[Hashable, ...], NormalizedTransaction] = {}
    for stream in streams:
        records = (stream,) if isinstance(stream, NormalizedTransaction) else stream
        for record in records:
            key = identity_key(record)
            existing = merged.get(key)
            if existing is None or (record.has_fee and not existing.has_fee):
                merged[key] = record
    return sorted(merged.values(), key=lambda r: r.timestamp, reverse=True)
