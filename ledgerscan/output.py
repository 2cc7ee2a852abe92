"""Output format routing for ledgerscan.

Converts result dicts to the requested format: json, jsonl, table, csv.

Design rules:
- JSON: 2-space indent, utf-8; Decimals are written as strings so that
  18-decimal amounts survive untouched
- JSONL: one JSON object per line (one per transaction for histories)
- Table: Rich-formatted, green=incoming, red=outgoing, yellow=estimated fee
- CSV: RFC 4180, header row always present

All functions return strings. The caller writes to stdout.
"""

from __future__ import annotations

import csv
import io
import json
from decimal import Decimal
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

VALID_FORMATS = {"json", "jsonl", "table", "csv"}


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal values."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return format_amount(obj)
        return super().default(obj)


def format_amount(value: Decimal) -> str:
    """Plain (non-scientific) decimal string without trailing zeros."""
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def format_output(data: Any, fmt: str, color: bool = True) -> str:
    """
    Format data for stdout output.

    Args:
        data: Result dict, list, or any JSON-serialisable value.
        fmt: "json" | "jsonl" | "table" | "csv"
        color: Allow ANSI styling in table output.

    Raises:
        ValueError: If fmt is not a recognised format.
    """
    fmt = fmt.lower()
    if fmt not in VALID_FORMATS:
        raise ValueError(f"Unknown format {fmt!r}. Valid: {sorted(VALID_FORMATS)}")

    if fmt == "jsonl":
        return format_jsonl(data)
    elif fmt == "table":
        return format_table(data, color=color)
    elif fmt == "csv":
        return format_csv(data)
    return format_json(data)


# ── JSON ─────────────────────────────────────────────────────────────────────


def format_json(data: Any) -> str:
    """Pretty-print data as JSON (2-space indent)."""
    return json.dumps(data, indent=2, cls=DecimalEncoder, ensure_ascii=False)


# ── JSONL ────────────────────────────────────────────────────────────────────


def format_jsonl(data: Any) -> str:
    """
    Format as JSONL (one object per line).

    History reports emit one line per transaction; lists one line per
    item; anything else a single line.
    """
    if isinstance(data, dict) and isinstance(data.get("transactions"), list):
        items = data["transactions"]
    elif isinstance(data, list):
        items = data
    else:
        items = [data]
    return "\n".join(json.dumps(item, cls=DecimalEncoder) for item in items)


# ── Table ────────────────────────────────────────────────────────────────────


def format_table(data: Any, color: bool = True) -> str:
    """
    Format as a Rich terminal table.

    Handles:
    - History reports (dict with 'transactions')
    - Balance snapshots (dict with 'amount' and 'unit')
    - Chain listing (dict with 'chains')
    - Generic dict fallback
    """
    buf = io.StringIO()
    console = Console(
        file=buf,
        highlight=False,
        markup=True,
        width=140,
        force_terminal=color,
        no_color=not color,
    )

    if isinstance(data, dict) and "transactions" in data:
        _render_history_table(console, data)
    elif isinstance(data, dict) and "amount" in data and "unit" in data:
        _render_balance_table(console, data)
    elif isinstance(data, dict) and "chains" in data:
        _render_chains_table(console, data)
    else:
        console.print_json(json.dumps(data, cls=DecimalEncoder))

    return buf.getvalue()


def _short(value: str, head: int = 8, tail: int = 6) -> str:
    if len(value) > head + tail + 2:
        return f"{value[:head]}…{value[-tail:]}"
    return value


def _render_history_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(
        title=f"History — {data.get('blockchain', '')} {_short(data.get('address', ''))}",
        show_header=True,
        header_style="bold blue",
    )
    table.add_column("Time (UTC)", no_wrap=True)
    table.add_column("Hash", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Dir", justify="center")
    table.add_column("Amount", justify="right")
    table.add_column("Currency")
    table.add_column("Fee", justify="right")
    table.add_column("Status", justify="center")

    for t in data.get("transactions", []):
        direction = t.get("direction", "")
        fee = t.get("gas_fee", Decimal(0))
        fee_text = Text(
            format_amount(Decimal(str(fee))),
            style="yellow" if t.get("fee_estimated") else ("red" if t.get("needs_fee_lookup") else ""),
        )
        table.add_row(
            str(t.get("datetime", ""))[:19].replace("T", " "),
            _short(t.get("hash", ""), 10, 6),
            t.get("record_kind", ""),
            Text("in" if direction == "incoming" else "out", style="green" if direction == "incoming" else "red"),
            format_amount(Decimal(str(t.get("amount", 0)))),
            t.get("currency", ""),
            fee_text,
            "✅" if t.get("status") == "success" else "❌",
        )

    console.print(table)
    summary = f"Records: [bold]{data.get('count', len(data.get('transactions', [])))}[/bold]"
    if data.get("source_errors"):
        summary += f"  Degraded sources: [bold yellow]{', '.join(data['source_errors'])}[/bold yellow]"
    if data.get("warnings"):
        summary += f"  Warnings: [bold yellow]{len(data['warnings'])}[/bold yellow]"
    if data.get("error"):
        summary += f"  Error: [bold red]{data['error']}[/bold red]"
    console.print(summary)


def _render_balance_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Balance", header_style="bold blue")
    table.add_column("Address", style="cyan")
    table.add_column("Chain", justify="center")
    table.add_column("Amount", justify="right")
    table.add_column("Unit")
    table.add_column("Live", justify="center")
    table.add_column("Fetched At")

    amount = format_amount(Decimal(str(data.get("amount", 0))))
    table.add_row(
        _short(data.get("address", ""), 10, 6),
        data.get("blockchain", ""),
        amount if data.get("is_live", True) else Text("unknown", style="dim"),
        data.get("unit", ""),
        "✅" if data.get("is_live", True) else "❌",
        str(data.get("fetched_at", ""))[:19],
    )
    console.print(table)
    if data.get("error"):
        console.print(f"[bold red]{data['error']}[/bold red]")


def _render_chains_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Supported Chains", header_style="bold blue")
    table.add_column("Name")
    table.add_column("Family")
    table.add_column("Native")
    table.add_column("Page Size", justify="right")
    table.add_column("Configured", justify="center")
    for c in data.get("chains", []):
        table.add_row(
            c.get("name", ""),
            c.get("family", ""),
            c.get("native_symbol", ""),
            str(c.get("page_size", "")),
            "✅" if c.get("configured") else "—",
        )
    console.print(table)


# ── CSV ──────────────────────────────────────────────────────────────────────


def format_csv(data: Any) -> str:
    """
    Format as CSV with a header row.

    Flattens nested structures to the extent possible.
    """
    buf = io.StringIO()
    writer = csv.writer(buf)

    rows: list[dict[str, Any]] = []
    if isinstance(data, dict):
        for key in ("transactions", "chains"):
            if key in data and isinstance(data[key], list):
                rows = data[key]
                break
        else:
            rows = [data]
    elif isinstance(data, list):
        rows = data

    if not rows or not all(isinstance(r, dict) for r in rows):
        writer.writerow(["value"])
        writer.writerow([json.dumps(data, cls=DecimalEncoder)])
        return buf.getvalue()

    flat_rows = [_flatten_dict(r) for r in rows]
    headers = list(flat_rows[0].keys())
    writer.writerow(headers)
    for row in flat_rows:
        writer.writerow([row.get(h, "") for h in headers])

    return buf.getvalue()


def _flatten_dict(d: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten a nested dict for CSV output."""
    result: dict[str, Any] = {}
    for k, v in d.items():
        full_key = f"{prefix}{k}" if not prefix else f"{prefix}.{k}"
        if isinstance(v, dict):
            result.update(_flatten_dict(v, full_key))
        elif isinstance(v, (list, tuple)):
            result[full_key] = json.dumps(v, cls=DecimalEncoder)
        elif isinstance(v, Decimal):
            result[full_key] = format_amount(v)
        elif v is None:
            result[full_key] = ""
        else:
            result[full_key] = v
    return result
