"""Click CLI entry point for ledgerscan.

All commands are thin orchestration wrappers — business logic lives in
ledger (LedgerClient), config and output.

Exit codes:
  0 — success (including degraded results flagged in the output)
  1 — generic error
  2 — API error, rate limit
  3 — network error
  4 — data error (invalid address, unsupported chain, unknown token)
  5 — config error
"""

from __future__ import annotations

import asyncio
import json
import shutil
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import click
from loguru import logger

from ledgerscan import __version__
from ledgerscan.chains import CHAINS, get_chain
from ledgerscan.config import (
    VALID_LOG_LEVELS,
    LedgerscanConfig,
    get_default_config_path,
    load_config,
    save_config,
)
from ledgerscan.exceptions import LedgerscanError
from ledgerscan.gateway import mask_api_key
from ledgerscan.ledger import DEFAULT_LIMIT, LedgerClient
from ledgerscan.log import setup_logging
from ledgerscan.output import VALID_FORMATS, format_output

CHAIN_CHOICES = sorted(CHAINS)
DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]


# ── Error handler ─────────────────────────────────────────────────────────────


def _output_error(err: LedgerscanError | Exception) -> None:
    """Write error JSON to stderr."""
    if isinstance(err, LedgerscanError):
        payload = err.to_dict()
        exit_code = err.exit_code
    else:
        payload = {"error": "unknown_error", "message": str(err), "details": {}}
        exit_code = 1
    sys.stderr.write(json.dumps(payload) + "\n")
    sys.stderr.flush()
    sys.exit(exit_code)


def _emit(ctx: click.Context, data: Any, fmt: str | None) -> None:
    config: LedgerscanConfig = ctx.obj["config"]
    click.echo(format_output(data, fmt or ctx.obj["format"], color=config.output.color))


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    envvar="LEDGERSCAN_CONFIG_PATH",
    default=None,
    help="Config file path (default: ~/.ledgerscan/config.toml)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(sorted(VALID_FORMATS)),
    default=None,
    help="Output format (overrides config default)",
)
@click.option(
    "--log-level",
    type=click.Choice(sorted(VALID_LOG_LEVELS), case_sensitive=False),
    default=None,
    help="Log level for stderr (overrides config)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    output_format: str | None,
    log_level: str | None,
) -> None:
    """ledgerscan — blockchain balance and history reconciliation."""
    ctx.ensure_object(dict)
    config_error: LedgerscanError | None = None
    try:
        config = load_config(config_path)
    except LedgerscanError as e:
        # Fall back to defaults so `config init` still works
        config = LedgerscanConfig()
        config_error = e

    setup_logging(log_level or config.logging.level, colorize=None if config.output.color else False)
    if config_error is not None:
        logger.warning(f"config ignored: {config_error.message}")

    ctx.obj["config"] = config
    ctx.obj["format"] = output_format or config.output.default_format
    ctx.obj["config_path"] = config_path


# ── Query commands ────────────────────────────────────────────────────────────


@cli.command("balance")
@click.argument("address")
@click.option("--chain", required=True, type=click.Choice(CHAIN_CHOICES, case_sensitive=False))
@click.option("--token", "token_symbol", default=None, help="Known token symbol, e.g. USDT")
@click.option("--network", default="mainnet", show_default=True)
@click.option("--format", "fmt", type=click.Choice(sorted(VALID_FORMATS)), default=None)
@click.pass_context
def balance_command(
    ctx: click.Context,
    address: str,
    chain: str,
    token_symbol: str | None,
    network: str,
    fmt: str | None,
) -> None:
    """Show the native (or --token) balance of ADDRESS."""
    config: LedgerscanConfig = ctx.obj["config"]

    async def _run() -> dict[str, Any]:
        async with LedgerClient(config) as client:
            if token_symbol:
                snapshot = await client.get_token_balance(address, token_symbol, chain, network)
            else:
                snapshot = await client.get_balance(address, chain, network)
            return snapshot.to_dict()

    try:
        result = asyncio.run(_run())
    except LedgerscanError as e:
        _output_error(e)
        return
    _emit(ctx, result, fmt)


@cli.command("history")
@click.argument("address")
@click.option("--chain", required=True, type=click.Choice(CHAIN_CHOICES, case_sensitive=False))
@click.option("--start", "start_date", type=click.DateTime(DATE_FORMATS), default=None)
@click.option("--end", "end_date", type=click.DateTime(DATE_FORMATS), default=None)
@click.option("--currency", default=None, help="Only records in this currency (e.g. ETH, USDT)")
@click.option(
    "--limit",
    default=DEFAULT_LIMIT,
    type=click.IntRange(0),
    show_default=True,
    help="Most recent N records (0 = all)",
)
@click.option("--format", "fmt", type=click.Choice(sorted(VALID_FORMATS)), default=None)
@click.pass_context
def history_command(
    ctx: click.Context,
    address: str,
    chain: str,
    start_date: datetime | None,
    end_date: datetime | None,
    currency: str | None,
    limit: int,
    fmt: str | None,
) -> None:
    """Show the reconciled, de-duplicated transaction history of ADDRESS."""
    config: LedgerscanConfig = ctx.obj["config"]

    async def _run() -> dict[str, Any]:
        async with LedgerClient(config) as client:
            report = await client.fetch_history(
                address,
                chain,
                start_date=_date_bound(start_date),
                end_date=_date_bound(end_date),
                currency=currency,
                limit=limit,
            )
            return report.to_dict()

    try:
        result = asyncio.run(_run())
    except LedgerscanError as e:
        _output_error(e)
        return
    _emit(ctx, result, fmt)


@cli.command("chains")
@click.option("--format", "fmt", type=click.Choice(sorted(VALID_FORMATS)), default=None)
@click.pass_context
def chains_command(ctx: click.Context, fmt: str | None) -> None:
    """List supported chains and whether a credential is configured."""
    config: LedgerscanConfig = ctx.obj["config"]
    chains = [
        {
            "name": spec.name,
            "family": spec.family,
            "native_symbol": spec.native_symbol,
            "native_decimals": spec.native_decimals,
            "chain_id": spec.chain_id,
            "page_size": spec.page_size,
            "configured": bool(config.api.credential_for(spec.credential)),
        }
        for spec in (get_chain(name) for name in CHAIN_CHOICES)
    ]
    _emit(ctx, {"chains": chains}, fmt)


# ── Config commands ───────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Manage ledgerscan configuration."""


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Initialize default config at ~/.ledgerscan/config.toml."""
    provided = ctx.obj.get("config_path")
    config_path = Path(provided).expanduser() if provided else get_default_config_path()

    if config_path.exists() and not force:
        click.echo(
            json.dumps(
                {
                    "status": "already_exists",
                    "config_path": str(config_path),
                    "hint": "Use --force to reinitialize",
                }
            )
        )
        return

    status = "initialized"
    backup = None

    if config_path.exists() and force:
        backup = str(config_path) + ".bak"
        shutil.copy2(config_path, backup)
        status = "reinitialized"

    save_config(LedgerscanConfig(), str(config_path))

    result: dict[str, Any] = {
        "status": status,
        "config_path": str(config_path),
    }
    if backup:
        result["backup"] = backup
    click.echo(json.dumps(result))


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration (API keys masked)."""
    config: LedgerscanConfig = ctx.obj["config"]
    provided = ctx.obj.get("config_path")
    gw = config.gateway

    result = {
        "config_path": str(Path(provided).expanduser() if provided else get_default_config_path()),
        "api": {
            "etherscan_api_key": mask_api_key(config.api.etherscan_api_key),
            "bscscan_api_key": mask_api_key(config.api.bscscan_api_key),
            "alchemy_api_key": mask_api_key(config.api.alchemy_api_key),
        },
        "gateway": {
            "cache_ttl_seconds": gw.cache_ttl_seconds,
            "max_retries": gw.max_retries,
            "backoff_base": gw.backoff_base,
            "backoff_cap": gw.backoff_cap,
            "timeout": gw.timeout,
            "page_pause": gw.page_pause,
            "source_pause": gw.source_pause,
            "lookup_pause": gw.lookup_pause,
            "safety_cap": gw.safety_cap,
            "calls_per_second": gw.calls_per_second,
            "degrade_on_rate_limit": gw.degrade_on_rate_limit,
            "extra_rate_limit_phrases": list(gw.extra_rate_limit_phrases),
        },
        "output": {
            "default_format": config.output.default_format,
            "color": config.output.color,
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    click.echo(format_output(result, "json"))


# ── Helpers ───────────────────────────────────────────────────────────────────


def _date_bound(value: datetime | None) -> Any:
    """Midnight datetimes from --start/--end mean whole days."""
    if value is None:
        return None
    if (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0):
        return value.date()
    return value


if __name__ == "__main__":
    cli()
