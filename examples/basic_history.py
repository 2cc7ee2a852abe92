"""Basic history example.

This script demonstrates how to use ledgerscan as a library to fetch a
reconciled transaction history and a balance.

Requires ETHERSCAN_API_KEY in the environment.
"""

import asyncio
import sys

from ledgerscan import LedgerClient
from ledgerscan.config import load_config
from ledgerscan.log import setup_logging


async def main(address: str) -> None:
    """Print the ETH balance and the 20 most recent records for `address`."""
    setup_logging("INFO")
    async with LedgerClient(load_config()) as client:
        balance = await client.get_balance(address, "ethereum")
        if balance.is_live:
            print(f"Balance: {balance.amount} {balance.unit}")
        else:
            print(f"Balance unknown: {balance.error}")

        report = await client.fetch_history(address, "ethereum", limit=20)
        for tx in report.transactions:
            arrow = "←" if tx.direction == "incoming" else "→"
            fee = f" fee {tx.gas_fee}" if tx.has_fee else ""
            print(f"  {tx.occurred_at:%Y-%m-%d %H:%M} {arrow} {tx.amount} {tx.currency}{fee}")

        for source, error in report.source_errors.items():
            print(f"  ! {source}: {error}")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "0xd8da6bf26964af9d7eed9e03e53415d37aa96045"))
