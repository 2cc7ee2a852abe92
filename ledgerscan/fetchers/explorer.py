"""
Explorer fetcher: Etherscan-family REST APIs (Ethereum, BSC).

Fetches every record kind the explorer splits an address history into:
native transfers (txlist), internal transfers (txlistinternal), token
transfers (tokentx), mined block/uncle rewards (getminedblocks) and
beacon-chain validator withdrawals (txsBeaconWithdrawal).

API docs: https://docs.etherscan.io/etherscan-v2/api-endpoints/accounts

Design decisions:
- One implementation for all explorer chains; the ChainSpec carries page
  size, native unit, heuristics and feature flags.
- Each record kind is an async iterator paging lazily through the gateway,
  most recent first, stopping at a short/empty page or the safety cap.
- Sources run concurrently with a stagger, joined all-settled. A source that
  fails mid-way keeps the records of earlier pages and carries the error; a
  source with degraded pages keeps what it fetched and is flagged.
- Paging past the explorer result window (page x offset) moves endblock
  down instead of asking for a page the explorer would refuse.
- Gas lookups (receipt, then transaction detail, then heuristic) are exposed
  for the reconciler and never called during the primary fetch.
"""

from __future__ import annotations

import asyncio
import re
from decimal import Decimal
from typing import Any, AsyncIterator, Callable

from loguru import logger

from ledgerscan.chains import ChainSpec, get_chain, wei_to_native
from ledgerscan.exceptions import (
    InvalidAddressError,
    LedgerscanError,
    PartialDataWarning,
    RemoteError,
)
from ledgerscan.gateway import ExplorerGateway, make_cache_key
from ledgerscan.models import (
    FAILED,
    INCOMING,
    INTERNAL,
    MINING_REWARD,
    NATIVE,
    OUTGOING,
    SUCCESS,
    TOKEN,
    VALIDATOR_WITHDRAWAL,
    GasLookup,
    NormalizedTransaction,
    SourceResult,
    direction_for,
)
from ledgerscan.units import (
    TokenInfo,
    native_units_to_decimal,
    parse_quantity,
    resolve_token,
    token_units_to_decimal,
)

# EVM address regex (0x + 40 hex chars)
EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Explorer default for "up to the chain head"
MAX_END_BLOCK = 99_999_999

# Gas assumed when only the transaction's gas price is known
TOKEN_TRANSFER_GAS = 65_000

# Withdrawal amounts are reported in gwei
WITHDRAWAL_DECIMALS = 9

# Explorer failure text for page x offset beyond the result window
RESULT_WINDOW_PHRASE = "result window is too large"

MINING_REWARD_SENDER = "Network Reward"
WITHDRAWAL_SENDER = "Beacon Chain"


class ExplorerFetcher:
    """
    Async fetcher for one explorer-backed chain.

    All network access goes through the shared ExplorerGateway, so caching,
    throttling and retry are handled there.
    """

    def __init__(self, gateway: ExplorerGateway, chain: ChainSpec | str) -> None:
        self._gateway = gateway
        self.chain = chain if isinstance(chain, ChainSpec) else get_chain(chain)
        if not self.chain.is_explorer:
            raise ValueError(f"{self.chain.name} is not an explorer chain")

    def validate_address(self, address: str) -> bool:
        """Validate EVM address format. No API call required."""
        return bool(EVM_ADDRESS_RE.match(address or ""))

    # ──────────────────────────────────────────────────────────────
    # Balances
    # ──────────────────────────────────────────────────────────────

    async def get_native_balance(self, address: str) -> Decimal:
        self._require_valid(address)
        data = await self._gateway.request(
            self.chain,
            {"module": "account", "action": "balance", "address": address, "tag": "latest"},
            cache_key=make_cache_key(self.chain.name, "balance", address=address.lower()),
        )
        return native_units_to_decimal(
            self._scalar_result(data, "balance"), self.chain.native_decimals
        )

    async def get_token_balance(self, address: str, token: TokenInfo) -> Decimal:
        self._require_valid(address)
        data = await self._gateway.request(
            self.chain,
            {
                "module": "account",
                "action": "tokenbalance",
                "contractaddress": token.contract,
                "address": address,
                "tag": "latest",
            },
            cache_key=make_cache_key(
                self.chain.name,
                "tokenbalance",
                address=address.lower(),
                contract=token.contract.lower(),
            ),
        )
        return token_units_to_decimal(self._scalar_result(data, "tokenbalance"), token.decimals)

    # ──────────────────────────────────────────────────────────────
    # Record kinds
    # ──────────────────────────────────────────────────────────────

    async def fetch_native(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        degraded: list[str] | None = None,
    ) -> AsyncIterator[NormalizedTransaction]:
        """Native transfers sent or received by `address`, newest first."""
        async for row in self._paginate(
            address, "txlist", self._block_range(start_block, end_block), degraded
        ):
            record = self._parse_native(row, address)
            if record is not None:
                yield record

    async def fetch_internal(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        degraded: list[str] | None = None,
    ) -> AsyncIterator[NormalizedTransaction]:
        """Contract-triggered native transfers touching `address`."""
        async for row in self._paginate(
            address, "txlistinternal", self._block_range(start_block, end_block), degraded
        ):
            record = self._parse_internal(row, address)
            if record is not None:
                yield record

    async def fetch_token_transfers(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        degraded: list[str] | None = None,
    ) -> AsyncIterator[NormalizedTransaction]:
        """ERC-20/BEP-20 transfer events. Gas data is often missing here."""
        async for row in self._paginate(
            address, "tokentx", self._block_range(start_block, end_block), degraded
        ):
            record = self._parse_token(row, address)
            if record is not None:
                yield record

    async def fetch_mining_rewards(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        degraded: list[str] | None = None,
    ) -> AsyncIterator[NormalizedTransaction]:
        """Block rewards, then uncle rewards. Block range is applied client-side."""
        if not self.chain.supports_mining_rewards:
            return
        upper = MAX_END_BLOCK if end_block is None else end_block
        for block_type in ("blocks", "uncles"):
            async for row in self._paginate(
                address, "getminedblocks", {"blocktype": block_type}, degraded
            ):
                record = self._parse_mining_reward(row, address, block_type)
                if record is not None and start_block <= record.block_number <= upper:
                    yield record
            if block_type == "blocks":
                await self._gateway.pause(self._gateway.settings.page_pause)

    async def fetch_validator_withdrawals(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        degraded: list[str] | None = None,
    ) -> AsyncIterator[NormalizedTransaction]:
        """Beacon-chain withdrawals credited to `address`."""
        if not self.chain.supports_withdrawals:
            return
        async for row in self._paginate(
            address, "txsBeaconWithdrawal", self._block_range(start_block, end_block), degraded
        ):
            record = self._parse_withdrawal(row, address)
            if record is not None:
                yield record

    async def fetch_sources(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        start_time: Any = None,
        end_time: Any = None,
    ) -> list[SourceResult]:
        """
        Fetch all record kinds concurrently, staggered by `source_pause`.

        Time bounds are accepted for interface parity; explorer sources are
        bounded by block range only, and date filtering happens downstream.

        Raises:
            InvalidAddressError: Address is not a 0x address
            ConfigurationError: No credential configured for the chain
        """
        self._require_valid(address)
        self._gateway.credential(self.chain)

        sources: list[tuple[str, Callable[..., AsyncIterator[NormalizedTransaction]]]] = [
            (NATIVE, self.fetch_native),
            (INTERNAL, self.fetch_internal),
            (TOKEN, self.fetch_token_transfers),
        ]
        if self.chain.supports_mining_rewards:
            sources.append((MINING_REWARD, self.fetch_mining_rewards))
        if self.chain.supports_withdrawals:
            sources.append((VALIDATOR_WITHDRAWAL, self.fetch_validator_withdrawals))

        stagger = self._gateway.settings.source_pause
        outcomes = await asyncio.gather(
            *(
                self._collect(name, fetch, address, start_block, end_block, delay=i * stagger)
                for i, (name, fetch) in enumerate(sources)
            ),
            return_exceptions=True,
        )

        results: list[SourceResult] = []
        for (name, _), outcome in zip(sources, outcomes):
            if isinstance(outcome, SourceResult):
                results.append(outcome)
            else:
                logger.warning(f"{self.chain.name} {name}: unexpected failure: {outcome!r}")
                results.append(SourceResult(name, [], LedgerscanError(str(outcome))))
        return results

    # ──────────────────────────────────────────────────────────────
    # Secondary lookups
    # ──────────────────────────────────────────────────────────────

    async def lookup_gas(self, tx_hash: str, block_number: int) -> GasLookup | None:
        """
        Recover gas used × price for one transaction.

        Order: receipt (gasUsed, effectiveGasPrice) → transaction detail
        (gasPrice) → chain heuristic by block height. Returns None when
        nothing usable was found.
        """
        receipt = await self._proxy("eth_getTransactionReceipt", tx_hash)
        detail: dict[str, Any] | None = None

        if isinstance(receipt, dict):
            gas_used = parse_quantity(receipt.get("gasUsed"))
            price = parse_quantity(receipt.get("effectiveGasPrice"))
            source = "receipt"
            if price == 0:
                detail = await self._proxy("eth_getTransactionByHash", tx_hash)
                if isinstance(detail, dict):
                    price = parse_quantity(detail.get("gasPrice"))
                    source = "transaction"
            if gas_used and price:
                return GasLookup(gas_used, price, estimated=False, source=source)
            if gas_used:
                estimate = self.chain.estimate_gas_price(block_number)
                if estimate:
                    return GasLookup(gas_used, estimate, estimated=True, source="heuristic")
            return None

        detail = await self._proxy("eth_getTransactionByHash", tx_hash)
        if not isinstance(detail, dict):
            return None
        price = parse_quantity(detail.get("gasPrice"))
        if price == 0:
            price = self.chain.estimate_gas_price(block_number) or 0
            source = "heuristic"
        else:
            source = "transaction"
        if not price:
            return None
        # No receipt: gas used is a typical token-transfer figure.
        return GasLookup(TOKEN_TRANSFER_GAS, price, estimated=True, source=source)

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    def _require_valid(self, address: str) -> None:
        if not self.validate_address(address):
            raise InvalidAddressError(
                f"Invalid {self.chain.name} address: {address!r}. Must be 0x + 40 hex chars.",
                details={"address": address, "blockchain": self.chain.name},
            )

    @staticmethod
    def _block_range(start_block: int, end_block: int | None) -> dict[str, Any]:
        return {
            "startblock": max(0, start_block),
            "endblock": MAX_END_BLOCK if end_block is None else end_block,
        }

    def _scalar_result(self, data: dict[str, Any], action: str) -> Any:
        if data.get("degraded"):
            raise RemoteError(
                f"{self.chain.name} {action} unavailable: {data.get('message') or 'degraded response'}",
                details={"blockchain": self.chain.name},
            )
        return data.get("result")

    async def _collect(
        self,
        name: str,
        fetch: Callable[..., AsyncIterator[NormalizedTransaction]],
        address: str,
        start_block: int,
        end_block: int | None,
        delay: float,
    ) -> SourceResult:
        await self._gateway.pause(delay)
        degraded: list[str] = []
        records: list[NormalizedTransaction] = []
        try:
            async for record in fetch(address, start_block, end_block, degraded=degraded):
                records.append(record)
        except LedgerscanError as e:
            logger.warning(
                f"{self.chain.name} {name}: source failed after {len(records)} records: {e.message}"
            )
            return SourceResult(name, records, e)

        logger.info(f"{self.chain.name} {name}: {len(records)} records")
        if degraded:
            warning = PartialDataWarning(
                f"{name}: {len(degraded)} page(s) returned no data after retries",
                details={"source": name, "pages": degraded},
            )
            logger.warning(f"{self.chain.name} {warning.message}")
            return SourceResult(name, records, warning)
        return SourceResult(name, records)

    async def _paginate(
        self,
        address: str,
        action: str,
        extra: dict[str, Any],
        degraded: list[str] | None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield raw rows page by page until a short page or the safety cap.

        When the next page would pass the explorer's result window, the walk
        restarts at page 1 with endblock lowered to the last block seen.
        Rows of that boundary block already yielded are skipped.
        """
        settings = self._gateway.settings
        page_size = self.chain.page_size
        window = dict(extra)
        boundary: set[tuple[Any, ...]] = set()
        yielded = 0
        page = 1

        while True:
            params = {
                "module": "account",
                "action": action,
                "address": address,
                **window,
                "page": page,
                "offset": page_size,
                "sort": "desc",
            }
            cache_key = make_cache_key(
                self.chain.name,
                action,
                **window,
                address=address.lower(),
                page=page,
                offset=page_size,
            )
            try:
                data = await self._gateway.request(self.chain, params, cache_key=cache_key)
            except RemoteError as e:
                if page > 1 and RESULT_WINDOW_PHRASE in e.message.lower():
                    logger.warning(f"{self.chain.name} {action}: result window reached at page {page}")
                    return
                raise
            if data.get("degraded") and degraded is not None:
                degraded.append(" ".join(filter(None, [action, extra.get("blocktype"), f"page {page}"])))

            rows = data.get("result")
            if not isinstance(rows, list):
                rows = []
            logger.debug(f"{self.chain.name} {action} page {page}: {len(rows)} rows")

            for row in rows:
                if boundary and _row_key(row) in boundary:
                    continue
                if yielded >= settings.safety_cap:
                    logger.warning(
                        f"{self.chain.name} {action}: safety cap of {settings.safety_cap} records reached"
                    )
                    return
                yielded += 1
                yield row

            if len(rows) < page_size:
                return

            if (page + 1) * page_size <= self.chain.result_window:
                page += 1
            else:
                last_block = parse_quantity(rows[-1].get("blockNumber"))
                if "endblock" not in window or window["endblock"] == last_block:
                    logger.warning(
                        f"{self.chain.name} {action}: result window of "
                        f"{self.chain.result_window} reached, history truncated"
                    )
                    return
                boundary = {
                    _row_key(row) for row in rows if parse_quantity(row.get("blockNumber")) == last_block
                }
                window["endblock"] = last_block
                page = 1
                logger.debug(f"{self.chain.name} {action}: continuing below block {last_block}")
            await self._gateway.pause(settings.page_pause)

    async def _proxy(self, action: str, tx_hash: str) -> Any:
        data = await self._gateway.request(
            self.chain,
            {"module": "proxy", "action": action, "txhash": tx_hash},
            cache_key=make_cache_key(self.chain.name, action, txhash=tx_hash.lower()),
        )
        result = data.get("result")
        return result if isinstance(result, dict) else None

    def _parse_native(self, row: dict[str, Any], address: str) -> NormalizedTransaction | None:
        tx_hash = row.get("hash")
        if not tx_hash:
            return None
        block = parse_quantity(row.get("blockNumber"))
        to_addr = row.get("to") or row.get("contractAddress") or ""
        direction = direction_for(address, to_addr)

        gas_used = parse_quantity(row.get("gasUsed"))
        gas_price = parse_quantity(row.get("gasPrice"))
        estimated = False
        if gas_price == 0 and gas_used:
            heuristic = self.chain.estimate_gas_price(block)
            if heuristic:
                gas_price, estimated = heuristic, True
        # The receiver never pays the sender's gas.
        fee = wei_to_native(self.chain, gas_used * gas_price) if direction == OUTGOING else Decimal(0)

        ok = str(row.get("isError", "0")) != "1" and str(row.get("txreceipt_status", "")) in ("1", "")
        return NormalizedTransaction(
            hash=tx_hash,
            block_number=block,
            timestamp=parse_quantity(row.get("timeStamp")) * 1000,
            from_addr=row.get("from") or "",
            to_addr=to_addr,
            amount=native_units_to_decimal(row.get("value"), self.chain.native_decimals),
            currency=self.chain.native_symbol,
            direction=direction,
            status=SUCCESS if ok else FAILED,
            record_kind=NATIVE,
            blockchain=self.chain.name,
            gas_used=gas_used,
            gas_fee=fee,
            fee_estimated=estimated and direction == OUTGOING,
            description=row.get("functionName") or "",
        )

    def _parse_internal(self, row: dict[str, Any], address: str) -> NormalizedTransaction | None:
        tx_hash = row.get("hash")
        if not tx_hash:
            return None
        to_addr = row.get("to") or row.get("contractAddress") or ""
        return NormalizedTransaction(
            hash=tx_hash,
            block_number=parse_quantity(row.get("blockNumber")),
            timestamp=parse_quantity(row.get("timeStamp")) * 1000,
            from_addr=row.get("from") or "",
            to_addr=to_addr,
            amount=native_units_to_decimal(row.get("value"), self.chain.native_decimals),
            currency=self.chain.native_symbol,
            direction=direction_for(address, to_addr),
            status=FAILED if str(row.get("isError", "0")) == "1" else SUCCESS,
            record_kind=INTERNAL,
            blockchain=self.chain.name,
            gas_used=parse_quantity(row.get("gasUsed")),
            is_internal=True,
            trace_id=row.get("traceId") or None,
            description=f"Internal transfer ({row.get('type') or 'call'})",
        )

    def _parse_token(self, row: dict[str, Any], address: str) -> NormalizedTransaction | None:
        tx_hash = row.get("hash")
        if not tx_hash:
            return None
        contract = row.get("contractAddress") or ""
        token = resolve_token(
            self.chain.name, contract, row.get("tokenSymbol"), row.get("tokenDecimal")
        )
        to_addr = row.get("to") or ""
        direction = direction_for(address, to_addr)

        gas_used = parse_quantity(row.get("gasUsed"))
        gas_price = parse_quantity(row.get("gasPrice"))
        fee = Decimal(0)
        if direction == OUTGOING and gas_used and gas_price:
            fee = wei_to_native(self.chain, gas_used * gas_price)

        return NormalizedTransaction(
            hash=tx_hash,
            block_number=parse_quantity(row.get("blockNumber")),
            timestamp=parse_quantity(row.get("timeStamp")) * 1000,
            from_addr=row.get("from") or "",
            to_addr=to_addr,
            amount=token_units_to_decimal(row.get("value"), token.decimals),
            currency=token.symbol,
            direction=direction,
            status=SUCCESS,
            record_kind=TOKEN,
            blockchain=self.chain.name,
            gas_used=gas_used,
            gas_fee=fee,
            contract_address=contract or None,
            token_name=token.name or row.get("tokenName") or None,
        )

    def _parse_mining_reward(
        self, row: dict[str, Any], address: str, block_type: str
    ) -> NormalizedTransaction | None:
        block = parse_quantity(row.get("blockNumber"))
        if not block:
            return None
        label = "Block mining" if block_type == "blocks" else "Uncle block"
        return NormalizedTransaction(
            hash=f"{block_type}-{block}",
            block_number=block,
            timestamp=parse_quantity(row.get("timeStamp")) * 1000,
            from_addr=MINING_REWARD_SENDER,
            to_addr=address,
            amount=native_units_to_decimal(row.get("blockReward"), self.chain.native_decimals),
            currency=self.chain.native_symbol,
            direction=INCOMING,
            status=SUCCESS,
            record_kind=MINING_REWARD,
            blockchain=self.chain.name,
            description=f"{label} reward for block {block}",
        )

    def _parse_withdrawal(self, row: dict[str, Any], address: str) -> NormalizedTransaction | None:
        validator = row.get("validatorIndex")
        index = row.get("withdrawalIndex")
        if validator is None or index is None:
            return None
        return NormalizedTransaction(
            hash=f"beacon-{validator}-{index}",
            block_number=parse_quantity(row.get("blockNumber")),
            timestamp=parse_quantity(row.get("timestamp") or row.get("timeStamp")) * 1000,
            from_addr=WITHDRAWAL_SENDER,
            to_addr=row.get("address") or address,
            amount=native_units_to_decimal(row.get("amount"), WITHDRAWAL_DECIMALS),
            currency=self.chain.native_symbol,
            direction=INCOMING,
            status=SUCCESS,
            record_kind=VALIDATOR_WITHDRAWAL,
            blockchain=self.chain.name,
            description=f"Beacon chain withdrawal from validator {validator}",
        )


def _row_key(row: dict[str, Any]) -> tuple[Any, ...]:
    """Identity of an explorer row within one block."""
    return (
        row.get("hash"),
        row.get("logIndex"),
        row.get("traceId"),
        row.get("withdrawalIndex"),
        row.get("contractAddress"),
        row.get("from"),
        row.get("to"),
        row.get("value"),
    )
