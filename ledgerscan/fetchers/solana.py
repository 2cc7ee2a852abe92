"""
Solana fetcher: JSON-RPC over the Alchemy Solana endpoint.

History is two-phase: page through signatures for the address
(getSignaturesForAddress, cursor `before`), then fetch each transaction
(getTransaction, jsonParsed) in small concurrent batches and turn its
parsed instructions into SOL and SPL-token records.

Design decisions:
- Fees come straight from `meta.fee` and are attributed to the wallet's
  outgoing records only when it is the fee payer (first account key).
- Transfers of the same currency and direction inside one transaction are
  summed into one record.
- When no system transfer instruction touches the wallet, the SOL balance
  delta (net of the fee) is used instead.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator

from loguru import logger

from ledgerscan.chains import SOLANA, ChainSpec
from ledgerscan.exceptions import InvalidAddressError, LedgerscanError, PartialDataWarning, RemoteError
from ledgerscan.gateway import SolanaRPCGateway, make_cache_key
from ledgerscan.models import (
    FAILED,
    INCOMING,
    NATIVE,
    OUTGOING,
    SUCCESS,
    TOKEN,
    GasLookup,
    NormalizedTransaction,
    SourceResult,
)
from ledgerscan.units import TokenInfo, native_units_to_decimal, resolve_token, token_units_to_decimal

# Base58, 32–44 chars (no 0, O, I, l)
SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

DETAIL_BATCH_SIZE = 5
DETAIL_BATCH_PAUSE = 0.3

SOURCE_NAME = "transactions"


class SolanaFetcher:
    """Async fetcher for Solana accounts via JSON-RPC."""

    def __init__(self, gateway: SolanaRPCGateway, chain: ChainSpec = SOLANA) -> None:
        self._gateway = gateway
        self.chain = chain

    def validate_address(self, address: str) -> bool:
        """Validate base58 account format. No API call required."""
        return bool(SOLANA_ADDRESS_RE.match(address or ""))

    async def get_native_balance(self, address: str) -> Decimal:
        self._require_valid(address)
        result = await self._gateway.call(
            "getBalance",
            [address, {"commitment": "confirmed"}],
            cache_key=make_cache_key(self.chain.name, "getBalance", address=address),
        )
        if not isinstance(result, dict):
            raise RemoteError(f"{self.chain.name} getBalance unavailable")
        return native_units_to_decimal(result.get("value"), self.chain.native_decimals)

    async def get_token_balance(self, address: str, token: TokenInfo) -> Decimal:
        """Sum of every token account `address` owns for the token's mint."""
        self._require_valid(address)
        result = await self._gateway.call(
            "getParsedTokenAccountsByOwner",
            [address, {"mint": token.contract}, {"encoding": "jsonParsed"}],
            cache_key=make_cache_key(
                self.chain.name, "getParsedTokenAccountsByOwner", address=address, mint=token.contract
            ),
        )
        if not isinstance(result, dict):
            raise RemoteError(f"{self.chain.name} token accounts unavailable")

        total = Decimal(0)
        for account in result.get("value") or []:
            parsed = (((account.get("account") or {}).get("data") or {}).get("parsed") or {})
            amount = (parsed.get("info") or {}).get("tokenAmount") or {}
            total += token_units_to_decimal(amount.get("amount"), amount.get("decimals", token.decimals))
        return total

    async def fetch_signatures(
        self,
        address: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        *,
        degraded: list[str] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield signature entries newest first, within [start_time, end_time].

        Entries newer than end_time are skipped; the first entry older than
        start_time ends the walk. A page that came back degraded also ends
        it, and is noted in `degraded`.
        """
        settings = self._gateway.settings
        page_size = self.chain.page_size
        start_ts = int(start_time.timestamp()) if start_time else None
        end_ts = int(end_time.timestamp()) if end_time else None
        before: str | None = None
        yielded = 0

        while True:
            options: dict[str, Any] = {"limit": page_size, "commitment": "confirmed"}
            if before:
                options["before"] = before
            page = await self._gateway.call(
                "getSignaturesForAddress",
                [address, options],
                cache_key=make_cache_key(
                    self.chain.name, "getSignaturesForAddress", address=address, before=before, limit=page_size
                ),
            )
            if page is None:
                logger.warning(f"{self.chain.name} signatures before={before}: no data after retries")
                if degraded is not None:
                    degraded.append(f"signatures before={before or 'latest'}")
                return
            if not isinstance(page, list) or not page:
                return
            logger.debug(f"{self.chain.name} signatures before={before}: {len(page)}")

            for entry in page:
                block_time = entry.get("blockTime")
                if block_time is not None:
                    if end_ts is not None and block_time > end_ts:
                        continue
                    if start_ts is not None and block_time < start_ts:
                        return
                if yielded >= settings.safety_cap:
                    logger.warning(
                        f"{self.chain.name} signatures: safety cap of {settings.safety_cap} reached"
                    )
                    return
                yielded += 1
                yield entry

            if len(page) < page_size:
                return
            before = page[-1].get("signature")
            if not before:
                return
            await self._gateway.pause(settings.page_pause)

    async def fetch_transactions(
        self,
        address: str,
        signatures: list[str],
        *,
        missing: list[str] | None = None,
    ) -> list[NormalizedTransaction]:
        """
        Fetch and parse transaction details, DETAIL_BATCH_SIZE at a time.

        A detail that fails or comes back empty is skipped and its signature
        noted in `missing`; the rest of the batch is kept.
        """
        records: list[NormalizedTransaction] = []
        for start in range(0, len(signatures), DETAIL_BATCH_SIZE):
            batch = signatures[start : start + DETAIL_BATCH_SIZE]
            details = await asyncio.gather(
                *(self._get_transaction(sig) for sig in batch), return_exceptions=True
            )
            for signature, tx in zip(batch, details):
                if isinstance(tx, LedgerscanError):
                    logger.warning(f"{self.chain.name} transaction {signature}: {tx.message}")
                elif isinstance(tx, BaseException):
                    raise tx
                elif isinstance(tx, dict):
                    records.extend(self._parse_transaction(tx, address, signature))
                    continue
                else:
                    logger.warning(f"{self.chain.name} transaction {signature}: no data after retries")
                if missing is not None:
                    missing.append(signature)
            if start + DETAIL_BATCH_SIZE < len(signatures):
                await self._gateway.pause(DETAIL_BATCH_PAUSE)
        return records

    async def fetch_sources(
        self,
        address: str,
        start_block: int = 0,
        end_block: int | None = None,
        *,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[SourceResult]:
        """
        Single source: signatures, then details. Block bounds are ignored;
        Solana is bounded by time.

        A failure part-way through the signature walk keeps the signatures
        already listed and returns their records with the error. Degraded
        pages and unavailable details are reported as a PartialDataWarning.

        Raises:
            InvalidAddressError: Address is not base58
            ConfigurationError: No credential configured
        """
        self._require_valid(address)
        self._gateway.credential(self.chain)

        signatures: list[str] = []
        degraded: list[str] = []
        missing: list[str] = []
        error: LedgerscanError | None = None
        try:
            async for entry in self.fetch_signatures(address, start_time, end_time, degraded=degraded):
                if entry.get("signature"):
                    signatures.append(entry["signature"])
        except LedgerscanError as e:
            logger.warning(
                f"{self.chain.name} {SOURCE_NAME}: signature walk failed after "
                f"{len(signatures)} signatures: {e.message}"
            )
            error = e

        records = await self.fetch_transactions(address, signatures, missing=missing)
        logger.info(f"{self.chain.name} {SOURCE_NAME}: {len(records)} records from {len(signatures)} signatures")

        if error is None and (degraded or missing):
            error = PartialDataWarning(
                f"{SOURCE_NAME}: {len(degraded)} signature page(s) and "
                f"{len(missing)} transaction(s) unavailable",
                details={"source": SOURCE_NAME, "pages": degraded, "signatures": missing},
            )
            logger.warning(f"{self.chain.name} {error.message}")
        return [SourceResult(SOURCE_NAME, records, error)]

    async def lookup_gas(self, tx_hash: str, block_number: int) -> GasLookup | None:
        # Solana fees are read from the transaction itself.
        return None

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    def _require_valid(self, address: str) -> None:
        if not self.validate_address(address):
            raise InvalidAddressError(
                f"Invalid {self.chain.name} address: {address!r}. Must be base58, 32-44 chars.",
                details={"address": address, "blockchain": self.chain.name},
            )

    async def _get_transaction(self, signature: str) -> Any:
        return await self._gateway.call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
            cache_key=make_cache_key(self.chain.name, "getTransaction", signature=signature),
        )

    def _parse_transaction(
        self, tx: dict[str, Any], address: str, signature: str
    ) -> list[NormalizedTransaction]:
        meta = tx.get("meta") or {}
        message = (tx.get("transaction") or {}).get("message") or {}
        keys = [k.get("pubkey") if isinstance(k, dict) else k for k in message.get("accountKeys") or []]
        fee_lamports = int(meta.get("fee") or 0)
        is_payer = bool(keys) and keys[0] == address
        owners = _token_account_owners(meta, keys)

        instructions = list(message.get("instructions") or [])
        for inner in meta.get("innerInstructions") or []:
            instructions.extend(inner.get("instructions") or [])

        # (currency, direction) -> accumulated transfer
        moves: dict[tuple[str, str], dict[str, Any]] = {}

        for ix in instructions:
            parsed = ix.get("parsed")
            if not isinstance(parsed, dict):
                continue
            info = parsed.get("info") or {}
            kind = parsed.get("type")
            program = ix.get("program")

            if program == "system" and kind == "transfer":
                source, destination = info.get("source"), info.get("destination")
                if address not in (source, destination):
                    continue
                amount = native_units_to_decimal(info.get("lamports"), self.chain.native_decimals)
                _add_move(moves, self.chain.native_symbol, source, destination, address, amount, None)

            elif program == "spl-token" and kind in ("transfer", "transferChecked"):
                source_owner = owners.get(info.get("source")) or info.get("authority") or info.get("source")
                dest_owner = owners.get(info.get("destination")) or info.get("destination")
                if address not in (source_owner, dest_owner):
                    continue
                mint = info.get("mint") or owners.mint_of(info.get("source"), info.get("destination"))
                token_amount = info.get("tokenAmount") or {}
                token = resolve_token(
                    self.chain.name,
                    mint,
                    reported_decimals=token_amount.get("decimals", owners.decimals_of(mint)),
                )
                raw = token_amount.get("amount", info.get("amount"))
                amount = token_units_to_decimal(raw, token.decimals)
                _add_move(moves, token.symbol, source_owner, dest_owner, address, amount, token)

        if not any(currency == self.chain.native_symbol for currency, _ in moves):
            self._add_balance_delta(moves, meta, keys, address, fee_lamports if is_payer else 0)

        status = FAILED if meta.get("err") else SUCCESS
        fee = native_units_to_decimal(fee_lamports, self.chain.native_decimals) if is_payer else Decimal(0)
        block_time = int(tx.get("blockTime") or 0)
        records = []
        for (currency, direction), move in moves.items():
            token: TokenInfo | None = move["token"]
            outgoing_fee = fee if direction == OUTGOING else Decimal(0)
            records.append(
                NormalizedTransaction(
                    hash=signature,
                    block_number=int(tx.get("slot") or 0),
                    timestamp=block_time * 1000,
                    from_addr=move["from"] or "",
                    to_addr=move["to"] or "",
                    amount=move["amount"],
                    currency=currency,
                    direction=direction,
                    status=status,
                    record_kind=TOKEN if token else NATIVE,
                    blockchain=self.chain.name,
                    gas_fee=outgoing_fee,
                    contract_address=token.contract if token else None,
                    token_name=(token.name or None) if token else None,
                )
            )
        return records

    def _add_balance_delta(
        self,
        moves: dict[tuple[str, str], dict[str, Any]],
        meta: dict[str, Any],
        keys: list[str],
        address: str,
        fee_paid: int,
    ) -> None:
        if address not in keys:
            return
        index = keys.index(address)
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        if index >= len(pre) or index >= len(post):
            return
        delta = int(post[index]) - int(pre[index]) + fee_paid
        if delta == 0:
            return
        amount = native_units_to_decimal(abs(delta), self.chain.native_decimals)
        if delta > 0:
            _add_move(moves, self.chain.native_symbol, None, address, address, amount, None)
        else:
            _add_move(moves, self.chain.native_symbol, address, None, address, amount, None)


class _TokenOwners(dict):
    """Token account → owner wallet, built from pre/post token balances."""

    def __init__(self) -> None:
        super().__init__()
        self.mints: dict[str, str] = {}
        self.decimals: dict[str, int] = {}

    def mint_of(self, *accounts: str | None) -> str:
        for account in accounts:
            if account and account in self.mints:
                return self.mints[account]
        return ""

    def decimals_of(self, mint: str) -> int | None:
        return self.decimals.get(mint)


def _token_account_owners(meta: dict[str, Any], keys: list[str]) -> _TokenOwners:
    owners = _TokenOwners()
    for balance in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        index = balance.get("accountIndex")
        if not isinstance(index, int) or index >= len(keys):
            continue
        account = keys[index]
        if balance.get("owner"):
            owners[account] = balance["owner"]
        mint = balance.get("mint")
        if mint:
            owners.mints[account] = mint
            decimals = (balance.get("uiTokenAmount") or {}).get("decimals")
            if decimals is not None:
                owners.decimals[mint] = int(decimals)
    return owners


def _add_move(
    moves: dict[tuple[str, str], dict[str, Any]],
    currency: str,
    source: str | None,
    destination: str | None,
    address: str,
    amount: Decimal,
    token: TokenInfo | None,
) -> None:
    direction = INCOMING if destination == address else OUTGOING
    if source == address and destination == address:
        return
    move = moves.get((currency, direction))
    if move is None:
        moves[(currency, direction)] = {
            "from": source,
            "to": destination,
            "amount": amount,
            "token": token,
        }
    else:
        move["amount"] += amount
