"""
Send Orchestrator: prioritized on-chain payments and off-chain payments.

On-chain flow: validate -> quote fee -> select confirmed on-chain UTXOs ->
sign -> broadcast -> record OnchainSend together with a fresh snapshot.
Nothing is written unless the broadcast succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field

from ark_server_client import ArkServerClient
from ark_wallet_config import ArkWalletConfig
from address_manager import AddressManager
from balance_aggregator import BalanceAggregator
from esplora_client import EsploraIndexer, OnchainOutput
from fee_estimator import FeeEstimator, FeeQuote
from ledger_store import AddressClass, LedgerStore, NewTransaction, TxType
from onchain_tx import (
    CoinSelection,
    build_signed_transaction,
    estimate_vsize,
    select_largest_first,
    validate_address,
)
from wallet_errors import (
    FEE_ESTIMATION_DEGRADED,
    BroadcastFailed,
    ErrorKind,
    IndexerRejected,
    IndexerUnavailable,
    InsufficientFunds,
    InvalidAmount,
    InvalidDestination,
    StorageInconsistency,
)
from wallet_keys import KeyDeriver, SeedCipher
from wallet_locks import WalletLocks
from wallet_outputs import OutputFetcher

logger = logging.getLogger(__name__)

_BECH32_CHARSET = re.compile(r"^[qpzry9x8gf2tvdw0s3jn54khce6mua7l]+$")


@dataclass(frozen=True)
class SendResult:
    txid: str
    amount_sats: int
    fee_sats: int
    fee_rate: int | None
    priority: str | None
    inputs: tuple[str, ...] = ()
    change_sats: int = 0
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        return {
            "txid": self.txid,
            "amount_sats": self.amount_sats,
            "fee_sats": self.fee_sats,
            "fee_rate": self.fee_rate,
            "priority": self.priority,
            "inputs": list(self.inputs),
            "change_sats": self.change_sats,
            "warnings": list(self.warnings),
        }


def check_amount(amount_sats: object) -> int:
    if isinstance(amount_sats, bool) or not isinstance(amount_sats, int):
        raise InvalidAmount(f"Amount must be an integer number of sats, got {amount_sats!r}")
    if amount_sats <= 0:
        raise InvalidAmount(f"Amount must be positive, got {amount_sats}")
    return amount_sats


class SendOrchestrator:
    def __init__(
        self,
        config: ArkWalletConfig,
        store: LedgerStore,
        indexer: EsploraIndexer,
        coordinator: ArkServerClient,
        outputs: OutputFetcher,
        fees: FeeEstimator,
        aggregator: BalanceAggregator,
        addresses: AddressManager,
        cipher: SeedCipher,
        deriver: KeyDeriver,
        locks: WalletLocks,
        clock=time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.indexer = indexer
        self.coordinator = coordinator
        self.outputs = outputs
        self.fees = fees
        self.aggregator = aggregator
        self.addresses = addresses
        self.cipher = cipher
        self.deriver = deriver
        self.locks = locks
        self._clock = clock

    # ---- on-chain ----

    async def spendable_utxos(self, wallet_id: str) -> list[OnchainOutput]:
        """Confirmed UTXOs at on-chain-class addresses. Boarding outputs never qualify."""
        onchain = await self.outputs.addresses(wallet_id, AddressClass.ONCHAIN)
        boarding = set(await self.outputs.addresses(wallet_id, AddressClass.BOARDING))
        utxos = await self.outputs.utxos_at(onchain)
        return [u for u in utxos if u.confirmed and u.address not in boarding]

    async def _prepare(
        self, wallet_id: str, dest_address: str, amount_sats: int, priority: str
    ) -> tuple[str, FeeQuote, CoinSelection, list[str]]:
        amount_sats = check_amount(amount_sats)
        dest_address = validate_address(dest_address, self.config)
        priority = self.fees.check_priority(priority)
        await asyncio.to_thread(self.store.get_wallet, wallet_id)

        warnings = []
        quote = await self.fees.quote(priority)
        if quote.degraded:
            warnings.append(FEE_ESTIMATION_DEGRADED)

        utxos = await self.spendable_utxos(wallet_id)
        selection = select_largest_first(utxos, amount_sats, quote.sat_per_vb)
        return dest_address, quote, selection, warnings

    async def estimate_onchain_fee(
        self, wallet_id: str, dest_address: str, amount_sats: int, priority: str = "normal"
    ) -> dict[str, object]:
        """Dry-run coin selection. Nothing is signed or written."""
        _, quote, selection, warnings = await self._prepare(
            wallet_id, dest_address, amount_sats, priority
        )
        n_out = 2 if selection.change else 1
        return {
            "priority": quote.priority,
            "fee_rate": quote.sat_per_vb,
            "fee_sats": selection.fee,
            "vsize": estimate_vsize(len(selection.inputs), n_out),
            "inputs": [u.outpoint for u in selection.inputs],
            "change_sats": selection.change,
            "warnings": warnings,
        }

    async def send_onchain(
        self, wallet_id: str, dest_address: str, amount_sats: int, priority: str = "normal"
    ) -> SendResult:
        async with self.locks.lock_for(wallet_id):
            dest_address, quote, selection, warnings = await self._prepare(
                wallet_id, dest_address, amount_sats, priority
            )
            if FEE_ESTIMATION_DEGRADED in warnings:
                logger.warning(
                    "Sending from %s with degraded fee estimate (%d sat/vB)",
                    wallet_id,
                    quote.sat_per_vb,
                )

            change = await self.addresses.get_address_nolock(wallet_id, AddressClass.ONCHAIN)
            wifs = await self._signing_keys(wallet_id, selection)
            raw_hex = build_signed_transaction(
                selection, wifs, dest_address, amount_sats, change.address, self.config
            )

            try:
                txid = await asyncio.to_thread(self.indexer.broadcast, raw_hex)
            except IndexerRejected as exc:
                logger.error("Broadcast rejected for %s: %s", wallet_id, exc.message)
                raise BroadcastFailed(exc.message, ErrorKind.REMOTE_REJECTED) from exc
            except IndexerUnavailable as exc:
                logger.error("Broadcast failed for %s: %s", wallet_id, exc.message)
                raise BroadcastFailed(exc.message, ErrorKind.REMOTE_UNAVAILABLE) from exc

            record = NewTransaction(
                txid=txid,
                tx_type=TxType.ONCHAIN_SEND,
                amount=-amount_sats,
                timestamp=int(self._clock()),
                is_settled=False,
                raw_tx=raw_hex,
            )
            await self._record(wallet_id, record)
            logger.info(
                "Broadcast %s from %s: %d sats, fee %d", txid, wallet_id, amount_sats, selection.fee
            )
            return SendResult(
                txid=txid,
                amount_sats=amount_sats,
                fee_sats=selection.fee,
                fee_rate=quote.sat_per_vb,
                priority=quote.priority,
                inputs=tuple(u.outpoint for u in selection.inputs),
                change_sats=selection.change,
                warnings=tuple(warnings),
            )

    async def _signing_keys(self, wallet_id: str, selection: CoinSelection) -> dict[str, str]:
        records = await asyncio.to_thread(
            self.store.list_addresses, wallet_id, AddressClass.ONCHAIN
        )
        index_by_address = {r.address: r.derivation_index for r in records}
        material = await asyncio.to_thread(self.store.get_key_material, wallet_id)
        seed = await asyncio.to_thread(self.cipher.decrypt, material.encrypted_seed)
        wifs = {}
        for u in selection.inputs:
            index = index_by_address.get(u.address)
            if index is None:
                raise StorageInconsistency(
                    f"Input {u.outpoint} is not at a derived on-chain address"
                )
            wifs[u.address] = self.deriver.onchain_wif(seed, index)
        return wifs

    async def _record(self, wallet_id: str, record: NewTransaction) -> None:
        view = await self.outputs.fetch(wallet_id)
        counters = self.aggregator.summarize(
            view, await self.aggregator.previous_counters(wallet_id)
        )
        await asyncio.to_thread(self.store.apply_ledger_update, wallet_id, [record], (), counters)

    # ---- off-chain ----

    def validate_ark_address(self, address: str) -> str:
        if not isinstance(address, str):
            raise InvalidDestination("Destination Ark address is required")
        address = address.strip().lower()
        prefix = f"{self.config.ark_hrp}1"
        if not address.startswith(prefix) or not _BECH32_CHARSET.match(address[len(prefix):]):
            raise InvalidDestination(
                f"Invalid Ark address for {self.config.network}: expected prefix {prefix!r}"
            )
        return address

    async def send_offchain(self, wallet_id: str, dest_ark_address: str, amount_sats: int) -> SendResult:
        amount_sats = check_amount(amount_sats)
        dest_ark_address = self.validate_ark_address(dest_ark_address)

        async with self.locks.lock_for(wallet_id):
            await asyncio.to_thread(self.store.get_wallet, wallet_id)
            vtxos = await self.outputs.offchain_outputs(wallet_id)
            spendable = sorted(
                (v for v in vtxos if not v.is_spent and not v.is_pending),
                key=lambda v: (-v.amount, v.txid, v.vout),
            )
            available = sum(v.amount for v in spendable)
            if available < amount_sats:
                raise InsufficientFunds(
                    f"Insufficient off-chain funds: need {amount_sats} sats, have {available} sats"
                )

            chosen = []
            total = 0
            for v in spendable:
                chosen.append(v)
                total += v.amount
                if total >= amount_sats:
                    break

            txid = await asyncio.to_thread(
                self.coordinator.submit_payment, chosen, dest_ark_address, amount_sats
            )
            record = NewTransaction(
                txid=txid,
                tx_type=TxType.OFFCHAIN_SEND,
                amount=-amount_sats,
                timestamp=int(self._clock()),
                is_settled=False,
            )
            await self._record(wallet_id, record)
            logger.info("Off-chain payment %s from %s: %d sats", txid, wallet_id, amount_sats)
            return SendResult(
                txid=txid,
                amount_sats=amount_sats,
                fee_sats=0,
                fee_rate=None,
                priority=None,
                inputs=tuple(v.outpoint for v in chosen),
                change_sats=total - amount_sats,
            )
