"""
Balance aggregation across the on-chain and off-chain ledgers.

Partition:
- onchain_confirmed:  confirmed UTXOs at on-chain addresses
- onchain_pending:    unconfirmed UTXOs at on-chain addresses, plus every
                      boarding UTXO (locked until a round promotes it)
- offchain_confirmed: unspent, non-preconfirmed VTXOs
- offchain_pending:   unspent, preconfirmed VTXOs

Available balance is onchain_confirmed + offchain_confirmed and therefore
never includes boarding value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

from ark_server_client import VirtualOutput
from esplora_client import OnchainOutput
from ledger_store import BalanceCounters, BalanceSnapshot, LedgerStore
from wallet_errors import WalletNotFound
from wallet_locks import WalletLocks
from wallet_outputs import OutputFetcher, OutputView

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceView:
    wallet_id: str
    onchain_confirmed: int
    onchain_pending: int
    offchain_confirmed: int
    offchain_pending: int
    last_updated: int | None = None
    onchain_stale: bool = False
    offchain_stale: bool = False

    @property
    def available(self) -> int:
        return self.onchain_confirmed + self.offchain_confirmed

    @property
    def total(self) -> int:
        return (
            self.onchain_confirmed
            + self.onchain_pending
            + self.offchain_confirmed
            + self.offchain_pending
        )

    def counters(self) -> BalanceCounters:
        return BalanceCounters(
            onchain_confirmed=self.onchain_confirmed,
            onchain_pending=self.onchain_pending,
            offchain_confirmed=self.offchain_confirmed,
            offchain_pending=self.offchain_pending,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "wallet_id": self.wallet_id,
            "onchain_confirmed": self.onchain_confirmed,
            "onchain_pending": self.onchain_pending,
            "offchain_confirmed": self.offchain_confirmed,
            "offchain_pending": self.offchain_pending,
            "available": self.available,
            "total": self.total,
            "last_updated": self.last_updated,
            "onchain_stale": self.onchain_stale,
            "offchain_stale": self.offchain_stale,
        }

    @classmethod
    def from_snapshot(
        cls, wallet_id: str, snapshot: BalanceSnapshot | None, stale: bool = False
    ) -> BalanceView:
        if snapshot is None:
            return cls(wallet_id, 0, 0, 0, 0, None, stale, stale)
        return cls(
            wallet_id=wallet_id,
            onchain_confirmed=snapshot.onchain_confirmed,
            onchain_pending=snapshot.onchain_pending,
            offchain_confirmed=snapshot.offchain_confirmed,
            offchain_pending=snapshot.offchain_pending,
            last_updated=snapshot.last_updated,
            onchain_stale=stale,
            offchain_stale=stale,
        )


def partition_onchain(
    onchain: Sequence[OnchainOutput], boarding: Sequence[OnchainOutput]
) -> tuple[int, int]:
    confirmed = sum(u.value for u in onchain if u.confirmed)
    pending = sum(u.value for u in onchain if not u.confirmed)
    pending += sum(u.value for u in boarding)
    return confirmed, pending


def partition_offchain(vtxos: Sequence[VirtualOutput]) -> tuple[int, int]:
    unspent = [v for v in vtxos if not v.is_spent]
    confirmed = sum(v.amount for v in unspent if not v.is_pending)
    pending = sum(v.amount for v in unspent if v.is_pending)
    return confirmed, pending


class BalanceAggregator:
    def __init__(self, store: LedgerStore, outputs: OutputFetcher, locks: WalletLocks) -> None:
        self.store = store
        self.outputs = outputs
        self.locks = locks

    def summarize(self, view: OutputView, previous: BalanceCounters) -> BalanceCounters:
        """
        Build fresh counters from fetched outputs. A side that failed to
        fetch keeps its previous values.
        """
        if view.indexer_ok:
            onchain_confirmed, onchain_pending = partition_onchain(
                view.onchain or [], view.boarding or []
            )
        else:
            onchain_confirmed = previous.onchain_confirmed
            onchain_pending = previous.onchain_pending

        if view.coordinator_ok:
            offchain_confirmed, offchain_pending = partition_offchain(view.offchain or [])
        else:
            offchain_confirmed = previous.offchain_confirmed
            offchain_pending = previous.offchain_pending

        return BalanceCounters(
            onchain_confirmed=onchain_confirmed,
            onchain_pending=onchain_pending,
            offchain_confirmed=offchain_confirmed,
            offchain_pending=offchain_pending,
        )

    async def previous_counters(self, wallet_id: str) -> BalanceCounters:
        snapshot = await asyncio.to_thread(self.store.get_snapshot, wallet_id)
        return snapshot.counters() if snapshot is not None else BalanceCounters()

    async def get_balance(self, wallet_id: str) -> BalanceView:
        """Persisted snapshot, no network access."""
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        snapshot = await asyncio.to_thread(self.store.get_snapshot, wallet_id)
        return BalanceView.from_snapshot(wallet_id, snapshot)

    async def get_available_balance(self, wallet_id: str) -> int:
        return (await self.get_balance(wallet_id)).available

    async def recompute_balance(self, wallet_id: str) -> BalanceView:
        async with self.locks.lock_for(wallet_id):
            return await self.recompute_balance_nolock(wallet_id)

    async def recompute_balance_nolock(self, wallet_id: str) -> BalanceView:
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        view = await self.outputs.fetch(wallet_id)

        if not view.indexer_ok and not view.coordinator_ok:
            logger.warning("Both remote sides failed for %s; returning persisted balance", wallet_id)
            snapshot = await asyncio.to_thread(self.store.get_snapshot, wallet_id)
            return BalanceView.from_snapshot(wallet_id, snapshot, stale=True)

        counters = self.summarize(view, await self.previous_counters(wallet_id))
        await asyncio.to_thread(self.store.apply_ledger_update, wallet_id, (), (), counters)
        return await self.view_after_write(wallet_id, view)

    async def view_after_write(self, wallet_id: str, view: OutputView) -> BalanceView:
        snapshot = await asyncio.to_thread(self.store.get_snapshot, wallet_id)
        if snapshot is None:
            raise WalletNotFound(f"Wallet not found: {wallet_id}")
        base = BalanceView.from_snapshot(wallet_id, snapshot)
        return BalanceView(
            wallet_id=wallet_id,
            onchain_confirmed=base.onchain_confirmed,
            onchain_pending=base.onchain_pending,
            offchain_confirmed=base.offchain_confirmed,
            offchain_pending=base.offchain_pending,
            last_updated=base.last_updated,
            onchain_stale=not view.indexer_ok,
            offchain_stale=not view.coordinator_ok,
        )
