"""
Sync Engine: pull remote state, diff it against the ledger and apply the
difference in one atomic update.

Running a sync twice against unchanged remote state writes nothing the
second time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from balance_aggregator import BalanceAggregator, BalanceView
from ledger_store import LedgerStore, NewTransaction, StatusChange, TransactionRecord, TxType
from round_coordinator import RoundCoordinator
from wallet_errors import RemoteRejected, RemoteUnavailable
from wallet_locks import WalletLocks
from wallet_outputs import OutputFetcher, OutputView

logger = logging.getLogger(__name__)

# Unconfirmed transactions unknown to the indexer past this age are
# considered evicted from mempools.
MEMPOOL_EXPIRY_SECONDS = 14 * 24 * 60 * 60


@dataclass
class SyncReport:
    wallet_id: str
    inserted: int = 0
    updated: int = 0
    warnings: list[str] = field(default_factory=list)
    balance: BalanceView | None = None

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> dict[str, object]:
        return {
            "wallet_id": self.wallet_id,
            "inserted": self.inserted,
            "updated": self.updated,
            "partial": self.partial,
            "warnings": list(self.warnings),
            "balance": self.balance.to_dict() if self.balance is not None else None,
        }


@dataclass
class _Candidate:
    txid: str
    tx_type: TxType
    amount: int = 0
    timestamp: int | None = None
    is_settled: bool = True

    def merge(self, amount: int, timestamp: int | None, settled: bool) -> None:
        self.amount += amount
        if timestamp is not None:
            self.timestamp = timestamp if self.timestamp is None else min(self.timestamp, timestamp)
        self.is_settled = self.is_settled and settled


class SyncEngine:
    def __init__(
        self,
        store: LedgerStore,
        outputs: OutputFetcher,
        aggregator: BalanceAggregator,
        locks: WalletLocks,
        clock=time.time,
        mempool_expiry_seconds: int = MEMPOOL_EXPIRY_SECONDS,
        rounds: RoundCoordinator | None = None,
    ) -> None:
        self.store = store
        self.outputs = outputs
        self.aggregator = aggregator
        self.locks = locks
        self._clock = clock
        self.mempool_expiry_seconds = mempool_expiry_seconds
        self.rounds = rounds

    async def sync_wallet(self, wallet_id: str) -> SyncReport:
        async with self.locks.lock_for(wallet_id):
            return await self.sync_wallet_nolock(wallet_id)

    async def sync_wallet_nolock(self, wallet_id: str) -> SyncReport:
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        report = SyncReport(wallet_id=wallet_id)

        view = await self.outputs.fetch(wallet_id)
        report.warnings.extend(view.warnings())
        if not view.indexer_ok and not view.coordinator_ok:
            report.balance = BalanceView.from_snapshot(
                wallet_id, await asyncio.to_thread(self.store.get_snapshot, wallet_id), stale=True
            )
            return report

        existing = {
            r.key: r for r in await asyncio.to_thread(self.store.list_transactions, wallet_id)
        }
        now = int(self._clock())

        new_records: list[NewTransaction] = []
        status_changes: list[StatusChange] = []
        for cand in self._candidates(view, existing).values():
            record = existing.get((cand.txid, cand.tx_type))
            if record is None:
                new_records.append(
                    NewTransaction(
                        txid=cand.txid,
                        tx_type=cand.tx_type,
                        amount=cand.amount,
                        timestamp=cand.timestamp if cand.timestamp is not None else now,
                        is_settled=cand.is_settled,
                    )
                )
            elif record.is_pending and cand.is_settled and cand.tx_type is not TxType.BOARDING:
                status_changes.append(StatusChange(cand.txid, cand.tx_type, True))

        if view.indexer_ok:
            status_changes.extend(await self._send_status_changes(existing.values(), now, report))

        counters = self.aggregator.summarize(
            view, await self.aggregator.previous_counters(wallet_id)
        )
        result = await asyncio.to_thread(
            self.store.apply_ledger_update, wallet_id, new_records, status_changes, counters
        )
        report.inserted = result.inserted
        report.updated = result.updated
        report.balance = await self.aggregator.view_after_write(wallet_id, view)

        if report.partial:
            logger.warning("Partial sync for %s: %s", wallet_id, "; ".join(report.warnings))
        else:
            logger.info(
                "Synced %s: %d new, %d updated", wallet_id, report.inserted, report.updated
            )
        return report

    def _candidates(
        self, view: OutputView, existing: dict[tuple[str, TxType], TransactionRecord]
    ) -> dict[tuple[str, TxType], _Candidate]:
        own_onchain_sends = {txid for txid, t in existing if t is TxType.ONCHAIN_SEND}
        own_offchain_sends = {txid for txid, t in existing if t is TxType.OFFCHAIN_SEND}
        own_rounds = {txid for txid, t in existing if t is TxType.ROUND}
        out: dict[tuple[str, TxType], _Candidate] = {}

        def add(txid: str, tx_type: TxType, amount: int, ts: int | None, settled: bool) -> None:
            cand = out.setdefault((txid, tx_type), _Candidate(txid, tx_type))
            cand.merge(amount, ts, settled)

        for u in view.onchain or []:
            # Change back to ourselves is already covered by the send record.
            if u.txid in own_onchain_sends:
                continue
            add(u.txid, TxType.ONCHAIN_RECEIVE, u.value, u.block_time, u.confirmed)

        for u in view.boarding or []:
            add(u.txid, TxType.BOARDING, u.value, u.block_time, False)

        for v in view.offchain or []:
            if v.txid in own_offchain_sends:
                continue
            # Outputs of our own rounds are refreshed value, not receipts.
            if v.txid in own_rounds:
                continue
            add(v.txid, TxType.OFFCHAIN_RECEIVE, v.amount, v.created_at, not v.is_pending)

        return out

    async def _send_status_changes(
        self, records, now: int, report: SyncReport
    ) -> list[StatusChange]:
        changes = []
        for record in records:
            if record.type_name is not TxType.ONCHAIN_SEND or not record.is_pending:
                continue
            try:
                status = await asyncio.to_thread(self.outputs.indexer.get_tx_status, record.txid)
            except (RemoteUnavailable, RemoteRejected) as exc:
                report.warnings.append(f"status of {record.txid}: {exc.message}")
                continue
            if status is not None and status.confirmed:
                changes.append(StatusChange(record.txid, TxType.ONCHAIN_SEND, True))
            elif status is None and now - record.timestamp > self.mempool_expiry_seconds:
                logger.warning("Send %s dropped from mempool; marking cancelled", record.txid)
                changes.append(StatusChange(record.txid, TxType.ONCHAIN_SEND, None))
        return changes

    async def sync_all(self) -> list[SyncReport]:
        wallets = await asyncio.to_thread(self.store.list_wallets, True)
        results = await asyncio.gather(
            *(self.sync_wallet(w.wallet_id) for w in wallets), return_exceptions=True
        )
        reports = []
        for wallet, result in zip(wallets, results):
            if isinstance(result, Exception):
                logger.error("Sync failed for %s: %s", wallet.wallet_id, result)
                continue
            reports.append(result)
        return reports

    async def run_periodic(self, interval: float, stop_event: asyncio.Event) -> None:
        logger.info("Background sync every %ss", interval)
        while not stop_event.is_set():
            await self.sync_all()
            if self.rounds is not None:
                await self.rounds.renew_all()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
