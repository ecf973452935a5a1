from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from ark_server_client import ArkServerClient, VirtualOutput
from balance_aggregator import BalanceAggregator
from esplora_client import EsploraIndexer
from ledger_store import LedgerStore, NewTransaction, TxType
from wallet_errors import (
    AlreadySettled,
    CoordinatorUnavailable,
    OutputNotFound,
    TimelockNotExpired,
    WalletError,
)
from wallet_locks import WalletLocks
from wallet_outputs import OutputFetcher

logger = logging.getLogger(__name__)

CRITICAL_WINDOW_SECONDS = 30 * 60
MEDIUM_WINDOW_SECONDS = 60 * 60
EXIT_BASE_COST_SATS = 2000


@dataclass(frozen=True)
class ExitResult:
    wallet_id: str
    vtxo_txid: str
    exit_txid: str
    amount: int

    def to_dict(self) -> dict[str, object]:
        return {
            "wallet_id": self.wallet_id,
            "vtxo_txid": self.vtxo_txid,
            "exit_txid": self.exit_txid,
            "amount": self.amount,
        }


@dataclass(frozen=True)
class ExitRecommendation:
    reason: str
    priority: str
    vtxo_txid: str | None = None
    amount: int = 0
    seconds_left: int | None = None
    estimated_cost: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "reason": self.reason,
            "priority": self.priority,
            "vtxo_txid": self.vtxo_txid,
            "amount": self.amount,
            "seconds_left": self.seconds_left,
            "estimated_cost": self.estimated_cost,
        }


def estimate_exit_cost(amount: int) -> int:
    return EXIT_BASE_COST_SATS + amount // 1000


class ExitHandler:
    """
    Unilateral exit: reclaim a VTXO on-chain through its timeout path.

    The timelock is checked locally against the indexer tip before the
    coordinator is contacted.
    """

    def __init__(
        self,
        store: LedgerStore,
        indexer: EsploraIndexer,
        coordinator: ArkServerClient,
        outputs: OutputFetcher,
        aggregator: BalanceAggregator,
        locks: WalletLocks,
        clock=time.time,
    ) -> None:
        self.store = store
        self.indexer = indexer
        self.coordinator = coordinator
        self.outputs = outputs
        self.aggregator = aggregator
        self.locks = locks
        self._clock = clock

    async def exit(self, wallet_id: str, vtxo_txid: str) -> ExitResult:
        async with self.locks.lock_for(wallet_id):
            await asyncio.to_thread(self.store.get_wallet, wallet_id)
            vtxos = await self.outputs.offchain_outputs(wallet_id)
            return await self._exit_nolock(wallet_id, vtxo_txid, vtxos)

    async def _exit_nolock(
        self, wallet_id: str, vtxo_txid: str, vtxos: list[VirtualOutput]
    ) -> ExitResult:
        existing = await asyncio.to_thread(
            self.store.find_transaction, wallet_id, vtxo_txid, TxType.EXIT
        )
        if existing is not None:
            raise AlreadySettled(f"VTXO {vtxo_txid} has already been exited")

        matches = [v for v in vtxos if v.txid == vtxo_txid]
        if not matches:
            raise OutputNotFound(f"VTXO {vtxo_txid} not found for wallet {wallet_id}")
        unspent = [v for v in matches if not v.is_spent]
        if not unspent:
            raise AlreadySettled(f"VTXO {vtxo_txid} is already spent")
        vtxo = unspent[0]

        if vtxo.is_pending or vtxo.unlock_height is None:
            raise TimelockNotExpired(f"VTXO {vtxo_txid} is not anchored on-chain yet")
        tip = await asyncio.to_thread(self.indexer.get_tip_height)
        remaining = vtxo.unlock_height - tip
        if remaining > 0:
            raise TimelockNotExpired(
                f"Timelock on {vtxo_txid} expires in {remaining} blocks",
                blocks_remaining=remaining,
            )

        exit_txid = await asyncio.to_thread(self.coordinator.submit_exit, vtxo)
        record = NewTransaction(
            txid=vtxo.txid,
            tx_type=TxType.EXIT,
            amount=vtxo.amount,
            timestamp=int(self._clock()),
            is_settled=True,
        )
        view = await self.outputs.fetch(wallet_id)
        counters = self.aggregator.summarize(
            view, await self.aggregator.previous_counters(wallet_id)
        )
        await asyncio.to_thread(self.store.apply_ledger_update, wallet_id, [record], (), counters)
        logger.info("Exited VTXO %s for %s via %s", vtxo_txid, wallet_id, exit_txid)
        return ExitResult(wallet_id, vtxo.txid, exit_txid, vtxo.amount)

    async def recommendations(self, wallet_id: str) -> list[ExitRecommendation]:
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        try:
            vtxos = await self.outputs.offchain_outputs(wallet_id)
        except CoordinatorUnavailable as exc:
            logger.warning("Ark server unresponsive for %s: %s", wallet_id, exc.message)
            return [ExitRecommendation(reason="server_unresponsive", priority="high")]

        now = int(self._clock())
        out = []
        for v in vtxos:
            if v.is_spent or v.expire_at is None:
                continue
            left = v.expire_at - now
            if left <= CRITICAL_WINDOW_SECONDS:
                priority = "critical"
            elif left <= MEDIUM_WINDOW_SECONDS:
                priority = "medium"
            else:
                continue
            out.append(
                ExitRecommendation(
                    reason="vtxo_expiring",
                    priority=priority,
                    vtxo_txid=v.txid,
                    amount=v.amount,
                    seconds_left=max(left, 0),
                    estimated_cost=estimate_exit_cost(v.amount),
                )
            )
        out.sort(key=lambda r: r.seconds_left if r.seconds_left is not None else 0)
        return out

    async def exit_all(self, wallet_id: str) -> dict[str, list[dict[str, object]]]:
        """Emergency exit of every unspent VTXO. One failure does not stop the rest."""
        async with self.locks.lock_for(wallet_id):
            await asyncio.to_thread(self.store.get_wallet, wallet_id)
            vtxos = await self.outputs.offchain_outputs(wallet_id)
            exited: list[dict[str, object]] = []
            failed: list[dict[str, object]] = []
            for txid in dict.fromkeys(v.txid for v in vtxos if not v.is_spent):
                try:
                    result = await self._exit_nolock(wallet_id, txid, vtxos)
                except WalletError as exc:
                    logger.warning("Emergency exit of %s failed: %s", txid, exc.message)
                    failed.append({"vtxo_txid": txid, **exc.to_dict()})
                    continue
                exited.append(result.to_dict())
            return {"exited": exited, "failed": failed}
