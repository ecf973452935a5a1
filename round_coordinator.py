"""
Settlement-round participation.

    IDLE -> REQUESTED -> AWAITING_COORDINATOR_RESPONSE -> COMMITTED
                     \\                               \\-> FAILED
                      \\-> FAILED

A committed round is the only thing that promotes boarding value into the
off-chain balance. A failed round writes nothing.

The same round also refreshes VTXOs before the server can sweep them;
renew_expiring joins one whenever a live VTXO is inside the renewal window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from ark_server_client import ArkServerClient, RoundInput
from balance_aggregator import BalanceAggregator
from ledger_store import LedgerStore, NewTransaction, StatusChange, TxType
from wallet_errors import (
    CoordinatorRejected,
    CoordinatorUnavailable,
    NoEligibleInputs,
    WalletError,
)
from wallet_locks import WalletLocks
from wallet_outputs import OutputFetcher

logger = logging.getLogger(__name__)

# VTXOs this close to expiry are refreshed by joining the next round.
RENEWAL_WINDOW_SECONDS = 60 * 60


class RoundState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    AWAITING_COORDINATOR_RESPONSE = "awaiting_coordinator_response"
    COMMITTED = "committed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[RoundState, frozenset[RoundState]] = {
    RoundState.IDLE: frozenset({RoundState.REQUESTED}),
    RoundState.REQUESTED: frozenset(
        {RoundState.AWAITING_COORDINATOR_RESPONSE, RoundState.FAILED}
    ),
    RoundState.AWAITING_COORDINATOR_RESPONSE: frozenset(
        {RoundState.COMMITTED, RoundState.FAILED}
    ),
    RoundState.COMMITTED: frozenset(),
    RoundState.FAILED: frozenset(),
}


@dataclass
class RoundAttempt:
    wallet_id: str
    state: RoundState = RoundState.IDLE
    inputs: list[RoundInput] = field(default_factory=list)
    round_txid: str | None = None
    error: str | None = None
    history: list[RoundState] = field(default_factory=lambda: [RoundState.IDLE])

    def transition(self, new_state: RoundState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid round transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    @property
    def amount(self) -> int:
        return sum(i.amount for i in self.inputs)

    def to_dict(self) -> dict[str, object]:
        return {
            "wallet_id": self.wallet_id,
            "state": self.state.value,
            "round_txid": self.round_txid,
            "amount": self.amount,
            "inputs": [
                {"kind": i.kind, "txid": i.txid, "vout": i.vout, "amount": i.amount}
                for i in self.inputs
            ],
            "error": self.error,
            "history": [s.value for s in self.history],
        }


class RoundCoordinator:
    def __init__(
        self,
        store: LedgerStore,
        coordinator: ArkServerClient,
        outputs: OutputFetcher,
        aggregator: BalanceAggregator,
        locks: WalletLocks,
        clock=time.time,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.outputs = outputs
        self.aggregator = aggregator
        self.locks = locks
        self._clock = clock
        self._attempts: dict[str, RoundAttempt] = {}

    def last_attempt(self, wallet_id: str) -> RoundAttempt | None:
        return self._attempts.get(wallet_id)

    async def eligible_inputs(self, wallet_id: str) -> list[RoundInput]:
        boarding, vtxos = await asyncio.gather(
            self.outputs.boarding_outputs(wallet_id), self.outputs.offchain_outputs(wallet_id)
        )
        inputs = [
            RoundInput("boarding", u.txid, u.vout, u.value, u.address)
            for u in boarding
            if u.confirmed
        ]
        inputs.extend(
            RoundInput("vtxo", v.txid, v.vout, v.amount, v.address) for v in vtxos if not v.is_spent
        )
        return inputs

    async def participate(self, wallet_id: str) -> RoundAttempt:
        async with self.locks.lock_for(wallet_id):
            await asyncio.to_thread(self.store.get_wallet, wallet_id)
            attempt = RoundAttempt(wallet_id=wallet_id)
            self._attempts[wallet_id] = attempt

            inputs = await self.eligible_inputs(wallet_id)
            if not inputs:
                raise NoEligibleInputs(
                    "No confirmed boarding outputs or unspent VTXOs to settle in a round"
                )
            attempt.inputs = inputs

            attempt.transition(RoundState.REQUESTED)
            logger.info(
                "Registering %d inputs (%d sats) for %s", len(inputs), attempt.amount, wallet_id
            )
            try:
                attempt.transition(RoundState.AWAITING_COORDINATOR_RESPONSE)
                result = await asyncio.to_thread(self.coordinator.submit_round, inputs)
            except (CoordinatorRejected, CoordinatorUnavailable) as exc:
                self._fail(attempt, exc)
                raise

            if not result.accepted:
                exc = CoordinatorRejected(
                    f"Round rejected by Ark server: {result.reason or 'no reason given'}"
                )
                self._fail(attempt, exc)
                raise exc

            new_records, status_changes = await self._settlement(
                wallet_id, inputs, result.round_txid
            )
            view = await self.outputs.fetch(wallet_id)
            counters = self.aggregator.summarize(
                view, await self.aggregator.previous_counters(wallet_id)
            )
            await asyncio.to_thread(
                self.store.apply_ledger_update, wallet_id, new_records, status_changes, counters
            )

            attempt.round_txid = result.round_txid
            attempt.transition(RoundState.COMMITTED)
            logger.info("Round %s committed for %s", result.round_txid, wallet_id)
            return attempt

    def _fail(self, attempt: RoundAttempt, exc: WalletError) -> None:
        attempt.error = exc.message
        attempt.transition(RoundState.FAILED)
        logger.warning("Round failed for %s: %s", attempt.wallet_id, exc.message)

    async def _settlement(
        self, wallet_id: str, inputs: list[RoundInput], round_txid: str | None
    ) -> tuple[list[NewTransaction], list[StatusChange]]:
        existing = {
            r.key: r for r in await asyncio.to_thread(self.store.list_transactions, wallet_id)
        }
        now = int(self._clock())
        new_records: list[NewTransaction] = []
        status_changes: list[StatusChange] = []

        boarding_amounts: dict[str, int] = {}
        for i in inputs:
            if i.kind == "boarding":
                boarding_amounts[i.txid] = boarding_amounts.get(i.txid, 0) + i.amount
        for txid, amount in boarding_amounts.items():
            record = existing.get((txid, TxType.BOARDING))
            if record is None:
                new_records.append(NewTransaction(txid, TxType.BOARDING, amount, now, True))
            elif record.is_pending:
                status_changes.append(StatusChange(txid, TxType.BOARDING, True))

        for txid in {i.txid for i in inputs if i.kind == "vtxo"}:
            record = existing.get((txid, TxType.OFFCHAIN_RECEIVE))
            if record is not None and record.is_pending:
                status_changes.append(StatusChange(txid, TxType.OFFCHAIN_RECEIVE, True))

        # Pending off-chain payments are anchored by the batch.
        for (txid, tx_type), record in existing.items():
            if tx_type is TxType.OFFCHAIN_SEND and record.is_pending:
                status_changes.append(StatusChange(txid, TxType.OFFCHAIN_SEND, True))

        if round_txid and (round_txid, TxType.ROUND) not in existing:
            new_records.append(NewTransaction(round_txid, TxType.ROUND, 0, now, True))

        return new_records, status_changes

    async def renew_expiring(
        self, wallet_id: str, window: int = RENEWAL_WINDOW_SECONDS
    ) -> RoundAttempt | None:
        """
        Join a round when any unspent VTXO expires within `window` seconds.

        Already-expired VTXOs cannot be refreshed any more and are only
        logged. Returns the round attempt, or None when nothing is due.
        """
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        vtxos = await self.outputs.offchain_outputs(wallet_id)
        now = int(self._clock())
        due = []
        for v in vtxos:
            if v.is_spent or v.expire_at is None:
                continue
            left = v.expire_at - now
            if left <= 0:
                logger.error(
                    "VTXO %s:%d of %s expired %ss ago; only an exit can recover it",
                    v.txid,
                    v.vout,
                    wallet_id,
                    -left,
                )
            elif left <= window:
                due.append(v)
        if not due:
            return None
        logger.info(
            "%d VTXO(s) of %s expire within %ss; joining a round to renew",
            len(due),
            wallet_id,
            window,
        )
        return await self.participate(wallet_id)

    async def renew_all(self) -> list[RoundAttempt]:
        wallets = await asyncio.to_thread(self.store.list_wallets, True)
        attempts = []
        for wallet in wallets:
            try:
                attempt = await self.renew_expiring(wallet.wallet_id)
            except WalletError as exc:
                logger.warning("Renewal failed for %s: %s", wallet.wallet_id, exc.message)
                continue
            if attempt is not None:
                attempts.append(attempt)
        return attempts
