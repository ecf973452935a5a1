import asyncio
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from ark_server_client import RoundResult  # noqa: E402
from ledger_store import NewTransaction, TxType  # noqa: E402
from round_coordinator import RENEWAL_WINDOW_SECONDS, RoundAttempt, RoundState  # noqa: E402
from wallet_errors import (  # noqa: E402
    CoordinatorRejected,
    CoordinatorUnavailable,
    NoEligibleInputs,
    WalletNotFound,
)


def _addresses(wallet, wallet_id):
    records = asyncio.run(wallet.addresses.wallet_addresses(wallet_id))
    return {cls: r.address for cls, r in records.items()}


def test_nothing_to_settle(wallet, wallet_id, indexer, coordinator):
    addrs = _addresses(wallet, wallet_id)
    indexer.fund(addrs["boarding"], 40_000, confirmed=False)
    coordinator.add_vtxo(addrs["offchain"], 1_000, is_spent=True)

    with pytest.raises(NoEligibleInputs):
        asyncio.run(wallet.rounds.participate(wallet_id))

    assert wallet.rounds.last_attempt(wallet_id).state is RoundState.IDLE
    assert coordinator.calls["submit_round"] == 0


def test_committed_round_settles_pending_records(wallet, wallet_id, indexer, coordinator, store, clock):
    addrs = _addresses(wallet, wallet_id)
    synced = indexer.fund(addrs["boarding"], 70_000)
    incoming = coordinator.add_vtxo(addrs["offchain"], 3_000, is_pending=True)
    store.apply_ledger_update(
        wallet_id, [NewTransaction("ab" * 32, TxType.OFFCHAIN_SEND, -2_000, int(clock()), False)]
    )
    asyncio.run(wallet.sync.sync_wallet(wallet_id))
    assert store.find_transaction(wallet_id, synced.txid, TxType.BOARDING).is_pending

    late = indexer.fund(addrs["boarding"], 15_000)
    attempt = asyncio.run(wallet.rounds.participate(wallet_id))

    assert attempt.state is RoundState.COMMITTED
    assert attempt.history == [
        RoundState.IDLE,
        RoundState.REQUESTED,
        RoundState.AWAITING_COORDINATOR_RESPONSE,
        RoundState.COMMITTED,
    ]
    assert attempt.round_txid == "round-1"
    assert attempt.amount == 70_000 + 15_000 + 3_000
    assert {i.kind for i in coordinator.rounds[0]} == {"boarding", "vtxo"}

    assert store.find_transaction(wallet_id, synced.txid, TxType.BOARDING).is_settled is True
    unsynced = store.find_transaction(wallet_id, late.txid, TxType.BOARDING)
    assert unsynced.is_settled is True and unsynced.amount == 15_000
    assert store.find_transaction(wallet_id, incoming.txid, TxType.OFFCHAIN_RECEIVE).is_settled is True
    assert store.find_transaction(wallet_id, "ab" * 32, TxType.OFFCHAIN_SEND).is_settled is True


def test_round_output_is_not_counted_as_a_receive(wallet, wallet_id, indexer, coordinator, store):
    addrs = _addresses(wallet, wallet_id)
    indexer.fund(addrs["boarding"], 100_000)
    asyncio.run(wallet.sync.sync_wallet(wallet_id))

    asyncio.run(wallet.rounds.participate(wallet_id))
    indexer.utxos[addrs["boarding"]] = []
    coordinator.add_vtxo(addrs["offchain"], 100_000, txid="round-1")
    report = asyncio.run(wallet.sync.sync_wallet(wallet_id))

    assert report.inserted == 0
    assert store.find_transaction(wallet_id, "round-1", TxType.OFFCHAIN_RECEIVE) is None
    marker = store.find_transaction(wallet_id, "round-1", TxType.ROUND)
    assert (marker.amount, marker.is_settled) == (0, True)
    received = sum(r.amount for r in store.list_transactions(wallet_id) if r.amount > 0)
    assert received == 100_000
    assert report.balance.offchain_confirmed == report.balance.total == 100_000


@pytest.mark.parametrize(
    "error, result",
    [
        (CoordinatorRejected("round full"), None),
        (CoordinatorUnavailable("timeout"), None),
        (None, RoundResult(accepted=False, reason="inputs expired")),
    ],
)
def test_failed_round_writes_nothing(wallet, wallet_id, indexer, coordinator, db_path, error, result):
    addrs = _addresses(wallet, wallet_id)
    indexer.fund(addrs["boarding"], 70_000)
    asyncio.run(wallet.sync.sync_wallet(wallet_id))
    coordinator.round_error = error
    if result is not None:
        coordinator.round_result = result
    before = db_path.read_bytes()

    with pytest.raises((CoordinatorRejected, CoordinatorUnavailable)):
        asyncio.run(wallet.rounds.participate(wallet_id))

    attempt = wallet.rounds.last_attempt(wallet_id)
    assert attempt.state is RoundState.FAILED
    assert attempt.error
    assert db_path.read_bytes() == before


def test_terminal_states_reject_transitions():
    attempt = RoundAttempt(wallet_id="w")
    with pytest.raises(RuntimeError):
        attempt.transition(RoundState.COMMITTED)

    attempt.transition(RoundState.REQUESTED)
    attempt.transition(RoundState.FAILED)
    with pytest.raises(RuntimeError):
        attempt.transition(RoundState.REQUESTED)
    assert attempt.to_dict()["history"] == ["idle", "requested", "failed"]


# ---------------------------------------------------------------------------
# VTXO renewal
# ---------------------------------------------------------------------------


def test_vtxo_near_expiry_is_renewed(wallet, wallet_id, coordinator, clock, store):
    addrs = _addresses(wallet, wallet_id)
    coordinator.add_vtxo(addrs["offchain"], 8_000, expire_at=int(clock()) + 600)

    attempt = asyncio.run(wallet.rounds.renew_expiring(wallet_id))

    assert attempt.state is RoundState.COMMITTED
    assert coordinator.calls["submit_round"] == 1
    assert [i.kind for i in coordinator.rounds[0]] == ["vtxo"]
    assert store.find_transaction(wallet_id, "round-1", TxType.ROUND) is not None


@pytest.mark.parametrize(
    "offset",
    [RENEWAL_WINDOW_SECONDS * 3, -60],
    ids=["far-from-expiry", "already-expired"],
)
def test_vtxo_outside_window_is_left_alone(wallet, wallet_id, coordinator, clock, offset):
    addrs = _addresses(wallet, wallet_id)
    coordinator.add_vtxo(addrs["offchain"], 8_000, expire_at=int(clock()) + offset)
    coordinator.add_vtxo(addrs["offchain"], 2_000, expire_at=int(clock()) + 60, is_spent=True)

    assert asyncio.run(wallet.rounds.renew_expiring(wallet_id)) is None
    assert coordinator.calls["submit_round"] == 0


def test_renew_unknown_wallet(wallet):
    with pytest.raises(WalletNotFound):
        asyncio.run(wallet.rounds.renew_expiring("does-not-exist"))


def test_renew_all_continues_past_a_failing_wallet(wallet, wallet_id, coordinator, clock):
    other = asyncio.run(wallet.create_wallet("second"))["wallet_id"]
    first = _addresses(wallet, wallet_id)["offchain"]
    second = _addresses(wallet, other)["offchain"]
    coordinator.add_vtxo(first, 5_000, expire_at=int(clock()) + 60)
    coordinator.add_vtxo(second, 6_000, expire_at=int(clock()) + 60)
    coordinator.round_error = CoordinatorUnavailable("timeout")

    attempts = asyncio.run(wallet.rounds.renew_all())

    assert attempts == []
    assert coordinator.calls["submit_round"] == 2

    coordinator.round_error = None
    attempts = asyncio.run(wallet.rounds.renew_all())
    assert sorted(a.wallet_id for a in attempts) == sorted([wallet_id, other])
