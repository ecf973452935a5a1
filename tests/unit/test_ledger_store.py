import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from ledger_store import (  # noqa: E402
    AddressClass,
    BalanceCounters,
    NewTransaction,
    StatusChange,
    TxType,
    WalletKeyMaterial,
)
from wallet_errors import StorageInconsistency, WalletNotFound  # noqa: E402


def _new_wallet(store, wallet_id="w1"):
    return store.create_wallet(wallet_id, "test", "salt$token", "02" + "11" * 32)


def test_create_wallet_starts_with_zero_snapshot(store):
    _new_wallet(store)

    snapshot = store.get_snapshot("w1")
    assert snapshot.counters() == BalanceCounters()
    assert snapshot.last_updated is not None
    assert store.get_key_material("w1").public_key.startswith("02")


def test_child_rows_require_an_existing_wallet(store):
    _new_wallet(store, "w1")
    _new_wallet(store, "w2")

    assert {w.wallet_id for w in store.list_wallets()} == {"w1", "w2"}
    assert store.get_key_material("w2").encrypted_seed == "salt$token"
    with pytest.raises(StorageInconsistency):
        with store.session_scope() as session:
            session.add(WalletKeyMaterial(wallet_id="ghost", encrypted_seed="x", public_key="02"))


def test_unknown_wallet_raises_not_found(store):
    with pytest.raises(WalletNotFound):
        store.get_wallet("missing")
    with pytest.raises(WalletNotFound):
        store.apply_ledger_update("missing", [], [], BalanceCounters())


def test_list_wallets_hides_inactive(store):
    _new_wallet(store, "w1")
    _new_wallet(store, "w2")
    store.set_wallet_active("w2", False)

    assert [w.wallet_id for w in store.list_wallets()] == ["w1"]
    assert {w.wallet_id for w in store.list_wallets(active_only=False)} == {"w1", "w2"}


def test_address_indexes_are_per_class(store):
    _new_wallet(store)
    store.add_address("w1", "tb1qa", AddressClass.ONCHAIN, 0)
    store.add_address("w1", "tb1qb", AddressClass.ONCHAIN, 1)
    store.add_address("w1", "tark1a", AddressClass.OFFCHAIN, 0)
    store.add_address("w1", "tb1pboard", AddressClass.BOARDING, None)

    assert store.next_derivation_index("w1", AddressClass.ONCHAIN) == 2
    assert store.next_derivation_index("w1", AddressClass.OFFCHAIN) == 1
    assert store.current_address("w1", AddressClass.ONCHAIN).address == "tb1qb"
    assert store.current_address("w1", AddressClass.BOARDING).derivation_index is None


def test_duplicate_records_are_skipped(store):
    _new_wallet(store)
    rec = NewTransaction("aa" * 32, TxType.ONCHAIN_RECEIVE, 5_000, 100, True)

    first = store.apply_ledger_update("w1", [rec, rec])
    second = store.apply_ledger_update("w1", [rec])

    assert first.inserted == 1
    assert second.inserted == 0
    assert len(store.list_transactions("w1")) == 1


def test_same_txid_different_type_is_a_separate_record(store):
    _new_wallet(store)
    txid = "bb" * 32
    store.apply_ledger_update(
        "w1",
        [
            NewTransaction(txid, TxType.ONCHAIN_SEND, -1_000, 100, False),
            NewTransaction(txid, TxType.ONCHAIN_RECEIVE, 400, 100, False),
        ],
    )
    assert {r.type_name for r in store.find_transactions("w1", txid)} == {
        TxType.ONCHAIN_SEND,
        TxType.ONCHAIN_RECEIVE,
    }


def test_history_is_ordered_by_timestamp(store):
    _new_wallet(store)
    store.apply_ledger_update(
        "w1",
        [
            NewTransaction("03", TxType.ONCHAIN_RECEIVE, 3, 300, True),
            NewTransaction("01", TxType.ONCHAIN_RECEIVE, 1, 100, True),
            NewTransaction("02", TxType.OFFCHAIN_RECEIVE, 2, 200, True),
        ],
    )
    assert [r.txid for r in store.list_transactions("w1")] == ["01", "02", "03"]
    assert [r.txid for r in store.list_transactions("w1", limit=1, offset=1)] == ["02"]
    assert [r.txid for r in store.list_transactions("w1", tx_type=TxType.OFFCHAIN_RECEIVE)] == [
        "02"
    ]


def test_pending_moves_to_settled_or_cancelled(store):
    _new_wallet(store)
    store.apply_ledger_update(
        "w1",
        [
            NewTransaction("s1", TxType.ONCHAIN_SEND, -10, 1, False),
            NewTransaction("s2", TxType.ONCHAIN_SEND, -20, 2, False),
        ],
    )
    result = store.apply_ledger_update(
        "w1",
        status_changes=[
            StatusChange("s1", TxType.ONCHAIN_SEND, True),
            StatusChange("s2", TxType.ONCHAIN_SEND, None),
        ],
    )
    assert result.updated == 2
    assert store.find_transaction("w1", "s1", TxType.ONCHAIN_SEND).is_settled is True
    assert store.find_transaction("w1", "s2", TxType.ONCHAIN_SEND).is_settled is None


def test_settlement_regression_rolls_back_whole_update(store):
    _new_wallet(store)
    store.apply_ledger_update("w1", [NewTransaction("done", TxType.EXIT, 10, 1, True)])

    with pytest.raises(StorageInconsistency):
        store.apply_ledger_update(
            "w1",
            [NewTransaction("new", TxType.ONCHAIN_RECEIVE, 7, 2, True)],
            [StatusChange("done", TxType.EXIT, False)],
            BalanceCounters(onchain_confirmed=7),
        )

    assert store.find_transaction("w1", "new", TxType.ONCHAIN_RECEIVE) is None
    assert store.get_snapshot("w1").onchain_confirmed == 0


def test_status_change_for_unknown_record_is_inconsistent(store):
    _new_wallet(store)
    with pytest.raises(StorageInconsistency):
        store.apply_ledger_update("w1", status_changes=[StatusChange("x", TxType.BOARDING, True)])


def test_snapshot_rewritten_only_when_counters_change(store, clock):
    _new_wallet(store)
    counters = BalanceCounters(onchain_confirmed=1_000, offchain_pending=50)

    clock.advance(10)
    assert store.apply_ledger_update("w1", snapshot=counters).snapshot_written
    written_at = store.get_snapshot("w1").last_updated

    clock.advance(10)
    assert not store.apply_ledger_update("w1", snapshot=counters).snapshot_written
    assert store.get_snapshot("w1").last_updated == written_at
    assert store.get_snapshot("w1").counters() == counters
