import asyncio
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from ledger_store import NewTransaction, TxType  # noqa: E402
from sync_engine import MEMPOOL_EXPIRY_SECONDS  # noqa: E402
from wallet_errors import CoordinatorUnavailable, IndexerUnavailable  # noqa: E402


def _addresses(wallet, wallet_id):
    records = asyncio.run(wallet.addresses.wallet_addresses(wallet_id))
    return {cls: r.address for cls, r in records.items()}


def _types(store, wallet_id):
    return sorted((r.type_name.value, r.amount, r.is_settled) for r in store.list_transactions(wallet_id))


def test_sync_records_each_source(wallet, wallet_id, indexer, coordinator, store):
    addrs = _addresses(wallet, wallet_id)
    indexer.fund(addrs["onchain"], 25_000, confirmed=True)
    indexer.fund(addrs["onchain"], 3_000, confirmed=False)
    indexer.fund(addrs["boarding"], 60_000, confirmed=True)
    coordinator.add_vtxo(addrs["offchain"], 7_000)
    coordinator.add_vtxo(addrs["offchain"], 1_500, is_pending=True)

    report = asyncio.run(wallet.sync.sync_wallet(wallet_id))

    assert report.inserted == 5
    assert not report.partial
    assert _types(store, wallet_id) == [
        ("Boarding", 60_000, False),
        ("OffchainReceive", 1_500, False),
        ("OffchainReceive", 7_000, True),
        ("OnchainReceive", 3_000, False),
        ("OnchainReceive", 25_000, True),
    ]
    assert report.balance.available == 32_000


def test_outputs_of_one_txid_are_summed(wallet, wallet_id, indexer, store):
    addrs = _addresses(wallet, wallet_id)
    txid = "ee" * 32
    indexer.fund(addrs["onchain"], 1_000, txid=txid, vout=0)
    indexer.fund(addrs["onchain"], 2_000, txid=txid, vout=3)

    asyncio.run(wallet.sync.sync_wallet(wallet_id))

    records = store.find_transactions(wallet_id, txid)
    assert len(records) == 1
    assert records[0].amount == 3_000


def test_second_sync_is_a_no_op(wallet, wallet_id, indexer, coordinator, store, clock):
    addrs = _addresses(wallet, wallet_id)
    indexer.fund(addrs["onchain"], 10_000)
    indexer.fund(addrs["boarding"], 20_000)
    coordinator.add_vtxo(addrs["offchain"], 5_000)

    asyncio.run(wallet.sync.sync_wallet(wallet_id))
    rows = _types(store, wallet_id)
    snapshot = store.get_snapshot(wallet_id)

    clock.advance(3_600)
    report = asyncio.run(wallet.sync.sync_wallet(wallet_id))

    assert (report.inserted, report.updated) == (0, 0)
    assert _types(store, wallet_id) == rows
    again = store.get_snapshot(wallet_id)
    assert again.counters() == snapshot.counters()
    assert again.last_updated == snapshot.last_updated


def test_pending_receive_settles_on_confirmation(wallet, wallet_id, indexer, store):
    addrs = _addresses(wallet, wallet_id)
    utxo = indexer.fund(addrs["onchain"], 9_000, confirmed=False)
    asyncio.run(wallet.sync.sync_wallet(wallet_id))

    indexer.confirm(utxo.txid)
    report = asyncio.run(wallet.sync.sync_wallet(wallet_id))

    assert report.updated == 1
    assert store.find_transaction(wallet_id, utxo.txid, TxType.ONCHAIN_RECEIVE).is_settled is True
    assert report.balance.onchain_confirmed == 9_000


def test_partial_sync_when_coordinator_is_down(wallet, wallet_id, indexer, coordinator, store):
    addrs = _addresses(wallet, wallet_id)
    indexer.fund(addrs["onchain"], 11_000)
    coordinator.add_vtxo(addrs["offchain"], 4_000)
    coordinator.fail = CoordinatorUnavailable("502 from ark server")

    report = asyncio.run(wallet.sync.sync_wallet(wallet_id))

    assert report.partial
    assert any("coordinator" in w for w in report.warnings)
    assert _types(store, wallet_id) == [("OnchainReceive", 11_000, True)]
    assert report.balance.offchain_stale
    assert report.balance.onchain_confirmed == 11_000


def test_sync_with_both_sides_down_changes_nothing(wallet, wallet_id, indexer, coordinator, store):
    _addresses(wallet, wallet_id)
    indexer.fail = IndexerUnavailable("down")
    coordinator.fail = CoordinatorUnavailable("down")

    report = asyncio.run(wallet.sync.sync_wallet(wallet_id))

    assert len(report.warnings) == 2
    assert report.inserted == 0
    assert store.list_transactions(wallet_id) == []


def test_unknown_send_past_mempool_expiry_is_cancelled(wallet, wallet_id, store, clock):
    _addresses(wallet, wallet_id)
    store.apply_ledger_update(
        wallet_id, [NewTransaction("ff" * 32, TxType.ONCHAIN_SEND, -5_000, int(clock()), False)]
    )

    asyncio.run(wallet.sync.sync_wallet(wallet_id))
    assert store.find_transaction(wallet_id, "ff" * 32, TxType.ONCHAIN_SEND).is_settled is False

    clock.advance(MEMPOOL_EXPIRY_SECONDS + 1)
    asyncio.run(wallet.sync.sync_wallet(wallet_id))
    assert store.find_transaction(wallet_id, "ff" * 32, TxType.ONCHAIN_SEND).is_settled is None


def test_concurrent_syncs_do_not_duplicate(wallet, wallet_id, indexer, coordinator, store):
    addrs = _addresses(wallet, wallet_id)
    for value in (1_000, 2_000, 3_000):
        indexer.fund(addrs["onchain"], value)
    coordinator.add_vtxo(addrs["offchain"], 700)

    async def scenario():
        return await asyncio.gather(*(wallet.sync.sync_wallet(wallet_id) for _ in range(4)))

    reports = asyncio.run(scenario())

    assert sum(r.inserted for r in reports) == 4
    assert len(store.list_transactions(wallet_id)) == 4


def test_sync_all_covers_every_active_wallet(wallet, wallet_id, indexer, store):
    other = asyncio.run(wallet.create_wallet("second"))["wallet_id"]
    addr_a = _addresses(wallet, wallet_id)["onchain"]
    addr_b = _addresses(wallet, other)["onchain"]
    indexer.fund(addr_a, 1_111)
    indexer.fund(addr_b, 2_222)

    reports = asyncio.run(wallet.sync.sync_all())

    assert {r.wallet_id for r in reports} == {wallet_id, other}
    assert store.get_snapshot(wallet_id).onchain_confirmed == 1_111
    assert store.get_snapshot(other).onchain_confirmed == 2_222


def test_run_periodic_stops_on_event(wallet, wallet_id):
    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(wallet.sync.run_periodic(0.01, stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())


def test_run_periodic_renews_expiring_vtxos(wallet, wallet_id, coordinator, clock, store):
    offchain = _addresses(wallet, wallet_id)["offchain"]
    coordinator.add_vtxo(offchain, 4_000, expire_at=int(clock()) + 60)

    async def scenario():
        stop = asyncio.Event()
        task = asyncio.create_task(wallet.sync.run_periodic(10, stop))
        while coordinator.calls["submit_round"] == 0:
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(asyncio.wait_for(scenario(), timeout=5))

    assert coordinator.calls["submit_round"] == 1
    assert store.find_transaction(wallet_id, "round-1", TxType.ROUND).is_settled is True
