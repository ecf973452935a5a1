import asyncio
import hashlib
import json
import sys
from collections import Counter
from dataclasses import replace
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import send_orchestrator  # noqa: E402
from ark_server_client import RoundResult, VirtualOutput  # noqa: E402
from ark_wallet import ArkWallet  # noqa: E402
from ark_wallet_config import ArkWalletConfig  # noqa: E402
from esplora_client import OnchainOutput, TxStatus  # noqa: E402
from ledger_store import LedgerStore  # noqa: E402

# Valid testnet destinations (BIP173 test vectors).
DEST_P2WPKH = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
DEST_P2WSH = "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"
MAINNET_P2WPKH = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"

START_TIME = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _txid(*parts: object) -> str:
    return hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()


class FakeIndexer:
    """In-memory Esplora: UTXOs per address, fee rates, broadcast and tx status."""

    def __init__(self) -> None:
        self.utxos: dict[str, list[OnchainOutput]] = {}
        self.rates = {"fastest": 20, "fast": 10, "normal": 1, "slow": 1, "minimum": 1}
        self.fail: Exception | None = None
        self.fee_error: Exception | None = None
        self.broadcast_error: Exception | None = None
        self.tx_status: dict[str, TxStatus] = {}
        self.tip_height = 850_000
        self.broadcasts: list[str] = []
        self.calls: Counter = Counter()
        self._n = 0

    def fund(self, address, value, confirmed=True, txid=None, vout=0, block_time=None):
        self._n += 1
        utxo = OnchainOutput(
            txid=txid or _txid("fund", address, value, self._n),
            vout=vout,
            value=value,
            address=address,
            confirmed=confirmed,
            block_height=self.tip_height if confirmed else None,
            block_time=(block_time or START_TIME + self._n) if confirmed else None,
        )
        self.utxos.setdefault(address, []).append(utxo)
        return utxo

    def confirm(self, txid):
        for address, utxos in self.utxos.items():
            self.utxos[address] = [
                replace(u, confirmed=True, block_height=self.tip_height, block_time=START_TIME)
                if u.txid == txid
                else u
                for u in utxos
            ]
        self.tx_status[txid] = TxStatus(txid, True, self.tip_height, START_TIME)

    def get_utxos(self, address):
        self.calls["get_utxos"] += 1
        if self.fail is not None:
            raise self.fail
        return list(self.utxos.get(address, []))

    def get_balance(self, address):
        utxos = self.get_utxos(address)
        return {
            "confirmed": sum(u.value for u in utxos if u.confirmed),
            "pending": sum(u.value for u in utxos if not u.confirmed),
        }

    def estimate_fee_rates(self):
        self.calls["estimate_fee_rates"] += 1
        if self.fee_error is not None:
            raise self.fee_error
        return dict(self.rates)

    def broadcast(self, raw_hex):
        self.calls["broadcast"] += 1
        if self.broadcast_error is not None:
            raise self.broadcast_error
        txid = hashlib.sha256(bytes.fromhex(raw_hex)).hexdigest()
        self.broadcasts.append(raw_hex)
        spend = json.loads(bytes.fromhex(raw_hex))
        spent = {tuple(i) for i in spend["inputs"]}
        for address, utxos in self.utxos.items():
            self.utxos[address] = [u for u in utxos if (u.txid, u.vout) not in spent]
        if spend["change"]:
            self.utxos.setdefault(spend["change_address"], []).append(
                OnchainOutput(txid, 1, spend["change"], spend["change_address"], False)
            )
        self.tx_status[txid] = TxStatus(txid, False)
        return txid

    def get_tx_status(self, txid):
        if self.fail is not None:
            raise self.fail
        return self.tx_status.get(txid)

    def get_tip_height(self):
        if self.fail is not None:
            raise self.fail
        return self.tip_height


class FakeCoordinator:
    """In-memory Ark server."""

    def __init__(self) -> None:
        self.vtxos: dict[str, list[VirtualOutput]] = {}
        self.fail: Exception | None = None
        self.info = {"signer_pubkey": "cd" * 32}
        self.round_result = RoundResult(accepted=True, round_txid="round-1")
        self.round_error: Exception | None = None
        self.exit_error: Exception | None = None
        self.payment_error: Exception | None = None
        self.rounds: list[list] = []
        self.exits: list[VirtualOutput] = []
        self.payments: list[tuple] = []
        self.calls: Counter = Counter()
        self._n = 0

    def add_vtxo(self, address, amount, txid=None, vout=0, **fields):
        self._n += 1
        vtxo = VirtualOutput(
            txid=txid or _txid("vtxo", address, amount, self._n),
            vout=vout,
            amount=amount,
            address=address,
            created_at=fields.pop("created_at", START_TIME + self._n),
            **fields,
        )
        self.vtxos.setdefault(address, []).append(vtxo)
        return vtxo

    def get_info(self):
        self.calls["get_info"] += 1
        if self.fail is not None:
            raise self.fail
        return dict(self.info)

    def get_boarding_address(self, pubkey):
        self.calls["get_boarding_address"] += 1
        if self.fail is not None:
            raise self.fail
        return f"tb1pboarding{pubkey[2:22]}"

    def get_offchain_outputs(self, address):
        self.calls["get_offchain_outputs"] += 1
        if self.fail is not None:
            raise self.fail
        return list(self.vtxos.get(address, []))

    def submit_round(self, inputs):
        self.calls["submit_round"] += 1
        self.rounds.append(list(inputs))
        if self.round_error is not None:
            raise self.round_error
        return self.round_result

    def submit_exit(self, vtxo):
        self.calls["submit_exit"] += 1
        if self.exit_error is not None:
            raise self.exit_error
        self.exits.append(vtxo)
        return _txid("exit", vtxo.txid)

    def submit_payment(self, inputs, dest_address, amount_sats):
        self.calls["submit_payment"] += 1
        if self.payment_error is not None:
            raise self.payment_error
        self.payments.append((list(inputs), dest_address, amount_sats))
        return _txid("payment", dest_address, amount_sats, len(self.payments))


def fake_build_signed_transaction(selection, wifs, dest_address, amount_sats, change_address, config):
    # Stand-in for python-bitcoinlib signing: encodes the spend so
    # FakeIndexer.broadcast can apply it.
    missing = [u.address for u in selection.inputs if u.address not in wifs]
    assert not missing, f"no signing key for {missing}"
    payload = {
        "inputs": [[u.txid, u.vout] for u in selection.inputs],
        "dest": dest_address,
        "amount": amount_sats,
        "change": selection.change,
        "change_address": change_address,
    }
    return json.dumps(payload, sort_keys=True).encode().hex()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def indexer():
    return FakeIndexer()


@pytest.fixture
def coordinator():
    return FakeCoordinator()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "ledger.db"


@pytest.fixture
def config(db_path):
    return ArkWalletConfig(
        network="testnet",
        database_url=f"sqlite:///{db_path}",
        esplora_url="http://indexer.test/api",
        ark_server_url="http://ark.test",
        seed_password="correct horse battery staple",
        ark_server_pubkey="ab" * 32,
        fee_cache_seconds=0,
        kdf_iterations=1_000,
    )


@pytest.fixture
def store(config, clock):
    s = LedgerStore(config.database_url, clock=clock)
    yield s
    s.dispose()


@pytest.fixture
def wallet(config, store, indexer, coordinator, clock, monkeypatch):
    monkeypatch.setattr(send_orchestrator, "build_signed_transaction", fake_build_signed_transaction)
    return ArkWallet(config, store, indexer, coordinator, clock=clock)


@pytest.fixture
def wallet_id(wallet):
    return asyncio.run(wallet.create_wallet("primary"))["wallet_id"]
