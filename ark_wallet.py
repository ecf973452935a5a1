"""
Composition root for the Ark wallet core.

Builds every collaborator once and injects it into the components, and
provides the wallet lifecycle and history queries that sit outside any
single component.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

from address_manager import AddressManager
from ark_server_client import ArkServerClient
from ark_wallet_config import ArkWalletConfig
from balance_aggregator import BalanceAggregator
from esplora_client import EsploraIndexer
from exit_handler import ExitHandler
from fee_estimator import FeeEstimator
from ledger_store import LedgerStore, TransactionRecord, TxType
from round_coordinator import RoundCoordinator
from send_orchestrator import SendOrchestrator
from sync_engine import SyncEngine
from wallet_errors import TransactionNotFound, WalletError
from wallet_keys import KeyDeriver, SeedCipher, generate_mnemonic, seed_from_mnemonic
from wallet_locks import WalletLocks
from wallet_outputs import OutputFetcher

logger = logging.getLogger(__name__)


class ArkWallet:
    def __init__(
        self,
        config: ArkWalletConfig,
        store: LedgerStore,
        indexer: EsploraIndexer,
        coordinator: ArkServerClient,
        cipher: SeedCipher | None = None,
        deriver: KeyDeriver | None = None,
        clock=time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.indexer = indexer
        self.coordinator = coordinator
        self.cipher = cipher or SeedCipher(config.seed_password, config.kdf_iterations)
        self.deriver = deriver or KeyDeriver(config)
        self.locks = WalletLocks()

        self.outputs = OutputFetcher(store, indexer, coordinator)
        self.addresses = AddressManager(
            config, store, coordinator, self.cipher, self.deriver, self.locks
        )
        self.fees = FeeEstimator(config, indexer)
        self.balances = BalanceAggregator(store, self.outputs, self.locks)
        self.payments = SendOrchestrator(
            config,
            store,
            indexer,
            coordinator,
            self.outputs,
            self.fees,
            self.balances,
            self.addresses,
            self.cipher,
            self.deriver,
            self.locks,
            clock=clock,
        )
        self.rounds = RoundCoordinator(
            store, coordinator, self.outputs, self.balances, self.locks, clock=clock
        )
        self.sync = SyncEngine(
            store, self.outputs, self.balances, self.locks, clock=clock, rounds=self.rounds
        )
        self.exits = ExitHandler(
            store, indexer, coordinator, self.outputs, self.balances, self.locks, clock=clock
        )

    @classmethod
    def from_config(cls, config: ArkWalletConfig) -> ArkWallet:
        store = LedgerStore(config.database_url)
        indexer = EsploraIndexer(config.esplora_url, timeout=config.remote_timeout_seconds)
        coordinator = ArkServerClient(config.ark_server_url, timeout=config.remote_timeout_seconds)
        logger.info(
            "Ark wallet on %s (indexer=%s, server=%s)",
            config.network,
            config.esplora_url,
            config.ark_server_url,
        )
        return cls(config, store, indexer, coordinator)

    # ---- lifecycle ----

    async def create_wallet(self, name: str) -> dict[str, object]:
        """
        Create a wallet with a fresh 24-word mnemonic.

        The mnemonic is returned exactly once and never stored in clear.
        """
        name = (name or "").strip()
        if not name:
            raise WalletError("Wallet name is required")
        mnemonic = generate_mnemonic()
        seed = seed_from_mnemonic(mnemonic)
        encrypted = await asyncio.to_thread(self.cipher.encrypt, seed)
        public_key = self.deriver.identity_pubkey(seed)
        wallet_id = str(uuid.uuid4())
        wallet = await asyncio.to_thread(
            self.store.create_wallet, wallet_id, name, encrypted, public_key
        )
        return {
            "wallet_id": wallet.wallet_id,
            "name": wallet.name,
            "created_at": wallet.created_at,
            "public_key": public_key,
            "mnemonic": mnemonic,
        }

    async def list_wallets(self, include_inactive: bool = False) -> list[dict[str, object]]:
        wallets = await asyncio.to_thread(self.store.list_wallets, not include_inactive)
        return [_wallet_dict(w) for w in wallets]

    async def get_wallet_info(self, wallet_id: str) -> dict[str, object]:
        wallet = await asyncio.to_thread(self.store.touch_wallet, wallet_id)
        material = await asyncio.to_thread(self.store.get_key_material, wallet_id)
        records = await asyncio.to_thread(self.store.list_addresses, wallet_id)
        current: dict[str, str] = {}
        for r in records:
            current[r.address_type.value] = r.address
        balance = await self.balances.get_balance(wallet_id)
        return {
            **_wallet_dict(wallet),
            "public_key": material.public_key,
            "addresses": current,
            "balance": balance.to_dict(),
        }

    async def deactivate_wallet(self, wallet_id: str) -> dict[str, object]:
        wallet = await asyncio.to_thread(self.store.set_wallet_active, wallet_id, False)
        logger.info("Deactivated wallet %s", wallet_id)
        return _wallet_dict(wallet)

    # ---- history ----

    async def list_transactions(
        self,
        wallet_id: str,
        limit: int | None = 50,
        offset: int = 0,
        tx_type: str | None = None,
    ) -> list[TransactionRecord]:
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        if limit is not None and limit < 0:
            raise WalletError("limit must be non-negative")
        if offset < 0:
            raise WalletError("offset must be non-negative")
        try:
            kind = TxType(tx_type) if tx_type else None
        except ValueError as exc:
            raise WalletError(
                f"Unknown transaction type {tx_type!r}. "
                f"Expected one of {', '.join(t.value for t in TxType)}."
            ) from exc
        return await asyncio.to_thread(
            self.store.list_transactions, wallet_id, limit, offset, kind
        )

    async def get_transaction(self, wallet_id: str, txid: str) -> list[TransactionRecord]:
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        records = await asyncio.to_thread(self.store.find_transactions, wallet_id, txid)
        if not records:
            raise TransactionNotFound(f"Transaction {txid} not found for wallet {wallet_id}")
        return records


def _wallet_dict(wallet) -> dict[str, object]:
    return {
        "wallet_id": wallet.wallet_id,
        "name": wallet.name,
        "created_at": wallet.created_at,
        "last_accessed": wallet.last_accessed,
        "is_active": wallet.is_active,
    }
