"""
Fetch a wallet's remote outputs, keyed by address class.

The indexer side (on-chain and boarding addresses) and the coordinator side
(off-chain addresses) fail independently: a failed side is reported as None
with its error, the other side is still returned.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from ark_server_client import ArkServerClient, VirtualOutput
from esplora_client import EsploraIndexer, OnchainOutput
from ledger_store import AddressClass, LedgerStore
from wallet_errors import RemoteRejected, RemoteUnavailable, WalletError

logger = logging.getLogger(__name__)


@dataclass
class OutputView:
    onchain: list[OnchainOutput] | None = None
    boarding: list[OnchainOutput] | None = None
    offchain: list[VirtualOutput] | None = None
    indexer_error: WalletError | None = None
    coordinator_error: WalletError | None = None

    @property
    def indexer_ok(self) -> bool:
        return self.indexer_error is None

    @property
    def coordinator_ok(self) -> bool:
        return self.coordinator_error is None

    def warnings(self) -> list[str]:
        out = []
        if self.indexer_error is not None:
            out.append(f"indexer: {self.indexer_error.message}")
        if self.coordinator_error is not None:
            out.append(f"coordinator: {self.coordinator_error.message}")
        return out


class OutputFetcher:
    def __init__(
        self,
        store: LedgerStore,
        indexer: EsploraIndexer,
        coordinator: ArkServerClient,
    ) -> None:
        self.store = store
        self.indexer = indexer
        self.coordinator = coordinator

    async def addresses(self, wallet_id: str, address_class: AddressClass) -> list[str]:
        records = await asyncio.to_thread(self.store.list_addresses, wallet_id, address_class)
        # Preserve first-seen order, drop duplicates.
        return list(dict.fromkeys(r.address for r in records))

    async def utxos_at(self, addresses: Iterable[str]) -> list[OnchainOutput]:
        results = await asyncio.gather(
            *(asyncio.to_thread(self.indexer.get_utxos, a) for a in addresses)
        )
        return [u for batch in results for u in batch]

    async def vtxos_at(self, addresses: Iterable[str]) -> list[VirtualOutput]:
        results = await asyncio.gather(
            *(asyncio.to_thread(self.coordinator.get_offchain_outputs, a) for a in addresses)
        )
        return [v for batch in results for v in batch]

    async def onchain_outputs(self, wallet_id: str) -> list[OnchainOutput]:
        return await self.utxos_at(await self.addresses(wallet_id, AddressClass.ONCHAIN))

    async def boarding_outputs(self, wallet_id: str) -> list[OnchainOutput]:
        return await self.utxos_at(await self.addresses(wallet_id, AddressClass.BOARDING))

    async def offchain_outputs(self, wallet_id: str) -> list[VirtualOutput]:
        return await self.vtxos_at(await self.addresses(wallet_id, AddressClass.OFFCHAIN))

    async def fetch(self, wallet_id: str) -> OutputView:
        view = OutputView()

        async def indexer_side() -> None:
            try:
                onchain, boarding = await asyncio.gather(
                    self.onchain_outputs(wallet_id), self.boarding_outputs(wallet_id)
                )
            except (RemoteUnavailable, RemoteRejected) as exc:
                logger.warning("Indexer side unavailable for %s: %s", wallet_id, exc.message)
                view.indexer_error = exc
                return
            view.onchain = onchain
            view.boarding = boarding

        async def coordinator_side() -> None:
            try:
                view.offchain = await self.offchain_outputs(wallet_id)
            except (RemoteUnavailable, RemoteRejected) as exc:
                logger.warning("Coordinator side unavailable for %s: %s", wallet_id, exc.message)
                view.coordinator_error = exc

        await asyncio.gather(indexer_side(), coordinator_side())
        return view
