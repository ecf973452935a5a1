from __future__ import annotations

import asyncio
import logging

from ark_server_client import ArkServerClient
from ark_wallet_config import ArkWalletConfig
from ledger_store import AddressClass, AddressRecord, LedgerStore
from wallet_errors import CoordinatorRejected
from wallet_keys import KeyDeriver, SeedCipher
from wallet_locks import WalletLocks

logger = logging.getLogger(__name__)


class AddressManager:
    """
    Derives or retrieves the three address classes of a wallet.

    On-chain and off-chain addresses come from independent BIP32 counters.
    Boarding addresses are negotiated with the coordinator and stored with
    no derivation index.
    """

    def __init__(
        self,
        config: ArkWalletConfig,
        store: LedgerStore,
        coordinator: ArkServerClient,
        cipher: SeedCipher,
        deriver: KeyDeriver,
        locks: WalletLocks,
    ) -> None:
        self.config = config
        self.store = store
        self.coordinator = coordinator
        self.cipher = cipher
        self.deriver = deriver
        self.locks = locks
        self._server_pubkey: bytes | None = (
            bytes.fromhex(config.ark_server_pubkey) if config.ark_server_pubkey else None
        )

    async def get_address(self, wallet_id: str, address_class: AddressClass | str) -> AddressRecord:
        async with self.locks.lock_for(wallet_id):
            return await self.get_address_nolock(wallet_id, AddressClass(address_class))

    async def new_address(self, wallet_id: str, address_class: AddressClass | str) -> AddressRecord:
        """Rotate to a fresh address. Boarding addresses are renegotiated."""
        address_class = AddressClass(address_class)
        async with self.locks.lock_for(wallet_id):
            await asyncio.to_thread(self.store.get_wallet, wallet_id)
            return await self._derive(wallet_id, address_class)

    async def list_addresses(
        self, wallet_id: str, address_class: AddressClass | str | None = None
    ) -> list[AddressRecord]:
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        cls = AddressClass(address_class) if address_class is not None else None
        return await asyncio.to_thread(self.store.list_addresses, wallet_id, cls)

    async def wallet_addresses(self, wallet_id: str) -> dict[str, AddressRecord]:
        async with self.locks.lock_for(wallet_id):
            out = {}
            for cls in AddressClass:
                out[cls.value] = await self.get_address_nolock(wallet_id, cls)
            return out

    async def get_address_nolock(self, wallet_id: str, address_class: AddressClass) -> AddressRecord:
        await asyncio.to_thread(self.store.get_wallet, wallet_id)
        current = await asyncio.to_thread(self.store.current_address, wallet_id, address_class)
        if current is not None:
            return current
        return await self._derive(wallet_id, address_class)

    async def _derive(self, wallet_id: str, address_class: AddressClass) -> AddressRecord:
        material = await asyncio.to_thread(self.store.get_key_material, wallet_id)

        if address_class is AddressClass.BOARDING:
            address = await asyncio.to_thread(
                self.coordinator.get_boarding_address, material.public_key
            )
            index = None
        else:
            seed = await asyncio.to_thread(self.cipher.decrypt, material.encrypted_seed)
            index = await asyncio.to_thread(
                self.store.next_derivation_index, wallet_id, address_class
            )
            if address_class is AddressClass.ONCHAIN:
                address = self.deriver.onchain_address(seed, index)
            else:
                server_pubkey = await self.server_pubkey()
                address = self.deriver.offchain_address(seed, index, server_pubkey)

        record = await asyncio.to_thread(
            self.store.add_address, wallet_id, address, address_class, index
        )
        logger.info(
            "Recorded %s address for %s (index=%s)", address_class.value, wallet_id, index
        )
        return record

    async def server_pubkey(self) -> bytes:
        if self._server_pubkey is None:
            info = await asyncio.to_thread(self.coordinator.get_info)
            raw = str(info.get("signer_pubkey") or info.get("pubkey") or "")
            try:
                key = bytes.fromhex(raw)
            except ValueError as exc:
                raise CoordinatorRejected(f"Ark server advertised a malformed pubkey: {raw!r}") from exc
            if len(key) == 33:
                key = key[1:]
            if len(key) != 32:
                raise CoordinatorRejected(f"Ark server advertised a malformed pubkey: {raw!r}")
            self._server_pubkey = key
        return self._server_pubkey
