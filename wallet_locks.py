from __future__ import annotations

import asyncio


class WalletLocks:
    """One asyncio.Lock per wallet id; distinct wallets never contend."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, wallet_id: str) -> asyncio.Lock:
        lock = self._locks.get(wallet_id)
        if lock is None:
            lock = self._locks[wallet_id] = asyncio.Lock()
        return lock

    def locked(self, wallet_id: str) -> bool:
        lock = self._locks.get(wallet_id)
        return lock is not None and lock.locked()
