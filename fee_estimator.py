from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from ark_wallet_config import ArkWalletConfig
from esplora_client import EsploraIndexer
from onchain_tx import estimate_fee_sats
from wallet_errors import InvalidPriority, RemoteRejected, RemoteUnavailable

logger = logging.getLogger(__name__)

# Priority -> target confirmation blocks.
PRIORITY_TARGETS: dict[str, int] = {
    "fastest": 1,
    "fast": 3,
    "normal": 6,
    "slow": 144,
}


@dataclass(frozen=True)
class FeeQuote:
    priority: str
    sat_per_vb: int
    degraded: bool = False
    source: str = "mempool"


class FeeEstimator:
    """
    Resolves a priority tier to a fee rate.

    Rates come from the indexer's recommended-fees endpoint and are cached
    for `fee_cache_seconds`. They never drop below the configured relay
    floor. When the endpoint is unreachable the floor is used and the quote
    is marked degraded.
    """

    def __init__(self, config: ArkWalletConfig, indexer: EsploraIndexer, clock=time.monotonic) -> None:
        self.floor = max(1, int(config.min_relay_fee_rate))
        self.cache_seconds = config.fee_cache_seconds
        self.indexer = indexer
        self._clock = clock
        self._cached: dict[str, int] | None = None
        self._cached_at = 0.0

    @staticmethod
    def check_priority(priority: str) -> str:
        normalized = (priority or "").strip().lower()
        if normalized not in PRIORITY_TARGETS:
            raise InvalidPriority(
                f"Unknown fee priority {priority!r}. "
                f"Expected one of {', '.join(PRIORITY_TARGETS)}."
            )
        return normalized

    async def _rates(self) -> dict[str, int]:
        now = self._clock()
        if self._cached is not None and now - self._cached_at < self.cache_seconds:
            return self._cached
        rates = await asyncio.to_thread(self.indexer.estimate_fee_rates)
        self._cached = rates
        self._cached_at = now
        return rates

    async def quote(self, priority: str) -> FeeQuote:
        priority = self.check_priority(priority)
        try:
            rates = await self._rates()
        except (RemoteUnavailable, RemoteRejected) as exc:
            logger.warning(
                "Fee service unavailable, using floor rate %d sat/vB: %s", self.floor, exc.message
            )
            return FeeQuote(priority, self.floor, degraded=True, source="floor")
        return FeeQuote(priority, max(int(rates[priority]), self.floor))

    async def estimates(self) -> list[dict[str, object]]:
        """Per-priority quotes for a 1-input, 2-output P2WPKH spend."""
        out = []
        for priority, blocks in PRIORITY_TARGETS.items():
            q = await self.quote(priority)
            out.append(
                {
                    "priority": priority,
                    "blocks": blocks,
                    "fee_rate": q.sat_per_vb,
                    "total_fee": estimate_fee_sats(1, 2, q.sat_per_vb),
                    "degraded": q.degraded,
                }
            )
        return out
