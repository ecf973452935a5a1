"""
On-chain indexer collaborator (Esplora / mempool.space REST API).

Every call carries a bounded timeout. Transport failures are mapped to
IndexerUnavailable and explicit HTTP refusals to IndexerRejected, so no
requests exception crosses into the wallet core.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from wallet_errors import IndexerRejected, IndexerUnavailable

logger = logging.getLogger(__name__)

# mempool.space tier names, keyed by wallet priority.
FEE_TIERS: dict[str, str] = {
    "fastest": "fastestFee",
    "fast": "halfHourFee",
    "normal": "hourFee",
    "slow": "economyFee",
    "minimum": "minimumFee",
}


@dataclass(frozen=True)
class OnchainOutput:
    txid: str
    vout: int
    value: int
    address: str
    confirmed: bool
    block_height: int | None = None
    block_time: int | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class TxStatus:
    txid: str
    confirmed: bool
    block_height: int | None = None
    block_time: int | None = None


class EsploraIndexer:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.warning("Indexer unreachable: %s %s: %s", method, url, exc)
            raise IndexerUnavailable(f"Indexer unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise IndexerUnavailable(f"Indexer request failed: {exc}") from exc
        if resp.status_code >= 500:
            raise IndexerUnavailable(f"Indexer error HTTP {resp.status_code}: {resp.text[:200]}")
        return resp

    def _get_json(self, path: str) -> Any:
        resp = self._request("GET", path)
        if not resp.ok:
            raise IndexerRejected(f"Indexer refused GET {path}: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise IndexerUnavailable(f"Indexer returned malformed JSON for {path}") from exc

    def get_utxos(self, address: str) -> list[OnchainOutput]:
        data = self._get_json(f"/address/{address}/utxo")
        if not isinstance(data, list):
            raise IndexerUnavailable(f"Unexpected UTXO payload for {address}")
        outputs = []
        for u in data:
            status = u.get("status", {}) or {}
            outputs.append(
                OnchainOutput(
                    txid=str(u.get("txid", "")),
                    vout=int(u.get("vout", 0)),
                    value=int(u.get("value", 0)),
                    address=address,
                    confirmed=bool(status.get("confirmed", False)),
                    block_height=status.get("block_height"),
                    block_time=status.get("block_time"),
                )
            )
        return outputs

    def get_balance(self, address: str) -> dict[str, int]:
        data = self._get_json(f"/address/{address}")
        chain = data.get("chain_stats", {}) or {}
        mempool = data.get("mempool_stats", {}) or {}
        confirmed = int(chain.get("funded_txo_sum", 0)) - int(chain.get("spent_txo_sum", 0))
        pending = int(mempool.get("funded_txo_sum", 0)) - int(mempool.get("spent_txo_sum", 0))
        return {"confirmed": confirmed, "pending": pending}

    def estimate_fee_rates(self) -> dict[str, int]:
        """
        Fetch recommended fee rates (sat/vB) from mempool.space.

        Returns {fastest, fast, normal, slow, minimum}.
        """
        data = self._get_json("/v1/fees/recommended")
        rates: dict[str, int] = {}
        for priority, tier in FEE_TIERS.items():
            if tier not in data:
                raise IndexerUnavailable(f"Fee response is missing {tier}")
            rates[priority] = int(data[tier])
        return rates

    def broadcast(self, raw_hex: str) -> str:
        resp = self._request("POST", "/tx", data=raw_hex)
        if not resp.ok:
            error_msg = resp.text or f"HTTP {resp.status_code}"
            raise IndexerRejected(f"Transaction broadcast failed: {error_msg}")
        # Esplora returns the txid as plain text.
        return resp.text.strip()

    def get_tx_status(self, txid: str) -> TxStatus | None:
        resp = self._request("GET", f"/tx/{txid}/status")
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise IndexerRejected(f"Indexer refused status for {txid}: HTTP {resp.status_code}")
        data = resp.json()
        return TxStatus(
            txid=txid,
            confirmed=bool(data.get("confirmed", False)),
            block_height=data.get("block_height"),
            block_time=data.get("block_time"),
        )

    def get_tip_height(self) -> int:
        resp = self._request("GET", "/blocks/tip/height")
        if not resp.ok:
            raise IndexerRejected(f"Indexer refused tip height: HTTP {resp.status_code}")
        try:
            return int(resp.text.strip())
        except ValueError as exc:
            raise IndexerUnavailable(f"Malformed tip height: {resp.text[:50]!r}") from exc
