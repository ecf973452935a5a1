"""
Settlement-coordinator collaborator (Ark server REST API).

Mirrors esplora_client: bounded timeouts on every call, transport failures
become CoordinatorUnavailable and explicit refusals CoordinatorRejected.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Literal, Sequence

import requests

from wallet_errors import CoordinatorRejected, CoordinatorUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VirtualOutput:
    """A VTXO as reported by the coordinator."""

    txid: str
    vout: int
    amount: int
    address: str
    is_pending: bool = False
    is_spent: bool = False
    created_at: int | None = None
    expire_at: int | None = None
    # Block height at which the unilateral-exit path opens. None while the
    # output is not yet anchored on-chain.
    unlock_height: int | None = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class RoundInput:
    kind: Literal["boarding", "vtxo"]
    txid: str
    vout: int
    amount: int
    address: str


@dataclass(frozen=True)
class RoundResult:
    accepted: bool
    round_txid: str | None = None
    reason: str | None = None


class ArkServerClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _call(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.warning("Coordinator unreachable: %s %s: %s", method, url, exc)
            raise CoordinatorUnavailable(f"Ark server unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise CoordinatorUnavailable(f"Ark server request failed: {exc}") from exc

        if resp.status_code >= 500:
            raise CoordinatorUnavailable(
                f"Ark server error HTTP {resp.status_code}: {resp.text[:200]}"
            )
        if not resp.ok:
            raise CoordinatorRejected(
                f"Ark server refused {method} {path}: HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise CoordinatorUnavailable(f"Ark server returned malformed JSON for {path}") from exc

    def get_info(self) -> dict[str, Any]:
        """Server info, including the x-only signer pubkey under `signer_pubkey`."""
        return self._call("GET", "/v1/info")

    def get_boarding_address(self, pubkey: str) -> str:
        data = self._call("POST", "/v1/boarding", {"pubkey": pubkey})
        address = data.get("address")
        if not address:
            raise CoordinatorRejected("Ark server returned no boarding address")
        return str(address)

    def get_offchain_outputs(self, address: str) -> list[VirtualOutput]:
        data = self._call("GET", f"/v1/vtxos/{address}")
        items = data.get("vtxos", []) if isinstance(data, dict) else data
        outputs = []
        for v in items or []:
            unlock = v.get("unlock_height")
            outputs.append(
                VirtualOutput(
                    txid=str(v.get("txid", "")),
                    vout=int(v.get("vout", 0)),
                    amount=int(v.get("amount", 0)),
                    address=address,
                    is_pending=bool(v.get("is_pending", False)),
                    is_spent=bool(v.get("is_spent", False)),
                    created_at=v.get("created_at"),
                    expire_at=v.get("expire_at"),
                    unlock_height=int(unlock) if unlock is not None else None,
                )
            )
        return outputs

    def submit_round(self, inputs: Sequence[RoundInput]) -> RoundResult:
        data = self._call(
            "POST", "/v1/round/register", {"inputs": [asdict(i) for i in inputs]}
        )
        return RoundResult(
            accepted=bool(data.get("accepted", False)),
            round_txid=data.get("round_txid"),
            reason=data.get("reason"),
        )

    def submit_exit(self, vtxo: VirtualOutput) -> str:
        data = self._call(
            "POST",
            "/v1/exit",
            {"txid": vtxo.txid, "vout": vtxo.vout, "amount": vtxo.amount},
        )
        exit_txid = data.get("txid")
        if not exit_txid:
            raise CoordinatorRejected(f"Exit for {vtxo.outpoint} returned no transaction id")
        return str(exit_txid)

    def submit_payment(
        self, inputs: Sequence[VirtualOutput], dest_address: str, amount_sats: int
    ) -> str:
        payload = {
            "inputs": [{"txid": v.txid, "vout": v.vout, "amount": v.amount} for v in inputs],
            "outputs": [{"address": dest_address, "amount": amount_sats}],
        }
        data = self._call("POST", "/v1/payment", payload)
        txid = data.get("txid")
        if not txid:
            raise CoordinatorRejected("Payment accepted without a transaction id")
        return str(txid)
