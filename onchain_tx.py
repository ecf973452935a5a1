"""
On-chain transaction helpers: destination validation, size and fee
arithmetic, largest-first coin selection and P2WPKH signing.

Pure functions only; nothing here touches the network or the ledger.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from bip_utils import P2TRAddrDecoder
from bitcoin import SelectParams
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CScript,
    CTxInWitness,
    Hash160,
    b2x,
    lx,
)
from bitcoin.core.script import (
    OP_1,
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    CScriptWitness,
    SignatureHash,
)
from bitcoin.wallet import CBitcoinAddress, CBitcoinAddressError, CBitcoinSecret

from ark_wallet_config import ArkWalletConfig
from esplora_client import OnchainOutput
from wallet_errors import InsufficientFunds, InvalidDestination

DUST_THRESHOLD_SATS = 546
MIN_RELAY_FEE_SATS = 160


@dataclass(frozen=True)
class CoinSelection:
    inputs: tuple[OnchainOutput, ...]
    fee: int
    change: int

    @property
    def total_in(self) -> int:
        return sum(u.value for u in self.inputs)


def estimate_vsize(n_inputs: int, n_outputs: int) -> int:
    """Virtual size of a P2WPKH transaction."""
    return 10 + 41 * n_inputs + 31 * n_outputs + (27 * n_inputs) // 4


def estimate_fee_sats(n_inputs: int, n_outputs: int, sat_per_vb: float) -> int:
    return max(math.ceil(estimate_vsize(n_inputs, n_outputs) * sat_per_vb), MIN_RELAY_FEE_SATS)


def script_pubkey_for(address: str, config: ArkWalletConfig) -> CScript:
    """
    Resolve a destination to its scriptPubKey on the configured network.

    python-bitcoinlib covers base58 and segwit v0; taproot (bech32m) goes
    through bip_utils.
    """
    SelectParams(config.bitcoinlib_params)
    try:
        return CBitcoinAddress(address).to_scriptPubKey()
    except (CBitcoinAddressError, ValueError):
        pass
    try:
        program = P2TRAddrDecoder.DecodeAddr(address, hrp=config.segwit_hrp)
    except Exception as exc:  # noqa: BLE001
        raise InvalidDestination(
            f"Invalid destination address for {config.network}: {address!r}"
        ) from exc
    return CScript([OP_1, bytes(program)])


def validate_address(address: str, config: ArkWalletConfig) -> str:
    if not isinstance(address, str) or not address.strip():
        raise InvalidDestination("Destination address is required")
    address = address.strip()
    script_pubkey_for(address, config)
    return address


def select_largest_first(
    outputs: Sequence[OnchainOutput], amount_sats: int, sat_per_vb: float
) -> CoinSelection:
    """
    Add outputs in descending value until amount + fee(n_inputs) is covered.

    The fee is sized for two outputs (payment and change). Change below the
    dust threshold is folded into the fee.
    """
    ordered = sorted(outputs, key=lambda u: (-u.value, u.txid, u.vout))
    chosen: list[OnchainOutput] = []
    total = 0
    fee = estimate_fee_sats(1, 2, sat_per_vb)
    for utxo in ordered:
        chosen.append(utxo)
        total += utxo.value
        fee = estimate_fee_sats(len(chosen), 2, sat_per_vb)
        if total >= amount_sats + fee:
            change = total - amount_sats - fee
            if change < DUST_THRESHOLD_SATS:
                fee += change
                change = 0
            return CoinSelection(inputs=tuple(chosen), fee=fee, change=change)

    raise InsufficientFunds(
        f"Insufficient funds: need {amount_sats + fee} sats "
        f"(amount {amount_sats} + fee {fee}), have {total} sats confirmed"
    )


def build_signed_transaction(
    selection: CoinSelection,
    wifs: dict[str, str],
    dest_address: str,
    amount_sats: int,
    change_address: str,
    config: ArkWalletConfig,
) -> str:
    """
    Build and sign a native SegWit (P2WPKH) transaction with python-bitcoinlib.

    `wifs` maps each input's address to its private key, so inputs spread
    over several derived addresses sign independently (BIP143).
    """
    SelectParams(config.bitcoinlib_params)

    txins = [CMutableTxIn(COutPoint(lx(u.txid), u.vout)) for u in selection.inputs]
    txouts = [CMutableTxOut(amount_sats, script_pubkey_for(dest_address, config))]
    if selection.change >= DUST_THRESHOLD_SATS:
        txouts.append(
            CMutableTxOut(selection.change, script_pubkey_for(change_address, config))
        )

    tx = CMutableTransaction(txins, txouts)

    for i, u in enumerate(selection.inputs):
        try:
            privkey = CBitcoinSecret(wifs[u.address])
        except KeyError as exc:
            raise ValueError(f"No signing key for input address {u.address}") from exc
        pubkey = privkey.pub
        # P2WPKH scriptCode is the P2PKH script of the key hash.
        script_code = CScript([OP_DUP, OP_HASH160, Hash160(pubkey), OP_EQUALVERIFY, OP_CHECKSIG])
        sighash = SignatureHash(script_code, tx, i, SIGHASH_ALL, amount=u.value, sigversion=1)
        sig = privkey.sign(sighash) + bytes([SIGHASH_ALL])
        tx.wit.vtxinwit[i] = CTxInWitness(CScriptWitness([sig, pubkey]))

    return b2x(tx.serialize())
