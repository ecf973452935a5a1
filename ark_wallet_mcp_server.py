#!/usr/bin/env python3
"""
MCP server for the Ark wallet core.

Each tool maps 1:1 to a core operation; failures come back as
{"success": false, "error": ..., "kind": ...} with the error kind from
wallet_errors.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from ark_wallet import ArkWallet
from ark_wallet_config import ArkWalletConfig, ArkWalletConfigError, configure_logging
from ledger_store import AddressClass
from wallet_errors import ErrorKind, InvalidAmount, WalletError

logger = logging.getLogger(__name__)

app = Server("ark_wallet")

_WALLET: ArkWallet | None = None


def set_wallet(wallet: ArkWallet | None) -> None:
    global _WALLET
    _WALLET = wallet


async def _get_wallet() -> ArkWallet:
    global _WALLET
    if _WALLET is None:
        cfg = await asyncio.to_thread(ArkWalletConfig.from_env)
        _WALLET = await asyncio.to_thread(ArkWallet.from_config, cfg)
    return _WALLET


def _ok_response(data: dict[str, Any]) -> List[TextContent]:
    data["success"] = True
    return [TextContent(type="text", text=json.dumps(data, default=str))]


def _error_response(message: str, kind: str = ErrorKind.VALIDATION.value) -> List[TextContent]:
    return [
        TextContent(
            type="text", text=json.dumps({"success": False, "error": message, "kind": kind})
        )
    ]


def _require(arguments: dict[str, Any], field_name: str) -> str:
    value = arguments.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise WalletError(f"Missing {field_name}.")
    return value.strip()


def _parse_sats(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid {field_name}. Must be an integer number of sats.")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise InvalidAmount(f"Invalid {field_name}. Must be an integer number of sats.")
    if value <= 0:
        raise InvalidAmount(f"Invalid {field_name}. Must be greater than zero.")
    return value


_WALLET_ID = {"wallet_id": {"type": "string", "description": "Wallet id (uuid)."}}
_ADDRESS_CLASS = {
    "address_type": {
        "type": "string",
        "enum": ["onchain", "offchain", "boarding"],
        "description": "Address class.",
    }
}
_PRIORITY = {
    "priority": {
        "type": "string",
        "enum": ["fastest", "fast", "normal", "slow"],
        "description": "Fee priority (default normal).",
    }
}


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="ark_create_wallet",
            description="Create a wallet. Returns its id and the mnemonic, shown only once.",
            inputSchema={
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
        ),
        Tool(
            name="ark_list_wallets",
            description="List wallets.",
            inputSchema={
                "type": "object",
                "properties": {"include_inactive": {"type": "boolean"}},
            },
        ),
        Tool(
            name="ark_get_wallet",
            description="Wallet details, current addresses and cached balance.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
        Tool(
            name="ark_get_address",
            description="Current address of a class, derived on first use.",
            inputSchema={
                "type": "object",
                "properties": {**_WALLET_ID, **_ADDRESS_CLASS},
                "required": ["wallet_id", "address_type"],
            },
        ),
        Tool(
            name="ark_new_address",
            description="Rotate to a fresh address of a class.",
            inputSchema={
                "type": "object",
                "properties": {**_WALLET_ID, **_ADDRESS_CLASS},
                "required": ["wallet_id", "address_type"],
            },
        ),
        Tool(
            name="ark_get_balance",
            description="Cached balance snapshot. No network access.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
        Tool(
            name="ark_recompute_balance",
            description="Refresh the balance from the indexer and the Ark server.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
        Tool(
            name="ark_list_transactions",
            description="Transaction history, oldest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_WALLET_ID,
                    "limit": {"type": "integer"},
                    "offset": {"type": "integer"},
                    "type": {"type": "string"},
                },
                "required": ["wallet_id"],
            },
        ),
        Tool(
            name="ark_get_transaction",
            description="All ledger records for a txid.",
            inputSchema={
                "type": "object",
                "properties": {**_WALLET_ID, "txid": {"type": "string"}},
                "required": ["wallet_id", "txid"],
            },
        ),
        Tool(
            name="ark_sync_wallet",
            description="Reconcile the ledger with remote state.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
        Tool(
            name="ark_send_onchain",
            description="Send an on-chain payment from confirmed on-chain outputs.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_WALLET_ID,
                    "to_address": {"type": "string"},
                    "amount_sats": {"type": "integer"},
                    **_PRIORITY,
                },
                "required": ["wallet_id", "to_address", "amount_sats"],
            },
        ),
        Tool(
            name="ark_send_offchain",
            description="Send an off-chain (Ark) payment.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_WALLET_ID,
                    "to_address": {"type": "string"},
                    "amount_sats": {"type": "integer"},
                },
                "required": ["wallet_id", "to_address", "amount_sats"],
            },
        ),
        Tool(
            name="ark_get_fee_estimates",
            description="Fee rate and total fee per priority for a typical spend.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="ark_estimate_fee",
            description="Dry-run coin selection for an on-chain send.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_WALLET_ID,
                    "to_address": {"type": "string"},
                    "amount_sats": {"type": "integer"},
                    **_PRIORITY,
                },
                "required": ["wallet_id", "to_address", "amount_sats"],
            },
        ),
        Tool(
            name="ark_participate_round",
            description="Settle boarding outputs and VTXOs in the next round.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
        Tool(
            name="ark_renew_vtxos",
            description="Join a round if any VTXO expires within the next hour.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
        Tool(
            name="ark_exit",
            description="Unilaterally exit a VTXO on-chain once its timelock has expired.",
            inputSchema={
                "type": "object",
                "properties": {**_WALLET_ID, "vtxo_txid": {"type": "string"}},
                "required": ["wallet_id", "vtxo_txid"],
            },
        ),
        Tool(
            name="ark_exit_recommendations",
            description="VTXOs close to expiry that should be exited or refreshed.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
        Tool(
            name="ark_exit_all",
            description="Emergency exit of every VTXO.",
            inputSchema={"type": "object", "properties": _WALLET_ID, "required": ["wallet_id"]},
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    try:
        # Wallets
        if name == "ark_create_wallet":
            return await _handle_create_wallet(arguments)
        if name == "ark_list_wallets":
            return await _handle_list_wallets(arguments)
        if name == "ark_get_wallet":
            return await _handle_get_wallet(arguments)

        # Addresses and balances
        if name == "ark_get_address":
            return await _handle_get_address(arguments, rotate=False)
        if name == "ark_new_address":
            return await _handle_get_address(arguments, rotate=True)
        if name == "ark_get_balance":
            return await _handle_get_balance(arguments)
        if name == "ark_recompute_balance":
            return await _handle_recompute_balance(arguments)

        # History and sync
        if name == "ark_list_transactions":
            return await _handle_list_transactions(arguments)
        if name == "ark_get_transaction":
            return await _handle_get_transaction(arguments)
        if name == "ark_sync_wallet":
            return await _handle_sync_wallet(arguments)

        # Payments and fees
        if name == "ark_send_onchain":
            return await _handle_send_onchain(arguments)
        if name == "ark_send_offchain":
            return await _handle_send_offchain(arguments)
        if name == "ark_get_fee_estimates":
            return await _handle_get_fee_estimates()
        if name == "ark_estimate_fee":
            return await _handle_estimate_fee(arguments)

        # Rounds and exits
        if name == "ark_participate_round":
            return await _handle_participate_round(arguments)
        if name == "ark_renew_vtxos":
            return await _handle_renew_vtxos(arguments)
        if name == "ark_exit":
            return await _handle_exit(arguments)
        if name == "ark_exit_recommendations":
            return await _handle_exit_recommendations(arguments)
        if name == "ark_exit_all":
            return await _handle_exit_all(arguments)

    except WalletError as exc:
        return _error_response(exc.message, exc.kind.value)
    except ArkWalletConfigError as exc:
        return _error_response(str(exc), "configuration")
    except Exception as exc:  # noqa: BLE001
        logger.exception("Tool %s failed", name)
        return _error_response(str(exc), "internal")

    return _error_response(f"Unknown tool: {name}")


async def _handle_create_wallet(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    created = await wallet.create_wallet(_require(arguments, "name"))
    return _ok_response({**created, "network": wallet.config.network})


async def _handle_list_wallets(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    wallets = await wallet.list_wallets(bool(arguments.get("include_inactive", False)))
    return _ok_response({"wallets": wallets, "count": len(wallets)})


async def _handle_get_wallet(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    info = await wallet.get_wallet_info(_require(arguments, "wallet_id"))
    return _ok_response(info)


async def _handle_get_address(arguments: dict[str, Any], rotate: bool) -> List[TextContent]:
    wallet = await _get_wallet()
    wallet_id = _require(arguments, "wallet_id")
    raw_class = _require(arguments, "address_type")
    try:
        address_class = AddressClass(raw_class.lower())
    except ValueError as exc:
        raise WalletError(
            f"Invalid address_type {raw_class!r}. Expected onchain, offchain or boarding."
        ) from exc
    if rotate:
        record = await wallet.addresses.new_address(wallet_id, address_class)
    else:
        record = await wallet.addresses.get_address(wallet_id, address_class)
    return _ok_response(
        {
            "wallet_id": wallet_id,
            "address": record.address,
            "address_type": record.address_type.value,
            "derivation_index": record.derivation_index,
            "network": wallet.config.network,
        }
    )


async def _handle_get_balance(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    balance = await wallet.balances.get_balance(_require(arguments, "wallet_id"))
    return _ok_response(balance.to_dict())


async def _handle_recompute_balance(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    balance = await wallet.balances.recompute_balance(_require(arguments, "wallet_id"))
    return _ok_response(balance.to_dict())


async def _handle_list_transactions(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    wallet_id = _require(arguments, "wallet_id")
    limit = arguments.get("limit", 50)
    offset = arguments.get("offset", 0)
    try:
        limit = int(limit) if limit is not None else None
        offset = int(offset)
    except (TypeError, ValueError) as exc:
        raise WalletError("limit and offset must be integers.") from exc
    records = await wallet.list_transactions(wallet_id, limit, offset, arguments.get("type"))
    return _ok_response(
        {
            "wallet_id": wallet_id,
            "transactions": [r.to_dict() for r in records],
            "count": len(records),
        }
    )


async def _handle_get_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    records = await wallet.get_transaction(
        _require(arguments, "wallet_id"), _require(arguments, "txid")
    )
    return _ok_response({"records": [r.to_dict() for r in records]})


async def _handle_sync_wallet(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    report = await wallet.sync.sync_wallet(_require(arguments, "wallet_id"))
    return _ok_response(report.to_dict())


async def _handle_send_onchain(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    result = await wallet.payments.send_onchain(
        _require(arguments, "wallet_id"),
        _require(arguments, "to_address"),
        _parse_sats(arguments.get("amount_sats"), "amount_sats"),
        arguments.get("priority") or "normal",
    )
    return _ok_response({**result.to_dict(), "network": wallet.config.network})


async def _handle_send_offchain(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    result = await wallet.payments.send_offchain(
        _require(arguments, "wallet_id"),
        _require(arguments, "to_address"),
        _parse_sats(arguments.get("amount_sats"), "amount_sats"),
    )
    return _ok_response(result.to_dict())


async def _handle_get_fee_estimates() -> List[TextContent]:
    wallet = await _get_wallet()
    estimates = await wallet.fees.estimates()
    return _ok_response({"estimates": estimates, "network": wallet.config.network})


async def _handle_estimate_fee(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    estimate = await wallet.payments.estimate_onchain_fee(
        _require(arguments, "wallet_id"),
        _require(arguments, "to_address"),
        _parse_sats(arguments.get("amount_sats"), "amount_sats"),
        arguments.get("priority") or "normal",
    )
    return _ok_response(estimate)


async def _handle_participate_round(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    attempt = await wallet.rounds.participate(_require(arguments, "wallet_id"))
    return _ok_response(attempt.to_dict())


async def _handle_renew_vtxos(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    attempt = await wallet.rounds.renew_expiring(_require(arguments, "wallet_id"))
    if attempt is None:
        return _ok_response({"renewed": False})
    return _ok_response({"renewed": True, **attempt.to_dict()})


async def _handle_exit(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    result = await wallet.exits.exit(
        _require(arguments, "wallet_id"), _require(arguments, "vtxo_txid")
    )
    return _ok_response(result.to_dict())


async def _handle_exit_recommendations(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    recs = await wallet.exits.recommendations(_require(arguments, "wallet_id"))
    return _ok_response({"recommendations": [r.to_dict() for r in recs]})


async def _handle_exit_all(arguments: dict[str, Any]) -> List[TextContent]:
    wallet = await _get_wallet()
    outcome = await wallet.exits.exit_all(_require(arguments, "wallet_id"))
    return _ok_response(outcome)


async def main() -> None:
    cfg = ArkWalletConfig.from_env()
    configure_logging(cfg.log_level)
    wallet = ArkWallet.from_config(cfg)
    set_wallet(wallet)
    stop = asyncio.Event()
    background = asyncio.create_task(wallet.sync.run_periodic(cfg.sync_interval_seconds, stop))
    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(read_stream, write_stream, app.create_initialization_options())
    finally:
        stop.set()
        await background


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
