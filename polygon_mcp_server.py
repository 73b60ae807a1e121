#!/usr/bin/env python3
"""
MCP server for Polygon transaction simulation and analysis.

Tools cover speculative execution of candidate transactions, analysis of
settled transactions, gas estimation, historical token balance deltas,
fee data, and wallet/token-registry lookups.

Wraps tx_simulator.py and polygon_wallet.py as MCP tools.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, List

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

# Load .env from current directory or parent directories
SERVER_DIR = Path(__file__).resolve().parent
load_dotenv(SERVER_DIR / ".env")
load_dotenv(SERVER_DIR.parent / ".env")

from polygon_errors import PolygonMCPError  # noqa: E402
from polygon_logging import configure_logging, get_logger  # noqa: E402
from polygon_rpc import PolygonRPC, format_gwei  # noqa: E402
from polygon_wallet import (  # noqa: E402
    PolygonConfig,
    get_address,
    list_balances,
    resolve_token,
)
from tx_simulator import TransactionSimulator  # noqa: E402

logger = get_logger(__name__)

app = Server("polygon_wallet")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ok_response(data: dict[str, Any]) -> List[TextContent]:
    data["success"] = True
    return [TextContent(type="text", text=json.dumps(data, default=str))]


def _error_response(
    message: str,
    code: str | None = None,
    details: dict[str, Any] | None = None,
) -> List[TextContent]:
    payload: dict[str, Any] = {"success": False, "error": message}
    if code:
        payload["code"] = code
    if details:
        payload["details"] = details
    return [TextContent(type="text", text=json.dumps(payload, default=str))]


def _load_config() -> PolygonConfig:
    return PolygonConfig.from_env()


def _make_rpc(cfg: PolygonConfig) -> PolygonRPC:
    return cfg.make_rpc()


def _make_simulator(cfg: PolygonConfig, rpc: PolygonRPC) -> TransactionSimulator:
    return TransactionSimulator.from_config(cfg, rpc=rpc)


_TRANSACTION_SCHEMA = {
    "type": "object",
    "description": "Transaction parameters (integers in wei / gas units, as numbers or strings)",
    "properties": {
        "from": {"type": "string", "description": "Sender (defaults to the connected wallet)"},
        "to": {"type": "string", "description": "Recipient or contract (omit for deployment)"},
        "value": {"type": "string", "description": "Value in wei"},
        "data": {"type": "string", "description": "0x-prefixed call data or init code"},
        "gasLimit": {"type": "string", "description": "Gas limit"},
        "gasPrice": {"type": "string", "description": "Legacy gas price in wei"},
        "maxFeePerGas": {"type": "string", "description": "EIP-1559 max fee in wei"},
        "maxPriorityFeePerGas": {
            "type": "string",
            "description": "EIP-1559 priority fee in wei",
        },
    },
}


# ---------------------------------------------------------------------------
# Tool list
# ---------------------------------------------------------------------------


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="polygon_simulate_transaction",
            description=(
                "Simulate a transaction with eth_call without broadcasting it. "
                "Reports success, gas used and cost, ERC-20 transfers and contract creation."
            ),
            inputSchema={
                "type": "object",
                "properties": {"transaction": _TRANSACTION_SCHEMA},
                "required": ["transaction"],
            },
        ),
        Tool(
            name="polygon_analyze_transaction",
            description="Analyze a transaction by hash: status, value, gas used and cost.",
            inputSchema={
                "type": "object",
                "properties": {
                    "tx_hash": {"type": "string", "description": "Transaction hash (0x + 64 hex)"},
                },
                "required": ["tx_hash"],
            },
        ),
        Tool(
            name="polygon_estimate_gas",
            description="Estimate gas for a transaction and recommend a limit with a 20% buffer.",
            inputSchema={
                "type": "object",
                "properties": {"transaction": _TRANSACTION_SCHEMA},
                "required": ["transaction"],
            },
        ),
        Tool(
            name="polygon_get_token_balance_changes",
            description=(
                "Net balance change of every registry token for an address "
                "over a block range, reconstructed from Transfer events."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {"type": "string", "description": "Address to analyze"},
                    "from_block": {
                        "type": "string",
                        "description": "Start block number or tag (default latest)",
                    },
                    "to_block": {
                        "type": "string",
                        "description": "End block number or tag (default latest)",
                    },
                },
                "required": ["address"],
            },
        ),
        Tool(
            name="polygon_get_gas_price",
            description="Return current gas price and EIP-1559 fee data in gwei and wei.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="polygon_get_address",
            description="Return the connected wallet address.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="polygon_list_balances",
            description="List native POL and registry token balances for an address.",
            inputSchema={
                "type": "object",
                "properties": {
                    "address": {
                        "type": "string",
                        "description": "Address to check (defaults to the connected wallet)",
                    },
                },
            },
        ),
        Tool(
            name="polygon_resolve_token",
            description="Resolve a token symbol or address to its contract address.",
            inputSchema={
                "type": "object",
                "properties": {
                    "token": {"type": "string", "description": "Token symbol or address"},
                },
                "required": ["token"],
            },
        ),
    ]


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return _error_response("Invalid arguments. Expected an object.")

    try:
        if name == "polygon_simulate_transaction":
            return await _handle_simulate_transaction(arguments)
        if name == "polygon_analyze_transaction":
            return await _handle_analyze_transaction(arguments)
        if name == "polygon_estimate_gas":
            return await _handle_estimate_gas(arguments)
        if name == "polygon_get_token_balance_changes":
            return await _handle_get_token_balance_changes(arguments)
        if name == "polygon_get_gas_price":
            return await _handle_get_gas_price()
        if name == "polygon_get_address":
            return await _handle_get_address()
        if name == "polygon_list_balances":
            return await _handle_list_balances(arguments)
        if name == "polygon_resolve_token":
            return await _handle_resolve_token(arguments)

    except PolygonMCPError as exc:
        logger.warning("tool_failed", tool=name, code=exc.code, error=exc.message)
        return _error_response(exc.message, exc.code, exc.details)
    except Exception as exc:  # noqa: BLE001
        logger.error("tool_failed", tool=name, error=str(exc))
        return _error_response(str(exc))

    return _error_response(f"Unknown tool: {name}")


# ---------------------------------------------------------------------------
# Handlers -- Simulation & analysis
# ---------------------------------------------------------------------------


def _require_transaction(arguments: dict[str, Any]) -> dict[str, Any] | None:
    transaction = arguments.get("transaction")
    return transaction if isinstance(transaction, dict) else None


async def _handle_simulate_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    transaction = _require_transaction(arguments)
    if transaction is None:
        return _error_response("Missing transaction. Expected an object.")

    cfg = await asyncio.to_thread(_load_config)
    async with _make_rpc(cfg) as rpc:
        result = await _make_simulator(cfg, rpc).simulate_transaction(transaction)
    payload = result.to_dict()
    # "success" in the tool envelope means the tool ran; the simulated
    # outcome is reported separately.
    payload["simulationSuccess"] = payload.pop("success")
    payload["network"] = cfg.network
    return _ok_response(payload)


async def _handle_analyze_transaction(arguments: dict[str, Any]) -> List[TextContent]:
    tx_hash = (arguments.get("tx_hash") or "").strip()
    if not tx_hash:
        return _error_response("Missing tx_hash.")

    cfg = await asyncio.to_thread(_load_config)
    async with _make_rpc(cfg) as rpc:
        analysis = await _make_simulator(cfg, rpc).analyze_transaction(tx_hash)
    analysis["network"] = cfg.network
    return _ok_response(analysis)


async def _handle_estimate_gas(arguments: dict[str, Any]) -> List[TextContent]:
    transaction = _require_transaction(arguments)
    if transaction is None:
        return _error_response("Missing transaction. Expected an object.")

    cfg = await asyncio.to_thread(_load_config)
    async with _make_rpc(cfg) as rpc:
        estimate = await _make_simulator(cfg, rpc).estimate_gas(transaction)
    estimate["network"] = cfg.network
    return _ok_response(estimate)


async def _handle_get_token_balance_changes(arguments: dict[str, Any]) -> List[TextContent]:
    address = (arguments.get("address") or "").strip()
    if not address:
        return _error_response("Missing address.")

    cfg = await asyncio.to_thread(_load_config)
    async with _make_rpc(cfg) as rpc:
        report = await _make_simulator(cfg, rpc).get_token_balance_changes(
            address, arguments.get("from_block"), arguments.get("to_block")
        )
    payload = report.to_dict()
    payload["network"] = cfg.network
    return _ok_response(payload)


async def _handle_get_gas_price() -> List[TextContent]:
    cfg = await asyncio.to_thread(_load_config)
    async with _make_rpc(cfg) as rpc:
        fee_data = await rpc.get_fee_data()

    def _gwei(value: int | None) -> str | None:
        return format_gwei(value) if value is not None else None

    def _wei(value: int | None) -> str | None:
        return str(value) if value is not None else None

    return _ok_response(
        {
            "gasPrice": _gwei(fee_data.get("gasPrice")),
            "maxFeePerGas": _gwei(fee_data.get("maxFeePerGas")),
            "maxPriorityFeePerGas": _gwei(fee_data.get("maxPriorityFeePerGas")),
            "gasPrice_wei": _wei(fee_data.get("gasPrice")),
            "maxFeePerGas_wei": _wei(fee_data.get("maxFeePerGas")),
            "maxPriorityFeePerGas_wei": _wei(fee_data.get("maxPriorityFeePerGas")),
            "network": cfg.network,
        }
    )


# ---------------------------------------------------------------------------
# Handlers -- Wallet & token registry
# ---------------------------------------------------------------------------


async def _handle_get_address() -> List[TextContent]:
    cfg = await asyncio.to_thread(_load_config)
    return _ok_response({"address": get_address(cfg), "network": cfg.network})


async def _handle_list_balances(arguments: dict[str, Any]) -> List[TextContent]:
    cfg = await asyncio.to_thread(_load_config)
    address = (arguments.get("address") or "").strip() or None
    async with _make_rpc(cfg) as rpc:
        result = await list_balances(cfg, rpc, address)
    return _ok_response(result)


async def _handle_resolve_token(arguments: dict[str, Any]) -> List[TextContent]:
    token = (arguments.get("token") or "").strip()
    if not token:
        return _error_response("Missing token.")

    cfg = await asyncio.to_thread(_load_config)
    return _ok_response(resolve_token(cfg, token))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def main() -> None:
    configure_logging()
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
