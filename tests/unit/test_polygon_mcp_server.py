"""Unit tests for the Polygon MCP tool surface."""

import asyncio
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import polygon_mcp_server as server  # noqa: E402
from chain_fakes import FakeRPC, FakeToken, addr  # noqa: E402
from eth_abi import encode  # noqa: E402
from polygon_wallet import PolygonConfig, SignerContext, TokenRegistry  # noqa: E402
from tx_simulator import TransactionSimulator  # noqa: E402


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

TOKEN = addr("aa")
RECIPIENT = addr("bb")
SENDER = addr("cc")
TX_HASH = "0x" + "ab" * 32


def _parse(response):
    return json.loads(response[0].text)


def _dummy_cfg(connected=True):
    return PolygonConfig(
        network="amoy",
        rpc_url="http://localhost:8545",
        chain_id=80002,
        tokens=TokenRegistry({"TEST": TOKEN}),
        signer=SignerContext({"amoy": SENDER} if connected else {}),
    )


def _install(monkeypatch, rpc, connected=True):
    cfg = _dummy_cfg(connected)
    monkeypatch.setattr(server, "_load_config", lambda: cfg)
    monkeypatch.setattr(server, "_make_rpc", lambda _cfg: rpc)
    return cfg


def _call(name, arguments):
    return _parse(asyncio.run(server.call_tool(name, arguments)))


# ---------------------------------------------------------------------------
# Tool list & dispatch
# ---------------------------------------------------------------------------


def test_list_tools():
    tools = asyncio.run(server.list_tools())
    names = {tool.name for tool in tools}
    assert names == {
        "polygon_simulate_transaction",
        "polygon_analyze_transaction",
        "polygon_estimate_gas",
        "polygon_get_token_balance_changes",
        "polygon_get_gas_price",
        "polygon_get_address",
        "polygon_list_balances",
        "polygon_resolve_token",
    }


def test_unknown_tool():
    payload = _call("polygon_teleport", {})
    assert payload == {"success": False, "error": "Unknown tool: polygon_teleport"}


def test_non_object_arguments():
    payload = _call("polygon_get_address", ["nope"])
    assert payload["success"] is False
    assert "Expected an object" in payload["error"]


def test_make_simulator_uses_config(monkeypatch):
    rpc = FakeRPC()
    cfg = _install(monkeypatch, rpc)
    simulator = server._make_simulator(cfg, rpc)
    assert isinstance(simulator, TransactionSimulator)
    assert simulator.rpc is rpc
    assert simulator.network == "amoy"


def test_handlers_close_rpc_client(monkeypatch):
    calls = [
        ("polygon_simulate_transaction", {"transaction": {"to": RECIPIENT}}),
        ("polygon_analyze_transaction", {"tx_hash": TX_HASH}),
        ("polygon_estimate_gas", {"transaction": {"to": RECIPIENT}}),
        ("polygon_get_token_balance_changes", {"address": SENDER}),
        ("polygon_get_gas_price", {}),
        ("polygon_list_balances", {}),
    ]
    for name, arguments in calls:
        rpc = FakeRPC()
        _install(monkeypatch, rpc)
        _call(name, arguments)
        assert rpc.close_calls == 1, name


def test_handler_closes_rpc_client_on_error(monkeypatch):
    rpc = FakeRPC(estimates=[RuntimeError("execution reverted")])
    _install(monkeypatch, rpc)
    payload = _call("polygon_estimate_gas", {"transaction": {"to": RECIPIENT}})
    assert payload["success"] is False
    assert rpc.close_calls == 1


# ---------------------------------------------------------------------------
# Simulation & analysis
# ---------------------------------------------------------------------------


def test_simulate_transaction_tool(monkeypatch):
    rpc = FakeRPC(tokens={TOKEN: FakeToken(TOKEN, symbol="TEST", decimals=18)})
    _install(monkeypatch, rpc)
    data = "0xa9059cbb" + encode(["address", "uint256"], [RECIPIENT, 500 * 10**18]).hex()

    payload = _call("polygon_simulate_transaction", {"transaction": {"to": TOKEN, "data": data}})

    assert payload["success"] is True
    assert payload["simulationSuccess"] is True
    assert payload["network"] == "amoy"
    assert payload["gasLimit"] == "25200"
    [transfer] = payload["tokenTransfers"]
    assert transfer["from"] == SENDER
    assert transfer["amount"] == "500.0"
    assert transfer["rawAmount"] == "500000000000000000000"


def test_simulate_transaction_tool_reports_revert(monkeypatch):
    from polygon_rpc import CallRevertedError

    rpc = FakeRPC(call_error=CallRevertedError("execution reverted"))
    _install(monkeypatch, rpc)

    payload = _call("polygon_simulate_transaction", {"transaction": {"to": RECIPIENT}})
    assert payload["success"] is True
    assert payload["simulationSuccess"] is False
    assert payload["errorMessage"].startswith("Transaction would revert: ")


def test_simulate_transaction_tool_requires_transaction(monkeypatch):
    _install(monkeypatch, FakeRPC())
    payload = _call("polygon_simulate_transaction", {})
    assert payload == {"success": False, "error": "Missing transaction. Expected an object."}


def test_simulate_transaction_tool_invalid_address(monkeypatch):
    _install(monkeypatch, FakeRPC())
    payload = _call("polygon_simulate_transaction", {"transaction": {"to": "0x1234"}})
    assert payload["success"] is False
    assert payload["code"] == "INVALID_ADDRESS"
    assert payload["details"]["paramName"] == "to"


def test_analyze_transaction_tool(monkeypatch):
    rpc = FakeRPC(
        transactions={TX_HASH: {"from": SENDER, "to": RECIPIENT, "value": 0, "gasPrice": 10**9}},
        receipts={TX_HASH: {"status": 1, "gasUsed": 21_000, "blockNumber": 5, "logs": []}},
        block_timestamps={5: 0},
    )
    _install(monkeypatch, rpc)

    payload = _call("polygon_analyze_transaction", {"tx_hash": TX_HASH})
    assert payload["success"] is True
    assert payload["status"] == "Success"
    assert payload["timestamp"] == "1970-01-01T00:00:00+00:00"
    assert payload["gasCost"]["wei"] == str(21_000 * 10**9)
    assert payload["network"] == "amoy"


def test_analyze_transaction_tool_not_found(monkeypatch):
    _install(monkeypatch, FakeRPC())
    payload = _call("polygon_analyze_transaction", {"tx_hash": TX_HASH})
    assert payload["success"] is False
    assert payload["code"] == "TRANSACTION_ANALYSIS_FAILED"
    assert payload["error"].startswith("Analysis failed: ")


def test_analyze_transaction_tool_requires_hash(monkeypatch):
    _install(monkeypatch, FakeRPC())
    assert _call("polygon_analyze_transaction", {})["error"] == "Missing tx_hash."


def test_estimate_gas_tool(monkeypatch):
    _install(monkeypatch, FakeRPC(estimates=[50_000]))
    payload = _call("polygon_estimate_gas", {"transaction": {"to": RECIPIENT, "value": "1"}})
    assert payload["success"] is True
    assert payload["gasEstimate"] == "50000"
    assert payload["recommendedGasLimit"] == "60000"


def test_estimate_gas_tool_failure(monkeypatch):
    _install(monkeypatch, FakeRPC(estimates=[RuntimeError("execution reverted")]))
    payload = _call("polygon_estimate_gas", {"transaction": {"to": RECIPIENT}})
    assert payload["success"] is False
    assert payload["code"] == "GAS_ESTIMATION_FAILED"
    assert payload["details"]["cause"] == "execution reverted"
    assert payload["details"]["transaction"]["from"] == SENDER


def test_get_token_balance_changes_tool(monkeypatch):
    from polygon_rpc import TransferEvent

    events = [TransferEvent(TOKEN, RECIPIENT, SENDER, 3 * 10**18, 7, None)]
    _install(monkeypatch, FakeRPC(tokens={TOKEN: FakeToken(TOKEN, events=events)}))

    payload = _call(
        "polygon_get_token_balance_changes",
        {"address": SENDER, "from_block": "1", "to_block": "latest"},
    )
    assert payload["success"] is True
    assert payload["fromBlock"] == 1
    assert payload["toBlock"] == "latest"
    [change] = payload["changes"]
    assert change["change"] == "3.0"
    assert change["changeType"] == "increase"


def test_get_token_balance_changes_tool_requires_address(monkeypatch):
    _install(monkeypatch, FakeRPC())
    assert _call("polygon_get_token_balance_changes", {})["error"] == "Missing address."


def test_get_gas_price_tool(monkeypatch):
    _install(monkeypatch, FakeRPC())
    payload = _call("polygon_get_gas_price", {})
    assert payload["gasPrice"] == "30.0"
    assert payload["maxFeePerGas"] == "60.0"
    assert payload["maxPriorityFeePerGas"] == "2.0"
    assert payload["gasPrice_wei"] == "30000000000"


# ---------------------------------------------------------------------------
# Wallet & token registry
# ---------------------------------------------------------------------------


def test_get_address_tool(monkeypatch):
    _install(monkeypatch, FakeRPC())
    payload = _call("polygon_get_address", None)
    assert payload == {"address": SENDER, "network": "amoy", "success": True}


def test_get_address_tool_not_connected(monkeypatch):
    _install(monkeypatch, FakeRPC(), connected=False)
    payload = _call("polygon_get_address", {})
    assert payload["success"] is False
    assert payload["code"] == "WALLET_NOT_CONNECTED"


def test_list_balances_tool(monkeypatch):
    rpc = FakeRPC(balance=10**18, tokens={TOKEN: FakeToken(TOKEN, decimals=6, balance=1_000_000)})
    _install(monkeypatch, rpc)
    payload = _call("polygon_list_balances", {})
    assert payload["address"] == SENDER
    assert payload["nativeBalance"] == "1.0"
    assert payload["tokens"] == {"TEST": "1.0"}


def test_resolve_token_tool(monkeypatch):
    _install(monkeypatch, FakeRPC())
    payload = _call("polygon_resolve_token", {"token": "test"})
    assert payload["address"] == TOKEN
    assert payload["symbol"] == "TEST"

    payload = _call("polygon_resolve_token", {"token": "MISSING"})
    assert payload["success"] is False
    assert payload["code"] == "INVALID_PARAMETERS"
