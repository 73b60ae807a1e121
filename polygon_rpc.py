"""
Polygon JSON-RPC client built on web3's AsyncWeb3.

Implements:
- Gas estimation, fee data, eth_call, block/transaction/receipt lookups
- Transfer-event log queries for ERC-20 tokens
- Revert-data decoding (Error(string) and Panic(uint256))
- Exact integer unit formatting (wei -> gwei/ether/token units)

Every request is bounded by the client timeout; cancelling the awaiting
task cancels the request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable

from eth_abi import decode
from eth_utils import keccak
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from polygon_errors import RPCError
from polygon_logging import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RPC_TIMEOUT = 30.0
DEFAULT_PRIORITY_FEE_WEI = 1_000_000_000  # 1 gwei

TRANSFER_EVENT_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()

ERROR_STRING_SELECTOR = "0x08c379a0"
PANIC_SELECTOR = "0x4e487b71"

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]


# ---------------------------------------------------------------------------
# Unit formatting
# ---------------------------------------------------------------------------


def format_units(value: int, decimals: int = 18) -> str:
    """
    Format an integer amount scaled by ``decimals``.

    Always keeps at least one fractional digit and strips trailing zeros,
    so 500 * 10**18 with 18 decimals renders as "500.0".
    """
    value = int(value)
    decimals = int(decimals)
    whole, frac = divmod(abs(value), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals > 0 else ""
    text = f"{whole}.{frac_str or '0'}"
    return f"-{text}" if value < 0 else text


def format_gwei(value: int) -> str:
    return format_units(value, 9)


def format_ether(value: int) -> str:
    return format_units(value, 18)


def to_int(value: Any) -> int:
    """Accept ints, decimal strings and 0x-hex strings."""
    if isinstance(value, bool):
        raise ValueError(f"Expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)


def to_hex(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, (bytes, bytearray)):
        return "0x" + bytes(data).hex()
    text = str(data)
    return text if text.startswith("0x") else "0x" + text


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


# ---------------------------------------------------------------------------
# Revert decoding
# ---------------------------------------------------------------------------


class CallRevertedError(Exception):
    """eth_call reverted; ``data`` holds the raw revert payload when the node returned one."""

    def __init__(self, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.data = data


def decode_revert_reason(data: Any) -> str | None:
    """Decode Error(string) / Panic(uint256) revert data, or None."""
    if not data or not isinstance(data, (str, bytes, bytearray)):
        return None
    payload = to_hex(data)
    try:
        if payload.startswith(ERROR_STRING_SELECTOR):
            (reason,) = decode(["string"], bytes.fromhex(payload[10:]))
            return reason
        if payload.startswith(PANIC_SELECTOR):
            (panic_code,) = decode(["uint256"], bytes.fromhex(payload[10:]))
            return f"panic code {hex(panic_code)}"
    except Exception as exc:  # noqa: BLE001
        logger.debug("revert_decode_failed", data=payload, error=str(exc))
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class TransferEvent:
    token: str
    from_address: str
    to_address: str
    value: int
    block_number: int | None
    transaction_hash: str | None


class PolygonRPC:
    """
    Async chain client; one instance per RPC endpoint.

    Use as ``async with`` (or call ``close()``) so the provider's HTTP
    session is released.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout})
        )

    async def __aenter__(self) -> PolygonRPC:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the provider's cached HTTP session."""
        await self.w3.provider.disconnect()

    async def request(self, awaitable: Awaitable[Any], method: str) -> Any:
        """Await one RPC call, bounded by the client timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise RPCError(
                f"RPC call {method} timed out after {self.timeout}s",
                {"method": method, "rpcUrl": self.rpc_url},
            ) from exc

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return int(await self.request(self.w3.eth.estimate_gas(tx), "eth_estimateGas"))

    async def get_fee_data(self) -> dict[str, int | None]:
        gas_price, block = await asyncio.gather(
            self.request(self.w3.eth.gas_price, "eth_gasPrice"),
            self.request(self.w3.eth.get_block("latest"), "eth_getBlockByNumber"),
        )
        fee_data: dict[str, int | None] = {
            "gasPrice": int(gas_price),
            "maxFeePerGas": None,
            "maxPriorityFeePerGas": None,
        }
        base_fee = block.get("baseFeePerGas")
        if base_fee is not None:
            try:
                priority_fee = int(
                    await self.request(self.w3.eth.max_priority_fee, "eth_maxPriorityFeePerGas")
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("priority_fee_lookup_failed", error=str(exc))
                priority_fee = DEFAULT_PRIORITY_FEE_WEI
            fee_data["maxPriorityFeePerGas"] = priority_fee
            fee_data["maxFeePerGas"] = int(base_fee) * 2 + priority_fee
        return fee_data

    async def call(self, tx: dict[str, Any], block_identifier: int | str = "latest") -> bytes:
        try:
            return await self.request(self.w3.eth.call(tx, block_identifier), "eth_call")
        except ContractLogicError as exc:
            raise CallRevertedError(str(exc), data=getattr(exc, "data", None)) from exc

    async def get_block_number(self) -> int:
        return int(await self.request(self.w3.eth.block_number, "eth_blockNumber"))

    async def get_balance(self, address: str) -> int:
        return int(await self.request(self.w3.eth.get_balance(address), "eth_getBalance"))

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        try:
            tx = await self.request(self.w3.eth.get_transaction(tx_hash), "eth_getTransactionByHash")
        except TransactionNotFound:
            return None
        return dict(tx) if tx is not None else None

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        try:
            receipt = await self.request(
                self.w3.eth.get_transaction_receipt(tx_hash), "eth_getTransactionReceipt"
            )
        except TransactionNotFound:
            return None
        return dict(receipt) if receipt is not None else None

    async def get_transaction_count(self, address: str) -> int:
        return int(
            await self.request(self.w3.eth.get_transaction_count(address), "eth_getTransactionCount")
        )

    async def get_block_timestamp(self, block_number: int) -> int:
        block = await self.request(self.w3.eth.get_block(block_number), "eth_getBlockByNumber")
        return int(block["timestamp"])

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        logs = await self.request(self.w3.eth.get_logs(filter_params), "eth_getLogs")
        return [dict(log) for log in logs]

    def token(self, address: str) -> ERC20Token:
        return ERC20Token(self, address)


class ERC20Token:
    """Minimal ERC-20 binding: decimals, symbol, balanceOf and Transfer logs."""

    def __init__(self, rpc: PolygonRPC, address: str) -> None:
        self.rpc = rpc
        self.address = Web3.to_checksum_address(address)
        self.contract = rpc.w3.eth.contract(address=self.address, abi=ERC20_ABI)

    async def decimals(self) -> int:
        return int(await self.rpc.request(self.contract.functions.decimals().call(), "decimals()"))

    async def symbol(self) -> str:
        return str(await self.rpc.request(self.contract.functions.symbol().call(), "symbol()"))

    async def balance_of(self, owner: str) -> int:
        owner = Web3.to_checksum_address(owner)
        return int(
            await self.rpc.request(self.contract.functions.balanceOf(owner).call(), "balanceOf()")
        )

    async def transfer_events(
        self,
        from_address: str | None = None,
        to_address: str | None = None,
        from_block: int | str = "latest",
        to_block: int | str = "latest",
    ) -> list[TransferEvent]:
        """Query Transfer logs filtered by indexed sender and/or recipient."""
        topics: list[Any] = [
            TRANSFER_EVENT_TOPIC,
            address_topic(from_address) if from_address else None,
            address_topic(to_address) if to_address else None,
        ]
        while topics and topics[-1] is None:
            topics.pop()
        logs = await self.rpc.get_logs(
            {
                "address": self.address,
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": topics,
            }
        )
        return [decode_transfer_log(self.address, log) for log in logs]


def decode_transfer_log(token: str, log: dict[str, Any]) -> TransferEvent:
    topics = [to_hex(t) for t in log.get("topics", [])]
    data = to_hex(log.get("data")) or "0x"
    tx_hash = log.get("transactionHash")
    return TransferEvent(
        token=token,
        from_address=Web3.to_checksum_address("0x" + topics[1][-40:]),
        to_address=Web3.to_checksum_address("0x" + topics[2][-40:]),
        value=int(data, 16) if data != "0x" else 0,
        block_number=log.get("blockNumber"),
        transaction_hash=to_hex(tx_hash) if tx_hash is not None else None,
    )
