"""
Transaction simulation and analysis for Polygon.

Implements:
- Speculative execution (eth_call) with gas pre-fill, 20% gas buffer and fee data
- ERC-20 transfer detection from call data
- Contract-creation address prediction
- Settled transaction analysis (receipt-aware, pending-tolerant)
- Historical token balance deltas from Transfer logs over a block range
- Standalone gas estimation

simulate_transaction never raises for chain-side failures: anything that
goes wrong after input validation is reported as a failed SimulationResult.
Optional enrichment steps (metadata lookups, per-token scans, nonce lookup)
degrade their own field or entry and never abort the operation.
"""

from __future__ import annotations

import asyncio
import dataclasses
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import rlp
from eth_abi import decode
from eth_utils import keccak
from web3 import Web3

from polygon_errors import (
    GasEstimationError,
    InvalidParameterError,
    TransactionAnalysisError,
    parse_block_tag,
    validate_address,
    validate_transaction_hash,
)
from polygon_logging import get_logger
from polygon_rpc import (
    CallRevertedError,
    decode_revert_reason,
    format_ether,
    format_gwei,
    format_units,
    to_int,
)

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_GAS_LIMIT = 300_000
GAS_BUFFER_PERCENT = 120
FALLBACK_GAS_PRICE_WEI = 50_000_000_000  # 50 gwei
DEFAULT_TOKEN_DECIMALS = 18
UNKNOWN_SYMBOL = "Unknown"

ERC20_TRANSFER_SELECTOR = "0xa9059cbb"  # transfer(address,uint256)

BYTECODE_DISPLAY_CHARS = 64
# 0x + 42 hex chars, where solc appends its CBOR metadata hash
CONSTRUCTOR_ARGS_TAIL_CHARS = 43

REVERT_PREFIX = "Transaction would revert: "
PENDING = "Pending"

_HEX_DATA_RE = re.compile(r"^0x([0-9a-fA-F]{2})*$")


def apply_gas_buffer(estimate: int) -> int:
    """Add the 20% safety margin, rounding down."""
    return int(estimate) * GAS_BUFFER_PERCENT // 100


def gas_cost_breakdown(wei: int) -> dict[str, str]:
    return {"wei": str(wei), "gwei": format_gwei(wei), "ether": format_ether(wei)}


def compute_create_address(sender: str, nonce: int) -> str:
    """Address of a contract deployed by ``sender`` at ``nonce`` (keccak256(rlp([sender, nonce])))."""
    sender_bytes = bytes.fromhex(sender[2:] if sender.startswith("0x") else sender)
    return Web3.to_checksum_address(keccak(rlp.encode([sender_bytes, int(nonce)]))[12:])


def extract_constructor_args(bytecode: str | None) -> dict[str, str] | list:
    """Best-effort constructor-argument tail; decoding needs the ABI."""
    if not bytecode or len(bytecode) <= 2:
        return []
    return {
        "raw": bytecode[-CONSTRUCTOR_ARGS_TAIL_CHARS:],
        "decoded": "Constructor arguments detection requires ABI",
    }


# ---------------------------------------------------------------------------
# Call-data decoders
# ---------------------------------------------------------------------------


def _decode_erc20_transfer(args: bytes) -> tuple[str, int]:
    recipient, amount = decode(["address", "uint256"], args)
    return Web3.to_checksum_address(recipient), int(amount)


# selector -> (token standard, decoder returning (recipient, raw amount))
CALL_DECODERS: dict[str, tuple[str, Callable[[bytes], tuple[str, int]]]] = {
    ERC20_TRANSFER_SELECTOR: ("ERC20", _decode_erc20_transfer),
}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


def _optional_int(tx: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = tx.get(key)
        if value is None or value == "":
            continue
        try:
            parsed = to_int(value)
        except (TypeError, ValueError) as exc:
            raise InvalidParameterError(
                f"Invalid {key}: {value}. Must be an integer.", {"paramName": key, key: value}
            ) from exc
        if parsed < 0:
            raise InvalidParameterError(
                f"Invalid {key}: {value}. Cannot be negative.", {"paramName": key, key: value}
            )
        return parsed
    return None


@dataclass
class TransactionRequest:
    """Candidate transaction. Amounts are integers in wei / gas units."""

    from_address: str | None = None
    to: str | None = None
    value: int | None = None
    data: str | None = None
    gas_limit: int | None = None
    gas_price: int | None = None
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None

    @classmethod
    def from_dict(cls, tx: dict[str, Any]) -> TransactionRequest:
        if not isinstance(tx, dict):
            raise InvalidParameterError(
                "Invalid transaction. Expected an object.", {"transaction": tx}
            )
        data = tx.get("data") or None
        if data is not None and (not isinstance(data, str) or not _HEX_DATA_RE.match(data)):
            raise InvalidParameterError(
                "Invalid data. Must be 0x-prefixed hex bytes.", {"paramName": "data", "data": data}
            )
        return cls(
            from_address=validate_address(tx["from"], "from") if tx.get("from") else None,
            to=validate_address(tx["to"], "to") if tx.get("to") else None,
            value=_optional_int(tx, "value"),
            data=data,
            gas_limit=_optional_int(tx, "gasLimit", "gas"),
            gas_price=_optional_int(tx, "gasPrice"),
            max_fee_per_gas=_optional_int(tx, "maxFeePerGas"),
            max_priority_fee_per_gas=_optional_int(tx, "maxPriorityFeePerGas"),
        )

    def has_fee_fields(self) -> bool:
        return any(
            fee is not None
            for fee in (self.gas_price, self.max_fee_per_gas, self.max_priority_fee_per_gas)
        )

    def copy(self) -> TransactionRequest:
        return dataclasses.replace(self)

    def to_rpc_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.from_address:
            params["from"] = self.from_address
        if self.to:
            params["to"] = self.to
        if self.value is not None:
            params["value"] = self.value
        if self.data:
            params["data"] = self.data
        if self.gas_limit is not None:
            params["gas"] = self.gas_limit
        if self.gas_price is not None:
            params["gasPrice"] = self.gas_price
        if self.max_fee_per_gas is not None:
            params["maxFeePerGas"] = self.max_fee_per_gas
        if self.max_priority_fee_per_gas is not None:
            params["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
        return params

    def to_dict(self) -> dict[str, Any]:
        fields = {
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "data": self.data,
            "gasLimit": self.gas_limit,
            "gasPrice": self.gas_price,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }
        return {
            key: str(value) if isinstance(value, int) else value
            for key, value in fields.items()
            if value is not None
        }


@dataclass
class TokenTransfer:
    token: str
    symbol: str
    from_address: str | None
    to: str
    amount: str
    raw_amount: str
    type: str = "ERC20"

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "symbol": self.symbol,
            "from": self.from_address,
            "to": self.to,
            "amount": self.amount,
            "rawAmount": self.raw_amount,
            "type": self.type,
        }


@dataclass
class ContractInteraction:
    type: str
    bytecode: str
    estimated_address: str | None
    constructor_args: Any
    address_derivation: str = "create"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "bytecode": self.bytecode,
            "estimatedAddress": self.estimated_address,
            "addressDerivation": self.address_derivation,
            "constructorArgs": self.constructor_args,
        }


@dataclass
class SimulationResult:
    success: bool = True
    gas_used: int = 0
    gas_limit: int | None = None
    gas_cost_wei: int = 0
    logs: list[dict[str, Any]] = field(default_factory=list)
    token_transfers: list[TokenTransfer] = field(default_factory=list)
    contract_interactions: list[ContractInteraction] = field(default_factory=list)
    error_message: str | None = None
    # Reserved: not populated until state diffs are available from the node.
    state_changes: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def failed(cls, message: str) -> SimulationResult:
        return cls(success=False, error_message=message)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "gasUsed": str(self.gas_used),
            "gasCost": gas_cost_breakdown(self.gas_cost_wei),
            "logs": [dict(log) for log in self.logs],
            "tokenTransfers": [t.to_dict() for t in self.token_transfers],
            "contractInteractions": [c.to_dict() for c in self.contract_interactions],
            "errorMessage": self.error_message,
            "stateChanges": [dict(change) for change in self.state_changes],
        }
        if self.gas_limit is not None:
            result["gasLimit"] = str(self.gas_limit)
        return result


@dataclass
class BalanceChange:
    token: str
    symbol: str
    change: int
    decimals: int
    from_block: int | str
    to_block: int | str
    outgoing: int
    incoming: int

    @property
    def change_type(self) -> str:
        return "increase" if self.change > 0 else "decrease"

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "symbol": self.symbol,
            "change": format_units(self.change, self.decimals),
            "rawChange": str(self.change),
            "changeType": self.change_type,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "events": {"outgoing": self.outgoing, "incoming": self.incoming},
        }


@dataclass
class BalanceChangeReport:
    address: str
    from_block: int | str
    to_block: int | str
    changes: list[BalanceChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "changes": [c.to_dict() for c in self.changes],
        }


# ---------------------------------------------------------------------------
# Result-or-error helpers
# ---------------------------------------------------------------------------


@dataclass
class _Outcome:
    value: Any = None
    error: Exception | None = None


async def _capture(awaitable: Awaitable[Any]) -> _Outcome:
    """Await and return the value or the raised Exception (cancellation propagates)."""
    try:
        return _Outcome(value=await awaitable)
    except Exception as exc:  # noqa: BLE001
        return _Outcome(error=exc)


async def _gather_all(*awaitables: Awaitable[Any]) -> list[Any]:
    """
    Run awaitables concurrently, wait for every one of them, then re-raise
    the first failure in argument order.
    """
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    for item in results:
        if isinstance(item, BaseException):
            raise item
    return list(results)


def describe_call_failure(exc: Exception) -> str:
    message = str(exc) or type(exc).__name__
    data = getattr(exc, "data", None)
    looks_like_revert = isinstance(exc, CallRevertedError) or "revert" in message.lower()
    if data is not None and "revert" in str(data).lower():
        looks_like_revert = True
    if not looks_like_revert:
        return message
    reason = decode_revert_reason(data)
    return f"{REVERT_PREFIX}{reason or message}"


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------


class TransactionSimulator:
    """
    Simulates candidate transactions and analyses settled ones.

    rpc: chain client (see polygon_rpc.PolygonRPC)
    tokens: symbol -> address mapping scanned by get_token_balance_changes
    signer: optional context with is_connected(network) / get_address(network)
    """

    def __init__(self, rpc: Any, tokens: Any, signer: Any = None, network: str = "mainnet") -> None:
        self.rpc = rpc
        self.tokens = tokens
        self.signer = signer
        self.network = network

    @classmethod
    def from_config(cls, cfg: Any, rpc: Any = None) -> TransactionSimulator:
        return cls(rpc or cfg.make_rpc(), cfg.tokens, cfg.signer, cfg.network)

    # -- helpers -------------------------------------------------------------

    def _prepare(self, transaction: TransactionRequest | dict[str, Any]) -> TransactionRequest:
        if isinstance(transaction, TransactionRequest):
            tx = transaction.copy()
        else:
            tx = TransactionRequest.from_dict(transaction)
        if not tx.from_address and self.signer is not None and self.signer.is_connected(self.network):
            tx.from_address = self.signer.get_address(self.network)
        return tx

    async def _prefill_gas_limit(self, tx: TransactionRequest) -> int:
        if tx.gas_limit is not None:
            return tx.gas_limit
        try:
            estimate = await self.rpc.estimate_gas(tx.to_rpc_params())
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "gas_estimation_failed", error=str(exc), fallback_gas_limit=DEFAULT_GAS_LIMIT
            )
            return DEFAULT_GAS_LIMIT
        return apply_gas_buffer(estimate)

    async def _prefill_fee_data(self, tx: TransactionRequest) -> dict[str, Any] | None:
        if tx.has_fee_fields():
            return None
        return await self.rpc.get_fee_data()

    async def _speculative_call(self, params: dict[str, Any], block_number: int) -> str | None:
        """Return None on success, else the error message to report."""
        try:
            await self.rpc.call(params, block_number)
        except Exception as exc:  # noqa: BLE001
            return describe_call_failure(exc)
        return None

    async def _estimate_gas_used(self, params: dict[str, Any]) -> _Outcome:
        return await _capture(self.rpc.estimate_gas(params))

    async def _token_metadata(self, token_address: str) -> tuple[str, int]:
        try:
            token = self.rpc.token(token_address)
            symbol, decimals = await asyncio.gather(
                token.symbol(), token.decimals(), return_exceptions=True
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("token_metadata_lookup_failed", token=token_address, error=str(exc))
            return UNKNOWN_SYMBOL, DEFAULT_TOKEN_DECIMALS
        if isinstance(symbol, Exception):
            logger.warning(
                "token_metadata_lookup_failed", token=token_address, field="symbol", error=str(symbol)
            )
            symbol = UNKNOWN_SYMBOL
        if isinstance(decimals, Exception):
            logger.warning(
                "token_metadata_lookup_failed",
                token=token_address,
                field="decimals",
                error=str(decimals),
            )
            decimals = DEFAULT_TOKEN_DECIMALS
        return str(symbol), int(decimals)

    async def _contract_creation(self, tx: TransactionRequest) -> ContractInteraction | None:
        if tx.to or not tx.data:
            return None
        estimated_address = None
        if tx.from_address:
            try:
                nonce = await self.rpc.get_transaction_count(tx.from_address)
                estimated_address = compute_create_address(tx.from_address, nonce)
            except Exception as exc:  # noqa: BLE001
                logger.warning("creation_address_unavailable", sender=tx.from_address, error=str(exc))
        bytecode = tx.data
        if len(bytecode) > BYTECODE_DISPLAY_CHARS:
            bytecode = bytecode[:BYTECODE_DISPLAY_CHARS] + "..."
        return ContractInteraction(
            type="creation",
            bytecode=bytecode,
            estimated_address=estimated_address,
            constructor_args=extract_constructor_args(tx.data),
        )

    # -- operations ----------------------------------------------------------

    async def simulate_transaction(
        self, transaction: TransactionRequest | dict[str, Any]
    ) -> SimulationResult:
        """
        Speculatively execute ``transaction`` against the current block.

        Input validation errors are raised; everything after that is folded
        into the returned result.
        """
        tx = self._prepare(transaction)
        outcome = await _capture(self._simulate(tx))
        if outcome.error is not None:
            logger.error("simulation_failed", error=str(outcome.error), to=tx.to)
            return SimulationResult.failed(str(outcome.error) or type(outcome.error).__name__)
        return outcome.value

    async def _simulate(self, tx: TransactionRequest) -> SimulationResult:
        gas_limit, fee_data, block_number = await _gather_all(
            self._prefill_gas_limit(tx),
            self._prefill_fee_data(tx),
            self.rpc.get_block_number(),
        )
        tx.gas_limit = gas_limit
        if fee_data is not None:
            if fee_data.get("maxFeePerGas"):
                tx.max_fee_per_gas = int(fee_data["maxFeePerGas"])
                if fee_data.get("maxPriorityFeePerGas") is not None:
                    tx.max_priority_fee_per_gas = int(fee_data["maxPriorityFeePerGas"])
            elif fee_data.get("gasPrice") is not None:
                tx.gas_price = int(fee_data["gasPrice"])

        result = SimulationResult(gas_limit=tx.gas_limit)
        params = tx.to_rpc_params()

        call_error, gas_estimate, _, creation = await _gather_all(
            self._speculative_call(params, block_number),
            self._estimate_gas_used(params),
            self.detect_token_transfers(tx, result),
            self._contract_creation(tx),
        )

        if call_error is not None:
            result.success = False
            result.error_message = call_error

        if gas_estimate.error is None:
            result.gas_used = int(gas_estimate.value)
        else:
            result.gas_used = tx.gas_limit or 0
            if not result.error_message:
                result.error_message = f"Gas estimation failed: {gas_estimate.error}"

        if creation is not None:
            result.contract_interactions.append(creation)

        effective_gas_price = tx.gas_price or tx.max_fee_per_gas or FALLBACK_GAS_PRICE_WEI
        result.gas_cost_wei = result.gas_used * effective_gas_price

        logger.info(
            "transaction_simulated",
            success=result.success,
            gas_used=result.gas_used,
            gas_limit=tx.gas_limit,
            block_number=block_number,
            token_transfers=len(result.token_transfers),
        )
        return result

    async def detect_token_transfers(
        self, transaction: TransactionRequest, result: SimulationResult
    ) -> SimulationResult:
        """
        Append recognised token transfers encoded in the call data.

        Only ERC-20 transfer(address,uint256) is recognised; other call
        shapes (transferFrom, multicall batches, ...) produce no entry.
        """
        if not transaction.to or not transaction.data:
            return result
        entry = CALL_DECODERS.get(transaction.data[:10].lower())
        if entry is None:
            return result
        token_type, decoder = entry

        try:
            recipient, amount = decoder(bytes.fromhex(transaction.data[10:]))
        except Exception as exc:  # noqa: BLE001
            logger.warning("token_transfer_decode_failed", token=transaction.to, error=str(exc))
            return result

        symbol, decimals = await self._token_metadata(transaction.to)
        result.token_transfers.append(
            TokenTransfer(
                token=transaction.to,
                symbol=symbol,
                from_address=transaction.from_address,
                to=recipient,
                amount=format_units(amount, decimals),
                raw_amount=str(amount),
                type=token_type,
            )
        )
        return result

    async def analyze_transaction(self, tx_hash: str) -> dict[str, Any]:
        tx_hash = validate_transaction_hash(tx_hash)
        try:
            tx, receipt = await _gather_all(
                self.rpc.get_transaction(tx_hash),
                self.rpc.get_transaction_receipt(tx_hash),
            )
        except Exception as exc:  # noqa: BLE001
            raise TransactionAnalysisError(
                f"Analysis failed: {exc}", {"txHash": tx_hash, "cause": str(exc)}
            ) from exc
        if tx is None:
            raise TransactionAnalysisError(
                f"Analysis failed: Transaction not found: {tx_hash}", {"txHash": tx_hash}
            )

        value = int(tx.get("value") or 0)
        gas_price = int(
            tx.get("gasPrice")
            or (receipt or {}).get("effectiveGasPrice")
            or tx.get("maxFeePerGas")
            or 0
        )

        analysis: dict[str, Any] = {
            "hash": tx_hash,
            "from": tx.get("from"),
            "to": tx.get("to") or "Contract Creation",
            "value": {"wei": str(value), "ether": format_ether(value)},
            "gasUsed": PENDING,
            "gasPrice": {"wei": str(gas_price), "gwei": format_gwei(gas_price)},
            "status": PENDING,
            "blockNumber": PENDING,
            "timestamp": PENDING,
            "logs": 0,
        }
        if receipt is None:
            return analysis

        gas_used = int(receipt.get("gasUsed") or 0)
        analysis["gasUsed"] = str(gas_used)
        analysis["status"] = "Success" if receipt.get("status") == 1 else "Failed"
        analysis["blockNumber"] = receipt.get("blockNumber")
        analysis["logs"] = len(receipt.get("logs") or [])
        analysis["timestamp"] = await self._block_timestamp(receipt.get("blockNumber"))

        effective_price = int(receipt.get("effectiveGasPrice") or gas_price)
        analysis["gasCost"] = gas_cost_breakdown(gas_used * effective_price)
        return analysis

    async def _block_timestamp(self, block_number: int | None) -> str:
        if block_number is None:
            return "Unknown"
        try:
            ts = await self.rpc.get_block_timestamp(block_number)
        except Exception as exc:  # noqa: BLE001
            logger.warning("block_timestamp_unavailable", block_number=block_number, error=str(exc))
            return "Unknown"
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()

    async def get_token_balance_changes(
        self,
        address: str,
        from_block: int | str | None = None,
        to_block: int | str | None = None,
    ) -> BalanceChangeReport:
        """
        Net token movement for ``address`` across a block range, per registry token.

        Tokens with a zero net change are omitted, and so are tokens whose
        scan fails.
        """
        address = validate_address(address)
        start = parse_block_tag(from_block, "fromBlock")
        end = parse_block_tag(to_block, "toBlock")

        scans = await asyncio.gather(
            *(
                self._scan_token(symbol, token_address, address, start, end)
                for symbol, token_address in self.tokens.items()
            )
        )
        return BalanceChangeReport(
            address=address,
            from_block=start,
            to_block=end,
            changes=[change for change in scans if change is not None],
        )

    async def _scan_token(
        self,
        symbol: str,
        token_address: str,
        address: str,
        from_block: int | str,
        to_block: int | str,
    ) -> BalanceChange | None:
        try:
            token = self.rpc.token(token_address)
            decimals, outgoing, incoming = await asyncio.gather(
                token.decimals(),
                token.transfer_events(
                    from_address=address, from_block=from_block, to_block=to_block
                ),
                token.transfer_events(to_address=address, from_block=from_block, to_block=to_block),
                return_exceptions=True,
            )
            for events in (outgoing, incoming):
                if isinstance(events, Exception):
                    raise events
            if isinstance(decimals, Exception):
                logger.warning(
                    "token_metadata_lookup_failed",
                    token=token_address,
                    field="decimals",
                    error=str(decimals),
                )
                decimals = DEFAULT_TOKEN_DECIMALS
        except Exception as exc:  # noqa: BLE001
            logger.warning("balance_change_scan_failed", symbol=symbol, token=token_address, error=str(exc))
            return None

        net = sum(event.value for event in incoming) - sum(event.value for event in outgoing)
        if net == 0:
            return None
        return BalanceChange(
            token=token_address,
            symbol=symbol,
            change=net,
            decimals=int(decimals),
            from_block=from_block,
            to_block=to_block,
            outgoing=len(outgoing),
            incoming=len(incoming),
        )

    async def estimate_gas(self, transaction: TransactionRequest | dict[str, Any]) -> dict[str, str]:
        tx = self._prepare(transaction)
        try:
            estimate = await self.rpc.estimate_gas(tx.to_rpc_params())
        except Exception as exc:  # noqa: BLE001
            raise GasEstimationError(
                f"Gas estimation failed: {exc}",
                {"transaction": tx.to_dict(), "cause": str(exc)},
            ) from exc
        gas_limit = apply_gas_buffer(estimate)
        return {
            "gasEstimate": str(estimate),
            "gasLimit": str(gas_limit),
            "recommendedGasLimit": str(gas_limit),
        }
