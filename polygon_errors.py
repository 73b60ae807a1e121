"""
Error taxonomy and input validators for the Polygon MCP server.

Every error carries a stable ``code``, a human-readable ``message`` and a
``details`` dict holding the offending parameters, so the tool layer can
render a deterministic payload without parsing free text.
"""

from __future__ import annotations

import re
from typing import Any

from web3 import Web3


class ErrorCodes:
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    CONFIG_ERROR = "CONFIG_ERROR"

    WALLET_NOT_CONNECTED = "WALLET_NOT_CONNECTED"
    INVALID_ADDRESS = "INVALID_ADDRESS"

    RPC_ERROR = "RPC_ERROR"

    GAS_ESTIMATION_FAILED = "GAS_ESTIMATION_FAILED"
    TRANSACTION_ANALYSIS_FAILED = "TRANSACTION_ANALYSIS_FAILED"


class PolygonMCPError(Exception):
    """Base error for the Polygon MCP server."""

    default_code = ErrorCodes.UNKNOWN_ERROR

    def __init__(
        self,
        message: str = "An unknown error occurred",
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class PolygonConfigError(PolygonMCPError):
    """Configuration error (bad environment values, missing key material)."""

    default_code = ErrorCodes.CONFIG_ERROR


class InvalidAddressError(PolygonMCPError):
    default_code = ErrorCodes.INVALID_ADDRESS


class InvalidParameterError(PolygonMCPError):
    default_code = ErrorCodes.INVALID_PARAMETERS


class WalletNotConnectedError(PolygonMCPError):
    default_code = ErrorCodes.WALLET_NOT_CONNECTED


class RPCError(PolygonMCPError):
    default_code = ErrorCodes.RPC_ERROR


class GasEstimationError(PolygonMCPError):
    default_code = ErrorCodes.GAS_ESTIMATION_FAILED


class TransactionAnalysisError(PolygonMCPError):
    default_code = ErrorCodes.TRANSACTION_ANALYSIS_FAILED


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------

_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")

BLOCK_TAGS = ("latest", "earliest", "pending", "safe", "finalized")


def validate_address(address: Any, param_name: str = "address") -> str:
    """Return the checksummed form of ``address`` or raise InvalidAddressError."""
    if not address:
        raise InvalidAddressError(f"{param_name} is required", {"paramName": param_name})
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddressError(
            f"Invalid Ethereum address: {address}",
            {"paramName": param_name, "address": address},
        )
    return Web3.to_checksum_address(address)


def validate_transaction_hash(tx_hash: Any, param_name: str = "txHash") -> str:
    if not tx_hash:
        raise InvalidParameterError(f"{param_name} is required", {"paramName": param_name})
    tx_hash_str = str(tx_hash).strip()
    if not _TX_HASH_RE.match(tx_hash_str):
        raise InvalidParameterError(
            f"Invalid {param_name}: {tx_hash}. Must be 0x followed by 64 hexadecimal characters.",
            {"paramName": param_name, param_name: tx_hash},
        )
    return tx_hash_str


def parse_block_tag(value: Any, param_name: str = "block") -> int | str:
    """
    Normalise a block bound.

    Empty values become ``"latest"``; named tags pass through; anything else
    must parse as a non-negative integer (decimal or 0x-hex).
    """
    if value is None or value == "":
        return "latest"
    if isinstance(value, bool):
        raise InvalidParameterError(
            f"Invalid {param_name}: {value}", {"paramName": param_name, param_name: value}
        )
    if isinstance(value, int):
        block = value
    else:
        text = str(value).strip()
        if text.lower() in BLOCK_TAGS:
            return text.lower()
        try:
            block = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError as exc:
            raise InvalidParameterError(
                f"Invalid {param_name}: {value}. Must be a block number or tag.",
                {"paramName": param_name, param_name: value},
            ) from exc
    if block < 0:
        raise InvalidParameterError(
            f"Invalid {param_name}: {value}. Cannot be negative.",
            {"paramName": param_name, param_name: value},
        )
    return block
