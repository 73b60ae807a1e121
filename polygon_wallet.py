"""
Polygon wallet context: configuration, token registry and signer identity.

Implements:
- PolygonConfig built from environment variables / .env
- Token registry (symbol -> address) with a symbol-or-address resolver
- Signer context exposing is_connected(network) / get_address(network)
- Native and registry-token balance listing
"""

from __future__ import annotations

import asyncio
import json
import os
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from polygon_errors import (
    InvalidParameterError,
    PolygonConfigError,
    WalletNotConnectedError,
    validate_address,
)
from polygon_logging import get_logger
from polygon_rpc import DEFAULT_RPC_TIMEOUT, PolygonRPC, format_ether, format_units

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

logger = get_logger(__name__)

PolygonNetwork = Literal["mainnet", "amoy"]

# ---------------------------------------------------------------------------
# Networks and default tokens
# ---------------------------------------------------------------------------

NETWORKS: dict[str, dict[str, Any]] = {
    "mainnet": {
        "name": "Polygon PoS Mainnet",
        "chain_id": 137,
        "rpc_url": "https://polygon-rpc.com",
        "native_symbol": "POL",
    },
    "amoy": {
        "name": "Polygon Amoy Testnet",
        "chain_id": 80002,
        "rpc_url": "https://rpc-amoy.polygon.technology",
        "native_symbol": "POL",
    },
}

DEFAULT_TOKEN_ADDRESSES: dict[str, dict[str, str]] = {
    "mainnet": {
        "WPOL": "0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270",
        "USDC": "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359",
        "USDC.e": "0x2791bca1f2de4661ed88a30c99a7a9449aa84174",
        "USDT": "0xc2132d05d31c914a87c6611c10748aeb04b58e8f",
        "DAI": "0x8f3cf7ad23cd3cadbd9735aff958023239c6a063",
        "WETH": "0x7ceb23fd6bc0add59e62ac25578270cff1b9f619",
    },
    # Testnet token deployments churn; configure them via POLYGON_TOKEN_ADDRESSES.
    "amoy": {},
}


# ---------------------------------------------------------------------------
# Token registry
# ---------------------------------------------------------------------------


class TokenRegistry:
    """Ordered symbol -> checksum address mapping."""

    def __init__(self, tokens: dict[str, str] | None = None) -> None:
        self._tokens: OrderedDict[str, str] = OrderedDict()
        for symbol, address in (tokens or {}).items():
            if not Web3.is_address(address):
                raise PolygonConfigError(
                    f"Invalid address for token {symbol}: {address}",
                    {"symbol": symbol, "address": address},
                )
            self._tokens[symbol] = Web3.to_checksum_address(address)

    def __iter__(self):
        return iter(self._tokens.items())

    def __len__(self) -> int:
        return len(self._tokens)

    def _lookup(self, symbol: str) -> str | None:
        if symbol in self._tokens:
            return self._tokens[symbol]
        upper = symbol.upper()
        for known, address in self._tokens.items():
            if known.upper() == upper:
                return address
        return None

    def items(self) -> list[tuple[str, str]]:
        return list(self._tokens.items())

    def symbol_for(self, address: str) -> str | None:
        for symbol, known in self._tokens.items():
            if known.lower() == address.lower():
                return symbol
        return None

    def resolve(self, token: str) -> str:
        """
        Resolve a token symbol or raw address to a checksum address.

        Raises InvalidParameterError when the value is neither a known symbol
        nor a well-formed address.
        """
        if not token or not isinstance(token, str):
            raise InvalidParameterError("token is required", {"paramName": "token"})
        token = token.strip()
        address = self._lookup(token)
        if address:
            return address
        if Web3.is_address(token):
            return Web3.to_checksum_address(token)
        raise InvalidParameterError(
            f"Unknown token: {token}. Use a known symbol ({', '.join(self._tokens)}) or an address.",
            {"token": token},
        )


# ---------------------------------------------------------------------------
# Signer context
# ---------------------------------------------------------------------------


class SignerContext:
    """
    Per-network signer identity.

    Holds addresses only; the private key never leaves eth_account.
    """

    def __init__(self, addresses: dict[str, str] | None = None) -> None:
        self._addresses = {
            network: Web3.to_checksum_address(address)
            for network, address in (addresses or {}).items()
        }

    @classmethod
    def from_private_key(cls, private_key: str, networks: list[str]) -> SignerContext:
        try:
            account = Account.from_key(private_key)
        except Exception as exc:  # noqa: BLE001
            raise PolygonConfigError("POLYGON_PRIVATE_KEY is not a valid private key.") from exc
        return cls({network: account.address for network in networks})

    def is_connected(self, network: str) -> bool:
        return network in self._addresses

    def get_address(self, network: str) -> str:
        if network not in self._addresses:
            raise WalletNotConnectedError(
                "Wallet not connected", {"network": network, "context": "SignerContext"}
            )
        return self._addresses[network]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class PolygonConfig:
    """
    Configuration for the Polygon MCP server.

    Values are sourced from environment variables or a .env file.

    - POLYGON_NETWORK: "mainnet" or "amoy" (defaults to "mainnet").
    - POLYGON_RPC_URL: JSON-RPC endpoint (defaults to the public endpoint of
      the selected network).
    - POLYGON_RPC_TIMEOUT: per-request timeout in seconds (default 30).
    - POLYGON_TOKEN_ADDRESSES: JSON object of symbol -> address, merged over
      the network's default tokens.
    - POLYGON_PRIVATE_KEY: hex private key for the signer (takes precedence).
    - POLYGON_ADDRESS: watch-only signer address used when no key is set.
    """

    network: PolygonNetwork
    rpc_url: str
    chain_id: int
    tokens: TokenRegistry
    signer: SignerContext = field(default_factory=SignerContext)
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT

    @classmethod
    def from_env(cls) -> PolygonConfig:
        raw_network = os.getenv("POLYGON_NETWORK", "mainnet").strip().lower()
        if raw_network not in NETWORKS:
            raise PolygonConfigError(
                f"Invalid POLYGON_NETWORK={raw_network!r}. Expected 'mainnet' or 'amoy'.",
                {"network": raw_network},
            )
        network: PolygonNetwork = "amoy" if raw_network == "amoy" else "mainnet"
        net = NETWORKS[network]

        rpc_url = os.getenv("POLYGON_RPC_URL") or net["rpc_url"]

        timeout_raw = os.getenv("POLYGON_RPC_TIMEOUT")
        rpc_timeout = DEFAULT_RPC_TIMEOUT
        if timeout_raw:
            try:
                rpc_timeout = float(timeout_raw)
            except ValueError as exc:
                raise PolygonConfigError(
                    f"Invalid POLYGON_RPC_TIMEOUT={timeout_raw!r}. Expected seconds.",
                    {"timeout": timeout_raw},
                ) from exc
            if rpc_timeout <= 0:
                raise PolygonConfigError(
                    "POLYGON_RPC_TIMEOUT must be greater than zero.", {"timeout": timeout_raw}
                )

        tokens = dict(DEFAULT_TOKEN_ADDRESSES[network])
        tokens_raw = os.getenv("POLYGON_TOKEN_ADDRESSES")
        if tokens_raw:
            try:
                overrides = json.loads(tokens_raw)
            except json.JSONDecodeError as exc:
                raise PolygonConfigError(
                    "POLYGON_TOKEN_ADDRESSES must be a JSON object of symbol -> address."
                ) from exc
            if not isinstance(overrides, dict):
                raise PolygonConfigError(
                    "POLYGON_TOKEN_ADDRESSES must be a JSON object of symbol -> address."
                )
            tokens.update({str(k): str(v) for k, v in overrides.items()})

        private_key = os.getenv("POLYGON_PRIVATE_KEY")
        watch_address = os.getenv("POLYGON_ADDRESS")
        if private_key:
            signer = SignerContext.from_private_key(private_key, [network])
        elif watch_address:
            signer = SignerContext(
                {network: validate_address(watch_address, "POLYGON_ADDRESS")}
            )
        else:
            signer = SignerContext()

        return cls(
            network=network,
            rpc_url=rpc_url,
            chain_id=net["chain_id"],
            tokens=TokenRegistry(tokens),
            signer=signer,
            rpc_timeout=rpc_timeout,
        )

    def make_rpc(self) -> PolygonRPC:
        return PolygonRPC(self.rpc_url, timeout=self.rpc_timeout)


# ---------------------------------------------------------------------------
# Wallet queries
# ---------------------------------------------------------------------------


def get_address(cfg: PolygonConfig) -> str:
    """Return the connected signer's address for the configured network."""
    return cfg.signer.get_address(cfg.network)


def resolve_token(cfg: PolygonConfig, token: str) -> dict[str, Any]:
    address = cfg.tokens.resolve(token)
    return {
        "token": token,
        "address": address,
        "symbol": cfg.tokens.symbol_for(address),
        "network": cfg.network,
    }


async def _token_balance(rpc: PolygonRPC, symbol: str, token_address: str, owner: str) -> str:
    token = rpc.token(token_address)
    balance, decimals = await asyncio.gather(
        token.balance_of(owner), token.decimals(), return_exceptions=True
    )
    if isinstance(balance, BaseException):
        logger.warning("token_balance_failed", symbol=symbol, token=token_address, error=str(balance))
        return "Error"
    if isinstance(decimals, BaseException):
        logger.warning(
            "token_metadata_lookup_failed",
            token=token_address,
            field="decimals",
            error=str(decimals),
        )
        decimals = 18
    return format_units(balance, decimals)


async def list_balances(
    cfg: PolygonConfig,
    rpc: PolygonRPC,
    address: str | None = None,
) -> dict[str, Any]:
    """
    Native balance plus the balance of every registry token.

    A token whose balance lookup fails is reported as "Error" rather than
    failing the whole listing.
    """
    if address:
        owner = validate_address(address)
    elif cfg.signer.is_connected(cfg.network):
        owner = cfg.signer.get_address(cfg.network)
    else:
        raise WalletNotConnectedError(
            "Wallet not connected and no address provided", {"context": "list_balances"}
        )

    symbols = [symbol for symbol, _ in cfg.tokens]
    native, *token_balances = await asyncio.gather(
        rpc.get_balance(owner),
        *(_token_balance(rpc, symbol, addr, owner) for symbol, addr in cfg.tokens),
    )
    return {
        "address": owner,
        "nativeBalance": format_ether(native),
        "nativeSymbol": NETWORKS[cfg.network]["native_symbol"],
        "tokens": dict(zip(symbols, token_balances)),
        "network": cfg.network,
    }
