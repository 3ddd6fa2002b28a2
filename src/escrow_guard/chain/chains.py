"""Chain definitions for supported EVM networks."""

from __future__ import annotations

import os
from dataclasses import dataclass

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class Chain:
    """An EVM-compatible blockchain network."""

    name: str
    display_name: str
    chain_id: int
    rpc_url: str
    native_symbol: str
    explorer_url: str


CHAINS: dict[str, Chain] = {
    "base_sepolia": Chain(
        name="base_sepolia",
        display_name="Base Sepolia",
        chain_id=84532,
        rpc_url=os.environ.get("BASE_RPC_URL", "https://sepolia.base.org"),
        native_symbol="ETH",
        explorer_url="https://sepolia.basescan.org",
    ),
    "base": Chain(
        name="base",
        display_name="Base",
        chain_id=8453,
        rpc_url="https://mainnet.base.org",
        native_symbol="ETH",
        explorer_url="https://basescan.org",
    ),
    "ethereum": Chain(
        name="ethereum",
        display_name="Ethereum",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        native_symbol="ETH",
        explorer_url="https://etherscan.io",
    ),
}


def get_chain(name: str) -> Chain:
    """Get a chain by name. Raises ``KeyError`` if not found."""
    if name not in CHAINS:
        raise KeyError(
            f"Unknown chain '{name}'. Available: {list_chain_names()}"
        )
    return CHAINS[name]


def list_chain_names() -> list[str]:
    """Return the names of all supported chains."""
    return list(CHAINS.keys())
