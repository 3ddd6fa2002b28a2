"""Registry of ERC-20 tokens accepted by the escrow contract on Base Sepolia."""

from __future__ import annotations

from dataclasses import dataclass

from escrow_guard.chain.chains import ZERO_ADDRESS


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int
    name: str


UNKNOWN_TOKEN = TokenInfo(
    address=ZERO_ADDRESS,
    symbol="UNKNOWN",
    decimals=18,
    name="Unknown Token",
)

_BASE_SEPOLIA_TOKENS: tuple[TokenInfo, ...] = (
    TokenInfo(ZERO_ADDRESS, "ETH", 18, "Ethereum"),
    TokenInfo("0x036CbD53842c5426634e7929541eC2318f3dCF7e", "USDC", 6, "USD Coin"),
    TokenInfo("0x4200000000000000000000000000000000000006", "WETH", 18, "Wrapped Ethereum"),
)


class TokenRegistry:
    """Case-insensitive lookup of known tokens by contract address."""

    def __init__(self, tokens: tuple[TokenInfo, ...] = _BASE_SEPOLIA_TOKENS) -> None:
        self._tokens = {t.address.lower(): t for t in tokens}

    def get_token_info(self, address: str) -> TokenInfo:
        """Return the token's info, or :data:`UNKNOWN_TOKEN` if unlisted."""
        return self._tokens.get((address or "").lower(), UNKNOWN_TOKEN)

    def is_known(self, address: str) -> bool:
        return (address or "").lower() in self._tokens

    def validate_token(self, address: str) -> bool:
        """Native ETH (the zero address) is always valid."""
        if (address or "").lower() == ZERO_ADDRESS:
            return True
        return self.is_known(address)

    def symbol(self, address: str) -> str:
        return self.get_token_info(address).symbol

    def decimals(self, address: str) -> int:
        return self.get_token_info(address).decimals

    def list_tokens(self) -> list[TokenInfo]:
        return list(self._tokens.values())
