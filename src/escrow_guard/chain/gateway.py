"""Signed writes and read-only views against a bound contract.

State-mutating calls are submitted exactly once. Callers decide whether a
failed view is worth retrying; the gateway never retries anything itself.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from web3 import AsyncWeb3, Web3
from web3.logs import DISCARD

from escrow_guard.chain.abi import ERC20_APPROVE_ABI
from escrow_guard.chain.chains import ZERO_ADDRESS
from escrow_guard.chain.connector import ChainBinding, ChainConnector
from escrow_guard.chain.tokens import TokenRegistry
from escrow_guard.errors import ContractCallError, ValidationError
from escrow_guard.storage.models import DisputeCase, EscrowRecord, Milestone

logger = logging.getLogger("escrow_guard.chain.gateway")


@dataclass
class TransactionHandle:
    """A submitted transaction. ``wait`` blocks until it is mined."""

    method: str
    hash: str
    web3: AsyncWeb3 = field(repr=False)

    async def wait(self, timeout: float = 120.0) -> Any:
        """Return the receipt; a reverted transaction raises ``ContractCallError``."""
        try:
            receipt = await self.web3.eth.wait_for_transaction_receipt(self.hash, timeout=timeout)
        except Exception as exc:
            logger.error(f"No receipt for {self.method} tx {self.hash}: {exc}")
            raise ContractCallError(self.method, f"no receipt for {self.hash}: {exc}") from exc
        if receipt["status"] == 0:
            logger.error(f"Transaction {self.method} reverted: {self.hash}")
            raise ContractCallError(self.method, f"transaction {self.hash} reverted")
        return receipt


class ContractGateway:
    """Generic invocation of one named contract bound on a :class:`ChainConnector`."""

    def __init__(self, connector: ChainConnector, contract_name: str) -> None:
        self.connector = connector
        self.contract_name = contract_name

    @property
    def address(self) -> str:
        return self.connector.binding.contract(self.contract_name).address

    async def _live_binding(self) -> ChainBinding:
        await self.connector.get_provider()
        return self.connector.binding

    async def execute_transaction(self, method: str, *args: Any, value: int = 0) -> TransactionHandle:
        """Build, sign and submit ``method(*args)``. Never retried."""
        binding = await self._live_binding()
        account = binding.account
        if account is None:
            raise ValidationError(f"No signer bound; cannot submit {method}")
        w3 = binding.web3
        timeout = binding.config.timeout
        contract = binding.contract(self.contract_name)

        try:
            call = getattr(contract.functions, method)(*args)
            params: dict[str, Any] = {
                "from": account.address,
                "nonce": await asyncio.wait_for(
                    w3.eth.get_transaction_count(account.address, "pending"), timeout
                ),
            }
            if value:
                params["value"] = value
            tx = await asyncio.wait_for(call.build_transaction(params), timeout)
            signed = account.sign_transaction(tx)
            raw_hash = await asyncio.wait_for(
                w3.eth.send_raw_transaction(signed.raw_transaction), timeout
            )
        except Exception as exc:
            logger.error(f"Transaction {method} failed: {exc}")
            raise ContractCallError(method, str(exc)) from exc

        tx_hash = Web3.to_hex(raw_hash)
        logger.info(f"Transaction {method} executed: {tx_hash}")
        return TransactionHandle(method=method, hash=tx_hash, web3=w3)

    async def execute_view(self, method: str, *args: Any) -> Any:
        """Read-only call of ``method(*args)``; safe for the caller to retry."""
        binding = await self._live_binding()
        contract = binding.contract(self.contract_name)
        try:
            result = await asyncio.wait_for(
                getattr(contract.functions, method)(*args).call(),
                binding.config.timeout,
            )
        except Exception as exc:
            logger.error(f"View {method} failed: {exc}")
            raise ContractCallError(method, str(exc)) from exc
        logger.debug(f"View {method} executed successfully")
        return result

    def parse_events(self, receipt: Any, event_name: str) -> list[Any]:
        """Decode the receipt's logs for *event_name*, skipping unrelated logs."""
        contract = self.connector.binding.contract(self.contract_name)
        event = getattr(contract.events, event_name)()
        return list(event.process_receipt(receipt, errors=DISCARD))


def dispute_key(escrow_id: int) -> bytes:
    """The dispute contract keys cases by the escrow id as a bytes32."""
    return int(escrow_id).to_bytes(32, "big")


class EscrowGateway(ContractGateway):
    """Typed access to the escrow manager contract."""

    def __init__(
        self,
        connector: ChainConnector,
        contract_name: str = "escrow",
        tokens: TokenRegistry | None = None,
    ) -> None:
        super().__init__(connector, contract_name)
        self.tokens = tokens or TokenRegistry()

    @property
    def signer_address(self) -> str | None:
        return self.connector.address

    async def get_escrow(self, escrow_id: int) -> EscrowRecord:
        logger.info(f"Fetching escrow: {escrow_id}")
        raw = await self.execute_view("getEscrow", int(escrow_id))
        token = raw["token"] if isinstance(raw, dict) else raw[10]
        return EscrowRecord.from_chain(raw, self.tokens.decimals(token))

    async def get_milestones(self, escrow_id: int, token: str = ZERO_ADDRESS) -> list[Milestone]:
        logger.info(f"Fetching milestones: {escrow_id}")
        raw = await self.execute_view("getMilestones", int(escrow_id))
        decimals = self.tokens.decimals(token)
        return [Milestone.from_chain(m, decimals) for m in raw]

    async def is_token_supported(self, token_address: str) -> bool:
        logger.info(f"Checking token support: {token_address}")
        result = await self.execute_view(
            "supportedTokens", Web3.to_checksum_address(token_address)
        )
        return bool(result)

    async def approve_token(self, token_address: str, amount: int) -> TransactionHandle:
        """Approve the escrow contract to pull *amount* of an ERC-20 token."""
        name = f"erc20:{token_address.lower()}"
        if not self.connector.has_contract(name):
            await self.connector.register_contract(name, token_address, ERC20_APPROVE_ABI)
        token = ContractGateway(self.connector, name)
        return await token.execute_transaction("approve", self.address, amount)


class DisputeGateway(ContractGateway):
    """Typed access to the dispute resolution contract."""

    def __init__(self, connector: ChainConnector, contract_name: str = "dispute") -> None:
        super().__init__(connector, contract_name)

    async def open_dispute(self, escrow_id: int, evidence: str) -> TransactionHandle:
        return await self.execute_transaction("openDispute", dispute_key(escrow_id), evidence)

    async def add_evidence(self, escrow_id: int, evidence: str) -> TransactionHandle:
        return await self.execute_transaction("addEvidence", dispute_key(escrow_id), evidence)

    async def resolve_dispute(self, escrow_id: int, winner: str) -> TransactionHandle:
        return await self.execute_transaction(
            "resolveDispute", dispute_key(escrow_id), Web3.to_checksum_address(winner)
        )

    async def get_dispute(self, escrow_id: int) -> DisputeCase:
        raw = await self.execute_view("disputes", dispute_key(escrow_id))
        return DisputeCase.from_chain(raw)


class PaymentGateway(ContractGateway):
    """Direct (non-escrow) transfers through the payment processor contract."""

    def __init__(
        self,
        connector: ChainConnector,
        contract_name: str = "payment",
        tokens: TokenRegistry | None = None,
    ) -> None:
        super().__init__(connector, contract_name)
        self.tokens = tokens or TokenRegistry()

    async def make_payment(self, payee: str, amount: int, token: str = ZERO_ADDRESS) -> TransactionHandle:
        """Pay *amount* base units; native ETH is attached as call value."""
        value = amount if token.lower() == ZERO_ADDRESS else 0
        return await self.execute_transaction(
            "makePayment",
            Web3.to_checksum_address(payee),
            amount,
            Web3.to_checksum_address(token),
            value=value,
        )
