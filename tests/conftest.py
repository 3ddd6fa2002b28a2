"""Shared fixtures and in-memory fakes for chain, gateway and risk collaborators."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from escrow_guard.chain.chains import ZERO_ADDRESS
from escrow_guard.risk.providers import RiskSignal, SignalProvider
from escrow_guard.storage.database import Database, MirrorStore
from escrow_guard.storage.models import EscrowRecord, EscrowStatus, Milestone

BUYER = "0x1111111111111111111111111111111111111111"
SELLER = "0x2222222222222222222222222222222222222222"
STRANGER = "0x3333333333333333333333333333333333333333"
ESCROW_ADDRESS = "0x4444444444444444444444444444444444444444"
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


# ---------------------------------------------------------------------------
# Web3 fakes
# ---------------------------------------------------------------------------

class FakeEth:
    """Just enough of ``AsyncWeb3.eth`` for the connector and gateway."""

    def __init__(
        self, chain_id: int = 84532, alive: bool = True, balance: int = 0, delay: float = 0.0
    ) -> None:
        self._chain_id = chain_id
        self.alive = alive
        self.delay = delay
        self.balance = balance
        self.probes = 0
        self.contracts: dict[str, MagicMock] = {}
        self.get_transaction_count = AsyncMock(return_value=7)
        self.send_raw_transaction = AsyncMock(return_value=b"\xab" * 32)
        self.wait_for_transaction_receipt = AsyncMock(return_value={"status": 1, "logs": []})

    @property
    def chain_id(self):
        return self._read_chain_id()

    async def _read_chain_id(self) -> int:
        self.probes += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.alive:
            raise ConnectionError("endpoint unreachable")
        return self._chain_id

    def contract(self, address: str, abi: list[dict]) -> MagicMock:
        contract = self.contracts.get(address)
        if contract is None:
            contract = MagicMock(name=f"contract@{address}")
            contract.address = address
            contract.eth = self
            self.contracts[address] = contract
        return contract

    async def get_balance(self, address: str) -> int:
        if not self.alive:
            raise ConnectionError("endpoint unreachable")
        return self.balance


class FakeProvider:
    def __init__(self) -> None:
        self.disconnected = False

    async def disconnect(self) -> None:
        self.disconnected = True


class FakeWeb3:
    def __init__(self, **eth_kwargs: Any) -> None:
        self.eth = FakeEth(**eth_kwargs)
        self.provider = FakeProvider()


class Web3Factory:
    """Connection factory handing out pre-built fakes per RPC URL.

    A list value yields the next fake on each call, so tests can model a
    reconnect that lands on a fresh (or still dead) client.
    """

    def __init__(self, clients: dict[str, Any]) -> None:
        self.clients = clients
        self.calls: list[str] = []

    def __call__(self, config) -> FakeWeb3:
        self.calls.append(config.rpc_url)
        client = self.clients[config.rpc_url]
        if isinstance(client, list):
            return client.pop(0)
        if isinstance(client, Exception):
            raise client
        return client


# ---------------------------------------------------------------------------
# Gateway fakes
# ---------------------------------------------------------------------------

class FakeHandle:
    def __init__(self, method: str, tx_hash: str) -> None:
        self.method = method
        self.hash = tx_hash

    async def wait(self, timeout: float = 120.0) -> dict:
        return {"status": 1, "transactionHash": self.hash, "logs": []}


_STATUS_AFTER = {
    "fundEscrow": EscrowStatus.FUNDED,
    "cancelEscrow": EscrowStatus.CANCELLED,
    "fileDispute": EscrowStatus.DISPUTED,
}


class FakeEscrowGateway:
    """Escrow contract stand-in that tracks on-chain status per escrow id."""

    def __init__(self, signer: str = BUYER, escrow_id: Any = 42) -> None:
        self.signer_address = signer
        self.address = ESCROW_ADDRESS
        self.next_escrow_id = escrow_id
        self.events: Optional[list] = None
        self.parse_error: Optional[Exception] = None
        self.calls: list[tuple[str, tuple, int]] = []
        self.approvals: list[tuple[str, int]] = []
        self.statuses: dict[int, EscrowStatus] = {}
        self.milestone_counts: dict[int, int] = {}
        self.released: dict[int, set[int]] = {}
        self.metadata_hashes: dict[int, str] = {}
        self.tokens_supported = {ZERO_ADDRESS, USDC.lower()}
        self._tx = 0

    def _hash(self) -> str:
        self._tx += 1
        return "0x" + f"{self._tx:064x}"

    async def approve_token(self, token: str, amount: int) -> FakeHandle:
        self.approvals.append((token, amount))
        return FakeHandle("approve", self._hash())

    async def execute_transaction(self, method: str, *args: Any, value: int = 0) -> FakeHandle:
        # Yield so concurrent callers genuinely interleave.
        await asyncio.sleep(0)
        self.calls.append((method, args, value))
        if method == "createEscrow":
            if isinstance(self.next_escrow_id, int) and not isinstance(self.next_escrow_id, bool):
                self.statuses[self.next_escrow_id] = EscrowStatus.CREATED
                self.milestone_counts[self.next_escrow_id] = len(args[3])
                self.metadata_hashes[self.next_escrow_id] = "0x" + args[2].hex()
        elif method == "releasePayment":
            escrow_id, index = args
            done = self.released.setdefault(escrow_id, set())
            done.add(index)
            if len(done) >= max(self.milestone_counts.get(escrow_id, 0), 1):
                self.statuses[escrow_id] = EscrowStatus.COMPLETED
        elif method in _STATUS_AFTER:
            self.statuses[args[0]] = _STATUS_AFTER[method]
        return FakeHandle(method, self._hash())

    def parse_events(self, receipt: Any, event_name: str) -> list:
        if self.parse_error is not None:
            raise self.parse_error
        if self.events is not None:
            return self.events
        return [{"args": {"escrowId": self.next_escrow_id, "buyer": BUYER, "seller": SELLER, "amount": 1}}]

    def set_status(self, escrow_id: int, status: EscrowStatus) -> None:
        self.statuses[escrow_id] = status

    async def get_escrow(self, escrow_id: int) -> EscrowRecord:
        return EscrowRecord(
            id=escrow_id,
            buyer=BUYER,
            seller=SELLER,
            amount="1.0",
            platform_fee="0.0",
            created_at=0,
            expires_at=0,
            status=self.statuses.get(escrow_id, EscrowStatus.CREATED),
            description="test escrow",
            metadata_hash=self.metadata_hashes.get(escrow_id, "0x" + "00" * 32),
            token=ZERO_ADDRESS,
        )

    async def get_milestones(self, escrow_id: int, token: str = ZERO_ADDRESS) -> list[Milestone]:
        return [Milestone(amount="0.5", description=f"m{i}") for i in range(self.milestone_counts.get(escrow_id, 0))]

    async def is_token_supported(self, token_address: str) -> bool:
        return token_address.lower() in self.tokens_supported


class FakeDisputeGateway:
    def __init__(self, escrow: FakeEscrowGateway) -> None:
        self.escrow = escrow
        self.calls: list[tuple[str, tuple]] = []

    async def open_dispute(self, escrow_id: int, evidence: str) -> FakeHandle:
        self.calls.append(("openDispute", (escrow_id, evidence)))
        return FakeHandle("openDispute", "0x" + "d1" * 32)

    async def add_evidence(self, escrow_id: int, evidence: str) -> FakeHandle:
        self.calls.append(("addEvidence", (escrow_id, evidence)))
        return FakeHandle("addEvidence", "0x" + "d2" * 32)

    async def resolve_dispute(self, escrow_id: int, winner: str) -> FakeHandle:
        self.calls.append(("resolveDispute", (escrow_id, winner)))
        self.escrow.statuses[escrow_id] = EscrowStatus.RESOLVED
        return FakeHandle("resolveDispute", "0x" + "d3" * 32)

    async def get_dispute(self, escrow_id: int):
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Risk fakes
# ---------------------------------------------------------------------------

class FakeSignalProvider(SignalProvider):
    """Answers from a per-address table; ``default`` covers everything else."""

    def __init__(
        self,
        signals: dict[str, Optional[RiskSignal]] | None = None,
        default: Optional[RiskSignal] = None,
        name: str = "fake",
        chains: Optional[set[str]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.signals = signals or {}
        self.default = default
        self.name = name
        self.chains = chains
        self.error = error
        self.delay = delay
        self.queries: list[tuple[str, str]] = []
        self.closed = False

    def supports_chain(self, chain: str) -> bool:
        return self.chains is None or chain in self.chains

    async def _answer(self, check: str, key: str) -> Optional[RiskSignal]:
        self.queries.append((check, key))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.signals.get(key, self.default)

    async def check_wallet_safety(self, address: str, chain: str) -> Optional[RiskSignal]:
        return await self._answer("wallet", address)

    async def check_contract_safety(self, address: str, chain: str) -> Optional[RiskSignal]:
        return await self._answer("contract", address)

    async def check_url_safety(self, url: str) -> Optional[RiskSignal]:
        return await self._answer("url", url)

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def store(db) -> MirrorStore:
    return MirrorStore(db)


@pytest.fixture
def escrow_gateway() -> FakeEscrowGateway:
    return FakeEscrowGateway()


@pytest.fixture
def dispute_gateway(escrow_gateway) -> FakeDisputeGateway:
    return FakeDisputeGateway(escrow_gateway)


@pytest.fixture
def signer():
    return SimpleNamespace(address=BUYER, sign_transaction=MagicMock(
        return_value=SimpleNamespace(raw_transaction=b"\x02signed")
    ))
