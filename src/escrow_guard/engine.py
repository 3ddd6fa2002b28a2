"""Wires configuration into a running set of components."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from eth_account import Account

from escrow_guard.chain.abi import (
    DISPUTE_RESOLUTION_ABI,
    ESCROW_MANAGER_ABI,
    PAYMENT_PROCESSOR_ABI,
)
from escrow_guard.chain.connector import ChainConnector, ConnectionPool, ContractSpec, ProviderConfig
from escrow_guard.chain.gateway import DisputeGateway, EscrowGateway, PaymentGateway
from escrow_guard.chain.tokens import TokenRegistry
from escrow_guard.config import EngineConfig, default_config_path, load_config
from escrow_guard.errors import ValidationError
from escrow_guard.escrow.ledger import EscrowLedger
from escrow_guard.risk.aggregator import RiskSignalAggregator
from escrow_guard.risk.providers import build_signal_providers
from escrow_guard.routing.router import PaymentRouter
from escrow_guard.storage.database import Database, MirrorStore, get_database

logger = logging.getLogger("escrow_guard.engine")


def contract_specs(config: EngineConfig) -> dict[str, ContractSpec]:
    """Contract bindings for every deployed address in *config*."""
    deployed = config.chain.contracts
    pairs = [
        ("escrow", deployed.escrow_manager, ESCROW_MANAGER_ABI),
        ("dispute", deployed.dispute_resolution, DISPUTE_RESOLUTION_ABI),
        ("payment", deployed.payment_processor, PAYMENT_PROCESSOR_ABI),
    ]
    return {name: ContractSpec(address=addr, abi=abi) for name, addr, abi in pairs if addr}


class Engine:
    """Holds the live components for one configuration.

    Chain-dependent parts (``connector``, ``ledger``) are ``None`` when the
    engine was loaded without a chain connection or the escrow contract is
    not deployed.
    """

    def __init__(
        self,
        config: EngineConfig,
        db: Database,
        aggregator: RiskSignalAggregator,
        pool: ConnectionPool | None = None,
        connector: ChainConnector | None = None,
        ledger: EscrowLedger | None = None,
        payments: PaymentGateway | None = None,
        tokens: TokenRegistry | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.aggregator = aggregator
        self.pool = pool
        self.connector = connector
        self.ledger = ledger
        self.tokens = tokens or TokenRegistry()
        self.store = MirrorStore(db)
        self.router = PaymentRouter(
            aggregator,
            ledger=ledger,
            payments=payments,
            tokens=self.tokens,
            receipt_timeout=config.chain.receipt_timeout,
        )

    @classmethod
    async def load(
        cls,
        config_path: Path | None = None,
        *,
        config: EngineConfig | None = None,
        with_chain: bool = True,
    ) -> Engine:
        if config is None:
            config = load_config(config_path or default_config_path())
        db = get_database(config.storage.db_path)
        await db.connect()
        aggregator = RiskSignalAggregator(build_signal_providers(config), timeout=config.risk.timeout)
        tokens = TokenRegistry()

        if not with_chain:
            return cls(config, db, aggregator, tokens=tokens)

        signer_key = config.signer_key()
        account = Account.from_key(signer_key) if signer_key else None
        specs = contract_specs(config)
        pool = ConnectionPool()
        candidates = [ProviderConfig.from_endpoint(e) for e in config.endpoint_candidates()]
        try:
            connector = await ChainConnector.create_with_fallback(
                candidates, pool, account=account, contracts=specs
            )
        except Exception:
            await pool.close()
            await db.close()
            raise

        ledger: Optional[EscrowLedger] = None
        if "escrow" in specs:
            ledger = EscrowLedger(
                EscrowGateway(connector, tokens=tokens),
                MirrorStore(db),
                disputes=DisputeGateway(connector) if "dispute" in specs else None,
                tokens=tokens,
                receipt_timeout=config.chain.receipt_timeout,
            )
        payments = PaymentGateway(connector, tokens=tokens) if "payment" in specs else None
        return cls(
            config,
            db,
            aggregator,
            pool=pool,
            connector=connector,
            ledger=ledger,
            payments=payments,
            tokens=tokens,
        )

    def require_ledger(self) -> EscrowLedger:
        if self.ledger is None:
            raise ValidationError(
                "Escrow contract address not configured (chain.contracts.escrow_manager)"
            )
        return self.ledger

    async def shutdown(self) -> None:
        await self.aggregator.aclose()
        if self.pool is not None:
            await self.pool.close()
        await self.db.close()
