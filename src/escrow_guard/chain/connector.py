"""Async Web3 connection pool and failover-aware chain connector."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional

from web3 import AsyncWeb3, Web3
from web3.middleware import ExtraDataToPOAMiddleware

from escrow_guard.errors import NoProviderAvailable, ProviderUnavailable, ValidationError

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

logger = logging.getLogger("escrow_guard.chain.connector")


@dataclass(frozen=True)
class ProviderConfig:
    """One RPC endpoint. ``chain_id`` is checked on every liveness probe."""

    name: str
    rpc_url: str
    chain_id: Optional[int] = None
    timeout: float = 10.0

    @property
    def cache_key(self) -> tuple[str, Optional[int]]:
        return (self.rpc_url, self.chain_id)

    @classmethod
    def from_endpoint(cls, endpoint: Any) -> ProviderConfig:
        """Build from a config ``EndpointConfig`` (or anything shaped like one)."""
        return cls(
            name=endpoint.name,
            rpc_url=endpoint.rpc_url,
            chain_id=endpoint.chain_id,
            timeout=endpoint.timeout,
        )


@dataclass(frozen=True)
class ContractSpec:
    address: str
    abi: list[dict]


def build_web3(config: ProviderConfig) -> AsyncWeb3:
    """Create an ``AsyncWeb3`` client for *config*.

    Injects POA middleware for non-mainnet chains.
    """
    w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(config.rpc_url))
    if config.chain_id != 1:
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class ConnectionPool:
    """Cache of live ``AsyncWeb3`` clients keyed by ``(rpc_url, chain_id)``.

    The first caller to ask for a key creates the client; concurrent and
    later callers receive the cached instance. The pool owns the clients
    and disconnects them on :meth:`close`.
    """

    def __init__(self, factory: Callable[[ProviderConfig], AsyncWeb3] = build_web3) -> None:
        self._factory = factory
        self._connections: dict[tuple[str, Optional[int]], AsyncWeb3] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    async def __aenter__(self) -> ConnectionPool:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, config: object) -> bool:
        return isinstance(config, ProviderConfig) and config.cache_key in self._connections

    async def acquire(self, config: ProviderConfig) -> AsyncWeb3:
        """Return the cached client for *config*, creating it if needed."""
        async with self._lock:
            if self._closed:
                raise ProviderUnavailable("Connection pool is closed")
            w3 = self._connections.get(config.cache_key)
            if w3 is not None:
                logger.debug(f"Using cached provider for {config.name}")
                return w3
            try:
                w3 = self._factory(config)
            except Exception as exc:
                logger.error(f"Failed to initialize provider for {config.name}: {exc}")
                raise ProviderUnavailable(
                    f"Provider initialization failed for {config.name}"
                ) from exc
            self._connections[config.cache_key] = w3
            logger.info(f"Created new provider for {config.name}: {config.rpc_url}")
            return w3

    async def evict(self, config: ProviderConfig) -> None:
        """Drop and disconnect the cached client for *config*, if any."""
        async with self._lock:
            w3 = self._connections.pop(config.cache_key, None)
        if w3 is not None:
            await _disconnect(w3, config.name)

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            connections = list(self._connections.items())
            self._connections.clear()
        for (rpc_url, _), w3 in connections:
            await _disconnect(w3, rpc_url)


async def _disconnect(w3: AsyncWeb3, label: str) -> None:
    try:
        await w3.provider.disconnect()
    except Exception as exc:
        logger.debug(f"Ignoring disconnect failure for {label}: {exc}")


@dataclass(frozen=True)
class ChainBinding:
    """Endpoint, signer and contract handles that are always swapped together."""

    config: ProviderConfig
    web3: AsyncWeb3
    account: Optional[LocalAccount]
    contracts: Mapping[str, Any] = field(default_factory=dict)

    def contract(self, name: str) -> Any:
        try:
            return self.contracts[name]
        except KeyError:
            raise ValidationError(
                f"No contract named '{name}' is bound. Available: {sorted(self.contracts)}"
            ) from None


class ChainConnector:
    """Connection to one chain endpoint with liveness checks and failover.

    Parameters
    ----------
    config:
        The endpoint to start from.
    pool:
        Shared :class:`ConnectionPool`; the connector never closes it.
    account:
        Optional signer used by :class:`~escrow_guard.chain.gateway.ContractGateway`
        for state-mutating calls.
    contracts:
        Contract name to :class:`ContractSpec`; each is bound to the active
        endpoint and rebound on every switch.
    """

    def __init__(
        self,
        config: ProviderConfig,
        pool: ConnectionPool,
        account: Optional[LocalAccount] = None,
        contracts: Optional[Mapping[str, ContractSpec]] = None,
    ) -> None:
        self._initial_config = config
        self._pool = pool
        self._account = account
        self._specs: dict[str, ContractSpec] = dict(contracts or {})
        self._binding: Optional[ChainBinding] = None
        self._switch_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def config(self) -> ProviderConfig:
        binding = self._binding
        return binding.config if binding is not None else self._initial_config

    @property
    def binding(self) -> ChainBinding:
        """The active binding. Raises if :meth:`connect` was never called."""
        binding = self._binding
        if binding is None:
            raise ProviderUnavailable(f"Connector for {self.config.name} is not connected")
        return binding

    @property
    def address(self) -> str | None:
        return self._account.address if self._account is not None else None

    def _bind(self, config: ProviderConfig, w3: AsyncWeb3) -> ChainBinding:
        contracts = {
            name: w3.eth.contract(address=Web3.to_checksum_address(spec.address), abi=spec.abi)
            for name, spec in self._specs.items()
        }
        return ChainBinding(
            config=config,
            web3=w3,
            account=self._account,
            contracts=MappingProxyType(contracts),
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, config: ProviderConfig | None = None) -> AsyncWeb3:
        """Return the pooled client for *config* (default: the current endpoint).

        The first connect on the current endpoint also establishes the binding.
        """
        config = config or self.config
        w3 = await self._pool.acquire(config)
        if self._binding is None and config == self._initial_config:
            self._binding = self._bind(config, w3)
        return w3

    async def _probe(self, w3: AsyncWeb3, config: ProviderConfig) -> bool:
        try:
            chain_id = await asyncio.wait_for(w3.eth.chain_id, timeout=config.timeout)
        except Exception as exc:
            logger.warning(f"Provider connection test failed for {config.name}: {exc!r}")
            return False
        if config.chain_id and chain_id != config.chain_id:
            logger.warning(
                f"Provider {config.name} reports chain {chain_id}, expected {config.chain_id}"
            )
            return False
        logger.debug(f"Provider connection test successful for {config.name} ({chain_id})")
        return True

    async def test_connection(self) -> bool:
        """Lightweight liveness probe of the current endpoint."""
        binding = self._binding
        if binding is None:
            return False
        return await self._probe(binding.web3, binding.config)

    async def get_provider(self) -> AsyncWeb3:
        """Return the live client, reconnecting exactly once if needed."""
        if self._binding is None:
            await self.connect()
        if await self.test_connection():
            return self.binding.web3

        stale = self.config
        logger.warning(f"Provider {stale.name} disconnected, attempting to reconnect...")
        async with self._switch_lock:
            binding = self._binding
            if binding is not None and binding.config != stale:
                # A switch landed while we waited; keep it if it is alive.
                if await self._probe(binding.web3, binding.config):
                    logger.info(f"Provider already switched to {binding.config.name}")
                    return binding.web3
            config = self.config
            await self._pool.evict(config)
            try:
                w3 = await self._pool.acquire(config)
            except ProviderUnavailable as exc:
                logger.error(f"Failed to reconnect provider {config.name}: {exc}")
            else:
                if await self._probe(w3, config):
                    self._binding = self._bind(config, w3)
                    logger.info(f"Provider {config.name} reconnected successfully")
                    return w3
        raise ProviderUnavailable(
            f"Provider {config.name} connection failed and could not be restored"
        )

    async def switch_provider(self, new_config: ProviderConfig) -> None:
        """Move to *new_config* only after it passes a liveness probe."""
        async with self._switch_lock:
            logger.info(f"Switching provider from {self.config.name} to {new_config.name}")
            w3 = await self._pool.acquire(new_config)
            if not await self._probe(w3, new_config):
                if new_config.cache_key != self.config.cache_key:
                    await self._pool.evict(new_config)
                raise ProviderUnavailable(f"New provider {new_config.name} is not accessible")
            self._binding = self._bind(new_config, w3)
            logger.info(f"Successfully switched to provider: {new_config.name}")

    async def register_contract(self, name: str, address: str, abi: list[dict]) -> None:
        """Add a contract binding, rebinding the active endpoint if connected."""
        async with self._switch_lock:
            self._specs[name] = ContractSpec(address=address, abi=abi)
            binding = self._binding
            if binding is not None:
                self._binding = self._bind(binding.config, binding.web3)

    def has_contract(self, name: str) -> bool:
        return name in self._specs

    @classmethod
    async def create_with_fallback(
        cls,
        candidates: Iterable[ProviderConfig],
        pool: ConnectionPool,
        account: Optional[LocalAccount] = None,
        contracts: Optional[Mapping[str, ContractSpec]] = None,
    ) -> ChainConnector:
        """Return a connector on the first candidate that passes a liveness check."""
        for config in candidates:
            logger.info(f"Attempting to connect to {config.name}...")
            connector = cls(config, pool, account=account, contracts=contracts)
            try:
                await connector.connect()
            except ProviderUnavailable as exc:
                logger.warning(f"Failed to connect to {config.name}: {exc}")
                continue
            if await connector.test_connection():
                logger.info(f"Successfully connected to {config.name}")
                return connector
        raise NoProviderAvailable("No accessible providers found")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, address: str | None = None) -> str:
        """Native balance in ether units, or ``"0.0"`` if the read fails."""
        target = address or self.address
        if not target:
            raise ValidationError("An address is required when no signer is bound")
        try:
            w3 = await self.get_provider()
            balance_wei = await asyncio.wait_for(
                w3.eth.get_balance(Web3.to_checksum_address(target)),
                timeout=self.config.timeout,
            )
        except Exception as exc:
            logger.warning(f"Provider failed to get balance for {target}, using fallback: {exc}")
            return "0.0"
        return str(Web3.from_wei(balance_wei, "ether"))

    async def get_network_info(self) -> dict:
        w3 = await self.get_provider()
        config = self.config
        chain_id = await asyncio.wait_for(w3.eth.chain_id, timeout=config.timeout)
        return {"name": config.name, "chain_id": int(chain_id), "rpc_url": config.rpc_url}
