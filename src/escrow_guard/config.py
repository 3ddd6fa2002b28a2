"""Configuration system for escrow-guard.

Loads engine config from ``escrow-guard.yaml``, supports environment
variable expansion, and builds the runtime objects (vault, provider
candidates, signal providers) from the validated models.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from escrow_guard.chain.chains import get_chain


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


def _resolve_secret(value: str) -> str | None:
    """Expand *value* and return ``None`` if it is empty or still a placeholder."""
    value = _expand_env_vars(value)
    if not value or _ENV_VAR_RE.fullmatch(value):
        return None
    return value


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class VaultConfig(BaseModel):
    """Custodial key encryption settings."""

    master_key: str = "${ENCRYPTION_KEY}"


class EndpointConfig(BaseModel):
    """A single RPC endpoint candidate, listed in fallback order."""

    name: str
    rpc_url: str
    chain_id: Optional[int] = None
    timeout: float = 10.0


class ContractsConfig(BaseModel):
    """Deployed contract addresses. Empty means not deployed."""

    escrow_manager: str = ""
    dispute_resolution: str = ""
    payment_processor: str = ""


class ChainConfig(BaseModel):
    """Blockchain connectivity settings."""

    network: str = "base_sepolia"
    endpoints: list[EndpointConfig] = Field(default_factory=list)
    signer_key: str = "${PRIVATE_KEY}"
    receipt_timeout: float = 120.0
    contracts: ContractsConfig = Field(default_factory=ContractsConfig)


class RiskConfig(BaseModel):
    """Risk signal provider selection.

    ``transport`` picks how signals are fetched: ``direct`` talks to the
    DD.xyz REST API, ``tool_call`` talks to a remote safety tool server,
    and ``none`` installs the null provider.
    """

    transport: Literal["direct", "tool_call", "none"] = "direct"
    ddxyz_api_key: str = "${DDXYZ_API_KEY}"
    ddxyz_base_url: str = "https://api.dd.xyz/v1"
    tool_call_url: str = ""
    timeout: float = 10.0


class StorageConfig(BaseModel):
    """Local mirror database settings."""

    db_path: str = ".escrow-guard/mirror.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"


class EngineConfig(BaseModel):
    """Root configuration object for the engine."""

    vault: VaultConfig = Field(default_factory=VaultConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def endpoint_candidates(self) -> list[EndpointConfig]:
        """Return configured endpoints, or the network's public RPC if none."""
        if self.chain.endpoints:
            return list(self.chain.endpoints)
        chain = get_chain(self.chain.network)
        return [
            EndpointConfig(
                name=chain.display_name,
                rpc_url=chain.rpc_url,
                chain_id=chain.chain_id,
            )
        ]

    def master_key(self) -> str | None:
        """The vault master key, or ``None`` when it was never provided."""
        return _resolve_secret(self.vault.master_key)

    def signer_key(self) -> str | None:
        return _resolve_secret(self.chain.signer_key)

    def ddxyz_api_key(self) -> str | None:
        return _resolve_secret(self.risk.ddxyz_api_key)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_NAME = "escrow-guard.yaml"


def default_config_path(base: Path | None = None) -> Path:
    """Return ``<base>/escrow-guard.yaml`` (base defaults to the cwd)."""
    if base is None:
        base = Path.cwd()
    return base / DEFAULT_CONFIG_NAME


def load_config(path: Path) -> EngineConfig:
    """Load and validate an engine configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation. A missing file yields the defaults.
    """
    if not path.exists():
        return EngineConfig()
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return EngineConfig.model_validate(expanded)


def save_config(config: EngineConfig, path: Path) -> None:
    """Serialize an :class:`EngineConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
