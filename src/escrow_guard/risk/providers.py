"""Pluggable risk signal providers.

A provider answers wallet, contract and URL checks with a
:class:`RiskSignal`, or ``None`` when it has nothing to say (missing
credentials, HTTP failure, malformed payload). Providers never raise.
"""

from __future__ import annotations

import itertools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import httpx

if TYPE_CHECKING:
    from escrow_guard.config import EngineConfig

logger = logging.getLogger("escrow_guard.risk.providers")


@dataclass(frozen=True)
class RiskSignal:
    """One provider's verdict. ``risk_score`` wins over ``risk_level`` when both are set."""

    risk_score: Optional[float] = None
    risk_level: Optional[str] = None
    reasons: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: Any, reasons_key: str = "reasons") -> RiskSignal | None:
        if not isinstance(data, dict):
            return None
        score = data.get("riskScore")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            score = None
        level = data.get("riskLevel")
        reasons = data.get(reasons_key) or data.get("reasons") or []
        return cls(
            risk_score=score,
            risk_level=level if isinstance(level, str) else None,
            reasons=[str(r) for r in reasons] if isinstance(reasons, list) else [],
        )


class SignalProvider(ABC):
    """Strategy interface for a risk signal source."""

    name: str = "provider"

    def supports_chain(self, chain: str) -> bool:
        return True

    @abstractmethod
    async def check_wallet_safety(self, address: str, chain: str) -> RiskSignal | None:
        ...

    @abstractmethod
    async def check_contract_safety(self, address: str, chain: str) -> RiskSignal | None:
        ...

    @abstractmethod
    async def check_url_safety(self, url: str) -> RiskSignal | None:
        ...

    async def aclose(self) -> None:
        """Release network resources, if any."""


class NullSignalProvider(SignalProvider):
    """Installed when no signal source is configured; every check is a miss."""

    name = "null"

    async def check_wallet_safety(self, address: str, chain: str) -> RiskSignal | None:
        return None

    async def check_contract_safety(self, address: str, chain: str) -> RiskSignal | None:
        return None

    async def check_url_safety(self, url: str) -> RiskSignal | None:
        return None


class _HttpSignalProvider(SignalProvider):
    """Shared ``httpx`` plumbing. A client passed in is borrowed, not closed."""

    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class DDxyzSignalProvider(_HttpSignalProvider):
    """DD.xyz threat, contract and URL risk API."""

    name = "dd.xyz"
    SUPPORTED_CHAINS = frozenset({"ethereum", "base"})

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.dd.xyz/v1",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def supports_chain(self, chain: str) -> bool:
        return chain.lower() in self.SUPPORTED_CHAINS

    async def _post(self, path: str, payload: dict) -> Any:
        try:
            resp = await self._get_client().post(
                f"{self.base_url}{path}",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except Exception as e:
            logger.error(f"DD.xyz {path} API error: {e}")
            return None

    async def check_wallet_safety(self, address: str, chain: str) -> RiskSignal | None:
        data = await self._post("/threat-risk", {"address": address, "chain": chain})
        return RiskSignal.from_payload(data, reasons_key="flaggedReasons")

    async def check_contract_safety(self, address: str, chain: str) -> RiskSignal | None:
        data = await self._post("/contract-risk", {"address": address, "chain": chain})
        return RiskSignal.from_payload(data, reasons_key="vulnerabilities")

    async def check_url_safety(self, url: str) -> RiskSignal | None:
        data = await self._post("/url-risk", {"url": url})
        return RiskSignal.from_payload(data)


class ToolCallSignalProvider(_HttpSignalProvider):
    """Remote safety tool server reached over JSON-RPC ``tools/call``.

    The server answers with a full safety result (``score`` is a safety
    score, higher is safer), which is folded back into a signal.
    """

    name = "tool-call"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=timeout, client=client)
        self.url = url
        self._ids = itertools.count(1)

    async def _invoke(self, tool: str, arguments: dict) -> Any:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "tools/call",
            "params": {"name": tool, "arguments": arguments},
        }
        try:
            resp = await self._get_client().post(self.url, json=request, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except Exception as e:
            logger.error(f"Tool call {tool} failed: {e}")
            return None
        if not isinstance(body, dict) or body.get("error"):
            logger.error(f"Tool call {tool} returned an error: {body!r:.200}")
            return None
        return _unwrap_tool_result(body.get("result"))

    @staticmethod
    def _to_signal(result: Any) -> RiskSignal | None:
        if not isinstance(result, dict):
            return None
        score = result.get("score")
        risk_score = None
        if isinstance(score, (int, float)) and not isinstance(score, bool):
            risk_score = 100 - score
        level = result.get("riskLevel")
        reasons = result.get("reasons") or []
        return RiskSignal(
            risk_score=risk_score,
            risk_level=level if isinstance(level, str) else None,
            reasons=[str(r) for r in reasons] if isinstance(reasons, list) else [],
        )

    async def check_wallet_safety(self, address: str, chain: str) -> RiskSignal | None:
        return self._to_signal(
            await self._invoke("check_wallet_safety", {"address": address, "chain": chain})
        )

    async def check_contract_safety(self, address: str, chain: str) -> RiskSignal | None:
        return self._to_signal(
            await self._invoke("check_contract_safety", {"address": address, "chain": chain})
        )

    async def check_url_safety(self, url: str) -> RiskSignal | None:
        return self._to_signal(await self._invoke("check_url_safety", {"url": url}))


def _unwrap_tool_result(result: Any) -> Any:
    """Accept plain results and MCP-style ``{"content": [{"type": "text", ...}]}``."""
    if not isinstance(result, dict):
        return None
    if isinstance(result.get("structuredContent"), dict):
        return result["structuredContent"]
    content = result.get("content")
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                try:
                    return json.loads(item.get("text", ""))
                except ValueError:
                    return None
        return None
    return result


def build_signal_providers(config: EngineConfig) -> list[SignalProvider]:
    """Pick the signal providers for *config*.

    Falls back to the :class:`NullSignalProvider` when the chosen transport
    lacks credentials, so every check degrades to the neutral assessment.
    """
    risk = config.risk
    if risk.transport == "direct":
        api_key = config.ddxyz_api_key()
        if api_key:
            return [DDxyzSignalProvider(api_key, risk.ddxyz_base_url, timeout=risk.timeout)]
        logger.warning("DD.xyz API key not configured; risk checks will use the neutral fallback")
    elif risk.transport == "tool_call":
        if risk.tool_call_url:
            return [ToolCallSignalProvider(risk.tool_call_url, timeout=risk.timeout)]
        logger.warning("Tool call URL not configured; risk checks will use the neutral fallback")
    return [NullSignalProvider()]
