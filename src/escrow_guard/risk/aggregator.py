"""Merge risk signals from every applicable provider into one assessment.

Any provider failure, timeout or empty answer turns the whole check into
the neutral fallback (score 50, medium). A safety check always yields a
decision; it never raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, Sequence

from escrow_guard.errors import SignalProviderError
from escrow_guard.risk.models import AssessmentMetadata, RiskAssessment, RiskLevel
from escrow_guard.risk.providers import RiskSignal, SignalProvider

logger = logging.getLogger("escrow_guard.risk.aggregator")

DEFAULT_TIMEOUT = 10.0

LEVEL_DEDUCTIONS = {
    "low": 0,
    "medium": 20,
    "high": 50,
    "critical": 80,
}

RECOMMENDATIONS = {
    RiskLevel.LOW: "Safe to proceed",
    RiskLevel.MEDIUM: "Exercise caution - review details",
    RiskLevel.HIGH: "High risk - consider avoiding",
    RiskLevel.CRITICAL: "Critical risk - do not proceed",
}

FALLBACK_SCORE = 50
FALLBACK_RECOMMENDATION = "Proceed with caution - verification unavailable"
NO_RISK_FACTORS = "No specific risk factors identified"
STANDARD_TRANSFER = "Standard transfer"


def calculate_score(signals: Iterable[RiskSignal]) -> int:
    score = 100.0
    for signal in signals:
        if signal.risk_score is not None:
            score -= signal.risk_score
        elif signal.risk_level:
            score -= LEVEL_DEDUCTIONS.get(signal.risk_level.lower(), 0)
    return int(round(max(0.0, min(100.0, score))))


def map_risk_level(score: int) -> RiskLevel:
    if score >= 80:
        return RiskLevel.LOW
    if score >= 60:
        return RiskLevel.MEDIUM
    if score >= 30:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def overall_risk(assessments: Sequence[RiskAssessment]) -> RiskAssessment:
    """The assessment with the highest risk priority; the earliest wins ties."""
    if not assessments:
        raise ValueError("At least one assessment is required")
    worst = assessments[0]
    for assessment in assessments[1:]:
        if assessment.risk_level.priority > worst.risk_level.priority:
            worst = assessment
    return worst


def fallback_assessment(reason: str, response_time_ms: int = 0) -> RiskAssessment:
    return RiskAssessment(
        risk_level=RiskLevel.MEDIUM,
        score=FALLBACK_SCORE,
        reasons=[reason],
        recommendation=FALLBACK_RECOMMENDATION,
        metadata=AssessmentMetadata(providers=["fallback"], response_time_ms=response_time_ms),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class RiskSignalAggregator:
    """Fan a check out to the providers and compose the answers.

    Parameters
    ----------
    providers:
        Signal sources; each is consulted only for chains it supports.
    timeout:
        Per-provider deadline in seconds.
    """

    def __init__(self, providers: Sequence[SignalProvider], timeout: float = DEFAULT_TIMEOUT) -> None:
        self.providers = list(providers)
        self.timeout = timeout

    async def aclose(self) -> None:
        for provider in self.providers:
            await provider.aclose()

    async def _query(self, provider: SignalProvider, check: str, *args: str) -> RiskSignal:
        try:
            signal = await asyncio.wait_for(getattr(provider, check)(*args), self.timeout)
        except asyncio.TimeoutError:
            raise SignalProviderError(provider.name, f"{check} timed out after {self.timeout}s") from None
        except Exception as exc:
            raise SignalProviderError(provider.name, f"{check} failed: {exc}") from exc
        if signal is None:
            raise SignalProviderError(provider.name, f"{check} returned no data")
        return signal

    async def _compose(
        self,
        check: str,
        args: tuple[str, ...],
        chain: str | None,
        fallback_reason: str,
    ) -> RiskAssessment:
        started = time.monotonic()
        providers = [p for p in self.providers if chain is None or p.supports_chain(chain)]
        if not providers:
            logger.info(f"No risk provider supports chain {chain}; using fallback")
            return fallback_assessment(fallback_reason, _elapsed_ms(started))

        results = await asyncio.gather(
            *(self._query(p, check, *args) for p in providers),
            return_exceptions=True,
        )
        signals: list[RiskSignal] = []
        for result in results:
            if isinstance(result, BaseException):
                # SignalProviderError and anything unexpected alike.
                logger.warning(f"Risk check {check} degraded to fallback: {result}")
                return fallback_assessment(fallback_reason, _elapsed_ms(started))
            signals.append(result)

        score = calculate_score(signals)
        level = map_risk_level(score)
        reasons = [reason for signal in signals for reason in signal.reasons]
        return RiskAssessment(
            risk_level=level,
            score=score,
            reasons=reasons or [NO_RISK_FACTORS],
            recommendation=RECOMMENDATIONS[level],
            metadata=AssessmentMetadata(
                providers=[p.name for p in providers],
                response_time_ms=_elapsed_ms(started),
            ),
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_wallet_safety(self, address: str, chain: str = "ethereum") -> RiskAssessment:
        return await self._compose(
            "check_wallet_safety",
            (address, chain),
            chain.lower(),
            "Unable to verify wallet - exercise caution",
        )

    async def check_contract_safety(self, address: str, chain: str = "ethereum") -> RiskAssessment:
        return await self._compose(
            "check_contract_safety",
            (address, chain),
            chain.lower(),
            "Unable to verify contract - exercise caution",
        )

    async def check_url_safety(self, url: str) -> RiskAssessment:
        return await self._compose(
            "check_url_safety",
            (url,),
            None,
            "Unable to verify URL - exercise caution",
        )

    async def check_transaction_safety(
        self, to: str, value: str = "0", chain: str = "ethereum"
    ) -> RiskAssessment:
        """Recipient wallet check annotated as a plain transfer."""
        assessment = await self.check_wallet_safety(to, chain)
        return assessment.model_copy(update={"reasons": [*assessment.reasons, STANDARD_TRANSFER]})

    async def enhanced_transaction_safety(
        self,
        buyer_wallet: str,
        vendor_wallet: str,
        amount: str,
        chain: str = "ethereum",
    ) -> RiskAssessment:
        """Buyer, vendor and transaction checks run concurrently; the worst one wins."""
        buyer, vendor, transaction = await asyncio.gather(
            self.check_wallet_safety(buyer_wallet, chain),
            self.check_wallet_safety(vendor_wallet, chain),
            self.check_transaction_safety(vendor_wallet, amount, chain),
        )
        overall = overall_risk([buyer, vendor, transaction])
        logger.info(
            f"Transaction safety: buyer={buyer.risk_level.value} vendor={vendor.risk_level.value} "
            f"transaction={transaction.risk_level.value} -> {overall.risk_level.value}"
        )
        return overall
