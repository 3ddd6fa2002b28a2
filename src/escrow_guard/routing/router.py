"""Risk-based payment routing: direct, escrow or blocked.

Every degraded path lands on escrow. The router never approves a direct
transfer it could not assess.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional, Protocol, Union

from pydantic import BaseModel, Field

from escrow_guard.chain.chains import ZERO_ADDRESS
from escrow_guard.chain.tokens import TokenRegistry
from escrow_guard.errors import ValidationError
from escrow_guard.risk.aggregator import RiskSignalAggregator, fallback_assessment
from escrow_guard.risk.models import (
    ListingDecision,
    ListingFees,
    MonitoringReport,
    PaymentDecision,
    PaymentMethod,
    Reputation,
    RiskAssessment,
    RiskLevel,
    VendorAlert,
    VendorLocation,
    VendorSafetyProfile,
    VerificationStatus,
)
from escrow_guard.storage.models import Milestone, parse_units

if TYPE_CHECKING:
    from escrow_guard.chain.gateway import PaymentGateway
    from escrow_guard.escrow.ledger import EscrowLedger

logger = logging.getLogger("escrow_guard.routing.router")

PAYMENT_METHODS = {
    RiskLevel.CRITICAL: PaymentMethod.BLOCKED,
    RiskLevel.HIGH: PaymentMethod.ESCROW,
    RiskLevel.MEDIUM: PaymentMethod.ESCROW,
    RiskLevel.LOW: PaymentMethod.DIRECT,
}

RECOMMENDED_ACTIONS = {
    RiskLevel.LOW: "Transaction approved - proceed with confidence",
    RiskLevel.MEDIUM: "Transaction approved with escrow protection",
    RiskLevel.HIGH: "Transaction requires escrow - high risk detected",
    RiskLevel.CRITICAL: "Transaction blocked - critical safety risk",
}

BASE_LISTING_FEE = 0.01
LISTING_FEE_MULTIPLIERS = {
    RiskLevel.LOW: 1.0,
    RiskLevel.MEDIUM: 1.5,
    RiskLevel.HIGH: 2.0,
    RiskLevel.CRITICAL: 0.0,
}
DEFAULT_FEE_MULTIPLIER = 1.5
HIGH_RISK_SECURITY_DEPOSIT = 100.0

VERIFIED_SUCCESS_RATE = 0.95
REPUTATION_ALERT_THRESHOLD = 0.8
HIGH_RISK_VENDOR_LIMIT = 3


def _as_level(level: Union[RiskLevel, str, None]) -> RiskLevel | None:
    if isinstance(level, RiskLevel):
        return level
    try:
        return RiskLevel(str(level).lower())
    except ValueError:
        return None


class ReputationSource(Protocol):
    async def get_reputation(self, vendor_id: str) -> Reputation: ...


class VendorDirectory(Protocol):
    async def get_vendor(self, vendor_id: str) -> Optional[VendorLocation]: ...


class NeutralReputationSource:
    """No trading history: zero transactions, perfect record."""

    async def get_reputation(self, vendor_id: str) -> Reputation:
        return Reputation()


class StaticVendorDirectory:
    """In-memory vendor lookup."""

    def __init__(self, vendors: dict[str, VendorLocation] | None = None) -> None:
        self._vendors = dict(vendors or {})

    def add(self, vendor_id: str, wallet_address: str, chain: str = "ethereum") -> None:
        self._vendors[vendor_id] = VendorLocation(
            wallet_address=wallet_address, chain=chain, vendor_id=vendor_id
        )

    async def get_vendor(self, vendor_id: str) -> Optional[VendorLocation]:
        return self._vendors.get(vendor_id)


class PaymentRequest(BaseModel):
    buyer_wallet: str
    vendor_wallet: str
    amount: str
    chain: str = "ethereum"
    token: str = ZERO_ADDRESS
    description: str = ""
    buyer_email: str = ""
    seller_email: str = ""
    milestones: list[Milestone] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    conversation_context: dict[str, Any] = Field(default_factory=dict)


class RouteResult(BaseModel):
    decision: PaymentDecision
    escrow_id: Optional[int] = None
    tx_hash: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.tx_hash is not None


# ------------------------------------------------------------------
# Pure policy
# ------------------------------------------------------------------


def determine_payment_method(level: Union[RiskLevel, str, None]) -> PaymentMethod:
    """critical blocks, low goes direct, everything else needs escrow."""
    resolved = _as_level(level)
    if resolved is None:
        return PaymentMethod.ESCROW
    return PAYMENT_METHODS[resolved]


def is_approved(method: PaymentMethod) -> bool:
    return method != PaymentMethod.BLOCKED


def recommended_action(level: Union[RiskLevel, str, None]) -> str:
    resolved = _as_level(level) or RiskLevel.MEDIUM
    return RECOMMENDED_ACTIONS[resolved]


def determine_verification_status(level: Union[RiskLevel, str], reputation: Reputation) -> VerificationStatus:
    resolved = _as_level(level)
    if resolved == RiskLevel.CRITICAL:
        return VerificationStatus.FLAGGED
    if resolved == RiskLevel.HIGH:
        return VerificationStatus.PENDING
    if resolved == RiskLevel.LOW and reputation.success_rate > VERIFIED_SUCCESS_RATE:
        return VerificationStatus.VERIFIED
    return VerificationStatus.UNVERIFIED


def calculate_listing_fees(profile: VendorSafetyProfile) -> ListingFees:
    level = _as_level(profile.risk_level)
    multiplier = LISTING_FEE_MULTIPLIERS.get(level, DEFAULT_FEE_MULTIPLIER)
    return ListingFees(
        basic=BASE_LISTING_FEE * multiplier,
        escrow_required=level != RiskLevel.LOW,
        security_deposit=HIGH_RISK_SECURITY_DEPOSIT if level == RiskLevel.HIGH else 0.0,
    )


def listing_requirements(profile: VendorSafetyProfile) -> list[str]:
    requirements = ["Valid product images", "Detailed description"]
    if profile.risk_level in (RiskLevel.MEDIUM, RiskLevel.HIGH):
        requirements.append("Identity verification required")
        requirements.append("Security deposit required")
    if profile.verification_status == VerificationStatus.UNVERIFIED:
        requirements.append("Wallet verification required")
    return requirements


def fallback_decision() -> PaymentDecision:
    return PaymentDecision(
        is_approved=True,
        payment_method=PaymentMethod.ESCROW,
        requires_escrow=True,
        recommended_action="Use escrow for safety",
        safety_data=fallback_assessment("Risk service unavailable - using fallback"),
    )


def fallback_vendor_profile(vendor_id: str, wallet_address: str) -> VendorSafetyProfile:
    return VendorSafetyProfile(
        vendor_id=vendor_id,
        wallet_address=wallet_address,
        safety_score=50,
        risk_level=RiskLevel.MEDIUM,
        verification_status=VerificationStatus.PENDING,
        reputation=Reputation(
            total_transactions=0,
            success_rate=0.8,
            dispute_rate=0.1,
            average_rating=4.0,
        ),
    )


def decision_for(assessment: RiskAssessment) -> PaymentDecision:
    method = determine_payment_method(assessment.risk_level)
    return PaymentDecision(
        is_approved=is_approved(method),
        payment_method=method,
        requires_escrow=method == PaymentMethod.ESCROW,
        recommended_action=recommended_action(assessment.risk_level),
        safety_data=assessment,
    )


# ------------------------------------------------------------------
# Router
# ------------------------------------------------------------------


class PaymentRouter:
    """Turns risk assessments into payment decisions and executes them.

    ``ledger`` and ``payments`` are only needed by :meth:`route`;
    ``vendor_directory`` only by :meth:`monitor_active_vendors`.
    """

    def __init__(
        self,
        aggregator: RiskSignalAggregator,
        ledger: Optional[EscrowLedger] = None,
        payments: Optional[PaymentGateway] = None,
        vendor_directory: Optional[VendorDirectory] = None,
        reputation_source: Optional[ReputationSource] = None,
        tokens: TokenRegistry | None = None,
        receipt_timeout: float = 120.0,
    ) -> None:
        self.aggregator = aggregator
        self.ledger = ledger
        self.payments = payments
        self.vendor_directory = vendor_directory
        self.reputation_source = reputation_source or NeutralReputationSource()
        self.tokens = tokens or TokenRegistry()
        self.receipt_timeout = receipt_timeout

    async def evaluate_transaction(
        self,
        buyer_wallet: str,
        vendor_wallet: str,
        amount: str,
        chain: str = "ethereum",
    ) -> PaymentDecision:
        try:
            overall = await self.aggregator.enhanced_transaction_safety(
                buyer_wallet, vendor_wallet, amount, chain
            )
        except Exception as e:
            logger.error(f"Transaction safety check failed: {e}")
            return fallback_decision()

        decision = decision_for(overall)
        logger.info(
            f"Transaction safety check: {overall.risk_level.value} - {decision.payment_method.value}"
        )
        return decision

    async def verify_vendor(
        self, vendor_id: str, wallet_address: str, chain: str = "ethereum"
    ) -> VendorSafetyProfile:
        try:
            safety = await self.aggregator.check_wallet_safety(wallet_address, chain)
            if safety.is_fallback:
                return fallback_vendor_profile(vendor_id, wallet_address)
            reputation = await self.reputation_source.get_reputation(vendor_id)
        except Exception as e:
            logger.error(f"Vendor verification failed for {vendor_id}: {e}")
            return fallback_vendor_profile(vendor_id, wallet_address)

        profile = VendorSafetyProfile(
            vendor_id=vendor_id,
            wallet_address=wallet_address,
            safety_score=safety.score,
            risk_level=safety.risk_level,
            verification_status=determine_verification_status(safety.risk_level, reputation),
            reputation=reputation,
        )
        logger.info(f"Vendor verification complete for {vendor_id}: {safety.risk_level.value}")
        return profile

    async def evaluate_listing(
        self, vendor_id: str, vendor_wallet: str, chain: str = "ethereum"
    ) -> ListingDecision:
        """Gate a product listing on the vendor's safety profile."""
        profile = await self.verify_vendor(vendor_id, vendor_wallet, chain)
        approved = (
            profile.risk_level != RiskLevel.CRITICAL
            and profile.verification_status != VerificationStatus.FLAGGED
        )
        logger.info(
            f"Product listing check for vendor {vendor_id}: {'APPROVED' if approved else 'REJECTED'}"
        )
        return ListingDecision(
            is_approved=approved,
            vendor_safety=profile,
            requirements=listing_requirements(profile),
            listing_fees=calculate_listing_fees(profile),
        )

    async def _check_vendor(self, vendor_id: str) -> list[VendorAlert]:
        location = await self.vendor_directory.get_vendor(vendor_id)
        if location is None:
            logger.warning(f"Vendor {vendor_id} not found in directory")
            return []

        profile = await self.verify_vendor(vendor_id, location.wallet_address, location.chain)
        alerts: list[VendorAlert] = []
        if profile.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            alerts.append(
                VendorAlert(
                    vendor_id=vendor_id,
                    alert_type="safety_risk",
                    severity=profile.risk_level,
                    message=f"Vendor safety risk detected: {profile.risk_level.value}",
                    action_required=(
                        "Suspend vendor immediately"
                        if profile.risk_level == RiskLevel.CRITICAL
                        else "Review vendor activity"
                    ),
                )
            )
        if profile.reputation.success_rate < REPUTATION_ALERT_THRESHOLD:
            alerts.append(
                VendorAlert(
                    vendor_id=vendor_id,
                    alert_type="reputation_drop",
                    severity=RiskLevel.MEDIUM,
                    message=f"Vendor success rate dropped to {profile.reputation.success_rate * 100:.1f}%",
                    action_required="Monitor closely and review recent transactions",
                )
            )
        return alerts

    async def monitor_active_vendors(self, vendor_ids: list[str]) -> MonitoringReport:
        if self.vendor_directory is None:
            raise ValidationError("Vendor directory is not configured")

        results = await asyncio.gather(
            *(self._check_vendor(vendor_id) for vendor_id in vendor_ids),
            return_exceptions=True,
        )
        alerts: list[VendorAlert] = []
        for vendor_id, result in zip(vendor_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Error monitoring vendor {vendor_id}: {result}")
                continue
            alerts.extend(result)

        high_risk = sum(1 for a in alerts if a.alert_type == "safety_risk")
        if high_risk == 0:
            health = "healthy"
        elif high_risk < HIGH_RISK_VENDOR_LIMIT:
            health = "moderate_risk"
        else:
            health = "high_risk"
        return MonitoringReport(alerts=alerts, overall_system_health=health)

    async def route(self, request: PaymentRequest) -> RouteResult:
        """Assess *request* and carry out the chosen payment path.

        Blocked requests never touch the chain. Direct payments execute only
        when a payment gateway is configured; otherwise the decision is
        returned for the caller to act on.
        """
        decision = await self.evaluate_transaction(
            request.buyer_wallet, request.vendor_wallet, request.amount, request.chain
        )

        if decision.payment_method == PaymentMethod.BLOCKED:
            logger.warning(
                f"Payment to {request.vendor_wallet} blocked: {decision.recommended_action}"
            )
            return RouteResult(decision=decision)

        if decision.payment_method == PaymentMethod.ESCROW:
            if self.ledger is None:
                raise ValidationError("Escrow is required but no escrow ledger is configured")
            created = await self.ledger.create(
                request.vendor_wallet,
                request.description,
                request.milestones,
                request.token,
                request.amount,
                buyer_email=request.buyer_email,
                seller_email=request.seller_email,
                metadata=request.metadata,
                conversation_context=request.conversation_context,
            )
            return RouteResult(decision=decision, escrow_id=created.escrow_id, tx_hash=created.tx_hash)

        if self.payments is None:
            logger.info("Direct payment approved; no payment gateway configured")
            return RouteResult(decision=decision)
        if not self.tokens.validate_token(request.token):
            raise ValidationError(f"Unsupported token: {request.token}")
        try:
            amount_units = parse_units(request.amount, self.tokens.decimals(request.token))
        except (ArithmeticError, ValueError) as exc:
            raise ValidationError(f"Invalid amount: {exc}") from exc
        tx = await self.payments.make_payment(request.vendor_wallet, amount_units, request.token)
        await tx.wait(self.receipt_timeout)
        logger.info(f"Direct payment to {request.vendor_wallet} sent in tx {tx.hash}")
        return RouteResult(decision=decision, tx_hash=tx.hash)
