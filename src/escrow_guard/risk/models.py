"""Pydantic models for risk assessments and payment decisions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def priority(self) -> int:
        return _PRIORITY[self]


_PRIORITY = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class PaymentMethod(str, Enum):
    DIRECT = "direct"
    ESCROW = "escrow"
    BLOCKED = "blocked"


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    FLAGGED = "flagged"


class AssessmentMetadata(BaseModel):
    providers: list[str] = Field(default_factory=list)
    response_time_ms: int = 0
    timestamp: datetime = Field(default_factory=_utcnow)


class RiskAssessment(BaseModel):
    risk_level: RiskLevel
    score: int = Field(ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)
    recommendation: str = ""
    metadata: AssessmentMetadata = Field(default_factory=AssessmentMetadata)

    @property
    def is_fallback(self) -> bool:
        return self.metadata.providers == ["fallback"]


class PaymentDecision(BaseModel):
    is_approved: bool
    payment_method: PaymentMethod
    requires_escrow: bool
    recommended_action: str
    safety_data: RiskAssessment


class Reputation(BaseModel):
    total_transactions: int = 0
    success_rate: float = 1.0
    dispute_rate: float = 0.0
    average_rating: float = 5.0


class VendorSafetyProfile(BaseModel):
    vendor_id: str
    wallet_address: str
    safety_score: int
    risk_level: RiskLevel
    verification_status: VerificationStatus
    last_checked: datetime = Field(default_factory=_utcnow)
    reputation: Reputation = Field(default_factory=Reputation)


class ListingFees(BaseModel):
    basic: float
    escrow_required: bool
    security_deposit: float


class ListingDecision(BaseModel):
    is_approved: bool
    vendor_safety: VendorSafetyProfile
    requirements: list[str]
    listing_fees: ListingFees


class VendorAlert(BaseModel):
    vendor_id: str
    alert_type: str  # 'reputation_drop' | 'safety_risk'
    severity: RiskLevel
    message: str
    action_required: str


class MonitoringReport(BaseModel):
    alerts: list[VendorAlert] = Field(default_factory=list)
    overall_system_health: str = "healthy"
    checked_at: datetime = Field(default_factory=_utcnow)


class VendorLocation(BaseModel):
    """Where a vendor receives funds."""

    wallet_address: str
    chain: str = "ethereum"
    vendor_id: Optional[str] = None
