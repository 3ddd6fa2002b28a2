"""Pydantic models for on-chain escrow records and their local mirror."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_units(value: int, decimals: int = 18) -> str:
    """Render an integer token amount in whole-token units."""
    scaled = Decimal(int(value)).scaleb(-decimals)
    text = format(scaled.normalize(), "f")
    return text if "." in text else f"{text}.0"


def parse_units(amount: str | Decimal, decimals: int = 18) -> int:
    """Convert a decimal token amount to its integer base-unit value."""
    value = Decimal(str(amount)).scaleb(decimals)
    if value != value.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(value)


def _field(raw: Any, index: int, name: str) -> Any:
    """Read a struct member from a positional tuple or a mapping."""
    if isinstance(raw, dict):
        return raw[name]
    return raw[index]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EscrowStatus(IntEnum):
    """The escrow contract's ``status`` enum (uint8 order)."""

    CREATED = 0
    FUNDED = 1
    COMPLETED = 2
    DISPUTED = 3
    CANCELLED = 4
    EXPIRED = 5
    RESOLVED = 6


class MirrorStatus(str, Enum):
    PENDING = "pending"
    FUNDED = "funded"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @classmethod
    def from_chain(cls, status: EscrowStatus) -> MirrorStatus:
        return _CHAIN_TO_MIRROR[status]


_CHAIN_TO_MIRROR = {
    EscrowStatus.CREATED: MirrorStatus.PENDING,
    EscrowStatus.FUNDED: MirrorStatus.FUNDED,
    EscrowStatus.COMPLETED: MirrorStatus.COMPLETED,
    EscrowStatus.DISPUTED: MirrorStatus.DISPUTED,
    EscrowStatus.CANCELLED: MirrorStatus.CANCELLED,
    EscrowStatus.EXPIRED: MirrorStatus.EXPIRED,
    EscrowStatus.RESOLVED: MirrorStatus.RESOLVED,
}


class TransactionType(str, Enum):
    MARKETPLACE = "marketplace"
    SERVICE = "service"


# ---------------------------------------------------------------------------
# On-chain records
# ---------------------------------------------------------------------------

class Milestone(BaseModel):
    """A partial deliverable; amounts are whole-token decimal strings."""

    amount: str
    description: str = ""
    completed: bool = False
    completed_at: int = 0

    @classmethod
    def from_chain(cls, raw: Any, decimals: int = 18) -> Milestone:
        return cls(
            amount=format_units(_field(raw, 0, "amount"), decimals),
            description=_field(raw, 1, "description"),
            completed=bool(_field(raw, 2, "completed")),
            completed_at=int(_field(raw, 3, "completedAt")),
        )

    def to_chain(self, decimals: int = 18) -> tuple:
        return (
            parse_units(self.amount, decimals),
            self.description,
            self.completed,
            int(self.completed_at),
        )


class EscrowRecord(BaseModel):
    """Authoritative escrow state as returned by ``getEscrow``."""

    id: int
    buyer: str
    seller: str
    amount: str
    platform_fee: str
    created_at: int
    expires_at: int
    status: EscrowStatus
    description: str
    metadata_hash: str
    token: str

    @classmethod
    def from_chain(cls, raw: Any, decimals: int = 18) -> EscrowRecord:
        metadata_hash = _field(raw, 9, "metadataHash")
        if isinstance(metadata_hash, (bytes, bytearray)):
            metadata_hash = "0x" + bytes(metadata_hash).hex()
        return cls(
            id=int(_field(raw, 0, "id")),
            buyer=_field(raw, 1, "buyer"),
            seller=_field(raw, 2, "seller"),
            amount=format_units(_field(raw, 3, "amount"), decimals),
            platform_fee=format_units(_field(raw, 4, "platformFee"), decimals),
            created_at=int(_field(raw, 5, "createdAt")),
            expires_at=int(_field(raw, 6, "expiresAt")),
            status=EscrowStatus(int(_field(raw, 7, "status"))),
            description=_field(raw, 8, "description"),
            metadata_hash=metadata_hash,
            token=_field(raw, 10, "token"),
        )


class DisputeCase(BaseModel):
    """A case on the dispute resolution contract (``disputes(bytes32)``)."""

    escrow_id: str
    buyer: str
    seller: str
    amount: str
    token: str
    status: int
    buyer_evidence: str = ""
    seller_evidence: str = ""

    @classmethod
    def from_chain(cls, raw: Sequence[Any]) -> DisputeCase:
        escrow_key = raw[0]
        if isinstance(escrow_key, (bytes, bytearray)):
            escrow_key = "0x" + bytes(escrow_key).hex()
        return cls(
            escrow_id=escrow_key,
            buyer=raw[1],
            seller=raw[2],
            amount=format_units(raw[3]),
            token=raw[4],
            status=int(raw[5]),
            buyer_evidence=raw[6],
            seller_evidence=raw[7],
        )


# ---------------------------------------------------------------------------
# Off-chain mirror
# ---------------------------------------------------------------------------

class TimelineEntry(BaseModel):
    status: MirrorStatus
    timestamp: datetime = Field(default_factory=_utcnow)
    description: str = ""
    actor: Optional[str] = None


class DisputeRecord(BaseModel):
    reason: str
    evidence: list[str] = Field(default_factory=list)
    arbitrator: Optional[str] = None
    resolution: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None


class TransactionMirror(BaseModel):
    """Best-effort local replica of an escrow; the chain always wins."""

    transaction_id: str
    escrow_id: int
    buyer_email: str
    seller_email: str
    amount: str
    currency: str = "ETH"
    token: str = ""
    status: MirrorStatus = MirrorStatus.PENDING
    type: TransactionType = TransactionType.MARKETPLACE
    metadata: dict[str, Any] = Field(default_factory=dict)
    conversation_context: dict[str, Any] = Field(default_factory=dict)
    milestones: list[Milestone] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    dispute: Optional[DisputeRecord] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def record(self, status: MirrorStatus, description: str, actor: str | None = "system") -> None:
        """Move to *status* and append the matching timeline entry."""
        self.status = status
        self.timeline.append(TimelineEntry(status=status, description=description, actor=actor))
        self.updated_at = _utcnow()
