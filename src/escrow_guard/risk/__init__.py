"""Risk signal providers and the aggregator that scores them."""

from escrow_guard.risk.aggregator import RiskSignalAggregator
from escrow_guard.risk.models import PaymentDecision, PaymentMethod, RiskAssessment, RiskLevel
from escrow_guard.risk.providers import (
    DDxyzSignalProvider,
    NullSignalProvider,
    RiskSignal,
    SignalProvider,
    ToolCallSignalProvider,
    build_signal_providers,
)

__all__ = [
    "RiskSignalAggregator",
    "PaymentDecision",
    "PaymentMethod",
    "RiskAssessment",
    "RiskLevel",
    "DDxyzSignalProvider",
    "NullSignalProvider",
    "RiskSignal",
    "SignalProvider",
    "ToolCallSignalProvider",
    "build_signal_providers",
]
