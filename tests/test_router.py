"""
Payment routing: risk-based method selection, vendor checks, listings,
monitoring and execution of the chosen path.
"""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from escrow_guard.errors import ValidationError
from escrow_guard.risk.aggregator import RiskSignalAggregator
from escrow_guard.risk.models import (
    PaymentMethod,
    Reputation,
    RiskLevel,
    VendorSafetyProfile,
    VerificationStatus,
)
from escrow_guard.risk.providers import NullSignalProvider, RiskSignal
from escrow_guard.routing.router import (
    PaymentRequest,
    PaymentRouter,
    StaticVendorDirectory,
    calculate_listing_fees,
    determine_payment_method,
    determine_verification_status,
    listing_requirements,
)

from conftest import BUYER, SELLER, STRANGER, USDC, FakeSignalProvider

CLEAN = RiskSignal(risk_score=0)
MEDIUM = RiskSignal(risk_score=25)
HIGH = RiskSignal(risk_level="high", reasons=["scam reports"])
CRITICAL = RiskSignal(risk_level="critical", reasons=["sanctioned"])


def _router(signals=None, default=CLEAN, **kwargs) -> PaymentRouter:
    provider = FakeSignalProvider(signals=signals or {}, default=default)
    return PaymentRouter(RiskSignalAggregator([provider]), **kwargs)


class _Reputations:
    def __init__(self, table):
        self.table = table

    async def get_reputation(self, vendor_id):
        return self.table.get(vendor_id, Reputation())


def _profile(level, status=VerificationStatus.UNVERIFIED) -> VendorSafetyProfile:
    return VendorSafetyProfile(
        vendor_id="v1",
        wallet_address=SELLER,
        safety_score=50,
        risk_level=level,
        verification_status=status,
    )


class TestPolicy:

    @pytest.mark.parametrize(
        "level,method",
        [
            (RiskLevel.LOW, PaymentMethod.DIRECT),
            (RiskLevel.MEDIUM, PaymentMethod.ESCROW),
            (RiskLevel.HIGH, PaymentMethod.ESCROW),
            (RiskLevel.CRITICAL, PaymentMethod.BLOCKED),
            ("critical", PaymentMethod.BLOCKED),
            ("unheard-of", PaymentMethod.ESCROW),
            (None, PaymentMethod.ESCROW),
        ],
    )
    def test_payment_method(self, level, method):
        assert determine_payment_method(level) is method

    @pytest.mark.parametrize(
        "level,success_rate,status",
        [
            (RiskLevel.CRITICAL, 1.0, VerificationStatus.FLAGGED),
            (RiskLevel.HIGH, 1.0, VerificationStatus.PENDING),
            (RiskLevel.LOW, 0.99, VerificationStatus.VERIFIED),
            (RiskLevel.LOW, 0.95, VerificationStatus.UNVERIFIED),
            (RiskLevel.MEDIUM, 1.0, VerificationStatus.UNVERIFIED),
        ],
    )
    def test_verification_status(self, level, success_rate, status):
        reputation = Reputation(success_rate=success_rate)
        assert determine_verification_status(level, reputation) is status

    def test_listing_fees_by_level(self):
        low = calculate_listing_fees(_profile(RiskLevel.LOW))
        high = calculate_listing_fees(_profile(RiskLevel.HIGH))
        critical = calculate_listing_fees(_profile(RiskLevel.CRITICAL))

        assert low.basic == pytest.approx(0.01)
        assert not low.escrow_required
        assert low.security_deposit == 0.0
        assert high.basic == pytest.approx(0.02)
        assert high.escrow_required
        assert high.security_deposit == 100.0
        assert critical.basic == 0.0

    def test_listing_requirements(self):
        assert listing_requirements(_profile(RiskLevel.LOW, VerificationStatus.VERIFIED)) == [
            "Valid product images",
            "Detailed description",
        ]
        medium = listing_requirements(_profile(RiskLevel.MEDIUM))
        assert "Identity verification required" in medium
        assert "Security deposit required" in medium
        assert medium[-1] == "Wallet verification required"


class TestEvaluateTransaction:

    @pytest.mark.asyncio
    async def test_clean_parties_go_direct(self):
        decision = await _router().evaluate_transaction(BUYER, SELLER, "1.0")
        assert decision.payment_method is PaymentMethod.DIRECT
        assert decision.is_approved
        assert not decision.requires_escrow
        assert decision.recommended_action == "Transaction approved - proceed with confidence"

    @pytest.mark.asyncio
    async def test_critical_vendor_blocks(self):
        decision = await _router({SELLER: CRITICAL}).evaluate_transaction(BUYER, SELLER, "1.0")
        assert decision.payment_method is PaymentMethod.BLOCKED
        assert not decision.is_approved
        assert decision.safety_data.risk_level is RiskLevel.CRITICAL
        assert decision.safety_data.reasons == ["sanctioned"]

    @pytest.mark.asyncio
    async def test_risky_buyer_requires_escrow(self):
        decision = await _router({BUYER: HIGH}).evaluate_transaction(BUYER, SELLER, "1.0")
        assert decision.payment_method is PaymentMethod.ESCROW
        assert decision.requires_escrow
        assert decision.is_approved

    @pytest.mark.asyncio
    async def test_unavailable_signals_require_escrow(self):
        router = PaymentRouter(RiskSignalAggregator([NullSignalProvider()]))
        decision = await router.evaluate_transaction(BUYER, SELLER, "1.0")
        assert decision.payment_method is PaymentMethod.ESCROW
        assert decision.safety_data.is_fallback

    @pytest.mark.asyncio
    async def test_decision_latency_is_one_slow_signal(self):
        provider = FakeSignalProvider(default=CLEAN, delay=0.2)
        router = PaymentRouter(RiskSignalAggregator([provider]))

        started = time.monotonic()
        decision = await router.evaluate_transaction(BUYER, SELLER, "1.0")
        elapsed = time.monotonic() - started

        assert decision.payment_method is PaymentMethod.DIRECT
        assert elapsed < 0.45

    @pytest.mark.asyncio
    async def test_unexpected_error_yields_escrow_fallback(self):
        router = _router()
        router.aggregator.enhanced_transaction_safety = AsyncMock(side_effect=RuntimeError("boom"))

        decision = await router.evaluate_transaction(BUYER, SELLER, "1.0")

        assert decision.payment_method is PaymentMethod.ESCROW
        assert decision.is_approved
        assert decision.recommended_action == "Use escrow for safety"
        assert decision.safety_data.score == 50


class TestVendors:

    @pytest.mark.asyncio
    async def test_clean_vendor_with_history_is_verified(self):
        router = _router(reputation_source=_Reputations({"v1": Reputation(total_transactions=40, success_rate=0.99)}))
        profile = await router.verify_vendor("v1", SELLER)

        assert profile.risk_level is RiskLevel.LOW
        assert profile.safety_score == 100
        assert profile.verification_status is VerificationStatus.VERIFIED
        assert profile.reputation.total_transactions == 40

    @pytest.mark.asyncio
    async def test_unverifiable_vendor_gets_fallback_profile(self):
        router = PaymentRouter(RiskSignalAggregator([NullSignalProvider()]))
        profile = await router.verify_vendor("v1", SELLER)

        assert profile.safety_score == 50
        assert profile.risk_level is RiskLevel.MEDIUM
        assert profile.verification_status is VerificationStatus.PENDING
        assert profile.reputation.success_rate == 0.8

    @pytest.mark.asyncio
    async def test_reputation_failure_gets_fallback_profile(self):
        reputation = MagicMock()
        reputation.get_reputation = AsyncMock(side_effect=ConnectionError("db down"))
        profile = await _router(reputation_source=reputation).verify_vendor("v1", SELLER)
        assert profile.verification_status is VerificationStatus.PENDING
        assert profile.safety_score == 50

    @pytest.mark.asyncio
    async def test_listing_approved_for_clean_vendor(self):
        listing = await _router().evaluate_listing("v1", SELLER)
        assert listing.is_approved
        assert listing.vendor_safety.verification_status is VerificationStatus.VERIFIED
        assert not listing.listing_fees.escrow_required

    @pytest.mark.asyncio
    async def test_listing_rejected_for_critical_vendor(self):
        listing = await _router({SELLER: CRITICAL}).evaluate_listing("v1", SELLER)
        assert not listing.is_approved
        assert listing.vendor_safety.verification_status is VerificationStatus.FLAGGED

    @pytest.mark.asyncio
    async def test_listing_for_high_risk_vendor_needs_deposit(self):
        listing = await _router({SELLER: HIGH}).evaluate_listing("v1", SELLER)
        assert listing.is_approved
        assert listing.listing_fees.security_deposit == 100.0
        assert "Security deposit required" in listing.requirements


class TestMonitoring:

    @pytest.mark.asyncio
    async def test_requires_directory(self):
        with pytest.raises(ValidationError):
            await _router().monitor_active_vendors(["v1"])

    @pytest.mark.asyncio
    async def test_alerts_and_health(self):
        directory = StaticVendorDirectory()
        directory.add("bad", SELLER)
        directory.add("slipping", STRANGER)
        router = _router(
            {SELLER: CRITICAL},
            vendor_directory=directory,
            reputation_source=_Reputations({"slipping": Reputation(success_rate=0.5)}),
        )

        report = await router.monitor_active_vendors(["bad", "slipping", "missing"])

        by_vendor = {(a.vendor_id, a.alert_type): a for a in report.alerts}
        assert set(by_vendor) == {("bad", "safety_risk"), ("slipping", "reputation_drop")}
        assert by_vendor[("bad", "safety_risk")].action_required == "Suspend vendor immediately"
        assert by_vendor[("slipping", "reputation_drop")].message == "Vendor success rate dropped to 50.0%"
        assert report.overall_system_health == "moderate_risk"

    @pytest.mark.asyncio
    async def test_many_risky_vendors_is_high_risk(self):
        directory = StaticVendorDirectory()
        for vendor_id in ("a", "b", "c"):
            directory.add(vendor_id, SELLER)
        router = _router({SELLER: HIGH}, vendor_directory=directory)

        report = await router.monitor_active_vendors(["a", "b", "c"])

        assert len(report.alerts) == 3
        assert all(a.action_required == "Review vendor activity" for a in report.alerts)
        assert report.overall_system_health == "high_risk"

    @pytest.mark.asyncio
    async def test_quiet_fleet_is_healthy(self):
        directory = StaticVendorDirectory()
        directory.add("ok", SELLER)
        report = await _router(vendor_directory=directory).monitor_active_vendors(["ok"])
        assert report.alerts == []
        assert report.overall_system_health == "healthy"


class TestRoute:

    def _ledger(self):
        ledger = MagicMock()
        ledger.create = AsyncMock(return_value=SimpleNamespace(escrow_id=42, tx_hash="0xabc"))
        return ledger

    def _payments(self):
        handle = MagicMock()
        handle.hash = "0xfeed"
        handle.wait = AsyncMock(return_value={"status": 1})
        payments = MagicMock()
        payments.make_payment = AsyncMock(return_value=handle)
        return payments

    @pytest.mark.asyncio
    async def test_blocked_never_touches_chain(self):
        ledger, payments = self._ledger(), self._payments()
        router = _router({SELLER: CRITICAL}, ledger=ledger, payments=payments)

        result = await router.route(PaymentRequest(buyer_wallet=BUYER, vendor_wallet=SELLER, amount="1.0"))

        assert result.decision.payment_method is PaymentMethod.BLOCKED
        assert not result.executed
        ledger.create.assert_not_awaited()
        payments.make_payment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_escrow_path_creates_escrow(self):
        ledger = self._ledger()
        router = _router(default=MEDIUM, ledger=ledger)
        request = PaymentRequest(
            buyer_wallet=BUYER,
            vendor_wallet=SELLER,
            amount="5",
            token=USDC,
            description="logo design",
            buyer_email="buyer@example.com",
            seller_email="seller@example.com",
        )

        result = await router.route(request)

        assert result.decision.payment_method is PaymentMethod.ESCROW
        assert result.escrow_id == 42
        assert result.tx_hash == "0xabc"
        args, kwargs = ledger.create.await_args
        assert args[:3] == (SELLER, "logo design", [])
        assert args[3] == USDC and args[4] == "5"
        assert kwargs["buyer_email"] == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_escrow_without_ledger_is_rejected(self):
        router = _router(default=MEDIUM)
        with pytest.raises(ValidationError):
            await router.route(PaymentRequest(buyer_wallet=BUYER, vendor_wallet=SELLER, amount="1"))

    @pytest.mark.asyncio
    async def test_direct_path_pays(self):
        payments = self._payments()
        router = _router(payments=payments, receipt_timeout=9)

        result = await router.route(PaymentRequest(buyer_wallet=BUYER, vendor_wallet=SELLER, amount="0.5"))

        assert result.executed
        assert result.tx_hash == "0xfeed"
        payments.make_payment.assert_awaited_once()
        assert payments.make_payment.await_args.args[:2] == (SELLER, 5 * 10**17)
        payments.make_payment.return_value.wait.assert_awaited_once_with(9)

    @pytest.mark.asyncio
    async def test_direct_uses_token_decimals(self):
        payments = self._payments()
        router = _router(payments=payments)
        await router.route(PaymentRequest(buyer_wallet=BUYER, vendor_wallet=SELLER, amount="2.5", token=USDC))
        assert payments.make_payment.await_args.args == (SELLER, 2_500_000, USDC)

    @pytest.mark.asyncio
    async def test_direct_without_gateway_returns_decision(self):
        result = await _router().route(PaymentRequest(buyer_wallet=BUYER, vendor_wallet=SELLER, amount="1"))
        assert result.decision.payment_method is PaymentMethod.DIRECT
        assert not result.executed

    @pytest.mark.asyncio
    async def test_direct_with_unknown_token_is_rejected(self):
        router = _router(payments=self._payments())
        request = PaymentRequest(buyer_wallet=BUYER, vendor_wallet=SELLER, amount="1", token=STRANGER)
        with pytest.raises(ValidationError):
            await router.route(request)
