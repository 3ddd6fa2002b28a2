"""
Escrow ledger: chain-first lifecycle operations against an in-memory mirror store.
"""

import asyncio
import gc

import pytest

from escrow_guard.chain.chains import ZERO_ADDRESS
from escrow_guard.errors import (
    EscrowIdExtractionError,
    InvalidTransitionError,
    MirrorNotFoundError,
    ValidationError,
)
from escrow_guard.escrow.ledger import EscrowLedger, metadata_hash
from escrow_guard.storage.models import EscrowStatus, Milestone, MirrorStatus, TransactionType

from conftest import BUYER, SELLER, STRANGER, USDC


@pytest.fixture
def ledger(escrow_gateway, store, dispute_gateway) -> EscrowLedger:
    return EscrowLedger(escrow_gateway, store, disputes=dispute_gateway)


async def _create(ledger, **kwargs):
    params = dict(
        seller=SELLER,
        description="Logo design",
        amount="1.5",
        buyer_email="Buyer@Example.com",
        seller_email="seller@example.com",
        metadata={"order": "A-1"},
    )
    params.update(kwargs)
    return await ledger.create(**params)


def _statuses(mirror):
    return [entry.status for entry in mirror.timeline]


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_persists_pending_mirror(self, ledger, escrow_gateway, store):
        """A successful create stores a pending mirror keyed by the event's escrow id"""
        created = await _create(ledger)

        assert created.escrow_id == 42
        mirror = await store.get_by_escrow_id(42)
        assert mirror is not None
        assert mirror.status is MirrorStatus.PENDING
        assert mirror.transaction_id == created.tx_hash
        assert mirror.buyer_email == "buyer@example.com"
        assert mirror.currency == "ETH"
        assert mirror.type is TransactionType.MARKETPLACE
        assert mirror.timeline[0].actor == "buyer@example.com"

        method, args, value = escrow_gateway.calls[0]
        assert method == "createEscrow"
        assert args[2] == metadata_hash({"order": "A-1"})
        assert args[5] == 1_500_000_000_000_000_000
        assert value == 1_500_000_000_000_000_000

    @pytest.mark.asyncio
    async def test_create_with_milestones_is_a_service_escrow(self, ledger, escrow_gateway):
        created = await _create(
            ledger,
            milestones=[{"amount": "1.0", "description": "draft"}, Milestone(amount="0.5", description="final")],
        )

        assert created.mirror.type is TransactionType.SERVICE
        assert len(created.mirror.milestones) == 2
        _, args, _ = escrow_gateway.calls[0]
        assert args[3][0] == (1_000_000_000_000_000_000, "draft", False, 0)

    @pytest.mark.asyncio
    async def test_erc20_create_approves_first_and_sends_no_value(self, ledger, escrow_gateway):
        await _create(ledger, token=USDC, amount="25")

        assert escrow_gateway.approvals == [(USDC, 25_000_000)]
        method, args, value = escrow_gateway.calls[0]
        assert method == "createEscrow"
        assert args[5] == 25_000_000
        assert value == 0

    @pytest.mark.asyncio
    async def test_missing_event_requires_manual_reconciliation(self, ledger, escrow_gateway, store):
        """The transaction went through but no id came back: surface it, store nothing"""
        escrow_gateway.events = []

        with pytest.raises(EscrowIdExtractionError) as exc_info:
            await _create(ledger)

        assert "manual reconciliation" in str(exc_info.value)
        assert exc_info.value.tx_hash.startswith("0x")
        assert await store.list_by_status("pending") == []

    @pytest.mark.asyncio
    async def test_undecodable_logs_raise_extraction_error(self, ledger, escrow_gateway):
        escrow_gateway.parse_error = ValueError("bad log data")

        with pytest.raises(EscrowIdExtractionError):
            await _create(ledger)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", [0, -1, True, "42"])
    async def test_invalid_escrow_id_is_rejected(self, escrow_gateway, store, bad_id):
        escrow_gateway.next_escrow_id = bad_id
        ledger = EscrowLedger(escrow_gateway, store)

        with pytest.raises(EscrowIdExtractionError):
            await _create(ledger)

    @pytest.mark.asyncio
    async def test_invalid_seller_never_reaches_chain(self, ledger, escrow_gateway):
        with pytest.raises(ValidationError):
            await _create(ledger, seller="not-an-address")
        assert escrow_gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_token_is_rejected(self, ledger, escrow_gateway):
        with pytest.raises(ValidationError):
            await _create(ledger, token=STRANGER)
        assert escrow_gateway.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1", "abc", "0.0000000000000000001"])
    async def test_bad_amounts_are_rejected(self, ledger, escrow_gateway, amount):
        with pytest.raises(ValidationError):
            await _create(ledger, amount=amount)
        assert escrow_gateway.calls == []


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_fund_then_release_completes(self, ledger, escrow_gateway):
        await _create(ledger)

        await ledger.fund(42, "1.5")
        await ledger.release(42)

        mirror = await ledger.get_mirror(42)
        assert mirror.status is MirrorStatus.COMPLETED
        assert _statuses(mirror) == [MirrorStatus.PENDING, MirrorStatus.FUNDED, MirrorStatus.COMPLETED]
        assert [c[0] for c in escrow_gateway.calls] == ["createEscrow", "fundEscrow", "releasePayment"]
        assert escrow_gateway.calls[1][2] == 1_500_000_000_000_000_000

    @pytest.mark.asyncio
    async def test_release_from_pending_is_refused(self, ledger, escrow_gateway):
        """Chain agrees the escrow is unfunded, so no release is submitted"""
        await _create(ledger)

        with pytest.raises(InvalidTransitionError):
            await ledger.release(42)
        assert "releasePayment" not in [c[0] for c in escrow_gateway.calls]

    @pytest.mark.asyncio
    async def test_stale_mirror_is_reconciled_before_refusing(self, ledger, escrow_gateway):
        """Funded out of band: the mirror catches up, then the release goes through"""
        await _create(ledger)
        escrow_gateway.set_status(42, EscrowStatus.FUNDED)

        await ledger.release(42)

        mirror = await ledger.get_mirror(42)
        assert _statuses(mirror) == [MirrorStatus.PENDING, MirrorStatus.FUNDED, MirrorStatus.COMPLETED]
        assert mirror.timeline[1].actor == "chain-sync"

    @pytest.mark.asyncio
    async def test_milestones_complete_only_when_all_released(self, ledger):
        await _create(
            ledger,
            milestones=[Milestone(amount="1.0", description="a"), Milestone(amount="0.5", description="b")],
        )
        await ledger.fund(42, "1.5")

        await ledger.release(42, milestone_index=0)
        mirror = await ledger.get_mirror(42)
        assert mirror.status is MirrorStatus.FUNDED
        assert mirror.milestones[0].completed
        assert mirror.milestones[0].completed_at > 0
        assert mirror.timeline[-1].status is MirrorStatus.FUNDED
        assert mirror.timeline[-1].description == "Milestone 0 released (1/2)"

        with pytest.raises(ValidationError):
            await ledger.release(42, milestone_index=0)
        with pytest.raises(ValidationError):
            await ledger.release(42, milestone_index=5)

        await ledger.release(42, milestone_index=1)
        mirror = await ledger.get_mirror(42)
        assert mirror.status is MirrorStatus.COMPLETED
        assert _statuses(mirror) == [
            MirrorStatus.PENDING,
            MirrorStatus.FUNDED,
            MirrorStatus.FUNDED,
            MirrorStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_refund_cancels(self, ledger):
        await _create(ledger)
        await ledger.refund(42, actor="support")

        mirror = await ledger.get_mirror(42)
        assert mirror.status is MirrorStatus.CANCELLED
        assert mirror.timeline[-1].actor == "support"

    @pytest.mark.asyncio
    async def test_concurrent_releases_submit_once(self, ledger, escrow_gateway):
        """Per-escrow serialization: the loser sees the completed state"""
        await _create(ledger)
        await ledger.fund(42, "1.5")

        results = await asyncio.gather(ledger.release(42), ledger.release(42), return_exceptions=True)

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidTransitionError)
        assert [c[0] for c in escrow_gateway.calls].count("releasePayment") == 1

    @pytest.mark.asyncio
    async def test_locks_are_not_kept_after_operations(self, ledger):
        await _create(ledger)
        await ledger.fund(42, "1.5")
        await asyncio.gather(ledger.release(42), ledger.reconcile(42))

        gc.collect()
        assert len(ledger._locks) == 0

    @pytest.mark.asyncio
    async def test_unknown_escrow_has_no_mirror(self, ledger):
        with pytest.raises(MirrorNotFoundError):
            await ledger.fund(99, "1")


class TestDisputes:

    @pytest.mark.asyncio
    async def test_dispute_requires_reason(self, ledger):
        await _create(ledger)
        await ledger.fund(42, "1.5")

        with pytest.raises(ValidationError):
            await ledger.dispute(42, "   ")

    @pytest.mark.asyncio
    async def test_dispute_and_evidence(self, ledger, dispute_gateway):
        await _create(ledger)
        await ledger.fund(42, "1.5")

        await ledger.dispute(42, "Item not delivered", evidence=["tracking.pdf"])
        await ledger.open_dispute_case(42, "chat-log")
        await ledger.add_evidence(42, "photo.jpg")

        mirror = await ledger.get_mirror(42)
        assert mirror.status is MirrorStatus.DISPUTED
        assert mirror.dispute.reason == "Item not delivered"
        assert mirror.dispute.evidence == ["tracking.pdf", "chat-log", "photo.jpg"]
        assert [c[0] for c in dispute_gateway.calls] == ["openDispute", "addEvidence"]

    @pytest.mark.asyncio
    async def test_seller_win_resolves_then_completes(self, ledger, dispute_gateway):
        await _create(ledger)
        await ledger.fund(42, "1.5")
        await ledger.dispute(42, "Late delivery")

        await ledger.resolve_dispute(42, SELLER, arbitrator="arbiter@example.com")

        mirror = await ledger.get_mirror(42)
        assert _statuses(mirror)[-3:] == [MirrorStatus.DISPUTED, MirrorStatus.RESOLVED, MirrorStatus.COMPLETED]
        assert mirror.dispute.resolution == "seller wins"
        assert mirror.dispute.resolved_at is not None
        assert dispute_gateway.calls[-1] == ("resolveDispute", (42, SELLER))

        # Chain now reports RESOLVED; the settled mirror stays as it is.
        reconciled = await ledger.reconcile(42)
        assert reconciled.status is MirrorStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_buyer_win_cancels(self, ledger):
        await _create(ledger)
        await ledger.fund(42, "1.5")
        await ledger.dispute(42, "Wrong item")

        await ledger.resolve_dispute(42, BUYER)

        assert (await ledger.get_mirror(42)).status is MirrorStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_third_party_winner_is_rejected_before_chain_call(self, ledger, dispute_gateway):
        await _create(ledger)
        await ledger.fund(42, "1.5")
        await ledger.dispute(42, "Wrong item")

        with pytest.raises(ValidationError):
            await ledger.resolve_dispute(42, STRANGER)
        assert dispute_gateway.calls == []
        assert (await ledger.get_mirror(42)).status is MirrorStatus.DISPUTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["refund", "release", "fund"])
    async def test_externally_resolved_escrow_refuses_lifecycle_calls(
        self, ledger, escrow_gateway, operation
    ):
        """Resolved elsewhere: only dispute resolution may settle the mirror"""
        await _create(ledger)
        await ledger.fund(42, "1.5")
        await ledger.dispute(42, "Never shipped")
        escrow_gateway.set_status(42, EscrowStatus.RESOLVED)
        assert (await ledger.reconcile(42)).status is MirrorStatus.RESOLVED
        calls_before = list(escrow_gateway.calls)

        with pytest.raises(InvalidTransitionError):
            if operation == "fund":
                await ledger.fund(42, "1.5")
            else:
                await getattr(ledger, operation)(42)

        assert escrow_gateway.calls == calls_before
        assert (await ledger.get_mirror(42)).status is MirrorStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_dispute_calls_need_dispute_contract(self, escrow_gateway, store):
        ledger = EscrowLedger(escrow_gateway, store)
        with pytest.raises(ValidationError):
            await ledger.add_evidence(42, "x")


class TestReconcile:

    @pytest.mark.asyncio
    async def test_chain_ahead_fills_intermediate_states(self, ledger, escrow_gateway):
        await _create(ledger)
        escrow_gateway.set_status(42, EscrowStatus.COMPLETED)

        mirror = await ledger.reconcile(42)

        assert _statuses(mirror) == [MirrorStatus.PENDING, MirrorStatus.FUNDED, MirrorStatus.COMPLETED]
        assert all(e.actor == "chain-sync" for e in mirror.timeline[1:])

    @pytest.mark.asyncio
    async def test_contradiction_is_overwritten_from_chain(self, ledger, escrow_gateway):
        await _create(ledger)
        await ledger.refund(42)
        escrow_gateway.set_status(42, EscrowStatus.EXPIRED)

        mirror = await ledger.reconcile(42)

        assert mirror.status is MirrorStatus.EXPIRED
        assert "was cancelled" in mirror.timeline[-1].description

    @pytest.mark.asyncio
    async def test_in_sync_mirror_is_untouched(self, ledger):
        created = await _create(ledger)
        mirror = await ledger.reconcile(42)
        assert mirror.timeline == created.mirror.timeline


class TestReads:

    @pytest.mark.asyncio
    async def test_metadata_hash_matches_stored_metadata(self, ledger):
        await _create(ledger)
        assert await ledger.verify_metadata(42) is True
        assert await ledger.verify_metadata(42, {"order": "tampered"}) is False

    @pytest.mark.asyncio
    async def test_token_support_and_milestones(self, ledger):
        await _create(ledger, milestones=[Milestone(amount="1.5", description="all")])
        assert await ledger.is_token_supported(USDC) is True
        assert await ledger.is_token_supported(STRANGER) is False
        assert len(await ledger.get_milestones(42)) == 1
        assert (await ledger.get_escrow(42)).token == ZERO_ADDRESS
