"""Escrow lifecycle driver: on-chain authoritative, off-chain mirrored.

Every lifecycle operation issues its contract call first and only then
touches the mirror, so a failed call leaves the mirror untouched. Writes
on the same escrow id are serialized with a per-id lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Sequence

from web3 import Web3

from escrow_guard.chain.chains import ZERO_ADDRESS
from escrow_guard.chain.tokens import TokenRegistry
from escrow_guard.errors import (
    EscrowIdExtractionError,
    InvalidTransitionError,
    MirrorNotFoundError,
    ValidationError,
)
from escrow_guard.escrow.states import is_valid_transition, path_between
from escrow_guard.storage.models import (
    DisputeCase,
    DisputeRecord,
    EscrowRecord,
    Milestone,
    MirrorStatus,
    TransactionMirror,
    TransactionType,
    parse_units,
)

if TYPE_CHECKING:
    from escrow_guard.chain.gateway import DisputeGateway, EscrowGateway
    from escrow_guard.storage.database import MirrorStore

logger = logging.getLogger("escrow_guard.escrow.ledger")

CHAIN_SYNC_ACTOR = "chain-sync"


def metadata_hash(metadata: dict[str, Any] | None) -> bytes:
    """keccak256 of the compact JSON encoding of *metadata*."""
    encoded = json.dumps(metadata or {}, separators=(",", ":"), ensure_ascii=False)
    return bytes(Web3.keccak(text=encoded))


def _settled_by_resolution(mirror: TransactionMirror) -> bool:
    """The chain reports RESOLVED while the mirror already holds the winner's side."""
    return (
        mirror.status in (MirrorStatus.COMPLETED, MirrorStatus.CANCELLED)
        and mirror.dispute is not None
        and mirror.dispute.resolved_at is not None
    )


@dataclass(frozen=True)
class CreatedEscrow:
    escrow_id: int
    tx_hash: str
    mirror: TransactionMirror


class EscrowLedger:
    """Creates, funds, releases, refunds and disputes escrows.

    Parameters
    ----------
    escrow:
        Gateway for the escrow manager contract.
    store:
        Mirror persistence.
    disputes:
        Optional gateway for the dispute resolution contract; required for
        :meth:`open_dispute_case`, :meth:`add_evidence` and
        :meth:`resolve_dispute`.
    receipt_timeout:
        Seconds to wait for a transaction to be mined.
    """

    def __init__(
        self,
        escrow: EscrowGateway,
        store: MirrorStore,
        disputes: Optional[DisputeGateway] = None,
        tokens: TokenRegistry | None = None,
        receipt_timeout: float = 120.0,
    ) -> None:
        self.escrow = escrow
        self.store = store
        self.disputes = disputes
        self.tokens = tokens or TokenRegistry()
        self.receipt_timeout = receipt_timeout
        # Entries vanish once no operation holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, escrow_id: int) -> asyncio.Lock:
        key = int(escrow_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _require_disputes(self) -> DisputeGateway:
        if self.disputes is None:
            raise ValidationError("Dispute resolution contract is not configured")
        return self.disputes

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        seller: str,
        description: str,
        milestones: Sequence[Milestone | dict] = (),
        token: str = ZERO_ADDRESS,
        amount: str = "0",
        *,
        buyer_email: str,
        seller_email: str,
        metadata: dict[str, Any] | None = None,
        conversation_context: dict[str, Any] | None = None,
    ) -> CreatedEscrow:
        """Create an escrow on chain and persist its mirror.

        Raises :class:`EscrowIdExtractionError` if the transaction succeeded
        but the ``EscrowCreated`` event cannot be read back. The escrow then
        exists on chain without a mirror and must be reconciled by hand.
        """
        token = token or ZERO_ADDRESS
        if not Web3.is_address(seller):
            raise ValidationError(f"Invalid seller address: {seller}")
        if not self.tokens.validate_token(token):
            raise ValidationError(f"Unsupported token: {token}")

        decimals = self.tokens.decimals(token)
        parsed_milestones = [
            m if isinstance(m, Milestone) else Milestone.model_validate(m) for m in milestones
        ]
        try:
            amount_units = parse_units(amount, decimals)
            milestone_tuples = [m.to_chain(decimals) for m in parsed_milestones]
        except (ArithmeticError, ValueError) as exc:
            raise ValidationError(f"Invalid amount: {exc}") from exc
        if amount_units <= 0:
            raise ValidationError("Escrow amount must be positive")

        logger.info(
            f"Creating escrow: buyer={self.escrow.signer_address}, seller={seller}, "
            f"amount={amount}, token={token}"
        )
        is_native = token.lower() == ZERO_ADDRESS
        if not is_native:
            approval = await self.escrow.approve_token(token, amount_units)
            await approval.wait(self.receipt_timeout)

        tx = await self.escrow.execute_transaction(
            "createEscrow",
            Web3.to_checksum_address(seller),
            description,
            metadata_hash(metadata),
            milestone_tuples,
            Web3.to_checksum_address(token),
            amount_units,
            value=amount_units if is_native else 0,
        )
        receipt = await tx.wait(self.receipt_timeout)
        escrow_id = self._extract_escrow_id(receipt, tx.hash)

        mirror = TransactionMirror(
            transaction_id=tx.hash,
            escrow_id=escrow_id,
            buyer_email=buyer_email.strip().lower(),
            seller_email=seller_email.strip().lower(),
            amount=str(amount),
            currency=self.tokens.symbol(token),
            token=token,
            type=TransactionType.SERVICE if parsed_milestones else TransactionType.MARKETPLACE,
            metadata=metadata or {},
            conversation_context=conversation_context or {},
            milestones=parsed_milestones,
        )
        mirror.record(MirrorStatus.PENDING, "Escrow created", actor=mirror.buyer_email)
        await self.store.save(mirror)
        logger.info(f"Escrow {escrow_id} created in tx {tx.hash}")
        return CreatedEscrow(escrow_id=escrow_id, tx_hash=tx.hash, mirror=mirror)

    def _extract_escrow_id(self, receipt: Any, tx_hash: str) -> int:
        try:
            events = self.escrow.parse_events(receipt, "EscrowCreated")
        except Exception as exc:
            logger.error(f"Could not decode logs of {tx_hash}: {exc}")
            raise EscrowIdExtractionError(tx_hash, "receipt logs could not be decoded") from exc
        if not events:
            logger.error(f"EscrowCreated event not found in receipt of {tx_hash}")
            raise EscrowIdExtractionError(tx_hash, "EscrowCreated event not found")

        raw_id = events[0]["args"]["escrowId"]
        if isinstance(raw_id, bool) or not isinstance(raw_id, int) or raw_id <= 0:
            logger.error(f"Invalid escrow ID value {raw_id!r} in {tx_hash}")
            raise EscrowIdExtractionError(tx_hash, f"invalid escrow id {raw_id!r}")
        return raw_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _load(self, escrow_id: int) -> TransactionMirror:
        mirror = await self.store.get_by_escrow_id(escrow_id)
        if mirror is None:
            raise MirrorNotFoundError(f"No mirror for escrow {escrow_id}")
        return mirror

    async def _prepare(self, escrow_id: int, targets: Sequence[MirrorStatus]) -> TransactionMirror:
        """Load the mirror and check at least one of *targets* is reachable next.

        A mirror that disallows the move is reconciled against the chain
        once before giving up, since it may simply be stale. A resolved
        mirror only settles through :meth:`resolve_dispute`.
        """

        def movable(mirror: TransactionMirror) -> bool:
            return mirror.status is not MirrorStatus.RESOLVED and any(
                is_valid_transition(mirror.status, t) for t in targets
            )

        mirror = await self._load(escrow_id)
        if movable(mirror):
            return mirror
        mirror = await self._reconcile_locked(escrow_id, mirror)
        if movable(mirror):
            return mirror
        raise InvalidTransitionError(escrow_id, mirror.status.value, targets[0].value)

    async def fund(self, escrow_id: int, amount: str, actor: str = "system") -> str:
        """Send *amount* (native token) into the escrow."""
        async with self._lock_for(escrow_id):
            mirror = await self._prepare(escrow_id, [MirrorStatus.FUNDED])
            try:
                value = parse_units(amount, self.tokens.decimals(mirror.token or ZERO_ADDRESS))
            except (ArithmeticError, ValueError) as exc:
                raise ValidationError(f"Invalid amount: {exc}") from exc
            logger.info(f"Funding escrow: escrowId={escrow_id}, amount={amount}")
            tx = await self.escrow.execute_transaction("fundEscrow", int(escrow_id), value=value)
            await tx.wait(self.receipt_timeout)
            mirror.record(MirrorStatus.FUNDED, f"Escrow funded with {amount}", actor=actor)
            await self.store.save(mirror)
            return tx.hash

    async def release(self, escrow_id: int, milestone_index: int = 0, actor: str = "system") -> str:
        """Release a milestone (or the whole escrow when it has none) to the seller."""
        async with self._lock_for(escrow_id):
            mirror = await self._prepare(escrow_id, [MirrorStatus.COMPLETED])
            if mirror.milestones and not 0 <= milestone_index < len(mirror.milestones):
                raise ValidationError(
                    f"Escrow {escrow_id} has no milestone {milestone_index}"
                )
            if mirror.milestones and mirror.milestones[milestone_index].completed:
                raise ValidationError(
                    f"Milestone {milestone_index} of escrow {escrow_id} was already released"
                )

            logger.info(f"Releasing payment: escrowId={escrow_id}, milestoneIndex={milestone_index}")
            tx = await self.escrow.execute_transaction(
                "releasePayment", int(escrow_id), int(milestone_index)
            )
            await tx.wait(self.receipt_timeout)

            if mirror.milestones:
                milestone = mirror.milestones[milestone_index]
                milestone.completed = True
                milestone.completed_at = int(datetime.now(timezone.utc).timestamp())
                mirror.updated_at = datetime.now(timezone.utc)
            if all(m.completed for m in mirror.milestones):
                mirror.record(MirrorStatus.COMPLETED, "Payment released to seller", actor=actor)
            else:
                done = sum(m.completed for m in mirror.milestones)
                mirror.record(
                    MirrorStatus.FUNDED,
                    f"Milestone {milestone_index} released ({done}/{len(mirror.milestones)})",
                    actor=actor,
                )
                logger.info(f"Escrow {escrow_id}: milestone {milestone_index} released")
            await self.store.save(mirror)
            return tx.hash

    async def refund(self, escrow_id: int, actor: str = "system") -> str:
        """Cancel the escrow and return funds to the buyer."""
        async with self._lock_for(escrow_id):
            mirror = await self._prepare(escrow_id, [MirrorStatus.CANCELLED])
            logger.info(f"Cancelling escrow: {escrow_id}")
            tx = await self.escrow.execute_transaction("cancelEscrow", int(escrow_id))
            await tx.wait(self.receipt_timeout)
            mirror.record(MirrorStatus.CANCELLED, "Payment refunded to buyer", actor=actor)
            await self.store.save(mirror)
            return tx.hash

    async def dispute(
        self,
        escrow_id: int,
        reason: str,
        evidence: Sequence[str] = (),
        actor: str = "system",
    ) -> str:
        """File a dispute on the escrow contract."""
        reason = reason.strip()
        if not reason:
            raise ValidationError("A dispute reason is required")
        async with self._lock_for(escrow_id):
            mirror = await self._prepare(escrow_id, [MirrorStatus.DISPUTED])
            logger.info(f"Filing dispute: escrowId={escrow_id}")
            tx = await self.escrow.execute_transaction("fileDispute", int(escrow_id), reason)
            await tx.wait(self.receipt_timeout)
            mirror.dispute = DisputeRecord(reason=reason, evidence=[e.strip() for e in evidence])
            mirror.record(MirrorStatus.DISPUTED, f"Dispute filed: {reason}", actor=actor)
            await self.store.save(mirror)
            return tx.hash

    async def open_dispute_case(self, escrow_id: int, evidence: str) -> str:
        """Open the arbitration case on the dispute contract."""
        disputes = self._require_disputes()
        async with self._lock_for(escrow_id):
            tx = await disputes.open_dispute(escrow_id, evidence)
            await tx.wait(self.receipt_timeout)
            mirror = await self.store.get_by_escrow_id(escrow_id)
            if mirror is not None and mirror.dispute is not None:
                mirror.dispute.evidence.append(evidence)
                await self.store.save(mirror)
            return tx.hash

    async def add_evidence(self, escrow_id: int, evidence: str) -> str:
        disputes = self._require_disputes()
        async with self._lock_for(escrow_id):
            tx = await disputes.add_evidence(escrow_id, evidence)
            await tx.wait(self.receipt_timeout)
            mirror = await self.store.get_by_escrow_id(escrow_id)
            if mirror is not None and mirror.dispute is not None:
                mirror.dispute.evidence.append(evidence)
                await self.store.save(mirror)
            return tx.hash

    async def resolve_dispute(self, escrow_id: int, winner: str, arbitrator: str = "system") -> str:
        """Settle a dispute in favour of *winner* (the buyer or the seller)."""
        disputes = self._require_disputes()
        async with self._lock_for(escrow_id):
            mirror = await self._prepare(escrow_id, [MirrorStatus.RESOLVED])
            record = await self.escrow.get_escrow(escrow_id)
            winner_key = winner.lower()
            if winner_key == record.seller.lower():
                final, outcome = MirrorStatus.COMPLETED, "seller"
            elif winner_key == record.buyer.lower():
                final, outcome = MirrorStatus.CANCELLED, "buyer"
            else:
                raise ValidationError(
                    f"Winner {winner} is neither buyer nor seller of escrow {escrow_id}"
                )

            tx = await disputes.resolve_dispute(escrow_id, winner)
            await tx.wait(self.receipt_timeout)

            now = datetime.now(timezone.utc)
            if mirror.dispute is None:
                mirror.dispute = DisputeRecord(reason="")
            mirror.dispute.arbitrator = arbitrator
            mirror.dispute.resolution = f"{outcome} wins"
            mirror.dispute.resolved_at = now
            mirror.record(MirrorStatus.RESOLVED, f"Dispute resolved in favour of the {outcome}", actor=arbitrator)
            description = (
                "Payment released to seller" if final is MirrorStatus.COMPLETED
                else "Payment refunded to buyer"
            )
            mirror.record(final, description, actor=arbitrator)
            await self.store.save(mirror)
            return tx.hash

    # ------------------------------------------------------------------
    # Reads and reconciliation
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: int) -> EscrowRecord:
        """The authoritative on-chain record."""
        return await self.escrow.get_escrow(escrow_id)

    async def get_milestones(self, escrow_id: int) -> list[Milestone]:
        record = await self.escrow.get_escrow(escrow_id)
        return await self.escrow.get_milestones(escrow_id, record.token)

    async def get_dispute(self, escrow_id: int) -> DisputeCase:
        return await self._require_disputes().get_dispute(escrow_id)

    async def is_token_supported(self, token_address: str) -> bool:
        return await self.escrow.is_token_supported(token_address)

    async def get_mirror(self, escrow_id: int) -> TransactionMirror:
        """The local mirror without a chain read."""
        return await self._load(escrow_id)

    async def reconcile(self, escrow_id: int) -> TransactionMirror:
        """Overwrite the mirror status with the chain's and return it."""
        async with self._lock_for(escrow_id):
            return await self._reconcile_locked(escrow_id)

    async def _reconcile_locked(
        self, escrow_id: int, mirror: TransactionMirror | None = None
    ) -> TransactionMirror:
        if mirror is None:
            mirror = await self._load(escrow_id)
        record = await self.escrow.get_escrow(escrow_id)
        chain_status = MirrorStatus.from_chain(record.status)
        if chain_status == mirror.status:
            return mirror
        if chain_status is MirrorStatus.RESOLVED and _settled_by_resolution(mirror):
            return mirror

        path = path_between(mirror.status, chain_status)
        if path is None:
            logger.warning(
                f"Escrow {escrow_id} mirror '{mirror.status.value}' contradicts chain "
                f"'{chain_status.value}'; overwriting from chain"
            )
            mirror.record(
                chain_status,
                f"Reconciled from chain (was {mirror.status.value})",
                actor=CHAIN_SYNC_ACTOR,
            )
        else:
            logger.info(
                f"Escrow {escrow_id} mirror behind chain: "
                f"{mirror.status.value} -> {chain_status.value}"
            )
            for status in path:
                mirror.record(status, "Synchronized from chain", actor=CHAIN_SYNC_ACTOR)
        await self.store.save(mirror)
        return mirror

    async def verify_metadata(self, escrow_id: int, metadata: dict[str, Any] | None = None) -> bool:
        """Check the on-chain metadata hash against *metadata* (or the mirror's)."""
        if metadata is None:
            metadata = (await self._load(escrow_id)).metadata
        record = await self.escrow.get_escrow(escrow_id)
        expected = "0x" + metadata_hash(metadata).hex()
        matches = record.metadata_hash.lower() == expected
        if not matches:
            logger.warning(f"Escrow {escrow_id} metadata hash mismatch")
        return matches
