"""
Rift Lifecycle Service
Orchestrates every status change of a rift transaction. Each operation is one
atomic unit: lock, guard, guarded conditional update, side effects (ledger,
scheduler, verification, dispute), audit event, commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from config import Config
from models import (
    ActorRole, Dispute, DisputeReason, ItemKind, RiftStatus, RiftTransaction, SequenceCounter, User,
)
from services.audit_trail_service import AuditTrailService
from services.auto_release_scheduler import (
    PHASE_DELIVERY, PHASE_SUBMISSION, PHASE_TRANSIT, AutoReleaseScheduler,
)
from services.dispute_resolution import DisputeResolutionService, ResolutionResult, OUTCOME_FAVOR_BUYER
from services.evidence_verification import (
    EvidenceVerificationPipeline, VerificationContext, VerificationOutcome,
)
from services.external_clients import IdentityVerifier, PaymentGateway
from services.legacy_status_mapper import LegacyStatusMapper, PublicStatus
from services.ledger_service import LedgerService
from services.vault_service import ProofSubmission, VaultService
from utils.atomic_transactions import atomic_transaction, locked_rift
from utils.authorization import Actor, require_actor
from utils.currency_validation import validate_currency_code
from utils.datetime_helpers import add_business_days, get_naive_utc_now
from utils.escrow_state_machine import RiftStateValidator, RiftTransition
from utils.exceptions import InvalidTransition, NotFoundError, ValidationError
from utils.external_call import guarded_call
from utils.fee_calculator import FeeCalculator, FeeSchedule
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)

S = RiftStatus
T = RiftTransition
V = RiftStateValidator

RIFT_NUMBER_SEQUENCE = "rift_number"


@dataclass
class ProofSubmissionResult:
    status: str
    outcome: VerificationOutcome
    asset_id: str


@dataclass
class TickResult:
    """What one auto-release tick did. ``acted`` is False for every blocked case."""

    acted: bool
    reason: str


@dataclass
class RiftView:
    """Read model returned to parties and admins"""

    id: str
    rift_number: int
    title: str
    item_kind: str
    status: str
    public_status: PublicStatus
    subtotal: Decimal
    currency: str
    buyer_fee: Optional[Decimal]
    seller_fee: Optional[Decimal]
    buyer_total: Optional[Decimal]
    seller_net: Optional[Decimal]
    grace_period_deadline: Optional[datetime]
    auto_release_armed: bool
    created_at: datetime

    @classmethod
    def from_rift(cls, rift: RiftTransaction) -> "RiftView":
        return cls(
            id=rift.id,
            rift_number=rift.rift_number,
            title=rift.title,
            item_kind=rift.item_kind,
            status=rift.status,
            public_status=LegacyStatusMapper.to_public(rift.status),
            subtotal=rift.subtotal,
            currency=rift.currency,
            buyer_fee=rift.buyer_fee,
            seller_fee=rift.seller_fee,
            buyer_total=rift.buyer_total,
            seller_net=rift.seller_net,
            grace_period_deadline=rift.grace_period_deadline,
            auto_release_armed=bool(rift.auto_release_armed),
            created_at=rift.created_at,
        )


class RiftLifecycleService:
    """The only code path that changes a transaction's status"""

    def __init__(self, vault: VaultService, pipeline: EvidenceVerificationPipeline):
        self.vault = vault
        self.pipeline = pipeline

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _transition(
        session: Session,
        rift: RiftTransaction,
        new_status: RiftStatus,
        transition: RiftTransition,
        actor: Actor,
        updates: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Guarded status change plus audit event. The row is claimed here, before
        any ledger lines are posted, so a losing writer never posts money.
        """
        from_status = rift.status
        V.require_transition(from_status, new_status.value, transition)
        OptimisticLockManager(session).guarded_status_update(
            RiftTransaction, rift.id, from_status, rift.version, new_status.value,
            operation=transition.value, updates=updates,
        )
        session.refresh(rift)
        AuditTrailService.record_transition(
            session, rift, transition.value, from_status, new_status.value, actor, details,
        )
        logger.info(
            f"🔄 RIFT_{transition.name}: #{rift.rift_number} {from_status} → {new_status.value} "
            f"by {actor.role.value}"
        )

    @staticmethod
    def _next_rift_number(session: Session) -> int:
        counter = (
            session.query(SequenceCounter)
            .filter(SequenceCounter.name == RIFT_NUMBER_SEQUENCE)
            .with_for_update()
            .first()
        )
        if counter is None:
            counter = SequenceCounter(name=RIFT_NUMBER_SEQUENCE, value=0)
            session.add(counter)
        counter.value = (counter.value or 0) + 1
        session.flush()
        return counter.value

    @staticmethod
    def _arm_phase_after_proof(rift: RiftTransaction) -> Tuple[RiftStatus, str]:
        if rift.item_kind == ItemKind.PHYSICAL.value:
            return S.IN_TRANSIT, PHASE_TRANSIT
        return S.PROOF_SUBMITTED, PHASE_SUBMISSION

    @staticmethod
    def _release(session: Session, rift: RiftTransaction, actor: Actor, transition: RiftTransition,
                 now: Optional[datetime] = None) -> None:
        RiftLifecycleService._transition(
            session, rift, S.RELEASED, transition, actor,
            updates={"released_at": now or get_naive_utc_now(), **AutoReleaseScheduler.disarm_fields()},
        )
        LedgerService.post_release(session, rift)
        logger.info(f"✅ RIFT_RELEASED: #{rift.rift_number} seller net {rift.seller_net} {rift.currency}")

    # ------------------------------------------------------------------ creation

    def create_transaction(
        self,
        session: Session,
        buyer_id: int,
        seller_id: int,
        item_kind: Union[ItemKind, str],
        subtotal,
        currency: str,
        title: str,
        description: Optional[str] = None,
        publish: bool = True,
    ) -> RiftTransaction:
        """
        Create a transaction in AWAITING_PAYMENT (or DRAFT when ``publish`` is False).

        Raises:
            ValidationError: bad amount, currency, item kind, title, or buyer == seller
            NotFoundError: unknown buyer or seller
        """
        try:
            kind = item_kind if isinstance(item_kind, ItemKind) else ItemKind(str(item_kind).lower())
        except ValueError:
            raise ValidationError(f"Unknown item kind: {item_kind}") from None
        code = validate_currency_code(currency)
        amount = FeeCalculator.validate_amount(subtotal, code)
        if buyer_id == seller_id:
            raise ValidationError("Buyer and seller must be different users")
        if not title or not title.strip():
            raise ValidationError("Title is required")

        with atomic_transaction(session):
            if session.get(User, buyer_id) is None or session.get(User, seller_id) is None:
                raise NotFoundError("User not found")

            status = S.AWAITING_PAYMENT if publish else S.DRAFT
            rift = RiftTransaction(
                rift_number=self._next_rift_number(session),
                title=title.strip(),
                description=description,
                item_kind=kind.value,
                subtotal=amount,
                currency=code,
                buyer_id=buyer_id,
                seller_id=seller_id,
                status=status.value,
                version=1,
            )
            session.add(rift)
            session.flush()
            AuditTrailService.record_transition(
                session, rift, "create", None, status.value, Actor.buyer(buyer_id),
                {"subtotal": str(amount), "currency": rift.currency, "item_kind": kind.value},
            )
        logger.info(
            f"🆕 RIFT_CREATED: #{rift.rift_number} {amount} {rift.currency} {kind.value} status={status.value}"
        )
        return rift

    def publish(self, session: Session, rift_id: str, actor: Actor) -> RiftTransaction:
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.BUYER, ActorRole.SELLER, operation="publish")
            V.require_status(rift.status, {S.DRAFT.value}, T.PUBLISH)
            self._transition(session, rift, S.AWAITING_PAYMENT, T.PUBLISH, actor)
        return rift

    # ------------------------------------------------------------------ funding

    def fund(self, session: Session, rift_id: str, actor: Actor, payment_gateway: PaymentGateway,
             fee_schedule: FeeSchedule) -> RiftTransaction:
        """
        Freeze fees, authorize and capture the buyer total, post the escrow hold.

        A failed or timed-out gateway call raises ExternalServiceUnavailable
        and leaves the transaction in AWAITING_PAYMENT.
        """
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.BUYER, operation="fund")
            V.require_status(rift.status, {S.AWAITING_PAYMENT.value}, T.FUND)

            fees = FeeCalculator.calculate(rift.subtotal, rift.currency, fee_schedule)
            reference = guarded_call("payment_gateway", payment_gateway.authorize, fees.buyer_total, fees.currency)
            guarded_call("payment_gateway", payment_gateway.capture, reference)

            self._transition(
                session, rift, S.FUNDED, T.FUND, actor,
                updates={
                    "buyer_fee": fees.buyer_fee,
                    "seller_fee": fees.seller_fee,
                    "buyer_total": fees.buyer_total,
                    "seller_net": fees.seller_net,
                    "buyer_fee_rate": fees.buyer_fee_rate,
                    "seller_fee_rate": fees.seller_fee_rate,
                    "payment_reference": reference,
                    "funded_at": get_naive_utc_now(),
                },
                details=fees.as_dict(),
            )
            LedgerService.post_hold(session, rift)
        logger.info(f"💳 RIFT_FUNDED: #{rift.rift_number} captured {rift.buyer_total} {rift.currency}")
        return rift

    def mark_awaiting_shipment(self, session: Session, rift_id: str, actor: Actor) -> RiftTransaction:
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.SELLER, operation="mark awaiting shipment")
            V.require_status(rift.status, {S.FUNDED.value}, T.MARK_AWAITING_SHIPMENT)
            if rift.item_kind != ItemKind.PHYSICAL.value:
                raise InvalidTransition(rift.status, T.MARK_AWAITING_SHIPMENT.value,
                                        "Only physical items can await shipment")
            self._transition(session, rift, S.AWAITING_SHIPMENT, T.MARK_AWAITING_SHIPMENT, actor)
        return rift

    # ------------------------------------------------------------------ proof

    def submit_proof(self, session: Session, rift_id: str, actor: Actor, submission: ProofSubmission,
                     raw_text: Optional[str] = None) -> ProofSubmissionResult:
        """
        Store a seller artifact, verify it, and move the transaction.

        Passed: IN_TRANSIT (physical) or PROOF_SUBMITTED, timer armed.
        Flagged, including scoring unavailable: UNDER_REVIEW, timer disarmed.
        """
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.SELLER, operation="submit proof")
            V.require_status(rift.status, V.PROOF_ELIGIBLE, T.SUBMIT_PROOF)

            now = get_naive_utc_now()
            asset = self.vault.store_artifact(session, rift, actor, submission)
            outcome = self.pipeline.verify(
                session,
                asset,
                VerificationContext.for_rift(rift, now),
                payload=self.vault.decrypt_payload(asset),
                raw_text=raw_text,
                now=now,
            )

            updates: Dict[str, Any] = {"proof_submitted_at": now}
            if outcome.passed:
                new_status, phase = self._arm_phase_after_proof(rift)
                updates.update(AutoReleaseScheduler.arm_fields(rift, now, phase))
            else:
                new_status = S.UNDER_REVIEW
                updates.update(AutoReleaseScheduler.disarm_fields())

            self._transition(
                session, rift, new_status, T.SUBMIT_PROOF, actor, updates=updates,
                details={
                    "asset_id": asset.id,
                    "quality_score": outcome.quality_score,
                    "route_to_review": outcome.route_to_review,
                    "scoring_available": outcome.scoring_available,
                },
            )
            result = ProofSubmissionResult(status=rift.status, outcome=outcome, asset_id=asset.id)

        if not outcome.passed:
            logger.warning(
                f"🧐 PROOF_ROUTED_TO_REVIEW: #{rift.rift_number} score={outcome.quality_score} "
                f"issues={outcome.issues}"
            )
        return result

    def approve_proof(self, session: Session, rift_id: str, admin: Actor) -> RiftTransaction:
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(admin, rift, ActorRole.ADMIN, operation="approve proof")
            V.require_status(rift.status, {S.UNDER_REVIEW.value}, T.APPROVE_PROOF)
            new_status, phase = self._arm_phase_after_proof(rift)
            self._transition(
                session, rift, new_status, T.APPROVE_PROOF, admin,
                updates=AutoReleaseScheduler.arm_fields(rift, get_naive_utc_now(), phase),
            )
        return rift

    def reject_proof(self, session: Session, rift_id: str, admin: Actor, reason: str) -> RiftTransaction:
        """
        Send the transaction back to FUNDED; the seller may submit again.

        Buyer access to the rejected artifact does not carry over to the next
        submission's deadline.
        """
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(admin, rift, ActorRole.ADMIN, operation="reject proof")
            V.require_status(rift.status, {S.UNDER_REVIEW.value}, T.REJECT_PROOF)
            self._transition(
                session, rift, S.FUNDED, T.REJECT_PROOF, admin,
                updates={
                    "proof_submitted_at": None,
                    "first_buyer_access_at": None,
                    **AutoReleaseScheduler.disarm_fields(),
                },
                details={"reason": reason},
            )
        return rift

    def confirm_delivery(self, session: Session, rift_id: str, actor: Actor) -> RiftTransaction:
        """Buyer confirmation or carrier webhook (system). Starts the short delivery grace."""
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.BUYER, ActorRole.SYSTEM, operation="confirm delivery")
            V.require_status(rift.status, {S.IN_TRANSIT.value}, T.CONFIRM_DELIVERY)
            self._transition(
                session, rift, S.DELIVERED_PENDING_RELEASE, T.CONFIRM_DELIVERY, actor,
                updates=AutoReleaseScheduler.arm_fields(rift, get_naive_utc_now(), PHASE_DELIVERY),
            )
        return rift

    # ------------------------------------------------------------------ release

    def buyer_release(self, session: Session, rift_id: str, actor: Actor) -> RiftTransaction:
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.BUYER, operation="release funds")
            V.require_status(rift.status, V.BUYER_RELEASABLE, T.BUYER_RELEASE)
            self._release(session, rift, actor, T.BUYER_RELEASE)
        return rift

    def auto_release_tick(self, session: Session, rift_id: str, now: Optional[datetime] = None) -> TickResult:
        """
        Release one transaction if its grace period has elapsed.

        Idempotent: already-released transactions and every blocked case
        return ``acted=False`` without raising.
        """
        now = now or get_naive_utc_now()
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)

            if rift.status in V.RELEASED_FAMILY:
                return TickResult(acted=False, reason="already_released")
            if (
                rift.status in V.DISPUTE_RESOLVABLE
                or DisputeResolutionService.get_active(session, rift.id) is not None
            ):
                logger.info(f"⏸️ AUTO_RELEASE_BLOCKED: #{rift.rift_number} has an active dispute")
                return TickResult(acted=False, reason="dispute_active")
            if rift.status not in V.AUTO_RELEASE_FAMILY:
                return TickResult(acted=False, reason="not_eligible")
            if not rift.auto_release_armed or rift.grace_period_deadline is None:
                return TickResult(acted=False, reason="not_armed")
            if rift.grace_period_deadline > now:
                return TickResult(acted=False, reason="not_due")

            self._release(session, rift, Actor.system(), T.AUTO_RELEASE, now=now)
        logger.info(f"⏰ AUTO_RELEASED: #{rift.rift_number} at {now.isoformat()}")
        return TickResult(acted=True, reason="released")

    # ------------------------------------------------------------------ disputes

    def open_dispute(self, session: Session, rift_id: str, actor: Actor, reason: DisputeReason,
                     summary: str, evidence: Optional[List[str]] = None) -> Dispute:
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(actor, rift, ActorRole.BUYER, ActorRole.SELLER, operation="open a dispute")
            V.require_status(rift.status, V.DISPUTE_ELIGIBLE, T.OPEN_DISPUTE)
            self._transition(
                session, rift, S.DISPUTED, T.OPEN_DISPUTE, actor,
                updates=AutoReleaseScheduler.disarm_fields(),
                details={"reason": reason.value if isinstance(reason, DisputeReason) else str(reason)},
            )
            dispute = DisputeResolutionService.create(session, rift, actor, reason, summary, evidence)
        return dispute

    def resolve_dispute(self, session: Session, rift_id: str, admin: Actor, outcome: str,
                        notes: Optional[str] = None) -> ResolutionResult:
        """
        Final admin decision: ``favor_buyer`` refunds, ``favor_seller`` releases.
        """
        if outcome not in DisputeResolutionService.OUTCOME_STATUS:
            raise ValidationError(f"Unknown dispute outcome '{outcome}'")

        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            require_actor(admin, rift, ActorRole.ADMIN, operation="resolve a dispute")
            V.require_status(rift.status, V.DISPUTE_RESOLVABLE, T.RESOLVE_DISPUTE)

            dispute = DisputeResolutionService.get_active(session, rift.id)
            if dispute is None and rift.status == S.DISPUTED.value:
                raise NotFoundError("No active dispute on this transaction")

            now = get_naive_utc_now()
            if outcome == OUTCOME_FAVOR_BUYER:
                retain_fee = bool(Config.RETAIN_BUYER_FEE_ON_REFUND_AFTER_PROOF and rift.proof_submitted_at)
                self._transition(
                    session, rift, S.REFUNDED, T.RESOLVE_DISPUTE, admin,
                    updates={"refunded_at": now}, details={"outcome": outcome},
                )
                amount = LedgerService.post_refund(session, rift, retain_buyer_fee=retain_fee)
            else:
                self._transition(
                    session, rift, S.RELEASED, T.RESOLVE_DISPUTE, admin,
                    updates={"released_at": now}, details={"outcome": outcome},
                )
                LedgerService.post_release(session, rift)
                amount = rift.seller_net

            if dispute is not None:
                DisputeResolutionService.mark_resolved(session, dispute, outcome, admin, notes)

            result = ResolutionResult(
                success=True,
                dispute_id=dispute.id if dispute else "",
                rift_id=rift.id,
                outcome=outcome,
                new_rift_status=rift.status,
                amount=amount,
            )
        logger.info(f"⚖️ DISPUTE_RESOLVED: #{rift.rift_number} {outcome} → {result.new_rift_status} {amount}")
        return result

    # ------------------------------------------------------------------ cancellation

    def cancel(self, session: Session, rift_id: str, actor: Actor, reason: Optional[str] = None) -> RiftTransaction:
        """
        Before funding: either party. After funding, before any proof: seller
        or admin only, with a full refund of the buyer total.
        """
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            details = {"reason": reason}

            if rift.status in V.PRE_FUNDING:
                require_actor(actor, rift, ActorRole.BUYER, ActorRole.SELLER, operation="cancel")
                self._transition(
                    session, rift, S.CANCELLED, T.CANCEL, actor,
                    updates={"cancelled_at": get_naive_utc_now()}, details=details,
                )
                return rift

            V.require_status(rift.status, V.PROOF_ELIGIBLE, T.CANCEL)
            if rift.proof_submitted_at is not None:
                raise InvalidTransition(rift.status, T.CANCEL.value, "Cannot cancel after proof was submitted")
            require_actor(actor, rift, ActorRole.SELLER, ActorRole.ADMIN, operation="cancel a funded transaction")

            now = get_naive_utc_now()
            self._transition(
                session, rift, S.CANCELLED, T.CANCEL, actor,
                updates={"cancelled_at": now, "refunded_at": now}, details=details,
            )
            LedgerService.post_refund(session, rift, retain_buyer_fee=False)
        logger.info(f"🚫 RIFT_CANCELLED: #{rift.rift_number} buyer refunded {rift.buyer_total} {rift.currency}")
        return rift

    # ------------------------------------------------------------------ payout

    def schedule_payout(self, session: Session, rift_id: str, identity_verifier: IdentityVerifier,
                        now: Optional[datetime] = None) -> bool:
        """RELEASED → PAYOUT_SCHEDULED for payout-eligible sellers. False when not eligible yet."""
        now = now or get_naive_utc_now()
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            V.require_status(rift.status, {S.RELEASED.value}, T.SCHEDULE_PAYOUT)

            eligible = guarded_call("identity", identity_verifier.is_payout_eligible, rift.seller_id)
            if not eligible:
                logger.info(f"⏳ PAYOUT_NOT_ELIGIBLE: #{rift.rift_number} seller not yet verified")
                return False

            scheduled_for = add_business_days(now, Config.PAYOUT_DELAY_BUSINESS_DAYS)
            self._transition(
                session, rift, S.PAYOUT_SCHEDULED, T.SCHEDULE_PAYOUT, Actor.system(),
                updates={"payout_scheduled_for": scheduled_for},
                details={"payout_scheduled_for": scheduled_for.isoformat()},
            )
        return True

    def mark_paid_out(self, session: Session, rift_id: str, external_reference: str) -> RiftTransaction:
        if not external_reference:
            raise ValidationError("Payout reference is required")
        with atomic_transaction(session):
            rift = locked_rift(session, rift_id)
            V.require_status(rift.status, {S.PAYOUT_SCHEDULED.value}, T.MARK_PAID_OUT)
            self._transition(
                session, rift, S.PAID_OUT, T.MARK_PAID_OUT, Actor.system(),
                updates={"paid_out_at": get_naive_utc_now(), "payout_reference": external_reference},
            )
        return rift

    # ------------------------------------------------------------------ reads

    def get_transaction(self, session: Session, rift_id: str, actor: Actor) -> RiftView:
        rift = session.get(RiftTransaction, rift_id)
        if rift is None:
            raise NotFoundError("Transaction not found")
        require_actor(actor, rift, ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN, operation="view")
        return RiftView.from_rift(rift)
