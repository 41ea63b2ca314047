"""
Dispute Resolution Service
Dispute sub-machine: one active dispute per transaction, evidence collection,
admin review and a final, binding resolution.
"""

import logging
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Set

from sqlalchemy.orm import Session

from models import ActorRole, Dispute, DisputeEvidence, DisputeReason, DisputeStatus, RiftTransaction
from utils.atomic_transactions import atomic_transaction
from utils.authorization import Actor, require_actor
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidTransition, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

D = DisputeStatus

OUTCOME_FAVOR_BUYER = "favor_buyer"
OUTCOME_FAVOR_SELLER = "favor_seller"


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    success: bool
    dispute_id: str
    rift_id: str
    outcome: str
    new_rift_status: str
    amount: Decimal
    error_message: Optional[str] = None


class DisputeResolutionService:
    """Service for the dispute sub-machine"""

    ACTIVE_STATUSES: Set[str] = {D.DRAFT.value, D.SUBMITTED.value, D.NEEDS_INFO.value, D.UNDER_REVIEW.value}

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        D.DRAFT.value: {D.SUBMITTED.value},
        D.SUBMITTED.value: {D.UNDER_REVIEW.value, D.NEEDS_INFO.value, D.RESOLVED_BUYER.value,
                            D.RESOLVED_SELLER.value},
        D.NEEDS_INFO.value: {D.UNDER_REVIEW.value, D.SUBMITTED.value, D.RESOLVED_BUYER.value,
                             D.RESOLVED_SELLER.value},
        D.UNDER_REVIEW.value: {D.NEEDS_INFO.value, D.RESOLVED_BUYER.value, D.RESOLVED_SELLER.value},
        # Resolution is final. RESOLVED only arrives on imported rows.
        D.RESOLVED_BUYER.value: set(),
        D.RESOLVED_SELLER.value: set(),
        D.RESOLVED.value: set(),
    }

    OUTCOME_STATUS = {
        OUTCOME_FAVOR_BUYER: D.RESOLVED_BUYER.value,
        OUTCOME_FAVOR_SELLER: D.RESOLVED_SELLER.value,
    }

    @classmethod
    def _move(cls, dispute: Dispute, new_status: str, operation: str) -> None:
        if new_status not in cls.VALID_TRANSITIONS.get(dispute.status, set()):
            raise InvalidTransition(f"dispute {dispute.status}", operation)
        logger.info(f"⚖️ DISPUTE_{operation.upper().replace(' ', '_')}: {dispute.id} {dispute.status} → {new_status}")
        dispute.status = new_status
        dispute.updated_at = get_naive_utc_now()

    @classmethod
    def get_active(cls, session: Session, rift_id: str) -> Optional[Dispute]:
        return (
            session.query(Dispute)
            .filter(Dispute.rift_id == rift_id, Dispute.status.in_(cls.ACTIVE_STATUSES))
            .order_by(Dispute.created_at.desc())
            .first()
        )

    @classmethod
    def create(cls, session: Session, rift: RiftTransaction, actor: Actor, reason: DisputeReason,
               summary: str, evidence: Optional[List[str]] = None) -> Dispute:
        """Open a dispute in SUBMITTED. Called inside the lifecycle's atomic unit."""
        if not summary or not summary.strip():
            raise ValidationError("Dispute summary is required")
        if not isinstance(reason, DisputeReason):
            raise ValidationError("Unknown dispute reason")
        if cls.get_active(session, rift.id) is not None:
            raise InvalidTransition(rift.status, "open dispute", "An active dispute already exists")

        dispute = Dispute(
            rift_id=rift.id,
            raised_by=actor.user_id,
            raised_by_role=actor.role.value,
            reason=reason.value,
            summary=summary.strip(),
            status=D.SUBMITTED.value,
        )
        session.add(dispute)
        session.flush()
        for item in evidence or []:
            session.add(DisputeEvidence(
                dispute_id=dispute.id,
                submitted_by=actor.user_id,
                submitted_by_role=actor.role.value,
                kind="text",
                content=item,
            ))
        logger.info(
            f"⚖️ DISPUTE_OPENED: rift #{rift.rift_number} by {actor.role.value} reason={reason.value}"
        )
        return dispute

    @classmethod
    def _load(cls, session: Session, dispute_id: str) -> Dispute:
        dispute = (
            session.query(Dispute)
            .filter(Dispute.id == dispute_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if dispute is None:
            raise NotFoundError("Dispute not found")
        return dispute

    @classmethod
    def add_evidence(cls, session: Session, dispute_id: str, actor: Actor, kind: str,
                     content: str) -> DisputeEvidence:
        if not content or not content.strip():
            raise ValidationError("Evidence content is required")
        with atomic_transaction(session):
            dispute = cls._load(session, dispute_id)
            require_actor(actor, dispute.rift, ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN,
                          operation="add dispute evidence")
            if dispute.status not in cls.ACTIVE_STATUSES:
                raise InvalidTransition(f"dispute {dispute.status}", "add evidence")
            item = DisputeEvidence(
                dispute_id=dispute.id,
                submitted_by=actor.user_id,
                submitted_by_role=actor.role.value,
                kind=kind,
                content=content,
            )
            session.add(item)
            # A reply to an info request puts the dispute back in the queue
            if dispute.status == D.NEEDS_INFO.value and actor.role != ActorRole.ADMIN:
                cls._move(dispute, D.SUBMITTED.value, "info provided")
        return item

    @classmethod
    def start_review(cls, session: Session, dispute_id: str, admin: Actor) -> Dispute:
        with atomic_transaction(session):
            dispute = cls._load(session, dispute_id)
            require_actor(admin, dispute.rift, ActorRole.ADMIN, operation="review dispute")
            cls._move(dispute, D.UNDER_REVIEW.value, "start review")
        return dispute

    @classmethod
    def request_info(cls, session: Session, dispute_id: str, admin: Actor, note: str) -> Dispute:
        with atomic_transaction(session):
            dispute = cls._load(session, dispute_id)
            require_actor(admin, dispute.rift, ActorRole.ADMIN, operation="request dispute info")
            cls._move(dispute, D.NEEDS_INFO.value, "request info")
            session.add(DisputeEvidence(
                dispute_id=dispute.id,
                submitted_by=admin.user_id,
                submitted_by_role=admin.role.value,
                kind="info_request",
                content=note,
            ))
        return dispute

    @classmethod
    def mark_resolved(cls, session: Session, dispute: Dispute, outcome: str, admin: Actor,
                      notes: Optional[str]) -> Dispute:
        """Final resolution. Called inside the lifecycle's atomic unit."""
        if outcome not in cls.OUTCOME_STATUS:
            raise ValidationError(f"Unknown dispute outcome '{outcome}'")
        cls._move(dispute, cls.OUTCOME_STATUS[outcome], "resolve")
        dispute.resolution_notes = notes
        dispute.resolved_by = admin.user_id
        dispute.resolved_at = get_naive_utc_now()
        return dispute
