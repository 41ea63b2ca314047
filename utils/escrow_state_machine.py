"""
Escrow State Machine
Canonical transition table and status groups for rift transactions
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Set

from models import RiftStatus
from utils.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class RiftTransition(Enum):
    """Named operations that move a transaction between statuses"""

    PUBLISH = "publish"  # DRAFT -> AWAITING_PAYMENT
    FUND = "fund"  # AWAITING_PAYMENT -> FUNDED
    MARK_AWAITING_SHIPMENT = "mark_awaiting_shipment"  # FUNDED -> AWAITING_SHIPMENT
    SUBMIT_PROOF = "submit_proof"  # FUNDED/AWAITING_SHIPMENT -> PROOF_SUBMITTED/IN_TRANSIT/UNDER_REVIEW
    APPROVE_PROOF = "approve_proof"  # UNDER_REVIEW -> PROOF_SUBMITTED/IN_TRANSIT
    REJECT_PROOF = "reject_proof"  # UNDER_REVIEW -> FUNDED
    CONFIRM_DELIVERY = "confirm_delivery"  # IN_TRANSIT -> DELIVERED_PENDING_RELEASE
    BUYER_RELEASE = "buyer_release"  # releasable -> RELEASED
    AUTO_RELEASE = "auto_release"  # auto-release family -> RELEASED
    OPEN_DISPUTE = "open_dispute"  # dispute-eligible -> DISPUTED
    RESOLVE_DISPUTE = "resolve_dispute"  # DISPUTED/RESOLVED -> RELEASED/REFUNDED
    CANCEL = "cancel"  # pre-funding or pre-proof -> CANCELLED
    SCHEDULE_PAYOUT = "schedule_payout"  # RELEASED -> PAYOUT_SCHEDULED
    MARK_PAID_OUT = "mark_paid_out"  # PAYOUT_SCHEDULED -> PAID_OUT


S = RiftStatus


class RiftStateValidator:
    """Validates rift state transitions and exposes the status groups guards rely on"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        S.DRAFT.value: {S.AWAITING_PAYMENT.value, S.CANCELLED.value},
        S.AWAITING_PAYMENT.value: {S.FUNDED.value, S.CANCELLED.value},
        S.FUNDED.value: {
            S.AWAITING_SHIPMENT.value,
            S.PROOF_SUBMITTED.value,
            S.UNDER_REVIEW.value,
            S.IN_TRANSIT.value,
            S.DISPUTED.value,
            S.CANCELLED.value,  # Seller or admin only, before any proof
        },
        S.AWAITING_SHIPMENT.value: {
            S.PROOF_SUBMITTED.value,
            S.UNDER_REVIEW.value,
            S.IN_TRANSIT.value,
            S.DISPUTED.value,
            S.CANCELLED.value,
        },
        S.PROOF_SUBMITTED.value: {
            S.UNDER_REVIEW.value,
            S.RELEASED.value,
            S.DISPUTED.value,
        },
        S.UNDER_REVIEW.value: {
            S.PROOF_SUBMITTED.value,  # Admin approves
            S.IN_TRANSIT.value,  # Admin approves physical
            S.FUNDED.value,  # Admin rejects, seller may resubmit
            S.RELEASED.value,  # Buyer releases anyway
            S.DISPUTED.value,
        },
        S.IN_TRANSIT.value: {
            S.DELIVERED_PENDING_RELEASE.value,
            S.RELEASED.value,
            S.DISPUTED.value,
        },
        S.DELIVERED_PENDING_RELEASE.value: {S.RELEASED.value, S.DISPUTED.value},
        S.DISPUTED.value: {S.RELEASED.value, S.REFUNDED.value, S.RESOLVED.value},
        S.RESOLVED.value: {S.RELEASED.value, S.REFUNDED.value},
        S.RELEASED.value: {S.PAYOUT_SCHEDULED.value},
        S.PAYOUT_SCHEDULED.value: {S.PAID_OUT.value},
        # Terminal states (no transitions allowed)
        S.PAID_OUT.value: set(),
        S.REFUNDED.value: set(),
        S.CANCELLED.value: set(),
    }

    PRE_FUNDING: FrozenSet[str] = frozenset({S.DRAFT.value, S.AWAITING_PAYMENT.value})

    PROOF_ELIGIBLE: FrozenSet[str] = frozenset({S.FUNDED.value, S.AWAITING_SHIPMENT.value})

    # Strictly after funding and strictly before release
    DISPUTE_ELIGIBLE: FrozenSet[str] = frozenset({
        S.FUNDED.value,
        S.AWAITING_SHIPMENT.value,
        S.PROOF_SUBMITTED.value,
        S.UNDER_REVIEW.value,
        S.IN_TRANSIT.value,
        S.DELIVERED_PENDING_RELEASE.value,
    })

    BUYER_RELEASABLE: FrozenSet[str] = frozenset({
        S.PROOF_SUBMITTED.value,
        S.UNDER_REVIEW.value,
        S.DELIVERED_PENDING_RELEASE.value,
    })

    AUTO_RELEASE_FAMILY: FrozenSet[str] = frozenset({
        S.PROOF_SUBMITTED.value,
        S.IN_TRANSIT.value,
        S.DELIVERED_PENDING_RELEASE.value,
    })

    RELEASED_FAMILY: FrozenSet[str] = frozenset({
        S.RELEASED.value,
        S.PAYOUT_SCHEDULED.value,
        S.PAID_OUT.value,
    })

    DISPUTE_RESOLVABLE: FrozenSet[str] = frozenset({S.DISPUTED.value, S.RESOLVED.value})

    @classmethod
    def is_valid_transition(cls, current_status: str, new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: str) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0 or status in (
            S.PAYOUT_SCHEDULED.value,
        )

    @classmethod
    def require_status(cls, current_status: str, allowed, transition: RiftTransition) -> None:
        """Raise InvalidTransition unless ``current_status`` is in ``allowed``"""
        if current_status not in allowed:
            logger.warning(
                f"⚠️ INVALID_TRANSITION: {transition.value} rejected from {current_status}"
            )
            raise InvalidTransition(current_status, transition.value)

    @classmethod
    def require_transition(cls, current_status: str, new_status: str, transition: RiftTransition) -> None:
        """Raise InvalidTransition unless the table allows current -> new"""
        if not cls.is_valid_transition(current_status, new_status):
            logger.warning(
                f"⚠️ INVALID_TRANSITION: {transition.value} {current_status} -> {new_status} not in table"
            )
            raise InvalidTransition(current_status, transition.value)
