"""
Legacy Status Mapping System
Maps legacy and UI status names onto the canonical RiftStatus values, and
canonical statuses onto the coarse public grouping shown to users
"""

from typing import Dict, List, Union
from enum import Enum
import logging

from models import RiftStatus
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


class PublicStatus(Enum):
    """Coarse status grouping exposed to buyers and sellers"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


S = RiftStatus


class LegacyStatusMapper:
    """
    Bidirectional mapping between legacy names and canonical statuses
    """

    # =============== LEGACY ALIASES (name → canonical) ===============
    LEGACY_ALIASES: Dict[str, RiftStatus] = {
        "CANCELED": S.CANCELLED,
        "COMPLETED": S.RELEASED,
        "PAID": S.FUNDED,
        "PENDING_PAYMENT": S.AWAITING_PAYMENT,
        "UNDER_DISPUTE": S.DISPUTED,
        "REVIEW": S.UNDER_REVIEW,
        "PAYOUT_PENDING": S.PAYOUT_SCHEDULED,
        "DELIVERED": S.DELIVERED_PENDING_RELEASE,
    }

    # =============== PUBLIC GROUPING (canonical → public) ===============
    CANONICAL_TO_PUBLIC: Dict[RiftStatus, PublicStatus] = {
        # Before funds are held
        S.DRAFT: PublicStatus.PENDING,
        S.AWAITING_PAYMENT: PublicStatus.PENDING,

        # Funds held, delivery in progress
        S.FUNDED: PublicStatus.IN_PROGRESS,
        S.AWAITING_SHIPMENT: PublicStatus.IN_PROGRESS,
        S.PROOF_SUBMITTED: PublicStatus.IN_PROGRESS,
        S.UNDER_REVIEW: PublicStatus.IN_PROGRESS,
        S.IN_TRANSIT: PublicStatus.IN_PROGRESS,
        S.DELIVERED_PENDING_RELEASE: PublicStatus.IN_PROGRESS,

        S.DISPUTED: PublicStatus.ON_HOLD,
        S.RESOLVED: PublicStatus.ON_HOLD,

        # Terminal
        S.RELEASED: PublicStatus.COMPLETED,
        S.PAYOUT_SCHEDULED: PublicStatus.COMPLETED,
        S.PAID_OUT: PublicStatus.COMPLETED,
        S.REFUNDED: PublicStatus.REFUNDED,
        S.CANCELLED: PublicStatus.CANCELLED,
    }

    @classmethod
    def to_canonical(cls, name: Union[str, RiftStatus]) -> RiftStatus:
        """
        Resolve a canonical or legacy status name (case-insensitive).

        Raises:
            ValidationError: unknown status name
        """
        if isinstance(name, RiftStatus):
            return name
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"Unknown status: {name!r}")

        key = name.strip().upper()
        if key in cls.LEGACY_ALIASES:
            return cls.LEGACY_ALIASES[key]
        try:
            return RiftStatus[key]
        except KeyError:
            logger.warning(f"⚠️ UNKNOWN_STATUS_NAME: {name!r}")
            raise ValidationError(f"Unknown status: {name!r}") from None

    @classmethod
    def to_public(cls, status: Union[str, RiftStatus]) -> PublicStatus:
        """Map a canonical status (enum, value or name) to its public group"""
        if isinstance(status, str):
            try:
                status = RiftStatus(status)
            except ValueError:
                status = cls.to_canonical(status)
        return cls.CANONICAL_TO_PUBLIC[status]

    @classmethod
    def legacy_names_for(cls, status: Union[str, RiftStatus]) -> List[str]:
        """Legacy aliases that resolve to ``status``, canonical name excluded"""
        canonical = cls.to_canonical(status) if not isinstance(status, RiftStatus) else status
        return sorted(name for name, target in cls.LEGACY_ALIASES.items() if target == canonical)

    @classmethod
    def validate_mapping_completeness(cls) -> None:
        """Every canonical status needs a public group"""
        missing = [s.name for s in RiftStatus if s not in cls.CANONICAL_TO_PUBLIC]
        if missing:
            raise RuntimeError(f"Statuses without a public group: {', '.join(missing)}")


LegacyStatusMapper.validate_mapping_completeness()
