"""
Auto-Release Scheduler
Grace-period deadlines per item kind, first-access recomputation, and the
sweep that hands due transactions to the lifecycle service.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal, managed_session
from models import ItemKind, RiftStatus, RiftTransaction
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_machine import RiftStateValidator
from utils.exceptions import InvalidTransition, ExternalServiceUnavailable
from utils.optimistic_locking import OptimisticLockManager

logger = logging.getLogger(__name__)

PHASE_SUBMISSION = "submission"
PHASE_ACCESS = "access"
PHASE_TRANSIT = "transit"
PHASE_DELIVERY = "delivery"


@dataclass
class SweepResult:
    released: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return f"released={len(self.released)} skipped={len(self.skipped)} errors={len(self.errors)}"


class AutoReleaseScheduler:
    """Deadline policy and bookkeeping. Never changes status on its own."""

    @staticmethod
    def window_hours(item_kind: str, phase: str) -> int:
        if item_kind == ItemKind.PHYSICAL.value:
            if phase == PHASE_DELIVERY:
                return Config.PHYSICAL_DELIVERY_GRACE_HOURS
            return Config.PHYSICAL_TRANSIT_WINDOW_HOURS
        windows = Config.grace_hours(item_kind)
        if phase == PHASE_ACCESS and windows["access"] is not None:
            return windows["access"]
        return windows["submission"]

    @staticmethod
    def has_access_window(item_kind: str) -> bool:
        if item_kind == ItemKind.PHYSICAL.value:
            return False
        return Config.grace_hours(item_kind)["access"] is not None

    @classmethod
    def compute_deadline(cls, item_kind: str, anchor: datetime, phase: str) -> datetime:
        return anchor + timedelta(hours=cls.window_hours(item_kind, phase))

    @classmethod
    def arm_fields(cls, rift: RiftTransaction, now: datetime, phase: str) -> Dict[str, Any]:
        """
        Column values that arm the timer.

        When the buyer already opened an artifact (e.g. while the proof sat in
        review) and the item kind has an access window, that window applies,
        counted from the later of the access and ``now``.
        """
        if (
            phase == PHASE_SUBMISSION
            and cls.has_access_window(rift.item_kind)
            and rift.first_buyer_access_at is not None
        ):
            anchor = max(rift.first_buyer_access_at, now)
            deadline = cls.compute_deadline(rift.item_kind, anchor, PHASE_ACCESS)
        else:
            deadline = cls.compute_deadline(rift.item_kind, now, phase)
        logger.info(
            f"⏰ AUTO_RELEASE_ARMED: rift #{rift.rift_number} phase={phase} deadline={deadline.isoformat()}"
        )
        return {"auto_release_armed": True, "grace_period_deadline": deadline}

    @staticmethod
    def disarm_fields() -> Dict[str, Any]:
        return {"auto_release_armed": False, "grace_period_deadline": None}

    @classmethod
    def recompute_on_first_access(cls, session: Session, rift: RiftTransaction, accessed_at: datetime) -> bool:
        """
        Record the buyer's first access and, when the timer is armed for an
        item kind with an access window (digital goods, ownership transfer),
        restart the deadline from that moment. Physical items and services
        only record the access.

        Returns True when anything changed. Later accesses are no-ops.
        """
        if rift.first_buyer_access_at is not None:
            return False

        updates: Dict[str, Any] = {"first_buyer_access_at": accessed_at}
        if (
            rift.auto_release_armed
            and rift.status in RiftStateValidator.AUTO_RELEASE_FAMILY
            and cls.has_access_window(rift.item_kind)
        ):
            updates["grace_period_deadline"] = cls.compute_deadline(rift.item_kind, accessed_at, PHASE_ACCESS)

        OptimisticLockManager(session).guarded_status_update(
            RiftTransaction, rift.id, rift.status, rift.version, rift.status,
            operation="record first access", updates=updates,
        )
        session.refresh(rift)
        if "grace_period_deadline" in updates:
            logger.info(
                f"⏰ AUTO_RELEASE_RECOMPUTED: rift #{rift.rift_number} first buyer access at "
                f"{accessed_at.isoformat()}, deadline now {rift.grace_period_deadline.isoformat()}"
            )
        return True

    @staticmethod
    def find_due(session: Session, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[str]:
        now = now or get_naive_utc_now()
        query = (
            session.query(RiftTransaction.id)
            .filter(
                RiftTransaction.auto_release_armed.is_(True),
                RiftTransaction.grace_period_deadline <= now,
                RiftTransaction.status.in_(RiftStateValidator.AUTO_RELEASE_FAMILY),
            )
            .order_by(RiftTransaction.grace_period_deadline)
            .limit(limit or Config.AUTO_RELEASE_BATCH_SIZE)
        )
        return [row[0] for row in query.all()]


def run_auto_release_sweep(lifecycle, now: Optional[datetime] = None) -> SweepResult:
    """
    Tick every due transaction, each in its own session and atomic unit.

    Blocked ticks (dispute opened, already released, lost race) are skips,
    not errors. One failing transaction never stops the sweep.
    """
    now = now or get_naive_utc_now()
    result = SweepResult()

    with managed_session() as session:
        due_ids = AutoReleaseScheduler.find_due(session, now)

    if due_ids:
        logger.info(f"🔄 AUTO_RELEASE_SWEEP: {len(due_ids)} transactions due")

    for rift_id in due_ids:
        session = SessionLocal()
        try:
            tick = lifecycle.auto_release_tick(session, rift_id, now=now)
            if tick.acted:
                result.released.append(rift_id)
            else:
                result.skipped.append(rift_id)
        except InvalidTransition as e:
            logger.info(f"⏭️ AUTO_RELEASE_SKIPPED: {rift_id}: {e}")
            result.skipped.append(rift_id)
        except Exception as e:
            logger.error(f"❌ AUTO_RELEASE_ERROR: {rift_id}: {type(e).__name__}: {e}")
            result.errors.append(rift_id)
        finally:
            session.close()

    if due_ids:
        logger.info(f"✅ AUTO_RELEASE_SWEEP_DONE: {result.summary()}")
    return result


def run_payout_sweep(lifecycle, identity_verifier, now: Optional[datetime] = None) -> SweepResult:
    """Move RELEASED transactions of payout-eligible sellers to PAYOUT_SCHEDULED"""
    now = now or get_naive_utc_now()
    result = SweepResult()

    with managed_session() as session:
        ids = [
            row[0] for row in session.query(RiftTransaction.id)
            .filter(RiftTransaction.status == RiftStatus.RELEASED.value)
            .order_by(RiftTransaction.released_at)
            .limit(Config.AUTO_RELEASE_BATCH_SIZE)
            .all()
        ]

    for rift_id in ids:
        session = SessionLocal()
        try:
            if lifecycle.schedule_payout(session, rift_id, identity_verifier, now=now):
                result.released.append(rift_id)
            else:
                result.skipped.append(rift_id)
        except (InvalidTransition, ExternalServiceUnavailable) as e:
            logger.warning(f"⏭️ PAYOUT_SCHEDULE_SKIPPED: {rift_id}: {e}")
            result.skipped.append(rift_id)
        except Exception as e:
            logger.error(f"❌ PAYOUT_SCHEDULE_ERROR: {rift_id}: {type(e).__name__}: {e}")
            result.errors.append(rift_id)
        finally:
            session.close()

    if ids:
        logger.info(f"✅ PAYOUT_SWEEP_DONE: {result.summary()}")
    return result
