"""
Audit Trail Service
Appends one AuditEvent per status transition, inside the transition's atomic unit
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models import AuditEvent, RiftTransaction
from utils.authorization import Actor

logger = logging.getLogger(__name__)


class AuditTrailService:
    """Service for transition audit records"""

    @classmethod
    def record_transition(
        cls,
        session: Session,
        rift: RiftTransaction,
        operation: str,
        from_status: Optional[str],
        to_status: str,
        actor: Actor,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=f"rift.{operation}",
            entity_type="rift",
            entity_id=rift.id,
            user_id=actor.user_id,
            actor_role=actor.role.value,
            event_data={
                "rift_number": rift.rift_number,
                "from_status": from_status,
                "to_status": to_status,
                **(details or {}),
            },
        )
        session.add(event)
        logger.debug(
            f"📝 AUDIT: rift #{rift.rift_number} {operation} {from_status} → {to_status} by {actor.role.value}"
        )
        return event

    @staticmethod
    def history(session: Session, rift_id: str) -> List[AuditEvent]:
        session.flush()
        return (
            session.query(AuditEvent)
            .filter(AuditEvent.entity_type == "rift", AuditEvent.entity_id == rift_id)
            .order_by(AuditEvent.id)
            .all()
        )
