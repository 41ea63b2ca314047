"""
Optimistic Locking Infrastructure
Version-based concurrency control for guarded status transitions
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import update, select
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ConflictError

logger = logging.getLogger(__name__)


class OptimisticLockManager:
    """
    Conditional writes keyed on (id, status, version).

    An update only lands when the persisted row still has the status and
    version the caller observed; otherwise a concurrent writer won and the
    caller gets ConflictError.
    """

    def __init__(self, session: Session):
        self.session = session

    def guarded_status_update(
        self,
        model_class,
        entity_id: Any,
        expected_status: str,
        current_version: int,
        new_status: str,
        operation: str,
        updates: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Move an entity from ``expected_status`` to ``new_status``.

        Returns:
            int: the new version

        Raises:
            ConflictError: if zero rows matched the status/version predicate
        """
        values = {
            **(updates or {}),
            "status": new_status,
            "version": current_version + 1,
            "updated_at": get_naive_utc_now(),
        }
        stmt = (
            update(model_class)
            .where(
                model_class.id == entity_id,
                model_class.status == expected_status,
                model_class.version == current_version,
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during guarded update: {e}")
            raise

        if result.rowcount == 0:
            observed = self.session.execute(
                select(model_class.status).where(model_class.id == entity_id)
            ).scalar()
            logger.warning(
                f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                f"expected={expected_status}@v{current_version} observed={observed} op={operation}"
            )
            raise ConflictError(expected_status, observed or "unknown", operation)

        logger.debug(
            f"✅ Versioned update successful: {model_class.__name__} id={entity_id} "
            f"v{current_version} → v{current_version + 1} ({expected_status} → {new_status})"
        )
        return current_version + 1

