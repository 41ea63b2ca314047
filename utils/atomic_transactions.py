"""Atomic transaction utilities for financial operations and status transitions"""

import logging
import time
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from database import SessionLocal
from models import RiftTransaction, User
from utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)

_DEPTH_ATTR = "_atomic_transaction_depth"


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    Everything written inside the block (status change, ledger lines, audit
    events) commits together or not at all. Nested blocks on the same session
    defer the commit to the outermost block; any exception rolls back the
    whole unit.
    """
    owns_session = session is None
    if owns_session:
        session = SessionLocal()
        logger.debug("Created new sync session for atomic transaction")

    depth = getattr(session, _DEPTH_ATTR, 0)
    setattr(session, _DEPTH_ATTR, depth + 1)
    if depth > 0:
        logger.debug(f"Nested transaction detected (depth: {depth + 1})")

    try:
        yield session
        if depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        session.rollback()
        if depth == 0:
            logger.warning(f"Transaction rolled back: {type(e).__name__}: {e}")
        raise
    finally:
        setattr(session, _DEPTH_ATTR, depth)
        if owns_session:
            session.close()


def _is_lock_contention(error: OperationalError) -> bool:
    message = str(error).lower()
    return (
        "deadlock detected" in message
        or "lock_timeout" in message
        or "could not obtain lock" in message
    )


def locked_rift(session: Session, rift_id: str, max_retries: int = 3) -> RiftTransaction:
    """
    Load a transaction with a row-level lock (SELECT ... FOR UPDATE).

    The returned row is refreshed from the database so guards see the latest
    committed status. Deadlocks are retried with exponential backoff.
    """
    retry_count = 0
    while True:
        try:
            rift = (
                session.query(RiftTransaction)
                .filter(RiftTransaction.id == rift_id)
                .with_for_update(nowait=False)
                .populate_existing()
                .first()
            )
            if rift is None:
                raise NotFoundError("Transaction not found")
            logger.debug(f"🔒 Acquired lock for rift {rift_id}")
            return rift
        except OperationalError as e:
            retry_count += 1
            if _is_lock_contention(e) and retry_count < max_retries:
                backoff_time = 0.1 * (2 ** retry_count)
                logger.warning(
                    f"Deadlock detected for rift {rift_id}, retrying "
                    f"({retry_count}/{max_retries}) after {backoff_time}s"
                )
                session.rollback()
                time.sleep(backoff_time)
                continue
            logger.error(f"Database operational error locking rift {rift_id}: {e}")
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error locking rift {rift_id}: {e}")
            raise


def locked_user(session: Session, user_id: int) -> User:
    """Row-lock a user to serialize wallet debits for that user"""
    user = (
        session.query(User)
        .filter(User.id == user_id)
        .with_for_update(nowait=False)
        .first()
    )
    if user is None:
        raise NotFoundError("User not found")
    return user
