"""Actor identity and party/role checks for transaction operations"""

import logging
from dataclasses import dataclass
from typing import Optional

from models import ActorRole, RiftTransaction
from utils.exceptions import Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who is calling: a user id plus the role they claim"""

    user_id: Optional[int]
    role: ActorRole

    @classmethod
    def buyer(cls, user_id: int) -> "Actor":
        return cls(user_id, ActorRole.BUYER)

    @classmethod
    def seller(cls, user_id: int) -> "Actor":
        return cls(user_id, ActorRole.SELLER)

    @classmethod
    def admin(cls, user_id: int) -> "Actor":
        return cls(user_id, ActorRole.ADMIN)

    @classmethod
    def system(cls) -> "Actor":
        return cls(None, ActorRole.SYSTEM)


def is_party(actor: Actor, rift: RiftTransaction) -> bool:
    """True when the claimed role matches the transaction's recorded party"""
    if actor.role == ActorRole.BUYER:
        return actor.user_id is not None and actor.user_id == rift.buyer_id
    if actor.role == ActorRole.SELLER:
        return actor.user_id is not None and actor.user_id == rift.seller_id
    return False


def require_actor(actor: Actor, rift: RiftTransaction, *roles: ActorRole, operation: str) -> None:
    """
    Raise Unauthorized unless ``actor`` holds one of ``roles`` on this transaction.

    Buyer and seller roles must match the transaction's parties; admin and
    system roles are accepted as-is (authenticated upstream). The message never
    names the other party.
    """
    if actor.role not in roles:
        logger.warning(
            f"🚫 UNAUTHORIZED: {actor.role.value} attempted {operation} on rift #{rift.rift_number}"
        )
        allowed = "/".join(r.value for r in roles)
        raise Unauthorized(f"Only {allowed} may {operation}")

    if actor.role in (ActorRole.BUYER, ActorRole.SELLER) and not is_party(actor, rift):
        logger.warning(
            f"🚫 UNAUTHORIZED: user {actor.user_id} is not the {actor.role.value} of rift #{rift.rift_number}"
        )
        raise Unauthorized(f"Caller is not the {actor.role.value} on this transaction")
