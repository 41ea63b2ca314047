"""
Wallet Service
Balance projections over the ledger, withdrawal eligibility and payout tracking
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import LedgerEntry, LedgerAccount, Payout, PayoutStatus
from services.external_clients import IdentityVerifier, PaymentGateway
from services.ledger_service import LedgerService
from utils.atomic_transactions import atomic_transaction, locked_user
from utils.currency_validation import validate_currency_code
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidTransition, NotFoundError, ValidationError, Unauthorized
from utils.external_call import guarded_call
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)


@dataclass
class WalletBalance:
    available: Decimal
    pending: Decimal
    currency: str


@dataclass
class WithdrawalEligibility:
    eligible: bool
    reasons: List[str] = field(default_factory=list)


class WalletService:
    """Read-side wallet projections and the withdrawal write path"""

    # Forward-only payout lifecycle reported by the payout processor
    PAYOUT_TRANSITIONS = {
        PayoutStatus.PENDING.value: {PayoutStatus.SCHEDULED.value, PayoutStatus.PROCESSING.value,
                                     PayoutStatus.FAILED.value},
        PayoutStatus.SCHEDULED.value: {PayoutStatus.PROCESSING.value, PayoutStatus.FAILED.value},
        PayoutStatus.PROCESSING.value: {PayoutStatus.COMPLETED.value, PayoutStatus.FAILED.value},
        PayoutStatus.COMPLETED.value: set(),
        PayoutStatus.FAILED.value: set(),
    }

    def __init__(self, identity_verifier: IdentityVerifier, payment_gateway: PaymentGateway):
        self.identity_verifier = identity_verifier
        self.payment_gateway = payment_gateway

    @staticmethod
    def _sum(session: Session, user_id: int, account: LedgerAccount, currency: str) -> Decimal:
        session.flush()
        value = (
            session.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(
                LedgerEntry.user_id == user_id,
                LedgerEntry.account == account.value,
                LedgerEntry.currency == currency,
            )
            .scalar()
        )
        return Decimal(str(value)).quantize(Decimal("0.01"))

    @classmethod
    def get_balance(cls, session: Session, user_id: int, currency: str = "USD") -> WalletBalance:
        code = validate_currency_code(currency)
        return WalletBalance(
            available=cls._sum(session, user_id, LedgerAccount.WALLET, code),
            pending=cls._sum(session, user_id, LedgerAccount.PENDING, code),
            currency=code,
        )

    @staticmethod
    def get_ledger(session: Session, user_id: int, limit: int = 50) -> List[LedgerEntry]:
        """Newest first"""
        return (
            session.query(LedgerEntry)
            .filter(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.id.desc())
            .limit(limit)
            .all()
        )

    def check_withdrawal_eligibility(self, session: Session, user_id: int,
                                     currency: str = "USD") -> WithdrawalEligibility:
        reasons = []
        if not guarded_call("identity", self.identity_verifier.is_payout_eligible, user_id):
            reasons.append("payout_verification_incomplete")
        if self.get_balance(session, user_id, currency).available <= 0:
            reasons.append("no_available_balance")
        return WithdrawalEligibility(eligible=not reasons, reasons=reasons)

    def request_withdrawal(self, session: Session, user_id: int, amount, currency: str = "USD") -> Payout:
        """
        Create a pending payout, debit the wallet and hand the payout to the
        payment gateway in one atomic unit. A gateway failure persists nothing.

        Raises:
            ValidationError: bad amount or amount above available balance
            Unauthorized: user is not payout-eligible
            ExternalServiceUnavailable: the payment gateway did not accept the payout
        """
        code = validate_currency_code(currency)
        value = FeeCalculator.validate_amount(amount, code)

        with atomic_transaction(session):
            locked_user(session, user_id)

            eligibility = self.check_withdrawal_eligibility(session, user_id, code)
            if not eligibility.eligible:
                logger.warning(f"🚫 WITHDRAWAL_REJECTED: user {user_id} reasons={eligibility.reasons}")
                raise Unauthorized(f"Withdrawal not allowed: {', '.join(eligibility.reasons)}")

            available = self.get_balance(session, user_id, code).available
            if value > available:
                raise ValidationError(f"Withdrawal {value} {code} exceeds available balance {available} {code}")

            prior = (
                session.query(func.count(Payout.id))
                .filter(
                    Payout.user_id == user_id,
                    Payout.status != PayoutStatus.FAILED.value,
                )
                .scalar()
            )
            payout = Payout(
                user_id=user_id,
                amount=value,
                currency=code,
                status=PayoutStatus.PENDING.value,
                is_first_withdrawal=prior == 0,
            )
            session.add(payout)
            session.flush()
            LedgerService.post_withdrawal(session, user_id, value, code, payout.id)
            payout.external_reference = guarded_call(
                "payment_gateway", self.payment_gateway.payout, user_id, value, code
            )

        logger.info(
            f"🏦 WITHDRAWAL_REQUESTED: user {user_id} {value} {code} payout={payout.id} "
            f"first={payout.is_first_withdrawal}"
        )
        return payout

    def record_payout_update(
        self,
        session: Session,
        payout_id: str,
        new_status: str,
        external_reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
        scheduled_for=None,
    ) -> Payout:
        """Apply a status report from the payout processor. Failed payouts are credited back."""
        with atomic_transaction(session):
            payout = (
                session.query(Payout)
                .filter(Payout.id == payout_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if payout is None:
                raise NotFoundError("Payout not found")

            allowed = self.PAYOUT_TRANSITIONS.get(payout.status, set())
            if new_status not in allowed:
                raise InvalidTransition(payout.status, f"mark payout {new_status}")

            payout.status = new_status
            payout.updated_at = get_naive_utc_now()
            if external_reference:
                payout.external_reference = external_reference
            if scheduled_for is not None:
                payout.scheduled_for = scheduled_for

            if new_status == PayoutStatus.FAILED.value:
                payout.failure_reason = failure_reason or "unspecified"
                LedgerService.post_adjustment(
                    session, payout.user_id, payout.amount, payout.currency,
                    description=f"Payout failed: {payout.failure_reason}", payout_id=payout.id,
                )
                logger.error(f"❌ PAYOUT_FAILED: payout {payout.id} reason={payout.failure_reason}")
            else:
                logger.info(f"📤 PAYOUT_{new_status.upper()}: payout {payout.id}")

        return payout
