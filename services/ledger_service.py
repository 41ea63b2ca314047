"""
Ledger Service
Append-only financial journal. Every status transition that moves money
posts its lines here inside the transition's atomic unit.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import LedgerEntry, LedgerEntryType, LedgerAccount, RiftTransaction
from utils.exceptions import ConflictError

logger = logging.getLogger(__name__)

T = LedgerEntryType
A = LedgerAccount

# Lines that move held funds to their final owner. At most one set per transaction.
DISBURSEMENT_TYPES = (T.CREDIT_RELEASE.value, T.BUYER_REFUND.value)


class LedgerImbalanceError(Exception):
    """Journal lines for a transaction do not net out as expected"""


class LedgerService:
    """Posts balanced journal lines for escrow holds, releases and refunds"""

    @staticmethod
    def _line(
        session: Session,
        entry_type: LedgerEntryType,
        account: LedgerAccount,
        amount: Decimal,
        currency: str,
        user_id: Optional[int] = None,
        rift_id: Optional[str] = None,
        payout_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            entry_type=entry_type.value,
            account=account.value,
            amount=amount,
            currency=currency,
            user_id=user_id,
            rift_id=rift_id,
            payout_id=payout_id,
            description=description,
        )
        session.add(entry)
        return entry

    @classmethod
    def _ensure_not_disbursed(cls, session: Session, rift: RiftTransaction, operation: str) -> None:
        session.flush()
        existing = (
            session.query(func.count(LedgerEntry.id))
            .filter(
                LedgerEntry.rift_id == rift.id,
                LedgerEntry.entry_type.in_(DISBURSEMENT_TYPES),
            )
            .scalar()
        )
        if existing:
            logger.critical(
                f"🚨 DOUBLE_DISBURSEMENT_BLOCKED: rift #{rift.rift_number} already disbursed, {operation} refused"
            )
            raise ConflictError(rift.status, rift.status, operation)

    @classmethod
    def post_hold(cls, session: Session, rift: RiftTransaction) -> None:
        """Funds captured from the buyer are now held in escrow, seller net shows as pending"""
        cls._line(session, T.ESCROW_HOLD, A.ESCROW, rift.buyer_total, rift.currency,
                  rift_id=rift.id, description=f"Escrow hold for rift #{rift.rift_number}")
        cls._line(session, T.PENDING_CREDIT, A.PENDING, rift.seller_net, rift.currency,
                  user_id=rift.seller_id, rift_id=rift.id,
                  description=f"Pending sale proceeds for rift #{rift.rift_number}")
        logger.info(
            f"📒 LEDGER_HOLD: rift #{rift.rift_number} held {rift.buyer_total} {rift.currency}"
        )

    @classmethod
    def _reverse_hold(cls, session: Session, rift: RiftTransaction) -> None:
        cls._line(session, T.ESCROW_RELEASE, A.ESCROW, -rift.buyer_total, rift.currency,
                  rift_id=rift.id, description=f"Escrow released for rift #{rift.rift_number}")
        cls._line(session, T.PENDING_REVERSAL, A.PENDING, -rift.seller_net, rift.currency,
                  user_id=rift.seller_id, rift_id=rift.id,
                  description=f"Pending proceeds cleared for rift #{rift.rift_number}")

    @classmethod
    def post_release(cls, session: Session, rift: RiftTransaction) -> None:
        """Held funds go to the seller's wallet (net) and the platform (fees)"""
        cls._ensure_not_disbursed(session, rift, "release")
        cls._reverse_hold(session, rift)
        cls._line(session, T.CREDIT_RELEASE, A.WALLET, rift.seller_net, rift.currency,
                  user_id=rift.seller_id, rift_id=rift.id,
                  description=f"Sale proceeds for rift #{rift.rift_number}")
        platform_fee = rift.buyer_fee + rift.seller_fee
        if platform_fee:
            cls._line(session, T.PLATFORM_FEE, A.PLATFORM, platform_fee, rift.currency,
                      rift_id=rift.id, description=f"Fees for rift #{rift.rift_number}")
        logger.info(
            f"💰 LEDGER_RELEASE: rift #{rift.rift_number} seller credited {rift.seller_net} {rift.currency}, "
            f"platform fee {platform_fee}"
        )

    @classmethod
    def post_refund(cls, session: Session, rift: RiftTransaction, retain_buyer_fee: bool = False) -> Decimal:
        """
        Held funds go back to the buyer's wallet.

        With ``retain_buyer_fee`` the buyer fee is kept as platform revenue and
        only the subtotal is refunded. Returns the refunded amount.
        """
        cls._ensure_not_disbursed(session, rift, "refund")
        cls._reverse_hold(session, rift)
        refund_amount = rift.subtotal if retain_buyer_fee and rift.buyer_fee else rift.buyer_total
        cls._line(session, T.BUYER_REFUND, A.WALLET, refund_amount, rift.currency,
                  user_id=rift.buyer_id, rift_id=rift.id,
                  description=f"Refund for rift #{rift.rift_number}")
        if refund_amount != rift.buyer_total:
            cls._line(session, T.PLATFORM_FEE, A.PLATFORM, rift.buyer_total - refund_amount, rift.currency,
                      rift_id=rift.id, description=f"Retained buyer fee for rift #{rift.rift_number}")
        logger.info(
            f"↩️ LEDGER_REFUND: rift #{rift.rift_number} buyer refunded {refund_amount} {rift.currency}"
        )
        return refund_amount

    @classmethod
    def post_chargeback(cls, session: Session, user_id: int, amount: Decimal, currency: str,
                        rift_id: Optional[str] = None) -> LedgerEntry:
        """Card network reversed a payment: debit the user's wallet, negative balance allowed"""
        entry = cls._line(session, T.DEBIT_CHARGEBACK, A.WALLET, -abs(amount), currency,
                          user_id=user_id, rift_id=rift_id, description="Chargeback")
        logger.warning(f"⚠️ LEDGER_CHARGEBACK: user {user_id} debited {abs(amount)} {currency}")
        return entry

    @classmethod
    def post_adjustment(cls, session: Session, user_id: int, amount: Decimal, currency: str,
                        description: str, payout_id: Optional[str] = None) -> LedgerEntry:
        entry = cls._line(session, T.ADJUSTMENT, A.WALLET, amount, currency,
                          user_id=user_id, payout_id=payout_id, description=description)
        logger.info(f"🧾 LEDGER_ADJUSTMENT: user {user_id} {amount:+} {currency} ({description})")
        return entry

    @classmethod
    def post_withdrawal(cls, session: Session, user_id: int, amount: Decimal, currency: str,
                        payout_id: str) -> LedgerEntry:
        return cls._line(session, T.DEBIT_WITHDRAWAL, A.WALLET, -abs(amount), currency,
                         user_id=user_id, payout_id=payout_id, description="Withdrawal")

    @staticmethod
    def entries_for_rift(session: Session, rift_id: str) -> List[LedgerEntry]:
        session.flush()
        return (
            session.query(LedgerEntry)
            .filter(LedgerEntry.rift_id == rift_id)
            .order_by(LedgerEntry.id)
            .all()
        )

    @classmethod
    def get_disbursements(cls, session: Session, rift_id: str) -> List[LedgerEntry]:
        """Release-equivalent lines: seller credit, buyer refund, platform fee"""
        return [
            e for e in cls.entries_for_rift(session, rift_id)
            if e.entry_type in DISBURSEMENT_TYPES + (T.PLATFORM_FEE.value,)
        ]

    @classmethod
    def assert_balanced(cls, session: Session, rift: RiftTransaction) -> None:
        """
        Escrow and pending accounts net to zero once funds have left escrow,
        and the disbursements add up to exactly what the buyer paid.
        """
        entries = cls.entries_for_rift(session, rift.id)
        if not entries:
            return

        def total(account: LedgerAccount) -> Decimal:
            return sum((e.amount for e in entries if e.account == account.value), Decimal("0"))

        disbursements = cls.get_disbursements(session, rift.id)
        escrow = total(A.ESCROW)
        pending = total(A.PENDING)

        if not disbursements:
            if escrow != rift.buyer_total or pending != rift.seller_net:
                raise LedgerImbalanceError(f"Open hold for rift #{rift.rift_number} does not match terms")
            return

        paid_out = sum((e.amount for e in disbursements), Decimal("0"))
        if escrow != 0 or pending != 0 or paid_out != rift.buyer_total:
            raise LedgerImbalanceError(
                f"Rift #{rift.rift_number} unbalanced: escrow={escrow} pending={pending} "
                f"disbursed={paid_out} expected={rift.buyer_total}"
            )
