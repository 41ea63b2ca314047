"""
Wallet and Ledger Tests
Balance projections, withdrawal eligibility, payout status updates, ledger guards
"""

import pytest
from decimal import Decimal

from models import LedgerEntry, LedgerEntryType, Payout, PayoutStatus
from services.ledger_service import LedgerImbalanceError, LedgerService
from services.wallet_service import WalletService
from utils.exceptions import (
    ConflictError, ExternalServiceUnavailable, InvalidTransition, NotFoundError, Unauthorized, ValidationError,
)
from tests.conftest import BUYER_ID, SELLER_ID


@pytest.fixture
def wallet(identity_verifier, payment_gateway):
    return WalletService(identity_verifier, payment_gateway)


@pytest.fixture
def released(rifts, lifecycle, session, buyer):
    rift = rifts.proof_submitted()
    return lifecycle.buyer_release(session, rift.id, buyer)


class TestBalances:
    """Balances are sums over ledger lines"""

    def test_empty_wallet(self, session):
        balance = WalletService.get_balance(session, SELLER_ID, "usd")
        assert balance.available == Decimal("0.00")
        assert balance.pending == Decimal("0.00")
        assert balance.currency == "USD"

    def test_balances_follow_lifecycle(self, rifts, lifecycle, session, buyer):
        first = rifts.proof_submitted()
        rifts.funded(subtotal="50.00")

        assert WalletService.get_balance(session, SELLER_ID).pending == Decimal("142.50")

        lifecycle.buyer_release(session, first.id, buyer)
        balance = WalletService.get_balance(session, SELLER_ID)
        assert balance.available == Decimal("95.00")
        assert balance.pending == Decimal("47.50")

    def test_ledger_history_newest_first(self, released, session):
        entries = WalletService.get_ledger(session, SELLER_ID)
        assert entries[0].entry_type == LedgerEntryType.CREDIT_RELEASE.value
        assert entries[-1].entry_type == LedgerEntryType.PENDING_CREDIT.value

    def test_chargeback_can_go_negative(self, session):
        LedgerService.post_chargeback(session, BUYER_ID, Decimal("25.00"), "USD")
        session.commit()
        assert WalletService.get_balance(session, BUYER_ID).available == Decimal("-25.00")


class TestWithdrawals:
    """Eligibility, debit, payout failure credit-back"""

    def test_unverified_seller_is_not_eligible(self, released, wallet, session, identity_verifier):
        identity_verifier.is_payout_eligible.return_value = False

        eligibility = wallet.check_withdrawal_eligibility(session, SELLER_ID)
        assert eligibility.eligible is False
        assert eligibility.reasons == ["payout_verification_incomplete"]

        with pytest.raises(Unauthorized):
            wallet.request_withdrawal(session, SELLER_ID, Decimal("10.00"))

    def test_no_balance_is_not_eligible(self, wallet, session):
        eligibility = wallet.check_withdrawal_eligibility(session, SELLER_ID)
        assert "no_available_balance" in eligibility.reasons

    def test_withdrawal_debits_wallet(self, released, wallet, session):
        payout = wallet.request_withdrawal(session, SELLER_ID, Decimal("40.00"))

        assert payout.status == PayoutStatus.PENDING.value
        assert payout.is_first_withdrawal is True
        assert WalletService.get_balance(session, SELLER_ID).available == Decimal("55.00")

        second = wallet.request_withdrawal(session, SELLER_ID, Decimal("5.00"))
        assert second.is_first_withdrawal is False

    def test_withdrawal_is_handed_to_gateway(self, released, wallet, session, payment_gateway):
        payout = wallet.request_withdrawal(session, SELLER_ID, Decimal("40.00"))

        payment_gateway.payout.assert_called_once_with(SELLER_ID, Decimal("40.00"), "USD")
        assert payout.external_reference == "po_test_123"

    def test_gateway_failure_persists_nothing(self, released, wallet, session, payment_gateway):
        payment_gateway.payout.side_effect = ExternalServiceUnavailable("payment_gateway", "timeout")

        with pytest.raises(ExternalServiceUnavailable):
            wallet.request_withdrawal(session, SELLER_ID, Decimal("40.00"))

        assert session.query(Payout).count() == 0
        assert WalletService.get_balance(session, SELLER_ID).available == Decimal("95.00")

    def test_withdrawal_above_balance_rejected(self, released, wallet, session):
        with pytest.raises(ValidationError):
            wallet.request_withdrawal(session, SELLER_ID, Decimal("95.01"))
        assert WalletService.get_balance(session, SELLER_ID).available == Decimal("95.00")

    def test_failed_payout_credits_back(self, released, wallet, session):
        payout = wallet.request_withdrawal(session, SELLER_ID, Decimal("95.00"))
        wallet.record_payout_update(session, payout.id, PayoutStatus.PROCESSING.value, external_reference="bank_1")
        wallet.record_payout_update(session, payout.id, PayoutStatus.FAILED.value, failure_reason="account closed")

        assert payout.status == PayoutStatus.FAILED.value
        assert payout.failure_reason == "account closed"
        assert WalletService.get_balance(session, SELLER_ID).available == Decimal("95.00")

    def test_payout_status_is_forward_only(self, released, wallet, session):
        payout = wallet.request_withdrawal(session, SELLER_ID, Decimal("10.00"))
        wallet.record_payout_update(session, payout.id, PayoutStatus.PROCESSING.value)
        wallet.record_payout_update(session, payout.id, PayoutStatus.COMPLETED.value)

        with pytest.raises(InvalidTransition):
            wallet.record_payout_update(session, payout.id, PayoutStatus.FAILED.value)

    def test_unknown_payout(self, wallet, session):
        with pytest.raises(NotFoundError):
            wallet.record_payout_update(session, "missing", PayoutStatus.PROCESSING.value)


class TestLedgerGuards:
    """Double-disbursement guard and balance invariant"""

    def test_second_disbursement_is_blocked(self, released, session):
        with pytest.raises(ConflictError):
            LedgerService.post_refund(session, released)
        session.rollback()

        refunds = session.query(LedgerEntry).filter(
            LedgerEntry.rift_id == released.id,
            LedgerEntry.entry_type == LedgerEntryType.BUYER_REFUND.value,
        ).count()
        assert refunds == 0

    def test_open_hold_is_balanced(self, rifts, session):
        rift = rifts.funded()
        LedgerService.assert_balanced(session, rift)

    def test_tampered_journal_is_detected(self, released, session):
        session.add(LedgerEntry(
            entry_type=LedgerEntryType.ADJUSTMENT.value, account="escrow", amount=Decimal("1.00"),
            currency="USD", rift_id=released.id,
        ))
        session.commit()

        with pytest.raises(LedgerImbalanceError):
            LedgerService.assert_balanced(session, released)
