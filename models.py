"""
Rift Escrow Core - Database Schema
==================================

Schema for the transaction lifecycle engine:
- Rift transactions with frozen fee terms and a guarded status column
- Vault assets (evidence artifacts) and hash-chained vault access events
- Disputes and dispute evidence
- Append-only ledger journal and payouts
- Audit events for every status transition
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class RiftStatus(Enum):
    """Canonical transaction lifecycle states"""
    DRAFT = "draft"
    AWAITING_PAYMENT = "awaiting_payment"
    FUNDED = "funded"
    AWAITING_SHIPMENT = "awaiting_shipment"
    PROOF_SUBMITTED = "proof_submitted"
    UNDER_REVIEW = "under_review"
    IN_TRANSIT = "in_transit"
    DELIVERED_PENDING_RELEASE = "delivered_pending_release"
    RELEASED = "released"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    PAYOUT_SCHEDULED = "payout_scheduled"
    PAID_OUT = "paid_out"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class ItemKind(Enum):
    """What is being sold"""
    PHYSICAL = "physical"
    DIGITAL_GOODS = "digital_goods"
    OWNERSHIP_TRANSFER = "ownership_transfer"
    SERVICES = "services"


class ActorRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class AssetKind(Enum):
    """Evidence artifact kinds"""
    FILE = "file"
    LICENSE_KEY = "license_key"
    TRACKING_NUMBER = "tracking_number"
    URL = "url"
    FREE_TEXT = "free_text"
    TICKET_PROOF = "ticket_proof"


class ScanStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FLAGGED = "flagged"


class VaultEventAction(Enum):
    """Vault access log actions"""
    UPLOADED = "uploaded"
    OPENED = "opened"
    REVEALED = "revealed"
    DOWNLOADED = "downloaded"
    VIEWED_TRACKING = "viewed_tracking"


class DisputeStatus(Enum):
    """Dispute sub-machine states"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    NEEDS_INFO = "needs_info"
    UNDER_REVIEW = "under_review"
    RESOLVED_BUYER = "resolved_buyer"
    RESOLVED_SELLER = "resolved_seller"
    RESOLVED = "resolved"


class DisputeReason(Enum):
    NOT_RECEIVED = "not_received"
    NOT_AS_DESCRIBED = "not_as_described"
    UNAUTHORIZED = "unauthorized"
    SELLER_NONRESPONSIVE = "seller_nonresponsive"
    OTHER = "other"


class LedgerEntryType(Enum):
    """Financial event types recorded in the journal"""
    ESCROW_HOLD = "escrow_hold"
    ESCROW_RELEASE = "escrow_release"
    PENDING_CREDIT = "pending_credit"
    PENDING_REVERSAL = "pending_reversal"
    CREDIT_RELEASE = "credit_release"
    BUYER_REFUND = "buyer_refund"
    PLATFORM_FEE = "platform_fee"
    DEBIT_WITHDRAWAL = "debit_withdrawal"
    DEBIT_CHARGEBACK = "debit_chargeback"
    ADJUSTMENT = "adjustment"


class LedgerAccount(Enum):
    """Which balance bucket a journal line belongs to"""
    WALLET = "wallet"
    PENDING = "pending"
    ESCROW = "escrow"
    PLATFORM = "platform"
    EXTERNAL = "external"


class PayoutStatus(Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Marketplace participant. Verification state lives in the identity service."""
    __tablename__ = "users"

    id = Column(BigInteger, primary_key=True)
    username = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"


class SequenceCounter(Base):
    """Named monotonic counters (rift numbers)"""
    __tablename__ = "sequence_counters"

    name = Column(String(50), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


class RiftTransaction(Base):
    """One escrow deal between a buyer and a seller"""
    __tablename__ = "rift_transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    rift_number = Column(BigInteger, unique=True, nullable=False, index=True)

    # Commercial terms
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    item_kind = Column(String(30), nullable=False)
    subtotal = Column(Numeric(20, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # Frozen at fund-time, never recomputed
    buyer_fee = Column(Numeric(20, 2), nullable=True)
    seller_fee = Column(Numeric(20, 2), nullable=True)
    buyer_total = Column(Numeric(20, 2), nullable=True)
    seller_net = Column(Numeric(20, 2), nullable=True)
    buyer_fee_rate = Column(Numeric(8, 6), nullable=True)
    seller_fee_rate = Column(Numeric(8, 6), nullable=True)

    # Parties
    buyer_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)

    status = Column(String(30), nullable=False, default=RiftStatus.AWAITING_PAYMENT.value)
    version = Column(Integer, nullable=False, default=1, server_default="1")

    payment_reference = Column(String(255), nullable=True)

    # Timing
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    funded_at = Column(DateTime, nullable=True)
    proof_submitted_at = Column(DateTime, nullable=True)
    first_buyer_access_at = Column(DateTime, nullable=True)
    grace_period_deadline = Column(DateTime, nullable=True)
    auto_release_armed = Column(Boolean, nullable=False, default=False)
    released_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    payout_scheduled_for = Column(DateTime, nullable=True)
    paid_out_at = Column(DateTime, nullable=True)
    payout_reference = Column(String(255), nullable=True)

    buyer = relationship("User", foreign_keys=[buyer_id])
    seller = relationship("User", foreign_keys=[seller_id])
    assets = relationship("VaultAsset", back_populates="rift", order_by="VaultAsset.created_at")
    disputes = relationship("Dispute", back_populates="rift", order_by="Dispute.created_at")

    __table_args__ = (
        CheckConstraint("subtotal > 0", name="ck_rift_subtotal_positive"),
        CheckConstraint("buyer_id != seller_id", name="ck_rift_distinct_parties"),
        Index("idx_rift_status", "status"),
        Index("idx_rift_auto_release", "auto_release_armed", "grace_period_deadline"),
    )

    def __repr__(self):
        return f"<RiftTransaction(rift_number={self.rift_number}, status={self.status}, subtotal={self.subtotal})>"


class VaultAsset(Base):
    """Seller-submitted evidence artifact. Immutable once hashed."""
    __tablename__ = "vault_assets"

    id = Column(String(36), primary_key=True, default=_new_id)
    rift_id = Column(String(36), ForeignKey("rift_transactions.id"), nullable=False, index=True)
    uploader_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    asset_kind = Column(String(30), nullable=False)

    content_sha256 = Column(String(64), nullable=False, index=True)
    canonical_sha256 = Column(String(64), nullable=False, index=True)
    storage_pointer = Column(String(512), nullable=True)
    encrypted_payload = Column(Text, nullable=True)
    text_value = Column(String(2048), nullable=True)
    file_name = Column(String(255), nullable=True)
    mime_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=True)

    scan_status = Column(String(20), nullable=False, default=ScanStatus.PENDING.value)
    quality_score = Column(Integer, nullable=True)
    route_to_review = Column(Boolean, nullable=False, default=False)
    verification_issues = Column(JSON, nullable=True)
    extracted_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)

    rift = relationship("RiftTransaction", back_populates="assets")

    __table_args__ = (
        CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 100)",
            name="ck_vault_asset_score_range",
        ),
    )

    def __repr__(self):
        return f"<VaultAsset(id={self.id}, kind={self.asset_kind}, scan_status={self.scan_status})>"


class VaultEvent(Base):
    """Append-only, hash-chained vault access log"""
    __tablename__ = "vault_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), unique=True, nullable=False, default=_new_id)
    rift_id = Column(String(36), ForeignKey("rift_transactions.id"), nullable=False, index=True)
    asset_id = Column(String(36), ForeignKey("vault_assets.id"), nullable=True, index=True)
    actor_id = Column(BigInteger, nullable=True)
    actor_role = Column(String(20), nullable=False)
    action = Column(String(30), nullable=False)
    asset_hash = Column(String(64), nullable=True)
    client_fingerprint = Column(String(255), nullable=True)
    prev_log_hash = Column(String(64), nullable=True)
    log_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_vault_event_rift_action", "rift_id", "action"),
    )

    def __repr__(self):
        return f"<VaultEvent(rift_id={self.rift_id}, action={self.action}, actor_role={self.actor_role})>"


class Dispute(Base):
    """Dispute raised against a funded transaction"""
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=_new_id)
    rift_id = Column(String(36), ForeignKey("rift_transactions.id"), nullable=False, index=True)
    raised_by = Column(BigInteger, ForeignKey("users.id"), nullable=False)
    raised_by_role = Column(String(20), nullable=False)
    reason = Column(String(30), nullable=False)
    summary = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=DisputeStatus.SUBMITTED.value)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    rift = relationship("RiftTransaction", back_populates="disputes")
    evidence = relationship("DisputeEvidence", back_populates="dispute", order_by="DisputeEvidence.created_at")

    __table_args__ = (
        Index("idx_dispute_rift_status", "rift_id", "status"),
    )

    def __repr__(self):
        return f"<Dispute(id={self.id}, rift_id={self.rift_id}, status={self.status})>"


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False, index=True)
    submitted_by = Column(BigInteger, nullable=False)
    submitted_by_role = Column(String(20), nullable=False)
    kind = Column(String(30), nullable=False, default="text")
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    dispute = relationship("Dispute", back_populates="evidence")


class LedgerEntry(Base):
    """Append-only financial journal line. Balances are sums over these rows."""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(36), unique=True, nullable=False, default=_new_id)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=True, index=True)
    account = Column(String(20), nullable=False)
    entry_type = Column(String(30), nullable=False)
    amount = Column(Numeric(20, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    rift_id = Column(String(36), ForeignKey("rift_transactions.id"), nullable=True, index=True)
    payout_id = Column(String(36), ForeignKey("payouts.id"), nullable=True, index=True)
    description = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount != 0", name="ck_ledger_amount_nonzero"),
        Index("idx_ledger_user_account", "user_id", "account", "currency"),
    )

    def __repr__(self):
        return f"<LedgerEntry(type={self.entry_type}, account={self.account}, amount={self.amount})>"


class Payout(Base):
    """Seller withdrawal request, advanced by the payout processor"""
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(BigInteger, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(20, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    is_first_withdrawal = Column(Boolean, nullable=False, default=False)
    failure_reason = Column(Text, nullable=True)
    external_reference = Column(String(255), nullable=True)
    scheduled_for = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payout_amount_positive"),
    )

    def __repr__(self):
        return f"<Payout(id={self.id}, amount={self.amount}, status={self.status})>"


class AuditEvent(Base):
    """Transition audit log, written in the same unit as the transition"""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), unique=True, nullable=False, index=True, default=_new_id)

    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(50), nullable=False)

    event_data = Column(JSON, nullable=False)
    user_id = Column(BigInteger, nullable=True, index=True)
    actor_role = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_event_type", "event_type"),
        Index("idx_audit_event_entity", "entity_type", "entity_id"),
    )

    def __repr__(self):
        return f"<AuditEvent(event_id={self.event_id}, event_type={self.event_type}, entity_type={self.entity_type})>"
