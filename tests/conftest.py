"""
Shared test fixtures for the Rift escrow core

Key Components:
1. Fresh SQLite database per test (in-memory, or a file for threaded tests)
2. Users and actor factories for buyer, seller, admin and outsider
3. Mocked external collaborators (payment gateway, scoring, identity)
4. A wired lifecycle service plus helpers that drive a transaction to a given status
"""

import os

# Must be set before config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("VAULT_ENCRYPTION_KEY", "x5jzJ9Q2n1kq1cQ4w7Zb3dQm8b1pQe0xR9vY5sT2uFc=")

import logging
from decimal import Decimal
from unittest.mock import Mock

import pytest

from database import SessionLocal, configure_database, create_tables
from models import AssetKind, Base, ItemKind, User
from services.evidence_verification import EvidenceVerificationPipeline
from services.external_clients import (
    IdentityVerifier, InMemoryObjectStorage, PaymentGateway, ScoringService,
)
from services.rift_lifecycle import RiftLifecycleService
from services.vault_service import ProofSubmission, VaultService
from utils.authorization import Actor
from utils.fee_calculator import FeeSchedule

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BUYER_ID = 1001
SELLER_ID = 2002
OUTSIDER_ID = 3003
ADMIN_ID = 9009

UPS_TRACKING = "1Z999AA10123456784"
LICENSE_KEY = "ABCD1-EFGH2-IJKL3-MNOP4"


# ------------------------------------------------------------------ database

def _seed_users(session):
    for user_id, name in ((BUYER_ID, "buyer"), (SELLER_ID, "seller"),
                          (OUTSIDER_ID, "outsider"), (ADMIN_ID, "admin")):
        session.add(User(id=user_id, username=name, email=f"{name}@example.com"))
    session.commit()


@pytest.fixture
def db_engine():
    """Fresh in-memory database shared by every session in the test"""
    engine = configure_database("sqlite://")
    create_tables(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def file_db_engine(tmp_path):
    """File-backed database so separate threads get separate connections"""
    engine = configure_database(f"sqlite:///{tmp_path / 'rift_test.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    session = SessionLocal()
    _seed_users(session)
    yield session
    session.close()


# ------------------------------------------------------------------ actors

@pytest.fixture
def buyer():
    return Actor.buyer(BUYER_ID)


@pytest.fixture
def seller():
    return Actor.seller(SELLER_ID)


@pytest.fixture
def admin():
    return Actor.admin(ADMIN_ID)


@pytest.fixture
def outsider_buyer():
    return Actor.buyer(OUTSIDER_ID)


# ------------------------------------------------------------------ collaborators

@pytest.fixture
def fee_schedule():
    return FeeSchedule(buyer_fee_rate=Decimal("0.03"), seller_fee_rate=Decimal("0.05"))


@pytest.fixture
def payment_gateway():
    gateway = Mock(spec=PaymentGateway)
    gateway.authorize.return_value = "auth_test_123"
    gateway.capture.return_value = None
    gateway.payout.return_value = "po_test_123"
    return gateway


@pytest.fixture
def scoring():
    service = Mock(spec=ScoringService)
    service.analyze.return_value = {"score": 90, "routeToReview": False, "extractedData": {}}
    return service


@pytest.fixture
def identity_verifier():
    verifier = Mock(spec=IdentityVerifier)
    verifier.is_payout_eligible.return_value = True
    return verifier


@pytest.fixture
def storage():
    return InMemoryObjectStorage()


@pytest.fixture
def vault(storage):
    return VaultService(storage)


@pytest.fixture
def pipeline(scoring):
    return EvidenceVerificationPipeline(scoring)


@pytest.fixture
def lifecycle(vault, pipeline):
    return RiftLifecycleService(vault, pipeline)


# ------------------------------------------------------------------ scenario helpers

def tracking_proof(value=UPS_TRACKING):
    return ProofSubmission(asset_kind=AssetKind.TRACKING_NUMBER, text_value=value)


def license_proof(value=LICENSE_KEY):
    return ProofSubmission(asset_kind=AssetKind.LICENSE_KEY, text_value=value)


class RiftFactory:
    """Drives transactions through the lifecycle to a requested status"""

    def __init__(self, session, lifecycle, payment_gateway, fee_schedule):
        self._serial = 0
        self.session = session
        self.lifecycle = lifecycle
        self.payment_gateway = payment_gateway
        self.fee_schedule = fee_schedule

    def _next_license(self):
        self._serial += 1
        return f"ABCD1-EFGH2-IJKL3-{self._serial:05d}"

    def _next_tracking(self):
        self._serial += 1
        return f"1Z999AA1{self._serial:010d}"

    def created(self, item_kind=ItemKind.DIGITAL_GOODS, subtotal="100.00", currency="USD",
                buyer_id=BUYER_ID, seller_id=SELLER_ID, publish=True):
        return self.lifecycle.create_transaction(
            self.session, buyer_id, seller_id, item_kind, Decimal(subtotal), currency,
            title="Test item", publish=publish,
        )

    def funded(self, item_kind=ItemKind.DIGITAL_GOODS, subtotal="100.00", **kwargs):
        rift = self.created(item_kind=item_kind, subtotal=subtotal, **kwargs)
        return self.lifecycle.fund(
            self.session, rift.id, Actor.buyer(rift.buyer_id), self.payment_gateway, self.fee_schedule,
        )

    def proof_submitted(self, subtotal="100.00", **kwargs):
        rift = self.funded(item_kind=ItemKind.DIGITAL_GOODS, subtotal=subtotal, **kwargs)
        result = self.lifecycle.submit_proof(
            self.session, rift.id, Actor.seller(rift.seller_id), license_proof(self._next_license()),
        )
        assert result.outcome.passed, result.outcome.issues
        return rift

    def in_transit(self, subtotal="100.00", **kwargs):
        rift = self.funded(item_kind=ItemKind.PHYSICAL, subtotal=subtotal, **kwargs)
        result = self.lifecycle.submit_proof(
            self.session, rift.id, Actor.seller(rift.seller_id), tracking_proof(self._next_tracking()),
        )
        assert result.outcome.passed, result.outcome.issues
        return rift


@pytest.fixture
def rifts(session, lifecycle, payment_gateway, fee_schedule):
    return RiftFactory(session, lifecycle, payment_gateway, fee_schedule)
