"""
Evidence Verification Pipeline

Decides whether a seller artifact is trustworthy enough to arm automatic
release, or must go to a human. Fails closed: if the scoring model is
unavailable or returns garbage, the artifact is routed to review.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from config import Config
from models import AssetKind, RiftTransaction, ScanStatus, VaultAsset
from services.external_clients import ScoringService
from utils.escrow_state_machine import RiftStateValidator
from utils.evidence_extraction import (
    DATE_EVENT, SETTLEMENT_DATE_TYPES, ExtractedEvidence, extract_evidence,
)
from utils.exceptions import ExternalServiceUnavailable
from utils.external_call import guarded_call

logger = logging.getLogger(__name__)

RISK_HIGH = "HIGH"
RISK_CRITICAL = "CRITICAL"

URL_SHORTENERS = ("bit.ly", "tinyurl.com", "t.co", "goo.gl")

CARRIER_PATTERNS = {
    "UPS": re.compile(r"^1Z[0-9A-Z]{16}$"),
    "FedEx": re.compile(r"^\d{12,14}$"),
    "USPS": re.compile(r"^[0-9]{20,22}$|^[A-Z]{2}[0-9]{9}[A-Z]{2}$"),
    "DHL": re.compile(r"^\d{10,11}$"),
}

_SHA256 = re.compile(r"^[0-9a-f]{64}$")
_TRACKING_CHARS = re.compile(r"^[A-Za-z0-9-]+$")

# Inline values worth running the extractors over
TEXT_EXTRACTION_KINDS = (AssetKind.FREE_TEXT.value, AssetKind.TICKET_PROOF.value)

# Score penalties
PENALTY_TRACKING_LENGTH = 20
PENALTY_TRACKING_CHARS = 15
PENALTY_TRACKING_CARRIER = 5
PENALTY_LICENSE_REUSED = 40
PENALTY_AMOUNT_MISMATCH = 30
PENALTY_DATE = 25
PENALTY_DUPLICATE_EACH = 10
PENALTY_DUPLICATE_CAP = 40
PENALTY_STYLE_OUTLIER = 15
STYLE_HISTORY_MINIMUM = 3


@dataclass
class VerificationContext:
    rift_id: str
    seller_id: int
    item_kind: str
    subtotal: Decimal
    currency: str
    submitted_at: datetime

    @classmethod
    def for_rift(cls, rift: RiftTransaction, submitted_at: datetime) -> "VerificationContext":
        return cls(
            rift_id=rift.id,
            seller_id=rift.seller_id,
            item_kind=rift.item_kind,
            subtotal=Decimal(rift.subtotal),
            currency=rift.currency,
            submitted_at=submitted_at,
        )

    def as_payload(self) -> Dict[str, Any]:
        return {
            "item_kind": self.item_kind,
            "subtotal": str(self.subtotal),
            "currency": self.currency,
            "submitted_at": self.submitted_at.isoformat(),
        }


@dataclass
class DuplicateMatch:
    asset_id: str
    rift_id: str
    same_seller: bool
    completed: bool
    risk: str


@dataclass
class VerificationOutcome:
    passed: bool
    quality_score: int
    route_to_review: bool
    issues: List[str] = field(default_factory=list)
    integrity_passed: bool = True
    scoring_available: bool = True
    duplicates: List[DuplicateMatch] = field(default_factory=list)
    extracted: Optional[ExtractedEvidence] = None


class _Assessment:
    """Mutable score/issue accumulator for one pipeline run"""

    def __init__(self):
        self.score = 100
        self.issues: List[str] = []
        self.forced_route = False

    def penalize(self, points: int, issue: str, route: bool = False) -> None:
        self.score -= points
        self.issues.append(issue)
        if route:
            self.forced_route = True


class EvidenceVerificationPipeline:
    """Integrity, quality, model scoring, cross-checks, duplicate and outlier detection"""

    def __init__(self, scoring: Optional[ScoringService] = None):
        self.scoring = scoring

    # ------------------------------------------------------------ step: integrity

    @staticmethod
    def check_integrity(asset: VaultAsset, payload: Optional[str]) -> List[str]:
        """
        Soft warnings come back as plain issues. A hard failure is returned
        as a single issue prefixed with "FAIL:".
        """
        issues: List[str] = []
        if not asset.content_sha256 or not _SHA256.match(asset.content_sha256):
            return ["FAIL: Invalid SHA-256 hash"]

        kind = asset.asset_kind
        stored_as_file = kind == AssetKind.FILE.value or (
            kind == AssetKind.TICKET_PROOF.value and asset.text_value is None
        )
        if stored_as_file:
            if not asset.storage_pointer:
                return ["FAIL: File storage pointer missing"]
            if asset.mime_type not in Config.ALLOWED_PROOF_MIME_TYPES:
                issues.append(f"Suspicious or unsupported MIME type: {asset.mime_type}")
        elif kind == AssetKind.LICENSE_KEY.value:
            if not payload:
                return ["FAIL: License key data missing"]
        elif kind == AssetKind.URL.value:
            if not payload:
                return ["FAIL: URL missing"]
            parsed = urlparse(payload)
            if parsed.scheme not in ("http", "https"):
                return ["FAIL: URL must use HTTP or HTTPS protocol"]
            if not parsed.netloc:
                return ["FAIL: Invalid URL format"]
            host = parsed.netloc.lower().split(":")[0]
            if any(host == s or host.endswith("." + s) for s in URL_SHORTENERS):
                issues.append("URL shortener detected (security risk)")
        elif kind == AssetKind.TRACKING_NUMBER.value:
            if not payload or len(payload.strip()) < 5:
                return ["FAIL: Invalid tracking number format"]
        return issues

    # ------------------------------------------------------------ step: quality

    @staticmethod
    def _other_rift_matches(session: Session, asset: VaultAsset, canonical: bool = True):
        column_filters = [VaultAsset.content_sha256 == asset.content_sha256]
        if canonical and asset.canonical_sha256:
            column_filters.append(VaultAsset.canonical_sha256 == asset.canonical_sha256)
        return (
            session.query(VaultAsset, RiftTransaction)
            .join(RiftTransaction, RiftTransaction.id == VaultAsset.rift_id)
            .filter(or_(*column_filters), VaultAsset.rift_id != asset.rift_id)
            .all()
        )

    def check_quality(self, session: Session, asset: VaultAsset, payload: Optional[str],
                      assessment: _Assessment) -> None:
        kind = asset.asset_kind
        if kind == AssetKind.TRACKING_NUMBER.value and payload:
            tracking = payload.strip().upper()
            if len(tracking) < 8 or len(tracking) > 40:
                assessment.penalize(PENALTY_TRACKING_LENGTH,
                                    "Tracking number length suspicious (expected 8-40 characters)")
            if not _TRACKING_CHARS.match(tracking):
                assessment.penalize(PENALTY_TRACKING_CHARS, "Tracking number contains invalid characters")
            compact = tracking.replace("-", "")
            if not any(p.match(compact) for p in CARRIER_PATTERNS.values()):
                assessment.penalize(PENALTY_TRACKING_CARRIER,
                                    "Tracking number does not match known carrier format")
        elif kind == AssetKind.LICENSE_KEY.value:
            reused = [
                a for a, _ in self._other_rift_matches(session, asset, canonical=False)
                if a.asset_kind == AssetKind.LICENSE_KEY.value
            ]
            if reused:
                assessment.penalize(PENALTY_LICENSE_REUSED,
                                    f"License key reused {len(reused)} time(s) across platform", route=True)

    # ------------------------------------------------------------ step: scoring

    def score_with_model(self, asset: VaultAsset, context: VerificationContext, extracted: ExtractedEvidence,
                         assessment: _Assessment) -> bool:
        """Returns False when the model could not be used (fail closed)"""
        if self.scoring is None:
            reason = "scoring service not configured"
        else:
            artifact = {
                "asset_id": asset.id,
                "kind": asset.asset_kind,
                "mime_type": asset.mime_type,
                "sha256": asset.content_sha256,
                "storage_pointer": asset.storage_pointer,
                "text": extracted.text or None,
            }
            try:
                response = guarded_call("scoring", self.scoring.analyze, artifact, context.as_payload())
                model_score = response["score"]
                if isinstance(model_score, bool) or not isinstance(model_score, (int, float)):
                    raise TypeError("score is not numeric")
                if not 0 <= model_score <= 100:
                    raise ValueError("score out of range")
                extracted.merge_scoring_data(response.get("extractedData"))
            except ExternalServiceUnavailable as e:
                reason = str(e)
            except (KeyError, TypeError, ValueError) as e:
                reason = f"malformed scoring response ({e})"
            else:
                assessment.score = min(assessment.score, int(model_score))
                if response.get("routeToReview"):
                    assessment.forced_route = True
                    assessment.issues.append("Scoring model requested manual review")
                if response.get("relevant") is False:
                    assessment.penalize(0, "Artifact does not match expected proof type", route=True)
                for element in response.get("suspiciousElements") or []:
                    assessment.penalize(0, f"Suspicious element: {element}", route=True)
                return True

        logger.warning(f"⚠️ VERIFICATION_FAIL_CLOSED: asset {asset.id}: {reason}")
        assessment.score = min(assessment.score, Config.FAIL_CLOSED_SCORE)
        assessment.forced_route = True
        assessment.issues.append("Automated analysis unavailable - manual review required")
        return False

    # ------------------------------------------------------------ step: cross-checks

    @staticmethod
    def check_amounts(extracted: ExtractedEvidence, context: VerificationContext, assessment: _Assessment) -> None:
        if not extracted.amounts or context.subtotal <= 0:
            return
        closest = min(extracted.amounts, key=lambda a: abs(a[0] - context.subtotal))[0]
        variance_percent = abs(closest - context.subtotal) / context.subtotal * 100
        if variance_percent > Config.AMOUNT_VARIANCE_TOLERANCE_PERCENT:
            assessment.penalize(
                PENALTY_AMOUNT_MISMATCH,
                f"Amount mismatch: extracted {closest} vs transaction amount {context.subtotal} "
                f"({variance_percent:.1f}% difference)",
                route=True,
            )
        stated = [c for _, c in extracted.amounts if c]
        if stated and not any(c.upper() == context.currency.upper() for c in stated):
            assessment.penalize(0, "Currency mismatch detected", route=True)

    @staticmethod
    def check_dates(extracted: ExtractedEvidence, context: VerificationContext, now: datetime,
                    assessment: _Assessment) -> None:
        if not extracted.dates:
            return
        today = now.date()
        recent_cutoff = today - timedelta(days=Config.DATE_RECENT_DAYS)
        window = timedelta(days=Config.DATE_WINDOW_DAYS)
        submitted = context.submitted_at.date()

        non_event = [(d, t) for d, t in extracted.dates if t != DATE_EVENT]
        flagged = False
        if any(d > today for d, _ in non_event):
            assessment.issues.append("Future dates detected (excluding event dates)")
            flagged = True

        settlement = [d for d, t in non_event if t in SETTLEMENT_DATE_TYPES]
        if settlement:
            recent = any(d >= recent_cutoff for d in settlement)
            near_submission = any(abs(d - submitted) <= window for d in settlement)
            if not recent and not near_submission:
                assessment.issues.append("Receipt/transfer dates are too old or don't match submission time")
                flagged = True

        if flagged:
            assessment.score -= PENALTY_DATE
            assessment.forced_route = True

    # ------------------------------------------------------------ step: history

    def find_duplicates(self, session: Session, asset: VaultAsset, context: VerificationContext) -> List[DuplicateMatch]:
        rows = self._other_rift_matches(session, asset)
        many = len(rows) > 5
        matches = []
        for other_asset, other_rift in rows:
            same_seller = other_rift.seller_id == context.seller_id
            completed = other_rift.status in RiftStateValidator.RELEASED_FAMILY
            risk = RISK_CRITICAL if (many or not same_seller or completed) else RISK_HIGH
            matches.append(DuplicateMatch(other_asset.id, other_rift.id, same_seller, completed, risk))
        return matches

    @staticmethod
    def seller_duplicate_count(session: Session, seller_id: int, since: datetime) -> int:
        """How many of the seller's recent uploads share a hash with an artifact on another transaction"""
        other = VaultAsset.__table__.alias("other")
        return (
            session.query(func.count(func.distinct(VaultAsset.id)))
            .join(other, other.c.content_sha256 == VaultAsset.content_sha256)
            .filter(
                VaultAsset.uploader_id == seller_id,
                VaultAsset.created_at >= since,
                other.c.rift_id != VaultAsset.rift_id,
            )
            .scalar()
        ) or 0

    def check_history(self, session: Session, asset: VaultAsset, context: VerificationContext, now: datetime,
                      assessment: _Assessment) -> List[DuplicateMatch]:
        duplicates = self.find_duplicates(session, asset, context)
        if duplicates:
            penalty = min(PENALTY_DUPLICATE_EACH * len(duplicates), PENALTY_DUPLICATE_CAP)
            critical = any(d.risk == RISK_CRITICAL for d in duplicates)
            assessment.penalize(
                penalty,
                f"Artifact matches {len(duplicates)} artifact(s) on other transactions "
                f"({RISK_CRITICAL if critical else RISK_HIGH} risk)",
                route=critical,
            )

        since = now - timedelta(days=Config.DUPLICATE_LOOKBACK_DAYS)
        if self.seller_duplicate_count(session, context.seller_id, since) >= Config.DUPLICATE_SELLER_FLAG_THRESHOLD:
            assessment.penalize(0, "Seller has repeatedly reused proof across transactions", route=True)

        if asset.asset_kind == AssetKind.FILE.value and asset.mime_type:
            prior_mimes = [
                row[0] for row in session.query(VaultAsset.mime_type)
                .filter(
                    VaultAsset.uploader_id == context.seller_id,
                    VaultAsset.asset_kind == AssetKind.FILE.value,
                    VaultAsset.rift_id != asset.rift_id,
                )
                .all()
            ]
            if len(prior_mimes) >= STYLE_HISTORY_MINIMUM and asset.mime_type not in prior_mimes:
                assessment.penalize(
                    PENALTY_STYLE_OUTLIER,
                    f"Artifact format {asset.mime_type} is unlike this seller's previous proofs",
                )
        return duplicates

    # ------------------------------------------------------------ entry point

    def verify(self, session: Session, asset: VaultAsset, context: VerificationContext,
               payload: Optional[str] = None, raw_text: Optional[str] = None,
               now: Optional[datetime] = None) -> VerificationOutcome:
        """
        Run every step and persist the verdict onto the asset.

        ``payload`` is the decrypted inline value for text kinds; ``raw_text``
        is any OCR/plain text available for extraction.
        """
        now = now or context.submitted_at
        assessment = _Assessment()

        integrity = self.check_integrity(asset, payload)
        if integrity and integrity[0].startswith("FAIL:"):
            outcome = VerificationOutcome(
                passed=False,
                quality_score=0,
                route_to_review=True,
                issues=[integrity[0][len("FAIL: "):]],
                integrity_passed=False,
                scoring_available=False,
                extracted=ExtractedEvidence(),
            )
            self._persist(asset, outcome)
            logger.warning(f"🚫 VERIFICATION_INTEGRITY_FAILED: asset {asset.id}: {outcome.issues[0]}")
            return outcome
        for issue in integrity:
            assessment.penalize(0, issue, route=True)

        text = "\n".join(t for t in (raw_text, payload if asset.asset_kind in TEXT_EXTRACTION_KINDS else None) if t)
        extracted = extract_evidence(text)

        self.check_quality(session, asset, payload, assessment)
        scoring_available = self.score_with_model(asset, context, extracted, assessment)
        self.check_amounts(extracted, context, assessment)
        self.check_dates(extracted, context, now, assessment)
        duplicates = self.check_history(session, asset, context, now, assessment)

        score = max(0, min(100, assessment.score))
        route = (
            assessment.forced_route
            or not scoring_available
            or score < Config.REVIEW_SCORE_THRESHOLD
            or len(assessment.issues) > Config.MAX_ISSUES_BEFORE_REVIEW
        )
        outcome = VerificationOutcome(
            passed=not route,
            quality_score=score,
            route_to_review=route,
            issues=assessment.issues,
            integrity_passed=True,
            scoring_available=scoring_available,
            duplicates=duplicates,
            extracted=extracted,
        )
        self._persist(asset, outcome)
        logger.info(
            f"{'✅' if outcome.passed else '⚠️'} VERIFICATION_RESULT: asset {asset.id} score={score} "
            f"route_to_review={route} issues={len(outcome.issues)}"
        )
        return outcome

    @staticmethod
    def _persist(asset: VaultAsset, outcome: VerificationOutcome) -> None:
        asset.scan_status = ScanStatus.VERIFIED.value if outcome.passed else ScanStatus.FLAGGED.value
        asset.quality_score = outcome.quality_score
        asset.route_to_review = outcome.route_to_review
        asset.verification_issues = list(outcome.issues)
        asset.extracted_data = outcome.extracted.to_dict() if outcome.extracted else None
