"""
Evidence Verification Pipeline Tests
Integrity, quality, model scoring (fail-closed), cross-checks and duplicate detection
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from models import AssetKind, ItemKind, RiftStatus, ScanStatus
from services.evidence_verification import (
    RISK_CRITICAL, RISK_HIGH, EvidenceVerificationPipeline, VerificationContext,
)
from services.vault_service import ProofSubmission
from utils.authorization import Actor
from utils.datetime_helpers import get_naive_utc_now
from utils.evidence_extraction import DATE_EVENT, DATE_RECEIPT, extract_evidence
from utils.exceptions import ExternalServiceUnavailable
from tests.conftest import BUYER_ID, OUTSIDER_ID, SELLER_ID, UPS_TRACKING

PDF = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer\n%%EOF"


def _pdf(content=PDF, mime_type="application/pdf"):
    return ProofSubmission(asset_kind=AssetKind.FILE, content=content, file_name="proof.pdf", mime_type=mime_type)


def _text(kind, value):
    return ProofSubmission(asset_kind=kind, text_value=value)


def _verify(session, vault, pipeline, rift, submission, raw_text=None, seller_id=SELLER_ID, now=None):
    now = now or get_naive_utc_now()
    asset = vault.store_artifact(session, rift, Actor.seller(seller_id), submission)
    outcome = pipeline.verify(
        session, asset, VerificationContext.for_rift(rift, now),
        payload=vault.decrypt_payload(asset), raw_text=raw_text, now=now,
    )
    session.commit()
    return asset, outcome


class TestIntegrity:
    """Hard integrity failures short-circuit the pipeline"""

    def test_short_tracking_number_fails_integrity(self, rifts, session, vault, pipeline, scoring):
        rift = rifts.funded(item_kind=ItemKind.PHYSICAL)
        asset, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.TRACKING_NUMBER, "AB1"))

        assert outcome.integrity_passed is False
        assert outcome.passed is False
        assert outcome.quality_score == 0
        assert outcome.issues == ["Invalid tracking number format"]
        assert asset.scan_status == ScanStatus.FLAGGED.value
        scoring.analyze.assert_not_called()

    @pytest.mark.parametrize("url, issue", [
        ("ftp://files.example.com/proof", "URL must use HTTP or HTTPS protocol"),
        ("https://", "Invalid URL format"),
    ])
    def test_bad_urls_fail_integrity(self, rifts, session, vault, pipeline, url, issue):
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.URL, url))
        assert outcome.integrity_passed is False
        assert outcome.issues == [issue]

    def test_url_shortener_routes_to_review(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.URL, "https://bit.ly/3xYz"))

        assert outcome.integrity_passed is True
        assert outcome.route_to_review is True
        assert "URL shortener detected (security risk)" in outcome.issues

    def test_unsupported_mime_type_routes_to_review(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _pdf(b"MZ\x90\x00binary", "application/x-msdownload"))

        assert outcome.passed is False
        assert any("MIME type" in issue for issue in outcome.issues)


class TestQuality:
    """Kind-specific quality checks and scoring"""

    def test_clean_license_key_passes(self, rifts, session, vault, pipeline):
        rift = rifts.funded()
        asset, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.LICENSE_KEY, "QWER1-TYUI2-OPAS3-DFGH4"))

        assert outcome.passed is True
        assert outcome.quality_score == 90
        assert outcome.issues == []
        assert asset.scan_status == ScanStatus.VERIFIED.value
        assert asset.quality_score == 90

    def test_known_carrier_tracking_passes(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.PHYSICAL)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.TRACKING_NUMBER, UPS_TRACKING))
        assert outcome.passed is True
        assert outcome.issues == []

    def test_odd_tracking_number_is_penalized(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.PHYSICAL)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.TRACKING_NUMBER, "ABC-12"))

        # Too short (-20) and no carrier match (-5)
        assert outcome.quality_score == 75
        assert len(outcome.issues) == 2
        assert outcome.passed is True

    def test_low_model_score_routes_to_review(self, rifts, session, vault, pipeline, scoring):
        scoring.analyze.return_value = {"score": 40}
        rift = rifts.funded()
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.LICENSE_KEY, "QWER1-TYUI2-OPAS3-DFGH4"))

        assert outcome.quality_score == 40
        assert outcome.route_to_review is True
        assert outcome.scoring_available is True

    @pytest.mark.parametrize("response, issue", [
        ({"score": 95, "routeToReview": True}, "Scoring model requested manual review"),
        ({"score": 95, "relevant": False}, "Artifact does not match expected proof type"),
        ({"score": 95, "suspiciousElements": ["edited font"]}, "Suspicious element: edited font"),
    ])
    def test_model_flags_force_review(self, rifts, session, vault, pipeline, scoring, response, issue):
        scoring.analyze.return_value = response
        rift = rifts.funded()
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.LICENSE_KEY, "QWER1-TYUI2-OPAS3-DFGH4"))

        assert outcome.passed is False
        assert issue in outcome.issues


class TestFailClosed:
    """Scoring outages and garbage responses never arm auto-release"""

    def test_scoring_exception_fails_closed(self, rifts, session, vault, pipeline, scoring):
        scoring.analyze.side_effect = RuntimeError("connection refused")
        rift = rifts.funded()
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.LICENSE_KEY, "QWER1-TYUI2-OPAS3-DFGH4"))

        assert outcome.scoring_available is False
        assert outcome.passed is False
        assert outcome.quality_score == 50
        assert "Automated analysis unavailable - manual review required" in outcome.issues

    def test_scoring_unavailable_error_fails_closed(self, rifts, session, vault, pipeline, scoring):
        scoring.analyze.side_effect = ExternalServiceUnavailable("scoring", "timed out after 10s")
        rift = rifts.funded()
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.LICENSE_KEY, "QWER1-TYUI2-OPAS3-DFGH4"))
        assert outcome.scoring_available is False
        assert outcome.route_to_review is True

    def test_no_scoring_service_configured(self, rifts, session, vault):
        pipeline = EvidenceVerificationPipeline(None)
        rift = rifts.funded()
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.LICENSE_KEY, "QWER1-TYUI2-OPAS3-DFGH4"))
        assert outcome.scoring_available is False
        assert outcome.passed is False

    @pytest.mark.parametrize("response", [{}, {"score": "high"}, {"score": 150}, {"score": True}, None])
    def test_malformed_responses_fail_closed(self, rifts, session, vault, pipeline, scoring, response):
        scoring.analyze.return_value = response
        rift = rifts.funded()
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.LICENSE_KEY, "QWER1-TYUI2-OPAS3-DFGH4"))

        assert outcome.scoring_available is False
        assert outcome.quality_score <= 50
        assert outcome.passed is False

    @pytest.mark.parametrize("extracted_data", [
        {"monetaryAmounts": [{"value": "NaN"}]},
        {"monetaryAmounts": [{"value": "Infinity", "currency": "USD"}]},
        {"monetaryAmounts": 5},
        {"monetaryAmounts": ["100.00"]},
        {"dates": "2024-01-01"},
        "not an object",
    ])
    def test_malformed_extracted_data_fails_closed(self, rifts, session, vault, pipeline, scoring,
                                                   extracted_data):
        scoring.analyze.return_value = {"score": 90, "extractedData": extracted_data}
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.FREE_TEXT, "Receipt total $100.00"))

        assert outcome.scoring_available is False
        assert outcome.route_to_review is True
        assert outcome.passed is False
        assert outcome.extracted.amounts == [(Decimal("100.00"), "USD")]

    def test_malformed_extracted_data_routes_submission_to_review(self, rifts, lifecycle, session, seller,
                                                                   scoring):
        scoring.analyze.return_value = {"score": 90, "extractedData": {"monetaryAmounts": [{"value": "NaN"}]}}
        rift = rifts.funded(item_kind=ItemKind.SERVICES)

        result = lifecycle.submit_proof(session, rift.id, seller, _text(AssetKind.FREE_TEXT, "Job finished"))

        assert result.status == RiftStatus.UNDER_REVIEW.value
        assert result.outcome.scoring_available is False
        assert rift.auto_release_armed is False

    def test_unparseable_items_are_skipped(self, rifts, session, vault, pipeline, scoring):
        scoring.analyze.return_value = {
            "score": 90,
            "extractedData": {"monetaryAmounts": [{"value": "about a hundred"}, {"currency": "USD"}]},
        }
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.FREE_TEXT, "Receipt total $100.00"))

        assert outcome.scoring_available is True
        assert outcome.passed is True


class TestCrossChecks:
    """Extracted amounts and dates against the transaction"""

    def test_matching_receipt_amount_passes(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.FREE_TEXT, "Receipt total $100.00"))
        assert outcome.passed is True
        assert outcome.extracted.amounts

    def test_amount_mismatch_routes_to_review(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.FREE_TEXT, "Paid $40.00 for the job"))

        assert outcome.passed is False
        assert any(issue.startswith("Amount mismatch") for issue in outcome.issues)

    def test_currency_mismatch_routes_to_review(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _text(AssetKind.FREE_TEXT, "Total €100.00"))
        assert "Currency mismatch detected" in outcome.issues

    def test_model_extracted_amounts_are_checked(self, rifts, session, vault, pipeline, scoring):
        scoring.analyze.return_value = {
            "score": 90,
            "extractedData": {"monetaryAmounts": [{"value": 12.5, "currency": "usd"}]},
        }
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _pdf())
        assert any(issue.startswith("Amount mismatch") for issue in outcome.issues)

    def test_old_receipt_date_routes_to_review(self, rifts, session, vault, pipeline):
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _pdf(),
                             raw_text="Receipt issued 2020-01-05 total $100.00")

        assert outcome.passed is False
        assert "Receipt/transfer dates are too old or don't match submission time" in outcome.issues

    def test_future_receipt_date_routes_to_review(self, rifts, session, vault, pipeline):
        future = (get_naive_utc_now() + timedelta(days=60)).date().isoformat()
        rift = rifts.funded(item_kind=ItemKind.SERVICES)
        _, outcome = _verify(session, vault, pipeline, rift, _pdf(),
                             raw_text=f"Receipt dated {future} total $100.00")
        assert "Future dates detected (excluding event dates)" in outcome.issues

    def test_future_event_date_is_allowed(self, rifts, session, vault, pipeline):
        future = (get_naive_utc_now() + timedelta(days=60)).date().isoformat()
        rift = rifts.funded(item_kind=ItemKind.DIGITAL_GOODS)
        _, outcome = _verify(session, vault, pipeline, rift,
                             _text(AssetKind.TICKET_PROOF, f"Concert event on {future}, transfer accepted"))
        assert outcome.passed is True
        assert outcome.extracted.dates[0][1] == DATE_EVENT


class TestDuplicates:
    """Same artifact on other transactions"""

    def test_reused_license_key_is_critical(self, rifts, session, vault, pipeline):
        first = rifts.funded()
        _verify(session, vault, pipeline, first, _text(AssetKind.LICENSE_KEY, "REUSE-KEY11-KEY22-KEY33"))

        second = rifts.funded()
        _, outcome = _verify(session, vault, pipeline, second, _text(AssetKind.LICENSE_KEY, "REUSE-KEY11-KEY22-KEY33"))

        assert outcome.passed is False
        assert "License key reused 1 time(s) across platform" in outcome.issues
        assert outcome.duplicates[0].same_seller is True

    def test_same_seller_duplicate_file_is_high_risk(self, rifts, session, vault, pipeline):
        _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES), _pdf())
        _, outcome = _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES), _pdf())

        assert [d.risk for d in outcome.duplicates] == [RISK_HIGH]
        assert outcome.quality_score == 90
        assert outcome.passed is True

    def test_other_seller_duplicate_file_is_critical(self, rifts, session, vault, pipeline):
        _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES), _pdf())

        other = rifts.funded(item_kind=ItemKind.SERVICES, seller_id=OUTSIDER_ID)
        _, outcome = _verify(session, vault, pipeline, other, _pdf(), seller_id=OUTSIDER_ID)

        assert outcome.duplicates[0].risk == RISK_CRITICAL
        assert outcome.duplicates[0].same_seller is False
        assert outcome.passed is False

    def test_duplicate_of_completed_transaction_is_critical(self, rifts, lifecycle, session, vault, pipeline):
        done = rifts.funded(item_kind=ItemKind.SERVICES)
        lifecycle.submit_proof(session, done.id, Actor.seller(SELLER_ID), _pdf())
        lifecycle.buyer_release(session, done.id, Actor.buyer(BUYER_ID))

        _, outcome = _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES), _pdf())
        assert outcome.duplicates[0].completed is True
        assert outcome.duplicates[0].risk == RISK_CRITICAL
        assert outcome.passed is False

    def test_canonical_text_match_detects_reformatted_copy(self, rifts, session, vault, pipeline):
        original = b"Service completed for order 7781\nAll deliverables handed over"
        reformatted = b"SERVICE   completed for ORDER 7781 all deliverables   handed over\n"
        _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES), _pdf(original, "text/plain"))
        _, outcome = _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES),
                             _pdf(reformatted, "text/plain"))
        assert len(outcome.duplicates) == 1

    def test_repeat_offender_seller_is_flagged(self, rifts, session, vault, pipeline):
        for _ in range(2):
            _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES), _pdf())
        _, outcome = _verify(session, vault, pipeline, rifts.funded(item_kind=ItemKind.SERVICES), _pdf())

        assert "Seller has repeatedly reused proof across transactions" in outcome.issues
        assert outcome.passed is False


class TestExtraction:
    """Text extractors feeding the cross-checks"""

    def test_extracts_amounts_dates_and_identifiers(self):
        extracted = extract_evidence("Order #AB-1234 paid on March 3, 2024: USD 1,250.50")

        assert extracted.amounts == [(Decimal("1250.50"), "USD")]
        assert extracted.dates[0][1] == DATE_RECEIPT
        assert "AB-1234" in extracted.identifiers

    def test_empty_text_yields_empty_result(self):
        assert extract_evidence("").is_empty()
        assert extract_evidence(None).is_empty()

    def test_finds_tracking_and_license_codes(self):
        extracted = extract_evidence(f"Shipped via UPS {UPS_TRACKING}, key ABCD1-EFGH2-IJKL3")
        assert UPS_TRACKING in extracted.codes
        assert "ABCD1-EFGH2-IJKL3" in extracted.codes
