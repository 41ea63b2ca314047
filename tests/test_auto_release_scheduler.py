"""
Auto-Release Scheduler Tests
Deadline policy, due-transaction discovery, sweeps and the APScheduler jobs
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import patch

from config import Config
from jobs.scheduler import auto_release_job, create_scheduler, payout_job
from models import DisputeReason, ItemKind, RiftStatus, RiftTransaction
from services.auto_release_scheduler import (
    PHASE_ACCESS, PHASE_DELIVERY, PHASE_SUBMISSION, PHASE_TRANSIT, AutoReleaseScheduler, SweepResult,
    run_auto_release_sweep, run_payout_sweep,
)
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ExternalServiceUnavailable

A = AutoReleaseScheduler
ANCHOR = datetime(2024, 3, 1, 12, 0, 0)


class TestDeadlinePolicy:
    """Grace windows per item kind and phase"""

    @pytest.mark.parametrize("kind, phase, hours", [
        (ItemKind.PHYSICAL, PHASE_TRANSIT, 336),
        (ItemKind.PHYSICAL, PHASE_DELIVERY, 12),
        (ItemKind.DIGITAL_GOODS, PHASE_SUBMISSION, 48),
        (ItemKind.DIGITAL_GOODS, PHASE_ACCESS, 24),
        (ItemKind.OWNERSHIP_TRANSFER, PHASE_SUBMISSION, 48),
        (ItemKind.SERVICES, PHASE_SUBMISSION, 72),
        (ItemKind.SERVICES, PHASE_ACCESS, 72),
    ])
    def test_default_windows(self, kind, phase, hours):
        assert A.compute_deadline(kind.value, ANCHOR, phase) == ANCHOR + timedelta(hours=hours)

    @pytest.mark.parametrize("kind, expected", [
        (ItemKind.DIGITAL_GOODS, True),
        (ItemKind.OWNERSHIP_TRANSFER, True),
        (ItemKind.SERVICES, False),
        (ItemKind.PHYSICAL, False),
    ])
    def test_access_window_kinds(self, kind, expected):
        assert A.has_access_window(kind.value) is expected

    def test_window_follows_config(self):
        with patch.object(Config, "DIGITAL_SUBMISSION_WINDOW_HOURS", 6):
            assert A.window_hours(ItemKind.DIGITAL_GOODS.value, PHASE_SUBMISSION) == 6

    def test_disarm_fields(self):
        assert A.disarm_fields() == {"auto_release_armed": False, "grace_period_deadline": None}


class TestFindDue:
    """Only armed, due, auto-release-family transactions are picked up"""

    def test_due_selection(self, rifts, lifecycle, session, buyer):
        due = rifts.proof_submitted()
        not_yet = rifts.in_transit()
        disputed = rifts.proof_submitted()
        lifecycle.open_dispute(session, disputed.id, buyer, DisputeReason.NOT_RECEIVED, "Nothing")
        rifts.funded()

        now = due.grace_period_deadline + timedelta(seconds=1)
        assert A.find_due(session, now) == [due.id]
        assert not_yet.id not in A.find_due(session, now)

    def test_batch_limit(self, rifts, session):
        for _ in range(3):
            rifts.proof_submitted()
        later = get_naive_utc_now() + timedelta(days=10)
        assert len(A.find_due(session, later, limit=2)) == 2


class TestSweeps:
    """Sweeps tick each due transaction in its own unit"""

    def test_auto_release_sweep_releases_due(self, rifts, lifecycle, session, buyer):
        first = rifts.proof_submitted()
        second = rifts.proof_submitted()
        lifecycle.buyer_release(session, second.id, buyer)

        result = run_auto_release_sweep(lifecycle, now=get_naive_utc_now() + timedelta(days=3))

        assert result.released == [first.id]
        assert result.errors == []
        session.expire_all()
        assert session.get(RiftTransaction, first.id).status == RiftStatus.RELEASED.value

    def test_sweep_survives_one_failure(self, rifts, lifecycle):
        rifts.proof_submitted()
        rifts.proof_submitted()

        with patch.object(lifecycle, "auto_release_tick", side_effect=RuntimeError("db hiccup")):
            result = run_auto_release_sweep(lifecycle, now=get_naive_utc_now() + timedelta(days=3))

        assert len(result.errors) == 2
        assert result.summary() == "released=0 skipped=0 errors=2"

    def test_nothing_due(self, rifts, lifecycle):
        rifts.proof_submitted()
        result = run_auto_release_sweep(lifecycle, now=get_naive_utc_now())
        assert result == SweepResult()

    def test_payout_sweep_schedules_verified_sellers(self, rifts, lifecycle, session, buyer, identity_verifier):
        rift = rifts.proof_submitted()
        lifecycle.buyer_release(session, rift.id, buyer)

        result = run_payout_sweep(lifecycle, identity_verifier)

        assert result.released == [rift.id]
        session.expire_all()
        assert session.get(RiftTransaction, rift.id).status == RiftStatus.PAYOUT_SCHEDULED.value

    def test_payout_sweep_skips_when_identity_down(self, rifts, lifecycle, session, buyer, identity_verifier):
        identity_verifier.is_payout_eligible.side_effect = ExternalServiceUnavailable("identity", "timeout")
        rift = rifts.proof_submitted()
        lifecycle.buyer_release(session, rift.id, buyer)

        result = run_payout_sweep(lifecycle, identity_verifier)

        assert result.skipped == [rift.id]
        session.expire_all()
        assert session.get(RiftTransaction, rift.id).status == RiftStatus.RELEASED.value


class TestSchedulerJobs:
    """APScheduler wiring and job error handling"""

    def test_create_scheduler_registers_jobs(self, lifecycle, identity_verifier):
        scheduler = create_scheduler(lifecycle, identity_verifier)

        job_ids = {job.id for job in scheduler.get_jobs()}
        assert job_ids == {"auto_release_sweep", "payout_sweep"}

    def test_payout_job_needs_identity_service(self, lifecycle):
        scheduler = create_scheduler(lifecycle)
        assert [job.id for job in scheduler.get_jobs()] == ["auto_release_sweep"]

    @pytest.mark.asyncio
    async def test_auto_release_job_returns_result(self, lifecycle):
        expected = SweepResult(released=["r1"])
        with patch("jobs.scheduler.run_auto_release_sweep", return_value=expected) as sweep:
            result = await auto_release_job(lifecycle)
        assert result is expected
        sweep.assert_called_once_with(lifecycle)

    @pytest.mark.asyncio
    async def test_auto_release_job_contains_errors(self, lifecycle):
        with patch("jobs.scheduler.run_auto_release_sweep", side_effect=RuntimeError("database gone")):
            assert await auto_release_job(lifecycle) is None

    @pytest.mark.asyncio
    async def test_payout_job_contains_errors(self, lifecycle, identity_verifier):
        with patch("jobs.scheduler.run_payout_sweep", side_effect=RuntimeError("database gone")):
            assert await payout_job(lifecycle, identity_verifier) is None
