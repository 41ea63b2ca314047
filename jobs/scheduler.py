"""Background job scheduler for automatic release and payout scheduling"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from database import create_tables
from services.auto_release_scheduler import SweepResult, run_auto_release_sweep, run_payout_sweep
from services.evidence_verification import EvidenceVerificationPipeline
from services.external_clients import IdentityVerifier, build_default_clients
from services.rift_lifecycle import RiftLifecycleService
from services.vault_service import VaultService

logger = logging.getLogger(__name__)


async def auto_release_job(lifecycle: RiftLifecycleService) -> Optional[SweepResult]:
    """One auto-release sweep, run off the event loop"""
    try:
        result = await asyncio.to_thread(run_auto_release_sweep, lifecycle)
        if result.released or result.errors:
            logger.info(f"⏰ AUTO_RELEASE_JOB: {result.summary()}")
        return result
    except Exception as e:
        logger.error(f"❌ AUTO_RELEASE_JOB_FAILED: {type(e).__name__}: {e}")
        return None


async def payout_job(lifecycle: RiftLifecycleService, identity_verifier: IdentityVerifier) -> Optional[SweepResult]:
    """One payout-scheduling sweep, run off the event loop"""
    try:
        result = await asyncio.to_thread(run_payout_sweep, lifecycle, identity_verifier)
        if result.released or result.errors:
            logger.info(f"💸 PAYOUT_JOB: {result.summary()}")
        return result
    except Exception as e:
        logger.error(f"❌ PAYOUT_JOB_FAILED: {type(e).__name__}: {e}")
        return None


def create_scheduler(lifecycle: RiftLifecycleService,
                     identity_verifier: Optional[IdentityVerifier] = None) -> AsyncIOScheduler:
    """Build the scheduler with the auto-release and payout interval jobs (not started)"""
    jobstores = {
        'default': MemoryJobStore()
    }
    executors = {
        'default': AsyncIOExecutor()
    }
    job_defaults = {
        'coalesce': True,  # Prevent job pileup
        'max_instances': 1,  # Single instance enforcement
        'misfire_grace_time': 30
    }
    scheduler = AsyncIOScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        auto_release_job,
        trigger=IntervalTrigger(
            seconds=Config.AUTO_RELEASE_SWEEP_INTERVAL_SECONDS,
            start_date=datetime.now().replace(microsecond=0),
        ),
        args=[lifecycle],
        id="auto_release_sweep",
        name="⏰ Auto-Release Sweep",
        replace_existing=True,
    )
    logger.info(f"✅ Auto-release sweep scheduled every {Config.AUTO_RELEASE_SWEEP_INTERVAL_SECONDS} seconds")

    if identity_verifier is not None:
        scheduler.add_job(
            payout_job,
            trigger=IntervalTrigger(
                seconds=Config.PAYOUT_SWEEP_INTERVAL_SECONDS,
                start_date=datetime.now().replace(microsecond=0),
            ),
            args=[lifecycle, identity_verifier],
            id="payout_sweep",
            name="💸 Payout Scheduling Sweep",
            replace_existing=True,
        )
        logger.info(f"✅ Payout sweep scheduled every {Config.PAYOUT_SWEEP_INTERVAL_SECONDS} seconds")
    else:
        logger.warning("⚠️ IDENTITY_SERVICE_URL not set, payout sweep disabled")

    return scheduler


def build_lifecycle(clients: dict) -> RiftLifecycleService:
    vault = VaultService(clients["object_storage"])
    pipeline = EvidenceVerificationPipeline(clients.get("scoring"))
    return RiftLifecycleService(vault, pipeline)


async def _run_forever(scheduler: AsyncIOScheduler) -> None:
    scheduler.start()
    logger.info("🚀 Rift background scheduler started")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("🛑 Rift background scheduler stopped")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    create_tables()
    clients = build_default_clients()
    scheduler = create_scheduler(build_lifecycle(clients), clients.get("identity"))
    try:
        asyncio.run(_run_forever(scheduler))
    except KeyboardInterrupt:
        logger.info("👋 Shutdown requested")


if __name__ == "__main__":
    main()
