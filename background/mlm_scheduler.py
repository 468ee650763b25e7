# background/mlm_scheduler.py
"""
MLM Scheduler - time-based compensation operations.
Uses APScheduler for task scheduling.

Jobs:
- Rank check: every day at RANK_CHECK_HOUR:00 UTC
- Payout retries: every RETRY_POLL_INTERVAL_MINUTES
"""
import logging
import socket
from datetime import datetime, timezone
from typing import Optional, Callable, Awaitable
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from core.db import get_db_session_ctx
from models.payment import Payment
from mlm_system.errors import PayoutSubmissionError
from mlm_system.services.factory import create_services
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

# Sends a payment to the processor, returns the transfer id
PayoutSubmitter = Callable[[Payment], Awaitable[Optional[str]]]


class MLMScheduler:
    """
    Background scheduler for compensation jobs.
    Uses APScheduler for reliable task scheduling.
    """

    def __init__(self, submitter: Optional[PayoutSubmitter] = None,
                 session_scope=get_db_session_ctx, worker_id: Optional[str] = None):
        """
        Initialize scheduler.

        Args:
            submitter: Async callable that performs the actual payout transfer
            session_scope: Context manager factory yielding a DB session
            worker_id: Lease owner name for claimed payments
        """
        self.submitter = submitter
        self.session_scope = session_scope
        self.workerId = worker_id or f"scheduler@{socket.gethostname()}"
        self.isRunning = False

        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period
            }
        )

        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "ranksAdvanced": 0,
            "payoutsCompleted": 0,
            "payoutsFailed": 0,
        }

    async def start(self):
        """Start scheduler with all jobs."""
        if self.isRunning:
            logger.warning("MLM Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting MLM Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        rank_hour = Config.get(Config.RANK_CHECK_HOUR, 0)
        poll_minutes = Config.get(Config.RETRY_POLL_INTERVAL_MINUTES, 5)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Nightly rank check
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_rank_check_wrapper,
            trigger=CronTrigger(hour=rank_hour, minute=0),
            id='rank_check',
            name=f'Rank Check ({rank_hour:02d}:00 UTC)',
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Rank Check ({rank_hour:02d}:00 UTC)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Payout retry poller
        # ═══════════════════════════════════════════════════════════════
        self.scheduler.add_job(
            func=self._safe_payout_retry_wrapper,
            trigger=IntervalTrigger(minutes=poll_minutes),
            id='payout_retries',
            name='Payout Retries',
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Payout Retries (every {poll_minutes} minutes)")

        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ MLM Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping MLM Scheduler...")
        self.isRunning = False

        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ MLM Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    def _record_error(self, e: Exception):
        self.stats["errors"] += 1
        self.stats["lastError"] = str(e)

    async def _safe_rank_check_wrapper(self):
        """Safe wrapper for the rank check."""
        try:
            await self.executeRankCheck()
        except Exception as e:
            logger.error(f"Error in rank check job: {e}", exc_info=True)
            self._record_error(e)

    async def _safe_payout_retry_wrapper(self):
        """Safe wrapper for payout retries."""
        try:
            await self.processPayoutRetries()
        except Exception as e:
            logger.error(f"Error in payout retry job: {e}", exc_info=True)
            self._record_error(e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def executeRankCheck(self) -> dict:
        """Advance every active distributor who now qualifies for a higher rank."""
        logger.info(f"Executing rank check for {timeMachine.now.date()}")

        with self.session_scope() as session:
            services = create_services(session)
            summary = await services.ranks.checkAllRanks()

        self.stats["tasksExecuted"] += 1
        self.stats["ranksAdvanced"] += len(summary["advanced"])
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        return summary

    async def processPayoutRetries(self) -> dict:
        """
        Claim payments whose retry time has come and hand them to the submitter.
        Declines go back through the retry handler.
        """
        result = {"due": 0, "claimed": 0, "completed": 0, "failed": 0}

        if self.submitter is None:
            logger.debug("No payout submitter configured, skipping retries")
            return result

        with self.session_scope() as session:
            retries = create_services(session).retries
            due = await retries.getPaymentsDueForRetry()
            result["due"] = len(due)
            due_ids = [payment.paymentID for payment in due]

            for payment_id in due_ids:
                if not await retries.claimPaymentForRetry(payment_id, self.workerId):
                    continue
                result["claimed"] += 1

                payment = session.query(Payment).filter_by(paymentID=payment_id).first()
                try:
                    transfer_id = await self.submitter(payment)
                except PayoutSubmissionError as e:
                    await retries.handlePayoutFailure(payment_id, e.reason)
                    result["failed"] += 1
                    continue
                except Exception as e:
                    logger.error(f"Payout submitter error for payment {payment_id}: {e}", exc_info=True)
                    await retries.handlePayoutFailure(payment_id, "processor_error")
                    result["failed"] += 1
                    continue

                await retries.markPaymentCompleted(payment_id, transfer_id)
                result["completed"] += 1

        if result["due"]:
            logger.info(
                f"Payout retries: {result['due']} due, {result['claimed']} claimed, "
                f"{result['completed']} completed, {result['failed']} failed"
            )

        self.stats["tasksExecuted"] += 1
        self.stats["payoutsCompleted"] += result["completed"]
        self.stats["payoutsFailed"] += result["failed"]
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)
        return result

    def getStatus(self) -> dict:
        """Get scheduler status."""
        jobs_info = []
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                jobs_info.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            "isRunning": self.isRunning,
            "schedulerRunning": self.scheduler.running,
            "currentTime": timeMachine.now.isoformat(),
            "isTestMode": timeMachine._isTestMode,
            "workerId": self.workerId,
            "stats": self.stats,
            "jobs": jobs_info
        }


# Global scheduler instance (created in backoffice.py)
scheduler: Optional[MLMScheduler] = None
