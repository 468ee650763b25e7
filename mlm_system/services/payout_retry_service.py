# mlm_system/services/payout_retry_service.py
"""
Payout retry handling with exponential backoff and manual review.

Payment states:
    pending -> processing -> completed
    pending / processing -> failed -> retry (pending / processing)
                                   -> manual review (failed + flag)
    any non-terminal -> cancelled

A failed payment is retried automatically until maxRetries failures have
been recorded or the processor reports a reason that cannot fix itself;
from then on it waits for an admin.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict
from sqlalchemy import or_, func
from sqlalchemy.orm import Session
import logging

from models.payment import Payment
from models.commission import Commission
from mlm_system.audit import AuditLogger
from mlm_system.errors import PaymentNotFoundError, InvalidStatusTransition
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.services.commission_service import COMMISSION_TRANSITIONS
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    "pending": {"processing", "failed", "cancelled"},
    "processing": {"completed", "failed", "cancelled", "pending"},
    "failed": {"pending", "processing", "failed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

# Processor failure codes with admin guidance
STRIPE_FAILURE_REASONS = {
    "insufficient_funds": {
        "description": "Bank account has insufficient funds",
        "action": "Contact distributor to update bank account or add funds",
        "autoRetry": True,
    },
    "account_closed": {
        "description": "Bank account has been closed",
        "action": "Require distributor to update bank account information",
        "autoRetry": False,
    },
    "no_account": {
        "description": "Bank account number is invalid or does not exist",
        "action": "Require distributor to provide valid bank account",
        "autoRetry": False,
    },
    "invalid_account_number": {
        "description": "Bank account number is invalid",
        "action": "Require distributor to correct bank account number",
        "autoRetry": False,
    },
    "debit_not_authorized": {
        "description": "Debit transactions not authorized on this account",
        "action": "Request distributor to authorize debits or use different account",
        "autoRetry": False,
    },
    "bank_account_restricted": {
        "description": "Bank account has restrictions",
        "action": "Contact distributor to resolve restrictions with their bank",
        "autoRetry": True,
    },
    "generic_decline": {
        "description": "Transfer was declined by the bank",
        "action": "Contact distributor to check with their bank",
        "autoRetry": True,
    },
}


def shouldAutoRetry(failureReason: str) -> bool:
    """Unknown reasons are retried."""
    info = STRIPE_FAILURE_REASONS.get(failureReason)
    return info["autoRetry"] if info else True


def getFailureReasonInfo(failureReason: str) -> Dict:
    return STRIPE_FAILURE_REASONS.get(failureReason, {
        "description": f"Unrecognized failure: {failureReason}",
        "action": "Check the payment processor dashboard for details",
        "autoRetry": True,
    })


@dataclass(frozen=True)
class RetryConfig:
    maxRetries: int = 3
    baseDelayMinutes: int = 30
    maxDelayMinutes: int = 1440

    @classmethod
    def fromConfig(cls) -> "RetryConfig":
        from config import Config

        return cls(
            maxRetries=Config.get(Config.PAYOUT_MAX_RETRIES, cls.maxRetries),
            baseDelayMinutes=Config.get(Config.PAYOUT_BASE_DELAY_MINUTES, cls.baseDelayMinutes),
            maxDelayMinutes=Config.get(Config.PAYOUT_MAX_DELAY_MINUTES, cls.maxDelayMinutes),
        )


def calculateNextRetryTime(previousRetries: int, config: RetryConfig = None,
                           now: Optional[datetime] = None) -> datetime:
    """
    Exponential backoff: base x 2^previousRetries, capped at maxDelay.
    previousRetries is the number of failures before the one being handled.
    """
    config = config or RetryConfig()
    now = now or timeMachine.now
    delayMinutes = min(config.baseDelayMinutes * (2 ** previousRetries), config.maxDelayMinutes)
    return now + timedelta(minutes=delayMinutes)


@dataclass
class PayoutFailureResult:
    paymentId: int
    willRetry: bool
    retryCount: int
    reason: str
    nextRetryAt: Optional[datetime] = None
    requiresManualReview: bool = False
    recommendedAction: Optional[str] = None


class PayoutRetryService:
    """Tracks payout outcomes and decides when a payment is tried again."""

    def __init__(self, session: Session, config: RetryConfig = None,
                 audit: Optional[AuditLogger] = None):
        self.session = session
        self.config = config or RetryConfig.fromConfig()
        self.audit = audit or AuditLogger()

    def _getPayment(self, paymentId: int) -> Payment:
        payment = self.session.query(Payment).filter_by(paymentID=paymentId).first()
        if not payment:
            raise PaymentNotFoundError(f"Payment {paymentId} not found")
        return payment

    def _checkTransition(self, payment: Payment, newStatus: str):
        if newStatus not in PAYMENT_TRANSITIONS.get(payment.status, set()):
            raise InvalidStatusTransition("Payment", payment.status, newStatus)

    # ═══════════════════════════════════════════════════════════════════════
    # FAILURE HANDLING
    # ═══════════════════════════════════════════════════════════════════════

    async def handlePayoutFailure(self, paymentId: int, reason: str,
                                  actorId: Optional[int] = None) -> PayoutFailureResult:
        """
        Record a failed payout attempt and schedule the next one, or route the
        payment to manual review.
        """
        payment = self._getPayment(paymentId)
        info = getFailureReasonInfo(reason)

        if payment.requiresManualReview:
            payment.stripeFailureReason = reason
            self.session.commit()
            logger.warning(f"Payment {paymentId} already awaiting manual review, failure '{reason}' noted")
            return PayoutFailureResult(
                paymentId=paymentId,
                willRetry=False,
                retryCount=payment.retryCount,
                reason=reason,
                requiresManualReview=True,
                recommendedAction=info["action"],
            )

        self._checkTransition(payment, "failed")

        now = timeMachine.now
        previousRetries = payment.retryCount or 0
        maxRetries = payment.maxRetries or self.config.maxRetries

        payment.status = "failed"
        payment.stripeFailureReason = reason
        payment.retryCount = previousRetries + 1
        payment.lastRetryAt = now
        payment.claimedBy = None
        payment.claimedUntil = None

        autoRetry = shouldAutoRetry(reason)

        if autoRetry and payment.retryCount < maxRetries:
            nextRetryAt = calculateNextRetryTime(previousRetries, self.config, now)
            payment.nextRetryAt = nextRetryAt
            retryCount = payment.retryCount
            self.session.commit()

            logger.warning(
                f"Payment {paymentId} failed ({reason}). Retry {retryCount}/{maxRetries} "
                f"scheduled for {nextRetryAt.isoformat()}"
            )
            result = PayoutFailureResult(
                paymentId=paymentId,
                willRetry=True,
                retryCount=retryCount,
                reason=reason,
                nextRetryAt=nextRetryAt,
                recommendedAction=info["action"],
            )
            self.audit.payoutRetryScheduled(payment, reason, actorId)
            await eventBus.emit(MLMEvents.PAYOUT_FAILED, {
                "paymentId": paymentId,
                "reason": reason,
                "retryCount": payment.retryCount,
                "nextRetryAt": result.nextRetryAt,
            })
            return result

        payment.requiresManualReview = True
        payment.nextRetryAt = None
        if autoRetry:
            reviewReason = f"Max retries ({maxRetries}) exceeded: {reason}"
        else:
            reviewReason = f"Not retryable: {reason}"
        payment.notes = reviewReason
        self.session.commit()

        logger.error(f"Payment {paymentId} failed after {payment.retryCount} attempts. Manual review required.")

        self.audit.payoutManualReview(payment, reviewReason, actorId)
        await eventBus.emit(MLMEvents.PAYOUT_MANUAL_REVIEW, {
            "paymentId": paymentId,
            "reason": reason,
            "retryCount": payment.retryCount,
            "recommendedAction": info["action"],
        })

        return PayoutFailureResult(
            paymentId=paymentId,
            willRetry=False,
            retryCount=payment.retryCount,
            reason=reason,
            requiresManualReview=True,
            recommendedAction=info["action"],
        )

    # ═══════════════════════════════════════════════════════════════════════
    # RETRY QUEUE
    # ═══════════════════════════════════════════════════════════════════════

    def _leaseFree(self, now: datetime):
        return or_(Payment.claimedUntil.is_(None), Payment.claimedUntil < now)

    async def getPaymentsDueForRetry(self, now: Optional[datetime] = None,
                                     limit: Optional[int] = None) -> List[Payment]:
        now = now or timeMachine.now
        query = self.session.query(Payment).filter(
            Payment.status == "failed",
            Payment.nextRetryAt.isnot(None),
            Payment.nextRetryAt <= now,
            Payment.requiresManualReview.is_(False),
            Payment.retryCount < Payment.maxRetries,
            self._leaseFree(now)
        ).order_by(Payment.nextRetryAt)

        if limit:
            query = query.limit(limit)
        return query.all()

    async def claimPaymentForRetry(self, paymentId: int, workerId: str,
                                   leaseSeconds: Optional[int] = None) -> bool:
        """
        Give one worker exclusive use of a payment for leaseSeconds.
        A failed payment waits for its nextRetryAt. A processing payment whose
        lease ran out can be claimed again.
        Returns False when another worker holds it or it is no longer eligible.
        """
        from config import Config

        now = timeMachine.now
        leaseSeconds = leaseSeconds or Config.get(Config.PAYOUT_LEASE_SECONDS, 300)

        claimed = self.session.query(Payment).filter(
            Payment.paymentID == paymentId,
            Payment.status.in_(("pending", "failed", "processing")),
            Payment.requiresManualReview.is_(False),
            or_(Payment.status != "failed", Payment.nextRetryAt <= now),
            self._leaseFree(now)
        ).update({
            Payment.status: "processing",
            Payment.claimedBy: workerId,
            Payment.claimedUntil: now + timedelta(seconds=leaseSeconds),
            Payment.processedAt: now,
        }, synchronize_session=False)
        self.session.commit()

        if claimed:
            logger.info(f"Payment {paymentId} claimed by {workerId} for {leaseSeconds}s")
        else:
            logger.debug(f"Payment {paymentId} not claimable by {workerId}")
        return claimed == 1

    async def markPaymentCompleted(self, paymentId: int, transferId: Optional[str] = None,
                                   actorId: Optional[int] = None) -> Payment:
        """Processing -> completed; included approved commissions become paid."""
        payment = self._getPayment(paymentId)
        self._checkTransition(payment, "completed")

        now = timeMachine.now
        payment.status = "completed"
        payment.completedAt = now
        payment.stripeTransferId = transferId
        payment.nextRetryAt = None
        payment.claimedBy = None
        payment.claimedUntil = None

        for commission in self.session.query(Commission).filter(
                Commission.commissionID.in_(payment.commissionIDs or [])
        ).all():
            if "paid" not in COMMISSION_TRANSITIONS.get(commission.status, set()):
                logger.warning(
                    f"Commission {commission.commissionID} is {commission.status}, "
                    f"not marked paid by payment {paymentId}"
                )
                continue
            commission.status = "paid"
            commission.paidAt = now
            commission.paymentID = paymentId

        self.session.commit()

        logger.info(f"Payment {paymentId} completed (transfer {transferId})")
        self.audit.payoutChanged(payment, "completed", actorId)
        return payment

    # ═══════════════════════════════════════════════════════════════════════
    # ADMIN ACTIONS
    # ═══════════════════════════════════════════════════════════════════════

    async def getPaymentsRequiringManualReview(self) -> List[Payment]:
        return self.session.query(Payment).filter(
            Payment.status == "failed",
            Payment.requiresManualReview.is_(True)
        ).order_by(Payment.paymentID).all()

    async def resetPaymentForManualRetry(self, paymentId: int, adminId: int,
                                         notes: Optional[str] = None) -> Payment:
        """Admin sends a failed payment back to pending with counters cleared."""
        payment = self._getPayment(paymentId)
        self._checkTransition(payment, "pending")

        payment.status = "pending"
        payment.retryCount = 0
        payment.lastRetryAt = None
        payment.nextRetryAt = None
        payment.requiresManualReview = False
        payment.claimedBy = None
        payment.claimedUntil = None
        payment.notes = notes or "Manually reset by admin for retry"
        self.session.commit()

        logger.info(f"Payment {paymentId} reset for retry by admin {adminId}")
        self.audit.payoutChanged(
            payment, "manual_reset", adminId, f"Manual reset: {notes or 'Admin initiated retry'}"
        )
        return payment

    async def markPaymentAsResolved(self, paymentId: int, adminId: int, resolution: str) -> Payment:
        """Admin closes a payment without paying it; no further retries."""
        payment = self._getPayment(paymentId)
        self._checkTransition(payment, "cancelled")

        payment.status = "cancelled"
        payment.requiresManualReview = False
        payment.nextRetryAt = None
        payment.claimedBy = None
        payment.claimedUntil = None
        payment.notes = f"Resolved by admin: {resolution}"
        self.session.commit()

        logger.info(f"Payment {paymentId} resolved by admin {adminId}: {resolution}")
        self.audit.payoutChanged(payment, "resolved", adminId, f"Resolved: {resolution}")
        return payment

    async def getRetryStatistics(self, now: Optional[datetime] = None) -> Dict:
        """Counts of failed payments by retry state, for monitoring."""
        now = now or timeMachine.now
        failed = self.session.query(func.count(Payment.paymentID)).filter(Payment.status == "failed")
        automatic = failed.filter(Payment.requiresManualReview.is_(False), Payment.nextRetryAt.isnot(None))

        return {
            "totalFailed": failed.scalar() or 0,
            "pendingRetry": automatic.filter(Payment.nextRetryAt > now).scalar() or 0,
            "dueForRetry": automatic.filter(Payment.nextRetryAt <= now).scalar() or 0,
            "requiresManualReview": failed.filter(Payment.requiresManualReview.is_(True)).scalar() or 0,
            "byRetryCount": {
                "retry1": failed.filter(Payment.retryCount == 1).scalar() or 0,
                "retry2": failed.filter(Payment.retryCount == 2).scalar() or 0,
                "retry3": failed.filter(Payment.retryCount >= 3).scalar() or 0,
            },
        }
