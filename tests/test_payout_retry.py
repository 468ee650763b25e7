# tests/test_payout_retry.py
"""
Payout failures, exponential backoff, manual review and the retry queue,
plus payout batch creation.

Run:
    pytest tests/test_payout_retry.py -v
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from models import Commission, Payment
from mlm_system.errors import (
    PaymentNotFoundError,
    InvalidStatusTransition,
    EmptyPayoutBatchError,
)
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.services.payout_retry_service import (
    RetryConfig,
    calculateNextRetryTime,
    shouldAutoRetry,
    getFailureReasonInfo,
)
from mlm_system.utils.time_machine import timeMachine


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def make_commission(session):
    def _make(userId, amount="10.00", status="approved"):
        commission = Commission(
            userID=userId,
            fromUserID=userId,
            type="retail",
            amount=Decimal(amount),
            status=status,
        )
        session.add(commission)
        session.commit()
        return commission

    return _make


def minutes_after_now(moment):
    return (moment - timeMachine.now) / timedelta(minutes=1)


# =============================================================================
# BACKOFF
# =============================================================================

class TestBackoff:

    def test_delay_doubles_per_previous_failure(self):
        config = RetryConfig()
        gaps = [minutes_after_now(calculateNextRetryTime(n, config, timeMachine.now)) for n in range(4)]
        assert gaps == [30, 60, 120, 240]

    def test_delay_is_capped(self):
        assert minutes_after_now(calculateNextRetryTime(10, RetryConfig(), timeMachine.now)) == 1440

    def test_config_values_are_used(self, config):
        config.set(config.PAYOUT_BASE_DELAY_MINUTES, 10)
        retry = RetryConfig.fromConfig()
        assert retry.baseDelayMinutes == 10
        assert minutes_after_now(calculateNextRetryTime(1, retry, timeMachine.now)) == 20

    def test_failure_reasons(self):
        assert shouldAutoRetry("insufficient_funds")
        assert not shouldAutoRetry("account_closed")
        assert shouldAutoRetry("something_new")
        assert "closed" in getFailureReasonInfo("account_closed")["description"]
        assert getFailureReasonInfo("something_new")["autoRetry"]


# =============================================================================
# FAILURE HANDLING
# =============================================================================

class TestFailureHandling:

    def test_successive_retries_back_off(self, user, make_payment, services, run):
        payment = make_payment(user.userID, maxRetries=4)

        results = [
            run(services.retries.handlePayoutFailure(payment.paymentID, "insufficient_funds"))
            for _ in range(3)
        ]

        assert [r.willRetry for r in results] == [True, True, True]
        assert [r.retryCount for r in results] == [1, 2, 3]
        assert [minutes_after_now(r.nextRetryAt) for r in results] == [30, 60, 120]

        last = run(services.retries.handlePayoutFailure(payment.paymentID, "insufficient_funds"))
        assert last.requiresManualReview
        assert last.nextRetryAt is None

    def test_manual_review_after_max_retries(self, user, make_payment, services, session, run):
        payment = make_payment(user.userID)

        for _ in range(2):
            assert run(services.retries.handlePayoutFailure(payment.paymentID, "generic_decline")).willRetry
        result = run(services.retries.handlePayoutFailure(payment.paymentID, "generic_decline"))

        assert not result.willRetry
        assert result.requiresManualReview
        assert result.retryCount == 3

        stored = session.query(Payment).filter_by(paymentID=payment.paymentID).one()
        assert stored.status == "failed"
        assert stored.requiresManualReview
        assert stored.nextRetryAt is None
        assert "Max retries (3) exceeded" in stored.notes

    def test_non_retryable_reason_goes_straight_to_review(self, user, make_payment, services, session, run):
        payment = make_payment(user.userID)

        result = run(services.retries.handlePayoutFailure(payment.paymentID, "account_closed"))

        assert result.requiresManualReview
        assert result.retryCount == 1
        assert result.recommendedAction == getFailureReasonInfo("account_closed")["action"]
        stored = session.query(Payment).filter_by(paymentID=payment.paymentID).one()
        assert stored.notes == "Not retryable: account_closed"

    def test_failure_while_in_review_is_only_noted(self, user, make_payment, services, session, run):
        payment = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(payment.paymentID, "account_closed"))

        result = run(services.retries.handlePayoutFailure(payment.paymentID, "no_account"))

        assert result.requiresManualReview
        assert result.retryCount == 1
        stored = session.query(Payment).filter_by(paymentID=payment.paymentID).one()
        assert stored.stripeFailureReason == "no_account"

    def test_completed_payment_cannot_fail(self, user, make_payment, services, run):
        payment = make_payment(user.userID, status="completed")
        with pytest.raises(InvalidStatusTransition):
            run(services.retries.handlePayoutFailure(payment.paymentID, "generic_decline"))

    def test_unknown_payment(self, services, run):
        with pytest.raises(PaymentNotFoundError):
            run(services.retries.handlePayoutFailure(404, "generic_decline"))

    def test_events_and_audit(self, user, make_payment, services, run, audit_sink):
        failed, review = [], []
        eventBus.subscribe(MLMEvents.PAYOUT_FAILED, failed.append)
        eventBus.subscribe(MLMEvents.PAYOUT_MANUAL_REVIEW, review.append)

        retrying = make_payment(user.userID)
        closed = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(retrying.paymentID, "insufficient_funds"))
        run(services.retries.handlePayoutFailure(closed.paymentID, "account_closed"))

        assert [e["paymentId"] for e in failed] == [retrying.paymentID]
        assert [e["paymentId"] for e in review] == [closed.paymentID]
        assert audit_sink.actions() == ["payout.retry_scheduled", "payout.manual_review"]
        assert audit_sink.events[1].severity == "critical"


# =============================================================================
# RETRY QUEUE
# =============================================================================

class TestRetryQueue:

    def test_due_only_after_backoff(self, user, make_payment, services, run, frozen_time):
        payment = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(payment.paymentID, "insufficient_funds"))

        assert run(services.retries.getPaymentsDueForRetry()) == []

        frozen_time.advanceTime(minutes=30)
        due = run(services.retries.getPaymentsDueForRetry())
        assert [p.paymentID for p in due] == [payment.paymentID]

    def test_failed_payment_cannot_be_claimed_before_backoff(self, user, make_payment, services,
                                                             session, run, frozen_time):
        payment = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(payment.paymentID, "insufficient_funds"))

        assert not run(services.retries.claimPaymentForRetry(payment.paymentID, "worker-1"))
        stored = session.query(Payment).filter_by(paymentID=payment.paymentID).one()
        assert stored.status == "failed"
        assert stored.claimedBy is None

        frozen_time.advanceTime(minutes=30)
        assert run(services.retries.claimPaymentForRetry(payment.paymentID, "worker-1"))

    def test_review_payments_are_never_due(self, user, make_payment, services, run, frozen_time):
        payment = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(payment.paymentID, "account_closed"))

        frozen_time.advanceTime(days=3)

        assert run(services.retries.getPaymentsDueForRetry()) == []

    def test_lease_gives_one_worker_exclusive_use(self, user, make_payment, services, session, run, frozen_time):
        payment = make_payment(user.userID)

        assert run(services.retries.claimPaymentForRetry(payment.paymentID, "worker-1"))
        assert not run(services.retries.claimPaymentForRetry(payment.paymentID, "worker-2"))

        frozen_time.advanceTime(minutes=6)
        assert run(services.retries.claimPaymentForRetry(payment.paymentID, "worker-2"))

        stored = session.query(Payment).filter_by(paymentID=payment.paymentID).one()
        assert stored.status == "processing"
        assert stored.claimedBy == "worker-2"

    def test_claimed_payment_is_not_due(self, user, make_payment, services, run, frozen_time):
        payment = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(payment.paymentID, "insufficient_funds"))
        frozen_time.advanceTime(minutes=31)

        run(services.retries.claimPaymentForRetry(payment.paymentID, "worker-1"))

        assert run(services.retries.getPaymentsDueForRetry()) == []

    def test_completion_pays_included_commissions(self, user, make_payment, make_commission,
                                                  services, session, run, audit_sink):
        approved = make_commission(user.userID, "12.50")
        pending = make_commission(user.userID, "5.00", status="pending")
        payment = make_payment(user.userID, "17.50", commissionIds=[approved.commissionID, pending.commissionID])
        run(services.retries.claimPaymentForRetry(payment.paymentID, "worker-1"))

        completed = run(services.retries.markPaymentCompleted(payment.paymentID, "tr_123"))

        assert completed.status == "completed"
        assert completed.stripeTransferId == "tr_123"
        assert completed.claimedBy is None

        paid = session.query(Commission).filter_by(commissionID=approved.commissionID).one()
        assert paid.status == "paid"
        assert paid.paymentID == payment.paymentID
        assert paid.paidAt is not None
        assert session.query(Commission).filter_by(commissionID=pending.commissionID).one().status == "pending"
        assert audit_sink.actions()[-1] == "payout.completed"

    def test_pending_payment_cannot_complete(self, user, make_payment, services, run):
        payment = make_payment(user.userID)
        with pytest.raises(InvalidStatusTransition):
            run(services.retries.markPaymentCompleted(payment.paymentID, "tr_1"))


# =============================================================================
# ADMIN ACTIONS
# =============================================================================

class TestAdminActions:

    @pytest.fixture
    def in_review(self, user, make_payment, services, run):
        payment = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(payment.paymentID, "account_closed"))
        return payment

    def test_review_queue(self, in_review, user, make_payment, services, run):
        make_payment(user.userID)

        queue = run(services.retries.getPaymentsRequiringManualReview())

        assert [p.paymentID for p in queue] == [in_review.paymentID]

    def test_reset_for_manual_retry(self, in_review, services, run, audit_sink):
        payment = run(services.retries.resetPaymentForManualRetry(in_review.paymentID, adminId=1))

        assert payment.status == "pending"
        assert payment.retryCount == 0
        assert not payment.requiresManualReview
        assert payment.nextRetryAt is None
        assert audit_sink.actions()[-1] == "payout.manual_reset"

    def test_pending_payment_cannot_be_reset(self, user, make_payment, services, run):
        payment = make_payment(user.userID)
        with pytest.raises(InvalidStatusTransition):
            run(services.retries.resetPaymentForManualRetry(payment.paymentID, adminId=1))

    def test_resolve_closes_payment(self, in_review, services, run):
        payment = run(services.retries.markPaymentAsResolved(in_review.paymentID, 1, "Paid by cheque"))

        assert payment.status == "cancelled"
        assert not payment.requiresManualReview
        assert payment.notes == "Resolved by admin: Paid by cheque"
        assert run(services.retries.getPaymentsRequiringManualReview()) == []

    def test_completed_payment_cannot_be_resolved(self, user, make_payment, services, run):
        payment = make_payment(user.userID, status="completed")
        with pytest.raises(InvalidStatusTransition):
            run(services.retries.markPaymentAsResolved(payment.paymentID, 1, "duplicate"))

    def test_statistics(self, in_review, user, make_payment, services, run):
        retrying = make_payment(user.userID)
        run(services.retries.handlePayoutFailure(retrying.paymentID, "insufficient_funds"))

        stats = run(services.retries.getRetryStatistics())
        assert stats["totalFailed"] == 2
        assert stats["pendingRetry"] == 1
        assert stats["dueForRetry"] == 0
        assert stats["requiresManualReview"] == 1
        assert stats["byRetryCount"]["retry1"] == 2

        later = run(services.retries.getRetryStatistics(timeMachine.now + timedelta(minutes=31)))
        assert later["dueForRetry"] == 1
        assert later["pendingRetry"] == 0


# =============================================================================
# PAYOUT BATCHES
# =============================================================================

class TestPayoutBatches:

    def test_batch_groups_approved_commissions_by_user(self, make_user, make_commission, services, session, run):
        first, second = make_user(), make_user()
        a = make_commission(first.userID, "10.00")
        b = make_commission(first.userID, "2.50")
        c = make_commission(second.userID, "7.00")
        make_commission(second.userID, "99.00", status="pending")

        batch = run(services.payouts.createPayoutBatch("March payouts", actorId=1))

        assert batch.paymentCount == 2
        assert batch.totalAmount == Decimal("19.50")

        payments = {p.userID: p for p in run(services.payouts.getBatchPayments(batch.batchID))}
        assert payments[first.userID].amount == Decimal("12.50")
        assert sorted(payments[first.userID].commissionIDs) == sorted([a.commissionID, b.commissionID])
        assert payments[second.userID].commissionIDs == [c.commissionID]
        assert payments[second.userID].maxRetries == 3
        assert session.query(Commission).filter_by(commissionID=c.commissionID).one().paymentID == \
            payments[second.userID].paymentID

    def test_batched_commissions_are_not_batched_again(self, user, make_commission, services, run):
        make_commission(user.userID)
        run(services.payouts.createPayoutBatch("First"))

        with pytest.raises(EmptyPayoutBatchError):
            run(services.payouts.createPayoutBatch("Second"))

    def test_batch_restricted_to_given_commissions(self, user, make_commission, services, run):
        keep = make_commission(user.userID, "4.00")
        make_commission(user.userID, "6.00")

        batch = run(services.payouts.createPayoutBatch("Partial", commissionIds=[keep.commissionID]))

        assert batch.totalAmount == Decimal("4.00")

    def test_batch_needs_a_name(self, services, run):
        with pytest.raises(ValueError):
            run(services.payouts.createPayoutBatch(""))

    def test_batch_is_audited(self, user, make_commission, services, run, audit_sink):
        make_commission(user.userID)
        batch = run(services.payouts.createPayoutBatch("Audited"))

        assert audit_sink.events[-1].action == "payout.batch_created"
        assert audit_sink.events[-1].entityId == batch.batchID
        assert run(services.payouts.getPayoutBatches())[0].batchID == batch.batchID
