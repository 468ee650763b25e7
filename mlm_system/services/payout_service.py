# mlm_system/services/payout_service.py
"""
Payout batches - group approved commissions into one payment per
beneficiary. Payments reference their commissions by id list.
"""
from collections import defaultdict
from typing import List, Optional
from sqlalchemy.orm import Session
import logging

from models.commission import Commission
from models.payment import Payment, PaymentBatch
from mlm_system.audit import AuditLogger, AuditEvent
from mlm_system.errors import EmptyPayoutBatchError
from mlm_system.utils.money import ZERO, round_money

logger = logging.getLogger(__name__)


class PayoutService:
    """Creates payout batches for the admin approval workflow."""

    def __init__(self, session: Session, audit: Optional[AuditLogger] = None):
        self.session = session
        self.audit = audit or AuditLogger()

    async def createPayoutBatch(self, name: str, commissionIds: Optional[List[int]] = None,
                                actorId: Optional[int] = None) -> PaymentBatch:
        """
        Build a batch from approved commissions not yet attached to a payment.

        Args:
            name: Batch label shown to admins
            commissionIds: Restrict to these commissions, None for all approved
            actorId: Admin creating the batch

        Raises:
            EmptyPayoutBatchError: If nothing is eligible
        """
        from config import Config

        if not name:
            raise ValueError("Batch name is required")

        query = self.session.query(Commission).filter(
            Commission.status == "approved",
            Commission.paymentID.is_(None)
        )
        if commissionIds:
            query = query.filter(Commission.commissionID.in_(commissionIds))

        commissions = query.order_by(Commission.commissionID).all()

        if commissionIds:
            skipped = set(commissionIds) - {c.commissionID for c in commissions}
            if skipped:
                logger.warning(f"Batch '{name}': commissions {sorted(skipped)} not approved or already batched")

        if not commissions:
            raise EmptyPayoutBatchError()

        byUser = defaultdict(list)
        for commission in commissions:
            byUser[commission.userID].append(commission)

        batch = PaymentBatch(
            name=name,
            totalAmount=ZERO,
            paymentCount=len(byUser),
            status="pending",
            processedBy=actorId,
        )
        self.session.add(batch)
        self.session.flush()

        batchTotal = ZERO
        maxRetries = Config.get(Config.PAYOUT_MAX_RETRIES, 3)

        for userId, userCommissions in byUser.items():
            amount = round_money(sum((c.amount for c in userCommissions), ZERO))
            payment = Payment(
                userID=userId,
                batchID=batch.batchID,
                amount=amount,
                type="commission_payout",
                commissionIDs=[c.commissionID for c in userCommissions],
                status="pending",
                maxRetries=maxRetries,
            )
            self.session.add(payment)
            self.session.flush()

            for commission in userCommissions:
                commission.paymentID = payment.paymentID
            batchTotal += amount

        batch.totalAmount = batchTotal
        self.session.commit()

        logger.info(
            f"Payout batch {batch.batchID} '{name}': {len(byUser)} payments, "
            f"{len(commissions)} commissions, total {batchTotal}"
        )
        self.audit.record(AuditEvent(
            actor=str(actorId) if actorId is not None else "system",
            action="payout.batch_created",
            entity="payment_batch",
            entityId=batch.batchID,
            amount=batchTotal,
            category="payout",
            metadata={"paymentCount": len(byUser), "commissionCount": len(commissions)},
        ))
        return batch

    async def getPayoutBatches(self) -> List[PaymentBatch]:
        return self.session.query(PaymentBatch).order_by(PaymentBatch.createdAt).all()

    async def getBatchPayments(self, batchId: int) -> List[Payment]:
        return self.session.query(Payment).filter(
            Payment.batchID == batchId
        ).order_by(Payment.paymentID).all()
