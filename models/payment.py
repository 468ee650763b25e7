# backoffice/models/payment.py
"""
Payment models - payout attempts and the batches that group them.
A payment aggregates one or more commissions by id list.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, Text, JSON, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class PaymentBatch(Base, AuditMixin):
    __tablename__ = 'payment_batches'

    batchID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    totalAmount = Column(DECIMAL(14, 2), nullable=False)
    paymentCount = Column(Integer, nullable=False)
    status = Column(String(20), default="pending")  # pending, processing, completed, failed

    processedBy = Column(Integer, nullable=True)  # Admin userID
    processedAt = Column(DateTime, nullable=True)

    payments = relationship('Payment', back_populates='batch')

    def __repr__(self):
        return f"<PaymentBatch(batchID={self.batchID}, name={self.name}, total={self.totalAmount})>"


class Payment(Base, AuditMixin):
    __tablename__ = 'payments'

    # Primary key
    paymentID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False, index=True)
    batchID = Column(Integer, ForeignKey('payment_batches.batchID'), nullable=True)

    # Payment details
    amount = Column(DECIMAL(12, 2), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    type = Column(String(20), default="commission_payout")  # commission_payout, refund, adjustment
    commissionIDs = Column(JSON, nullable=True)  # [commissionID, ...]

    # Status: pending, processing, completed, failed, cancelled
    status = Column(String(20), default="pending", nullable=False, index=True)

    # Processor outcome
    stripeTransferId = Column(String(255), nullable=True)
    stripeFailureReason = Column(Text, nullable=True)

    # Retry logic
    retryCount = Column(Integer, default=0, nullable=False)
    maxRetries = Column(Integer, default=3, nullable=False)
    lastRetryAt = Column(DateTime, nullable=True)
    nextRetryAt = Column(DateTime, nullable=True, index=True)
    requiresManualReview = Column(Boolean, default=False, nullable=False)

    # Processing lease (one retry worker at a time)
    claimedBy = Column(String(64), nullable=True)
    claimedUntil = Column(DateTime, nullable=True)

    # Additional
    notes = Column(Text, nullable=True)
    processedAt = Column(DateTime, nullable=True)
    completedAt = Column(DateTime, nullable=True)

    # Relationships
    user = relationship('User', backref='payments')
    batch = relationship('PaymentBatch', back_populates='payments')

    def __repr__(self):
        return (
            f"<Payment(paymentID={self.paymentID}, status={self.status}, "
            f"amount={self.amount}, retries={self.retryCount}/{self.maxRetries})>"
        )
