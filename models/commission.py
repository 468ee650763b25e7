# backoffice/models/commission.py
"""
Commission model - one row per commission event.
Created pending by the calculator; moved forward only by the approval
workflow (pending -> approved -> paid, or rejected).
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Commission(Base, AuditMixin):
    __tablename__ = 'commissions'

    # Primary key
    commissionID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False, index=True)  # Beneficiary
    fromUserID = Column(Integer, nullable=False)  # Whose purchase / earning generated it
    orderID = Column(Integer, ForeignKey('orders.orderID'), nullable=True, index=True)  # Null only for rank_bonus

    # Commission details
    type = Column(String(20), nullable=False, index=True)  # retail, matrix, rank_bonus, matching
    level = Column(Integer, nullable=True)  # Matrix / matching depth
    amount = Column(DECIMAL(12, 2), nullable=False)
    percentage = Column(DECIMAL(5, 2), nullable=True)
    description = Column(Text, nullable=True)

    # Payment tracking
    status = Column(String(20), default="pending", nullable=False, index=True)  # pending, approved, paid, rejected
    paymentID = Column(Integer, ForeignKey('payments.paymentID'), nullable=True)
    paidAt = Column(DateTime, nullable=True)

    # Relationships
    user = relationship('User', foreign_keys=[userID], backref='commissions')

    def __repr__(self):
        return (
            f"<Commission(commissionID={self.commissionID}, user={self.userID}, "
            f"type={self.type}, amount={self.amount}, status={self.status})>"
        )
