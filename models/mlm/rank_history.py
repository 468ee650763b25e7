# backoffice/models/mlm/rank_history.py
"""
RankHistory model - tracks rank achievements.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, _get_current_time


class RankHistory(Base):
    __tablename__ = 'rank_history'

    historyID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=_get_current_time)

    # Relations
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False, index=True)

    # Rank details
    previousRank = Column(String, nullable=True)
    newRank = Column(String, nullable=False)

    # Qualification metrics at time of achievement
    personalSales = Column(DECIMAL(12, 2), nullable=True)
    teamVolume = Column(DECIMAL(14, 2), nullable=True)
    activeLegs = Column(Integer, nullable=True)
    qualificationMethod = Column(String, nullable=True)  # natural, assigned

    # One-time bonus paid for this achievement
    bonusCommissionID = Column(Integer, ForeignKey('commissions.commissionID'), nullable=True)

    notes = Column(Text, nullable=True)

    # Relationships
    user = relationship('User', foreign_keys=[userID], backref='rank_history')

    def __repr__(self):
        return f"<RankHistory(user={self.userID}, rank={self.newRank}, date={self.createdAt})>"
