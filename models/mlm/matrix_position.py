# backoffice/models/mlm/matrix_position.py
"""
MatrixPosition model - one row per placed distributor in the forced matrix.
Rows are permanent: no re-parenting, no deletes.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from models.base import Base, _get_current_time


class MatrixPosition(Base):
    __tablename__ = 'matrix_positions'
    __table_args__ = (
        # Two concurrent placements can never claim the same slot
        UniqueConstraint('parentID', 'legPosition', name='uq_matrix_parent_leg'),
    )

    positionID = Column(Integer, primary_key=True, autoincrement=True)

    userID = Column(Integer, ForeignKey('users.userID'), nullable=False, unique=True)
    sponsorID = Column(Integer, nullable=False, index=True)  # Referrer, for attribution
    parentID = Column(Integer, ForeignKey('matrix_positions.userID'), nullable=True, index=True)  # Tree parent

    level = Column(Integer, nullable=False, index=True)  # 1..depth
    position = Column(Integer, nullable=False)  # Per-level counter, diagnostics only
    legPosition = Column(Integer, nullable=True)  # 1..width under parent, null for root

    status = Column(String(20), default="active", nullable=False)  # active, spilled, cycled

    placedBy = Column(Integer, nullable=False)
    placedAt = Column(DateTime, default=_get_current_time)

    @property
    def isRoot(self) -> bool:
        return self.parentID is None

    def __repr__(self):
        return (
            f"<MatrixPosition(user={self.userID}, parent={self.parentID}, "
            f"level={self.level}, leg={self.legPosition})>"
        )
