# mlm_system/stores/sql.py
"""
SQLAlchemy-backed matrix store.
"""
from typing import List, Optional, Iterable
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.mlm.matrix_position import MatrixPosition

logger = logging.getLogger(__name__)


class SqlMatrixStore:
    """Matrix store over a request-scoped session."""

    def __init__(self, session: Session):
        self.session = session

    def getPosition(self, userId: int) -> Optional[MatrixPosition]:
        return self.session.query(MatrixPosition).filter_by(userID=userId).first()

    def fetchChildren(self, parentId: int) -> List[MatrixPosition]:
        """Direct children ordered by leg."""
        return self.session.query(MatrixPosition).filter(
            MatrixPosition.parentID == parentId
        ).order_by(MatrixPosition.legPosition).all()

    def fetchChildrenOf(self, parentIds: Iterable[int]) -> List[MatrixPosition]:
        """Children of several parents in one query, grouped by parent order then leg."""
        parentIds = list(parentIds)
        if not parentIds:
            return []

        rows = self.session.query(MatrixPosition).filter(
            MatrixPosition.parentID.in_(parentIds)
        ).all()

        order = {parentId: index for index, parentId in enumerate(parentIds)}
        return sorted(rows, key=lambda p: (order[p.parentID], p.legPosition))

    def nextPositionNumber(self, level: int) -> int:
        current = self.session.query(func.max(MatrixPosition.position)).filter(
            MatrixPosition.level == level
        ).scalar()
        return (current or 0) + 1

    def countPositions(self) -> int:
        return self.session.query(func.count(MatrixPosition.positionID)).scalar() or 0

    def insertPosition(self, position: MatrixPosition) -> MatrixPosition:
        """Stage and flush; a taken slot surfaces here as IntegrityError."""
        self.session.add(position)
        self.session.flush()
        return position

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
