# mlm_system/stores/memory.py
"""
In-memory matrix store with the same contract as SqlMatrixStore.
Enforces the same uniqueness rules so placement conflicts behave alike.
"""
from typing import Dict, List, Optional, Iterable, Tuple
from sqlalchemy.exc import IntegrityError

from models.mlm.matrix_position import MatrixPosition


class InMemoryMatrixStore:

    def __init__(self):
        self._byUser: Dict[int, MatrixPosition] = {}
        self._slots: Dict[Tuple[int, int], int] = {}
        self._pending: List[MatrixPosition] = []
        self.insertCalls = 0
        self.fetchCalls = 0

    def getPosition(self, userId: int) -> Optional[MatrixPosition]:
        return self._byUser.get(userId)

    def fetchChildren(self, parentId: int) -> List[MatrixPosition]:
        self.fetchCalls += 1
        children = [p for p in self._byUser.values() if p.parentID == parentId]
        return sorted(children, key=lambda p: p.legPosition)

    def fetchChildrenOf(self, parentIds: Iterable[int]) -> List[MatrixPosition]:
        self.fetchCalls += 1
        parentIds = list(parentIds)
        order = {parentId: index for index, parentId in enumerate(parentIds)}
        children = [p for p in self._byUser.values() if p.parentID in order]
        return sorted(children, key=lambda p: (order[p.parentID], p.legPosition))

    def nextPositionNumber(self, level: int) -> int:
        numbers = [p.position for p in self._byUser.values() if p.level == level]
        return max(numbers, default=0) + 1

    def countPositions(self) -> int:
        return len(self._byUser)

    def insertPosition(self, position: MatrixPosition) -> MatrixPosition:
        self.insertCalls += 1

        if position.userID in self._byUser:
            raise IntegrityError(
                "INSERT INTO matrix_positions", {"userID": position.userID},
                ValueError("UNIQUE constraint failed: matrix_positions.userID")
            )

        if position.parentID is not None:
            slot = (position.parentID, position.legPosition)
            if slot in self._slots:
                raise IntegrityError(
                    "INSERT INTO matrix_positions", {"slot": slot},
                    ValueError("UNIQUE constraint failed: uq_matrix_parent_leg")
                )
            self._slots[slot] = position.userID

        self._byUser[position.userID] = position
        self._pending.append(position)
        return position

    def commit(self):
        self._pending = []

    def rollback(self):
        for position in self._pending:
            self._byUser.pop(position.userID, None)
            if position.parentID is not None:
                self._slots.pop((position.parentID, position.legPosition), None)
        self._pending = []
