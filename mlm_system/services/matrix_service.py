# mlm_system/services/matrix_service.py
"""
Matrix placement service - forced matrix with breadth-first spillover.

New distributors go under their sponsor; once the sponsor's front line is
full they spill to the first open slot found breadth-first, leg order, below
the sponsor. Nodes on the last level accept no children.
"""
import asyncio
import weakref
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional
from sqlalchemy.exc import IntegrityError
import logging

from models.mlm.matrix_position import MatrixPosition
from mlm_system.audit import AuditLogger
from mlm_system.config.plan import COMPENSATION_PLAN
from mlm_system.errors import (
    MLMError,
    AlreadyPlacedError,
    MatrixFullError,
    PersistenceError,
)
from mlm_system.utils.chain_walker import ChainWalker
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

# loop -> {root userID: lock}; placements in one tree run one at a time
_TREE_LOCKS: "weakref.WeakKeyDictionary" = weakref.WeakKeyDictionary()


def _tree_lock(rootId: int) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _TREE_LOCKS.setdefault(loop, {})
    if rootId not in locks:
        locks[rootId] = asyncio.Lock()
    return locks[rootId]


@dataclass
class PlacementResult:
    success: bool
    position: Optional[MatrixPosition] = None
    error: Optional[MLMError] = None
    createdRoot: bool = False
    attempts: int = 1


class MatrixService:
    """Places distributors and walks the placement tree."""

    def __init__(self, store, plan=None, audit: Optional[AuditLogger] = None,
                 maxAttempts: Optional[int] = None):
        from config import Config

        self.store = store
        self.plan = plan or COMPENSATION_PLAN()
        self.audit = audit or AuditLogger()
        self.maxAttempts = maxAttempts or Config.get(Config.PLACEMENT_MAX_ATTEMPTS, 3)
        self.walker = ChainWalker(store)

    # ═══════════════════════════════════════════════════════════════════════
    # PLACEMENT
    # ═══════════════════════════════════════════════════════════════════════

    async def placeInMatrix(self, newUserId: int, sponsorId: int,
                            placedBy: Optional[int] = None) -> PlacementResult:
        """
        Place a new distributor in the sponsor's tree.

        If the sponsor has no position yet, the sponsor becomes the root of a
        new tree first. Conflicting concurrent claims are retried with a fresh
        search up to maxAttempts times.
        """
        placedBy = placedBy if placedBy is not None else sponsorId

        try:
            if self.store.getPosition(newUserId):
                logger.info(f"User {newUserId} already has a matrix position")
                return PlacementResult(success=False, error=AlreadyPlacedError())

            rootId = self._treeRootId(sponsorId)
        except Exception as e:
            logger.error(f"Error reading matrix before placing user {newUserId}: {e}", exc_info=True)
            return PlacementResult(success=False, error=PersistenceError(str(e)))

        lock = _tree_lock(rootId)

        async with lock:
            for attempt in range(1, self.maxAttempts + 1):
                try:
                    result = self._placeOnce(newUserId, sponsorId, placedBy)
                    result.attempts = attempt
                    return result

                except IntegrityError as e:
                    self.store.rollback()
                    logger.warning(
                        f"Placement conflict for user {newUserId} under sponsor {sponsorId} "
                        f"(attempt {attempt}/{self.maxAttempts}): {e}"
                    )

                except Exception as e:
                    self.store.rollback()
                    logger.error(f"Error placing user {newUserId} in matrix: {e}", exc_info=True)
                    return PlacementResult(
                        success=False, error=PersistenceError(str(e)), attempts=attempt
                    )

        return PlacementResult(
            success=False,
            error=PersistenceError(
                f"Could not claim a matrix slot after {self.maxAttempts} attempts"
            ),
            attempts=self.maxAttempts,
        )

    def _placeOnce(self, newUserId: int, sponsorId: int, placedBy: int) -> PlacementResult:
        if self.store.getPosition(newUserId):
            return PlacementResult(success=False, error=AlreadyPlacedError())

        sponsorPosition = self.store.getPosition(sponsorId)
        createdRoot = False

        if not sponsorPosition:
            sponsorPosition = self.store.insertPosition(MatrixPosition(
                userID=sponsorId,
                sponsorID=sponsorId,
                parentID=None,
                level=1,
                position=1,
                legPosition=None,
                status="active",
                placedBy=sponsorId,
                placedAt=timeMachine.now,
            ))
            createdRoot = True
            logger.info(f"Created matrix root for sponsor {sponsorId}")

            if newUserId == sponsorId:
                self.store.commit()
                self.audit.matrixPlaced(sponsorPosition, placedBy)
                return PlacementResult(success=True, position=sponsorPosition, createdRoot=True)

        slot = self._findNextAvailableSlot(sponsorPosition)
        if slot is None:
            self.store.rollback()
            logger.warning(f"Matrix below sponsor {sponsorId} is full, user {newUserId} not placed")
            return PlacementResult(success=False, error=MatrixFullError())

        parent, legPosition = slot
        level = parent.level + 1

        position = self.store.insertPosition(MatrixPosition(
            userID=newUserId,
            sponsorID=sponsorId,
            parentID=parent.userID,
            level=level,
            position=self.store.nextPositionNumber(level),
            legPosition=legPosition,
            status="active" if parent.userID == sponsorId else "spilled",
            placedBy=placedBy,
            placedAt=timeMachine.now,
        ))
        self.store.commit()

        if createdRoot:
            self.audit.matrixPlaced(sponsorPosition, sponsorId)
        self.audit.matrixPlaced(position, placedBy)

        logger.info(
            f"Placed user {newUserId} under {parent.userID} "
            f"(sponsor {sponsorId}, level {level}, leg {legPosition})"
        )
        return PlacementResult(success=True, position=position, createdRoot=createdRoot)

    def _findNextAvailableSlot(self, start: MatrixPosition):
        """First node breadth-first with a free leg: (parent, legPosition) or None."""
        queue = deque([start])

        while queue:
            node = queue.popleft()
            if node.level >= self.plan.depth:
                continue

            children = self.store.fetchChildren(node.userID)
            if len(children) < self.plan.width:
                return node, len(children) + 1

            queue.extend(children)

        return None

    def _treeRootId(self, userId: int) -> int:
        position = self.store.getPosition(userId)
        if not position:
            return userId

        chain = self.walker.get_upline_chain(position, max_depth=self.plan.depth + 1)
        return chain[-1].userID if chain else position.userID

    # ═══════════════════════════════════════════════════════════════════════
    # TRAVERSAL
    # ═══════════════════════════════════════════════════════════════════════

    async def getPosition(self, userId: int) -> Optional[MatrixPosition]:
        return self.store.getPosition(userId)

    async def getUplinePositions(self, userId: int, levels: Optional[int] = None) -> List[MatrixPosition]:
        """Ancestors nearest first, at most `levels` of them."""
        position = self.store.getPosition(userId)
        if not position:
            return []

        return self.walker.get_upline_chain(
            position, levels if levels is not None else self.plan.depth
        )

    async def getDownlinePositions(self, userId: int, maxLevels: Optional[int] = None) -> List[MatrixPosition]:
        """Everything below userId, level by level, leg order within a level."""
        position = self.store.getPosition(userId)
        if not position:
            return []

        downline = []
        self.walker.walk_downline(
            position,
            lambda child, level: downline.append(child),
            maxLevels if maxLevels is not None else self.plan.depth
        )
        return downline

    async def getDirectChildren(self, userId: int) -> List[MatrixPosition]:
        return self.store.fetchChildren(userId)

    async def countDownlinePositions(self, userId: int) -> int:
        position = self.store.getPosition(userId)
        if not position:
            return 0
        return self.walker.count_downline(position, self.plan.depth)

    async def getMatrixStats(self, userId: int) -> Optional[Dict]:
        """Placement summary for a distributor, None when not placed."""
        position = self.store.getPosition(userId)
        if not position:
            return None

        levelCounts: Dict[int, int] = {}

        def count(child, relativeLevel):
            levelCounts[relativeLevel] = levelCounts.get(relativeLevel, 0) + 1

        total = self.walker.walk_downline(position, count, self.plan.depth)
        directChildren = levelCounts.get(1, 0)
        acceptsChildren = position.level < self.plan.depth

        return {
            "userId": userId,
            "level": position.level,
            "position": position.position,
            "legPosition": position.legPosition,
            "parentId": position.parentID,
            "sponsorId": position.sponsorID,
            "totalDownline": total,
            "directChildren": directChildren,
            "availableSlots": self.plan.width - directChildren if acceptsChildren else 0,
            "levelCounts": levelCounts,
        }
