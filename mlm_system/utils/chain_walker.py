# mlm_system/utils/chain_walker.py
"""
Safe matrix chain walking utilities.
Prevents infinite loops on corrupted parent links.
"""
from typing import Callable, List, Optional
import logging

from models.mlm.matrix_position import MatrixPosition

logger = logging.getLogger(__name__)


class ChainWalker:
    """
    Walks the placement tree through a matrix store.
    Upline follows parent links; downline goes level by level.
    """

    def __init__(self, store):
        self.store = store

    def walk_upline(
            self,
            start: MatrixPosition,
            callback: Callable[[MatrixPosition, int], bool],
            max_depth: int = 50
    ) -> int:
        """
        Walk up the parent chain, calling callback for each ancestor.

        Args:
            start: Starting position (not passed to callback)
            callback: Function(position, level) -> continue_walking (bool)
            max_depth: Maximum number of ancestors to visit

        Returns:
            Number of ancestors processed
        """
        current = start
        level = 1
        processed = 0
        visited = {start.userID}

        while current.parentID is not None and level <= max_depth:
            if current.parentID in visited:
                logger.error(f"Cycle detected at matrix position of user {current.userID}")
                break

            parent = self.store.getPosition(current.parentID)
            if not parent:
                logger.warning(
                    f"Parent {current.parentID} not found for matrix position "
                    f"of user {current.userID}"
                )
                break

            visited.add(parent.userID)
            processed += 1

            if not callback(parent, level):
                break

            current = parent
            level += 1

        return processed

    def get_upline_chain(self, start: MatrixPosition, max_depth: int = 50) -> List[MatrixPosition]:
        """Ancestors nearest first, ending at the root or after max_depth."""
        chain = []

        def collect(position, level):
            chain.append(position)
            return True

        self.walk_upline(start, collect, max_depth)
        return chain

    def walk_downline(
            self,
            start: MatrixPosition,
            callback: Callable[[MatrixPosition, int], None],
            max_levels: Optional[int] = None
    ) -> int:
        """
        Breadth-first walk below start, one store call per level.

        Args:
            start: Starting position (not passed to callback)
            callback: Function(position, relative_level)
            max_levels: Levels below start to visit, None for all

        Returns:
            Total number of positions processed
        """
        frontier = [start.userID]
        visited = {start.userID}
        relative_level = 1
        processed = 0

        while frontier and (max_levels is None or relative_level <= max_levels):
            next_frontier = []

            for child in self.store.fetchChildrenOf(frontier):
                if child.userID in visited:
                    logger.error(f"Cycle detected in downline at user {child.userID}")
                    continue

                visited.add(child.userID)
                callback(child, relative_level)
                next_frontier.append(child.userID)
                processed += 1

            frontier = next_frontier
            relative_level += 1

        return processed

    def count_downline(self, start: MatrixPosition, max_levels: Optional[int] = None) -> int:
        """Count all positions below start."""
        return self.walk_downline(start, lambda position, level: None, max_levels)
