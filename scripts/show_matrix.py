#!/usr/bin/env python3
"""
Display the placement matrix below a distributor.

Usage:
    python scripts/show_matrix.py --root-id USER_ID [--max-depth DEPTH] [--stats]
"""

import sys
import os
import argparse
import asyncio

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from models.user import User
from mlm_system.services.factory import create_services

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def print_tree(session, matrix, root_id, max_depth):
    """Print ASCII tree of the placement structure."""
    users = {u.userID: u for u in session.query(User).all()}

    def print_node(position, prefix="", is_last=True, depth=0):
        user = users.get(position.userID)
        connector = "└─ " if is_last else "├─ "
        name = user.displayName if user else "?"
        active_marker = "✅" if user and user.isActive else "❌"
        rank_display = f"[{user.rank}]" if user and user.rank != "distributor" else ""
        spill_marker = "↪ " if position.status == "spilled" else ""

        print(
            f"{prefix}{connector}{spill_marker}{name} (ID:{position.userID}) "
            f"L{position.level}/leg {position.legPosition or '-'} {active_marker} {rank_display}"
        )

        if max_depth and depth >= max_depth:
            return

        children = matrix.store.fetchChildren(position.userID)
        for i, child in enumerate(children):
            new_prefix = prefix + ("    " if is_last else "│   ")
            print_node(child, new_prefix, i == len(children) - 1, depth + 1)

    root = matrix.store.getPosition(root_id)
    if not root:
        print(f"User {root_id} has no matrix position")
        return

    print("\n" + "=" * 80)
    print("PLACEMENT MATRIX")
    print("=" * 80)
    print("\nLegend:")
    print("  ↪ = Spilled from sponsor's front line")
    print("  ✅ = Active distributor")
    print("  ❌ = Inactive distributor")
    print("  [rank] = Rank (if not 'distributor')")
    print("\n" + "=" * 80 + "\n")
    print_node(root)
    print("\n" + "=" * 80 + "\n")


async def print_statistics(matrix, root_id):
    """Print placement statistics for one distributor."""
    stats = await matrix.getMatrixStats(root_id)
    if not stats:
        return

    print("MATRIX STATISTICS")
    print("=" * 80 + "\n")
    print(f"Level:            {stats['level']}")
    print(f"Total downline:   {stats['totalDownline']}")
    print(f"Direct children:  {stats['directChildren']}")
    print(f"Available slots:  {stats['availableSlots']}")
    print("\nPositions by depth:")
    for level, count in sorted(stats["levelCounts"].items()):
        print(f"  {level:2}  {count:6}")
    print()


def main():
    parser = argparse.ArgumentParser(description="Display the placement matrix")
    parser.add_argument("--root-id", type=int, required=True, help="User ID to start from")
    parser.add_argument("--max-depth", type=int, default=None, help="Maximum depth to display")
    parser.add_argument("--stats", action="store_true", help="Show statistics")
    args = parser.parse_args()

    Config.initialize_from_env()

    session = get_session()
    try:
        matrix = create_services(session).matrix
        print_tree(session, matrix, args.root_id, args.max_depth)
        if args.stats:
            asyncio.run(print_statistics(matrix, args.root_id))
    finally:
        session.close()


if __name__ == "__main__":
    main()
