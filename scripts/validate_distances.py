#!/usr/bin/env python3
"""
Validate tree-to-road distances after a backfill.

Checks that every tree has a distance, that no distance is negative, and that
every real distance lies within the search radius (anything else must be the
no-road sentinel).

Usage:
    python scripts/validate_distances.py --radius 100 --sentinel 999
"""

import argparse
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func

from treeinventory.config import (
    NO_ROAD_SENTINEL, SEARCH_RADIUS_M, connect_args_from_env, database_url_from_env,
)
from treeinventory.database import Tree, create_pool, get_session
from treeinventory.env import load_env
from treeinventory.storage import PostgisDistanceStore
from treeinventory.summary import UNSET, format_summary


def validate(engine, radius: float, sentinel: float) -> bool:
    """
    Run all checks and print a report.

    Returns True if every check passes, False otherwise.
    """
    session = get_session(engine)
    try:
        total = session.query(func.count(Tree.id)).scalar()
        unset = session.query(func.count(Tree.id)).filter(Tree.distance_to_road_m.is_(None)).scalar()
        negative = session.query(func.count(Tree.id)).filter(Tree.distance_to_road_m < 0).scalar()
        out_of_range = (
            session.query(func.count(Tree.id))
            .filter(Tree.distance_to_road_m > radius)
            .filter(Tree.distance_to_road_m != sentinel)
            .scalar()
        )
        sample_unset = [
            row.id for row in
            session.query(Tree.id).filter(Tree.distance_to_road_m.is_(None)).order_by(Tree.id).limit(5)
        ]
    finally:
        session.close()

    print(f"Trees: {total:,}")

    problems = []
    if unset:
        problems.append(f"{unset:,} trees have no distance (first ids: {sample_unset})")
    if negative:
        problems.append(f"{negative:,} trees have a negative distance")
    if out_of_range:
        problems.append(
            f"{out_of_range:,} trees have a distance beyond {radius:g} m that is not the sentinel {sentinel:g}"
        )

    histogram = PostgisDistanceStore(engine).histogram(sentinel)
    covered = sum(count for category, count in histogram.items() if category != UNSET)
    if covered + histogram.get(UNSET, 0) != total:
        problems.append(f"Histogram covers {covered + histogram.get(UNSET, 0):,} trees, table has {total:,}")

    print()
    print(format_summary(histogram))
    print()

    if problems:
        print(f"❌ {len(problems)} problem(s) found:")
        for problem in problems:
            print(f"   - {problem}")
        return False

    print("✅ All distances validated successfully!")
    print("   - Every tree has a distance")
    print(f"   - Every distance is within {radius:g} m or the sentinel")
    return True


def main():
    parser = argparse.ArgumentParser(description="Validate tree-to-road distances")
    parser.add_argument("--radius", type=float, default=SEARCH_RADIUS_M,
                       help="Search radius used by the backfill (meters)")
    parser.add_argument("--sentinel", type=float, default=NO_ROAD_SENTINEL,
                       help="Value stored when no road was in range")

    args = parser.parse_args()

    load_env()
    try:
        url = database_url_from_env()
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(1)

    engine = create_pool(url, connect_args=connect_args_from_env())
    try:
        success = validate(engine, args.radius, args.sentinel)
    finally:
        engine.dispose()
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
