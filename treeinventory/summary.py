"""
Distance categories and the final summary table.

The same thresholds drive the SQL histogram and the in-Python bucketing so
the two never disagree.
"""

from typing import Dict, List, Optional, Tuple

from .config import NO_ROAD_SENTINEL

STREET = "Street Trees (≤15m)"
NEAR_ROAD = "Near Road (15-50m)"
NON_STREET = "Non-Street (>50m)"
NO_ROAD = "No road nearby"
UNSET = "Unset"

STREET_MAX_M = 15
NEAR_ROAD_MAX_M = 50

CATEGORY_ORDER = [STREET, NEAR_ROAD, NON_STREET, NO_ROAD]


def categorize_distance(distance: Optional[float], sentinel: float = NO_ROAD_SENTINEL) -> str:
    """Bucket one distance_to_road_m value."""
    if distance is None:
        return UNSET
    if distance <= STREET_MAX_M:
        return STREET
    if distance <= NEAR_ROAD_MAX_M:
        return NEAR_ROAD
    if distance < sentinel:
        return NON_STREET
    return NO_ROAD


def histogram_case_sql(column: str = "distance_to_road_m") -> str:
    """
    SQL CASE expression equivalent to categorize_distance() for set values.

    Thresholds and labels are bound parameters: :street_max, :near_max,
    :sentinel, :street, :near_road, :non_street, :no_road.
    """
    return (
        "CASE "
        f"WHEN {column} <= :street_max THEN :street "
        f"WHEN {column} <= :near_max THEN :near_road "
        f"WHEN {column} < :sentinel THEN :non_street "
        "ELSE :no_road END"
    )


def histogram_params(sentinel: float = NO_ROAD_SENTINEL) -> Dict[str, object]:
    return {
        "street_max": STREET_MAX_M,
        "near_max": NEAR_ROAD_MAX_M,
        "sentinel": sentinel,
        "street": STREET,
        "near_road": NEAR_ROAD,
        "non_street": NON_STREET,
        "no_road": NO_ROAD,
    }


def summary_rows(histogram: Dict[str, int]) -> List[Tuple[str, int, float]]:
    """
    (category, count, percent) sorted by count descending, ties in category
    order. Empty categories are left out.
    """
    total = sum(histogram.values())
    order = CATEGORY_ORDER + [UNSET]
    rows = []
    for category, count in histogram.items():
        if count <= 0:
            continue
        pct = round(count * 100.0 / total, 1) if total else 0.0
        rows.append((category, count, pct))
    rows.sort(key=lambda r: (-r[1], order.index(r[0]) if r[0] in order else len(order)))
    return rows


def format_summary(histogram: Dict[str, int]) -> str:
    """Render the histogram as the fixed-width table printed after a run."""
    lines = [
        "   Category             | Count      | %",
        "   " + "-" * 45,
    ]
    for category, count, pct in summary_rows(histogram):
        lines.append(f"   {category:<20} | {count:>10,} | {pct}%")
    if len(lines) == 2:
        lines.append("   (no trees)")
    return "\n".join(lines)
