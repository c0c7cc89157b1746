"""
Road import pipeline.

Fresh start: fetch roads, rebuild the roads table, clear every tree distance,
then backfill distances and print the street-tree summary.
"""

from typing import Callable, Dict, List, Optional

from sqlalchemy.engine import Engine

from .backfill import BackfillAborted, BackfillResult, DistanceBackfillJob
from .database import (
    create_distance_index, create_road_indexes, insert_roads, reset_distance_column, reset_roads_table,
)
from .logger import get_logger
from .overpass import build_road_query, fetch_osm_data, parse_roads
from .storage import PostgisDistanceStore
from .summary import format_summary

logger = get_logger()


def _print_progress(label: str) -> Callable:
    def progress(done, total, pct=None):
        suffix = f" ({pct}%)" if pct is not None else ""
        print(f"   Progress: {done:,}/{total:,} {label}{suffix}", flush=True)
    return progress


def backfill_distances(engine: Engine, job_options: Optional[Dict] = None, echo: Callable = print) -> BackfillResult:
    """
    Backfill unset distances. Safe to re-run: only trees whose distance is
    still NULL are touched.
    """
    store = PostgisDistanceStore(engine)
    job = DistanceBackfillJob(store, on_progress=_print_progress("trees"), **(job_options or {}))

    try:
        result = job.run()
    except BackfillAborted as e:
        if e.result is not None:
            echo_partial_state(e.result, echo)
        raise

    if result.stop_reason == BackfillResult.STALLED:
        echo(f"   ⚠️  Stopped with {result.remaining_unset:,} trees still unset\n")
    else:
        echo("   ✅ Distances calculated\n")
    return result


def echo_partial_state(result: BackfillResult, echo: Callable = print) -> None:
    """What an aborted run committed before it stopped."""
    echo(f"   ❌ Aborted after {result.processed:,}/{result.total:,} trees ({result.percent}%)")
    if result.remaining_unset is None:
        echo("   Final state unavailable: the database did not answer after the abort\n")
        return
    echo(f"   {result.remaining_unset:,} trees still unset\n")
    echo(format_summary(result.histogram))


def print_summary(result: BackfillResult, echo: Callable = print) -> None:
    echo(format_summary(result.histogram))
    logger.log_metrics_summary()


def run_import(
    engine: Engine,
    bbox: Dict[str, float],
    highway_classes: List[str],
    endpoints: List[str],
    fetch_options: Optional[Dict] = None,
    job_options: Optional[Dict] = None,
    echo: Callable = print,
) -> BackfillResult:
    """
    Run every step of the fresh import against the given pool.

    Errors in setup steps propagate; the caller logs them and disposes the
    engine.
    """
    echo("📡 STEP 1: Fetching road data from OpenStreetMap...")
    query = build_road_query(bbox, highway_classes)
    osm_data = fetch_osm_data(query, endpoints=endpoints, **(fetch_options or {}))
    echo(f"   ✅ Received {len(osm_data['elements']):,} elements\n")

    echo("🔄 STEP 2: Parsing road geometries...")
    roads = parse_roads(osm_data)
    echo(f"   ✅ Parsed {len(roads):,} road segments\n")
    logger.info("Parsed roads", roads=len(roads), elements=len(osm_data["elements"]))

    echo("🗑️  STEP 3: Cleaning up old data...")
    reset_roads_table(engine)
    existed = reset_distance_column(engine)
    echo(f"   ✅ Database cleaned ({'cleared' if existed else 'added'} distance_to_road_m)\n")

    echo(f"📥 STEP 4: Inserting {len(roads):,} roads...")
    inserted = insert_roads(engine, roads, progress=_print_progress("roads"))
    echo(f"   ✅ Inserted {inserted:,} roads\n")
    if inserted < len(roads):
        logger.warning("Some road batches were skipped", inserted=inserted, parsed=len(roads))

    echo("📊 STEP 5: Creating spatial indexes...")
    create_road_indexes(engine)
    echo("   ✅ Indexes created\n")

    echo("📏 STEP 6: Calculating tree-to-road distances...")
    result = backfill_distances(engine, job_options=job_options, echo=echo)

    echo("📊 STEP 7: Creating index on distance column...")
    create_distance_index(engine)
    echo("   ✅ Index created\n")

    echo("📈 STEP 8: Final Results:\n")
    print_summary(result, echo=echo)
    return result
