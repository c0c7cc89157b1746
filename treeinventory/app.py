import argparse
import os
from typing import Dict

from .env import load_env

from . import __version__
from .backfill import BackfillAborted
from .config import (
    BATCH_SIZE, DEFAULT_BBOX, FETCH_ROUNDS, HIGHWAY_CLASSES, LINK_HIGHWAY_CLASSES, MAX_EMPTY_BATCHES,
    NO_ROAD_SENTINEL, ROUND_DELAY, SEARCH_RADIUS_M, connect_args_from_env, database_url_from_env,
    overpass_endpoints_from_env,
)
from .database import create_pool
from .importer import backfill_distances, print_summary, run_import
from .logger import get_logger
from .overpass import OverpassError
from .retry import RetryError
from .storage import PostgisDistanceStore
from .summary import format_summary

logger = get_logger()


def parse_bbox(value: str) -> Dict[str, float]:
    """Parse "south,west,north,east"."""
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("bbox must be south,west,north,east")
    try:
        south, west, north, east = (float(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"bbox values must be numbers: {value}")
    if south >= north or west >= east:
        raise argparse.ArgumentTypeError("bbox must have south < north and west < east")
    return {"south": south, "west": west, "north": north, "east": east}


def _job_options(args: argparse.Namespace) -> dict:
    return {
        "batch_size": args.batch_size,
        "radius_m": args.radius,
        "sentinel": args.sentinel,
        "max_empty_batches": args.max_empty,
    }


def _engine():
    return create_pool(database_url_from_env(), connect_args=connect_args_from_env())


def cmd_import_roads(args: argparse.Namespace) -> None:
    highway_classes = list(HIGHWAY_CLASSES)
    if args.include_links:
        highway_classes += LINK_HIGHWAY_CLASSES

    print("\n" + "=" * 60)
    print("  FRESH START - Street Tree Classification")
    print("  (Will delete existing roads data and start over)")
    print("=" * 60 + "\n")

    engine = _engine()
    try:
        run_import(
            engine,
            bbox=args.bbox,
            highway_classes=highway_classes,
            endpoints=overpass_endpoints_from_env(),
            fetch_options={"max_rounds": args.rounds, "round_delay": args.round_delay},
            job_options=_job_options(args),
        )
    finally:
        engine.dispose()
    print("\n✅ ALL DONE! Street tree filter is now ready to use.\n")


def cmd_backfill(args: argparse.Namespace) -> None:
    engine = _engine()
    try:
        print("📏 Calculating tree-to-road distances for unset trees...")
        result = backfill_distances(engine, job_options=_job_options(args))
        print("📈 Final Results:\n")
        print_summary(result)
    finally:
        engine.dispose()


def cmd_status(args: argparse.Namespace) -> None:
    engine = _engine()
    try:
        store = PostgisDistanceStore(engine)
        total = store.count_total()
        unset = store.count_unset()
        histogram = store.histogram(args.sentinel)
    finally:
        engine.dispose()

    print(f"Total trees: {total:,}")
    print(f"Unset:       {unset:,}")
    print()
    print(format_summary(histogram))


def _add_job_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--batch-size", type=int, default=BATCH_SIZE, help=f"Trees per batch (default: {BATCH_SIZE})")
    parser.add_argument("--radius", type=float, default=SEARCH_RADIUS_M, help=f"Search radius in meters (default: {SEARCH_RADIUS_M:g})")
    parser.add_argument("--sentinel", type=float, default=NO_ROAD_SENTINEL, help=f"Value stored when no road is in range (default: {NO_ROAD_SENTINEL})")
    parser.add_argument("--max-empty", type=int, default=MAX_EMPTY_BATCHES, help=f"Consecutive empty batches before stopping (default: {MAX_EMPTY_BATCHES})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="treeinventory", description="Tree inventory road import and distance backfill")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level")

    subparsers = parser.add_subparsers(dest="command")

    imp = subparsers.add_parser("import-roads", help="Fetch roads from OSM, rebuild the roads table and recompute every distance")
    imp.add_argument("--bbox", type=parse_bbox, default=dict(DEFAULT_BBOX), help="south,west,north,east (default: Pune)")
    imp.add_argument("--include-links", action="store_true", help="Also fetch primary/secondary/tertiary _link roads")
    imp.add_argument("--rounds", type=int, default=FETCH_ROUNDS, help=f"Passes over the Overpass mirrors (default: {FETCH_ROUNDS})")
    imp.add_argument("--round-delay", type=float, default=ROUND_DELAY, help=f"Seconds to wait between passes (default: {ROUND_DELAY:g})")
    _add_job_arguments(imp)
    imp.set_defaults(func=cmd_import_roads)

    bf = subparsers.add_parser("backfill", help="Fill distances for trees that have none yet (resume)")
    _add_job_arguments(bf)
    bf.set_defaults(func=cmd_backfill)

    st = subparsers.add_parser("status", help="Show distance coverage and categories without writing")
    st.add_argument("--sentinel", type=float, default=NO_ROAD_SENTINEL, help=f"No-road sentinel (default: {NO_ROAD_SENTINEL})")
    st.set_defaults(func=cmd_status)

    return parser


def main(argv=None):
    # Load .env if present (DB_HOST, DB_USER, OVERPASS_URLS, etc.)
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)
    logger.set_level(args.log_level)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        args.func(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by operator", command=args.command)
        raise SystemExit(130)
    except (OverpassError, BackfillAborted, RetryError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}", error_type=type(e).__name__)
        print(f"\n❌ Error: {e}")
        raise SystemExit(1)
    except Exception as e:
        logger.critical(f"{args.command} failed unexpectedly: {e}", error_type=type(e).__name__)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
