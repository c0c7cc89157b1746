"""
Tree-to-road distance backfill.

Repeatedly fills a bounded batch of trees whose distance_to_road_m is still
NULL until every tree has a value or several batches in a row update nothing.
The "still NULL" predicate is the cursor: a failed or interrupted batch leaves
its rows NULL, so they are picked up again by the next selection and a re-run
never revisits finished rows.
"""

import math
import time
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError, TimeoutError as PoolTimeoutError

from .config import (
    BATCH_DELAY, BATCH_SIZE, MAX_EMPTY_BATCHES, MAX_FAILED_BATCHES, NO_ROAD_SENTINEL, SEARCH_RADIUS_M,
)
from .logger import StructuredLogger, get_logger
from .retry import is_transient_error


class BackfillAborted(Exception):
    """
    Raised when the job cannot keep going (pool exhausted, repeated failures).

    result holds what was committed before the abort.
    """

    def __init__(self, message: str, result: Optional["BackfillResult"] = None):
        super().__init__(message)
        self.result = result


class BackfillResult:
    """Outcome of one run of the job."""

    COMPLETED = "completed"   # processed reached the total
    EXHAUSTED = "exhausted"   # empty streak, nothing left unset
    STALLED = "stalled"       # empty streak, unset rows remain
    ABORTED = "aborted"       # BackfillAborted was raised

    def __init__(self, total: int):
        self.total = total
        self.processed = 0
        self.iterations = 0
        self.failed_batches = 0
        self.stop_reason: Optional[str] = None
        # None when it could not be read back (aborted run)
        self.remaining_unset: Optional[int] = 0
        self.histogram: Dict[str, int] = {}

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return round(self.processed * 100.0 / self.total, 1)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "iterations": self.iterations,
            "failed_batches": self.failed_batches,
            "stop_reason": self.stop_reason,
            "remaining_unset": self.remaining_unset,
            "histogram": dict(self.histogram),
        }


class DistanceBackfillJob:
    """
    Single-writer batch job over a distance store.

    The store must provide count_total(), count_unset(),
    fill_batch(batch_size, radius_m, sentinel) and histogram(sentinel). Each
    fill_batch() call is expected to be one transaction holding one pooled
    connection, released before it returns.
    """

    def __init__(
        self,
        store,
        radius_m: float = SEARCH_RADIUS_M,
        batch_size: int = BATCH_SIZE,
        sentinel: float = NO_ROAD_SENTINEL,
        max_empty_batches: int = MAX_EMPTY_BATCHES,
        max_failed_batches: int = MAX_FAILED_BATCHES,
        batch_delay: float = BATCH_DELAY,
        on_progress: Optional[Callable[[int, int, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Args:
            store: Distance store (see class docstring)
            radius_m: Search radius in meters
            batch_size: Maximum trees per batch
            sentinel: Value stored when no road is within radius_m
            max_empty_batches: Consecutive empty batches before stopping
            max_failed_batches: Consecutive failed batches before aborting
            batch_delay: Seconds to yield between batches
            on_progress: Optional callback(processed, total, percent)
            sleep: Sleep function, replaceable in tests
            logger: Logger, defaults to the global one

        Raises:
            ValueError: On non-positive sizes, a negative radius, or a radius
                that reaches the sentinel
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if radius_m < 0:
            raise ValueError("radius_m must not be negative")
        if radius_m >= sentinel:
            raise ValueError(
                f"radius_m ({radius_m:g}) must be below the sentinel ({sentinel:g}); "
                "real distances would be indistinguishable from 'no road nearby'"
            )
        if max_empty_batches < 1:
            raise ValueError("max_empty_batches must be at least 1")
        if max_failed_batches < 1:
            raise ValueError("max_failed_batches must be at least 1")

        self.store = store
        self.radius_m = radius_m
        self.batch_size = batch_size
        self.sentinel = sentinel
        self.max_empty_batches = max_empty_batches
        self.max_failed_batches = max_failed_batches
        self.batch_delay = batch_delay
        self.on_progress = on_progress
        self.sleep = sleep
        self.logger = logger or get_logger()

    def max_iterations(self, total: int) -> int:
        """Upper bound on loop iterations when no batch fails."""
        return math.ceil(total / self.batch_size) + self.max_empty_batches

    def _aborted(self, result: BackfillResult, message: str) -> BackfillAborted:
        """
        Close out an aborted run. The final counts are read back when the
        database still answers; otherwise remaining_unset stays None and the
        histogram empty.
        """
        result.stop_reason = BackfillResult.ABORTED
        result.remaining_unset = None
        try:
            remaining = self.store.count_unset()
            histogram = self.store.histogram(self.sentinel)
        except SQLAlchemyError as e:
            self.logger.warning("Could not read final state after abort", error=str(e))
        else:
            result.remaining_unset = remaining
            result.histogram = histogram

        self.logger.error("Distance backfill aborted", **{k: v for k, v in result.to_dict().items() if k != "histogram"})
        return BackfillAborted(message, result=result)

    def run(self) -> BackfillResult:
        """
        Run until every tree is processed or the empty streak is reached.

        Returns:
            BackfillResult with counts, stop reason and final histogram

        Raises:
            BackfillAborted: If no connection can be acquired or too many
                batches fail in a row
        """
        total = self.store.count_total()
        result = BackfillResult(total)
        self.logger.info(
            "Starting distance backfill",
            total=total,
            batch_size=self.batch_size,
            radius_m=self.radius_m,
            sentinel=self.sentinel,
        )

        consecutive_empty = 0
        consecutive_failed = 0

        while result.processed < total and consecutive_empty < self.max_empty_batches:
            result.iterations += 1
            self.logger.record_batch_attempt()

            try:
                updated = self.store.fill_batch(self.batch_size, self.radius_m, self.sentinel)
            except PoolTimeoutError as e:
                self.logger.record_batch_failure(type(e).__name__)
                self.logger.error("No database connection available, aborting", error=str(e))
                raise self._aborted(result, f"Connection pool exhausted: {e}") from e
            except SQLAlchemyError as e:
                result.failed_batches += 1
                consecutive_failed += 1
                self.logger.record_batch_failure(type(e).__name__)
                self.logger.warning(
                    "Batch rolled back, rows stay eligible for the next batch",
                    iteration=result.iterations,
                    consecutive_failures=consecutive_failed,
                    transient=is_transient_error(e),
                    error=str(e),
                )
                if consecutive_failed >= self.max_failed_batches:
                    raise self._aborted(
                        result, f"{consecutive_failed} consecutive batches failed; last error: {e}"
                    ) from e
                self.sleep(self.batch_delay)
                continue

            consecutive_failed = 0
            self.logger.record_batch_success(updated)

            if updated == 0:
                consecutive_empty += 1
                self.logger.debug("Empty batch", streak=consecutive_empty)
            else:
                consecutive_empty = 0
                result.processed += updated
                if self.on_progress:
                    self.on_progress(result.processed, total, result.percent)
                self.logger.debug("Batch committed", updated=updated, processed=result.processed, total=total)

            self.sleep(self.batch_delay)

        result.remaining_unset = self.store.count_unset()
        if result.processed >= total:
            result.stop_reason = BackfillResult.COMPLETED
        elif result.remaining_unset == 0:
            result.stop_reason = BackfillResult.EXHAUSTED
        else:
            result.stop_reason = BackfillResult.STALLED
            self.logger.warning(
                "Backfill stopped making progress with trees still unset",
                remaining_unset=result.remaining_unset,
                empty_batches=consecutive_empty,
            )

        result.histogram = self.store.histogram(self.sentinel)
        self.logger.info("Distance backfill finished", **{k: v for k, v in result.to_dict().items() if k != "histogram"})
        return result
