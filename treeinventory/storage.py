"""
Distance store: the datastore side of the backfill job.

All spatial work happens in PostGIS. The store only issues parameterized SQL
through the engine it is given and never keeps a connection between calls.
"""

from typing import Dict

from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from .database import SCHEMA, Tree
from .logger import get_logger
from .retry import exponential_backoff
from .summary import UNSET, histogram_case_sql, histogram_params

logger = get_logger()


def _log_retry(attempt, exception, delay):
    logger.warning("Count query failed, retrying", attempt=attempt, delay=delay, error=str(exception))


# The batch CTE picks the rows; the UPDATE only touches those rows, so one
# statement never writes more than :batch_size records.
FILL_BATCH_SQL = f"""
WITH batch AS (
    SELECT id, geom FROM {SCHEMA}.trees
    WHERE distance_to_road_m IS NULL
    ORDER BY id
    LIMIT :batch_size
)
UPDATE {SCHEMA}.trees t
SET distance_to_road_m = (
    SELECT COALESCE(
        MIN(ST_Distance(b.geom::geography, r.geom::geography)),
        :sentinel
    )
    FROM {SCHEMA}.roads r
    WHERE ST_DWithin(b.geom::geography, r.geom::geography, :radius_m)
)
FROM batch b
WHERE t.id = b.id
RETURNING t.id
"""


class PostgisDistanceStore:
    """Tree distances kept in public.trees, roads in public.roads."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @exponential_backoff(max_retries=3, base_delay=2.0, exceptions=(OperationalError,), on_retry=_log_retry)
    def count_total(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(Tree.__table__)).scalar_one()

    def count_unset(self) -> int:
        with self.engine.connect() as conn:
            stmt = select(func.count()).select_from(Tree.__table__).where(
                Tree.__table__.c.distance_to_road_m.is_(None)
            )
            return conn.execute(stmt).scalar_one()

    def fill_batch(self, batch_size: int, radius_m: float, sentinel: float) -> int:
        """
        Compute distances for up to batch_size unset trees in one transaction.

        Args:
            batch_size: Maximum number of trees to update
            radius_m: Search radius in meters
            sentinel: Value stored when no road lies within radius_m

        Returns:
            Number of trees updated (0 when none are left)
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        with self.engine.begin() as conn:
            result = conn.execute(
                text(FILL_BATCH_SQL),
                {"batch_size": batch_size, "sentinel": sentinel, "radius_m": radius_m},
            )
            return len(result.all())

    def histogram(self, sentinel: float) -> Dict[str, int]:
        """Tree counts per distance category, with unset rows under UNSET."""
        sql = text(
            f"SELECT {histogram_case_sql()} AS category, COUNT(*) AS count "
            f"FROM {SCHEMA}.trees WHERE distance_to_road_m IS NOT NULL GROUP BY 1"
        )
        with self.engine.connect() as conn:
            rows = conn.execute(sql, histogram_params(sentinel)).all()

        counts = {category: int(count) for category, count in rows}
        unset = self.count_unset()
        if unset:
            counts[UNSET] = unset
        return counts
