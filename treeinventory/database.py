"""
Database schema and connection management.

Uses PostgreSQL/PostGIS through SQLAlchemy. The engine returned by
create_pool() is the bounded connection pool every step of the import shares;
it is created and disposed by the caller.
"""

from typing import Any, Dict, List, Optional, Callable

from sqlalchemy import (
    BigInteger, Column, Integer, Numeric, String, create_engine, func, inspect, insert, text,
)
from sqlalchemy.engine import Engine, URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import UserDefinedType

from .config import POOL_RECYCLE, POOL_SIZE, POOL_TIMEOUT, ROAD_INSERT_BATCH_SIZE
from .logger import get_logger

logger = get_logger()

Base = declarative_base()

SCHEMA = "public"


class Geometry(UserDefinedType):
    """PostGIS geometry column exchanged as WKT."""

    cache_ok = True

    def __init__(self, geometry_type: str = "GEOMETRY", srid: int = 4326):
        self.geometry_type = geometry_type
        self.srid = srid

    def get_col_spec(self, **kw):
        return f"GEOMETRY({self.geometry_type}, {self.srid})"

    def bind_expression(self, bindvalue):
        return func.ST_GeomFromText(bindvalue, self.srid, type_=self)

    def column_expression(self, col):
        return func.ST_AsText(col, type_=self)


class Road(Base):
    """Road segment from OpenStreetMap."""

    __tablename__ = "roads"
    __table_args__ = {"schema": SCHEMA}

    id = Column(Integer, primary_key=True)
    osm_id = Column(BigInteger)
    name = Column(String(255))
    highway = Column(String(50))
    geom = Column(Geometry("LineString", 4326))


class Tree(Base):
    """
    Inventory tree. The table is owned by the dashboard; only the columns the
    import reads or writes are mapped.
    """

    __tablename__ = "trees"
    __table_args__ = {"schema": SCHEMA}

    id = Column(Integer, primary_key=True)
    geom = Column(Geometry("Point", 4326))
    distance_to_road_m = Column(Numeric(10, 2), nullable=True)


def create_pool(
    url: URL,
    pool_size: int = POOL_SIZE,
    pool_timeout: int = POOL_TIMEOUT,
    pool_recycle: int = POOL_RECYCLE,
    connect_args: Optional[Dict[str, Any]] = None,
) -> Engine:
    """
    Create the bounded connection pool.

    Args:
        url: Database URL
        pool_size: Maximum simultaneous connections (no overflow)
        pool_timeout: Seconds to wait for a free connection before giving up
        pool_recycle: Seconds after which idle connections are replaced
        connect_args: Extra driver arguments (sslmode, sslrootcert)

    Returns:
        SQLAlchemy engine
    """
    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        connect_args=connect_args or {},
    )


def get_session(engine: Engine):
    """
    Get database session.

    Args:
        engine: Engine from create_pool()

    Returns:
        SQLAlchemy session
    """
    Session = sessionmaker(bind=engine)
    return Session()


def reset_roads_table(engine: Engine) -> None:
    """Drop public.roads (and anything depending on it) and create it empty."""
    with engine.begin() as conn:
        conn.execute(text(f"DROP TABLE IF EXISTS {SCHEMA}.roads CASCADE"))
        Road.__table__.create(conn)


def reset_distance_column(engine: Engine) -> bool:
    """
    Clear trees.distance_to_road_m, adding the column when it does not exist.

    Returns:
        True if the column already existed
    """
    with engine.begin() as conn:
        columns = {c["name"] for c in inspect(conn).get_columns("trees", schema=SCHEMA)}
        if "distance_to_road_m" in columns:
            conn.execute(text(f"UPDATE {SCHEMA}.trees SET distance_to_road_m = NULL"))
            return True
        conn.execute(text(f"ALTER TABLE {SCHEMA}.trees ADD COLUMN distance_to_road_m NUMERIC(10, 2)"))
        return False


def insert_roads(
    engine: Engine,
    roads: List[Dict[str, Any]],
    batch_size: int = ROAD_INSERT_BATCH_SIZE,
    progress: Optional[Callable[[int, int], None]] = None,
) -> int:
    """
    Insert parsed roads in transactional batches.

    A batch that fails is rolled back and skipped; the remaining batches still
    run.

    Args:
        engine: Engine from create_pool()
        roads: Dicts with osm_id, name, highway and wkt
        batch_size: Rows per transaction
        progress: Optional callback(inserted, total) after each committed batch

    Returns:
        Number of roads inserted
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    inserted = 0
    stmt = insert(Road.__table__)

    for start in range(0, len(roads), batch_size):
        batch = [
            {
                "osm_id": road["osm_id"],
                "name": road.get("name"),
                "highway": road.get("highway", "unknown"),
                "geom": road["wkt"],
            }
            for road in roads[start:start + batch_size]
        ]
        try:
            with engine.begin() as conn:
                conn.execute(stmt, batch)
        except SQLAlchemyError as e:
            logger.warning(
                "Road batch rolled back, skipping",
                first_osm_id=batch[0]["osm_id"],
                size=len(batch),
                error=str(e),
            )
            continue

        inserted += len(batch)
        if progress:
            progress(inserted, len(roads))

    return inserted


def create_road_indexes(engine: Engine) -> None:
    """
    GIST indexes on roads. The geography expression index is the one
    ST_DWithin(geography, geography, radius) can use.
    """
    with engine.begin() as conn:
        conn.execute(text(f"CREATE INDEX idx_roads_geom ON {SCHEMA}.roads USING GIST (geom)"))
        conn.execute(text(
            f"CREATE INDEX idx_roads_geog ON {SCHEMA}.roads USING GIST ((geom::geography))"
        ))


def create_distance_index(engine: Engine) -> None:
    """(Re)build the btree index the dashboard's street-tree filter uses."""
    with engine.begin() as conn:
        conn.execute(text(f"DROP INDEX IF EXISTS {SCHEMA}.idx_trees_distance"))
        conn.execute(text(
            f"CREATE INDEX idx_trees_distance ON {SCHEMA}.trees (distance_to_road_m)"
        ))
