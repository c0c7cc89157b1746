"""
Pytest configuration and shared fixtures.
"""

import pytest
from typing import Dict, List, Optional

from sqlalchemy.exc import OperationalError

from treeinventory.logger import StructuredLogger
from treeinventory.summary import categorize_distance


class FakeDistanceStore:
    """
    In-memory stand-in for PostgisDistanceStore.

    Each tree carries the true distances (meters) to every road. fill_batch()
    behaves like the SQL: pick up to batch_size unset trees in id order, store
    the nearest road within the radius or the sentinel, all or nothing.
    """

    def __init__(self, road_distances: Dict[int, List[float]], preset: Optional[Dict[int, float]] = None):
        self.road_distances = road_distances
        self.values: Dict[int, Optional[float]] = {tree_id: None for tree_id in road_distances}
        self.values.update(preset or {})
        self.write_sizes: List[int] = []
        self.calls = 0
        self.failures: Dict[int, Exception] = {}
        self.stuck_ids = set()

    def fail_on(self, call_number: int, exc: Exception):
        """Make the nth fill_batch() call (1-based) raise exc."""
        self.failures[call_number] = exc

    def count_total(self) -> int:
        return len(self.values)

    def count_unset(self) -> int:
        return sum(1 for v in self.values.values() if v is None)

    def fill_batch(self, batch_size: int, radius_m: float, sentinel: float) -> int:
        self.calls += 1
        if self.calls in self.failures:
            raise self.failures[self.calls]

        batch = [
            tree_id for tree_id in sorted(self.values)
            if self.values[tree_id] is None and tree_id not in self.stuck_ids
        ][:batch_size]

        for tree_id in batch:
            within = [d for d in self.road_distances[tree_id] if d <= radius_m]
            self.values[tree_id] = min(within) if within else sentinel

        self.write_sizes.append(len(batch))
        return len(batch)

    def histogram(self, sentinel: float) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for value in self.values.values():
            category = categorize_distance(value, sentinel)
            counts[category] = counts.get(category, 0) + 1
        return counts


@pytest.fixture
def store_class():
    return FakeDistanceStore


@pytest.fixture
def db_error():
    """Factory for the OperationalError psycopg2 failures surface as."""
    def factory(message: str = "server closed the connection unexpectedly") -> OperationalError:
        return OperationalError("UPDATE public.trees ...", {}, Exception(message))
    return factory


@pytest.fixture
def make_store():
    """Factory for fake stores with n trees spread over the distance categories."""
    def factory(n: int, **kwargs) -> FakeDistanceStore:
        pattern = [[5.0, 300.0], [30.0], [75.5, 90.0], [], [250.0]]
        distances = {i + 1: list(pattern[i % len(pattern)]) for i in range(n)}
        return FakeDistanceStore(distances, **kwargs)
    return factory


@pytest.fixture
def quiet_logger(tmp_path) -> StructuredLogger:
    """Logger writing only to a temporary directory."""
    return StructuredLogger(
        name="test",
        level="DEBUG",
        log_dir=tmp_path,
        enable_console=False,
    )


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays = []

    def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def overpass_payload() -> dict:
    """Small Overpass response: two roads, one way with a missing node."""
    return {
        "version": 0.6,
        "elements": [
            {"type": "way", "id": 101, "nodes": [1, 2, 3], "tags": {"highway": "primary", "name": "FC Road"}},
            {"type": "way", "id": 102, "nodes": [3, 4], "tags": {"highway": "residential"}},
            {"type": "way", "id": 103, "nodes": [4, 99], "tags": {"highway": "tertiary"}},
            {"type": "way", "id": 104, "nodes": [1]},
            {"type": "node", "id": 1, "lat": 18.52, "lon": 73.84},
            {"type": "node", "id": 2, "lat": 18.53, "lon": 73.85},
            {"type": "node", "id": 3, "lat": 18.54, "lon": 73.86},
            {"type": "node", "id": 4, "lat": 18.55, "lon": 73.87},
        ],
    }
