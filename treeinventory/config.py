"""
Defaults and environment-derived settings.

Database credentials follow the dashboard's conventions (DB_USER, DB_HOST,
DB_DATABASE, DB_PASSWORD, DB_PORT) so the same .env serves both.
"""

import os
from typing import Dict, List, Optional

from sqlalchemy.engine import URL, make_url

# Pune, approximate
DEFAULT_BBOX = {"south": 18.4, "west": 73.7, "north": 18.7, "east": 74.0}

HIGHWAY_CLASSES = [
    "primary",
    "secondary",
    "tertiary",
    "residential",
    "unclassified",
    "trunk",
]
LINK_HIGHWAY_CLASSES = ["primary_link", "secondary_link", "tertiary_link"]

OVERPASS_ENDPOINTS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://maps.mail.ru/osm/tools/overpass/api/interpreter",
]
OVERPASS_TIMEOUT = 300  # seconds, per request and inside the query
FETCH_ROUNDS = 3
ROUND_DELAY = 30.0

ROAD_INSERT_BATCH_SIZE = 100

SEARCH_RADIUS_M = 100.0
BATCH_SIZE = 5000
NO_ROAD_SENTINEL = 999
MAX_EMPTY_BATCHES = 3
MAX_FAILED_BATCHES = 5
BATCH_DELAY = 0.05

POOL_SIZE = 3
POOL_TIMEOUT = 120
POOL_RECYCLE = 600


def database_url_from_env() -> URL:
    """
    Build the SQLAlchemy URL for the tree database.

    DATABASE_URL wins when set; otherwise the URL is assembled from the
    individual DB_* variables.

    Raises:
        ValueError: If neither DATABASE_URL nor DB_HOST/DB_DATABASE are set
    """
    raw = os.getenv("DATABASE_URL")
    if raw:
        return make_url(raw)

    host = os.getenv("DB_HOST")
    database = os.getenv("DB_DATABASE")
    if not host or not database:
        raise ValueError("Database not configured. Set DATABASE_URL or DB_HOST and DB_DATABASE.")

    port = os.getenv("DB_PORT")
    return URL.create(
        "postgresql+psycopg2",
        username=os.getenv("DB_USER"),
        password=os.getenv("DB_PASSWORD"),
        host=host,
        port=int(port) if port else None,
        database=database,
    )


def connect_args_from_env() -> Dict[str, str]:
    """libpq SSL options. Managed Postgres hosts need at least sslmode=require."""
    args = {"sslmode": os.getenv("DB_SSLMODE", "require")}
    root_cert = os.getenv("DB_SSLROOTCERT")
    if root_cert:
        args["sslrootcert"] = root_cert
    return args


def overpass_endpoints_from_env(default: Optional[List[str]] = None) -> List[str]:
    """Mirror list from OVERPASS_URLS (comma separated), deduplicated in order."""
    raw = os.getenv("OVERPASS_URLS", "")
    endpoints: List[str] = []
    for url in raw.split(","):
        url = url.strip()
        if url and url not in endpoints:
            endpoints.append(url)
    if not endpoints:
        endpoints = list(default if default is not None else OVERPASS_ENDPOINTS)
    return endpoints
