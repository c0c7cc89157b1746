"""Road geometries from the OpenStreetMap Overpass API."""

import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests

from .config import (
    DEFAULT_BBOX, FETCH_ROUNDS, HIGHWAY_CLASSES, OVERPASS_ENDPOINTS, OVERPASS_TIMEOUT, ROUND_DELAY,
)
from .logger import get_logger
from .retry import EndpointRotation, RetryError, should_retry_http_status

logger = get_logger()


class OverpassError(RetryError):
    """Raised when no mirror returned usable data."""
    pass


def build_road_query(
    bbox: Dict[str, float] = DEFAULT_BBOX,
    highway_classes: List[str] = HIGHWAY_CLASSES,
    timeout: int = OVERPASS_TIMEOUT,
) -> str:
    """Overpass QL for highway ways in bbox, followed by their nodes."""
    pattern = "|".join(highway_classes)
    area = f"{bbox['south']},{bbox['west']},{bbox['north']},{bbox['east']}"
    return (
        f"[out:json][timeout:{timeout}];\n"
        "(\n"
        f'  way["highway"~"{pattern}"]({area});\n'
        ");\n"
        "out body;\n"
        ">;\n"
        "out skel qt;\n"
    )


def _host(url: str) -> str:
    return urlparse(url).netloc or url


def _post_once(session, endpoint: str, query: str, timeout: int) -> Dict[str, Any]:
    """
    One request against one mirror.

    Raises:
        requests.exceptions.RequestException: On transport errors and non-2xx
        ValueError: If the body is not JSON or has no elements list
    """
    resp = session.post(endpoint, data={"data": query}, timeout=timeout)
    resp.raise_for_status()
    try:
        payload = resp.json()
    except requests.exceptions.JSONDecodeError as e:
        # also a RequestException; report it as a bad body, not a transport error
        raise ValueError(f"Response is not JSON: {e}") from e
    if not isinstance(payload, dict) or not isinstance(payload.get("elements"), list):
        raise ValueError("Response has no 'elements' list")
    return payload


def fetch_osm_data(
    query: str,
    endpoints: Optional[List[str]] = None,
    max_rounds: int = FETCH_ROUNDS,
    round_delay: float = ROUND_DELAY,
    timeout: int = OVERPASS_TIMEOUT,
    session=None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    POST the query to each mirror in turn, in up to max_rounds rounds.

    Between rounds the fetch waits round_delay seconds; there is no wait after
    the final round.

    Args:
        query: Overpass QL
        endpoints: Mirror URLs (default: OVERPASS_ENDPOINTS)
        max_rounds: Full passes over the mirrors
        round_delay: Seconds to wait after a round in which every mirror failed
        timeout: Per-request timeout in seconds
        session: requests.Session (one is created when omitted)
        sleep: Sleep function, replaceable in tests

    Returns:
        Decoded Overpass JSON

    Raises:
        OverpassError: When every mirror failed in every round
    """
    rotation = EndpointRotation(endpoints or OVERPASS_ENDPOINTS, max_rounds=max_rounds)
    own_session = session is None
    if own_session:
        session = requests.Session()

    last_error = None
    try:
        while not rotation.done:
            if rotation.state == EndpointRotation.WAITING:
                logger.info(f"All mirrors failed, waiting {round_delay:g}s before round {rotation.round + 1}")
                sleep(round_delay)
                rotation.next_round()
                continue

            endpoint = rotation.current
            host = _host(endpoint)
            logger.info(f"Attempt {rotation.round}/{rotation.max_rounds} using: {host}")
            logger.record_endpoint_attempt(host)

            try:
                payload = _post_once(session, endpoint, query, timeout)
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                last_error = e
                logger.record_endpoint_failure(host, f"HTTPError_{status}")
                log = logger.warning if status is None or should_retry_http_status(status) else logger.error
                log("Mirror returned an error status, trying next", host=host, status=status)
                rotation.record_failure()
                continue
            except requests.exceptions.RequestException as e:
                last_error = e
                logger.record_endpoint_failure(host, type(e).__name__)
                logger.warning("Mirror request failed, trying next", host=host, error=str(e))
                rotation.record_failure()
                continue
            except ValueError as e:
                last_error = e
                logger.record_endpoint_failure(host, "InvalidJSON")
                logger.warning("Mirror returned unusable data, trying next", host=host, error=str(e))
                rotation.record_failure()
                continue

            rotation.record_success()
            logger.record_endpoint_success(host)
            logger.info(f"Received {len(payload['elements'])} elements", host=host)
            return payload
    finally:
        if own_session:
            session.close()

    raise OverpassError(
        f"All Overpass mirrors failed after {max_rounds} rounds: {last_error}"
    )


def parse_roads(osm_data: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Turn Overpass elements into road records.

    Every way with at least two resolvable nodes becomes
    {osm_id, name, highway, wkt}; node references missing from the payload
    are dropped.
    """
    elements = osm_data.get("elements", [])

    nodes = {}
    for el in elements:
        if el.get("type") == "node":
            nodes[el["id"]] = (el["lon"], el["lat"])

    roads = []
    for el in elements:
        if el.get("type") != "way" or len(el.get("nodes") or []) < 2:
            continue
        coords = [nodes[node_id] for node_id in el["nodes"] if node_id in nodes]
        if len(coords) < 2:
            continue
        tags = el.get("tags") or {}
        roads.append({
            "osm_id": el["id"],
            "name": tags.get("name"),
            "highway": tags.get("highway", "unknown"),
            "wkt": "LINESTRING(" + ", ".join(f"{lon} {lat}" for lon, lat in coords) + ")",
        })
    return roads
