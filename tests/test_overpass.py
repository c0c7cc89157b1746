"""
Tests for the Overpass fetch and road parsing.
"""

from unittest.mock import MagicMock

import pytest
import requests

from treeinventory.overpass import OverpassError, build_road_query, fetch_osm_data, parse_roads
from treeinventory.retry import RetryError

MIRRORS = [
    "https://one.example/api/interpreter",
    "https://two.example/api/interpreter",
    "https://three.example/api/interpreter",
]


def ok_response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


def status_response(status):
    resp = MagicMock()
    error = requests.exceptions.HTTPError(f"{status} error")
    error.response = MagicMock(status_code=status)
    resp.raise_for_status.side_effect = error
    return resp


class TestBuildRoadQuery:

    def test_query_covers_bbox_and_classes(self):
        query = build_road_query(
            {"south": 18.4, "west": 73.7, "north": 18.7, "east": 74.0},
            ["primary", "trunk"],
        )

        assert query.startswith("[out:json][timeout:300];")
        assert 'way["highway"~"primary|trunk"](18.4,73.7,18.7,74.0);' in query
        assert "out body;" in query
        assert "out skel qt;" in query


class TestFetchOsmData:

    def test_first_mirror_success(self, overpass_payload, no_sleep):
        session = MagicMock()
        session.post.return_value = ok_response(overpass_payload)

        data = fetch_osm_data("q", endpoints=MIRRORS, session=session, sleep=no_sleep)

        assert data == overpass_payload
        assert session.post.call_count == 1
        url = session.post.call_args[0][0]
        assert url == MIRRORS[0]
        assert session.post.call_args[1]["data"] == {"data": "q"}
        assert no_sleep.delays == []

    def test_falls_through_to_next_mirror(self, overpass_payload, no_sleep):
        session = MagicMock()
        session.post.side_effect = [
            status_response(504),
            requests.exceptions.ConnectionError("refused"),
            ok_response(overpass_payload),
        ]

        data = fetch_osm_data("q", endpoints=MIRRORS, session=session, sleep=no_sleep)

        assert data == overpass_payload
        assert [c[0][0] for c in session.post.call_args_list] == MIRRORS
        assert no_sleep.delays == []

    def test_waits_between_rounds(self, overpass_payload, no_sleep):
        """A round where every mirror fails is followed by the round delay."""
        session = MagicMock()
        session.post.side_effect = [
            requests.exceptions.Timeout("slow"),
            requests.exceptions.Timeout("slow"),
            requests.exceptions.Timeout("slow"),
            ok_response(overpass_payload),
        ]

        data = fetch_osm_data(
            "q", endpoints=MIRRORS, max_rounds=3, round_delay=30, session=session, sleep=no_sleep
        )

        assert data == overpass_payload
        assert no_sleep.delays == [30]
        assert session.post.call_args_list[3][0][0] == MIRRORS[0]

    def test_all_rounds_exhausted(self, no_sleep):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(OverpassError, match="after 3 rounds"):
            fetch_osm_data("q", endpoints=MIRRORS, max_rounds=3, round_delay=30, session=session, sleep=no_sleep)

        assert session.post.call_count == 9
        # No wait after the final round
        assert no_sleep.delays == [30, 30]

    def test_overpass_error_is_retry_error(self, no_sleep):
        session = MagicMock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(RetryError):
            fetch_osm_data("q", endpoints=MIRRORS[:1], max_rounds=1, session=session, sleep=no_sleep)

    def test_invalid_body_counts_as_failure(self, overpass_payload, no_sleep):
        bad_json = MagicMock()
        bad_json.json.side_effect = ValueError("Expecting value")
        no_elements = ok_response({"remark": "runtime error: out of memory"})
        session = MagicMock()
        session.post.side_effect = [bad_json, no_elements, ok_response(overpass_payload)]

        data = fetch_osm_data("q", endpoints=MIRRORS, session=session, sleep=no_sleep)

        assert data == overpass_payload
        assert session.post.call_count == 3

    def test_html_error_page_recorded_as_invalid_json(self, overpass_payload, no_sleep, quiet_logger, monkeypatch):
        """A 200 with an HTML body is a bad body, not a transport error."""
        monkeypatch.setattr("treeinventory.overpass.logger", quiet_logger)
        html_page = requests.Response()
        html_page.status_code = 200
        html_page._content = b"<html><body>rate_limited</body></html>"
        session = MagicMock()
        session.post.side_effect = [html_page, ok_response(overpass_payload)]

        data = fetch_osm_data("q", endpoints=MIRRORS, session=session, sleep=no_sleep)

        assert data == overpass_payload
        assert quiet_logger.get_metrics()["errors_by_type"] == {"InvalidJSON": 1}


class TestParseRoads:

    def test_parses_ways_into_linestrings(self, overpass_payload):
        roads = parse_roads(overpass_payload)

        assert [r["osm_id"] for r in roads] == [101, 102]
        assert roads[0] == {
            "osm_id": 101,
            "name": "FC Road",
            "highway": "primary",
            "wkt": "LINESTRING(73.84 18.52, 73.85 18.53, 73.86 18.54)",
        }

    def test_missing_tags_default(self, overpass_payload):
        roads = parse_roads(overpass_payload)

        assert roads[1]["name"] is None
        assert roads[1]["highway"] == "residential"

    def test_way_without_tags_gets_unknown_highway(self):
        data = {
            "elements": [
                {"type": "node", "id": 1, "lat": 1.0, "lon": 2.0},
                {"type": "node", "id": 2, "lat": 1.5, "lon": 2.5},
                {"type": "way", "id": 7, "nodes": [1, 2]},
            ]
        }

        roads = parse_roads(data)

        assert roads == [{"osm_id": 7, "name": None, "highway": "unknown", "wkt": "LINESTRING(2.0 1.0, 2.5 1.5)"}]

    def test_drops_ways_with_fewer_than_two_resolved_nodes(self, overpass_payload):
        ids = {r["osm_id"] for r in parse_roads(overpass_payload)}

        assert 103 not in ids
        assert 104 not in ids

    def test_empty_payload(self):
        assert parse_roads({"elements": []}) == []
        assert parse_roads({}) == []
