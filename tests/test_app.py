"""Tests for the command-line interface."""

import argparse
from unittest.mock import MagicMock

import pytest

from treeinventory import __version__, app
from treeinventory.backfill import BackfillAborted, BackfillResult
from treeinventory.config import BATCH_SIZE, DEFAULT_BBOX, NO_ROAD_SENTINEL, SEARCH_RADIUS_M
from treeinventory.summary import STREET


class TestParseBbox:

    def test_valid(self):
        assert app.parse_bbox("18.4, 73.7, 18.7, 74.0") == {
            "south": 18.4, "west": 73.7, "north": 18.7, "east": 74.0,
        }

    @pytest.mark.parametrize("value", ["18.4,73.7,18.7", "a,b,c,d", "18.7,73.7,18.4,74.0", "18.4,74.0,18.7,73.7"])
    def test_invalid(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            app.parse_bbox(value)


class TestBuildParser:

    def test_backfill_defaults(self):
        args = app.build_parser().parse_args(["backfill"])

        assert args.batch_size == BATCH_SIZE
        assert args.radius == SEARCH_RADIUS_M
        assert args.sentinel == NO_ROAD_SENTINEL
        assert args.max_empty == 3
        assert args.func is app.cmd_backfill

    def test_import_options(self):
        args = app.build_parser().parse_args([
            "import-roads", "--bbox", "18.5,73.8,18.6,73.9", "--include-links", "--rounds", "5", "--batch-size", "1000",
        ])

        assert args.bbox == {"south": 18.5, "west": 73.8, "north": 18.6, "east": 73.9}
        assert args.include_links
        assert args.rounds == 5
        assert args.batch_size == 1000

    def test_import_default_bbox(self):
        args = app.build_parser().parse_args(["import-roads"])

        assert args.bbox == DEFAULT_BBOX
        assert args.bbox is not DEFAULT_BBOX


class TestMain:

    @pytest.fixture(autouse=True)
    def no_dotenv(self, monkeypatch):
        monkeypatch.setattr(app, "load_env", lambda: None)

    def test_version(self, capsys):
        app.main(["--version"])

        assert capsys.readouterr().out.strip() == __version__

    def test_backfill_disposes_engine(self, monkeypatch, capsys):
        engine = MagicMock()
        result = BackfillResult(total=3)
        result.processed = 3
        result.stop_reason = BackfillResult.COMPLETED
        result.histogram = {STREET: 3}
        captured = {}

        def fake_backfill(eng, job_options=None, echo=print):
            captured["engine"] = eng
            captured["options"] = job_options
            return result

        monkeypatch.setattr(app, "_engine", lambda: engine)
        monkeypatch.setattr(app, "backfill_distances", fake_backfill)

        app.main(["backfill", "--batch-size", "10", "--radius", "50"])

        assert captured["engine"] is engine
        assert captured["options"] == {"batch_size": 10, "radius_m": 50.0, "sentinel": 999.0, "max_empty_batches": 3}
        engine.dispose.assert_called_once()
        assert "Street Trees" in capsys.readouterr().out

    def test_aborted_job_exits_non_zero(self, monkeypatch):
        engine = MagicMock()

        def fail(eng, job_options=None, echo=print):
            raise BackfillAborted("Connection pool exhausted")

        monkeypatch.setattr(app, "_engine", lambda: engine)
        monkeypatch.setattr(app, "backfill_distances", fail)

        with pytest.raises(SystemExit) as exc:
            app.main(["backfill"])

        assert exc.value.code == 1
        engine.dispose.assert_called_once()

    def test_missing_database_config_exits_non_zero(self, monkeypatch, capsys):
        def no_config():
            raise ValueError("Database not configured. Set DATABASE_URL or DB_HOST and DB_DATABASE.")

        monkeypatch.setattr(app, "_engine", no_config)

        with pytest.raises(SystemExit) as exc:
            app.main(["status"])

        assert exc.value.code == 1
        assert "Database not configured" in capsys.readouterr().out

    def test_interrupt_disposes_engine(self, monkeypatch):
        engine = MagicMock()

        def interrupted(eng, job_options=None, echo=print):
            raise KeyboardInterrupt

        monkeypatch.setattr(app, "_engine", lambda: engine)
        monkeypatch.setattr(app, "backfill_distances", interrupted)

        with pytest.raises(SystemExit) as exc:
            app.main(["backfill"])

        assert exc.value.code == 130
        engine.dispose.assert_called_once()
