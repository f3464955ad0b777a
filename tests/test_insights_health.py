"""Tests for growth hotspots and the API health check."""

import asyncio

import aiohttp
import pytest

from cfr_metrics.analysis.insights import GrowthHotspot, growth_hotspots
from cfr_metrics.health import HealthChecker, format_report
from cfr_metrics.schemas.models import Agency
from cfr_metrics.storage.database import Database


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "ecfr.sqlite")
    database.upsert_agencies([
        Agency(slug="epa", name="Environmental Protection Agency"),
        Agency(slug="fs", name="Forest Service"),
        Agency(slug="irs", name="Internal Revenue Service"),
        Agency(slug="new", name="New Office"),
    ])
    yield database
    database.close()


class TestGrowthHotspots:

    def _series(self, db, slug, values):
        for day, value in enumerate(values, start=1):
            db.put_metrics(slug, f"2025-01-{day:02d}", {"word_count": value})

    def test_sorted_by_delta_positive_only(self, db):
        self._series(db, "epa", [100, 150, 400])
        self._series(db, "fs", [100, 120])
        self._series(db, "irs", [500, 300])
        self._series(db, "new", [10])

        hotspots = growth_hotspots(db)
        assert [h.slug for h in hotspots] == ["epa", "fs"]
        assert hotspots[0] == GrowthHotspot(
            slug="epa", agency="Environmental Protection Agency",
            delta=300.0, start=100.0, end=400.0, points=3,
        )

    def test_window_and_limit(self, db):
        self._series(db, "epa", [0, 100, 110])
        self._series(db, "fs", [0, 50])
        # window of 2 compares only the last two entries per agency
        hotspots = growth_hotspots(db, points=2, limit=1)
        assert len(hotspots) == 1
        assert hotspots[0].slug == "fs"
        assert hotspots[0].delta == 50.0

    def test_to_dict(self, db):
        self._series(db, "fs", [1, 3])
        assert growth_hotspots(db)[0].to_dict()["delta"] == 2.0


class _FakeCheckResponse:
    def __init__(self, status):
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeCheckSession:
    def __init__(self, outcome):
        self.outcome = outcome

    def get(self, url):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return _FakeCheckResponse(self.outcome)


class TestHealthChecker:

    def test_up(self):
        checker = HealthChecker({})
        result = asyncio.run(checker._check_one(_FakeCheckSession(200), "https://x.test"))
        assert result["status"] == "UP"
        assert result["detail"] == "OK"

    def test_http_error_is_down_without_snapshots(self, db):
        checker = HealthChecker({}, database=db)
        result = asyncio.run(checker._check_one(_FakeCheckSession(503), "https://x.test"))
        assert result == {"status": "DOWN", "latency_ms": 0, "detail": "HTTP 503"}

    def test_connection_error_is_degraded_with_snapshots(self, db):
        db.insert_snapshot(1, "2025-01-02", "/tmp/title-1.xml.gz")
        checker = HealthChecker({}, database=db)
        session = _FakeCheckSession(aiohttp.ClientConnectionError("refused"))
        result = asyncio.run(checker._check_one(session, "https://x.test"))
        assert result["status"] == "DEGRADED"
        assert "refused" in result["detail"]

    def test_format_report(self):
        report = format_report({
            "titles": {"status": "UP", "latency_ms": 42, "detail": "OK"},
            "agencies": {"status": "DOWN", "latency_ms": 0, "detail": "HTTP 500"},
        })
        lines = report.splitlines()
        assert lines[0] == "eCFR API Health Check"
        assert "titles:" in lines[2] and "UP" in lines[2] and "(42ms)" in lines[2]
        assert "DOWN" in lines[3] and "(HTTP 500)" in lines[3]
