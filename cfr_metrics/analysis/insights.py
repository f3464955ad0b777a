"""Derived insights over stored agency metric history."""

import logging
from dataclasses import asdict, dataclass

from cfr_metrics.schemas.models import METRIC_WORD_COUNT
from cfr_metrics.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrowthHotspot:
    """A large word-count increase for one agency over its recent history."""

    slug: str
    agency: str
    delta: float
    start: float
    end: float
    points: int

    def to_dict(self) -> dict:
        return asdict(self)


def growth_hotspots(database: Database, points: int = 365, limit: int = 5) -> list[GrowthHotspot]:
    """Agencies with the largest positive ``word_count`` growth.

    Compares the oldest and newest values among each agency's last
    ``points`` history entries. Agencies with fewer than two entries, or
    with no growth, are left out.

    Args:
        database: Metric store.
        points: History window, in stored entries per agency.
        limit: Maximum hotspots returned (0 or less for all).

    Returns:
        Hotspots sorted by descending delta.
    """
    results = []
    for agency in database.list_agencies():
        series = database.metric_history(agency["slug"], METRIC_WORD_COUNT, points)
        if len(series) < 2:
            continue
        # series is newest -> oldest
        start, end = series[-1]["value"], series[0]["value"]
        if not isinstance(start, float) or not isinstance(end, float):
            continue
        delta = end - start
        if delta <= 0:
            continue
        results.append(GrowthHotspot(
            slug=agency["slug"], agency=agency["name"],
            delta=delta, start=start, end=end, points=len(series),
        ))

    results.sort(key=lambda h: h.delta, reverse=True)
    logger.debug("Found %d growth hotspots", len(results))
    if limit > 0:
        results = results[:limit]
    return results
