"""API health check for the eCFR endpoints the refresh pipeline depends on.

Checks each endpoint with a single GET and reports UP / DOWN / DEGRADED.
DEGRADED means the API is unreachable but stored snapshots exist, so
metrics can still be served and recomputed. Used by ``--health-check``.
"""

import asyncio
import logging
import time

import aiohttp

from cfr_metrics.config import base_url
from cfr_metrics.sources.base import USER_AGENT
from cfr_metrics.storage.database import Database

logger = logging.getLogger(__name__)

_CHECK_TIMEOUT = aiohttp.ClientTimeout(total=10)

CHECKS = {
    "titles": "/api/versioner/v1/titles.json",
    "agencies": "/api/admin/v1/agencies.json",
}


class HealthChecker:
    """Check the eCFR endpoints.

    Args:
        config: Config dict (for the base URL).
        database: Optional database used to decide DOWN vs DEGRADED.
    """

    def __init__(self, config: dict, database: Database | None = None):
        self._base_url = base_url(config)
        self._database = database

    async def check_all(self) -> dict[str, dict]:
        """Check every endpoint.

        Returns:
            Dict mapping check name to {"status", "latency_ms", "detail"}.
        """
        results = {}
        async with aiohttp.ClientSession(
            headers={"User-Agent": USER_AGENT}, timeout=_CHECK_TIMEOUT,
        ) as session:
            for name, path in CHECKS.items():
                results[name] = await self._check_one(session, self._base_url + path)
        return results

    async def _check_one(self, session: aiohttp.ClientSession, url: str) -> dict:
        start = time.monotonic()
        try:
            async with session.get(url) as resp:
                latency_ms = int((time.monotonic() - start) * 1000)
                if 200 <= resp.status < 300:
                    return {"status": "UP", "latency_ms": latency_ms, "detail": "OK"}
                return self._degraded_or_down(f"HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug("Check %s failed: %s", url, e)
            return self._degraded_or_down(str(e) or type(e).__name__)

    def _degraded_or_down(self, detail: str) -> dict:
        if self._database is not None and self._database.count_snapshots() > 0:
            return {"status": "DEGRADED", "latency_ms": 0, "detail": f"{detail}; stored snapshots available"}
        return {"status": "DOWN", "latency_ms": 0, "detail": detail}


def format_report(results: dict[str, dict]) -> str:
    """Format health check results as an aligned text table."""
    lines = ["eCFR API Health Check", "-" * 60]
    width = max((len(name) for name in results), default=0) + 2
    for name, info in results.items():
        if info["status"] == "UP":
            detail = f"({info['latency_ms']}ms)"
        else:
            detail = f"({info['detail']})"
        lines.append(f"  {name + ':':<{width}} {info['status']:<10} {detail}")
    return "\n".join(lines)
