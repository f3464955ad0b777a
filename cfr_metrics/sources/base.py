"""Base client with shared resilience patterns.

Every eCFR request goes through ``BaseClient._open_with_retry`` which gives:
- A descriptive User-Agent header for federal API etiquette
- At most ``max_attempts`` attempts per logical request
- Exponential backoff with jitter on transient failures (timeouts,
  connection errors, HTTP 429/500/502/503/504)
- ``Retry-After`` honoring on 429 (delta-seconds or HTTP-date)
- Immediate surfacing of all other non-2xx statuses
- Config-driven retry/backoff parameters (the "resilience" section)

Each attempt is reduced to an ``AttemptResult`` with one of three outcomes
(succeed / retry after a delay / fail), so the retry loop itself is
independent of how the request was made.

Cancellation is never caught here: ``asyncio.CancelledError`` raised inside
a request or a backoff sleep propagates straight to the caller.
"""

import asyncio
import enum
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import aiohttp

from cfr_metrics.errors import PermanentFetchError, TransientFetchError

logger = logging.getLogger(__name__)

USER_AGENT = "cfr-metrics/1.0 (regulatory metrics; automated-refresh)"
MAX_ATTEMPTS = 5
BACKOFF_BASE = 0.5  # seconds
BACKOFF_MAX = 12.0  # seconds
JITTER = 0.25  # seconds
RETRY_AFTER_MAX = 300.0  # seconds
REQUEST_TIMEOUT = 120  # seconds between reads
CONNECT_TIMEOUT = 30

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
ERROR_BODY_LIMIT = 4096


class Outcome(enum.Enum):
    """What the retry loop should do after one attempt."""

    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class AttemptResult:
    """Classification of one attempt.

    Attributes:
        outcome: SUCCEED, RETRY or FAIL.
        delay: Seconds to wait before the next attempt (RETRY only).
        error: The error to raise on FAIL, or to surface if retries run out.
    """

    outcome: Outcome
    delay: float = 0.0
    error: Exception | None = None


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header into seconds.

    Accepts both forms allowed by RFC 9110: delta-seconds (``"2"``) and an
    HTTP-date. Dates in the past yield 0. Unparseable values yield None.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class BaseClient:
    """Shared retry/backoff behavior for eCFR API clients.

    Args:
        source_name: Identifier used in log lines (e.g., "ecfr").
        config: Optional config dict. The "resilience" section supplies
                retry/backoff parameters; missing keys use module defaults.
        sleep: Awaitable sleep used for backoff waits. Defaults to
               ``asyncio.sleep``; inject a recorder for deterministic tests.
        rng: Random source for jitter. Defaults to a fresh ``random.Random``.
    """

    def __init__(
        self,
        source_name: str,
        config: dict | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ):
        self.source_name = source_name
        self._headers = {"User-Agent": USER_AGENT}
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        resilience = (config or {}).get("resilience", {})
        self.max_attempts = max(1, min(int(resilience.get("max_attempts", MAX_ATTEMPTS)), MAX_ATTEMPTS))
        self.backoff_base = max(0.0, float(resilience.get("backoff_base", BACKOFF_BASE)))
        self.backoff_max = max(self.backoff_base, float(resilience.get("backoff_max", BACKOFF_MAX)))
        self.jitter = max(0.0, float(resilience.get("jitter", JITTER)))
        self.retry_after_max = float(resilience.get("retry_after_max", RETRY_AFTER_MAX))
        self.request_timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=resilience.get("connect_timeout", CONNECT_TIMEOUT),
            sock_read=resilience.get("request_timeout", REQUEST_TIMEOUT),
        )

    def create_session(self) -> aiohttp.ClientSession:
        """Create an aiohttp session with the client's User-Agent."""
        return aiohttp.ClientSession(headers=self._headers, timeout=self.request_timeout)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for a zero-based attempt index, plus jitter, capped."""
        delay = self.backoff_base * (2 ** attempt) + self._rng.uniform(0, self.jitter)
        return min(delay, self.backoff_max)

    def classify_status(self, url: str, status: int, retry_after: str | None, attempt: int) -> AttemptResult:
        """Map an HTTP status to an attempt outcome."""
        if 200 <= status < 300:
            return AttemptResult(Outcome.SUCCEED)
        if status not in RETRYABLE_STATUSES:
            return AttemptResult(
                Outcome.FAIL,
                error=PermanentFetchError(f"GET {url}: status={status}", url=url, status=status),
            )

        wait = None
        if status == 429:
            wait = parse_retry_after(retry_after)
            if wait is not None and wait > self.retry_after_max:
                return AttemptResult(
                    Outcome.FAIL,
                    error=PermanentFetchError(
                        f"GET {url}: status=429 Retry-After {wait:.0f}s exceeds "
                        f"{self.retry_after_max:.0f}s ceiling",
                        url=url, status=status,
                    ),
                )
        error = TransientFetchError(
            f"GET {url}: status={status}", url=url, status=status, retry_after=wait,
        )
        delay = wait if wait is not None else self.backoff_delay(attempt)
        return AttemptResult(Outcome.RETRY, delay=delay, error=error)

    def classify_exception(self, url: str, exc: Exception, attempt: int) -> AttemptResult:
        """Map a network-level exception to an attempt outcome."""
        if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError)):
            error = TransientFetchError(f"GET {url}: {exc!r}", url=url)
            return AttemptResult(Outcome.RETRY, delay=self.backoff_delay(attempt), error=error)
        return AttemptResult(Outcome.FAIL, error=exc)

    async def _open_with_retry(
        self, session: aiohttp.ClientSession, url: str, accept: str = "application/json",
    ) -> aiohttp.ClientResponse:
        """Issue a GET with bounded retries and return the open 2xx response.

        The caller owns the returned response and must ``release()`` it.

        Raises:
            PermanentFetchError: On a terminal status.
            TransientFetchError: When every attempt failed transiently.
        """
        last_error: Exception | None = None
        for attempt in range(self.max_attempts):
            resp = None
            try:
                resp = await session.get(url, headers={"Accept": accept})
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                result = self.classify_exception(url, e, attempt)
            else:
                result = self.classify_status(
                    url, resp.status, resp.headers.get("Retry-After"), attempt,
                )

            if result.outcome is Outcome.SUCCEED:
                return resp

            if resp is not None:
                try:
                    body = await _read_error_body(resp)
                finally:
                    resp.release()
                if isinstance(result.error, PermanentFetchError):
                    result.error.body = body

            if result.outcome is Outcome.FAIL:
                logger.error("%s: %s", self.source_name, result.error)
                raise result.error

            last_error = result.error
            if attempt + 1 >= self.max_attempts:
                break
            logger.warning(
                "%s: %s (attempt %d/%d), retrying in %.1fs",
                self.source_name, result.error, attempt + 1, self.max_attempts, result.delay,
            )
            await self._sleep(result.delay)

        logger.error(
            "%s: all %d attempts exhausted, last error: %s",
            self.source_name, self.max_attempts, last_error,
        )
        raise last_error or TransientFetchError(
            f"{self.source_name}: request failed after {self.max_attempts} attempts", url=url,
        )


async def _read_error_body(resp: aiohttp.ClientResponse) -> str:
    """Best-effort excerpt of an error response body for diagnostics."""
    try:
        raw = await resp.content.read(ERROR_BODY_LIMIT)
    except (aiohttp.ClientError, asyncio.TimeoutError):
        return ""
    return raw.decode("utf-8", errors="replace")
