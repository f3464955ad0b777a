"""End-to-end refresh cycle.

State machine:

    IDLE -> FETCHING_METADATA -> DOWNLOADING_SNAPSHOTS -> COMPUTING_METRICS -> IDLE

FETCHING_METADATA
    Titles and agencies are fetched as two concurrent tasks, each persisting
    its result as soon as it arrives. The first failure cancels the sibling
    and aborts the cycle; there is no partial-metadata path to downloads.

DOWNLOADING_SNAPSHOTS
    Every non-reserved (title, as-of date) without a stored snapshot becomes
    a job on a shared queue drained by a fixed pool of workers. A worker
    streams the title XML straight into the snapshot store, retrying the
    whole fetch-and-save on transient errors. With the default "skip"
    policy an exhausted job is recorded and the cycle continues; with
    "abort" the first failed job cancels the pool and fails the cycle.

COMPUTING_METRICS
    Runs only after the pool has drained, so no snapshot is read mid-write.
    Snapshots are parsed in worker threads; cancelling here leaves
    ``last_refresh`` untouched.

Only one cycle runs at a time; a second request is rejected with
``RefreshInProgressError``. Cancelling the task running ``run_cycle``
propagates into every in-flight request and backoff sleep; snapshots that
were already saved are kept.
"""

import asyncio
import enum
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from cfr_metrics.analysis.metrics import MetricsEngine
from cfr_metrics.config import download_concurrency
from cfr_metrics.errors import CFRMetricsError, RefreshInProgressError, TransientFetchError
from cfr_metrics.schemas.models import DownloadFailure, RefreshResult, Title
from cfr_metrics.sources.ecfr import ECFRClient
from cfr_metrics.storage.database import Database
from cfr_metrics.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

LAST_REFRESH_KEY = "last_refresh"
DOWNLOAD_ATTEMPTS = 3
DOWNLOAD_BACKOFF_BASE = 2  # seconds
DOWNLOAD_JITTER = 0.5  # seconds
FAILURE_POLICIES = ("skip", "abort")


class RefreshState(enum.Enum):
    IDLE = "idle"
    FETCHING_METADATA = "fetching_metadata"
    DOWNLOADING_SNAPSHOTS = "downloading_snapshots"
    COMPUTING_METRICS = "computing_metrics"


@dataclass(frozen=True)
class DownloadJob:
    title: int
    issue_date: str


class RefreshOrchestrator:
    """Coordinates one refresh cycle across client, store and metrics engine.

    Args:
        client: eCFR client (anything exposing ``create_session``,
                ``list_titles``, ``list_agencies`` and ``open_title_xml``).
        database: Metadata, pointer, metric and state persistence.
        snapshots: Snapshot store written by the download workers.
        engine: Metrics engine run after downloads drain.
        config: Config dict; the "refresh" section supplies pool size,
                per-job attempts, backoff and failure policy.
        sleep: Awaitable sleep for job backoff (injectable for tests).
    """

    def __init__(
        self,
        client: ECFRClient,
        database: Database,
        snapshots: SnapshotStore,
        engine: MetricsEngine,
        config: dict | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.client = client
        self.database = database
        self.snapshots = snapshots
        self.engine = engine
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self.state = RefreshState.IDLE

        config = config or {}
        refresh = config.get("refresh", {})
        self.workers = download_concurrency(config)
        self.download_attempts = max(1, int(refresh.get("download_attempts", DOWNLOAD_ATTEMPTS)))
        self.download_backoff_base = float(refresh.get("download_backoff_base", DOWNLOAD_BACKOFF_BASE))
        self.failure_policy = refresh.get("on_download_failure", "skip")
        if self.failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                f"on_download_failure must be one of {FAILURE_POLICIES}, got '{self.failure_policy}'"
            )

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run_cycle(self) -> RefreshResult:
        """Run one full refresh cycle.

        Raises:
            RefreshInProgressError: Another cycle is in flight.
            CFRMetricsError: Metadata fetch/persist failed, or a download
                failed under the "abort" policy.
        """
        if self._lock.locked():
            raise RefreshInProgressError()
        async with self._lock:
            try:
                return await self._run()
            finally:
                self.state = RefreshState.IDLE

    async def _run(self) -> RefreshResult:
        async with self.client.create_session() as session:
            self.state = RefreshState.FETCHING_METADATA
            titles, agency_count = await self._fetch_metadata(session)

            self.state = RefreshState.DOWNLOADING_SNAPSHOTS
            jobs = self._plan_downloads(titles)
            downloaded, failures = await self._download_all(session, jobs)

        self.state = RefreshState.COMPUTING_METRICS
        await self.engine.compute_latest_async()

        completed_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        self.database.set_state(LAST_REFRESH_KEY, completed_at)
        logger.info(
            "Refresh complete: %d titles, %d agencies, %d downloaded, %d failed",
            len(titles), agency_count, downloaded, len(failures),
        )
        return RefreshResult(
            agency_count=agency_count,
            title_count=len(titles),
            downloaded_count=downloaded,
            failed_downloads=failures,
            completed_at=completed_at,
        )

    # ── Metadata ──

    async def _fetch_metadata(self, session) -> tuple[list[Title], int]:
        async def fetch_titles() -> list[Title]:
            titles = await self.client.list_titles(session)
            self.database.upsert_titles(titles)
            return titles

        async def fetch_agencies() -> int:
            agencies = await self.client.list_agencies(session)
            return self.database.upsert_agencies(agencies)

        titles_task = asyncio.create_task(fetch_titles(), name="fetch-titles")
        agencies_task = asyncio.create_task(fetch_agencies(), name="fetch-agencies")
        tasks = [titles_task, agencies_task]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise
        for task in done:
            if task.exception() is not None:
                await _cancel_all(pending)
                logger.error("Metadata fetch failed (%s): %s", task.get_name(), task.exception())
                raise task.exception()
        return titles_task.result(), agencies_task.result()

    # ── Downloads ──

    def _plan_downloads(self, titles: list[Title]) -> list[DownloadJob]:
        jobs = []
        for t in titles:
            if t.reserved or not t.up_to_date_as_of:
                continue
            if self.snapshots.exists(t.number, t.up_to_date_as_of):
                continue
            jobs.append(DownloadJob(t.number, t.up_to_date_as_of))
        logger.info("%d snapshots to download with %d workers", len(jobs), self.workers)
        return jobs

    async def _download_all(self, session, jobs: list[DownloadJob]) -> tuple[int, list[DownloadFailure]]:
        queue: asyncio.Queue[DownloadJob] = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        failures: list[DownloadFailure] = []
        downloaded = 0

        async def worker() -> None:
            nonlocal downloaded
            while True:
                try:
                    job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await self._download_one(session, job)
                    downloaded += 1
                except CFRMetricsError as e:
                    if self.failure_policy == "abort":
                        raise
                    logger.warning("Skipping title %d @ %s: %s", job.title, job.issue_date, e)
                    failures.append(DownloadFailure(title=job.title, issue_date=job.issue_date, error=str(e)))
                finally:
                    queue.task_done()

        tasks = [
            asyncio.create_task(worker(), name=f"download-worker-{i}")
            for i in range(min(self.workers, len(jobs)))
        ]
        if not tasks:
            return 0, failures
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise
        for task in done:
            if task.exception() is not None:
                await _cancel_all(pending)
                raise task.exception()
        return downloaded, failures

    async def _download_one(self, session, job: DownloadJob) -> None:
        """Fetch and save one snapshot, retrying the pair on transient errors."""
        for attempt in range(self.download_attempts):
            try:
                async with self.client.open_title_xml(session, job.issue_date, job.title) as chunks:
                    await self.snapshots.save(job.title, job.issue_date, chunks)
                return
            except TransientFetchError as e:
                if attempt + 1 >= self.download_attempts:
                    raise
                delay = self.download_backoff_base * (2 ** attempt) + random.uniform(0, DOWNLOAD_JITTER)
                logger.warning(
                    "Title %d @ %s download failed (attempt %d/%d): %s; retrying in %.1fs",
                    job.title, job.issue_date, attempt + 1, self.download_attempts, e, delay,
                )
                await self._sleep(delay)


async def _cancel_all(tasks) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
