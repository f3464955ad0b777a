"""Per-agency regulatory metrics computed from title snapshots.

For each agency, the text of every chapter it references (title + explicit
chapter code) is concatenated and five metrics are derived:

    word_count         -- how much regulation text the agency is responsible for
    words_per_chapter  -- word_count spread over distinct attributed chapters
    checksum           -- SHA-256 fingerprint of the concatenated text
    readability        -- Flesch Reading Ease, a proxy for stakeholder burden
    churn              -- share of attributed chapters whose text changed since
                          the previous stored snapshot of their title

References without a chapter code are ignored, as is the UNKNOWN bucket of
text outside any chapter. An agency with no attributable text in a cycle gets
no rows at all (never zeros).

Failure policy: a title whose snapshot cannot be read or parsed is skipped
for the cycle; other titles and agencies are still computed. Churn is best
effort and degrades to 0 when no history is available.
"""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field

from cfr_metrics.analysis.chapters import ChapterExtractor
from cfr_metrics.errors import ParseError, SizeLimitExceeded, SnapshotNotFoundError, StorageError
from cfr_metrics.schemas.models import (
    METRIC_CHECKSUM,
    METRIC_CHURN,
    METRIC_READABILITY,
    METRIC_WORD_COUNT,
    METRIC_WORDS_PER_CHAPTER,
    Agency,
)
from cfr_metrics.storage.database import Database
from cfr_metrics.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[^\W_]+")
_SYLLABLE_RE = re.compile(r"[aeiouy]+")
_SENTENCE_CHARS = ".!?"


# ── Text measures ──


def word_count(text: str) -> int:
    """Count maximal runs of letters/digits."""
    return len(_WORD_RE.findall(text))


def checksum_hex(text: str) -> str:
    """SHA-256 of the UTF-8 text, hex encoded."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def count_sentences(text: str) -> int:
    return max(1, sum(text.count(c) for c in _SENTENCE_CHARS))


def count_syllables(text: str) -> int:
    # crude but consistent: vowel groups, 'y' counted as a vowel
    return max(1, len(_SYLLABLE_RE.findall(text.lower())))


def flesch_reading_ease(text: str) -> float:
    """Flesch Reading Ease: 206.835 - 1.015*(words/sentences) - 84.6*(syllables/words)."""
    words = max(1, word_count(text))
    sentences = count_sentences(text)
    syllables = count_syllables(text)
    return 206.835 - 1.015 * (words / sentences) - 84.6 * (syllables / words)


# ── Aggregation ──


@dataclass
class AgencyText:
    """Concatenated chapter text attributed to one agency in one cycle."""

    slug: str
    parts: list[str] = field(default_factory=list)
    chapters: list[tuple[int, str]] = field(default_factory=list)
    issue_date: str = ""

    @property
    def text(self) -> str:
        return " ".join(self.parts)

    def add(self, title: int, chapter: str, issue_date: str, text: str) -> None:
        self.parts.append(text)
        if (title, chapter) not in self.chapters:
            self.chapters.append((title, chapter))
        if issue_date > self.issue_date:
            self.issue_date = issue_date


class MetricsEngine:
    """Computes and stores agency metrics for a chosen snapshot date per title.

    Args:
        database: Source of titles/agencies and sink for metric rows.
        snapshots: Snapshot store to read title XML from.
        extractor: Chapter extractor; a default instance is used if omitted.
    """

    def __init__(
        self,
        database: Database,
        snapshots: SnapshotStore,
        extractor: ChapterExtractor | None = None,
    ):
        self.database = database
        self.snapshots = snapshots
        self.extractor = extractor or ChapterExtractor()

    def compute_latest(self) -> int:
        """Compute metrics at each title's current as-of date."""
        return self.compute_for_dates({})

    async def compute_latest_async(self) -> int:
        """``compute_latest`` with snapshot reads off the event loop."""
        return await self.compute_for_dates_async({})

    def compute_for_dates(self, dates_by_title: dict[int, str]) -> int:
        """Compute metrics, overriding the snapshot date for some titles.

        Args:
            dates_by_title: title number -> snapshot date to use instead of
                            the title's ``up_to_date_as_of``.

        Returns:
            Number of agencies that received metric rows.
        """
        dates = self._select_dates(dates_by_title)
        current: dict[tuple[int, str], dict[str, str]] = {}
        for title, issue_date in dates.items():
            chapters = self._load_chapters(title, issue_date)
            if chapters is not None:
                current[(title, issue_date)] = chapters
        previous = {
            title: self._load_chapters(title, prev_date)
            for title, prev_date in self._previous_dates(current).items()
        }
        return self._write_metrics(dates, current, previous)

    async def compute_for_dates_async(self, dates_by_title: dict[int, str]) -> int:
        """Async ``compute_for_dates``.

        Each snapshot is decompressed and parsed in a worker thread, so the
        caller can cancel between and during titles. Database access stays
        on the event loop thread. Nothing is written until every snapshot
        has been loaded.
        """
        dates = self._select_dates(dates_by_title)
        current: dict[tuple[int, str], dict[str, str]] = {}
        for title, issue_date in dates.items():
            chapters = await self._load_chapters_async(title, issue_date)
            if chapters is not None:
                current[(title, issue_date)] = chapters
        previous = {}
        for title, prev_date in self._previous_dates(current).items():
            previous[title] = await self._load_chapters_async(title, prev_date)
        return self._write_metrics(dates, current, previous)

    def _write_metrics(
        self,
        dates: dict[int, str],
        current: dict[tuple[int, str], dict[str, str]],
        previous: dict[int, dict[str, str] | None],
    ) -> int:
        agencies = self.database.load_agencies()
        written = 0
        for agency in agencies.values():
            attributed = self._attribute(agency, dates, current)
            text = attributed.text
            if not text:
                logger.debug("No attributable text for %s, skipping", agency.slug)
                continue

            wc = word_count(text)
            self.database.put_metrics(agency.slug, attributed.issue_date, {
                METRIC_WORD_COUNT: wc,
                METRIC_WORDS_PER_CHAPTER: wc / max(1, len(attributed.chapters)),
                METRIC_CHECKSUM: checksum_hex(text),
                METRIC_READABILITY: flesch_reading_ease(text),
                METRIC_CHURN: self._churn(attributed, dates, current, previous),
            })
            written += 1

        logger.info(
            "Computed metrics for %d/%d agencies across %d titles",
            written, len(agencies), len(current),
        )
        return written

    def _select_dates(self, overrides: dict[int, str]) -> dict[int, str]:
        dates = {
            t.number: t.up_to_date_as_of
            for t in self.database.list_titles()
            if not t.reserved and t.up_to_date_as_of
        }
        dates.update(overrides)
        return dates

    def _previous_dates(self, current: dict[tuple[int, str], dict[str, str]]) -> dict[int, str]:
        out = {}
        for title, issue_date in current:
            prev_date = self.snapshots.previous_date(title, issue_date)
            if prev_date is not None:
                out[title] = prev_date
        return out

    def _read_and_extract(self, path: str) -> dict[str, str]:
        return self.extractor.extract(self.snapshots.read_blob(path))

    def _load_chapters(self, title: int, issue_date: str) -> dict[str, str] | None:
        """Read and extract one snapshot; None if it is missing or unusable."""
        try:
            return self._read_and_extract(self.snapshots.locate(title, issue_date))
        except SnapshotNotFoundError:
            logger.info("No snapshot for title %d @ %s, skipping", title, issue_date)
        except (StorageError, SizeLimitExceeded, ParseError) as e:
            logger.warning("Skipping title %d @ %s: %s", title, issue_date, e)
        return None

    async def _load_chapters_async(self, title: int, issue_date: str) -> dict[str, str] | None:
        try:
            path = self.snapshots.locate(title, issue_date)
            return await asyncio.to_thread(self._read_and_extract, path)
        except SnapshotNotFoundError:
            logger.info("No snapshot for title %d @ %s, skipping", title, issue_date)
        except (StorageError, SizeLimitExceeded, ParseError) as e:
            logger.warning("Skipping title %d @ %s: %s", title, issue_date, e)
        return None

    @staticmethod
    def _attribute(
        agency: Agency,
        dates: dict[int, str],
        current: dict[tuple[int, str], dict[str, str]],
    ) -> AgencyText:
        attributed = AgencyText(slug=agency.slug)
        for ref in agency.cfr_references:
            if not ref.is_attributable:
                continue
            issue_date = dates.get(ref.title)
            if not issue_date:
                continue
            chapters = current.get((ref.title, issue_date))
            if not chapters:
                continue
            text = chapters.get(ref.chapter, "")
            if not text:
                continue
            attributed.add(ref.title, ref.chapter, issue_date, text)
        return attributed

    @staticmethod
    def _churn(
        attributed: AgencyText,
        dates: dict[int, str],
        current: dict[tuple[int, str], dict[str, str]],
        previous: dict[int, dict[str, str] | None],
    ) -> float:
        changed = 0
        compared = 0
        for title, chapter in attributed.chapters:
            issue_date = dates[title]
            prev_chapters = previous.get(title)
            if not prev_chapters:
                continue
            cur_text = current[(title, issue_date)].get(chapter, "")
            prev_text = prev_chapters.get(chapter, "")
            if not cur_text or not prev_text:
                continue
            compared += 1
            if checksum_hex(cur_text) != checksum_hex(prev_text):
                changed += 1
        if compared == 0:
            return 0.0
        return changed / compared
