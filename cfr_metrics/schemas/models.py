"""Pydantic v2 validation models for CFR Metrics data structures.

Each model maps to a JSON structure returned by the eCFR API or to a record
the pipeline persists. Validation happens at ingestion so malformed feed
entries surface immediately instead of corrupting metric rows downstream.

Data sources modeled:
- /api/versioner/v1/titles.json -> Title
- /api/admin/v1/agencies.json   -> Agency (nested), CFRReference
- agency_metrics table          -> AgencyMetric
- refresh cycle outcome         -> RefreshResult, DownloadFailure
"""

from __future__ import annotations

import re
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ── Constants ──

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

METRIC_WORD_COUNT = "word_count"
METRIC_WORDS_PER_CHAPTER = "words_per_chapter"
METRIC_CHECKSUM = "checksum"
METRIC_READABILITY = "readability"
METRIC_CHURN = "churn"

METRIC_NAMES = frozenset({
    METRIC_WORD_COUNT,
    METRIC_WORDS_PER_CHAPTER,
    METRIC_CHECKSUM,
    METRIC_READABILITY,
    METRIC_CHURN,
})

# Chapter bucket for text that precedes any chapter marker
UNKNOWN_CHAPTER = "UNKNOWN"


def _check_iso_date(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    if not ISO_DATE_RE.match(v):
        raise ValueError(f"Expected YYYY-MM-DD date, got '{v}'")
    return v


# ── Title (versioner titles.json) ──

class Title(BaseModel):
    """A CFR title as listed by the versioner API.

    Identity is ``number``. Reserved titles carry no text and may have no
    ``up_to_date_as_of`` date.
    """

    model_config = ConfigDict(extra="ignore")

    number: int = Field(..., description="CFR title number", examples=[7, 40])
    name: str = Field(..., description="Title heading", examples=["Agriculture"])
    up_to_date_as_of: Optional[str] = Field(
        None,
        description="Date the title text is current through (YYYY-MM-DD)",
        examples=["2025-01-02"],
    )
    reserved: bool = Field(False, description="True for reserved (empty) titles")

    @field_validator("up_to_date_as_of")
    @classmethod
    def validate_as_of(cls, v: Optional[str]) -> Optional[str]:
        return _check_iso_date(v)


# ── Agency (admin agencies.json) ──

class CFRReference(BaseModel):
    """A title/chapter an agency is responsible for.

    References without ``chapter`` are kept for display but never used to
    attribute text, since a bare title reference is ambiguous. Neither is
    the literal ``UNKNOWN`` bucket code.
    """

    model_config = ConfigDict(extra="ignore")

    title: int = Field(..., description="Referenced CFR title number")
    chapter: Optional[str] = Field(None, description="Chapter label, e.g. 'I'")
    subtitle: Optional[str] = Field(None, description="Subtitle label, e.g. 'A'")

    @property
    def is_attributable(self) -> bool:
        return bool(self.chapter) and self.chapter != UNKNOWN_CHAPTER


class Agency(BaseModel):
    """An agency node from the admin feed, with nested child agencies."""

    model_config = ConfigDict(extra="ignore")

    slug: str = Field(..., min_length=1, description="Unique agency slug")
    name: str = Field(..., description="Agency name")
    short_name: Optional[str] = None
    display_name: Optional[str] = None
    cfr_references: list[CFRReference] = Field(default_factory=list)
    children: list[Agency] = Field(default_factory=list)


Agency.model_rebuild()


def flatten_agencies(agencies: list[Agency]) -> dict[str, Agency]:
    """Flatten an agency tree into a mapping keyed by slug.

    Walks the tree with an explicit stack in document order (parent before
    its children). When a slug appears more than once the last occurrence
    wins.

    Args:
        agencies: Top-level agencies from the admin feed.

    Returns:
        Dict of slug -> Agency, in first-seen order.
    """
    flat: dict[str, Agency] = {}
    stack = list(reversed(agencies))
    while stack:
        agency = stack.pop()
        flat[agency.slug] = agency
        stack.extend(reversed(agency.children))
    return flat


# ── Metrics ──

class AgencyMetric(BaseModel):
    """One stored metric value, unique on (slug, issue_date, metric)."""

    slug: str
    issue_date: str
    metric: str
    value: Union[float, str, None] = None

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, v: str) -> str:
        if v not in METRIC_NAMES:
            raise ValueError(f"Unknown metric '{v}'. Must be one of: {sorted(METRIC_NAMES)}")
        return v

    @field_validator("issue_date")
    @classmethod
    def validate_issue_date(cls, v: str) -> str:
        if _check_iso_date(v) is None:
            raise ValueError("issue_date is required")
        return v


# ── Refresh outcome ──

class DownloadFailure(BaseModel):
    """A snapshot download that was skipped after exhausting its retries."""

    title: int
    issue_date: str
    error: str


class RefreshResult(BaseModel):
    """Summary returned by one completed refresh cycle."""

    agency_count: int = 0
    title_count: int = 0
    downloaded_count: int = 0
    failed_downloads: list[DownloadFailure] = Field(default_factory=list)
    completed_at: str = ""
