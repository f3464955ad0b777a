"""Pydantic v2 schema models for CFR Metrics.

Provides validation models for the eCFR feeds and pipeline records:
- Title: versioner title listing entries
- Agency / CFRReference: admin agency tree and its chapter references
- AgencyMetric: stored per-agency metric values
- RefreshResult / DownloadFailure: refresh cycle outcome
"""

from cfr_metrics.schemas.models import (
    METRIC_CHECKSUM,
    METRIC_CHURN,
    METRIC_NAMES,
    METRIC_READABILITY,
    METRIC_WORD_COUNT,
    METRIC_WORDS_PER_CHAPTER,
    UNKNOWN_CHAPTER,
    Agency,
    AgencyMetric,
    CFRReference,
    DownloadFailure,
    RefreshResult,
    Title,
    flatten_agencies,
)

__all__ = [
    "METRIC_CHECKSUM",
    "METRIC_CHURN",
    "METRIC_NAMES",
    "METRIC_READABILITY",
    "METRIC_WORD_COUNT",
    "METRIC_WORDS_PER_CHAPTER",
    "UNKNOWN_CHAPTER",
    "Agency",
    "AgencyMetric",
    "CFRReference",
    "DownloadFailure",
    "RefreshResult",
    "Title",
    "flatten_agencies",
]
