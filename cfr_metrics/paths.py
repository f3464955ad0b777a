"""Centralized path constants for CFR Metrics.

Every file and directory path used by the refresh pipeline is defined here
as a module-level constant or derived by a helper. Source files import from
this module instead of building ad-hoc ``Path(...)`` literals.

Design rules:
  1. This module imports ONLY ``pathlib.Path`` -- no project imports, no
     config imports. This keeps it importable from anywhere without cycles.
  2. The data directory is configurable at runtime, so everything below it
     is exposed through helpers that take ``data_dir`` explicitly.
  3. No existence checks at import time. Callers create directories as
     needed (``mkdir(parents=True, exist_ok=True)``).
"""

from pathlib import Path

# ---------------------------------------------------------------------------
# -- Project Root --
# ---------------------------------------------------------------------------

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent
"""Absolute path to the project root directory (one level above ``cfr_metrics/``)."""

# ---------------------------------------------------------------------------
# -- Config Paths --
# ---------------------------------------------------------------------------

CONFIG_DIR: Path = PROJECT_ROOT / "config"
"""Directory containing refresh configuration files."""

REFRESH_CONFIG_PATH: Path = CONFIG_DIR / "refresh_config.json"
"""Main configuration (source URL, resilience, refresh pool, storage caps)."""

# ---------------------------------------------------------------------------
# -- Data Paths --
# ---------------------------------------------------------------------------

DEFAULT_DATA_DIR: Path = PROJECT_ROOT / "data"
"""Default data directory when neither config nor ``DATA_DIR`` names one."""

DATABASE_FILENAME: str = "ecfr.sqlite"
"""SQLite file holding titles, agencies, snapshot pointers, metrics and state."""

SNAPSHOT_SUBDIR: str = "xml"
"""Subdirectory of the data directory holding compressed title snapshots."""


def database_path(data_dir: Path) -> Path:
    """Return the SQLite database path for a data directory."""
    return Path(data_dir) / DATABASE_FILENAME


def snapshot_dir(data_dir: Path) -> Path:
    """Return the directory that holds snapshot blobs."""
    return Path(data_dir) / SNAPSHOT_SUBDIR


def snapshot_filename(title: int, issue_date: str) -> str:
    """Return the deterministic blob name for a ``(title, date)`` snapshot.

    Args:
        title: CFR title number.
        issue_date: Snapshot date as ``YYYY-MM-DD``.

    Returns:
        File name such as ``title-7_2025-01-02.xml.gz``.
    """
    return f"title-{title}_{issue_date}.xml.gz"


def snapshot_path(data_dir: Path, title: int, issue_date: str) -> Path:
    """Return the final on-disk path for a ``(title, date)`` snapshot."""
    return snapshot_dir(data_dir) / snapshot_filename(title, issue_date)
