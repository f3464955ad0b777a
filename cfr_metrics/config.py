"""Configuration loading for CFR Metrics.

The refresh pipeline is driven by ``config/refresh_config.json``. A handful
of operational knobs can be overridden through the environment so the same
checkout can point at a different mirror or data directory:

    ECFR_BASE_URL               -> sources.ecfr.base_url
    DATA_DIR                    -> storage.data_dir
    ECFR_DOWNLOAD_CONCURRENCY   -> refresh.download_concurrency

Components read their own section with ``.get()`` and fall back to module
defaults, so a partial config dict (as used in tests) is always valid.
"""

import json
import logging
import os
from pathlib import Path

from cfr_metrics.paths import DEFAULT_DATA_DIR, PROJECT_ROOT, REFRESH_CONFIG_PATH

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.ecfr.gov"
MIN_DOWNLOAD_CONCURRENCY = 1
MAX_DOWNLOAD_CONCURRENCY = 8


def load_config(path: Path | None = None) -> dict:
    """Load the refresh configuration and apply environment overrides.

    Args:
        path: Config file to read. Defaults to ``REFRESH_CONFIG_PATH``. A
              missing file yields an empty config (all defaults).

    Returns:
        Configuration dict.
    """
    path = path or REFRESH_CONFIG_PATH
    config: dict = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            config = json.load(f)
    else:
        logger.warning("Config file %s not found, using defaults", path)
    return apply_env_overrides(config)


def apply_env_overrides(config: dict, environ: dict | None = None) -> dict:
    """Overlay supported environment variables onto ``config`` in place."""
    env = os.environ if environ is None else environ

    base_url = env.get("ECFR_BASE_URL", "")
    if base_url:
        config.setdefault("sources", {}).setdefault("ecfr", {})["base_url"] = base_url

    data_dir = env.get("DATA_DIR", "")
    if data_dir:
        config.setdefault("storage", {})["data_dir"] = data_dir

    concurrency = env.get("ECFR_DOWNLOAD_CONCURRENCY", "")
    if concurrency:
        try:
            config.setdefault("refresh", {})["download_concurrency"] = int(concurrency)
        except ValueError:
            logger.warning(
                "Ignoring non-integer ECFR_DOWNLOAD_CONCURRENCY=%r", concurrency,
            )
    return config


def base_url(config: dict) -> str:
    """Return the eCFR base URL without a trailing slash."""
    url = config.get("sources", {}).get("ecfr", {}).get("base_url") or DEFAULT_BASE_URL
    return url.rstrip("/")


def data_dir(config: dict) -> Path:
    """Resolve the data directory; relative paths are anchored at the project root."""
    raw = config.get("storage", {}).get("data_dir")
    if not raw:
        return DEFAULT_DATA_DIR
    path = Path(raw)
    return path if path.is_absolute() else PROJECT_ROOT / path


def download_concurrency(config: dict) -> int:
    """Worker pool size, clamped to a sane range."""
    workers = config.get("refresh", {}).get("download_concurrency", 2)
    return max(MIN_DOWNLOAD_CONCURRENCY, min(int(workers), MAX_DOWNLOAD_CONCURRENCY))
