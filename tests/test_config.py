"""Tests for config loading, environment overrides and derived settings."""

import json

from cfr_metrics.config import (
    DEFAULT_BASE_URL,
    MAX_DOWNLOAD_CONCURRENCY,
    apply_env_overrides,
    base_url,
    data_dir,
    download_concurrency,
    load_config,
)
from cfr_metrics.paths import DEFAULT_DATA_DIR, PROJECT_ROOT


class TestLoadConfig:

    def test_shipped_config_loads(self, monkeypatch):
        for var in ("ECFR_BASE_URL", "DATA_DIR", "ECFR_DOWNLOAD_CONCURRENCY"):
            monkeypatch.delenv(var, raising=False)
        config = load_config()
        assert base_url(config) == "https://www.ecfr.gov"
        assert config["refresh"]["on_download_failure"] == "skip"
        assert config["resilience"]["max_attempts"] <= 5

    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ECFR_BASE_URL", raising=False)
        config = load_config(tmp_path / "absent.json")
        assert base_url(config) == DEFAULT_BASE_URL

    def test_file_values_read(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ECFR_DOWNLOAD_CONCURRENCY", raising=False)
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"refresh": {"download_concurrency": 4}}), encoding="utf-8")
        assert download_concurrency(load_config(path)) == 4


class TestEnvOverrides:

    def test_overrides_applied(self):
        config = apply_env_overrides({}, {
            "ECFR_BASE_URL": "http://mirror.local/",
            "DATA_DIR": "/var/lib/ecfr",
            "ECFR_DOWNLOAD_CONCURRENCY": "3",
        })
        assert base_url(config) == "http://mirror.local"
        assert data_dir(config).as_posix() == "/var/lib/ecfr"
        assert download_concurrency(config) == 3

    def test_blank_values_ignored(self):
        config = {"sources": {"ecfr": {"base_url": "https://x.test"}}}
        apply_env_overrides(config, {"ECFR_BASE_URL": "", "DATA_DIR": ""})
        assert base_url(config) == "https://x.test"
        assert "storage" not in config

    def test_non_integer_concurrency_ignored(self):
        config = apply_env_overrides({}, {"ECFR_DOWNLOAD_CONCURRENCY": "lots"})
        assert "refresh" not in config


class TestDerivedSettings:

    def test_relative_data_dir_anchored_at_project_root(self):
        assert data_dir({"storage": {"data_dir": "data"}}) == PROJECT_ROOT / "data"
        assert data_dir({}) == DEFAULT_DATA_DIR

    def test_concurrency_clamped(self):
        assert download_concurrency({}) == 2
        assert download_concurrency({"refresh": {"download_concurrency": 0}}) == 1
        assert download_concurrency({"refresh": {"download_concurrency": 99}}) == MAX_DOWNLOAD_CONCURRENCY
