"""
Tests for settings loading.

Covers: defaults, JSON config files, unknown keys, malformed files and
environment overrides (database path, worker count, feed credentials).
"""

import json
import logging

import pytest

import citadel_risk.config as config_mod
from citadel_risk.config import Settings, load_settings
from citadel_risk.risk.store import DEFAULT_DB_PATH

ENV_VARS = (
    "CITADEL_RISK_CONFIG",
    "CITADEL_RISK_DB",
    "CITADEL_RISK_AUDIT_DIR",
    "CITADEL_RISK_MAX_WORKERS",
    "NVD_API_KEY",
    "OTX_API_KEY",
    "TAXII_USERNAME",
    "TAXII_PASSWORD",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # keep a developer's .env out of the results
    monkeypatch.setattr(config_mod, "load_dotenv", lambda *a, **kw: False)


def _write(tmp_path, data):
    path = tmp_path / "citadel-risk.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def _feed(settings, feed_id):
    return next(f for f in settings.feeds if f["id"] == feed_id)


class TestDefaults:
    def test_defaults(self):
        settings = load_settings()
        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.max_workers == 4
        assert settings.auto_promote_threshold == 0.8
        assert settings.rules == []
        assert [f["id"] for f in settings.feeds] == ["cisa-kev", "nvd", "otx"]
        assert _feed(settings, "otx")["enabled"] is False

    def test_default_feeds_are_independent(self):
        a, b = Settings(), Settings()
        a.feeds[0]["enabled"] = False
        assert "enabled" not in b.feeds[0]


class TestConfigFile:
    def test_load_file(self, tmp_path):
        path = _write(tmp_path, {
            "db_path": "/var/lib/citadel/risks.db",
            "feeds": [],
            "rules": [{"id": "kev", "confidenceThreshold": 0.9}],
            "organization": {"industry": "finance"},
        })
        settings = load_settings(path)
        assert settings.db_path == "/var/lib/citadel/risks.db"
        assert settings.feeds == []
        assert settings.rules[0]["id"] == "kev"
        assert settings.organization == {"industry": "finance"}

    def test_path_from_environment(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"max_workers": 8})
        monkeypatch.setenv("CITADEL_RISK_CONFIG", str(path))
        assert load_settings().max_workers == 8

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        path = _write(tmp_path, {"max_workers": 2, "colour": "blue"})
        with caplog.at_level(logging.WARNING, logger="citadel_risk.config"):
            settings = load_settings(path)
        assert settings.max_workers == 2
        assert "colour" in caplog.text

    def test_non_object_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(_write(tmp_path, ["not", "an", "object"]))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.json")


class TestEnvironment:
    def test_db_and_audit_dir(self, monkeypatch):
        monkeypatch.setenv("CITADEL_RISK_DB", "/tmp/risks.db")
        monkeypatch.setenv("CITADEL_RISK_AUDIT_DIR", "/tmp/audit")
        settings = load_settings()
        assert settings.db_path == "/tmp/risks.db"
        assert settings.audit_log_dir == "/tmp/audit"

    def test_env_beats_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CITADEL_RISK_DB", "/tmp/env.db")
        settings = load_settings(_write(tmp_path, {"db_path": "/tmp/file.db"}))
        assert settings.db_path == "/tmp/env.db"

    def test_max_workers(self, monkeypatch):
        monkeypatch.setenv("CITADEL_RISK_MAX_WORKERS", "0")
        assert load_settings().max_workers == 1
        monkeypatch.setenv("CITADEL_RISK_MAX_WORKERS", "lots")
        assert load_settings().max_workers == 4

    def test_nvd_key_injected(self, monkeypatch):
        monkeypatch.setenv("NVD_API_KEY", "nvd-secret")
        assert _feed(load_settings(), "nvd")["api_key"] == "nvd-secret"

    def test_configured_key_not_overwritten(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NVD_API_KEY", "from-env")
        path = _write(tmp_path, {"feeds": [{"id": "nvd", "type": "nvd", "api_key": "from-file"}]})
        assert _feed(load_settings(path), "nvd")["api_key"] == "from-file"

    def test_otx_key_enables_feed(self, monkeypatch):
        monkeypatch.setenv("OTX_API_KEY", "otx-secret")
        otx = _feed(load_settings(), "otx")
        assert otx["api_key"] == "otx-secret"
        assert otx["enabled"] is True

    def test_taxii_credentials(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TAXII_USERNAME", "analyst")
        monkeypatch.setenv("TAXII_PASSWORD", "hunter2")
        path = _write(tmp_path, {"feeds": [
            {"id": "isac", "type": "stix_taxii", "url": "https://taxii.example.org/taxii2/"},
        ]})
        options = _feed(load_settings(path), "isac")["options"]
        assert options == {"username": "analyst", "password": "hunter2"}
