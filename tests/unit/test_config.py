"""Tests for configuration loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from sessionguard.config import (
    CleanupConfig,
    EscalationConfig,
    SessionGuardConfig,
    ValidationConfig,
    load_config,
)

_ENV_VARS = (
    "SESSIONGUARD_ORACLE__URL",
    "SESSIONGUARD_ORACLE_API_KEY",
    "SESSIONGUARD_ORACLE__STRATEGY",
    "SESSIONGUARD_CLIENT_CLASS",
    "SESSIONGUARD_STORAGE__DURABLE_PATH",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_defaults(self):
        config = SessionGuardConfig()
        assert config.validation.effective_interval_s == 300.0
        assert config.escalation.warning_threshold == 3
        assert config.escalation.settle_window_ms == 100
        assert config.cleanup.credential_prefixes == ["sb-", "temple-keepers-auth"]
        assert config.cleanup.revoke_scope == "global"
        assert config.oracle.strategy == "memory"

    def test_mobile_interval(self):
        assert ValidationConfig(client_class="mobile").effective_interval_s == 180.0

    def test_explicit_interval_wins(self):
        config = ValidationConfig(client_class="mobile", interval_s=5)
        assert config.effective_interval_s == 5


class TestValidation:
    def test_threshold_must_be_positive(self):
        with pytest.raises(ValidationError):
            EscalationConfig(warning_threshold=0)

    def test_empty_namespace_rejected(self):
        with pytest.raises(ValidationError):
            CleanupConfig(credential_prefixes=[], credential_markers=[])

    def test_unknown_revoke_scope_rejected(self):
        with pytest.raises(ValidationError):
            CleanupConfig(revoke_scope="everywhere")


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config.validation.client_class == "desktop"

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "guard.yaml"
        path.write_text(
            "validation:\n"
            "  client_class: mobile\n"
            "escalation:\n"
            "  warning_threshold: 5\n"
            "cleanup:\n"
            "  credential_prefixes: ['app-']\n"
        )
        config = load_config(path)
        assert config.validation.effective_interval_s == 180.0
        assert config.escalation.warning_threshold == 5
        assert config.cleanup.credential_prefixes == ["app-"]

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "guard.yaml"
        path.write_text("oracle:\n  strategy: memory\n  url: https://yaml.example.test\n")
        monkeypatch.setenv("SESSIONGUARD_ORACLE__URL", "https://env.example.test")
        monkeypatch.setenv("SESSIONGUARD_ORACLE_API_KEY", "  secret-key\n")
        monkeypatch.setenv("SESSIONGUARD_ORACLE__STRATEGY", "http")
        monkeypatch.setenv("SESSIONGUARD_CLIENT_CLASS", "MOBILE")
        monkeypatch.setenv("SESSIONGUARD_STORAGE__DURABLE_PATH", str(tmp_path / "d.json"))

        config = load_config(path)

        assert config.oracle.url == "https://env.example.test"
        assert config.oracle.api_key == "secret-key"
        assert config.oracle.strategy == "http"
        assert config.validation.client_class == "mobile"
        assert config.storage.durable_path == str(tmp_path / "d.json")
