"""
SessionGuard -- Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides)

Every tunable parameter of the guard lives here, including the escalation
threshold, the expiry warning window and the drift settle window.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class ValidationConfig(BaseModel):
    # Background-prone clients lose session continuity more often, so they
    # are checked more frequently.
    client_class: Literal["mobile", "desktop"] = "desktop"
    mobile_interval_s: float = Field(180.0, gt=0)
    desktop_interval_s: float = Field(300.0, gt=0)
    interval_s: float | None = Field(None, gt=0)  # Explicit override
    oracle_timeout_s: float = Field(10.0, gt=0)
    auto_start: bool = True

    @property
    def effective_interval_s(self) -> float:
        if self.interval_s is not None:
            return self.interval_s
        if self.client_class == "mobile":
            return self.mobile_interval_s
        return self.desktop_interval_s


class EscalationConfig(BaseModel):
    warning_threshold: int = Field(3, ge=1)
    expiry_warning_window_s: float = Field(300.0, ge=0)
    settle_window_ms: int = Field(100, ge=0)


class CleanupConfig(BaseModel):
    credential_prefixes: list[str] = Field(
        default_factory=lambda: ["sb-", "temple-keepers-auth"]
    )
    credential_markers: list[str] = Field(
        default_factory=lambda: ["auth", "supabase", "token"]
    )
    revoke_scope: Literal["global", "local", "others"] = "global"
    reload_on_revoke_failure: bool = True

    @model_validator(mode="after")
    def _require_namespace(self) -> CleanupConfig:
        # An empty namespace would match nothing and silently leave credentials behind
        if not self.credential_prefixes and not self.credential_markers:
            raise ValueError("cleanup requires at least one credential prefix or marker")
        return self


class OracleConfig(BaseModel):
    strategy: Literal["http", "memory"] = "memory"
    url: str = ""
    api_key: str = ""
    storage_key: str = "temple-keepers-auth"
    timeout_s: float = Field(10.0, gt=0)

    @model_validator(mode="after")
    def _strip_api_key(self) -> OracleConfig:
        if self.api_key:
            object.__setattr__(self, "api_key", self.api_key.strip())
        return self


class StorageConfig(BaseModel):
    durable_path: str = "data/durable_store.json"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Config ──────────────────────────────────────────────────


class SessionGuardConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONGUARD_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: str | Path | None = None) -> SessionGuardConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    # Inject secrets and deployment specifics from environment
    if oracle_url := os.environ.get("SESSIONGUARD_ORACLE__URL"):
        raw.setdefault("oracle", {})["url"] = oracle_url
    if oracle_key := os.environ.get("SESSIONGUARD_ORACLE_API_KEY"):
        raw.setdefault("oracle", {})["api_key"] = oracle_key
    if strategy := os.environ.get("SESSIONGUARD_ORACLE__STRATEGY"):
        raw.setdefault("oracle", {})["strategy"] = strategy
    if client_class := os.environ.get("SESSIONGUARD_CLIENT_CLASS"):
        raw.setdefault("validation", {})["client_class"] = client_class.lower()
    if durable_path := os.environ.get("SESSIONGUARD_STORAGE__DURABLE_PATH"):
        raw.setdefault("storage", {})["durable_path"] = durable_path

    return SessionGuardConfig(**raw)
