"""
SessionGuard -- Guard Type Definitions

Data types for the session consistency guard: health state, validation
ticks, drift observations, cleanup cascade results and diagnostic reports.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import Field

from sessionguard.primitives.common import GuardBaseModel, new_id, utc_now

# ─── Enums ────────────────────────────────────────────────────────


class TickOutcome(enum.StrEnum):
    """Result of one validation tick."""

    OK = "ok"
    PROVIDER_ERROR = "provider_error"
    SESSION_ABSENT = "session_absent"
    IDENTITY_MISMATCH = "identity_mismatch"
    EXPIRING_SOON = "expiring_soon"
    STALE = "stale"


class ObservationKind(enum.StrEnum):
    """How a reported subject relates to the cached one."""

    FIRST_OBSERVATION = "first_observation"
    CONTINUITY = "continuity"
    CLEARED = "cleared"
    DRIFT = "drift"
    # Drift already detected and its sign-out is still settling
    DRIFT_PENDING = "drift_pending"


class CascadeStage(enum.StrEnum):
    REMOTE_REVOKE = "remote_revoke"
    EPHEMERAL_WIPE = "ephemeral_wipe"
    DURABLE_WIPE = "durable_wipe"
    AMBIENT_WIPE = "ambient_wipe"
    HARD_RELOAD = "hard_reload"


# ─── Health ───────────────────────────────────────────────────────


class HealthState(GuardBaseModel):
    """
    The guard's belief about session soundness.

    warning_count is reset to zero by a verified tick and incremented by
    every failed one; it is never decremented gradually.
    """

    is_valid: bool = True
    last_checked_at: datetime = Field(default_factory=utc_now)
    warning_count: int = Field(0, ge=0)

    def record_verified(self, now: datetime) -> None:
        self.is_valid = True
        self.last_checked_at = now
        self.warning_count = 0

    def record_warning(self, now: datetime) -> None:
        self.is_valid = False
        self.last_checked_at = now
        self.warning_count += 1

    def reset(self, now: datetime) -> None:
        self.record_verified(now)


class ValidationTick(GuardBaseModel):
    """One execution of the periodic check."""

    id: str = Field(default_factory=new_id)
    outcome: TickOutcome
    believed_subject_id: str | None = None
    provider_subject_id: str | None = None
    error: str | None = None
    warning_count: int = 0
    escalated: bool = False
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime = Field(default_factory=utc_now)


# ─── Cleanup Cascade ──────────────────────────────────────────────


class RevokeResult(GuardBaseModel):
    ok: bool
    error: str | None = None


class WipeResult(GuardBaseModel):
    """Outcome of wiping one persistence layer."""

    layer: str
    attempted: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)
    # Set when the layer could not even be enumerated
    listing_error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failures and self.listing_error is None


class CascadeReport(GuardBaseModel):
    """Everything one cleanup cascade attempted and achieved."""

    id: str = Field(default_factory=new_id)
    reason: str
    anomaly: bool = True
    broad: bool = False
    revoke: RevokeResult | None = None
    wipes: list[WipeResult] = Field(default_factory=list)
    stages: list[CascadeStage] = Field(default_factory=list)
    reloaded: bool = False
    reload_error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def clean(self) -> bool:
        revoke_ok = self.revoke is None or self.revoke.ok
        return revoke_ok and all(w.ok for w in self.wipes)


# ─── Diagnostics ──────────────────────────────────────────────────


class ConsistencyReport(GuardBaseModel):
    believed_subject_id: str | None = None
    provider_subject_id: str | None = None
    is_consistent: bool
    provider_error: str | None = None
    # The belief changed while the provider was being asked; nothing was acted on
    stale: bool = False
    checked_at: datetime = Field(default_factory=utc_now)


class SessionDebugReport(GuardBaseModel):
    """Out-of-band snapshot of every place session state lives."""

    has_session: bool = False
    subject_id: str | None = None
    expires_at: datetime | None = None
    access_token_prefix: str | None = None
    provider_error: str | None = None
    believed_subject_id: str | None = None
    health: HealthState = Field(default_factory=HealthState)
    credential_keys: dict[str, list[str]] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=utc_now)
