"""
SessionGuard -- Session Primitive

The remote provider's authoritative session, as last observed. Snapshots
are read-only: every validation tick fetches a fresh one.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import Field

from sessionguard.primitives.common import GuardBaseModel, utc_now


class Session(GuardBaseModel):
    """Snapshot of the provider's current session."""

    model_config = {"frozen": True, "populate_by_name": True, "from_attributes": True}

    subject_id: str
    expires_at: datetime | None = None
    fetched_at: datetime = Field(default_factory=utc_now)
    # Only ever surfaced redacted; excluded from dumps
    access_token: str | None = Field(default=None, repr=False, exclude=True)

    def time_until_expiry(self, now: datetime) -> timedelta | None:
        if self.expires_at is None:
            return None
        return self.expires_at - now
