"""
SessionGuard -- Common Primitives

Shared base model and utilities used across all guard components.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def redact(secret: str | None, keep: int = 20) -> str | None:
    """Return only the leading characters of a secret, for diagnostics."""
    if not secret:
        return None
    if len(secret) <= keep:
        return secret[: max(keep // 4, 1)] + "..."
    return secret[:keep] + "..."


class GuardBaseModel(BaseModel):
    """Base model for all guard primitives."""

    model_config = {"populate_by_name": True, "from_attributes": True}
