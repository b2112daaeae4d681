"""
SessionGuard -- Primitives

Shared base classes and utilities used across the guard.
"""

from sessionguard.primitives.common import GuardBaseModel, new_id, redact, utc_now
from sessionguard.primitives.session import Session

__all__ = ["GuardBaseModel", "Session", "new_id", "redact", "utc_now"]
