"""
SessionGuard -- Identity Cache & Drift Detector

Decides, for each subject the consumer reports, whether it is a first
observation, continuity, an explicit clear, or drift.

Drift (cached subject A, reported subject B, both non-null) means the
consumer's identity changed without an explicit sign-out. The detector does
not act on it directly: it hands the transition to a callback that schedules
a deferred forced sign-out, and it leaves A cached until that sign-out
completes. While one drift is settling, further mismatches collapse into it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from sessionguard.guard.types import ObservationKind

if TYPE_CHECKING:
    from sessionguard.guard.context import GuardContext

logger = structlog.get_logger("sessionguard.guard.identity")

# on_drift(previous_subject_id, current_subject_id, source)
DriftCallback = Callable[[str, str, str], None]


class IdentityCache:
    """
    The subject last associated with the active context.

    ``generation`` moves on every adoption and every clear, so work that
    started under one authenticated context can tell it has been superseded.
    """

    def __init__(self) -> None:
        self._subject_id: str | None = None
        self._generation: int = 0

    @property
    def subject_id(self) -> str | None:
        return self._subject_id

    @property
    def is_empty(self) -> bool:
        return self._subject_id is None

    @property
    def generation(self) -> int:
        return self._generation

    def adopt(self, subject_id: str) -> None:
        if self._subject_id is not None and self._subject_id != subject_id:
            raise ValueError("cannot adopt a new subject over a cached one; clear first")
        if self._subject_id is None:
            self._generation += 1
        self._subject_id = subject_id

    def clear(self) -> None:
        if self._subject_id is not None:
            self._generation += 1
        self._subject_id = None


class DriftDetector:
    def __init__(self, context: GuardContext, on_drift: DriftCallback) -> None:
        self._context = context
        self._on_drift = on_drift
        self._logger = logger.bind(component="drift_detector")
        self._drift_pending: bool = False
        self._total_drift_events: int = 0

    @property
    def drift_pending(self) -> bool:
        return self._drift_pending

    @property
    def total_drift_events(self) -> int:
        return self._total_drift_events

    def observe(self, new_subject_id: str | None) -> ObservationKind:
        cache = self._context.identity

        if new_subject_id is None:
            previous = cache.subject_id
            self._context.reset()
            self._drift_pending = False
            if previous is not None:
                self._logger.info("subject_cleared", previous_subject_id=previous)
            return ObservationKind.CLEARED

        cached = cache.subject_id
        if cached is None:
            cache.adopt(new_subject_id)
            self._logger.info("subject_adopted", subject_id=new_subject_id)
            return ObservationKind.FIRST_OBSERVATION

        if cached == new_subject_id:
            return ObservationKind.CONTINUITY

        return self.report_drift(cached, new_subject_id, source="observe")

    def report_drift(self, previous: str, current: str, source: str) -> ObservationKind:
        """Flag an identity change. Only the first report per anomaly fires."""
        if self._drift_pending:
            self._logger.debug(
                "drift_already_pending",
                previous_subject_id=previous,
                current_subject_id=current,
                source=source,
            )
            return ObservationKind.DRIFT_PENDING

        self._drift_pending = True
        self._total_drift_events += 1
        self._logger.error(
            "identity_drift_detected",
            previous_subject_id=previous,
            current_subject_id=current,
            source=source,
            security_anomaly=True,
        )
        self._on_drift(previous, current, source)
        return ObservationKind.DRIFT

    def settle(self) -> None:
        """The pending drift has been resolved (cascade ran or context cleared)."""
        self._drift_pending = False
