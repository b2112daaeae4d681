"""
SessionGuard -- Health State Machine

One validation tick asks the session oracle for the current session and
folds the answer into HealthState:

  provider_error    → warning, retried next tick (no sign-out on its own)
  session_absent    → warning + immediate sign-out (nothing to settle)
  identity_mismatch → warning + deferred drift sign-out
  expiring_soon     → informational; refresh is expected before expiry
  ok                → warnings reset, session valid
  stale             → belief changed while the lookup was out; nothing recorded

Independently of the individual outcome, the EscalationGuard trips the
cleanup cascade as soon as warning_count reaches the threshold.

Ticks never overlap: the oracle sees at most one outstanding lookup per
guard. A tick requested while another is in flight is skipped.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from sessionguard.guard.types import CascadeReport, HealthState, TickOutcome, ValidationTick

if TYPE_CHECKING:
    from sessionguard.clients.oracle import SessionOracle
    from sessionguard.guard.context import GuardContext
    from sessionguard.guard.identity import DriftDetector
    from sessionguard.primitives.session import Session

logger = structlog.get_logger("sessionguard.guard.health")

SignOutFn = Callable[[str], Awaitable[CascadeReport]]
BelievedSubjectFn = Callable[[], str | None]


class EscalationGuard:
    """Circuit breaker over consecutive failed ticks, whatever their outcome."""

    def __init__(self, threshold: int = 3) -> None:
        if threshold < 1:
            raise ValueError("escalation threshold must be at least 1")
        self.threshold = threshold

    def should_escalate(self, health: HealthState) -> bool:
        return health.warning_count >= self.threshold


class HealthStateMachine:
    def __init__(
        self,
        context: GuardContext,
        oracle: SessionOracle,
        detector: DriftDetector,
        sign_out: SignOutFn,
        escalation: EscalationGuard | None = None,
        get_believed_subject: BelievedSubjectFn | None = None,
    ) -> None:
        self._context = context
        self._get_believed_subject = get_believed_subject
        self._oracle = oracle
        self._detector = detector
        self._sign_out = sign_out
        self._escalation = escalation or EscalationGuard(
            context.config.escalation.warning_threshold
        )
        self._logger = logger.bind(component="health_state_machine")
        self._lock = asyncio.Lock()

        # Metrics
        self._outcomes: Counter[TickOutcome] = Counter()
        self._skipped_ticks: int = 0
        self._escalations: int = 0

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "ticks": {outcome.value: self._outcomes[outcome] for outcome in TickOutcome},
            "skipped_ticks": self._skipped_ticks,
            "escalations": self._escalations,
        }

    async def probe(self) -> tuple[Session | None, str | None]:
        """
        Fetch the provider's session without touching HealthState.

        Waits for any in-flight tick instead of overlapping it. Returns the
        session (or None) and the provider error text, if the lookup failed.
        """
        async with self._lock:
            try:
                return await self._query(), None
            except Exception as exc:
                return None, _describe(exc)

    async def run_tick(self, believed_subject_id: str | None) -> ValidationTick | None:
        """Execute one validation. Returns None when skipped due to overlap."""
        if self._lock.locked():
            self._skipped_ticks += 1
            self._logger.debug("validation_tick_skipped", reason="previous_tick_in_flight")
            return None

        async with self._lock:
            tick = await self._evaluate(believed_subject_id)
            self._outcomes[tick.outcome] += 1
            if tick.outcome == TickOutcome.STALE:
                return tick

            if tick.outcome == TickOutcome.SESSION_ABSENT:
                await self._sign_out("session_absent")

            if self._escalation.should_escalate(self._context.health):
                tick.escalated = True
                self._escalations += 1
                self._logger.error(
                    "session_warnings_escalated",
                    warning_count=self._context.health.warning_count,
                    threshold=self._escalation.threshold,
                    security_anomaly=True,
                )
                await self._sign_out("warning_threshold_reached")

            return tick

    async def _query(self) -> Session | None:
        return await asyncio.wait_for(
            self._oracle.get_current_session(),
            timeout=self._context.config.validation.oracle_timeout_s,
        )

    async def _evaluate(self, believed: str | None) -> ValidationTick:
        health = self._context.health
        started_at = self._context.clock()
        generation = self._context.identity.generation

        session: Session | None = None
        error: str | None = None
        try:
            session = await self._query()
        except TimeoutError:
            error = "timeout"
        except Exception as exc:
            error = _describe(exc)

        if self.belief_changed(believed, generation):
            self._logger.info(
                "validation_tick_stale",
                believed_subject_id=believed,
                current_subject_id=self._current_belief(believed),
            )
            return self._finish(TickOutcome.STALE, believed, session, started_at)

        if error is not None:
            return self._warn(TickOutcome.PROVIDER_ERROR, believed, started_at, error=error)

        now = self._context.clock()

        if believed is None:
            # Nobody to validate; the provider's view is not the consumer's concern yet
            health.record_verified(now)
            return self._finish(TickOutcome.OK, believed, session, started_at)

        if session is None:
            tick = self._warn(TickOutcome.SESSION_ABSENT, believed, started_at)
            self._logger.warning("session_lost_during_validation", believed_subject_id=believed)
            return tick

        if session.subject_id != believed:
            tick = self._warn(
                TickOutcome.IDENTITY_MISMATCH,
                believed,
                started_at,
                provider_subject_id=session.subject_id,
            )
            self._detector.report_drift(believed, session.subject_id, source="validation")
            return tick

        window = timedelta(seconds=self._context.config.escalation.expiry_warning_window_s)
        remaining = session.time_until_expiry(now)
        health.record_verified(now)
        if remaining is not None and timedelta(0) < remaining < window:
            self._logger.info(
                "session_expiring_soon",
                subject_id=believed,
                seconds_remaining=int(remaining.total_seconds()),
            )
            return self._finish(TickOutcome.EXPIRING_SOON, believed, session, started_at)

        return self._finish(TickOutcome.OK, believed, session, started_at)

    def belief_changed(self, believed: str | None, generation: int) -> bool:
        """True when the context moved on since a lookup for ``believed`` began."""
        if self._context.identity.generation != generation:
            return True
        return self._current_belief(believed) != believed

    def _current_belief(self, fallback: str | None) -> str | None:
        if self._get_believed_subject is None:
            return fallback
        return self._get_believed_subject()

    def _warn(
        self,
        outcome: TickOutcome,
        believed: str | None,
        started_at: datetime,
        error: str | None = None,
        provider_subject_id: str | None = None,
    ) -> ValidationTick:
        now = self._context.clock()
        self._context.health.record_warning(now)
        if outcome == TickOutcome.PROVIDER_ERROR:
            self._logger.warning(
                "session_validation_error",
                error=error,
                warning_count=self._context.health.warning_count,
            )
        return ValidationTick(
            outcome=outcome,
            believed_subject_id=believed,
            provider_subject_id=provider_subject_id,
            error=error,
            warning_count=self._context.health.warning_count,
            started_at=started_at,
            finished_at=now,
        )

    def _finish(
        self,
        outcome: TickOutcome,
        believed: str | None,
        session: Session | None,
        started_at: datetime,
    ) -> ValidationTick:
        return ValidationTick(
            outcome=outcome,
            believed_subject_id=believed,
            provider_subject_id=session.subject_id if session else None,
            warning_count=self._context.health.warning_count,
            started_at=started_at,
            finished_at=self._context.clock(),
        )


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
