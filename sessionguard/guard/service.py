"""
SessionGuard -- Guard Service

Composes the session consistency guard from its collaborators and exposes
the consumer-facing surface:

  observe(subject_id)        consumer's believed subject changed (None = logged out)
  on_forced_sign_out(cb)     called once per completed cleanup cascade
  start() / stop()           validation schedule lifecycle
  console                    DiagnosticConsole over the same primitives
  health() / stats           self-health report

Lifecycle:
  - first subject adopted  → cascade re-armed, validation scheduler started
  - observe(None)          → scheduler stopped, context reset, pending drift
                             sign-out cancelled (explicit logout supersedes it)
  - drift                  → forced sign-out after the settle window, unless the
                             context was cleared or re-adopted meanwhile
  - cascade completed      → context reset, scheduler stopped, callbacks fired

Usable as an async context manager; leaving the block stops everything.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any

import structlog

from sessionguard.guard.cascade import CleanupCascade, ReloadHook
from sessionguard.guard.console import DiagnosticConsole
from sessionguard.guard.context import GuardContext
from sessionguard.guard.health import EscalationGuard, HealthStateMachine
from sessionguard.guard.identity import DriftDetector
from sessionguard.guard.scheduler import BelievedSubjectFn, ValidationScheduler
from sessionguard.guard.types import CascadeReport, ObservationKind

if TYPE_CHECKING:
    from sessionguard.clients.oracle import SessionOracle
    from sessionguard.clients.storage import CredentialJar, KeyValueStore
    from sessionguard.config import SessionGuardConfig

logger = structlog.get_logger("sessionguard.guard.service")

# Callback signature: async def handler(report: CascadeReport) -> None
ForcedSignOutCallback = Callable[[CascadeReport], Coroutine[Any, Any, None]]


class SessionGuard:
    system_id: str = "session_guard"

    def __init__(
        self,
        oracle: SessionOracle,
        ephemeral: KeyValueStore,
        durable: KeyValueStore,
        ambient: CredentialJar,
        config: SessionGuardConfig | None = None,
        context: GuardContext | None = None,
        reload_hook: ReloadHook | None = None,
    ) -> None:
        if context is None:
            context = GuardContext() if config is None else GuardContext(config=config)
        self._context = context
        self._config = context.config
        self._oracle = oracle
        self._logger = logger.bind(component="session_guard")

        # The consumer's latest belief; may differ from the cached identity while drift settles
        self._believed: str | None = None
        self._listeners: list[ForcedSignOutCallback] = []
        self._deferred: asyncio.Task[None] | None = None
        self._deferred_settling: bool = False

        self._detector = DriftDetector(context, on_drift=self._on_drift)
        self._cascade = CleanupCascade(
            oracle=oracle,
            ephemeral=ephemeral,
            durable=durable,
            ambient=ambient,
            config=self._config.cleanup,
            clock=context.clock,
            reload_hook=reload_hook,
            revoke_timeout_s=self._config.validation.oracle_timeout_s,
        )
        self._cascade.add_completion_hook(self._after_cascade)
        self._health = HealthStateMachine(
            context=context,
            oracle=oracle,
            detector=self._detector,
            sign_out=self._sign_out,
            escalation=EscalationGuard(self._config.escalation.warning_threshold),
            get_believed_subject=lambda: self._believed,
        )
        self._scheduler = ValidationScheduler(self._health.run_tick, sleep=context.sleep)
        self.console = DiagnosticConsole(
            context=context,
            health=self._health,
            cascade=self._cascade,
            ephemeral=ephemeral,
            durable=durable,
            ambient=ambient,
            get_believed_subject=lambda: self._believed,
        )

    # ─── Consumer Surface ────────────────────────────────────────────

    @property
    def context(self) -> GuardContext:
        return self._context

    @property
    def believed_subject_id(self) -> str | None:
        return self._believed

    @property
    def cascade(self) -> CleanupCascade:
        return self._cascade

    @property
    def scheduler(self) -> ValidationScheduler:
        return self._scheduler

    @property
    def drift_sign_out_pending(self) -> bool:
        return self._deferred is not None and not self._deferred.done()

    def on_forced_sign_out(self, callback: ForcedSignOutCallback) -> None:
        """Register a callback invoked after every completed cleanup cascade."""
        self._listeners.append(callback)

    async def observe(self, subject_id: str | None) -> ObservationKind:
        """Report the consumer's currently believed subject (None after logout)."""
        self._believed = subject_id
        kind = self._detector.observe(subject_id)

        if kind == ObservationKind.CLEARED:
            await self._cancel_deferred()
            await self._scheduler.stop()
        elif kind == ObservationKind.FIRST_OBSERVATION:
            self._cascade.rearm()
            if self._config.validation.auto_start and not self._scheduler.is_running:
                self.start()
        return kind

    # ─── Lifecycle ───────────────────────────────────────────────────

    def start(
        self,
        get_believed_subject: BelievedSubjectFn | None = None,
        interval_s: float | None = None,
    ) -> asyncio.Task[None]:
        """Start periodic validation. Returns the scheduler's task handle."""
        return self._scheduler.start(
            get_believed_subject or (lambda: self._believed),
            interval_s or self._config.validation.effective_interval_s,
        )

    async def stop(self) -> None:
        """Dispose of the guard's background work. Safe to call repeatedly."""
        await self._cancel_deferred()
        await self._scheduler.stop()

    async def close(self) -> None:
        """Stop background work and release the oracle's resources."""
        await self.stop()
        await self._oracle.close()

    async def __aenter__(self) -> SessionGuard:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ─── Drift & Sign-out ────────────────────────────────────────────

    def _on_drift(self, previous: str, current: str, source: str) -> None:
        self._deferred_settling = True
        self._deferred = asyncio.create_task(
            self._deferred_sign_out(
                f"identity_drift:{source}",
                self._context.identity.generation,
            ),
            name="session_guard_drift_sign_out",
        )

    async def _deferred_sign_out(self, reason: str, generation: int) -> None:
        try:
            # Let a concurrent legitimate auth transition land first
            await self._context.sleep(self._context.settle_window_s)
            self._deferred_settling = False
            if self._context.identity.generation != generation:
                self._logger.info("deferred_sign_out_superseded", reason=reason)
                if self._deferred is asyncio.current_task():
                    self._detector.settle()
                return
            await self._sign_out(reason)
        except asyncio.CancelledError:
            self._logger.info("deferred_sign_out_cancelled", reason=reason)
            raise
        except Exception as exc:
            self._logger.error("deferred_sign_out_error", reason=reason, error=str(exc))
        finally:
            self._deferred_settling = False

    async def _cancel_deferred(self) -> None:
        task, self._deferred = self._deferred, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sign_out(self, reason: str) -> CascadeReport:
        return await self._cascade.force_sign_out(reason, anomaly=True)

    async def _after_cascade(self, report: CascadeReport) -> None:
        self._detector.settle()
        self._context.reset()
        self._believed = None
        if self._deferred_settling:
            await self._cancel_deferred()
        await self._scheduler.stop()

        for callback in list(self._listeners):
            try:
                await callback(report)
            except Exception as exc:
                self._logger.error(
                    "forced_sign_out_callback_error",
                    callback=getattr(callback, "__name__", str(callback)),
                    error=str(exc),
                )

    # ─── Health ──────────────────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        state = self._context.health
        return {
            "status": "healthy" if state.is_valid else "degraded",
            "is_valid": state.is_valid,
            "warning_count": state.warning_count,
            "last_checked_at": state.last_checked_at.isoformat(),
            "believed_subject_id": self._believed,
            "cached_subject_id": self._context.identity.subject_id,
            "scheduler_running": self._scheduler.is_running,
            "cascade_in_progress": self._cascade.in_progress,
            "drift_sign_out_pending": self.drift_sign_out_pending,
        }

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "health": self._health.stats,
            "scheduler": self._scheduler.stats,
            "cascade": self._cascade.stats,
            "drift_events": self._detector.total_drift_events,
        }
