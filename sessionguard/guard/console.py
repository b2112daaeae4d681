"""
SessionGuard -- Diagnostic Console

Manual entry points into the same primitives the scheduler drives, for
operator-triggered recovery when automatic detection has not caught an
anomaly yet:

  check_now()            one validation tick, outside the schedule
  force_sign_out_now()   the cleanup cascade, with the same idempotency
  report_consistency()   believed vs. provider identity (signs out on mismatch)
  debug_session()        every place session state lives, tokens redacted
  clear_everything()     revoke, broad wipe of every layer, hard reload
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from sessionguard.guard.types import (
    CascadeReport,
    ConsistencyReport,
    SessionDebugReport,
    ValidationTick,
)
from sessionguard.primitives.common import redact

if TYPE_CHECKING:
    from sessionguard.clients.storage import CredentialJar, KeyValueStore
    from sessionguard.guard.cascade import CleanupCascade
    from sessionguard.guard.context import GuardContext
    from sessionguard.guard.health import HealthStateMachine

logger = structlog.get_logger("sessionguard.guard.console")


class DiagnosticConsole:
    def __init__(
        self,
        context: GuardContext,
        health: HealthStateMachine,
        cascade: CleanupCascade,
        ephemeral: KeyValueStore,
        durable: KeyValueStore,
        ambient: CredentialJar,
        get_believed_subject: Callable[[], str | None],
    ) -> None:
        self._context = context
        self._health = health
        self._cascade = cascade
        self._ephemeral = ephemeral
        self._durable = durable
        self._ambient = ambient
        self._get_believed_subject = get_believed_subject
        self._logger = logger.bind(component="diagnostic_console")

    async def check_now(self) -> ValidationTick | None:
        """Run one validation tick. None when a tick is already in flight."""
        tick = await self._health.run_tick(self._get_believed_subject())
        self._logger.info(
            "manual_check_completed",
            outcome=tick.outcome.value if tick else "skipped",
        )
        return tick

    async def force_sign_out_now(self, reason: str = "operator_request") -> CascadeReport:
        self._logger.info("manual_sign_out_requested", reason=reason)
        return await self._cascade.force_sign_out(reason, anomaly=False)

    async def report_consistency(self) -> ConsistencyReport:
        believed = self._get_believed_subject()
        generation = self._context.identity.generation
        session, error = await self._health.probe()
        provider = session.subject_id if session else None
        stale = self._health.belief_changed(believed, generation)
        if stale:
            believed = self._get_believed_subject()

        report = ConsistencyReport(
            believed_subject_id=believed,
            provider_subject_id=provider,
            is_consistent=error is None and believed == provider,
            provider_error=error,
            stale=stale,
            checked_at=self._context.clock(),
        )

        if stale:
            self._logger.info(
                "consistency_check_superseded",
                believed_subject_id=believed,
                provider_subject_id=provider,
            )
        elif believed is not None and provider is not None and believed != provider:
            self._logger.error(
                "consistency_mismatch_detected",
                believed_subject_id=believed,
                provider_subject_id=provider,
                security_anomaly=True,
            )
            await self._cascade.force_sign_out("consistency_mismatch")
        else:
            self._logger.info(
                "consistency_checked",
                is_consistent=report.is_consistent,
                provider_error=error,
            )
        return report

    async def debug_session(self) -> SessionDebugReport:
        session, error = await self._health.probe()
        report = SessionDebugReport(
            has_session=session is not None,
            subject_id=session.subject_id if session else None,
            expires_at=session.expires_at if session else None,
            access_token_prefix=redact(session.access_token) if session else None,
            provider_error=error,
            believed_subject_id=self._get_believed_subject(),
            health=self._context.health.model_copy(),
            checked_at=self._context.clock(),
        )

        namespace = self._cascade.namespace
        layers = (
            (self._ephemeral.name, self._ephemeral.list_keys),
            (self._durable.name, self._durable.list_keys),
            (self._ambient.name, self._ambient.names),
        )
        for name, list_fn in layers:
            try:
                keys = await list_fn()
            except Exception as exc:
                self._logger.warning("debug_layer_unlistable", layer=name, error=str(exc))
                continue
            report.credential_keys[name] = sorted(k for k in keys if namespace.matches(k))
        return report

    async def clear_everything(self) -> CascadeReport:
        """Last resort: ignore the namespace, wipe every layer, reload."""
        self._logger.warning("clear_everything_requested")
        self._cascade.rearm()
        return await self._cascade.force_sign_out(
            "operator_clear_everything",
            anomaly=False,
            broad=True,
        )
