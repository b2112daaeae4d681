"""
SessionGuard -- Cleanup Cascade

The fail-safe sign-out. Stages, in order:

  1. remote revoke       politely end the session server-side
  2. ephemeral wipe      credential-namespaced keys in the per-process store
  3. durable wipe        credential-namespaced keys in the persistent store
  4. ambient wipe        credential-namespaced ambient artifacts (cookies)
  5. hard reload         only when the revoke raised, or on a broad wipe

Every stage runs regardless of the ones before it; each wipe reports a
WipeResult per layer instead of raising. A failed revoke leaves the server
side uncertain, so the cascade escalates to a full reload, which is defined
to always succeed.

The cascade runs at most once per anomaly. A call while one is in flight
joins it; a call after completion returns the finished report until
rearm() is called for a new authenticated context.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any

import structlog

from sessionguard.guard.types import CascadeReport, CascadeStage, RevokeResult, WipeResult

if TYPE_CHECKING:
    from sessionguard.clients.oracle import SessionOracle
    from sessionguard.clients.storage import CredentialJar, KeyValueStore
    from sessionguard.config import CleanupConfig
    from sessionguard.guard.context import Clock

logger = structlog.get_logger("sessionguard.guard.cascade")

ReloadHook = Callable[[], Awaitable[None]]
CompletionHook = Callable[[CascadeReport], Awaitable[None]]


class CredentialNamespace:
    """Recognises keys that hold credential material."""

    def __init__(self, prefixes: Iterable[str], markers: Iterable[str]) -> None:
        self.prefixes = tuple(prefixes)
        self.markers = tuple(m.lower() for m in markers)

    @classmethod
    def from_config(cls, config: CleanupConfig) -> CredentialNamespace:
        return cls(config.credential_prefixes, config.credential_markers)

    def matches(self, key: str) -> bool:
        if key.startswith(self.prefixes):
            return True
        lowered = key.lower()
        return any(marker in lowered for marker in self.markers)


class CleanupCascade:
    def __init__(
        self,
        oracle: SessionOracle,
        ephemeral: KeyValueStore,
        durable: KeyValueStore,
        ambient: CredentialJar,
        config: CleanupConfig,
        clock: Clock,
        reload_hook: ReloadHook | None = None,
        revoke_timeout_s: float = 10.0,
    ) -> None:
        self._oracle = oracle
        self._ephemeral = ephemeral
        self._durable = durable
        self._ambient = ambient
        self._config = config
        self._clock = clock
        self._reload_hook = reload_hook or self._clear_all_layers
        self._revoke_timeout_s = revoke_timeout_s
        self.namespace = CredentialNamespace.from_config(config)
        self._logger = logger.bind(component="cleanup_cascade")

        self._inflight: asyncio.Task[CascadeReport] | None = None
        self._completed: CascadeReport | None = None
        self._completion_hooks: list[CompletionHook] = []

        # Metrics
        self._runs: int = 0
        self._joined: int = 0
        self._reloads: int = 0

    # ─── State ───────────────────────────────────────────────────────

    @property
    def in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def last_report(self) -> CascadeReport | None:
        return self._completed

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "runs": self._runs,
            "joined_calls": self._joined,
            "reloads": self._reloads,
            "in_progress": self.in_progress,
        }

    def add_completion_hook(self, hook: CompletionHook) -> None:
        self._completion_hooks.append(hook)

    def rearm(self) -> None:
        """Allow the next anomaly to run a fresh cascade."""
        if not self.in_progress:
            self._completed = None

    # ─── Entry Point ─────────────────────────────────────────────────

    async def force_sign_out(
        self,
        reason: str,
        *,
        anomaly: bool = True,
        broad: bool = False,
    ) -> CascadeReport:
        """Run the cascade, or join / return the one already run for this anomaly."""
        if self._inflight is not None and not self._inflight.done():
            self._joined += 1
            self._logger.info("cleanup_cascade_joined", reason=reason)
            return await asyncio.shield(self._inflight)

        if self._completed is not None:
            self._joined += 1
            self._logger.info(
                "cleanup_cascade_already_completed",
                reason=reason,
                cascade_id=self._completed.id,
            )
            return self._completed

        self._inflight = asyncio.create_task(
            self._run(reason, anomaly=anomaly, broad=broad),
            name="session_guard_cleanup",
        )
        return await asyncio.shield(self._inflight)

    async def _run(self, reason: str, *, anomaly: bool, broad: bool) -> CascadeReport:
        report = CascadeReport(reason=reason, anomaly=anomaly, broad=broad, started_at=self._clock())
        if anomaly:
            self._logger.error(
                "cleanup_cascade_started",
                reason=reason,
                cascade_id=report.id,
                security_anomaly=True,
            )
        else:
            self._logger.info("cleanup_cascade_started", reason=reason, cascade_id=report.id)

        report.revoke = await self._revoke()
        report.stages.append(CascadeStage.REMOTE_REVOKE)

        report.wipes.append(await self.wipe_store(self._ephemeral, broad=broad))
        report.stages.append(CascadeStage.EPHEMERAL_WIPE)

        report.wipes.append(await self.wipe_store(self._durable, broad=broad))
        report.stages.append(CascadeStage.DURABLE_WIPE)

        report.wipes.append(await self.wipe_ambient(broad=broad))
        report.stages.append(CascadeStage.AMBIENT_WIPE)

        revoke_failed = not report.revoke.ok and self._config.reload_on_revoke_failure
        if revoke_failed or broad:
            await self._hard_reload(report)
            report.stages.append(CascadeStage.HARD_RELOAD)

        report.finished_at = self._clock()
        self._completed = report
        self._runs += 1
        self._logger.info(
            "cleanup_cascade_completed",
            cascade_id=report.id,
            clean=report.clean,
            reloaded=report.reloaded,
            removed=sum(len(w.removed) for w in report.wipes),
            failed=sum(len(w.failures) for w in report.wipes),
        )

        for hook in list(self._completion_hooks):
            try:
                await hook(report)
            except Exception as exc:
                self._logger.error(
                    "cleanup_completion_hook_error",
                    hook=getattr(hook, "__name__", str(hook)),
                    error=str(exc),
                )
        return report

    # ─── Stages ──────────────────────────────────────────────────────

    async def _revoke(self) -> RevokeResult:
        try:
            await asyncio.wait_for(
                self._oracle.revoke_session(self._config.revoke_scope),
                timeout=self._revoke_timeout_s,
            )
        except TimeoutError:
            self._logger.warning("remote_revoke_failed", error="timeout")
            return RevokeResult(ok=False, error="timeout")
        except Exception as exc:
            self._logger.warning("remote_revoke_failed", error=str(exc))
            return RevokeResult(ok=False, error=str(exc) or type(exc).__name__)
        return RevokeResult(ok=True)

    async def wipe_store(self, store: KeyValueStore, *, broad: bool = False) -> WipeResult:
        """Remove credential-namespaced keys from one store (every key when broad)."""
        return await self._wipe(store.name, store.list_keys, store.remove, broad)

    async def wipe_ambient(self, *, broad: bool = False) -> WipeResult:
        return await self._wipe(self._ambient.name, self._ambient.names, self._ambient.expire, broad)

    async def _wipe(
        self,
        layer: str,
        list_fn: Callable[[], Awaitable[list[str]]],
        remove_fn: Callable[[str], Awaitable[None]],
        broad: bool,
    ) -> WipeResult:
        result = WipeResult(layer=layer)
        try:
            keys = await list_fn()
        except Exception as exc:
            result.listing_error = str(exc) or type(exc).__name__
            self._logger.warning("credential_layer_unlistable", layer=layer, error=result.listing_error)
            return result

        for key in keys:
            if not broad and not self.namespace.matches(key):
                continue
            result.attempted.append(key)
            try:
                await remove_fn(key)
            except Exception as exc:
                result.failures[key] = str(exc) or type(exc).__name__
                self._logger.warning("credential_wipe_failed", layer=layer, key=key, error=str(exc))
            else:
                result.removed.append(key)
        return result

    async def _hard_reload(self, report: CascadeReport) -> None:
        self._logger.critical("hard_reload", cascade_id=report.id, reason=report.reason)
        try:
            await self._reload_hook()
        except Exception as exc:
            report.reload_error = str(exc) or type(exc).__name__
            self._logger.critical("hard_reload_error", cascade_id=report.id, error=report.reload_error)
        report.reloaded = True
        self._reloads += 1

    async def _clear_all_layers(self) -> None:
        """Reload without a host hook: drop every local layer outright."""
        for clear in (self._ephemeral.clear, self._durable.clear, self._ambient.clear):
            try:
                await clear()
            except Exception as exc:
                self._logger.critical("hard_reload_layer_error", error=str(exc))
