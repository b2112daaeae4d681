"""
SessionGuard -- Diagnostics REST Router

Operator surface over the DiagnosticConsole. Responses never carry raw
error text from the guard's internals beyond the provider error summary,
and never carry tokens.

Endpoints:
  GET  /api/v1/session-guard/health            guard self-health
  POST /api/v1/session-guard/observe           report the consumer's believed subject
  GET  /api/v1/session-guard/consistency       believed vs. provider identity
  GET  /api/v1/session-guard/debug             session snapshot, tokens redacted
  POST /api/v1/session-guard/check             run one validation tick now
  POST /api/v1/session-guard/force-sign-out    run the cleanup cascade now
  POST /api/v1/session-guard/clear-everything  broad wipe + hard reload
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger = structlog.get_logger("sessionguard.api.diagnostics")

router = APIRouter(prefix="/api/v1/session-guard")

_UNAVAILABLE: dict[str, Any] = {"status": "unavailable", "error": "Session guard not initialized"}


def _guard(request: Request) -> Any:
    return getattr(request.app.state, "session_guard", None)


class ObservePayload(BaseModel):
    # null after an explicit logout
    subject_id: str | None = None


@router.get("/health")
async def get_health(request: Request) -> dict[str, Any]:
    guard = _guard(request)
    if guard is None:
        return _UNAVAILABLE
    return {"status": "ok", "data": await guard.health(), "stats": guard.stats}


@router.post("/observe")
async def post_observe(request: Request, body: ObservePayload) -> dict[str, Any]:
    """
    Feed the guard the consumer's current belief about who is signed in.

    The first subject starts periodic validation; null clears the context.
    """
    guard = _guard(request)
    if guard is None:
        return _UNAVAILABLE
    kind = await guard.observe(body.subject_id)
    return {
        "status": "ok",
        "data": {
            "observation": kind.value,
            "believed_subject_id": guard.believed_subject_id,
            "scheduler_running": guard.scheduler.is_running,
            "drift_sign_out_pending": guard.drift_sign_out_pending,
        },
    }


@router.get("/consistency")
async def get_consistency(request: Request) -> dict[str, Any]:
    guard = _guard(request)
    if guard is None:
        return _UNAVAILABLE
    report = await guard.console.report_consistency()
    return {"status": "ok", "data": report.model_dump(mode="json")}


@router.get("/debug")
async def get_debug(request: Request) -> dict[str, Any]:
    guard = _guard(request)
    if guard is None:
        return _UNAVAILABLE
    report = await guard.console.debug_session()
    return {"status": "ok", "data": report.model_dump(mode="json")}


@router.post("/check")
async def post_check(request: Request) -> dict[str, Any]:
    guard = _guard(request)
    if guard is None:
        return _UNAVAILABLE
    tick = await guard.console.check_now()
    if tick is None:
        return {"status": "skipped", "reason": "validation_in_flight"}
    return {"status": "ok", "data": tick.model_dump(mode="json")}


@router.post("/force-sign-out")
async def post_force_sign_out(request: Request) -> dict[str, Any]:
    guard = _guard(request)
    if guard is None:
        return _UNAVAILABLE
    report = await guard.console.force_sign_out_now()
    logger.info("force_sign_out_via_api", cascade_id=report.id)
    return {"status": "ok", "data": report.model_dump(mode="json")}


@router.post("/clear-everything")
async def post_clear_everything(request: Request) -> dict[str, Any]:
    guard = _guard(request)
    if guard is None:
        return _UNAVAILABLE
    report = await guard.console.clear_everything()
    logger.warning("clear_everything_via_api", cascade_id=report.id)
    return {"status": "ok", "data": report.model_dump(mode="json")}
