"""
SessionGuard -- Session Consistency Guard

Watches an already-authenticated client session: periodically validates it
against the remote provider, detects identity drift, escalates repeated
failures, and runs a fail-safe cleanup cascade when the session can no
longer be trusted.
"""

from sessionguard.guard.cascade import CleanupCascade, CredentialNamespace
from sessionguard.guard.console import DiagnosticConsole
from sessionguard.guard.context import GuardContext
from sessionguard.guard.health import EscalationGuard, HealthStateMachine
from sessionguard.guard.identity import DriftDetector, IdentityCache
from sessionguard.guard.scheduler import SchedulerAlreadyRunning, ValidationScheduler
from sessionguard.guard.service import SessionGuard
from sessionguard.guard.types import (
    CascadeReport,
    CascadeStage,
    ConsistencyReport,
    HealthState,
    ObservationKind,
    RevokeResult,
    SessionDebugReport,
    TickOutcome,
    ValidationTick,
    WipeResult,
)

__all__ = [
    # Service
    "SessionGuard",
    "GuardContext",
    # Components
    "CleanupCascade",
    "CredentialNamespace",
    "DiagnosticConsole",
    "DriftDetector",
    "EscalationGuard",
    "HealthStateMachine",
    "IdentityCache",
    "ValidationScheduler",
    "SchedulerAlreadyRunning",
    # Types
    "CascadeReport",
    "CascadeStage",
    "ConsistencyReport",
    "HealthState",
    "ObservationKind",
    "RevokeResult",
    "SessionDebugReport",
    "TickOutcome",
    "ValidationTick",
    "WipeResult",
]
