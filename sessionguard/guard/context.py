"""
SessionGuard -- Guard Context

Explicit owner of the guard's mutable state. Whoever composes a guard
constructs one context and injects it; nothing lives in module globals.
The clock and sleep function are injectable so the settle window and the
validation interval can be driven deterministically in tests.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime

from sessionguard.config import SessionGuardConfig
from sessionguard.guard.identity import IdentityCache
from sessionguard.guard.types import HealthState
from sessionguard.primitives.common import utc_now

Clock = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class GuardContext:
    config: SessionGuardConfig = field(default_factory=SessionGuardConfig)
    clock: Clock = utc_now
    sleep: SleepFn = asyncio.sleep
    identity: IdentityCache = field(default_factory=IdentityCache)
    health: HealthState = field(default_factory=HealthState)

    def __post_init__(self) -> None:
        self.health.reset(self.clock())

    @property
    def settle_window_s(self) -> float:
        return self.config.escalation.settle_window_ms / 1000.0

    def reset(self) -> None:
        """Back to the fresh baseline: no cached subject, healthy, zero warnings."""
        self.identity.clear()
        self.health.reset(self.clock())
