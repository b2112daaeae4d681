"""Shared fixtures for the SessionGuard test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.clients.oracle import InMemorySessionOracle
from sessionguard.clients.storage import InMemoryCredentialJar, InMemoryKeyValueStore
from sessionguard.config import SessionGuardConfig
from sessionguard.guard.context import GuardContext
from sessionguard.guard.service import SessionGuard
from sessionguard.primitives.session import Session


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualSleeper:
    """Sleep replacement whose waits only finish when released."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._waiters: list[asyncio.Future[None]] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        await fut

    @property
    def pending(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    def release(self) -> None:
        for fut in self._waiters:
            if not fut.done():
                fut.set_result(None)
        self._waiters.clear()


async def drain(rounds: int = 20) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_session(subject_id: str = "user-a", clock: FakeClock | None = None, ttl_s: float = 3600) -> Session:
    now = clock() if clock else datetime.now(timezone.utc)
    return Session(subject_id=subject_id, expires_at=now + timedelta(seconds=ttl_s), fetched_at=now)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> ManualSleeper:
    return ManualSleeper()


@pytest.fixture
def oracle() -> InMemorySessionOracle:
    return InMemorySessionOracle()


@pytest.fixture
def stores() -> tuple[InMemoryKeyValueStore, InMemoryKeyValueStore, InMemoryCredentialJar]:
    ephemeral = InMemoryKeyValueStore(
        name="ephemeral",
        initial={"sb-access": "tok", "draft_habit": "walk"},
    )
    durable = InMemoryKeyValueStore(
        name="durable",
        initial={"temple-keepers-auth": "{}", "supabase.refresh": "r", "theme": "dark"},
    )
    ambient = InMemoryCredentialJar(initial={"sb-refresh-token": "x", "locale": "en"})
    return ephemeral, durable, ambient


@pytest.fixture
def config() -> SessionGuardConfig:
    cfg = SessionGuardConfig()
    cfg.validation.auto_start = False
    return cfg


@pytest.fixture
def context(config: SessionGuardConfig, clock: FakeClock, sleeper: ManualSleeper) -> GuardContext:
    return GuardContext(config=config, clock=clock, sleep=sleeper)


@pytest.fixture
def guard(oracle, stores, context) -> SessionGuard:
    ephemeral, durable, ambient = stores
    return SessionGuard(
        oracle=oracle,
        ephemeral=ephemeral,
        durable=durable,
        ambient=ambient,
        context=context,
    )
