"""
Tests for the cleanup cascade.

Covers:
  - credential namespace matching
  - stage order and the hard-reload fallback on revoke failure
  - per-layer failures never stop the remaining stages
  - at-most-once execution per anomaly, re-arming
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock, drain

from sessionguard.clients.oracle import InMemorySessionOracle, ProviderError
from sessionguard.clients.storage import InMemoryCredentialJar, InMemoryKeyValueStore
from sessionguard.config import CleanupConfig
from sessionguard.guard.cascade import CleanupCascade, CredentialNamespace
from sessionguard.guard.types import CascadeStage


class _FlakyStore(InMemoryKeyValueStore):
    def __init__(self, name: str, initial: dict[str, str], broken_key: str) -> None:
        super().__init__(name=name, initial=initial)
        self.broken_key = broken_key

    async def remove(self, key: str) -> None:
        if key == self.broken_key:
            raise PermissionError("quota exceeded")
        await super().remove(key)


class _UnlistableStore(InMemoryKeyValueStore):
    async def list_keys(self, prefix: str = "") -> list[str]:
        raise OSError("storage disabled")


def _make_cascade(
    oracle: InMemorySessionOracle | None = None,
    ephemeral: InMemoryKeyValueStore | None = None,
    durable: InMemoryKeyValueStore | None = None,
    ambient: InMemoryCredentialJar | None = None,
    config: CleanupConfig | None = None,
    reload_hook: AsyncMock | None = None,
) -> CleanupCascade:
    return CleanupCascade(
        oracle=oracle or InMemorySessionOracle(),
        ephemeral=ephemeral or InMemoryKeyValueStore(
            name="ephemeral", initial={"sb-access": "t", "draft": "x"}
        ),
        durable=durable or InMemoryKeyValueStore(
            name="durable", initial={"temple-keepers-auth": "{}", "theme": "dark"}
        ),
        ambient=ambient or InMemoryCredentialJar(initial={"sb-refresh-token": "r", "locale": "en"}),
        config=config or CleanupConfig(),
        clock=FakeClock(),
        reload_hook=reload_hook,
    )


class TestCredentialNamespace:
    def test_prefix_match(self):
        ns = CredentialNamespace(["sb-"], [])
        assert ns.matches("sb-xyz-auth-token") is True
        assert ns.matches("xsb-") is False

    def test_marker_match_is_case_insensitive(self):
        ns = CredentialNamespace([], ["supabase", "token"])
        assert ns.matches("Supabase.session") is True
        assert ns.matches("refreshToken") is True

    def test_unrelated_keys_untouched(self):
        ns = CredentialNamespace.from_config(CleanupConfig())
        assert ns.matches("theme") is False
        assert ns.matches("draft_habit") is False
        assert ns.matches("temple-keepers-auth") is True

    def test_empty_namespace_rejected_by_config(self):
        with pytest.raises(ValueError):
            CleanupConfig(credential_prefixes=[], credential_markers=[])


class TestCleanupCascade:
    @pytest.mark.asyncio
    async def test_successful_revoke_wipes_namespace_without_reload(self):
        reload_hook = AsyncMock()
        ephemeral = InMemoryKeyValueStore(name="ephemeral", initial={"sb-access": "t", "draft": "x"})
        durable = InMemoryKeyValueStore(name="durable", initial={"temple-keepers-auth": "{}", "theme": "dark"})
        ambient = InMemoryCredentialJar(initial={"sb-refresh-token": "r", "locale": "en"})
        oracle = InMemorySessionOracle()
        cascade = _make_cascade(oracle, ephemeral, durable, ambient, reload_hook=reload_hook)

        report = await cascade.force_sign_out("test")

        assert oracle.revoke_calls == 1
        assert report.revoke.ok is True
        assert report.stages == [
            CascadeStage.REMOTE_REVOKE,
            CascadeStage.EPHEMERAL_WIPE,
            CascadeStage.DURABLE_WIPE,
            CascadeStage.AMBIENT_WIPE,
        ]
        assert report.reloaded is False
        reload_hook.assert_not_awaited()
        assert ephemeral.snapshot() == {"draft": "x"}
        assert durable.snapshot() == {"theme": "dark"}
        assert ambient.snapshot() == {"locale": "en"}
        assert report.clean is True

    @pytest.mark.asyncio
    async def test_revoke_failure_still_wipes_and_reloads(self):
        reload_hook = AsyncMock()
        oracle = InMemorySessionOracle()
        oracle.fail_next_revoke(ProviderError("network down"))
        ephemeral = InMemoryKeyValueStore(name="ephemeral", initial={"sb-access": "t"})
        cascade = _make_cascade(oracle, ephemeral=ephemeral, reload_hook=reload_hook)

        report = await cascade.force_sign_out("test")

        assert report.revoke.ok is False
        assert "network down" in report.revoke.error
        assert ephemeral.snapshot() == {}
        assert len(report.wipes) == 3
        assert report.reloaded is True
        assert report.stages[-1] == CascadeStage.HARD_RELOAD
        reload_hook.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reload_fallback_can_be_disabled(self):
        reload_hook = AsyncMock()
        oracle = InMemorySessionOracle()
        oracle.fail_next_revoke()
        cascade = _make_cascade(
            oracle,
            config=CleanupConfig(reload_on_revoke_failure=False),
            reload_hook=reload_hook,
        )

        report = await cascade.force_sign_out("test")

        assert report.reloaded is False
        reload_hook.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_reload_clears_every_layer(self):
        oracle = InMemorySessionOracle()
        oracle.fail_next_revoke()
        ephemeral = InMemoryKeyValueStore(name="ephemeral", initial={"sb-access": "t", "draft": "x"})
        durable = InMemoryKeyValueStore(name="durable", initial={"theme": "dark"})
        ambient = InMemoryCredentialJar(initial={"locale": "en"})
        cascade = _make_cascade(oracle, ephemeral, durable, ambient)

        report = await cascade.force_sign_out("test")

        assert report.reloaded is True
        assert ephemeral.snapshot() == {}
        assert durable.snapshot() == {}
        assert ambient.snapshot() == {}

    @pytest.mark.asyncio
    async def test_reload_hook_error_is_recorded_not_raised(self):
        oracle = InMemorySessionOracle()
        oracle.fail_next_revoke()
        cascade = _make_cascade(oracle, reload_hook=AsyncMock(side_effect=RuntimeError("no window")))

        report = await cascade.force_sign_out("test")

        assert report.reloaded is True
        assert report.reload_error == "no window"

    @pytest.mark.asyncio
    async def test_one_failing_key_does_not_stop_the_rest(self):
        ephemeral = _FlakyStore(
            "ephemeral",
            {"sb-access": "t", "sb-refresh": "r", "draft": "x"},
            broken_key="sb-access",
        )
        durable = InMemoryKeyValueStore(name="durable", initial={"supabase.auth": "{}"})
        ambient = InMemoryCredentialJar(initial={"sb-refresh-token": "r"})
        cascade = _make_cascade(ephemeral=ephemeral, durable=durable, ambient=ambient)

        report = await cascade.force_sign_out("test")

        ephemeral_result, durable_result, ambient_result = report.wipes
        assert ephemeral_result.failures == {"sb-access": "quota exceeded"}
        assert ephemeral_result.removed == ["sb-refresh"]
        assert durable_result.ok is True
        assert ambient_result.removed == ["sb-refresh-token"]
        assert report.clean is False
        assert report.finished_at is not None

    @pytest.mark.asyncio
    async def test_unlistable_layer_recorded(self):
        durable = _UnlistableStore(name="durable")
        ambient = InMemoryCredentialJar(initial={"sb-x": "1"})
        cascade = _make_cascade(durable=durable, ambient=ambient)

        report = await cascade.force_sign_out("test")

        assert report.wipes[1].listing_error == "storage disabled"
        assert report.wipes[2].removed == ["sb-x"]

    @pytest.mark.asyncio
    async def test_broad_wipe_ignores_namespace_and_reloads(self):
        reload_hook = AsyncMock()
        ephemeral = InMemoryKeyValueStore(name="ephemeral", initial={"sb-access": "t", "draft": "x"})
        cascade = _make_cascade(ephemeral=ephemeral, reload_hook=reload_hook)

        report = await cascade.force_sign_out("nuke", anomaly=False, broad=True)

        assert ephemeral.snapshot() == {}
        assert sorted(report.wipes[0].removed) == ["draft", "sb-access"]
        assert report.reloaded is True
        assert report.anomaly is False


class TestCascadeIdempotency:
    @pytest.mark.asyncio
    async def test_concurrent_calls_run_once(self):
        oracle = InMemorySessionOracle()
        cascade = _make_cascade(oracle)

        first, second = await asyncio.gather(
            cascade.force_sign_out("a"),
            cascade.force_sign_out("b"),
        )

        assert first.id == second.id
        assert oracle.revoke_calls == 1
        assert cascade.stats["runs"] == 1
        assert cascade.stats["joined_calls"] == 1

    @pytest.mark.asyncio
    async def test_completed_cascade_is_not_repeated(self):
        oracle = InMemorySessionOracle()
        cascade = _make_cascade(oracle)

        first = await cascade.force_sign_out("a")
        second = await cascade.force_sign_out("b")

        assert second is first
        assert oracle.revoke_calls == 1

    @pytest.mark.asyncio
    async def test_rearm_allows_next_anomaly(self):
        oracle = InMemorySessionOracle()
        cascade = _make_cascade(oracle)

        await cascade.force_sign_out("a")
        cascade.rearm()
        await cascade.force_sign_out("b")

        assert oracle.revoke_calls == 2
        assert cascade.last_report.reason == "b"

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_cascade(self):
        oracle = InMemorySessionOracle()
        hook_done = asyncio.Event()

        async def slow_hook(report):
            await asyncio.sleep(0)
            hook_done.set()

        cascade = _make_cascade(oracle)
        cascade.add_completion_hook(slow_hook)

        caller = asyncio.create_task(cascade.force_sign_out("a"))
        await asyncio.sleep(0)
        caller.cancel()
        await asyncio.wait_for(hook_done.wait(), timeout=1)

        assert cascade.last_report is not None
        assert oracle.revoke_calls == 1


class TestCompletionHooks:
    @pytest.mark.asyncio
    async def test_hooks_receive_report(self):
        seen = []

        async def hook(report):
            seen.append(report.reason)

        cascade = _make_cascade()
        cascade.add_completion_hook(hook)
        await cascade.force_sign_out("why")

        assert seen == ["why"]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_block_others(self):
        seen = []

        async def broken(report):
            raise RuntimeError("consumer bug")

        async def healthy(report):
            seen.append(report.id)

        cascade = _make_cascade()
        cascade.add_completion_hook(broken)
        cascade.add_completion_hook(healthy)
        report = await cascade.force_sign_out("why")
        await drain()

        assert seen == [report.id]
