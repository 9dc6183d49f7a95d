"""Tests for the monitoring scheduler lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from statuswatch.errors import InvalidScheduleError
from statuswatch.health.context import MonitorHost, build_context
from statuswatch.health.scheduler import MonitoringScheduler, seconds_until_next, validate_schedule
from statuswatch.health.tasks import SCAN_TASK


def _provider(ctx):
    calls = {"n": 0}

    async def acquire():
        calls["n"] += 1
        return ctx

    acquire.calls = calls
    return acquire


class TestValidateSchedule:
    def test_valid(self) -> None:
        assert validate_schedule("*/5 * * * *") == "*/5 * * * *"

    @pytest.mark.parametrize("expr", ["", "every minute", "61 * * * *", "* * *"])
    def test_invalid(self, expr: str) -> None:
        with pytest.raises(InvalidScheduleError):
            validate_schedule(expr)

    def test_next_fire_within_a_minute(self) -> None:
        assert 0 <= seconds_until_next("* * * * *") <= 60


class TestLifecycle:
    def test_start_twice_one_timer(self, store) -> None:
        ctx = build_context(store)
        scheduler = MonitoringScheduler(_provider(ctx), default_schedule="* * * * *")

        async def run():
            first = await scheduler.start(context=ctx)
            timer = scheduler._timer
            second = await scheduler.start(context=ctx)
            same = scheduler._timer is timer
            await scheduler.stop()
            return first, second, same

        first, second, same = asyncio.run(run())
        assert first is True
        assert second is False
        assert same is True

    def test_status(self, store) -> None:
        ctx = build_context(store)
        scheduler = MonitoringScheduler(_provider(ctx), default_schedule="*/2 * * * *")
        assert scheduler.status() == {"running": False, "schedule": "* * * * *"}

        async def run():
            await scheduler.start(context=ctx)
            running = scheduler.status()
            await scheduler.stop()
            return running

        assert asyncio.run(run()) == {"running": True, "schedule": "*/2 * * * *"}
        assert scheduler.status()["running"] is False

    def test_stop_is_idempotent(self, store) -> None:
        scheduler = MonitoringScheduler(_provider(build_context(store)))

        async def run():
            await scheduler.stop()
            await scheduler.stop()

        asyncio.run(run())
        assert scheduler.running is False

    def test_invalid_schedule_fails_loudly(self, store) -> None:
        ctx = build_context(store)
        scheduler = MonitoringScheduler(_provider(ctx))
        with pytest.raises(InvalidScheduleError):
            asyncio.run(scheduler.start("not a cron", context=ctx))
        assert scheduler.running is False

    def test_schedule_precedence(self, store) -> None:
        ctx = build_context(store)
        store.update_global_settings(monitoring_schedule_cron="*/10 * * * *")
        scheduler = MonitoringScheduler(_provider(ctx), default_schedule="*/3 * * * *")

        async def run(schedule=None):
            await scheduler.start(schedule, context=ctx)
            s = scheduler.status()["schedule"]
            await scheduler.stop()
            return s

        assert asyncio.run(run("*/7 * * * *")) == "*/7 * * * *"
        assert asyncio.run(run()) == "*/10 * * * *"
        store.update_global_settings(monitoring_schedule_cron="")
        assert asyncio.run(run()) == "*/3 * * * *"

    def test_disabled_in_settings(self, store) -> None:
        ctx = build_context(store)
        store.update_global_settings(monitoring_enabled=False)
        scheduler = MonitoringScheduler(_provider(ctx))
        assert asyncio.run(scheduler.start(context=ctx)) is False
        assert scheduler.running is False

    def test_settings_unavailable_falls_back(self) -> None:
        async def broken():
            raise ConnectionError("db down")

        scheduler = MonitoringScheduler(broken, default_schedule="*/4 * * * *", default_enabled=True)

        async def run():
            started = await scheduler.start()
            await scheduler.stop()
            return started

        assert asyncio.run(run()) is True
        assert scheduler.status()["schedule"] == "*/4 * * * *"

    def test_restart(self, store) -> None:
        ctx = build_context(store)
        scheduler = MonitoringScheduler(_provider(ctx))

        async def run():
            await scheduler.start(context=ctx)
            store.update_global_settings(monitoring_schedule_cron="*/15 * * * *")
            await scheduler.restart()
            s = scheduler.status()
            await scheduler.stop()
            return s

        assert asyncio.run(run()) == {"running": True, "schedule": "*/15 * * * *"}


class TestStartupContext:
    def test_given_context_is_not_reacquired(self, store) -> None:
        ctx = build_context(store)
        provider = _provider(ctx)
        scheduler = MonitoringScheduler(provider)

        async def run():
            await scheduler.start(context=ctx)
            await scheduler.stop()

        asyncio.run(run())
        assert provider.calls["n"] == 0

    def test_start_inside_startup_does_not_wait_on_host(self, store) -> None:
        # The host publishes only after startup; starting with the given
        # context must complete before that.
        ctx = build_context(store)

        async def run():
            host = MonitorHost()
            scheduler = MonitoringScheduler(host.acquire)
            started = await asyncio.wait_for(scheduler.start(context=ctx), timeout=1)
            ready_during_start = host.ready
            host.publish(ctx)
            await scheduler.stop()
            return started, ready_during_start

        started, ready_during_start = asyncio.run(run())
        assert started is True
        assert ready_during_start is False


class TestScheduledRun:
    def test_firing_enqueues_and_drains(self, store) -> None:
        ctx = build_context(store)
        ctx.runner.run = AsyncMock(return_value=[])
        scheduler = MonitoringScheduler(_provider(ctx))

        result = asyncio.run(scheduler.run_scheduled_scan())
        pending = ctx.queue.take_pending()
        assert [j.task for j in pending] == [SCAN_TASK]
        ctx.runner.run.assert_awaited_once()
        assert result["jobs"] == 0

    def test_firing_never_raises(self, store) -> None:
        ctx = build_context(store)
        ctx.runner.run = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = MonitoringScheduler(_provider(ctx))
        result = asyncio.run(scheduler.run_scheduled_scan())
        assert result["error"] == "boom"

    def test_overlapping_firing_skipped(self, store) -> None:
        ctx = build_context(store)
        scheduler = MonitoringScheduler(_provider(ctx))

        async def run():
            async with scheduler._scan_lock:
                return await scheduler.run_scheduled_scan()

        assert asyncio.run(run()) is None
        assert ctx.queue.pending_count == 0

    def test_timer_fires(self, store, monkeypatch) -> None:
        from statuswatch.health import scheduler as scheduler_mod

        monkeypatch.setattr(scheduler_mod, "seconds_until_next", lambda expr, now=None: 0.01)
        ctx = build_context(store)
        scheduler = MonitoringScheduler(_provider(ctx))
        fired = asyncio.Event()

        async def fake_scan():
            fired.set()

        scheduler.run_scheduled_scan = fake_scan

        async def run():
            await scheduler.start(context=ctx)
            await asyncio.wait_for(fired.wait(), timeout=1)
            await scheduler.stop()

        asyncio.run(run())
        assert fired.is_set()
