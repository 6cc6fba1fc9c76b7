"""Unit tests for the cron scheduler tick and cron evaluation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from stepiq.core.config import SchedulerConfig
from stepiq.core.exceptions import LockError
from stepiq.models.run import RunStatus, TriggerType
from stepiq.models.schedule import PlanLimits, Schedule
from stepiq.scheduler.cron import next_cron_tick
from stepiq.scheduler.scheduler import CronScheduler, make_lock_token, utc_day_window
from tests.fakes import (
    MemoryLock,
    MemoryPlanLimitsProvider,
    MemoryRunQueue,
    MemoryStore,
    make_pipeline,
    make_run,
)

NOW = datetime(2026, 3, 10, 12, 0, 30, tzinfo=timezone.utc)
CONFIG = SchedulerConfig(lock_key="test:lock", lock_ttl_ms=25_000, batch_size=50)


class _FixedLimits:
    def __init__(self, limits: PlanLimits) -> None:
        self.limits = limits

    def limits_for_user(self, user_id: str) -> PlanLimits:
        return self.limits


class _FailingLock:
    def acquire(self, key, token, ttl_ms):
        raise LockError("redis down")

    def release(self, key, token):
        raise AssertionError("release must not be called without acquire")


@pytest.fixture
def store():
    store = MemoryStore()
    store.add_pipeline(make_pipeline([{"id": "s1", "prompt": "hi"}], version=3))
    return store


@pytest.fixture
def queue():
    return MemoryRunQueue()


@pytest.fixture
def lock():
    return MemoryLock()


def _schedule(schedule_id="sch-1", cron="*/5 * * * *", pipeline_id="pipe-1", **kwargs):
    return Schedule(
        id=schedule_id,
        pipeline_id=pipeline_id,
        cron_expression=cron,
        input_data={"source": "cron"},
        next_run_at=NOW - timedelta(minutes=1),
        **kwargs,
    )


def _scheduler(store, queue, lock, plan_limits=None):
    return CronScheduler(
        lock=lock,
        schedules=store,
        pipelines=store,
        runs=store,
        queue=queue,
        plan_limits=plan_limits or MemoryPlanLimitsProvider({"user-1": "starter"}),
        config=CONFIG,
        clock=lambda: NOW,
    )


class TestTick:
    def test_due_schedule_creates_and_enqueues_pinned_run(self, store, queue, lock):
        store.add_schedule(_schedule())

        result = _scheduler(store, queue, lock).tick()

        assert result.acquired is True
        assert len(result.created_run_ids) == 1
        run = store.runs[result.created_run_ids[0]]
        assert run.trigger_type == TriggerType.CRON
        assert run.status == RunStatus.PENDING
        assert run.pipeline_version == 3
        assert run.input_data == {"source": "cron"}
        assert queue.jobs == [{"name": "execute", "data": {"runId": run.id}}]
        schedule = store.schedules["sch-1"]
        assert schedule.next_run_at == datetime(2026, 3, 10, 12, 5, tzinfo=timezone.utc)
        assert schedule.last_run_at == NOW

    def test_not_due_schedule_is_ignored(self, store, queue, lock):
        store.add_schedule(_schedule().model_copy(update={"next_run_at": NOW + timedelta(minutes=1)}))
        result = _scheduler(store, queue, lock).tick()
        assert result.created_run_ids == []
        assert queue.jobs == []

    def test_disabled_schedule_is_ignored(self, store, queue, lock):
        store.add_schedule(_schedule(enabled=False))
        assert _scheduler(store, queue, lock).tick().created_run_ids == []

    def test_busy_lock_is_a_no_op(self, store, queue, lock):
        store.add_schedule(_schedule())
        assert lock.acquire(CONFIG.lock_key, "other-process", 25_000)

        result = _scheduler(store, queue, lock).tick()

        assert result.acquired is False
        assert store.runs == {}
        assert queue.jobs == []
        assert store.schedules["sch-1"].next_run_at == NOW - timedelta(minutes=1)

    def test_lock_backend_error_is_a_no_op(self, store, queue):
        store.add_schedule(_schedule())
        result = _scheduler(store, queue, _FailingLock()).tick()
        assert result.acquired is False
        assert store.runs == {}

    def test_lock_released_after_tick(self, store, queue, lock):
        store.add_schedule(_schedule())
        _scheduler(store, queue, lock).tick()
        assert lock.acquire(CONFIG.lock_key, "next-tick", 25_000)

    def test_lock_released_when_listing_fails(self, queue, lock):
        class BrokenStore(MemoryStore):
            def list_due_schedules(self, now, limit):
                raise RuntimeError("db gone")

        result = _scheduler(BrokenStore(), queue, lock).tick()
        assert result.acquired is True
        assert lock.acquire(CONFIG.lock_key, "next-tick", 25_000)


class TestPlanLimits:
    def test_cron_disabled_skips_but_advances(self, store, queue, lock):
        store.add_schedule(_schedule())
        plans = MemoryPlanLimitsProvider({"user-1": "free"})

        result = _scheduler(store, queue, lock, plans).tick()

        assert result.skipped_schedule_ids == ["sch-1"]
        assert store.runs == {}
        assert queue.jobs == []
        assert store.schedules["sch-1"].next_run_at > NOW

    def test_daily_cap_skips_but_advances(self, store, queue, lock):
        pipeline = store.get_pipeline("pipe-1")
        existing = make_run(pipeline, run_id="earlier").model_copy(update={"created_at": NOW - timedelta(hours=1)})
        store.create_run(existing)
        store.add_schedule(_schedule())
        limits = _FixedLimits(PlanLimits(cron_enabled=True, max_runs_per_day=1))

        result = _scheduler(store, queue, lock, limits).tick()

        assert result.skipped_schedule_ids == ["sch-1"]
        assert set(store.runs) == {"earlier"}
        assert store.schedules["sch-1"].next_run_at > NOW
        assert store.schedules["sch-1"].last_run_at is None

    def test_runs_from_yesterday_do_not_count(self, store, queue, lock):
        pipeline = store.get_pipeline("pipe-1")
        store.create_run(
            make_run(pipeline, run_id="yesterday").model_copy(update={"created_at": NOW - timedelta(days=1)})
        )
        store.add_schedule(_schedule())
        limits = _FixedLimits(PlanLimits(cron_enabled=True, max_runs_per_day=1))
        assert len(_scheduler(store, queue, lock, limits).tick().created_run_ids) == 1

    def test_unlimited_plan(self, store, queue, lock):
        store.add_schedule(_schedule())
        plans = MemoryPlanLimitsProvider({"user-1": "enterprise"})
        assert len(_scheduler(store, queue, lock, plans).tick().created_run_ids) == 1


class TestFailureIsolation:
    def test_bad_schedule_does_not_abort_batch(self, store, queue, lock):
        store.add_schedule(_schedule("bad", cron="not a cron"))
        store.add_schedule(_schedule("good"))

        result = _scheduler(store, queue, lock).tick()

        assert result.failed_schedule_ids == ["bad"]
        assert len(result.created_run_ids) == 1
        assert store.schedules["bad"].next_run_at == NOW - timedelta(minutes=1)

    def test_missing_pipeline_skips_and_advances(self, store, queue, lock):
        store.add_schedule(_schedule(pipeline_id="deleted"))
        result = _scheduler(store, queue, lock).tick()
        assert result.skipped_schedule_ids == ["sch-1"]
        assert store.schedules["sch-1"].next_run_at > NOW


class TestRunForever:
    async def test_ticks_immediately_then_stops(self, store, queue, lock):
        store.add_schedule(_schedule())
        stop = asyncio.Event()
        scheduler = _scheduler(store, queue, lock)

        task = asyncio.create_task(scheduler.run_forever(stop))
        for _ in range(100):
            if queue.jobs:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert len(queue.jobs) == 1


class TestCron:
    def test_next_tick_in_timezone(self):
        now = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)  # 07:00 in New York
        assert next_cron_tick("0 9 * * *", "America/New_York", now) == datetime(
            2026, 1, 15, 14, 0, tzinfo=timezone.utc
        )

    def test_next_tick_is_strictly_after_now(self):
        now = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
        assert next_cron_tick("0 9 * * *", "UTC", now) == datetime(2026, 1, 16, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression,tz", [("not a cron", "UTC"), ("0 9 * * *", "Mars/Base")])
    def test_invalid_input_raises(self, expression, tz):
        with pytest.raises(ValueError, match="Invalid cron expression"):
            next_cron_tick(expression, tz)


class TestHelpers:
    def test_lock_tokens_are_unique(self):
        assert make_lock_token() != make_lock_token()

    def test_utc_day_window(self):
        start, end = utc_day_window(NOW)
        assert start == datetime(2026, 3, 10, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)
