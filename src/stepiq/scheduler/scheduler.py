"""CronScheduler: turns due schedules into queued runs.

Only one tick runs at a time across all worker processes, enforced by the
distributed lock. Each tick:

1. try the lock (no-op if another process holds it)
2. load enabled schedules with ``next_run_at <= now`` (bounded batch)
3. per schedule, advance ``next_run_at`` and, when the owner's plan allows
   cron and the daily run cap is not reached, create and enqueue a run
4. release the lock whatever happened
"""

from __future__ import annotations

import asyncio
import os
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

from stepiq.core.config import SchedulerConfig
from stepiq.core.exceptions import LockError, SchedulerTickError
from stepiq.core.protocols import (
    IDistributedLock,
    IPipelineStore,
    IPlanLimitsProvider,
    IRunQueue,
    IRunStore,
    IScheduleStore,
)
from stepiq.models.run import Run, RunStatus, TriggerType
from stepiq.models.schedule import Schedule
from stepiq.scheduler.cron import next_cron_tick

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_lock_token() -> str:
    """pid:epoch_ms:nonce, unique per tick attempt."""
    return f"{os.getpid()}:{int(time.time() * 1000)}:{secrets.token_hex(8)}"


def utc_day_window(now: datetime) -> tuple[datetime, datetime]:
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


@dataclass
class TickResult:
    acquired: bool = False
    created_run_ids: list[str] = field(default_factory=list)
    skipped_schedule_ids: list[str] = field(default_factory=list)
    failed_schedule_ids: list[str] = field(default_factory=list)


class CronScheduler:
    """Polls due schedules under a cross-process lock."""

    def __init__(
        self,
        *,
        lock: IDistributedLock,
        schedules: IScheduleStore,
        pipelines: IPipelineStore,
        runs: IRunStore,
        queue: IRunQueue,
        plan_limits: IPlanLimitsProvider,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._lock = lock
        self._schedules = schedules
        self._pipelines = pipelines
        self._runs = runs
        self._queue = queue
        self._plan_limits = plan_limits
        self._config = config or SchedulerConfig()
        self._clock = clock

    def tick(self) -> TickResult:
        result = TickResult()
        token = make_lock_token()
        try:
            acquired = self._lock.acquire(self._config.lock_key, token, self._config.lock_ttl_ms)
        except LockError as exc:
            logger.warning("scheduler_lock_error", error=str(exc))
            return result
        if not acquired:
            logger.debug("scheduler_lock_busy")
            return result

        result.acquired = True
        try:
            now = self._clock()
            due = self._schedules.list_due_schedules(now, self._config.batch_size)
            for schedule in due:
                try:
                    run_id = self._process(schedule, now)
                except Exception as exc:
                    err = SchedulerTickError(schedule.id, str(exc))
                    logger.error("scheduler_schedule_failed", schedule_id=schedule.id, error=str(err))
                    result.failed_schedule_ids.append(schedule.id)
                    continue
                if run_id is None:
                    result.skipped_schedule_ids.append(schedule.id)
                else:
                    result.created_run_ids.append(run_id)
        except Exception as exc:
            logger.error("scheduler_tick_failed", error=str(exc))
        finally:
            try:
                self._lock.release(self._config.lock_key, token)
            except LockError as exc:
                logger.warning("scheduler_lock_release_failed", error=str(exc))
        return result

    def _process(self, schedule: Schedule, now: datetime) -> str | None:
        """Advance one schedule; return the new run id or None if skipped."""
        next_run = next_cron_tick(schedule.cron_expression, schedule.timezone, now)

        pipeline = self._pipelines.get_pipeline(schedule.pipeline_id)
        if pipeline is None:
            logger.warning("scheduler_pipeline_missing", schedule_id=schedule.id, pipeline_id=schedule.pipeline_id)
            self._schedules.update_schedule(schedule.id, next_run_at=next_run)
            return None

        limits = self._plan_limits.limits_for_user(pipeline.user_id)
        if not limits.cron_enabled:
            self._schedules.update_schedule(schedule.id, next_run_at=next_run)
            logger.info("scheduler_skip_cron_disabled", schedule_id=schedule.id, next_run_at=next_run.isoformat())
            return None

        if limits.max_runs_per_day >= 0:
            start, end = utc_day_window(now)
            runs_today = self._runs.count_runs_since(pipeline.user_id, start, end)
            if runs_today >= limits.max_runs_per_day:
                self._schedules.update_schedule(schedule.id, next_run_at=next_run)
                logger.info(
                    "scheduler_skip_daily_cap",
                    schedule_id=schedule.id,
                    runs_today=runs_today,
                    cap=limits.max_runs_per_day,
                )
                return None

        run = self._runs.create_run(
            Run(
                id=str(uuid.uuid4()),
                pipeline_id=schedule.pipeline_id,
                pipeline_version=pipeline.version,
                user_id=pipeline.user_id,
                trigger_type=TriggerType.CRON,
                status=RunStatus.PENDING,
                input_data=schedule.input_data,
                created_at=now,
            )
        )
        self._queue.enqueue_execute(run.id)
        self._schedules.update_schedule(schedule.id, next_run_at=next_run, last_run_at=now)
        logger.info(
            "scheduler_run_created",
            schedule_id=schedule.id,
            pipeline_id=schedule.pipeline_id,
            run_id=run.id,
            next_run_at=next_run.isoformat(),
        )
        return run.id

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Tick immediately, then every poll interval until ``stop`` is set."""
        stop = stop or asyncio.Event()
        logger.info("scheduler_started", poll_interval_seconds=self._config.poll_interval_seconds)
        while not stop.is_set():
            await asyncio.to_thread(self.tick)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("scheduler_stopped")
