"""Queue consumer: runs ``execute`` jobs with bounded concurrency.

Jobs are single-attempt. A message is acked once its run has been
processed, whether the run completed or failed, so a poisoned run is never
redelivered.
"""

from __future__ import annotations

import asyncio

import structlog

from stepiq.core.exceptions import QueueError, RunNotFoundError
from stepiq.core.protocols import IRunQueue
from stepiq.executor.orchestrator import RunOrchestrator
from stepiq.scheduler.scheduler import CronScheduler
from stepiq.webhooks.dispatcher import WebhookDispatcher

logger = structlog.get_logger(__name__)


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class Worker:
    """Pulls run ids off the queue and hands them to the orchestrator."""

    def __init__(
        self,
        *,
        queue: IRunQueue,
        orchestrator: RunOrchestrator,
        scheduler: CronScheduler | None = None,
        webhooks: WebhookDispatcher | None = None,
        concurrency: int = 5,
        max_messages: int = 5,
        idle_seconds: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._queue = queue
        self._orchestrator = orchestrator
        self._scheduler = scheduler
        self._webhooks = webhooks
        self._concurrency = concurrency
        self._slots = asyncio.Semaphore(concurrency)
        self._max_messages = max_messages
        self._idle_seconds = idle_seconds
        self._in_flight: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def handle(self, receipt: str, run_id: str) -> None:
        """Execute one run and ack its message whatever the outcome."""
        try:
            run = await self._orchestrator.execute_run(run_id)
            logger.info("job_processed", run_id=run_id, status=run.status)
        except RunNotFoundError as exc:
            logger.warning("job_run_missing", run_id=run_id, error=str(exc))
        except Exception as exc:
            logger.error("job_failed", run_id=run_id, error=str(exc))
        finally:
            try:
                await asyncio.to_thread(self._queue.ack, receipt)
            except QueueError as exc:
                logger.error("job_ack_failed", run_id=run_id, error=str(exc))

    async def _handle_slot(self, receipt: str, run_id: str) -> None:
        try:
            await self.handle(receipt, run_id)
        finally:
            self._slots.release()

    async def poll_once(self) -> int:
        """Receive one batch and start a task per job. Returns jobs started."""
        free = max(1, min(self._max_messages, self._concurrency - self.in_flight))
        jobs = await asyncio.to_thread(self._queue.receive, free)
        for receipt, run_id in jobs:
            await self._slots.acquire()
            task = asyncio.create_task(self._handle_slot(receipt, run_id), name=f"run:{run_id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return len(jobs)

    async def run(self, stop: asyncio.Event) -> None:
        """Consume until ``stop`` is set, then drain and shut down."""
        scheduler_task: asyncio.Task | None = None
        if self._scheduler is not None:
            scheduler_task = asyncio.create_task(self._scheduler.run_forever(stop), name="scheduler")

        logger.info("worker_started", concurrency=self._concurrency)
        try:
            while not stop.is_set():
                try:
                    started = await self.poll_once()
                except QueueError as exc:
                    logger.error("queue_receive_failed", error=str(exc))
                    started = 0
                if started == 0:
                    await _wait(stop, self._idle_seconds)
        finally:
            await self.shutdown(scheduler_task)

    async def shutdown(self, scheduler_task: asyncio.Task | None = None) -> None:
        if scheduler_task is not None:
            scheduler_task.cancel()
            await asyncio.gather(scheduler_task, return_exceptions=True)
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        if self._webhooks is not None:
            await self._webhooks.drain()
        logger.info("worker_stopped")
