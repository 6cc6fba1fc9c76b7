"""Unit tests for the queue-consuming Worker."""

from __future__ import annotations

import asyncio

import pytest

from stepiq.executor.orchestrator import RunOrchestrator
from stepiq.models.run import RunStatus
from stepiq.worker.consumer import Worker
from tests.fakes import MemoryRunQueue, MemoryStore, MockModelCaller, env_kms, make_pipeline, make_run


class _AckTrackingQueue(MemoryRunQueue):
    def __init__(self) -> None:
        super().__init__()
        self.acked: list[str] = []

    def ack(self, receipt: str) -> None:
        self.acked.append(receipt)
        super().ack(receipt)


@pytest.fixture
def store():
    store = MemoryStore()
    store.add_pipeline(make_pipeline([{"id": "s1", "prompt": "first"}]))
    return store


@pytest.fixture
def queue():
    return _AckTrackingQueue()


def _worker(store, queue, model=None, concurrency=2):
    orchestrator = RunOrchestrator(
        runs=store,
        step_executions=store,
        pipelines=store,
        secrets=store,
        kms_factory=env_kms,
        model_caller=model or MockModelCaller(),
    )
    return Worker(queue=queue, orchestrator=orchestrator, concurrency=concurrency, idle_seconds=0.01)


class TestHandle:
    async def test_completed_run_is_acked(self, store, queue):
        pipeline = store.get_pipeline("pipe-1")
        store.create_run(make_run(pipeline))
        await _worker(store, queue).handle("r1", "run-1")
        assert store.get_run("run-1").status == RunStatus.COMPLETED
        assert queue.acked == ["r1"]

    async def test_failed_run_is_still_acked(self, store, queue):
        pipeline = store.get_pipeline("pipe-1")
        store.create_run(make_run(pipeline))
        model = MockModelCaller()
        model.fail_on("first", RuntimeError("boom"))
        await _worker(store, queue, model).handle("r1", "run-1")
        assert store.get_run("run-1").status == RunStatus.FAILED
        assert queue.acked == ["r1"]

    async def test_unknown_run_is_acked(self, store, queue):
        await _worker(store, queue).handle("r1", "ghost")
        assert queue.acked == ["r1"]


class TestRun:
    async def test_consumes_queue_until_stopped(self, store, queue):
        pipeline = store.get_pipeline("pipe-1")
        for run_id in ("run-1", "run-2", "run-3"):
            store.create_run(make_run(pipeline, run_id=run_id))
            queue.enqueue_execute(run_id)

        stop = asyncio.Event()
        task = asyncio.create_task(_worker(store, queue).run(stop))
        for _ in range(200):
            if len(queue.acked) == 3:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert sorted(queue.acked) == ["r1", "r2", "r3"]
        assert {store.get_run(r).status for r in ("run-1", "run-2", "run-3")} == {RunStatus.COMPLETED}

    async def test_concurrency_must_be_positive(self, store, queue):
        with pytest.raises(ValueError):
            _worker(store, queue, concurrency=0)
