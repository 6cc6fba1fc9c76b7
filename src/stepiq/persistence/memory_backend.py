"""In-memory backends for unit tests and local runs: dict-backed fakes."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any

from stepiq.core.catalog import limits_for_plan
from stepiq.core.exceptions import PersistenceError
from stepiq.models.pipeline import Pipeline, PipelineVersion
from stepiq.models.run import Run, RunStatus, StepExecution
from stepiq.models.schedule import PlanLimits, Schedule
from stepiq.models.secrets import UserSecret


class MemoryStore:
    """Dict-backed IRunStore, IStepExecutionStore, IPipelineStore,
    ISecretStore and IScheduleStore in one object."""

    def __init__(self) -> None:
        self.runs: dict[str, Run] = {}
        self.step_executions: dict[str, StepExecution] = {}
        self.pipelines: dict[str, Pipeline] = {}
        self.pipeline_versions: dict[tuple[str, int], PipelineVersion] = {}
        self.secrets: dict[str, UserSecret] = {}
        self.schedules: dict[str, Schedule] = {}

    # ---- seeding helpers ----

    def add_pipeline(self, pipeline: Pipeline) -> None:
        """Store the pipeline and snapshot its current definition as a version."""
        self.pipelines[pipeline.id] = pipeline
        self.pipeline_versions[(pipeline.id, pipeline.version)] = PipelineVersion(
            pipeline_id=pipeline.id, version=pipeline.version, definition=pipeline.definition,
        )

    def add_secret(self, secret: UserSecret) -> None:
        self.secrets[secret.id] = secret

    def add_schedule(self, schedule: Schedule) -> None:
        self.schedules[schedule.id] = schedule

    # ---- IRunStore ----

    def get_run(self, run_id: str) -> Run | None:
        run = self.runs.get(run_id)
        return run.model_copy() if run else None

    def create_run(self, run: Run) -> Run:
        self.runs[run.id] = run.model_copy()
        return run

    def update_run(
        self, run_id: str, *, expected_status: RunStatus | None = None, **fields: Any
    ) -> bool:
        if run_id not in self.runs:
            raise PersistenceError(f"Run {run_id} not found")
        if expected_status is not None and self.runs[run_id].status != expected_status:
            return False
        self.runs[run_id] = self.runs[run_id].model_copy(update=fields)
        return True

    def count_runs_since(self, user_id: str, start: datetime, end: datetime) -> int:
        return sum(
            1 for r in self.runs.values()
            if r.user_id == user_id and r.created_at is not None and start <= r.created_at <= end
        )

    # ---- IStepExecutionStore ----

    def create_step_execution(self, step: StepExecution) -> StepExecution:
        self.step_executions[step.id] = step.model_copy()
        return step

    def update_step_execution(self, step_execution_id: str, **fields: Any) -> None:
        current = self.step_executions[step_execution_id]
        self.step_executions[step_execution_id] = current.model_copy(update=fields)

    def list_step_executions(self, run_id: str) -> list[StepExecution]:
        rows = [s for s in self.step_executions.values() if s.run_id == run_id]
        return sorted(rows, key=lambda s: s.step_index)

    # ---- IPipelineStore ----

    def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        return self.pipelines.get(pipeline_id)

    def get_pipeline_version(self, pipeline_id: str, version: int) -> PipelineVersion | None:
        return self.pipeline_versions.get((pipeline_id, version))

    # ---- ISecretStore ----

    def find_secret(self, user_id: str, pipeline_id: str | None, name: str) -> UserSecret | None:
        global_match: UserSecret | None = None
        for secret in self.secrets.values():
            if secret.user_id != user_id or secret.name != name:
                continue
            if pipeline_id is not None and secret.pipeline_id == pipeline_id:
                return secret
            if secret.pipeline_id is None:
                global_match = secret
        return global_match

    def list_all_secrets(self) -> list[UserSecret]:
        return list(self.secrets.values())

    def update_secret_blobs(self, blobs: list[tuple[str, bytes]], key_version: int) -> None:
        missing = [secret_id for secret_id, _ in blobs if secret_id not in self.secrets]
        if missing:
            raise PersistenceError(f"Unknown secret ids: {missing}")
        for secret_id, blob in blobs:
            self.secrets[secret_id] = self.secrets[secret_id].model_copy(
                update={"encrypted_value": blob, "key_version": key_version}
            )

    # ---- IScheduleStore ----

    def list_due_schedules(self, now: datetime, limit: int) -> list[Schedule]:
        due = [
            s for s in self.schedules.values()
            if s.enabled and s.next_run_at is not None and s.next_run_at <= now
        ]
        return sorted(due, key=lambda s: s.next_run_at)[:limit]

    def update_schedule(self, schedule_id: str, **fields: Any) -> None:
        self.schedules[schedule_id] = self.schedules[schedule_id].model_copy(update=fields)


class MemoryPlanLimitsProvider:
    """IPlanLimitsProvider from a user_id -> plan mapping."""

    def __init__(self, plans: dict[str, str] | None = None) -> None:
        self.plans: dict[str, str] = dict(plans or {})

    def limits_for_user(self, user_id: str) -> PlanLimits:
        return limits_for_plan(self.plans.get(user_id))


class MemoryRunQueue:
    """List-backed IRunQueue. Receipts are message ids."""

    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []
        self._in_flight: dict[str, str] = {}
        self._seq = 0

    def enqueue_execute(self, run_id: str) -> None:
        self.jobs.append({"name": "execute", "data": {"runId": run_id}})

    def receive(self, max_messages: int = 1) -> list[tuple[str, str]]:
        taken, self.jobs = self.jobs[:max_messages], self.jobs[max_messages:]
        out: list[tuple[str, str]] = []
        for job in taken:
            self._seq += 1
            receipt = f"r{self._seq}"
            self._in_flight[receipt] = job["data"]["runId"]
            out.append((receipt, job["data"]["runId"]))
        return out

    def ack(self, receipt: str) -> None:
        self._in_flight.pop(receipt, None)


class MemoryLock:
    """Single-process IDistributedLock with TTL, for tests."""

    def __init__(self) -> None:
        self._held: dict[str, tuple[str, float]] = {}

    def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        held = self._held.get(key)
        if held is not None and held[1] > time.monotonic():
            return False
        self._held[key] = (token, time.monotonic() + ttl_ms / 1000)
        return True

    def release(self, key: str, token: str) -> bool:
        held = self._held.get(key)
        if held is None or held[0] != token:
            return False
        del self._held[key]
        return True
