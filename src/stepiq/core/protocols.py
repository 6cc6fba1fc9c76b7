"""Protocol interfaces for all StepIQ worker abstractions.

All inter-layer communication uses these Protocols: structural typing,
no inheritance required, easy to test with isinstance().
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from stepiq.models.llm import ModelRequest, ModelResponse
from stepiq.models.pipeline import Pipeline, PipelineVersion
from stepiq.models.run import Run, RunStatus, StepExecution
from stepiq.models.schedule import PlanLimits, Schedule
from stepiq.models.secrets import UserSecret


# ---------------------------------------------------------------------------
# Key management
# ---------------------------------------------------------------------------

@runtime_checkable
class IKmsProvider(Protocol):
    """Source of the 32-byte master key."""

    def get_master_key(self, version: int | None = None) -> bytes: ...


# ---------------------------------------------------------------------------
# Model capability
# ---------------------------------------------------------------------------

@runtime_checkable
class IModelCaller(Protocol):
    """Opaque LLM call: prompt in, text plus usage out."""

    async def call_model(self, request: ModelRequest) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Persistence: runs and step executions (read/write)
# ---------------------------------------------------------------------------

@runtime_checkable
class IRunStore(Protocol):
    def get_run(self, run_id: str) -> Run | None: ...

    def create_run(self, run: Run) -> Run: ...

    def update_run(
        self, run_id: str, *, expected_status: RunStatus | None = None, **fields: Any
    ) -> bool:
        """Apply ``fields``; with ``expected_status``, only while the run is still in it."""
        ...

    def count_runs_since(self, user_id: str, start: datetime, end: datetime) -> int: ...


@runtime_checkable
class IStepExecutionStore(Protocol):
    def create_step_execution(self, step: StepExecution) -> StepExecution: ...

    def update_step_execution(self, step_execution_id: str, **fields: Any) -> None: ...

    def list_step_executions(self, run_id: str) -> list[StepExecution]: ...


# ---------------------------------------------------------------------------
# Persistence: pipelines and secrets (read-only)
# ---------------------------------------------------------------------------

@runtime_checkable
class IPipelineStore(Protocol):
    def get_pipeline(self, pipeline_id: str) -> Pipeline | None: ...

    def get_pipeline_version(self, pipeline_id: str, version: int) -> PipelineVersion | None: ...


@runtime_checkable
class ISecretStore(Protocol):
    def find_secret(self, user_id: str, pipeline_id: str | None, name: str) -> UserSecret | None:
        """Pipeline-scoped row if present, else the global row."""
        ...

    def list_all_secrets(self) -> list[UserSecret]: ...

    def update_secret_blobs(self, blobs: list[tuple[str, bytes]], key_version: int) -> None:
        """Replace (secret_id, blob) pairs atomically, stamping key_version."""
        ...


# ---------------------------------------------------------------------------
# Persistence: schedules (read/write)
# ---------------------------------------------------------------------------

@runtime_checkable
class IScheduleStore(Protocol):
    def list_due_schedules(self, now: datetime, limit: int) -> list[Schedule]: ...

    def update_schedule(self, schedule_id: str, **fields: Any) -> None: ...


@runtime_checkable
class IPlanLimitsProvider(Protocol):
    """Plan caps and flags for a user; pricing policy lives elsewhere."""

    def limits_for_user(self, user_id: str) -> PlanLimits: ...


# ---------------------------------------------------------------------------
# Queue and lock
# ---------------------------------------------------------------------------

@runtime_checkable
class IRunQueue(Protocol):
    """Single-consumer job queue carrying ``execute`` jobs."""

    def enqueue_execute(self, run_id: str) -> None: ...

    def receive(self, max_messages: int = 1) -> list[tuple[str, str]]:
        """Return (receipt, run_id) pairs."""
        ...

    def ack(self, receipt: str) -> None: ...


@runtime_checkable
class IDistributedLock(Protocol):
    """Cross-process mutual exclusion with TTL and owner-checked release."""

    def acquire(self, key: str, token: str, ttl_ms: int) -> bool: ...

    def release(self, key: str, token: str) -> bool: ...
