"""Run and step execution state models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(StrEnum):
    MANUAL = "manual"
    API = "api"
    CRON = "cron"
    WEBHOOK = "webhook"


class Run(BaseModel):
    """One execution of a pinned pipeline version."""

    id: str
    pipeline_id: str
    pipeline_version: int
    user_id: str
    trigger_type: TriggerType = TriggerType.MANUAL
    status: RunStatus = RunStatus.PENDING
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: Any = None
    total_tokens: int = 0
    total_cost_cents: float = 0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class StepExecution(BaseModel):
    """Persisted record of a single step attempt within a run."""

    id: str
    run_id: str
    step_id: str
    step_index: int
    model: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    prompt_sent: Optional[str] = None
    raw_output: Optional[str] = None
    parsed_output: Any = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: float = 0
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
