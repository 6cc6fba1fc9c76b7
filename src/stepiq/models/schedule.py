"""Cron schedule and plan limit models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class Schedule(BaseModel):
    """Cron trigger for a pipeline."""

    id: str
    pipeline_id: str
    cron_expression: str
    timezone: str = "UTC"
    input_data: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None


class PlanLimits(BaseModel):
    """Effects of a billing plan consumed by the worker.

    ``max_runs_per_day`` of -1 means unlimited. ``webhooks_enabled`` is
    stored with the plan but only checked when a pipeline is saved, so the
    worker carries it without acting on it.
    """

    cron_enabled: bool = False
    max_runs_per_day: int = 10
    webhooks_enabled: bool = False
