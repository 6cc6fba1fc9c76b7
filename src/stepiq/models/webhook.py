"""Outbound webhook wire format."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class WebhookPipeline(BaseModel):
    id: str
    version: int
    name: str


class WebhookRun(BaseModel):
    id: str
    status: str
    trigger_type: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


class WebhookMeta(BaseModel):
    sent_at: str
    attempt: int


class WebhookEnvelope(BaseModel):
    """Payload body. ``meta`` is stamped fresh on every attempt."""

    event: Literal["pipeline.run.completed"] = "pipeline.run.completed"
    pipeline: WebhookPipeline
    run: WebhookRun
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    meta: Optional[WebhookMeta] = None


class DeliveryAttemptResult(BaseModel):
    """Outcome of one HTTP attempt, kept for audit."""

    ok: bool
    attempt: int
    status_code: Optional[int] = None
    error: Optional[str] = None
