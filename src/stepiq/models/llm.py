"""Request/response shapes for the external model capability."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from stepiq.models.pipeline import OutputFormat


class ModelRequest(BaseModel):
    model: str
    prompt: str
    system: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    output_format: Optional[OutputFormat] = None
    api_keys: dict[str, str] = Field(default_factory=dict)


class ModelResponse(BaseModel):
    output: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: float = 0
