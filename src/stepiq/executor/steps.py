"""Per-kind step execution."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, assert_never

from stepiq.core.exceptions import StepNotImplementedError
from stepiq.core.protocols import IModelCaller
from stepiq.executor.interpolate import interpolate
from stepiq.models.llm import ModelRequest
from stepiq.models.pipeline import (
    LlmStep,
    OutputFormat,
    PipelineStep,
    PlaceholderStep,
    TransformStep,
)


@dataclass
class StepOutcome:
    prompt: str
    raw_output: str
    parsed_output: Any
    input_tokens: int = 0
    output_tokens: int = 0
    cost_cents: float = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def parse_output(raw: str, output_format: OutputFormat | None) -> Any:
    """JSON-decode when asked to; fall back to the raw string on bad JSON."""
    if output_format != OutputFormat.JSON:
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


async def execute_step(
    step: PipelineStep,
    context: dict[str, Any],
    model_caller: IModelCaller,
    api_keys: dict[str, str],
    default_model: str,
) -> StepOutcome:
    prompt = interpolate(step.prompt, context) if step.prompt else ""

    if isinstance(step, LlmStep):
        system = interpolate(step.system_prompt, context) if step.system_prompt else None
        response = await model_caller.call_model(
            ModelRequest(
                model=step.model or default_model,
                prompt=prompt,
                system=system,
                temperature=step.temperature,
                max_tokens=step.max_tokens,
                output_format=step.output_format,
                api_keys=api_keys,
            )
        )
        return StepOutcome(
            prompt=prompt,
            raw_output=response.output,
            parsed_output=parse_output(response.output, step.output_format),
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_cents=response.cost_cents,
        )
    if isinstance(step, TransformStep):
        return StepOutcome(prompt=prompt, raw_output=prompt, parsed_output=prompt)
    if isinstance(step, PlaceholderStep):
        raise StepNotImplementedError(step.type)
    assert_never(step)
