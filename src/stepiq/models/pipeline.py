"""Pipeline definition models: steps, output, delivery targets.

Steps form a tagged union on ``type``. ``llm`` is the default kind;
``transform`` renders its prompt and returns it. Every other declared kind
(``condition``, ``parallel``, ``webhook``, ``human_review``, ``code``) is
parsed into :class:`PlaceholderStep` so the executor can fail it explicitly.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class OutputFormat(StrEnum):
    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"


class _StepBase(BaseModel):
    id: str
    name: str = ""
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    timeout_seconds: Optional[float] = None

    def template_texts(self) -> list[str]:
        """Prompt texts that may carry ``{{env.NAME}}`` references."""
        return [t for t in (self.prompt, self.system_prompt) if t]


class LlmStep(_StepBase):
    """Calls the model capability with the rendered prompt."""

    type: Literal["llm"] = "llm"
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    output_format: Optional[OutputFormat] = None


class TransformStep(_StepBase):
    """Returns the rendered prompt itself. No network call."""

    type: Literal["transform"] = "transform"


class PlaceholderStep(_StepBase):
    """A step kind the schema declares but the worker does not execute."""

    model_config = ConfigDict(extra="allow")

    type: str


def _step_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("type") or "llm"
    else:
        kind = getattr(value, "type", None) or "llm"
    return kind if kind in ("llm", "transform") else "placeholder"


PipelineStep = Annotated[
    Union[
        Annotated[LlmStep, Tag("llm")],
        Annotated[TransformStep, Tag("transform")],
        Annotated[PlaceholderStep, Tag("placeholder")],
    ],
    Discriminator(_step_kind),
]


class DeliveryTarget(BaseModel):
    """Where to deliver run output once the run completes."""

    type: Literal["webhook", "email", "file"]
    url: Optional[str] = None
    method: Literal["POST", "PUT", "GET"] = "POST"
    # Name of a user secret whose value signs the webhook payload
    signing_secret_env: Optional[str] = None


class PipelineOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(default=None, alias="from")
    deliver: list[DeliveryTarget] = Field(default_factory=list)


class PipelineDefinition(BaseModel):
    """Snapshot of a pipeline as pinned by a pipeline version."""

    name: str
    description: str = ""
    version: int = 1
    variables: dict[str, Any] = Field(default_factory=dict)
    steps: list[PipelineStep] = Field(default_factory=list)
    output: Optional[PipelineOutput] = None

    def output_step_id(self) -> Optional[str]:
        if self.output is not None and self.output.from_:
            return self.output.from_
        return self.steps[-1].id if self.steps else None


class Pipeline(BaseModel):
    """Pipeline row: owner and current version pointer."""

    id: str
    user_id: str
    name: str
    version: int = 1
    definition: PipelineDefinition


class PipelineVersion(BaseModel):
    """Immutable definition snapshot for one pipeline version."""

    pipeline_id: str
    version: int
    definition: PipelineDefinition
