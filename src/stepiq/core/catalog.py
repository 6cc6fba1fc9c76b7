"""Model catalog, provider key aliases and plan limit effects."""

from __future__ import annotations

from typing import Literal

from stepiq.models.pipeline import LlmStep, PipelineDefinition
from stepiq.models.schedule import PlanLimits

ModelProvider = Literal["openai", "anthropic", "google", "mistral"]

DEFAULT_MODEL = "gpt-5.2"

SUPPORTED_MODELS: dict[str, ModelProvider] = {
    "claude-opus-4-6": "anthropic",
    "claude-sonnet-4-20250514": "anthropic",
    "claude-3-5-haiku-20241022": "anthropic",
    "gpt-5.2": "openai",
    "gpt-5.2-chat-latest": "openai",
    "gpt-5.3-codex": "openai",
    "gpt-4o": "openai",
    "gpt-4o-mini": "openai",
    "gemini-2.5-pro": "google",
    "gemini-2.5-flash": "google",
    "mistral-large-latest": "mistral",
    "mistral-small-latest": "mistral",
}

PROVIDER_SECRET_NAMES: dict[ModelProvider, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY", "openai_api_key"),
    "anthropic": ("ANTHROPIC_API_KEY", "anthropic_api_key"),
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY", "gemini_api_key", "google_api_key"),
    "mistral": ("MISTRAL_API_KEY", "mistral_api_key"),
}

# Key in the model request's ``api_keys`` mapping for each provider
PROVIDER_API_KEY_FIELD: dict[ModelProvider, str] = {
    "openai": "openai",
    "anthropic": "anthropic",
    "google": "gemini",
    "mistral": "mistral",
}

PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(cron_enabled=False, max_runs_per_day=10, webhooks_enabled=False),
    "starter": PlanLimits(cron_enabled=True, max_runs_per_day=100, webhooks_enabled=False),
    "pro": PlanLimits(cron_enabled=True, max_runs_per_day=500, webhooks_enabled=True),
    "enterprise": PlanLimits(cron_enabled=True, max_runs_per_day=-1, webhooks_enabled=True),
}


def provider_for_model(model: str) -> ModelProvider | None:
    return SUPPORTED_MODELS.get(model)


def provider_secret_names(provider: ModelProvider) -> tuple[str, ...]:
    return PROVIDER_SECRET_NAMES[provider]


def providers_for_pipeline(
    definition: PipelineDefinition, default_model: str = DEFAULT_MODEL
) -> list[ModelProvider]:
    """Providers whose API keys the pipeline's ``llm`` steps will need."""
    providers: list[ModelProvider] = []
    for step in definition.steps:
        if not isinstance(step, LlmStep):
            continue
        provider = provider_for_model(step.model or default_model)
        if provider is not None and provider not in providers:
            providers.append(provider)
    return providers


def limits_for_plan(plan: str | None) -> PlanLimits:
    """Unknown or missing plans get the free tier."""
    return PLAN_LIMITS.get(plan or "free", PLAN_LIMITS["free"])
