"""Shared test doubles: re-export memory backends plus small builders."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from stepiq.model_providers.mock_provider import MockModelCaller
from stepiq.models.pipeline import Pipeline, PipelineDefinition
from stepiq.models.run import Run, RunStatus, TriggerType
from stepiq.persistence.memory_backend import (
    MemoryLock,
    MemoryPlanLimitsProvider,
    MemoryRunQueue,
    MemoryStore,
)
from stepiq.vault.kms import EnvKmsProvider

MASTER_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
MASTER_KEY = bytes.fromhex(MASTER_KEY_HEX)


def env_kms() -> EnvKmsProvider:
    return EnvKmsProvider(MASTER_KEY_HEX)


def make_pipeline(
    steps: list[dict[str, Any]],
    *,
    pipeline_id: str = "pipe-1",
    user_id: str = "user-1",
    version: int = 1,
    **definition: Any,
) -> Pipeline:
    return Pipeline(
        id=pipeline_id,
        user_id=user_id,
        name=definition.get("name", "Test pipeline"),
        version=version,
        definition=PipelineDefinition.model_validate(
            {"name": "Test pipeline", "version": version, "steps": steps, **definition}
        ),
    )


def make_run(
    pipeline: Pipeline,
    *,
    run_id: str = "run-1",
    input_data: dict[str, Any] | None = None,
    status: RunStatus = RunStatus.PENDING,
) -> Run:
    return Run(
        id=run_id,
        pipeline_id=pipeline.id,
        pipeline_version=pipeline.version,
        user_id=pipeline.user_id,
        trigger_type=TriggerType.MANUAL,
        status=status,
        input_data=input_data or {},
        created_at=datetime.now(timezone.utc),
    )


__all__ = [
    "MASTER_KEY",
    "MASTER_KEY_HEX",
    "MemoryLock",
    "MemoryPlanLimitsProvider",
    "MemoryRunQueue",
    "MemoryStore",
    "MockModelCaller",
    "env_kms",
    "make_pipeline",
    "make_run",
]
