"""RunOrchestrator: executes one pinned pipeline run, step by step.

State machine: pending -> running -> completed | failed. Steps run strictly
in order and may only read outputs of earlier steps. The first failing step
aborts the rest of the run. Every string persisted or logged goes through
secret redaction first. Store and KMS calls are blocking, so they run in
worker threads to keep the event loop free for other runs.
"""

from __future__ import annotations

import asyncio
import functools
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from stepiq.core.exceptions import PipelineVersionNotFoundError, RunNotFoundError, StepExecutionError
from stepiq.core.protocols import (
    IKmsProvider,
    IModelCaller,
    IPipelineStore,
    IRunStore,
    ISecretStore,
    IStepExecutionStore,
)
from stepiq.executor.secrets import ResolvedSecrets, SecretResolver
from stepiq.executor.steps import execute_step
from stepiq.models.pipeline import LlmStep, PipelineDefinition, PipelineStep
from stepiq.models.run import Run, RunStatus, StepExecution, StepStatus
from stepiq.vault.crypto import redact_secrets
from stepiq.webhooks.dispatcher import WebhookDispatcher, build_run_envelope

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def redact_value(value: Any, known_values: list[str]) -> Any:
    """Redact every string inside a JSON-like value."""
    if isinstance(value, str):
        return redact_secrets(value, known_values)
    if isinstance(value, dict):
        return {k: redact_value(v, known_values) for k, v in value.items()}
    if isinstance(value, list):
        return [redact_value(v, known_values) for v in value]
    return value


@dataclass
class _Totals:
    tokens: int = 0
    cost_cents: float = 0


class RunOrchestrator:
    """Executes runs delivered by the queue. One run per call, one worker per run."""

    def __init__(
        self,
        *,
        runs: IRunStore,
        step_executions: IStepExecutionStore,
        pipelines: IPipelineStore,
        secrets: ISecretStore,
        kms_factory: Callable[[], IKmsProvider],
        model_caller: IModelCaller,
        webhooks: WebhookDispatcher | None = None,
        default_model: str = "gpt-5.2",
    ) -> None:
        self._runs = runs
        self._steps = step_executions
        self._pipelines = pipelines
        self._model = model_caller
        self._webhooks = webhooks
        self._default_model = default_model
        self._resolver = SecretResolver(secrets, kms_factory, default_model)

    async def execute_run(self, run_id: str) -> Run:
        run = await asyncio.to_thread(self._runs.get_run, run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        if run.status != RunStatus.PENDING:
            logger.info("run_skipped", run_id=run_id, status=run.status)
            return run

        version = await asyncio.to_thread(
            self._pipelines.get_pipeline_version, run.pipeline_id, run.pipeline_version
        )
        if version is None:
            error = str(PipelineVersionNotFoundError(
                f"Pipeline {run.pipeline_id} version {run.pipeline_version} not found"
            ))
            await self._update_run(
                run_id, expected_status=RunStatus.PENDING,
                status=RunStatus.FAILED, error=error, completed_at=_now(),
            )
            logger.error("run_failed", run_id=run_id, error=error)
            return await self._reload(run)

        definition = version.definition
        if not await self._update_run(
            run_id, expected_status=RunStatus.PENDING, status=RunStatus.RUNNING, started_at=_now(),
        ):
            logger.info("run_claimed_elsewhere", run_id=run_id)
            return await self._reload(run)
        logger.info("run_started", run_id=run_id, pipeline_id=run.pipeline_id, steps=len(definition.steps))

        context: dict[str, Any] = {
            "input": run.input_data,
            "vars": definition.variables,
            "env": {},
            "steps": {},
        }
        totals = _Totals()
        secrets = ResolvedSecrets()

        try:
            secrets = await asyncio.to_thread(
                self._resolver.resolve, run.user_id, run.pipeline_id, definition
            )
            context["env"] = secrets.values
            api_keys = secrets.api_keys(definition, self._default_model)

            for index, step in enumerate(definition.steps):
                if await self._cancelled(run_id):
                    logger.info("run_cancelled", run_id=run_id, before_step=step.id)
                    return await self._reload(run)
                await self._run_step(run_id, index, step, context, api_keys, secrets, totals)

            output_id = definition.output_step_id()
            output = (context["steps"].get(output_id) or {}).get("output") if output_id else None
            if not await self._finish(
                run_id,
                RunStatus.COMPLETED,
                output_data=redact_value(output, secrets.plain_values),
                total_tokens=totals.tokens,
                total_cost_cents=totals.cost_cents,
            ):
                return await self._reload(run)
        except Exception as exc:
            error = redact_secrets(str(exc) or exc.__class__.__name__, secrets.plain_values)
            await self._finish(
                run_id,
                RunStatus.FAILED,
                error=error,
                total_tokens=totals.tokens,
                total_cost_cents=totals.cost_cents,
            )
            logger.warning("run_failed", run_id=run_id, error=error)
            return await self._reload(run)

        logger.info("run_completed", run_id=run_id, total_tokens=totals.tokens, cost_cents=totals.cost_cents)
        finished = await self._reload(run)
        self._deliver(finished, definition, secrets)
        return finished

    async def _reload(self, run: Run) -> Run:
        return await asyncio.to_thread(self._runs.get_run, run.id) or run

    async def _update_run(self, run_id: str, **fields: Any) -> bool:
        return await asyncio.to_thread(functools.partial(self._runs.update_run, run_id, **fields))

    async def _cancelled(self, run_id: str) -> bool:
        current = await asyncio.to_thread(self._runs.get_run, run_id)
        return current is not None and current.status == RunStatus.CANCELLED

    async def _finish(self, run_id: str, status: RunStatus, **fields: Any) -> bool:
        """Write a terminal status only if the run is still ``running``."""
        written = await self._update_run(
            run_id, expected_status=RunStatus.RUNNING, status=status, completed_at=_now(), **fields
        )
        if not written:
            logger.info("run_finish_skipped", run_id=run_id, wanted=status)
        return written

    async def _run_step(
        self,
        run_id: str,
        index: int,
        step: PipelineStep,
        context: dict[str, Any],
        api_keys: dict[str, str],
        secrets: ResolvedSecrets,
        totals: _Totals,
    ) -> None:
        record = await asyncio.to_thread(
            self._steps.create_step_execution,
            StepExecution(
                id=str(uuid.uuid4()),
                run_id=run_id,
                step_id=step.id,
                step_index=index,
                model=(step.model or self._default_model) if isinstance(step, LlmStep) else None,
                status=StepStatus.RUNNING,
                started_at=_now(),
            ),
        )
        started = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                execute_step(step, context, self._model, api_keys, self._default_model),
                timeout=step.timeout_seconds,
            )
        except Exception as exc:
            if isinstance(exc, TimeoutError):
                message = f"Timed out after {step.timeout_seconds}s"
            else:
                message = str(exc) or exc.__class__.__name__
            error = redact_secrets(message, secrets.plain_values)
            await self._update_step(record.id, status=StepStatus.FAILED, error=error, completed_at=_now())
            raise StepExecutionError(step.id, error) from exc

        context["steps"][step.id] = {"output": outcome.parsed_output}
        totals.tokens += outcome.total_tokens
        totals.cost_cents += outcome.cost_cents

        known = secrets.plain_values
        await self._update_step(
            record.id,
            status=StepStatus.COMPLETED,
            prompt_sent=redact_secrets(outcome.prompt, known),
            raw_output=redact_secrets(outcome.raw_output, known),
            parsed_output=redact_value(outcome.parsed_output, known),
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            cost_cents=outcome.cost_cents,
            duration_ms=int((time.monotonic() - started) * 1000),
            completed_at=_now(),
        )
        logger.debug("step_completed", run_id=run_id, step_id=step.id, tokens=outcome.total_tokens)

    async def _update_step(self, step_execution_id: str, **fields: Any) -> None:
        await asyncio.to_thread(
            functools.partial(self._steps.update_step_execution, step_execution_id, **fields)
        )

    def _deliver(self, run: Run, definition: PipelineDefinition, secrets: ResolvedSecrets) -> None:
        if self._webhooks is None or definition.output is None:
            return
        for target in definition.output.deliver:
            if target.type != "webhook" or not target.url:
                continue
            signing_secret = (
                secrets.values.get(target.signing_secret_env) if target.signing_secret_env else None
            )
            self._webhooks.dispatch(
                run.id,
                target.url,
                build_run_envelope(run, definition.name),
                method=target.method,
                signing_secret=signing_secret,
            )
