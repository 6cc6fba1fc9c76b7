"""Worker entry point: ``python -m stepiq.worker.main``."""

from __future__ import annotations

import asyncio
import signal

import structlog

from stepiq.core.config import AppSettings
from stepiq.core.logging import configure_logging
from stepiq.executor.orchestrator import RunOrchestrator
from stepiq.model_providers.gateway_provider import GatewayModelCaller
from stepiq.persistence import create_persistence
from stepiq.scheduler.scheduler import CronScheduler
from stepiq.vault.kms import create_kms_provider
from stepiq.webhooks.dispatcher import RetryPolicy, WebhookDispatcher
from stepiq.worker.consumer import Worker

logger = structlog.get_logger(__name__)


def build_worker(settings: AppSettings) -> tuple[Worker, GatewayModelCaller]:
    persistence = create_persistence(settings)
    webhooks = WebhookDispatcher(
        RetryPolicy(
            max_attempts=settings.webhook.max_attempts,
            base_ms=settings.webhook.backoff_base_ms,
            timeout_ms=settings.webhook.timeout_ms,
        )
    )
    model_caller = GatewayModelCaller(settings.llm.base_url, timeout=settings.llm.timeout_seconds)
    orchestrator = RunOrchestrator(
        runs=persistence.store,
        step_executions=persistence.store,
        pipelines=persistence.store,
        secrets=persistence.store,
        kms_factory=lambda: create_kms_provider(settings.kms),
        model_caller=model_caller,
        webhooks=webhooks,
        default_model=settings.worker.default_model,
    )
    scheduler = None
    if settings.scheduler.enabled:
        scheduler = CronScheduler(
            lock=persistence.lock,
            schedules=persistence.store,
            pipelines=persistence.store,
            runs=persistence.store,
            queue=persistence.queue,
            plan_limits=persistence.plan_limits,
            config=settings.scheduler,
        )
    worker = Worker(
        queue=persistence.queue,
        orchestrator=orchestrator,
        scheduler=scheduler,
        webhooks=webhooks,
        concurrency=settings.worker.concurrency,
        max_messages=settings.sqs.max_messages,
    )
    return worker, model_caller


async def serve(settings: AppSettings) -> None:
    worker, model_caller = build_worker(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await worker.run(stop)
    finally:
        await model_caller.aclose()


def main() -> None:
    settings = AppSettings()
    configure_logging(settings)
    logger.info("worker_booting", environment=settings.environment)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
