"""Signed, retried webhook delivery for completed runs.

Each delivery runs as its own ``asyncio`` task, so backoff sleeps never hold
up run execution. Outcome classification per attempt:

- 2xx: success, stop
- 4xx: terminal, stop (the receiver rejected the payload)
- 5xx, network error, timeout: retry with exponential backoff
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
import structlog

from stepiq.core.exceptions import WebhookDeliveryFailure
from stepiq.models.run import Run
from stepiq.models.webhook import (
    DeliveryAttemptResult,
    WebhookEnvelope,
    WebhookMeta,
    WebhookPipeline,
    WebhookRun,
)

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_ms: int = 1_000
    timeout_ms: int = 10_000


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Seconds to wait after failed ``attempt`` (1-based): 1s, 2s, 4s, ..."""
    return policy.base_ms * (2 ** (attempt - 1)) / 1000


def build_webhook_signature(signing_secret: str, timestamp: str, body: str) -> str:
    digest = hmac.new(
        signing_secret.encode("utf-8"),
        f"{timestamp}.{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"v1={digest}"


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _iso_now() -> str:
    return _iso(datetime.now(timezone.utc))


def build_run_envelope(run: Run, pipeline_name: str, output: Any = None) -> WebhookEnvelope:
    """Envelope for a finished run; ``meta`` is added per attempt."""
    return WebhookEnvelope(
        pipeline=WebhookPipeline(id=run.pipeline_id, version=run.pipeline_version, name=pipeline_name),
        run=WebhookRun(
            id=run.id,
            status=run.status.value,
            trigger_type=run.trigger_type.value,
            started_at=_iso(run.started_at),
            completed_at=_iso(run.completed_at),
        ),
        input=run.input_data,
        output=output if output is not None else run.output_data,
    )


def _serialize(envelope: WebhookEnvelope) -> str:
    return json.dumps(envelope.model_dump(mode="json"), separators=(",", ":"))


async def _attempt(
    client: httpx.AsyncClient,
    url: str,
    method: str,
    envelope: WebhookEnvelope,
    attempt: int,
    signing_secret: str | None,
    timeout: float,
) -> DeliveryAttemptResult:
    stamped = envelope.model_copy(update={"meta": WebhookMeta(sent_at=_iso_now(), attempt=attempt)})
    body = _serialize(stamped)
    timestamp = str(int(time.time()))
    headers = {
        "Content-Type": "application/json",
        "X-StepIQ-Event": stamped.event,
        "X-StepIQ-Timestamp": timestamp,
    }
    if signing_secret:
        headers["X-StepIQ-Signature"] = build_webhook_signature(signing_secret, timestamp, body)

    try:
        response = await client.request(
            method,
            url,
            headers=headers,
            content=None if method == "GET" else body,
            timeout=timeout,
        )
    except httpx.HTTPError as exc:
        return DeliveryAttemptResult(ok=False, attempt=attempt, error=str(exc) or exc.__class__.__name__)
    return DeliveryAttemptResult(
        ok=response.is_success, attempt=attempt, status_code=response.status_code,
    )


async def deliver_webhook_with_retry(
    url: str,
    envelope: WebhookEnvelope,
    *,
    method: str = "POST",
    signing_secret: str | None = None,
    policy: RetryPolicy = RetryPolicy(),
    client: httpx.AsyncClient | None = None,
    sleep: Sleep = asyncio.sleep,
) -> list[DeliveryAttemptResult]:
    """Deliver ``envelope`` and return every attempt's outcome."""
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient()

    results: list[DeliveryAttemptResult] = []
    try:
        for attempt in range(1, policy.max_attempts + 1):
            result = await _attempt(
                client, url, method, envelope, attempt, signing_secret, policy.timeout_ms / 1000,
            )
            results.append(result)
            if result.ok:
                break
            if result.status_code is not None and 400 <= result.status_code < 500:
                break
            if attempt < policy.max_attempts:
                await sleep(backoff_delay(attempt, policy))
    finally:
        if owns_client:
            await client.aclose()
    return results


def ensure_delivered(url: str, attempts: list[DeliveryAttemptResult]) -> None:
    if not attempts or not attempts[-1].ok:
        raise WebhookDeliveryFailure(url, attempts)


class WebhookDispatcher:
    """Runs each delivery as an independent, cancellable task.

    Failures are logged with their attempt history and never propagate to
    the run that triggered them.
    """

    def __init__(
        self,
        policy: RetryPolicy = RetryPolicy(),
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._policy = policy
        self._client = client
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(
        self,
        run_id: str,
        url: str,
        envelope: WebhookEnvelope,
        *,
        method: str = "POST",
        signing_secret: str | None = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._deliver(run_id, url, envelope, method, signing_secret),
            name=f"webhook:{run_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(
        self,
        run_id: str,
        url: str,
        envelope: WebhookEnvelope,
        method: str,
        signing_secret: str | None,
    ) -> list[DeliveryAttemptResult]:
        attempts = await deliver_webhook_with_retry(
            url,
            envelope,
            method=method,
            signing_secret=signing_secret,
            policy=self._policy,
            client=self._client,
            sleep=self._sleep,
        )
        try:
            ensure_delivered(url, attempts)
        except WebhookDeliveryFailure as exc:
            logger.warning(
                "webhook_delivery_failed",
                run_id=run_id,
                error=str(exc),
                attempts=[a.model_dump() for a in attempts],
            )
        else:
            logger.info("webhook_delivered", run_id=run_id, attempts=len(attempts))
        return attempts

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight deliveries."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
