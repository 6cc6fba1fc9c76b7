"""StepIQ worker exception hierarchy."""

from __future__ import annotations

from typing import Any


class StepIQError(Exception):
    """Base exception for all StepIQ worker errors."""


class ConfigurationError(StepIQError):
    """Required configuration is missing or invalid (e.g. no KMS provider)."""


class SecretsUnavailableError(ConfigurationError):
    """The worker could not obtain a master key to decrypt user secrets.

    Distinct from a secret the user never configured: this is an operator
    problem and fails the run explicitly.
    """

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        suffix = f" ({reason})" if reason else ""
        super().__init__(
            "Worker cannot decrypt secrets: configure STEPIQ_KMS_MASTER_KEY "
            f"or Vault KMS{suffix}"
        )


class KMSError(StepIQError):
    """The remote key store returned an error or an unusable key."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class CryptoIntegrityError(StepIQError):
    """Ciphertext failed authentication or is structurally invalid."""


class PipelineError(StepIQError):
    """Error during pipeline run execution."""


class StepExecutionError(PipelineError):
    """A pipeline step failed. The message is already redacted."""

    def __init__(self, step_id: str, message: str) -> None:
        self.step_id = step_id
        self.detail = message
        super().__init__(f'Step "{step_id}" failed: {message}')


class StepNotImplementedError(PipelineError):
    """A declared step kind has no executor yet."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f'Step type "{kind}" is not implemented')


class RunNotFoundError(PipelineError):
    """No run row exists for the given id."""


class PipelineVersionNotFoundError(PipelineError):
    """The pinned pipeline version snapshot is missing."""


class SchedulerTickError(StepIQError):
    """Processing a single due schedule failed."""

    def __init__(self, schedule_id: str, message: str) -> None:
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} failed: {message}")


class WebhookDeliveryFailure(StepIQError):
    """All webhook attempts failed or a terminal 4xx was received."""

    def __init__(self, url: str, attempts: list[Any]) -> None:
        self.url = url
        self.attempts = attempts
        super().__init__(f"Webhook delivery to {url} failed after {len(attempts)} attempt(s)")


class LockError(StepIQError):
    """Distributed lock operation failed."""


class QueueError(StepIQError):
    """Run queue operation failed."""


class PersistenceError(StepIQError):
    """Relational store operation failed."""


class ModelCallError(PipelineError):
    """The model gateway rejected or failed a completion request."""


class TemplateError(PipelineError):
    """A prompt template references a path that may not be rendered."""
