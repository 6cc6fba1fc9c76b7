"""Resolve and decrypt the user secrets a run needs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable

import structlog

from stepiq.core.catalog import (
    PROVIDER_API_KEY_FIELD,
    provider_secret_names,
    providers_for_pipeline,
)
from stepiq.core.exceptions import SecretsUnavailableError
from stepiq.core.protocols import IKmsProvider, ISecretStore
from stepiq.models.pipeline import DeliveryTarget, PipelineDefinition
from stepiq.models.secrets import UserSecret
from stepiq.vault.crypto import decrypt_secret, find_env_references

logger = structlog.get_logger(__name__)


@dataclass
class ResolvedSecrets:
    """Decrypted secrets by name plus the plaintext set used for redaction."""

    values: dict[str, str] = field(default_factory=dict)
    plain_values: list[str] = field(default_factory=list)

    def api_keys(self, definition: PipelineDefinition, default_model: str) -> dict[str, str]:
        """Provider API keys for the model request, first alias that resolved."""
        keys: dict[str, str] = {}
        for provider in providers_for_pipeline(definition, default_model):
            for name in provider_secret_names(provider):
                if name in self.values:
                    keys[PROVIDER_API_KEY_FIELD[provider]] = self.values[name]
                    break
        return keys


def required_secret_names(definition: PipelineDefinition, default_model: str) -> list[str]:
    """``{{env.X}}`` references, provider key aliases and webhook signing secrets."""
    texts = [text for step in definition.steps for text in step.template_texts()]
    names = find_env_references(texts)
    for provider in providers_for_pipeline(definition, default_model):
        for name in provider_secret_names(provider):
            if name not in names:
                names.append(name)
    targets: list[DeliveryTarget] = definition.output.deliver if definition.output else []
    for target in targets:
        if target.signing_secret_env and target.signing_secret_env not in names:
            names.append(target.signing_secret_env)
    return names


class SecretResolver:
    """Looks up pipeline-scoped then global secrets and decrypts them.

    The KMS provider is obtained through ``kms_factory`` only when at least
    one secret row exists, and at most once per resolver. ``resolve`` is
    called from worker threads.
    """

    def __init__(
        self,
        store: ISecretStore,
        kms_factory: Callable[[], IKmsProvider],
        default_model: str = "gpt-5.2",
    ) -> None:
        self._store = store
        self._kms_factory = kms_factory
        self._kms: IKmsProvider | None = None
        self._kms_lock = threading.Lock()
        self._default_model = default_model

    def _master_key(self) -> bytes:
        try:
            with self._kms_lock:
                if self._kms is None:
                    self._kms = self._kms_factory()
            return self._kms.get_master_key()
        except Exception as exc:
            raise SecretsUnavailableError(str(exc)) from exc

    def resolve(self, user_id: str, pipeline_id: str, definition: PipelineDefinition) -> ResolvedSecrets:
        rows: list[UserSecret] = []
        for name in required_secret_names(definition, self._default_model):
            secret = self._store.find_secret(user_id, pipeline_id, name)
            if secret is not None:
                rows.append(secret)

        resolved = ResolvedSecrets()
        if not rows:
            return resolved

        master_key = self._master_key()
        for secret in rows:
            plaintext = decrypt_secret(user_id, secret.encrypted_value, master_key)
            resolved.values[secret.name] = plaintext
            resolved.plain_values.append(plaintext)

        logger.debug("secrets_resolved", user_id=user_id, pipeline_id=pipeline_id, count=len(rows))
        return resolved
