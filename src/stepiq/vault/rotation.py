"""Batch master-key rotation: re-wrap every stored secret's DEK."""

from __future__ import annotations

import time

import structlog
from pydantic import BaseModel

from stepiq.core.protocols import ISecretStore
from stepiq.vault.crypto import re_wrap_secret

logger = structlog.get_logger(__name__)


class RotationReport(BaseModel):
    total: int
    rotated: int
    dry_run: bool
    new_key_version: int
    duration_ms: int


def rotate_master_key(
    store: ISecretStore,
    old_master_key: bytes,
    new_master_key: bytes,
    new_key_version: int,
    dry_run: bool = False,
) -> RotationReport:
    """Re-wrap all secrets under ``new_master_key``.

    Every blob is re-wrapped before anything is written, so a single bad
    secret aborts the job with nothing persisted. In dry-run mode the
    re-wrap is validated but never stored.
    """
    if new_key_version < 1:
        raise ValueError("new_key_version must be a positive integer")
    if old_master_key == new_master_key:
        raise ValueError("Old and new master keys must be different")

    started = time.monotonic()
    secrets = store.list_all_secrets()
    logger.info(
        "key_rotation_started",
        total=len(secrets),
        new_key_version=new_key_version,
        dry_run=dry_run,
    )

    rotated = [
        (secret.id, re_wrap_secret(secret.user_id, secret.encrypted_value, old_master_key, new_master_key))
        for secret in secrets
    ]

    if not dry_run and rotated:
        store.update_secret_blobs(rotated, new_key_version)

    report = RotationReport(
        total=len(secrets),
        rotated=0 if dry_run else len(rotated),
        dry_run=dry_run,
        new_key_version=new_key_version,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info("key_rotation_finished", **report.model_dump())
    return report
