"""Rotate the vault master key: re-wrap every stored secret's DEK.

Keys are read from the environment, never from the command line:

    ROTATE_OLD_MASTER_KEY   current key, 64 hex chars
    ROTATE_NEW_MASTER_KEY   replacement key, 64 hex chars
    ROTATE_NEW_KEY_VERSION  integer stamped on every rotated row (default 2)
    ROTATE_DRY_RUN          "true" to validate without writing

Usage:
    python scripts/rotate_master_key.py --database-url postgresql+psycopg://...
"""

from __future__ import annotations

import argparse
import os
import sys

import structlog

from stepiq.core.config import AppSettings
from stepiq.core.exceptions import ConfigurationError, StepIQError
from stepiq.core.logging import configure_logging
from stepiq.core.protocols import ISecretStore
from stepiq.persistence.sql_backend import SqlStore, create_sql_engine
from stepiq.vault.crypto import wiped
from stepiq.vault.kms import parse_hex_key
from stepiq.vault.rotation import RotationReport, rotate_master_key

logger = structlog.get_logger("rotate_master_key")


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def read_key(env: dict[str, str], name: str) -> bytearray:
    value = env.get(name)
    if not value:
        raise ConfigurationError(f"{name} is required")
    return bytearray(parse_hex_key(value, name))


def read_key_version(env: dict[str, str]) -> int:
    raw = env.get("ROTATE_NEW_KEY_VERSION", "2")
    try:
        version = int(raw)
    except ValueError as exc:
        raise ConfigurationError("ROTATE_NEW_KEY_VERSION must be an integer") from exc
    if version < 1:
        raise ConfigurationError("ROTATE_NEW_KEY_VERSION must be a positive integer")
    return version


def run_rotation(store: ISecretStore, env: dict[str, str], dry_run: bool = False) -> RotationReport:
    """Read both keys from ``env``, rotate, and wipe the key buffers."""
    version = read_key_version(env)
    dry_run = dry_run or _env_flag(env.get("ROTATE_DRY_RUN"))
    with wiped(read_key(env, "ROTATE_OLD_MASTER_KEY")) as old_key, \
            wiped(read_key(env, "ROTATE_NEW_MASTER_KEY")) as new_key:
        return rotate_master_key(store, old_key, new_key, version, dry_run=dry_run)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Rotate the StepIQ vault master key")
    parser.add_argument("--database-url", default=None, help="Override STEPIQ_DB_URL")
    parser.add_argument("--dry-run", action="store_true", help="Validate without writing")
    args = parser.parse_args(argv)

    settings = AppSettings()
    configure_logging(settings)
    engine = create_sql_engine(args.database_url or settings.database.url)
    try:
        report = run_rotation(SqlStore(engine), dict(os.environ), dry_run=args.dry_run)
    except (StepIQError, ValueError) as exc:
        logger.error("key_rotation_failed", error=str(exc))
        return 1
    finally:
        engine.dispose()

    print(
        f"Rotated {report.rotated}/{report.total} secrets to key version "
        f"{report.new_key_version} in {report.duration_ms}ms"
        + (" (dry run)" if report.dry_run else "")
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
