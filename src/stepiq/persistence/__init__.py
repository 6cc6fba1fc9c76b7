"""Pluggable persistence backends behind Protocol interfaces."""

from __future__ import annotations

from dataclasses import dataclass

from stepiq.core.config import AppSettings
from stepiq.persistence.redis_backend import RedisDistributedLock
from stepiq.persistence.sql_backend import SqlPlanLimitsProvider, SqlStore, create_sql_engine
from stepiq.persistence.sqs_backend import SqsRunQueue


@dataclass
class Persistence:
    store: SqlStore
    plan_limits: SqlPlanLimitsProvider
    lock: RedisDistributedLock
    queue: SqsRunQueue


def create_persistence(settings: AppSettings | None = None) -> Persistence:
    """Create wired-up production backends from application settings."""
    if settings is None:
        settings = AppSettings()

    engine = create_sql_engine(
        settings.database.url,
        echo=settings.database.echo,
        pool_size=settings.database.pool_size,
    )

    lock = RedisDistributedLock(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
    )

    queue = SqsRunQueue(
        queue_url=settings.sqs.run_queue_url,
        region=settings.sqs.region,
        endpoint_url=settings.sqs.endpoint_url,
        wait_time_seconds=settings.sqs.wait_time_seconds,
    )

    return Persistence(
        store=SqlStore(engine),
        plan_limits=SqlPlanLimitsProvider(engine),
        lock=lock,
        queue=queue,
    )
