"""SQLAlchemy Core backend for the worker's relational boundary.

The schema is owned by the API service; these table objects only describe
the columns the worker reads and writes. Encrypted secret values are stored
base64-encoded.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Engine,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError

from stepiq.core.catalog import limits_for_plan
from stepiq.core.exceptions import PersistenceError
from stepiq.models.pipeline import Pipeline, PipelineVersion
from stepiq.models.run import Run, RunStatus, StepExecution
from stepiq.models.schedule import PlanLimits, Schedule
from stepiq.models.secrets import UserSecret

metadata = MetaData()

users = Table(
    "users", metadata,
    Column("id", String, primary_key=True),
    Column("plan", String, nullable=False, default="free"),
)

pipelines = Table(
    "pipelines", metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False),
    Column("name", String, nullable=False),
    Column("version", Integer, nullable=False, default=1),
    Column("definition", JSON, nullable=False),
)

pipeline_versions = Table(
    "pipeline_versions", metadata,
    Column("pipeline_id", String, primary_key=True),
    Column("version", Integer, primary_key=True),
    Column("definition", JSON, nullable=False),
)

runs = Table(
    "runs", metadata,
    Column("id", String, primary_key=True),
    Column("pipeline_id", String, nullable=False),
    Column("pipeline_version", Integer, nullable=False),
    Column("user_id", String, nullable=False),
    Column("trigger_type", String, nullable=False),
    Column("status", String, nullable=False),
    Column("input_data", JSON),
    Column("output_data", JSON),
    Column("total_tokens", Integer, default=0),
    Column("total_cost_cents", Float, default=0),
    Column("error", Text),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True)),
)

step_executions = Table(
    "step_executions", metadata,
    Column("id", String, primary_key=True),
    Column("run_id", String, nullable=False),
    Column("step_id", String, nullable=False),
    Column("step_index", Integer, nullable=False),
    Column("model", String),
    Column("status", String, nullable=False),
    Column("prompt_sent", Text),
    Column("raw_output", Text),
    Column("parsed_output", JSON),
    Column("input_tokens", Integer, default=0),
    Column("output_tokens", Integer, default=0),
    Column("cost_cents", Float, default=0),
    Column("duration_ms", Integer),
    Column("error", Text),
    Column("retry_count", Integer, default=0),
    Column("started_at", DateTime(timezone=True)),
    Column("completed_at", DateTime(timezone=True)),
)

user_secrets = Table(
    "user_secrets", metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False),
    Column("pipeline_id", String, nullable=True),
    Column("name", String, nullable=False),
    Column("encrypted_value", Text, nullable=False),
    Column("key_version", Integer, nullable=False, default=1),
    Column("updated_at", DateTime(timezone=True)),
)

schedules = Table(
    "schedules", metadata,
    Column("id", String, primary_key=True),
    Column("pipeline_id", String, nullable=False),
    Column("cron_expression", String, nullable=False),
    Column("timezone", String, nullable=False, default="UTC"),
    Column("input_data", JSON),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("next_run_at", DateTime(timezone=True)),
    Column("last_run_at", DateTime(timezone=True)),
)


def _aware(value: Any) -> Any:
    """SQLite drops tzinfo; treat naive timestamps as UTC."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row(mapping: Any) -> dict[str, Any]:
    return {k: _aware(v) for k, v in dict(mapping).items()}


def _secret(row: Any) -> UserSecret:
    data = _row(row)
    data.pop("updated_at", None)
    data["encrypted_value"] = base64.b64decode(data["encrypted_value"])
    return UserSecret.model_validate(data)


def create_sql_engine(url: str, echo: bool = False, pool_size: int = 5) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo)
    return create_engine(url, echo=echo, pool_size=pool_size, pool_pre_ping=True)


class SqlStore:
    """Production store for runs, steps, pipelines, secrets and schedules."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _fetch_one(self, stmt: Any) -> dict[str, Any] | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Query failed: {exc}") from exc
        return _row(row) if row is not None else None

    def _fetch_all(self, stmt: Any) -> list[Any]:
        try:
            with self._engine.connect() as conn:
                return list(conn.execute(stmt).mappings().all())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Query failed: {exc}") from exc

    def _write(self, stmt: Any) -> int:
        try:
            with self._engine.begin() as conn:
                return conn.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Write failed: {exc}") from exc

    # ---- IRunStore ----

    def get_run(self, run_id: str) -> Run | None:
        row = self._fetch_one(select(runs).where(runs.c.id == run_id))
        return Run.model_validate(row) if row else None

    def create_run(self, run: Run) -> Run:
        self._write(insert(runs).values(**run.model_dump()))
        return run

    def update_run(
        self, run_id: str, *, expected_status: RunStatus | None = None, **fields: Any
    ) -> bool:
        stmt = update(runs).where(runs.c.id == run_id)
        if expected_status is not None:
            stmt = stmt.where(runs.c.status == expected_status)
        return self._write(stmt.values(**fields)) > 0

    def count_runs_since(self, user_id: str, start: datetime, end: datetime) -> int:
        stmt = select(func.count()).select_from(runs).where(
            and_(runs.c.user_id == user_id, runs.c.created_at >= start, runs.c.created_at <= end)
        )
        try:
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Query failed: {exc}") from exc

    # ---- IStepExecutionStore ----

    def create_step_execution(self, step: StepExecution) -> StepExecution:
        self._write(insert(step_executions).values(**step.model_dump()))
        return step

    def update_step_execution(self, step_execution_id: str, **fields: Any) -> None:
        self._write(
            update(step_executions).where(step_executions.c.id == step_execution_id).values(**fields)
        )

    def list_step_executions(self, run_id: str) -> list[StepExecution]:
        rows = self._fetch_all(
            select(step_executions)
            .where(step_executions.c.run_id == run_id)
            .order_by(step_executions.c.step_index)
        )
        return [StepExecution.model_validate(_row(r)) for r in rows]

    # ---- IPipelineStore ----

    def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        row = self._fetch_one(select(pipelines).where(pipelines.c.id == pipeline_id))
        return Pipeline.model_validate(row) if row else None

    def get_pipeline_version(self, pipeline_id: str, version: int) -> PipelineVersion | None:
        row = self._fetch_one(
            select(pipeline_versions).where(
                and_(pipeline_versions.c.pipeline_id == pipeline_id, pipeline_versions.c.version == version)
            )
        )
        return PipelineVersion.model_validate(row) if row else None

    # ---- ISecretStore ----

    def find_secret(self, user_id: str, pipeline_id: str | None, name: str) -> UserSecret | None:
        scope = user_secrets.c.pipeline_id.is_(None)
        if pipeline_id is not None:
            scope = or_(scope, user_secrets.c.pipeline_id == pipeline_id)
        rows = self._fetch_all(
            select(user_secrets).where(
                and_(user_secrets.c.user_id == user_id, user_secrets.c.name == name, scope)
            )
        )
        scoped = [r for r in rows if r["pipeline_id"] is not None]
        chosen = scoped[0] if scoped else (rows[0] if rows else None)
        return _secret(chosen) if chosen is not None else None

    def list_all_secrets(self) -> list[UserSecret]:
        return [_secret(r) for r in self._fetch_all(select(user_secrets))]

    def update_secret_blobs(self, blobs: list[tuple[str, bytes]], key_version: int) -> None:
        now = datetime.now(timezone.utc)
        try:
            with self._engine.begin() as conn:
                for secret_id, blob in blobs:
                    conn.execute(
                        update(user_secrets)
                        .where(user_secrets.c.id == secret_id)
                        .values(
                            encrypted_value=base64.b64encode(blob).decode("ascii"),
                            key_version=key_version,
                            updated_at=now,
                        )
                    )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Secret rotation write failed: {exc}") from exc

    # ---- IScheduleStore ----

    def list_due_schedules(self, now: datetime, limit: int) -> list[Schedule]:
        rows = self._fetch_all(
            select(schedules)
            .where(and_(schedules.c.enabled.is_(True), schedules.c.next_run_at <= now))
            .order_by(schedules.c.next_run_at)
            .limit(limit)
        )
        return [Schedule.model_validate(_row(r)) for r in rows]

    def update_schedule(self, schedule_id: str, **fields: Any) -> None:
        self._write(update(schedules).where(schedules.c.id == schedule_id).values(**fields))


class SqlPlanLimitsProvider:
    """IPlanLimitsProvider reading the user's plan column."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def limits_for_user(self, user_id: str) -> PlanLimits:
        try:
            with self._engine.connect() as conn:
                plan = conn.execute(select(users.c.plan).where(users.c.id == user_id)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Plan lookup failed: {exc}") from exc
        return limits_for_plan(plan)
