from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from relayforge.errors import NotFoundError
from relayforge.model import WorkflowSpec
from relayforge.state import Job, JobStatus, LogEntry, Run, Runner, RunnerStatus, RunStatus, Step, StepStatus
from relayforge.store import Store

from .models import Base, JobRow, LogRow, RunnerRow, RunRow, StepRow

logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _run_from(row: RunRow) -> Run:
    return Run(
        workflow=WorkflowSpec.from_dict(row.workflow),
        id=row.id,
        status=RunStatus(row.status),
        cancel_requested=row.cancel_requested,
        inputs=dict(row.inputs or {}),
        error=row.error,
        created_at=_utc(row.created_at),
        started_at=_utc(row.started_at),
        finished_at=_utc(row.finished_at),
    )


def _job_from(row: JobRow) -> Job:
    return Job(
        run_id=row.run_id,
        name=row.name,
        index=row.position,
        id=row.id,
        status=JobStatus(row.status),
        needs=tuple(row.needs or ()),
        runner_id=row.runner_id,
        lease_id=row.lease_id,
        cancel_requested=row.cancel_requested,
        error=row.error,
        created_at=_utc(row.created_at),
        started_at=_utc(row.started_at),
        finished_at=_utc(row.finished_at),
    )


def _step_from(row: StepRow) -> Step:
    return Step(
        run_id=row.run_id,
        job_id=row.job_id,
        index=row.position,
        name=row.name,
        command=row.command,
        continue_on_error=row.continue_on_error,
        id=row.id,
        status=StepStatus(row.status),
        exit_code=row.exit_code,
        output=row.output,
        error=row.error,
        started_at=_utc(row.started_at),
        finished_at=_utc(row.finished_at),
    )


def _runner_from(row: RunnerRow) -> Runner:
    return Runner(
        id=row.id,
        tags=frozenset(row.tags or ()),
        version=row.version,
        status=RunnerStatus(row.status),
        last_heartbeat=row.last_heartbeat,
        job_id=row.job_id,
        registered_at=_utc(row.registered_at),
    )


def _log_from(row: LogRow) -> LogEntry:
    return LogEntry(
        run_id=row.run_id,
        step_id=row.step_id,
        seq=row.seq,
        level=row.level,
        content=row.content,
        timestamp=_utc(row.timestamp),
    )


def _run_fields(run: Run) -> dict:
    return dict(
        workflow_name=run.workflow.name,
        workflow=run.workflow.to_dict(),
        status=run.status.value,
        cancel_requested=run.cancel_requested,
        inputs=dict(run.inputs),
        error=run.error,
        created_at=run.created_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )


def _job_fields(job: Job) -> dict:
    return dict(
        run_id=job.run_id,
        name=job.name,
        position=job.index,
        status=job.status.value,
        needs=list(job.needs),
        runner_id=job.runner_id,
        lease_id=job.lease_id,
        cancel_requested=job.cancel_requested,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


def _step_fields(step: Step) -> dict:
    return dict(
        run_id=step.run_id,
        job_id=step.job_id,
        position=step.index,
        name=step.name,
        command=step.command,
        continue_on_error=step.continue_on_error,
        status=step.status.value,
        exit_code=step.exit_code,
        output=step.output,
        error=step.error,
        started_at=step.started_at,
        finished_at=step.finished_at,
    )


def _runner_fields(runner: Runner) -> dict:
    return dict(
        tags=sorted(runner.tags),
        version=runner.version,
        status=runner.status.value,
        last_heartbeat=runner.last_heartbeat,
        job_id=runner.job_id,
        registered_at=runner.registered_at,
    )


class SqlStore(Store):
    """Store backed by SQLAlchemy's asyncio engine (sqlite+aiosqlite or postgresql+asyncpg)."""

    def __init__(self, database_url: str, **engine_options):
        self.database_url = database_url
        self.engine: AsyncEngine = create_async_engine(database_url, pool_pre_ping=True, **engine_options)
        self.SessionLocal = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def init(self) -> None:
        # Creates tables if they don't exist.
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("store ready at %s", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self.engine.dispose()

    async def _update(self, model, ident: str, kind: str, fields: dict) -> None:
        async with self.SessionLocal() as s:
            async with s.begin():
                row = await s.get(model, ident)
                if row is None:
                    raise NotFoundError(kind, ident)
                for key, value in fields.items():
                    setattr(row, key, value)

    async def _get(self, model, ident: str, kind: str):
        async with self.SessionLocal() as s:
            row = await s.get(model, ident)
            if row is None:
                raise NotFoundError(kind, ident)
            return row

    # -------------------- Runs --------------------

    async def create_run(self, run: Run, jobs: List[Job], steps: List[Step]) -> None:
        async with self.SessionLocal() as s:
            async with s.begin():
                s.add(RunRow(id=run.id, **_run_fields(run)))
                await s.flush()
                s.add_all(JobRow(id=job.id, **_job_fields(job)) for job in jobs)
                await s.flush()
                s.add_all(StepRow(id=step.id, **_step_fields(step)) for step in steps)

    async def get_run(self, run_id: str) -> Run:
        return _run_from(await self._get(RunRow, run_id, "run"))

    async def update_run(self, run: Run) -> None:
        await self._update(RunRow, run.id, "run", _run_fields(run))

    async def list_runs(self, limit: int = 50) -> List[Run]:
        async with self.SessionLocal() as s:
            q = sa.select(RunRow).order_by(RunRow.created_at.desc()).limit(limit)
            return [_run_from(row) for row in (await s.scalars(q)).all()]

    # -------------------- Jobs --------------------

    async def get_job(self, job_id: str) -> Job:
        return _job_from(await self._get(JobRow, job_id, "job"))

    async def update_job(self, job: Job) -> None:
        await self._update(JobRow, job.id, "job", _job_fields(job))

    async def list_jobs(self, run_id: str) -> List[Job]:
        async with self.SessionLocal() as s:
            q = sa.select(JobRow).where(JobRow.run_id == run_id).order_by(JobRow.position)
            return [_job_from(row) for row in (await s.scalars(q)).all()]

    # -------------------- Steps --------------------

    async def get_step(self, step_id: str) -> Step:
        return _step_from(await self._get(StepRow, step_id, "step"))

    async def update_step(self, step: Step) -> None:
        await self._update(StepRow, step.id, "step", _step_fields(step))

    async def list_steps(self, job_id: str) -> List[Step]:
        async with self.SessionLocal() as s:
            q = sa.select(StepRow).where(StepRow.job_id == job_id).order_by(StepRow.position)
            return [_step_from(row) for row in (await s.scalars(q)).all()]

    # -------------------- Runners --------------------

    async def save_runner(self, runner: Runner) -> None:
        async with self.SessionLocal() as s:
            async with s.begin():
                row = await s.get(RunnerRow, runner.id)
                if row is None:
                    s.add(RunnerRow(id=runner.id, **_runner_fields(runner)))
                else:
                    for key, value in _runner_fields(runner).items():
                        setattr(row, key, value)

    async def delete_runner(self, runner_id: str) -> None:
        async with self.SessionLocal() as s:
            async with s.begin():
                await s.execute(sa.delete(RunnerRow).where(RunnerRow.id == runner_id))

    async def list_runners(self) -> List[Runner]:
        async with self.SessionLocal() as s:
            q = sa.select(RunnerRow).order_by(RunnerRow.id)
            return [_runner_from(row) for row in (await s.scalars(q)).all()]

    # -------------------- Logs --------------------

    async def add_log(self, entry: LogEntry) -> None:
        async with self.SessionLocal() as s:
            async with s.begin():
                s.add(
                    LogRow(
                        run_id=entry.run_id,
                        step_id=entry.step_id,
                        seq=entry.seq,
                        level=entry.level,
                        content=entry.content,
                        timestamp=entry.timestamp,
                    )
                )

    async def list_logs(self, run_id: str, after_seq: int = 0) -> List[LogEntry]:
        async with self.SessionLocal() as s:
            q = (
                sa.select(LogRow)
                .where(LogRow.run_id == run_id, LogRow.seq > after_seq)
                .order_by(LogRow.seq)
            )
            return [_log_from(row) for row in (await s.scalars(q)).all()]
