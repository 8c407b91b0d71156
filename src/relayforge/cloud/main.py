from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from relayforge import __version__
from relayforge.errors import (
    InvalidSpecError,
    InvalidTransitionError,
    LeaseExpiredError,
    NotFoundError,
    OrchestratorError,
)
from relayforge.model import WorkflowSpec
from relayforge.orchestrator import Orchestrator, RunDetail
from relayforge.protocol import (
    Assignment,
    HeartbeatResponse,
    JobResult,
    LogAppend,
    PollRequest,
    RunnerRegistration,
    StepResult,
)
from relayforge.settings import Settings
from relayforge.state import Job, Run, Runner, Step
from relayforge.store import MemoryStore

logger = logging.getLogger(__name__)

_STATUS_CODES = (
    (InvalidSpecError, 422),
    (NotFoundError, 404),
    (LeaseExpiredError, 409),
    (InvalidTransitionError, 409),
)

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    # exactly one of: YAML document text, or a serialized WorkflowSpec
    workflow: str | None = None
    spec: dict[str, Any] | None = None
    inputs: dict[str, str] = Field(default_factory=dict)
    start: bool = True

class CancelRequest(BaseModel):
    reason: str = "cancelled"

class RunResponse(BaseModel):
    id: str
    workflow: str
    status: str
    cancel_requested: bool
    inputs: dict[str, str]
    error: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

class StepResponse(BaseModel):
    id: str
    name: str
    status: str
    exit_code: int | None
    output: str
    error: str
    started_at: datetime | None
    finished_at: datetime | None

class JobResponse(BaseModel):
    id: str
    name: str
    status: str
    needs: list[str]
    runner_id: str | None
    error: str | None
    started_at: datetime | None
    finished_at: datetime | None
    steps: list[StepResponse] = Field(default_factory=list)

class RunDetailResponse(RunResponse):
    jobs: list[JobResponse]

class RunnerResponse(BaseModel):
    id: str
    tags: list[str]
    version: str
    status: str
    job_id: str | None

class LogAppended(BaseModel):
    seq: int


def _run_response(run: Run) -> RunResponse:
    return RunResponse(
        id=run.id,
        workflow=run.workflow.name,
        status=run.status.value,
        cancel_requested=run.cancel_requested,
        inputs=run.inputs,
        error=run.error,
        created_at=run.created_at,
        started_at=run.started_at,
        finished_at=run.finished_at,
    )


def _step_response(step: Step) -> StepResponse:
    return StepResponse(
        id=step.id,
        name=step.name,
        status=step.status.value,
        exit_code=step.exit_code,
        output=step.output,
        error=step.error,
        started_at=step.started_at,
        finished_at=step.finished_at,
    )


def _job_response(job: Job, steps: list[Step]) -> JobResponse:
    return JobResponse(
        id=job.id,
        name=job.name,
        status=job.status.value,
        needs=list(job.needs),
        runner_id=job.runner_id,
        error=job.error,
        started_at=job.started_at,
        finished_at=job.finished_at,
        steps=[_step_response(s) for s in steps],
    )


def _detail_response(detail: RunDetail) -> RunDetailResponse:
    base = _run_response(detail.run)
    return RunDetailResponse(
        **base.model_dump(),
        jobs=[_job_response(job, detail.steps.get(job.id, [])) for job in detail.jobs],
    )


def _runner_response(runner: Runner) -> RunnerResponse:
    return RunnerResponse(
        id=runner.id,
        tags=sorted(runner.tags),
        version=runner.version,
        status=runner.status.value,
        job_id=runner.job_id,
    )


def default_orchestrator(settings: Optional[Settings] = None) -> Orchestrator:
    """SqlStore when DATABASE_URL is set, in-memory otherwise."""
    settings = settings or Settings.from_env()
    if settings.database_url:
        from .db import SqlStore
        store = SqlStore(settings.database_url)
    else:
        store = MemoryStore()
    return Orchestrator(store, settings)


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    orch = orchestrator or default_orchestrator()
    app = FastAPI(title="relayforge control plane", version=__version__)
    app.state.orchestrator = orch

    # -------------------- Startup --------------------

    @app.on_event("startup")
    async def startup() -> None:
        await orch.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await orch.close()

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        status = next((code for kind, code in _STATUS_CODES if isinstance(exc, kind)), 400)
        logger.info("%s %s -> %d: %s", request.method, request.url.path, status, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})

    # -------------------- Runs --------------------

    @app.post("/runs", response_model=RunResponse, status_code=201)
    async def create_run(req: CreateRunRequest):
        if (req.workflow is None) == (req.spec is None):
            raise InvalidSpecError("provide exactly one of 'workflow' or 'spec'")
        source: str | WorkflowSpec
        if req.workflow is not None:
            source = req.workflow
        else:
            try:
                source = WorkflowSpec.from_dict(req.spec)
            except (KeyError, TypeError, ValueError) as e:
                raise InvalidSpecError(f"malformed spec: {e}") from e
        run = await orch.submit(source, req.inputs, start=req.start)
        return _run_response(run)

    @app.get("/runs", response_model=list[RunResponse])
    async def list_runs(limit: int = 50):
        return [_run_response(r) for r in await orch.list_runs(limit)]

    @app.get("/runs/{run_id}", response_model=RunDetailResponse)
    async def get_run(run_id: str):
        return _detail_response(await orch.get_run(run_id))

    @app.post("/runs/{run_id}/start", response_model=RunResponse)
    async def start_run(run_id: str):
        return _run_response(await orch.start_run(run_id))

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    async def cancel_run(run_id: str, req: Optional[CancelRequest] = None):
        reason = req.reason if req is not None else "cancelled"
        return _run_response(await orch.cancel(run_id, reason))

    @app.get("/runs/{run_id}/logs")
    async def stream_logs(run_id: str, since: int = 0):
        await orch.store.get_run(run_id)  # 404 before the stream starts

        async def lines():
            async for entry in orch.subscribe(run_id, since):
                yield json.dumps({
                    "seq": entry.seq,
                    "step_id": entry.step_id,
                    "level": entry.level,
                    "content": entry.content,
                    "timestamp": entry.timestamp.isoformat(),
                }) + "\n"

        return StreamingResponse(lines(), media_type="application/x-ndjson")

    # -------------------- Runners --------------------

    @app.get("/runners", response_model=list[RunnerResponse])
    async def list_runners():
        return [_runner_response(r) for r in await orch.list_runners()]

    @app.post("/runners/register", response_model=RunnerResponse)
    async def register(req: RunnerRegistration):
        return _runner_response(await orch.register(req.runner_id, req.tags, req.version))

    @app.post("/runners/{runner_id}/heartbeat", response_model=HeartbeatResponse)
    async def heartbeat(runner_id: str):
        return HeartbeatResponse(cancel=await orch.heartbeat(runner_id))

    @app.post("/runners/{runner_id}/poll", response_model=Assignment)
    async def poll(runner_id: str, req: PollRequest):
        if req.runner_id != runner_id:
            raise HTTPException(status_code=422, detail="runner_id does not match the path")
        assignment = await orch.poll(runner_id, req.tags, wait=req.wait)
        if assignment is None:
            return Response(status_code=204)
        return assignment

    # -------------------- Results --------------------

    @app.post("/steps/{step_id}/result")
    async def step_result(step_id: str, req: StepResult):
        if req.step_id != step_id:
            raise HTTPException(status_code=422, detail="step_id does not match the path")
        await orch.report_step(req)
        return {"ok": True}

    @app.post("/steps/{step_id}/logs", response_model=LogAppended)
    async def step_logs(step_id: str, req: LogAppend):
        entry = await orch.append_log(step_id, req.lease_id, req.level, req.content)
        return LogAppended(seq=entry.seq)

    @app.post("/jobs/{job_id}/result")
    async def job_result(job_id: str, req: JobResult):
        if req.job_id != job_id:
            raise HTTPException(status_code=422, detail="job_id does not match the path")
        await orch.report_job(req)
        return {"ok": True}

    return app


app = create_app()
