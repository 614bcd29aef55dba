"""HTTP surface — FastAPI app factory.

::

    create_app(runner_factory) → FastAPI
      GET  /health               ─ liveness
      GET  /units/running        ─ fleet census (?managed_only=true)
      POST /jobs                 ─ schedule a job, 202 + job_id
      GET  /jobs/{job_id}        ─ result of a job scheduled here
      POST /jobs/{job_id}/cancel ─ fire the job's cancel token

Jobs run as background tasks in the server process; results are kept in
memory for the life of the app and are not persisted.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field, ValidationError

from provisioner.core.errors import BackendUnavailableError, ProvisionerError
from provisioner.jobs import Job
from provisioner.pipeline.runner import JobResult, JobStatus, ProvisionRunner

logger = structlog.get_logger(__name__)


class JobRequest(BaseModel):
    """Request body for scheduling a job."""

    target_url: str
    file_prefix: str
    upload_identifier: str
    work_name: str | None = None


class JobAccepted(BaseModel):
    job_id: str
    work_name: str
    status: str = JobStatus.PENDING.value


class CensusResponse(BaseModel):
    running: int
    managed_only: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"
    jobs_tracked: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


def create_app(runner_factory: Callable[[], ProvisionRunner] | None = None) -> FastAPI:
    """Build the app. ``runner_factory`` defaults to ``ProvisionRunner.from_settings``."""
    app = FastAPI(title="provisioner", version="0.4.0")
    app.state.runner = (runner_factory or ProvisionRunner.from_settings)()
    app.state.results = {}

    def _runner(request: Request) -> ProvisionRunner:
        return request.app.state.runner

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        return HealthResponse(jobs_tracked=len(request.app.state.results))

    @app.get("/units/running", response_model=CensusResponse)
    async def units_running(
        request: Request,
        managed_only: bool = Query(False, description="Count only units created by this service"),
    ) -> CensusResponse:
        try:
            count = await _runner(request).count_running(managed_only=managed_only)
        except BackendUnavailableError as exc:
            raise HTTPException(status_code=503, detail=exc.to_dict()) from exc
        except ProvisionerError as exc:
            raise HTTPException(status_code=500, detail=exc.to_dict()) from exc
        return CensusResponse(running=count, managed_only=managed_only)

    @app.post("/jobs", status_code=202, response_model=JobAccepted)
    async def submit_job(
        body: JobRequest,
        request: Request,
        background: BackgroundTasks,
    ) -> JobAccepted:
        try:
            job = Job(**body.model_dump(exclude_none=True))
        except ValidationError as exc:
            detail = exc.errors(include_url=False, include_context=False)
            raise HTTPException(status_code=422, detail=detail) from exc
        except ProvisionerError as exc:
            raise HTTPException(status_code=422, detail=exc.to_dict()) from exc

        results: dict[str, JobResult] = request.app.state.results
        runner = _runner(request)
        results[job.job_id] = JobResult(
            job_id=job.job_id,
            work_name=job.work_name,
            upload_identifier=job.upload_identifier,
        )

        async def _run() -> None:
            results[job.job_id] = await runner.execute(job)

        background.add_task(_run)
        logger.info("job.accepted", job_id=job.job_id, work_name=job.work_name)
        return JobAccepted(job_id=job.job_id, work_name=job.work_name)

    @app.get("/jobs/{job_id}", response_model=JobResult)
    async def get_job(job_id: str, request: Request) -> JobResult:
        result = request.app.state.results.get(job_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        return result

    @app.post("/jobs/{job_id}/cancel", status_code=202, response_model=JobResult)
    async def cancel_job(job_id: str, request: Request) -> JobResult:
        result = request.app.state.results.get(job_id)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        if not _runner(request).cancel(job_id, reason="cancelled via API"):
            raise HTTPException(status_code=409, detail=f"Job is not running: {job_id}")
        logger.info("job.cancel_requested", job_id=job_id)
        return result

    return app
