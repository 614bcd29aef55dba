"""Job pipeline driver.

Runs one job end to end on its own backend handle::

    open_backend ─► create ─► start ─► wait ─► extract ─► publish
                      │                                      │
                      └──────────── remove (always) ◄────────┘

- every job gets its own ``CancelToken`` carrying the job deadline;
  ``cancel(job_id)`` fires it and the job ends CANCELLED
- create/remove are scoped by ``UnitLifecycle.provisioned``; removal runs
  outside the deadline scope, so it happens after a timeout too
- ``run`` raises the first ``ProvisionerError`` (fail-fast)
- ``execute`` returns a ``JobResult`` carrying the error kind instead

Example:
    >>> runner = ProvisionRunner.from_settings()
    >>> result = await runner.execute(Job(target_url=url, file_prefix="lausanne",
    ...                                    upload_identifier="reviews/lausanne.csv"))
    >>> result.status
    <JobStatus.SUCCEEDED: 'SUCCEEDED'>
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from provisioner.backend._types import BackendFactory, open_backend
from provisioner.core.errors import ErrorCategory, JobCancelledError, JobTimeoutError, ProvisionerError
from provisioner.core.settings import ProvisionerSettings, StorageSettings, get_settings, get_storage_settings
from provisioner.execution.deadline import CancelToken
from provisioner.jobs import Job
from provisioner.logging.context import log_context
from provisioner.pipeline.census import FleetCensus
from provisioner.pipeline.extractor import ArtifactExtractor
from provisioner.pipeline.lifecycle import UnitLifecycle, build_unit_spec
from provisioner.pipeline.publisher import DurablePublisher, ObjectStore, S3ObjectStore
from provisioner.pipeline.waiter import CompletionWaiter

logger = structlog.get_logger(__name__)


class JobStatus(str, Enum):
    """Terminal (or in-flight) status of a job."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


class JobResult(BaseModel):
    """Outcome of one job. ``error`` is ``ProvisionerError.to_dict()``."""

    job_id: str
    work_name: str
    upload_identifier: str
    status: JobStatus = JobStatus.PENDING
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0
    unit_id: str | None = None
    exit_code: int | None = None
    local_path: str | None = None
    size_bytes: int | None = None
    sha256: str | None = None
    bucket: str | None = None
    error: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @property
    def error_kind(self) -> str | None:
        return self.error.get("kind") if self.error else None

    def mark_complete(self, status: JobStatus, error: ProvisionerError | None = None) -> None:
        now = datetime.now(UTC)
        self.completed_at = now.isoformat()
        self.duration_seconds = (now - datetime.fromisoformat(self.started_at)).total_seconds()
        self.status = status
        if error is not None:
            self.error = error.to_dict()


class ProvisionRunner:
    """Drives jobs through the provisioning pipeline.

    Args:
        settings: Provisioner settings (image, artifact location, deadline)
        backend_factory: Builds an unconnected backend; called once per job
        store: Object store artifacts are published to
    """

    def __init__(
        self,
        settings: ProvisionerSettings,
        backend_factory: BackendFactory,
        store: ObjectStore,
    ) -> None:
        self.settings = settings
        self._backend_factory = backend_factory
        self._publisher = DurablePublisher(store)
        self._tokens: dict[str, CancelToken] = {}

    @classmethod
    def from_settings(
        cls,
        settings: ProvisionerSettings | None = None,
        storage: StorageSettings | None = None,
    ) -> ProvisionRunner:
        """Runner on the docker CLI backend publishing to S3/R2."""
        from provisioner.backend.docker_cli import DockerCliBackend

        settings = settings or get_settings()
        store = S3ObjectStore.from_settings(storage or get_storage_settings())
        return cls(settings, lambda: DockerCliBackend.from_settings(settings), store)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run(self, job: Job) -> JobResult:
        """Run ``job``; raises the error that stopped it."""
        result = self._new_result(job)
        await self._run(job, result)
        return result

    async def execute(self, job: Job) -> JobResult:
        """Run ``job``; failures are reported on the returned result."""
        result = self._new_result(job)
        try:
            await self._run(job, result)
        except ProvisionerError:
            # already recorded on result and logged
            pass
        return result

    async def run_many(self, jobs: Iterable[Job]) -> list[JobResult]:
        """Run jobs concurrently, each on its own handle and unit."""
        return list(await asyncio.gather(*(self.execute(job) for job in jobs)))

    def cancel(self, job_id: str, reason: str = "cancelled") -> bool:
        """Cancel a job in flight. Returns False if no such job is running.

        The job ends CANCELLED and its unit is still removed.
        """
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def count_running(self, *, managed_only: bool = False) -> int:
        """Fleet census on a short-lived handle."""
        async with open_backend(self._backend_factory) as backend:
            census = FleetCensus(backend, label_prefix=self.settings.label_prefix)
            return await census.count_running(managed_only=managed_only)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _new_result(self, job: Job) -> JobResult:
        return JobResult(
            job_id=job.job_id,
            work_name=job.work_name,
            upload_identifier=job.upload_identifier,
        )

    async def _run(self, job: Job, result: JobResult) -> None:
        token = CancelToken.with_timeout(self.settings.job_deadline_seconds)
        self._tokens[job.job_id] = token
        try:
            await self._run_with_token(job, token, result)
        finally:
            self._tokens.pop(job.job_id, None)

    async def _run_with_token(self, job: Job, token: CancelToken, result: JobResult) -> None:
        with log_context(
            job_id=job.job_id,
            work_name=job.work_name,
            upload_identifier=job.upload_identifier,
        ):
            result.status = JobStatus.RUNNING
            logger.info("job.started", url=job.target_url)
            try:
                await self._pipeline(job, token, result)
            except JobTimeoutError as exc:
                exc.with_context(job_id=job.job_id, work_name=job.work_name)
                result.mark_complete(JobStatus.TIMED_OUT, exc)
                logger.error("job.timed_out", error=exc.to_dict())
                raise
            except JobCancelledError as exc:
                exc.with_context(job_id=job.job_id, work_name=job.work_name)
                result.mark_complete(JobStatus.CANCELLED, exc)
                logger.warning("job.cancelled", reason=exc.reason)
                raise
            except ProvisionerError as exc:
                exc.with_context(job_id=job.job_id, work_name=job.work_name)
                result.mark_complete(JobStatus.FAILED, exc)
                logger.error("job.failed", error=exc.to_dict())
                raise
            except asyncio.CancelledError:
                result.mark_complete(JobStatus.CANCELLED)
                logger.warning("job.cancelled")
                raise
            except Exception as exc:
                error = ProvisionerError(
                    f"Unexpected {type(exc).__name__}: {exc}",
                    category=ErrorCategory.INTERNAL,
                    cause=exc,
                ).with_context(job_id=job.job_id, work_name=job.work_name)
                result.mark_complete(JobStatus.FAILED, error)
                logger.exception("job.failed", error=error.to_dict())
                raise error from exc

            result.mark_complete(JobStatus.SUCCEEDED)
            logger.info("job.succeeded", duration_seconds=round(result.duration_seconds, 3))

    async def _pipeline(self, job: Job, token: CancelToken, result: JobResult) -> None:
        settings = self.settings
        spec = build_unit_spec(job, settings)
        artifact_path = settings.artifact_path(job.work_name)
        deadline = token.deadline.timeout_seconds if token.deadline else None

        async with open_backend(self._backend_factory, token) as backend:
            lifecycle = UnitLifecycle(backend)
            async with lifecycle.provisioned(spec, token=token) as unit:
                result.unit_id = unit.unit_id
                async with token.scope("job"):
                    with log_context(step="start"):
                        await lifecycle.start(unit, token=token)

                    with log_context(step="wait"):
                        waited = await CompletionWaiter(backend).wait(unit, token=token)
                        waited.raise_for_outcome(deadline)
                        result.exit_code = waited.exit_code
                        lifecycle.mark_exited(unit, waited.exit_code or 0)

                    with log_context(step="extract"):
                        extractor = ArtifactExtractor(backend, settings.output_dir)
                        artifact = await extractor.extract(
                            unit, artifact_path, job.file_prefix, token=token,
                        )
                        result.local_path = str(artifact.local_path)
                        result.size_bytes = artifact.size_bytes
                        result.sha256 = artifact.sha256

                    with log_context(step="publish"):
                        published = await self._publisher.publish(
                            artifact.local_path, job.upload_identifier,
                        )
                        result.bucket = published.bucket
