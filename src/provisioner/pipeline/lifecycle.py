"""Execution unit lifecycle: create, start, remove.

``UnitLifecycle`` owns the identity of the unit a job creates and is the
only place that moves it through its states::

    create() ──► CREATED ──start()──► RUNNING ──mark_exited()──► EXITED
                    │                    │                          │
                    └────────────────────┴──────── remove() ────────┴──► REMOVED

Removal is explicit. Units are never created with auto-remove, because
the artifact is copied out of the unit's filesystem after it exits.

``provisioned()`` is the scoped form used by the pipeline: the unit is
removed exactly once on every exit path, including errors, deadline
expiry and task cancellation.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from provisioner.backend._types import ExecutionBackend, ExecutionUnit, UnitSpec, UnitState
from provisioner.core.errors import InvalidTransitionError, ProvisionerError, UnitConflictError
from provisioner.logging.context import bind_context

if TYPE_CHECKING:
    from provisioner.core.settings import ProvisionerSettings
    from provisioner.execution.deadline import CancelToken
    from provisioner.jobs import Job

logger = structlog.get_logger(__name__)


def managed_label(label_prefix: str) -> str:
    """Label selector matching every unit this package creates."""
    return f"{label_prefix}.managed=true"


def build_unit_spec(job: Job, settings: ProvisionerSettings) -> UnitSpec:
    """Unit declaration for ``job``: fixed image, job parameters as env."""
    prefix = settings.label_prefix
    env = {
        **settings.extra_env,
        "CONCURRENCY": str(settings.concurrency),
        "SCRAPE_MODE": settings.scrape_mode,
        "HOTEL_NAME": job.work_name,
        "IS_PROVISIONER": "true",
        "HOTEL_URL": job.target_url,
    }
    return UnitSpec(
        image=settings.image,
        env=env,
        name=f"{prefix}-{job.job_id}",
        labels={
            f"{prefix}.managed": "true",
            f"{prefix}.job_id": job.job_id,
            f"{prefix}.work_name": job.work_name,
        },
    )


class UnitLifecycle:
    """Creates, starts and removes units on one backend handle."""

    def __init__(self, backend: ExecutionBackend) -> None:
        self._backend = backend

    async def create(
        self,
        image: str,
        env: dict[str, str],
        *,
        name: str | None = None,
        labels: dict[str, str] | None = None,
        token: CancelToken | None = None,
    ) -> ExecutionUnit:
        """Declare a new unit. It is not started."""
        spec = UnitSpec(image=image, env=dict(env), name=name, labels=dict(labels or {}))
        return await self.create_from_spec(spec, token=token)

    async def create_from_spec(
        self,
        spec: UnitSpec,
        *,
        token: CancelToken | None = None,
    ) -> ExecutionUnit:
        try:
            unit_id = await self._backend.create(spec, token)
        except UnitConflictError:
            # the name belongs to a unit this call did not create
            raise
        except BaseException:
            # a timed-out or cancelled create may still have created the unit
            if spec.name:
                await self._remove_by_name(spec.name)
            raise

        unit = ExecutionUnit(unit_id=unit_id, image=spec.image, env=dict(spec.env), name=spec.name)
        bind_context(unit_id=unit.short_id)
        logger.info("unit.created", image=spec.image, name=spec.name)
        return unit

    async def start(self, unit: ExecutionUnit, *, token: CancelToken | None = None) -> None:
        """CREATED → RUNNING."""
        if unit.state is UnitState.RUNNING:
            raise UnitConflictError(
                f"Unit {unit.short_id} is already running"
            ).with_context(unit_id=unit.unit_id)
        if unit.state is not UnitState.CREATED:
            raise InvalidTransitionError(
                f"Unit {unit.short_id} cannot start from {unit.state.value}"
            ).with_context(unit_id=unit.unit_id)

        await self._backend.start(unit.unit_id, token)
        unit.transition(UnitState.RUNNING)
        logger.info("unit.started")

    def mark_exited(self, unit: ExecutionUnit, exit_code: int) -> None:
        """Record that the unit left RUNNING."""
        unit.exit_code = exit_code
        unit.transition(UnitState.EXITED)
        log = logger.info if exit_code == 0 else logger.warning
        log("unit.exited", exit_code=exit_code)

    async def remove(
        self,
        unit: ExecutionUnit,
        *,
        force: bool = True,
        remove_volumes: bool = True,
    ) -> None:
        """Any state → REMOVED. A second call for the same unit is a no-op."""
        if unit.state is UnitState.REMOVED:
            logger.warning("unit.remove_repeated")
            return
        await self._backend.remove(unit.ref, force=force, remove_volumes=remove_volumes)
        unit.transition(UnitState.REMOVED)
        logger.info("unit.removed")

    @asynccontextmanager
    async def provisioned(
        self,
        spec: UnitSpec,
        *,
        token: CancelToken | None = None,
    ) -> AsyncIterator[ExecutionUnit]:
        """Create a unit and guarantee its removal when the block exits.

        On the success path a failed removal is raised. On an error path it
        is logged and the original error is kept.
        """
        unit = await self.create_from_spec(spec, token=token)
        try:
            yield unit
        except BaseException:
            await self._remove_after_failure(unit)
            raise
        else:
            await asyncio.shield(self.remove(unit))

    async def _remove_after_failure(self, unit: ExecutionUnit) -> None:
        try:
            await asyncio.shield(self.remove(unit))
        except ProvisionerError as exc:
            logger.error("unit.remove_failed", error=exc.to_dict())

    async def _remove_by_name(self, name: str) -> None:
        try:
            await asyncio.shield(self._backend.remove(name, force=True, remove_volumes=True))
            logger.info("unit.removed", name=name, reason="create failed")
        except ProvisionerError as exc:
            logger.error("unit.remove_failed", name=name, error=exc.to_dict())
