"""Fleet census: how many units are running right now."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from provisioner.pipeline.lifecycle import managed_label

if TYPE_CHECKING:
    from provisioner.backend._types import ExecutionBackend

logger = structlog.get_logger(__name__)


class FleetCensus:
    """Read-only query over the backend's running units.

    Every call asks the backend; nothing is cached.

    Args:
        backend: Connected backend handle
        label_prefix: Prefix of the labels put on managed units
    """

    def __init__(self, backend: ExecutionBackend, *, label_prefix: str = "provisioner") -> None:
        self._backend = backend
        self._label_prefix = label_prefix

    async def running_units(self, *, managed_only: bool = False) -> list[str]:
        label = managed_label(self._label_prefix) if managed_only else None
        return await self._backend.list_running(label)

    async def count_running(self, *, managed_only: bool = False) -> int:
        """Number of running units. Counts every running unit on the
        backend unless ``managed_only`` restricts it to ours."""
        units = await self.running_units(managed_only=managed_only)
        logger.debug("census.counted", running=len(units), managed_only=managed_only)
        return len(units)
