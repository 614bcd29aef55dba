"""Execution backend types and protocol.

This module defines the seam between the job pipeline and whatever runs
execution units:

- UnitState: monotonic lifecycle state of one unit
- UnitSpec: what to create (image, env, labels, name)
- ExecutionUnit: a created unit and its observed state
- WaitHandle: the two completion signals of a unit (status / error)
- ExecutionBackend: protocol implemented by DockerCliBackend and
  InMemoryBackend
- open_backend(): scoped acquisition of a backend handle

Architecture:

    .. code-block:: text

        ┌──────────────────────────────────────────────────────────┐
        │                 ExecutionBackend (Protocol)              │
        │  connect() close()                                       │
        │  create(spec) → unit_id     start(unit_id)               │
        │  wait(unit_id) → WaitHandle                              │
        │  copy_out(unit_id, path) → AsyncIterator[bytes] (tar)    │
        │  remove(ref, force, remove_volumes)                      │
        │  list_running(label) → [unit_id]                         │
        └───────────────┬──────────────────────────┬───────────────┘
                        │                          │
              DockerCliBackend              InMemoryBackend
              (docker CLI subprocess)       (tests, no daemon)

    UnitState:

        CREATED ──► RUNNING ──► EXITED ──► REMOVED
           │           │                      ▲
           └───────────┴──────────────────────┘  (remove from any state)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from provisioner.core.errors import InvalidConfigError, InvalidTransitionError

if TYPE_CHECKING:
    from provisioner.execution.deadline import CancelToken


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Lifecycle state
# ---------------------------------------------------------------------------

class UnitState(str, Enum):
    """Lifecycle state of an execution unit. Transitions only move forward."""

    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    REMOVED = "removed"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    def can_transition_to(self, target: UnitState) -> bool:
        return target.rank > self.rank


_STATE_ORDER = [UnitState.CREATED, UnitState.RUNNING, UnitState.EXITED, UnitState.REMOVED]


# ---------------------------------------------------------------------------
# Unit spec and record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UnitSpec:
    """Declaration of a unit to create.

    ``auto_remove`` exists only to be refused: a unit that removes itself
    on exit takes its filesystem, and the artifact, with it.
    """

    image: str
    env: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    auto_remove: bool = False

    def __post_init__(self) -> None:
        if not self.image:
            raise InvalidConfigError("image", self.image, "Unit image must not be empty")
        if self.auto_remove:
            raise InvalidConfigError(
                "auto_remove", True,
                "Units must not auto-remove; the artifact is copied out after exit",
            )
        for key in self.env:
            if not key or "=" in key:
                raise InvalidConfigError("env", key, f"Invalid environment variable name: {key!r}")

    def env_list(self) -> list[str]:
        """Environment as ``KEY=VALUE`` strings, in insertion order."""
        return [f"{key}={value}" for key, value in self.env.items()]


@dataclass
class ExecutionUnit:
    """A unit created on the backend, owned by exactly one job."""

    unit_id: str
    image: str
    env: dict[str, str] = field(default_factory=dict)
    name: str | None = None
    state: UnitState = UnitState.CREATED
    exit_code: int | None = None
    created_at: datetime = field(default_factory=_utcnow)
    removed_at: datetime | None = None

    @property
    def short_id(self) -> str:
        return self.unit_id[:12]

    @property
    def ref(self) -> str:
        """Identity to address the unit by on the backend."""
        return self.unit_id or (self.name or "")

    def transition(self, target: UnitState) -> None:
        """Move to ``target``; raises on a backward or repeated transition."""
        if not self.state.can_transition_to(target):
            raise InvalidTransitionError(
                f"Unit {self.short_id} cannot move from {self.state.value} to {target.value}"
            ).with_context(unit_id=self.unit_id)
        self.state = target
        if target is UnitState.REMOVED:
            self.removed_at = _utcnow()


# ---------------------------------------------------------------------------
# Completion signals
# ---------------------------------------------------------------------------

class WaitHandle:
    """The two completion signals of one unit.

    ``status`` resolves with the exit code once the unit leaves RUNNING.
    ``error`` resolves with an exception if the backend fails while
    waiting. A backend resolves at most one of them; the waiter takes
    whichever is first.
    """

    def __init__(self, on_cancel: Callable[[], None] | None = None) -> None:
        loop = asyncio.get_running_loop()
        self.status: asyncio.Future[int] = loop.create_future()
        self.error: asyncio.Future[BaseException] = loop.create_future()
        self._on_cancel = on_cancel

    def resolve(self, exit_code: int) -> None:
        if not self.status.done() and not self.error.done():
            self.status.set_result(exit_code)

    def fail(self, exc: BaseException) -> None:
        if not self.status.done() and not self.error.done():
            self.error.set_result(exc)

    def cancel(self) -> None:
        """Stop watching. Unresolved signals are cancelled."""
        for fut in (self.status, self.error):
            if not fut.done():
                fut.cancel()
        if self._on_cancel is not None:
            self._on_cancel()


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class ExecutionBackend(Protocol):
    """Protocol for a container-style backend."""

    @property
    def runtime_name(self) -> str: ...

    async def connect(self, token: CancelToken | None = None) -> None:
        """Negotiate the connection. Raises BackendUnavailableError."""
        ...

    async def close(self) -> None: ...

    async def create(self, spec: UnitSpec, token: CancelToken | None = None) -> str:
        """Create (not start) a unit; return its backend identity."""
        ...

    async def start(self, unit_id: str, token: CancelToken | None = None) -> None: ...

    async def wait(self, unit_id: str, token: CancelToken | None = None) -> WaitHandle:
        """Begin watching for the unit to stop running."""
        ...

    def copy_out(
        self, unit_id: str, path: str, token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        """Stream ``path`` out of the unit as a tar archive."""
        ...

    async def remove(
        self,
        ref: str,
        *,
        force: bool = True,
        remove_volumes: bool = True,
    ) -> None: ...

    async def list_running(self, label: str | None = None) -> list[str]:
        """Identities of units currently running, optionally by label."""
        ...


BackendFactory = Callable[[], ExecutionBackend]


@asynccontextmanager
async def open_backend(
    factory: BackendFactory,
    token: CancelToken | None = None,
) -> AsyncIterator[ExecutionBackend]:
    """Acquire a backend handle immediately before use, release it on exit."""
    backend = factory()
    await backend.connect(token)
    try:
        yield backend
    finally:
        await backend.close()
