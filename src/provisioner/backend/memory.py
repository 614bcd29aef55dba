"""In-memory execution backend — test double for the job pipeline.

Simulates units without a container runtime: each unit runs a *program*
(an async callable) that writes files into the unit's private filesystem
dict and returns an exit code. Copy-out serves those files as a real tar
stream, so the archive parser and extractor are exercised end to end.

Failure injection knobs cover every error path of the pipeline:

    .. code-block:: text

        unavailable=True        connect() raises BackendUnavailableError
        fail_start=exc          start() raises exc
        wait_error=exc          wait() resolves the error signal with exc
        hang=True               program never exits (deadline tests)
        corrupt_stream=True     copy-out stream is truncated mid-entry
        extra_entries=[...]     extra files appended after the artifact

Every call is recorded (``calls``) so tests can assert ordering and counts,
e.g. exactly one ``remove`` per created unit.

Example::

    async def scraper(unit):
        unit.files["/puppeteer/reviews/0_hotel-123.csv"] = b"a,b\\n"
        return 0

    backend = InMemoryBackend(program=scraper)
    async with open_backend(lambda: backend) as handle:
        unit_id = await handle.create(UnitSpec(image="scraper"))
"""

from __future__ import annotations

import asyncio
import io
import posixpath
import tarfile
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from provisioner.backend._types import UnitSpec, UnitState, WaitHandle
from provisioner.core.errors import (
    ArtifactNotFoundError,
    BackendCommandError,
    BackendUnavailableError,
    UnitConflictError,
)

if TYPE_CHECKING:
    from provisioner.execution.deadline import CancelToken


@dataclass
class FakeUnit:
    """A simulated unit and its private filesystem."""

    unit_id: str
    spec: UnitSpec
    state: UnitState = UnitState.CREATED
    exit_code: int | None = None
    files: dict[str, bytes] = field(default_factory=dict)
    task: asyncio.Task[None] | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def env(self) -> dict[str, str]:
        return self.spec.env


Program = Callable[[FakeUnit], Awaitable[int]]


async def _noop_program(unit: FakeUnit) -> int:
    return 0


class InMemoryBackend:
    """Backend that keeps units in a dict. Shared by all handles a test opens
    from the same instance, so census queries see every job's units."""

    def __init__(
        self,
        *,
        program: Program = _noop_program,
        unavailable: bool = False,
        fail_start: BaseException | None = None,
        wait_error: BaseException | None = None,
        hang: bool = False,
        corrupt_stream: bool = False,
        extra_entries: dict[str, bytes] | None = None,
        chunk_size: int = 512,
    ) -> None:
        self.program = program
        self.unavailable = unavailable
        self.fail_start = fail_start
        self.wait_error = wait_error
        self.hang = hang
        self.corrupt_stream = corrupt_stream
        self.extra_entries = extra_entries or {}
        self.chunk_size = chunk_size

        self.units: dict[str, FakeUnit] = {}
        self.created: list[FakeUnit] = []
        self.calls: list[tuple[str, str]] = []
        self.connections = 0
        self.open_handles = 0

    @property
    def runtime_name(self) -> str:
        return "memory"

    def calls_named(self, op: str) -> list[str]:
        return [ref for name, ref in self.calls if name == op]

    # ------------------------------------------------------------------
    # Handle lifecycle
    # ------------------------------------------------------------------

    async def connect(self, token: CancelToken | None = None) -> None:
        self.calls.append(("connect", ""))
        if self.unavailable:
            raise BackendUnavailableError("Simulated backend outage")
        self.connections += 1
        self.open_handles += 1

    async def close(self) -> None:
        self.calls.append(("close", ""))
        self.open_handles -= 1

    # ------------------------------------------------------------------
    # Unit operations
    # ------------------------------------------------------------------

    async def create(self, spec: UnitSpec, token: CancelToken | None = None) -> str:
        self._check_available()
        if spec.name and any(u.spec.name == spec.name for u in self.units.values()):
            raise UnitConflictError(f"Conflict. The container name {spec.name!r} is already in use")
        unit_id = uuid.uuid4().hex + uuid.uuid4().hex
        unit = FakeUnit(unit_id=unit_id, spec=spec)
        self.units[unit_id] = unit
        self.created.append(unit)
        self.calls.append(("create", unit_id))
        return unit_id

    async def start(self, unit_id: str, token: CancelToken | None = None) -> None:
        self._check_available()
        self.calls.append(("start", unit_id))
        unit = self._get(unit_id)
        if self.fail_start is not None:
            raise self.fail_start
        if unit.state is UnitState.RUNNING:
            raise UnitConflictError(f"Unit {unit_id[:12]} is already running")
        unit.state = UnitState.RUNNING
        unit.task = asyncio.create_task(self._run_program(unit))

    async def wait(self, unit_id: str, token: CancelToken | None = None) -> WaitHandle:
        self._check_available()
        self.calls.append(("wait", unit_id))
        unit = self._get(unit_id)
        handle = WaitHandle(on_cancel=lambda: watcher.cancel())

        async def watch() -> None:
            if self.wait_error is not None:
                await asyncio.sleep(0)
                handle.fail(self.wait_error)
                return
            await unit.exited.wait()
            handle.resolve(unit.exit_code if unit.exit_code is not None else 0)

        watcher = asyncio.create_task(watch())
        return handle

    async def copy_out(
        self,
        unit_id: str,
        path: str,
        token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        self._check_available()
        self.calls.append(("copy_out", unit_id))
        unit = self._get(unit_id)
        if path not in unit.files:
            raise ArtifactNotFoundError(f"Could not find the file {path} in container {unit_id[:12]}")

        payload = self._build_archive(path, unit.files[path])
        if self.corrupt_stream:
            payload = payload[: 512 + len(unit.files[path]) // 2]
        for offset in range(0, len(payload), self.chunk_size):
            await asyncio.sleep(0)
            yield payload[offset:offset + self.chunk_size]

    async def remove(
        self,
        ref: str,
        *,
        force: bool = True,
        remove_volumes: bool = True,
    ) -> None:
        self.calls.append(("remove", ref))
        unit = self.units.get(ref) or next(
            (u for u in self.units.values() if u.spec.name == ref), None,
        )
        if unit is None:
            return
        if unit.state is UnitState.RUNNING and not force:
            raise BackendCommandError(f"Unit {ref[:12]} is running; stop it or use force")
        if unit.task is not None and not unit.task.done():
            unit.task.cancel()
        unit.state = UnitState.REMOVED
        unit.files.clear()
        del self.units[unit.unit_id]

    async def list_running(self, label: str | None = None) -> list[str]:
        self._check_available()
        self.calls.append(("list_running", label or ""))
        return [
            u.unit_id for u in self.units.values()
            if u.state is UnitState.RUNNING and self._has_label(u, label)
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run_program(self, unit: FakeUnit) -> None:
        try:
            if self.hang:
                await asyncio.Event().wait()
            unit.exit_code = await self.program(unit)
        except asyncio.CancelledError:
            unit.exit_code = 137
            raise
        except Exception:
            unit.exit_code = 1
        finally:
            if unit.state is UnitState.RUNNING:
                unit.state = UnitState.EXITED
            unit.exited.set()

    def _build_archive(self, path: str, content: bytes) -> bytes:
        """Tar stream the way ``docker cp`` frames a single file."""
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
            entries = {posixpath.basename(path): content, **self.extra_entries}
            for name, data in entries.items():
                info = tarfile.TarInfo(name=name)
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
        return buf.getvalue()

    def _get(self, unit_id: str) -> FakeUnit:
        unit = self.units.get(unit_id)
        if unit is None:
            raise BackendCommandError(f"No such container: {unit_id}")
        return unit

    def _check_available(self) -> None:
        if self.unavailable:
            raise BackendUnavailableError("Simulated backend outage")

    @staticmethod
    def _has_label(unit: FakeUnit, label: str | None) -> bool:
        if not label:
            return True
        key, _, value = label.partition("=")
        if key not in unit.spec.labels:
            return False
        return not value or unit.spec.labels[key] == value
