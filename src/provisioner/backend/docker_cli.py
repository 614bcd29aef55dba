"""Docker backend driven through the ``docker`` CLI.

Runs every backend operation as a ``docker`` subprocess via
``asyncio.create_subprocess_exec``. No ``docker-py`` dependency; works
with any runtime that exposes a docker-compatible CLI (Docker Desktop,
Colima, Podman's docker shim). The daemon address and API version come
from the CLI's own environment (``DOCKER_HOST``, ``DOCKER_CONTEXT``,
``DOCKER_API_VERSION``).

Operation mapping:

    .. code-block:: text

        connect()        docker version --format {{.Server.APIVersion}}
        create(spec)     docker create --name N --label K=V --env K=V IMAGE
        start(id)        docker start ID
        wait(id)         docker wait ID                  (background)
        copy_out(id, p)  docker cp ID:P -                (tar on stdout)
        remove(ref)      docker rm --force --volumes REF
        list_running()   docker ps --quiet --no-trunc [--filter label=L]

Failure classification reads the CLI's stderr: daemon connection errors
become ``BackendUnavailableError``, name/identity collisions
``UnitConflictError``, a missing copy-out path ``ArtifactNotFoundError``.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from provisioner.backend._types import UnitSpec, WaitHandle
from provisioner.core.errors import (
    ArtifactNotFoundError,
    BackendCommandError,
    BackendUnavailableError,
    ProvisionerError,
    StreamReadError,
    UnitConflictError,
    WaitError,
)

if TYPE_CHECKING:
    from provisioner.core.settings import ProvisionerSettings
    from provisioner.execution.deadline import CancelToken

logger = structlog.get_logger(__name__)

_UNAVAILABLE_RE = re.compile(
    r"Cannot connect to the Docker daemon|error during connect|"
    r"Is the docker daemon running|connection refused|no such host",
    re.IGNORECASE,
)
_CONFLICT_RE = re.compile(r"Conflict\.|is already in use|already running", re.IGNORECASE)
_MISSING_PATH_RE = re.compile(r"No such container:path|Could not find the file", re.IGNORECASE)
_MISSING_UNIT_RE = re.compile(r"No such container", re.IGNORECASE)


@dataclass
class DockerResult:
    """Outcome of one docker CLI invocation."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str


class DockerCliBackend:
    """Execution backend over the docker CLI.

    One instance is one handle: ``connect()`` negotiates with the daemon,
    ``close()`` kills any ``docker wait``/``docker cp`` children still
    running. Use it through ``open_backend()``.

    Parameters
    ----------
    docker_binary
        CLI executable name or path.
    command_timeout
        Ceiling in seconds for short commands (create/start/rm/ps). Long
        operations (wait, cp) are bounded only by the job token.
    chunk_size
        Read size for the copy-out stream.

    Example::

        backend = DockerCliBackend()
        await backend.connect()
        unit_id = await backend.create(UnitSpec(image="busybox"))
    """

    def __init__(
        self,
        *,
        docker_binary: str = "docker",
        command_timeout: float = 60.0,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._docker_cmd = self._find_docker(docker_binary)
        self._command_timeout = command_timeout
        self._chunk_size = chunk_size
        self._children: set[asyncio.subprocess.Process] = set()
        self._watchers: set[asyncio.Task[None]] = set()
        self.api_version: str | None = None
        self.closed = False

    @classmethod
    def from_settings(cls, settings: ProvisionerSettings) -> DockerCliBackend:
        return cls(
            docker_binary=settings.docker_binary,
            command_timeout=settings.command_timeout_seconds,
        )

    @property
    def runtime_name(self) -> str:
        return "docker"

    # ------------------------------------------------------------------
    # Docker CLI discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _find_docker(binary: str) -> str:
        docker = shutil.which(binary)
        if docker is None:
            raise BackendUnavailableError(
                f"Docker CLI {binary!r} not found on PATH. Install Docker or set "
                "PROVISIONER_DOCKER_BINARY."
            )
        return docker

    # ------------------------------------------------------------------
    # Handle lifecycle
    # ------------------------------------------------------------------

    async def connect(self, token: CancelToken | None = None) -> None:
        result = await self._run_docker(
            ["version", "--format", "{{.Server.APIVersion}}"], token=token,
        )
        self.api_version = result.stdout.strip() or None
        logger.debug("backend.connected", runtime=self.runtime_name, api_version=self.api_version)

    async def close(self) -> None:
        for task in list(self._watchers):
            task.cancel()
        for proc in list(self._children):
            await self._kill(proc)
        self._children.clear()
        self.closed = True
        logger.debug("backend.closed", runtime=self.runtime_name)

    # ------------------------------------------------------------------
    # Unit operations
    # ------------------------------------------------------------------

    async def create(self, spec: UnitSpec, token: CancelToken | None = None) -> str:
        args = ["create"]
        if spec.name:
            args.extend(["--name", spec.name])
        for key, value in spec.labels.items():
            args.extend(["--label", f"{key}={value}"])
        for item in spec.env_list():
            args.extend(["--env", item])
        args.append(spec.image)

        result = await self._run_docker(args, token=token)
        lines = result.stdout.strip().splitlines()
        if not lines:
            raise BackendCommandError("docker create returned no container id", stderr=result.stderr)
        return lines[-1].strip()

    async def start(self, unit_id: str, token: CancelToken | None = None) -> None:
        await self._run_docker(["start", unit_id], token=token)

    async def wait(self, unit_id: str, token: CancelToken | None = None) -> WaitHandle:
        proc = await self._spawn(["wait", unit_id])
        handle = WaitHandle(on_cancel=lambda: self._terminate(proc))
        task = asyncio.create_task(self._watch_wait(proc, unit_id, handle))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)
        return handle

    async def copy_out(
        self,
        unit_id: str,
        path: str,
        token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        args = ["cp", f"{unit_id}:{path}", "-"]
        proc = await self._spawn(args)
        assert proc.stdout is not None and proc.stderr is not None
        stderr_task = asyncio.create_task(proc.stderr.read())
        received = 0
        try:
            while True:
                try:
                    chunk = await proc.stdout.read(self._chunk_size)
                except (OSError, ValueError) as exc:
                    raise StreamReadError(
                        f"Reading archive stream for {path} failed after {received} bytes",
                        cause=exc,
                    ) from exc
                if not chunk:
                    break
                received += len(chunk)
                yield chunk
            returncode = await proc.wait()
            stderr = (await stderr_task).decode(errors="replace").strip()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            await self._kill(proc)

        if returncode != 0:
            if _MISSING_PATH_RE.search(stderr):
                raise ArtifactNotFoundError(
                    f"{path} does not exist in unit {unit_id[:12]}"
                ).with_context(unit_id=unit_id, path=path)
            if _UNAVAILABLE_RE.search(stderr):
                raise BackendUnavailableError(f"Backend lost during copy-out: {stderr}")
            raise StreamReadError(
                f"docker cp exited {returncode} after {received} bytes: {stderr}"
            ).with_context(unit_id=unit_id, path=path)

    async def remove(
        self,
        ref: str,
        *,
        force: bool = True,
        remove_volumes: bool = True,
    ) -> None:
        args = ["rm"]
        if force:
            args.append("--force")
        if remove_volumes:
            args.append("--volumes")
        args.append(ref)

        result = await self._run_docker(args, check=False)
        if result.returncode == 0:
            return
        if _MISSING_UNIT_RE.search(result.stderr):
            logger.debug("unit.already_gone", ref=ref)
            return
        raise self._classify(result)

    async def list_running(self, label: str | None = None) -> list[str]:
        args = ["ps", "--quiet", "--no-trunc"]
        if label:
            args.extend(["--filter", f"label={label}"])
        result = await self._run_docker(args)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        if self.closed:
            raise BackendUnavailableError("Backend handle is closed")
        cmd = [self._docker_cmd, *args]
        logger.debug("docker.exec", cmd=" ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise BackendUnavailableError(f"Could not run {self._docker_cmd}: {exc}", cause=exc) from exc
        self._children.add(proc)
        return proc

    async def _run_docker(
        self,
        args: list[str],
        *,
        check: bool = True,
        token: CancelToken | None = None,
    ) -> DockerResult:
        """Run a short docker command to completion."""
        if token is not None:
            token.check(f"docker {args[0]}")
        timeout = token.timeout_for(self._command_timeout) if token else self._command_timeout

        proc = await self._spawn(args)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as exc:
            if token is not None:
                token.check(f"docker {args[0]}")
            raise BackendUnavailableError(
                f"Docker command timed out after {timeout}s: docker {' '.join(args)}",
                cause=exc,
            ) from exc
        finally:
            await self._kill(proc)

        result = DockerResult(
            args=args,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace").strip(),
        )
        if check and result.returncode != 0:
            raise self._classify(result)
        return result

    async def _watch_wait(
        self,
        proc: asyncio.subprocess.Process,
        unit_id: str,
        handle: WaitHandle,
    ) -> None:
        """Feed the outcome of ``docker wait`` into the handle's signals."""
        try:
            stdout, stderr = await proc.communicate()
        except OSError as exc:
            handle.fail(WaitError(f"docker wait for {unit_id[:12]} broke: {exc}", cause=exc))
            return
        finally:
            self._children.discard(proc)

        if proc.returncode == 0:
            output = stdout.decode(errors="replace").strip().splitlines()
            try:
                handle.resolve(int(output[-1]))
            except (IndexError, ValueError) as exc:
                handle.fail(WaitError(f"Unexpected docker wait output: {output!r}", cause=exc))
            return

        message = stderr.decode(errors="replace").strip()
        if _UNAVAILABLE_RE.search(message):
            handle.fail(BackendUnavailableError(f"Backend lost while waiting: {message}"))
        else:
            handle.fail(
                WaitError(f"docker wait exited {proc.returncode}: {message}").with_context(unit_id=unit_id)
            )

    @staticmethod
    def _classify(result: DockerResult) -> ProvisionerError:
        command = f"docker {result.args[0]}"
        if _UNAVAILABLE_RE.search(result.stderr):
            return BackendUnavailableError(f"{command} failed, daemon unreachable: {result.stderr}")
        if _CONFLICT_RE.search(result.stderr):
            return UnitConflictError(f"{command} failed: {result.stderr}")
        return BackendCommandError(
            f"{command} failed (exit {result.returncode}): {result.stderr}",
            exit_code=result.returncode,
            stderr=result.stderr,
        )

    def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        self._terminate(proc)
        if proc.returncode is None:
            await proc.wait()
        self._children.discard(proc)
