"""Tests for DockerCliBackend with a scripted ``docker`` subprocess.

No daemon is needed: ``asyncio.create_subprocess_exec`` is replaced by a
fake that records argv and replays canned stdout/stderr/exit codes.
"""

from __future__ import annotations

import asyncio
import io
import tarfile

import pytest

from provisioner.backend._types import UnitSpec
from provisioner.backend.docker_cli import DockerCliBackend
from provisioner.core.errors import (
    ArtifactNotFoundError,
    BackendCommandError,
    BackendUnavailableError,
    JobTimeoutError,
    StreamReadError,
    UnitConflictError,
    WaitError,
)
from provisioner.execution.deadline import CancelToken
from provisioner.pipeline.lifecycle import UnitLifecycle

DOCKER = "/usr/bin/docker"


# ---------------------------------------------------------------------------
# Fake subprocess
# ---------------------------------------------------------------------------

class FakeStream:
    def __init__(self, data: bytes) -> None:
        self._buf = data

    async def read(self, n: int = -1) -> bytes:
        await asyncio.sleep(0)
        if n < 0:
            data, self._buf = self._buf, b""
        else:
            data, self._buf = self._buf[:n], self._buf[n:]
        return data


class FakeProcess:
    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        returncode: int = 0,
        *,
        hang: bool = False,
    ) -> None:
        self.stdout = FakeStream(stdout)
        self.stderr = FakeStream(stderr)
        self.returncode: int | None = None
        self.killed = False
        self._exit = returncode
        self._hang = hang
        self._gone = asyncio.Event()

    async def wait(self) -> int:
        if self.returncode is None:
            if self._hang:
                await self._gone.wait()
            else:
                self.returncode = self._exit
        return self.returncode

    async def communicate(self) -> tuple[bytes, bytes]:
        await self.wait()
        return await self.stdout.read(), await self.stderr.read()

    def kill(self) -> None:
        if self.returncode is None:
            self.killed = True
            self.returncode = -9
            self._gone.set()


class FakeDocker:
    """Replays scripted processes per docker subcommand."""

    def __init__(self) -> None:
        self.scripts: dict[str, list[FakeProcess]] = {}
        self.argv: list[list[str]] = []

    def script(self, subcommand: str, *procs: FakeProcess) -> None:
        self.scripts.setdefault(subcommand, []).extend(procs)

    def calls(self, subcommand: str) -> list[list[str]]:
        return [argv for argv in self.argv if argv[1] == subcommand]

    async def exec(self, *cmd: str, **kwargs) -> FakeProcess:
        argv = list(cmd)
        self.argv.append(argv)
        queue = self.scripts.get(argv[1])
        if not queue:
            return FakeProcess()
        return queue.pop(0)


@pytest.fixture
def docker(monkeypatch: pytest.MonkeyPatch) -> FakeDocker:
    fake = FakeDocker()
    monkeypatch.setattr("provisioner.backend.docker_cli.shutil.which", lambda binary: DOCKER)
    monkeypatch.setattr("provisioner.backend.docker_cli.asyncio.create_subprocess_exec", fake.exec)
    return fake


def _tar(name: str, data: bytes) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Discovery and connection
# ---------------------------------------------------------------------------

class TestConnect:
    def test_missing_cli_is_unavailable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("provisioner.backend.docker_cli.shutil.which", lambda binary: None)
        with pytest.raises(BackendUnavailableError, match="not found"):
            DockerCliBackend(docker_binary="docker")

    @pytest.mark.asyncio
    async def test_connect_negotiates_api_version(self, docker: FakeDocker) -> None:
        docker.script("version", FakeProcess(stdout=b"1.45\n"))
        backend = DockerCliBackend()
        await backend.connect()
        assert backend.api_version == "1.45"
        assert docker.argv[0] == [DOCKER, "version", "--format", "{{.Server.APIVersion}}"]

    @pytest.mark.asyncio
    async def test_connect_daemon_down(self, docker: FakeDocker) -> None:
        docker.script("version", FakeProcess(
            stderr=b"Cannot connect to the Docker daemon at unix:///var/run/docker.sock.",
            returncode=1,
        ))
        with pytest.raises(BackendUnavailableError):
            await DockerCliBackend().connect()

    @pytest.mark.asyncio
    async def test_command_timeout(self, docker: FakeDocker) -> None:
        proc = FakeProcess(hang=True)
        docker.script("version", proc)
        backend = DockerCliBackend(command_timeout=0.05)
        with pytest.raises(BackendUnavailableError, match="timed out"):
            await backend.connect()
        assert proc.killed

    @pytest.mark.asyncio
    async def test_closed_handle_refuses_commands(self, docker: FakeDocker) -> None:
        backend = DockerCliBackend()
        await backend.close()
        with pytest.raises(BackendUnavailableError, match="closed"):
            await backend.list_running()


# ---------------------------------------------------------------------------
# Unit operations
# ---------------------------------------------------------------------------

class TestCreateStart:
    @pytest.mark.asyncio
    async def test_create_argv(self, docker: FakeDocker) -> None:
        docker.script("create", FakeProcess(stdout=b"abc123def456\n"))
        spec = UnitSpec(
            image="scraper:latest",
            env={"HOTEL_NAME": "hotel-123", "IS_PROVISIONER": "true"},
            name="provisioner-job1",
            labels={"provisioner.managed": "true"},
        )
        unit_id = await DockerCliBackend().create(spec)

        assert unit_id == "abc123def456"
        assert docker.calls("create")[0] == [
            DOCKER, "create",
            "--name", "provisioner-job1",
            "--label", "provisioner.managed=true",
            "--env", "HOTEL_NAME=hotel-123",
            "--env", "IS_PROVISIONER=true",
            "scraper:latest",
        ]

    @pytest.mark.asyncio
    async def test_create_never_auto_removes(self, docker: FakeDocker) -> None:
        docker.script("create", FakeProcess(stdout=b"abc\n"))
        await DockerCliBackend().create(UnitSpec(image="scraper"))
        assert "--rm" not in docker.calls("create")[0]

    @pytest.mark.asyncio
    async def test_create_name_conflict(self, docker: FakeDocker) -> None:
        docker.script("create", FakeProcess(
            stderr=b'Error response from daemon: Conflict. The container name "/x" is already in use',
            returncode=125,
        ))
        with pytest.raises(UnitConflictError):
            await DockerCliBackend().create(UnitSpec(image="scraper", name="x"))

    @pytest.mark.asyncio
    async def test_create_without_id(self, docker: FakeDocker) -> None:
        docker.script("create", FakeProcess(stdout=b""))
        with pytest.raises(BackendCommandError):
            await DockerCliBackend().create(UnitSpec(image="scraper"))

    @pytest.mark.asyncio
    async def test_start_other_failure(self, docker: FakeDocker) -> None:
        docker.script("start", FakeProcess(stderr=b"OCI runtime create failed", returncode=1))
        with pytest.raises(BackendCommandError) as exc_info:
            await DockerCliBackend().start("abc")
        assert exc_info.value.exit_code == 1
        assert "OCI runtime" in exc_info.value.stderr


class TestCreateCleanup:
    @pytest.mark.asyncio
    async def test_timed_out_create_is_removed_by_name(self, docker: FakeDocker) -> None:
        create = FakeProcess(hang=True)
        docker.script("create", create)
        lifecycle = UnitLifecycle(DockerCliBackend(command_timeout=0.05))

        with pytest.raises(BackendUnavailableError, match="timed out"):
            await lifecycle.create_from_spec(UnitSpec(image="scraper", name="provisioner-job-1"))

        assert create.killed
        assert docker.calls("rm") == [[DOCKER, "rm", "--force", "--volumes", "provisioner-job-1"]]

    @pytest.mark.asyncio
    async def test_create_past_job_deadline_is_removed_by_name(self, docker: FakeDocker) -> None:
        docker.script("create", FakeProcess(hang=True))
        lifecycle = UnitLifecycle(DockerCliBackend(command_timeout=60))
        token = CancelToken.with_timeout(0.05)

        with pytest.raises(JobTimeoutError):
            await lifecycle.create_from_spec(UnitSpec(image="scraper", name="provisioner-job-2"), token=token)

        assert docker.calls("rm") == [[DOCKER, "rm", "--force", "--volumes", "provisioner-job-2"]]

    @pytest.mark.asyncio
    async def test_create_never_made_is_tolerated(self, docker: FakeDocker) -> None:
        docker.script("create", FakeProcess(hang=True))
        docker.script("rm", FakeProcess(stderr=b"Error: No such container: provisioner-job-3", returncode=1))
        lifecycle = UnitLifecycle(DockerCliBackend(command_timeout=0.05))

        with pytest.raises(BackendUnavailableError):
            await lifecycle.create_from_spec(UnitSpec(image="scraper", name="provisioner-job-3"))

        assert len(docker.calls("rm")) == 1

    @pytest.mark.asyncio
    async def test_name_conflict_does_not_remove_the_other_unit(self, docker: FakeDocker) -> None:
        docker.script("create", FakeProcess(
            stderr=b'Conflict. The container name "/provisioner-job-4" is already in use',
            returncode=1,
        ))
        lifecycle = UnitLifecycle(DockerCliBackend())

        with pytest.raises(UnitConflictError):
            await lifecycle.create_from_spec(UnitSpec(image="scraper", name="provisioner-job-4"))

        assert docker.calls("rm") == []


class TestWait:
    @pytest.mark.asyncio
    async def test_status_signal(self, docker: FakeDocker) -> None:
        docker.script("wait", FakeProcess(stdout=b"0\n"))
        handle = await DockerCliBackend().wait("abc")
        assert await asyncio.wait_for(handle.status, 1) == 0
        assert not handle.error.done()

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_still_status(self, docker: FakeDocker) -> None:
        docker.script("wait", FakeProcess(stdout=b"137\n"))
        handle = await DockerCliBackend().wait("abc")
        assert await asyncio.wait_for(handle.status, 1) == 137

    @pytest.mark.asyncio
    async def test_error_signal(self, docker: FakeDocker) -> None:
        docker.script("wait", FakeProcess(stderr=b"Error: No such container: abc", returncode=1))
        handle = await DockerCliBackend().wait("abc")
        error = await asyncio.wait_for(handle.error, 1)
        assert isinstance(error, WaitError)
        assert not handle.status.done()

    @pytest.mark.asyncio
    async def test_cancel_kills_watcher(self, docker: FakeDocker) -> None:
        proc = FakeProcess(hang=True)
        docker.script("wait", proc)
        backend = DockerCliBackend()
        handle = await backend.wait("abc")
        handle.cancel()
        assert proc.killed
        assert handle.status.cancelled()
        await backend.close()


class TestCopyOut:
    @pytest.mark.asyncio
    async def test_streams_archive(self, docker: FakeDocker) -> None:
        archive = _tar("0_hotel-123.csv", b"a,b\n")
        docker.script("cp", FakeProcess(stdout=archive))
        backend = DockerCliBackend(chunk_size=100)

        chunks = [c async for c in backend.copy_out("abc", "/puppeteer/reviews/0_hotel-123.csv")]

        assert b"".join(chunks) == archive
        assert len(chunks) > 1
        assert docker.calls("cp")[0] == [DOCKER, "cp", "abc:/puppeteer/reviews/0_hotel-123.csv", "-"]

    @pytest.mark.asyncio
    async def test_missing_path(self, docker: FakeDocker) -> None:
        docker.script("cp", FakeProcess(
            stderr=b"Error response from daemon: Could not find the file /puppeteer/reviews/0_x.csv "
                   b"in container abc",
            returncode=1,
        ))
        with pytest.raises(ArtifactNotFoundError):
            [c async for c in DockerCliBackend().copy_out("abc", "/puppeteer/reviews/0_x.csv")]

    @pytest.mark.asyncio
    async def test_transport_failure(self, docker: FakeDocker) -> None:
        docker.script("cp", FakeProcess(stdout=b"partial", stderr=b"unexpected EOF", returncode=1))
        with pytest.raises(StreamReadError):
            [c async for c in DockerCliBackend().copy_out("abc", "/p")]


class TestRemoveAndList:
    @pytest.mark.asyncio
    async def test_remove_argv(self, docker: FakeDocker) -> None:
        await DockerCliBackend().remove("abc")
        assert docker.calls("rm")[0] == [DOCKER, "rm", "--force", "--volumes", "abc"]

    @pytest.mark.asyncio
    async def test_remove_without_force(self, docker: FakeDocker) -> None:
        await DockerCliBackend().remove("abc", force=False, remove_volumes=False)
        assert docker.calls("rm")[0] == [DOCKER, "rm", "abc"]

    @pytest.mark.asyncio
    async def test_remove_already_gone(self, docker: FakeDocker) -> None:
        docker.script("rm", FakeProcess(stderr=b"Error: No such container: abc", returncode=1))
        await DockerCliBackend().remove("abc")

    @pytest.mark.asyncio
    async def test_remove_daemon_down(self, docker: FakeDocker) -> None:
        docker.script("rm", FakeProcess(stderr=b"error during connect: pipe closed", returncode=1))
        with pytest.raises(BackendUnavailableError):
            await DockerCliBackend().remove("abc")

    @pytest.mark.asyncio
    async def test_list_running(self, docker: FakeDocker) -> None:
        docker.script("ps", FakeProcess(stdout=b"aaa\nbbb\n\n"))
        ids = await DockerCliBackend().list_running("provisioner.managed=true")
        assert ids == ["aaa", "bbb"]
        assert docker.calls("ps")[0] == [
            DOCKER, "ps", "--quiet", "--no-trunc", "--filter", "label=provisioner.managed=true",
        ]

    @pytest.mark.asyncio
    async def test_list_running_empty(self, docker: FakeDocker) -> None:
        assert await DockerCliBackend().list_running() == []
