"""Artifact extractor.

Copies one file out of an exited unit. The backend frames the file as a
tar stream; the first regular-file entry whose basename matches the
requested path is written to ``<output_dir>/<file_prefix>-<basename>``
and every other entry is skipped. The write is atomic: payload goes to a
temp file in the output directory and is renamed into place only after
the whole stream has been read without error.
"""

from __future__ import annotations

import hashlib
import os
import posixpath
import tempfile
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from provisioner.archive import TarEntry, TarStreamReader
from provisioner.core.errors import ArtifactNotFoundError, StreamReadError

if TYPE_CHECKING:
    from provisioner.backend._types import ExecutionBackend, ExecutionUnit
    from provisioner.execution.deadline import CancelToken

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExtractedArtifact:
    """A file copied out of a unit onto local storage."""

    local_path: Path
    source_path: str
    size_bytes: int
    sha256: str

    @property
    def filename(self) -> str:
        return self.local_path.name


class ArtifactExtractor:
    """Streams a single file out of a unit and writes it locally.

    Args:
        backend: Backend handle the unit lives on
        output_dir: Directory local artifacts are written to (created on demand)
        chunk_size: Payload read size
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        output_dir: Path | str,
        *,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._backend = backend
        self._output_dir = Path(output_dir)
        self._chunk_size = chunk_size

    async def extract(
        self,
        unit: ExecutionUnit,
        path_in_unit: str,
        file_prefix: str,
        *,
        token: CancelToken | None = None,
    ) -> ExtractedArtifact:
        """Copy ``path_in_unit`` out of ``unit``.

        Raises:
            ArtifactNotFoundError: The path does not exist in the unit, or
                the archive holds no matching file.
            StreamReadError: The archive is corrupt or truncated, the
                transport failed, or the local write failed.
        """
        wanted = posixpath.basename(path_in_unit.rstrip("/"))
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StreamReadError(
                f"Could not create output directory {self._output_dir}: {exc}", cause=exc,
            ).with_context(unit_id=unit.unit_id, path=path_in_unit, step="extract") from exc

        reader = TarStreamReader(self._backend.copy_out(unit.unit_id, path_in_unit, token))
        tmp_path: Path | None = None
        try:
            artifact: ExtractedArtifact | None = None
            async for entry in reader:
                if artifact is None and entry.is_file and entry.basename == wanted:
                    tmp_path, size, digest = await self._write_temp(entry)
                    artifact = ExtractedArtifact(
                        local_path=self._output_dir / f"{file_prefix}-{entry.basename}",
                        source_path=path_in_unit,
                        size_bytes=size,
                        sha256=digest,
                    )
                else:
                    logger.debug("artifact.entry_skipped", entry=entry.name)

            # the transport reports its exit status only once fully read
            await reader.drain()

            if artifact is None or tmp_path is None:
                raise ArtifactNotFoundError(
                    f"Archive for {path_in_unit} holds no file named {wanted!r} "
                    f"({reader.entries_seen} entries)"
                ).with_context(unit_id=unit.unit_id, path=path_in_unit)

            try:
                os.replace(tmp_path, artifact.local_path)
            except OSError as exc:
                raise StreamReadError(
                    f"Could not move artifact into place at {artifact.local_path}: {exc}", cause=exc,
                ) from exc
            tmp_path = None
        except (ArtifactNotFoundError, StreamReadError) as exc:
            raise exc.with_context(unit_id=unit.unit_id, path=path_in_unit, step="extract")
        finally:
            await reader.aclose()
            if tmp_path is not None:
                with suppress(FileNotFoundError):
                    tmp_path.unlink()

        logger.info(
            "artifact.extracted",
            path=path_in_unit,
            local_path=str(artifact.local_path),
            size_bytes=artifact.size_bytes,
        )
        return artifact

    async def _write_temp(self, entry: TarEntry) -> tuple[Path, int, str]:
        digest = hashlib.sha256()
        size = 0
        fd, name = tempfile.mkstemp(prefix=".partial-", dir=self._output_dir)
        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as fh:
                async for chunk in entry.iter_chunks(self._chunk_size):
                    fh.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise StreamReadError(f"Could not write artifact to {self._output_dir}: {exc}", cause=exc) from exc
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        return path, size, digest.hexdigest()
