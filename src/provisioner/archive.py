"""Pull parser for streamed tar archives.

``docker cp`` (and the backend's copy-out in general) frames files as a
tar stream: a sequence of 512-byte headers, each followed by its payload
padded to the block size, terminated by zero blocks. This module decodes
that framing lazily from an async byte stream:

- entries are yielded one at a time as their headers arrive
- a payload is streamed on demand and skipped if the caller ignores it
- the sequence is finite and not restartable

Header decoding (checksum, octal/base-256 fields, ustar prefix) is
delegated to ``tarfile.TarInfo.frombuf``. GNU long names (``L``) and PAX
extended headers (``x``) are applied to the entry that follows them.

Malformed headers and truncated streams raise ``StreamReadError``. Errors
raised by the underlying stream (e.g. ``ArtifactNotFoundError`` from the
backend) propagate unchanged.

Example:
    >>> reader = TarStreamReader(backend.copy_out(unit_id, path))
    >>> async for entry in reader:
    ...     if entry.is_file:
    ...         data = await entry.read()
    ...         break
    >>> await reader.drain()
"""

from __future__ import annotations

import posixpath
import re
import tarfile
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from provisioner.core.errors import StreamReadError

BLOCK_SIZE = tarfile.BLOCKSIZE
_ZERO_BLOCK = bytes(BLOCK_SIZE)
_PAX_RECORD_RE = re.compile(rb"(\d+) ")
_FILE_TYPES = (tarfile.REGTYPE, tarfile.AREGTYPE, tarfile.CONTTYPE)


def _padded(size: int) -> int:
    return -(-size // BLOCK_SIZE) * BLOCK_SIZE


class _ByteStream:
    """Exact-size reads over an async iterator of arbitrary chunks."""

    def __init__(self, chunks: AsyncIterator[bytes]) -> None:
        self._chunks = chunks.__aiter__()
        self._buf = bytearray()
        self._eof = False
        self.offset = 0

    async def _fill(self, n: int) -> None:
        while len(self._buf) < n and not self._eof:
            try:
                chunk = await anext(self._chunks)
            except StopAsyncIteration:
                self._eof = True
                break
            self._buf.extend(chunk)

    async def read(self, n: int) -> bytes:
        """Up to ``n`` bytes; fewer only at end of stream."""
        await self._fill(n)
        data = bytes(self._buf[:n])
        del self._buf[:n]
        self.offset += len(data)
        return data

    async def read_exact(self, n: int, what: str) -> bytes:
        start = self.offset
        data = await self.read(n)
        if len(data) < n:
            raise StreamReadError(
                f"Archive truncated: expected {n} bytes of {what} at offset {start}, got {len(data)}"
            )
        return data

    async def drain(self) -> int:
        """Consume the rest of the stream; returns bytes discarded."""
        discarded = len(self._buf)
        self._buf.clear()
        while not self._eof:
            try:
                chunk = await anext(self._chunks)
            except StopAsyncIteration:
                self._eof = True
                break
            discarded += len(chunk)
        self.offset += discarded
        return discarded

    async def aclose(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()


@dataclass
class TarEntry:
    """One archive member. The payload can be read once."""

    name: str
    size: int
    type: bytes
    mode: int = 0o644
    mtime: float = 0.0
    _stream: _ByteStream | None = field(default=None, repr=False)
    _remaining: int = field(default=0, repr=False)
    _padding: int = field(default=0, repr=False)

    @property
    def basename(self) -> str:
        return posixpath.basename(self.name.rstrip("/"))

    @property
    def is_file(self) -> bool:
        return self.type in _FILE_TYPES

    @property
    def is_dir(self) -> bool:
        return self.type == tarfile.DIRTYPE

    @property
    def consumed(self) -> bool:
        return self._remaining == 0 and self._padding == 0

    async def iter_chunks(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Stream the payload. Subsequent calls yield nothing."""
        stream = self._source()
        while self._remaining:
            want = min(chunk_size, self._remaining)
            data = await stream.read_exact(want, f"payload of {self.name!r}")
            self._remaining -= len(data)
            yield data
        await self._skip_padding()

    async def read(self) -> bytes:
        parts = [chunk async for chunk in self.iter_chunks()]
        return b"".join(parts)

    async def _skip(self) -> None:
        if self._remaining:
            await self._source().read_exact(self._remaining, f"payload of {self.name!r}")
            self._remaining = 0
        await self._skip_padding()

    async def _skip_padding(self) -> None:
        if self._padding:
            await self._source().read_exact(self._padding, "block padding")
            self._padding = 0

    def _source(self) -> _ByteStream:
        if self._stream is None:
            raise StreamReadError(f"Entry {self.name!r} is not attached to an archive stream")
        return self._stream


class TarStreamReader:
    """Lazy, single-pass decoder for a streamed tar archive.

    Args:
        chunks: Async iterator of raw archive bytes in arbitrary chunking.
        encoding: Encoding for member names.
    """

    def __init__(self, chunks: AsyncIterator[bytes], *, encoding: str = "utf-8") -> None:
        self._stream = _ByteStream(chunks)
        self._encoding = encoding
        self._started = False
        self.entries_seen = 0

    def __aiter__(self) -> AsyncIterator[TarEntry]:
        if self._started:
            raise StreamReadError("Archive stream is not restartable")
        self._started = True
        return self._entries()

    @property
    def offset(self) -> int:
        return self._stream.offset

    async def drain(self) -> int:
        """Read the transport to its end (lets the producer report errors)."""
        return await self._stream.drain()

    async def aclose(self) -> None:
        await self._stream.aclose()

    async def _entries(self) -> AsyncIterator[TarEntry]:
        long_name: str | None = None
        pax: dict[str, str] = {}

        while True:
            header_offset = self._stream.offset
            block = await self._stream.read(BLOCK_SIZE)
            if not block:
                return  # EOF without end-of-archive marker
            if len(block) < BLOCK_SIZE:
                raise StreamReadError(
                    f"Archive truncated: partial header of {len(block)} bytes at offset {header_offset}"
                )
            if block == _ZERO_BLOCK:
                return

            try:
                info = tarfile.TarInfo.frombuf(block, self._encoding, "surrogateescape")
            except tarfile.HeaderError as exc:
                raise StreamReadError(
                    f"Malformed tar header at offset {header_offset}: {exc}", cause=exc,
                ) from exc

            if info.type in (tarfile.GNUTYPE_LONGNAME, tarfile.XHDTYPE, tarfile.XGLTYPE,
                             tarfile.SOLARIS_XHDTYPE):
                data = await self._stream.read_exact(_padded(info.size), "extended header")
                data = data[:info.size]
                if info.type == tarfile.GNUTYPE_LONGNAME:
                    long_name = data.rstrip(b"\0").decode(self._encoding, "surrogateescape")
                elif info.type != tarfile.XGLTYPE:
                    pax.update(_parse_pax(data, header_offset))
                continue

            name = pax.get("path") or long_name or info.name
            size = info.size
            if "size" in pax:
                try:
                    size = int(pax["size"])
                except ValueError as exc:
                    raise StreamReadError(f"Invalid PAX size {pax['size']!r}", cause=exc) from exc

            # Only regular files carry a payload, whatever the size field says
            payload = size if info.type in _FILE_TYPES else 0
            entry = TarEntry(
                name=name,
                size=payload,
                type=info.type,
                mode=info.mode,
                mtime=float(pax.get("mtime", info.mtime)),
                _stream=self._stream,
                _remaining=payload,
                _padding=_padded(payload) - payload,
            )
            long_name = None
            pax = {}
            self.entries_seen += 1

            yield entry
            await entry._skip()


def _parse_pax(data: bytes, offset: int) -> dict[str, str]:
    """Parse PAX extended header records (``"%d %s=%s\\n"``)."""
    records: dict[str, str] = {}
    pos = 0
    while pos < len(data) and data[pos:pos + 1] != b"\0":
        match = _PAX_RECORD_RE.match(data, pos)
        if match is None:
            raise StreamReadError(f"Malformed PAX header at offset {offset}")
        length = int(match.group(1))
        body_start = match.end()
        end = pos + length
        if length <= len(match.group(0)) or end > len(data) or data[end - 1:end] != b"\n":
            raise StreamReadError(f"Malformed PAX record at offset {offset}")
        key, sep, value = data[body_start:end - 1].partition(b"=")
        if not sep:
            raise StreamReadError(f"Malformed PAX record at offset {offset}")
        records[key.decode("utf-8", "surrogateescape")] = value.decode("utf-8", "surrogateescape")
        pos = end
    return records


async def iter_tar_entries(chunks: AsyncIterator[bytes]) -> AsyncIterator[TarEntry]:
    """Yield entries of a streamed archive (convenience over TarStreamReader)."""
    async for entry in TarStreamReader(chunks):
        yield entry
