import asyncio
import codecs
import enum
import json
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, BinaryIO, Iterable, Protocol

import structlog

from estcache.codec import decode_mapping, encode
from estcache.errors import MalformedRecordError, StreamIOError
from estcache.models import EstimationRecord

logger = structlog.get_logger()

OPEN_FRAME = b"[\n"
CLOSE_FRAME = b"\n]"
RECORD_SEPARATOR = b"\n"

_DEFAULT_CHUNK_SIZE = 64 * 1024
_WHITESPACE = " \t\r\n"
_json_decoder = json.JSONDecoder()


class _State(enum.Enum):
    BEFORE_OPEN = "before-open"
    IN_BODY = "in-body"
    AFTER_CLOSE = "after-close"


class CacheReader:
    """
    CacheReader: Is an incremental parser for the cache framing.

    Chunks are fed in as they arrive, whatever their boundaries.
    Only the current unfinished line is buffered, so memory stays
    bounded by the size of one record rather than the whole cache.
    Every complete line is parsed right away; a line may hold one
    record (the framed layout the writer produces) or several
    comma separated ones, which also makes a plain single-line
    JSON array readable.
    """

    def __init__(self) -> "None":
        self._state: "_State" = _State.BEFORE_OPEN
        self._buffer: "str" = ""
        self._line: "int" = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")()

    def feed(self, chunk: "bytes | str") -> "list[EstimationRecord]":
        """
        consumes one chunk and returns the records completed by it.
        """
        text = self._decode(chunk)
        self._buffer += text
        if "\n" not in text:
            return []

        lines = self._buffer.split("\n")
        # the last element is the unfinished line
        self._buffer = lines.pop()
        records: "list[EstimationRecord]" = []
        for line in lines:
            self._line += 1
            records.extend(self._consume_line(line))
        return records

    def close(self) -> "list[EstimationRecord]":
        """
        flushes the trailing unterminated line. Raises StreamIOError
        when the stream stopped between the brackets.
        """
        self._buffer += self._decode(b"", final=True)
        tail = self._buffer.strip()
        # an opened frame whose last line lacks the bracket was cut off
        opened = self._state is _State.IN_BODY or (
            self._state is _State.BEFORE_OPEN and tail.startswith("[")
        )
        if tail and opened and not tail.endswith("]"):
            raise StreamIOError(
                f"cache stream ended inside line {self._line + 1} "
                "before the closing bracket"
            )

        records: "list[EstimationRecord]" = []
        if self._buffer:
            self._line += 1
            records = self._consume_line(self._buffer)
            self._buffer = ""

        if self._state is _State.IN_BODY:
            raise StreamIOError(
                f"cache stream ended at line {self._line} before the closing bracket"
            )
        return records

    def _decode(self, chunk: "bytes | str", final: "bool" = False) -> "str":
        if isinstance(chunk, str):
            return chunk
        try:
            return self._decoder.decode(chunk, final=final)
        except UnicodeDecodeError as exc:
            raise MalformedRecordError(
                f"invalid utf-8: {exc.reason}", line=self._line + 1
            ) from exc

    def _consume_line(self, line: "str") -> "list[EstimationRecord]":
        records: "list[EstimationRecord]" = []
        pos = 0
        end = len(line)

        while True:
            while pos < end and (
                line[pos] in _WHITESPACE
                or (line[pos] == "," and self._state is _State.IN_BODY)
            ):
                pos += 1
            if pos == end:
                return records

            if self._state is _State.BEFORE_OPEN:
                if line[pos] != "[":
                    raise MalformedRecordError(
                        "expected '[' at start of cache",
                        line=self._line,
                        offset=pos + 1,
                    )
                self._state = _State.IN_BODY
                pos += 1
                continue

            if self._state is _State.AFTER_CLOSE:
                raise MalformedRecordError(
                    "unexpected content after closing bracket",
                    line=self._line,
                    offset=pos + 1,
                )

            if line[pos] == "]":
                self._state = _State.AFTER_CLOSE
                pos += 1
                continue

            try:
                data, next_pos = _json_decoder.raw_decode(line, pos)
            except json.JSONDecodeError as exc:
                raise MalformedRecordError(
                    exc.msg, line=self._line, offset=exc.colno
                ) from exc

            try:
                records.append(decode_mapping(data))
            except MalformedRecordError as exc:
                raise MalformedRecordError(
                    exc.reason, line=self._line, offset=pos + 1
                ) from exc
            pos = next_pos


async def _guarded(
    source: "AsyncIterable[bytes | str]",
) -> "AsyncIterator[bytes | str]":
    iterator = source.__aiter__()
    while True:
        try:
            chunk = await iterator.__anext__()
        except StopAsyncIteration:
            return
        except StreamIOError:
            raise
        except (OSError, asyncio.IncompleteReadError) as exc:
            raise StreamIOError(f"cache source failed: {exc}") from exc
        yield chunk


async def iter_cache(
    source: "AsyncIterable[bytes | str]",
) -> "AsyncIterator[EstimationRecord]":
    """
    lazily yields records from a chunked source in stream order.
    Records before a malformed segment have already been yielded
    when the error is raised; use read_cache for all-or-nothing.
    """
    reader = CacheReader()
    async for chunk in _guarded(source):
        for record in reader.feed(chunk):
            yield record
    for record in reader.close():
        yield record


async def read_cache(
    source: "AsyncIterable[bytes | str]",
) -> "list[EstimationRecord]":
    """
    reads the whole cache stream. Either every record is returned
    or an error is raised.
    """
    records = [record async for record in iter_cache(source)]
    logger.debug("cache_read_done", record_count=len(records))
    return records


class CacheSink(Protocol):
    """
    CacheSink is the writable side of a cache stream. It matches
    asyncio.StreamWriter: write() buffers, drain() waits until the
    buffered bytes were accepted.
    """

    def write(self, data: "bytes") -> "None": ...

    async def drain(self) -> "None": ...


async def write_cache(
    sink: "CacheSink",
    records: "Iterable[EstimationRecord]",
) -> "None":
    """
    writes records one per line between the brackets. Returns once
    every byte has been drained into the sink; zero records still
    produce a readable, empty cache.
    """
    count = 0
    try:
        sink.write(OPEN_FRAME)
        for record in records:
            if count:
                sink.write(RECORD_SEPARATOR)
            sink.write(encode(record).encode("utf-8"))
            count += 1
            await sink.drain()
        sink.write(CLOSE_FRAME)
        await sink.drain()
    except StreamIOError:
        raise
    except OSError as exc:
        raise StreamIOError(f"cache sink failed after {count} records: {exc}") from exc

    logger.debug("cache_write_done", record_count=count)


async def iter_file_chunks(
    path: "str | Path",
    chunk_size: "int" = _DEFAULT_CHUNK_SIZE,
) -> "AsyncIterator[bytes]":
    """
    yields the bytes of a file in chunks, reading in a worker thread.
    A missing file yields nothing, which reads as an empty cache.
    """
    path = Path(path)
    try:
        handle = await asyncio.to_thread(path.open, "rb")
    except FileNotFoundError:
        logger.debug("cache_file_missing", path=str(path))
        return

    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        await asyncio.to_thread(handle.close)


class FileSink:
    """
    FileSink adapts a file on disk to the CacheSink protocol.
    Writes are buffered in memory until the next drain(), which
    returns once the bytes were flushed to the operating system.
    Every failure of the file surfaces as StreamIOError.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = Path(path)
        self._pending: "bytearray" = bytearray()
        self._handle = None

    async def __aenter__(self) -> "FileSink":
        await self.open()
        return self

    async def __aexit__(
        self, exc_type: "type[BaseException] | None", *exc_info: "object"
    ) -> "None":
        try:
            await self.close()
        except StreamIOError:
            # the error that aborted the write is the one to report
            if exc_type is None:
                raise

    async def open(self) -> "None":
        try:
            self._handle = await asyncio.to_thread(self._path.open, "wb")
        except OSError as exc:
            raise StreamIOError(f"cannot open {self._path}: {exc}") from exc

    def write(self, data: "bytes") -> "None":
        self._pending += data

    async def drain(self) -> "None":
        if self._handle is None:
            raise StreamIOError(f"{self._path} is not open")
        if not self._pending:
            return
        data = bytes(self._pending)
        self._pending.clear()
        try:
            await asyncio.to_thread(_write_through, self._handle, data)
        except OSError as exc:
            raise StreamIOError(f"cannot write {self._path}: {exc}") from exc

    async def close(self) -> "None":
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            await asyncio.to_thread(handle.close)
        except OSError as exc:
            raise StreamIOError(f"cannot close {self._path}: {exc}") from exc


def _write_through(handle: "BinaryIO", data: "bytes") -> "None":
    handle.write(data)
    handle.flush()
