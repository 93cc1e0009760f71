"""
Streaming ingestion of form bodies.

A form body is read in four steps:

1. the multipart boundary is taken from the ``Content-Type`` header, or, when
   no header is available, sniffed from the first line of the body;
2. a :class:`~formparse.decoder.FormDecoder` is configured for that boundary
   and listeners are attached to it;
3. the sniffed bytes are replayed into the decoder and the rest of the stream
   is fed after them, accumulating fields and files into a :class:`FieldMap`;
4. the field map is handed to the object parser for validation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from python_multipart.multipart import parse_options_header

from .base import DEFAULT_CHUNK_SIZE, ByteStream, get_header
from .decoder import MULTIPART_CONTENT_TYPE, URLENCODED_CONTENT_TYPES, FormDecoder
from .exceptions import BoundaryError, FramingError, IngestionError
from .files import DEFAULT_MAX_MEMORY_FILE_SIZE, File, Spooler

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Awaitable, Callable, Iterator
    from typing import TypedDict, TypeVar

    from .base import Source

    T = TypeVar("T")

    class IngestConfig(TypedDict, total=False):
        MAX_MEMORY_FILE_SIZE: int
        UPLOAD_DIR: str | bytes | None
        UPLOAD_KEEP_EXTENSIONS: bool
        UPLOAD_ERROR_ON_BAD_CTE: bool
        MAX_BODY_SIZE: float
        SNIFF_BUFFER_SIZE: int
        CHUNK_SIZE: int


# Get logger for this module.
logger = logging.getLogger(__name__)

# Multipart bodies start with "--" followed by the boundary.
BOUNDARY_MARKER = b"--"
CRLF = b"\r\n"

DEFAULT_CONFIG: IngestConfig = {
    "MAX_MEMORY_FILE_SIZE": DEFAULT_MAX_MEMORY_FILE_SIZE,
    "UPLOAD_DIR": None,
    "UPLOAD_KEEP_EXTENSIONS": False,
    "UPLOAD_ERROR_ON_BAD_CTE": False,
    "MAX_BODY_SIZE": float("inf"),
    "SNIFF_BUFFER_SIZE": 1024,
    "CHUNK_SIZE": DEFAULT_CHUNK_SIZE,
}


def make_config(
    config: Mapping[str, Any] | None = None, max_for_ram: int | None = None, temp_dir: str | None = None
) -> IngestConfig:
    """Returns a copy of :data:`DEFAULT_CONFIG` updated with ``config`` and
    the keyword options accepted by the combinators.
    """
    result: IngestConfig = DEFAULT_CONFIG.copy()
    if config:
        result.update(config)  # type: ignore[typeddict-item]
    if max_for_ram is not None:
        if max_for_ram < 0:
            raise ValueError("max_for_ram must not be negative, not %r" % max_for_ram)
        result["MAX_MEMORY_FILE_SIZE"] = max_for_ram
    if temp_dir is not None:
        result["UPLOAD_DIR"] = temp_dir
    return result


class _Single:
    __slots__ = ("value",)

    def __init__(self, value: Any) -> None:
        self.value = value


class _Many:
    __slots__ = ("values",)

    def __init__(self, values: list[Any]) -> None:
        self.values = values


class FieldMap(Mapping):
    """
    Fields and files of a form body, keyed by field name.

    A name seen once maps to its value.  From its second occurrence on, a name
    maps to the list of all its values in arrival order.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Single | _Many] = {}

    def add(self, name: str, value: Any) -> None:
        entry = self._entries.get(name)
        if entry is None:
            self._entries[name] = _Single(value)
        elif isinstance(entry, _Single):
            self._entries[name] = _Many([entry.value, value])
        else:
            entry.values.append(value)

    def getlist(self, name: str) -> list[Any]:
        """Returns every value of ``name``, an empty list if it is absent."""
        entry = self._entries.get(name)
        if entry is None:
            return []
        if isinstance(entry, _Single):
            return [entry.value]
        return list(entry.values)

    def files(self) -> Iterator[File]:
        for name in self._entries:
            for value in self.getlist(name):
                if isinstance(value, File):
                    yield value

    def cleanup(self) -> None:
        """Removes every disk-spooled file held in this map."""
        for f in self.files():
            f.cleanup()

    def __getitem__(self, name: str) -> Any:
        entry = self._entries[name]
        if isinstance(entry, _Single):
            return entry.value
        return list(entry.values)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({dict(self)!r})"


async def sniff_boundary(stream: ByteStream, max_size: int = 1024) -> tuple[bytes, bytes]:
    """
    Recovers the multipart boundary from the first line of the body.

    Chunks are read into a scratch buffer until it holds a CRLF.  If the line
    before it starts with ``--``, the rest of that line is the boundary.

    Returns:
        The boundary and the bytes that were read while looking for it.  They
        must be fed to the decoder before the rest of the stream.

    Raises:
        BoundaryError: The first line is not a boundary line, no CRLF was
            found within ``max_size`` bytes, or the stream ended first.  The
            bytes read so far are pushed back into ``stream``.
    """
    scratch = bytearray()

    def fail(message: str) -> BoundaryError:
        stream.unread(bytes(scratch))
        return BoundaryError(message)

    while True:
        chunk = await stream.read_chunk()
        if not chunk:
            raise fail("Boundary not found before end of stream")
        scratch += chunk

        crlf = scratch.find(CRLF)
        if crlf != -1 and crlf <= max_size:
            first_line = bytes(scratch[:crlf])
            boundary = first_line[len(BOUNDARY_MARKER) :]
            if not first_line.startswith(BOUNDARY_MARKER) or not boundary:
                raise fail("Invalid multipart/form-data: does not start with boundary")
            logger.debug("Sniffed boundary %r", boundary)
            return boundary, bytes(scratch)

        if len(scratch) > max_size:
            raise fail("Boundary not found within reasonable buffer size")


def configure(
    stream: ByteStream,
    content_type: str = MULTIPART_CONTENT_TYPE,
    boundary: bytes | None = None,
    scratch: bytes = b"",
    charset: str = "utf-8",
    config: Mapping[str, Any] = {},
) -> tuple[FormDecoder, Callable[[], Awaitable[None]]]:
    """
    Creates a decoder for ``stream`` without reading from it.

    Returns the decoder and a ``start`` coroutine function.  Listeners must be
    registered on the decoder before ``start()`` is awaited: it replays
    ``scratch`` into the decoder, then feeds it the rest of the stream, and
    returns once the decoder has seen the end of the body.
    """
    decoder = FormDecoder(content_type, boundary=boundary, charset=charset, config=dict(config))

    async def start() -> None:
        if scratch:
            decoder.write(scratch)
        async for chunk in stream:
            decoder.write(chunk)
        decoder.finalize()
        logger.debug("Decoded %d bytes of form data", decoder.bytes_received)

    return decoder, start


async def _read_form(
    stream: ByteStream, fields: FieldMap, headers: Mapping[str, Any] | None, config: IngestConfig
) -> None:
    content_type = MULTIPART_CONTENT_TYPE
    boundary: bytes | None = None
    charset = "utf-8"

    header = get_header(headers if headers is not None else stream.headers, "Content-Type")
    if header:
        ctype, params = parse_options_header(header)
        content_type = ctype.decode("latin-1")
        if content_type not in (MULTIPART_CONTENT_TYPE, *URLENCODED_CONTENT_TYPES):
            raise FramingError(f"Not a form body: {content_type}")
        boundary = params.get(b"boundary")
        if b"charset" in params:
            charset = params[b"charset"].decode("latin-1")

    scratch = b""
    if content_type == MULTIPART_CONTENT_TYPE and not boundary:
        boundary, scratch = await sniff_boundary(stream, config["SNIFF_BUFFER_SIZE"])

    decoder, start = configure(stream, content_type, boundary, scratch, charset=charset, config=config)

    errors: list[Exception] = []
    current: Spooler | None = None

    def on_field(name: str, value: str) -> None:
        fields.add(name, value)

    def on_file(name: str, file_name: str, content_type: str | None) -> Spooler:
        nonlocal current
        current = Spooler(file_name, name, content_type, config=config)
        return current

    def on_file_end(name: str, spooler: Spooler) -> None:
        nonlocal current
        fields.add(name, spooler.file)
        current = None

    def on_part_error(name: str, exc: Exception) -> None:
        nonlocal current
        errors.append(exc)
        if current is not None:
            current.file.cleanup()
            current = None

    decoder.set_callback("field", on_field)
    decoder.set_callback("file", on_file)
    decoder.set_callback("file_end", on_file_end)
    decoder.set_callback("part_error", on_part_error)

    try:
        await start()
    except BaseException:
        # The file being received is not in the field map yet.
        if current is not None:
            current.file.cleanup()
        raise

    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise IngestionError(errors)


async def read_form(
    source: Source, headers: Mapping[str, Any] | None = None, config: Mapping[str, Any] | None = None
) -> FieldMap:
    """
    Reads a whole form body into a :class:`FieldMap`.

    The content type is taken from ``headers`` (or from ``source.headers``).
    Without one, the body is assumed to be ``multipart/form-data`` and its
    boundary is sniffed.  Files are spooled to disk according to ``config``.
    If reading fails, files already accumulated are removed.

    Raises:
        FramingError: The body is not a well-formed form.
        FileError: A file could not be spooled to disk.
        IngestionError: Several parts failed.
    """
    cfg = make_config(config)
    stream = ByteStream.wrap(source, chunk_size=cfg["CHUNK_SIZE"])
    fields = FieldMap()
    try:
        await _read_form(stream, fields, headers, cfg)
    except BaseException:
        fields.cleanup()
        raise
    return fields


def _files_in(value: Any) -> Iterator[File]:
    if isinstance(value, File):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _files_in(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from _files_in(item)


async def ingest(
    source: Source,
    parse: Callable[[Any, str | None], T],
    path: str | None = None,
    headers: Mapping[str, Any] | None = None,
    config: Mapping[str, Any] | None = None,
) -> T:
    """
    Reads a form body with :func:`read_form` and validates the resulting
    field map with ``parse(field_map, path)``.

    If validation fails, the files read from the body are removed before the
    error propagates.  On success, only the files that appear in the result
    are left for the caller to clean up.
    """
    fields = await read_form(source, headers=headers, config=config)
    try:
        result = parse(fields, path)
    except BaseException:
        logger.info("Form validation failed, removing %d spooled file(s)", sum(1 for _ in fields.files()))
        fields.cleanup()
        raise

    # Files the result does not hold are unreachable for the caller.
    kept = {id(f) for f in _files_in(result)}
    for f in fields.files():
        if id(f) not in kept:
            logger.debug("Removing unused file %r", f)
            f.cleanup()
    return result
