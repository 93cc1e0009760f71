from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Generic, TypeVar

from .files import File

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterator, Callable, Mapping
    from typing import Any, Union

    Source = Union["ByteStream", bytes, bytearray, memoryview, Any]

T = TypeVar("T")

# Get logger for this module.
logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class _Missing:
    """Placeholder for a key that is absent from the input."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


# Unique missing object.
MISSING: Any = _Missing()


def fmt_path(path: str | None) -> str:
    return path if path is not None else ""


def key_path(path: str | None, key: object) -> str:
    return f"{fmt_path(path)}.{key}"


def index_path(path: str | None, index: int) -> str:
    return f"{fmt_path(path)}[{index}]"


def get_header(headers: Mapping[str, Any] | None, name: str) -> Any:
    """Case-insensitive header lookup.  Returns ``None`` if not present."""
    if not headers:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lower = name.lower()
    for key, value in headers.items():
        if isinstance(key, bytes):
            key = key.decode("latin-1")
        if key.lower() == lower:
            return value
    return None


class ByteStream:
    """An asynchronous stream of byte chunks with push-back support.

    Wraps any of the byte sources formparse accepts and hands out ``bytes``
    chunks one at a time.  Chunks that were read but not consumed can be handed
    back with :meth:`unread`, and will be returned again, in order, before any
    new data is read from the underlying source.

    Supported sources are:

    - ``bytes``, ``bytearray`` and ``memoryview`` (a single chunk);
    - :class:`~formparse.files.File` objects;
    - objects with a synchronous or asynchronous ``read(n)`` method, such as
      file objects or :class:`asyncio.StreamReader`;
    - asynchronous and synchronous iterables of ``bytes`` or ``str`` chunks.
    """

    def __init__(self, source: Any, chunk_size: int = DEFAULT_CHUNK_SIZE, headers: Mapping[str, Any] | None = None):
        if chunk_size < 1:
            raise ValueError("chunk_size must be a positive number, not %r" % chunk_size)
        self.chunk_size = chunk_size
        self.headers = headers if headers is not None else getattr(source, "headers", None)
        self.bytes_read = 0
        self._pending: list[bytes] = []
        self._exhausted = False
        self._chunks = self._iterate(source)

    @classmethod
    def wrap(cls, source: Source, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ByteStream:
        if isinstance(source, ByteStream):
            return source
        return cls(source, chunk_size=chunk_size)

    async def _iterate(self, source: Any) -> AsyncIterator[bytes]:
        if isinstance(source, (bytes, bytearray, memoryview)):
            if source:
                yield bytes(source)
            return

        if isinstance(source, File):
            async for chunk in source.chunks(self.chunk_size):
                yield chunk
            return

        read = getattr(source, "read", None)
        if read is not None:
            is_async = inspect.iscoroutinefunction(read)
            while True:
                chunk = await read(self.chunk_size) if is_async else read(self.chunk_size)
                if not chunk:
                    return
                yield _to_bytes(chunk)

        elif hasattr(source, "__aiter__"):
            async for chunk in source:
                # Empty chunks do not mean the end of an iterable.
                if chunk:
                    yield _to_bytes(chunk)

        elif hasattr(source, "__iter__") and not isinstance(source, str):
            for chunk in source:
                if chunk:
                    yield _to_bytes(chunk)

        else:
            raise TypeError(f"Cannot read bytes from {type(source).__name__}")

    def unread(self, data: bytes) -> None:
        """Push ``data`` back to the front of the stream."""
        if data:
            self._pending.insert(0, data)
            self.bytes_read -= len(data)

    async def read_chunk(self) -> bytes:
        """Return the next chunk, or ``b""`` once the stream is exhausted."""
        if self._pending:
            chunk = self._pending.pop(0)
        elif self._exhausted:
            return b""
        else:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                return b""
        self.bytes_read += len(chunk)
        return chunk

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read_chunk()
            if not chunk:
                return
            yield chunk

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(bytes_read={self.bytes_read!r}, exhausted={self._exhausted!r})"


def _to_bytes(chunk: Any) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    return bytes(chunk)


async def stream_to_bytes(source: Source) -> bytes:
    """Drain any byte source into one contiguous ``bytes`` object."""
    data = bytearray()
    async for chunk in ByteStream.wrap(source):
        data += chunk
    logger.debug("Buffered %d bytes from stream", len(data))
    return bytes(data)


class Parser(Generic[T]):
    """
    A value transform paired with a stream transform.

    Calling the parser applies the value transform to an already-materialized
    value.  :meth:`stream` applies it to a byte stream; by default it buffers
    the whole stream with :func:`stream_to_bytes` and then calls the value
    transform on the result.  Subclasses override :meth:`stream` to process
    data incrementally.

    Parsers hold no mutable state, so one instance may be reused across any
    number of concurrent invocations.

    Args:
        func: The value transform, called as ``func(value, path)``.  It must
            raise :class:`~formparse.exceptions.ParsingError` on invalid input.
        name: A short name used in ``repr()``.
    """

    def __init__(self, func: Callable[[Any, str | None], T], name: str | None = None) -> None:
        self._func = func
        self.name = name or getattr(func, "__name__", "parser")

    def __call__(self, value: Any, path: str | None = None) -> T:
        return self._func(value, path)

    async def stream(self, source: Source, path: str | None = None, headers: Mapping[str, Any] | None = None) -> T:
        return self(await stream_to_bytes(source), path)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name})"


def create_parser(func: Callable[[Any, str | None], T], name: str | None = None) -> Parser[T]:
    """Build a :class:`Parser` whose stream path buffers then parses."""
    return Parser(func, name=name)
