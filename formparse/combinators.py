"""
Parsers built out of other parsers.

Composite parsers (:func:`obj` and :func:`array`) never stop at the first
failing entry: every entry is parsed, and all failures are raised together as
one :class:`~formparse.exceptions.ParsingError`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .base import MISSING, ByteStream, Parser, fmt_path, get_header, index_path, key_path, stream_to_bytes
from .exceptions import BoundError, CoercionError, FramingError, ParsingError, ShapeError
from .files import File, RAMFile, Spooler
from .formdata import ingest, make_config
from .parsers import buffer, string

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable
    from typing import TypeVar

    from .base import Source

    T = TypeVar("T")
    U = TypeVar("U")

# Get logger for this module.
logger = logging.getLogger(__name__)


def any_() -> Parser[Any]:
    """Accepts any value as-is."""
    return Parser(lambda value, path: value, name="any")


def one_of(values: Iterable[T]) -> Parser[T]:
    """Accepts only values strictly equal (same type and value) to one of
    ``values``.  Numbers of different types never match, so
    ``one_of([1])(1.0)`` fails, and so does ``one_of([1])(True)``.
    """
    allowed = tuple(values)

    def parse(value: Any, path: str | None) -> T:
        for candidate in allowed:
            if type(value) is type(candidate) and value == candidate:
                return value
        raise ShapeError(f"[{fmt_path(path)}] isn't equal to any of the expected values")

    return Parser(parse, name="one_of")


def alternatives(*parsers: Parser[Any]) -> Parser[Any]:
    """
    Tries each parser in turn and returns the first successful result.

    If every parser fails, the error lists each attempt's failure in order.
    Exceptions other than :class:`~formparse.exceptions.ParsingError` are not
    caught.
    """

    def parse(value: Any, path: str | None) -> Any:
        errors: list[ParsingError] = []
        for parser in parsers:
            try:
                return parser(value, path)
            except ParsingError as e:
                errors.append(e)

        message = f"[{fmt_path(path)}] doesn't match any of allowed alternatives:"
        raise ParsingError("\n".join([message] + [e.message for e in errors]), errors)

    return Parser(parse, name="alternatives")


def optional(parser: Parser[T]) -> Parser[T | None]:
    """Missing values and ``None`` become ``None``."""

    def parse(value: Any, path: str | None) -> T | None:
        if value is MISSING or value is None:
            return None
        return parser(value, path)

    return Parser(parse, name=f"optional({parser.name})")


def nullable(parser: Parser[T]) -> Parser[T | None]:
    """``None`` stays ``None``; missing values still go to ``parser``."""

    def parse(value: Any, path: str | None) -> T | None:
        if value is None:
            return None
        return parser(value, path)

    return Parser(parse, name=f"nullable({parser.name})")


def default_value(default: T, parser: Parser[T]) -> Parser[T]:
    """Missing values and ``None`` become ``default``."""

    def parse(value: Any, path: str | None) -> T:
        if value is MISSING or value is None:
            return default
        return parser(value, path)

    return Parser(parse, name=f"default_value({parser.name})")


def transform(parser: Parser[T], fn: Callable[[T], U]) -> Parser[U]:
    """Applies ``fn`` to the result of ``parser``."""
    return Parser(lambda value, path: fn(parser(value, path)), name=f"transform({parser.name})")


def array(parser: Parser[T], min: int | None = None, max: int | None = None) -> Parser[list[T]]:
    """
    Parses a list or tuple element by element.

    A value that is not a list is parsed as a one-element list, so
    ``array(integer())(5) == [5]``.  The same one-element retry happens when
    some elements fail: ``[value]`` is tried once, and if that fails too, the
    original element errors are raised.  Length bounds are checked before the
    elements and are not retried.
    """

    def parse(value: Any, path: str | None, retry: bool = True) -> list[T]:
        if not isinstance(value, (list, tuple)):
            try:
                return parse([value], path, retry=False)
            except ParsingError:
                raise ShapeError(f"[{fmt_path(path)}] should be an array")

        if min is not None and len(value) < min:
            raise BoundError(f"[length({fmt_path(path)})] is less than the allowed minimum ({min})")
        if max is not None and len(value) > max:
            raise BoundError(f"[length({fmt_path(path)})] is larger than the allowed maximum ({max})")

        result: list[T] = []
        errors: list[ParsingError] = []
        for i, item in enumerate(value):
            try:
                result.append(parser(item, index_path(path, i)))
            except ParsingError as e:
                errors.append(e)

        if errors:
            if retry:
                try:
                    return parse([value], path, retry=False)
                except ParsingError:
                    logger.debug("Retrying %s as a single element failed too", fmt_path(path))
            raise ParsingError.aggregate(errors)

        return result

    return Parser(lambda value, path: parse(value, path), name=f"array({parser.name})")


class FileParser(Parser[File]):
    """
    Parses uploaded files.

    Files pass through unchanged; other values accepted by
    :func:`~formparse.parsers.buffer` are stored in a new in-memory file.  The stream
    path accumulates the stream into a file chunk by chunk, moving it to disk
    once it grows past ``max_for_ram`` bytes.

    Args:
        max: The largest accepted file size, in bytes.
        max_for_ram: Streamed files larger than this are spooled to disk.
        temp_dir: Where spooled files are created.
    """

    def __init__(self, max: int | None = None, max_for_ram: int | None = None, temp_dir: str | None = None) -> None:
        super().__init__(self._parse, name="file")
        self.max = max
        self.config = make_config(max_for_ram=max_for_ram, temp_dir=temp_dir)

    def _check_size(self, size: int, path: str | None) -> None:
        if self.max is not None and size > self.max:
            raise BoundError(f"[{fmt_path(path)}] is too large.")

    def _parse(self, value: Any, path: str | None) -> File:
        if isinstance(value, File):
            self._check_size(value.size, path)
            return value

        try:
            data = buffer()(value, path)
        except ParsingError:
            raise CoercionError(f"[{fmt_path(path)}] cannot be converted to a file")
        self._check_size(len(data), path)

        # In-memory values are never spooled.
        f = RAMFile()
        f.append(data)
        return f

    async def stream(self, source: Source, path: str | None = None, headers: Mapping[str, Any] | None = None) -> File:
        stream = ByteStream.wrap(source, chunk_size=self.config["CHUNK_SIZE"])
        headers = headers if headers is not None else stream.headers

        # Like an application/octet-stream upload, the name may come in a header.
        file_name = get_header(headers, "X-File-Name")
        content_type = get_header(headers, "Content-Type")
        spooler = Spooler(file_name, None, content_type, config=self.config)

        try:
            async for chunk in stream:
                spooler.write(chunk)
        except BaseException:
            spooler.file.cleanup()
            raise
        file = spooler.finalize()

        try:
            return self(file, path)
        except ParsingError:
            file.cleanup()
            raise


def file(max: int | None = None, max_for_ram: int | None = None, temp_dir: str | None = None) -> FileParser:
    return FileParser(max=max, max_for_ram=max_for_ram, temp_dir=temp_dir)


class ObjectParser(Parser[dict]):
    """
    Parses a mapping against a shape: a mapping from key to parser.

    Every key of the shape is parsed, in the shape's order, with the parser
    for that key.  A key absent from the input is parsed as
    :data:`~formparse.base.MISSING`; if that fails, the key is reported as
    required.  All failures are raised together once every key was visited.

    Input that is not a mapping is converted to a string and decoded as JSON.

    The stream path reads a form body (see :mod:`formparse.formdata`) and
    validates its fields.  Bodies that are not forms are buffered and parsed as
    JSON instead.

    Args:
        shape: The parser for each key.
        ignore_unknown: If false, keys not in the shape are errors.
        max_for_ram: Uploaded files larger than this are spooled to disk.
        temp_dir: Where spooled files are created.
        config: Further ingestion configuration, see
            :data:`formparse.formdata.DEFAULT_CONFIG`.
    """

    def __init__(
        self,
        shape: Mapping[str, Parser[Any]],
        ignore_unknown: bool = True,
        max_for_ram: int | None = None,
        temp_dir: str | None = None,
        config: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(self._parse, name="object")
        self.shape: tuple[tuple[str, Parser[Any]], ...] = tuple(shape.items())
        self._keys = frozenset(shape)
        self.ignore_unknown = ignore_unknown
        self.config = make_config(config, max_for_ram=max_for_ram, temp_dir=temp_dir)

    def _parse(self, value: Any, path: str | None) -> dict[str, Any]:
        if not isinstance(value, Mapping):
            return self._parse_json(value, path)

        result: dict[str, Any] = {}
        errors: list[ParsingError] = []

        for key, parser in self.shape:
            entry_path = key_path(path, key)
            if key in value:
                try:
                    parsed = parser(value[key], entry_path)
                except ParsingError as e:
                    errors.append(e)
                    continue
            else:
                try:
                    parsed = parser(MISSING, entry_path)
                except ParsingError:
                    errors.append(ShapeError(f"[{entry_path}] is required"))
                    continue
            if parsed is not MISSING:
                result[key] = parsed

        if not self.ignore_unknown:
            for key in value:
                if key not in self._keys:
                    errors.append(ShapeError(f"[{key_path(path, key)}] is not allowed"))

        if errors:
            raise ParsingError.aggregate(errors)
        return result

    def _parse_json(self, value: Any, path: str | None) -> dict[str, Any]:
        try:
            decoded = json.loads(string()(value, path))
        except (ParsingError, ValueError, RecursionError):
            decoded = None
        if not isinstance(decoded, dict):
            raise ShapeError(f"[{fmt_path(path)}] cannot be converted to an object")
        return self._parse(decoded, path)

    async def stream(
        self, source: Source, path: str | None = None, headers: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        stream = ByteStream.wrap(source, chunk_size=self.config["CHUNK_SIZE"])
        try:
            return await ingest(stream, self, path=path, headers=headers, config=self.config)
        except FramingError as e:
            logger.info("Not a form body (%s), parsing the buffered stream instead", e)
            return self(await stream_to_bytes(stream), path)


def obj(
    shape: Mapping[str, Parser[Any]],
    ignore_unknown: bool = True,
    max_for_ram: int | None = None,
    temp_dir: str | None = None,
    max_file_memory: int | None = None,
    config: Mapping[str, Any] | None = None,
) -> ObjectParser:
    """Builds an :class:`ObjectParser`.  ``max_file_memory`` is an alias of
    ``max_for_ram``.
    """
    if max_for_ram is None:
        max_for_ram = max_file_memory
    return ObjectParser(
        shape, ignore_unknown=ignore_unknown, max_for_ram=max_for_ram, temp_dir=temp_dir, config=config
    )
