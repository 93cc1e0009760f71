from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import unquote_plus

from python_multipart.decoders import Base64Decoder, QuotedPrintableDecoder
from python_multipart.exceptions import DecodeError, MultipartParseError, QuerystringParseError
from python_multipart.multipart import Field, MultipartParser, QuerystringParser, parse_options_header

from .exceptions import FileError, FramingError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import Any, Literal, Protocol, TypedDict

    class DecoderConfig(TypedDict, total=False):
        MAX_BODY_SIZE: float
        UPLOAD_ERROR_ON_BAD_CTE: bool

    class PartWriter(Protocol):
        def write(self, data: bytes) -> int: ...
        def finalize(self) -> Any: ...

    EventName = Literal["field", "file", "file_end", "part_error", "end"]


MULTIPART_CONTENT_TYPE = "multipart/form-data"
URLENCODED_CONTENT_TYPES = ("application/x-www-form-urlencoded", "application/x-url-encoded")

# Errors that only spoil the part being written, not the whole body.
PART_ERRORS = (DecodeError, FileError, OSError)


def safe_decode(src: bytes, charset: str = "utf-8") -> str:
    try:
        return src.decode(charset)
    except (UnicodeDecodeError, LookupError):
        return src.decode("latin-1")


class FormDecoder:
    """
    Turns the low-level callbacks of a ``python_multipart`` parser into one
    event per form field and per uploaded file.

    Events are delivered through callbacks registered with
    :meth:`set_callback`:

    ``on_field(name, value)``
        A complete non-file field; ``value`` is a ``str``.

    ``on_file(name, file_name, content_type)``
        A file part begins.  The callback returns the writer that receives the
        file's decoded bytes (any object with ``write()`` and ``finalize()``),
        or ``None`` to discard the part.

    ``on_file_end(name, writer)``
        All of the file's bytes have been written and ``writer.finalize()``
        has been called.

    ``on_part_error(name, exc)``
        Writing a part failed (a transfer-encoding or disk error).  The rest
        of that part is discarded and decoding carries on.

    ``on_end()``
        The end of the form body was reached.

    Malformed framing raises :class:`~formparse.exceptions.FramingError` out
    of :meth:`write` or :meth:`finalize`.

    Args:
        content_type: ``multipart/form-data`` or one of the urlencoded types.
        boundary: The multipart boundary, required for multipart bodies.
        charset: Used to decode field names and values.
        config: Decoder configuration.
    """

    DEFAULT_CONFIG: DecoderConfig = {
        "MAX_BODY_SIZE": float("inf"),
        "UPLOAD_ERROR_ON_BAD_CTE": False,
    }

    def __init__(
        self,
        content_type: str,
        boundary: bytes | str | None = None,
        charset: str = "utf-8",
        config: dict[Any, Any] = {},
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.content_type = content_type
        self.boundary = boundary
        self.charset = charset
        self.bytes_received = 0
        self.callbacks: dict[str, Callable[..., Any]] = {}
        self._finished = False

        self.config: DecoderConfig = self.DEFAULT_CONFIG.copy()
        self.config.update({k: v for k, v in config.items() if k in self.DEFAULT_CONFIG})  # type: ignore[typeddict-item]

        if content_type == MULTIPART_CONTENT_TYPE:
            if not boundary:
                self.logger.error("No boundary given")
                raise FramingError("No boundary given")
            self.parser: MultipartParser | QuerystringParser = self._make_multipart_parser(boundary)
        elif content_type in URLENCODED_CONTENT_TYPES:
            self.parser = self._make_querystring_parser()
        else:
            self.logger.warning("Unknown Content-Type: %r", content_type)
            raise FramingError(f"Unknown Content-Type: {content_type}")

    def callback(self, name: EventName, *args: Any) -> Any:
        func = self.callbacks.get("on_" + name)
        if func is None:
            return None
        self.logger.debug("Calling on_%s", name)
        return func(*args)

    def set_callback(self, name: EventName, new_func: Callable[..., Any] | None) -> None:
        """Update the function for a callback.  Removes from the callbacks
        dict if ``new_func`` is ``None``.
        """
        if new_func is None:
            self.callbacks.pop("on_" + name, None)
        else:
            self.callbacks["on_" + name] = new_func

    @property
    def finished(self) -> bool:
        """Whether the end of the form body has been reached."""
        return self._finished

    def _finish(self) -> None:
        self._finished = True
        self.callback("end")

    def _make_querystring_parser(self) -> QuerystringParser:
        name_buffer: list[bytes] = []
        field: Field | None = None

        def on_field_name(data: bytes, start: int, end: int) -> None:
            name_buffer.append(data[start:end])

        def on_field_data(data: bytes, start: int, end: int) -> None:
            nonlocal field
            if field is None:
                field = Field(b"".join(name_buffer))
                del name_buffer[:]
            field.write(data[start:end])

        def on_field_end() -> None:
            nonlocal field
            if field is None:
                field = Field(b"".join(name_buffer))
                del name_buffer[:]
            field.finalize()

            name = unquote_plus(safe_decode(field.field_name or b"", self.charset), encoding=self.charset)
            value = unquote_plus(safe_decode(field.value or b"", self.charset), encoding=self.charset)
            self.callback("field", name, value)
            field = None

        return QuerystringParser(
            callbacks={
                "on_field_name": on_field_name,
                "on_field_data": on_field_data,
                "on_field_end": on_field_end,
                "on_end": self._finish,
            },
            max_size=self.config["MAX_BODY_SIZE"],
        )

    def _make_multipart_parser(self, boundary: bytes | str) -> MultipartParser:
        header_name: list[bytes] = []
        header_value: list[bytes] = []
        headers: dict[bytes, bytes] = {}

        part_name = ""
        part: Any = None
        writer: Any = None
        is_file = False

        def fail_part(exc: Exception) -> None:
            nonlocal writer
            self.logger.warning("Discarding the rest of part %r: %s", part_name, exc)
            writer = None
            self.callback("part_error", part_name, exc)

        def on_part_begin() -> None:
            nonlocal headers, writer, part
            headers = {}
            writer = part = None

        def on_part_data(data: bytes, start: int, end: int) -> None:
            if writer is None:
                return
            try:
                writer.write(data[start:end])
            except PART_ERRORS as exc:
                fail_part(exc)

        def on_part_end() -> None:
            if writer is None:
                return
            try:
                writer.finalize()
            except PART_ERRORS as exc:
                fail_part(exc)
                return

            if is_file:
                self.callback("file_end", part_name, part)
            else:
                charset = self._part_charset(headers)
                self.callback("field", part_name, safe_decode(part.value or b"", charset))

        def on_header_field(data: bytes, start: int, end: int) -> None:
            header_name.append(data[start:end])

        def on_header_value(data: bytes, start: int, end: int) -> None:
            header_value.append(data[start:end])

        def on_header_end() -> None:
            headers[b"".join(header_name).lower()] = b"".join(header_value)
            del header_name[:]
            del header_value[:]

        def on_headers_finished() -> None:
            nonlocal part_name, part, writer, is_file

            disp, options = parse_options_header(headers.get(b"content-disposition"))
            field_name = options.get(b"name")
            file_name = options.get(b"filename")

            if field_name is None:
                self.logger.warning("Skipping a part without a name")
                return

            part_name = safe_decode(field_name, self.charset)
            is_file = file_name is not None
            if is_file:
                content_type = headers.get(b"content-type")
                part = self.callback(
                    "file",
                    part_name,
                    safe_decode(file_name, self.charset),
                    content_type.decode("latin-1") if content_type is not None else None,
                )
                if part is None:
                    self.logger.debug("Discarding file part %r", part_name)
                    return
            else:
                part = Field(field_name)

            transfer_encoding = headers.get(b"content-transfer-encoding", b"7bit").strip().lower()

            if transfer_encoding in (b"binary", b"8bit", b"7bit"):
                writer = part
            elif transfer_encoding == b"base64":
                writer = Base64Decoder(part)
            elif transfer_encoding == b"quoted-printable":
                writer = QuotedPrintableDecoder(part)
            else:
                self.logger.warning("Unknown Content-Transfer-Encoding: %r", transfer_encoding)
                if self.config["UPLOAD_ERROR_ON_BAD_CTE"]:
                    raise FramingError(f'Unknown Content-Transfer-Encoding "{transfer_encoding!r}"')
                writer = part

        return MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": on_part_begin,
                "on_part_data": on_part_data,
                "on_part_end": on_part_end,
                "on_header_field": on_header_field,
                "on_header_value": on_header_value,
                "on_header_end": on_header_end,
                "on_headers_finished": on_headers_finished,
                "on_end": self._finish,
            },
            max_size=self.config["MAX_BODY_SIZE"],
        )

    def _part_charset(self, headers: dict[bytes, bytes]) -> str:
        ctype, params = parse_options_header(headers.get(b"content-type"))
        charset = params.get(b"charset")
        return charset.decode("latin-1") if charset else self.charset

    def write(self, data: bytes) -> int:
        """Feeds ``data`` to the underlying parser.

        Raises:
            FramingError: The body is not a well-formed form.
        """
        self.bytes_received += len(data)
        try:
            return self.parser.write(data)
        except (MultipartParseError, QuerystringParseError) as exc:
            error = FramingError(str(exc))
            error.offset = exc.offset
            raise error from exc

    def finalize(self) -> None:
        """Signals the end of the body.

        Raises:
            FramingError: The body ended before its closing boundary.
        """
        self.parser.finalize()
        if isinstance(self.parser, QuerystringParser):
            # The querystring parser reports its end from finalize().
            return
        if not self._finished:
            self.logger.warning("Form body ended before the closing boundary")
            raise FramingError("Unexpected end of multipart body")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(content_type={self.content_type!r}, parser={self.parser!r})"
