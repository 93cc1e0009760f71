"""
Leaf parsers: buffers, strings, numbers, booleans and a couple of format
validators built on top of them.
"""

from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING

from .base import Parser, fmt_path
from .exceptions import BoundError, CoercionError, ParsingError
from .files import File

if TYPE_CHECKING:  # pragma: no cover
    from typing import Any

# These are the string values accepted by boolean().
TRUE_STRINGS = frozenset({"true", "1", "yes"})
FALSE_STRINGS = frozenset({"false", "0", "no"})

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _is_number(value: Any) -> bool:
    # bool is an int subclass, but True is not the number 1 here.
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_length(length: int, path: str | None, min: int | None, max: int | None) -> None:
    if min is not None and length < min:
        raise BoundError(f"[length({fmt_path(path)})] is less than the allowed minimum ({min})")
    if max is not None and length > max:
        raise BoundError(f"[length({fmt_path(path)})] is larger than the allowed maximum ({max})")


def _check_range(value: float, path: str | None, min: float | None, max: float | None) -> None:
    if min is not None and value < min:
        raise BoundError(f"[{fmt_path(path)}] is less than the allowed minimum ({min})")
    if max is not None and value > max:
        raise BoundError(f"[{fmt_path(path)}] is larger than the allowed maximum ({max})")


def _to_buffer(value: Any, path: str | None) -> bytes:
    if isinstance(value, bytes):
        return value

    if isinstance(value, str):
        return value.encode("utf-8")

    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)

    if isinstance(value, File):
        return value.read()

    # A list of byte values.
    if isinstance(value, (list, tuple)) and all(
        isinstance(v, int) and not isinstance(v, bool) and 0 <= v <= 255 for v in value
    ):
        return bytes(value)

    # A JSON-serialized buffer: {"type": "Buffer", "data": [...]}
    if isinstance(value, dict) and value.get("type") == "Buffer" and isinstance(value.get("data"), list):
        return _to_buffer(value["data"], path)

    raise CoercionError(f"[{fmt_path(path)}] cannot be converted to a buffer")


def buffer() -> Parser[bytes]:
    """Accepts bytes-like values, strings (encoded as UTF-8), lists of byte
    values and files (their full contents).
    """
    return Parser(_to_buffer, name="buffer")


def string(min: int | None = None, max: int | None = None, pattern: str | re.Pattern[str] | None = None) -> Parser[str]:
    """Accepts strings, numbers and anything :func:`buffer` accepts (decoded
    as UTF-8).  ``min`` and ``max`` bound the length; ``pattern`` must match
    somewhere in the string.
    """
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern

    def parse(value: Any, path: str | None) -> str:
        if isinstance(value, str):
            result = value
        elif _is_number(value):
            result = str(value)
        else:
            try:
                result = _to_buffer(value, path).decode("utf-8")
            except (ParsingError, UnicodeDecodeError):
                raise CoercionError(f"[{fmt_path(path)}] cannot be converted to a string")

        _check_length(len(result), path, min, max)
        if regex is not None and regex.search(result) is None:
            raise CoercionError(f"[{fmt_path(path)}] doesn't match the pattern")
        return result

    return Parser(parse, name="string")


def integer(min: int | None = None, max: int | None = None) -> Parser[int]:
    def parse(value: Any, path: str | None) -> int:
        if isinstance(value, int) and not isinstance(value, bool):
            result = value
        elif isinstance(value, float):
            if not value.is_integer():
                raise CoercionError(f"[{fmt_path(path)}] should be an integer")
            result = int(value)
        else:
            try:
                result = int(string()(value, path).strip())
            except (ParsingError, ValueError):
                raise CoercionError(f"[{fmt_path(path)}] cannot be parsed as integer")

        _check_range(result, path, min, max)
        return result

    return Parser(parse, name="integer")


def floating(min: float | None = None, max: float | None = None) -> Parser[float]:
    def parse(value: Any, path: str | None) -> float:
        if _is_number(value):
            result = float(value)
        else:
            try:
                result = float(string()(value, path).strip())
            except (ParsingError, ValueError):
                raise CoercionError(f"[{fmt_path(path)}] cannot be parsed as float")

        if not math.isfinite(result):
            raise CoercionError(f"[{fmt_path(path)}] should be a finite float")

        _check_range(result, path, min, max)
        return result

    return Parser(parse, name="floating")


def boolean() -> Parser[bool]:
    def parse(value: Any, path: str | None) -> bool:
        if isinstance(value, bool):
            return value
        if _is_number(value):
            if value == 1:
                return True
            if value == 0:
                return False
        else:
            try:
                lowered = string()(value, path).strip().lower()
            except ParsingError:
                lowered = None
            if lowered in TRUE_STRINGS:
                return True
            if lowered in FALSE_STRINGS:
                return False

        raise CoercionError(f"[{fmt_path(path)}] cannot be converted to boolean")

    return Parser(parse, name="boolean")


def uuid() -> Parser[str]:
    def parse(value: Any, path: str | None) -> str:
        result = string()(value, path)
        if UUID_RE.match(result) is None:
            raise CoercionError(f"[{fmt_path(path)}] is not a valid UUID")
        return result

    return Parser(parse, name="uuid")


def email() -> Parser[str]:
    def parse(value: Any, path: str | None) -> str:
        result = string()(value, path)
        if EMAIL_RE.match(result) is None:
            raise CoercionError(f"[{fmt_path(path)}] is not a valid email")
        return result

    return Parser(parse, name="email")
