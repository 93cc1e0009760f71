__version__ = "0.1.0"

from .base import MISSING, ByteStream, Parser, create_parser, stream_to_bytes
from .combinators import (
    FileParser,
    ObjectParser,
    alternatives,
    any_,
    array,
    default_value,
    file,
    nullable,
    obj,
    one_of,
    optional,
    transform,
)
from .exceptions import (
    BoundaryError,
    BoundError,
    CoercionError,
    FileError,
    FormError,
    FramingError,
    IngestionError,
    ParsingError,
    ShapeError,
)
from .files import File, RAMFile, Spooler, TempFile
from .formdata import FieldMap, ingest, read_form, sniff_boundary
from .parsers import boolean, buffer, email, floating, integer, string, uuid

__all__ = (
    "MISSING",
    "BoundError",
    "BoundaryError",
    "ByteStream",
    "CoercionError",
    "FieldMap",
    "File",
    "FileError",
    "FileParser",
    "FormError",
    "FramingError",
    "IngestionError",
    "ObjectParser",
    "Parser",
    "ParsingError",
    "RAMFile",
    "ShapeError",
    "Spooler",
    "TempFile",
    "alternatives",
    "any_",
    "array",
    "boolean",
    "buffer",
    "create_parser",
    "default_value",
    "email",
    "file",
    "floating",
    "ingest",
    "integer",
    "nullable",
    "obj",
    "one_of",
    "optional",
    "read_form",
    "sniff_boundary",
    "stream_to_bytes",
    "string",
    "transform",
    "uuid",
)
