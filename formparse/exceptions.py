from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable


class FormError(Exception):
    """Base error class for everything raised by formparse."""


class ParsingError(FormError, ValueError):
    """This exception (or a subclass) is raised when a value fails validation.

    When several independent sub-parses fail, their errors are collected and
    raised as a single :class:`ParsingError` whose message joins every
    individual message with newlines.  The original errors are kept in
    :attr:`errors`.
    """

    #: True for errors built by :meth:`aggregate`.
    aggregated = False

    def __init__(self, message: str, errors: Iterable[ParsingError] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors: tuple[ParsingError, ...] = tuple(errors) if errors is not None else (self,)

    @classmethod
    def aggregate(cls, errors: Iterable[ParsingError]) -> ParsingError:
        """Join a list of errors into one error.

        Nested aggregates are flattened.  Any other error is kept whole, with
        its own message, even when it carries sub-errors of its own.
        """
        entries: list[ParsingError] = []
        for error in errors:
            if error.aggregated:
                entries.extend(error.errors)
            else:
                entries.append(error)
        result = cls("\n".join(error.message for error in entries), entries)
        result.aggregated = True
        return result

    def __str__(self) -> str:
        return self.message


class CoercionError(ParsingError):
    """A leaf value cannot be converted to the target type."""


class BoundError(ParsingError):
    """A value or a length is outside of the configured bounds."""


class ShapeError(ParsingError):
    """A required key is missing, an unknown key is not allowed, or the value
    has the wrong structural kind.
    """


class FramingError(FormError):
    """Raised when a form body cannot be framed: the boundary cannot be found,
    the multipart structure is malformed or the body is not a form at all.

    This error is always terminal for an ingestion session.
    """

    #: This is the offset in the input data chunk (*NOT* the overall stream) in
    #: which the framing error occurred.  It will be -1 if not specified.
    offset = -1


class BoundaryError(FramingError):
    """The multipart boundary could not be sniffed from the body."""


class FileError(FormError, OSError):
    """Exception class for problems with spooling file data to disk."""


class IngestionError(FormError):
    """Several parts of a single form body failed while being read.

    The individual exceptions are kept in :attr:`errors`, in arrival order.
    """

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(f"{type(e).__name__}: {e}" for e in self.errors))
