from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from io import BufferedReader, BufferedWriter, BytesIO
from typing import TYPE_CHECKING

from .exceptions import FileError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterator
    from typing import Any, BinaryIO, TypedDict

    class FileConfig(TypedDict, total=False):
        UPLOAD_DIR: str | bytes | os.PathLike[str] | None
        UPLOAD_KEEP_EXTENSIONS: bool
        MAX_MEMORY_FILE_SIZE: int


# Get logger for this module.
logger = logging.getLogger(__name__)

DEFAULT_MAX_MEMORY_FILE_SIZE = 1 * 1024 * 1024

# Extensions we are willing to carry over to a spooled file's name.
SAFE_EXTENSION_RE = re.compile(r"^\.[A-Za-z0-9_-]{1,16}$")


class File:
    """
    Base class for accumulated file contents.  A file is either held in memory
    (:class:`RAMFile`) or spooled to disk (:class:`TempFile`); both offer the
    same operations and both report in :attr:`size` the number of bytes
    appended so far.

    Files handed out by formparse are owned by the caller, who is responsible
    for calling :meth:`cleanup` on disk-spooled files.

    Args:
        file_name: The file name given by the client, if any.
        field_name: The form field this file was uploaded as.
        content_type: The content type given by the client, if any.
    """

    def __init__(self, file_name: str | None = None, field_name: str | None = None, content_type: str | None = None):
        self.file_name = file_name
        self.field_name = field_name
        self.content_type = content_type
        self._size = 0

    @property
    def size(self) -> int:
        """The number of bytes appended to this file."""
        return self._size

    @property
    def in_memory(self) -> bool:
        raise NotImplementedError()

    def append(self, data: bytes) -> int:
        raise NotImplementedError()

    def write(self, data: bytes) -> int:
        return self.append(data)

    def read(self) -> bytes:
        """Returns the full contents of the file."""
        raise NotImplementedError()

    def save(self, path: str | os.PathLike[str]) -> None:
        """Persists the contents of the file to ``path``."""
        raise NotImplementedError()

    def open(self) -> BinaryIO:
        """Returns a new readable binary file object over the contents."""
        raise NotImplementedError()

    async def chunks(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Yields the contents of the file in chunks of ``chunk_size`` bytes.

        This makes a file usable as the source of another parser's stream path.
        """
        with self.open() as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    return
                yield chunk

    def finalize(self) -> None:
        pass

    def cleanup(self) -> None:
        pass

    def __eq__(self, other: object) -> bool:
        if isinstance(other, File):
            return self is other or (
                self.file_name == other.file_name
                and self.field_name == other.field_name
                and self.size == other.size
                and self.read() == other.read()
            )
        return NotImplemented

    __hash__ = object.__hash__

    def __repr__(self) -> str:
        return "{}(file_name={!r}, field_name={!r}, content_type={!r}, size={!r})".format(
            self.__class__.__name__, self.file_name, self.field_name, self.content_type, self.size
        )


class RAMFile(File):
    """A file whose contents live in an in-memory buffer."""

    def __init__(self, file_name: str | None = None, field_name: str | None = None, content_type: str | None = None):
        super().__init__(file_name, field_name, content_type)
        self._fileobj = BytesIO()

    @property
    def in_memory(self) -> bool:
        return True

    def append(self, data: bytes) -> int:
        written = self._fileobj.write(data)
        self._size += written
        return written

    def read(self) -> bytes:
        return self._fileobj.getvalue()

    def save(self, path: str | os.PathLike[str]) -> None:
        with open(path, "wb") as f:
            f.write(self._fileobj.getvalue())

    def open(self) -> BinaryIO:
        return BytesIO(self._fileobj.getvalue())


class TempFile(File):
    """
    A file whose contents live in a file on disk.  Appends are written through
    to :attr:`path`.  The backing file is not removed automatically; call
    :meth:`cleanup` once it is no longer needed.
    """

    def __init__(
        self,
        path: str,
        size: int = 0,
        file_name: str | None = None,
        field_name: str | None = None,
        content_type: str | None = None,
    ):
        super().__init__(file_name, field_name, content_type)
        self.path = path
        self._size = size
        self._fileobj: BufferedWriter | None = None

    @property
    def in_memory(self) -> bool:
        return False

    def append(self, data: bytes) -> int:
        try:
            if self._fileobj is None:
                self._fileobj = open(self.path, "ab")
            written = self._fileobj.write(data)
        except OSError:
            logger.exception("Error writing to file on disk")
            raise FileError("Error writing to file on disk: %r" % self.path)
        self._size += written
        return written

    def _flush(self) -> None:
        if self._fileobj is not None:
            self._fileobj.flush()

    def read(self) -> bytes:
        self._flush()
        with open(self.path, "rb") as f:
            return f.read()

    def save(self, path: str | os.PathLike[str]) -> None:
        self._flush()
        shutil.copyfile(self.path, path)

    def open(self) -> BufferedReader:
        self._flush()
        return open(self.path, "rb")

    def finalize(self) -> None:
        if self._fileobj is not None:
            self._fileobj.close()
            self._fileobj = None

    def cleanup(self) -> None:
        """Closes and removes the backing file."""
        self.finalize()
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            logger.debug("Spooled file already removed: %r", self.path)

    def __repr__(self) -> str:
        return f"{super().__repr__()[:-1]}, path={self.path!r})"


class Spooler:
    """
    Accumulates a stream of byte chunks into a :class:`File`, starting in
    memory and moving to disk once the data grows past
    ``MAX_MEMORY_FILE_SIZE``.

    The threshold is checked after every write.  A file holding exactly
    ``MAX_MEMORY_FILE_SIZE`` bytes stays in memory; the first write that takes
    it past the threshold flushes it to a newly created file in
    ``UPLOAD_DIR`` (or the platform temporary directory) and all further
    writes go to disk.

    The spooler follows the ``write()``/``finalize()`` protocol, so it can be
    used directly as the target of a transfer-encoding decoder.

    Args:
        file_name: The file name given by the client, if any.
        field_name: The form field this file was uploaded as.
        content_type: The content type given by the client, if any.
        config: The spooling configuration.
    """

    def __init__(
        self,
        file_name: str | None = None,
        field_name: str | None = None,
        content_type: str | None = None,
        config: FileConfig = {},
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self._config = config
        self._file: File = RAMFile(file_name, field_name, content_type)

    @property
    def file(self) -> File:
        return self._file

    @property
    def max_memory_file_size(self) -> int:
        return self._config.get("MAX_MEMORY_FILE_SIZE", DEFAULT_MAX_MEMORY_FILE_SIZE)

    def write(self, data: bytes) -> int:
        written = self._file.append(data)

        if self._file.in_memory and self._file.size > self.max_memory_file_size:
            self.logger.info("Flushing to disk")
            self.flush_to_disk()

        return written

    def flush_to_disk(self) -> None:
        """Moves the accumulated data to a file on disk.

        Does nothing (besides logging a warning) if the data is already on disk.
        """
        ram = self._file
        if not ram.in_memory:
            self.logger.warning("Trying to flush to disk when we're not in memory")
            return

        path = self._create_disk_file(ram.read())
        self._file = TempFile(
            path, size=ram.size, file_name=ram.file_name, field_name=ram.field_name, content_type=ram.content_type
        )

    def _create_disk_file(self, data: bytes) -> str:
        file_dir = self._config.get("UPLOAD_DIR")
        keep_extensions = self._config.get("UPLOAD_KEEP_EXTENSIONS", False)

        dir = os.fsdecode(file_dir) if file_dir is not None else None

        suffix = ""
        if keep_extensions and self._file.file_name:
            ext = os.path.splitext(os.path.basename(self._file.file_name))[1]
            if SAFE_EXTENSION_RE.match(ext):
                suffix = ext

        self.logger.info("Creating a temporary file with options: %r", {"suffix": suffix, "dir": dir})
        try:
            fd, path = tempfile.mkstemp(prefix="formparse-", suffix=suffix, dir=dir)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except OSError:
            self.logger.exception("Error creating named temporary file")
            raise FileError("Error creating named temporary file in %r" % (dir or tempfile.gettempdir()))

        return path

    def finalize(self) -> File:
        """Marks the end of the data and returns the completed file."""
        self._file.finalize()
        return self._file

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(file={self._file!r})"
