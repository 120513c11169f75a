"""Memory streams backed by an open file descriptor."""

from __future__ import annotations

import enum
import os

from .memory_stream import MemoryStream, StreamError, StreamFlag

__all__ = ["FileStreamFlag", "FileStream"]


class FileStreamFlag(enum.IntFlag):
    NONE = 0
    WRITABLE = 1 << 0
    AUTO_EXPAND = 1 << 1


def _stream_flags(flags: FileStreamFlag) -> StreamFlag:
    result = StreamFlag.NONE
    if flags & FileStreamFlag.WRITABLE:
        result |= StreamFlag.MUTABLE
    if flags & FileStreamFlag.AUTO_EXPAND:
        result |= StreamFlag.AUTO_EXPAND
    return result


class FileStream(MemoryStream):
    """A stream that views a window of a file through its descriptor.

    A stream created directly does not own the descriptor; streams from
    :meth:`from_file_descriptor` and :meth:`from_path` own theirs and close
    it in :meth:`close`. Writing needs both write access and ownership.
    """

    def __init__(
        self,
        fd: int,
        buffer_start: int = 0,
        buffer_size: int | None = None,
        flags: FileStreamFlag = FileStreamFlag.NONE,
    ) -> None:
        super().__init__(_stream_flags(FileStreamFlag(flags)))
        self.fd = fd
        self.file_size = os.fstat(fd).st_size
        self.buffer_start = buffer_start
        self.buffer_size = self.file_size if buffer_size is None else buffer_size

    @classmethod
    def from_file_descriptor(
        cls,
        fd: int,
        buffer_start: int = 0,
        buffer_size: int | None = None,
        flags: FileStreamFlag = FileStreamFlag.NONE,
    ) -> "FileStream":
        """Create a stream over a duplicate of *fd* that it owns."""
        new_fd = os.dup(fd)
        try:
            stream = cls(new_fd, buffer_start, buffer_size, flags)
        except OSError:
            os.close(new_fd)
            raise
        stream.flags |= StreamFlag.OWNS_DATA
        return stream

    @classmethod
    def from_path(
        cls,
        path: str | os.PathLike,
        buffer_start: int = 0,
        buffer_size: int | None = None,
        flags: FileStreamFlag = FileStreamFlag.NONE,
    ) -> "FileStream":
        """Open *path* (created if writable) and return a stream owning it."""
        if flags & FileStreamFlag.WRITABLE:
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        else:
            fd = os.open(path, os.O_RDONLY)
        try:
            stream = cls(fd, buffer_start, buffer_size, flags)
        except OSError:
            os.close(fd)
            raise
        stream.flags |= StreamFlag.OWNS_DATA
        return stream

    def close(self) -> None:
        """Close the descriptor if this stream owns it."""
        if self.fd > 0 and self.flags & StreamFlag.OWNS_DATA:
            os.close(self.fd)
        self.fd = -1

    def __enter__(self) -> "FileStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_trimmed(self) -> bool:
        return self.buffer_start != 0 or self.buffer_size != self.file_size

    @property
    def size(self) -> int:
        return self.buffer_size

    def _read(self, offset: int, size: int) -> bytes:
        return os.pread(self.fd, size, self.buffer_start + offset)

    def _write(self, offset: int, data: bytes) -> int:
        if not self.flags & StreamFlag.MUTABLE:
            raise StreamError("cannot write to a stream that is not writable")
        if not self.flags & StreamFlag.OWNS_DATA:
            raise StreamError("cannot write to a file the stream does not own")
        position = self.buffer_start + offset
        end = position + len(data)
        grow = 0
        if end > self.file_size:
            if not self.flags & StreamFlag.AUTO_EXPAND or self.is_trimmed:
                raise StreamError("write failed: file is not auto expandable")
            grow = end - self.file_size
        if position > self.file_size:
            raise StreamError("write failed: offset lies beyond the end of the file")
        self.file_size += grow
        self.buffer_size += grow
        return os.pwrite(self.fd, data, position)

    def trim(self, trim_at_start: int, trim_at_end: int) -> None:
        if trim_at_start < 0 or trim_at_end < 0 or self.buffer_size - (trim_at_start + trim_at_end) < 0:
            raise StreamError("trim out of bounds")
        if self.flags & StreamFlag.MUTABLE and not self.is_trimmed:
            new_size = self.buffer_size - trim_at_start - trim_at_end
            self.copy_data(trim_at_start, self, 0, new_size)
            os.ftruncate(self.fd, new_size)
            self.file_size = new_size
            self.buffer_size = new_size
        else:
            self.buffer_start += trim_at_start
            self.buffer_size -= trim_at_start + trim_at_end

    def expand(self, expand_at_start: int, expand_at_end: int) -> None:
        if expand_at_start != 0:
            raise StreamError("expanding at the start of a file is not supported")
        if expand_at_end < 0:
            raise StreamError("cannot expand by a negative amount")
        if self.is_trimmed:
            raise StreamError("cannot expand a trimmed file stream")
        if expand_at_end == 0:
            return
        if not self.flags & StreamFlag.MUTABLE:
            raise StreamError("cannot expand a stream that is not writable")
        os.pwrite(self.fd, bytes(expand_at_end), self.file_size)
        self.file_size += expand_at_end
        self.buffer_size += expand_at_end

    def soft_clone(self) -> "FileStream":
        return FileStream(self.fd, self.buffer_start, self.buffer_size, FileStreamFlag.NONE)

    def hard_clone(self) -> "FileStream":
        flags = FileStreamFlag.NONE
        if self.flags & StreamFlag.MUTABLE:
            flags |= FileStreamFlag.WRITABLE
        if self.flags & StreamFlag.AUTO_EXPAND:
            flags |= FileStreamFlag.AUTO_EXPAND
        return FileStream.from_file_descriptor(self.fd, self.buffer_start, self.buffer_size, flags)