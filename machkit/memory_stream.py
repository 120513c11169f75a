"""Random-access byte streams with trimming, expansion and cloning."""

from __future__ import annotations

import abc
import enum
from typing import Iterator

__all__ = ["StreamError", "StreamFlag", "MemoryStream", "BufferedStream"]

_COPY_CHUNK_SIZE = 0x4000


class StreamError(Exception):
    """Raised when a stream operation cannot be carried out."""


class StreamFlag(enum.IntFlag):
    NONE = 0
    OWNS_DATA = 1 << 0
    MUTABLE = 1 << 1
    AUTO_EXPAND = 1 << 2


def _enumerate_range(start: int, end: int, alignment: int, nbytes: int) -> Iterator[int]:
    """Yield aligned offsets from *start* towards *end* (either direction)."""
    if alignment <= 0:
        raise ValueError("alignment must be positive")
    if start <= end:
        cur = -(-start // alignment) * alignment
        while cur + nbytes <= end:
            yield cur
            cur += alignment
    else:
        cur = start - start % alignment
        while cur >= end:
            yield cur
            cur -= alignment


def _masked(data: bytes, mask_value: int) -> int:
    return int.from_bytes(data, "little") & mask_value


class MemoryStream(abc.ABC):
    """A generic random-access byte store.

    Subclasses provide the primitive byte access, sizing and cloning; the
    higher level editing operations are built on top of those.
    """

    def __init__(self, flags: StreamFlag = StreamFlag.NONE) -> None:
        self.flags = StreamFlag(flags)

    # -- primitives -------------------------------------------------------

    @property
    @abc.abstractmethod
    def size(self) -> int:
        """Number of bytes visible through this stream."""

    @abc.abstractmethod
    def _read(self, offset: int, size: int) -> bytes:
        """Return up to *size* bytes at *offset*."""

    @abc.abstractmethod
    def _write(self, offset: int, data: bytes) -> int:
        """Write *data* at *offset* and return the number of bytes written."""

    @abc.abstractmethod
    def trim(self, trim_at_start: int, trim_at_end: int) -> None:
        """Remove bytes from the start and end of the stream."""

    @abc.abstractmethod
    def expand(self, expand_at_start: int, expand_at_end: int) -> None:
        """Grow the stream with zero bytes at the start and end."""

    @abc.abstractmethod
    def soft_clone(self) -> "MemoryStream":
        """Return a clone that shares the underlying data."""

    @abc.abstractmethod
    def hard_clone(self) -> "MemoryStream":
        """Return a clone that owns an independent copy of the data."""

    # -- derived operations -----------------------------------------------

    def __len__(self) -> int:
        return self.size

    def read(self, offset: int, size: int) -> bytes:
        """Read exactly *size* bytes at *offset*."""
        if offset < 0 or size < 0:
            raise StreamError(f"invalid read of {size:#x} bytes at {offset:#x}")
        data = self._read(offset, size)
        if len(data) != size:
            raise StreamError(f"short read of {size:#x} bytes at {offset:#x}")
        return data

    def write(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        """Write all of *data* at *offset*."""
        data = bytes(data)
        if offset < 0:
            raise StreamError(f"invalid write at {offset:#x}")
        written = self._write(offset, data)
        if written != len(data):
            raise StreamError(f"short write of {len(data):#x} bytes at {offset:#x}")

    def insert(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        """Insert *data* at *offset*, shifting later bytes towards the end."""
        data = bytes(data)
        if not self.flags & StreamFlag.MUTABLE:
            raise StreamError("insert failed: stream is not mutable")
        old_size = self.size
        if offset < 0 or offset > old_size:
            raise StreamError(f"insert failed: offset {offset:#x} out of bounds")
        self.expand(0, len(data))
        self.copy_data(offset, self, offset + len(data), old_size - offset)
        self.write(offset, data)

    def delete(self, offset: int, size: int) -> None:
        """Remove *size* bytes at *offset*, shifting later bytes back."""
        if size == 0:
            return
        if not self.flags & StreamFlag.MUTABLE:
            raise StreamError("delete failed: stream is not mutable")
        stream_size = self.size
        if offset < 0 or size < 0 or offset + size > stream_size:
            raise StreamError(f"delete failed: range {offset:#x}+{size:#x} out of bounds")
        self.copy_data(offset + size, self, offset, stream_size - (offset + size))
        self.trim(0, size)

    def read_string(self, offset: int) -> str:
        """Read a NUL-terminated string starting at *offset*."""
        end = offset
        while self.read(end, 1) != b"\x00":
            end += 1
        return self.read(offset, end - offset).decode("utf-8", "surrogateescape")

    def write_string(self, offset: int, string: str) -> None:
        """Write *string* followed by a NUL terminator at *offset*."""
        self.write(offset, string.encode("utf-8", "surrogateescape") + b"\x00")

    def copy_data(self, origin_offset: int, target: "MemoryStream", target_offset: int, size: int) -> None:
        """Copy *size* bytes from this stream into *target*, handling overlap."""
        if origin_offset < 0 or size < 0 or origin_offset + size > self.size:
            raise StreamError("copy failed: origin range out of bounds")
        backwards = target is self and target_offset > origin_offset
        copied = 0
        while copied < size:
            chunk = min(_COPY_CHUNK_SIZE, size - copied)
            if backwards:
                read_offset = origin_offset + size - copied - chunk
                write_offset = target_offset + size - copied - chunk
            else:
                read_offset = origin_offset + copied
                write_offset = target_offset + copied
            target.write(write_offset, self.read(read_offset, chunk))
            copied += chunk

    def find_memory(
        self,
        start: int,
        end: int,
        pattern: bytes,
        mask: bytes | None = None,
        alignment: int = 1,
    ) -> int | None:
        """Return the first aligned offset whose bytes match *pattern* under *mask*.

        The search runs from *start* towards *end*, backwards when *end* is
        below *start*. Returns ``None`` when nothing matches.
        """
        pattern = bytes(pattern)
        nbytes = len(pattern)
        if mask is None:
            mask = b"\xff" * nbytes
        elif len(mask) != nbytes:
            raise ValueError("mask and pattern must have the same length")
        mask_value = int.from_bytes(bytes(mask), "little")
        wanted = _masked(pattern, mask_value)
        for cur in _enumerate_range(start, end, alignment, nbytes):
            try:
                chunk = self.read(cur, nbytes)
            except StreamError:
                continue
            if _masked(chunk, mask_value) == wanted:
                return cur
        return None


class BufferedStream(MemoryStream):
    """A memory stream backed by an in-memory buffer, copied on first write."""

    def __init__(self, buffer: bytes | bytearray | memoryview = b"", auto_expand: bool = False) -> None:
        flags = StreamFlag.MUTABLE | StreamFlag.OWNS_DATA
        if auto_expand:
            flags |= StreamFlag.AUTO_EXPAND
        super().__init__(flags)
        self._buffer: bytes | bytearray | memoryview = bytearray(buffer)
        self._start = 0
        self._size = len(self._buffer)

    @classmethod
    def _from_parts(cls, buffer, start: int, size: int, flags: StreamFlag) -> "BufferedStream":
        stream = cls.__new__(cls)
        MemoryStream.__init__(stream, flags)
        stream._buffer = buffer
        stream._start = start
        stream._size = size
        return stream

    @classmethod
    def from_buffer_nocopy(cls, buffer: bytes | bytearray | memoryview, auto_expand: bool = False) -> "BufferedStream":
        """Wrap *buffer* without copying; it is copied before the first write."""
        flags = StreamFlag.MUTABLE
        if auto_expand:
            flags |= StreamFlag.AUTO_EXPAND
        return cls._from_parts(buffer, 0, len(buffer), flags)

    @property
    def size(self) -> int:
        return self._size

    def raw_bytes(self) -> bytes:
        """Return the bytes currently visible through the stream."""
        return bytes(self._buffer[self._start:self._start + self._size])

    def _make_own_data(self) -> None:
        if not self.flags & StreamFlag.OWNS_DATA:
            self._buffer = bytearray(self._buffer[self._start:self._start + self._size])
            self._start = 0
            self.flags |= StreamFlag.OWNS_DATA

    def _read(self, offset: int, size: int) -> bytes:
        if offset + size > self._size:
            raise StreamError(
                f"cannot read {size:#x} bytes at {offset:#x}, maximum is {self._size:#x}"
            )
        begin = self._start + offset
        return bytes(self._buffer[begin:begin + size])

    def _write(self, offset: int, data: bytes) -> int:
        needs_expand = offset + len(data) > self._size
        if needs_expand and not self.flags & StreamFlag.AUTO_EXPAND:
            raise StreamError(
                f"cannot write {len(data):#x} bytes at {offset:#x}, maximum is {self._size:#x}"
            )
        self._make_own_data()
        if needs_expand:
            self.expand(0, offset + len(data) - self._size)
        begin = self._start + offset
        self._buffer[begin:begin + len(data)] = data
        return len(data)

    def trim(self, trim_at_start: int, trim_at_end: int) -> None:
        if trim_at_start < 0 or trim_at_end < 0 or trim_at_start + trim_at_end > self._size:
            raise StreamError("trim out of bounds")
        self._start += trim_at_start
        self._size -= trim_at_start + trim_at_end

    def expand(self, expand_at_start: int, expand_at_end: int) -> None:
        if expand_at_start < 0 or expand_at_end < 0:
            raise StreamError("cannot expand by a negative amount")
        self._buffer = bytearray(expand_at_start) + bytearray(self.raw_bytes()) + bytearray(expand_at_end)
        self._start = 0
        self._size = len(self._buffer)
        self.flags |= StreamFlag.OWNS_DATA

    def soft_clone(self) -> "BufferedStream":
        return self._from_parts(self._buffer, self._start, self._size, self.flags & ~StreamFlag.OWNS_DATA)

    def hard_clone(self) -> "BufferedStream":
        clone = self.soft_clone()
        clone._make_own_data()
        return clone