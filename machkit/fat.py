"""Universal (FAT) binaries and the Mach-O slices they contain."""

from __future__ import annotations

import logging
import os
import struct
from typing import Iterable

from .file_stream import FileStream
from .macho import FatArch, MachHeader, MachO, MachOError
from .memory_stream import MemoryStream, StreamError

__all__ = ["FAT_MAGIC", "FAT_MAGIC_64", "FAT", "macho_array_create_for_paths"]

log = logging.getLogger(__name__)

FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF

_FAT_HEADER = struct.Struct(">II")
_FAT_ARCH = struct.Struct(">IIIII")
_FAT_ARCH_64 = struct.Struct(">IIQQII")
_MACH_HEADER_SIZE = 28
_MIN_SLICES = 1
_MAX_SLICES = 5
_SINGLE_SLICE_ALIGN = 0x4000
_U32 = 0xFFFFFFFF


class FAT:
    """A FAT file with several slices, or a thin Mach-O seen as one slice.

    Slices whose window lies outside the file are kept as ``None`` so that
    indices line up with the architecture table.
    """

    def __init__(self, stream: MemoryStream) -> None:
        self.stream = stream
        self.slices: list[MachO | None] = []
        self._parse_slices()

    @classmethod
    def from_path(cls, path: str | os.PathLike) -> "FAT":
        """Open the file at *path* read-only and parse its slices."""
        stream = FileStream.from_path(path)
        try:
            return cls(stream)
        except BaseException:
            stream.close()
            raise

    @classmethod
    def create_for_macho_array(cls, first_input_path: str | os.PathLike, machos: Iterable[MachO]) -> "FAT":
        """Open *first_input_path* and add every MachO after the first of *machos*."""
        fat = cls.from_path(first_input_path)
        for macho in list(machos)[1:]:
            fat.add_macho(macho)
        return fat

    def __enter__(self) -> "FAT":
        return self

    def __exit__(self, *exc_info) -> None:
        close = getattr(self.stream, "close", None)
        if close is not None:
            close()

    def _read(self, offset: int, size: int) -> bytes:
        try:
            return self.stream.read(offset, size)
        except StreamError as exc:
            raise MachOError(f"cannot read {size:#x} bytes at {offset:#x}") from exc

    def _parse_slices(self) -> None:
        file_size = self.stream.size
        magic, nfat_arch = _FAT_HEADER.unpack(self._read(0, _FAT_HEADER.size))

        if magic not in (FAT_MAGIC, FAT_MAGIC_64):
            header = MachHeader.from_bytes(self._read(0, _MACH_HEADER_SIZE))
            arch = FatArch(header.cputype, header.cpusubtype, 0, file_size, _SINGLE_SLICE_ALIGN)
            self.slices = [MachO(self.stream.soft_clone(), arch)]
            return

        if not _MIN_SLICES <= nfat_arch <= _MAX_SLICES:
            raise MachOError(
                f"invalid number of MachO slices ({nfat_arch}), "
                "this likely means this is not an iOS MachO"
            )

        wide = magic == FAT_MAGIC_64
        layout = _FAT_ARCH_64 if wide else _FAT_ARCH
        for index in range(nfat_arch):
            raw = self._read(_FAT_HEADER.size + index * layout.size, layout.size)
            if wide:
                arch = FatArch(*layout.unpack(raw))
            else:
                cputype, cpusubtype, offset, size, align = layout.unpack(raw)
                arch = FatArch(cputype, cpusubtype, offset, size, align)

            sub_stream = self.stream.soft_clone()
            try:
                sub_stream.trim(arch.offset, file_size - (arch.offset + arch.size))
            except StreamError as exc:
                log.warning("slice %d lies outside the file: %s", index, exc)
                self.slices.append(None)
                continue
            self.slices.append(MachO(sub_stream, arch))

    def find_slice(self, cputype: int, cpusubtype: int) -> MachO | None:
        """Return the slice with exactly this CPU type and subtype, if any."""
        for macho in self.slices:
            if macho is None:
                continue
            if (macho.header.cputype & _U32) == (cputype & _U32) and (
                macho.header.cpusubtype & _U32
            ) == (cpusubtype & _U32):
                return macho
        return None

    def add_macho(self, macho: MachO) -> None:
        """Append *macho* to the list of slices."""
        self.slices.append(macho)


def macho_array_create_for_paths(input_paths: Iterable[str | os.PathLike]) -> list[MachO]:
    """Open every path and return all of their slices, in order."""
    machos: list[MachO] = []
    for path in input_paths:
        try:
            fat = FAT.from_path(path)
        except (OSError, MachOError) as exc:
            raise MachOError(f"failed to create FAT from file: {os.fspath(path)}") from exc
        machos.extend(macho for macho in fat.slices if macho is not None)
    return machos