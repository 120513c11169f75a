"""Parsing and editing of single-architecture Mach-O images."""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass, field
from typing import Iterator

from .file_stream import FileStream, FileStreamFlag
from .loader import (
    LC_ENCRYPTION_INFO,
    LC_ENCRYPTION_INFO_64,
    LC_FILESET_ENTRY,
    LC_LAZY_LOAD_DYLIB,
    LC_LOAD_DYLIB,
    LC_LOAD_UPWARD_DYLIB,
    LC_LOAD_WEAK_DYLIB,
    LC_REEXPORT_DYLIB,
    LC_RPATH,
    LC_SEGMENT_64,
    LC_SYMTAB,
    load_command_to_string,
)
from .memory_stream import MemoryStream, StreamError

__all__ = [
    "MH_MAGIC",
    "MH_MAGIC_64",
    "MH_EXECUTE",
    "MH_FILESET",
    "MachOError",
    "MachHeader",
    "FatArch",
    "Section",
    "Segment",
    "FilesetMachO",
    "LoadCommand",
    "MachO",
]

log = logging.getLogger(__name__)

MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
MH_EXECUTE = 0x2
MH_FILESET = 0xC

_CPU_SUBTYPE_ARM_V6 = 6
_CPU_SUBTYPE_ARM_V7 = 9
_CPU_SUBTYPE_ARM_V7S = 11
_ARM32_SUBTYPES = (_CPU_SUBTYPE_ARM_V6, _CPU_SUBTYPE_ARM_V7, _CPU_SUBTYPE_ARM_V7S)

_MAX_LOAD_COMMANDS = 1000
_DEFAULT_ALIGN = 0x4000

_MACH_HEADER = struct.Struct("<7I")
_MACH_HEADER_64_SIZE = 32
_LOAD_COMMAND = struct.Struct("<II")
_SEGMENT_64 = struct.Struct("<II16sQQQQiiII")
_SECTION_64 = struct.Struct("<16s16sQQIIIIIIII")
_SYMTAB_COMMAND = struct.Struct("<IIIIII")
_NLIST_64 = struct.Struct("<IBBHQ")
_DYLIB_COMMAND = struct.Struct("<IIIIII")
_RPATH_COMMAND = struct.Struct("<III")
_FILESET_ENTRY = struct.Struct("<IIQQII")
_ENCRYPTION_INFO = struct.Struct("<IIIII")

_DEPENDENCY_COMMANDS = frozenset(
    {LC_LOAD_DYLIB, LC_LOAD_WEAK_DYLIB, LC_REEXPORT_DYLIB, LC_LAZY_LOAD_DYLIB, LC_LOAD_UPWARD_DYLIB}
)


class MachOError(Exception):
    """Raised when a Mach-O image is malformed or an access is out of range."""


def _fixed_name(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", "replace")


def _c_string(data: bytes, start: int, limit: int | None = None) -> bytes | None:
    """Return the NUL-terminated string at *start*, or None if it is unterminated."""
    end = len(data) if limit is None else min(len(data), start + limit)
    nul = data.find(b"\x00", start, end)
    if nul < 0:
        return None
    return data[start:nul]


@dataclass
class MachHeader:
    magic: int
    cputype: int
    cpusubtype: int
    filetype: int
    ncmds: int
    sizeofcmds: int
    flags: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "MachHeader":
        return cls(*_MACH_HEADER.unpack_from(data))


@dataclass
class FatArch:
    cputype: int
    cpusubtype: int
    offset: int
    size: int
    align: int
    reserved: int = 0


@dataclass
class Section:
    sectname: str
    segname: str
    addr: int
    size: int
    offset: int
    align: int
    reloff: int
    nreloc: int
    flags: int
    reserved1: int
    reserved2: int
    reserved3: int

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> "Section":
        sectname, segname, *rest = _SECTION_64.unpack_from(data, offset)
        return cls(_fixed_name(sectname), _fixed_name(segname), *rest)


@dataclass
class Segment:
    segname: str
    vmaddr: int
    vmsize: int
    fileoff: int
    filesize: int
    maxprot: int
    initprot: int
    nsects: int
    flags: int
    sections: list[Section] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Segment":
        (_, _, segname, vmaddr, vmsize, fileoff, filesize,
         maxprot, initprot, nsects, flags) = _SEGMENT_64.unpack_from(data)
        fitting = max(0, (len(data) - _SEGMENT_64.size) // _SECTION_64.size)
        sections = [
            Section.from_bytes(data, _SEGMENT_64.size + i * _SECTION_64.size)
            for i in range(min(nsects, fitting))
        ]
        return cls(_fixed_name(segname), vmaddr, vmsize, fileoff, filesize,
                   maxprot, initprot, nsects, flags, sections)


@dataclass
class FilesetMachO:
    entry_id: str
    vmaddr: int
    fileoff: int
    macho: "MachO | None"


@dataclass
class LoadCommand:
    cmd: int
    cmdsize: int
    offset: int
    data: bytes

    @property
    def name(self) -> str:
        return load_command_to_string(self.cmd)


class MachO:
    """A single Mach-O image viewed through a memory stream."""

    def __init__(self, stream: MemoryStream, arch: FatArch) -> None:
        self.stream = stream
        self.arch = arch
        try:
            raw = stream.read(0, _MACH_HEADER.size)
        except StreamError as exc:
            raise MachOError("cannot read the mach header") from exc
        self.header = MachHeader.from_bytes(raw)
        if self.header.magic not in (MH_MAGIC, MH_MAGIC_64):
            raise MachOError(f"bad mach magic {self.header.magic:#x}")
        self.is_32bit = arch.cpusubtype in _ARM32_SUBTYPES
        unit = 4 if self.is_32bit else 8
        if self.header.sizeofcmds % unit:
            raise MachOError(
                f"sizeofcmds is not a multiple of {unit} ({self.header.sizeofcmds})"
            )
        self.segments: list[Segment] = []
        self.fileset_machos: list[FilesetMachO] = []
        self._parse_segments()
        if self.header.filetype == MH_FILESET:
            self._parse_fileset_machos()

    @classmethod
    def for_writing(cls, path: str | os.PathLike) -> "MachO":
        """Open the single-slice 64-bit image at *path* for reading and writing."""
        stream = FileStream.from_path(
            path, flags=FileStreamFlag.WRITABLE | FileStreamFlag.AUTO_EXPAND
        )
        try:
            try:
                header = MachHeader.from_bytes(stream.read(0, _MACH_HEADER.size))
            except StreamError as exc:
                raise MachOError("cannot read the mach header") from exc
            if header.magic != MH_MAGIC_64:
                raise MachOError(f"not a 64-bit mach-o image (magic {header.magic:#x})")
            arch = FatArch(header.cputype, header.cpusubtype, 0, stream.size, _DEFAULT_ALIGN)
            return cls(stream, arch)
        except BaseException:
            stream.close()
            raise

    def __enter__(self) -> "MachO":
        return self

    def __exit__(self, *exc_info) -> None:
        close = getattr(self.stream, "close", None)
        if close is not None:
            close()

    # -- parsing ----------------------------------------------------------

    def _parse_segments(self) -> None:
        try:
            for command in self.load_commands():
                if command.cmd == LC_SEGMENT_64 and len(command.data) >= _SEGMENT_64.size:
                    self.segments.append(Segment.from_bytes(command.data))
        except MachOError as exc:
            log.debug("no segments parsed: %s", exc)

    def _parse_fileset_machos(self) -> None:
        try:
            commands = [c for c in self.load_commands() if c.cmd == LC_FILESET_ENTRY]
        except MachOError as exc:
            log.debug("no fileset entries parsed: %s", exc)
            return
        for command in commands:
            if len(command.data) < _FILESET_ENTRY.size:
                continue
            _, _, vmaddr, fileoff, id_offset, _ = _FILESET_ENTRY.unpack_from(command.data)
            raw_id = _c_string(command.data, id_offset) or b""
            self.fileset_machos.append(
                FilesetMachO(raw_id.decode("utf-8", "replace"), vmaddr, fileoff,
                             self._open_fileset_entry(fileoff))
            )

    def _open_fileset_entry(self, fileoff: int) -> "MachO | None":
        sub = self.stream.soft_clone()
        try:
            sub.trim(fileoff, 0)
            header = MachHeader.from_bytes(sub.read(0, _MACH_HEADER.size))
            arch = FatArch(header.cputype, header.cpusubtype, 0, sub.size, _DEFAULT_ALIGN)
            return MachO(sub, arch)
        except (StreamError, MachOError) as exc:
            log.warning("failed to parse fileset entry at %#x: %s", fileoff, exc)
            return None

    # -- raw access -------------------------------------------------------

    def read_at_offset(self, offset: int, size: int) -> bytes:
        """Read *size* bytes at file offset *offset*."""
        return self.stream.read(offset, size)

    def write_at_offset(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        """Write *data* at file offset *offset*."""
        self.stream.write(offset, data)

    def mach_header_size(self) -> int:
        """Size of the mach header that precedes the load commands."""
        return _MACH_HEADER.size if self.is_32bit else _MACH_HEADER_64_SIZE

    # -- address translation ---------------------------------------------

    def translate_fileoff_to_vmaddr(self, fileoff: int) -> int:
        """Map a file offset to the virtual address of the segment holding it."""
        for segment in self.segments:
            if segment.fileoff <= fileoff < segment.fileoff + segment.filesize:
                return segment.vmaddr + (fileoff - segment.fileoff)
        raise MachOError(f"file offset {fileoff:#x} lies in no segment")

    def _segment_for_vmaddr(self, vmaddr: int) -> Segment:
        for segment in self.segments:
            if segment.vmaddr <= vmaddr < segment.vmaddr + segment.vmsize:
                return segment
        raise MachOError(f"address {vmaddr:#x} lies in no segment")

    def translate_vmaddr_to_fileoff(self, vmaddr: int) -> int:
        """Map a virtual address to its file offset."""
        segment = self._segment_for_vmaddr(vmaddr)
        return segment.fileoff + (vmaddr - segment.vmaddr)

    def _checked_fileoff(self, vmaddr: int, size: int) -> int:
        segment = self._segment_for_vmaddr(vmaddr)
        if vmaddr + size >= segment.vmaddr + segment.vmsize:
            raise MachOError(f"access of {size:#x} bytes at {vmaddr:#x} leaves its segment")
        return segment.fileoff + (vmaddr - segment.vmaddr)

    def read_at_vmaddr(self, vmaddr: int, size: int) -> bytes:
        """Read *size* bytes at a virtual address; the range must end before its segment does."""
        return self.read_at_offset(self._checked_fileoff(vmaddr, size), size)

    def write_at_vmaddr(self, vmaddr: int, data: bytes | bytearray | memoryview) -> None:
        """Write *data* at a virtual address; the range must end before its segment does."""
        data = bytes(data)
        self.write_at_offset(self._checked_fileoff(vmaddr, len(data)), data)

    # -- enumeration ------------------------------------------------------

    def load_commands(self) -> Iterator[LoadCommand]:
        """Yield every known load command in order; unknown ones are skipped."""
        ncmds = self.header.ncmds
        if ncmds < 1 or ncmds > _MAX_LOAD_COMMANDS:
            raise MachOError(f"invalid number of load commands ({ncmds})")
        offset = self.mach_header_size()
        for _ in range(ncmds):
            try:
                cmd, cmdsize = _LOAD_COMMAND.unpack(self.read_at_offset(offset, _LOAD_COMMAND.size))
            except StreamError:
                break
            if load_command_to_string(cmd) == "LC_UNKNOWN":
                log.debug("ignoring unknown command %#x", cmd)
            else:
                try:
                    data = self.read_at_offset(offset, cmdsize)
                except StreamError:
                    break
                yield LoadCommand(cmd, cmdsize, offset, data)
            offset += cmdsize

    def symbols(self) -> Iterator[tuple[str, int, int]]:
        """Yield ``(name, type, vmaddr)`` for each named symbol table entry."""
        for command in self.load_commands():
            if command.cmd != LC_SYMTAB or len(command.data) < _SYMTAB_COMMAND.size:
                continue
            _, _, symoff, nsyms, stroff, strsize = _SYMTAB_COMMAND.unpack_from(command.data)
            try:
                strtab = self.read_at_offset(stroff, strsize)
            except StreamError:
                continue
            for i in range(nsyms):
                try:
                    entry = self.read_at_offset(symoff + i * _NLIST_64.size, _NLIST_64.size)
                except StreamError:
                    continue
                strx, n_type, _, _, n_value = _NLIST_64.unpack(entry)
                if strx == 0 or strx >= strsize:
                    continue
                nul = strtab.find(b"\x00", strx)
                name = strtab[strx:] if nul < 0 else strtab[strx:nul]
                if not name:
                    continue
                yield name.decode("utf-8", "replace"), n_type, n_value

    def dependencies(self) -> Iterator[tuple[str, int, tuple[int, int, int]]]:
        """Yield ``(path, cmd, (timestamp, current_version, compatibility_version))``."""
        for command in self.load_commands():
            if command.cmd not in _DEPENDENCY_COMMANDS:
                continue
            if len(command.data) < _DYLIB_COMMAND.size:
                log.warning("malformed dependency at %#x (command too short)", command.offset)
                continue
            _, _, name_offset, timestamp, current, compat = _DYLIB_COMMAND.unpack_from(command.data)
            path = self._command_string(command, name_offset, _DYLIB_COMMAND.size, "dependency")
            if path is not None:
                yield path, command.cmd, (timestamp, current, compat)

    def rpaths(self) -> Iterator[str]:
        """Yield each runpath search path."""
        for command in self.load_commands():
            if command.cmd != LC_RPATH:
                continue
            if len(command.data) < _RPATH_COMMAND.size:
                log.warning("malformed rpath at %#x (command too short)", command.offset)
                continue
            _, _, path_offset = _RPATH_COMMAND.unpack_from(command.data)
            path = self._command_string(command, path_offset, _RPATH_COMMAND.size, "rpath")
            if path is not None:
                yield path

    @staticmethod
    def _command_string(command: LoadCommand, offset: int, minimum: int, what: str) -> str | None:
        if offset >= command.cmdsize or offset < minimum:
            log.warning("malformed %s at %#x (offset out of bounds)", what, command.offset)
            return None
        raw = _c_string(command.data, offset, command.cmdsize - offset)
        if raw is None:
            log.warning("malformed %s at %#x (no NUL terminator)", what, command.offset)
            return None
        if not raw:
            log.warning("malformed %s at %#x (zero length)", what, command.offset)
            return None
        return raw.decode("utf-8", "replace")

    def is_encrypted(self) -> bool:
        """Whether an encryption info command marks the image as encrypted."""
        for command in self.load_commands():
            if command.cmd in (LC_ENCRYPTION_INFO, LC_ENCRYPTION_INFO_64):
                if len(command.data) >= _ENCRYPTION_INFO.size:
                    if _ENCRYPTION_INFO.unpack_from(command.data)[4] == 1:
                        return True
        return False