"""In-place edits of segment and code signature load commands."""

from __future__ import annotations

import logging
import struct

from .loader import LC_CODE_SIGNATURE, LC_SEGMENT_64
from .macho import MachO, MachOError

__all__ = [
    "update_segment_command_64",
    "update_lc_code_signature",
    "update_load_commands_for_coretrust_bypass",
]

log = logging.getLogger(__name__)

_SEGMENT_64 = struct.Struct("<II16sQQQQiiII")
_LINKEDIT_DATA = struct.Struct("<IIII")
_SUPERBLOB_LENGTH = struct.Struct(">I")
_LINKEDIT = "__LINKEDIT"
_VM_ALIGN = 0x4000
_U64 = 0xFFFFFFFFFFFFFFFF


def _segment_name(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("utf-8", "replace")


def _align_up(value: int, alignment: int) -> int:
    return -(-value // alignment) * alignment


def update_segment_command_64(
    macho: MachO,
    segment_name: str,
    vmaddr: int,
    vmsize: int,
    fileoff: int,
    filesize: int,
) -> bool:
    """Rewrite the addresses and sizes of the named 64-bit segment.

    Returns whether a segment of that name was found.
    """
    for command in macho.load_commands():
        if command.cmd != LC_SEGMENT_64 or len(command.data) < _SEGMENT_64.size:
            continue
        fields = list(_SEGMENT_64.unpack_from(command.data))
        if _segment_name(fields[2]) != segment_name:
            continue
        fields[3:7] = [vmaddr, vmsize, fileoff, filesize]
        macho.write_at_offset(command.offset, _SEGMENT_64.pack(*fields))
        return True
    return False


def update_lc_code_signature(macho: MachO, size: int) -> bool:
    """Set the data size of the code signature load command.

    Returns whether such a command was found.
    """
    for command in macho.load_commands():
        if command.cmd != LC_CODE_SIGNATURE or len(command.data) < _LINKEDIT_DATA.size:
            continue
        cmd, cmdsize, dataoff, _ = _LINKEDIT_DATA.unpack_from(command.data)
        macho.write_at_offset(command.offset, _LINKEDIT_DATA.pack(cmd, cmdsize, dataoff, size))
        return True
    return False


def update_load_commands_for_coretrust_bypass(
    macho: MachO,
    superblob: bytes | bytearray | memoryview,
    original_code_signature_size: int,
    original_macho_size: int,
) -> None:
    """Resize ``__LINKEDIT`` and the code signature command for a new superblob.

    *superblob* is the encoded superblob; its big-endian length field gives
    the new code signature size.
    """
    raw = bytes(superblob)
    if len(raw) < 8:
        raise MachOError("superblob is too short to hold its length")
    signature_size = _SUPERBLOB_LENGTH.unpack_from(raw, 4)[0]

    padding = vm_address = file_offset = 0
    for command in macho.load_commands():
        if command.cmd != LC_SEGMENT_64 or len(command.data) < _SEGMENT_64.size:
            continue
        fields = _SEGMENT_64.unpack_from(command.data)
        if _segment_name(fields[2]) == _LINKEDIT:
            vm_address, file_offset, filesize = fields[3], fields[5], fields[6]
            padding = (filesize - original_code_signature_size) & _U64
            break

    if padding == 0 or vm_address == 0 or file_offset == 0:
        raise MachOError("failed to get existing values for __LINKEDIT segment")

    new_segment_size = (signature_size + padding) & _U64
    new_vm_size = _align_up(new_segment_size, _VM_ALIGN)

    log.debug("updating __LINKEDIT segment")
    update_segment_command_64(macho, _LINKEDIT, vm_address, new_vm_size, file_offset, new_segment_size)
    log.debug("updating LC_CODE_SIGNATURE load command")
    update_lc_code_signature(macho, signature_size)