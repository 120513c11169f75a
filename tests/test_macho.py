import struct

import pytest

from machkit.loader import (
    LC_ENCRYPTION_INFO_64,
    LC_FILESET_ENTRY,
    LC_LOAD_DYLIB,
    LC_RPATH,
    LC_SEGMENT_64,
    LC_SYMTAB,
    load_command_to_string,
)
from machkit.macho import (
    MH_EXECUTE,
    MH_FILESET,
    MH_MAGIC,
    MH_MAGIC_64,
    FatArch,
    MachO,
    MachOError,
)
from machkit.memory_stream import BufferedStream

CPU_ARM64 = 0x0100000C
TEXT_VM = 0x100000000
LINKEDIT_VM = 0x100001000
PAGE = 0x1000
HALF = 0x800
SYMOFF = 0x800
STROFF = 0x900
STRSIZE = 0x20
DYLIB = "/usr/lib/libSystem.B.dylib"
RPATH = "@executable_path/Frameworks"


def _cmd(cmd, body):
    size = 8 + len(body)
    pad = (-size) % 8
    return struct.pack("<II", cmd, size + pad) + body + bytes(pad)


def _segment(name, vmaddr, vmsize, fileoff, filesize, sections=()):
    body = struct.pack("<16sQQQQiiII", name, vmaddr, vmsize, fileoff, filesize, 7, 5, len(sections), 0)
    for sectname, addr, size, offset in sections:
        body += struct.pack("<16s16sQQIIIIIIII", sectname, name, addr, size, offset, 0, 0, 0, 0, 0, 0, 0)
    return _cmd(LC_SEGMENT_64, body)


def _image(cryptid=0, filetype=MH_EXECUTE, sizeofcmds_delta=0):
    cmds = [
        _segment(b"__TEXT", TEXT_VM, PAGE, 0, HALF, [(b"__text", TEXT_VM + 0x400, 0x100, 0x400)]),
        _segment(b"__LINKEDIT", LINKEDIT_VM, PAGE, HALF, HALF),
        _cmd(LC_SYMTAB, struct.pack("<IIII", SYMOFF, 4, STROFF, STRSIZE)),
        _cmd(LC_LOAD_DYLIB, struct.pack("<IIII", 24, 2, 0x10000, 0x10000) + DYLIB.encode() + b"\x00"),
        _cmd(LC_RPATH, struct.pack("<I", 12) + RPATH.encode() + b"\x00"),
        _cmd(LC_ENCRYPTION_INFO_64, struct.pack("<IIII", 0x4000, 0x1000, cryptid, 0)),
    ]
    blob = b"".join(cmds)
    header = struct.pack("<8I", MH_MAGIC_64, CPU_ARM64, 0, filetype, len(cmds),
                         len(blob) + sizeofcmds_delta, 0, 0)
    data = bytearray(header + blob)
    data += bytes(PAGE - len(data))
    strtab = b"\x00_main\x00_helper\x00"
    data[STROFF:STROFF + len(strtab)] = strtab
    nlists = [
        (1, 0x0F, 1, 0, TEXT_VM + 0x400),
        (7, 0x0F, 1, 0, TEXT_VM + 0x500),
        (0, 0x0F, 1, 0, TEXT_VM),
        (STRSIZE + 5, 0x0F, 1, 0, TEXT_VM),
    ]
    for i, entry in enumerate(nlists):
        struct.pack_into("<IBBHQ", data, SYMOFF + i * 16, *entry)
    return bytes(data)


def _arch(data, cpusubtype=0):
    return FatArch(CPU_ARM64, cpusubtype, 0, len(data), 0x4000)


def _macho(**kwargs):
    data = _image(**kwargs)
    return MachO(BufferedStream(data), _arch(data))


def test_header_fields():
    macho = _macho()
    assert macho.header.magic == MH_MAGIC_64
    assert macho.header.cputype == CPU_ARM64
    assert macho.header.ncmds == 6
    assert macho.mach_header_size() == 32
    assert macho.is_32bit is False


def test_segments_and_sections():
    macho = _macho()
    assert [s.segname for s in macho.segments] == ["__TEXT", "__LINKEDIT"]
    text = macho.segments[0]
    assert text.vmaddr == TEXT_VM
    assert [s.sectname for s in text.sections] == ["__text"]
    assert text.sections[0].segname == "__TEXT"
    assert text.sections[0].addr == TEXT_VM + 0x400


def test_load_command_names():
    names = [c.name for c in _macho().load_commands()]
    assert names == [
        "LC_SEGMENT_64",
        "LC_SEGMENT_64",
        "LC_SYMTAB",
        "LC_LOAD_DYLIB",
        "LC_RPATH",
        "LC_ENCRYPTION_INFO_64",
    ]
    assert load_command_to_string(LC_RPATH) == "LC_RPATH"


def test_load_command_offsets_are_contiguous():
    macho = _macho()
    commands = list(macho.load_commands())
    assert commands[0].offset == macho.mach_header_size()
    for prev, cur in zip(commands, commands[1:]):
        assert cur.offset == prev.offset + prev.cmdsize
    assert sum(c.cmdsize for c in commands) == macho.header.sizeofcmds


def test_translate_addresses():
    macho = _macho()
    assert macho.translate_vmaddr_to_fileoff(TEXT_VM + 0x10) == 0x10
    assert macho.translate_vmaddr_to_fileoff(LINKEDIT_VM + 0x10) == HALF + 0x10
    assert macho.translate_fileoff_to_vmaddr(HALF + 0x10) == LINKEDIT_VM + 0x10
    assert macho.translate_fileoff_to_vmaddr(
        macho.translate_vmaddr_to_fileoff(TEXT_VM + 0x123)
    ) == TEXT_VM + 0x123


def test_translate_out_of_range_raises():
    macho = _macho()
    with pytest.raises(MachOError):
        macho.translate_vmaddr_to_fileoff(0x10)
    with pytest.raises(MachOError):
        macho.translate_fileoff_to_vmaddr(PAGE * 4)


def test_read_at_vmaddr_matches_offset():
    macho = _macho()
    assert macho.read_at_vmaddr(TEXT_VM, 16) == macho.read_at_offset(0, 16)
    assert macho.read_at_vmaddr(LINKEDIT_VM + 0x100, 8) == macho.read_at_offset(STROFF, 8)


def test_read_at_vmaddr_touching_segment_end_raises():
    macho = _macho()
    with pytest.raises(MachOError):
        macho.read_at_vmaddr(TEXT_VM + PAGE - 4, 4)


def test_write_at_vmaddr_round_trip():
    macho = _macho()
    macho.write_at_vmaddr(TEXT_VM + 0x600, b"\xde\xad\xbe\xef")
    assert macho.read_at_offset(0x600, 4) == b"\xde\xad\xbe\xef"
    assert macho.read_at_vmaddr(TEXT_VM + 0x600, 4) == b"\xde\xad\xbe\xef"


def test_symbols():
    assert list(_macho().symbols()) == [
        ("_main", 0x0F, TEXT_VM + 0x400),
        ("_helper", 0x0F, TEXT_VM + 0x500),
    ]


def test_dependencies():
    deps = list(_macho().dependencies())
    assert len(deps) == 1
    path, cmd, (timestamp, current, compat) = deps[0]
    assert path == DYLIB
    assert cmd == LC_LOAD_DYLIB
    assert (timestamp, current, compat) == (2, 0x10000, 0x10000)


def test_rpaths():
    assert list(_macho().rpaths()) == [RPATH]


@pytest.mark.parametrize("cryptid, expected", [(0, False), (1, True)])
def test_is_encrypted(cryptid, expected):
    assert _macho(cryptid=cryptid).is_encrypted() is expected


def test_bad_magic_raises():
    data = bytearray(_image())
    data[0:4] = b"\x00\x00\x00\x00"
    with pytest.raises(MachOError):
        MachO(BufferedStream(bytes(data)), _arch(data))


def test_misaligned_sizeofcmds_raises():
    data = _image(sizeofcmds_delta=4)
    with pytest.raises(MachOError):
        MachO(BufferedStream(data), _arch(data))


def test_truncated_header_raises():
    data = _image()[:10]
    with pytest.raises(MachOError):
        MachO(BufferedStream(data), _arch(data))


def test_32bit_image_without_commands():
    data = struct.pack("<7I", MH_MAGIC, 12, 9, MH_EXECUTE, 0, 0, 0) + bytes(64)
    macho = MachO(BufferedStream(data), FatArch(12, 9, 0, len(data), 0x4000))
    assert macho.is_32bit is True
    assert macho.mach_header_size() == 28
    assert macho.segments == []
    with pytest.raises(MachOError):
        list(macho.load_commands())


def test_fileset_entries():
    inner = _image()
    entry_id = b"com.example.kext"
    body = struct.pack("<QQII", TEXT_VM, PAGE, 32, 0) + entry_id + b"\x00"
    cmd = _cmd(LC_FILESET_ENTRY, body)
    header = struct.pack("<8I", MH_MAGIC_64, CPU_ARM64, 0, MH_FILESET, 1, len(cmd), 0, 0)
    outer = header + cmd
    data = outer + bytes(PAGE - len(outer)) + inner
    macho = MachO(BufferedStream(data), _arch(data))
    assert len(macho.fileset_machos) == 1
    entry = macho.fileset_machos[0]
    assert entry.entry_id == entry_id.decode()
    assert entry.fileoff == PAGE
    assert entry.vmaddr == TEXT_VM
    assert entry.macho is not None
    assert [s.segname for s in entry.macho.segments] == ["__TEXT", "__LINKEDIT"]
    assert list(entry.macho.rpaths()) == [RPATH]


def test_for_writing_round_trip(tmp_path):
    path = tmp_path / "image"
    data = _image()
    path.write_bytes(data)
    with MachO.for_writing(path) as macho:
        assert macho.arch.size == len(data)
        assert [s.segname for s in macho.segments] == ["__TEXT", "__LINKEDIT"]
        macho.write_at_offset(0x700, b"patched")
        macho.write_at_offset(len(data), b"tail")
        assert macho.read_at_offset(len(data), 4) == b"tail"
    contents = path.read_bytes()
    assert contents[0x700:0x707] == b"patched"
    assert contents[len(data):] == b"tail"


def test_for_writing_rejects_32bit_magic(tmp_path):
    path = tmp_path / "image32"
    path.write_bytes(struct.pack("<7I", MH_MAGIC, 12, 9, MH_EXECUTE, 0, 0, 0))
    with pytest.raises(MachOError):
        MachO.for_writing(path)