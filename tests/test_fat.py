import struct

import pytest

from machkit.fat import FAT, FAT_MAGIC, FAT_MAGIC_64, macho_array_create_for_paths
from machkit.loader import LC_SEGMENT_64
from machkit.macho import MH_EXECUTE, MH_MAGIC_64, MachOError
from machkit.memory_stream import BufferedStream

ARM64 = 0x0100000C
SLICE_SIZE = 0x1000


def _thin(cputype, cpusubtype, filetype=MH_EXECUTE):
    seg = struct.pack(
        "<II16sQQQQiiII", LC_SEGMENT_64, 72, b"__TEXT",
        0x100000000, SLICE_SIZE, 0, SLICE_SIZE, 5, 5, 0, 0,
    )
    header = struct.pack(
        "<8I", MH_MAGIC_64, cputype, cpusubtype & 0xFFFFFFFF, filetype, 1, len(seg), 0, 0
    )
    data = header + seg
    return data + bytes(SLICE_SIZE - len(data))


def _fat(slices, wide=False):
    header = struct.pack(">II", FAT_MAGIC_64 if wide else FAT_MAGIC, len(slices))
    archs = b""
    body = b""
    for i, (cputype, cpusubtype) in enumerate(slices):
        offset = SLICE_SIZE * (i + 1)
        if wide:
            archs += struct.pack(">IIQQII", cputype, cpusubtype, offset, SLICE_SIZE, 12, 0)
        else:
            archs += struct.pack(">IIIII", cputype, cpusubtype, offset, SLICE_SIZE, 12)
        body += _thin(cputype, cpusubtype)
    prefix = header + archs
    return prefix + bytes(SLICE_SIZE - len(prefix)) + body


@pytest.mark.parametrize("wide", [False, True])
def test_fat_slices_are_parsed(wide):
    fat = FAT(BufferedStream(_fat([(ARM64, 0), (ARM64, 2)], wide=wide)))
    assert len(fat.slices) == 2
    for i, macho in enumerate(fat.slices):
        assert macho.arch.offset == SLICE_SIZE * (i + 1)
        assert macho.arch.size == SLICE_SIZE
        assert macho.stream.size == SLICE_SIZE
        assert macho.read_at_offset(0, 4) == struct.pack("<I", MH_MAGIC_64)
    assert [m.header.cpusubtype for m in fat.slices] == [0, 2]


def test_find_slice():
    fat = FAT(BufferedStream(_fat([(ARM64, 0), (ARM64, 2)])))
    assert fat.find_slice(ARM64, 2) is fat.slices[1]
    assert fat.find_slice(ARM64, 0) is fat.slices[0]
    assert fat.find_slice(ARM64, 1) is None


@pytest.mark.parametrize("count", [0, 6])
def test_invalid_slice_count(count):
    data = struct.pack(">II", FAT_MAGIC, count) + bytes(0x100)
    with pytest.raises(MachOError):
        FAT(BufferedStream(data))


def test_thin_file_is_single_slice():
    fat = FAT(BufferedStream(_thin(ARM64, 0)))
    assert len(fat.slices) == 1
    macho = fat.slices[0]
    assert macho.arch.offset == 0
    assert macho.arch.size == SLICE_SIZE
    assert macho.arch.align == 0x4000
    assert fat.find_slice(ARM64, 0) is macho


def test_garbage_raises():
    with pytest.raises(MachOError):
        FAT(BufferedStream(b"\x01" * 64))


def test_slice_outside_file_is_none():
    data = struct.pack(">II", FAT_MAGIC, 1) + struct.pack(">IIIII", ARM64, 0, 0x10000, SLICE_SIZE, 12)
    data += bytes(0x100)
    fat = FAT(BufferedStream(data))
    assert fat.slices == [None]
    assert fat.find_slice(ARM64, 0) is None


def test_add_macho():
    fat = FAT(BufferedStream(_fat([(ARM64, 0)])))
    other = FAT(BufferedStream(_thin(ARM64, 2))).slices[0]
    fat.add_macho(other)
    assert len(fat.slices) == 2
    assert fat.find_slice(ARM64, 2) is other


def test_from_path_and_create_for_macho_array(tmp_path):
    first = tmp_path / "first"
    first.write_bytes(_fat([(ARM64, 0)]))
    other = FAT(BufferedStream(_thin(ARM64, 2))).slices[0]
    with FAT.from_path(first) as fat:
        assert fat.slices[0].header.cpusubtype == 0
    with FAT.create_for_macho_array(first, [None, other]) as fat:
        assert len(fat.slices) == 2
        assert fat.slices[-1] is other


def test_macho_array_create_for_paths(tmp_path):
    a = tmp_path / "a"
    b = tmp_path / "b"
    a.write_bytes(_fat([(ARM64, 0), (ARM64, 2)]))
    b.write_bytes(_thin(ARM64, 1))
    machos = macho_array_create_for_paths([a, b])
    assert [m.header.cpusubtype for m in machos] == [0, 2, 1]


def test_macho_array_create_for_missing_path(tmp_path):
    with pytest.raises(MachOError):
        macho_array_create_for_paths([tmp_path / "missing"])