"""Code signature superblobs and the blobs they contain."""

from __future__ import annotations

import enum
import hashlib
import os
import struct
from dataclasses import dataclass, field
from typing import Iterable

from .loader import LC_CODE_SIGNATURE
from .macho import MachO, MachOError
from .memory_stream import BufferedStream, StreamError

__all__ = [
    "CSSLOT_ALTERNATE_CODEDIRECTORY_MAX",
    "CSSLOT_ALTERNATE_CODEDIRECTORY_LIMIT",
    "CS_CDHASH_LEN",
    "BlobMagic",
    "SlotType",
    "DecodedBlob",
    "DecodedSuperBlob",
    "cs_blob_magic_to_string",
    "cs_slot_type_to_string",
    "find_code_signature_bounds",
    "read_code_signature",
    "replace_code_signature",
    "extract_cs_to_file",
]

_GENERIC_HEADER = struct.Struct(">II")
_SUPERBLOB_HEADER = struct.Struct(">III")
_BLOB_INDEX = struct.Struct(">II")
_LENGTH = struct.Struct(">I")
_LINKEDIT_DATA = struct.Struct("<IIII")

_CD_HASH_TYPE_OFFSET = 37
CS_CDHASH_LEN = 20

# Least to most preferred hash type.
_RANKED_HASH_TYPES = (1, 3, 2, 4)
_HASHERS = {1: hashlib.sha1, 2: hashlib.sha256, 3: hashlib.sha256, 4: hashlib.sha384}


class BlobMagic(enum.IntEnum):
    REQUIREMENT = 0xFADE0C00
    REQUIREMENTS = 0xFADE0C01
    CODEDIRECTORY = 0xFADE0C02
    EMBEDDED_SIGNATURE = 0xFADE0CC0
    EMBEDDED_SIGNATURE_OLD = 0xFADE0B02
    EMBEDDED_ENTITLEMENTS = 0xFADE7171
    EMBEDDED_DER_ENTITLEMENTS = 0xFADE7172
    DETACHED_SIGNATURE = 0xFADE0CC1
    BLOBWRAPPER = 0xFADE0B01
    EMBEDDED_LAUNCH_CONSTRAINT = 0xFADE8181


class SlotType(enum.IntEnum):
    CODEDIRECTORY = 0
    INFOSLOT = 1
    REQUIREMENTS = 2
    RESOURCEDIR = 3
    APPLICATION = 4
    ENTITLEMENTS = 5
    DER_ENTITLEMENTS = 7
    LAUNCH_CONSTRAINT_SELF = 8
    LAUNCH_CONSTRAINT_PARENT = 9
    LAUNCH_CONSTRAINT_RESPONSIBLE = 10
    LIBRARY_CONSTRAINT = 11
    ALTERNATE_CODEDIRECTORIES = 0x1000
    SIGNATURESLOT = 0x10000
    IDENTIFICATIONSLOT = 0x10001
    TICKETSLOT = 0x10002


CSSLOT_ALTERNATE_CODEDIRECTORY_MAX = 5
CSSLOT_ALTERNATE_CODEDIRECTORY_LIMIT = (
    SlotType.ALTERNATE_CODEDIRECTORIES + CSSLOT_ALTERNATE_CODEDIRECTORY_MAX
)

_MAGIC_NAMES = {
    BlobMagic.REQUIREMENT: "Requirement blob",
    BlobMagic.REQUIREMENTS: "Requirements blob",
    BlobMagic.CODEDIRECTORY: "Code directory blob",
    BlobMagic.EMBEDDED_SIGNATURE: "Embedded signature blob",
    BlobMagic.EMBEDDED_SIGNATURE_OLD: "Embedded signature blob (old)",
    BlobMagic.EMBEDDED_ENTITLEMENTS: "Entitlements blob",
    BlobMagic.EMBEDDED_DER_ENTITLEMENTS: "DER entitlements blob",
    BlobMagic.DETACHED_SIGNATURE: "Detached signature blob",
    BlobMagic.BLOBWRAPPER: "Signature blob",
    BlobMagic.EMBEDDED_LAUNCH_CONSTRAINT: "Launchd contraint blob",
}

_SLOT_NAMES = {
    SlotType.CODEDIRECTORY: "Code directory slot",
    SlotType.INFOSLOT: "Info slot",
    SlotType.REQUIREMENTS: "Requirements slot",
    SlotType.RESOURCEDIR: "Resource Dir slot",
    SlotType.APPLICATION: "Application slot",
    SlotType.ENTITLEMENTS: "Entitlements slot",
    SlotType.DER_ENTITLEMENTS: "DER entitlements slot",
    SlotType.LAUNCH_CONSTRAINT_SELF: "Launch constraint slot (self)",
    SlotType.LAUNCH_CONSTRAINT_PARENT: "Launch constraint slot (parent)",
    SlotType.LAUNCH_CONSTRAINT_RESPONSIBLE: "Launch constraint slot (responsible)",
    SlotType.LIBRARY_CONSTRAINT: "Library constraint slot",
    SlotType.SIGNATURESLOT: "Signature slot",
    SlotType.IDENTIFICATIONSLOT: "Identification slot",
    SlotType.TICKETSLOT: "Ticket slot",
}


def cs_blob_magic_to_string(magic: int) -> str:
    """Return a readable name for a blob magic."""
    return _MAGIC_NAMES.get(magic, "Unknown blob type")


def cs_slot_type_to_string(slot_type: int) -> str:
    """Return a readable name for a superblob slot type."""
    if slot_type & SlotType.ALTERNATE_CODEDIRECTORIES:
        num = slot_type & 0xFFF
        if num < CSSLOT_ALTERNATE_CODEDIRECTORY_MAX:
            return f"Alternate code directory slot ({num + 1})"
        return "Alternate code directory slot (invalid)"
    return _SLOT_NAMES.get(slot_type, "Unknown blob type")


def _hex(value: int) -> str:
    # Matches printf's "%#x", which prints zero without a prefix.
    return f"{value:#x}" if value else "0"


class DecodedBlob:
    """One blob of a superblob, held in an editable, auto-expanding buffer.

    The big-endian length field at offset 4 is kept equal to the blob's size
    after every edit.
    """

    def __init__(self, type: int, data: bytes | bytearray | memoryview) -> None:
        raw = bytes(data)
        if len(raw) < _GENERIC_HEADER.size:
            raise ValueError("blob data is shorter than a blob header")
        _, length = _GENERIC_HEADER.unpack_from(raw)
        if length < _GENERIC_HEADER.size or length > len(raw):
            raise ValueError(f"blob length {length:#x} does not fit the data")
        self.type = int(type)
        self.stream = BufferedStream(raw[:length], auto_expand=True)

    def __repr__(self) -> str:
        return f"DecodedBlob(type={self.type:#x}, size={self.size:#x})"

    @property
    def size(self) -> int:
        return self.stream.size

    def __len__(self) -> int:
        return self.stream.size

    def _fix_length(self) -> None:
        self.stream.write(4, _LENGTH.pack(self.stream.size & 0xFFFFFFFF))

    def read(self, offset: int, size: int) -> bytes:
        """Read *size* bytes at *offset*."""
        return self.stream.read(offset, size)

    def write(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        """Write *data* at *offset*, growing the blob if needed."""
        self.stream.write(offset, data)
        self._fix_length()

    def insert(self, offset: int, data: bytes | bytearray | memoryview) -> None:
        """Insert *data* at *offset*, shifting later bytes."""
        self.stream.insert(offset, data)
        self._fix_length()

    def delete(self, offset: int, size: int) -> None:
        """Remove *size* bytes at *offset*."""
        self.stream.delete(offset, size)
        self._fix_length()

    def read_string(self, offset: int) -> str:
        """Read the NUL-terminated string at *offset*."""
        return self.stream.read_string(offset)

    def write_string(self, offset: int, string: str) -> None:
        """Write *string* and its NUL terminator at *offset*."""
        self.stream.write_string(offset, string)
        self._fix_length()

    def raw_bytes(self) -> bytes:
        """Return the whole blob, header included."""
        return self.stream.raw_bytes()


def _is_code_directory_slot(slot_type: int) -> bool:
    return slot_type == SlotType.CODEDIRECTORY or (
        SlotType.ALTERNATE_CODEDIRECTORIES <= slot_type < CSSLOT_ALTERNATE_CODEDIRECTORY_LIMIT
    )


def _cd_hash_type(blob: DecodedBlob) -> int:
    return blob.read(_CD_HASH_TYPE_OFFSET, 1)[0]


def _cd_rank(blob: DecodedBlob) -> int:
    hash_type = _cd_hash_type(blob)
    if hash_type in _RANKED_HASH_TYPES:
        return _RANKED_HASH_TYPES.index(hash_type) + 1
    return 0


@dataclass
class DecodedSuperBlob:
    """A superblob as an ordered list of decoded blobs."""

    magic: int = BlobMagic.EMBEDDED_SIGNATURE
    blobs: list[DecodedBlob] = field(default_factory=list)

    @classmethod
    def decode(cls, data: bytes | bytearray | memoryview) -> "DecodedSuperBlob":
        """Parse an encoded superblob."""
        raw = bytes(data)
        if len(raw) < _SUPERBLOB_HEADER.size:
            raise ValueError("superblob data is shorter than its header")
        magic, _, count = _SUPERBLOB_HEADER.unpack_from(raw)
        if _SUPERBLOB_HEADER.size + count * _BLOB_INDEX.size > len(raw):
            raise ValueError(f"superblob index of {count} entries does not fit the data")
        blobs = []
        for i in range(count):
            slot_type, offset = _BLOB_INDEX.unpack_from(raw, _SUPERBLOB_HEADER.size + i * _BLOB_INDEX.size)
            if offset >= len(raw):
                raise ValueError(f"blob {i} lies outside the superblob")
            blobs.append(DecodedBlob(slot_type, raw[offset:]))
        return cls(magic, blobs)

    def encode(self) -> bytes:
        """Serialise the superblob with a fresh index and length."""
        datas = [blob.raw_bytes() for blob in self.blobs]
        header_size = _SUPERBLOB_HEADER.size + _BLOB_INDEX.size * len(datas)
        total = header_size + sum(len(d) for d in datas)
        out = bytearray(_SUPERBLOB_HEADER.pack(self.magic, total, len(datas)))
        offset = header_size
        for blob, data in zip(self.blobs, datas):
            out += _BLOB_INDEX.pack(blob.type, offset)
            offset += len(data)
        for data in datas:
            out += data
        return bytes(out)

    def find_blob(self, type: int) -> DecodedBlob | None:
        """Return the first blob of slot *type*, or None."""
        return next((blob for blob in self.blobs if blob.type == type), None)

    def insert_blob_at_index(self, blob: DecodedBlob, index: int) -> None:
        """Insert at the front when *index* is 0, otherwise after the blob now at *index*."""
        if index == 0:
            self.blobs.insert(0, blob)
            return
        if not 0 < index < len(self.blobs):
            raise IndexError(f"no blob at index {index}")
        self.blobs.insert(index + 1, blob)

    def append_blob(self, blob: DecodedBlob) -> None:
        """Add *blob* at the end."""
        self.blobs.append(blob)

    def remove_blob(self, blob: DecodedBlob) -> None:
        """Remove *blob* itself (compared by identity)."""
        for i, candidate in enumerate(self.blobs):
            if candidate is blob:
                del self.blobs[i]
                return
        raise ValueError("blob is not part of this superblob")

    def remove_blob_at_index(self, index: int) -> None:
        """Remove the blob at *index*."""
        if not 0 <= index < len(self.blobs):
            raise IndexError(f"no blob at index {index}")
        del self.blobs[index]

    def find_best_code_directory(self) -> DecodedBlob | None:
        """Return the code directory with the most preferred hash type."""
        best, best_rank = None, 0
        for blob in self.blobs:
            if _is_code_directory_slot(blob.type):
                rank = _cd_rank(blob)
                if rank > best_rank:
                    best, best_rank = blob, rank
        return best

    def calculate_best_cdhash(self) -> tuple[bytes, int]:
        """Return ``(cdhash, hash_type)`` of the best code directory."""
        blob = self.find_best_code_directory()
        if blob is None:
            raise ValueError("superblob holds no code directory with a known hash type")
        hash_type = _cd_hash_type(blob)
        digest = _HASHERS[hash_type](blob.raw_bytes()).digest()
        return digest[:CS_CDHASH_LEN], hash_type

    def print_content(self, macho: MachO | None, print_all_slots: bool, verify_slots: bool) -> None:
        """Print a description of every slot to standard output."""
        offset = 0
        for count, blob in enumerate(self.blobs):
            print(
                f"Slot {count}: {cs_slot_type_to_string(blob.type)} "
                f"(offset 0x{offset:x}, type: 0x{blob.type:x})."
            )
            if blob.type in (SlotType.CODEDIRECTORY, SlotType.ALTERNATE_CODEDIRECTORIES):
                from . import code_directory

                code_directory.print_content(blob, macho, print_all_slots, verify_slots)
            else:
                magic, _ = _GENERIC_HEADER.unpack(blob.read(0, _GENERIC_HEADER.size))
                print(f"This is the {cs_blob_magic_to_string(magic)}, magic {_hex(magic)}.")
            offset += blob.size


def _superblob_bytes(superblob: bytes | bytearray | memoryview | DecodedSuperBlob) -> bytes:
    raw = superblob.encode() if isinstance(superblob, DecodedSuperBlob) else bytes(superblob)
    if len(raw) < _SUPERBLOB_HEADER.size:
        raise ValueError("superblob data is shorter than its header")
    length = _LENGTH.unpack_from(raw, 4)[0]
    if length > len(raw):
        raise ValueError(f"superblob length {length:#x} exceeds its data")
    return raw[:length]


def find_code_signature_bounds(macho: MachO) -> tuple[int, int]:
    """Return ``(offset, size)`` of the code signature named by LC_CODE_SIGNATURE."""
    for command in macho.load_commands():
        if command.cmd == LC_CODE_SIGNATURE and len(command.data) >= _LINKEDIT_DATA.size:
            _, _, dataoff, datasize = _LINKEDIT_DATA.unpack_from(command.data)
            return dataoff, datasize
    raise MachOError("image has no code signature load command")


def read_code_signature(macho: MachO) -> bytes:
    """Return the raw encoded code signature superblob."""
    offset, size = find_code_signature_bounds(macho)
    try:
        return macho.read_at_offset(offset, size)
    except StreamError as exc:
        raise MachOError(f"cannot read code signature at {offset:#x}") from exc


def replace_code_signature(
    macho: MachO, superblob: bytes | bytearray | memoryview | DecodedSuperBlob
) -> None:
    """Write *superblob* over the current signature, keeping the trailing padding."""
    raw = _superblob_bytes(superblob)
    cs_offset, _ = find_code_signature_bounds(macho)
    stream = macho.stream
    try:
        old_size = _LENGTH.unpack(stream.read(cs_offset + 4, 4))[0]
    except StreamError as exc:
        raise MachOError("cannot read the current code signature length") from exc
    new_size = len(raw)
    free_space = stream.size - cs_offset
    padding = free_space - old_size
    if padding < 0:
        raise MachOError("current code signature extends past the end of the file")
    if new_size < free_space:
        stream.trim(0, free_space)
    macho.write_at_offset(cs_offset, raw)
    if padding:
        macho.write_at_offset(cs_offset + new_size, bytes(padding))


def extract_cs_to_file(
    superblob: bytes | bytearray | memoryview | DecodedSuperBlob,
    path: str | os.PathLike = "Code_Signature-Data",
) -> None:
    """Write the encoded superblob to *path*."""
    raw = _superblob_bytes(superblob)
    with open(path, "wb") as handle:
        handle.write(raw)