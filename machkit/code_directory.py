"""Reading, editing and verifying code directory blobs."""

from __future__ import annotations

import enum
import hashlib
import struct
from dataclasses import astuple, dataclass

from .cs_blob import CS_CDHASH_LEN, DecodedBlob, find_code_signature_bounds
from .macho import MachO, MachOError
from .memory_stream import StreamError

__all__ = [
    "CODE_DIRECTORY_HEADER_SIZE",
    "HashType",
    "CodeDirectoryHeader",
    "hash_type_to_string",
    "slot_to_string",
    "read_header",
    "read_slot_hash",
    "calculate_page_hash",
    "verify_code_slot",
    "verify_code_slots",
    "copy_identifier",
    "copy_team_id",
    "set_team_id",
    "get_flags",
    "set_flags",
    "get_hash_type",
    "set_hash_type",
    "calculate_rank",
    "calculate_hash",
    "print_content",
    "update",
]

_HEADER = struct.Struct(">9I4BIII")
CODE_DIRECTORY_HEADER_SIZE = _HEADER.size
_FLAGS_OFFSET = 12
_HASH_TYPE_OFFSET = 37
_SCATTER_VERSION = 0x20100
_UPDATE_PAGE_SIZE = 0x1000


class HashType(enum.IntEnum):
    SHA160_160 = 1
    SHA256_256 = 2
    SHA256_160 = 3
    SHA384_384 = 4


# Least to most preferred.
_RANKED_HASH_TYPES = (
    HashType.SHA160_160,
    HashType.SHA256_160,
    HashType.SHA256_256,
    HashType.SHA384_384,
)

_HASHERS = {
    HashType.SHA160_160: hashlib.sha1,
    HashType.SHA256_256: hashlib.sha256,
    HashType.SHA256_160: hashlib.sha256,
    HashType.SHA384_384: hashlib.sha384,
}

_HASH_TYPE_NAMES = {
    HashType.SHA160_160: "SHA-1 160",
    HashType.SHA256_256: "SHA-2 256",
    HashType.SHA256_160: "SHA-2 160",
    HashType.SHA384_384: "SHA-3 384",
}

_SLOT_NAMES = {
    -11: "Loaded library launch constraints hash",
    -10: "Responsible process launch constraints hash",
    -9: "Parent process launch constraints hash",
    -8: "Process launch constraints hash",
    -7: "DER entitlements hash",
    -6: "DMG signature hash",
    -5: "Entitlements hash",
    -4: "App-specific hash",
    -3: "CodeResources hash",
    -2: "Requirements blob hash",
    -1: "Info.plist hash",
}


@dataclass
class CodeDirectoryHeader:
    """The fixed header at the start of a code directory blob."""

    magic: int
    length: int
    version: int
    flags: int
    hash_offset: int
    ident_offset: int
    n_special_slots: int
    n_code_slots: int
    code_limit: int
    hash_size: int
    hash_type: int
    platform: int
    page_size: int
    spare2: int
    scatter_offset: int
    team_offset: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "CodeDirectoryHeader":
        return cls(*_HEADER.unpack(bytes(data[: _HEADER.size]).ljust(_HEADER.size, b"\x00")))

    def to_bytes(self) -> bytes:
        return _HEADER.pack(*astuple(self))


def hash_type_to_string(hash_type: int) -> str:
    """Return a readable name for a code directory hash type."""
    return _HASH_TYPE_NAMES.get(hash_type, "Unknown blob type")


def slot_to_string(slot: int) -> str:
    """Return a readable name for a (special or code) slot number."""
    return _SLOT_NAMES.get(slot, "Page hash")


def read_header(blob: DecodedBlob) -> CodeDirectoryHeader:
    """Parse the header of *blob*; bytes missing from a short blob read as zero."""
    return CodeDirectoryHeader.from_bytes(blob.raw_bytes())


def read_slot_hash(blob: DecodedBlob, slot: int) -> bytes:
    """Return the stored hash of *slot*; special slots are negative."""
    header = read_header(blob)
    return blob.read(header.hash_offset + slot * header.hash_size, header.hash_size)


def calculate_page_hash(blob: DecodedBlob, macho: MachO, slot: int) -> bytes | None:
    """Hash the page of *macho* that code slot *slot* covers.

    The last code slot covers only up to the code signature. Returns None when
    the page cannot be read or the hash type is unknown.
    """
    header = read_header(blob)
    page_size = 1 << header.page_size
    page_offset = slot * page_size

    if slot == header.n_code_slots - 1:
        try:
            cs_offset, _ = find_code_signature_bounds(macho)
        except MachOError:
            return None
        if page_offset > cs_offset:
            return None
        page_size = cs_offset - page_offset

    if page_offset < 0 or page_offset + page_size > macho.stream.size:
        return None
    try:
        page = macho.read_at_offset(page_offset, page_size)
    except StreamError:
        return None

    try:
        hash_type = HashType(header.hash_type)
    except ValueError:
        return None
    digest = _HASHERS[hash_type](page).digest()
    if hash_type is HashType.SHA160_160:
        return digest
    return digest[: header.hash_size]


def verify_code_slot(blob: DecodedBlob, macho: MachO, slot: int) -> bool:
    """Whether the stored hash of *slot* matches the page it covers."""
    page_hash = calculate_page_hash(blob, macho, slot)
    if page_hash is None:
        return False
    return read_slot_hash(blob, slot) == page_hash


def verify_code_slots(blob: DecodedBlob, macho: MachO) -> bool:
    """Whether every code slot matches its page."""
    header = read_header(blob)
    return all(verify_code_slot(blob, macho, slot) for slot in range(header.n_code_slots))


def copy_identifier(blob: DecodedBlob) -> str | None:
    """Return the signing identifier, or None if the blob has none."""
    header = read_header(blob)
    if header.ident_offset == 0:
        return None
    return blob.read_string(header.ident_offset)


def copy_team_id(blob: DecodedBlob) -> str | None:
    """Return the team identifier, or None if the blob has none."""
    header = read_header(blob)
    if header.team_offset == 0:
        return None
    return blob.read_string(header.team_offset)


def set_team_id(blob: DecodedBlob, team_id: str) -> None:
    """Replace the team identifier, or place one right after the identifier.

    Hash and scatter offsets lying after the team identifier are shifted.
    Raises ValueError if the blob has neither a team identifier nor an
    identifier to place one after.
    """
    header = read_header(blob)
    new_team = team_id.encode("utf-8") + b"\x00"

    shift = 0
    initial_team_offset = 0
    previous = copy_team_id(blob)
    if previous is not None:
        initial_team_offset = header.team_offset
        previous_size = len(previous.encode("utf-8")) + 1
        blob.delete(initial_team_offset, previous_size)
        shift -= previous_size

    if initial_team_offset:
        header.team_offset = initial_team_offset
    else:
        identity = copy_identifier(blob)
        if identity is None:
            raise ValueError("code directory has no identifier to place a team ID after")
        header.team_offset = header.ident_offset + len(identity.encode("utf-8")) + 1

    blob.insert(header.team_offset, new_team)
    shift += len(new_team)

    if header.hash_offset != 0 and header.hash_offset > initial_team_offset:
        header.hash_offset += shift
    if header.scatter_offset != 0 and header.scatter_offset > initial_team_offset:
        header.scatter_offset += shift

    blob.write(0, header.to_bytes())


def get_flags(blob: DecodedBlob) -> int:
    """Return the code directory flags."""
    return int.from_bytes(blob.read(_FLAGS_OFFSET, 4), "big")


def set_flags(blob: DecodedBlob, flags: int) -> None:
    """Set the code directory flags."""
    blob.write(_FLAGS_OFFSET, (flags & 0xFFFFFFFF).to_bytes(4, "big"))


def get_hash_type(blob: DecodedBlob) -> int:
    """Return the hash type byte."""
    return blob.read(_HASH_TYPE_OFFSET, 1)[0]


def set_hash_type(blob: DecodedBlob, hash_type: int) -> None:
    """Set the hash type byte."""
    blob.write(_HASH_TYPE_OFFSET, bytes([hash_type & 0xFF]))


def calculate_rank(blob: DecodedBlob) -> int:
    """Rank of the hash type, 1 (least preferred) to 4; 0 if unknown."""
    hash_type = get_hash_type(blob)
    if hash_type in _RANKED_HASH_TYPES:
        return _RANKED_HASH_TYPES.index(hash_type) + 1
    return 0


def calculate_hash(blob: DecodedBlob) -> bytes:
    """Return the cdhash: the blob's digest cut to 20 bytes."""
    try:
        hash_type = HashType(get_hash_type(blob))
    except ValueError as exc:
        raise ValueError("code directory has an unknown hash type") from exc
    return _HASHERS[hash_type](blob.raw_bytes()).digest()[:CS_CDHASH_LEN]


def _digits(value: int) -> int:
    return len(str(value))


def print_content(
    blob: DecodedBlob, macho: MachO | None, print_slots: bool, verify_slots: bool
) -> None:
    """Print the header and, if asked, the slot hashes and their verification."""
    header = read_header(blob)

    print("Code directory:")
    print(f"\tMagic: 0x{header.magic:X}")
    print(f"\tLength: 0x{header.length:x}")
    print(f"\tVersion: 0x{header.version:x}")
    print(f"\tFlags: 0x{header.flags:x}")
    print(f"\tHash offset: 0x{header.hash_offset:x}")

    identifier = copy_identifier(blob)
    if identifier is not None:
        print(f'\tIdentifier: "{identifier}" (@ 0x{header.ident_offset:x})')

    print(f"\tNumber of special slots: {header.n_special_slots}")
    print(f"\tNumber of code slots: {header.n_code_slots}")
    print(f"\tCode limit: 0x{header.code_limit:x}")
    print(f"\tHash size: 0x{header.hash_size:x}")
    print(f"\tHash type: {hash_type_to_string(header.hash_type)}")
    print(f"\tPlatform: {header.platform}")
    print(f"\tPage size: 0x{header.page_size:x}")

    if header.version >= _SCATTER_VERSION:
        print(f"\tScatter offset: 0x{header.scatter_offset:x}")
        team_id = copy_team_id(blob)
        if team_id is not None:
            print(f'\tTeam ID: "{team_id}" (@ 0x{header.team_offset:x})')

    print()
    max_digits = _digits(header.n_code_slots)
    all_correct = True

    for slot in range(-header.n_special_slots, header.n_code_slots):
        slot_hash = read_slot_hash(blob, slot)
        needs_newline = False
        if print_slots or verify_slots:
            needs_newline = True
            padding = " " * max(0, max_digits - _digits(slot))
            print(f"{padding}{slot}: {slot_hash.hex()}", end="")
            if any(slot_hash):
                print(f" ({slot_to_string(slot)})", end="")
            print()

        if verify_slots and slot >= 0:
            needs_newline = True
            page_hash = None if macho is None else calculate_page_hash(blob, macho, slot)
            if page_hash is not None and page_hash == slot_hash:
                print(" \u2705", end="")
            else:
                all_correct = False
                if page_hash is None:
                    print(" \u274c  (unable to calculate, probably EOF?)", end="")
                else:
                    print(f" \u274c  (should be: {page_hash.hex()})", end="")
            print()

        if needs_newline:
            print("\n")

    if verify_slots:
        if all_correct:
            print("All page hashes are valid!")
        else:
            print("Some page hashes are invalid!")


def update(blob: DecodedBlob, macho: MachO) -> None:
    """Rehash every full 4 KiB page before the signature's last page with SHA-256."""
    header = read_header(blob)
    cs_offset, _ = find_code_signature_bounds(macho)
    final_boundary = -(-cs_offset // _UPDATE_PAGE_SIZE) * _UPDATE_PAGE_SIZE
    page_count = final_boundary // _UPDATE_PAGE_SIZE - 1

    for page_number in range(page_count):
        page_offset = page_number * _UPDATE_PAGE_SIZE
        page_length = min(_UPDATE_PAGE_SIZE, final_boundary - page_offset)
        try:
            page = macho.read_at_offset(page_offset, page_length)
        except StreamError:
            page = bytes(page_length)
        digest = hashlib.sha256(page).digest()
        blob.write(
            header.hash_offset + page_number * header.hash_size,
            digest[: header.hash_size],
        )