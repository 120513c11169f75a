# machkit

A pure-Python library for working with Mach-O binaries. It can:

- open single-architecture Mach-O files and FAT (universal) containers;
- walk load commands, 64-bit segments, symbols, dylib dependencies and rpaths;
- translate between file offsets and virtual addresses;
- decode, edit and re-encode embedded code signature superblobs;
- inspect CodeDirectory blobs: read and change the identifier's team ID,
  flags and hash type, compute and verify page hashes, and calculate cdhashes.

It uses only the standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `machkit.memory_stream` | `MemoryStream` (abstract), `BufferedStream`, `StreamFlag`, `StreamError` |
| `machkit.file_stream` | `FileStream`, `FileStreamFlag` |
| `machkit.loader` | `LC_*` load command constants, `load_command_to_string` |
| `machkit.macho` | `MachO`, `MachHeader`, `FatArch`, `Segment`, `Section`, `LoadCommand`, `FilesetMachO`, `MachOError` |
| `machkit.fat` | `FAT`, `macho_array_create_for_paths` |
| `machkit.host` | `supported_arm64e_abi`, `find_preferred_slice`, CPU type constants |
| `machkit.segments` | `update_segment_command_64`, `update_lc_code_signature`, `update_load_commands_for_coretrust_bypass` |
| `machkit.cs_blob` | `DecodedBlob`, `DecodedSuperBlob`, `BlobMagic`, `SlotType`, signature read/replace helpers |
| `machkit.code_directory` | `CodeDirectoryHeader`, `HashType` and functions over CodeDirectory blobs |
| `machkit.b64` | `base64_encode` |

## Usage

### Opening a binary

```python
from machkit.fat import FAT
from machkit.host import CPU_TYPE_ARM64, CPU_SUBTYPE_ARM64_ALL

fat = FAT.from_path("MyApp")
macho = fat.find_slice(CPU_TYPE_ARM64, CPU_SUBTYPE_ARM64_ALL)   # None if absent

if macho is not None:
    for path, cmd, versions in macho.dependencies():
        print(path)
    for name, n_type, vmaddr in macho.symbols():
        print(name, hex(vmaddr))
    print("encrypted:", macho.is_encrypted())
```

A thin (non-FAT) file is presented as a `FAT` with a single slice.
`machkit.host.find_preferred_slice(fat, cputype, cpusubtype, arm64e_abi)`
chooses the slice a kernel would load for the given CPU type and subtype;
when `arm64e_abi` is omitted it is derived from the running kernel's release
string via `supported_arm64e_abi()`.

### Streams

Every parser reads through a `MemoryStream`. `BufferedStream` keeps its data
in memory; `FileStream` reads and writes a window of a file through its
descriptor and can be used as a context manager.

```python
from machkit.memory_stream import BufferedStream

stream = BufferedStream(b"hello world", auto_expand=True)
stream.insert(5, b",")
print(stream.read(0, stream.size))   # b'hello, world'
```

Streams also support `delete`, `trim`, `expand`, `read_string`,
`write_string`, `copy_data`, `soft_clone`, `hard_clone` and a masked,
aligned `find_memory` search.

### Code signatures

```python
from machkit.cs_blob import read_code_signature, DecodedSuperBlob
from machkit import code_directory

superblob = DecodedSuperBlob.decode(read_code_signature(macho))

cd = superblob.find_best_code_directory()
if cd is not None:
    print(code_directory.copy_identifier(cd))
    print(code_directory.copy_team_id(cd))
    print(superblob.calculate_best_cdhash())   # (cdhash, hash_type)

    code_directory.set_team_id(cd, "TEAMID0000")

new_blob = superblob.encode()
```

`superblob.print_content(macho, print_all_slots, verify_slots)` and
`code_directory.print_content(...)` print a description of the signature to
standard output, optionally checking each page hash against the binary.
`code_directory.update(cd, macho)` rewrites the page hashes with SHA-256.

### Editing a binary in place

`MachO.for_writing(path)` opens a single-slice 64-bit binary for reading and
writing. After changing a signature, call
`machkit.segments.update_load_commands_for_coretrust_bypass(macho, new_blob,
original_code_signature_size, original_macho_size)` to bring `__LINKEDIT`
and `LC_CODE_SIGNATURE` in line with the new size, and
`machkit.cs_blob.replace_code_signature(macho, new_blob)` to write it back.
`machkit.cs_blob.extract_cs_to_file(superblob, path)` saves an encoded
superblob to a file.

## Errors

Failed reads, writes, bounds checks and parse failures raise `StreamError`
(from `machkit.memory_stream`) or `MachOError` (from `machkit.macho`).
Malformed blob data and bad indices in `machkit.cs_blob` raise `ValueError`
or `IndexError`. Lookups that may simply find nothing (`find_slice`,
`find_blob`, `find_memory`, `copy_team_id` and the like) return `None`.

## What it does not do

- There is no command-line tool; it is a library only.
- It does not create or verify CMS signatures, or sign binaries with a
  certificate; it only reads and rewrites the signature data it is given.
- It does not disassemble code or search for instruction patterns beyond
  the byte-level `find_memory`.
- Only 64-bit (`LC_SEGMENT_64`) segments are parsed into `MachO.segments`.