"""Read, inspect and edit Mach-O binaries, FAT containers and code signatures."""

__version__ = "0.1.0"

__all__ = [
    "b64",
    "memory_stream",
    "file_stream",
    "loader",
    "macho",
    "fat",
    "host",
    "segments",
    "cs_blob",
    "code_directory",
]