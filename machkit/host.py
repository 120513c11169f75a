"""Choosing the slice of a FAT binary that a host would load."""

from __future__ import annotations

import logging
import os

from .fat import FAT
from .macho import MH_EXECUTE, MachO

__all__ = [
    "CPU_TYPE_ARM64",
    "CPU_SUBTYPE_ARM64_ALL",
    "CPU_SUBTYPE_ARM64_V8",
    "CPU_SUBTYPE_ARM64E",
    "CPU_SUBTYPE_ARM64E_ABI_V2",
    "supported_arm64e_abi",
    "find_preferred_slice",
]

log = logging.getLogger(__name__)

CPU_TYPE_ARM64 = 0x0100000C
CPU_SUBTYPE_ARM64_ALL = 0
CPU_SUBTYPE_ARM64_V8 = 1
CPU_SUBTYPE_ARM64E = 2
CPU_SUBTYPE_ARM64E_ABI_V2 = 0x80000000

_NEW_ABI_RELEASE = "20.0.0"
_U32 = 0xFFFFFFFF


def supported_arm64e_abi(release: str | None = None) -> int:
    """Return 2 for the new arm64e ABI, 1 for the old one, -1 if unknown.

    *release* is a kernel release string; by default the running kernel's.
    The comparison is a plain string comparison against ``"20.0.0"``.
    """
    if release is None:
        try:
            release = os.uname().release
        except (AttributeError, OSError):
            return -1
    return 2 if release >= _NEW_ABI_RELEASE else 1


def find_preferred_slice(
    fat: FAT,
    cputype: int,
    cpusubtype: int,
    arm64e_abi: int | None = None,
) -> MachO | None:
    """Return the slice the kernel would pick on a host of this CPU type."""
    cputype &= _U32
    cpusubtype &= _U32
    preferred: MachO | None = None

    if cputype == CPU_TYPE_ARM64:
        if cpusubtype == CPU_SUBTYPE_ARM64E:
            abi = supported_arm64e_abi() if arm64e_abi is None else arm64e_abi
            if abi != -1:
                if abi == 2:
                    preferred = fat.find_slice(cputype, CPU_SUBTYPE_ARM64E | CPU_SUBTYPE_ARM64E_ABI_V2)
                if preferred is None:
                    preferred = fat.find_slice(cputype, CPU_SUBTYPE_ARM64E)
                    # An old-ABI executable cannot run on a new-ABI system,
                    # though an old-ABI library can still be loaded there.
                    if preferred is not None and preferred.header.filetype == MH_EXECUTE and abi == 2:
                        preferred = None

        if preferred is None:
            preferred = fat.find_slice(cputype, CPU_SUBTYPE_ARM64_V8)
            if preferred is None:
                preferred = fat.find_slice(cputype, CPU_SUBTYPE_ARM64_ALL)

    if preferred is None:
        log.error("failed to find a preferred MachO slice that matches the host architecture")
    return preferred