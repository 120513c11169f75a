import pytest

from machkit import loader
from machkit.loader import (
    LC_CODE_SIGNATURE,
    LC_DYLD_INFO,
    LC_DYLD_INFO_ONLY,
    LC_MAIN,
    LC_REQ_DYLD,
    LC_SEGMENT_64,
    load_command_to_string,
)

_NAMES = [name for name in loader.__all__ if name.startswith("LC_") and name != "LC_REQ_DYLD"]


@pytest.mark.parametrize("name", _NAMES)
def test_every_constant_maps_to_its_name(name):
    assert load_command_to_string(getattr(loader, name)) == name


def test_constants_map_to_distinct_names():
    names = [load_command_to_string(getattr(loader, name)) for name in _NAMES]
    assert len(set(names)) == len(_NAMES)
    assert "LC_UNKNOWN" not in names


def test_segment_64_and_code_signature():
    assert load_command_to_string(LC_SEGMENT_64) == "LC_SEGMENT_64"
    assert load_command_to_string(LC_CODE_SIGNATURE) == "LC_CODE_SIGNATURE"


def test_req_dyld_bit_distinguishes_commands():
    assert LC_DYLD_INFO_ONLY == LC_DYLD_INFO | LC_REQ_DYLD
    assert load_command_to_string(LC_DYLD_INFO) == "LC_DYLD_INFO"
    assert load_command_to_string(LC_DYLD_INFO_ONLY) == "LC_DYLD_INFO_ONLY"
    assert LC_MAIN & LC_REQ_DYLD


def test_signed_value_is_treated_as_32_bit():
    signed_main = LC_MAIN - (1 << 32)
    assert load_command_to_string(signed_main) == "LC_MAIN"


@pytest.mark.parametrize("cmd", [0, 0x7777, LC_REQ_DYLD])
def test_unknown_commands(cmd):
    assert load_command_to_string(cmd) == "LC_UNKNOWN"