import pytest

from machkit.memory_stream import BufferedStream, StreamError, StreamFlag


def test_read_returns_requested_bytes():
    stream = BufferedStream(b"abcdef")
    assert stream.read(2, 3) == b"cde"
    assert len(stream) == 6


def test_read_out_of_bounds_raises():
    stream = BufferedStream(b"abc")
    with pytest.raises(StreamError):
        stream.read(2, 2)


def test_write_in_bounds():
    stream = BufferedStream(b"abcdef")
    stream.write(1, b"XY")
    assert stream.raw_bytes() == b"aXYdef"


def test_write_past_end_without_auto_expand_raises():
    stream = BufferedStream(b"abc")
    with pytest.raises(StreamError):
        stream.write(2, b"XY")
    assert stream.raw_bytes() == b"abc"


def test_write_past_end_with_auto_expand_grows_with_zero_fill():
    stream = BufferedStream(b"abc", auto_expand=True)
    stream.write(5, b"Z")
    assert stream.raw_bytes() == b"abc\x00\x00Z"
    assert stream.size == 6


def test_flags_of_buffered_stream():
    expanding = BufferedStream(b"abc", auto_expand=True)
    assert expanding.flags == (
        StreamFlag.MUTABLE | StreamFlag.OWNS_DATA | StreamFlag.AUTO_EXPAND
    )
    fixed = BufferedStream(b"abc")
    assert fixed.flags == StreamFlag.MUTABLE | StreamFlag.OWNS_DATA


def test_nocopy_does_not_own_until_written():
    source = bytearray(b"abcdef")
    stream = BufferedStream.from_buffer_nocopy(source)
    assert not stream.flags & StreamFlag.OWNS_DATA
    stream.write(0, b"Q")
    assert stream.flags & StreamFlag.OWNS_DATA
    assert stream.raw_bytes() == b"Qbcdef"
    assert source == bytearray(b"abcdef")


def test_nocopy_accepts_immutable_bytes():
    stream = BufferedStream.from_buffer_nocopy(b"hello")
    stream.write(4, b"!")
    assert stream.raw_bytes() == b"hell!"


def test_trim_too_much_raises():
    stream = BufferedStream(b"0123")
    with pytest.raises(StreamError):
        stream.trim(3, 2)


def test_expand_pads_with_zeroes():
    stream = BufferedStream(b"ab")
    stream.expand(2, 1)
    assert stream.raw_bytes() == b"\x00\x00ab\x00"


def test_write_after_trim_uses_trimmed_offsets():
    stream = BufferedStream(b"0123456789")
    stream.trim(4, 0)
    stream.write(0, b"X")
    assert stream.raw_bytes() == b"X56789"


def test_insert_and_delete_round_trip():
    stream = BufferedStream(b"hello world")
    stream.insert(5, b",")
    assert stream.raw_bytes() == b"hello, world"
    stream.delete(5, 1)
    assert stream.raw_bytes() == b"hello world"


def test_insert_at_end_appends():
    stream = BufferedStream(b"abc")
    stream.insert(3, b"def")
    assert stream.raw_bytes() == b"abcdef"


def test_insert_beyond_end_raises():
    stream = BufferedStream(b"abc")
    with pytest.raises(StreamError):
        stream.insert(4, b"x")


def test_insert_on_immutable_stream_raises():
    stream = BufferedStream(b"abc")
    stream.flags &= ~StreamFlag.MUTABLE
    with pytest.raises(StreamError):
        stream.insert(0, b"x")


def test_delete_zero_bytes_leaves_stream_alone():
    stream = BufferedStream(b"abc")
    stream.delete(1, 0)
    assert stream.raw_bytes() == b"abc"


def test_delete_out_of_bounds_raises():
    stream = BufferedStream(b"abc")
    with pytest.raises(StreamError):
        stream.delete(2, 5)


def test_string_round_trip():
    stream = BufferedStream(bytes(16))
    stream.write_string(3, "team")
    assert stream.read_string(3) == "team"
    assert stream.read(7, 1) == b"\x00"


def test_read_string_without_terminator_raises():
    stream = BufferedStream(b"abc")
    with pytest.raises(StreamError):
        stream.read_string(0)


def test_soft_clone_shares_data_until_clone_writes():
    original = BufferedStream(b"abcdef")
    clone = original.soft_clone()
    assert not clone.flags & StreamFlag.OWNS_DATA
    original.write(0, b"X")
    assert clone.read(0, 1) == b"X"
    clone.write(1, b"Y")
    assert original.read(1, 1) == b"b"
    assert clone.raw_bytes() == b"XYcdef"


def test_soft_clone_trim_is_independent():
    original = BufferedStream(b"abcdef")
    clone = original.soft_clone()
    clone.trim(2, 0)
    assert clone.raw_bytes() == b"cdef"
    assert original.raw_bytes() == b"abcdef"


def test_hard_clone_is_independent():
    original = BufferedStream(b"abcdef")
    clone = original.hard_clone()
    assert clone.flags & StreamFlag.OWNS_DATA
    original.write(0, b"Z")
    assert clone.raw_bytes() == b"abcdef"


def test_copy_data_between_streams():
    source = BufferedStream(b"0123456789")
    target = BufferedStream(bytes(10))
    source.copy_data(2, target, 4, 3)
    assert target.read(4, 3) == b"234"


def test_copy_data_origin_out_of_bounds_raises():
    source = BufferedStream(b"0123")
    target = BufferedStream(bytes(10))
    with pytest.raises(StreamError):
        source.copy_data(2, target, 0, 3)


def test_overlapping_forward_shift_larger_than_chunk():
    original = bytes(range(256)) * 0x90
    stream = BufferedStream(original)
    shift = 0x10
    stream.copy_data(0, stream, shift, len(original) - shift)
    assert stream.raw_bytes() == original[:shift] + original[:-shift]


def test_overlapping_backward_shift_larger_than_chunk():
    original = bytes(range(256)) * 0x90
    stream = BufferedStream(original)
    shift = 0x10
    stream.copy_data(shift, stream, 0, len(original) - shift)
    assert stream.raw_bytes() == original[shift:] + original[-shift:]


def test_find_memory_forward():
    stream = BufferedStream(b"xxABxxABxx")
    assert stream.find_memory(0, 10, b"AB") == 2
    assert stream.find_memory(3, 10, b"AB") == 6


def test_find_memory_with_mask():
    stream = BufferedStream(b"\x00\x12\x34\x00")
    assert stream.find_memory(0, 4, b"\x10\x34", b"\xf0\xff") == 1


def test_find_memory_backwards():
    stream = BufferedStream(b"ABxxABxx")
    assert stream.find_memory(7, 0, b"AB") == 4


def test_find_memory_missing_returns_none():
    stream = BufferedStream(b"abcdef")
    assert stream.find_memory(0, 6, b"zz") is None


def test_find_memory_mask_length_mismatch_raises():
    stream = BufferedStream(b"abcdef")
    with pytest.raises(ValueError):
        stream.find_memory(0, 6, b"ab", b"\xff")