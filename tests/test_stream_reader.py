import hashlib
import io

import pytest

from git_index import (
    IndexIOError,
    StreamReader,
    UnexpectedEOFError,
    encode_offset_delta,
    read_offset_delta,
)
from index_builder import PipeReader


def test_known_answer_digest() -> None:
    reader = StreamReader(io.BytesIO(b'abc'))
    assert reader.read_exact(3) == b'abc'
    assert reader.digest().hex() == 'a9993e364706816aba3e25717850c26c9cd0d89d'


def test_read_exact_tracks_offset() -> None:
    reader = StreamReader(io.BytesIO(b'0123456789'))
    assert reader.read_exact(4) == b'0123'
    assert reader.read_byte() == ord('4')
    assert reader.offset == 5


def test_short_read_reports_offset_and_expected_size() -> None:
    reader = StreamReader(io.BytesIO(b'0123456789'))
    reader.read_exact(8)
    with pytest.raises(IndexIOError) as excinfo:
        reader.read_exact(4)
    assert excinfo.value.offset == 8
    assert excinfo.value.expected == 4
    assert excinfo.value.got == 2


def test_read_byte_at_eof() -> None:
    reader = StreamReader(io.BytesIO(b'x'))
    assert reader.read_byte() == ord('x')
    assert reader.read_byte() is None
    assert reader.offset == 1


def test_skip_digests_like_a_read() -> None:
    data = bytes(range(256)) * 40
    skipped = StreamReader(io.BytesIO(data))
    skipped.skip(len(data) - 1)
    skipped.read_exact(1)
    assert skipped.offset == len(data)
    assert skipped.digest() == hashlib.sha1(data).digest()


def test_skip_past_end() -> None:
    reader = StreamReader(io.BytesIO(b'12345'))
    with pytest.raises(IndexIOError) as excinfo:
        reader.skip(10)
    assert excinfo.value.got == 5


def test_read_until_consumes_terminator() -> None:
    reader = StreamReader(io.BytesIO(b'dir/file\0rest'))
    assert reader.read_until(b'\0') == b'dir/file'
    assert reader.offset == 9
    assert reader.read_exact(4) == b'rest'


def test_read_until_without_terminator() -> None:
    reader = StreamReader(io.BytesIO(b'no terminator'))
    with pytest.raises(UnexpectedEOFError):
        reader.read_until(b'\0')


def test_trailer_is_not_digested() -> None:
    reader = StreamReader(io.BytesIO(b'abc' + b'\xff' * 20))
    reader.read_exact(3)
    assert reader.available(21) == 20
    assert reader.read_trailer(20) == b'\xff' * 20
    assert reader.offset == 23
    assert reader.digest() == hashlib.sha1(b'abc').digest()


def test_short_trailer() -> None:
    reader = StreamReader(io.BytesIO(b'\x01' * 7))
    with pytest.raises(IndexIOError):
        reader.read_trailer(20)


def test_pipe_input_reads_in_small_pieces() -> None:
    data = b'header\0' + b'z' * 50
    reader = StreamReader(PipeReader(data, step=2))
    assert reader.read_until(b'\0') == b'header'
    assert reader.available(100) == 50
    reader.skip(50)
    assert reader.available(1) == 0
    assert reader.digest() == hashlib.sha1(data).digest()


@pytest.mark.parametrize(
    'encoded, value',
    [
        (b'\x00', 0),
        (b'\x7f', 127),
        (b'\x80\x00', 128),
        (b'\xff\x7f', 16511),
        (b'\x80\x80\x00', 16512),
    ],
)
def test_offset_delta_known_values(encoded: bytes, value: int) -> None:
    reader = StreamReader(io.BytesIO(encoded))
    assert read_offset_delta(reader) == value
    assert reader.offset == len(encoded)
    assert encode_offset_delta(value) == encoded


@pytest.mark.parametrize('value', [1, 255, 2**14, 2**21 + 5, 2**28 - 1, 2**32 - 1])
def test_offset_delta_roundtrip(value: int) -> None:
    reader = StreamReader(io.BytesIO(encode_offset_delta(value)))
    assert read_offset_delta(reader) == value


def test_offset_delta_truncated() -> None:
    with pytest.raises(UnexpectedEOFError):
        read_offset_delta(StreamReader(io.BytesIO(b'\x80\x81')))
