import hashlib
import os
import struct
import typing as t
from dataclasses import dataclass

from git_index import ENTRY, FLAG_EXTENDED, FLAG_NAME_MASK, encode_offset_delta

SHA1 = bytes(range(20))


@dataclass
class FakeEntry:
    path: bytes
    sha1: bytes = SHA1
    mode: int = 0o100644
    file_size: int = 0
    ctime: tuple[int, int] = (1700000000, 0)
    mtime: tuple[int, int] = (1700000000, 500)
    dev: int = 2049
    ino: int = 1234
    uid: int = 1000
    gid: int = 1000
    flags: t.Optional[int] = None  # None: computed from path
    extended_flags: t.Optional[int] = None  # v3+, sets FLAG_EXTENDED

    def flag_bits(self) -> int:
        if self.flags is not None:
            return self.flags
        flags = min(len(self.path), FLAG_NAME_MASK)
        if self.extended_flags is not None:
            flags |= FLAG_EXTENDED
        return flags


def encode_entry(
    entry: FakeEntry, version: int, offset: int, previous_path: bytes = b''
) -> bytes:
    data = ENTRY.pack(
        *entry.ctime,
        *entry.mtime,
        entry.dev,
        entry.ino,
        entry.mode,
        entry.uid,
        entry.gid,
        entry.file_size,
        entry.sha1,
        entry.flag_bits(),
    )
    if version >= 3 and entry.extended_flags is not None:
        data += struct.pack('>H', entry.extended_flags)
    if version >= 4:
        common = len(os.path.commonprefix([previous_path, entry.path]))
        data += encode_offset_delta(len(previous_path) - common)
        data += entry.path[common:] + b'\0'
    else:
        data += entry.path + b'\0'
        data += b'\0' * (-(offset + len(data) - 4) % 8)
    return data


def extension(signature: bytes, payload: bytes) -> bytes:
    return struct.pack('>4sI', signature, len(payload)) + payload


def tree(path: bytes, entry_count: int, *children: bytes, sha1: bytes = b'\x11' * 20) -> bytes:
    data = path + b'\0' + f'{entry_count} {len(children)}\n'.encode('ascii')
    if entry_count >= 0:
        data += sha1
    return data + b''.join(children)


def build_index(
    entries: t.Sequence[FakeEntry] = (),
    version: int = 2,
    extensions: t.Sequence[bytes] = (),
    signature: bytes = b'DIRC',
    entry_count: t.Optional[int] = None,
    checksum: t.Optional[bytes] = None,
) -> bytes:
    if entry_count is None:
        entry_count = len(entries)
    data = struct.pack('>4s2I', signature, version, entry_count)
    previous = b''
    for entry in entries:
        data += encode_entry(entry, version, len(data), previous)
        previous = entry.path
    data += b''.join(extensions)
    return data + (checksum if checksum is not None else hashlib.sha1(data).digest())


class PipeReader:
    """Non-seekable file object that hands out at most ``step`` bytes per read."""

    def __init__(self, data: bytes, step: int = 3) -> None:
        self._data = data
        self._pos = 0
        self._step = step

    def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._data)
        chunk = self._data[self._pos : self._pos + min(size, self._step)]
        self._pos += len(chunk)
        return chunk

    def seekable(self) -> bool:
        return False
