#!/usr/bin/env python
import enum
import hashlib
import logging
import re
import struct
import typing as t
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

SIGNATURE = b'DIRC'
SUPPORTED_VERSIONS = (2, 3, 4)
DIGEST_SIZE = 20
NANOSECONDS = 1_000_000_000

HEADER = struct.Struct('>4s2I')
# ctime, mtime (signed), dev, ino, mode, uid, gid, size, sha1, flags
ENTRY = struct.Struct('>4i6I20sH')
EXTENDED_FLAGS = struct.Struct('>H')
EXTENSION_HEADER = struct.Struct('>4sI')

FLAG_ASSUME_VALID = 0x8000
FLAG_EXTENDED = 0x4000
FLAG_STAGE_MASK = 0x3000
FLAG_STAGE_SHIFT = 12
FLAG_NAME_MASK = 0x0FFF

EXTENDED_FLAG_RESERVED = 0x8000
EXTENDED_FLAG_SKIP_WORKTREE = 0x4000
EXTENDED_FLAG_INTENT_TO_ADD = 0x2000

TREE_EXTENSION = b'TREE'
# Known extensions that are reported but not decoded
EXTENSION_NAMES = {
    b'REUC': 'Resolve undo',
    b'link': 'Split index',
    b'UNTR': 'Untracked cache',
    b'FSMN': 'File system monitor cache',
    b'EOIE': 'End of index entry',
    b'IEOT': 'Index entry offset table',
}

_DECIMAL = re.compile(rb'-?[0-9]+')


class GitIndexError(Exception):
    pass


class IndexIOError(GitIndexError):
    def __init__(
        self, offset: int, expected: int, got: int, message: t.Optional[str] = None
    ) -> None:
        super().__init__(
            message or f'offset {offset}: {got} bytes read, {expected} expected'
        )
        self.offset = offset
        self.expected = expected
        self.got = got


class UnexpectedEOFError(IndexIOError):
    def __init__(self, offset: int, what: str) -> None:
        super().__init__(
            offset, 1, 0, f'offset {offset}: unexpected end of file while reading {what}'
        )


class IndexFormatError(GitIndexError):
    pass


class Stage(enum.IntEnum):
    NORMAL = 0
    BASE = 1
    OURS = 2
    THEIRS = 3


@dataclass(frozen=True)
class Diagnostic:
    offset: int
    message: str

    def __str__(self) -> str:
        return f'offset {self.offset}: {self.message}'


class StreamReader:
    """Forward-only byte source over a binary file object.

    Every consumed byte, skipped ones included, goes through the running SHA-1
    and advances ``offset``. A small read-ahead buffer (not hashed until
    consumed) lets callers ask how many bytes are left without seeking, so
    pipes work the same as regular files.
    """

    chunk_size = 4096

    def __init__(self, fp: t.BinaryIO) -> None:
        self._fp = fp
        self._ahead = bytearray()
        self._eof = False
        self.offset = 0
        self.sha1 = hashlib.sha1()

    def _fill(self, size: int) -> None:
        while len(self._ahead) < size and not self._eof:
            chunk = self._fp.read(max(size - len(self._ahead), self.chunk_size))
            if not chunk:
                self._eof = True
            self._ahead += chunk

    def _consume(self, size: int) -> bytes:
        data = bytes(self._ahead[:size])
        del self._ahead[:size]
        self.sha1.update(data)
        self.offset += len(data)
        return data

    def read_exact(self, size: int) -> bytes:
        self._fill(size)
        if len(self._ahead) < size:
            raise IndexIOError(self.offset, size, len(self._ahead))
        return self._consume(size)

    def read_byte(self) -> t.Optional[int]:
        self._fill(1)
        if not self._ahead:
            return None
        return self._consume(1)[0]

    def read_struct(self, format: struct.Struct) -> tuple[t.Any, ...]:
        return format.unpack(self.read_exact(format.size))

    def read_until(self, terminator: bytes) -> bytes:
        """Read up to and including ``terminator``; return what came before it."""
        start = 0
        while (pos := self._ahead.find(terminator, start)) < 0:
            if self._eof:
                raise UnexpectedEOFError(
                    self.offset + len(self._ahead), f'{terminator!r}-terminated field'
                )
            start = len(self._ahead)
            self._fill(start + 1)
        return self._consume(pos + 1)[:-1]

    def skip(self, size: int) -> None:
        # не seek: пропущенные байты тоже идут в хеш
        remaining = size
        while remaining > 0:
            self._fill(min(remaining, self.chunk_size))
            if not self._ahead:
                raise IndexIOError(self.offset, size, size - remaining)
            remaining -= len(self._consume(min(remaining, len(self._ahead))))

    def available(self, size: int) -> int:
        """Number of bytes left in the stream, counted up to ``size``."""
        self._fill(size)
        return min(len(self._ahead), size)

    def read_trailer(self, size: int) -> bytes:
        # сохранённый хеш сам в хеш не входит
        self._fill(size)
        data = bytes(self._ahead[:size])
        del self._ahead[:size]
        if len(data) < size:
            raise IndexIOError(self.offset, size, len(data))
        self.offset += size
        return data

    def digest(self) -> bytes:
        return self.sha1.digest()


def read_offset_delta(reader: StreamReader) -> int:
    """Decode the offset-delta varint shared with the pack format.

    Seven bits per byte, most significant group first, high bit set on every
    byte but the last. Each continuation byte adds a bias of 2**(7*k), so
    ``80 00`` is 128 rather than 0.
    """
    value = 0
    count = 0
    while True:
        byte = reader.read_byte()
        if byte is None:
            raise UnexpectedEOFError(reader.offset, 'path prefix length')
        value = (value << 7) | (byte & 0x7F)
        count += 1
        if not byte & 0x80:
            break
    bias = 0x80
    for _ in range(count - 1):
        value += bias
        bias <<= 7
    return value


def encode_offset_delta(value: int) -> bytes:
    if value < 0:
        raise ValueError(f'negative offset delta: {value}')
    encoded = bytearray([value & 0x7F])
    value >>= 7
    while value:
        value -= 1
        encoded.insert(0, 0x80 | (value & 0x7F))
        value >>= 7
    return bytes(encoded)


@dataclass(frozen=True)
class Header:
    signature: bytes
    version: int
    entry_count: int


@dataclass
class Entry:
    ctime_seconds: int
    ctime_nanoseconds: int
    mtime_seconds: int
    mtime_nanoseconds: int
    dev: int
    ino: int
    mode: int
    uid: int
    gid: int
    file_size: int  # 40 bytes
    sha1: bytes  # +20 bytes
    flags: int  # +2 bytes
    file_path: bytes = b''  # null-terminated
    extended_flags: int = 0  # v3+, only with FLAG_EXTENDED
    prefix_length: t.Optional[int] = None  # v4+
    name_length: int = 0  # bytes read for the name, without the NUL
    padding_length: int = 0  # below v4
    offset: int = 0

    @property
    def path(self) -> str:
        return self.file_path.decode('utf-8', errors='surrogateescape')

    @property
    def stage(self) -> Stage:
        return Stage((self.flags & FLAG_STAGE_MASK) >> FLAG_STAGE_SHIFT)

    @property
    def assume_valid(self) -> bool:
        return bool(self.flags & FLAG_ASSUME_VALID)

    @property
    def extended(self) -> bool:
        return bool(self.flags & FLAG_EXTENDED)

    @property
    def skip_worktree(self) -> bool:
        return bool(self.extended_flags & EXTENDED_FLAG_SKIP_WORKTREE)

    @property
    def intent_to_add(self) -> bool:
        return bool(self.extended_flags & EXTENDED_FLAG_INTENT_TO_ADD)

    @property
    def declared_name_length(self) -> int:
        return self.flags & FLAG_NAME_MASK

    @property
    def name_length_matches(self) -> bool:
        declared = self.declared_name_length
        # 0xFFF значит "0xFFF или длиннее"
        if declared == FLAG_NAME_MASK:
            return len(self.file_path) >= FLAG_NAME_MASK
        return declared == len(self.file_path)


@dataclass
class TreeNode:
    path: bytes
    entry_count: int
    subtree_count: int
    sha1: t.Optional[bytes] = None
    children: list['TreeNode'] = field(default_factory=list)

    @property
    def invalidated(self) -> bool:
        return self.entry_count < 0

    def walk(self) -> t.Iterator['TreeNode']:
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass
class Extension:
    signature: bytes
    length: int
    offset: int  # first content byte
    tree: t.Optional[TreeNode] = None

    @property
    def tag(self) -> str:
        return self.signature.decode('ascii', errors='backslashreplace')

    @property
    def known(self) -> bool:
        return self.signature == TREE_EXTENSION or self.signature in EXTENSION_NAMES

    @property
    def name(self) -> str:
        if self.signature == TREE_EXTENSION:
            return 'Cache tree'
        return EXTENSION_NAMES.get(self.signature, 'Unknown extension')


@dataclass(frozen=True)
class Checksum:
    stored: bytes
    computed: bytes

    @property
    def matches(self) -> bool:
        return self.stored == self.computed


@dataclass
class DecodeContext:
    reader: StreamReader
    header: t.Optional[Header] = None
    warnings: list[Diagnostic] = field(default_factory=list)

    @property
    def version(self) -> int:
        assert self.header is not None, 'header has not been read'
        return self.header.version

    def warn(self, message: str, offset: t.Optional[int] = None) -> None:
        diagnostic = Diagnostic(self.reader.offset if offset is None else offset, message)
        self.warnings.append(diagnostic)
        log.warning('%s', diagnostic)


def read_header(ctx: DecodeContext) -> Header:
    header = Header(*ctx.reader.read_struct(HEADER))
    if header.signature != SIGNATURE:
        raise IndexFormatError(f'not a git index file: signature {header.signature!r}')
    ctx.header = header
    if header.version not in SUPPORTED_VERSIONS:
        ctx.warn(f'unrecognized index version {header.version}', offset=4)
    return header


def read_entry(ctx: DecodeContext) -> Entry:
    reader = ctx.reader
    version = ctx.version
    offset = reader.offset
    entry = Entry(*reader.read_struct(ENTRY), offset=offset)
    if version >= 3 and entry.flags & FLAG_EXTENDED:
        (entry.extended_flags,) = reader.read_struct(EXTENDED_FLAGS)
    if version >= 4:
        entry.prefix_length = read_offset_delta(reader)
    # путь всегда заканчивается null-byte
    entry.file_path = reader.read_until(b'\0')
    entry.name_length = len(entry.file_path)
    if version < 4:
        # размер entry кратен 8: file path добивается null-байтами
        entry.padding_length = -(reader.offset - 4) % 8
        reader.skip(entry.padding_length)
    for label, nanoseconds in (
        ('ctime', entry.ctime_nanoseconds),
        ('mtime', entry.mtime_nanoseconds),
    ):
        if not 0 <= nanoseconds < NANOSECONDS:
            ctx.warn(f'invalid {label} nanoseconds {nanoseconds}', offset=entry.offset)
    return entry


class PathAccumulator:
    """Rebuilds v4 paths: each entry strips bytes off the previous path and appends its own suffix."""

    def __init__(self) -> None:
        self.previous = b''

    def expand(self, prefix_length: int, suffix: bytes) -> bytes:
        if prefix_length > len(self.previous):
            raise IndexFormatError(
                f'prefix length {prefix_length} exceeds previous path'
                f' ({len(self.previous)} bytes)'
            )
        self.previous = self.previous[: len(self.previous) - prefix_length] + suffix
        return self.previous


def read_entries(ctx: DecodeContext) -> t.Iterator[Entry]:
    assert ctx.header is not None, 'header has not been read'
    paths = PathAccumulator()
    for _ in range(ctx.header.entry_count):
        entry = read_entry(ctx)
        if entry.prefix_length is not None:
            try:
                entry.file_path = paths.expand(entry.prefix_length, entry.file_path)
            except IndexFormatError as e:
                raise IndexFormatError(f'offset {entry.offset}: {e}') from e
        if not entry.name_length_matches:
            ctx.warn(
                f'{entry.path!r}: name length declared ({entry.declared_name_length})'
                f' is different from the one computed ({len(entry.file_path)})',
                offset=entry.offset,
            )
        yield entry


def _read_tree_number(reader: StreamReader, terminator: bytes) -> int:
    raw = reader.read_until(terminator)
    if not _DECIMAL.fullmatch(raw):
        raise IndexFormatError(f'offset {reader.offset}: bad tree counter {raw!r}')
    return int(raw)


def _read_tree_record(reader: StreamReader) -> TreeNode:
    path = reader.read_until(b'\0')
    entry_count = _read_tree_number(reader, b' ')
    subtree_count = _read_tree_number(reader, b'\n')
    if subtree_count < 0:
        raise IndexFormatError(
            f'offset {reader.offset}: negative subtree count {subtree_count}'
        )
    node = TreeNode(path, entry_count, subtree_count)
    # у инвалидированного узла (-1) хеша нет
    if entry_count >= 0:
        node.sha1 = reader.read_exact(DIGEST_SIZE)
    log.debug('tree node %r, %d entries, %d subtrees', path, entry_count, subtree_count)
    return node


def read_tree(ctx: DecodeContext, end: int) -> TreeNode:
    """Decode one cache tree, depth first, without reading past ``end``."""
    reader = ctx.reader
    root = _read_tree_record(reader)
    pending = [root]
    while pending:
        node = pending[-1]
        if len(node.children) == node.subtree_count:
            pending.pop()
            continue
        if reader.offset >= end:
            ctx.warn(
                f'incomplete tree: {node.path!r} declares {node.subtree_count}'
                f' subtrees, {len(node.children)} found'
            )
            break
        child = _read_tree_record(reader)
        node.children.append(child)
        pending.append(child)
    return root


def read_tree_extension(ctx: DecodeContext, length: int) -> t.Optional[TreeNode]:
    reader = ctx.reader
    start = reader.offset
    end = start + length
    root = read_tree(ctx, end) if length else None
    if reader.offset != end:
        ctx.warn(
            f'tree extension size mismatch: {length} bytes declared,'
            f' {reader.offset - start} read'
        )
        if reader.offset < end:
            reader.skip(end - reader.offset)
    return root


def read_extensions(ctx: DecodeContext) -> t.Iterator[Extension]:
    reader = ctx.reader
    # останавливаемся ровно за DIGEST_SIZE байт до конца
    while reader.available(DIGEST_SIZE + 1) > DIGEST_SIZE:
        needed = DIGEST_SIZE + EXTENSION_HEADER.size
        if reader.available(needed) < needed:
            raise IndexFormatError(
                f'offset {reader.offset}: truncated extension header before checksum'
            )
        signature, length = reader.read_struct(EXTENSION_HEADER)
        extension = Extension(signature, length, reader.offset)
        log.debug(
            'extension %s, length %d, content at offset %d',
            extension.tag,
            length,
            extension.offset,
        )
        if signature == TREE_EXTENSION:
            extension.tree = read_tree_extension(ctx, length)
        else:
            if not extension.known:
                ctx.warn(
                    f'unknown extension {extension.tag}, skipping {length} bytes',
                    offset=extension.offset - EXTENSION_HEADER.size,
                )
            reader.skip(length)
        yield extension


def verify_checksum(ctx: DecodeContext) -> Checksum:
    reader = ctx.reader
    checksum = Checksum(stored=reader.read_trailer(DIGEST_SIZE), computed=reader.digest())
    log.debug('checksum stored %s, computed %s', checksum.stored.hex(), checksum.computed.hex())
    if not checksum.matches:
        ctx.warn(
            f'checksum mismatch: stored {checksum.stored.hex()},'
            f' computed {checksum.computed.hex()}',
            offset=reader.offset - DIGEST_SIZE,
        )
    return checksum


@dataclass
class GitIndex:
    _fp: t.BinaryIO

    def __post_init__(self) -> None:
        self.context = DecodeContext(StreamReader(self._fp))
        self.entries: list[Entry] = []
        self.extensions: list[Extension] = []
        self.checksum: t.Optional[Checksum] = None
        self._loaded = False
        self.header = read_header(self.context)

    @property
    def warnings(self) -> list[Diagnostic]:
        return self.context.warnings

    def load(self) -> 'GitIndex':
        # entries/extensions пополняются по ходу: при ошибке остаётся то, что успели прочитать
        if self._loaded:
            return self
        self._loaded = True
        for entry in read_entries(self.context):
            self.entries.append(entry)
        for extension in read_extensions(self.context):
            self.extensions.append(extension)
        self.checksum = verify_checksum(self.context)
        return self

    def __iter__(self) -> t.Iterator[Entry]:
        return iter(self.entries)
