#!/usr/bin/env python
import argparse
import contextlib
import grp
import io
import logging
import pwd
import sys
import typing as t
from dataclasses import dataclass
from datetime import datetime, timezone

from git_index import (
    EXTENDED_FLAG_RESERVED,
    Checksum,
    Entry,
    Extension,
    GitIndex,
    GitIndexError,
    Header,
    Stage,
    TREE_EXTENSION,
    TreeNode,
)

log = logging.getLogger(__name__)

OBJECT_TYPES = {
    0x8: ('-', 'regular file'),
    0xA: ('l', 'symbolic link'),
    0xE: ('g', 'gitlink'),
}
MERGE_NAMES = {
    Stage.BASE: 'merge_common_ancestor',
    Stage.OURS: 'merge_ours',
    Stage.THEIRS: 'merge_theirs',
}
MERGE_CHARS = {Stage.NORMAL: '-', Stage.BASE: 'c', Stage.OURS: 'o', Stage.THEIRS: 't'}
NO_OBJECT = ' ' * 40


@dataclass(frozen=True)
class Options:
    path: str = '-'
    listing: bool = False
    plain_tree: bool = False
    utc: bool = False
    log_level: int = logging.WARNING

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> 'Options':
        if args.verbose:
            level = logging.DEBUG
        elif args.quiet:
            level = logging.ERROR
        else:
            level = logging.WARNING
        return cls(
            path=args.path,
            listing=args.ls,
            plain_tree=args.plain_tree,
            utc=args.utc,
            log_level=level,
        )


def hex_id(sha1: bytes) -> str:
    return sha1.hex().upper()


def format_time(seconds: int, nanoseconds: int, utc: bool = False) -> str:
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    if not utc:
        stamp = stamp.astimezone()
    return stamp.strftime(f'%Y-%m-%d %H:%M:%S.{nanoseconds:09d} %z')


def object_type(mode: int) -> tuple[str, str]:
    return OBJECT_TYPES.get((mode >> 12) & 0x0F, ('?', 'unknown'))


def permissions(mode: int) -> str:
    return ''.join(
        ('r' if bits & 4 else '-') + ('w' if bits & 2 else '-') + ('x' if bits & 1 else '-')
        for bits in ((mode >> 6) & 7, (mode >> 3) & 7, mode & 7)
    )


def flags_long(entry: Entry) -> str:
    names = []
    if entry.assume_valid:
        names.append('assume-valid')
    if entry.extended:
        names.append('extended')
    if entry.stage in MERGE_NAMES:
        names.append(MERGE_NAMES[entry.stage])
    return ', '.join(names)


def flags_short(entry: Entry) -> str:
    return (
        ('v' if entry.assume_valid else '-')
        + ('x' if entry.extended else '-')
        + MERGE_CHARS[entry.stage]
    )


def extended_flags_long(entry: Entry) -> str:
    names = []
    if entry.extended_flags & EXTENDED_FLAG_RESERVED:
        names.append('reserved')
    if entry.skip_worktree:
        names.append('skip-worktree')
    if entry.intent_to_add:
        names.append('intent-to-add')
    return ', '.join(names)


def extended_flags_short(entry: Entry) -> str:
    return (
        ('r' if entry.extended_flags & EXTENDED_FLAG_RESERVED else '-')
        + ('s' if entry.skip_worktree else '-')
        + ('i' if entry.intent_to_add else '-')
    )


def owner_name(uid: int) -> t.Optional[str]:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return None


def group_name(gid: int) -> t.Optional[str]:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return None


def format_header(header: Header) -> str:
    return f'git index version {header.version}\n\nEntry count: {header.entry_count}\n'


def format_entry_long(number: int, entry: Entry, utc: bool = False) -> str:
    type_char, type_name = object_type(entry.mode)
    dev = f'{entry.dev:X}h/{entry.dev}d'
    ino = str(entry.ino)
    user = f'({entry.uid}/{owner_name(entry.uid) or ""})'
    widths = (
        max(17, len(dev)),
        max(len(type_name) - 7, len(ino), len(user)),
    )
    access = f'({entry.mode & 0x0FFF:04o}/{type_char}{permissions(entry.mode)})'
    lines = [
        f'Entry {number}:',
        f'\t  File: {entry.path}',
        f'\t    ID: {hex_id(entry.sha1)}',
        f'\t  Size: {entry.file_size:<{widths[0]}} {type_name:<{widths[1] + 7}} {flags_long(entry)}',
        f'\tDevice: {dev:<{widths[0]}} Inode: {ino:<{widths[1]}} {extended_flags_long(entry)}',
        f'\tAccess: {access}   Uid: {user:<{widths[1]}}'
        f' Gid: ({entry.gid}/{group_name(entry.gid) or ""})',
        f'\tModify: {format_time(entry.mtime_seconds, entry.mtime_nanoseconds, utc)}',
        f'\tChange: {format_time(entry.ctime_seconds, entry.ctime_nanoseconds, utc)}',
    ]
    if entry.mode & 0xFFFF0000:
        lines.append(f'\tMode: 0x{entry.mode:08X}')
    if not entry.name_length_matches:
        lines.append(
            f'\tFilename length declared ({entry.declared_name_length})'
            f' is different from the one computed ({len(entry.file_path)})'
        )
    return '\n'.join(lines) + '\n'


def format_listing(entries: list[Entry], version: int, utc: bool = False) -> list[str]:
    if not entries:
        return []
    users = [owner_name(e.uid) or str(e.uid) for e in entries]
    groups = [group_name(e.gid) or str(e.gid) for e in entries]
    dev_width = max(len(str(e.dev)) for e in entries)
    ino_width = max(len(str(e.ino)) for e in entries)
    size_width = max(len(str(e.file_size)) for e in entries)
    user_width = max(map(len, users))
    group_width = max(map(len, groups))

    lines = []
    for entry, user, group in zip(entries, users, groups):
        flags = flags_short(entry)
        if version >= 3:
            flags += ' ' + extended_flags_short(entry)
        lines.append(
            f'{entry.dev:>{dev_width}}/{entry.ino:>{ino_width}}'
            f' {object_type(entry.mode)[0]}{permissions(entry.mode)} {flags}'
            f' {user:>{user_width}} {group:<{group_width}} {entry.file_size:>{size_width}}'
            f' {format_time(entry.ctime_seconds, entry.ctime_nanoseconds, utc)}'
            f' {format_time(entry.mtime_seconds, entry.mtime_nanoseconds, utc)}'
            f' {hex_id(entry.sha1)} {entry.path}'
        )
    return lines


def _tree_path(node: TreeNode) -> str:
    return node.path.decode('utf-8', errors='surrogateescape')


def format_tree(root: TreeNode) -> list[str]:
    lines = []
    # (node, depth, last child, indent inherited from the parent)
    stack = [(root, 0, True, '')]
    while stack:
        node, depth, last, indent = stack.pop()
        if depth == 0:
            branch, child_indent = '', indent
        elif last:
            branch, child_indent = '└─ ', indent + '   '
        else:
            branch, child_indent = '├─ ', indent + '│  '
        object_id = NO_OBJECT if node.invalidated else hex_id(node.sha1)
        lines.append(
            f"{object_id}  {indent}{branch}'{_tree_path(node)}', {node.entry_count} entries"
        )
        count = len(node.children)
        for i, child in reversed(list(enumerate(node.children))):
            stack.append((child, depth + 1, i == count - 1, child_indent))
    return lines


def format_tree_plain(root: TreeNode) -> list[str]:
    lines = []
    for node in root.walk():
        lines.append(f"Path: '{_tree_path(node)}'")
        lines.append(f'Entry count: {node.entry_count}, subtrees: {node.subtree_count}')
        if not node.invalidated:
            lines.append(f'Object name: {hex_id(node.sha1)}')
        lines.append('')
    return lines


def format_extension(extension: Extension) -> str:
    return (
        f'Extension {extension.tag}, length {extension.length},'
        f' content starting at offset {extension.offset} (0x{extension.offset:X}):'
    )


def format_checksum(checksum: Checksum) -> str:
    line = f'Hash checksum: {hex_id(checksum.stored)}'
    if checksum.matches:
        return line + ' ✓'
    return line + f' (expected {hex_id(checksum.computed)})'


def write_report(index: GitIndex, options: Options, out: t.TextIO) -> None:
    if options.listing:
        for line in format_listing(index.entries, index.header.version, options.utc):
            print(line, file=out)
        print(file=out)
    else:
        for number, entry in enumerate(index.entries, 1):
            print(format_entry_long(number, entry, options.utc), file=out)

    for extension in index.extensions:
        print(format_extension(extension), file=out)
        if extension.signature != TREE_EXTENSION:
            print(f'{extension.name}, skipping', file=out)
        elif extension.tree is not None:
            if options.plain_tree:
                lines = format_tree_plain(extension.tree)
            else:
                lines = format_tree(extension.tree) + ['']
            for line in lines:
                print(line, file=out)

    if index.checksum is not None:
        print(format_checksum(index.checksum), file=out)


def print_index(fp: t.BinaryIO, options: Options, out: t.TextIO) -> int:
    try:
        index = GitIndex(fp)
    except (GitIndexError, MemoryError) as e:
        log.error('%s', e)
        return 1
    print(format_header(index.header), file=out)

    error: t.Optional[BaseException] = None
    try:
        index.load()
    except (GitIndexError, MemoryError) as e:
        error = e
    # то, что успели разобрать, печатаем и при ошибке
    write_report(index, options, out)
    if error is not None:
        log.error('%s', error)
        return 1
    return 0


@contextlib.contextmanager
def open_input(path: str) -> t.Iterator[t.BinaryIO]:
    if path == '-':
        yield sys.stdin.buffer
    else:
        with open(path, 'rb') as fp:
            yield fp


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='print-git-index',
        description='Decode a git index file and print its entries, extensions and checksum.',
    )
    parser.add_argument(
        'path', nargs='?', default='-', help='index file to read (default: standard input)'
    )
    parser.add_argument(
        '--ls', action='store_true', help='one line per entry instead of the detailed report'
    )
    parser.add_argument(
        '--plain-tree', action='store_true', help='print cache tree nodes as flat records'
    )
    parser.add_argument('--utc', action='store_true', help='print timestamps in UTC')
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    verbosity.add_argument('-q', '--quiet', action='store_true', help='errors only')
    return parser


def main(argv: t.Optional[t.Sequence[str]] = None) -> int:
    options = Options.from_args(build_arg_parser().parse_args(argv))
    logging.basicConfig(
        level=options.log_level, format='%(levelname)s: %(message)s', stream=sys.stderr
    )
    if isinstance(sys.stdout, io.TextIOWrapper):
        # пути в индексе: произвольные байты, выводим их как есть
        sys.stdout.reconfigure(errors='surrogateescape')
    try:
        with open_input(options.path) as fp:
            return print_index(fp, options, sys.stdout)
    except OSError as e:
        log.error('%s', e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
