"""AFS archive support.

Layout (little-endian):

    0x00  "AFS\\0"
    0x04  u32  entry count
    0x08  (u32 offset, u32 size) per entry

Plain archives reserve a fixed 0x80000-byte header, which is what lets the
game address up to 65535 entries without relocating data. The named variant
sizes the header to the table and adds one more (offset, size) pair after
the last entry pointing at a table of 48-byte name records stored after the
last payload.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..errors import FormatError
from ..utils.binary import BinaryReader, Endian, align, pad_stream, write_u16, write_u32
from .base import (
    ArchiveBuilder,
    ArchiveEntry,
    ArchiveReader,
    Target,
    append_to_archive,
    create_archive,
    decode_name,
    delete_from_archive,
    digits,
    encode_name,
    update_archive,
)

logger = logging.getLogger(__name__)

AFS_MAGIC = b"AFS\x00"
AFS_ALIGNMENT = 2048
AFS_PLAIN_HEADER_SIZE = 0x80000
AFS_MAX_ENTRIES = 65535

NAME_RECORD_SIZE = 48
NAME_FIELD_SIZE = 32


def _decode_timestamp(fields: Tuple[int, ...]) -> Optional[datetime]:
    if not any(fields):
        return None
    try:
        return datetime(*fields)
    except ValueError:
        return None


def _encode_timestamp(mtime: Optional[datetime]) -> bytes:
    if mtime is None:
        return b"\x00" * 12
    fields = (mtime.year, mtime.month, mtime.day, mtime.hour, mtime.minute, mtime.second)
    return b"".join(write_u16(value, Endian.LITTLE) for value in fields)


class AFSBuilder(ArchiveBuilder):
    """Writes plain or named AFS archives."""

    ALIGNMENT = AFS_ALIGNMENT

    def __init__(self, fp: BinaryIO, entry_count: int, names: bool = False):
        self.names = names
        super().__init__(fp, entry_count)

    def compute_header_size(self, entry_count: int) -> int:
        if not self.names:
            return AFS_PLAIN_HEADER_SIZE
        # Table plus the name table pointer
        return align(8 + (entry_count + 1) * 8, AFS_ALIGNMENT)

    def _write_name_table(self) -> Tuple[int, int]:
        offset = pad_stream(self.fp, AFS_ALIGNMENT)
        for entry in self.records:
            self.fp.write(encode_name(entry.name or "", NAME_FIELD_SIZE, allow_full=True))
            self.fp.write(_encode_timestamp(entry.mtime))
            self.fp.write(write_u32(entry.size, Endian.LITTLE))
        size = len(self.records) * NAME_RECORD_SIZE
        pad_stream(self.fp, AFS_ALIGNMENT)
        return offset, size

    def write_table(self) -> None:
        pointer = None
        if self.names:
            self.fp.seek(0, 2)
            pointer = self._write_name_table()

        table = [AFS_MAGIC, write_u32(len(self.records), Endian.LITTLE)]
        for entry in self.records:
            table.append(write_u32(entry.offset, Endian.LITTLE))
            table.append(write_u32(entry.size, Endian.LITTLE))
        if pointer is not None:
            table.append(write_u32(pointer[0], Endian.LITTLE))
            table.append(write_u32(pointer[1], Endian.LITTLE))

        self.fp.seek(0)
        self.fp.write(b"".join(table))


class AFSArchive(ArchiveReader):
    """Reader for AFS archives, with or without a name table."""

    FORMAT = "AFS"

    def __init__(self, path: Path):
        super().__init__(path)
        self._names: Optional[List[Tuple[str, Optional[datetime]]]] = None

    @property
    def has_names(self) -> bool:
        return self._names is not None

    def _read_header(self) -> None:
        reader = BinaryReader(self.stream, Endian.LITTLE)
        if reader.read_bytes(4) != AFS_MAGIC:
            raise FormatError(f"{self.path} is not an AFS archive")
        self._entry_count = reader.read_u32()

        table_end = 8 + self._entry_count * 8
        if table_end > self.file_size:
            raise FormatError(
                f"{self.path}: table of {self._entry_count} entries does not fit in the file"
            )

        self._names = self._read_name_table(reader, table_end)
        if self._names is not None:
            self._header_size = align(table_end + 8, AFS_ALIGNMENT)
        else:
            self._header_size = AFS_PLAIN_HEADER_SIZE

    def _read_name_table(
        self, reader: BinaryReader, table_end: int
    ) -> Optional[List[Tuple[str, Optional[datetime]]]]:
        if table_end + 8 > self.file_size:
            return None
        if self._entry_count:
            # No room for a pointer before the first payload (a full plain table).
            reader.seek(8)
            if table_end + 8 > reader.read_u32():
                return None

        reader.seek(table_end)
        offset = reader.read_u32()
        size = reader.read_u32()
        if offset == 0 and size == 0:
            return None
        if (
            size != self._entry_count * NAME_RECORD_SIZE
            or offset < table_end + 8
            or offset + size > self.file_size
        ):
            logger.warning(
                "%s: ignoring implausible name table pointer (offset %#x, size %d)",
                self.path,
                offset,
                size,
            )
            return None

        names = []
        reader.seek(offset)
        for _ in range(self._entry_count):
            name = decode_name(reader.read_name(NAME_FIELD_SIZE))
            stamp = tuple(reader.read_u16() for _ in range(6))
            reader.skip(4)
            names.append((name, _decode_timestamp(stamp)))
        logger.debug("%s: found name table at %#x", self.path, offset)
        return names

    def scan(self) -> Iterator[Tuple[ArchiveEntry, BinaryIO]]:
        reader = BinaryReader(self.stream, Endian.LITTLE)
        for index in range(self._entry_count):
            reader.seek(8 + index * 8)
            offset = reader.read_u32()
            size = reader.read_u32()
            self._check_bounds(index, offset, size)

            entry = ArchiveEntry(index=index, offset=offset, size=size)
            if self._names is not None:
                entry.name, entry.mtime = self._names[index]

            self.stream.seek(offset)
            yield entry, self.stream

    def builder(self, fp: BinaryIO, entry_count: int) -> AFSBuilder:
        return AFSBuilder(fp, entry_count, names=self.has_names)

    def describe(self, entry: ArchiveEntry) -> str:
        label = f"{entry.index:>{digits(self._entry_count)}}"
        if entry.name is not None:
            label += f" '{entry.name}'"
        line = f"File {label} @ offset {entry.offset:#010x} size: {entry.size}"
        if entry.mtime is not None:
            line += f" date: {entry.mtime.isoformat(sep=' ')}"
        return line


def open_archive(path: Path) -> AFSArchive:
    return AFSArchive(path)


def create(path: Path, files: Iterable[Path], names: bool = False) -> None:
    """Create an AFS archive. names=True adds a name table."""
    create_archive(path, files, AFSBuilder, max_entries=AFS_MAX_ENTRIES, names=names)


def append(path: Path, files: Iterable[Path]) -> None:
    """Append files to an AFS archive, keeping its name table setting."""
    append_to_archive(path, files, AFSArchive, max_entries=AFS_MAX_ENTRIES)


def update(path: Path, target: Target, replacement: Path, compress: bool = False) -> ArchiveEntry:
    """Replace one entry (by index, or by name in named archives)."""
    return update_archive(path, target, replacement, AFSArchive, compress=compress)


def delete(path: Path, targets: Sequence[Target]) -> int:
    """Delete entries; returns the number of entries left."""
    return delete_from_archive(path, targets, AFSArchive)
