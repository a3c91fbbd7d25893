"""GSL archive support.

GSL files have no magic number. The table is a run of 48-byte records
ending at the first record whose name is empty:

    0x00  char[32]  name
    0x20  u32       offset in 2048-byte blocks
    0x24  u32       size in bytes
    0x28  8 bytes   reserved (zero)

GameCube archives are big-endian, PC and Xbox ones little-endian. Nothing
in the file says which, so the byte order is guessed from whether the first
offset makes sense.
"""

import logging
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Sequence, Tuple

from ..errors import FormatError
from ..utils.binary import BinaryReader, Endian, align, read_u32, write_u32
from .base import (
    ArchiveBuilder,
    ArchiveEntry,
    ArchiveReader,
    Target,
    append_to_archive,
    create_archive,
    decode_name,
    delete_from_archive,
    encode_name,
    update_archive,
)

logger = logging.getLogger(__name__)

GSL_ALIGNMENT = 2048
GSL_RECORD_SIZE = 48
GSL_NAME_SIZE = 32


def header_size(entry_count: int) -> int:
    """Header size for entry_count records plus the terminator."""
    return align((entry_count + 1) * GSL_RECORD_SIZE, GSL_ALIGNMENT)


class GSLBuilder(ArchiveBuilder):
    """Writes GSL archives in a fixed byte order."""

    ALIGNMENT = GSL_ALIGNMENT

    def __init__(self, fp: BinaryIO, entry_count: int, endian: Endian = Endian.BIG):
        if endian is Endian.AUTO:
            endian = Endian.BIG
        self.endian = endian
        super().__init__(fp, entry_count)

    def compute_header_size(self, entry_count: int) -> int:
        return header_size(entry_count)

    def write_table(self) -> None:
        table = []
        for entry in self.records:
            table.append(encode_name(entry.name or "", GSL_NAME_SIZE))
            table.append(write_u32(entry.offset // GSL_ALIGNMENT, self.endian))
            table.append(write_u32(entry.size, self.endian))
            table.append(b"\x00" * 8)
        # The placeholder header already holds the zero terminator record.
        self.fp.seek(0)
        self.fp.write(b"".join(table))


class GSLArchive(ArchiveReader):
    """Reader for GSL archives.

    Args:
        path: Archive path
        endian: Byte order, or Endian.AUTO to guess it from the first entry
    """

    FORMAT = "GSL"

    def __init__(self, path: Path, endian: Endian = Endian.AUTO):
        super().__init__(path)
        self.requested_endian = endian
        self.endian = Endian.BIG if endian is Endian.AUTO else endian

    def _detect_endian(self, first: bytes) -> Endian:
        big = read_u32(first, GSL_NAME_SIZE, Endian.BIG)
        if big * GSL_ALIGNMENT <= self.file_size:
            return Endian.BIG

        little = read_u32(first, GSL_NAME_SIZE, Endian.LITTLE)
        if little * GSL_ALIGNMENT <= self.file_size:
            logger.info("%s: big-endian offsets implausible, using little-endian", self.path)
            return Endian.LITTLE

        raise FormatError(
            f"{self.path}: cannot determine GSL byte order "
            f"(first offset {big:#x} big-endian / {little:#x} little-endian blocks, "
            f"file is {self.file_size} bytes)"
        )

    def _read_header(self) -> None:
        reader = BinaryReader(self.stream, Endian.LITTLE)
        first = reader.read_bytes(GSL_RECORD_SIZE)
        if first[0] == 0:
            self._entry_count = 0
            self._header_size = header_size(0)
            return

        if self.requested_endian is Endian.AUTO:
            self.endian = self._detect_endian(first)

        # Count records up to the terminator.
        reader.seek(0)
        count = 0
        while True:
            try:
                record = reader.read_bytes(GSL_RECORD_SIZE)
            except EOFError as e:
                raise FormatError(f"{self.path}: GSL table is not terminated") from e
            if record[0] == 0:
                break
            count += 1

        self._entry_count = count
        self._header_size = header_size(count)
        logger.debug("%s: %d entries, %s endian", self.path, count, self.endian.value)

    def scan(self) -> Iterator[Tuple[ArchiveEntry, BinaryIO]]:
        reader = BinaryReader(self.stream, self.endian)
        for index in range(self._entry_count):
            reader.seek(index * GSL_RECORD_SIZE)
            name = decode_name(reader.read_name(GSL_NAME_SIZE))
            offset = reader.read_u32() * GSL_ALIGNMENT
            size = reader.read_u32()
            self._check_bounds(index, offset, size)

            self.stream.seek(offset)
            yield ArchiveEntry(index=index, offset=offset, size=size, name=name), self.stream

    def builder(self, fp: BinaryIO, entry_count: int) -> GSLBuilder:
        return GSLBuilder(fp, entry_count, endian=self.endian)

    def describe(self, entry: ArchiveEntry) -> str:
        return f"File {entry.index:4d} '{entry.name}' @ offset {entry.offset:#010x} size: {entry.size}"


def open_archive(path: Path, endian: Endian = Endian.AUTO) -> GSLArchive:
    return GSLArchive(path, endian=endian)


def create(path: Path, files: Iterable[Path], endian: Endian = Endian.BIG) -> None:
    """Create a GSL archive (big-endian unless told otherwise)."""
    create_archive(path, files, GSLBuilder, endian=endian)


def append(path: Path, files: Iterable[Path], endian: Endian = Endian.AUTO) -> None:
    """Append files, keeping the archive's byte order."""
    append_to_archive(path, files, GSLArchive, endian=endian)


def update(
    path: Path,
    target: Target,
    replacement: Path,
    compress: bool = False,
    endian: Endian = Endian.AUTO,
) -> ArchiveEntry:
    """Replace the payload of the entry named target."""
    return update_archive(
        path, target, replacement, GSLArchive, reader_options={"endian": endian}, compress=compress
    )


def delete(path: Path, targets: Sequence[Target], endian: Endian = Endian.AUTO) -> int:
    """Delete the named entries; returns the number of entries left."""
    return delete_from_archive(path, targets, GSLArchive, endian=endian)
